"""Completion providers.

A provider turns one :class:`CompletionRequest` into text, either whole or as
an async iterator of fragments. Which provider runs is decided once at
startup by :func:`build_provider`; call sites only see the protocol.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol

from modechat.credentials import detect_provider, resolve_api_key
from modechat.errors import Misconfigured, UpstreamError
from modechat.settings import Settings, settings

logger = logging.getLogger("modechat.providers")


@dataclass
class CompletionRequest:
    mode: str
    model: str
    messages: List[Dict[str, str]]
    max_tokens: int
    temperature: float
    timeout: float

    @property
    def user_text(self) -> str:
        for m in reversed(self.messages):
            if m.get("role") == "user":
                return m.get("content", "")
        return ""


class CompletionProvider(Protocol):
    name: str

    async def complete(self, request: CompletionRequest) -> str:
        """Return the whole answer. Raises UpstreamError / Misconfigured."""
        ...

    async def open_stream(self, request: CompletionRequest) -> AsyncIterator[str]:
        """Start a streamed call.

        Status errors surface here, before any fragment is produced, so the
        caller can still retry. The returned iterator yields text fragments.
        """
        ...


# ---------------------------------------------------------------------------
# LiteLLM
# ---------------------------------------------------------------------------

def _upstream_error(exc: Exception, model: str) -> UpstreamError:
    """Map a LiteLLM/OpenAI exception to UpstreamError, logging the raw body."""
    status = getattr(exc, "status_code", None)
    if not isinstance(status, int):
        status = None
    logger.warning("Upstream call failed for model=%s status=%s: %s", model, status, exc)
    return UpstreamError(status)


class LiteLLMProvider:
    """Any LiteLLM-supported backend (OpenAI, Anthropic, Gemini, Ollama, ...)."""

    name = "litellm"

    def _call_kwargs(self, request: CompletionRequest) -> Dict[str, Any]:
        api_key = resolve_api_key(request.model)
        if api_key is None:
            provider = detect_provider(request.model) or "openai"
            raise Misconfigured(f"No API key configured for provider '{provider}'.")

        call_kwargs: Dict[str, Any] = {
            "model": request.model,
            "messages": request.messages,
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
            "timeout": request.timeout,
            # Retries are owned by UpstreamClient.
            "num_retries": 0,
        }
        if api_key:
            call_kwargs["api_key"] = api_key
        return call_kwargs

    async def complete(self, request: CompletionRequest) -> str:
        import litellm

        call_kwargs = self._call_kwargs(request)
        logger.debug("Calling LiteLLM: model=%s mode=%s", request.model, request.mode)
        try:
            response = await litellm.acompletion(**call_kwargs)
        except Exception as e:
            raise _upstream_error(e, request.model) from e

        if not response.choices:
            return ""
        return response.choices[0].message.content or ""

    async def open_stream(self, request: CompletionRequest) -> AsyncIterator[str]:
        import litellm

        call_kwargs = self._call_kwargs(request)
        logger.debug("Calling LiteLLM (stream): model=%s mode=%s", request.model, request.mode)
        try:
            response = await litellm.acompletion(stream=True, **call_kwargs)
        except Exception as e:
            raise _upstream_error(e, request.model) from e
        return self._fragments(response, request.model)

    @staticmethod
    async def _fragments(response: Any, model: str) -> AsyncIterator[str]:
        try:
            async for chunk in response:
                if not chunk.choices:
                    continue
                text = getattr(chunk.choices[0].delta, "content", None)
                if text:
                    yield text
        except Exception as e:
            raise _upstream_error(e, model) from e


# ---------------------------------------------------------------------------
# Mock (offline)
# ---------------------------------------------------------------------------

_MOCK_ANSWERS = {
    "medical": (
        "Thanks. To help narrow it down:\n"
        "1) What are your main symptoms?\n"
        "2) How long has it been going on?\n"
        "3) Any fever, chest pain, shortness of breath, or severe worsening?\n\n"
        "Get urgent care right away for chest pain, trouble breathing, fainting or sudden weakness."
    ),
    "therapy": (
        'I hear you. When you say "{message}", what feelings show up first: '
        "anxiety, sadness, anger, or something else?\n\n"
        "I'm not a licensed therapist, but I'm here to listen. "
        'What would "a tiny win" look like in the next 24 hours?'
    ),
    "recipe": (
        "## Title\n{title} Skillet\n\n"
        "## Ingredients\n"
        "- 2 servings of your main ingredients ({message})\n"
        "- 1 tbsp olive oil\n"
        "- 1 onion, diced\n"
        "- 2 cloves garlic\n"
        "- Salt, pepper and paprika\n\n"
        "## Steps\n"
        "1. Prepare and season the main ingredients.\n"
        "2. Heat the oil in a large pan over medium heat.\n"
        "3. Soften the onion and garlic for 3 minutes.\n"
        "4. Add the main ingredients and cook until done.\n"
        "5. Adjust the seasoning and serve warm.\n\n"
        "## Time\nPrep 10 min, cook 25 min, total 35 min\n\n"
        "## Calories\nAbout 550 kcal per serving"
    ),
    "dental": (
        "To understand what's going on:\n"
        "1) Which tooth or area hurts?\n"
        "2) How long has it hurt?\n"
        "3) Any swelling or fever?\n"
        "4) Is it sensitive to hot, cold or biting?\n\n"
        "Go to urgent care now if facial swelling is spreading or you have trouble breathing or swallowing."
    ),
}

_FRAGMENT = re.compile(r"\S+\s*|\s+")


class MockProvider:
    """Deterministic offline answers, used when no upstream is configured."""

    name = "mock"

    def __init__(self, delay: Optional[float] = None):
        self._delay = delay

    def answer_for(self, request: CompletionRequest) -> str:
        message = " ".join(request.user_text.split())[:200]
        title = message.title() if message else "Quick"
        template = _MOCK_ANSWERS.get(request.mode, _MOCK_ANSWERS["medical"])
        return template.format(message=message, title=title)

    async def complete(self, request: CompletionRequest) -> str:
        return self.answer_for(request)

    async def open_stream(self, request: CompletionRequest) -> AsyncIterator[str]:
        return self._fragments(self.answer_for(request))

    async def _fragments(self, answer: str) -> AsyncIterator[str]:
        delay = settings.MOCK_DELAY_S if self._delay is None else self._delay
        for piece in _FRAGMENT.findall(answer):
            if delay:
                await asyncio.sleep(delay)
            yield piece


def build_provider(cfg: Settings = settings) -> CompletionProvider:
    """Pick the provider for this process from configuration."""
    choice = cfg.PROVIDER
    if choice == "mock":
        return MockProvider()
    if choice == "litellm":
        return LiteLLMProvider()
    if choice != "auto":
        raise ValueError(f"Unknown provider {choice!r} (expected auto, litellm or mock)")
    if resolve_api_key(cfg.MODEL) is None:
        logger.warning("No credential for %s; using the offline mock provider", cfg.MODEL)
        return MockProvider()
    return LiteLLMProvider()
