"""Upstream completion calls with a deadline, one retry and cancellation.

Each call arms a single deadline (longer for recipe mode). The deadline and
an optional external ``asyncio.Event`` are raced against every suspension
point: opening the call, every streamed read, and the retry delay. Whichever
fires first ends the call as :class:`UpstreamTimeout` or
:class:`UpstreamCancelled`.
"""

import asyncio
import contextlib
import logging
import re
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, List, Optional

from modechat.errors import UpstreamCancelled, UpstreamError, UpstreamFailure, UpstreamTimeout
from modechat.prompts import build_system_prompt, disclaimer_for
from modechat.providers import CompletionProvider, CompletionRequest
from modechat.settings import Settings, settings

logger = logging.getLogger("modechat.upstream")

_END = object()

# The event stream carries line breaks as \n only.
_CARRIAGE_RETURN = re.compile(r"\r\n?")


@dataclass
class UpstreamCallResult:
    answer: str
    disclaimer: str = ""


class _CallGuard:
    """A per-call deadline plus an optional external cancel signal."""

    def __init__(self, timeout: float, cancel: Optional[asyncio.Event]):
        self._timeout = timeout
        self._deadline = asyncio.get_running_loop().time() + timeout
        self._cancel = cancel

    def _cancelled(self) -> bool:
        return self._cancel is not None and self._cancel.is_set()

    async def run(self, awaitable: Awaitable[Any]) -> Any:
        task = asyncio.ensure_future(awaitable)
        if self._cancelled():
            await self._abandon(task)
            raise UpstreamCancelled()

        waiters = {task}
        cancel_waiter = None
        if self._cancel is not None:
            cancel_waiter = asyncio.ensure_future(self._cancel.wait())
            waiters.add(cancel_waiter)

        remaining = max(self._deadline - asyncio.get_running_loop().time(), 0)
        try:
            done, _ = await asyncio.wait(waiters, timeout=remaining, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()

        if task in done:
            return task.result()

        await self._abandon(task)
        if self._cancelled():
            raise UpstreamCancelled()
        logger.warning("Upstream call exceeded its %.1fs deadline", self._timeout)
        raise UpstreamTimeout()

    @staticmethod
    async def _abandon(task: "asyncio.Future[Any]") -> None:
        task.cancel()
        await asyncio.wait({task})
        if not task.cancelled():
            task.exception()  # retrieved so it is not reported as unhandled


async def _next_fragment(fragments: AsyncIterator[str]) -> Any:
    try:
        return await fragments.__anext__()
    except StopAsyncIteration:
        return _END


async def _aclose(fragments: Any) -> None:
    aclose = getattr(fragments, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except Exception as e:
        logger.debug("Closing upstream stream failed: %s", e)


class TokenStream:
    """Lazy, cancellable sequence of answer fragments.

    ``answer`` always holds everything yielded so far, including after the
    stream ended early through cancellation, timeout or an upstream error.
    """

    def __init__(self, client: "UpstreamClient", request: CompletionRequest, cancel: Optional[asyncio.Event]):
        self._client = client
        self._request = request
        self._cancel = cancel
        self._pieces: List[str] = []
        self._gen: Optional[AsyncIterator[str]] = None
        self._held_cr = False

    @property
    def answer(self) -> str:
        return "".join(self._pieces)

    def __aiter__(self) -> AsyncIterator[str]:
        if self._gen is not None:
            raise RuntimeError("TokenStream can only be iterated once")
        self._gen = self._iterate()
        return self._gen

    async def aclose(self) -> None:
        if self._gen is not None:
            await self._gen.aclose()

    def _fold_line_breaks(self, piece: str) -> str:
        # A \r\n pair may straddle two fragments.
        if not piece:
            return piece
        if self._held_cr and piece.startswith("\n"):
            piece = piece[1:]
        self._held_cr = piece.endswith("\r")
        return _CARRIAGE_RETURN.sub("\n", piece)

    async def _iterate(self) -> AsyncIterator[str]:
        provider = self._client.provider
        guard = _CallGuard(self._request.timeout, self._cancel)
        # Retrying is only safe before the first fragment reaches the caller.
        fragments = await self._client._with_retry(
            lambda: provider.open_stream(self._request), guard, self._request
        )
        try:
            while True:
                piece = await guard.run(_next_fragment(fragments))
                if piece is _END:
                    break
                piece = self._fold_line_breaks(piece)
                if not piece:
                    continue
                self._pieces.append(piece)
                yield piece
        finally:
            await _aclose(fragments)


class UpstreamClient:
    """Builds the prompt for a mode/language pair and calls the provider."""

    def __init__(
        self,
        provider: CompletionProvider,
        cfg: Settings = settings,
        retry_delay: Optional[float] = None,
    ):
        self.provider = provider
        self._settings = cfg
        self._retry_delay = retry_delay

    def build_request(self, mode: str, language: str, message: str) -> CompletionRequest:
        return CompletionRequest(
            mode=mode,
            model=self._settings.MODEL,
            messages=[
                {"role": "system", "content": build_system_prompt(mode, language)},
                {"role": "user", "content": message},
            ],
            max_tokens=self._settings.max_tokens_for(mode),
            temperature=self._settings.TEMPERATURE,
            timeout=self._settings.timeout_for(mode),
        )

    async def _with_retry(
        self,
        call: Callable[[], Awaitable[Any]],
        guard: _CallGuard,
        request: CompletionRequest,
    ) -> Any:
        """Run ``call``; on 429/5xx wait a fixed delay and try exactly once more."""
        try:
            return await guard.run(call())
        except UpstreamError as exc:
            if not exc.transient:
                raise
            delay = self._settings.RETRY_DELAY_S if self._retry_delay is None else self._retry_delay
            logger.warning(
                "Upstream %s failed with status=%s (mode=%s); retrying once in %.1fs",
                request.model, exc.status_code, request.mode, delay,
            )
        await guard.run(asyncio.sleep(delay))
        return await guard.run(call())

    def stream_tokens(
        self,
        mode: str,
        language: str,
        message: str,
        *,
        cancel: Optional[asyncio.Event] = None,
    ) -> TokenStream:
        return TokenStream(self, self.build_request(mode, language, message), cancel)

    async def complete(
        self,
        mode: str,
        language: str,
        message: str,
        *,
        stream: bool = False,
        cancel: Optional[asyncio.Event] = None,
    ) -> UpstreamCallResult:
        """Return the whole answer for ``message``.

        With ``stream=True`` the provider is consumed incrementally; if the
        call then fails, the raised error carries ``partial_answer``.
        """
        if stream:
            tokens = self.stream_tokens(mode, language, message, cancel=cancel)
            try:
                async for _ in tokens:
                    pass
            except UpstreamFailure as exc:
                exc.partial_answer = tokens.answer
                raise
            answer = tokens.answer
        else:
            request = self.build_request(mode, language, message)
            guard = _CallGuard(request.timeout, cancel)
            answer = await self._with_retry(lambda: self.provider.complete(request), guard, request)

        if not answer or not answer.strip():
            raise UpstreamError(None, "The assistant returned an empty answer.")
        return UpstreamCallResult(answer=answer, disclaimer=disclaimer_for(mode))
