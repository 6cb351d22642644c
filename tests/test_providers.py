"""Tests for modechat.providers and modechat.credentials."""

import asyncio
import re

import pytest

from modechat.credentials import (
    detect_provider,
    get_credential_source,
    list_credentials,
    remove_credential,
    resolve_api_key,
    save_credential,
)
from modechat.errors import Misconfigured
from modechat.providers import (
    CompletionRequest,
    LiteLLMProvider,
    MockProvider,
    _upstream_error,
    build_provider,
)
from modechat.settings import settings


def _request(mode="medical", text="I have a headache"):
    return CompletionRequest(
        mode=mode,
        model="gpt-4.1-mini",
        messages=[{"role": "system", "content": "rules"}, {"role": "user", "content": text}],
        max_tokens=100,
        temperature=0.4,
        timeout=5.0,
    )


async def _collect(provider, request):
    fragments = await provider.open_stream(request)
    return [piece async for piece in fragments]


# ---------------------------------------------------------------------------
# MockProvider
# ---------------------------------------------------------------------------

class TestMockProvider:
    def test_fragments_join_to_answer(self):
        provider = MockProvider(delay=0)
        request = _request("therapy", "I feel stuck at work")
        pieces = asyncio.run(_collect(provider, request))
        assert len(pieces) > 5
        assert "".join(pieces) == provider.answer_for(request)

    def test_complete_matches_stream(self):
        provider = MockProvider(delay=0)
        request = _request("dental")
        assert asyncio.run(provider.complete(request)) == provider.answer_for(request)

    def test_recipe_shape(self):
        answer = MockProvider(delay=0).answer_for(_request("recipe", "chicken and rice"))
        positions = [answer.index(f"## {s}") for s in ("Title", "Ingredients", "Steps", "Time", "Calories")]
        assert positions == sorted(positions)
        steps = re.findall(r"^\d+\. ", answer, flags=re.MULTILINE)
        assert 1 <= len(steps) <= 7
        assert "Chicken And Rice" in answer

    def test_user_text(self):
        assert _request(text="hello").user_text == "hello"


# ---------------------------------------------------------------------------
# LiteLLMProvider
# ---------------------------------------------------------------------------

class TestLiteLLMProvider:
    def test_missing_key_is_misconfigured(self):
        with pytest.raises(Misconfigured) as excinfo:
            asyncio.run(LiteLLMProvider().complete(_request()))
        assert excinfo.value.code == "LLM_NOT_CONFIGURED"
        assert "openai" in excinfo.value.message

    def test_call_kwargs(self, monkeypatch):
        monkeypatch.setenv("MODECHAT_API_KEY", "sk-test-123")
        kwargs = LiteLLMProvider()._call_kwargs(_request())
        assert kwargs["api_key"] == "sk-test-123"
        assert kwargs["num_retries"] == 0
        assert kwargs["timeout"] == 5.0
        assert kwargs["max_tokens"] == 100

    def test_ollama_needs_no_key(self):
        request = _request()
        request.model = "ollama/llama3"
        kwargs = LiteLLMProvider()._call_kwargs(request)
        assert "api_key" not in kwargs

    def test_status_mapping(self):
        class RateLimitError(Exception):
            status_code = 429

        err = _upstream_error(RateLimitError("slow down"), "gpt-4.1-mini")
        assert err.status_code == 429
        assert err.transient is True
        assert "slow down" not in err.message

    def test_connection_error_has_no_status(self):
        err = _upstream_error(ConnectionError("reset"), "gpt-4.1-mini")
        assert err.status_code is None
        assert err.transient is True


# ---------------------------------------------------------------------------
# build_provider
# ---------------------------------------------------------------------------

class TestBuildProvider:
    def test_mock(self):
        assert isinstance(build_provider(settings), MockProvider)

    def test_auto_without_key_uses_mock(self, monkeypatch):
        monkeypatch.setenv("MODECHAT_PROVIDER", "auto")
        assert isinstance(build_provider(settings), MockProvider)

    def test_auto_with_key_uses_litellm(self, monkeypatch):
        monkeypatch.setenv("MODECHAT_PROVIDER", "auto")
        monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
        assert isinstance(build_provider(settings), LiteLLMProvider)

    def test_explicit_litellm(self, monkeypatch):
        monkeypatch.setenv("MODECHAT_PROVIDER", "litellm")
        assert isinstance(build_provider(settings), LiteLLMProvider)

    def test_unknown(self, monkeypatch):
        monkeypatch.setenv("MODECHAT_PROVIDER", "carrier-pigeon")
        with pytest.raises(ValueError):
            build_provider(settings)


# ---------------------------------------------------------------------------
# credentials
# ---------------------------------------------------------------------------

class TestCredentials:
    def test_detect_provider(self):
        assert detect_provider("gpt-4.1-mini") == "openai"
        assert detect_provider("claude-sonnet-4") == "anthropic"
        assert detect_provider("gemini/gemini-2.5-flash") == "google"
        assert detect_provider("ollama/llama3") == "ollama"
        assert detect_provider("something-else") is None

    def test_save_and_remove(self):
        save_credential("openai", "sk-stored-abcdefghijkl")
        assert resolve_api_key("gpt-4.1-mini") == "sk-stored-abcdefghijkl"
        assert get_credential_source("openai") == "manual"
        assert remove_credential("openai") is True
        assert remove_credential("openai") is False
        assert resolve_api_key("gpt-4.1-mini") is None

    def test_env_fallback(self, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-env")
        assert resolve_api_key("claude-sonnet-4") == "sk-ant-env"
        assert get_credential_source("anthropic") == "env"

    def test_override_key_wins(self, monkeypatch):
        save_credential("openai", "sk-stored")
        monkeypatch.setenv("MODECHAT_API_KEY", "sk-override")
        assert resolve_api_key("gpt-4.1-mini") == "sk-override"

    def test_list_masks_tokens(self):
        save_credential("openai", "sk-1234567890abcdef")
        creds = list_credentials()
        assert creds == [{"provider": "openai", "source": "manual", "masked_token": "sk-12345...cdef"}]

    def test_credentials_file_permissions(self, isolated_env):
        import os
        import platform

        save_credential("openai", "sk-perm")
        path = isolated_env / "credentials.json"
        assert path.exists()
        if platform.system() != "Windows":
            assert os.stat(path).st_mode & 0o777 == 0o600
