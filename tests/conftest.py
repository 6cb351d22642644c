"""Shared fixtures: isolated config dirs, offline provider, app overrides."""

import pytest

from fakes import make_orchestrator


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """Redirect ~/.modechat to a temp directory and force offline defaults."""
    config_dir = tmp_path / ".modechat"
    config_dir.mkdir()
    creds_file = config_dir / "credentials.json"
    monkeypatch.setattr("modechat.credentials._credentials_path", lambda: creds_file)

    monkeypatch.setenv("MODECHAT_LOG_DIR", str(config_dir / "logs"))
    monkeypatch.setenv("MODECHAT_DATA_DIR", str(config_dir / "data"))
    monkeypatch.setenv("MODECHAT_PROVIDER", "mock")
    monkeypatch.setenv("MODECHAT_STORE", "memory")
    monkeypatch.setenv("MODECHAT_RETRY_DELAY_S", "0")
    for var in (
        "MODECHAT_API_KEY", "MODECHAT_AUTH_TOKEN", "MODECHAT_USERS_FILE",
        "MODECHAT_MODEL", "MODECHAT_TIMEOUT_S", "MODECHAT_SEND_LIMIT",
        "MODECHAT_LIST_LIMIT", "MODECHAT_IP_LIMIT", "MODECHAT_MOCK_DELAY_S",
        "OPENAI_API_KEY", "ANTHROPIC_API_KEY", "GEMINI_API_KEY", "GOOGLE_API_KEY",
        "MISTRAL_API_KEY", "DEEPSEEK_API_KEY", "GROQ_API_KEY",
    ):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setattr("modechat.server._orchestrator", None)
    return config_dir


@pytest.fixture
def orchestrator():
    """An offline orchestrator wired into the FastAPI app."""
    from modechat.server import app, get_orchestrator

    orch = make_orchestrator()
    app.dependency_overrides[get_orchestrator] = lambda: orch
    yield orch
    app.dependency_overrides.clear()
