"""Upstream provider credentials.

Keys are resolved in order: ``MODECHAT_API_KEY`` → stored key in
``~/.modechat/credentials.json`` → the provider's usual env var.
"""

import json
import logging
import os
import platform
import tempfile
from pathlib import Path
from typing import Dict, List, Optional

from modechat.settings import settings

logger = logging.getLogger("modechat.credentials")

_ENV_VARS: Dict[str, List[str]] = {
    "openai": ["OPENAI_API_KEY"],
    "anthropic": ["ANTHROPIC_API_KEY"],
    "google": ["GEMINI_API_KEY", "GOOGLE_API_KEY"],
    "mistral": ["MISTRAL_API_KEY"],
    "deepseek": ["DEEPSEEK_API_KEY"],
    "groq": ["GROQ_API_KEY"],
}

# More specific prefixes first.
_MODEL_PREFIXES = (
    ("openai/", "openai"),
    ("gpt-", "openai"),
    ("o3", "openai"),
    ("o4", "openai"),
    ("anthropic/", "anthropic"),
    ("claude-", "anthropic"),
    ("gemini/", "google"),
    ("gemini-", "google"),
    ("mistral/", "mistral"),
    ("deepseek/", "deepseek"),
    ("groq/", "groq"),
    ("ollama/", "ollama"),
)


def _credentials_path() -> Path:
    return Path.home() / ".modechat" / "credentials.json"


def _read_credentials() -> dict:
    path = _credentials_path()
    if not path.exists():
        return {}
    try:
        return json.loads(path.read_text())
    except (json.JSONDecodeError, OSError) as e:
        logger.warning("Could not read credentials file: %s", e)
        return {}


def _write_credentials(data: dict) -> None:
    path = _credentials_path()
    path.parent.mkdir(parents=True, exist_ok=True)

    # Write to a temp file and rename so readers never see half a file.
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp", prefix=".creds-")
    try:
        with os.fdopen(fd, "w") as f:
            f.write(json.dumps(data, indent=2) + "\n")
        os.replace(tmp_path, str(path))
    except Exception:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise

    if platform.system() != "Windows":
        path.chmod(0o600)


def detect_provider(model: str) -> Optional[str]:
    """Provider name for a LiteLLM-style model id, or None if unknown."""
    for prefix, provider in _MODEL_PREFIXES:
        if model.startswith(prefix):
            return provider
    return None


def save_credential(provider: str, token: str) -> None:
    creds = _read_credentials()
    creds[provider] = {"token": token, "source": "manual"}
    _write_credentials(creds)


def remove_credential(provider: str) -> bool:
    """Remove a stored credential. Returns True if it existed."""
    creds = _read_credentials()
    if provider not in creds:
        return False
    del creds[provider]
    _write_credentials(creds)
    return True


def get_credential(provider: str) -> Optional[str]:
    """Stored key first, then the provider's env vars."""
    entry = _read_credentials().get(provider)
    if entry and entry.get("token"):
        return entry["token"]
    for var in _ENV_VARS.get(provider, []):
        value = os.getenv(var, "")
        if value:
            return value
    return None


def get_credential_source(provider: str) -> Optional[str]:
    entry = _read_credentials().get(provider)
    if entry and entry.get("token"):
        return entry.get("source", "stored")
    if any(os.getenv(var, "") for var in _ENV_VARS.get(provider, [])):
        return "env"
    return None


def resolve_api_key(model: str) -> Optional[str]:
    """API key for calling ``model``; None when nothing is configured.

    Local providers (ollama) need no key and resolve to an empty string.
    """
    if settings.API_KEY:
        return settings.API_KEY
    provider = detect_provider(model) or "openai"
    if provider == "ollama":
        return ""
    return get_credential(provider)


def list_credentials() -> List[dict]:
    """Configured providers with masked keys, for ``modechat auth status``."""
    providers = set(_ENV_VARS) | set(_read_credentials())
    results = []
    for provider in sorted(providers):
        source = get_credential_source(provider)
        if not source:
            continue
        token = get_credential(provider) or ""
        results.append({"provider": provider, "source": source, "masked_token": _mask_token(token)})
    return results


def _mask_token(token: str) -> str:
    if len(token) <= 12:
        return token[:4] + "***"
    return token[:8] + "..." + token[-4:]
