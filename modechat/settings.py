"""Configuration for modechat.

Every value is read from the environment on access, so a ``.env`` loaded by
the CLI (or a monkeypatched variable in tests) is picked up without a restart.
"""

import os
from pathlib import Path
from typing import Optional

MODES = ("medical", "therapy", "recipe", "dental")

# Longer structured answers need more room and more time.
_MODE_TIMEOUT_DEFAULTS = {"recipe": 60.0}
_MODE_MAX_TOKENS_DEFAULTS = {"recipe": 1200}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "")
    try:
        return int(raw) if raw else default
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "")
    try:
        return float(raw) if raw else default
    except ValueError:
        return default


class Settings:
    """Environment-backed settings."""

    @property
    def PORT(self) -> int:
        return _env_int("MODECHAT_PORT", 8860)

    @property
    def PROVIDER(self) -> str:
        """auto | litellm | mock"""
        return os.getenv("MODECHAT_PROVIDER", "auto").strip().lower() or "auto"

    @property
    def MODEL(self) -> str:
        return os.getenv("MODECHAT_MODEL", "gpt-4.1-mini")

    @property
    def API_KEY(self) -> str:
        return os.getenv("MODECHAT_API_KEY", "")

    @property
    def TEMPERATURE(self) -> float:
        return _env_float("MODECHAT_TEMPERATURE", 0.4)

    @property
    def TIMEOUT_S(self) -> float:
        return _env_float("MODECHAT_TIMEOUT_S", 30.0)

    @property
    def MAX_TOKENS(self) -> int:
        return _env_int("MODECHAT_MAX_TOKENS", 700)

    @property
    def RETRY_DELAY_S(self) -> float:
        return _env_float("MODECHAT_RETRY_DELAY_S", 0.5)

    @property
    def MOCK_DELAY_S(self) -> float:
        return _env_float("MODECHAT_MOCK_DELAY_S", 0.0)

    # --- rate limits ---

    @property
    def SEND_LIMIT(self) -> int:
        return _env_int("MODECHAT_SEND_LIMIT", 30)

    @property
    def LIST_LIMIT(self) -> int:
        return _env_int("MODECHAT_LIST_LIMIT", 60)

    @property
    def IP_LIMIT(self) -> int:
        return _env_int("MODECHAT_IP_LIMIT", 120)

    @property
    def RATE_WINDOW_MS(self) -> int:
        return _env_int("MODECHAT_RATE_WINDOW_S", 60) * 1000

    # --- storage, auth, logs ---

    @property
    def STORE(self) -> str:
        """memory | jsonl"""
        return os.getenv("MODECHAT_STORE", "memory").strip().lower() or "memory"

    @property
    def DATA_DIR(self) -> Path:
        return Path(os.getenv("MODECHAT_DATA_DIR", str(Path.home() / ".modechat" / "data")))

    @property
    def LOG_DIR(self) -> Path:
        return Path(os.getenv("MODECHAT_LOG_DIR", str(Path.home() / ".modechat" / "logs")))

    @property
    def REQUEST_LOG(self) -> bool:
        return os.getenv("MODECHAT_REQUEST_LOG", "true").strip().lower() not in ("0", "false", "no")

    @property
    def AUTH_TOKEN(self) -> str:
        return os.getenv("MODECHAT_AUTH_TOKEN", "")

    @property
    def USERS_FILE(self) -> str:
        return os.getenv("MODECHAT_USERS_FILE", "")

    # --- per-mode overrides ---

    def timeout_for(self, mode: str) -> float:
        """Upstream deadline in seconds for one call in ``mode``."""
        default = _MODE_TIMEOUT_DEFAULTS.get(mode, self.TIMEOUT_S)
        return _env_float(f"MODECHAT_TIMEOUT_{mode.upper()}_S", default)

    def max_tokens_for(self, mode: str) -> int:
        default = _MODE_MAX_TOKENS_DEFAULTS.get(mode, self.MAX_TOKENS)
        return _env_int(f"MODECHAT_MAX_TOKENS_{mode.upper()}", default)

    def describe(self) -> dict:
        """Non-secret view of the active configuration."""
        return {
            "provider": self.PROVIDER,
            "model": self.MODEL,
            "store": self.STORE,
            "timeouts": {m: self.timeout_for(m) for m in MODES},
            "max_tokens": {m: self.max_tokens_for(m) for m in MODES},
            "limits": {
                "send": self.SEND_LIMIT,
                "list": self.LIST_LIMIT,
                "ip": self.IP_LIMIT,
                "window_ms": self.RATE_WINDOW_MS,
            },
        }


settings = Settings()


def env_override(name: str, value: Optional[str]) -> None:
    """Set ``name`` in the environment when ``value`` is given (CLI flags)."""
    if value is not None and value != "":
        os.environ[name] = str(value)
