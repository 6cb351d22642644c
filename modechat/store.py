"""Chat message persistence.

The relay only needs two calls: ``create`` and ``list_recent``. Two
backends ship here: an in-process list (default, tests) and an append-only
JSONL file for single-node deployments.
"""

import asyncio
import json
import logging
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field

from modechat.settings import Settings, settings

logger = logging.getLogger("modechat.store")

Role = Literal["user", "assistant"]
Mode = Literal["medical", "therapy", "recipe", "dental"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ChatMessage(BaseModel):
    """One stored turn. Never modified after creation."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    user_id: str
    role: Role
    mode: Mode
    content: str
    created_at: datetime = Field(default_factory=_utcnow)

    def public(self) -> Dict[str, Any]:
        """Shape returned by the list endpoint."""
        return {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "mode": self.mode,
            "createdAt": self.created_at.isoformat(),
        }


class MessageStore(Protocol):
    async def create(self, message: ChatMessage) -> ChatMessage:
        ...

    async def list_recent(
        self, user_id: str, mode: Optional[str] = None, limit: int = 200
    ) -> List[ChatMessage]:
        """Newest ``limit`` messages for the user, returned oldest first."""
        ...


def _recent(messages: List[ChatMessage], limit: int) -> List[ChatMessage]:
    ordered = sorted(messages, key=lambda m: m.created_at)
    return ordered[-limit:] if limit > 0 else []


class InMemoryMessageStore:
    def __init__(self) -> None:
        self._messages: List[ChatMessage] = []
        self._lock = asyncio.Lock()

    async def create(self, message: ChatMessage) -> ChatMessage:
        async with self._lock:
            self._messages.append(message)
        return message

    async def list_recent(
        self, user_id: str, mode: Optional[str] = None, limit: int = 200
    ) -> List[ChatMessage]:
        matching = [
            m for m in self._messages
            if m.user_id == user_id and (mode is None or m.mode == mode)
        ]
        return _recent(matching, limit)

    def all(self) -> List[ChatMessage]:
        return list(self._messages)


class JsonlMessageStore:
    """Append-only JSON lines file; reads scan the whole file."""

    def __init__(self, path: Path):
        self._path = path
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def _append(self, message: ChatMessage) -> None:
        line = message.model_dump_json() + "\n"
        with self._lock:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._path, "a", encoding="utf-8") as f:
                f.write(line)

    def _read(self) -> List[ChatMessage]:
        if not self._path.exists():
            return []
        messages = []
        with self._lock:
            lines = self._path.read_text(encoding="utf-8").splitlines()
        for line in lines:
            if not line.strip():
                continue
            try:
                messages.append(ChatMessage.model_validate(json.loads(line)))
            except (json.JSONDecodeError, ValueError) as e:
                logger.warning("Skipping unreadable message line in %s: %s", self._path, e)
        return messages

    async def create(self, message: ChatMessage) -> ChatMessage:
        await asyncio.to_thread(self._append, message)
        return message

    async def list_recent(
        self, user_id: str, mode: Optional[str] = None, limit: int = 200
    ) -> List[ChatMessage]:
        messages = await asyncio.to_thread(self._read)
        matching = [
            m for m in messages
            if m.user_id == user_id and (mode is None or m.mode == mode)
        ]
        return _recent(matching, limit)


def build_store(cfg: Settings = settings) -> MessageStore:
    if cfg.STORE == "memory":
        return InMemoryMessageStore()
    if cfg.STORE == "jsonl":
        return JsonlMessageStore(cfg.DATA_DIR / "messages.jsonl")
    raise ValueError(f"Unknown store {cfg.STORE!r} (expected memory or jsonl)")
