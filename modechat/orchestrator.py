"""Chat send/list orchestration.

Send: rate limit → store the user turn → detect language → prompt →
upstream (whole or streamed) → normalize → store the assistant turn.
Once the user turn is stored, an assistant turn is always stored too: the
real answer or the mode's safe fallback.
"""

import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Literal, Optional, Set

from pydantic import BaseModel, Field, field_validator

from modechat.errors import UpstreamCancelled, UpstreamError, UpstreamFailure
from modechat.language import detect_language, normalize_text, text_direction
from modechat.prompts import disclaimer_for, fallback_text
from modechat.providers import build_provider
from modechat.ratelimit import RateLimiter
from modechat.settings import Settings, settings
from modechat.store import ChatMessage, MessageStore, build_store
from modechat.streaming import RelayChannel, StreamRelay
from modechat.upstream import UpstreamClient

logger = logging.getLogger("modechat.orchestrator")

MAX_MESSAGE_CHARS = 8000
LIST_LIMIT = 200


# ---------------------------------------------------------------------------
# Request / response models
# ---------------------------------------------------------------------------

class ChatRequest(BaseModel):
    message: str = Field(..., min_length=1, max_length=MAX_MESSAGE_CHARS)
    mode: Literal["medical", "therapy", "recipe", "dental"] = "medical"
    stream: bool = False

    @field_validator("message")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("message must not be blank")
        return value


class ChatReply(BaseModel):
    mode: str
    answer: str
    disclaimer: str
    language: str
    direction: str


@dataclass(frozen=True)
class Identity:
    """Who is calling: the authenticated user plus their network address."""

    user_id: str
    ip: str = "unknown"


@dataclass
class StreamSession:
    """A running streamed send. The HTTP layer drains ``frames()``."""

    channel: RelayChannel
    relay: StreamRelay
    task: "asyncio.Task[None]"
    cancel: asyncio.Event

    def frames(self) -> AsyncIterator[bytes]:
        return self.channel.frames()


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class ChatOrchestrator:
    def __init__(
        self,
        store: MessageStore,
        upstream: UpstreamClient,
        limiter: Optional[RateLimiter] = None,
        cfg: Settings = settings,
    ):
        self._store = store
        self._upstream = upstream
        self._limiter = limiter if limiter is not None else RateLimiter()
        self._settings = cfg
        self._pending: Set["asyncio.Task[Any]"] = set()

    @property
    def store(self) -> MessageStore:
        return self._store

    # --- rate limits ---

    def _limit_send(self, identity: Identity) -> None:
        window = self._settings.RATE_WINDOW_MS
        # Per-user first: a caller it turns away must not spend the shared IP budget.
        self._limiter.enforce(f"chat:{identity.user_id}:{identity.ip}", self._settings.SEND_LIMIT, window)
        self._limiter.enforce(f"ip:{identity.ip}", self._settings.IP_LIMIT, window)

    def _limit_list(self, identity: Identity) -> None:
        window = self._settings.RATE_WINDOW_MS
        self._limiter.enforce(f"chat:list:{identity.user_id}:{identity.ip}", self._settings.LIST_LIMIT, window)
        self._limiter.enforce(f"ip:{identity.ip}", self._settings.IP_LIMIT, window)

    # --- persistence ---

    async def _persist(self, identity: Identity, role: str, mode: str, content: str) -> ChatMessage:
        return await self._store.create(
            ChatMessage(user_id=identity.user_id, role=role, mode=mode, content=content)
        )

    async def _write_fallback(self, identity: Identity, mode: str, text: str) -> None:
        try:
            await self._persist(identity, "assistant", mode, text)
        except Exception as e:
            logger.error("Could not store fallback reply for user=%s mode=%s: %s", identity.user_id, mode, e)

    def _spawn(self, coro: Awaitable[Any]) -> "asyncio.Task[Any]":
        task = asyncio.ensure_future(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _store_fallback(self, identity: Identity, mode: str, exc: Optional[BaseException]) -> str:
        """Store the safe reply for a failed exchange and return its text.

        A cancelled caller is not kept waiting: the write then runs in the
        background.
        """
        text = fallback_text(mode)
        if isinstance(exc, UpstreamCancelled):
            self._spawn(self._write_fallback(identity, mode, text))
        else:
            await self._write_fallback(identity, mode, text)
        return text

    async def wait_pending(self) -> None:
        """Wait for background writes and running streams to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # --- send (whole answer) ---

    async def handle_send(
        self,
        identity: Identity,
        request: ChatRequest,
        cancel: Optional[asyncio.Event] = None,
    ) -> ChatReply:
        start_time = time.time()
        mode = request.mode
        self._limit_send(identity)
        await self._persist(identity, "user", mode, request.message)

        language = detect_language(request.message)
        direction = text_direction(language)
        entry = _log_entry(identity, request, language, stream=False)
        try:
            result = await self._upstream.complete(mode, language, request.message, cancel=cancel)
        except UpstreamFailure as exc:
            exc.extra["fallback"] = await self._store_fallback(identity, mode, exc)
            self._log_request(entry, start_time, status="error", error=exc.code)
            raise
        except asyncio.CancelledError:
            self._spawn(self._write_fallback(identity, mode, fallback_text(mode)))
            raise

        answer = normalize_text(result.answer, language)
        await self._persist(identity, "assistant", mode, answer)
        self._log_request(entry, start_time, status="ok", answer=answer)
        return ChatReply(
            mode=mode,
            answer=answer,
            disclaimer=result.disclaimer,
            language=language,
            direction=direction,
        )

    # --- send (streamed) ---

    async def open_stream(
        self,
        identity: Identity,
        request: ChatRequest,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
    ) -> StreamSession:
        """Accept a streamed send and start relaying it in the background.

        Rate limiting and the user-turn write happen before this returns, so
        their failures still reach the caller as ordinary errors.
        """
        self._limit_send(identity)
        await self._persist(identity, "user", request.mode, request.message)

        cancel = asyncio.Event()
        channel = RelayChannel(on_peer_closed=cancel.set)
        relay = StreamRelay(channel, cancel, is_disconnected)
        task = self._spawn(self._relay_exchange(identity, request, relay, cancel))
        return StreamSession(channel=channel, relay=relay, task=task, cancel=cancel)

    async def _relay_exchange(
        self,
        identity: Identity,
        request: ChatRequest,
        relay: StreamRelay,
        cancel: asyncio.Event,
    ) -> None:
        start_time = time.time()
        mode = request.mode
        language = detect_language(request.message)
        direction = text_direction(language)
        entry = _log_entry(identity, request, language, stream=True)
        tokens = self._upstream.stream_tokens(mode, language, request.message, cancel=cancel)

        try:
            try:
                await relay.send_meta(mode, language, direction)
                try:
                    async for piece in tokens:
                        if not await relay.send_token(piece):
                            break
                finally:
                    await tokens.aclose()
                if cancel.is_set():
                    raise UpstreamCancelled()
                if not tokens.answer.strip():
                    raise UpstreamError(None, "The assistant returned an empty answer.")
            except UpstreamFailure as exc:
                await self._store_fallback(identity, mode, exc)
                await relay.send_error(exc.message)
                self._log_request(entry, start_time, status="error", error=exc.code)
                return
            except asyncio.CancelledError:
                cancel.set()
                self._spawn(self._write_fallback(identity, mode, fallback_text(mode)))
                raise
            except Exception as e:
                logger.error("Stream relay failed for user=%s: %s", identity.user_id, e, exc_info=True)
                await self._write_fallback(identity, mode, fallback_text(mode))
                await relay.send_error("Something went wrong.")
                self._log_request(entry, start_time, status="error", error="SERVER_ERROR")
                return

            answer = normalize_text(tokens.answer, language)
            try:
                await self._persist(identity, "assistant", mode, answer)
            except Exception as e:
                logger.error("Could not store reply for user=%s: %s", identity.user_id, e, exc_info=True)
                await relay.send_error("Something went wrong.")
                self._log_request(entry, start_time, status="error", error="SERVER_ERROR")
                return

            await relay.send_done({
                "mode": mode,
                "language": language,
                "direction": direction,
                "answer": answer,
                "disclaimer": disclaimer_for(mode),
            })
            self._log_request(entry, start_time, status="ok", answer=answer)
        finally:
            relay.close()

    # --- list ---

    async def handle_list(self, identity: Identity, mode: Optional[str] = None) -> List[ChatMessage]:
        self._limit_list(identity)
        return await self._store.list_recent(identity.user_id, mode, LIST_LIMIT)

    # --- request log ---

    def _log_request(
        self,
        entry: Dict[str, Any],
        start_time: float,
        status: str,
        error: Optional[str] = None,
        answer: str = "",
    ) -> None:
        """Append a JSON line to the request log and print a summary line."""
        entry = {
            **entry,
            "status": status,
            "error": error,
            "total_latency_ms": int((time.time() - start_time) * 1000),
            "answer_preview": answer[:100],
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if self._settings.REQUEST_LOG:
            try:
                log_dir = self._settings.LOG_DIR
                log_dir.mkdir(parents=True, exist_ok=True)
                with open(log_dir / "requests.jsonl", "a", encoding="utf-8") as f:
                    f.write(json.dumps(entry, ensure_ascii=False, default=str) + "\n")
            except OSError as e:
                logger.warning("Could not write request log: %s", e)

        logger.info(
            "%-6s mode=%-8s lang=%s stream=%s total=%sms %s",
            status, entry["mode"], entry["language"], entry["stream"],
            entry["total_latency_ms"], error or "",
        )


def _log_entry(identity: Identity, request: ChatRequest, language: str, stream: bool) -> Dict[str, Any]:
    return {
        "type": "chat",
        "request_id": str(uuid.uuid4()),
        "user_id": identity.user_id,
        "mode": request.mode,
        "language": language,
        "stream": stream,
        "message_length": len(request.message),
    }


def build_orchestrator(cfg: Settings = settings) -> ChatOrchestrator:
    """Wire the default store, provider and limiter from configuration."""
    provider = build_provider(cfg)
    logger.info("Provider: %s  model=%s  store=%s", provider.name, cfg.MODEL, cfg.STORE)
    return ChatOrchestrator(
        store=build_store(cfg),
        upstream=UpstreamClient(provider, cfg),
        limiter=RateLimiter(),
        cfg=cfg,
    )
