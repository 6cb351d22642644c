"""Server-push event framing and the relay that writes a chat stream.

Wire format, one block per event::

    event: token
    data: first line of the payload
    data: second line

Blocks end with a blank line. ``meta`` and ``done`` payloads are JSON,
``token`` is a raw text fragment and ``error`` is a plain message.
Frames are encoded by sse-starlette's ``ServerSentEvent``.
"""

import asyncio
import enum
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from sse_starlette import ServerSentEvent

logger = logging.getLogger("modechat.streaming")


class EventKind(str, enum.Enum):
    META = "meta"
    TOKEN = "token"
    DONE = "done"
    ERROR = "error"


_JSON_KINDS = frozenset({EventKind.META, EventKind.DONE})
_TERMINAL_KINDS = frozenset({EventKind.DONE, EventKind.ERROR})


@dataclass(frozen=True)
class StreamEvent:
    kind: EventKind
    payload: Any

    @classmethod
    def meta(cls, mode: str, language: str, direction: str) -> "StreamEvent":
        return cls(EventKind.META, {"mode": mode, "language": language, "direction": direction})

    @classmethod
    def token(cls, text: str) -> "StreamEvent":
        return cls(EventKind.TOKEN, text)

    @classmethod
    def done(cls, payload: Dict[str, Any]) -> "StreamEvent":
        return cls(EventKind.DONE, payload)

    @classmethod
    def error(cls, message: str) -> "StreamEvent":
        return cls(EventKind.ERROR, message)

    @property
    def terminal(self) -> bool:
        return self.kind in _TERMINAL_KINDS

    def data(self) -> str:
        if self.kind in _JSON_KINDS:
            return json.dumps(self.payload, ensure_ascii=False)
        return str(self.payload)


# ---------------------------------------------------------------------------
# Framer / parser
# ---------------------------------------------------------------------------

def encode_event(event: StreamEvent) -> bytes:
    """Frame one event; every physical payload line gets its own data field."""
    return ServerSentEvent(data=event.data(), event=event.kind.value, sep="\n").encode()


class EventParser:
    """Incremental parser for the frames produced by :func:`encode_event`.

    Feed it decoded text in arbitrary chunks. Comment lines (keep-alive
    pings) and blocks with an unknown or missing event name are skipped.
    """

    def __init__(self) -> None:
        self._buffer = ""

    def feed(self, chunk: str) -> List[StreamEvent]:
        self._buffer += chunk.replace("\r\n", "\n").replace("\r", "\n")
        events: List[StreamEvent] = []
        while "\n\n" in self._buffer:
            block, self._buffer = self._buffer.split("\n\n", 1)
            event = self._parse_block(block)
            if event is not None:
                events.append(event)
        return events

    @staticmethod
    def _parse_block(block: str) -> Optional[StreamEvent]:
        name = ""
        data_lines: List[str] = []
        for line in block.split("\n"):
            if not line or line.startswith(":"):
                continue
            field, _, value = line.partition(":")
            if value.startswith(" "):
                value = value[1:]
            if field == "event":
                name = value.strip()
            elif field == "data":
                data_lines.append(value)

        try:
            kind = EventKind(name)
        except ValueError:
            return None

        data = "\n".join(data_lines)
        if kind in _JSON_KINDS:
            try:
                return StreamEvent(kind, json.loads(data))
            except json.JSONDecodeError:
                logger.warning("Malformed %s event payload: %.200s", kind.value, data)
                return None
        return StreamEvent(kind, data)


# ---------------------------------------------------------------------------
# Output channel
# ---------------------------------------------------------------------------

class PeerDisconnected(Exception):
    """The reading side of a relay channel has gone away."""


_CLOSE = object()


class RelayChannel:
    """Non-blocking hand-off from the relay to the HTTP response body.

    ``send`` never waits: frames are queued as they are produced and the
    response drains them with :meth:`frames`. When the response stops
    draining early (client disconnect), ``on_peer_closed`` fires and later
    sends raise :class:`PeerDisconnected`.
    """

    def __init__(self, on_peer_closed: Optional[Callable[[], None]] = None):
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue()
        self._on_peer_closed = on_peer_closed
        self._peer_closed = False
        self._closed = False

    @property
    def peer_closed(self) -> bool:
        return self._peer_closed

    async def send(self, frame: bytes) -> None:
        if self._peer_closed:
            raise PeerDisconnected()
        self._queue.put_nowait(frame)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_CLOSE)

    def mark_peer_closed(self) -> None:
        if self._peer_closed:
            return
        self._peer_closed = True
        if self._on_peer_closed is not None:
            self._on_peer_closed()

    async def frames(self) -> AsyncIterator[bytes]:
        finished = False
        try:
            while True:
                item = await self._queue.get()
                if item is _CLOSE:
                    finished = True
                    return
                yield item
        finally:
            if not finished:
                self.mark_peer_closed()


# ---------------------------------------------------------------------------
# Relay
# ---------------------------------------------------------------------------

class RelayState(str, enum.Enum):
    OPEN = "open"
    META_SENT = "meta_sent"
    STREAMING = "streaming"
    DONE = "done"
    ERRORED = "errored"
    CLOSED = "closed"


class StreamRelay:
    """Writes one chat stream: meta, tokens, exactly one terminal event.

    A failed write (or a positive ``is_disconnected`` check) means the peer
    is gone: the relay sets ``cancel`` so the upstream call stops, makes a
    best-effort attempt at a terminal error, and closes.
    """

    def __init__(
        self,
        channel: RelayChannel,
        cancel: asyncio.Event,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
    ):
        self._channel = channel
        self._cancel = cancel
        self._is_disconnected = is_disconnected
        self.state = RelayState.OPEN
        self.outcome: Optional[RelayState] = None

    @property
    def alive(self) -> bool:
        return self.state in (RelayState.OPEN, RelayState.META_SENT, RelayState.STREAMING)

    async def send_meta(self, mode: str, language: str, direction: str) -> bool:
        if self.state is not RelayState.OPEN:
            raise RuntimeError(f"meta already sent (state={self.state.value})")
        if not await self._write(StreamEvent.meta(mode, language, direction)):
            return False
        self.state = RelayState.META_SENT
        return True

    async def send_token(self, text: str) -> bool:
        """Forward one fragment. Returns False once the peer is gone."""
        if self.state not in (RelayState.META_SENT, RelayState.STREAMING):
            return False
        if not await self._write(StreamEvent.token(text)):
            return False
        self.state = RelayState.STREAMING
        return True

    async def send_done(self, payload: Dict[str, Any]) -> bool:
        return await self._finish(StreamEvent.done(payload), RelayState.DONE)

    async def send_error(self, message: str) -> bool:
        return await self._finish(StreamEvent.error(message), RelayState.ERRORED)

    async def _finish(self, event: StreamEvent, outcome: RelayState) -> bool:
        if not self.alive:
            return False
        if not await self._write(event):
            return False
        self.state = self.outcome = outcome
        self.close()
        return True

    def close(self) -> None:
        if self.state is RelayState.CLOSED:
            return
        self._channel.close()
        self.state = RelayState.CLOSED

    async def _write(self, event: StreamEvent) -> bool:
        try:
            if self._is_disconnected is not None and await self._is_disconnected():
                raise PeerDisconnected()
            await self._channel.send(encode_event(event))
            return True
        except PeerDisconnected:
            await self._on_peer_gone(event)
            return False

    async def _on_peer_gone(self, event: StreamEvent) -> None:
        logger.info("Stream peer disconnected during %s event; cancelling upstream", event.kind.value)
        self._cancel.set()
        if not event.terminal:
            try:
                await self._channel.send(encode_event(StreamEvent.error("Client disconnected.")))
            except PeerDisconnected:
                pass
        self._channel.mark_peer_closed()
        self.outcome = RelayState.ERRORED
        self.close()
