"""Fixed-window request limiter keyed by identity strings.

A bucket is created on first use of a key and replaced once its window has
passed. There is no sweep: stale buckets are simply overwritten on their
next use. A burst straddling a window edge can admit up to twice the limit.
"""

import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Protocol

from modechat.errors import RateLimited

logger = logging.getLogger("modechat.ratelimit")


@dataclass(frozen=True)
class Decision:
    allowed: bool
    retry_after_seconds: int = 0


@dataclass
class RateLimitBucket:
    key: str
    count: int
    reset_at: float  # epoch milliseconds


class RateLimitStore(Protocol):
    """Backing storage for buckets.

    ``check_and_increment`` must be atomic per key. An in-process map is
    enough for a single worker; several workers need a shared store.
    """

    def check_and_increment(
        self, key: str, limit: int, window_ms: int, now_ms: float
    ) -> Decision:
        ...


class InMemoryRateLimitStore:
    """Process-local buckets guarded by a fixed set of lock shards."""

    def __init__(self, shards: int = 64):
        self._buckets: Dict[str, RateLimitBucket] = {}
        self._locks: List[threading.Lock] = [threading.Lock() for _ in range(shards)]

    def _lock_for(self, key: str) -> threading.Lock:
        return self._locks[hash(key) % len(self._locks)]

    def get(self, key: str) -> Optional[RateLimitBucket]:
        return self._buckets.get(key)

    def check_and_increment(
        self, key: str, limit: int, window_ms: int, now_ms: float
    ) -> Decision:
        with self._lock_for(key):
            bucket = self._buckets.get(key)

            # new window
            if bucket is None or now_ms > bucket.reset_at:
                self._buckets[key] = RateLimitBucket(key, 1, now_ms + window_ms)
                return Decision(True)

            if bucket.count >= limit:
                retry_after = max(1, math.ceil((bucket.reset_at - now_ms) / 1000))
                return Decision(False, retry_after)

            bucket.count += 1
            return Decision(True)


def _now_ms() -> float:
    return time.time() * 1000


class RateLimiter:
    """Applies fixed-window limits through a pluggable store."""

    def __init__(
        self,
        store: Optional[RateLimitStore] = None,
        clock: Callable[[], float] = _now_ms,
    ):
        self._store = store if store is not None else InMemoryRateLimitStore()
        self._clock = clock

    def check(self, key: str, limit: int, window_ms: int) -> Decision:
        """Count one request against ``key`` and say whether it may proceed."""
        return self._store.check_and_increment(key, limit, window_ms, self._clock())

    def enforce(self, key: str, limit: int, window_ms: int) -> None:
        """Like :meth:`check` but raises :class:`RateLimited` on rejection."""
        decision = self.check(key, limit, window_ms)
        if not decision.allowed:
            logger.info("Rate limited key=%s retry_after=%ds", key, decision.retry_after_seconds)
            raise RateLimited(decision.retry_after_seconds)
