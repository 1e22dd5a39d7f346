"""Token bucket storage backends.

Defines the BucketStore ABC and the in-process implementation:
- BucketStore: async get / compare_and_set / put contract used by the limiter
- InMemoryBucketStore: dict-backed store with per-key locks and TTL retention

The Redis implementation and the fail-open wrapper live in
traffic_shaper.infra.redis_bucket_store. The factory build_bucket_store()
picks a backend from settings; the in-memory store is always the safe
fallback so admission control keeps working without Redis.
"""

from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from traffic_shaper.config import Settings

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class BucketRecord:
    """Persisted state of one bucket.

    Attributes:
        tokens: Fractional token count at ``last_refill_at``
        last_refill_at: Epoch seconds of the last refill computation
    """

    tokens: float
    last_refill_at: float

    def to_dict(self) -> dict[str, float]:
        return {"tokens": self.tokens, "last_refill_at": self.last_refill_at}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BucketRecord:
        return cls(
            tokens=float(data["tokens"]),
            last_refill_at=float(data["last_refill_at"]),
        )


class BucketStore(ABC):
    """Abstract interface all bucket stores must implement."""

    name: str = "abstract"

    @abstractmethod
    async def get(self, key: str) -> BucketRecord | None:
        """Return the stored record, or None if absent / expired."""

    @abstractmethod
    async def compare_and_set(
        self,
        key: str,
        expected: BucketRecord | None,
        new: BucketRecord,
        ttl_seconds: int,
    ) -> bool:
        """Atomically replace ``expected`` with ``new``.

        ``expected=None`` succeeds only when the key is absent. Returns False
        when the stored record no longer matches ``expected``.
        """

    @abstractmethod
    async def put(self, key: str, record: BucketRecord, ttl_seconds: int) -> None:
        """Unconditionally store ``record`` under ``key``."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Delete key (no-op if key does not exist)."""

    @abstractmethod
    async def info(self) -> dict[str, Any]:
        """Return backend-specific info/stats dict."""

    async def close(self) -> None:
        """Release connections. No-op by default."""


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


class _BucketEntry:
    """Single entry stored by InMemoryBucketStore."""

    __slots__ = ("record", "expires_at")

    def __init__(self, record: BucketRecord, ttl: int, now: float) -> None:
        self.record = record
        self.expires_at: float = now + ttl

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class InMemoryBucketStore(BucketStore):
    """Dict-backed bucket store for single-instance deployments and tests.

    Every read-modify-write runs under a lock owned by that key, so
    concurrent consumes on one key serialise while different keys never
    contend. The locks are threading locks held only across dict
    operations (no awaits inside), which makes the store safe for both
    asyncio tasks and worker threads.

    Idle entries expire after their TTL; expired entries are dropped when
    touched and swept every ``prune_every`` writes.
    """

    name = "memory"

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.monotonic,
        prune_every: int = 1000,
    ) -> None:
        self._store: dict[str, _BucketEntry] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()
        self._clock = clock
        self._prune_every = prune_every
        self._writes = 0

    def _lock_for(self, key: str) -> threading.Lock:
        lock = self._locks.get(key)
        if lock is None:
            with self._registry_lock:
                lock = self._locks.setdefault(key, threading.Lock())
        return lock

    @contextmanager
    def _locked(self, key: str) -> Iterator[None]:
        # A lock may be retired by prune_expired() between lookup and
        # acquire; only proceed once the held lock is still the registered one.
        while True:
            lock = self._lock_for(key)
            lock.acquire()
            if self._locks.get(key) is lock:
                break
            lock.release()
        try:
            yield
        finally:
            lock.release()

    def _live_record(self, key: str, now: float) -> BucketRecord | None:
        entry = self._store.get(key)
        if entry is None:
            return None
        if entry.is_expired(now):
            del self._store[key]
            return None
        return entry.record

    async def get(self, key: str) -> BucketRecord | None:
        with self._locked(key):
            return self._live_record(key, self._clock())

    async def compare_and_set(
        self,
        key: str,
        expected: BucketRecord | None,
        new: BucketRecord,
        ttl_seconds: int,
    ) -> bool:
        with self._locked(key):
            now = self._clock()
            if self._live_record(key, now) != expected:
                return False
            self._store[key] = _BucketEntry(new, ttl_seconds, now)
        self._after_write()
        return True

    async def put(self, key: str, record: BucketRecord, ttl_seconds: int) -> None:
        with self._locked(key):
            self._store[key] = _BucketEntry(record, ttl_seconds, self._clock())
        self._after_write()

    async def delete(self, key: str) -> None:
        with self._locked(key):
            self._store.pop(key, None)

    async def info(self) -> dict[str, Any]:
        self.prune_expired()
        return {
            "backend": self.name,
            "connected": True,
            "total_keys": len(self._store),
        }

    def _after_write(self) -> None:
        self._writes += 1
        if self._writes % self._prune_every == 0:
            self.prune_expired()

    def prune_expired(self) -> int:
        """Drop expired entries and their locks. Returns the number removed."""
        now = self._clock()
        removed = 0
        for key in list(self._store):
            with self._locked(key):
                entry = self._store.get(key)
                if entry is not None and entry.is_expired(now):
                    del self._store[key]
                    removed += 1
        with self._registry_lock:
            for key in [k for k in self._locks if k not in self._store]:
                lock = self._locks[key]
                if lock.acquire(blocking=False):
                    del self._locks[key]
                    lock.release()
        if removed:
            log.debug("bucket_store.memory.pruned", removed=removed)
        return removed


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


async def build_bucket_store(settings: Settings) -> BucketStore:
    """Return the BucketStore for the configured backend.

    ``memory`` -> InMemoryBucketStore. ``redis`` -> a FailoverBucketStore
    wrapping Redis with an in-memory fallback. If Redis cannot be reached at
    startup the wrapper starts degraded (serving from memory) rather than
    failing the application.
    """
    from traffic_shaper.config import RateLimitBackend

    if settings.rate_limit_backend != RateLimitBackend.REDIS:
        log.info("bucket_store.backend_selected", backend="memory")
        return InMemoryBucketStore()

    from traffic_shaper.infra.redis_bucket_store import (
        FailoverBucketStore,
        RedisBucketStore,
    )

    primary = RedisBucketStore(
        settings.redis_url,
        socket_timeout=settings.redis_socket_timeout_seconds,
    )
    store = FailoverBucketStore(
        primary,
        InMemoryBucketStore(),
        retry_cooldown_seconds=settings.redis_retry_cooldown_seconds,
    )
    await store.connect()
    log.info(
        "bucket_store.backend_selected",
        backend="redis",
        url=settings.redis_url.split("@")[-1],
        degraded=store.degraded,
    )
    return store
