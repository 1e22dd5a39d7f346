"""
Redis-backed bucket store shared by horizontally scaled request handlers.

Buckets are stored as compact JSON strings under ``rate-limit:{key}`` with
a millisecond TTL, so idle buckets are evicted by Redis itself. The
compare-and-set runs as a Lua script, which Redis executes atomically:

- GET the current value
- compare it with the expected serialisation (empty string = "absent")
- SET the new value with PX TTL only on match

FailoverBucketStore wraps the Redis store with an in-process fallback.
Admission control must never fail a request because Redis is down: any
Redis error is logged as a warning, counted, and the call is served from
memory. After a failure Redis is skipped for a cooldown period so a dead
server does not add its timeout to every request.
"""

from __future__ import annotations

import json
import time
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import redis.asyncio as aioredis
import structlog
from redis.exceptions import NoScriptError

from traffic_shaper.infra.bucket_store import BucketRecord, BucketStore
from traffic_shaper.middleware.prometheus import record_storage_fallback

log = structlog.get_logger(__name__)

T = TypeVar("T")

KEY_PREFIX = "rate-limit:"

_LUA_COMPARE_AND_SET = """
local current = redis.call('GET', KEYS[1])
local expected = ARGV[1]

if expected == '' then
    if current then
        return 0
    end
elseif current ~= expected then
    return 0
end

redis.call('SET', KEYS[1], ARGV[2], 'PX', tonumber(ARGV[3]))
return 1
"""


def _serialise(record: BucketRecord) -> str:
    return json.dumps(record.to_dict(), separators=(",", ":"), sort_keys=True)


def _deserialise(raw: str) -> BucketRecord:
    return BucketRecord.from_dict(json.loads(raw))


class RedisBucketStore(BucketStore):
    """Bucket store backed by Redis.

    Uses redis-py's asyncio client with short socket timeouts. Errors are
    raised to the caller; fail-open behaviour belongs to FailoverBucketStore.

    Example:
        store = RedisBucketStore("redis://localhost:6379/0")
        await store.connect()
        record = await store.get("chat:send:user-123:FREE")
    """

    name = "redis"

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 0.05,
        client: Any = None,
    ) -> None:
        self._redis_url = redis_url
        self._socket_timeout = socket_timeout
        self._client: Any = client
        self._script_sha: str | None = None

    async def connect(self) -> None:
        """Create the client, load the CAS script and ping the server."""
        if self._client is None:
            self._client = aioredis.from_url(
                self._redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_timeout=self._socket_timeout,
                socket_connect_timeout=self._socket_timeout,
                max_connections=50,
            )
        self._script_sha = await self._client.script_load(_LUA_COMPARE_AND_SET)
        await self._client.ping()
        log.info("bucket_store.redis.connected", url=self._redis_url.split("@")[-1])

    def _require_client(self) -> Any:
        if self._client is None:
            raise RuntimeError("Redis bucket store is not connected")
        return self._client

    async def get(self, key: str) -> BucketRecord | None:
        raw = await self._require_client().get(KEY_PREFIX + key)
        if raw is None:
            return None
        try:
            return _deserialise(raw)
        except (ValueError, KeyError, TypeError) as exc:
            # A corrupt record is treated as absent; the next write replaces it.
            log.warning("bucket_store.redis.corrupt_record", key=key, error=str(exc))
            return None

    async def compare_and_set(
        self,
        key: str,
        expected: BucketRecord | None,
        new: BucketRecord,
        ttl_seconds: int,
    ) -> bool:
        client = self._require_client()
        args = [
            "" if expected is None else _serialise(expected),
            _serialise(new),
            int(ttl_seconds * 1000),
        ]
        if self._script_sha is None:
            self._script_sha = await client.script_load(_LUA_COMPARE_AND_SET)
        try:
            result = await client.evalsha(self._script_sha, 1, KEY_PREFIX + key, *args)
        except NoScriptError:
            # Script cache flushed (restart / SCRIPT FLUSH): run inline, reload later.
            self._script_sha = None
            result = await client.eval(_LUA_COMPARE_AND_SET, 1, KEY_PREFIX + key, *args)
        if int(result) != 1:
            log.debug("bucket_store.redis.cas_failed", key=key)
            return False
        return True

    async def put(self, key: str, record: BucketRecord, ttl_seconds: int) -> None:
        await self._require_client().set(
            KEY_PREFIX + key,
            _serialise(record),
            px=int(ttl_seconds * 1000),
        )

    async def delete(self, key: str) -> None:
        await self._require_client().delete(KEY_PREFIX + key)

    async def info(self) -> dict[str, Any]:
        try:
            client = self._require_client()
            await client.ping()
            return {
                "backend": self.name,
                "url": self._redis_url.split("@")[-1],
                "connected": True,
                "db_size": await client.dbsize(),
            }
        except Exception as exc:
            return {
                "backend": self.name,
                "url": self._redis_url.split("@")[-1],
                "connected": False,
                "error": str(exc),
            }

    async def close(self) -> None:
        """Close the Redis connection pool."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            log.info("bucket_store.redis.closed")


class FailoverBucketStore(BucketStore):
    """Primary store with an in-process fallback (fail open).

    Every operation tries the primary unless it failed within the last
    ``retry_cooldown_seconds``; on any primary error the same operation is
    served by the fallback. Quotas are then per-instance rather than global
    until Redis recovers, which is the accepted trade-off.

    Explicit writes (``put`` and ``delete``, i.e. admin resets) served by the
    fallback are queued per key and replayed to the primary before the first
    operation after it recovers. Token consumption is not replayed.
    """

    name = "redis"

    def __init__(
        self,
        primary: BucketStore,
        fallback: BucketStore,
        *,
        retry_cooldown_seconds: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._primary = primary
        self._fallback = fallback
        self._cooldown = retry_cooldown_seconds
        self._clock = clock
        self._down_until: float | None = None
        # key -> (record, ttl) to write, or None to delete.
        self._pending: dict[str, tuple[BucketRecord, int] | None] = {}

    @property
    def degraded(self) -> bool:
        return self._down_until is not None and self._clock() < self._down_until

    async def connect(self) -> None:
        """Connect the primary. A failure leaves the store degraded, not broken."""
        connect = getattr(self._primary, "connect", None)
        if connect is None:
            return
        try:
            await connect()
        except Exception as exc:
            self._mark_down("connect", exc)

    def _mark_down(self, operation: str, exc: Exception) -> None:
        self._down_until = self._clock() + self._cooldown
        record_storage_fallback(operation)
        log.warning(
            "rate_limit.storage_degraded",
            operation=operation,
            backend=self._primary.name,
            fallback=self._fallback.name,
            error_type=type(exc).__name__,
            error=str(exc),
            retry_in_seconds=self._cooldown,
        )

    async def _call(
        self,
        operation: str,
        primary_call: Callable[[], Awaitable[T]],
        fallback_call: Callable[[], Awaitable[T]],
    ) -> T:
        if not self.degraded:
            try:
                if self._pending:
                    await self._replay_pending()
                result = await primary_call()
            except Exception as exc:
                self._mark_down(operation, exc)
            else:
                if self._down_until is not None:
                    self._down_until = None
                    log.info("bucket_store.redis.recovered", operation=operation)
                return result
        return await fallback_call()

    async def _replay_pending(self) -> None:
        while self._pending:
            key, write = next(iter(self._pending.items()))
            if write is None:
                await self._primary.delete(key)
            else:
                await self._primary.put(key, *write)
            del self._pending[key]
            log.info("bucket_store.redis.write_replayed", key=key, deleted=write is None)

    async def get(self, key: str) -> BucketRecord | None:
        return await self._call(
            "get",
            lambda: self._primary.get(key),
            lambda: self._fallback.get(key),
        )

    async def compare_and_set(
        self,
        key: str,
        expected: BucketRecord | None,
        new: BucketRecord,
        ttl_seconds: int,
    ) -> bool:
        return await self._call(
            "compare_and_set",
            lambda: self._primary.compare_and_set(key, expected, new, ttl_seconds),
            lambda: self._fallback.compare_and_set(key, expected, new, ttl_seconds),
        )

    async def put(self, key: str, record: BucketRecord, ttl_seconds: int) -> None:
        async def fallback_put() -> None:
            await self._fallback.put(key, record, ttl_seconds)
            self._pending[key] = (record, ttl_seconds)

        await self._call("put", lambda: self._primary.put(key, record, ttl_seconds), fallback_put)

    async def delete(self, key: str) -> None:
        # Clear both so a stale in-memory bucket does not resurface on failover.
        await self._fallback.delete(key)
        async def fallback_delete() -> None:
            await self._fallback.delete(key)
            self._pending[key] = None

        await self._call("delete", lambda: self._primary.delete(key), fallback_delete)

    async def info(self) -> dict[str, Any]:
        primary = await self._primary.info()
        return {
            **primary,
            "degraded": self.degraded,
            "fallback": await self._fallback.info(),
        }

    async def close(self) -> None:
        try:
            await self._primary.close()
        except Exception as exc:
            log.warning("bucket_store.close_failed", backend=self._primary.name, error=str(exc))
        await self._fallback.close()
