"""Per-caller admission control using lazily refilled token buckets.

Algorithm: one bucket per (endpoint, caller, tier) key. A bucket starts
full. On every consume the tokens accrued since the last refill
(``elapsed_seconds * refill_rate``) are added, capped at ``max_tokens``
so long idle periods never build up more than one burst. If at least one
token is available it is taken and the new state written back; otherwise
the request is denied with the time until one token will exist.

There is no background ticking: refill is computed at read time, so cost
is O(1) per access and sparse keys cost nothing while idle. Tokens are
fractional, which is what makes "10 requests per hour" policies work.

Atomicity is per key: the new state is written with compare-and-set
against the state that was read, retrying on conflict. Two concurrent
consumes can never both spend the last token. Denials do not write.
"""

from __future__ import annotations

import math
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import structlog
from fastapi import HTTPException, status

from traffic_shaper.core.policies import (
    RATE_LIMIT_POLICIES,
    PolicyTable,
    RateLimitPolicy,
    describe_policy,
    get_policy,
    policy_window_seconds,
)
from traffic_shaper.core.tiers import (
    RateLimitEndpoint,
    UserTier,
    bucket_key,
    parse_endpoint,
    parse_tier,
    validate_caller_id,
)
from traffic_shaper.infra.bucket_store import BucketRecord, BucketStore
from traffic_shaper.middleware.prometheus import record_rate_limit_decision

log = structlog.get_logger(__name__)

# Retry-After advertised when a policy can never admit a request.
DISABLED_RETRY_AFTER_SECONDS = 3600.0


class UnknownEndpointError(ValueError):
    """The endpoint is not in the rate limit policy table."""


@dataclass(frozen=True)
class ConsumeResult:
    """Outcome of one admission check.

    Attributes:
        allowed: Whether the request may proceed
        remaining: Whole tokens left after this request (0 when denied)
        reset_at: Epoch milliseconds by which the bucket is full again (hint)
        retry_after: Seconds until one token is available (0.0 when allowed)
        limit: Bucket capacity under the applied policy
    """

    allowed: bool
    remaining: int
    reset_at: int
    retry_after: float
    limit: int

    @property
    def retry_after_header(self) -> int:
        """Whole seconds for the Retry-After header (never 0 on a denial)."""
        if self.allowed:
            return 0
        return max(1, math.ceil(self.retry_after))

    def headers(self) -> dict[str, str]:
        """Build rate limit response headers."""
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(max(0, self.remaining)),
            "X-RateLimit-Reset": str(self.reset_at // 1000),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after_header)
        return headers


class TokenBucketLimiter:
    """Token bucket arithmetic over an injected BucketStore.

    Holds no bucket state itself; construct one per store. The clock
    returns epoch seconds and is injectable for tests.
    """

    def __init__(
        self,
        store: BucketStore,
        *,
        clock: Callable[[], float] = time.time,
        key_ttl_seconds: int = 3600,
        max_cas_retries: int = 8,
    ) -> None:
        self._store = store
        self._clock = clock
        self._key_ttl = key_ttl_seconds
        self._max_retries = max_cas_retries

    @property
    def store(self) -> BucketStore:
        return self._store

    @staticmethod
    def _refilled_tokens(
        record: BucketRecord | None,
        policy: RateLimitPolicy,
        now: float,
    ) -> float:
        if record is None:
            return float(policy.max_tokens)
        # A clock that moved backwards (or a skewed peer) refills nothing.
        elapsed = max(0.0, now - record.last_refill_at)
        tokens = record.tokens + elapsed * policy.refill_rate_per_second
        return max(0.0, min(float(policy.max_tokens), tokens))

    def _ttl_for(self, policy: RateLimitPolicy) -> int:
        # Evicting a bucket before it could have refilled would hand out
        # free tokens, so retention is at least one full window.
        window = policy_window_seconds(policy)
        if math.isinf(window):
            return self._key_ttl
        # round() absorbs float noise such as 60.00000000000001.
        return max(self._key_ttl, math.ceil(round(window, 6)))

    @staticmethod
    def _reset_at_ms(tokens: float, policy: RateLimitPolicy, now: float) -> int:
        missing = max(0.0, policy.max_tokens - tokens)
        if missing == 0:
            seconds = 0.0
        elif policy.refill_rate_per_second > 0:
            seconds = missing / policy.refill_rate_per_second
        else:
            seconds = DISABLED_RETRY_AFTER_SECONDS
        return math.ceil((now + seconds) * 1000)

    def _denied(self, tokens: float, policy: RateLimitPolicy, now: float) -> ConsumeResult:
        if policy.is_disabled or policy.refill_rate_per_second <= 0:
            retry_after = DISABLED_RETRY_AFTER_SECONDS
        else:
            retry_after = (1.0 - tokens) / policy.refill_rate_per_second
        return ConsumeResult(
            allowed=False,
            remaining=0,
            reset_at=math.ceil((now + retry_after) * 1000),
            retry_after=retry_after,
            limit=int(policy.max_tokens),
        )

    async def consume(self, key: str, policy: RateLimitPolicy) -> ConsumeResult:
        """Try to take one token from the bucket for ``key``."""
        now = self._clock()
        for _ in range(self._max_retries):
            current = await self._store.get(key)
            tokens = self._refilled_tokens(current, policy, now)

            if tokens < 1.0:
                return self._denied(tokens, policy, now)

            remaining = tokens - 1.0
            last_refill_at = now if current is None else max(now, current.last_refill_at)
            updated = BucketRecord(tokens=remaining, last_refill_at=last_refill_at)
            if await self._store.compare_and_set(key, current, updated, self._ttl_for(policy)):
                return ConsumeResult(
                    allowed=True,
                    remaining=math.floor(remaining),
                    reset_at=self._reset_at_ms(remaining, policy, now),
                    retry_after=0.0,
                    limit=int(policy.max_tokens),
                )
            # Lost the race: another request wrote first. Re-read and retry.
            now = self._clock()

        log.warning(
            "rate_limit.cas_contention",
            key=key,
            attempts=self._max_retries,
        )
        return ConsumeResult(
            allowed=False,
            remaining=0,
            reset_at=math.ceil(now * 1000 + policy.refill_interval_ms),
            retry_after=policy.refill_interval_ms / 1000,
            limit=int(policy.max_tokens),
        )

    async def peek(self, key: str, policy: RateLimitPolicy) -> float:
        """Current (refilled) token count without consuming or writing."""
        current = await self._store.get(key)
        return self._refilled_tokens(current, policy, self._clock())

    async def reset(self, key: str, policy: RateLimitPolicy) -> None:
        """Restore the bucket to full capacity. Idempotent; last writer wins."""
        record = BucketRecord(tokens=float(policy.max_tokens), last_refill_at=self._clock())
        await self._store.put(key, record, self._ttl_for(policy))


class AdmissionController:
    """Admission checks by (endpoint, caller, tier).

    Parses and validates untrusted identifiers, resolves the policy, and
    delegates the bucket arithmetic to TokenBucketLimiter.
    """

    def __init__(
        self,
        limiter: TokenBucketLimiter,
        policies: PolicyTable = RATE_LIMIT_POLICIES,
    ) -> None:
        self._limiter = limiter
        self._policies = policies

    @property
    def limiter(self) -> TokenBucketLimiter:
        return self._limiter

    def _resolve(
        self,
        endpoint: RateLimitEndpoint | str,
        caller_id: str,
        tier: UserTier | str | None,
    ) -> tuple[str, UserTier, str, RateLimitPolicy]:
        caller = validate_caller_id(caller_id)
        parsed_tier = parse_tier(tier)
        parsed_endpoint = parse_endpoint(endpoint)
        endpoint_name = parsed_endpoint.value if parsed_endpoint else str(endpoint).strip().lower()
        policy = get_policy(endpoint_name, parsed_tier, self._policies)
        return endpoint_name, parsed_tier, bucket_key(endpoint_name, caller, parsed_tier), policy

    async def check(
        self,
        endpoint: RateLimitEndpoint | str,
        caller_id: str,
        tier: UserTier | str | None,
    ) -> ConsumeResult:
        """Consume one request of quota for the caller.

        Raises:
            InvalidCallerIdError: If caller_id is empty or malformed.
        """
        endpoint_name, parsed_tier, key, policy = self._resolve(endpoint, caller_id, tier)
        result = await self._limiter.consume(key, policy)
        # Unknown endpoints share one label to keep metric cardinality bounded.
        metric_endpoint = endpoint_name if parse_endpoint(endpoint_name) else "other"
        record_rate_limit_decision(metric_endpoint, parsed_tier.value, result.allowed)

        if not result.allowed:
            log.warning(
                "rate_limit.exceeded",
                endpoint=endpoint_name,
                caller_id=caller_id,
                tier=parsed_tier.value,
                retry_after=round(result.retry_after, 3),
            )
        return result

    async def reset(
        self,
        endpoint: RateLimitEndpoint | str,
        caller_id: str,
        tier: UserTier | str | None = None,
    ) -> list[UserTier]:
        """Refill the caller's bucket for one tier, or for every tier when omitted.

        Raises:
            UnknownEndpointError: If the endpoint is not rate limited.
            InvalidCallerIdError: If caller_id is empty or malformed.
        """
        parsed_endpoint = parse_endpoint(endpoint)
        if parsed_endpoint is None:
            raise UnknownEndpointError(f"Endpoint '{endpoint}' is not rate-limited")
        caller = validate_caller_id(caller_id)
        tiers = [parse_tier(tier)] if tier is not None else list(UserTier)

        for reset_tier in tiers:
            policy = get_policy(parsed_endpoint, reset_tier, self._policies)
            await self._limiter.reset(bucket_key(parsed_endpoint, caller, reset_tier), policy)

        log.info(
            "rate_limit.reset",
            endpoint=parsed_endpoint.value,
            caller_id=caller,
            tiers=[t.value for t in tiers],
        )
        return tiers

    async def remaining(
        self,
        endpoint: RateLimitEndpoint | str,
        caller_id: str,
        tier: UserTier | str | None,
    ) -> int:
        """Whole requests the caller could make right now, without consuming."""
        _, _, key, policy = self._resolve(endpoint, caller_id, tier)
        return math.floor(await self._limiter.peek(key, policy))

    def describe_limits(self, tier: UserTier | str | None) -> dict[str, dict[str, Any]]:
        """Configured limits for every endpoint at the given tier."""
        parsed_tier = parse_tier(tier)
        limits: dict[str, dict[str, Any]] = {}
        for endpoint in RateLimitEndpoint:
            policy = get_policy(endpoint, parsed_tier, self._policies)
            limits[endpoint.value] = {
                "description": describe_policy(policy),
                "maxRequests": int(policy.max_tokens),
                "refillRate": policy.refill_rate_per_second,
                "refillInterval": policy.refill_interval_ms,
                "tier": parsed_tier.value,
                "available": not policy.is_disabled,
            }
        return limits


class RateLimitExceeded(HTTPException):
    """HTTP 429 carrying Retry-After and X-RateLimit-* headers."""

    def __init__(self, result: ConsumeResult, *, endpoint: str, tier: UserTier) -> None:
        super().__init__(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={
                "code": "RATE_LIMIT_EXCEEDED",
                "message": "Too many requests. Please try again later.",
                "details": {
                    "retryAfter": result.retry_after_header,
                    "limit": result.limit,
                    "tier": tier.value,
                    "endpoint": endpoint,
                },
            },
            headers=result.headers(),
        )
        self.result = result
