"""Tier-based rate limit policy table.

Quotas:
- FREE: limited access (20 req/min chat, no uploads)
- PRO: medium access (100 req/min chat, 10 uploads/hour)
- ENTERPRISE: high access (1000 req/min chat, 100 uploads/hour)

Every policy is a token bucket: ``max_tokens`` is the burst capacity and
``refill_rate_per_second = max_tokens / window_seconds``. A FREE caller on
chat:send can burst 20 requests, then gets one request every 3 seconds.

Lookups never fail at request time. Unknown tiers resolve to FREE and
unknown endpoints resolve to DEFAULT_POLICY (api:general at FREE, the most
restrictive general-purpose policy). Structural problems with the table are
caught once, at startup, by validate_policy_table().
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass

from traffic_shaper.core.tiers import (
    RateLimitEndpoint,
    UserTier,
    parse_endpoint,
    parse_tier,
)

_MINUTE = 60
_HOUR = 3600


class PolicyConfigurationError(ValueError):
    """The policy table is incomplete or holds invalid values. Fatal at startup."""


@dataclass(frozen=True)
class RateLimitPolicy:
    """Token bucket parameters for one (endpoint, tier) pair.

    Attributes:
        max_tokens: Bucket capacity (burst size). 0 disables the endpoint.
        refill_rate_per_second: Tokens added per second, fractional allowed
        refill_interval_ms: Refill granularity advertised to clients
    """

    max_tokens: float
    refill_rate_per_second: float
    refill_interval_ms: int = 1000

    def __post_init__(self) -> None:
        if self.max_tokens < 0:
            raise PolicyConfigurationError("max_tokens cannot be negative")
        if self.refill_rate_per_second < 0:
            raise PolicyConfigurationError("refill_rate_per_second cannot be negative")
        if self.refill_interval_ms <= 0:
            raise PolicyConfigurationError("refill_interval_ms must be positive")

    @classmethod
    def per_window(cls, requests: int, window_seconds: int) -> RateLimitPolicy:
        """Policy allowing ``requests`` per ``window_seconds`` with full burst."""
        return cls(
            max_tokens=requests,
            refill_rate_per_second=requests / window_seconds if requests else 0.0,
        )

    @property
    def is_disabled(self) -> bool:
        """True when no request can ever be admitted under this policy."""
        return self.max_tokens < 1


PolicyTable = Mapping[RateLimitEndpoint, Mapping[UserTier, RateLimitPolicy]]


RATE_LIMIT_POLICIES: PolicyTable = {
    # Primary chat endpoint; the most important one to limit.
    RateLimitEndpoint.CHAT_SEND: {
        UserTier.FREE: RateLimitPolicy.per_window(20, _MINUTE),
        UserTier.PRO: RateLimitPolicy.per_window(100, _MINUTE),
        UserTier.ENTERPRISE: RateLimitPolicy.per_window(1000, _MINUTE),
    },
    RateLimitEndpoint.CHAT_SESSIONS: {
        UserTier.FREE: RateLimitPolicy.per_window(5, _MINUTE),
        UserTier.PRO: RateLimitPolicy.per_window(50, _MINUTE),
        UserTier.ENTERPRISE: RateLimitPolicy.per_window(500, _MINUTE),
    },
    # Uploads trigger RAG indexing. Not available on FREE.
    RateLimitEndpoint.DOCUMENTS_UPLOAD: {
        UserTier.FREE: RateLimitPolicy.per_window(0, _HOUR),
        UserTier.PRO: RateLimitPolicy.per_window(10, _HOUR),
        UserTier.ENTERPRISE: RateLimitPolicy.per_window(100, _HOUR),
    },
    RateLimitEndpoint.API_GENERAL: {
        UserTier.FREE: RateLimitPolicy.per_window(30, _MINUTE),
        UserTier.PRO: RateLimitPolicy.per_window(200, _MINUTE),
        UserTier.ENTERPRISE: RateLimitPolicy.per_window(2000, _MINUTE),
    },
}

DEFAULT_POLICY: RateLimitPolicy = RATE_LIMIT_POLICIES[RateLimitEndpoint.API_GENERAL][
    UserTier.FREE
]


def get_policy(
    endpoint: RateLimitEndpoint | str,
    tier: UserTier | str | None,
    table: PolicyTable = RATE_LIMIT_POLICIES,
) -> RateLimitPolicy:
    """Resolve the policy for an endpoint and tier.

    Unknown tier -> FREE. Unknown endpoint (or a table missing the pair) ->
    DEFAULT_POLICY.
    """
    parsed_endpoint = parse_endpoint(endpoint)
    parsed_tier = parse_tier(tier)
    if parsed_endpoint is None:
        return DEFAULT_POLICY
    tiers = table.get(parsed_endpoint)
    if tiers is None:
        return DEFAULT_POLICY
    return tiers.get(parsed_tier, DEFAULT_POLICY)


def validate_policy_table(table: PolicyTable = RATE_LIMIT_POLICIES) -> None:
    """Check that every endpoint defines every tier with a valid policy.

    Raises:
        PolicyConfigurationError: On the first problem found.
    """
    missing: list[str] = []
    for endpoint in RateLimitEndpoint:
        tiers = table.get(endpoint)
        if tiers is None:
            missing.append(endpoint.value)
            continue
        for tier in UserTier:
            policy = tiers.get(tier)
            if policy is None:
                missing.append(f"{endpoint.value}/{tier.value}")
            elif not isinstance(policy, RateLimitPolicy):
                raise PolicyConfigurationError(
                    f"{endpoint.value}/{tier.value}: expected RateLimitPolicy, "
                    f"got {type(policy).__name__}"
                )
    if missing:
        raise PolicyConfigurationError(
            "Rate limit policy table is incomplete: " + ", ".join(missing)
        )


def policy_window_seconds(policy: RateLimitPolicy) -> float:
    """Seconds needed to refill an empty bucket. ``inf`` when it never refills."""
    if policy.refill_rate_per_second <= 0:
        return math.inf
    return policy.max_tokens / policy.refill_rate_per_second


def describe_policy(policy: RateLimitPolicy) -> str:
    """Human-readable description, e.g. ``"20 requests per minute"``."""
    if policy.is_disabled:
        return "Not available for this tier"

    count = int(policy.max_tokens)
    seconds = policy_window_seconds(policy)
    if math.isinf(seconds):
        return f"{count} requests (no refill)"
    # Refill rates are floats, so a 60 s window may come back as 60.00000000000001.
    seconds = round(seconds, 6)
    if seconds <= 1:
        return f"{count} requests per second"
    if seconds < _MINUTE:
        return f"{count} requests per {round(seconds)} seconds"
    if seconds <= _MINUTE:
        return f"{count} requests per minute"
    if seconds < _HOUR:
        minutes = round(seconds / _MINUTE)
        return f"{count} requests per {minutes} minutes"
    hours = round(seconds / _HOUR)
    if hours == 1:
        return f"{count} requests per hour"
    return f"{count} requests per {hours} hours"
