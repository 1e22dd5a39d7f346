"""Closed tier and endpoint types, parsed from untrusted strings at the edge.

Tier and endpoint identifiers arrive as free-form strings (session claims,
route names, admin payloads). They are converted to StrEnum members here and
nowhere else. Unknown tiers resolve to FREE: a caller whose subscription
level cannot be established gets the most restrictive treatment, never an
error and never a more generous tier.
"""

from __future__ import annotations

import re
from enum import StrEnum

import structlog

log = structlog.get_logger(__name__)

MAX_CALLER_ID_LENGTH = 256

# Printable, no whitespace. ':' is allowed ("ip:10.0.0.1") because the
# bucket key is unambiguous given the closed endpoint prefix and tier suffix.
_CALLER_ID_RE = re.compile(r"^[^\s\x00-\x1f\x7f]+$")


class UserTier(StrEnum):
    """Caller subscription level. Gates both quota policy and model eligibility."""

    FREE = "FREE"
    PRO = "PRO"
    ENTERPRISE = "ENTERPRISE"


class RateLimitEndpoint(StrEnum):
    """Rate-limited operations."""

    CHAT_SEND = "chat:send"
    CHAT_SESSIONS = "chat:sessions"
    DOCUMENTS_UPLOAD = "documents:upload"
    API_GENERAL = "api:general"


class InvalidCallerIdError(ValueError):
    """Caller identifier is empty or malformed. Surfaced as HTTP 400."""


def parse_tier(value: str | UserTier | None) -> UserTier:
    """Parse an untrusted tier string. Unknown values resolve to FREE."""
    if isinstance(value, UserTier):
        return value
    if isinstance(value, str):
        try:
            return UserTier(value.strip().upper())
        except ValueError:
            pass
    log.debug("tiers.unknown_tier", tier=value, resolved=UserTier.FREE.value)
    return UserTier.FREE


def parse_endpoint(value: str | RateLimitEndpoint | None) -> RateLimitEndpoint | None:
    """Parse an untrusted endpoint identifier. Returns None when unknown."""
    if isinstance(value, RateLimitEndpoint):
        return value
    if not isinstance(value, str):
        return None
    try:
        return RateLimitEndpoint(value.strip().lower())
    except ValueError:
        return None


def validate_caller_id(value: object) -> str:
    """Return the normalised caller id or raise InvalidCallerIdError."""
    if not isinstance(value, str):
        raise InvalidCallerIdError("caller id must be a string")
    caller_id = value.strip()
    if not caller_id:
        raise InvalidCallerIdError("caller id must not be empty")
    if len(caller_id) > MAX_CALLER_ID_LENGTH:
        raise InvalidCallerIdError(
            f"caller id exceeds {MAX_CALLER_ID_LENGTH} characters"
        )
    if not _CALLER_ID_RE.match(caller_id):
        raise InvalidCallerIdError(
            "caller id must not contain whitespace or control characters"
        )
    return caller_id


def bucket_key(endpoint: RateLimitEndpoint | str, caller_id: str, tier: UserTier) -> str:
    """Build the bucket key: ``{endpoint}:{caller_id}:{tier}``.

    Example: ``chat:send:user-123:FREE``
    """
    return f"{endpoint}:{caller_id}:{tier.value}"
