"""
Shared test fixtures for pytest.

Provides common fakes for all test modules:
- fake_settings: Test environment configuration (in-memory buckets)
- clock: Controllable epoch-seconds clock for token bucket arithmetic
- memory_store: Fresh InMemoryBucketStore
- limiter / controller: TokenBucketLimiter and AdmissionController on the fake clock
- test_app: FastAPI app with its lifespan running
- client: Async HTTP client for testing the FastAPI app
- caller_headers / admin_headers: Gateway headers for API tests
"""

from __future__ import annotations

from collections.abc import AsyncIterator

import httpx
import pytest
from fastapi import FastAPI
from pydantic import SecretStr

from traffic_shaper.config import Environment, RateLimitBackend, Settings, get_settings
from traffic_shaper.core.rate_limit import AdmissionController, TokenBucketLimiter
from traffic_shaper.infra.bucket_store import InMemoryBucketStore
from traffic_shaper.telemetry.logging import clear_context

TEST_ADMIN_KEY = "test-admin-key"


# ------------------------------------------------------------------ #
# Session-scoped: clear settings cache between test sessions
# ------------------------------------------------------------------ #

@pytest.fixture(autouse=True, scope="session")
def _clear_settings_cache():
    """Clear the lru_cache on get_settings so test overrides take effect."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def _clear_log_context():
    yield
    clear_context()


# ------------------------------------------------------------------ #
# Clock & Limiter Fixtures
# ------------------------------------------------------------------ #

class FakeClock:
    """Epoch-seconds clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def memory_store() -> InMemoryBucketStore:
    return InMemoryBucketStore()


@pytest.fixture
def limiter(memory_store: InMemoryBucketStore, clock: FakeClock) -> TokenBucketLimiter:
    return TokenBucketLimiter(memory_store, clock=clock)


@pytest.fixture
def controller(limiter: TokenBucketLimiter) -> AdmissionController:
    return AdmissionController(limiter)


# ------------------------------------------------------------------ #
# Settings & App Fixtures
# ------------------------------------------------------------------ #

@pytest.fixture
def fake_settings() -> Settings:
    """Test environment settings with safe defaults."""
    return Settings(
        environment=Environment.TEST,
        admin_api_key=SecretStr(TEST_ADMIN_KEY),
        rate_limit_backend=RateLimitBackend.MEMORY,
        redis_url="redis://localhost:6379/1",
    )


@pytest.fixture
async def test_app(fake_settings: Settings) -> AsyncIterator[FastAPI]:
    """FastAPI app built with test settings, lifespan started.

    httpx's ASGITransport does not send lifespan events, so the lifespan
    context is entered here directly.
    """
    from traffic_shaper.main import create_app

    app = create_app(fake_settings)
    async with app.router.lifespan_context(app):
        yield app


@pytest.fixture
async def client(test_app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    """Async HTTP client bound to the test app."""
    transport = httpx.ASGITransport(app=test_app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def caller_headers() -> dict[str, str]:
    return {"X-Caller-Id": "user-123", "X-Caller-Tier": "FREE"}


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"X-Admin-Key": TEST_ADMIN_KEY}
