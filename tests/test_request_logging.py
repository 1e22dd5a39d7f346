"""Tests for structured logging setup and request id propagation."""

from __future__ import annotations

import re

import httpx
import pytest
import structlog
from fastapi import FastAPI, Request

from traffic_shaper.telemetry.logging import (
    RequestIdMiddleware,
    bind_caller_context,
    clear_context,
    configure_logging,
)


@pytest.fixture
def context_app() -> FastAPI:
    app = FastAPI()
    app.add_middleware(RequestIdMiddleware)

    @app.get("/context")
    async def context(request: Request) -> dict:
        return {
            "state": request.state.request_id,
            "log_context": structlog.contextvars.get_contextvars(),
        }

    return app


@pytest.fixture
async def context_client(context_app):
    transport = httpx.ASGITransport(app=context_app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


async def test_generated_request_id(context_client):
    response = await context_client.get("/context")

    request_id = response.headers["X-Request-Id"]
    assert re.fullmatch(r"req_[0-9a-f]{16}", request_id)
    assert response.json()["state"] == request_id
    assert response.json()["log_context"] == {"request_id": request_id}


async def test_inbound_request_id_is_reused(context_client):
    response = await context_client.get("/context", headers={"X-Request-Id": "edge-42.a:b"})
    assert response.headers["X-Request-Id"] == "edge-42.a:b"


@pytest.mark.parametrize("inbound", ["has spaces", "<script>", "x" * 129])
async def test_unsafe_inbound_request_id_is_replaced(context_client, inbound):
    response = await context_client.get("/context", headers={"X-Request-Id": inbound})
    assert response.headers["X-Request-Id"].startswith("req_")


async def test_previous_request_context_does_not_leak(context_client):
    bind_caller_context("stale-caller", "PRO")
    response = await context_client.get("/context")
    assert "caller_id" not in response.json()["log_context"]


def test_bind_and_clear_caller_context():
    bind_caller_context("user-1", "FREE")
    assert structlog.contextvars.get_contextvars() == {"caller_id": "user-1", "tier": "FREE"}

    clear_context()
    assert structlog.contextvars.get_contextvars() == {}


def test_configure_logging_json_renderer():
    configure_logging(json_logs=True, log_level="INFO")
    processors = structlog.get_config()["processors"]
    assert isinstance(processors[-1], structlog.processors.JSONRenderer)
    assert structlog.contextvars.merge_contextvars in processors


def test_configure_logging_console_renderer():
    configure_logging(json_logs=False, log_level="DEBUG")
    processors = structlog.get_config()["processors"]
    assert isinstance(processors[-1], structlog.dev.ConsoleRenderer)
