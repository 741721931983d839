# SPDX-License-Identifier: MIT
# Copyright (c) 2025 OmniNode Team
"""Tests for the FastAPI surface in driftguard.proxy.server."""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

import httpx
import pytest
from fastapi import FastAPI

from driftguard.config.settings import ProxySettings
from driftguard.proxy.forwarder import UpstreamForwarder
from driftguard.proxy.orchestrator import ProxyOrchestrator
from driftguard.proxy.server import create_app, proxy_error

from tests.helpers import assistant_message, dump, make_body

pytestmark = pytest.mark.unit

Handler = Callable[[httpx.Request], httpx.Response]


def app_for(settings: ProxySettings, handler: Handler) -> FastAPI:
    forwarder = UpstreamForwarder(
        settings,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        backoff_base=0.0,
    )
    return create_app(settings, ProxyOrchestrator(settings, forwarder=forwarder))


def client_for(app: FastAPI) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


def reply_with(message: dict[str, Any]) -> Handler:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=message, headers={"request-id": "req_9"})

    return handler


BODY = dump(make_body([{"role": "user", "content": "Add cursor pagination to the orders endpoint"}]))


class TestProxyEndpoint:
    """POST /v1/messages."""

    @pytest.mark.asyncio
    async def test_success(self, settings: ProxySettings) -> None:
        app = app_for(settings, reply_with(assistant_message([{"type": "text", "text": "On it"}])))

        async with client_for(app) as client:
            response = await client.post("/v1/messages", content=BODY, headers={"x-api-key": "sk-test"})
        await app.state.orchestrator.wait_for_background()

        assert response.status_code == 200
        assert response.json()["content"][0]["text"] == "On it"
        assert response.headers["request-id"] == "req_9"
        assert response.headers["content-type"].startswith("application/json")

    @pytest.mark.asyncio
    async def test_body_limit(self, settings: ProxySettings) -> None:
        small = settings.model_copy(update={"body_limit_bytes": 64})
        app = app_for(small, reply_with(assistant_message([])))

        async with client_for(app) as client:
            response = await client.post("/v1/messages", content=BODY)

        assert response.status_code == 413
        assert response.json() == {
            "error": {"type": "proxy_error", "message": "Request body exceeds 64 bytes"}
        }

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("content", "message"),
        [
            (b"{not json", "Request body is not valid JSON"),
            (b"[1, 2]", "Request body must be a JSON object"),
        ],
    )
    async def test_malformed_body(self, settings: ProxySettings, content: bytes, message: str) -> None:
        app = app_for(settings, reply_with(assistant_message([])))

        async with client_for(app) as client:
            response = await client.post("/v1/messages", content=content)

        assert response.status_code == 400
        assert response.json()["error"]["message"] == message

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("error", "status", "message"),
        [
            (httpx.ReadTimeout, 504, "Gateway timeout"),
            (httpx.ConnectError, 502, "Bad gateway"),
        ],
    )
    async def test_upstream_failures(
        self,
        settings: ProxySettings,
        error: type[httpx.TransportError],
        status: int,
        message: str,
    ) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise error("upstream down", request=request)

        app = app_for(settings, handler)

        async with client_for(app) as client:
            response = await client.post("/v1/messages", content=BODY)

        assert response.status_code == status
        assert response.json() == {"error": {"type": "proxy_error", "message": message}}

    @pytest.mark.asyncio
    async def test_unexpected_error_is_masked(self, settings: ProxySettings) -> None:
        class Broken(ProxyOrchestrator):
            async def handle(self, raw_body, body, headers):
                raise RuntimeError("secret internals")

        app = create_app(settings, Broken(settings))

        async with client_for(app) as client:
            response = await client.post("/v1/messages", content=BODY)

        assert response.status_code == 500
        assert response.json() == {"error": {"type": "internal_error", "message": "Internal proxy error"}}
        assert "secret" not in response.text


class TestHealth:
    @pytest.mark.asyncio
    async def test_health_reports_sessions_and_features(self, settings: ProxySettings) -> None:
        app = app_for(settings, reply_with(assistant_message([{"type": "text", "text": "ok"}])))

        async with client_for(app) as client:
            await client.post("/v1/messages", content=BODY)
            await app.state.orchestrator.wait_for_background()
            response = await client.get("/health")

        data = response.json()
        assert response.status_code == 200
        assert data["status"] == "ok"
        assert data["active_sessions"] == 1
        assert data["scorer_enabled"] is False
        assert data["memory_sync_enabled"] is False
        assert "timestamp" in data


def test_proxy_error_envelope() -> None:
    response = proxy_error(502, "Bad gateway")

    assert response.status_code == 502
    assert json.loads(response.body) == {"error": {"type": "proxy_error", "message": "Bad gateway"}}
