# SPDX-License-Identifier: MIT
# Copyright (c) 2025 OmniNode Team
"""Tests for driftguard.proxy.keepalive.

Time is driven by a fake clock; the upstream is an httpx.MockTransport.
"""

from __future__ import annotations

import json
from typing import Any

import httpx
import pytest
from pydantic import ValidationError

from driftguard.config.settings import ProxySettings
from driftguard.proxy.forwarder import UpstreamForwarder
from driftguard.proxy.keepalive import KEEPALIVE_MESSAGE, CacheKeepAlive

from tests.helpers import assistant_message, dump, make_body

pytestmark = pytest.mark.unit

HEADERS = {"x-api-key": "sk-test", "cookie": "session=1"}
CAPTURED = dump(make_body([{"role": "user", "content": "Add cursor pagination"}]))


class Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class Upstream:
    def __init__(self, status_code: int = 200) -> None:
        self.status_code = status_code
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.status_code != 200:
            return httpx.Response(self.status_code, json={"error": {"type": "overloaded_error"}})
        usage = {"input_tokens": 1, "cache_read_input_tokens": 4096}
        return httpx.Response(200, json=assistant_message([{"type": "text", "text": "ok"}], usage=usage))


def build(settings: ProxySettings, upstream: Upstream, **overrides: Any) -> tuple[CacheKeepAlive, Clock]:
    settings = settings.model_copy(update={"extended_cache_enabled": True, **overrides})
    forwarder = UpstreamForwarder(
        settings,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(upstream)),
        backoff_base=0.0,
    )
    clock = Clock()
    return CacheKeepAlive(settings, forwarder, clock=clock), clock


# =============================================================================
# Capture
# =============================================================================


class TestCapture:
    def test_capture_keeps_body_and_safe_headers(self, settings: ProxySettings) -> None:
        keepalive, clock = build(settings, Upstream())

        keepalive.capture("/repo", CAPTURED, HEADERS)

        entry = keepalive.get("/repo")
        assert entry is not None
        assert entry.body == CAPTURED
        assert entry.headers == {"x-api-key": "sk-test"}
        assert entry.last_activity == clock.now
        assert entry.sent == 0

    def test_recapture_resets_the_entry(self, settings: ProxySettings) -> None:
        keepalive, clock = build(settings, Upstream())
        keepalive.capture("/repo", CAPTURED, HEADERS)
        keepalive.get("/repo").sent = 2
        clock.advance(30)

        keepalive.capture("/repo", "{}", HEADERS)

        assert keepalive.get("/repo").sent == 0
        assert keepalive.get("/repo").body == "{}"
        assert len(keepalive) == 1

    def test_capacity_evicts_least_recent(self, settings: ProxySettings) -> None:
        keepalive, clock = build(settings, Upstream(), extended_cache_max_entries=2)
        for project in ("/a", "/b", "/c"):
            keepalive.capture(project, CAPTURED, HEADERS)
            clock.advance(1)

        assert len(keepalive) == 2
        assert keepalive.get("/a") is None
        assert keepalive.get("/c") is not None

    def test_window_must_be_ordered(self) -> None:
        with pytest.raises(ValidationError, match="extended_cache_idle_seconds"):
            ProxySettings(_env_file=None, extended_cache_idle_seconds=600, extended_cache_max_idle_seconds=300)


# =============================================================================
# Keep-alive pass
# =============================================================================


class TestCheck:
    """Tests for CacheKeepAlive.check."""

    @pytest.mark.asyncio
    async def test_nothing_sent_before_idle_threshold(self, settings: ProxySettings) -> None:
        upstream = Upstream()
        keepalive, clock = build(settings, upstream)
        keepalive.capture("/repo", CAPTURED, HEADERS)
        clock.advance(60)

        assert await keepalive.check() == 0
        assert upstream.requests == []

    @pytest.mark.asyncio
    async def test_idle_project_gets_keepalive(self, settings: ProxySettings) -> None:
        upstream = Upstream()
        keepalive, clock = build(settings, upstream)
        keepalive.capture("/repo", CAPTURED, HEADERS)
        clock.advance(250)

        assert await keepalive.check() == 1

        (request,) = upstream.requests
        sent = request.content.decode("utf-8")
        # Captured bytes up to the messages array end are reused untouched
        assert sent.startswith(CAPTURED[: CAPTURED.rindex("]")])
        assert json.loads(sent)["messages"][-1] == KEEPALIVE_MESSAGE
        assert json.loads(sent)["max_tokens"] == 1024
        assert request.headers["x-api-key"] == "sk-test"
        entry = keepalive.get("/repo")
        assert entry.sent == 1
        assert entry.last_activity == clock.now

    @pytest.mark.asyncio
    async def test_keepalives_are_bounded(self, settings: ProxySettings) -> None:
        upstream = Upstream()
        keepalive, clock = build(settings, upstream)
        keepalive.capture("/repo", CAPTURED, HEADERS)

        sent = []
        for _ in range(3):
            clock.advance(250)
            sent.append(await keepalive.check())

        assert sent == [1, 1, 0]
        assert len(upstream.requests) == 2
        assert keepalive.get("/repo") is None

    @pytest.mark.asyncio
    async def test_stale_entry_is_dropped_unsent(self, settings: ProxySettings) -> None:
        upstream = Upstream()
        keepalive, clock = build(settings, upstream)
        keepalive.capture("/repo", CAPTURED, HEADERS)
        clock.advance(700)

        assert await keepalive.check() == 0
        assert upstream.requests == []
        assert keepalive.get("/repo") is None

    @pytest.mark.asyncio
    async def test_failed_keepalive_drops_entry(self, settings: ProxySettings) -> None:
        upstream = Upstream(status_code=400)
        keepalive, clock = build(settings, upstream)
        keepalive.capture("/repo", CAPTURED, HEADERS)
        keepalive.capture("/other", "not json at all", HEADERS)
        clock.advance(250)

        assert await keepalive.check() == 0
        assert len(upstream.requests) == 1
        assert len(keepalive) == 0
