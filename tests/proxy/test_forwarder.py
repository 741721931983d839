# SPDX-License-Identifier: MIT
# Copyright (c) 2025 OmniNode Team
"""Tests for driftguard.proxy.forwarder."""

from __future__ import annotations

import json

import httpx
import pytest

from driftguard.config.settings import ProxySettings
from driftguard.lib.errors import ForwardError
from driftguard.proxy.forwarder import UpstreamForwarder, iter_sse_events, reassemble_sse

from tests.helpers import assistant_message

pytestmark = pytest.mark.unit

SSE_STREAM = "\n\n".join(
    [
        'event: message_start\ndata: {"type":"message_start","message":{"id":"msg_1","type":"message",'
        '"role":"assistant","content":[],"usage":{"input_tokens":12,"cache_read_input_tokens":500}}}',
        'event: content_block_start\ndata: {"type":"content_block_start","index":0,'
        '"content_block":{"type":"text","text":""}}',
        'event: content_block_delta\ndata: {"type":"content_block_delta","index":0,'
        '"delta":{"type":"text_delta","text":"Let me "}}',
        'event: content_block_delta\ndata: {"type":"content_block_delta","index":0,'
        '"delta":{"type":"text_delta","text":"edit it."}}',
        'event: content_block_start\ndata: {"type":"content_block_start","index":1,'
        '"content_block":{"type":"tool_use","id":"toolu_1","name":"Edit","input":{}}}',
        'event: content_block_delta\ndata: {"type":"content_block_delta","index":1,'
        '"delta":{"type":"input_json_delta","partial_json":"{\\"file_path\\": \\"/r/a"}}',
        'event: content_block_delta\ndata: {"type":"content_block_delta","index":1,'
        '"delta":{"type":"input_json_delta","partial_json":".py\\"}"}}',
        'event: ping\ndata: {"type":"ping"}',
        'event: message_delta\ndata: {"type":"message_delta","delta":{"stop_reason":"tool_use"},'
        '"usage":{"output_tokens":42}}',
        'event: message_stop\ndata: {"type":"message_stop"}',
    ]
) + "\n\n"


def forwarder_for(handler, settings: ProxySettings) -> UpstreamForwarder:
    return UpstreamForwarder(
        settings,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        backoff_base=0.0,
    )


# =============================================================================
# SSE
# =============================================================================


class TestSseReassembly:
    """Tests for stream parsing and reassembly."""

    def test_iter_events(self) -> None:
        events = list(iter_sse_events("event: a\ndata: 1\n\ndata: 2\r\n\r\n: comment\n\n"))
        assert events == [("a", "1"), ("message", "2")]

    def test_reassembles_text_tool_use_and_usage(self) -> None:
        message = reassemble_sse(SSE_STREAM)

        assert message is not None
        assert message["stop_reason"] == "tool_use"
        assert message["usage"] == {"input_tokens": 12, "cache_read_input_tokens": 500, "output_tokens": 42}
        text, tool = message["content"]
        assert text == {"type": "text", "text": "Let me edit it."}
        assert tool["name"] == "Edit"
        assert tool["input"] == {"file_path": "/r/a.py"}

    def test_stream_without_message_start(self) -> None:
        assert reassemble_sse('data: {"type":"ping"}\n\n') is None


# =============================================================================
# Forwarding
# =============================================================================


class TestForward:
    """Tests for UpstreamForwarder.forward."""

    @pytest.mark.asyncio
    async def test_json_response_and_header_filtering(self, settings: ProxySettings) -> None:
        captured: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            captured.append(request)
            return httpx.Response(
                200,
                json=assistant_message([{"type": "text", "text": "hi"}]),
                headers={"request-id": "req_1", "set-cookie": "x=1"},
            )

        result = await forwarder_for(handler, settings).forward(
            '{"model":"m"}', {"X-Api-Key": "sk-1", "Cookie": "c", "anthropic-version": "2023-06-01"}
        )

        request = captured[0]
        assert str(request.url) == "http://upstream.test/v1/messages"
        assert request.content == b'{"model":"m"}'
        assert request.headers["x-api-key"] == "sk-1"
        assert "cookie" not in request.headers
        assert result.ok
        assert result.headers["request-id"] == "req_1"
        assert "set-cookie" not in result.headers
        assert result.message is not None
        assert result.message["content"][0]["text"] == "hi"

    @pytest.mark.asyncio
    async def test_sse_body_is_passed_through_and_reassembled(self, settings: ProxySettings) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200, content=SSE_STREAM.encode(), headers={"content-type": "text/event-stream"}
            )

        result = await forwarder_for(handler, settings).forward("{}", {})

        assert result.was_sse
        assert result.content_type == "text/event-stream"
        assert result.body == SSE_STREAM.encode()
        assert result.message is not None
        assert result.message["stop_reason"] == "tool_use"

    @pytest.mark.asyncio
    async def test_connect_errors_are_retried(self, settings: ProxySettings) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            if calls < 3:
                raise httpx.ConnectError("refused", request=request)
            return httpx.Response(200, json=assistant_message([]))

        result = await forwarder_for(handler, settings).forward("{}", {})

        assert result.ok
        assert result.attempts == 3

    @pytest.mark.asyncio
    async def test_exhausted_connect_retries_raise_bad_gateway(self, settings: ProxySettings) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(ForwardError) as exc_info:
            await forwarder_for(handler, settings).forward("{}", {})

        assert exc_info.value.status_code == 502
        assert exc_info.value.client_message == "Bad gateway"

    @pytest.mark.asyncio
    async def test_read_timeout_is_not_retried(self, settings: ProxySettings) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(ForwardError) as exc_info:
            await forwarder_for(handler, settings).forward("{}", {})

        assert calls == 1
        assert exc_info.value.status_code == 504
        assert exc_info.value.kind == "timeout"

    @pytest.mark.asyncio
    async def test_server_errors_are_retried_then_returned(self, settings: ProxySettings) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(529, json={"type": "error", "error": {"type": "overloaded_error"}})

        result = await forwarder_for(handler, settings).forward("{}", {})

        assert calls == 3
        assert result.status_code == 529
        assert not result.ok
        assert json.loads(result.body)["error"]["type"] == "overloaded_error"

    @pytest.mark.asyncio
    async def test_client_errors_are_not_retried(self, settings: ProxySettings) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(400, json={"type": "error"})

        result = await forwarder_for(handler, settings).forward("{}", {})

        assert calls == 1
        assert result.status_code == 400
