# SPDX-License-Identifier: MIT
# Copyright (c) 2025 OmniNode Team
"""Upstream forwarding for the messages endpoint.

Connect failures and 5xx responses are retried with exponential backoff
(``backoff_base * 2**attempt`` seconds). Client errors and read timeouts are
not retried. Exhausted or unretryable failures raise ForwardError.

Streaming (``text/event-stream``) responses are buffered: the client gets the
stream bytes unchanged, and the events are folded back into a single message
object for post-processing.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import httpx

from driftguard.config.settings import ProxySettings, build_safe_headers, filter_response_headers
from driftguard.lib.errors import ForwardError

logger = logging.getLogger(__name__)

SSE_CONTENT_TYPE = "text/event-stream"


@dataclass
class ForwardResult:
    status_code: int
    headers: dict[str, str]
    body: bytes
    message: dict[str, Any] | None = None
    was_sse: bool = False
    attempts: int = 1

    @property
    def ok(self) -> bool:
        return self.status_code == 200 and self.message is not None

    @property
    def content_type(self) -> str:
        return SSE_CONTENT_TYPE if self.was_sse else "application/json"


# =============================================================================
# SSE reassembly
# =============================================================================


def iter_sse_events(raw: str):
    """Yield ``(event, data)`` pairs from an SSE payload."""
    for chunk in raw.replace("\r\n", "\n").split("\n\n"):
        event = "message"
        data_lines: list[str] = []
        for line in chunk.split("\n"):
            if line.startswith("event:"):
                event = line[6:].strip()
            elif line.startswith("data:"):
                data_lines.append(line[5:].lstrip())
        if data_lines:
            yield event, "\n".join(data_lines)


def reassemble_sse(raw: str) -> dict[str, Any] | None:
    """Fold a messages-API event stream into one message object."""
    message: dict[str, Any] | None = None
    blocks: dict[int, dict[str, Any]] = {}
    partial_json: dict[int, list[str]] = {}

    for _event, data in iter_sse_events(raw):
        try:
            payload = json.loads(data)
        except ValueError:
            continue
        if not isinstance(payload, dict):
            continue
        kind = payload.get("type")

        if kind == "message_start" and isinstance(payload.get("message"), dict):
            message = dict(payload["message"])
            message["content"] = []
        elif kind == "content_block_start":
            index = payload.get("index", len(blocks))
            blocks[index] = dict(payload.get("content_block") or {})
        elif kind == "content_block_delta":
            index = payload.get("index", 0)
            block = blocks.setdefault(index, {})
            delta = payload.get("delta") or {}
            delta_type = delta.get("type")
            if delta_type == "text_delta":
                block["text"] = block.get("text", "") + delta.get("text", "")
            elif delta_type == "input_json_delta":
                partial_json.setdefault(index, []).append(delta.get("partial_json", ""))
            elif delta_type == "thinking_delta":
                block["thinking"] = block.get("thinking", "") + delta.get("thinking", "")
            elif delta_type == "signature_delta":
                block["signature"] = delta.get("signature", "")
        elif kind == "message_delta" and message is not None:
            delta = payload.get("delta") or {}
            if "stop_reason" in delta:
                message["stop_reason"] = delta["stop_reason"]
            if "stop_sequence" in delta:
                message["stop_sequence"] = delta["stop_sequence"]
            if isinstance(payload.get("usage"), dict):
                message["usage"] = {**(message.get("usage") or {}), **payload["usage"]}

    if message is None:
        return None

    for index, parts in partial_json.items():
        joined = "".join(parts)
        try:
            blocks[index]["input"] = json.loads(joined) if joined else {}
        except ValueError:
            logger.debug(f"Unparsable tool input in stream block {index}")
    message["content"] = [blocks[i] for i in sorted(blocks)]
    return message


# =============================================================================
# Forwarder
# =============================================================================


class UpstreamForwarder:
    """Posts request bodies to the upstream messages endpoint."""

    def __init__(
        self,
        settings: ProxySettings,
        http_client: httpx.AsyncClient | None = None,
        backoff_base: float = 1.0,
    ) -> None:
        self._settings = settings
        self._owns_client = http_client is None
        self._client = http_client
        self._backoff_base = backoff_base
        self._url = f"{settings.anthropic_base_url.rstrip('/')}/v1/messages"

    async def start(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._settings.request_timeout_seconds),
            )

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _sleep_before_retry(self, attempt: int, reason: str) -> None:
        delay = self._backoff_base * 2**attempt
        logger.warning(f"Upstream {reason}, retrying in {delay:.1f}s (attempt {attempt + 1})")
        await asyncio.sleep(delay)

    async def forward(self, body: str | bytes, headers: Mapping[str, Any]) -> ForwardResult:
        """Send ``body`` upstream with the allow-listed ``headers``.

        Raises:
            ForwardError: On timeout, network failure, or exhausted retries
                without any HTTP response.
        """
        if self._client is None:
            await self.start()
        if self._client is None:
            raise RuntimeError("HTTP client not started - call start() first")

        content = body.encode("utf-8") if isinstance(body, str) else body
        safe_headers = build_safe_headers(headers)
        safe_headers["content-type"] = "application/json"
        max_retries = self._settings.forward_max_retries

        attempt = 0
        while True:
            try:
                response = await self._client.post(self._url, content=content, headers=safe_headers)
            except (httpx.ConnectError, httpx.ConnectTimeout) as e:
                if attempt < max_retries:
                    await self._sleep_before_retry(attempt, f"connect failed ({e})")
                    attempt += 1
                    continue
                kind = "timeout" if isinstance(e, httpx.TimeoutException) else "network"
                raise ForwardError(
                    kind, str(e) or type(e).__name__, 504 if kind == "timeout" else 502
                ) from e
            except httpx.TimeoutException as e:
                raise ForwardError("timeout", str(e) or "Upstream timed out", 504) from e
            except httpx.HTTPError as e:
                raise ForwardError("network", str(e) or type(e).__name__, 502) from e

            if response.status_code >= 500 and attempt < max_retries:
                await self._sleep_before_retry(attempt, f"returned {response.status_code}")
                attempt += 1
                continue
            break

        return self._build_result(response, attempt + 1)

    def _build_result(self, response: httpx.Response, attempts: int) -> ForwardResult:
        content_type = response.headers.get("content-type", "")
        raw = response.content
        was_sse = content_type.startswith(SSE_CONTENT_TYPE)
        message: dict[str, Any] | None = None
        if was_sse:
            message = reassemble_sse(raw.decode("utf-8", errors="replace"))
        else:
            try:
                parsed = json.loads(raw) if raw else None
            except ValueError:
                parsed = None
            if isinstance(parsed, dict) and parsed.get("type") == "message":
                message = parsed

        if response.status_code >= 400:
            logger.warning(f"Upstream returned {response.status_code} after {attempts} attempt(s)")
        return ForwardResult(
            status_code=response.status_code,
            headers=filter_response_headers(response.headers),
            body=raw,
            message=message,
            was_sse=was_sse,
            attempts=attempts,
        )


__all__ = ["ForwardResult", "UpstreamForwarder", "iter_sse_events", "reassemble_sse"]
