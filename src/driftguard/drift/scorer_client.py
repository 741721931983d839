# SPDX-License-Identifier: MIT
# Copyright (c) 2025 OmniNode Team
"""HTTP client for the LLM scoring oracle.

Every call is bounded by ``scorer_timeout_seconds``. Failures of any kind
(transport, timeout, HTTP error status, malformed body) surface as
ScorerError so callers can substitute their documented default. Task
cancellation is never converted: if the owning request is cancelled the
in-flight scorer call is abandoned with it.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from typing import Any

import httpx

from driftguard.config.settings import ProxySettings, build_safe_headers
from driftguard.lib.errors import ScorerError

logger = logging.getLogger(__name__)

DEFAULT_ANTHROPIC_VERSION = "2023-06-01"


class ScorerClient:
    """Sends single-turn prompts to the scorer model and returns its text."""

    def __init__(
        self,
        settings: ProxySettings,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings
        self._owns_client = http_client is None
        self._client = http_client
        self._url = f"{settings.anthropic_base_url.rstrip('/')}/v1/messages"

    @property
    def enabled(self) -> bool:
        return self._settings.scorer_enabled

    async def start(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._settings.scorer_timeout_seconds),
                follow_redirects=True,
            )

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _headers(self, request_headers: Mapping[str, Any] | None) -> dict[str, str]:
        if self._settings.scorer_api_key:
            headers = {"x-api-key": self._settings.scorer_api_key}
        else:
            headers = build_safe_headers(request_headers or {})
        headers.setdefault("anthropic-version", DEFAULT_ANTHROPIC_VERSION)
        headers["content-type"] = "application/json"
        return headers

    async def complete(
        self,
        prompt: str,
        max_tokens: int,
        request_headers: Mapping[str, Any] | None = None,
        context: str = "scorer",
    ) -> str:
        """Return the text of the first content block of the scorer's reply.

        Raises:
            ScorerError: On any failure, including exceeding the timeout.
        """
        if not self.enabled:
            raise ScorerError("Scorer disabled", {"context": context})
        if self._client is None:
            await self.start()
        if self._client is None:
            raise RuntimeError("HTTP client not started - call start() first")

        payload = {
            "model": self._settings.scorer_model,
            "max_tokens": max_tokens,
            "messages": [{"role": "user", "content": prompt}],
        }
        try:
            async with asyncio.timeout(self._settings.scorer_timeout_seconds):
                response = await self._client.post(
                    self._url, json=payload, headers=self._headers(request_headers)
                )
        except TimeoutError as e:
            logger.warning(f"Scorer call timed out ({context})")
            raise ScorerError("Scorer call timed out", {"context": context}) from e
        except httpx.HTTPError as e:
            logger.warning(f"Scorer call failed ({context}): {e}")
            raise ScorerError(f"Scorer transport error: {e}", {"context": context}) from e

        if response.status_code >= 400:
            message = _error_message(response)
            logger.warning(f"Scorer returned {response.status_code} ({context}): {message}")
            raise ScorerError(message, {"context": context, "status": response.status_code})

        try:
            body = response.json()
        except ValueError as e:
            raise ScorerError("Scorer returned non-JSON body", {"context": context}) from e

        content = body.get("content") if isinstance(body, dict) else None
        if isinstance(content, list) and content:
            first = content[0]
            if isinstance(first, dict) and first.get("type") == "text":
                return str(first.get("text") or "")
        return ""


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return f"HTTP {response.status_code}"
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
    return f"HTTP {response.status_code}"


__all__ = ["ScorerClient"]
