# SPDX-License-Identifier: MIT
# Copyright (c) 2025 OmniNode Team
"""Client for the team memory service (memories and active plans).

All failures raise MemoryFetchError. Callers treat a failed fetch as "no
enrichment this turn" and never fail the proxied request because of it.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

import httpx
from pydantic import ValidationError

from driftguard.config.settings import ProxySettings
from driftguard.lib.errors import MemoryFetchError
from driftguard.lib.text import truncate

from .models import Memory, Plan

logger = logging.getLogger(__name__)

MAX_CONTEXT_CHARS = 2000


class MemoryClient:
    """Fetches ranked memories and active plans for a team."""

    def __init__(
        self,
        settings: ProxySettings,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings
        self._owns_client = http_client is None
        self._client = http_client

    @property
    def enabled(self) -> bool:
        return self._settings.memory_sync_enabled

    async def start(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._settings.memory_timeout_seconds)
            )

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _url(self, path: str) -> str:
        base = (self._settings.memory_api_url or "").rstrip("/")
        return f"{base}/teams/{self._settings.memory_team_id}/{path}"

    def _headers(self) -> dict[str, str]:
        headers = {"accept": "application/json"}
        if self._settings.memory_api_token:
            headers["authorization"] = f"Bearer {self._settings.memory_api_token}"
        return headers

    async def _get(self, path: str, params: dict[str, Any]) -> Any:
        if not self.enabled:
            raise MemoryFetchError("Memory sync is not configured")
        if self._client is None:
            await self.start()
        if self._client is None:
            raise RuntimeError("HTTP client not started - call start() first")

        try:
            response = await self._client.get(self._url(path), params=params, headers=self._headers())
        except httpx.HTTPError as e:
            raise MemoryFetchError(f"Memory API request failed: {e}", {"path": path}) from e

        if response.status_code >= 400:
            raise MemoryFetchError(
                f"Memory API returned HTTP {response.status_code}",
                {"path": path, "status": response.status_code},
            )
        try:
            return response.json()
        except ValueError as e:
            raise MemoryFetchError("Memory API returned non-JSON body", {"path": path}) from e

    async def fetch_memories(
        self,
        project_path: str,
        context: str | None = None,
        current_files: Sequence[str] | None = None,
        limit: int | None = None,
    ) -> list[Memory]:
        """Memories ranked for ``context``. A blocked response yields []."""
        params: dict[str, Any] = {
            "project_path": project_path,
            "status": "complete",
            "limit": limit or self._settings.memory_fetch_limit,
        }
        if context:
            params["context"] = truncate(context, MAX_CONTEXT_CHARS)
        if current_files:
            params["current_files"] = ",".join(current_files)

        body = await self._get("memories", params)
        if isinstance(body, dict) and body.get("blocked"):
            logger.info("Memory fetch blocked by the memory service")
            return []
        items = body.get("memories", []) if isinstance(body, dict) else body
        try:
            return [Memory.model_validate(item) for item in items or []]
        except (ValidationError, TypeError) as e:
            raise MemoryFetchError(f"Malformed memory payload: {e}") from e

    async def fetch_plans(self) -> list[Plan]:
        body = await self._get("plans", {"status": "active"})
        items = body.get("plans", []) if isinstance(body, dict) else body
        try:
            return [Plan.model_validate(item) for item in items or []]
        except (ValidationError, TypeError) as e:
            raise MemoryFetchError(f"Malformed plan payload: {e}") from e


__all__ = ["MemoryClient"]
