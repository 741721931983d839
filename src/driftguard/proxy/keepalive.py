# SPDX-License-Identifier: MIT
# Copyright (c) 2025 OmniNode Team
"""Prompt-cache keep-alive for idle projects.

The upstream prompt cache expires after a few minutes without traffic. When
a turn ends, the exact request body that produced it is captured per
project. If the project then stays quiet past ``extended_cache_idle_seconds``
the captured body is re-sent with one extra ``"."`` user turn appended. The
bytes before the appended turn are unchanged, so the request reads the
cached prefix and refreshes its TTL.

Each capture allows at most ``extended_cache_max_keepalives`` sends. Entries
idle past ``extended_cache_max_idle_seconds``, entries whose keep-alive
failed, and (at capacity) the least recently active entry are dropped.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import PurePath
from typing import Any

from driftguard.config.settings import ProxySettings, build_safe_headers
from driftguard.lib.errors import ForwardError
from driftguard.mutator import append_messages

from .forwarder import UpstreamForwarder

logger = logging.getLogger(__name__)

KEEPALIVE_MESSAGE: dict[str, Any] = {"role": "user", "content": "."}


@dataclass
class KeepAliveEntry:
    """Request captured at the end of a turn."""

    headers: dict[str, str]
    body: str
    last_activity: float
    sent: int = 0


def _project_name(project_path: str) -> str:
    return PurePath(project_path).name or project_path


class CacheKeepAlive:
    """Per-project captured requests and the keep-alive pass over them.

    Example:
        >>> keepalive = CacheKeepAlive(settings, forwarder)
        >>> keepalive.capture("/repo", final_body, request_headers)
        >>> await keepalive.check()  # called periodically
    """

    def __init__(
        self,
        settings: ProxySettings,
        forwarder: UpstreamForwarder,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings
        self._forwarder = forwarder
        self._clock = clock
        self._entries: dict[str, KeepAliveEntry] = {}

    @property
    def enabled(self) -> bool:
        return self._settings.extended_cache_enabled

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, project_path: str) -> KeepAliveEntry | None:
        return self._entries.get(project_path)

    def capture(self, project_path: str, body: str, headers: Mapping[str, Any]) -> None:
        """Remember ``body`` as the project's latest cacheable request."""
        if project_path not in self._entries and len(self._entries) >= self._settings.extended_cache_max_entries:
            oldest = min(self._entries, key=lambda p: self._entries[p].last_activity)
            del self._entries[oldest]
            logger.info(f"Extended cache: evicted {_project_name(oldest)} (capacity limit)")
        self._entries[project_path] = KeepAliveEntry(
            headers=build_safe_headers(headers),
            body=body,
            last_activity=self._clock(),
        )

    def discard(self, project_path: str) -> None:
        self._entries.pop(project_path, None)

    def _drop(self, project_path: str, entry: KeepAliveEntry, reason: str) -> None:
        # A newer capture may have replaced the entry while a send was in flight
        if self._entries.get(project_path) is entry:
            del self._entries[project_path]
            logger.info(f"Extended cache: cleared {_project_name(project_path)} ({reason})")

    async def check(self) -> int:
        """Drop expired entries and send due keep-alives in parallel.

        Returns:
            Number of keep-alives that succeeded.
        """
        settings = self._settings
        now = self._clock()
        due: list[tuple[str, KeepAliveEntry]] = []
        for project_path, entry in list(self._entries.items()):
            idle = now - entry.last_activity
            if idle > settings.extended_cache_max_idle_seconds:
                self._drop(project_path, entry, "stale")
            elif idle < settings.extended_cache_idle_seconds:
                continue
            elif entry.sent >= settings.extended_cache_max_keepalives:
                self._drop(project_path, entry, "max keep-alives")
            else:
                due.append((project_path, entry))

        if not due:
            return 0

        outcomes = await asyncio.gather(
            *(self._send(project_path, entry) for project_path, entry in due),
            return_exceptions=True,
        )
        succeeded = 0
        for (project_path, entry), outcome in zip(due, outcomes):
            if isinstance(outcome, Exception):
                self._drop(project_path, entry, f"error: {outcome}")
                continue
            if isinstance(outcome, BaseException):
                raise outcome
            entry.last_activity = self._clock()
            entry.sent += 1
            succeeded += 1
        return succeeded

    async def _send(self, project_path: str, entry: KeepAliveEntry) -> None:
        appended = append_messages(entry.body, [KEEPALIVE_MESSAGE])
        if not appended.success:
            raise ValueError("cannot append keep-alive message to captured body")

        # max_tokens and stream stay as captured; any change would miss the cache
        logger.info(f"Extended cache: SEND keep-alive project={_project_name(project_path)}")
        result = await self._forwarder.forward(appended.body, entry.headers)
        if result.status_code != 200:
            raise ForwardError("upstream", f"Keep-alive failed: {result.status_code}", result.status_code)

        usage = (result.message or {}).get("usage") or {}
        logger.info(
            f"Extended cache: keep-alive for {_project_name(project_path)} - "
            f"cache_read={usage.get('cache_read_input_tokens', 0)}, "
            f"cache_create={usage.get('cache_creation_input_tokens', 0)}, "
            f"input={usage.get('input_tokens', 0)}"
        )


__all__ = ["KEEPALIVE_MESSAGE", "CacheKeepAlive", "KeepAliveEntry"]
