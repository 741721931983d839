# SPDX-License-Identifier: MIT
# Copyright (c) 2025 OmniNode Team
"""In-memory session registry.

SessionManager owns every per-session map (state, step history, locks) and
never hands out the raw dictionaries. State is process-local and best-effort:
it is lost on restart.

Thread Safety:
    Uses per-key asyncio.Lock instances, keyed by project path. A project has
    at most one active session, so the project lock serializes every
    read-modify-write on that session. Requests for different projects
    proceed in parallel without blocking each other.

    The mutating methods themselves are synchronous; callers that read state
    and then write it back hold ``lock(project_path)`` across both steps.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections import deque
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

from .models import ActionType, SessionStatus, SessionState, StepRecord

logger = logging.getLogger(__name__)

_SESSION_FIELDS = frozenset(f.name for f in dataclasses.fields(SessionState))
_IMMUTABLE_FIELDS = frozenset({"session_id", "project_path", "created_at"})


class SessionManager:
    """Keyed registry of SessionState plus a bounded step ring per session.

    Example:
        >>> manager = SessionManager(step_history_limit=200)
        >>> async with manager.lock("/repo"):
        ...     state = manager.create_if_absent("abc", "/repo", original_goal="fix login")
        ...     manager.update("abc", escalation_count=1)
    """

    def __init__(self, step_history_limit: int = 200) -> None:
        self._sessions: dict[str, SessionState] = {}
        self._steps: dict[str, deque[StepRecord]] = {}
        self._active_by_project: dict[str, str] = {}
        self._step_history_limit = step_history_limit
        self._locks: dict[str, asyncio.Lock] = {}
        self._locks_lock = asyncio.Lock()  # Lock for accessing the locks dict
        self._lock_users: dict[str, int] = {}

    # =========================================================================
    # Locking
    # =========================================================================

    async def _get_lock(self, key: str) -> asyncio.Lock:
        async with self._locks_lock:
            if key not in self._locks:
                self._locks[key] = asyncio.Lock()
            return self._locks[key]

    @asynccontextmanager
    async def lock(self, key: str) -> AsyncIterator[None]:
        """Serialize access to everything stored under ``key``."""
        lock = await self._get_lock(key)
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]

    def is_locked(self, key: str) -> bool:
        """True while any caller holds or waits for the lock on ``key``."""
        return key in self._lock_users

    def discard_lock(self, key: str) -> bool:
        """Forget the lock for ``key`` unless it is in use."""
        if self.is_locked(key):
            return False
        return self._locks.pop(key, None) is not None

    # =========================================================================
    # Session CRUD
    # =========================================================================

    def create_if_absent(self, session_id: str, project_path: str, **fields: Any) -> SessionState:
        """Return the session, creating it with ``fields`` when missing."""
        existing = self._sessions.get(session_id)
        if existing is not None:
            return existing
        state = SessionState(session_id=session_id, project_path=project_path, **fields)
        self._sessions[session_id] = state
        self._steps[session_id] = deque(maxlen=self._step_history_limit)
        if state.status is SessionStatus.ACTIVE:
            self._active_by_project[project_path] = session_id
        logger.info(f"Session created: {state.short_id} (project={project_path})")
        return state

    def get(self, session_id: str) -> SessionState | None:
        return self._sessions.get(session_id)

    def get_active_for_project(self, project_path: str) -> SessionState | None:
        session_id = self._active_by_project.get(project_path)
        if session_id is None:
            return None
        state = self._sessions.get(session_id)
        if state is None or state.status is not SessionStatus.ACTIVE:
            self._active_by_project.pop(project_path, None)
            return None
        return state

    def update(self, session_id: str, **fields: Any) -> SessionState | None:
        """Merge only the provided fields and refresh ``updated_at``.

        Passing ``None`` explicitly clears a field. A missing session is not an
        error; None is returned.
        """
        state = self._sessions.get(session_id)
        if state is None:
            return None
        unknown = set(fields) - _SESSION_FIELDS
        if unknown:
            raise ValueError(f"Unknown session fields: {sorted(unknown)}")
        frozen = set(fields) & _IMMUTABLE_FIELDS
        if frozen:
            raise ValueError(f"Session fields cannot be changed: {sorted(frozen)}")
        for name, value in fields.items():
            setattr(state, name, value)
        state.updated_at = datetime.now(UTC)
        return state

    def delete(self, session_id: str) -> bool:
        state = self._sessions.pop(session_id, None)
        self._steps.pop(session_id, None)
        if state is None:
            return False
        if self._active_by_project.get(state.project_path) == session_id:
            del self._active_by_project[state.project_path]
        return True

    def complete_session(self, session_id: str) -> SessionState | None:
        """Mark a session completed and drop it from the registry."""
        return self._finish(session_id, SessionStatus.COMPLETED)

    def abandon_session(self, session_id: str) -> SessionState | None:
        return self._finish(session_id, SessionStatus.ABANDONED)

    def _finish(self, session_id: str, status: SessionStatus) -> SessionState | None:
        state = self.update(session_id, status=status)
        if state is not None:
            self.delete(session_id)
            logger.info(f"Session {state.short_id} {status.value}")
        return state

    def abandon_stale(self, max_idle_seconds: float) -> list[SessionState]:
        """Abandon sessions idle for longer than ``max_idle_seconds``.

        Sessions whose project lock is held or awaited are skipped; a request
        is still working on them.
        """
        now = datetime.now(UTC)
        stale = [
            s.session_id
            for s in self._sessions.values()
            if (now - s.updated_at).total_seconds() > max_idle_seconds
            and not self.is_locked(s.project_path)
        ]
        abandoned = [self.abandon_session(session_id) for session_id in stale]
        return [state for state in abandoned if state is not None]

    @property
    def active_count(self) -> int:
        return len(self._sessions)

    # =========================================================================
    # Escalation
    # =========================================================================

    def increment_escalation(self, session_id: str, maximum: int) -> int:
        """Raise escalation by one, never past ``maximum``."""
        state = self._sessions.get(session_id)
        if state is None:
            return 0
        self.update(session_id, escalation_count=min(state.escalation_count + 1, maximum))
        return state.escalation_count

    # =========================================================================
    # Steps
    # =========================================================================

    def add_step(self, step: StepRecord) -> None:
        ring = self._steps.get(step.session_id)
        if ring is None:
            logger.debug(f"Dropping step for unknown session {step.session_id[:8]}")
            return
        ring.append(step)

    def recent_steps(self, session_id: str, limit: int = 10) -> list[StepRecord]:
        ring = self._steps.get(session_id)
        if not ring:
            return []
        return list(ring)[-limit:]

    def all_steps(self, session_id: str, validated_only: bool = False) -> list[StepRecord]:
        steps = list(self._steps.get(session_id, ()))
        if validated_only:
            steps = [s for s in steps if s.is_validated]
        return steps

    def edited_files(self, session_id: str) -> list[str]:
        seen: dict[str, None] = {}
        for step in self._steps.get(session_id, ()):
            if step.action_type in (ActionType.EDIT, ActionType.WRITE):
                for path in step.files:
                    seen.setdefault(path, None)
        return list(seen)


__all__ = ["SessionManager"]
