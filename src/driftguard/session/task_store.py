# SPDX-License-Identifier: MIT
# Copyright (c) 2025 OmniNode Team
"""Source of "edited files" and "key decisions" facts for injection.

The injection layer only depends on the TaskStore protocol. The default
implementation reads the session's recorded step history; an offline
capture database can be plugged in behind the same two methods.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from .models import StepRecord
from .store import SessionManager


@runtime_checkable
class TaskStore(Protocol):
    def get_edited_files(self, session_id: str) -> list[str]:
        """Files written or edited in the session, oldest first, unique."""
        ...

    def get_key_decisions(self, session_id: str, limit: int = 5) -> list[StepRecord]:
        """Most recent key-decision steps, newest first."""
        ...


class SessionTaskStore:
    """TaskStore backed by the in-memory step history."""

    def __init__(self, sessions: SessionManager) -> None:
        self._sessions = sessions

    def get_edited_files(self, session_id: str) -> list[str]:
        return self._sessions.edited_files(session_id)

    def get_key_decisions(self, session_id: str, limit: int = 5) -> list[StepRecord]:
        decisions = [s for s in self._sessions.all_steps(session_id) if s.is_key_decision]
        return list(reversed(decisions))[:limit]


__all__ = ["SessionTaskStore", "TaskStore"]
