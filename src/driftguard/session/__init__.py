"""Session state, step history and injection delta tracking."""

from __future__ import annotations

from .delta_tracker import CONTEXT_HEADER, DeltaTracker, FactKind
from .models import ActionType, SessionMode, SessionState, SessionStatus, StepRecord
from .store import SessionManager
from .task_store import SessionTaskStore, TaskStore

__all__ = [
    "CONTEXT_HEADER",
    "ActionType",
    "DeltaTracker",
    "FactKind",
    "SessionManager",
    "SessionMode",
    "SessionState",
    "SessionStatus",
    "SessionTaskStore",
    "StepRecord",
    "TaskStore",
]
