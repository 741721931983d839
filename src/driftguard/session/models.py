# SPDX-License-Identifier: MIT
# Copyright (c) 2025 OmniNode Team
"""Per-session working state.

State Machine:
    [No Session] ---(first request)---> ACTIVE
    ACTIVE ---(goal superseded / task complete)---> COMPLETED
    ACTIVE ---(stale)---> ABANDONED

    COMPLETED and ABANDONED sessions are removed from the store.

Drift mode is tracked separately from status:
    NORMAL ---(intervene)---> DRIFTED ---(escalation maxed)---> FORCED
    DRIFTED/FORCED ---(aligned action or score >= 5)---> NORMAL
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING
from uuid import uuid4

if TYPE_CHECKING:
    from driftguard.drift.models import DriftCheckResult


class SessionStatus(StrEnum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ABANDONED = "abandoned"


class SessionMode(StrEnum):
    NORMAL = "normal"
    DRIFTED = "drifted"
    FORCED = "forced"


class ActionType(StrEnum):
    """Normalized agent action categories."""

    READ = "read"
    EDIT = "edit"
    WRITE = "write"
    BASH = "bash"
    GREP = "grep"
    GLOB = "glob"
    TASK = "task"
    OTHER = "other"

    @property
    def is_modifying(self) -> bool:
        return self in (ActionType.EDIT, ActionType.WRITE, ActionType.BASH)


def _now() -> datetime:
    return datetime.now(UTC)


@dataclass
class StepRecord:
    """One observed agent action. Append-only, owned by its session."""

    session_id: str
    action_type: ActionType
    files: list[str] = field(default_factory=list)
    command: str | None = None
    folders: list[str] = field(default_factory=list)
    reasoning: str | None = None
    is_key_decision: bool = False
    drift_score: int | None = None
    is_validated: bool = True
    anchor: str | None = None
    code_hash: str | None = None
    id: str = field(default_factory=lambda: uuid4().hex)
    timestamp: datetime = field(default_factory=_now)


@dataclass
class SessionState:
    """Mutable state for one agent session.

    ``escalation_count`` only grows while drift persists, resets to 0 once
    alignment is restored and never exceeds the configured maximum.
    """

    session_id: str
    project_path: str
    original_goal: str = ""
    constraints: list[str] = field(default_factory=list)
    raw_user_prompt: str = ""
    token_count: int = 0
    escalation_count: int = 0
    pending_correction: str | None = None
    pending_forced_recovery: str | None = None
    pending_clear_summary: str | None = None
    status: SessionStatus = SessionStatus.ACTIVE
    mode: SessionMode = SessionMode.NORMAL
    waiting_for_recovery: bool = False
    prompt_count: int = 0
    drift_history: list[int] = field(default_factory=list)
    last_drift_result: DriftCheckResult | None = None
    token_warning_logged: bool = False
    clear_summary_requested: bool = False
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)
    last_checked_at: datetime | None = None
    last_checked_prompt: int | None = None

    @property
    def short_id(self) -> str:
        return self.session_id[:8]

    @property
    def has_valid_goal(self) -> bool:
        return len(self.original_goal) > 10
