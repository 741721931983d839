# SPDX-License-Identifier: MIT
# Copyright (c) 2025 OmniNode Team
"""Track what has already been injected so turns only carry new facts."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import PurePosixPath

from driftguard.lib.text import smart_truncate

from .models import SessionState
from .task_store import TaskStore

logger = logging.getLogger(__name__)

CONTEXT_HEADER = "---\n[DRIFTGUARD CONTEXT]\n"
MAX_FILES_PER_INJECTION = 5
MAX_DECISIONS_PER_INJECTION = 3
KEY_DECISION_LOOKBACK = 5


class FactKind(StrEnum):
    FILE = "file"
    DECISION = "decision"
    REASONING = "reasoning"


@dataclass
class _Tracking:
    files: set[str] = field(default_factory=set)
    decision_ids: set[str] = field(default_factory=set)
    reasonings: set[str] = field(default_factory=set)

    def bucket(self, kind: FactKind) -> set[str]:
        if kind is FactKind.FILE:
            return self.files
        if kind is FactKind.DECISION:
            return self.decision_ids
        return self.reasonings


class DeltaTracker:
    """Per-session record of injected files, decisions and reasoning text.

    Once a fact is recorded it is never reported as new again for that
    session, until ``clear`` drops the session's tracking.
    """

    def __init__(self) -> None:
        self._tracking: dict[str, _Tracking] = {}

    def _get(self, session_id: str) -> _Tracking:
        tracking = self._tracking.get(session_id)
        if tracking is None:
            tracking = _Tracking()
            self._tracking[session_id] = tracking
        return tracking

    def is_injected(self, session_id: str, kind: FactKind, value: str) -> bool:
        tracking = self._tracking.get(session_id)
        return tracking is not None and value in tracking.bucket(kind)

    def mark_injected(self, session_id: str, kind: FactKind, value: str) -> None:
        self._get(session_id).bucket(kind).add(value)

    def clear(self, session_id: str) -> None:
        self._tracking.pop(session_id, None)

    def build_dynamic_injection(
        self,
        session_id: str,
        state: SessionState | None,
        task_store: TaskStore,
    ) -> str | None:
        """Render only the facts not yet injected for this session.

        Order: new edited files, up to three new key decisions, pending drift
        correction, pending forced recovery. Returns None when nothing is new.
        """
        parts: list[str] = []

        new_files = [
            f
            for f in task_store.get_edited_files(session_id)
            if not self.is_injected(session_id, FactKind.FILE, f)
        ]
        if new_files:
            for path in new_files:
                self.mark_injected(session_id, FactKind.FILE, path)
            names = [PurePosixPath(p).name for p in new_files[:MAX_FILES_PER_INJECTION]]
            parts.append(f"[EDITED: {', '.join(names)}]")

        fresh = [
            d
            for d in task_store.get_key_decisions(session_id, KEY_DECISION_LOOKBACK)
            if d.reasoning
            and not self.is_injected(session_id, FactKind.DECISION, d.id)
            and not self.is_injected(session_id, FactKind.REASONING, d.reasoning)
        ]
        for decision in fresh[:MAX_DECISIONS_PER_INJECTION]:
            reasoning = decision.reasoning or ""
            self.mark_injected(session_id, FactKind.DECISION, decision.id)
            self.mark_injected(session_id, FactKind.REASONING, reasoning)
            parts.append(f"[DECISION: {smart_truncate(reasoning, 120)}]")

        if state is not None and state.pending_correction:
            parts.append(f"[DRIFT: {state.pending_correction}]")
            logger.info(f"Drift correction queued for injection ({len(state.pending_correction)} chars)")
        if state is not None and state.pending_forced_recovery:
            parts.append(f"[RECOVERY: {state.pending_forced_recovery}]")

        logger.debug(
            f"Dynamic injection for {session_id[:8]}: files={len(new_files)} "
            f"decisions={min(len(fresh), MAX_DECISIONS_PER_INJECTION)} parts={len(parts)}"
        )
        if not parts:
            return None
        return CONTEXT_HEADER + "\n".join(parts)


__all__ = ["CONTEXT_HEADER", "DeltaTracker", "FactKind"]
