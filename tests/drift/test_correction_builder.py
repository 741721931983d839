# SPDX-License-Identifier: MIT
# Copyright (c) 2025 OmniNode Team
"""Tests for driftguard.drift.correction_builder."""

from __future__ import annotations

import pytest

from driftguard.drift import (
    CorrectionLevel,
    DriftCheckResult,
    build_correction,
    format_correction_for_injection,
    score_to_drift_type,
)
from driftguard.session import SessionState

pytestmark = pytest.mark.unit

GOAL = "Add pagination to the orders API"


def result(score: int, steps: tuple[str, ...] = (), suggested: str | None = None) -> DriftCheckResult:
    return DriftCheckResult(
        score=score,
        drift_type=score_to_drift_type(score),
        diagnostic="Editing unrelated billing code",
        suggested_action=suggested,
        recovery_steps=steps,
    )


@pytest.fixture
def state() -> SessionState:
    return SessionState(session_id="s1", project_path="/repo", original_goal=GOAL)


class TestBuildCorrection:
    """Tests for build_correction level selection and templates."""

    def test_aligned_score_produces_nothing(self, state: SessionState) -> None:
        """A high score yields no correction text at all."""
        assert build_correction(result(9), state) is None
        assert build_correction(result(5), state) is None

    def test_nudge(self, state: SessionState) -> None:
        correction = build_correction(result(4), state)

        assert correction is not None
        assert correction.level is CorrectionLevel.NUDGE
        assert correction.message.startswith("<driftguard_nudge>")
        assert f"Stay focused on {GOAL}." in correction.message

    def test_correct_contains_goal_and_numbered_steps(self, state: SessionState) -> None:
        correction = build_correction(
            result(3, steps=("Revert billing.py", "Open orders/api.py"), suggested="Revert"),
            state,
        )

        assert correction is not None
        assert correction.level is CorrectionLevel.CORRECT
        assert f"Original goal: {GOAL}" in correction.message
        assert "Suggested action: Revert" in correction.message
        assert "1. Revert billing.py" in correction.message
        assert "2. Open orders/api.py" in correction.message

    def test_correct_without_steps_uses_default_step(self, state: SessionState) -> None:
        correction = build_correction(result(3), state)

        assert correction is not None
        assert f"1. Return to working on: {GOAL}" in correction.message
        assert "Suggested action" not in correction.message

    def test_intervene_names_mandatory_action(self, state: SessionState) -> None:
        correction = build_correction(result(2, steps=("Open orders/api.py",)), state)

        assert correction is not None
        assert correction.level is CorrectionLevel.INTERVENE
        assert correction.mandatory_action == "Open orders/api.py"
        assert 'Confirm by stating: "I will now Open orders/api.py"' in correction.message

    def test_halt_when_escalation_maxed(self, state: SessionState) -> None:
        state.escalation_count = 3
        correction = build_correction(result(4), state, max_escalation=3)

        assert correction is not None
        assert correction.level is CorrectionLevel.HALT
        assert "<driftguard_forced_recovery>" in correction.message
        assert "Escalation level: 3/3 (MAXIMUM)" in correction.message

    def test_missing_goal_falls_back(self) -> None:
        correction = build_correction(result(4), SessionState(session_id="s", project_path="/p"))
        assert correction is not None
        assert "the original task" in correction.message


class TestFormatting:
    def test_injection_is_padded_with_blank_lines(self, state: SessionState) -> None:
        correction = build_correction(result(4), state)
        assert correction is not None
        text = format_correction_for_injection(correction)
        assert text == f"\n\n{correction.message}\n\n"
