# SPDX-License-Identifier: MIT
# Copyright (c) 2025 OmniNode Team
"""Drift scoring types and the score mappings.

Score bands (1-10, higher is better aligned):

    score   drift type   correction level
    8-10    none         none
    5-7     minor        none
    4       major        nudge
    3       major        correct
    1-2     critical     intervene (halt once escalation is maxed)

Both mappings are pure, total over the integer domain, and monotonic.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum

NEUTRAL_SCORE = 8
MIN_SCORE = 1
MAX_SCORE = 10
ACCEPTABLE_SCORE = 5


class DriftType(StrEnum):
    NONE = "none"
    MINOR = "minor"
    MAJOR = "major"
    CRITICAL = "critical"


class CorrectionLevel(StrEnum):
    NUDGE = "nudge"
    CORRECT = "correct"
    INTERVENE = "intervene"
    HALT = "halt"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]

    @property
    def requires_recovery(self) -> bool:
        return self in (CorrectionLevel.INTERVENE, CorrectionLevel.HALT)


_SEVERITY = {
    CorrectionLevel.NUDGE: 1,
    CorrectionLevel.CORRECT: 2,
    CorrectionLevel.INTERVENE: 3,
    CorrectionLevel.HALT: 4,
}


@dataclass(frozen=True)
class DriftCheckResult:
    """Outcome of one drift check. Lives for a single processing pass."""

    score: int
    drift_type: DriftType
    diagnostic: str
    suggested_action: str | None = None
    recovery_steps: tuple[str, ...] = field(default_factory=tuple)
    evidence: str | None = None


@dataclass(frozen=True)
class CorrectionMessage:
    level: CorrectionLevel
    message: str
    mandatory_action: str | None = None


@dataclass(frozen=True)
class ForcedRecoveryResult:
    recovery_prompt: str
    mandatory_action: str
    injection_text: str
    from_fallback: bool = False


def clamp_score(score: float) -> int:
    return int(min(MAX_SCORE, max(MIN_SCORE, round(score))))


def score_to_drift_type(score: int) -> DriftType:
    if score >= 8:
        return DriftType.NONE
    if score >= 5:
        return DriftType.MINOR
    if score >= 3:
        return DriftType.MAJOR
    return DriftType.CRITICAL


def score_to_correction_level(score: int, escalation_maxed: bool = False) -> CorrectionLevel | None:
    """Correction level for ``score``; None means no correction.

    Halt only appears when ``escalation_maxed`` is set, in which case every
    failing score maps to it.
    """
    if score >= ACCEPTABLE_SCORE:
        return None
    if escalation_maxed:
        return CorrectionLevel.HALT
    if score == 4:
        return CorrectionLevel.NUDGE
    if score == 3:
        return CorrectionLevel.CORRECT
    return CorrectionLevel.INTERVENE


def should_skip_steps(score: int) -> bool:
    """Steps taken during a drifting turn are kept but marked unvalidated."""
    return score < ACCEPTABLE_SCORE


def default_result(diagnostic: str, score: int = NEUTRAL_SCORE) -> DriftCheckResult:
    return DriftCheckResult(score=score, drift_type=score_to_drift_type(score), diagnostic=diagnostic)
