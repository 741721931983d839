"""Drift detection: scoring, correction escalation and forced recovery."""

from __future__ import annotations

from .checker import (
    DriftChecker,
    build_drift_prompt,
    check_recovery_alignment,
    fallback_forced_recovery,
    fallback_session_summary,
    parse_scorer_response,
)
from .correction_builder import build_correction, format_correction_for_injection
from .models import (
    ACCEPTABLE_SCORE,
    NEUTRAL_SCORE,
    CorrectionLevel,
    CorrectionMessage,
    DriftCheckResult,
    DriftType,
    ForcedRecoveryResult,
    default_result,
    score_to_correction_level,
    score_to_drift_type,
    should_skip_steps,
)
from .scorer_client import ScorerClient

__all__ = [
    "ACCEPTABLE_SCORE",
    "NEUTRAL_SCORE",
    "CorrectionLevel",
    "CorrectionMessage",
    "DriftCheckResult",
    "DriftChecker",
    "DriftType",
    "ForcedRecoveryResult",
    "ScorerClient",
    "build_correction",
    "build_drift_prompt",
    "check_recovery_alignment",
    "default_result",
    "fallback_forced_recovery",
    "fallback_session_summary",
    "format_correction_for_injection",
    "parse_scorer_response",
    "score_to_correction_level",
    "score_to_drift_type",
    "should_skip_steps",
]
