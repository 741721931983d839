# SPDX-License-Identifier: MIT
# Copyright (c) 2025 OmniNode Team
"""Render drift results as correction text for the next user turn."""

from __future__ import annotations

from driftguard.session.models import SessionState

from .checker import DEFAULT_GOAL, format_forced_recovery_injection
from .models import CorrectionLevel, CorrectionMessage, DriftCheckResult, score_to_correction_level


def _goal(state: SessionState) -> str:
    return state.original_goal or DEFAULT_GOAL


def _recovery_steps(result: DriftCheckResult, state: SessionState) -> tuple[str, ...]:
    if result.recovery_steps:
        return result.recovery_steps
    return (f"Return to working on: {_goal(state)}",)


def build_nudge(result: DriftCheckResult, state: SessionState) -> CorrectionMessage:
    message = f"""<driftguard_nudge>
Quick reminder: Stay focused on {_goal(state)}.
{result.diagnostic}
</driftguard_nudge>"""
    return CorrectionMessage(level=CorrectionLevel.NUDGE, message=message)


def build_correct(result: DriftCheckResult, state: SessionState) -> CorrectionMessage:
    lines = [
        "<driftguard_correction>",
        "DRIFT DETECTED - Please refocus on the original goal.",
        "",
        f"Original goal: {_goal(state)}",
        f"Issue: {result.diagnostic}",
    ]
    if result.suggested_action:
        lines.append(f"Suggested action: {result.suggested_action}")
    lines.append("")
    lines.append("Recovery steps:")
    lines.extend(f"{i}. {step}" for i, step in enumerate(_recovery_steps(result, state), 1))
    lines.append("</driftguard_correction>")
    return CorrectionMessage(level=CorrectionLevel.CORRECT, message="\n".join(lines))


def build_intervene(result: DriftCheckResult, state: SessionState) -> CorrectionMessage:
    steps = _recovery_steps(result, state)
    mandatory = steps[0]
    step_lines = "\n".join(f"{i}. {step}" for i, step in enumerate(steps, 1))
    message = f"""<driftguard_intervention>
SIGNIFICANT DRIFT DETECTED - Stop and return to the original goal.

Original goal: {_goal(state)}
Issue: {result.diagnostic}

MANDATORY NEXT ACTION:
{mandatory}

Recovery steps:
{step_lines}

Confirm by stating: "I will now {mandatory}"
</driftguard_intervention>"""
    return CorrectionMessage(
        level=CorrectionLevel.INTERVENE, message=message, mandatory_action=mandatory
    )


def build_halt(result: DriftCheckResult, state: SessionState, max_escalation: int) -> CorrectionMessage:
    mandatory = _recovery_steps(result, state)[0]
    prompt = (
        "Repeated corrections have not brought the work back on track. "
        f"Stop all current work. {result.diagnostic}"
    )
    return CorrectionMessage(
        level=CorrectionLevel.HALT,
        message=format_forced_recovery_injection(prompt, mandatory, state, max_escalation).strip(),
        mandatory_action=mandatory,
    )


def build_correction(
    result: DriftCheckResult,
    state: SessionState,
    max_escalation: int = 3,
) -> CorrectionMessage | None:
    """Correction for ``result``, or None when the score is acceptable."""
    level = score_to_correction_level(
        result.score, escalation_maxed=state.escalation_count >= max_escalation
    )
    if level is None:
        return None
    if level is CorrectionLevel.NUDGE:
        return build_nudge(result, state)
    if level is CorrectionLevel.CORRECT:
        return build_correct(result, state)
    if level is CorrectionLevel.INTERVENE:
        return build_intervene(result, state)
    return build_halt(result, state, max_escalation)


def format_correction_for_injection(correction: CorrectionMessage) -> str:
    return f"\n\n{correction.message}\n\n"


__all__ = [
    "build_correct",
    "build_correction",
    "build_halt",
    "build_intervene",
    "build_nudge",
    "format_correction_for_injection",
]
