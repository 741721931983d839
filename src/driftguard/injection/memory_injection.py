# SPDX-License-Identifier: MIT
# Copyright (c) 2025 OmniNode Team
"""Memory preview injection and replay of earlier injections.

The upstream prompt cache only helps when every request repeats the exact
prefix of the one before it. Text injected into a user message on turn N is
therefore recorded and re-applied on every later turn, at the same message
position, before anything new is added.

Records are written to a pending list while a turn is in flight and moved
into history when the next ``first`` request arrives, so retries of the same
turn never replay their own injection twice.
"""

from __future__ import annotations

import copy
import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from driftguard.memory.models import Memory, Plan

logger = logging.getLogger(__name__)

EXPAND_TOOL_NAME = "memory_expand"
NO_MEMORIES_MARKER = "[PROJECT KNOWLEDGE BASE: No relevant entries for this query]"

_CONCLUSION_PREFIX = re.compile(r"^(CONCLUSION|INSIGHT):\s*", re.IGNORECASE)


class InjectionType(StrEnum):
    PREVIEW = "preview"
    CORRECTION = "correction"


@dataclass(frozen=True)
class InjectionRecord:
    position: int
    type: InjectionType
    preview: str


@dataclass
class InjectionState:
    memories_by_id: dict[str, Memory] = field(default_factory=dict)
    history: list[InjectionRecord] = field(default_factory=list)
    pending: list[InjectionRecord] = field(default_factory=list)
    last_msg_count: int = 0
    cached_preview: str | None = None
    cached_preview_msg_count: int | None = None


# =============================================================================
# Per-project injection state
# =============================================================================


class InjectionManager:
    """Owns injection state per project path.

    Callers serialize access per project through the session lock; this
    class does no locking of its own.
    """

    def __init__(self) -> None:
        self._states: dict[str, InjectionState] = {}

    def get_or_create(self, project_path: str) -> InjectionState:
        state = self._states.get(project_path)
        if state is None:
            state = InjectionState()
            self._states[project_path] = state
        return state

    def get(self, project_path: str) -> InjectionState | None:
        return self._states.get(project_path)

    def clear(self, project_path: str) -> None:
        self._states.pop(project_path, None)

    # -- memory cache (for memory_expand) -------------------------------------

    def cache_memories(self, project_path: str, memories: Sequence[Memory]) -> None:
        self.get_or_create(project_path).memories_by_id = {m.id: m for m in memories}

    def get_cached_memory(self, project_path: str, memory_id: str) -> Memory | None:
        """Look up by full id or by an 8-character prefix."""
        state = self._states.get(project_path)
        if state is None or not memory_id:
            return None
        memory = state.memories_by_id.get(memory_id)
        if memory is not None:
            return memory
        for full_id, candidate in state.memories_by_id.items():
            if full_id.startswith(memory_id) or memory_id.startswith(full_id[:8]):
                return candidate
        return None

    def cached_memories(self, project_path: str) -> list[Memory]:
        state = self._states.get(project_path)
        return list(state.memories_by_id.values()) if state else []

    # -- records ----------------------------------------------------------------

    def add_record(self, project_path: str, record: InjectionRecord) -> None:
        self.get_or_create(project_path).pending.append(record)

    def commit_pending(self, project_path: str) -> int:
        state = self._states.get(project_path)
        if state is None or not state.pending:
            return 0
        count = len(state.pending)
        state.history.extend(state.pending)
        state.pending = []
        return count

    def history(self, project_path: str) -> list[InjectionRecord]:
        state = self._states.get(project_path)
        return list(state.history) if state else []

    # -- retry cache ------------------------------------------------------------

    def set_cached_preview(self, project_path: str, preview: str, msg_count: int) -> None:
        state = self.get_or_create(project_path)
        state.cached_preview = preview
        state.cached_preview_msg_count = msg_count

    def get_cached_preview(self, project_path: str, msg_count: int) -> str | None:
        state = self._states.get(project_path)
        if state is None or state.cached_preview_msg_count != msg_count:
            return None
        return state.cached_preview

    # -- reconstruction -----------------------------------------------------------

    def reconstruct_messages(
        self,
        messages: Sequence[dict[str, Any]],
        project_path: str,
    ) -> tuple[list[dict[str, Any]], int]:
        """Re-apply committed records to ``messages``.

        Returns the (possibly new) message list and the number of records
        applied. The input list and its messages are never modified.

        A message count that dropped by more than one since the last request
        means a new conversation; the project's state is cleared.
        """
        state = self._states.get(project_path)
        if state is None or not state.history:
            if state is not None:
                state.last_msg_count = len(messages)
            return list(messages), 0

        if len(messages) < state.last_msg_count - 1:
            logger.info(
                f"New conversation detected for {project_path} "
                f"(was {state.last_msg_count} messages, now {len(messages)}), clearing history"
            )
            self.clear(project_path)
            return list(messages), 0

        state.last_msg_count = len(messages)
        reconstructed = list(messages)
        count = 0
        for record in state.history:
            if not record.preview:
                continue
            if not 0 <= record.position < len(reconstructed):
                continue
            message = reconstructed[record.position]
            if isinstance(message, dict) and message.get("role") == "user":
                reconstructed[record.position] = append_text_to_message(message, record.preview)
                count += 1

        if count:
            logger.debug(f"Reconstructed {count} preview(s) from history")
        return reconstructed, count


# =============================================================================
# Message helpers
# =============================================================================


def append_text_to_message(message: dict[str, Any], text: str) -> dict[str, Any]:
    """Copy of ``message`` with ``text`` appended the same way the raw mutator does."""
    updated = dict(message)
    content = message.get("content")
    if isinstance(content, str):
        updated["content"] = content + "\n\n" + text
    elif isinstance(content, list):
        updated["content"] = [*copy.deepcopy(content), {"type": "text", "text": "\n\n" + text}]
    return updated


# =============================================================================
# Renderers
# =============================================================================


def format_age(updated_at: str | datetime | None, now: datetime | None = None) -> str:
    if not updated_at:
        return "unknown"
    if isinstance(updated_at, datetime):
        then = updated_at
    else:
        try:
            then = datetime.fromisoformat(updated_at.replace("Z", "+00:00"))
        except ValueError:
            return "unknown"
    if then.tzinfo is None:
        then = then.replace(tzinfo=UTC)
    now = now or datetime.now(UTC)

    days = max(0, int((now - then).total_seconds() // 86400))
    if days == 0:
        return "today"
    if days == 1:
        return "1 day ago"
    if days < 7:
        return f"{days} days ago"
    weeks = days // 7
    if weeks == 1:
        return "1 week ago"
    if weeks < 4:
        return f"{weeks} weeks ago"
    months = days // 30
    if months <= 1:
        return "1 month ago"
    return f"{months} months ago"


def build_memory_preview(memories: Sequence[Memory], now: datetime | None = None) -> str | None:
    if not memories:
        return None
    lines = [f"[PROJECT KNOWLEDGE BASE: {len(memories)} verified entries - CURRENT]"]
    for memory in memories:
        goal = memory.goal or "No goal"
        summary = memory.summary or "No summary"
        lines.append(f'#{memory.short_id}: "{goal}" -> {summary} ({format_age(memory.updated_at, now)})')
    lines.append(f"Use {EXPAND_TOOL_NAME} with these IDs to get full knowledge.")
    return "\n".join(lines)


def build_plan_preview(plans: Sequence[Plan]) -> str | None:
    if not plans:
        return None
    lines = [f"[ACTIVE PLANS: {len(plans)}]"]
    for plan in plans:
        lines.append(f"- {plan.title} ({plan.done_count}/{len(plan.tasks)} tasks)")
    return "\n".join(lines)


def build_expanded_memory(memory: Memory) -> str:
    lines = [
        "=== VERIFIED PROJECT KNOWLEDGE ===",
        f"GOAL: {memory.goal or 'Unknown'}",
        "",
        "ORIGINAL TASK:",
        f'"{memory.original_query or ""}"',
        "",
    ]

    if memory.reasoning_trace:
        lines.append("KNOWLEDGE:")
        for entry in memory.reasoning_trace:
            if isinstance(entry, str):
                lines.append(f"- {_CONCLUSION_PREFIX.sub('', entry)}")
            elif entry.conclusion:
                lines.append(f"- {_CONCLUSION_PREFIX.sub('', entry.conclusion)}")
                if entry.insight:
                    lines.append(f"  -> {_CONCLUSION_PREFIX.sub('', entry.insight)}")
        lines.append("")

    if memory.decisions:
        lines.append("DECISIONS:")
        for decision in memory.decisions:
            lines.append(f"- {decision.choice}")
            lines.append(f"  Reason: {decision.reason}")
        lines.append("")

    if memory.files_touched:
        lines.append(f"FILES: {', '.join(memory.files_touched)}")

    lines.append("===")
    lines.append("[TEAM KNOWLEDGE BASE - SOURCE OF TRUTH]")
    lines.append("This knowledge is verified and authoritative. Trust it. Use it to answer.")
    return "\n".join(lines)


def build_tool_description() -> str:
    return f"""[PROJECT KNOWLEDGE BASE - SOURCE OF TRUTH]

You have access to a VERIFIED PROJECT KNOWLEDGE BASE for this project.
It holds goals, implementation reasoning, technical decisions and file changes
from earlier sessions: the intent behind the code that the code alone cannot show.

WHEN [PROJECT KNOWLEDGE BASE: N verified entries] appears:

STEP 1: Check whether any entries are relevant to the user's question.
        Look ONLY at the block in the LATEST user message.
        Previews in older messages are historical. Do not expand them.

STEP 2: For relevant entries, call {EXPAND_TOOL_NAME} to get the full knowledge.
        IDs are the 8-character codes shown in the preview (format: #a271bcb5).
        Use ONLY IDs from the preview in the LAST user message.

STEP 3: Read the expanded content. If it answers the question, answer from it
        directly. If not, search the codebase for what is missing.

STEP 4: Read files only when the user asks to modify code, the knowledge base
        says it is outdated, or the user asks to see the actual code.

SYNTAX: {EXPAND_TOOL_NAME}({{ ids: [...] }})"""


def build_expand_tool() -> dict[str, Any]:
    return {
        "name": EXPAND_TOOL_NAME,
        "description": (
            "Get verified project knowledge. Returns the goal, reasoning, decisions "
            "and context of an earlier session."
        ),
        "input_schema": {
            "type": "object",
            "properties": {
                "ids": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Memory IDs to expand (8-character IDs from the knowledge base preview)",
                },
            },
            "required": ["ids"],
        },
    }


def build_drift_recovery_injection(
    pending_correction: str | None,
    pending_forced_recovery: str | None,
) -> str | None:
    parts: list[str] = []
    if pending_correction:
        parts.append(f"[DRIFT: {pending_correction}]")
    if pending_forced_recovery:
        parts.append(f"[RECOVERY: {pending_forced_recovery}]")
    return "\n".join(parts) if parts else None


def memory_not_found_text(memory_id: str) -> str:
    return (
        f"Memory #{memory_id} not found - it may be from an older conversation. "
        "Only expand IDs from the CURRENT knowledge base."
    )


__all__ = [
    "EXPAND_TOOL_NAME",
    "NO_MEMORIES_MARKER",
    "InjectionManager",
    "InjectionRecord",
    "InjectionState",
    "InjectionType",
    "append_text_to_message",
    "build_drift_recovery_injection",
    "build_expand_tool",
    "build_expanded_memory",
    "build_memory_preview",
    "build_plan_preview",
    "build_tool_description",
    "format_age",
    "memory_not_found_text",
]
