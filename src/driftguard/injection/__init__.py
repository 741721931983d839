"""Injection records, message reconstruction and preview rendering."""

from __future__ import annotations

from .memory_injection import (
    EXPAND_TOOL_NAME,
    NO_MEMORIES_MARKER,
    InjectionManager,
    InjectionRecord,
    InjectionState,
    InjectionType,
    append_text_to_message,
    build_drift_recovery_injection,
    build_expand_tool,
    build_expanded_memory,
    build_memory_preview,
    build_plan_preview,
    build_tool_description,
    format_age,
    memory_not_found_text,
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
