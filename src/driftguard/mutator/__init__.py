"""Raw body mutator - cache-prefix preserving JSON splices."""

from __future__ import annotations

from .raw_body import (
    MutationResult,
    append_messages,
    append_system_block,
    append_to_last_user_message,
    escape_json_text,
    find_closing_bracket,
    find_top_level_value,
    inject_tool,
    insert_at,
)

__all__ = [
    "MutationResult",
    "append_messages",
    "append_system_block",
    "append_to_last_user_message",
    "escape_json_text",
    "find_closing_bracket",
    "find_top_level_value",
    "inject_tool",
    "insert_at",
]
