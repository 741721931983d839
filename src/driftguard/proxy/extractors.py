# SPDX-License-Identifier: MIT
# Copyright (c) 2025 OmniNode Team
"""Pull session facts out of messages-API request and response bodies."""

from __future__ import annotations

import os
import re
from collections.abc import Mapping, Sequence
from typing import Any

from driftguard.lib.text import clean_user_prompt, truncate

MAX_GOAL_CHARS = 500
MIN_GOAL_CHARS = 5

_WORKING_DIRECTORY = re.compile(r"Working directory:\s*([^\n]+)")
_FILE_MENTION = re.compile(r"(?:^|\s|[\"'`])([/\w.-]+\.[a-zA-Z]{1,10})(?:[\"'`]|\s|$|[:)\]?!,;])")


def text_blocks(content: Any) -> list[str]:
    """Text of a message ``content`` value, whether a string or a block list."""
    if isinstance(content, str):
        return [content]
    if isinstance(content, list):
        return [
            block["text"]
            for block in content
            if isinstance(block, Mapping)
            and block.get("type") == "text"
            and isinstance(block.get("text"), str)
        ]
    return []


def system_text(body: Mapping[str, Any]) -> str:
    return "\n".join(text_blocks(body.get("system")))


def extract_project_path(body: Mapping[str, Any]) -> str:
    """Working directory named in the system prompt, else the process cwd."""
    match = _WORKING_DIRECTORY.search(system_text(body))
    if match:
        return match.group(1).strip()
    return os.getcwd()


def last_user_index(messages: Sequence[Mapping[str, Any]]) -> int | None:
    for i in range(len(messages) - 1, -1, -1):
        if messages[i].get("role") == "user":
            return i
    return None


def extract_last_user_content(messages: Sequence[Mapping[str, Any]]) -> str:
    """Raw text of the last user message (empty for tool-result-only turns)."""
    index = last_user_index(messages)
    if index is None:
        return ""
    return "\n".join(text_blocks(messages[index].get("content"))).strip()


def extract_goal(messages: Sequence[Mapping[str, Any]]) -> str | None:
    """Most recent user instruction of at least five characters."""
    for message in reversed(messages):
        if message.get("role") != "user":
            continue
        clean = clean_user_prompt("\n".join(text_blocks(message.get("content"))))
        if len(clean) >= MIN_GOAL_CHARS:
            return clean[:MAX_GOAL_CHARS]
    return None


def mentioned_files(text: str) -> list[str]:
    """File-like tokens in ``text``; URLs, dotfiles and short tokens are skipped."""
    return [
        candidate
        for candidate in _FILE_MENTION.findall(text)
        if "http" not in candidate and not candidate.startswith(".") and len(candidate) > 3
    ]


def extract_files_from_messages(messages: Sequence[Mapping[str, Any]], limit: int = 10) -> list[str]:
    """File names mentioned in user text, in first-seen order."""
    seen: dict[str, None] = {}
    for message in messages:
        if message.get("role") != "user":
            continue
        for text in text_blocks(message.get("content")):
            for candidate in mentioned_files(text):
                seen.setdefault(candidate, None)
    return list(seen)[:limit]


def has_tool_result(message: Mapping[str, Any]) -> bool:
    content = message.get("content")
    return isinstance(content, list) and any(
        isinstance(block, Mapping) and block.get("type") == "tool_result" for block in content
    )


def extract_text_content(response: Mapping[str, Any]) -> str:
    return "\n".join(text_blocks(response.get("content")))


def extract_context_tokens(response: Mapping[str, Any]) -> int | None:
    """Prompt size as seen by the cache: creation plus read tokens."""
    usage = response.get("usage")
    if not isinstance(usage, Mapping):
        return None
    created = usage.get("cache_creation_input_tokens") or 0
    read = usage.get("cache_read_input_tokens") or 0
    if not isinstance(created, int) or not isinstance(read, int):
        return None
    return created + read


def truncate_prompt(text: str) -> str:
    return truncate(text, MAX_GOAL_CHARS)


__all__ = [
    "extract_context_tokens",
    "extract_files_from_messages",
    "extract_goal",
    "extract_last_user_content",
    "extract_project_path",
    "extract_text_content",
    "has_tool_result",
    "last_user_index",
    "mentioned_files",
    "system_text",
    "text_blocks",
    "truncate_prompt",
]
