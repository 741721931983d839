# SPDX-License-Identifier: MIT
# Copyright (c) 2025 OmniNode Team
"""Byte-preserving edits to a serialized messages request.

The upstream prompt cache keys on the exact request prefix. Parsing the body
and dumping it again can reorder keys, change whitespace or reformat numbers,
so every edit here splices text into the original document instead:

    doc'[0:pos] == doc[0:pos]

where ``pos`` is the insertion point reported in ``MutationResult``.

Locating the insertion point uses a small structural scanner (strings are
skipped with escape handling, so brackets inside string literals never
affect depth). Only top-level keys are considered, which keeps a ``tools``
key nested inside a tool input from being mistaken for the request's own.

None of the public functions raise. A document that cannot be navigated is
returned unchanged with ``success=False``.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any

from driftguard.lib.errors import MutationError

logger = logging.getLogger(__name__)

_WS = " \t\r\n"


@dataclass(frozen=True)
class MutationResult:
    """Outcome of a raw body edit.

    Attributes:
        body: The edited document, or the input when nothing changed.
        success: False when the target could not be located.
        insert_pos: Character offset of the splice, or None if nothing was
            inserted.
    """

    body: str
    success: bool
    insert_pos: int | None = None

    @property
    def changed(self) -> bool:
        return self.insert_pos is not None


# =============================================================================
# Scanner
# =============================================================================


def _skip_ws(doc: str, i: int) -> int:
    n = len(doc)
    while i < n and doc[i] in _WS:
        i += 1
    return i


def _scan_string(doc: str, i: int) -> int:
    """Return the index just past the string literal opening at ``i``."""
    if doc[i] != '"':
        raise MutationError(f"expected string at offset {i}")
    i += 1
    n = len(doc)
    while i < n:
        c = doc[i]
        if c == "\\":
            i += 2
            continue
        if c == '"':
            return i + 1
        i += 1
    raise MutationError("unterminated string literal")


def find_closing_bracket(doc: str, open_idx: int) -> int:
    """Index of the bracket closing the array/object opened at ``open_idx``."""
    if doc[open_idx] not in "[{":
        raise MutationError(f"no container at offset {open_idx}")
    depth = 0
    i = open_idx
    n = len(doc)
    while i < n:
        c = doc[i]
        if c == '"':
            i = _scan_string(doc, i)
            continue
        if c in "[{":
            depth += 1
        elif c in "]}":
            depth -= 1
            if depth == 0:
                return i
        i += 1
    raise MutationError("unbalanced brackets")


def _scan_value(doc: str, i: int) -> int:
    """Return the index just past the JSON value starting at ``i``."""
    c = doc[i]
    if c == '"':
        return _scan_string(doc, i)
    if c in "[{":
        return find_closing_bracket(doc, i) + 1
    j = i
    n = len(doc)
    while j < n and doc[j] not in ",]}" and doc[j] not in _WS:
        j += 1
    if j == i:
        raise MutationError(f"empty value at offset {i}")
    return j


def _iter_members(doc: str, open_idx: int) -> Iterator[tuple[str, int, int]]:
    """Yield ``(key, value_start, value_end)`` for the object at ``open_idx``."""
    if doc[open_idx] != "{":
        raise MutationError(f"expected object at offset {open_idx}")
    i = _skip_ws(doc, open_idx + 1)
    if doc[i] == "}":
        return
    while True:
        key_end = _scan_string(doc, i)
        key = json.loads(doc[i:key_end])
        i = _skip_ws(doc, key_end)
        if doc[i] != ":":
            raise MutationError(f"expected ':' at offset {i}")
        value_start = _skip_ws(doc, i + 1)
        value_end = _scan_value(doc, value_start)
        yield key, value_start, value_end
        i = _skip_ws(doc, value_end)
        if doc[i] == ",":
            i = _skip_ws(doc, i + 1)
            continue
        if doc[i] == "}":
            return
        raise MutationError(f"expected ',' or '}}' at offset {i}")


def _iter_elements(doc: str, open_idx: int) -> Iterator[tuple[int, int]]:
    """Yield ``(start, end)`` spans for elements of the array at ``open_idx``."""
    if doc[open_idx] != "[":
        raise MutationError(f"expected array at offset {open_idx}")
    i = _skip_ws(doc, open_idx + 1)
    if doc[i] == "]":
        return
    while True:
        end = _scan_value(doc, i)
        yield i, end
        i = _skip_ws(doc, end)
        if doc[i] == ",":
            i = _skip_ws(doc, i + 1)
            continue
        if doc[i] == "]":
            return
        raise MutationError(f"expected ',' or ']' at offset {i}")


def _root_open(doc: str) -> int:
    i = _skip_ws(doc, 0)
    if i >= len(doc) or doc[i] != "{":
        raise MutationError("document is not a JSON object")
    return i


def find_top_level_value(doc: str, key: str) -> tuple[int, int] | None:
    """Span of the value stored under top-level ``key``, or None if absent."""
    for member_key, start, end in _iter_members(doc, _root_open(doc)):
        if member_key == key:
            return start, end
    return None


def _member_value(doc: str, obj_start: int, key: str) -> tuple[int, int] | None:
    for member_key, start, end in _iter_members(doc, obj_start):
        if member_key == key:
            return start, end
    return None


def _array_is_empty(doc: str, open_idx: int) -> bool:
    return doc[_skip_ws(doc, open_idx + 1)] == "]"


def escape_json_text(text: str) -> str:
    """Escape ``text`` for placement inside an existing JSON string literal."""
    return json.dumps(text, ensure_ascii=False)[1:-1]


def _compact(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


# =============================================================================
# Narrow splice interface
# =============================================================================


def insert_at(doc: str, position: int, payload: str) -> MutationResult:
    """Splice ``payload`` into ``doc`` at ``position``.

    Everything before ``position`` is preserved byte for byte. Positions
    outside the document are rejected.
    """
    if position < 0 or position > len(doc):
        return MutationResult(doc, False)
    return MutationResult(doc[:position] + payload + doc[position:], True, position)


def _append_array_element(doc: str, open_idx: int, element: str) -> MutationResult:
    close_idx = find_closing_bracket(doc, open_idx)
    separator = "" if _array_is_empty(doc, open_idx) else ","
    return insert_at(doc, close_idx, separator + element)


def _append_top_level_key(doc: str, key: str, value: str) -> MutationResult:
    """Add ``"key":value`` as the last member of the root object."""
    root = _root_open(doc)
    close_idx = find_closing_bracket(doc, root)
    has_members = doc[_skip_ws(doc, root + 1)] != "}"
    separator = "," if has_members else ""
    return insert_at(doc, close_idx, f"{separator}{_compact(key)}:{value}")


# =============================================================================
# Public operations
# =============================================================================


def append_to_last_user_message(doc: str, text: str) -> MutationResult:
    """Append ``text`` to the content of the last ``role: user`` message.

    String content gets ``\\n\\n`` + text before its closing quote. Array
    content gets a new ``{"type":"text"}`` block before its closing bracket.
    """
    try:
        messages = find_top_level_value(doc, "messages")
        if messages is None or doc[messages[0]] != "[":
            return MutationResult(doc, False)

        last_user: int | None = None
        for start, _end in _iter_elements(doc, messages[0]):
            if doc[start] != "{":
                continue
            role = _member_value(doc, start, "role")
            if role is not None and json.loads(doc[role[0] : role[1]]) == "user":
                last_user = start
        if last_user is None:
            return MutationResult(doc, False)

        content = _member_value(doc, last_user, "content")
        if content is None:
            return MutationResult(doc, False)
        value_start, value_end = content

        if doc[value_start] == '"':
            return insert_at(doc, value_end - 1, escape_json_text("\n\n" + text))
        if doc[value_start] == "[":
            block = _compact({"type": "text", "text": "\n\n" + text})
            return _append_array_element(doc, value_start, block)
        return MutationResult(doc, False)
    except (MutationError, IndexError, ValueError) as e:
        logger.debug(f"User message injection skipped: {e}")
        return MutationResult(doc, False)


def append_system_block(doc: str, text: str) -> MutationResult:
    """Append ``text`` to the system prompt.

    An array system prompt gets a new text block; a string system prompt gets
    the text before its closing quote; a missing one is added as the last
    top-level key.
    """
    try:
        system = find_top_level_value(doc, "system")
        if system is None:
            return _append_top_level_key(doc, "system", _compact(text))
        value_start, value_end = system
        if doc[value_start] == "[":
            block = _compact({"type": "text", "text": text})
            return _append_array_element(doc, value_start, block)
        if doc[value_start] == '"':
            return insert_at(doc, value_end - 1, escape_json_text(text))
        return MutationResult(doc, False)
    except (MutationError, IndexError, ValueError) as e:
        logger.debug(f"System prompt injection skipped: {e}")
        return MutationResult(doc, False)


def inject_tool(doc: str, tool_def: dict[str, Any]) -> MutationResult:
    """Add ``tool_def`` to the top-level ``tools`` array.

    A tool whose name is already declared is left alone and reported as a
    successful no-op. With no ``tools`` key a new one is appended.
    """
    element = _compact(tool_def)
    try:
        tools = find_top_level_value(doc, "tools")
        if tools is None:
            return _append_top_level_key(doc, "tools", f"[{element}]")
        value_start, _ = tools
        if doc[value_start] != "[":
            return MutationResult(doc, False)
        name = tool_def.get("name")
        for start, end in _iter_elements(doc, value_start):
            if doc[start] != "{":
                continue
            existing = _member_value(doc, start, "name")
            if existing is not None and json.loads(doc[existing[0] : existing[1]]) == name:
                return MutationResult(doc, True)
        return _append_array_element(doc, value_start, element)
    except (MutationError, IndexError, ValueError) as e:
        logger.debug(f"Tool injection skipped: {e}")
        return MutationResult(doc, False)


def append_messages(doc: str, messages: list[dict[str, Any]]) -> MutationResult:
    """Append whole messages to the end of the ``messages`` array."""
    if not messages:
        return MutationResult(doc, True)
    try:
        found = find_top_level_value(doc, "messages")
        if found is None or doc[found[0]] != "[":
            return MutationResult(doc, False)
        elements = ",".join(_compact(m) for m in messages)
        return _append_array_element(doc, found[0], elements)
    except (MutationError, IndexError, ValueError) as e:
        logger.debug(f"Message append skipped: {e}")
        return MutationResult(doc, False)


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
