# SPDX-License-Identifier: MIT
# Copyright (c) 2025 OmniNode Team
"""Text helpers shared by the injection and drift layers."""

from __future__ import annotations

import re

_SYSTEM_REMINDER_BLOCK = re.compile(r"<system-reminder>[\s\S]*?</system-reminder>")
_SYSTEM_REMINDER_ESCAPED_TAIL = re.compile(r"\\n[\"']?\s*</system-reminder>")
_SYSTEM_REMINDER_OPEN_TAIL = re.compile(r"<system-reminder>[^<]*")
_CONTINUATION_PREAMBLE = re.compile(
    r"^This session is being continued from a previous conversation[\s\S]*?Summary:",
    re.IGNORECASE,
)
_LEADING_NOISE = re.compile(r"^[\s\"'\\]+")

_SENTENCE = re.compile(r"[^.!?]+[.!?]+")


def truncate(text: str, max_length: int) -> str:
    """Cut ``text`` to ``max_length`` characters, marking the cut with ``...``."""
    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."


def smart_truncate(text: str, max_len: int = 120) -> str:
    """Shorten reasoning text for a one-line injection.

    Strips markdown noise, keeps whole sentences when at least one meaningful
    sentence fits, and otherwise cuts at the latest punctuation or space past
    60% of ``max_len``.
    """
    clean = re.sub(r"\|[^|]+\|", "", text)
    clean = re.sub(r"^[-*]\s*", "", clean, flags=re.MULTILINE)
    clean = re.sub(r"#{1,6}\s*", "", clean)
    clean = re.sub(r"\n+", " ", clean)
    clean = re.sub(r"\s+", " ", clean).strip()

    if len(clean) <= max_len:
        return clean

    result = ""
    for sentence in _SENTENCE.findall(clean):
        if len(result + sentence) <= max_len:
            result += sentence
        else:
            break
    if len(result) > 20:
        return result.strip()

    window = clean[:max_len]
    break_points = [
        p
        for p in (
            window.rfind(". "),
            window.rfind(", "),
            window.rfind("; "),
            window.rfind(": "),
            window.rfind(" - "),
            window.rfind(" "),
        )
        if p > max_len * 0.6
    ]
    cut = max(break_points) if break_points else window.rfind(" ")
    return window[: cut if cut > 0 else max_len].strip() + "..."


def clean_user_prompt(raw: str, strip_continuation: bool = False) -> str:
    """Remove harness-injected ``<system-reminder>`` noise from a prompt.

    With ``strip_continuation`` the "session is being continued" preamble
    that precedes a compacted summary is dropped too, which keeps it out of
    semantic memory search.
    """
    text = _SYSTEM_REMINDER_BLOCK.sub("", raw)
    text = _SYSTEM_REMINDER_ESCAPED_TAIL.sub("", text)
    text = text.replace("</system-reminder>", "")
    text = _SYSTEM_REMINDER_OPEN_TAIL.sub("", text)
    if strip_continuation:
        text = _CONTINUATION_PREAMBLE.sub("", text)
        text = _LEADING_NOISE.sub("", text)
    return text.strip()
