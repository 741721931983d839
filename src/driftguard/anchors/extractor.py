# SPDX-License-Identifier: MIT
# Copyright (c) 2025 OmniNode Team
"""Locate function/class/method regions in source files.

A single forward pass over the file keeps a stack of open anchors. Brace
languages (TypeScript/JavaScript, Go, Rust) close the innermost anchor when
the brace depth falls back to the depth recorded when it opened; Python
closes anchors when a code line dedents to or past the header's indentation.

Anchors feed two consumers: the step recorder, which labels edits with the
enclosing symbol, and change detection, which compares ``compute_code_hash``
values across sessions.
"""

from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import PurePath

logger = logging.getLogger(__name__)

DEFAULT_MAX_FILE_BYTES = 1_048_576
DEFAULT_MAX_ANCHORS = 500


class AnchorType(str, Enum):
    FUNCTION = "function"
    CLASS = "class"
    METHOD = "method"
    VARIABLE = "variable"
    UNKNOWN = "unknown"


@dataclass
class AnchorInfo:
    """A named source region. Line numbers are 1-indexed and inclusive."""

    type: AnchorType
    name: str
    line_start: int
    line_end: int | None = None

    def contains(self, line: int) -> bool:
        end = self.line_end if self.line_end is not None else self.line_start
        return self.line_start <= line <= end


@dataclass(frozen=True)
class _Language:
    block_style: str  # "brace" or "indent"
    functions: tuple[re.Pattern[str], ...]
    classes: tuple[re.Pattern[str], ...]
    method: re.Pattern[str] | None
    quotes: str = '"'
    line_comment: str = "//"
    method_first: bool = False


# Control-flow keywords that look like method headers to a regex.
_NOT_METHODS = frozenset(
    {"if", "for", "while", "switch", "catch", "return", "await", "new", "typeof", "else", "do"}
)

_TYPESCRIPT = _Language(
    block_style="brace",
    functions=(
        re.compile(r"^(?:export\s+)?(?:default\s+)?(?:async\s+)?function\s*\*?\s*(\w+)"),
        re.compile(
            r"^(?:export\s+)?(?:const|let|var)\s+(\w+)\s*=\s*(?:async\s*)?"
            r"(?:\([^)]*\)\s*(?::\s*[\w<>\[\]|, ]+)?\s*=>|function\b)"
        ),
    ),
    classes=(re.compile(r"^(?:export\s+)?(?:default\s+)?(?:abstract\s+)?class\s+(\w+)"),),
    method=re.compile(
        r"^\s+(?:public\s+|private\s+|protected\s+)?(?:static\s+)?(?:readonly\s+)?"
        r"(?:async\s+)?(?:get\s+|set\s+)?(\w+)\s*(?:<[^>]*>)?\s*\([^)]*\)"
    ),
    quotes="\"'`",
)

_PYTHON = _Language(
    block_style="indent",
    functions=(re.compile(r"^\s*(?:async\s+)?def\s+(\w+)\s*\("),),
    classes=(re.compile(r"^\s*class\s+(\w+)"),),
    method=None,
    quotes="\"'",
    line_comment="#",
)

_GO = _Language(
    block_style="brace",
    functions=(re.compile(r"^func\s+(\w+)\s*[\[(]"),),
    classes=(re.compile(r"^type\s+(\w+)\s+(?:struct|interface)\b"),),
    method=re.compile(r"^func\s+\([^)]+\)\s+(\w+)\s*\("),
    quotes="\"'`",
    method_first=True,
)

_RUST = _Language(
    block_style="brace",
    functions=(
        re.compile(r"^\s*(?:pub(?:\([^)]*\))?\s+)?(?:const\s+)?(?:async\s+)?(?:unsafe\s+)?fn\s+(\w+)"),
    ),
    classes=(
        re.compile(r"^(?:pub(?:\([^)]*\))?\s+)?(?:struct|enum|trait)\s+(\w+)"),
        re.compile(r"^impl(?:<[^>]*>)?\s+(?:[\w:<>]+\s+for\s+)?(\w+)"),
    ),
    method=None,
    # Lifetimes ('a) make single quotes unreliable as string delimiters.
    quotes='"',
)

_LANGUAGES: dict[str, _Language] = {
    ".ts": _TYPESCRIPT,
    ".tsx": _TYPESCRIPT,
    ".js": _TYPESCRIPT,
    ".jsx": _TYPESCRIPT,
    ".mjs": _TYPESCRIPT,
    ".cjs": _TYPESCRIPT,
    ".py": _PYTHON,
    ".go": _GO,
    ".rs": _RUST,
}


def language_for(file_path: str) -> _Language | None:
    return _LANGUAGES.get(PurePath(file_path).suffix.lower())


@dataclass
class _Open:
    anchor: AnchorInfo
    level: int  # brace depth or indentation at open time
    opened: bool = True


# =============================================================================
# Extraction
# =============================================================================


def extract_anchors(
    file_path: str,
    content: str,
    max_bytes: int = DEFAULT_MAX_FILE_BYTES,
    max_anchors: int = DEFAULT_MAX_ANCHORS,
) -> list[AnchorInfo]:
    """Return anchors found in ``content``, in order of their first line.

    Unsupported extensions and files over ``max_bytes`` yield an empty list.
    At most ``max_anchors`` anchors are recorded.
    """
    language = language_for(file_path)
    if language is None:
        return []
    if len(content.encode("utf-8", errors="ignore")) > max_bytes:
        logger.debug(f"Skipping anchor extraction for oversized file: {file_path}")
        return []

    lines = content.split("\n")
    if language.block_style == "indent":
        return _extract_indent(language, lines, max_anchors)
    return _extract_brace(language, lines, max_anchors)


def _match_first(patterns: tuple[re.Pattern[str], ...], line: str) -> str | None:
    for pattern in patterns:
        m = pattern.match(line)
        if m:
            return m.group(1)
    return None


def _classify_brace_header(
    language: _Language, line: str, inside_class: bool
) -> tuple[AnchorType, str] | None:
    stripped = line.strip()
    if stripped.startswith(language.line_comment) or stripped.startswith("*"):
        return None

    if language.method_first and language.method is not None:
        m = language.method.match(line)
        if m:
            return AnchorType.METHOD, m.group(1)

    name = _match_first(language.functions, line)
    if name is not None:
        is_indented = line[:1] in (" ", "\t")
        if inside_class and is_indented:
            return AnchorType.METHOD, name
        return AnchorType.FUNCTION, name

    name = _match_first(language.classes, line)
    if name is not None:
        return AnchorType.CLASS, name

    if language.method is not None and inside_class and not language.method_first:
        m = language.method.match(line)
        if m and m.group(1) not in _NOT_METHODS and not stripped.endswith(";"):
            return AnchorType.METHOD, m.group(1)
    return None


def _code_chars(language: _Language, line: str):
    """Yield characters of ``line`` that sit outside strings and comments."""
    quote: str | None = None
    i = 0
    n = len(line)
    while i < n:
        c = line[i]
        if quote is not None:
            if c == "\\":
                i += 2
                continue
            if c == quote:
                quote = None
            i += 1
            continue
        if line.startswith(language.line_comment, i):
            return
        if c in language.quotes:
            quote = c
            i += 1
            continue
        yield c
        i += 1


def _extract_brace(language: _Language, lines: list[str], max_anchors: int) -> list[AnchorInfo]:
    anchors: list[AnchorInfo] = []
    stack: list[_Open] = []
    depth = 0

    for lineno, line in enumerate(lines, start=1):
        inside_class = any(o.opened and o.anchor.type is AnchorType.CLASS for o in stack[-1:])
        header = _classify_brace_header(language, line, inside_class)
        if header is not None:
            # A header still waiting for its '{' was a declaration without a body.
            while stack and not stack[-1].opened:
                bodiless = stack.pop().anchor
                bodiless.line_end = max(lineno - 1, bodiless.line_start)
            if len(anchors) < max_anchors:
                anchor = AnchorInfo(type=header[0], name=header[1], line_start=lineno)
                anchors.append(anchor)
                stack.append(_Open(anchor=anchor, level=depth, opened=False))

        for c in _code_chars(language, line):
            if c == "{":
                depth += 1
                if stack and not stack[-1].opened:
                    stack[-1].opened = True
            elif c == "}":
                depth = max(0, depth - 1)
                while stack and stack[-1].opened and depth <= stack[-1].level:
                    stack.pop().anchor.line_end = lineno

        if stack and not stack[-1].opened and line.rstrip().endswith(";"):
            stack.pop().anchor.line_end = lineno

    for pending in stack:
        pending.anchor.line_end = len(lines)
    return anchors


def _extract_indent(language: _Language, lines: list[str], max_anchors: int) -> list[AnchorInfo]:
    anchors: list[AnchorInfo] = []
    stack: list[_Open] = []
    last_code_line = 0
    triple: str | None = None

    for lineno, line in enumerate(lines, start=1):
        if triple is not None:
            if line.count(triple) % 2 == 1:
                triple = None
            last_code_line = lineno
            continue

        stripped = line.strip()
        if not stripped or stripped.startswith(language.line_comment):
            continue

        indent = len(line) - len(line.lstrip())
        while stack and indent <= stack[-1].level:
            stack.pop().anchor.line_end = last_code_line

        name = _match_first(language.functions, line)
        kind: AnchorType | None = None
        if name is not None:
            parent = stack[-1].anchor.type if stack else None
            kind = AnchorType.METHOD if parent is AnchorType.CLASS else AnchorType.FUNCTION
        else:
            name = _match_first(language.classes, line)
            if name is not None:
                kind = AnchorType.CLASS

        if kind is not None and name is not None and len(anchors) < max_anchors:
            anchor = AnchorInfo(type=kind, name=name, line_start=lineno)
            anchors.append(anchor)
            stack.append(_Open(anchor=anchor, level=indent))

        last_code_line = lineno
        for delimiter in ('"""', "'''"):
            if line.count(delimiter) % 2 == 1:
                triple = delimiter
                break

    for pending in stack:
        pending.anchor.line_end = last_code_line
    return anchors


# =============================================================================
# Queries
# =============================================================================


def find_anchor_at_line(anchors: list[AnchorInfo], line_number: int) -> AnchorInfo | None:
    """Innermost anchor whose range contains ``line_number``."""
    best: AnchorInfo | None = None
    for anchor in anchors:
        if not anchor.contains(line_number):
            continue
        if best is None or anchor.line_start > best.line_start:
            best = anchor
        elif anchor.line_start == best.line_start and (anchor.line_end or 0) < (best.line_end or 0):
            best = anchor
    return best


def compute_code_hash(content: str, line_start: int, line_end: int) -> str:
    """Whitespace-normalized SHA-256 of a line range, truncated to 16 hex chars."""
    lines = content.split("\n")
    region = "\n".join(lines[max(line_start - 1, 0) : line_end])
    normalized = re.sub(r"\s+", " ", region).strip()
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()[:16]


def estimate_line_number(search: str, content: str) -> int | None:
    """Line of the first occurrence of ``search``'s first line, if any."""
    if not search or not content:
        return None
    first_line = search.split("\n")[0].strip()
    if not first_line:
        return None
    for lineno, line in enumerate(content.split("\n"), start=1):
        if first_line in line:
            return lineno
    return None


def describe_anchor(anchor: AnchorInfo) -> str:
    span = f"-{anchor.line_end}" if anchor.line_end else ""
    return f'{anchor.type.value} "{anchor.name}" at line {anchor.line_start}{span}'


__all__ = [
    "AnchorInfo",
    "AnchorType",
    "DEFAULT_MAX_ANCHORS",
    "DEFAULT_MAX_FILE_BYTES",
    "compute_code_hash",
    "describe_anchor",
    "estimate_line_number",
    "extract_anchors",
    "find_anchor_at_line",
    "language_for",
]
