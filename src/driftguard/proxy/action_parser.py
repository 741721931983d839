# SPDX-License-Identifier: MIT
# Copyright (c) 2025 OmniNode Team
"""Normalize ``tool_use`` blocks from an upstream response into actions."""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from driftguard.session.models import ActionType

TOOL_ACTION_MAP: dict[str, ActionType] = {
    "Edit": ActionType.EDIT,
    "MultiEdit": ActionType.EDIT,
    "NotebookEdit": ActionType.EDIT,
    "Write": ActionType.WRITE,
    "Read": ActionType.READ,
    "Bash": ActionType.BASH,
    "Grep": ActionType.GREP,
    "Glob": ActionType.GLOB,
    "Task": ActionType.TASK,
}

_ABSOLUTE_PATH = re.compile(r"(?:^|\s)(/[^\s\"']+)")
_QUOTED_PATH = re.compile(r"[\"'](/[^\"']+)[\"']")
_PSEUDO_FS_PREFIXES = ("/dev/", "/proc/", "/sys/")


@dataclass(frozen=True)
class ParsedAction:
    tool_name: str
    tool_id: str
    action_type: ActionType
    files: list[str] = field(default_factory=list)
    folders: list[str] = field(default_factory=list)
    command: str | None = None
    raw_input: dict[str, Any] = field(default_factory=dict)


def _unique(items: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(items))


def extract_files_from_bash(command: str) -> list[str]:
    files = [
        path
        for path in _ABSOLUTE_PATH.findall(command)
        if not path.startswith(_PSEUDO_FS_PREFIXES)
    ]
    files.extend(_QUOTED_PATH.findall(command))
    return files


def glob_base(pattern: str) -> str | None:
    """Leading non-glob part of a pattern: ``src/**/*.py`` -> ``src``."""
    parts: list[str] = []
    for part in pattern.split("/"):
        if any(ch in part for ch in "*?["):
            break
        parts.append(part)
    base = "/".join(parts)
    return base or None


def parse_tool_use_block(block: Mapping[str, Any]) -> ParsedAction:
    name = str(block.get("name", ""))
    raw = block.get("input")
    tool_input: dict[str, Any] = dict(raw) if isinstance(raw, Mapping) else {}
    files: list[str] = []
    folders: list[str] = []
    command: str | None = None

    if name in ("Edit", "Write", "Read", "NotebookEdit"):
        for key in ("file_path", "notebook_path"):
            if isinstance(tool_input.get(key), str):
                files.append(tool_input[key])
    elif name == "MultiEdit":
        if isinstance(tool_input.get("file_path"), str):
            files.append(tool_input["file_path"])
        for edit in tool_input.get("edits") or []:
            if isinstance(edit, Mapping) and isinstance(edit.get("file_path"), str):
                files.append(edit["file_path"])
    elif name == "Bash":
        if isinstance(tool_input.get("command"), str):
            command = tool_input["command"]
            files.extend(extract_files_from_bash(command))
    elif name in ("Glob", "Grep"):
        if isinstance(tool_input.get("path"), str):
            folders.append(tool_input["path"])
        if name == "Glob" and isinstance(tool_input.get("pattern"), str):
            base = glob_base(tool_input["pattern"])
            if base:
                folders.append(base)

    return ParsedAction(
        tool_name=name,
        tool_id=str(block.get("id", "")),
        action_type=TOOL_ACTION_MAP.get(name, ActionType.OTHER),
        files=_unique(files),
        folders=_unique(folders),
        command=command,
        raw_input=tool_input,
    )


def parse_tool_use_blocks(response: Mapping[str, Any]) -> list[ParsedAction]:
    content = response.get("content")
    if not isinstance(content, list):
        return []
    return [
        parse_tool_use_block(block)
        for block in content
        if isinstance(block, Mapping) and block.get("type") == "tool_use"
    ]


def has_modifying_actions(actions: Iterable[ParsedAction]) -> bool:
    return any(a.action_type in (ActionType.EDIT, ActionType.WRITE) for a in actions)


__all__ = [
    "TOOL_ACTION_MAP",
    "ParsedAction",
    "extract_files_from_bash",
    "glob_base",
    "has_modifying_actions",
    "parse_tool_use_block",
    "parse_tool_use_blocks",
]
