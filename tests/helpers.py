# SPDX-License-Identifier: MIT
# Copyright (c) 2025 OmniNode Team
"""Request and response builders shared across test modules."""

from __future__ import annotations

import json
from typing import Any

WORKDIR = "/work/project"


def make_body(
    messages: list[dict[str, Any]],
    system: Any = f"You are a coding agent.\nWorking directory: {WORKDIR}",
    **extra: Any,
) -> dict[str, Any]:
    """Messages-API request body with a working directory in the system prompt."""
    body: dict[str, Any] = {"model": "claude-sonnet-4-5", "max_tokens": 1024}
    if system is not None:
        body["system"] = system
    body["messages"] = messages
    body.update(extra)
    return body


def dump(body: dict[str, Any]) -> str:
    """Serialize the way a client would: spaced separators, key order kept."""
    return json.dumps(body)


def assistant_message(
    content: list[dict[str, Any]],
    stop_reason: str = "end_turn",
    usage: dict[str, Any] | None = None,
) -> dict[str, Any]:
    return {
        "id": "msg_01",
        "type": "message",
        "role": "assistant",
        "model": "claude-sonnet-4-5",
        "content": content,
        "stop_reason": stop_reason,
        "usage": usage or {"input_tokens": 10, "output_tokens": 5},
    }


def tool_use(name: str, tool_id: str | None = None, **tool_input: Any) -> dict[str, Any]:
    return {"type": "tool_use", "id": tool_id or f"toolu_{name}", "name": name, "input": tool_input}
