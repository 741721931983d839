# SPDX-License-Identifier: MIT
# Copyright (c) 2025 OmniNode Team
"""Per-request side channel carried between pipeline stages.

Nothing in RequestContext is ever serialized into the upstream body except
through ``render_body``, which applies the recorded injections with the raw
body mutator.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any
from uuid import uuid4

from driftguard.mutator import (
    append_system_block,
    append_to_last_user_message,
    inject_tool,
)

logger = logging.getLogger(__name__)


class RequestType(StrEnum):
    FIRST = "first"
    CONTINUATION = "continuation"
    RETRY = "retry"


@dataclass
class RequestContext:
    raw_body: str
    body: dict[str, Any]
    headers: Mapping[str, Any]
    project_path: str
    request_type: RequestType = RequestType.FIRST
    session_id: str | None = None
    messages: list[dict[str, Any]] = field(default_factory=list)
    raw_user_prompt: str = ""
    system_injections: list[str] = field(default_factory=list)
    user_msg_injection: str | None = None
    tools: list[dict[str, Any]] = field(default_factory=list)
    messages_rewritten: bool = False
    reconstructed_count: int = 0
    original_last_user_pos: int | None = None
    finished_by: str | None = None
    correlation_id: str = field(default_factory=lambda: uuid4().hex[:12])

    @classmethod
    def from_body(
        cls,
        raw_body: str,
        body: dict[str, Any],
        headers: Mapping[str, Any],
        project_path: str,
        **fields: Any,
    ) -> RequestContext:
        raw_messages = body.get("messages")
        messages = [m for m in raw_messages if isinstance(m, dict)] if isinstance(raw_messages, list) else []
        return cls(
            raw_body=raw_body,
            body=body,
            headers=headers,
            project_path=project_path,
            messages=messages,
            **fields,
        )

    @property
    def done(self) -> bool:
        return self.finished_by is not None

    def finish(self, stage: str) -> RequestContext:
        self.finished_by = stage
        return self

    def replace_messages(self, messages: list[dict[str, Any]]) -> None:
        self.messages = messages
        self.messages_rewritten = True


def render_body(ctx: RequestContext) -> str:
    """Final upstream body for ``ctx``.

    The client's bytes are kept unless the message list was rewritten, in
    which case the body is re-serialized compactly. Injections are then
    spliced in with the raw mutator: system blocks, the user-message
    injection, and finally tool definitions.
    """
    if ctx.messages_rewritten:
        doc = json.dumps(
            {**ctx.body, "messages": ctx.messages},
            ensure_ascii=False,
            separators=(",", ":"),
        )
    else:
        doc = ctx.raw_body

    for text in ctx.system_injections:
        result = append_system_block(doc, "\n\n" + text)
        if not result.success:
            logger.warning(f"[{ctx.correlation_id}] System prompt injection failed")
        doc = result.body

    if ctx.user_msg_injection:
        result = append_to_last_user_message(doc, ctx.user_msg_injection)
        if not result.success:
            logger.warning(f"[{ctx.correlation_id}] User message injection failed")
        doc = result.body

    for tool in ctx.tools:
        result = inject_tool(doc, tool)
        if not result.success:
            logger.warning(f"[{ctx.correlation_id}] Tool injection failed for {tool.get('name')}")
        doc = result.body

    return doc


__all__ = ["RequestContext", "RequestType", "render_body"]
