# SPDX-License-Identifier: MIT
# Copyright (c) 2025 OmniNode Team
"""Request preprocessing as an ordered pipeline of named stages.

Stages run in order and any of them may end the pipeline early:

    warmup       warmup request: tool definition only
    prepare      raw prompt, tool description, commit pending records
    plan_clear   scheduled plan clear: wipe messages, inject summary
    token_clear  token ceiling passed with a summary queued: wipe and inject
    reconstruct  replay earlier injections onto the message list
    preview      first turn: memory/plan preview or dynamic context
    retry        retry: reuse the cached preview for the same message count

The caller holds the project lock for the whole run. Memory service
failures are logged and never stop the request.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from driftguard.config.settings import ProxySettings
from driftguard.injection import (
    NO_MEMORIES_MARKER,
    InjectionManager,
    InjectionRecord,
    InjectionType,
    build_drift_recovery_injection,
    build_expand_tool,
    build_memory_preview,
    build_plan_preview,
    build_tool_description,
)
from driftguard.lib.errors import MemoryFetchError
from driftguard.lib.text import clean_user_prompt
from driftguard.memory import MemoryClient
from driftguard.session import DeltaTracker, SessionManager, SessionState, TaskStore

from .context import RequestContext, RequestType
from .extractors import (
    extract_files_from_messages,
    extract_last_user_content,
    last_user_index,
    truncate_prompt,
)

logger = logging.getLogger(__name__)

WARMUP_PREFIX = "Warmup"

Stage = Callable[[RequestContext], Awaitable[RequestContext]]


@dataclass(frozen=True)
class PendingPlanClear:
    project_path: str
    summary: str


def is_warmup(prompt: str) -> bool:
    return clean_user_prompt(prompt).startswith(WARMUP_PREFIX)


class RequestPreprocessor:
    """Applies the preprocessing stages to a RequestContext."""

    def __init__(
        self,
        settings: ProxySettings,
        sessions: SessionManager,
        injections: InjectionManager,
        delta: DeltaTracker,
        task_store: TaskStore,
        memory: MemoryClient,
    ) -> None:
        self._settings = settings
        self._sessions = sessions
        self._injections = injections
        self._delta = delta
        self._task_store = task_store
        self._memory = memory
        self._pending_plan_clear: PendingPlanClear | None = None
        self.stages: list[tuple[str, Stage]] = [
            ("warmup", self._warmup),
            ("prepare", self._prepare),
            ("plan_clear", self._plan_clear),
            ("token_clear", self._token_clear),
            ("reconstruct", self._reconstruct),
            ("preview", self._inject_preview),
            ("retry", self._reuse_cached_preview),
        ]

    # =========================================================================
    # Plan clear scheduling
    # =========================================================================

    def schedule_plan_clear(self, project_path: str, summary: str) -> None:
        self._pending_plan_clear = PendingPlanClear(project_path, summary)
        logger.info(f"Plan clear scheduled for {project_path} ({len(summary)} chars)")

    @property
    def pending_plan_clear(self) -> PendingPlanClear | None:
        return self._pending_plan_clear

    # =========================================================================
    # Pipeline
    # =========================================================================

    async def run(self, ctx: RequestContext) -> RequestContext:
        for name, stage in self.stages:
            ctx = await stage(ctx)
            if ctx.done:
                logger.debug(f"[{ctx.correlation_id}] Preprocessing finished at stage {name}")
                break
        return ctx

    def _session(self, ctx: RequestContext) -> SessionState | None:
        return self._sessions.get(ctx.session_id) if ctx.session_id else None

    async def _warmup(self, ctx: RequestContext) -> RequestContext:
        ctx.tools.append(build_expand_tool())
        if is_warmup(extract_last_user_content(ctx.messages)):
            return ctx.finish("warmup")
        return ctx

    async def _prepare(self, ctx: RequestContext) -> RequestContext:
        ctx.raw_user_prompt = truncate_prompt(clean_user_prompt(extract_last_user_content(ctx.messages)))
        ctx.system_injections.append(build_tool_description())
        if ctx.request_type is RequestType.FIRST:
            committed = self._injections.commit_pending(ctx.project_path)
            if committed:
                logger.debug(f"[{ctx.correlation_id}] Committed {committed} injection record(s)")
        if ctx.session_id and ctx.raw_user_prompt and ctx.request_type is RequestType.FIRST:
            self._sessions.update(ctx.session_id, raw_user_prompt=ctx.raw_user_prompt)
        return ctx

    async def _plan_clear(self, ctx: RequestContext) -> RequestContext:
        pending = self._pending_plan_clear
        if pending is None or pending.project_path != ctx.project_path:
            return ctx
        ctx.replace_messages([])
        ctx.system_injections.append(pending.summary)
        self._pending_plan_clear = None
        self._injections.clear(ctx.project_path)
        logger.info(f"[{ctx.correlation_id}] Plan clear applied for {ctx.project_path}")
        return ctx.finish("plan_clear")

    async def _token_clear(self, ctx: RequestContext) -> RequestContext:
        state = self._session(ctx)
        if state is None or not state.pending_clear_summary:
            return ctx
        if state.token_count <= self._settings.token_clear_threshold:
            return ctx

        logger.info(
            f"[{ctx.correlation_id}] Clear mode activated for {state.short_id}: "
            f"{state.token_count} tokens > {self._settings.token_clear_threshold}"
        )
        ctx.replace_messages([])
        ctx.system_injections.append(state.pending_clear_summary)
        self._sessions.update(state.session_id, pending_clear_summary=None)
        self._sessions.complete_session(state.session_id)
        self._delta.clear(state.session_id)
        self._injections.clear(ctx.project_path)
        return ctx.finish("token_clear")

    async def _reconstruct(self, ctx: RequestContext) -> RequestContext:
        index = last_user_index(ctx.messages)
        ctx.original_last_user_pos = index if index is not None else len(ctx.messages) - 1
        messages, count = self._injections.reconstruct_messages(ctx.messages, ctx.project_path)
        if count:
            ctx.replace_messages(messages)
            ctx.reconstructed_count = count
            logger.debug(f"[{ctx.correlation_id}] Replayed {count} injection(s)")
        return ctx

    async def _inject_preview(self, ctx: RequestContext) -> RequestContext:
        if ctx.request_type is not RequestType.FIRST:
            return ctx
        state = self._session(ctx)
        if self._memory.enabled:
            await self._inject_memory_preview(ctx, state)
        else:
            self._inject_dynamic_context(ctx, state)
        return ctx

    async def _reuse_cached_preview(self, ctx: RequestContext) -> RequestContext:
        if ctx.request_type is not RequestType.RETRY:
            return ctx
        cached = self._injections.get_cached_preview(ctx.project_path, len(ctx.messages))
        if cached:
            ctx.user_msg_injection = cached
            logger.debug(f"[{ctx.correlation_id}] Reusing cached preview for retry")
        return ctx

    # =========================================================================
    # Preview helpers
    # =========================================================================

    def _record(self, ctx: RequestContext, text: str, kind: InjectionType) -> None:
        ctx.user_msg_injection = text
        self._injections.set_cached_preview(ctx.project_path, text, len(ctx.messages))
        if ctx.original_last_user_pos is not None and ctx.original_last_user_pos >= 0:
            self._injections.add_record(
                ctx.project_path,
                InjectionRecord(position=ctx.original_last_user_pos, type=kind, preview=text),
            )

    def _consume_pending(self, state: SessionState | None) -> None:
        if state is not None and (state.pending_correction or state.pending_forced_recovery):
            self._sessions.update(
                state.session_id, pending_correction=None, pending_forced_recovery=None
            )

    async def _inject_memory_preview(self, ctx: RequestContext, state: SessionState | None) -> None:
        prompt = clean_user_prompt(extract_last_user_content(ctx.messages), strip_continuation=True)
        if not prompt:
            return
        mentioned = extract_files_from_messages(ctx.messages)
        drift_recovery = build_drift_recovery_injection(
            state.pending_correction if state else None,
            state.pending_forced_recovery if state else None,
        )

        text: str | None = None
        try:
            memories = await self._memory.fetch_memories(
                ctx.project_path, context=prompt, current_files=mentioned or None
            )
        except MemoryFetchError as e:
            logger.warning(f"[{ctx.correlation_id}] Memory fetch failed: {e}")
        else:
            if memories:
                self._injections.cache_memories(ctx.project_path, memories)
                text = build_memory_preview(memories)
                logger.info(
                    f"[{ctx.correlation_id}] {len(memories)} memories found: "
                    f"[{', '.join(m.short_id for m in memories)}]"
                )
            else:
                text = NO_MEMORIES_MARKER
            if drift_recovery:
                text = f"{text}\n{drift_recovery}"
            self._consume_pending(state)

        try:
            plans = await self._memory.fetch_plans()
        except MemoryFetchError as e:
            logger.warning(f"[{ctx.correlation_id}] Plan fetch failed: {e}")
        else:
            plan_preview = build_plan_preview(plans)
            if plan_preview:
                text = f"{text}\n\n{plan_preview}" if text else plan_preview
                logger.info(f"[{ctx.correlation_id}] {len(plans)} active plans injected")

        if text:
            self._record(ctx, text, InjectionType.PREVIEW)

    def _inject_dynamic_context(self, ctx: RequestContext, state: SessionState | None) -> None:
        if not ctx.session_id:
            return
        text = self._delta.build_dynamic_injection(ctx.session_id, state, self._task_store)
        if text:
            self._record(ctx, text, InjectionType.CORRECTION)
            self._consume_pending(state)


__all__ = ["PendingPlanClear", "RequestPreprocessor", "Stage", "is_warmup"]
