# SPDX-License-Identifier: MIT
# Copyright (c) 2025 OmniNode Team
"""Request orchestration: preprocess, forward, expand loop, post-process.

Flow per ``POST /v1/messages``:

    1. Under the project lock: classify the request, resolve the session,
       run the preprocessing stages and render the upstream body.
    2. Forward upstream (no lock held).
    3. Answer ``memory_expand`` tool calls internally and re-send, up to
       ``expand_max_loops`` times.
    4. Return the upstream response and schedule post-processing as a
       background task: token tracking, recovery alignment, drift scoring,
       escalation and step recording. With the extended cache enabled, an
       end_turn response also captures the request body for keep-alives.

Post-processing holds the project lock only while reading and writing
state. Scorer calls run between those sections so a slow scorer never
blocks other requests for the project.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from driftguard.anchors import (
    compute_code_hash,
    describe_anchor,
    estimate_line_number,
    extract_anchors,
    find_anchor_at_line,
)
from driftguard.config.settings import ProxySettings
from driftguard.drift import (
    DriftChecker,
    DriftCheckResult,
    ForcedRecoveryResult,
    ScorerClient,
    build_correction,
    check_recovery_alignment,
    format_correction_for_injection,
    should_skip_steps,
)
from driftguard.injection import (
    EXPAND_TOOL_NAME,
    InjectionManager,
    build_expanded_memory,
    memory_not_found_text,
)
from driftguard.memory import MemoryClient
from driftguard.mutator import append_messages
from driftguard.session import (
    ActionType,
    DeltaTracker,
    SessionManager,
    SessionMode,
    SessionState,
    SessionTaskStore,
    StepRecord,
)

from .action_parser import ParsedAction, parse_tool_use_blocks
from .context import RequestContext, RequestType, render_body
from .extractors import (
    extract_context_tokens,
    extract_goal,
    extract_last_user_content,
    extract_project_path,
    extract_text_content,
    has_tool_result,
    mentioned_files,
)
from .forwarder import ForwardResult, UpstreamForwarder
from .keepalive import CacheKeepAlive
from .preprocess import RequestPreprocessor, is_warmup

logger = logging.getLogger(__name__)

MAX_REASONING_CHARS = 1000
KEY_DECISION_MIN_CHARS = 200
SUPERSEDE_MIN_CHARS = 30
PASSTHROUGH_MODEL_MARKER = "haiku"

DECISION_KEYWORDS = (
    "decision", "decided", "chose", "chosen", "selected", "picked",
    "approach", "strategy", "solution", "implementation",
    "because", "reason", "rationale", "trade-off", "tradeoff",
    "instead of", "rather than", "prefer", "opted",
    "conclusion", "determined", "resolved",
)  # fmt: skip


@dataclass(frozen=True)
class ProxyResponse:
    status_code: int
    body: bytes
    headers: dict[str, str]
    media_type: str = "application/json"


def detect_key_decision(action_type: ActionType, reasoning: str) -> bool:
    """Edits and writes always count; otherwise keyword plus substance."""
    if action_type in (ActionType.EDIT, ActionType.WRITE):
        return True
    lowered = reasoning.lower()
    return len(reasoning) > KEY_DECISION_MIN_CHARS and any(kw in lowered for kw in DECISION_KEYWORDS)


def is_passthrough_model(model: Any) -> bool:
    """Small helper-model traffic is forwarded untouched."""
    return isinstance(model, str) and PASSTHROUGH_MODEL_MARKER in model.lower()


def is_superseded(goal: str, instruction: str) -> bool:
    """A new, substantial instruction that shares no file mentions with the goal."""
    if len(instruction) <= SUPERSEDE_MIN_CHARS or not goal or instruction == goal:
        return False
    return not set(mentioned_files(goal)) & set(mentioned_files(instruction))


@dataclass
class _PostPlan:
    """Work decided under the lock and carried out without it."""

    snapshot: SessionState
    recent_steps: list[StepRecord]
    run_drift_check: bool
    need_summary: bool
    summary_steps: list[StepRecord]


class ProxyOrchestrator:
    """Owns the per-process state and runs each proxied request."""

    def __init__(
        self,
        settings: ProxySettings,
        forwarder: UpstreamForwarder | None = None,
        scorer: ScorerClient | None = None,
        memory: MemoryClient | None = None,
        sessions: SessionManager | None = None,
    ) -> None:
        self.settings = settings
        self.forwarder = forwarder or UpstreamForwarder(settings)
        self.scorer = scorer or ScorerClient(settings)
        self.memory = memory or MemoryClient(settings)
        self.sessions = sessions or SessionManager(settings.step_history_limit)
        self.injections = InjectionManager()
        self.delta = DeltaTracker()
        self.task_store = SessionTaskStore(self.sessions)
        self.checker = DriftChecker(settings, self.scorer)
        self.preprocessor = RequestPreprocessor(
            settings, self.sessions, self.injections, self.delta, self.task_store, self.memory
        )
        self._last_message_count: dict[str, int] = {}
        self._background: set[asyncio.Task[None]] = set()
        self.keepalive = CacheKeepAlive(settings, self.forwarder)
        self._timers: list[asyncio.Task[None]] = []

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        await self.forwarder.start()
        if self.scorer.enabled:
            await self.scorer.start()
        if self.memory.enabled:
            await self.memory.start()
        self._timers.append(
            asyncio.create_task(
                self._run_periodically(
                    "Idle session sweep",
                    self.settings.session_sweep_interval_seconds,
                    self._sweep,
                )
            )
        )
        if self.keepalive.enabled:
            self._timers.append(
                asyncio.create_task(
                    self._run_periodically(
                        "Extended cache check",
                        self.settings.extended_cache_check_interval_seconds,
                        self.keepalive.check,
                    )
                )
            )
            logger.info("Extended cache: enabled (keep-alive timer started)")

    async def close(self) -> None:
        for timer in self._timers:
            timer.cancel()
        if self._timers:
            await asyncio.gather(*self._timers, return_exceptions=True)
        self._timers.clear()
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        await self.forwarder.close()
        await self.scorer.close()
        await self.memory.close()

    async def wait_for_background(self) -> None:
        """Wait until scheduled post-processing has finished."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def schedule_plan_clear(self, project_path: str, summary: str) -> None:
        self.preprocessor.schedule_plan_clear(project_path, summary)

    def sweep_idle_sessions(self) -> list[str]:
        """Abandon idle sessions and drop what was kept for their projects."""
        abandoned = self.sessions.abandon_stale(self.settings.session_idle_timeout_seconds)
        for state in abandoned:
            self.delta.clear(state.session_id)
            project = state.project_path
            if self.sessions.get_active_for_project(project) is not None:
                continue
            self.injections.clear(project)
            self._last_message_count.pop(project, None)
            self.sessions.discard_lock(project)
        if abandoned:
            logger.info(f"Swept {len(abandoned)} idle session(s)")
        return [state.session_id for state in abandoned]

    async def _sweep(self) -> None:
        self.sweep_idle_sessions()

    async def _run_periodically(
        self,
        name: str,
        interval: float,
        job: Callable[[], Awaitable[Any]],
    ) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await job()
            except Exception as e:
                logger.error(f"{name} failed: {e}", exc_info=True)

    # =========================================================================
    # Classification and session resolution
    # =========================================================================

    def detect_request_type(self, messages: list[dict[str, Any]], project_path: str) -> RequestType:
        count = len(messages)
        previous = self._last_message_count.get(project_path)
        self._last_message_count[project_path] = count

        if previous is not None and count == previous:
            return RequestType.RETRY
        if not messages:
            return RequestType.FIRST
        last = messages[-1]
        if last.get("role") == "user" and has_tool_result(last):
            return RequestType.CONTINUATION
        return RequestType.FIRST

    def _resolve_session(
        self,
        project_path: str,
        messages: list[dict[str, Any]],
        request_type: RequestType,
    ) -> SessionState:
        state = self.sessions.get_active_for_project(project_path)
        if state is None:
            state = self.sessions.create_if_absent(
                str(uuid4()), project_path, original_goal=extract_goal(messages) or ""
            )
        if request_type is RequestType.FIRST:
            self.sessions.update(state.session_id, prompt_count=state.prompt_count + 1)
        return state

    # =========================================================================
    # Request handling
    # =========================================================================

    async def handle(
        self,
        raw_body: bytes,
        body: dict[str, Any],
        headers: Mapping[str, Any],
    ) -> ProxyResponse:
        """Run one request end to end.

        Raises:
            ForwardError: When the upstream cannot be reached.
        """
        if is_passthrough_model(body.get("model")):
            result = await self.forwarder.forward(raw_body, headers)
            return self._to_response(result)

        project_path = extract_project_path(body)
        raw_text = raw_body.decode("utf-8")

        async with self.sessions.lock(project_path):
            ctx = RequestContext.from_body(raw_text, body, headers, project_path)
            ctx.request_type = self.detect_request_type(ctx.messages, project_path)
            if not is_warmup(extract_last_user_content(ctx.messages)):
                state = self._resolve_session(project_path, ctx.messages, ctx.request_type)
                ctx.session_id = state.session_id
            ctx = await self.preprocessor.run(ctx)
            final_body = render_body(ctx)

        logger.info(
            f"[{ctx.correlation_id}] {ctx.request_type.value} request "
            f"session={(ctx.session_id or '-')[:8]} messages={len(ctx.messages)} "
            f"replayed={ctx.reconstructed_count} injected={bool(ctx.user_msg_injection)}"
        )

        result = await self.forwarder.forward(final_body, headers)
        result, loops = await self._run_expand_loop(ctx, final_body, result)
        if loops:
            logger.info(f"[{ctx.correlation_id}] memory_expand loops: {loops}")

        if result.ok and result.message is not None and ctx.session_id and ctx.finished_by != "warmup":
            if self.keepalive.enabled and result.message.get("stop_reason") == "end_turn":
                self.keepalive.capture(project_path, final_body, headers)
            self._schedule_post_process(ctx, result.message)
        return self._to_response(result)

    @staticmethod
    def _to_response(result: ForwardResult) -> ProxyResponse:
        return ProxyResponse(
            status_code=result.status_code,
            body=result.body,
            headers=result.headers,
            media_type=result.content_type,
        )

    # =========================================================================
    # memory_expand loop
    # =========================================================================

    def expand_memories(self, project_path: str, tool_input: Any) -> str:
        ids = tool_input.get("ids") if isinstance(tool_input, Mapping) else None
        if not isinstance(ids, list) or not ids:
            return "No memory IDs provided."
        parts: list[str] = []
        found = 0
        for memory_id in ids:
            memory = self.injections.get_cached_memory(project_path, str(memory_id).lstrip("#"))
            if memory is None:
                logger.info(f"memory_expand: #{memory_id} not found")
                parts.append(memory_not_found_text(str(memory_id)))
            else:
                found += 1
                parts.append(build_expanded_memory(memory))
        logger.info(f"memory_expand: expanded {found}/{len(ids)} memories")
        return "\n\n".join(parts)

    async def _run_expand_loop(
        self,
        ctx: RequestContext,
        body: str,
        result: ForwardResult,
    ) -> tuple[ForwardResult, int]:
        loops = 0
        doc = body
        while result.ok and loops < self.settings.expand_max_loops:
            message = result.message or {}
            if message.get("stop_reason") != "tool_use":
                break
            tool_uses = [
                b for b in message.get("content") or [] if isinstance(b, dict) and b.get("type") == "tool_use"
            ]
            if not tool_uses or any(b.get("name") != EXPAND_TOOL_NAME for b in tool_uses):
                break

            loops += 1
            tool_results = [
                {
                    "type": "tool_result",
                    "tool_use_id": block.get("id"),
                    "content": self.expand_memories(ctx.project_path, block.get("input")),
                }
                for block in tool_uses
            ]
            appended = append_messages(
                doc,
                [
                    {"role": "assistant", "content": message.get("content") or []},
                    {"role": "user", "content": tool_results},
                ],
            )
            if not appended.success:
                logger.warning(f"[{ctx.correlation_id}] Could not build memory_expand continuation")
                break
            doc = appended.body
            result = await self.forwarder.forward(doc, ctx.headers)
        return result, loops

    # =========================================================================
    # Post-processing
    # =========================================================================

    def _schedule_post_process(self, ctx: RequestContext, message: dict[str, Any]) -> None:
        task = asyncio.create_task(self._post_process_safely(ctx, message))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _post_process_safely(self, ctx: RequestContext, message: dict[str, Any]) -> None:
        try:
            await self.post_process(ctx, message)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"[{ctx.correlation_id}] Post-processing failed: {e}", exc_info=True)

    async def post_process(self, ctx: RequestContext, message: dict[str, Any]) -> None:
        if not ctx.session_id:
            return
        actions = parse_tool_use_blocks(message)
        text = extract_text_content(message)
        instruction = extract_goal(ctx.messages) or ""
        context_tokens = extract_context_tokens(message)

        async with self.sessions.lock(ctx.project_path):
            state = self.sessions.get(ctx.session_id)
            if state is None:
                return
            if message.get("stop_reason") == "end_turn":
                state = self._rotate_if_superseded(state, instruction)
            ctx.session_id = state.session_id
            self._track_tokens(state, context_tokens)
            if actions and state.waiting_for_recovery:
                self._check_recovery(state, actions)
            plan = self._plan_post_work(state, actions, context_tokens)

        result: DriftCheckResult | None = None
        forced: ForcedRecoveryResult | None = None
        summary: str | None = None
        if plan.run_drift_check:
            result = await self.checker.check(plan.snapshot, plan.recent_steps, instruction, ctx.headers)
            if result.score < 5 and plan.snapshot.escalation_count >= self.settings.max_escalation:
                forced = await self.checker.generate_forced_recovery(
                    plan.snapshot, plan.recent_steps, result, ctx.headers
                )
        if plan.need_summary:
            summary = await self.checker.generate_session_summary(
                plan.snapshot, plan.summary_steps, ctx.headers
            )
        steps = [await self._build_step(state.session_id, action, text) for action in actions]

        async with self.sessions.lock(ctx.project_path):
            state = self.sessions.get(state.session_id)
            if state is None:
                return
            if summary is not None:
                self.sessions.update(state.session_id, pending_clear_summary=summary)
                logger.info(f"Clear summary pre-computed for {state.short_id} ({len(summary)} chars)")
            if result is not None:
                self._apply_drift_result(state, result, forced)
            self._record_steps(state, steps, result)

    def _rotate_if_superseded(self, state: SessionState, instruction: str) -> SessionState:
        if not is_superseded(state.original_goal, instruction):
            return state
        logger.info(f"Session {state.short_id} superseded by a new instruction, completing it")
        prompt_count = state.prompt_count
        self.sessions.complete_session(state.session_id)
        self.delta.clear(state.session_id)
        return self.sessions.create_if_absent(
            str(uuid4()), state.project_path, original_goal=instruction, prompt_count=prompt_count
        )

    def _track_tokens(self, state: SessionState, context_tokens: int | None) -> None:
        if context_tokens is None:
            return
        self.sessions.update(state.session_id, token_count=context_tokens)
        if context_tokens > self.settings.token_warning_threshold and not state.token_warning_logged:
            logger.warning(
                f"Session {state.short_id} context at {context_tokens} tokens "
                f"(warning threshold {self.settings.token_warning_threshold})"
            )
            self.sessions.update(state.session_id, token_warning_logged=True)

    def _check_recovery(self, state: SessionState, actions: list[ParsedAction]) -> None:
        steps = state.last_drift_result.recovery_steps if state.last_drift_result else ()
        for action in actions:
            aligned, reason = check_recovery_alignment(
                action.action_type, action.files, action.command, steps
            )
            if aligned:
                self.sessions.update(
                    state.session_id,
                    mode=SessionMode.NORMAL,
                    waiting_for_recovery=False,
                    escalation_count=0,
                    last_drift_result=None,
                )
                logger.info(f"Recovery aligned for {state.short_id}: {reason}")
                return
            level = self.sessions.increment_escalation(state.session_id, self.settings.max_escalation)
            logger.info(f"Recovery misaligned for {state.short_id} (escalation {level}): {reason}")

    def _plan_post_work(
        self,
        state: SessionState,
        actions: list[ParsedAction],
        context_tokens: int | None,
    ) -> _PostPlan:
        recent = self.sessions.recent_steps(state.session_id, self.settings.recent_steps_window)
        interval = self.settings.drift_check_interval
        run_check = (
            bool(actions)
            and state.has_valid_goal
            and any(s.action_type in (ActionType.EDIT, ActionType.WRITE) for s in recent)
            and state.prompt_count % interval == 0
            and state.last_checked_prompt != state.prompt_count
        )
        if run_check:
            self.sessions.update(
                state.session_id,
                last_checked_prompt=state.prompt_count,
                last_checked_at=datetime.now(UTC),
            )

        need_summary = (
            context_tokens is not None
            and context_tokens > self.settings.clear_precompute_threshold
            and not state.pending_clear_summary
            and not state.clear_summary_requested
        )
        if need_summary:
            self.sessions.update(state.session_id, clear_summary_requested=True)

        return _PostPlan(
            snapshot=dataclasses.replace(state, constraints=list(state.constraints)),
            recent_steps=recent,
            run_drift_check=run_check,
            need_summary=need_summary,
            summary_steps=self.sessions.all_steps(state.session_id, validated_only=True) if need_summary else [],
        )

    def _apply_drift_result(
        self,
        state: SessionState,
        result: DriftCheckResult,
        forced: ForcedRecoveryResult | None,
    ) -> None:
        maximum = self.settings.max_escalation
        self.sessions.update(
            state.session_id,
            drift_history=[*state.drift_history, result.score],
            last_drift_result=result,
        )

        if result.score >= 5:
            if state.escalation_count or state.pending_correction or state.mode is not SessionMode.NORMAL:
                logger.info(f"Session {state.short_id} back on track (score {result.score})")
            self.sessions.update(
                state.session_id,
                escalation_count=0,
                pending_correction=None,
                mode=SessionMode.NORMAL,
                waiting_for_recovery=False,
            )
            return

        if state.escalation_count < maximum:
            correction = build_correction(result, state, maximum)
            if correction is None:
                return
            level = self.sessions.increment_escalation(state.session_id, maximum)
            fields: dict[str, Any] = {"pending_correction": format_correction_for_injection(correction)}
            if correction.level.requires_recovery:
                fields.update(mode=SessionMode.DRIFTED, waiting_for_recovery=True)
            self.sessions.update(state.session_id, **fields)
            logger.info(
                f"Correction queued for {state.short_id}: level={correction.level.value} "
                f"score={result.score} escalation={level}/{maximum}"
            )
            return

        if forced is not None:
            injection, from_fallback = forced.injection_text, forced.from_fallback
        else:
            # Escalation reached the maximum after the snapshot was taken
            halt = build_correction(result, state, maximum)
            if halt is None:
                return
            injection, from_fallback = format_correction_for_injection(halt), True
        self.sessions.update(
            state.session_id,
            pending_forced_recovery=injection,
            pending_correction=None,
            mode=SessionMode.FORCED,
            waiting_for_recovery=True,
        )
        logger.warning(
            f"Forced recovery queued for {state.short_id} "
            f"(score {result.score}, fallback={from_fallback})"
        )

    async def _locate_anchor(self, action: ParsedAction) -> tuple[str | None, str | None]:
        """Anchor and code hash for the region an edit targets, when readable."""
        if action.action_type is not ActionType.EDIT or not action.files:
            return None, None
        search = action.raw_input.get("old_string")
        if not isinstance(search, str):
            edits = action.raw_input.get("edits")
            first = edits[0] if isinstance(edits, list) and edits else None
            search = first.get("old_string") if isinstance(first, Mapping) else None
        if not isinstance(search, str) or not search:
            return None, None

        path = Path(action.files[0])
        try:
            if not path.is_absolute() or not path.is_file():
                return None, None
            if path.stat().st_size > self.settings.anchor_max_file_bytes:
                return None, None
            content = await asyncio.to_thread(path.read_text, encoding="utf-8", errors="replace")
        except OSError as e:
            logger.debug(f"Anchor lookup skipped for {path}: {e}")
            return None, None

        line = estimate_line_number(search, content)
        if line is None:
            return None, None
        anchors = extract_anchors(
            str(path), content, self.settings.anchor_max_file_bytes, self.settings.anchor_max_count
        )
        anchor = find_anchor_at_line(anchors, line)
        if anchor is None:
            return None, None
        code_hash = compute_code_hash(content, anchor.line_start, anchor.line_end or anchor.line_start)
        return describe_anchor(anchor), code_hash

    async def _build_step(self, session_id: str, action: ParsedAction, text: str) -> StepRecord:
        anchor, code_hash = await self._locate_anchor(action)
        return StepRecord(
            session_id=session_id,
            action_type=action.action_type,
            files=list(action.files),
            command=action.command,
            folders=list(action.folders),
            reasoning=text[:MAX_REASONING_CHARS] or None,
            is_key_decision=detect_key_decision(action.action_type, text),
            anchor=anchor,
            code_hash=code_hash,
        )

    def _record_steps(
        self,
        state: SessionState,
        steps: list[StepRecord],
        result: DriftCheckResult | None,
    ) -> None:
        """Store the turn's steps; repeated reasoning is kept only on the first."""
        skip = result is not None and should_skip_steps(result.score)
        previous_reasoning: str | None = None
        for step in steps:
            reasoning = step.reasoning
            if reasoning is not None and reasoning == previous_reasoning:
                step.reasoning = None
                step.is_key_decision = False
            step.session_id = state.session_id
            step.drift_score = result.score if result else None
            step.is_validated = not skip
            self.sessions.add_step(step)
            previous_reasoning = reasoning
            if step.is_key_decision:
                logger.info(f"Key decision recorded for {state.short_id}: {step.action_type.value} {step.files[:3]}")
        if steps:
            logger.debug(f"Recorded {len(steps)} step(s) for {state.short_id} (validated={not skip})")


__all__ = [
    "DECISION_KEYWORDS",
    "ProxyOrchestrator",
    "ProxyResponse",
    "detect_key_decision",
    "is_passthrough_model",
    "is_superseded",
]
