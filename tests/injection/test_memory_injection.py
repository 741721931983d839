# SPDX-License-Identifier: MIT
# Copyright (c) 2025 OmniNode Team
"""Tests for driftguard.injection.memory_injection."""

from __future__ import annotations

import copy
from datetime import UTC, datetime, timedelta

import pytest

from driftguard.injection import (
    EXPAND_TOOL_NAME,
    InjectionManager,
    InjectionRecord,
    InjectionType,
    append_text_to_message,
    build_drift_recovery_injection,
    build_expand_tool,
    build_expanded_memory,
    build_memory_preview,
    build_plan_preview,
    format_age,
    memory_not_found_text,
)
from driftguard.memory import Decision, Memory, Plan, PlanTask, ReasoningEntry

pytestmark = pytest.mark.unit

NOW = datetime(2025, 6, 30, 12, 0, tzinfo=UTC)


def memory(memory_id: str = "a271bcb5-1111-2222-3333-444455556666", **fields) -> Memory:
    values = {"id": memory_id, "goal": "Fix login", "summary": "Froze the clock"}
    values.update(fields)
    return Memory(**values)


def conversation(count: int) -> list[dict]:
    roles = ["user", "assistant"]
    return [{"role": roles[i % 2], "content": f"m{i}"} for i in range(count)]


# =============================================================================
# Records and reconstruction
# =============================================================================


class TestRecords:
    """Tests for pending/committed injection records."""

    def test_pending_records_are_not_replayed_until_committed(self) -> None:
        manager = InjectionManager()
        manager.add_record("/p", InjectionRecord(0, InjectionType.PREVIEW, "[KB]"))

        messages, count = manager.reconstruct_messages(conversation(3), "/p")
        assert count == 0
        assert messages[0]["content"] == "m0"

        assert manager.commit_pending("/p") == 1
        assert manager.commit_pending("/p") == 0
        assert len(manager.history("/p")) == 1

    def test_reconstruction_replays_at_recorded_positions(self) -> None:
        manager = InjectionManager()
        manager.add_record("/p", InjectionRecord(0, InjectionType.PREVIEW, "[KB]"))
        manager.add_record("/p", InjectionRecord(2, InjectionType.CORRECTION, "[DRIFT]"))
        manager.commit_pending("/p")
        original = conversation(5)
        snapshot = copy.deepcopy(original)

        messages, count = manager.reconstruct_messages(original, "/p")

        assert count == 2
        assert messages[0]["content"] == "m0\n\n[KB]"
        assert messages[2]["content"] == "m2\n\n[DRIFT]"
        assert messages[4]["content"] == "m4"
        assert original == snapshot

    def test_records_on_non_user_or_missing_positions_are_skipped(self) -> None:
        manager = InjectionManager()
        manager.add_record("/p", InjectionRecord(1, InjectionType.PREVIEW, "[KB]"))
        manager.add_record("/p", InjectionRecord(9, InjectionType.PREVIEW, "[KB]"))
        manager.commit_pending("/p")

        _, count = manager.reconstruct_messages(conversation(3), "/p")
        assert count == 0

    def test_shrinking_conversation_clears_state(self) -> None:
        manager = InjectionManager()
        manager.add_record("/p", InjectionRecord(0, InjectionType.PREVIEW, "[KB]"))
        manager.commit_pending("/p")
        manager.reconstruct_messages(conversation(9), "/p")

        messages, count = manager.reconstruct_messages(conversation(1), "/p")

        assert count == 0
        assert messages[0]["content"] == "m0"
        assert manager.get("/p") is None

    def test_block_content_gets_text_block(self) -> None:
        message = {"role": "user", "content": [{"type": "text", "text": "hi"}]}
        updated = append_text_to_message(message, "[KB]")

        assert updated["content"][-1] == {"type": "text", "text": "\n\n[KB]"}
        assert len(message["content"]) == 1


class TestCaches:
    """Tests for the memory and retry caches."""

    def test_memory_lookup_by_full_id_and_prefix(self) -> None:
        manager = InjectionManager()
        manager.cache_memories("/p", [memory()])

        assert manager.get_cached_memory("/p", "a271bcb5-1111-2222-3333-444455556666") is not None
        assert manager.get_cached_memory("/p", "a271bcb5") is not None
        assert manager.get_cached_memory("/p", "ffffffff") is None
        assert manager.get_cached_memory("/other", "a271bcb5") is None
        assert len(manager.cached_memories("/p")) == 1

    def test_cached_preview_matches_message_count(self) -> None:
        manager = InjectionManager()
        manager.set_cached_preview("/p", "[KB]", 3)

        assert manager.get_cached_preview("/p", 3) == "[KB]"
        assert manager.get_cached_preview("/p", 4) is None


# =============================================================================
# Renderers
# =============================================================================


class TestFormatAge:
    @pytest.mark.parametrize(
        ("delta", "expected"),
        [
            (timedelta(hours=3), "today"),
            (timedelta(days=1), "1 day ago"),
            (timedelta(days=5), "5 days ago"),
            (timedelta(days=7), "1 week ago"),
            (timedelta(days=20), "2 weeks ago"),
            (timedelta(days=35), "1 month ago"),
            (timedelta(days=95), "3 months ago"),
        ],
    )
    def test_buckets(self, delta: timedelta, expected: str) -> None:
        assert format_age((NOW - delta).isoformat(), NOW) == expected

    def test_zulu_suffix_and_garbage(self) -> None:
        assert format_age("2025-06-29T12:00:00Z", NOW) == "1 day ago"
        assert format_age("yesterday", NOW) == "unknown"
        assert format_age(None, NOW) == "unknown"


class TestPreviews:
    """Tests for the preview renderers."""

    def test_memory_preview(self) -> None:
        preview = build_memory_preview(
            [memory(updated_at=(NOW - timedelta(days=2)).isoformat()), memory("b0000000-x", goal=None)],
            now=NOW,
        )

        assert preview is not None
        lines = preview.splitlines()
        assert lines[0] == "[PROJECT KNOWLEDGE BASE: 2 verified entries - CURRENT]"
        assert lines[1] == '#a271bcb5: "Fix login" -> Froze the clock (2 days ago)'
        assert lines[2] == '#b0000000: "No goal" -> Froze the clock (unknown)'
        assert EXPAND_TOOL_NAME in lines[3]

    def test_empty_memory_preview(self) -> None:
        assert build_memory_preview([]) is None

    def test_plan_preview(self) -> None:
        plan = Plan(
            id="p1",
            title="Auth rewrite",
            tasks=[PlanTask(status="completed"), PlanTask(status="pending")],
        )
        assert build_plan_preview([plan]) == "[ACTIVE PLANS: 1]\n- Auth rewrite (1/2 tasks)"
        assert build_plan_preview([]) is None

    def test_expanded_memory_sections(self) -> None:
        text = build_expanded_memory(
            memory(
                original_query="why does login flake?",
                reasoning_trace=[
                    "CONCLUSION: clock skew",
                    ReasoningEntry(conclusion="tz mismatch", insight="INSIGHT: use UTC"),
                ],
                decisions=[Decision(choice="freezegun", reason="deterministic")],
                files_touched=["tests/test_login.py"],
            )
        )

        assert "GOAL: Fix login" in text
        assert '"why does login flake?"' in text
        assert "- clock skew" in text
        assert "- tz mismatch\n  -> use UTC" in text
        assert "- freezegun\n  Reason: deterministic" in text
        assert "FILES: tests/test_login.py" in text

    def test_expand_tool_schema(self) -> None:
        tool = build_expand_tool()
        assert tool["name"] == EXPAND_TOOL_NAME
        assert tool["input_schema"]["required"] == ["ids"]

    def test_drift_recovery_lines(self) -> None:
        assert build_drift_recovery_injection(None, None) is None
        assert build_drift_recovery_injection("a", "b") == "[DRIFT: a]\n[RECOVERY: b]"

    def test_not_found_text(self) -> None:
        assert memory_not_found_text("deadbeef").startswith("Memory #deadbeef not found")
