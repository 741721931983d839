# SPDX-License-Identifier: MIT
# Copyright (c) 2025 OmniNode Team
"""Tests for driftguard.mutator.raw_body.

Every successful edit must leave the document unchanged up to the reported
insertion point, and the result must still parse as JSON.
"""

from __future__ import annotations

import json

import pytest

from driftguard.mutator import (
    append_messages,
    append_system_block,
    append_to_last_user_message,
    find_closing_bracket,
    find_top_level_value,
    inject_tool,
    insert_at,
)

pytestmark = pytest.mark.unit

TOOL = {"name": "memory_expand", "description": "Expand", "input_schema": {"type": "object"}}


def assert_prefix_preserved(before: str, after: str, pos: int | None) -> None:
    assert pos is not None
    assert after[:pos] == before[:pos]
    json.loads(after)


# =============================================================================
# Scanner
# =============================================================================


class TestScanner:
    """Tests for the structural scanner helpers."""

    def test_brackets_inside_strings_are_ignored(self) -> None:
        """A ']' inside a string literal does not close the array."""
        doc = '{"a": ["x]", "y\\"]"], "b": 1}'
        open_idx = doc.index("[")
        assert doc[find_closing_bracket(doc, open_idx)] == "]"
        assert find_closing_bracket(doc, open_idx) == doc.index("], \"b\"")

    def test_only_top_level_keys_match(self) -> None:
        """A nested ``tools`` key is not mistaken for the top-level one."""
        doc = '{"messages": [{"role": "user", "content": {"tools": []}}], "tools": [1]}'
        start, end = find_top_level_value(doc, "tools")
        assert doc[start:end] == "[1]"

    def test_missing_key_returns_none(self) -> None:
        assert find_top_level_value('{"a": 1}', "tools") is None

    def test_insert_at_rejects_out_of_range(self) -> None:
        result = insert_at("{}", 5, "x")
        assert result.success is False
        assert result.body == "{}"


# =============================================================================
# Tool injection
# =============================================================================


class TestInjectTool:
    """Tests for inject_tool."""

    def test_empty_tools_array_has_no_leading_comma(self) -> None:
        """Inserting into ``[]`` yields a single element and valid JSON."""
        doc = '{"model": "m", "tools": []}'
        result = inject_tool(doc, TOOL)

        assert result.success
        assert_prefix_preserved(doc, result.body, result.insert_pos)
        assert '[,' not in result.body
        assert json.loads(result.body)["tools"] == [TOOL]

    def test_non_empty_array_gets_leading_comma_and_keeps_prior_elements(self) -> None:
        doc = '{"model": "m", "tools": [ {"name": "Read",  "input_schema": {}} ]}'
        result = inject_tool(doc, TOOL)

        assert result.success
        assert_prefix_preserved(doc, result.body, result.insert_pos)
        assert '{"name": "Read",  "input_schema": {}} ,' in result.body
        names = [t["name"] for t in json.loads(result.body)["tools"]]
        assert names == ["Read", "memory_expand"]

    def test_missing_tools_key_is_appended_last(self) -> None:
        doc = '{"model": "m", "messages": []}'
        result = inject_tool(doc, TOOL)

        assert result.success
        assert_prefix_preserved(doc, result.body, result.insert_pos)
        parsed = json.loads(result.body)
        assert list(parsed) == ["model", "messages", "tools"]

    def test_duplicate_name_is_a_successful_no_op(self) -> None:
        doc = json.dumps({"tools": [TOOL]})
        result = inject_tool(doc, TOOL)

        assert result.success
        assert result.changed is False
        assert result.body == doc

    def test_non_array_tools_value_fails_without_change(self) -> None:
        doc = '{"tools": "nope"}'
        result = inject_tool(doc, TOOL)
        assert result.success is False
        assert result.body == doc

    def test_malformed_document_fails_without_raising(self) -> None:
        doc = '{"tools": [1, 2'
        result = inject_tool(doc, TOOL)
        assert result.success is False
        assert result.body == doc


# =============================================================================
# System prompt
# =============================================================================


class TestAppendSystemBlock:
    """Tests for append_system_block."""

    def test_string_system_prompt(self) -> None:
        doc = '{"system": "Be brief.", "messages": []}'
        result = append_system_block(doc, '\n\nUse "memory_expand".')

        assert_prefix_preserved(doc, result.body, result.insert_pos)
        assert json.loads(result.body)["system"] == 'Be brief.\n\nUse "memory_expand".'

    def test_block_system_prompt(self) -> None:
        doc = '{"system": [{"type": "text", "text": "A", "cache_control": {"type": "ephemeral"}}]}'
        result = append_system_block(doc, "B")

        assert_prefix_preserved(doc, result.body, result.insert_pos)
        system = json.loads(result.body)["system"]
        assert system[0]["cache_control"] == {"type": "ephemeral"}
        assert system[1] == {"type": "text", "text": "B"}

    def test_missing_system_prompt_is_added(self) -> None:
        doc = '{"messages": []}'
        result = append_system_block(doc, "ctx")
        assert json.loads(result.body)["system"] == "ctx"

    def test_unicode_is_escaped_in_place(self) -> None:
        doc = '{"system": "caf\\u00e9"}'
        result = append_system_block(doc, " naïve\ttab")
        assert json.loads(result.body)["system"] == "café naïve\ttab"


# =============================================================================
# Last user message
# =============================================================================


class TestAppendToLastUserMessage:
    """Tests for append_to_last_user_message."""

    def test_string_content(self) -> None:
        doc = json.dumps(
            {
                "messages": [
                    {"role": "user", "content": "first"},
                    {"role": "assistant", "content": "ok"},
                    {"role": "user", "content": "second"},
                ]
            }
        )
        result = append_to_last_user_message(doc, "[memo]")

        assert_prefix_preserved(doc, result.body, result.insert_pos)
        messages = json.loads(result.body)["messages"]
        assert messages[0]["content"] == "first"
        assert messages[2]["content"] == "second\n\n[memo]"

    def test_block_content_gets_new_text_block(self) -> None:
        doc = json.dumps(
            {"messages": [{"role": "user", "content": [{"type": "text", "text": "hi"}]}]}
        )
        result = append_to_last_user_message(doc, "[memo]")

        assert_prefix_preserved(doc, result.body, result.insert_pos)
        content = json.loads(result.body)["messages"][0]["content"]
        assert content[-1] == {"type": "text", "text": "\n\n[memo]"}

    def test_no_user_message_fails(self) -> None:
        doc = json.dumps({"messages": [{"role": "assistant", "content": "x"}]})
        result = append_to_last_user_message(doc, "y")
        assert result.success is False
        assert result.body == doc


# =============================================================================
# Appending turns
# =============================================================================


class TestAppendMessages:
    """Tests for append_messages."""

    def test_turns_are_appended_after_existing_messages(self) -> None:
        doc = '{"model": "m", "messages": [{"role": "user", "content": "go"}], "tools": []}'
        turns = [
            {"role": "assistant", "content": [{"type": "tool_use", "id": "t1", "name": "x", "input": {}}]},
            {"role": "user", "content": [{"type": "tool_result", "tool_use_id": "t1", "content": "r"}]},
        ]
        result = append_messages(doc, turns)

        assert_prefix_preserved(doc, result.body, result.insert_pos)
        parsed = json.loads(result.body)
        assert [m["role"] for m in parsed["messages"]] == ["user", "assistant", "user"]
        assert parsed["tools"] == []

    def test_empty_messages_array(self) -> None:
        result = append_messages('{"messages": []}', [{"role": "user", "content": "a"}])
        assert json.loads(result.body)["messages"] == [{"role": "user", "content": "a"}]

    def test_missing_messages_key_fails(self) -> None:
        result = append_messages('{"model": "m"}', [{"role": "user", "content": "a"}])
        assert result.success is False

    def test_nothing_to_append_is_a_no_op(self) -> None:
        result = append_messages('{"messages": []}', [])
        assert result.success
        assert result.changed is False
