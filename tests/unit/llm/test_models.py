"""
Unit tests for the canonical message model.

Tests cover:
- Role-dependent field validation on Message
- GatewayResult rendering and token accounting
- The tool-call pairing check
"""

import pytest
from pydantic import ValidationError

from tooltrellis.llm.models import (
    GatewayResult,
    Message,
    Role,
    TokenUsage,
    ToolCall,
    TurnState,
    check_pairing,
)


def _call(call_id: str, name: str = "lookup", **arguments) -> ToolCall:
    return ToolCall(id=call_id, tool_name=name, arguments=arguments)


class TestMessageValidation:
    """Tests for the invariants enforced when a Message is built."""

    def test_constructors_set_roles(self):
        assert Message.system("s").role is Role.SYSTEM
        assert Message.user("u").role is Role.USER
        assert Message.assistant("a").role is Role.ASSISTANT
        assert Message.tool("call_1", "out").role is Role.TOOL

    def test_assistant_with_tool_calls_may_omit_content(self):
        message = Message.assistant(tool_calls=[_call("call_1")])
        assert message.content is None
        assert message.requests_tools

    def test_user_message_requires_content(self):
        with pytest.raises(ValidationError, match="require content"):
            Message(role=Role.USER)

    def test_tool_calls_rejected_on_user_message(self):
        with pytest.raises(ValidationError, match="only allowed on assistant"):
            Message(role=Role.USER, content="hi", tool_calls=[_call("call_1")])

    def test_tool_message_requires_call_id(self):
        with pytest.raises(ValidationError, match="tool_call_id"):
            Message(role=Role.TOOL, content="result")

    def test_call_id_rejected_outside_tool_messages(self):
        with pytest.raises(ValidationError, match="only allowed on tool"):
            Message(role=Role.ASSISTANT, content="hi", tool_call_id="call_1")

    def test_empty_tool_calls_normalised_to_none(self):
        message = Message(role=Role.ASSISTANT, content="hi", tool_calls=[])
        assert message.tool_calls is None
        assert not message.requests_tools

    def test_messages_are_immutable(self):
        message = Message.user("hi")
        with pytest.raises(ValidationError):
            message.content = "changed"

    def test_tool_call_requires_name(self):
        with pytest.raises(ValidationError):
            ToolCall(id="call_1", tool_name="")


class TestGatewayResult:
    """Tests for GatewayResult helpers."""

    def test_plain_result_renders_assistant_text(self):
        result = GatewayResult(content="Hello")
        message = result.to_message()
        assert message.role is Role.ASSISTANT
        assert message.content == "Hello"
        assert message.tool_calls is None

    def test_tool_result_keeps_preamble_and_calls(self):
        result = GatewayResult(content="Let me check.", tool_calls=[_call("call_1")])
        message = result.to_message()
        assert result.has_tool_calls
        assert message.content == "Let me check."
        assert [c.id for c in message.tool_calls] == ["call_1"]

    def test_token_usage_adds_up(self):
        total = TokenUsage(prompt_tokens=100, completion_tokens=50) + TokenUsage(
            prompt_tokens=10, completion_tokens=5
        )
        assert total.prompt_tokens == 110
        assert total.completion_tokens == 55
        assert total.total_tokens == 165

    def test_terminal_states(self):
        assert TurnState.DONE.is_terminal
        assert TurnState.FAILED.is_terminal
        assert not TurnState.RETRYING.is_terminal


class TestCheckPairing:
    """Tests for check_pairing."""

    def test_plain_dialogue_is_valid(self):
        history = [Message.system("s"), Message.user("u"), Message.assistant("a")]
        assert check_pairing(history) == []

    def test_complete_round_is_valid(self):
        history = [
            Message.user("u"),
            Message.assistant(tool_calls=[_call("call_1"), _call("call_2", "other")]),
            Message.tool("call_2", "two"),
            Message.tool("call_1", "one"),
            Message.assistant("done"),
        ]
        assert check_pairing(history) == []

    def test_unanswered_call_at_end(self):
        history = [Message.user("u"), Message.assistant(tool_calls=[_call("call_1")])]
        problems = check_pairing(history)
        assert len(problems) == 1
        assert "unanswered" in problems[0]

    def test_other_role_before_results(self):
        history = [
            Message.assistant(tool_calls=[_call("call_1")]),
            Message.user("interrupting"),
            Message.tool("call_1", "late"),
        ]
        problems = check_pairing(history)
        assert any("before results" in p for p in problems)
        assert any("orphaned" in p for p in problems)

    def test_duplicate_result(self):
        history = [
            Message.assistant(tool_calls=[_call("call_1")]),
            Message.tool("call_1", "one"),
            Message.tool("call_1", "again"),
        ]
        assert any("duplicate tool result" in p for p in check_pairing(history))

    def test_orphaned_result(self):
        history = [Message.user("u"), Message.tool("call_9", "stray")]
        assert any("orphaned" in p for p in check_pairing(history))

    def test_duplicate_call_ids_in_one_request(self):
        history = [
            Message.assistant(tool_calls=[_call("call_1"), _call("call_1", "other")]),
            Message.tool("call_1", "one"),
        ]
        assert any("duplicate tool call ids" in p for p in check_pairing(history))
