"""
Unit tests for the request/response adapter.

Tests cover:
- Canonical requests passing through validation
- Legacy flat requests upconverted with fixed defaults
- camelCase and snake_case identifiers
- Down-conversion of canonical responses to the legacy shape
"""

import pytest

from tooltrellis.chat.adapter import LEGACY_AGENT_NAME, from_canonical, is_legacy_request, to_canonical
from tooltrellis.chat.models import (
    API_VERSION,
    CanonicalRequest,
    CanonicalResponse,
    MessageContent,
    ResponseContext,
    ResponseData,
    ResponseError,
    ResponseMessage,
    ResponseMetrics,
)
from tooltrellis.errors import AdapterError


class TestDialectDetection:

    def test_object_message_is_canonical(self):
        assert not is_legacy_request({"message": {"content": "hi"}})

    def test_string_message_is_legacy(self):
        assert is_legacy_request({"message": "hi"})

    def test_messages_list_is_legacy(self):
        assert is_legacy_request({"messages": [{"role": "user", "content": "hi"}]})


class TestToCanonical:

    def test_canonical_request_passes_through(self):
        request = CanonicalRequest.model_validate({"message": {"content": "hi"}})
        assert to_canonical(request) is request

    def test_canonical_dict_is_validated(self):
        request = to_canonical({
            "message": {"role": "user", "content": {"type": "text", "text": "Roll 2d6"}},
            "context": {"agent_id": "dm", "conversation_id": "conv-1", "session_id": "sess-1"},
            "options": {"response": {"include_metrics": False}},
        })

        assert request.version == API_VERSION
        assert request.text == "Roll 2d6"
        assert request.context.agent_id == "dm"
        assert request.context.conversation_id == "conv-1"
        assert request.options.response.include_metrics is False
        assert request.options.response.include_metadata is True

    def test_canonical_plain_string_content_is_coerced(self):
        assert to_canonical({"message": {"content": "hello"}}).text == "hello"

    def test_canonical_without_text_rejected(self):
        with pytest.raises(AdapterError, match="no text"):
            to_canonical({"message": {"content": {"type": "text", "text": "   "}}})

    def test_canonical_invalid_shape_rejected(self):
        with pytest.raises(AdapterError, match="Invalid request"):
            to_canonical({"message": {"role": "assistant", "content": "hi"}})

    def test_legacy_message_string(self):
        request = to_canonical({
            "message": "What's the weather?",
            "agentId": "weather-bot",
            "userId": "u-7",
            "conversationId": "conv-9",
            "sessionId": "sess-9",
        })

        assert request.text == "What's the weather?"
        assert request.context.agent_id == "weather-bot"
        assert request.context.user_id == "u-7"
        assert request.context.conversation_id == "conv-9"
        assert request.context.session_id == "sess-9"

    def test_legacy_snake_case_ids(self):
        request = to_canonical({"message": "hi", "agent_id": "a", "channel_id": "c"})
        assert request.context.agent_id == "a"
        assert request.context.channel_id == "c"

    def test_legacy_uses_last_message_of_list(self):
        request = to_canonical({"messages": [
            {"role": "user", "content": "first"},
            {"role": "assistant", "content": "reply"},
            {"role": "user", "content": "second"},
        ]})
        assert request.text == "second"

    def test_legacy_defaults(self):
        request = to_canonical({"message": "hi", "stream": True})

        assert request.context.conversation_id
        assert request.context.session_id
        assert request.options.memory.enabled is True
        assert request.options.memory.min_relevance == pytest.approx(0.3)
        assert request.options.memory.max_results == 10
        assert request.options.state.save_checkpoint is False
        assert request.options.state.include_shared is True
        assert request.options.response.stream is True

    def test_legacy_generates_distinct_ids(self):
        first = to_canonical({"message": "hi"})
        second = to_canonical({"message": "hi"})
        assert first.context.conversation_id != second.context.conversation_id

    @pytest.mark.parametrize("payload", [{}, {"message": ""}, {"messages": []}, {"message": 42}])
    def test_legacy_without_text_rejected(self, payload):
        with pytest.raises(AdapterError, match="no message text"):
            to_canonical(payload)


class TestFromCanonical:

    @pytest.fixture
    def response(self):
        return CanonicalResponse(
            data=ResponseData(message=ResponseMessage(
                content=MessageContent(text="You rolled a 7."),
                context=ResponseContext(agent_id="dm", conversation_id="conv-1", session_id="sess-1"),
            )),
            metrics=ResponseMetrics(prompt_tokens=10, completion_tokens=5, total_tokens=15),
        )

    def test_canonical_output(self, response):
        payload = from_canonical(response, legacy=False)

        assert payload["version"] == API_VERSION
        assert payload["data"]["message"]["content"]["text"] == "You rolled a 7."
        assert "error" not in payload

    def test_legacy_output(self, response):
        payload = from_canonical(response)

        assert payload["message"] == "You rolled a 7."
        assert payload["agent"] == {"id": "dm", "name": LEGACY_AGENT_NAME}
        assert payload["conversationId"] == "conv-1"
        assert payload["sessionId"] == "sess-1"
        assert payload["metrics"]["total_tokens"] == 15
        assert "error" not in payload

    def test_legacy_output_with_error(self):
        response = CanonicalResponse(error=ResponseError(code="turn_failed", message="boom"))

        payload = from_canonical(response)

        assert payload["message"] == ""
        assert payload["error"] == {"code": "turn_failed", "message": "boom", "status": 500}
        assert "metrics" not in payload

    def test_legacy_output_from_older_dict_shapes(self):
        assert from_canonical({"message": {"content": "plain"}})["message"] == "plain"
        assert from_canonical({"message": "flat"})["message"] == "flat"
