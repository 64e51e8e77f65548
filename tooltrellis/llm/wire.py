"""
Wire framing for completion backends.

Two framings are supported, selected per target model:

- WireVariant.CHAT: role-based pairing. An assistant message carries
  ``tool_calls``; each answer is a separate ``{"role": "tool", "tool_call_id"}``
  message. This is the OpenAI chat-completions shape LiteLLM normalises every
  provider to.
- WireVariant.RESPONSES: item pairing. A tool request is a ``function_call``
  item and its answer a ``function_call_output`` item, matched only by the
  opaque ``call_id`` passed back verbatim, with no role framing.

The variants are a tagged union: each tag maps to a table of pure codec
functions, so callers never branch on the variant themselves.

Example:
    >>> payload = to_wire_variant(WireVariant.CHAT, history)
    >>> from_wire_variant(WireVariant.CHAT, payload) == history
    True
"""

from __future__ import annotations

import json
import logging
from enum import Enum
from typing import Any, Callable, NamedTuple, Sequence

from tooltrellis.llm.models import Message, Role, ToolCall
from tooltrellis.tools.models import ToolSchema

logger = logging.getLogger(__name__)


class WireVariant(str, Enum):
    """Backend framing for tool-call requests and answers."""

    CHAT = "chat"
    RESPONSES = "responses"


def select_variant(model: str, responses_prefixes: Sequence[str]) -> WireVariant:
    """Pick the framing for a LiteLLM model string."""
    for prefix in responses_prefixes:
        if prefix and model.startswith(prefix):
            return WireVariant.RESPONSES
    return WireVariant.CHAT


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------

def _field(obj: Any, name: str, default: Any = None) -> Any:
    """Read a field from a plain dict or a LiteLLM/OpenAI response object."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _encode_arguments(arguments: dict[str, Any]) -> str:
    return json.dumps(arguments, ensure_ascii=False)


def _decode_arguments(raw: Any, tool_name: str) -> dict[str, Any]:
    """
    Parse tool arguments from the wire.

    Malformed or non-object JSON decodes to an empty dict so the dispatcher
    reports the missing fields instead of the parse blowing up the turn.
    """
    if isinstance(raw, dict):
        return dict(raw)
    if raw is None or raw == "":
        return {}
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning(f"Malformed JSON arguments for tool '{tool_name}': {str(raw)[:200]!r}")
        return {}
    if not isinstance(parsed, dict):
        logger.warning(f"Non-object arguments for tool '{tool_name}': {type(parsed).__name__}")
        return {}
    return parsed


# ---------------------------------------------------------------------------
# Role-based chat framing
# ---------------------------------------------------------------------------

def _chat_encode(messages: Sequence[Message]) -> list[dict[str, Any]]:
    payload: list[dict[str, Any]] = []
    for message in messages:
        entry: dict[str, Any] = {"role": message.role.value, "content": message.content}
        if message.tool_calls:
            entry["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {
                        "name": call.tool_name,
                        "arguments": _encode_arguments(call.arguments),
                    },
                }
                for call in message.tool_calls
            ]
        if message.role is Role.TOOL:
            entry["tool_call_id"] = message.tool_call_id
        payload.append(entry)
    return payload


def _chat_tool_calls(raw_calls: Any) -> list[ToolCall]:
    calls: list[ToolCall] = []
    for raw in raw_calls or []:
        function = _field(raw, "function")
        name = _field(function, "name", "")
        calls.append(
            ToolCall(
                id=_field(raw, "id"),
                tool_name=name,
                arguments=_decode_arguments(_field(function, "arguments"), name),
            )
        )
    return calls


def _chat_decode(payload: Sequence[dict[str, Any]]) -> list[Message]:
    messages: list[Message] = []
    for entry in payload:
        role = Role(entry["role"])
        messages.append(
            Message(
                role=role,
                content=entry.get("content"),
                tool_calls=_chat_tool_calls(entry.get("tool_calls")) or None,
                tool_call_id=entry.get("tool_call_id") if role is Role.TOOL else None,
            )
        )
    return messages


def _chat_parse(response: Any) -> tuple[str | None, list[ToolCall]]:
    choices = _field(response, "choices") or []
    if not choices:
        return None, []
    message = _field(choices[0], "message")
    return _field(message, "content"), _chat_tool_calls(_field(message, "tool_calls"))


def _chat_tools(schemas: Sequence[ToolSchema]) -> list[dict[str, Any]]:
    return [
        {
            "type": "function",
            "function": {
                "name": schema.tool_name,
                "description": schema.description,
                "parameters": schema.input_contract,
            },
        }
        for schema in schemas
    ]


# ---------------------------------------------------------------------------
# Call/output item pairing (responses API)
# ---------------------------------------------------------------------------

def _responses_encode(messages: Sequence[Message]) -> list[dict[str, Any]]:
    items: list[dict[str, Any]] = []
    for message in messages:
        if message.role is Role.TOOL:
            items.append(
                {
                    "type": "function_call_output",
                    "call_id": message.tool_call_id,
                    "output": message.content,
                }
            )
            continue
        if message.content is not None:
            items.append({"type": "message", "role": message.role.value, "content": message.content})
        for call in message.tool_calls or []:
            items.append(
                {
                    "type": "function_call",
                    "call_id": call.id,
                    "name": call.tool_name,
                    "arguments": _encode_arguments(call.arguments),
                }
            )
    return items


def _responses_decode(payload: Sequence[dict[str, Any]]) -> list[Message]:
    messages: list[Message] = []
    # Assistant turn still able to absorb function_call items that follow it
    open_assistant: dict[str, Any] | None = None

    def close_assistant() -> None:
        nonlocal open_assistant
        if open_assistant is not None:
            messages.append(
                Message.assistant(
                    content=open_assistant["content"],
                    tool_calls=open_assistant["tool_calls"] or None,
                )
            )
            open_assistant = None

    for item in payload:
        kind = item.get("type", "message")
        if kind == "function_call":
            if open_assistant is None:
                open_assistant = {"content": None, "tool_calls": []}
            name = item.get("name", "")
            open_assistant["tool_calls"].append(
                ToolCall(
                    id=item["call_id"],
                    tool_name=name,
                    arguments=_decode_arguments(item.get("arguments"), name),
                )
            )
        elif kind == "function_call_output":
            close_assistant()
            messages.append(Message.tool(item["call_id"], _output_text(item.get("output"))))
        elif kind == "message":
            close_assistant()
            role = Role(item["role"])
            content = _content_text(item.get("content"))
            if role is Role.ASSISTANT:
                open_assistant = {"content": content, "tool_calls": []}
            else:
                messages.append(Message(role=role, content=content))
        else:
            logger.debug(f"Skipping unsupported input item type: {kind}")
    close_assistant()
    return messages


def _content_text(content: Any) -> str:
    """Flatten a message content field (plain string or list of text parts)."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    parts = []
    for part in content:
        text = _field(part, "text")
        if text:
            parts.append(text)
    return "".join(parts)


def _output_text(output: Any) -> str:
    if output is None:
        return ""
    if isinstance(output, str):
        return output
    return json.dumps(output, ensure_ascii=False, default=str)


def _responses_parse(response: Any) -> tuple[str | None, list[ToolCall]]:
    texts: list[str] = []
    calls: list[ToolCall] = []
    for item in _field(response, "output") or []:
        kind = _field(item, "type")
        if kind == "message":
            for part in _field(item, "content") or []:
                if _field(part, "type") in ("output_text", "text"):
                    texts.append(_field(part, "text") or "")
        elif kind == "function_call":
            name = _field(item, "name", "")
            calls.append(
                ToolCall(
                    id=_field(item, "call_id"),
                    tool_name=name,
                    arguments=_decode_arguments(_field(item, "arguments"), name),
                )
            )
    content = "".join(texts) if texts else None
    return content, calls


def _responses_tools(schemas: Sequence[ToolSchema]) -> list[dict[str, Any]]:
    return [
        {
            "type": "function",
            "name": schema.tool_name,
            "description": schema.description,
            "parameters": schema.input_contract,
        }
        for schema in schemas
    ]


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

class _Codec(NamedTuple):
    encode: Callable[[Sequence[Message]], list[dict[str, Any]]]
    decode: Callable[[Sequence[dict[str, Any]]], list[Message]]
    parse: Callable[[Any], tuple[str | None, list[ToolCall]]]
    tools: Callable[[Sequence[ToolSchema]], list[dict[str, Any]]]


_CODECS: dict[WireVariant, _Codec] = {
    WireVariant.CHAT: _Codec(_chat_encode, _chat_decode, _chat_parse, _chat_tools),
    WireVariant.RESPONSES: _Codec(
        _responses_encode, _responses_decode, _responses_parse, _responses_tools
    ),
}


def to_wire_variant(variant: WireVariant, messages: Sequence[Message]) -> list[dict[str, Any]]:
    """Frame canonical messages as the request payload for a backend variant."""
    return _CODECS[variant].encode(messages)


def from_wire_variant(variant: WireVariant, payload: Sequence[dict[str, Any]]) -> list[Message]:
    """Rebuild canonical messages from a payload produced by to_wire_variant."""
    return _CODECS[variant].decode(payload)


def parse_wire_response(variant: WireVariant, response: Any) -> tuple[str | None, list[ToolCall]]:
    """
    Extract the content and tool requests from a backend reply.

    Accepts LiteLLM response objects as well as plain dicts of the same shape.
    """
    return _CODECS[variant].parse(response)


def format_tools(variant: WireVariant, schemas: Sequence[ToolSchema]) -> list[dict[str, Any]]:
    """Advertise tool contracts in the variant's tool-definition format."""
    return _CODECS[variant].tools(schemas)
