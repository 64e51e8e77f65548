"""
Request/response adapter.

Converts caller payloads to the canonical request shape and canonical
responses back to whatever the caller speaks.

Two request dialects are accepted:
- canonical: ``{"message": {"content": ...}, "context": {...}, "options": {...}}``
- legacy flat: ``{"message": "text"}`` or ``{"messages": [{"role", "content"}, ...]}``
  with ids as either camelCase (agentId) or snake_case (agent_id)

Legacy requests are upconverted with fixed defaults, and their responses are
down-converted to the flat ``{"message": text, "agent", "conversationId", ...}``
shape.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping

from pydantic import ValidationError

from tooltrellis.chat.models import CanonicalRequest, CanonicalResponse, new_id
from tooltrellis.errors import AdapterError

logger = logging.getLogger(__name__)

LEGACY_AGENT_NAME = "AI Assistant"


def is_legacy_request(payload: Mapping[str, Any]) -> bool:
    """A request is canonical when its message is an object; anything else is legacy."""
    return not isinstance(payload.get("message"), Mapping)


def _first(payload: Mapping[str, Any], *names: str) -> Any:
    for name in names:
        value = payload.get(name)
        if value:
            return value
    return None


def _legacy_text(payload: Mapping[str, Any]) -> str:
    messages = payload.get("messages") or []
    if messages:
        last = messages[-1]
        content = last.get("content") if isinstance(last, Mapping) else last
        return content if isinstance(content, str) else ""
    message = payload.get("message")
    return message if isinstance(message, str) else ""


def to_canonical(external: CanonicalRequest | Mapping[str, Any]) -> CanonicalRequest:
    """
    Convert a caller payload into a CanonicalRequest.

    Raises:
        AdapterError: The payload has no message text or fails validation
    """
    if isinstance(external, CanonicalRequest):
        return external

    if not is_legacy_request(external):
        try:
            request = CanonicalRequest.model_validate(dict(external))
        except ValidationError as e:
            raise AdapterError(f"Invalid request: {e}", cause=e) from e
        if not request.text.strip():
            raise AdapterError("Request message has no text")
        return request

    text = _legacy_text(external)
    if not text.strip():
        raise AdapterError("Legacy request has no message text")

    logger.debug("Upconverting legacy request")
    payload = {
        "message": {"role": "user", "content": {"type": "text", "text": text}},
        "context": {
            "agent_id": _first(external, "agentId", "agent_id"),
            "user_id": _first(external, "userId", "user_id"),
            "conversation_id": _first(external, "conversationId", "conversation_id") or new_id(),
            "session_id": _first(external, "sessionId", "session_id") or new_id(),
            "channel_id": _first(external, "channelId", "channel_id"),
        },
        "options": {
            "memory": {"enabled": True, "min_relevance": 0.3, "max_results": 10},
            "state": {"save_checkpoint": False, "include_shared": True},
            "response": {
                "include_metadata": True,
                "include_metrics": True,
                "stream": bool(external.get("stream", False)),
            },
        },
    }
    try:
        return CanonicalRequest.model_validate(payload)
    except ValidationError as e:
        raise AdapterError(f"Invalid legacy request: {e}", cause=e) from e


def _response_text(response: Mapping[str, Any]) -> str:
    # data.message.content.text first, then the older message.content shapes
    for message in (((response.get("data") or {}).get("message")), response.get("message")):
        if isinstance(message, Mapping):
            content = message.get("content")
            if isinstance(content, Mapping) and content.get("type", "text") == "text":
                return content.get("text") or ""
            if isinstance(content, str):
                return content
    message = response.get("message")
    return message if isinstance(message, str) else ""


def _response_context(response: Mapping[str, Any]) -> Mapping[str, Any]:
    for message in (((response.get("data") or {}).get("message")), response.get("message")):
        if isinstance(message, Mapping) and isinstance(message.get("context"), Mapping):
            return message["context"]
    return {}


def from_canonical(response: CanonicalResponse | Mapping[str, Any], legacy: bool = True) -> dict[str, Any]:
    """
    Render a canonical response for the caller.

    Args:
        response: Canonical response model or its dict form
        legacy: Down-convert to the flat legacy shape

    Returns:
        JSON-serialisable dict
    """
    payload = response.model_dump(exclude_none=True) if isinstance(response, CanonicalResponse) else dict(response)
    if not legacy:
        return payload

    context = _response_context(payload)
    converted: dict[str, Any] = {
        "message": _response_text(payload),
        "agent": {"id": context.get("agent_id"), "name": LEGACY_AGENT_NAME},
        "conversationId": context.get("conversation_id"),
        "sessionId": context.get("session_id"),
    }
    if payload.get("metrics") is not None:
        converted["metrics"] = payload["metrics"]
    if payload.get("error") is not None:
        converted["error"] = payload["error"]
    return converted
