"""
Synthesis sanitizer.

Strips all tool-related structure from a history before a tools-disabled
completion call. Plain system/user/assistant content is valid under every
wire variant, so the sanitized list can never carry a dangling tool reference.
"""

from __future__ import annotations

from typing import Iterable

from tooltrellis.llm.models import Message, Role


def sanitize(history: Iterable[Message]) -> list[Message]:
    """
    Return a new, tool-free copy of a history.

    - system and user messages are kept unchanged
    - assistant messages keep their content and lose their tool_calls;
      an assistant message with no content left is dropped entirely
    - tool messages are dropped

    The input is never mutated. sanitize(sanitize(h)) == sanitize(h).
    """
    cleaned: list[Message] = []
    for message in history:
        if message.role is Role.TOOL:
            continue
        if message.role is Role.ASSISTANT:
            if not message.content:
                continue
            if message.tool_calls:
                message = Message.assistant(content=message.content)
        cleaned.append(message)
    return cleaned


def build_retry_context(history: Iterable[Message], guidance: str) -> list[Message]:
    """
    Build the independent message list for a corrective retry call.

    The durable history is left untouched; the retry sees a sanitized copy
    followed by a system message describing the corrected tool contract.
    """
    context = sanitize(history)
    context.append(Message.system(guidance))
    return context
