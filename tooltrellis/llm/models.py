"""
Canonical message model for the orchestration core.

These are the backend-agnostic shapes every component exchanges:
- Role / Message / ToolCall: one conversation turn and the tool requests it carries
- GatewayResult / TokenUsage: the outcome of a single completion call
- TurnState / TurnResult: the orchestrator's state machine and its final report

Wire-level framing for a specific backend lives in tooltrellis.llm.wire.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from tooltrellis.tools.models import ToolResult


class Role(str, Enum):
    """Author of a canonical message."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class ToolCall(BaseModel):
    """A single tool request parsed from a model response."""

    id: str = Field(min_length=1, description="Call identifier, unique within a turn")
    tool_name: str = Field(min_length=1, description="Name of the tool to invoke")
    arguments: dict[str, Any] = Field(default_factory=dict, description="Structured arguments")

    model_config = ConfigDict(frozen=True)


class Message(BaseModel):
    """
    One turn in the canonical history.

    Invariants enforced at construction:
    - tool_calls only appear on assistant messages (an empty list is normalised to None)
    - tool_call_id is present on, and only on, tool messages
    - content may be None only for an assistant message that requests tools
    """

    role: Role
    content: str | None = None
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="before")
    @classmethod
    def _normalise_empty_tool_calls(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("tool_calls") == []:
            data = {**data, "tool_calls": None}
        return data

    @model_validator(mode="after")
    def _check_role_fields(self) -> Message:
        if self.tool_calls and self.role is not Role.ASSISTANT:
            raise ValueError(f"tool_calls are only allowed on assistant messages, not {self.role.value}")
        if self.role is Role.TOOL and not self.tool_call_id:
            raise ValueError("tool messages require a tool_call_id")
        if self.role is not Role.TOOL and self.tool_call_id is not None:
            raise ValueError("tool_call_id is only allowed on tool messages")
        if self.content is None and not (self.role is Role.ASSISTANT and self.tool_calls):
            raise ValueError(f"{self.role.value} messages require content")
        return self

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------

    @classmethod
    def system(cls, content: str) -> Message:
        return cls(role=Role.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> Message:
        return cls(role=Role.USER, content=content)

    @classmethod
    def assistant(cls, content: str | None = None, tool_calls: list[ToolCall] | None = None) -> Message:
        return cls(role=Role.ASSISTANT, content=content, tool_calls=tool_calls)

    @classmethod
    def tool(cls, tool_call_id: str, content: str) -> Message:
        return cls(role=Role.TOOL, content=content, tool_call_id=tool_call_id)

    @property
    def requests_tools(self) -> bool:
        return self.role is Role.ASSISTANT and bool(self.tool_calls)


class TokenUsage(BaseModel):
    """Token counts accumulated across one or more completion calls."""

    prompt_tokens: int = Field(default=0, ge=0)
    completion_tokens: int = Field(default=0, ge=0)

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
        )


class GatewayResult(BaseModel):
    """
    Canonical result of a single completion call.

    Either plain content, or one or more tool requests. Some backends send a
    short preamble alongside tool calls; it is kept in content.
    """

    content: str | None = None
    tool_calls: list[ToolCall] = Field(default_factory=list)
    model: str = ""
    usage: TokenUsage = Field(default_factory=TokenUsage)

    @property
    def has_tool_calls(self) -> bool:
        return len(self.tool_calls) > 0

    def to_message(self) -> Message:
        """Render this result as the assistant turn that produced it."""
        if self.has_tool_calls:
            return Message.assistant(content=self.content, tool_calls=list(self.tool_calls))
        return Message.assistant(content=self.content or "")


class TurnState(str, Enum):
    """States of the orchestration state machine."""

    AWAITING_MODEL = "awaiting_model"
    EXECUTING_TOOLS = "executing_tools"
    RETRYING = "retrying"
    SYNTHESIZING = "synthesizing"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TurnState.DONE, TurnState.FAILED)


class RetryState(BaseModel):
    """
    Bookkeeping for the corrective-retry protocol within one turn.

    Created when a tool round returns a retryable error. temperature_bias and
    guidance_message are reset after a successful round; attempt_count is the
    per-turn budget and is never reset.
    """

    attempt_count: int = Field(default=0, ge=0)
    temperature_bias: float = Field(default=0.0, ge=0.0)
    guidance_message: str | None = None
    observed_errors: list[str] = Field(default_factory=list)


class TurnResult(BaseModel):
    """Final report of one orchestration run."""

    state: TurnState
    content: str | None = None
    history: list[Message] = Field(default_factory=list, description="Durable Turn History")
    rounds: int = Field(default=0, description="Completed successful tool rounds")
    retry_attempts: int = Field(default=0, description="Corrective model calls issued")
    model_calls: int = Field(default=0, description="Completion calls issued, synthesis included")
    tool_results: list[ToolResult] = Field(default_factory=list)
    usage: TokenUsage = Field(default_factory=TokenUsage)
    model: str = ""
    synthesized: bool = False
    failure_reason: str | None = None
    transitions: list[TurnState] = Field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state is TurnState.DONE


def check_pairing(history: list[Message]) -> list[str]:
    """
    Check the tool-call pairing invariant over a history.

    Every assistant message with tool_calls must be followed, before any other
    role, by exactly one tool message per call id. Returns a list of
    violation descriptions; an empty list means the history is valid.
    """
    problems: list[str] = []
    pending: set[str] = set()
    answered: set[str] = set()

    for index, message in enumerate(history):
        if message.role is Role.TOOL:
            call_id = message.tool_call_id
            if call_id in answered:
                problems.append(f"duplicate tool result for {call_id} at index {index}")
            elif call_id not in pending:
                problems.append(f"orphaned tool result for {call_id} at index {index}")
            else:
                pending.discard(call_id)
                answered.add(call_id)
            continue

        if pending:
            problems.append(
                f"{message.role.value} message at index {index} before results for "
                f"{sorted(pending)}"
            )
            pending = set()

        if message.requests_tools:
            ids = [call.id for call in message.tool_calls]
            if len(set(ids)) != len(ids):
                problems.append(f"duplicate tool call ids in assistant message at index {index}")
            pending = set(ids)
            answered = set()

    if pending:
        problems.append(f"history ends with unanswered tool calls {sorted(pending)}")
    return problems
