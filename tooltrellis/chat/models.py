"""
Caller-facing request and response shapes.

The canonical request carries the user's message, the conversation context
and per-request options. The canonical response carries the answer text under
data.message.content.text, plus optional metadata and metrics.

Memory and state options are carried through unchanged for the surrounding
platform; the orchestration core does not act on them.
"""

from __future__ import annotations

import uuid
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

API_VERSION = "2.0.0"


def new_id() -> str:
    """Generate a conversation/session identifier."""
    return str(uuid.uuid4())


class MessageContent(BaseModel):
    """Text payload of a message."""

    type: Literal["text"] = "text"
    text: str


class RequestMessage(BaseModel):
    """The current user message."""

    role: Literal["user"] = "user"
    content: MessageContent

    @field_validator("content", mode="before")
    @classmethod
    def _coerce_plain_text(cls, value: Any) -> Any:
        if isinstance(value, str):
            return {"type": "text", "text": value}
        return value


class RequestContext(BaseModel):
    """Who is talking to whom, and in which conversation."""

    agent_id: str | None = None
    user_id: str | None = None
    conversation_id: str = Field(default_factory=new_id)
    session_id: str = Field(default_factory=new_id)
    channel_id: str | None = None


class MemoryOptions(BaseModel):
    enabled: bool = True
    min_relevance: float = Field(default=0.3, ge=0.0, le=1.0)
    max_results: int = Field(default=10, ge=1, le=100)


class StateOptions(BaseModel):
    save_checkpoint: bool = False
    include_shared: bool = True


class ResponseOptions(BaseModel):
    include_metadata: bool = True
    include_metrics: bool = True
    stream: bool = Field(default=False, description="Accepted but not honoured; answers are never streamed")


class RequestOptions(BaseModel):
    memory: MemoryOptions = Field(default_factory=MemoryOptions)
    state: StateOptions = Field(default_factory=StateOptions)
    response: ResponseOptions = Field(default_factory=ResponseOptions)


class CanonicalRequest(BaseModel):
    """Inbound request after upconversion."""

    version: str = API_VERSION
    message: RequestMessage
    context: RequestContext = Field(default_factory=RequestContext)
    options: RequestOptions = Field(default_factory=RequestOptions)

    @property
    def text(self) -> str:
        return self.message.content.text


class ResponseContext(BaseModel):
    agent_id: str | None = None
    conversation_id: str | None = None
    session_id: str | None = None


class ResponseMessage(BaseModel):
    role: Literal["assistant"] = "assistant"
    content: MessageContent
    context: ResponseContext = Field(default_factory=ResponseContext)


class ResponseData(BaseModel):
    message: ResponseMessage


class ResponseMetadata(BaseModel):
    """How the answer was produced."""

    model: str
    turn_state: str
    conversation_id: str
    session_id: str
    synthesized: bool = Field(description="True when the answer came from the tools-disabled final call")
    retry_attempts: int = 0
    failure_reason: str | None = None


class ToolExecutionMetric(BaseModel):
    tool_name: str
    call_id: str
    outcome: str
    duration_ms: int = 0


class ResponseMetrics(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    model_calls: int = 0
    tool_rounds: int = 0
    tool_executions: list[ToolExecutionMetric] = Field(default_factory=list)
    processing_time_ms: int = 0


class ResponseError(BaseModel):
    """HTTP-style error object for requests that could not be answered."""

    code: str
    message: str
    status: int = 500


class CanonicalResponse(BaseModel):
    """Outbound response before optional down-conversion."""

    version: str = API_VERSION
    data: ResponseData | None = None
    metadata: ResponseMetadata | None = None
    metrics: ResponseMetrics | None = None
    error: ResponseError | None = None

    @property
    def text(self) -> str:
        if self.data is None:
            return ""
        return self.data.message.content.text
