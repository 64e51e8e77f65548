"""
Data structures for the tool layer.

- ToolOutcome: three-way classification of a tool execution
- ToolResult: classified result of executing one ToolCall
- ToolSchema: last-known input contract of one tool on one connection
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ToolOutcome(str, Enum):
    """Classification of a tool execution. Only RETRYABLE_ERROR drives retries."""

    SUCCESS = "success"
    RETRYABLE_ERROR = "retryable_error"
    FATAL_ERROR = "fatal_error"


class ToolResult(BaseModel):
    """
    Result of executing one ToolCall.

    Produced by the ToolDispatcher and turned into a tool-role Message by the
    orchestrator. error_detail names the offending fields for validation errors.
    """

    call_id: str = Field(description="Id of the ToolCall this result answers")
    tool_name: str = Field(default="", description="Tool that was (or would have been) invoked")
    output: Any = Field(default=None, description="Text or structured payload from the tool")
    outcome: ToolOutcome
    error_detail: str | None = None
    duration_ms: int = Field(default=0, ge=0, description="Wall-clock execution time")
    suspect_schema: bool = Field(
        default=False,
        description="True when the failure suggests the cached contract is out of date",
    )

    @property
    def ok(self) -> bool:
        return self.outcome is ToolOutcome.SUCCESS

    def output_text(self) -> str:
        """
        Render the result as text for the tool-role message.

        Errors are prefixed so the model can tell them apart from real output.
        """
        if self.outcome is not ToolOutcome.SUCCESS:
            detail = self.error_detail or "unknown error"
            return f"Error: tool '{self.tool_name}' failed: {detail}"
        if self.output is None:
            return ""
        if isinstance(self.output, str):
            return self.output
        return json.dumps(self.output, ensure_ascii=False, default=str)


class ToolSchema(BaseModel):
    """
    Last-known input contract for one tool on one connection.

    Immutable: a refresh replaces the whole entry in the schema cache.
    """

    tool_name: str
    connection_id: str
    input_contract: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}},
        description="JSON Schema describing the tool's arguments",
    )
    description: str = ""
    fetched_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    model_config = ConfigDict(frozen=True)

    @property
    def required_fields(self) -> list[str]:
        return list(self.input_contract.get("required", []))

    @property
    def known_fields(self) -> list[str]:
        return list(self.input_contract.get("properties", {}).keys())

    def age_seconds(self, now: datetime | None = None) -> float:
        now = now or datetime.now(UTC)
        return (now - self.fetched_at).total_seconds()
