"""
LLM Orchestration Layer.

Runs one conversational turn against a completion backend (via LiteLLM),
executing the tools the model requests until it produces a final answer.

    canonical history
          ↓
    Orchestrator.run(history)  ←→  CompletionGateway.call()  ←→  wire variant codecs
          ↓                    ←→  ToolDispatcher.execute_all()
    TurnResult (state, content, durable history, usage)

Key responsibilities:
- Frame canonical messages for the backend's wire variant (chat or responses)
- Drive the tool-calling state machine with bounded rounds and corrective retries
- Strip tool structure from the history before the final tools-disabled call
"""

from tooltrellis.llm.gateway import CompletionGateway
from tooltrellis.llm.models import (
    GatewayResult,
    Message,
    Role,
    TokenUsage,
    ToolCall,
    TurnResult,
    TurnState,
)
from tooltrellis.llm.orchestrator import Orchestrator
from tooltrellis.llm.sanitizer import sanitize
from tooltrellis.llm.wire import WireVariant

__all__ = [
    "CompletionGateway",
    "GatewayResult",
    "Message",
    "Orchestrator",
    "Role",
    "TokenUsage",
    "ToolCall",
    "TurnResult",
    "TurnState",
    "WireVariant",
    "sanitize",
]
