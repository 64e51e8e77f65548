"""
In-process tool connection.

Exposes plain Python callables as tools, each with an explicit input
contract. Useful for built-in tools that need no external service and for
exercising the dispatcher without subprocesses.
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable

from tooltrellis.errors import ToolConnectionError, ToolInvocationError
from tooltrellis.tools.base import ToolConnection

logger = logging.getLogger(__name__)

ToolHandler = Callable[..., Any]


@dataclass
class _LocalTool:
    name: str
    handler: ToolHandler
    input_schema: dict[str, Any]
    description: str


class LocalToolConnection(ToolConnection):
    """
    Tool connection backed by registered Python callables.

    Handlers receive the call arguments as keyword arguments and may be sync
    or async. Their return value becomes the tool output. Exceptions propagate
    to the dispatcher, which classifies them. Invoking a name that is not
    registered raises a retryable ToolInvocationError, matching the
    dispatcher's treatment of unknown tool names.

    Example:
        >>> conn = LocalToolConnection("builtin")
        >>> conn.register(
        ...     "add",
        ...     lambda a, b: a + b,
        ...     {"type": "object", "properties": {"a": {"type": "number"},
        ...      "b": {"type": "number"}}, "required": ["a", "b"]},
        ... )
    """

    def __init__(self, connection_id: str):
        super().__init__(connection_id)
        self._tools: dict[str, _LocalTool] = {}
        self._initialized = False

    def register(
        self,
        name: str,
        handler: ToolHandler,
        input_schema: dict[str, Any],
        description: str = "",
    ) -> None:
        """Register or replace a tool. Takes effect on the next discovery."""
        if not name:
            raise ValueError("Tool name cannot be empty")
        self._tools[name] = _LocalTool(
            name=name,
            handler=handler,
            input_schema=input_schema,
            description=description or (inspect.getdoc(handler) or ""),
        )
        logger.debug(f"Registered local tool '{name}' on '{self.connection_id}'")

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    async def initialize(self) -> None:
        self._initialized = True

    async def shutdown(self) -> None:
        self._initialized = False

    async def list_tools(self) -> list[dict[str, Any]]:
        self._require_initialized()
        return [
            {"name": tool.name, "description": tool.description, "input_schema": tool.input_schema}
            for tool in self._tools.values()
        ]

    async def invoke(self, tool_name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        self._require_initialized()
        tool = self._tools.get(tool_name)
        if tool is None:
            raise ToolInvocationError(
                f"Unknown tool '{tool_name}' on '{self.connection_id}'. "
                f"Available tools: {', '.join(self._tools) or 'none'}",
                retryable=True,
            )

        result = tool.handler(**arguments)
        if inspect.isawaitable(result):
            result = await result
        return {"output": result}

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise ToolConnectionError(f"Local connection '{self.connection_id}' not initialized")
