"""
Base class for tool connections.

A tool connection is one external tool/service endpoint (an MCP server, an
in-process registry, a REST bridge) that exposes discovery of its tool
contracts and a single invoke operation. The ToolDispatcher is its only
caller.
"""

from abc import ABC, abstractmethod
from typing import Any


class ToolConnection(ABC):
    """
    Abstract base class for tool connections.

    Args:
        connection_id: Stable identifier; schema cache entries are keyed by it
    """

    def __init__(self, connection_id: str):
        if not connection_id:
            raise ValueError("connection_id cannot be empty")
        self._connection_id = connection_id

    @property
    def connection_id(self) -> str:
        return self._connection_id

    @abstractmethod
    async def initialize(self) -> None:
        """
        Initialize the connection.

        This may involve starting subprocesses, establishing connections,
        or performing handshakes with external services.

        Raises:
            ToolConnectionError: If initialization fails
        """
        pass

    @abstractmethod
    async def shutdown(self) -> None:
        """Close connections, terminate subprocesses and release resources."""
        pass

    @abstractmethod
    async def list_tools(self) -> list[dict[str, Any]]:
        """
        Discover the tools this connection currently exposes.

        Returns:
            One entry per tool with name, description and input_schema.

        Example:
            [
                {
                    "name": "search_contacts",
                    "description": "Search the address book",
                    "input_schema": {
                        "type": "object",
                        "properties": {"query": {"type": "string"}},
                        "required": ["query"]
                    }
                }
            ]
        """
        pass

    @abstractmethod
    async def invoke(self, tool_name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        """
        Invoke a tool.

        Returns:
            ``{"output": ...}`` on success, ``{"output": ..., "error": "..."}``
            when the tool ran but reported a failure.

        Raises:
            ToolInvocationError: Domain failure with an explicit classification
            PermissionError: The caller may not use this tool
            ConnectionError / TimeoutError: Transport failure (retried by the dispatcher)
        """
        pass

    async def __aenter__(self):
        """Context manager entry - initialize the connection."""
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - shutdown the connection."""
        await self.shutdown()
        return False
