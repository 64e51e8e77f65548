"""
MCP-based tool connection.

Spawns an MCP server as a subprocess and talks JSON-RPC over stdio.
"""

import logging
import shutil
from typing import Any

from mcp import ClientSession
from mcp.client.stdio import StdioServerParameters, stdio_client

from tooltrellis.errors import ToolConnectionError
from tooltrellis.tools.base import ToolConnection

logger = logging.getLogger(__name__)


class MCPToolConnection(ToolConnection):
    """
    Tool connection backed by a stdio MCP server.

    Args:
        connection_id: Identifier for this server in the schema cache
        command: Executable to launch, e.g. "node" or "uvx"
        args: Arguments for the executable
        env: Extra environment variables for the subprocess
    """

    def __init__(
        self,
        connection_id: str,
        command: str,
        args: list[str] | None = None,
        env: dict[str, str] | None = None,
    ):
        super().__init__(connection_id)
        self._command = command
        self._args = list(args or [])
        self._env = env
        self._initialized = False
        self._session = None
        self._stdio_context = None
        self._session_context = None

    async def initialize(self) -> None:
        """Start the MCP server subprocess and perform the handshake."""
        if self._initialized:
            return

        if shutil.which(self._command) is None:
            raise ToolConnectionError(
                f"MCP server command not found for connection '{self.connection_id}': {self._command}"
            )

        server_params = StdioServerParameters(command=self._command, args=self._args, env=self._env)

        try:
            self._stdio_context = stdio_client(server_params)
            read_stream, write_stream = await self._stdio_context.__aenter__()

            self._session_context = ClientSession(read_stream, write_stream)
            self._session = await self._session_context.__aenter__()

            await self._session.initialize()
        except Exception as e:
            await self._close_contexts()
            raise ToolConnectionError(
                f"Failed to start MCP server for connection '{self.connection_id}': {e}",
                cause=e,
            ) from e

        self._initialized = True
        logger.info(f"MCP connection '{self.connection_id}' initialized ({self._command})")

    async def shutdown(self) -> None:
        """Cleanly shut down the MCP server subprocess."""
        if not self._initialized:
            return
        await self._close_contexts()
        self._initialized = False
        logger.info(f"MCP connection '{self.connection_id}' shut down")

    async def _close_contexts(self) -> None:
        # Session first, then the stdio transport that owns the subprocess
        if self._session_context is not None:
            await self._session_context.__aexit__(None, None, None)
            self._session_context = None
            self._session = None
        if self._stdio_context is not None:
            await self._stdio_context.__aexit__(None, None, None)
            self._stdio_context = None

    async def list_tools(self) -> list[dict[str, Any]]:
        """List available tools from the MCP server."""
        self._require_initialized()

        result = await self._session.list_tools()
        return [
            {
                "name": tool.name,
                "description": tool.description or "",
                "input_schema": tool.inputSchema,
            }
            for tool in result.tools
        ]

    async def invoke(self, tool_name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        """Call a tool on the MCP server."""
        self._require_initialized()

        result = await self._session.call_tool(tool_name, arguments)

        # MCP returns content as a list of content blocks
        text_parts = [content.text for content in result.content if hasattr(content, "text")]
        text = "\n".join(text_parts)

        structured = getattr(result, "structuredContent", None)
        output: Any = structured if structured else text

        if getattr(result, "isError", False):
            return {"output": output, "error": text or f"Tool '{tool_name}' reported an error"}
        return {"output": output}

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise ToolConnectionError(f"MCP connection '{self.connection_id}' not initialized")
