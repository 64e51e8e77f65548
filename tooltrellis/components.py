"""
Orchestration component factory.

Centralises the construction of the orchestration stack from settings so the
CLI, tests and embedding applications wire it the same way.
"""

from __future__ import annotations

from typing import Iterable

from tooltrellis.chat.service import ChatService
from tooltrellis.config.settings import MCPServerSettings, Settings
from tooltrellis.llm.gateway import CompletionGateway
from tooltrellis.llm.orchestrator import Orchestrator
from tooltrellis.tools.base import ToolConnection
from tooltrellis.tools.dispatcher import ToolDispatcher
from tooltrellis.tools.mcp_connection import MCPToolConnection
from tooltrellis.tools.schema_cache import ToolSchemaCache


class OrchestrationComponents:
    """
    Factory for building orchestration components from settings.

    Example::

        factory = OrchestrationComponents(settings)
        async with factory.create_schema_cache() as cache:
            service = factory.create_chat_service(cache, system_prompt="Be brief.")
            response = await service.handle({"message": "What's 2 + 2?"})
    """

    def __init__(self, settings: Settings):
        self.settings = settings

    def create_connections(
        self,
        extra_servers: Iterable[MCPServerSettings] = (),
    ) -> list[ToolConnection]:
        """Create one MCP connection per configured (and extra) server."""
        servers = [*self.settings.tools.mcp_servers, *extra_servers]
        return [
            MCPToolConnection(
                connection_id=server.connection_id,
                command=server.command,
                args=server.args,
                env=server.env,
            )
            for server in servers
        ]

    def create_schema_cache(
        self,
        connections: Iterable[ToolConnection] | None = None,
    ) -> ToolSchemaCache:
        """Create a ToolSchemaCache over the given connections (default: configured MCP servers)."""
        if connections is None:
            connections = self.create_connections()
        return ToolSchemaCache(connections, ttl_seconds=self.settings.tools.schema_ttl_seconds)

    def create_gateway(self, schema_cache: ToolSchemaCache | None) -> CompletionGateway:
        return CompletionGateway(self.settings.llm, schema_cache=schema_cache)

    def create_dispatcher(self, schema_cache: ToolSchemaCache) -> ToolDispatcher:
        return ToolDispatcher(schema_cache, self.settings.tools)

    def create_orchestrator(self, schema_cache: ToolSchemaCache) -> Orchestrator:
        """Create an Orchestrator whose gateway and dispatcher share one schema cache."""
        return Orchestrator(
            gateway=self.create_gateway(schema_cache),
            dispatcher=self.create_dispatcher(schema_cache),
            settings=self.settings.orchestrator,
            llm_settings=self.settings.llm,
        )

    def create_chat_service(
        self,
        schema_cache: ToolSchemaCache,
        system_prompt: str | None = None,
    ) -> ChatService:
        return ChatService(self.create_orchestrator(schema_cache), system_prompt=system_prompt)
