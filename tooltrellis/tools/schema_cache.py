"""
Tool schema cache.

Holds the last-known input contract for every reachable tool, keyed by
``(connection_id, tool_name)``, with a name index for lookups by tool name.

Concurrency model:
- Shared across all turns, read-mostly.
- Entries are immutable ToolSchema objects replaced wholesale by a single
  dict assignment, so a reader always sees either the old or the new entry
  and never waits on a refresh in progress.
- Refreshes are idempotent and last-writer-wins by ``fetched_at`` (the time
  the discovery started), so a slow, older refresh cannot overwrite a newer one.
- Background refreshes are de-duplicated per connection.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from typing import Iterable

from tooltrellis.tools.base import ToolConnection
from tooltrellis.tools.models import ToolSchema

logger = logging.getLogger(__name__)

_Key = tuple[str, str]


class ToolSchemaCache:
    """
    Cache of tool contracts discovered from a set of tool connections.

    Args:
        connections: Tool connections whose tools should be cached
        ttl_seconds: Age after which an entry is considered stale

    Example:
        >>> cache = ToolSchemaCache([LocalToolConnection("builtin")], ttl_seconds=600)
        >>> async with cache:                 # initialize connections + discover
        ...     schema = cache.get_schema("add")
    """

    def __init__(self, connections: Iterable[ToolConnection] = (), ttl_seconds: float = 600.0):
        self._ttl_seconds = ttl_seconds
        self._connections: dict[str, ToolConnection] = {}
        self._entries: dict[_Key, ToolSchema] = {}
        self._by_name: dict[str, _Key] = {}
        self._suspect: set[str] = set()
        self._refresh_tasks: dict[str, asyncio.Task] = {}
        for connection in connections:
            self.add_connection(connection)

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    def add_connection(self, connection: ToolConnection) -> None:
        if connection.connection_id in self._connections:
            raise ValueError(f"Duplicate connection id: {connection.connection_id}")
        self._connections[connection.connection_id] = connection

    def connection(self, connection_id: str) -> ToolConnection | None:
        return self._connections.get(connection_id)

    @property
    def connection_ids(self) -> list[str]:
        return list(self._connections)

    async def start(self) -> None:
        """Initialize every connection, then discover their tools."""
        for connection in self._connections.values():
            await connection.initialize()
        await self.refresh_all()

    async def close(self) -> None:
        """Cancel background refreshes and shut down every connection."""
        for task in list(self._refresh_tasks.values()):
            task.cancel()
        self._refresh_tasks.clear()
        for connection in self._connections.values():
            await connection.shutdown()

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False

    # ------------------------------------------------------------------
    # Reads (never block)
    # ------------------------------------------------------------------

    def get_schema(self, tool_name: str) -> ToolSchema | None:
        key = self._by_name.get(tool_name)
        if key is None:
            return None
        return self._entries.get(key)

    def schemas(self) -> list[ToolSchema]:
        """Every current schema, one per advertised tool name."""
        return [self._entries[key] for key in self._by_name.values() if key in self._entries]

    def tool_names(self) -> list[str]:
        return sorted(self._by_name)

    def is_stale(self, schema: ToolSchema, now: datetime | None = None) -> bool:
        return schema.age_seconds(now) > self._ttl_seconds

    # ------------------------------------------------------------------
    # Suspect flags
    # ------------------------------------------------------------------

    def mark_suspect(self, tool_name: str) -> None:
        """Flag a contract as possibly outdated; the next lookup forces a refresh."""
        if tool_name not in self._suspect:
            logger.info(f"Schema for '{tool_name}' marked suspect")
        self._suspect.add(tool_name)

    def is_suspect(self, tool_name: str) -> bool:
        return tool_name in self._suspect

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def put(self, schema: ToolSchema) -> bool:
        """
        Store a schema unless a newer one is already cached.

        Returns:
            True if the entry was stored
        """
        key = (schema.connection_id, schema.tool_name)
        current = self._entries.get(key)
        if current is not None and current.fetched_at > schema.fetched_at:
            return False

        owner = self._by_name.get(schema.tool_name)
        if owner is not None and owner != key:
            logger.warning(
                f"Tool name '{schema.tool_name}' moved from connection '{owner[0]}' "
                f"to '{schema.connection_id}'"
            )
        self._entries[key] = schema
        self._by_name[schema.tool_name] = key
        return True

    async def refresh(self, connection_id: str) -> list[ToolSchema]:
        """
        Re-discover the tools of one connection.

        Tools that disappeared from the connection are dropped. If discovery
        fails the existing (stale) entries are kept and returned.

        Raises:
            KeyError: Unknown connection id
        """
        connection = self._connections[connection_id]
        started = datetime.now(UTC)

        try:
            discovered = await connection.list_tools()
        except Exception as e:
            logger.warning(
                f"Tool discovery failed for connection '{connection_id}', keeping stale cache: {e}"
            )
            return self._schemas_for(connection_id)

        fresh: list[ToolSchema] = []
        for tool in discovered:
            schema = ToolSchema(
                tool_name=tool["name"],
                connection_id=connection_id,
                input_contract=tool.get("input_schema") or {"type": "object", "properties": {}},
                description=tool.get("description") or "",
                fetched_at=started,
            )
            if self.put(schema):
                self._suspect.discard(schema.tool_name)
            fresh.append(schema)

        fresh_names = {schema.tool_name for schema in fresh}
        for key, schema in list(self._entries.items()):
            if key[0] == connection_id and key[1] not in fresh_names and schema.fetched_at <= started:
                self._drop(key)

        logger.info(f"Discovered {len(fresh)} tools on connection '{connection_id}'")
        return self._schemas_for(connection_id)

    async def refresh_all(self) -> list[ToolSchema]:
        results = await asyncio.gather(*(self.refresh(cid) for cid in self._connections))
        return [schema for batch in results for schema in batch]

    async def force_refresh(self, tool_name: str) -> ToolSchema | None:
        """
        Synchronously refresh the connection that owns a tool.

        Unknown tools trigger discovery on every connection. The suspect flag
        is cleared whether or not the tool is still present.
        """
        key = self._by_name.get(tool_name)
        if key is not None:
            await self.refresh(key[0])
        else:
            await self.refresh_all()
        self._suspect.discard(tool_name)
        return self.get_schema(tool_name)

    def schedule_refresh(self, connection_id: str | None = None) -> asyncio.Task:
        """
        Start a background refresh without waiting for it.

        A refresh already in flight for the same connection is reused.
        None refreshes every connection.
        """
        task_key = connection_id or "*"
        running = self._refresh_tasks.get(task_key)
        if running is not None and not running.done():
            return running

        coroutine = self.refresh(connection_id) if connection_id else self.refresh_all()
        task = asyncio.create_task(coroutine, name=f"schema-refresh:{task_key}")
        self._refresh_tasks[task_key] = task
        task.add_done_callback(lambda done: self._on_refresh_done(task_key, done))
        return task

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _on_refresh_done(self, task_key: str, task: asyncio.Task) -> None:
        if self._refresh_tasks.get(task_key) is task:
            del self._refresh_tasks[task_key]
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Background schema refresh '{task_key}' failed: {task.exception()}")

    def _schemas_for(self, connection_id: str) -> list[ToolSchema]:
        return [schema for key, schema in self._entries.items() if key[0] == connection_id]

    def _drop(self, key: _Key) -> None:
        self._entries.pop(key, None)
        if self._by_name.get(key[1]) == key:
            del self._by_name[key[1]]
        logger.info(f"Tool '{key[1]}' no longer offered by connection '{key[0]}'")
