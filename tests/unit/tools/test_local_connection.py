"""Unit tests for LocalToolConnection."""

import pytest

from tooltrellis.errors import ToolConnectionError, ToolInvocationError
from tooltrellis.tools.local import LocalToolConnection

ADD_SCHEMA = {
    "type": "object",
    "properties": {"a": {"type": "number"}, "b": {"type": "number"}},
    "required": ["a", "b"],
}


@pytest.fixture
def connection():
    conn = LocalToolConnection("builtin")
    conn.register("add", lambda a, b: a + b, ADD_SCHEMA, description="Add two numbers")
    return conn


class TestLocalToolConnection:

    @pytest.mark.asyncio
    async def test_lists_registered_tools(self, connection):
        await connection.initialize()
        assert await connection.list_tools() == [
            {"name": "add", "description": "Add two numbers", "input_schema": ADD_SCHEMA}
        ]

    @pytest.mark.asyncio
    async def test_invokes_sync_handler(self, connection):
        await connection.initialize()
        assert await connection.invoke("add", {"a": 2, "b": 3}) == {"output": 5}

    @pytest.mark.asyncio
    async def test_invokes_async_handler(self, connection):
        async def shout(text: str) -> str:
            """Upper-case some text."""
            return text.upper()

        connection.register("shout", shout, {"type": "object", "properties": {"text": {"type": "string"}}})
        await connection.initialize()

        assert await connection.invoke("shout", {"text": "hi"}) == {"output": "HI"}
        tools = {tool["name"]: tool for tool in await connection.list_tools()}
        assert tools["shout"]["description"] == "Upper-case some text."

    @pytest.mark.asyncio
    async def test_unknown_tool_is_retryable(self, connection):
        await connection.initialize()
        with pytest.raises(ToolInvocationError, match="Unknown tool 'multiply'") as exc_info:
            await connection.invoke("multiply", {})
        assert exc_info.value.retryable
        assert "add" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_handler_exceptions_propagate(self, connection):
        await connection.initialize()
        with pytest.raises(TypeError):
            await connection.invoke("add", {"a": 1})

    @pytest.mark.asyncio
    async def test_unregister(self, connection):
        connection.unregister("add")
        await connection.initialize()
        assert await connection.list_tools() == []

    @pytest.mark.asyncio
    async def test_requires_initialize(self, connection):
        with pytest.raises(ToolConnectionError):
            await connection.invoke("add", {"a": 1, "b": 2})

    def test_empty_name_rejected(self, connection):
        with pytest.raises(ValueError):
            connection.register("", lambda: None, {})
