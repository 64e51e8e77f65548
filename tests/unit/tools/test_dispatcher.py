"""
Unit tests for ToolDispatcher.

Tests cover:
- Successful execution with timing
- Unknown tools and contract validation (retryable, schema marked suspect)
- Suspect and stale contract handling
- Transport retry exhaustion and error classification
- Shared execution of identical in-flight calls within one turn
- Batch execution order without short-circuiting
"""

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest

from tooltrellis.config.settings import ToolSettings
from tooltrellis.errors import ToolInvocationError
from tooltrellis.llm.models import ToolCall
from tooltrellis.tools.dispatcher import ToolDispatcher
from tooltrellis.tools.local import LocalToolConnection
from tooltrellis.tools.models import ToolOutcome, ToolSchema
from tooltrellis.tools.schema_cache import ToolSchemaCache

WEATHER_CONTRACT = {
    "type": "object",
    "properties": {
        "location": {"type": "string"},
        "units": {"type": "string", "enum": ["metric", "imperial"]},
    },
    "required": ["location"],
}


def _weather(location: str, units: str = "metric") -> dict:
    return {"location": location, "temperature": 4, "units": units}


@pytest.fixture
def settings():
    return ToolSettings(retry_min_seconds=0, retry_max_seconds=0, max_transport_retries=3)


@pytest.fixture
def connection():
    conn = LocalToolConnection("weather-svc")
    conn.register("weather", _weather, WEATHER_CONTRACT)
    return conn


@pytest.fixture
def cache(connection):
    return ToolSchemaCache([connection], ttl_seconds=600)


@pytest.fixture
def dispatcher(cache, settings):
    return ToolDispatcher(cache, settings)


def _call(arguments, call_id="call_1", tool_name="weather"):
    return ToolCall(id=call_id, tool_name=tool_name, arguments=arguments)


class TestExecute:

    @pytest.mark.asyncio
    async def test_success(self, dispatcher, cache):
        await cache.start()

        result = await dispatcher.execute(_call({"location": "Oslo"}))

        assert result.outcome is ToolOutcome.SUCCESS
        assert result.call_id == "call_1"
        assert result.tool_name == "weather"
        assert result.output == {"location": "Oslo", "temperature": 4, "units": "metric"}
        assert result.duration_ms >= 0
        assert not result.suspect_schema

    @pytest.mark.asyncio
    async def test_unknown_tool_lists_available_tools(self, dispatcher, cache):
        await cache.start()

        with patch.object(cache, "schedule_refresh") as mock_refresh:
            result = await dispatcher.execute(_call({}, tool_name="forecast"))

        assert result.outcome is ToolOutcome.RETRYABLE_ERROR
        assert "Unknown tool 'forecast'" in result.error_detail
        assert "weather" in result.error_detail
        mock_refresh.assert_called_once_with()

    @pytest.mark.asyncio
    async def test_raised_invocation_error_is_classified(self, dispatcher, cache, connection):
        def lookup_contact(name: str):
            raise ToolInvocationError("Contact not found", retryable=False)

        connection.register("contact", lookup_contact, {
            "type": "object", "properties": {"name": {"type": "string"}}, "required": ["name"],
        })
        await cache.start()

        result = await dispatcher.execute(_call({"name": "Ada"}, tool_name="contact"))

        assert result.outcome is ToolOutcome.FATAL_ERROR
        assert result.error_detail == "Contact not found"

    @pytest.mark.asyncio
    async def test_reported_error_is_classified(self, dispatcher, cache, connection):
        await cache.start()
        connection.invoke = AsyncMock(return_value={"output": None, "error": "Permission denied"})

        result = await dispatcher.execute(_call({"location": "Oslo"}))

        assert result.outcome is ToolOutcome.FATAL_ERROR
        assert result.error_detail == "Permission denied"
        assert not cache.is_suspect("weather")

    @pytest.mark.asyncio
    async def test_remote_argument_rejection_marks_contract_suspect(self, dispatcher, cache, connection):
        await cache.start()
        connection.invoke = AsyncMock(return_value={"output": None, "error": "Invalid location format"})

        result = await dispatcher.execute(_call({"location": "???"}))

        assert result.outcome is ToolOutcome.RETRYABLE_ERROR
        assert result.suspect_schema
        assert cache.is_suspect("weather")

    @pytest.mark.asyncio
    async def test_remote_missing_parameter_is_retryable_not_fatal(self, dispatcher, cache, connection):
        await cache.start()
        connection.invoke = AsyncMock(return_value={
            "output": None, "error": "Required parameter 'location' not found in arguments",
        })

        result = await dispatcher.execute(_call({"location": "Oslo"}))

        assert result.outcome is ToolOutcome.RETRYABLE_ERROR
        assert result.suspect_schema

    @pytest.mark.asyncio
    async def test_tool_removed_from_connection_is_retryable(self, dispatcher, cache, connection):
        await cache.start()
        connection.unregister("weather")

        result = await dispatcher.execute(_call({"location": "Oslo"}))

        assert result.outcome is ToolOutcome.RETRYABLE_ERROR
        assert "Unknown tool 'weather'" in result.error_detail

    @pytest.mark.asyncio
    async def test_unexpected_internal_error_becomes_result(self, dispatcher, cache):
        await cache.start()

        with patch.object(cache, "get_schema", side_effect=RuntimeError("index corrupted")):
            result = await dispatcher.execute(_call({"location": "Oslo"}))

        assert result.outcome is ToolOutcome.RETRYABLE_ERROR
        assert "index corrupted" in result.error_detail
        assert result.call_id == "call_1"

    @pytest.mark.asyncio
    async def test_unconfigured_connection_is_fatal(self, dispatcher, cache):
        cache.put(ToolSchema(tool_name="orphan", connection_id="gone", input_contract={}))

        result = await dispatcher.execute(_call({}, tool_name="orphan"))

        assert result.outcome is ToolOutcome.FATAL_ERROR
        assert "'gone'" in result.error_detail


class TestValidation:

    @pytest.mark.asyncio
    async def test_stale_field_name_is_retryable_and_named(self, dispatcher, cache, connection):
        await cache.start()
        connection.invoke = AsyncMock()

        result = await dispatcher.execute(_call({"city": "Oslo"}))

        assert result.outcome is ToolOutcome.RETRYABLE_ERROR
        assert "missing required field(s): location" in result.error_detail
        assert "unexpected field(s): city" in result.error_detail
        assert result.suspect_schema
        assert cache.is_suspect("weather")
        connection.invoke.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_type_errors_reported_with_location(self, dispatcher, cache):
        await cache.start()

        result = await dispatcher.execute(_call({"location": "Oslo", "units": "kelvin"}))

        assert result.outcome is ToolOutcome.RETRYABLE_ERROR
        assert "units:" in result.error_detail

    @pytest.mark.asyncio
    async def test_open_contract_accepts_extra_fields(self, dispatcher, cache, connection):
        connection.register("echo", lambda **kwargs: kwargs, {
            "type": "object",
            "properties": {"text": {"type": "string"}},
            "additionalProperties": True,
        })
        await cache.start()

        result = await dispatcher.execute(_call({"text": "hi", "extra": 1}, tool_name="echo"))

        assert result.outcome is ToolOutcome.SUCCESS

    @pytest.mark.asyncio
    @pytest.mark.parametrize("contract", [
        {"properties": {"n": {"type": "integer64"}}},
        {"type": "object", "properties": {"n": {"type": "string", "pattern": "("}}},
    ])
    async def test_contract_jsonschema_cannot_evaluate_is_skipped(self, dispatcher, cache, connection, contract):
        connection.register("count", lambda n: n, contract)
        await cache.start()

        result = await dispatcher.execute(_call({"n": "1"}, tool_name="count"))

        assert result.outcome is ToolOutcome.SUCCESS
        assert result.output == "1"

    @pytest.mark.asyncio
    async def test_suspect_contract_is_refreshed_before_use(self, dispatcher, cache, connection):
        await cache.start()
        cache.mark_suspect("weather")
        connection.register("weather", lambda city: f"{city}: 4°C", {
            "type": "object", "properties": {"city": {"type": "string"}}, "required": ["city"],
        })

        result = await dispatcher.execute(_call({"city": "Oslo"}))

        assert result.outcome is ToolOutcome.SUCCESS
        assert result.output == "Oslo: 4°C"
        assert not cache.is_suspect("weather")

    @pytest.mark.asyncio
    async def test_stale_contract_used_while_refreshing(self, dispatcher, cache):
        await cache.start()
        schema = cache.get_schema("weather")
        cache._entries[("weather-svc", "weather")] = schema.model_copy(
            update={"fetched_at": datetime.now(UTC) - timedelta(hours=1)}
        )

        with patch.object(cache, "schedule_refresh") as mock_refresh:
            result = await dispatcher.execute(_call({"location": "Oslo"}))

        assert result.outcome is ToolOutcome.SUCCESS
        mock_refresh.assert_called_once_with("weather-svc")


class TestTransport:

    @pytest.mark.asyncio
    async def test_transport_failures_are_retried(self, dispatcher, cache, connection):
        await cache.start()
        connection.invoke = AsyncMock(side_effect=[
            ConnectionError("reset"),
            {"output": "4°C"},
        ])

        result = await dispatcher.execute(_call({"location": "Oslo"}))

        assert result.outcome is ToolOutcome.SUCCESS
        assert connection.invoke.await_count == 2

    @pytest.mark.asyncio
    async def test_exhausted_transport_retries_are_retryable(self, dispatcher, cache, connection):
        await cache.start()
        connection.invoke = AsyncMock(side_effect=ConnectionError("reset"))

        result = await dispatcher.execute(_call({"location": "Oslo"}))

        assert result.outcome is ToolOutcome.RETRYABLE_ERROR
        assert "unavailable after 3 attempts" in result.error_detail
        assert connection.invoke.await_count == 3
        assert not result.suspect_schema

    @pytest.mark.asyncio
    async def test_timeout_per_attempt(self, cache, connection):
        dispatcher = ToolDispatcher(
            cache, ToolSettings(retry_min_seconds=0, retry_max_seconds=0, max_transport_retries=1)
        )

        async def hang(location: str):
            await asyncio.sleep(10)

        connection.register("weather", hang, WEATHER_CONTRACT)
        await cache.start()

        result = await dispatcher.execute(_call({"location": "Oslo"}), timeout=0.01)

        assert result.outcome is ToolOutcome.RETRYABLE_ERROR
        assert "unavailable after 1 attempts" in result.error_detail


async def _run_pair(dispatcher, connection, scope_a, scope_b):
    """Start two identical weather calls under the given scopes while the handler is held open."""
    gate = asyncio.Event()
    invocations = []

    async def slow_weather(location: str):
        invocations.append(location)
        await gate.wait()
        return f"{location}: 4°C"

    connection.register("weather", slow_weather, WEATHER_CONTRACT)
    await dispatcher.schema_cache.start()

    first = asyncio.create_task(
        dispatcher.execute(_call({"location": "Oslo"}, call_id="call_a"), scope=scope_a)
    )
    await asyncio.sleep(0)
    second = asyncio.create_task(
        dispatcher.execute(_call({"location": "Oslo"}, call_id="call_b"), scope=scope_b)
    )
    await asyncio.sleep(0)
    gate.set()

    result_a, result_b = await asyncio.gather(first, second)
    return invocations, result_a, result_b


class TestConcurrency:

    @pytest.mark.asyncio
    async def test_identical_in_flight_calls_share_execution(self, dispatcher, connection):
        invocations, result_a, result_b = await _run_pair(dispatcher, connection, "turn-1", "turn-1")

        assert invocations == ["Oslo"]
        assert result_a.call_id == "call_a"
        assert result_b.call_id == "call_b"
        assert result_a.output == result_b.output == "Oslo: 4°C"

    @pytest.mark.asyncio
    async def test_separate_turns_never_share_execution(self, dispatcher, connection):
        invocations, result_a, result_b = await _run_pair(dispatcher, connection, "turn-a", "turn-b")

        assert invocations == ["Oslo", "Oslo"]
        assert result_a.call_id == "call_a"
        assert result_b.call_id == "call_b"

    @pytest.mark.asyncio
    async def test_unscoped_calls_never_share_execution(self, dispatcher, connection):
        invocations, _, _ = await _run_pair(dispatcher, connection, None, None)

        assert invocations == ["Oslo", "Oslo"]

    @pytest.mark.asyncio
    async def test_execute_all_keeps_order_and_runs_every_call(self, dispatcher, cache, connection):
        connection.register("delete_everything", lambda: "done", {"type": "object", "properties": {}})
        await cache.start()
        original_invoke = connection.invoke

        async def invoke(tool_name, arguments):
            if tool_name == "delete_everything":
                return {"output": None, "error": "Permission denied"}
            return await original_invoke(tool_name, arguments)

        connection.invoke = invoke

        results = await dispatcher.execute_all([
            _call({}, call_id="call_1", tool_name="delete_everything"),
            _call({"location": "Oslo"}, call_id="call_2"),
            _call({"city": "Bergen"}, call_id="call_3"),
        ])

        assert [r.call_id for r in results] == ["call_1", "call_2", "call_3"]
        assert [r.outcome for r in results] == [
            ToolOutcome.FATAL_ERROR,
            ToolOutcome.SUCCESS,
            ToolOutcome.RETRYABLE_ERROR,
        ]

    @pytest.mark.asyncio
    async def test_execute_all_empty(self, dispatcher):
        assert await dispatcher.execute_all([]) == []


class TestContracts:

    @pytest.mark.asyncio
    async def test_describe_contract(self, dispatcher, cache):
        await cache.start()

        text = dispatcher.describe_contract("weather")

        assert '"location"' in text
        assert '"required"' in text
        assert dispatcher.describe_contract("forecast") is None

    @pytest.mark.asyncio
    async def test_refreshed_contract_rediscovers_suspect_tool(self, dispatcher, cache, connection):
        await cache.start()
        cache.mark_suspect("weather")
        connection.register("weather", _weather, {
            "type": "object", "properties": {"place": {"type": "string"}}, "required": ["place"],
        })

        text = await dispatcher.refreshed_contract("weather")

        assert '"place"' in text
        assert not cache.is_suspect("weather")
