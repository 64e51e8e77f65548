"""
Tool execution dispatcher.

Executes canonical ToolCalls against the connection that owns each tool and
returns a classified ToolResult per call. It never raises for a tool failure:
every problem becomes a SUCCESS / RETRYABLE_ERROR / FATAL_ERROR result the
orchestrator can act on.

Per call:
1. Look up the cached contract. A stale entry triggers a background refresh
   but is still used for this attempt; a suspect entry is refreshed
   synchronously first.
2. Validate the arguments against the contract. Missing required or
   unexpected fields are a RETRYABLE_ERROR naming the fields, and flag the
   contract suspect so the next attempt runs against a fresh copy.
3. Invoke the owning connection, retrying transport failures with
   exponential backoff under a per-attempt timeout.
4. Classify whatever the external side reported.

Identical calls (same tool, same arguments) that are in flight at the same
time within one scope share a single execution. The orchestrator passes its
turn id as the scope, so separate turns never share results.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import TYPE_CHECKING, Any, Sequence

from jsonschema import Draft202012Validator
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from tooltrellis.config.settings import ToolSettings
from tooltrellis.tools.classification import classify_error_text, classify_exception, is_argument_error
from tooltrellis.tools.models import ToolOutcome, ToolResult, ToolSchema
from tooltrellis.tools.schema_cache import ToolSchemaCache

if TYPE_CHECKING:
    from tooltrellis.llm.models import ToolCall

logger = logging.getLogger(__name__)

TRANSPORT_ERRORS: tuple[type[BaseException], ...] = (
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
)


class ToolDispatcher:
    """
    Dispatches tool calls to their owning connections.

    Args:
        schema_cache: Shared cache of tool contracts and connections
        settings: Timeouts and transport retry configuration
    """

    def __init__(self, schema_cache: ToolSchemaCache, settings: ToolSettings | None = None):
        self._cache = schema_cache
        self._settings = settings or ToolSettings()
        self._in_flight: dict[tuple[str, str, str], asyncio.Task] = {}

    @property
    def schema_cache(self) -> ToolSchemaCache:
        return self._cache

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def execute(
        self,
        call: ToolCall,
        timeout: float | None = None,
        scope: str | None = None,
    ) -> ToolResult:
        """
        Execute one tool call.

        Args:
            call: Tool request parsed from the model response
            timeout: Per-attempt timeout in seconds (defaults to settings.call_timeout_seconds)
            scope: Sharing scope for identical in-flight calls; None never shares

        Returns:
            Classified ToolResult whose call_id is call.id
        """
        if scope is None:
            return await self._execute(call, timeout)

        key = (scope, call.tool_name, json.dumps(call.arguments, sort_keys=True, default=str))
        running = self._in_flight.get(key)
        if running is not None and not running.done():
            logger.info(f"Duplicate execution of '{call.tool_name}' detected, sharing in-flight result")
            result = await asyncio.shield(running)
            return result.model_copy(update={"call_id": call.id})

        task = asyncio.create_task(self._execute(call, timeout), name=f"tool:{call.tool_name}:{call.id}")
        self._in_flight[key] = task
        task.add_done_callback(lambda done: self._forget(key, done))
        return await asyncio.shield(task)

    async def execute_all(
        self,
        calls: Sequence[ToolCall],
        timeout: float | None = None,
        scope: str | None = None,
    ) -> list[ToolResult]:
        """
        Execute a batch of tool calls concurrently.

        Waits for every dispatch, even after a fatal result, and returns the
        results in the order of the calls.
        """
        if not calls:
            return []
        return list(await asyncio.gather(*(self.execute(call, timeout, scope) for call in calls)))

    def describe_contract(self, tool_name: str) -> str | None:
        """Render the current contract of a tool for corrective guidance."""
        schema = self._cache.get_schema(tool_name)
        if schema is None:
            return None
        return json.dumps(schema.input_contract, indent=2, sort_keys=True)

    async def refreshed_contract(self, tool_name: str) -> str | None:
        """Like describe_contract, but re-discovers a suspect contract first."""
        if self._cache.is_suspect(tool_name):
            await self._cache.force_refresh(tool_name)
        return self.describe_contract(tool_name)

    # ------------------------------------------------------------------
    # Execution steps
    # ------------------------------------------------------------------

    async def _execute(self, call: ToolCall, timeout: float | None) -> ToolResult:
        started = time.monotonic()
        try:
            result = await self._run_steps(call, timeout)
        except Exception as e:
            logger.exception(f"Unexpected error while executing tool '{call.tool_name}'")
            detail = f"Tool execution failed: {str(e) or type(e).__name__}"
            result = self._failure(call, classify_exception(e), detail)
        result = result.model_copy(update={"duration_ms": int((time.monotonic() - started) * 1000)})

        if result.ok:
            logger.info(f"Tool '{call.tool_name}' succeeded in {result.duration_ms}ms")
        else:
            logger.warning(
                f"Tool '{call.tool_name}' returned {result.outcome.value}: {result.error_detail}"
            )
        return result

    async def _run_steps(self, call: ToolCall, timeout: float | None) -> ToolResult:
        # 1. Lookup
        schema = await self._lookup(call.tool_name)
        if schema is None:
            available = ", ".join(self._cache.tool_names()) or "none"
            self._cache.schedule_refresh()
            return self._failure(
                call,
                ToolOutcome.RETRYABLE_ERROR,
                f"Unknown tool '{call.tool_name}'. Available tools: {available}",
            )

        # 2. Validation
        problem = self._validate(schema, call.arguments)
        if problem is not None:
            self._cache.mark_suspect(call.tool_name)
            return self._failure(call, ToolOutcome.RETRYABLE_ERROR, problem, suspect=True)

        connection = self._cache.connection(schema.connection_id)
        if connection is None:
            return self._failure(
                call,
                ToolOutcome.FATAL_ERROR,
                f"Connection '{schema.connection_id}' for tool '{call.tool_name}' is not configured",
            )

        # 3. Dispatch
        effective_timeout = timeout if timeout is not None else self._settings.call_timeout_seconds
        try:
            async for attempt in self._retrying():
                with attempt:
                    response = await asyncio.wait_for(
                        connection.invoke(call.tool_name, dict(call.arguments)),
                        timeout=effective_timeout,
                    )
        except TRANSPORT_ERRORS as e:
            return self._failure(
                call,
                ToolOutcome.RETRYABLE_ERROR,
                f"Tool connection '{schema.connection_id}' unavailable after "
                f"{self._settings.max_transport_retries} attempts: {str(e) or type(e).__name__}",
            )
        except Exception as e:
            # 4. Classification of raised failures
            return self._from_error_text(call, classify_exception(e), str(e) or type(e).__name__)

        # 4. Classification of reported failures
        error = response.get("error") if isinstance(response, dict) else None
        if error:
            return self._from_error_text(call, classify_error_text(str(error)), str(error), response)

        output = response.get("output") if isinstance(response, dict) else response
        return ToolResult(
            call_id=call.id,
            tool_name=call.tool_name,
            output=output,
            outcome=ToolOutcome.SUCCESS,
        )

    async def _lookup(self, tool_name: str) -> ToolSchema | None:
        if self._cache.is_suspect(tool_name):
            logger.info(f"Forcing schema refresh for suspect tool '{tool_name}'")
            return await self._cache.force_refresh(tool_name)

        schema = self._cache.get_schema(tool_name)
        if schema is not None and self._cache.is_stale(schema):
            logger.debug(f"Schema for '{tool_name}' is stale, refreshing in background")
            self._cache.schedule_refresh(schema.connection_id)
        return schema

    @staticmethod
    def _validate(schema: ToolSchema, arguments: dict[str, Any]) -> str | None:
        """
        Validate arguments against a cached contract.

        Returns:
            A description naming the offending fields, or None if valid
        """
        contract = schema.input_contract
        missing = [name for name in schema.required_fields if name not in arguments]

        # An explicitly open object (additionalProperties true or a schema) accepts extra fields
        known = set(schema.known_fields)
        closed = contract.get("additionalProperties") is False or (
            "additionalProperties" not in contract and bool(known)
        )
        unexpected = [name for name in arguments if name not in known] if closed else []

        details: list[str] = []
        if missing:
            details.append(f"missing required field(s): {', '.join(missing)}")
        if unexpected:
            details.append(f"unexpected field(s): {', '.join(unexpected)}")

        try:
            validator = Draft202012Validator(contract)
            errors = sorted(validator.iter_errors(arguments), key=lambda err: [str(part) for part in err.path])
        except Exception as e:
            # e.g. an unknown "type" or an invalid regex "pattern"
            logger.warning(
                f"Cached contract for '{schema.tool_name}' cannot be evaluated, "
                f"skipping schema validation: {e}"
            )
            errors = []

        for err in errors[:5]:
            if err.validator == "required" or (err.validator == "additionalProperties" and closed):
                continue  # already reported by name above
            location = "/".join(map(str, err.path)) or "<root>"
            details.append(f"{location}: {err.message}")

        if not details:
            return None
        return f"Arguments do not match the contract of '{schema.tool_name}': " + "; ".join(details)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(self._settings.max_transport_retries),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception_type(TRANSPORT_ERRORS),
        )

    def _from_error_text(
        self,
        call: ToolCall,
        outcome: ToolOutcome,
        detail: str,
        response: Any = None,
    ) -> ToolResult:
        # The external side rejecting the arguments means our contract may be out of date
        suspect = outcome is ToolOutcome.RETRYABLE_ERROR and is_argument_error(detail)
        if suspect:
            self._cache.mark_suspect(call.tool_name)
        output = response.get("output") if isinstance(response, dict) else None
        return self._failure(call, outcome, detail, suspect=suspect, output=output)

    @staticmethod
    def _failure(
        call: ToolCall,
        outcome: ToolOutcome,
        detail: str,
        suspect: bool = False,
        output: Any = None,
    ) -> ToolResult:
        return ToolResult(
            call_id=call.id,
            tool_name=call.tool_name,
            output=output,
            outcome=outcome,
            error_detail=detail,
            suspect_schema=suspect,
        )

    def _forget(self, key: tuple[str, str, str], task: asyncio.Task) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]
