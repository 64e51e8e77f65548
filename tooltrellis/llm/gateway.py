"""
Completion gateway: one completion call against one backend variant.

Data flow:
    canonical history ──► wire.to_wire_variant(variant) ──► LiteLLM
                                                              │
    GatewayResult ◄── wire.parse_wire_response(variant) ◄─────┘

Design decisions:
- Uses LiteLLM for provider abstraction. Chat-framed models go through
  acompletion(); models listed in responses_model_prefixes go through
  aresponses(), which pairs tool calls and outputs by call_id.
- Transport failures (timeouts, connection errors, 5xx, rate limits) are
  retried here with exponential backoff and never reach the orchestrator
  state machine unless every attempt fails.
- A backend rejection of the message sequence is a StructuralError. It can
  only happen if the orchestrator or sanitizer broke the pairing invariant,
  so it is logged as a defect and never retried.
- With tools disabled no tool is advertised, and a reply that still carries
  tool calls is rejected rather than silently dropped.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Sequence

import litellm
from litellm import acompletion, aresponses
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from tooltrellis.config.settings import LLMSettings
from tooltrellis.errors import GatewayError, StructuralError, TransportError, UnexpectedToolCallsError
from tooltrellis.llm.models import GatewayResult, Message, TokenUsage
from tooltrellis.llm.wire import (
    WireVariant,
    format_tools,
    parse_wire_response,
    select_variant,
    to_wire_variant,
)
from tooltrellis.tools.schema_cache import ToolSchemaCache

logger = logging.getLogger(__name__)

TRANSPORT_ERRORS: tuple[type[BaseException], ...] = (
    litellm.Timeout,
    litellm.APIConnectionError,
    litellm.InternalServerError,
    litellm.ServiceUnavailableError,
    litellm.RateLimitError,
    asyncio.TimeoutError,
    TimeoutError,
    ConnectionError,
)

# Phrases backends use when rejecting an unpaired or misordered tool sequence
_STRUCTURAL_PATTERN = re.compile(
    r"tool_call_id|tool_calls|role 'tool'|role \"tool\"|function_call_output|"
    r"no tool output found|must be followed by tool|tool_use_id|tool_result",
    re.IGNORECASE,
)


class CompletionGateway:
    """
    Issues single completion calls and returns canonical results.

    Args:
        settings: Backend configuration (model, temperature, retries, api key)
        schema_cache: Source of advertised tool contracts; None disables tools entirely
    """

    def __init__(self, settings: LLMSettings, schema_cache: ToolSchemaCache | None = None):
        self._settings = settings
        self._schema_cache = schema_cache

    @property
    def model(self) -> str:
        return self._settings.model

    @property
    def variant(self) -> WireVariant:
        return select_variant(self._settings.model, self._settings.responses_model_prefixes)

    async def call(
        self,
        history: Sequence[Message],
        tools_enabled: bool,
        temperature: float,
        timeout: float | None = None,
    ) -> GatewayResult:
        """
        Issue one completion call.

        Args:
            history: Canonical messages to send, in order
            tools_enabled: Whether to advertise tool contracts to the model
            temperature: Sampling temperature for this call
            timeout: Per-attempt timeout in seconds (defaults to settings.timeout_seconds)

        Returns:
            GatewayResult with either content or tool calls

        Raises:
            GatewayError: Missing API key, a non-retryable backend failure or a malformed reply
            StructuralError: The backend rejected the message sequence
            TransportError: Every transport attempt failed
            UnexpectedToolCallsError: Tool calls came back while tools were disabled
        """
        if not self._settings.api_key:
            raise GatewayError("API key not configured. Set LLM_API_KEY in your environment.")

        variant = self.variant
        kwargs = self._build_kwargs(variant, history, tools_enabled, temperature)
        effective_timeout = timeout if timeout is not None else self._settings.timeout_seconds

        logger.debug(
            f"Completion call: model={self._settings.model} variant={variant.value} "
            f"messages={len(history)} tools={'tools' in kwargs} temperature={temperature:.2f}"
        )

        try:
            async for attempt in self._retrying():
                with attempt:
                    response = await asyncio.wait_for(
                        self._send(variant, kwargs), timeout=effective_timeout
                    )
        except TRANSPORT_ERRORS as e:
            raise TransportError(
                f"Completion backend unavailable after {self._settings.max_transport_retries} "
                f"attempts: {str(e) or type(e).__name__}",
                cause=e,
            ) from e
        except litellm.BadRequestError as e:
            if _STRUCTURAL_PATTERN.search(str(e)):
                logger.error(f"Backend rejected the message sequence as invalid: {e}")
                raise StructuralError(f"Invalid message sequence: {e}", cause=e) from e
            raise GatewayError(f"Completion request rejected: {e}", cause=e) from e
        except Exception as e:
            raise GatewayError(f"LLM API call failed: {e}", cause=e) from e

        try:
            content, tool_calls = parse_wire_response(variant, response)
        except (ValueError, TypeError, KeyError) as e:
            # pydantic ValidationError is a ValueError, e.g. a tool call with no name or id
            logger.error(f"Could not decode completion response: {e}")
            raise GatewayError(f"Malformed completion response: {e}", cause=e) from e

        if tool_calls and not tools_enabled:
            raise UnexpectedToolCallsError(
                f"Model returned {len(tool_calls)} tool call(s) with tools disabled: "
                f"{', '.join(call.tool_name for call in tool_calls)}"
            )

        return GatewayResult(
            content=content,
            tool_calls=tool_calls,
            model=self._response_model(response),
            usage=self._usage(variant, response),
        )

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

    def _build_kwargs(
        self,
        variant: WireVariant,
        history: Sequence[Message],
        tools_enabled: bool,
        temperature: float,
    ) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": self._settings.model,
            "temperature": temperature,
            "api_key": self._settings.api_key,
        }
        if self._settings.api_base:
            kwargs["api_base"] = self._settings.api_base

        if variant is WireVariant.RESPONSES:
            kwargs["input"] = to_wire_variant(variant, history)
            kwargs["max_output_tokens"] = self._settings.max_tokens
        else:
            kwargs["messages"] = to_wire_variant(variant, history)
            kwargs["max_tokens"] = self._settings.max_tokens

        # Tools are only advertised when enabled AND there is something to advertise
        if tools_enabled and self._schema_cache is not None:
            schemas = self._schema_cache.schemas()
            if schemas:
                kwargs["tools"] = format_tools(variant, schemas)
        return kwargs

    async def _send(self, variant: WireVariant, kwargs: dict[str, Any]) -> Any:
        if variant is WireVariant.RESPONSES:
            return await aresponses(**kwargs)
        return await acompletion(**kwargs)

    def _response_model(self, response: Any) -> str:
        model = getattr(response, "model", None)
        return model if isinstance(model, str) and model else self._settings.model

    @staticmethod
    def _usage(variant: WireVariant, response: Any) -> TokenUsage:
        usage = getattr(response, "usage", None)
        if usage is None:
            return TokenUsage()
        if variant is WireVariant.RESPONSES:
            prompt, completion = getattr(usage, "input_tokens", 0), getattr(usage, "output_tokens", 0)
        else:
            prompt, completion = getattr(usage, "prompt_tokens", 0), getattr(usage, "completion_tokens", 0)
        return TokenUsage(
            prompt_tokens=prompt if isinstance(prompt, int) else 0,
            completion_tokens=completion if isinstance(completion, int) else 0,
        )
