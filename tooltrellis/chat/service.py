"""
Chat service: one caller request in, one response out.

Wraps the Orchestrator with the request adapter. Builds the initial history
from the system prompt, the prior turns supplied by the external conversation
store and the current user message, runs the turn, and reports the answer
with optional metadata and metrics.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Mapping, Sequence

from tooltrellis.chat.adapter import from_canonical, is_legacy_request, to_canonical
from tooltrellis.chat.models import (
    CanonicalRequest,
    CanonicalResponse,
    MessageContent,
    ResponseContext,
    ResponseData,
    ResponseError,
    ResponseMessage,
    ResponseMetadata,
    ResponseMetrics,
    ToolExecutionMetric,
)
from tooltrellis.errors import AdapterError
from tooltrellis.llm.models import Message, Role, TurnResult
from tooltrellis.llm.orchestrator import CANCELLED_REASON, Orchestrator
from tooltrellis.llm.sanitizer import sanitize

logger = logging.getLogger(__name__)


class ChatService:
    """
    Handles caller requests end to end.

    Args:
        orchestrator: Runs the tool-calling turn
        system_prompt: Optional system message placed first in every history
    """

    def __init__(self, orchestrator: Orchestrator, system_prompt: str | None = None):
        self._orchestrator = orchestrator
        self._system_prompt = system_prompt

    async def handle(
        self,
        payload: CanonicalRequest | Mapping[str, Any],
        prior_messages: Sequence[Message] | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> dict[str, Any]:
        """
        Answer one request.

        Args:
            payload: Canonical request, or a canonical/legacy dict
            prior_messages: Earlier turns of this conversation from the external store
            cancel_event: Set to abandon the turn

        Returns:
            Response dict in the caller's dialect. Failures are reported in
            its "error" object rather than raised.
        """
        started = time.monotonic()
        legacy = not isinstance(payload, CanonicalRequest) and is_legacy_request(payload)

        try:
            request = to_canonical(payload)
        except AdapterError as e:
            logger.warning(f"Rejected request: {e}")
            response = CanonicalResponse(error=ResponseError(code="invalid_request", message=str(e), status=400))
            return from_canonical(response, legacy=legacy)

        if request.options.response.stream:
            logger.debug("Streaming requested; returning a complete response instead")

        history = self.build_history(request, prior_messages)
        logger.info(
            f"Handling request for conversation {request.context.conversation_id} "
            f"({len(history)} messages)"
        )
        result = await self._orchestrator.run(history, cancel_event=cancel_event)

        elapsed_ms = int((time.monotonic() - started) * 1000)
        return from_canonical(self._build_response(request, result, elapsed_ms), legacy=legacy)

    def build_history(
        self,
        request: CanonicalRequest,
        prior_messages: Sequence[Message] | None = None,
    ) -> list[Message]:
        """System prompt, then prior user/assistant turns, then the current message."""
        history: list[Message] = []
        if self._system_prompt:
            history.append(Message.system(self._system_prompt))
        # Stored turns may carry tool structure from earlier runs; only plain dialogue is replayed
        for message in sanitize(prior_messages or []):
            if message.role in (Role.USER, Role.ASSISTANT):
                history.append(message)
        history.append(Message.user(request.text))
        return history

    @staticmethod
    def _build_response(request: CanonicalRequest, result: TurnResult, elapsed_ms: int) -> CanonicalResponse:
        options = request.options.response
        context = request.context

        response = CanonicalResponse()
        if result.succeeded:
            response.data = ResponseData(
                message=ResponseMessage(
                    content=MessageContent(text=result.content or ""),
                    context=ResponseContext(
                        agent_id=context.agent_id,
                        conversation_id=context.conversation_id,
                        session_id=context.session_id,
                    ),
                )
            )
        else:
            cancelled = result.failure_reason == CANCELLED_REASON
            response.error = ResponseError(
                code="cancelled" if cancelled else "turn_failed",
                message=result.failure_reason or "The request could not be completed",
                status=499 if cancelled else 500,
            )

        if options.include_metadata:
            response.metadata = ResponseMetadata(
                model=result.model,
                turn_state=result.state.value,
                conversation_id=context.conversation_id,
                session_id=context.session_id,
                synthesized=result.synthesized,
                retry_attempts=result.retry_attempts,
                failure_reason=result.failure_reason,
            )

        if options.include_metrics:
            response.metrics = ResponseMetrics(
                prompt_tokens=result.usage.prompt_tokens,
                completion_tokens=result.usage.completion_tokens,
                total_tokens=result.usage.total_tokens,
                model_calls=result.model_calls,
                tool_rounds=result.rounds,
                tool_executions=[
                    ToolExecutionMetric(
                        tool_name=tool_result.tool_name,
                        call_id=tool_result.call_id,
                        outcome=tool_result.outcome.value,
                        duration_ms=tool_result.duration_ms,
                    )
                    for tool_result in result.tool_results
                ],
                processing_time_ms=elapsed_ms,
            )
        return response
