"""
Orchestrator: the per-turn tool-calling state machine.

    AWAITING_MODEL ──► EXECUTING_TOOLS ──► AWAITING_MODEL   (all tools succeeded)
          │                  │        ──► RETRYING ──► AWAITING_MODEL (corrective call)
          │                  │                    └──► SYNTHESIZING (retries exhausted)
          │                  └──────────► SYNTHESIZING (round bound reached)
          └──► DONE (plain answer)        SYNTHESIZING ──► DONE
    FAILED is reachable from every state.

Design decisions:
- Every run gets its own _Turn. The orchestrator itself holds no per-turn
  state, so concurrent turns for different conversations are independent.
- A turn keeps two message lists. The durable history records everything
  (assistant tool requests, their paired results, corrective guidance) and is
  returned to the caller for persistence. The working context is what the
  next tool-enabled call sees; a corrective retry replaces it with a freshly
  built, sanitized copy, and later appends go to both lists. Corrective
  guidance is kept in the durable history but left out of every later retry
  context and of the synthesis call.
- Tool errors never raise. Retryable results drive RETRYING and fatal
  results end the turn. When both appear in one round, fatal wins.
- The corrective retry budget is per turn. The temperature bias it adds is
  reset after a successful round.
- Retry exhaustion is not a failure: the turn falls through to SYNTHESIZING
  and still produces a best-effort answer.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Sequence

from tooltrellis.config.logging import turn_logger
from tooltrellis.config.settings import LLMSettings, OrchestratorSettings
from tooltrellis.errors import GatewayError, StructuralError
from tooltrellis.llm.gateway import CompletionGateway
from tooltrellis.llm.models import (
    GatewayResult,
    Message,
    RetryState,
    TokenUsage,
    ToolCall,
    TurnResult,
    TurnState,
    check_pairing,
)
from tooltrellis.llm.sanitizer import build_retry_context, sanitize
from tooltrellis.tools.dispatcher import ToolDispatcher
from tooltrellis.tools.models import ToolOutcome, ToolResult

logger = logging.getLogger(__name__)

CANCELLED_REASON = "cancelled"


class _TurnCancelled(Exception):
    """Internal signal: the caller's cancel event fired at a suspension point."""


@dataclass
class _Turn:
    """Mutable state of one orchestration run."""

    turn_id: str
    history: list[Message]
    working: list[Message]
    cancel_event: asyncio.Event | None
    request_timeout: float | None
    log: logging.LoggerAdapter
    state: TurnState = TurnState.AWAITING_MODEL
    transitions: list[TurnState] = field(default_factory=lambda: [TurnState.AWAITING_MODEL])
    retry: RetryState = field(default_factory=RetryState)
    rounds: int = 0
    model_calls: int = 0
    usage: TokenUsage = field(default_factory=TokenUsage)
    model: str = ""
    pending_calls: list[ToolCall] = field(default_factory=list)
    round_results: list[ToolResult] = field(default_factory=list)
    tool_results: list[ToolResult] = field(default_factory=list)
    content: str | None = None
    failure_reason: str | None = None
    synthesized: bool = False
    retries_exhausted: bool = False
    guidance: list[Message] = field(default_factory=list)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def append(self, *messages: Message) -> None:
        self.history.extend(messages)
        self.working.extend(messages)

    def without_guidance(self) -> list[Message]:
        """Durable history minus the corrective guidance added by earlier retries."""
        return [message for message in self.history if message not in self.guidance]

    def record(self, result: GatewayResult) -> None:
        self.model_calls += 1
        self.usage = self.usage + result.usage
        self.model = result.model or self.model


class Orchestrator:
    """
    Drives one conversational turn from the initial history to a final answer.

    Args:
        gateway: Completion gateway for model calls
        dispatcher: Tool execution dispatcher
        settings: Round/retry bounds and synthesis prompts
        llm_settings: Base and synthesis temperatures

    Example:
        >>> orchestrator = Orchestrator(gateway, dispatcher, settings.orchestrator, settings.llm)
        >>> result = await orchestrator.run([Message.user("Roll 2d6 for me")])
        >>> result.state, result.content
        (<TurnState.DONE: 'done'>, 'You rolled a 7.')
    """

    def __init__(
        self,
        gateway: CompletionGateway,
        dispatcher: ToolDispatcher,
        settings: OrchestratorSettings | None = None,
        llm_settings: LLMSettings | None = None,
    ):
        self._gateway = gateway
        self._dispatcher = dispatcher
        self._settings = settings or OrchestratorSettings()
        self._llm_settings = llm_settings or LLMSettings()

    async def run(
        self,
        history: Sequence[Message],
        *,
        cancel_event: asyncio.Event | None = None,
        request_timeout: float | None = None,
    ) -> TurnResult:
        """
        Run one turn to completion.

        Args:
            history: Initial messages (system prompt, prior turns, current user message)
            cancel_event: Set by the caller to abandon the turn at the next suspension point
            request_timeout: Per-attempt timeout for model calls and tool dispatches

        Returns:
            TurnResult in state DONE or FAILED. The turn never raises for tool
            or backend failures; those are reported through the result.

        Raises:
            asyncio.CancelledError: The task running the turn was cancelled
        """
        if not history:
            raise ValueError("history cannot be empty")

        turn_id = uuid.uuid4().hex[:8]
        turn = _Turn(
            turn_id=turn_id,
            history=list(history),
            working=list(history),
            cancel_event=cancel_event,
            request_timeout=request_timeout,
            log=turn_logger(logger, turn_id),
        )
        turn.log.info(f"Turn started with {len(turn.history)} messages")

        handlers = {
            TurnState.AWAITING_MODEL: self._await_model,
            TurnState.EXECUTING_TOOLS: self._execute_tools,
            TurnState.RETRYING: self._retry,
            TurnState.SYNTHESIZING: self._synthesize,
        }

        try:
            while not turn.state.is_terminal:
                if turn.cancelled:
                    raise _TurnCancelled()
                next_state = await handlers[turn.state](turn)
                self._transition(turn, next_state)
        except _TurnCancelled:
            turn.log.warning(f"Turn cancelled during {turn.state.value}")
            self._fail(turn, CANCELLED_REASON)
        except GatewayError as e:
            turn.log.error(f"Turn failed during {turn.state.value}: {e}")
            self._fail(turn, str(e))
        except asyncio.CancelledError:
            turn.log.warning(f"Turn task cancelled during {turn.state.value}")
            raise

        turn.log.info(
            f"Turn finished: {turn.state.value} after {turn.model_calls} model calls, "
            f"{turn.rounds} tool rounds, {turn.retry.attempt_count} retries"
        )
        return TurnResult(
            state=turn.state,
            content=turn.content,
            history=turn.history,
            rounds=turn.rounds,
            retry_attempts=turn.retry.attempt_count,
            model_calls=turn.model_calls,
            tool_results=turn.tool_results,
            usage=turn.usage,
            model=turn.model or self._gateway.model,
            synthesized=turn.synthesized,
            failure_reason=turn.failure_reason,
            transitions=turn.transitions,
        )

    # ------------------------------------------------------------------
    # State handlers
    # ------------------------------------------------------------------

    async def _await_model(self, turn: _Turn) -> TurnState:
        problems = check_pairing(turn.working)
        if problems:
            turn.log.error(f"Refusing to send history that breaks tool-call pairing: {problems}")
            raise StructuralError(f"Tool-call pairing violated: {'; '.join(problems)}")

        temperature = min(
            self._llm_settings.temperature + turn.retry.temperature_bias,
            self._settings.max_temperature,
        )
        result = await self._until_cancelled(
            turn,
            self._gateway.call(
                list(turn.working),
                tools_enabled=True,
                temperature=temperature,
                timeout=turn.request_timeout,
            ),
            abandon=False,
        )
        turn.record(result)

        if not result.has_tool_calls:
            turn.content = result.content or self._settings.fallback_text
            turn.append(Message.assistant(content=turn.content))
            return TurnState.DONE

        turn.log.info(
            f"Model requested {len(result.tool_calls)} tool call(s): "
            f"{', '.join(call.tool_name for call in result.tool_calls)}"
        )
        turn.append(result.to_message())
        turn.pending_calls = list(result.tool_calls)
        return TurnState.EXECUTING_TOOLS

    async def _execute_tools(self, turn: _Turn) -> TurnState:
        calls, turn.pending_calls = turn.pending_calls, []
        results = await self._until_cancelled(
            turn,
            self._dispatcher.execute_all(calls, timeout=turn.request_timeout, scope=turn.turn_id),
            abandon=True,
        )

        # All results are appended together, in call order
        ordered = list(results)
        turn.append(*(Message.tool(result.call_id, result.output_text()) for result in ordered))
        turn.tool_results.extend(ordered)
        turn.round_results = ordered

        fatal = [result for result in ordered if result.outcome is ToolOutcome.FATAL_ERROR]
        if fatal:
            first = fatal[0]
            self._fail(turn, f"Tool '{first.tool_name}' failed: {first.error_detail}")
            return TurnState.FAILED

        if any(result.outcome is ToolOutcome.RETRYABLE_ERROR for result in ordered):
            return TurnState.RETRYING

        turn.rounds += 1
        # A successful round ends any corrective episode
        turn.retry.temperature_bias = 0.0
        turn.retry.guidance_message = None
        if turn.rounds >= self._settings.max_tool_rounds:
            turn.log.info(f"Tool round limit ({self._settings.max_tool_rounds}) reached")
            return TurnState.SYNTHESIZING
        return TurnState.AWAITING_MODEL

    async def _retry(self, turn: _Turn) -> TurnState:
        failures = [r for r in turn.round_results if r.outcome is ToolOutcome.RETRYABLE_ERROR]
        turn.retry.observed_errors.extend(f"{r.tool_name}: {r.error_detail}" for r in failures)

        if turn.retry.attempt_count >= self._settings.max_retry_attempts:
            turn.log.warning(
                f"Corrective retries exhausted after {turn.retry.attempt_count} attempts, "
                f"answering without tools"
            )
            turn.retries_exhausted = True
            return TurnState.SYNTHESIZING

        turn.retry.attempt_count += 1
        turn.retry.temperature_bias += self._settings.temperature_step
        guidance = await self._until_cancelled(turn, self._build_guidance(failures), abandon=False)
        turn.retry.guidance_message = guidance

        turn.working = build_retry_context(turn.without_guidance(), guidance)
        turn.guidance.append(Message.system(guidance))
        turn.history.append(turn.guidance[-1])
        turn.log.info(
            f"Corrective retry {turn.retry.attempt_count}/{self._settings.max_retry_attempts} "
            f"(temperature bias {turn.retry.temperature_bias:.2f})"
        )
        return TurnState.AWAITING_MODEL

    async def _synthesize(self, turn: _Turn) -> TurnState:
        guidance = self._settings.synthesis_guidance
        if turn.retries_exhausted:
            guidance = f"{guidance}\n\n{self._settings.tools_unavailable_note}"
        context = sanitize(turn.without_guidance())
        context.append(Message.system(guidance))

        result = await self._until_cancelled(
            turn,
            self._gateway.call(
                context,
                tools_enabled=False,
                temperature=self._llm_settings.synthesis_temperature,
                timeout=turn.request_timeout,
            ),
            abandon=False,
        )
        turn.record(result)
        turn.synthesized = True
        turn.content = result.content or self._settings.fallback_text
        turn.history.append(Message.assistant(content=turn.content))
        return TurnState.DONE

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _build_guidance(self, failures: list[ToolResult]) -> str:
        lines = [
            "Your previous tool request could not be executed. Issue a corrected tool "
            "request that follows the current input contract exactly, or answer "
            "without tools if the request cannot be fixed.",
        ]
        for result in failures:
            lines.append(f"- Tool '{result.tool_name}': {result.error_detail}")
            contract = await self._dispatcher.refreshed_contract(result.tool_name)
            if contract is not None:
                lines.append(f"  Current input contract for '{result.tool_name}':\n{contract}")
        return "\n".join(lines)

    async def _until_cancelled(self, turn: _Turn, operation: Awaitable[Any], abandon: bool) -> Any:
        """
        Await an operation unless the turn's cancel event fires first.

        With abandon=True the operation keeps running in the background after
        cancellation and its result is discarded; otherwise it is cancelled.
        """
        task = asyncio.ensure_future(operation)
        if turn.cancel_event is None:
            return await task

        waiter = asyncio.ensure_future(turn.cancel_event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task in done:
            return task.result()
        if not abandon:
            task.cancel()
        raise _TurnCancelled()

    @staticmethod
    def _transition(turn: _Turn, next_state: TurnState) -> None:
        if next_state is turn.state:
            return  # already moved by _fail
        turn.log.debug(f"{turn.state.value} -> {next_state.value}")
        turn.state = next_state
        turn.transitions.append(next_state)

    @staticmethod
    def _fail(turn: _Turn, reason: str) -> None:
        turn.failure_reason = reason
        turn.content = None
        turn.state = TurnState.FAILED
        if turn.transitions[-1] is not TurnState.FAILED:
            turn.transitions.append(TurnState.FAILED)
