"""The controller loop: one structured model turn, one action, repeat.

Each iteration requests a model turn under the provider's structured-output
schema, parses the reply into exactly one ``ControllerAction`` and carries it
out. Parse and validation failures end the run in ``failed``; nothing is
synthesized and nothing is retried. Tool failures, including calls that
exceed ``config.tool_timeout``, are fed back to the model.
Oversized tool results are persisted and replaced in context by a
descriptor the model can inspect through the ``tool_outputs.*`` tools.

    store = OutputStore(config.store_root)
    registry = ToolRegistry()
    register_traversal_tools(registry, TraversalSuite(store))
    loop = ControllerLoop(litellm_model_caller(), registry, store, config=config)
    outcome = await loop.run("Summarize last week's orders")
    if outcome.state is ControllerState.AWAITING_USER:
        outcome = await loop.resume(input(outcome.question))
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from llm_controller import trace_log
from llm_controller.actions import AskUser, Complete, ControllerAction, GuardrailStop, NextStep, parse_controller_reply
from llm_controller.client import ModelCaller
from llm_controller.config import ControllerConfig
from llm_controller.errors import (
    ActionParseError,
    ActionValidationError,
    ControllerStateError,
    StoreError,
    ToolExecutionError,
    wrap_error,
)
from llm_controller.output_store import OutputStore, encoded_size, summarize_payload
from llm_controller.prompts import render_controller_prompt
from llm_controller.schema_adapter import Provider, build_response_format, detect_provider
from llm_controller.tools import (
    AVAILABLE_OPERATIONS,
    TOOL_OUTPUTS_PREFIX,
    ToolRegistry,
    ToolResult,
    hydrate_tool_output_args,
)

logger = logging.getLogger(__name__)


class ControllerState(str, Enum):
    REQUESTING = "requesting"
    PARSING = "parsing"
    EXECUTING = "executing"
    AWAITING_USER = "awaiting_user"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"


TERMINAL_STATES = frozenset({ControllerState.COMPLETED, ControllerState.ABORTED, ControllerState.FAILED})


class FailureCause(str, Enum):
    ITERATION_BUDGET = "iteration_budget"
    MODEL_ERROR = "model_error"
    PARSE_ERROR = "parse_error"
    VALIDATION_ERROR = "validation_error"
    STORE_ERROR = "store_error"


@dataclass
class StepRecord:
    """What one iteration did."""

    iteration: int
    action: str
    step_type: str | None = None
    tool: str | None = None
    args: dict[str, Any] = field(default_factory=dict)
    success: bool | None = None
    delivery: str | None = None
    output_id: str | None = None
    size_bytes: int | None = None
    error: str | None = None


@dataclass
class ControllerOutcome:
    """Where a ``run()`` or ``resume()`` call stopped.

    Attributes:
        state: ``completed``, ``aborted``, ``failed`` or ``awaiting_user``
        message: Final message (completed) or user-facing note (aborted)
        question: What to ask the user (awaiting_user)
        context: Extra context for the question
        resume_to: Where ``resume()`` continues: "reflecting" or "controller"
        cause: Failure category when ``state`` is failed
        reason: Human-readable reason for failed and aborted outcomes
        iterations: Model turns taken so far
        steps: One record per iteration
    """

    state: ControllerState
    message: str | None = None
    question: str | None = None
    context: str | None = None
    resume_to: str | None = None
    cause: FailureCause | None = None
    reason: str | None = None
    iterations: int = 0
    steps: list[StepRecord] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def resolve_delivery(
    tool_name: str,
    output_mode: str | None,
    size_bytes: int,
    *,
    inline_threshold_bytes: int,
    inline_hard_max_bytes: int,
) -> str:
    """Decide whether a successful tool result goes inline or to the store."""
    if tool_name.startswith(TOOL_OUTPUTS_PREFIX):
        return "inline"
    mode = output_mode or "auto"
    if mode == "persist":
        return "persist"
    if mode == "inline":
        return "persist" if size_bytes > inline_hard_max_bytes else "inline"
    return "persist" if size_bytes > inline_threshold_bytes else "inline"


def build_descriptor(output_id: str, size_bytes: int, payload: Any, *, preview_max_chars: int) -> dict[str, Any]:
    """Context stand-in for a persisted payload."""
    preview, truncated = summarize_payload(payload, preview_max_chars)
    return {
        "id": output_id,
        "size_bytes": size_bytes,
        "preview": preview,
        "preview_truncated": truncated,
        "available_operations": list(AVAILABLE_OPERATIONS),
    }


def _content_chars(message: dict[str, Any]) -> int:
    content = message.get("content")
    if isinstance(content, str):
        return len(content)
    return len(json.dumps(content, default=str))


def compact_history(
    messages: list[dict[str, Any]],
    *,
    max_chars: int,
    prefix_messages: int,
    tail_messages: int,
) -> list[dict[str, Any]]:
    """Drop the middle of an over-long history, keeping a stable prefix and a recent tail."""
    total = sum(_content_chars(m) for m in messages)
    if total <= max_chars:
        return list(messages)
    prefix_end = min(len(messages), prefix_messages)
    tail_start = max(0, len(messages) - tail_messages)
    if tail_start <= prefix_end:
        return list(messages)
    logger.debug(
        "Compacting history: %d chars > %d, dropping %d middle messages",
        total,
        max_chars,
        tail_start - prefix_end,
    )
    return list(messages[:prefix_end]) + list(messages[tail_start:])


# ---------------------------------------------------------------------------
# Loop
# ---------------------------------------------------------------------------


class ControllerLoop:
    """Async state machine for one conversation.

    One iteration is in flight at a time. ``cancel()`` is observed at the
    next iteration boundary.
    """

    def __init__(
        self,
        model_caller: ModelCaller,
        registry: ToolRegistry,
        store: OutputStore,
        *,
        config: ControllerConfig | None = None,
        conversation_id: str | None = None,
        message_id: str | None = None,
        provider: Provider | None = None,
        history: list[dict[str, Any]] | None = None,
    ) -> None:
        self.config = config or ControllerConfig.from_env()
        self.model_caller = model_caller
        self.registry = registry
        self.store = store
        self.conversation_id = conversation_id or uuid.uuid4().hex
        self.message_id = message_id or uuid.uuid4().hex
        self.provider: Provider = provider or detect_provider(self.config.model)
        self.response_format = build_response_format(self.provider)
        self.history: list[dict[str, Any]] = list(history or [])
        self.state = ControllerState.REQUESTING
        self.iterations = 0
        self.steps: list[StepRecord] = []
        self._cancelled = False
        self._resume_to = "controller"
        self._reflect_next = False
        self._last_output_id: str | None = None

    @property
    def last_output_id(self) -> str | None:
        """Id of the most recent output this loop persisted."""
        return self._last_output_id

    def cancel(self) -> None:
        """Request cooperative cancellation."""
        self._cancelled = True
        if self.state is ControllerState.AWAITING_USER:
            self.state = ControllerState.ABORTED

    # -- entry points -------------------------------------------------------

    async def run(self, user_message: str | None = None) -> ControllerOutcome:
        """Drive the loop until it completes, aborts, fails or needs the user.

        Raises:
            ControllerStateError: the loop is terminal or awaiting the user.
        """
        if self.state in TERMINAL_STATES:
            raise ControllerStateError(f"Controller is {self.state.value}; start a new loop")
        if self.state is ControllerState.AWAITING_USER:
            raise ControllerStateError("Controller is awaiting user input; call resume()")
        if user_message:
            self.history.append({"role": "user", "content": user_message})
        return await self._drive()

    async def resume(self, user_input: str) -> ControllerOutcome:
        """Answer a pending question and continue at its ``resume_to`` target.

        Raises:
            ControllerStateError: the loop is not awaiting the user.
        """
        if self.state is not ControllerState.AWAITING_USER:
            raise ControllerStateError(
                f"resume() requires state awaiting_user, current state is {self.state.value}"
            )
        self.history.append({"role": "user", "content": user_input})
        self._reflect_next = self._resume_to == "reflecting"
        self.state = ControllerState.REQUESTING
        return await self._drive()

    # -- internals ----------------------------------------------------------

    async def _drive(self) -> ControllerOutcome:
        while True:
            if self._cancelled:
                return self._finish(ControllerState.ABORTED, reason="Cancelled by caller")
            if self.iterations >= self.config.max_iterations:
                return self._fail(
                    FailureCause.ITERATION_BUDGET,
                    f"Iteration budget exhausted after {self.iterations} iterations "
                    f"(max_iterations={self.config.max_iterations})",
                )
            self.iterations += 1
            outcome = await self._iterate()
            if outcome is not None:
                return outcome

    def build_messages(self) -> list[dict[str, Any]]:
        """System prompt, tool catalogue and limits, then compacted history."""
        system = render_controller_prompt(
            tools=self.registry.catalogue(),
            iteration=self.iterations,
            max_iterations=self.config.max_iterations,
            inline_threshold_bytes=self.config.inline_threshold_bytes,
            max_tool_calls_per_step=self.config.max_tool_calls_per_step,
            reflection=self._reflect_next,
        )
        history = compact_history(
            self.history,
            max_chars=self.config.history_max_chars,
            prefix_messages=self.config.history_prefix_messages,
            tail_messages=self.config.history_tail_messages,
        )
        return system + history

    async def _iterate(self) -> ControllerOutcome | None:
        self.state = ControllerState.REQUESTING
        messages = self.build_messages()
        self._reflect_next = False

        t0 = time.monotonic()
        try:
            raw = await self.model_caller(messages, self.response_format)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = wrap_error(exc)
            trace_log.log_turn(
                conversation_id=self.conversation_id,
                iteration=self.iterations,
                messages=messages,
                error=error,
                latency_s=time.monotonic() - t0,
            )
            return self._fail(
                FailureCause.MODEL_ERROR,
                f"Model call failed ({type(error).__name__}): {error}",
            )
        latency = time.monotonic() - t0

        self.state = ControllerState.PARSING
        try:
            action = parse_controller_reply(raw)
        except (ActionParseError, ActionValidationError) as exc:
            trace_log.log_turn(
                conversation_id=self.conversation_id,
                iteration=self.iterations,
                messages=messages,
                raw_reply=raw,
                error=exc,
                latency_s=latency,
            )
            cause = (
                FailureCause.VALIDATION_ERROR
                if isinstance(exc, ActionValidationError)
                else FailureCause.PARSE_ERROR
            )
            return self._fail(cause, str(exc))

        trace_log.log_turn(
            conversation_id=self.conversation_id,
            iteration=self.iterations,
            messages=messages,
            raw_reply=raw,
            action=action.model_dump(mode="json"),
            latency_s=latency,
        )
        self.history.append({
            "role": "assistant",
            "content": raw if isinstance(raw, str) else json.dumps(raw, default=str),
        })

        self.state = ControllerState.EXECUTING
        return await self._dispatch(action)

    async def _dispatch(self, action: ControllerAction) -> ControllerOutcome | None:
        if isinstance(action, Complete):
            self.steps.append(StepRecord(iteration=self.iterations, action="complete"))
            return self._finish(ControllerState.COMPLETED, message=action.message)

        if isinstance(action, GuardrailStop):
            self.steps.append(StepRecord(iteration=self.iterations, action="guardrail_stop"))
            return self._finish(ControllerState.ABORTED, reason=action.reason, message=action.message)

        if isinstance(action, AskUser):
            self.steps.append(StepRecord(iteration=self.iterations, action="ask_user"))
            return self._suspend(action.question, action.context, action.resume_to)

        step: NextStep = action
        if step.type == "respond":
            self.steps.append(StepRecord(iteration=self.iterations, action="next_step", step_type="respond"))
            return self._finish(ControllerState.COMPLETED, message=step.message)
        if step.type == "ask_user":
            self.steps.append(StepRecord(iteration=self.iterations, action="next_step", step_type="ask_user"))
            return self._suspend(step.question or "", step.context, step.resume_to)
        if step.type == "tool_batch":
            return await self._run_tool_batch(step)
        return await self._run_tool(step.tool or "", step.args, step.output_mode, step_type="tool")

    async def _run_tool_batch(self, step: NextStep) -> ControllerOutcome | None:
        """Run a batch's calls in order, each delivered like a single tool step.

        The batch is clamped to ``max_tool_calls_per_step`` and to the model
        turns left in the budget (the current one included); the model is
        told which calls were dropped.
        """
        remaining_turns = self.config.max_iterations - self.iterations + 1
        capacity = max(1, min(self.config.max_tool_calls_per_step, remaining_turns))
        calls, dropped = step.tools[:capacity], step.tools[capacity:]
        if dropped:
            logger.warning(
                "tool_batch requested %d calls but only %d are allowed; dropping %d",
                len(step.tools),
                capacity,
                len(dropped),
            )
        for call in calls:
            outcome = await self._run_tool(call.tool, call.args, call.output_mode, step_type="tool_batch")
            if outcome is not None:
                return outcome
        if dropped:
            self._append_tool_message("tool_batch", {
                "success": False,
                "error": f"Only the first {capacity} of {len(step.tools)} calls ran; the rest were dropped",
                "dropped": [call.tool for call in dropped],
            })
        return None

    async def _call_registry(self, name: str, args: dict[str, Any]) -> ToolResult:
        timeout = self.config.tool_timeout
        try:
            if timeout > 0:
                return await asyncio.wait_for(self.registry.execute(name, args), timeout=timeout)
            return await self.registry.execute(name, args)
        except ToolExecutionError as exc:
            return ToolResult.failure(str(exc))
        except asyncio.TimeoutError:
            return ToolResult.failure(f"{name} timed out after {timeout}s")

    async def _run_tool(
        self,
        tool: str,
        raw_args: dict[str, Any],
        output_mode: str | None,
        *,
        step_type: str,
    ) -> ControllerOutcome | None:
        name = tool.strip()
        args = hydrate_tool_output_args(
            name,
            raw_args,
            last_output_id=self._last_output_id,
            conversation_id=self.conversation_id,
        )
        record = StepRecord(iteration=self.iterations, action="next_step", step_type=step_type, tool=name, args=args)
        self.steps.append(record)

        t0 = time.monotonic()
        result = await self._call_registry(name, args)

        if not result.success:
            record.success = False
            record.error = result.error or f"{name} reported failure"
            logger.info("Tool %s failed: %s", name, record.error)
            feedback: dict[str, Any] = {"success": False, "error": record.error}
            if result.payload is not None:
                feedback["details"] = result.payload
            self._append_tool_message(name, feedback)
            trace_log.log_tool(
                conversation_id=self.conversation_id,
                iteration=self.iterations,
                tool_name=name,
                args=args,
                success=False,
                error=record.error,
                latency_s=time.monotonic() - t0,
            )
            return None

        size = result.size_bytes if result.size_bytes is not None else encoded_size(result.payload)
        delivery = resolve_delivery(
            name,
            output_mode,
            size,
            inline_threshold_bytes=self.config.inline_threshold_bytes,
            inline_hard_max_bytes=self.config.inline_hard_max_bytes,
        )
        record.success = True
        record.delivery = delivery
        record.size_bytes = size

        if delivery == "persist":
            try:
                meta = self.store.write(
                    tool_name=name,
                    payload=result.payload,
                    conversation_id=self.conversation_id,
                    message_id=self.message_id,
                    success=True,
                    parameters=args,
                    size_bytes=size,
                )
            except StoreError as exc:
                record.error = str(exc)
                return self._fail(
                    FailureCause.STORE_ERROR,
                    f"Could not persist {size}-byte output of {name}: {exc}",
                )
            self._last_output_id = meta.id
            record.output_id = meta.id
            descriptor = build_descriptor(
                meta.id, size, result.payload, preview_max_chars=self.config.preview_max_chars,
            )
            self._append_tool_message(name, {"success": True, "persisted": True, "output_ref": descriptor})
        else:
            self._append_tool_message(name, {"success": True, "result": result.payload})

        trace_log.log_tool(
            conversation_id=self.conversation_id,
            iteration=self.iterations,
            tool_name=name,
            args=args,
            success=True,
            delivery=delivery,
            output_id=record.output_id,
            size_bytes=size,
            latency_s=time.monotonic() - t0,
        )
        return None

    def _append_tool_message(self, tool_name: str, content: dict[str, Any]) -> None:
        body = json.dumps(content, ensure_ascii=False, default=str)
        self.history.append({"role": "user", "content": f"TOOL RESULT {tool_name}:\n{body}"})

    def _suspend(self, question: str, context: str | None, resume_to: str) -> ControllerOutcome:
        self._resume_to = resume_to
        self.state = ControllerState.AWAITING_USER
        return ControllerOutcome(
            state=self.state,
            question=question,
            context=context,
            resume_to=resume_to,
            iterations=self.iterations,
            steps=list(self.steps),
        )

    def _finish(self, state: ControllerState, **fields: Any) -> ControllerOutcome:
        self.state = state
        logger.info(
            "Controller %s after %d iterations (conversation=%s)",
            state.value,
            self.iterations,
            self.conversation_id,
        )
        return ControllerOutcome(state=state, iterations=self.iterations, steps=list(self.steps), **fields)

    def _fail(self, cause: FailureCause, reason: str) -> ControllerOutcome:
        logger.warning("Controller failed (%s): %s", cause.value, reason)
        return self._finish(ControllerState.FAILED, cause=cause, reason=reason)


__all__ = [
    "ControllerLoop",
    "ControllerOutcome",
    "ControllerState",
    "FailureCause",
    "StepRecord",
    "TERMINAL_STATES",
    "build_descriptor",
    "compact_history",
    "resolve_delivery",
]
