# Copyright 2025 Vijaykumar Singh <singhvjd@gmail.com>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Agent runner: the multi-step execution loop.

A run moves Idle -> Running -> {Completed, Failed, Paused}. Inside Running,
every step is requested from the model gateway, its tool calls are executed
through the tool registry, results are fed back into the history, state and
metrics are updated, and the stop conditions decide whether to continue.

Termination is guaranteed by three independent bounds:
- the hard step ceiling of the budget
- the first-match stop conditions
- the recovery strategist, which halts a step once its failures reach the
  user feedback threshold
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

from taskpilot.agent.analytics import summarize
from taskpilot.agent.error_classifier import get_error_classifier
from taskpilot.agent.error_recovery import (
    ErrorRecoveryConfig,
    RecoveryOutcome,
    RecoveryStrategist,
)
from taskpilot.agent.events import (
    FinalResult,
    ProgressUpdate,
    ReasoningPhase,
    RunCallbacks,
    RunEvent,
    RunEventType,
    notify,
)
from taskpilot.agent.metrics_collector import ToolExecutionMetric, payload_size
from taskpilot.agent.model_selector import ModelSelector
from taskpilot.agent.protocols import (
    ExecutionContext,
    LanguageModelGateway,
    ModelHandle,
    StepEvent,
    ToolCall,
    ToolExecutionRegistry,
    ToolResult,
    ToolSpec,
    close_stream,
)
from taskpilot.agent.step_budget import (
    StepBudgetConfig,
    StepBudgetPlanner,
    first_met,
    milestone_phase,
    milestones,
    trim_history,
)
from taskpilot.agent.stores import EngineStore
from taskpilot.agent.tool_repair import ToolCallRepairer
from taskpilot.agent.types import (
    CompletionStatus,
    ErrorContext,
    ErrorKind,
    RunStatus,
    TaskComplexity,
)
from taskpilot.config.settings import Settings
from taskpilot.core.errors import (
    ModelTimeoutError,
    ToolExecutionError,
    ToolNotFoundError,
    ToolRepairError,
    ToolValidationError,
)

logger = logging.getLogger(__name__)

# Finish reasons meaning the model ended the task on its own
NATURAL_FINISH_REASONS = frozenset({"stop", "end-turn", "end_turn"})

SKIPPED_OUTPUT = "Skipped: waiting for user feedback before continuing."


@dataclass
class RunPlan:
    """Everything decided about a run before its first step."""

    conversation_id: str
    user_id: str
    complexity: TaskComplexity
    budget: StepBudgetConfig
    model: ModelHandle
    system_prompt: str
    tool_specs: Mapping[str, ToolSpec] = field(default_factory=dict)
    landing_page_id: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)


@dataclass
class _RunContext:
    """Mutable bookkeeping of one run."""

    plan: RunPlan
    callbacks: RunCallbacks
    cancel_event: asyncio.Event
    emit: Callable[[RunEvent], None]
    model: ModelHandle
    history: List[Dict[str, Any]] = field(default_factory=list)
    window: List[Dict[str, Any]] = field(default_factory=list)
    steps: List[StepEvent] = field(default_factory=list)
    failures: Dict[int, int] = field(default_factory=dict)
    notices: List[str] = field(default_factory=list)
    natural: bool = False
    completed_by_condition: bool = False
    reached_limit: bool = False
    halted: bool = False
    cancelled: bool = False
    crashed: bool = False
    degraded: bool = False
    use_fallback: bool = False
    stopped_by: Optional[str] = None

    @property
    def conversation_id(self) -> str:
        return self.plan.conversation_id

    def next_failure_count(self, step_number: int) -> int:
        """Previous failures at the step, counting the current one afterwards.

        Every failure counts, including those answered by advisory strategies.
        """
        attempts = self.failures.get(step_number, 0)
        self.failures[step_number] = attempts + 1
        return attempts


@dataclass
class _CallOutcome:
    call: ToolCall
    output: Any
    success: bool
    metric: ToolExecutionMetric
    repaired: bool = False


def looks_like_error(output: Any) -> bool:
    """Whether a tool output reports an application-level failure."""
    if not isinstance(output, Mapping):
        return False
    return (
        bool(output.get("error"))
        or output.get("success") is False
        or output.get("status") == "error"
    )


def _error_text(output: Mapping) -> str:
    return str(output.get("error") or output.get("message") or "Tool reported an error")


class AgentRunner:
    """Drives one run to completion.

    The runner never lets an internal exception reach the caller: gateway and
    tool failures are classified and recovered from, and anything unexpected
    ends the run as failed with a plain-language explanation.
    """

    def __init__(
        self,
        gateway: LanguageModelGateway,
        registry: ToolExecutionRegistry,
        store: EngineStore,
        settings: Optional[Settings] = None,
        model_selector: Optional[ModelSelector] = None,
        planner: Optional[StepBudgetPlanner] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.gateway = gateway
        self.registry = registry
        self.store = store
        self.settings = settings or store.settings
        self.model_selector = model_selector or ModelSelector(self.settings, store.clock)
        self.planner = planner or StepBudgetPlanner(self.settings)
        self.strategist = RecoveryStrategist(
            ErrorRecoveryConfig.from_settings(self.settings),
            tracker=store.attempts,
            sleep=sleep,
        )
        self.repairer = (
            ToolCallRepairer(gateway, timeout=self.settings.response_timeout)
            if self.settings.tool_call_repair
            else None
        )
        self._sleep = sleep
        self._clock = store.clock
        self._errors = get_error_classifier()

    async def run(
        self,
        messages: List[Dict[str, Any]],
        plan: RunPlan,
        callbacks: Optional[RunCallbacks] = None,
        cancel_event: Optional[asyncio.Event] = None,
        emit: Optional[Callable[[RunEvent], None]] = None,
    ) -> FinalResult:
        """Execute the plan against the message history."""
        window_config = self.planner.context_window(plan.complexity)
        ctx = _RunContext(
            plan=plan,
            callbacks=callbacks or RunCallbacks(),
            cancel_event=cancel_event or asyncio.Event(),
            emit=emit or (lambda event: None),
            model=plan.model,
            history=list(messages),
            window=trim_history(list(messages), window_config),
        )

        self.store.states.init(
            plan.conversation_id,
            plan.user_id,
            plan.complexity,
            plan.budget.max_steps,
            landing_page_id=plan.landing_page_id,
            context=plan.context,
        )
        self.store.metrics.init(plan.conversation_id, plan.complexity)
        logger.info(
            f"Starting run for {plan.conversation_id}: complexity={plan.complexity.value}, "
            f"max_steps={plan.budget.max_steps}, model={plan.model.name}"
        )

        try:
            await self._loop(ctx)
        except Exception as e:
            logger.error(f"Run {plan.conversation_id} failed unexpectedly: {e}", exc_info=True)
            ctx.crashed = True
            ctx.notices.append(self._errors.user_message(e))

        return self._finalize(ctx)

    # -------------------------------------------------------------------------
    # Loop
    # -------------------------------------------------------------------------

    async def _loop(self, ctx: _RunContext) -> None:
        plan = ctx.plan
        stream = None
        stream_model: Optional[ModelHandle] = None
        try:
            while True:
                if ctx.cancel_event.is_set():
                    ctx.cancelled = True
                    break
                if len(ctx.steps) >= plan.budget.max_steps:
                    ctx.reached_limit = True
                    ctx.stopped_by = ctx.stopped_by or "max_steps"
                    break

                step_number = len(ctx.steps) + 1
                if ctx.steps:
                    await self._pace(ctx)
                    if ctx.cancel_event.is_set():
                        ctx.cancelled = True
                        break

                model = self._model_for_step(ctx, step_number)
                if stream is not None and model != stream_model:
                    await close_stream(stream)
                    stream = None

                started = self._clock.monotonic()
                try:
                    if stream is None:
                        stream = self.gateway.stream_steps(
                            model, plan.system_prompt, ctx.window, plan.tool_specs
                        )
                        stream_model = model
                    event = await asyncio.wait_for(
                        stream.__anext__(), timeout=self.settings.response_timeout
                    )
                except StopAsyncIteration:
                    logger.debug(f"Gateway stream ended for {ctx.conversation_id}")
                    break
                except Exception as e:
                    # Opening the stream and reading from it fail the same way
                    if stream is not None:
                        await close_stream(stream)
                    stream = None
                    await self._handle_gateway_failure(ctx, e, step_number, model)
                    if ctx.halted:
                        break
                    continue

                if await self._process_step(ctx, event, step_number, started):
                    break
        finally:
            if stream is not None:
                await close_stream(stream)

    async def _pace(self, ctx: _RunContext) -> None:
        delay = self.planner.step_delay(ctx.plan.complexity)
        delay += self.store.rate_limiter.decide(ctx.conversation_id).delay
        if delay > 0:
            logger.debug(f"Pausing {delay:.1f}s before next step of {ctx.conversation_id}")
            await self._sleep(delay)

    def _model_for_step(self, ctx: _RunContext, step_number: int) -> ModelHandle:
        if ctx.use_fallback:
            if ctx.model.kind != "fallback":
                ctx.model = self.model_selector.fallback()
        elif ctx.model.kind == "weak" and self.model_selector.should_escalate(
            ctx.plan.complexity, step_number, len(ctx.history)
        ):
            ctx.model = self.model_selector.escalated()
            logger.info(
                f"Escalating {ctx.conversation_id} to {ctx.model.name} at step {step_number}"
            )
        return ctx.model

    async def _handle_gateway_failure(
        self, ctx: _RunContext, error: BaseException, step_number: int, model: ModelHandle
    ) -> None:
        if isinstance(error, asyncio.TimeoutError):
            error = ModelTimeoutError(
                f"No step from {model.name} within {self.settings.response_timeout}s",
                model=model.name,
                timeout=self.settings.response_timeout,
                cause=error,
            )
        logger.warning(f"Gateway failure at step {step_number} of {ctx.conversation_id}: {error}")
        self.store.states.record_error(ctx.conversation_id)

        attempts = ctx.next_failure_count(step_number)
        outcome = await self._recover(ctx, error, step_number, attempts)
        if outcome.degraded:
            ctx.use_fallback = True

    async def _recover(
        self,
        ctx: _RunContext,
        error: BaseException,
        step_number: int,
        attempts: int,
        tool_name: Optional[str] = None,
    ) -> RecoveryOutcome:
        error_context = ErrorContext(
            error=error,
            step_number=step_number,
            total_steps=ctx.plan.budget.max_steps,
            previous_attempts=attempts,
            task_complexity=ctx.plan.complexity,
            conversation_id=ctx.conversation_id,
            tool_name=tool_name,
        )
        outcome = await self.strategist.recover(error_context)
        ctx.notices.append(outcome.notice)
        if outcome.halt:
            ctx.halted = True
        if outcome.degraded:
            ctx.degraded = True
        ctx.emit(
            RunEvent(
                RunEventType.NOTICE,
                {
                    "step": step_number,
                    "kind": outcome.kind.value,
                    "strategy": outcome.strategy.value,
                    "message": outcome.notice,
                    "tool_name": tool_name,
                    "retries": self.store.attempts.get(ctx.conversation_id, step_number),
                },
            )
        )
        return outcome

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    async def _process_step(
        self, ctx: _RunContext, event: StepEvent, step_number: int, started: float
    ) -> bool:
        """Fold a finished step into the run. Returns True when the run should stop."""
        plan = ctx.plan
        assistant_messages = list(event.response_messages) or self._assistant_messages(event)

        outcomes: List[_CallOutcome] = []
        result_parts: List[Dict[str, Any]] = []
        for call in event.tool_calls:
            if ctx.halted:
                result_parts.append(self._result_part(call, SKIPPED_OUTPUT, is_error=True))
                continue
            outcome = await self._execute_call(ctx, call, step_number)
            outcomes.append(outcome)
            result_parts.append(
                self._result_part(outcome.call, outcome.output, is_error=not outcome.success)
            )
            if outcome.repaired:
                self._substitute_call(assistant_messages, outcome.call)
            await notify(ctx.callbacks.on_tool_call, outcome.call, result_parts[-1])
            ctx.emit(
                RunEvent(
                    RunEventType.TOOL_CALL,
                    {
                        "step": step_number,
                        "tool_call_id": outcome.call.tool_call_id,
                        "tool_name": outcome.call.tool_name,
                        "success": outcome.success,
                        "repaired": outcome.repaired,
                    },
                )
            )

        new_messages = list(assistant_messages)
        if result_parts:
            new_messages.append({"role": "tool", "content": result_parts})
        ctx.history.extend(new_messages)
        ctx.window.extend(new_messages)
        ctx.window[:] = trim_history(ctx.window, self.planner.context_window(plan.complexity))

        executed_calls = [o.call for o in outcomes]
        step = replace(event, tool_calls=executed_calls + event.tool_calls[len(outcomes):])
        ctx.steps.append(step)

        failed = sum(1 for o in outcomes if not o.success)
        state = self.store.states.record_step(
            ctx.conversation_id,
            step_number,
            executed_calls,
            failed_calls=failed,
            file_mutating_tools=self.settings.file_mutating_tools,
        )
        self.store.metrics.track_step(
            ctx.conversation_id,
            event.usage.total_tokens,
            self._clock.monotonic() - started,
            [o.metric for o in outcomes],
        )
        self.store.rate_limiter.add_usage(ctx.conversation_id, event.usage.total_tokens)

        stop = self._evaluate_stop(ctx, step)
        await self._report_step(ctx, step, step_number, stop, state)
        return stop

    def _evaluate_stop(self, ctx: _RunContext, step: StepEvent) -> bool:
        natural = step.finish_reason in NATURAL_FINISH_REASONS and not step.tool_calls
        hit = first_met(ctx.plan.budget.stop_conditions, ctx.steps)

        if natural:
            ctx.natural = True
            ctx.stopped_by = "natural"
        if hit is not None:
            if hit.counts_as_completion:
                ctx.completed_by_condition = True
            else:
                ctx.reached_limit = True
            if not natural:
                ctx.stopped_by = hit.label
        return natural or hit is not None or ctx.halted

    async def _report_step(
        self, ctx: _RunContext, step: StepEvent, step_number: int, final: bool, state: Any
    ) -> None:
        max_steps = ctx.plan.budget.max_steps
        tool_names = [call.tool_name for call in step.tool_calls]
        action = f"Called {', '.join(tool_names)}" if tool_names else "Responded"
        progress = ProgressUpdate(
            current_step=step_number,
            total_steps=max_steps,
            action=action,
            phase=milestone_phase(step_number, milestones(max_steps)),
        )

        if final:
            phase = ReasoningPhase.VALIDATION
        elif any(name in self.settings.file_mutating_tools for name in tool_names):
            phase = ReasoningPhase.EXECUTION
        else:
            phase = ReasoningPhase.ANALYSIS

        ctx.emit(RunEvent(RunEventType.PROGRESS, progress.to_dict()))
        if step.text:
            ctx.emit(
                RunEvent(
                    RunEventType.REASONING,
                    {"step": step_number, "phase": phase.value, "text": step.text},
                )
            )
        ctx.emit(
            RunEvent(
                RunEventType.STEP_FINISHED,
                {
                    "step": step_number,
                    "finish_reason": step.finish_reason,
                    "tool_calls": tool_names,
                    "tokens": step.usage.total_tokens,
                },
            )
        )
        await notify(ctx.callbacks.on_progress, progress)
        await notify(ctx.callbacks.on_step_finish, step, state)
        logger.debug(
            f"Step {step_number}/{max_steps} of {ctx.conversation_id}: "
            f"finish_reason={step.finish_reason}, tools={tool_names}"
        )

    # -------------------------------------------------------------------------
    # Tool calls
    # -------------------------------------------------------------------------

    async def _execute_call(self, ctx: _RunContext, call: ToolCall, step_number: int) -> _CallOutcome:
        started = self._clock.monotonic()
        try:
            output = await self._invoke(ctx, call)
            return self._call_outcome(call, output, True, step_number, started)
        except Exception as e:
            error: BaseException = e

        effective = call
        repaired = False
        if (
            self.repairer is not None
            and self._errors.classify(error) != ErrorKind.TRANSPORT_OR_TIMEOUT
        ):
            try:
                corrected = await self.repairer.repair(
                    call, error, ctx.window, ctx.plan.system_prompt, ctx.model, ctx.plan.tool_specs
                )
            except ToolRepairError as repair_error:
                error = repair_error
                corrected = None
            if corrected is not None:
                effective = corrected
                repaired = True
                try:
                    output = await self._invoke(ctx, corrected)
                    return self._call_outcome(
                        corrected, output, True, step_number, started, repaired=True
                    )
                except Exception as e:
                    error = e

        logger.debug(f"Tool {effective.tool_name} failed at step {step_number}: {error}")
        attempts = ctx.next_failure_count(step_number)
        outcome = await self._recover(ctx, error, step_number, attempts, effective.tool_name)
        feedback = {"error": outcome.notice, "kind": outcome.kind.value}
        return self._call_outcome(
            effective,
            feedback,
            False,
            step_number,
            started,
            repaired=repaired,
            error_message=str(error),
        )

    async def _invoke(self, ctx: _RunContext, call: ToolCall) -> Any:
        spec = ctx.plan.tool_specs.get(call.tool_name)
        if spec is None:
            raise ToolNotFoundError(call.tool_name)
        missing = [name for name in spec.required_fields if name not in call.input]
        if missing:
            raise ToolValidationError(
                f"missing required field(s) {', '.join(missing)}", tool_name=call.tool_name
            )

        exec_context = ExecutionContext(
            user_id=ctx.plan.user_id,
            conversation_id=ctx.conversation_id,
            landing_page_id=ctx.plan.landing_page_id,
        ).with_tool_call(call.tool_call_id)
        try:
            result = await asyncio.wait_for(
                self.registry.execute(call.tool_name, dict(call.input), exec_context),
                timeout=self.settings.tool_timeout,
            )
        except asyncio.TimeoutError as e:
            raise ToolExecutionError(
                f"Tool {call.tool_name} timed out after {self.settings.tool_timeout}s",
                tool_name=call.tool_name,
                cause=e,
            ) from e

        if isinstance(result, ToolResult):
            if result.is_error:
                raise ToolExecutionError(result.error, tool_name=call.tool_name)
            result = result.output
        if looks_like_error(result):
            raise ToolExecutionError(_error_text(result), tool_name=call.tool_name)
        return result

    def _call_outcome(
        self,
        call: ToolCall,
        output: Any,
        success: bool,
        step_number: int,
        started: float,
        repaired: bool = False,
        error_message: Optional[str] = None,
    ) -> _CallOutcome:
        metric = ToolExecutionMetric(
            tool_name=call.tool_name,
            execution_time=self._clock.monotonic() - started,
            success=success,
            input_size=payload_size(call.input),
            output_size=payload_size(output),
            step_number=step_number,
            timestamp=self._clock.time(),
            error_message=error_message,
        )
        return _CallOutcome(call=call, output=output, success=success, metric=metric, repaired=repaired)

    @staticmethod
    def _assistant_messages(event: StepEvent) -> List[Dict[str, Any]]:
        if event.tool_calls:
            content: List[Dict[str, Any]] = []
            if event.text:
                content.append({"type": "text", "text": event.text})
            content.extend(call.to_message_part() for call in event.tool_calls)
            return [{"role": "assistant", "content": content}]
        if event.text:
            return [{"role": "assistant", "content": event.text}]
        return []

    @staticmethod
    def _result_part(call: ToolCall, output: Any, is_error: bool) -> Dict[str, Any]:
        return {
            "type": "tool-result",
            "tool_call_id": call.tool_call_id,
            "tool_name": call.tool_name,
            "output": output,
            "is_error": is_error,
        }

    @staticmethod
    def _substitute_call(messages: List[Dict[str, Any]], corrected: ToolCall) -> None:
        """Replace the tool-call part with the same id by the corrected call."""
        for message in messages:
            content = message.get("content")
            if not isinstance(content, list):
                continue
            for index, part in enumerate(content):
                if (
                    isinstance(part, dict)
                    and part.get("type") == "tool-call"
                    and part.get("tool_call_id") == corrected.tool_call_id
                ):
                    content[index] = corrected.to_message_part()

    # -------------------------------------------------------------------------
    # Finalization
    # -------------------------------------------------------------------------

    def _finalize(self, ctx: _RunContext) -> FinalResult:
        status, explanation = self._final_status(ctx)
        cid = ctx.conversation_id

        state = self.store.states.finalize(cid, status)
        completed = status == RunStatus.COMPLETED
        metrics = self.store.metrics.complete(cid, completed=completed)
        completion = (
            metrics.completion_status
            if metrics is not None and metrics.completion_status is not None
            else CompletionStatus.for_run(0.0, completed)
        )
        summary = summarize(state, metrics) if state is not None and metrics is not None else None

        self.store.rate_limiter.clear(cid)
        self.store.attempts.clear(cid)

        last = ctx.steps[-1] if ctx.steps else None
        if last is not None:
            finish_reason = last.finish_reason
        elif ctx.cancelled:
            finish_reason = "cancelled"
        else:
            finish_reason = "error"

        result = FinalResult(
            conversation_id=cid,
            status=status,
            completion_status=completion,
            finish_reason=finish_reason,
            reached_step_limit=ctx.reached_limit,
            natural_completion=ctx.natural,
            steps_completed=len(ctx.steps),
            text=last.text if last is not None else "",
            explanation=explanation,
            stopped_by=ctx.stopped_by,
            degraded=ctx.degraded,
            notices=list(ctx.notices),
            messages=list(ctx.history),
            summary=summary,
            state=state,
            metrics=metrics,
        )
        ctx.emit(
            RunEvent(
                RunEventType.COMPLETED,
                {
                    "status": status.value,
                    "completion_status": completion.value,
                    "explanation": explanation,
                    "summary": summary.to_dict() if summary else None,
                },
            )
        )
        logger.info(
            f"Run for {cid} finished: status={status.value}, "
            f"completion={completion.value}, steps={len(ctx.steps)}"
        )
        return result

    @staticmethod
    def _final_status(ctx: _RunContext) -> Tuple[RunStatus, str]:
        if ctx.crashed:
            return RunStatus.FAILED, ctx.notices[-1]
        if ctx.cancelled:
            return RunStatus.PAUSED, f"Run cancelled after {len(ctx.steps)} step(s)."
        if ctx.halted:
            return (
                RunStatus.PAUSED,
                f"{ctx.notices[-1]} I need your guidance before continuing.",
            )
        if ctx.natural or ctx.completed_by_condition:
            if ctx.natural:
                return RunStatus.COMPLETED, "Task completed."
            return RunStatus.COMPLETED, f"Task completed ({ctx.stopped_by})."
        if ctx.reached_limit:
            return (
                RunStatus.FAILED,
                f"Stopped after reaching the step limit of {ctx.plan.budget.max_steps}.",
            )
        return RunStatus.FAILED, "The model stopped before signalling completion."
