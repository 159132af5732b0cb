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

"""Entry point for running agentic tasks.

The service ties the pieces together for each request:

1. Validate the request and take the conversation lease
2. Classify complexity, plan the step budget and select a model
3. Build the system prompt and list the available tools
4. Start the runner as a background task and hand back an ``AgentRun``

The lease is released when the run task finishes, including on cancellation.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

from taskpilot.agent.analytics import ExecutionStats, execution_stats
from taskpilot.agent.complexity_classifier import ComplexityClassifier, requires_tool_calling
from taskpilot.agent.conversation_state import ConversationState
from taskpilot.agent.events import AgentRun, FinalResult, RunCallbacks
from taskpilot.agent.metrics_collector import ExecutionMetrics
from taskpilot.agent.model_selector import ModelSelector
from taskpilot.agent.prompt_builder import PromptBuilder
from taskpilot.agent.protocols import (
    ExecutionContext,
    LanguageModelGateway,
    ToolExecutionRegistry,
)
from taskpilot.agent.runner import AgentRunner, RunPlan
from taskpilot.agent.step_budget import StepBudgetPlanner, StopCondition
from taskpilot.agent.stores import EngineStore
from taskpilot.agent.types import TaskComplexity
from taskpilot.config.settings import Settings
from taskpilot.core.errors import ValidationError

logger = logging.getLogger(__name__)

RESERVED_USER_IDS = frozenset({"system"})


def extract_message_text(message: Dict[str, Any]) -> str:
    content = message.get("content", "")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return " ".join(
            str(part.get("text", ""))
            for part in content
            if isinstance(part, dict) and part.get("type") == "text"
        )
    return str(content)


def latest_user_text(messages: Sequence[Dict[str, Any]]) -> str:
    for message in reversed(messages):
        if message.get("role") == "user":
            return extract_message_text(message)
    return ""


class AgenticTaskService:
    """Runs agentic tasks against a model gateway and a tool registry.

    Example:
        async with EngineStore(settings) as store:
            service = AgenticTaskService(gateway, registry, store, settings)
            run = await service.run_agentic_task(messages, "conv-1", "user-1")
            async for event in run:
                ...
            result = await run.result()
    """

    def __init__(
        self,
        gateway: LanguageModelGateway,
        registry: ToolExecutionRegistry,
        store: EngineStore,
        settings: Optional[Settings] = None,
        classifier: Optional[ComplexityClassifier] = None,
        model_selector: Optional[ModelSelector] = None,
        planner: Optional[StepBudgetPlanner] = None,
        prompt_builder: Optional[PromptBuilder] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.gateway = gateway
        self.registry = registry
        self.store = store
        self.settings = settings or store.settings
        self.classifier = classifier or ComplexityClassifier(
            self.settings, gateway=gateway, cache=store.classification_cache
        )
        self.model_selector = model_selector or ModelSelector(self.settings, store.clock)
        self.planner = planner or StepBudgetPlanner(self.settings)
        self.prompt_builder = prompt_builder or PromptBuilder()
        self.runner = AgentRunner(
            gateway,
            registry,
            store,
            self.settings,
            model_selector=self.model_selector,
            planner=self.planner,
            sleep=sleep,
        )

    async def run_agentic_task(
        self,
        messages: List[Dict[str, Any]],
        conversation_id: str,
        user_id: str,
        landing_page_id: Optional[str] = None,
        complexity_override: Optional[Union[TaskComplexity, str]] = None,
        max_steps_override: Optional[int] = None,
        stop_condition_overrides: Optional[Sequence[StopCondition]] = None,
        callbacks: Optional[RunCallbacks] = None,
        cancel_event: Optional[asyncio.Event] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> AgentRun:
        """Start a run and return its handle.

        Raises:
            ValidationError: If the request is malformed
            AlreadyRunningError: If the conversation already has an active run
        """
        complexity = self._validate(
            messages,
            conversation_id,
            user_id,
            complexity_override,
            max_steps_override,
            stop_condition_overrides,
        )

        token = self.store.leases.acquire(conversation_id)
        try:
            plan = await self.prepare(
                messages,
                conversation_id,
                user_id,
                landing_page_id=landing_page_id,
                complexity_override=complexity,
                max_steps_override=max_steps_override,
                stop_condition_overrides=stop_condition_overrides,
                context=context,
            )
            run = AgentRun(conversation_id, cancel_event)
            task = asyncio.get_running_loop().create_task(
                self._execute(run, messages, plan, callbacks, token)
            )
            # Covers a task cancelled before it ever started running
            task.add_done_callback(lambda _: self.store.leases.release(conversation_id, token))
        except BaseException:
            self.store.leases.release(conversation_id, token)
            raise

        run.attach(task)
        return run

    async def execute_task(
        self, messages: List[Dict[str, Any]], conversation_id: str, user_id: str, **kwargs: Any
    ) -> FinalResult:
        """Run a task and wait for its result, ignoring intermediate events."""
        run = await self.run_agentic_task(messages, conversation_id, user_id, **kwargs)
        return await run.result()

    async def prepare(
        self,
        messages: List[Dict[str, Any]],
        conversation_id: str,
        user_id: str,
        landing_page_id: Optional[str] = None,
        complexity_override: Optional[TaskComplexity] = None,
        max_steps_override: Optional[int] = None,
        stop_condition_overrides: Optional[Sequence[StopCondition]] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> RunPlan:
        """Classify, plan and select a model for a request."""
        text = latest_user_text(messages)
        score = await self.classifier.classify(text, context)
        complexity = complexity_override or score.complexity
        budget = self.planner.plan(complexity, max_steps_override, stop_condition_overrides)

        needs_tools = requires_tool_calling(text)
        selection = self.model_selector.select(score, requires_tools=needs_tools)

        exec_context = ExecutionContext(
            user_id=user_id,
            conversation_id=conversation_id,
            landing_page_id=landing_page_id,
        )
        try:
            tool_specs = dict(self.registry.list_available_tools(exec_context))
        except Exception as e:
            logger.warning(f"Could not list tools for {conversation_id}, continuing without: {e}")
            tool_specs = {}

        system_prompt = self.prompt_builder.build(
            complexity, budget, landing_page_id=landing_page_id, model_reasoning=selection.reasoning
        )

        run_context = dict(context or {})
        run_context.update(
            {
                "complexity_score": score.to_dict(),
                "requires_tool_calling": needs_tools,
                "model_selection": selection.to_dict(),
            }
        )
        logger.info(
            f"Prepared run for {conversation_id}: complexity={complexity.value} "
            f"(score={score.score:.2f}), budget={budget.max_steps}, "
            f"model={selection.model.name}, tools={len(tool_specs)}"
        )
        return RunPlan(
            conversation_id=conversation_id,
            user_id=user_id,
            complexity=complexity,
            budget=budget,
            model=selection.model,
            system_prompt=system_prompt,
            tool_specs=tool_specs,
            landing_page_id=landing_page_id,
            context=run_context,
        )

    async def _execute(
        self,
        run: AgentRun,
        messages: List[Dict[str, Any]],
        plan: RunPlan,
        callbacks: Optional[RunCallbacks],
        lease_token: object,
    ) -> FinalResult:
        try:
            return await self.runner.run(
                messages, plan, callbacks=callbacks, cancel_event=run.cancel_event, emit=run.emit
            )
        finally:
            self.store.leases.release(plan.conversation_id, lease_token)

    @staticmethod
    def _validate(
        messages: List[Dict[str, Any]],
        conversation_id: str,
        user_id: str,
        complexity_override: Optional[Union[TaskComplexity, str]],
        max_steps_override: Optional[int],
        stop_condition_overrides: Optional[Sequence[StopCondition]],
    ) -> Optional[TaskComplexity]:
        if not messages:
            raise ValidationError("At least one message is required", field="messages")
        if not conversation_id:
            raise ValidationError("conversation_id is required", field="conversation_id")
        if not user_id or user_id in RESERVED_USER_IDS:
            raise ValidationError("A real user_id is required", field="user_id")

        if max_steps_override is not None and (
            isinstance(max_steps_override, bool)
            or not isinstance(max_steps_override, int)
            or max_steps_override < 1
        ):
            raise ValidationError(
                f"max_steps_override must be a positive integer, got {max_steps_override!r}",
                field="max_steps_override",
            )

        if stop_condition_overrides is not None:
            for condition in stop_condition_overrides:
                if not isinstance(condition, StopCondition):
                    raise ValidationError(
                        f"Not a stop condition: {condition!r}", field="stop_condition_overrides"
                    )

        if complexity_override is None or isinstance(complexity_override, TaskComplexity):
            return complexity_override
        try:
            return TaskComplexity(str(complexity_override).lower())
        except ValueError as e:
            raise ValidationError(
                f"Unknown complexity: {complexity_override!r}", field="complexity_override"
            ) from e

    def get_state(self, conversation_id: str) -> Optional[ConversationState]:
        return self.store.states.get(conversation_id)

    def get_metrics(self, conversation_id: str) -> Optional[ExecutionMetrics]:
        return self.store.metrics.get(conversation_id)

    def get_stats(self) -> ExecutionStats:
        return execution_stats(self.store.states, self.store.metrics)
