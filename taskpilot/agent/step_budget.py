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

"""Step budgets, stop conditions and per-tier execution tuning.

Each complexity tier has one canonical ``StepBudgetConfig``. Request-level
overrides replace the canonical config instead of merging with it.

Stop conditions are evaluated after every step, in order, and the first one
that holds ends the run:

    config = StepBudgetPlanner(settings).plan(TaskComplexity.COMPLEX)
    hit = first_met(config.stop_conditions, steps)
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from taskpilot.agent.protocols import StepEvent
from taskpilot.agent.types import TaskComplexity
from taskpilot.config.settings import Settings
from taskpilot.core.errors import ConfigurationError

logger = logging.getLogger(__name__)


# =============================================================================
# Stop conditions
# =============================================================================


class StopCondition(ABC):
    """Predicate over the steps finished so far."""

    @abstractmethod
    def is_met(self, steps: Sequence[StepEvent]) -> bool:
        ...

    @property
    def counts_as_completion(self) -> bool:
        """Whether meeting this condition means the task finished."""
        return True

    @property
    def label(self) -> str:
        return type(self).__name__


@dataclass(frozen=True)
class StepCountIs(StopCondition):
    count: int

    def is_met(self, steps: Sequence[StepEvent]) -> bool:
        return len(steps) >= self.count

    @property
    def counts_as_completion(self) -> bool:
        return False

    @property
    def label(self) -> str:
        return f"step_count({self.count})"


@dataclass(frozen=True)
class ToolCalled(StopCondition):
    """Met once the latest step called the named tool."""

    tool_name: str

    def is_met(self, steps: Sequence[StepEvent]) -> bool:
        if not steps:
            return False
        return any(call.tool_name == self.tool_name for call in steps[-1].tool_calls)

    @property
    def label(self) -> str:
        return f"tool_called({self.tool_name})"


@dataclass(frozen=True)
class TextContains(StopCondition):
    """Met once the latest step's text contains the marker."""

    marker: str

    def is_met(self, steps: Sequence[StepEvent]) -> bool:
        if not steps:
            return False
        return self.marker in (steps[-1].text or "")

    @property
    def label(self) -> str:
        return f"text_contains({self.marker})"


@dataclass(frozen=True)
class CustomCondition(StopCondition):
    predicate: Callable[[Sequence[StepEvent]], bool]
    name: str = "custom"

    def is_met(self, steps: Sequence[StepEvent]) -> bool:
        return bool(self.predicate(steps))

    @property
    def label(self) -> str:
        return f"custom({self.name})"


def first_met(
    conditions: Sequence[StopCondition], steps: Sequence[StepEvent]
) -> Optional[StopCondition]:
    """Return the first condition that holds, or None.

    A condition whose predicate raises is logged and treated as not met.
    """
    for condition in conditions:
        try:
            if condition.is_met(steps):
                return condition
        except Exception as e:
            logger.warning(f"Stop condition {condition.label} raised, ignoring: {e}")
    return None


# =============================================================================
# Budgets
# =============================================================================


@dataclass
class StepBudgetConfig:
    max_steps: int
    stop_conditions: List[StopCondition] = field(default_factory=list)
    description: str = ""

    def __post_init__(self) -> None:
        if self.max_steps < 1:
            raise ConfigurationError(f"max_steps must be at least 1, got {self.max_steps}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_steps": self.max_steps,
            "stop_conditions": [c.label for c in self.stop_conditions],
            "description": self.description,
        }


DEFAULT_MAX_STEPS = {
    TaskComplexity.SIMPLE: 3,
    TaskComplexity.MODERATE: 7,
    TaskComplexity.COMPLEX: 15,
    TaskComplexity.ADVANCED: 25,
}

BUDGET_DESCRIPTIONS = {
    TaskComplexity.SIMPLE: "Simple single-file operations or basic queries",
    TaskComplexity.MODERATE: "Multi-file changes, analysis followed by modifications",
    TaskComplexity.COMPLEX: "Full feature implementation, significant refactoring",
    TaskComplexity.ADVANCED: "Complex multi-component tasks, architectural changes",
}


@dataclass(frozen=True)
class ContextWindowConfig:
    """History trimming thresholds: trim once history exceeds ``trigger_at``."""

    trigger_at: int
    keep_count: int


CONTEXT_WINDOWS = {
    TaskComplexity.SIMPLE: ContextWindowConfig(trigger_at=10, keep_count=6),
    TaskComplexity.MODERATE: ContextWindowConfig(trigger_at=15, keep_count=10),
    TaskComplexity.COMPLEX: ContextWindowConfig(trigger_at=20, keep_count=12),
    TaskComplexity.ADVANCED: ContextWindowConfig(trigger_at=25, keep_count=15),
}

# Multipliers applied to Settings.step_delay
STEP_DELAY_MULTIPLIERS = {
    TaskComplexity.SIMPLE: 1.0,
    TaskComplexity.MODERATE: 1.5,
    TaskComplexity.COMPLEX: 2.0,
    TaskComplexity.ADVANCED: 2.5,
}


@dataclass(frozen=True)
class Milestone:
    step: int
    name: str


class StepBudgetPlanner:
    """Maps complexity tiers to step budgets and execution tuning."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or Settings()

    def canonical(self, complexity: TaskComplexity) -> StepBudgetConfig:
        max_steps = DEFAULT_MAX_STEPS[complexity]
        conditions: List[StopCondition] = [StepCountIs(max_steps)]
        if complexity.is_heavy:
            conditions.append(ToolCalled(self.settings.finalize_tool_name))
        if complexity == TaskComplexity.ADVANCED:
            conditions.append(TextContains(self.settings.completion_marker))
        return StepBudgetConfig(
            max_steps=max_steps,
            stop_conditions=conditions,
            description=BUDGET_DESCRIPTIONS[complexity],
        )

    def plan(
        self,
        complexity: TaskComplexity,
        max_steps_override: Optional[int] = None,
        stop_conditions_override: Optional[Sequence[StopCondition]] = None,
    ) -> StepBudgetConfig:
        """Budget for a run.

        Args:
            complexity: Tier of the task
            max_steps_override: Replaces the tier's step ceiling
            stop_conditions_override: Replaces the tier's stop conditions

        Returns:
            The canonical config when no override is given, otherwise a new
            config built only from the overrides and the tier's defaults.
        """
        base = self.canonical(complexity)
        if max_steps_override is None and stop_conditions_override is None:
            return base

        max_steps = max_steps_override if max_steps_override is not None else base.max_steps
        if stop_conditions_override is not None:
            conditions = list(stop_conditions_override)
        else:
            conditions = [StepCountIs(max_steps)]

        logger.debug(
            f"Budget override for {complexity.value}: max_steps={max_steps} "
            f"conditions={[c.label for c in conditions]}"
        )
        return StepBudgetConfig(
            max_steps=max_steps,
            stop_conditions=conditions,
            description=f"{base.description} (overridden)",
        )

    def context_window(self, complexity: TaskComplexity) -> ContextWindowConfig:
        return CONTEXT_WINDOWS[complexity]

    def step_delay(self, complexity: TaskComplexity) -> float:
        """Base pause between steps for the tier, in seconds."""
        return self.settings.step_delay * STEP_DELAY_MULTIPLIERS[complexity]


def milestones(max_steps: int) -> List[Milestone]:
    """Progress milestones at 25/50/75/100% of the budget."""
    return [
        Milestone(step=max_steps * 25 // 100, name="Analysis"),
        Milestone(step=max_steps * 50 // 100, name="Implementation"),
        Milestone(step=max_steps * 75 // 100, name="Integration"),
        Milestone(step=max_steps, name="Completion"),
    ]


def milestone_phase(step: int, marks: Sequence[Milestone]) -> str:
    """Name of the milestone phase the step falls in."""
    for mark in marks:
        if step <= mark.step:
            return mark.name
    return marks[-1].name if marks else ""


def trim_history(
    messages: List[Dict[str, Any]], window: ContextWindowConfig
) -> List[Dict[str, Any]]:
    """Keep the first message and the most recent ``keep_count`` messages.

    Tool results at the head of the kept tail would reference tool calls that
    were dropped, so they are dropped too.
    """
    if len(messages) <= window.trigger_at:
        return list(messages)

    tail = messages[-window.keep_count :] if window.keep_count > 0 else []
    while tail and tail[0].get("role") == "tool":
        tail = tail[1:]
    return [messages[0]] + tail
