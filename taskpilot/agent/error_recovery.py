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

"""Bounded recovery from classified failures.

Strategy selection is a pure function of (error kind, previous attempts,
complexity). Executing a strategy has exactly one piece of state: RETRY
bumps a per-(conversation, step) attempt counter.

Once previous attempts reach the user feedback threshold the strategy is
always USER_FEEDBACK, which halts automatic progress. This is what
guarantees a failing step cannot loop forever.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional, Tuple

from taskpilot.agent.error_classifier import ErrorClassifier, get_error_classifier
from taskpilot.agent.types import ErrorContext, ErrorKind, RecoveryStrategy, TaskComplexity
from taskpilot.config.settings import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ErrorRecoveryConfig:
    retry_delay: float = 1.0
    user_feedback_threshold: int = 2

    @classmethod
    def from_settings(cls, settings: Settings) -> "ErrorRecoveryConfig":
        return cls(
            retry_delay=settings.retry_delay,
            user_feedback_threshold=settings.user_feedback_threshold,
        )


@dataclass
class RecoveryOutcome:
    """What the run should do after a recovery strategy executed.

    Attributes:
        strategy: Strategy that was executed
        kind: Classified error kind
        notice: User-facing message substituted for the raw error
        halt: Stop automatic progress and wait for the user
        degraded: Keep going but flag reduced confidence
    """

    strategy: RecoveryStrategy
    kind: ErrorKind
    notice: str
    halt: bool = False
    degraded: bool = False


class RecoveryAttemptTracker:
    """Retry counters keyed by (conversation_id, step_number).

    Only the Retry strategy increments these; they record how often a step
    was retried and are reported with each recovery notice. The attempt
    count fed into ``select_strategy`` is the run's own count of failures
    at the step, advisory strategies included.
    """

    def __init__(self) -> None:
        self._attempts: Dict[Tuple[str, int], int] = {}

    def increment(self, conversation_id: str, step_number: int) -> int:
        key = (conversation_id, step_number)
        self._attempts[key] = self._attempts.get(key, 0) + 1
        return self._attempts[key]

    def get(self, conversation_id: str, step_number: int) -> int:
        return self._attempts.get((conversation_id, step_number), 0)

    def clear(self, conversation_id: str) -> None:
        for key in [k for k in self._attempts if k[0] == conversation_id]:
            del self._attempts[key]

    def clear_all(self) -> None:
        self._attempts.clear()

    def __len__(self) -> int:
        return len(self._attempts)


def select_strategy(
    kind: ErrorKind,
    attempts: int,
    complexity: TaskComplexity,
    user_feedback_threshold: int = 2,
) -> RecoveryStrategy:
    """Choose a recovery strategy.

    Args:
        kind: Classified error kind
        attempts: Previous attempts at the failing step
        complexity: Tier of the task
        user_feedback_threshold: Attempts after which the user is asked

    Returns:
        The strategy; identical inputs always give the same strategy
    """
    if attempts >= user_feedback_threshold:
        return RecoveryStrategy.USER_FEEDBACK

    if kind == ErrorKind.NO_SUCH_TOOL:
        return RecoveryStrategy.ALTERNATIVE_APPROACH

    if kind == ErrorKind.INVALID_TOOL_INPUT:
        return RecoveryStrategy.RETRY if attempts < 2 else RecoveryStrategy.SIMPLIFY_TASK

    if kind == ErrorKind.TRANSPORT_OR_TIMEOUT:
        return RecoveryStrategy.RETRY if attempts < 1 else RecoveryStrategy.GRACEFUL_DEGRADATION

    if kind == ErrorKind.REPAIR_FAILURE:
        return RecoveryStrategy.SIMPLIFY_TASK

    # Unknown errors: heavier tasks get one retry before asking the user
    if complexity.is_heavy:
        return RecoveryStrategy.RETRY if attempts < 1 else RecoveryStrategy.USER_FEEDBACK
    return RecoveryStrategy.RETRY


class RecoveryStrategist:
    """Selects and executes recovery strategies for a run.

    Example:
        strategist = RecoveryStrategist(ErrorRecoveryConfig(), tracker)
        outcome = await strategist.recover(error_context)
        if outcome.halt:
            ...  # pause the run and surface outcome.notice
    """

    def __init__(
        self,
        config: Optional[ErrorRecoveryConfig] = None,
        tracker: Optional[RecoveryAttemptTracker] = None,
        classifier: Optional[ErrorClassifier] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config or ErrorRecoveryConfig()
        self.tracker = tracker if tracker is not None else RecoveryAttemptTracker()
        self.classifier = classifier or get_error_classifier()
        self._sleep = sleep

    def select_strategy(
        self, kind: ErrorKind, attempts: int, complexity: TaskComplexity
    ) -> RecoveryStrategy:
        return select_strategy(kind, attempts, complexity, self.config.user_feedback_threshold)

    async def recover(self, context: ErrorContext) -> RecoveryOutcome:
        """Classify the error in ``context``, then select and execute a strategy."""
        kind = self.classifier.classify(context.error)
        strategy = self.select_strategy(kind, context.previous_attempts, context.task_complexity)
        return await self.execute(strategy, kind, context)

    async def execute(
        self, strategy: RecoveryStrategy, kind: ErrorKind, context: ErrorContext
    ) -> RecoveryOutcome:
        logger.info(
            f"Executing recovery strategy {strategy.value} for {kind.value} "
            f"(conversation={context.conversation_id}, step={context.step_number}, "
            f"attempts={context.previous_attempts})"
        )
        notice = self.classifier.user_message(context.error)

        if strategy == RecoveryStrategy.RETRY:
            self.tracker.increment(context.conversation_id, context.step_number)
            if self.config.retry_delay > 0:
                await self._sleep(self.config.retry_delay)
            return RecoveryOutcome(strategy=strategy, kind=kind, notice=notice)

        if strategy == RecoveryStrategy.USER_FEEDBACK:
            logger.warning(
                f"Requesting user feedback for conversation {context.conversation_id}: "
                f"{context.error}"
            )
            return RecoveryOutcome(strategy=strategy, kind=kind, notice=notice, halt=True)

        if strategy == RecoveryStrategy.GRACEFUL_DEGRADATION:
            logger.info(f"Continuing with graceful degradation: {context.conversation_id}")
            return RecoveryOutcome(strategy=strategy, kind=kind, notice=notice, degraded=True)

        # ALTERNATIVE_APPROACH and SIMPLIFY_TASK are advisory: the model adapts
        # to the error fed back into the history
        logger.debug(f"Advisory recovery {strategy.value} for {context.conversation_id}")
        return RecoveryOutcome(strategy=strategy, kind=kind, notice=notice)
