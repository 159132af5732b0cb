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

"""Execution metrics collection for agentic runs.

This module tracks, per conversation:
- Token usage and step timing
- Per-tool execution records (timing, success, payload sizes)
- Success/error rates and the final completion status

Derived values are recomputed from the raw records on every update, so they
never drift from the data they summarize.
"""

import json
import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Collection, Dict, List, Optional

from taskpilot.agent.types import CompletionStatus, TaskComplexity
from taskpilot.core.clock import Clock, SystemClock

logger = logging.getLogger(__name__)


def payload_size(value: Any) -> int:
    """Approximate size of a tool payload in characters."""
    if value is None:
        return 0
    if isinstance(value, str):
        return len(value)
    try:
        return len(json.dumps(value, default=str))
    except (TypeError, ValueError):
        return len(str(value))


@dataclass
class ToolExecutionMetric:
    tool_name: str
    execution_time: float
    success: bool
    input_size: int
    output_size: int
    step_number: int
    timestamp: float
    error_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tool_name": self.tool_name,
            "execution_time": self.execution_time,
            "success": self.success,
            "input_size": self.input_size,
            "output_size": self.output_size,
            "step_number": self.step_number,
            "timestamp": self.timestamp,
            "error_message": self.error_message,
        }


@dataclass
class ExecutionMetrics:
    """Aggregated metrics for one run.

    ``tool_executions``, ``step_times`` and ``total_tokens_used`` are the raw
    records; every other number is derived from them by ``recompute``.
    """

    conversation_id: str
    task_complexity: TaskComplexity
    start_time: float
    last_update: float
    total_tokens_used: int = 0
    total_steps: int = 0
    tool_executions: List[ToolExecutionMetric] = field(default_factory=list)
    step_times: List[float] = field(default_factory=list)
    execution_time: float = 0.0
    success_rate: float = 0.0
    error_rate: float = 0.0
    average_step_time: float = 0.0
    completion_status: Optional[CompletionStatus] = None
    end_time: Optional[float] = None

    def recompute(self, now: float) -> None:
        executed = len(self.tool_executions)
        if executed:
            successes = sum(1 for t in self.tool_executions if t.success)
            self.success_rate = successes / executed
            self.error_rate = (executed - successes) / executed
        else:
            self.success_rate = 0.0
            self.error_rate = 0.0

        self.total_steps = len(self.step_times)
        self.average_step_time = (
            sum(self.step_times) / len(self.step_times) if self.step_times else 0.0
        )
        self.execution_time = (self.end_time if self.end_time is not None else now) - self.start_time

    @property
    def most_used_tool(self) -> Optional[str]:
        if not self.tool_executions:
            return None
        return Counter(t.tool_name for t in self.tool_executions).most_common(1)[0][0]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "total_tokens_used": self.total_tokens_used,
            "total_steps": self.total_steps,
            "tool_executions": [t.to_dict() for t in self.tool_executions],
            "execution_time": self.execution_time,
            "success_rate": self.success_rate,
            "error_rate": self.error_rate,
            "average_step_time": self.average_step_time,
            "task_complexity": self.task_complexity.value,
            "completion_status": (
                self.completion_status.value if self.completion_status else None
            ),
        }


class MetricsCollector:
    """Execution metrics keyed by conversation id."""

    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock or SystemClock()
        self._metrics: Dict[str, ExecutionMetrics] = {}

    def init(self, conversation_id: str, task_complexity: TaskComplexity) -> ExecutionMetrics:
        now = self._clock.time()
        metrics = ExecutionMetrics(
            conversation_id=conversation_id,
            task_complexity=task_complexity,
            start_time=now,
            last_update=now,
        )
        self._metrics[conversation_id] = metrics
        return metrics

    def get(self, conversation_id: str) -> Optional[ExecutionMetrics]:
        return self._metrics.get(conversation_id)

    def track_tool(self, conversation_id: str, metric: ToolExecutionMetric) -> None:
        metrics = self._metrics.get(conversation_id)
        if metrics is None:
            return
        metrics.tool_executions.append(metric)
        self._touch(metrics)

    def track_step(
        self,
        conversation_id: str,
        tokens_used: int,
        step_time: float,
        tool_metrics: Optional[List[ToolExecutionMetric]] = None,
    ) -> Optional[ExecutionMetrics]:
        """Record a finished step."""
        metrics = self._metrics.get(conversation_id)
        if metrics is None:
            logger.debug(f"No metrics to update for {conversation_id}")
            return None
        metrics.total_tokens_used += max(tokens_used, 0)
        metrics.step_times.append(step_time)
        metrics.tool_executions.extend(tool_metrics or [])
        self._touch(metrics)
        return metrics

    def complete(self, conversation_id: str, completed: bool = True) -> Optional[ExecutionMetrics]:
        """Freeze timing and classify the completion status.

        Args:
            conversation_id: Conversation to complete
            completed: Whether the run stopped naturally or on a completion
                condition. Runs that did not are always ``failed``; completed
                runs are graded by their tool error rate.
        """
        metrics = self._metrics.get(conversation_id)
        if metrics is None:
            return None
        metrics.end_time = self._clock.time()
        self._touch(metrics)
        metrics.completion_status = CompletionStatus.for_run(metrics.error_rate, completed)
        logger.debug(
            f"Completed metrics for {conversation_id}: "
            f"status={metrics.completion_status.value}, "
            f"success_rate={metrics.success_rate:.2f}, tokens={metrics.total_tokens_used}"
        )
        return metrics

    def _touch(self, metrics: ExecutionMetrics) -> None:
        now = self._clock.time()
        metrics.last_update = now
        metrics.recompute(now)

    def sweep(self, max_age: float, protected: Collection[str] = ()) -> List[str]:
        cutoff = self._clock.time() - max_age
        expired = [
            cid
            for cid, metrics in self._metrics.items()
            if metrics.last_update < cutoff and cid not in protected
        ]
        for cid in expired:
            del self._metrics[cid]
        return expired

    def all(self) -> List[ExecutionMetrics]:
        return list(self._metrics.values())

    def delete(self, conversation_id: str) -> bool:
        return self._metrics.pop(conversation_id, None) is not None

    def clear(self) -> None:
        self._metrics.clear()

    def __len__(self) -> int:
        return len(self._metrics)
