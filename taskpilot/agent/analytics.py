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

"""Run summaries and store-wide execution statistics."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from taskpilot.agent.conversation_state import ConversationState, ConversationStateStore
from taskpilot.agent.metrics_collector import ExecutionMetrics, MetricsCollector
from taskpilot.agent.types import RunStatus


@dataclass
class AnalyticsSummary:
    """Completion summary emitted at the end of a run.

    Rates are percentages rounded to one decimal.
    """

    conversation_id: str
    duration: float
    task_complexity: str
    steps_completed: int
    total_steps: int
    tools_used: List[str]
    unique_tools: int
    success_rate: float
    error_rate: float
    tokens_used: int
    average_step_time: float
    completion_status: Optional[str]
    files_modified: List[str] = field(default_factory=list)
    most_used_tool: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "duration": self.duration,
            "task_complexity": self.task_complexity,
            "steps_completed": self.steps_completed,
            "total_steps": self.total_steps,
            "tools_used": list(self.tools_used),
            "unique_tools": self.unique_tools,
            "success_rate": self.success_rate,
            "error_rate": self.error_rate,
            "tokens_used": self.tokens_used,
            "average_step_time": self.average_step_time,
            "completion_status": self.completion_status,
            "files_modified": list(self.files_modified),
            "most_used_tool": self.most_used_tool,
        }


@dataclass
class ExecutionStats:
    total_conversations: int = 0
    total_tokens: int = 0
    average_success_rate: float = 0.0
    active: int = 0
    completed: int = 0
    failed: int = 0
    paused: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_conversations": self.total_conversations,
            "total_tokens": self.total_tokens,
            "average_success_rate": self.average_success_rate,
            "by_status": {
                "active": self.active,
                "completed": self.completed,
                "failed": self.failed,
                "paused": self.paused,
            },
        }


def summarize(state: ConversationState, metrics: ExecutionMetrics) -> AnalyticsSummary:
    tools = sorted(state.tools_used)
    return AnalyticsSummary(
        conversation_id=state.conversation_id,
        duration=metrics.execution_time,
        task_complexity=state.task_complexity.value,
        steps_completed=state.current_step,
        total_steps=state.total_steps,
        tools_used=tools,
        unique_tools=len(tools),
        success_rate=round(metrics.success_rate * 100, 1),
        error_rate=round(metrics.error_rate * 100, 1),
        tokens_used=metrics.total_tokens_used,
        average_step_time=metrics.average_step_time,
        completion_status=(
            metrics.completion_status.value if metrics.completion_status else None
        ),
        files_modified=sorted(state.files_modified),
        most_used_tool=metrics.most_used_tool,
    )


def execution_stats(states: ConversationStateStore, metrics: MetricsCollector) -> ExecutionStats:
    """Aggregate statistics over every conversation currently stored."""
    all_metrics = metrics.all()
    stats = ExecutionStats(
        total_conversations=len(states),
        total_tokens=sum(m.total_tokens_used for m in all_metrics),
    )
    with_tools = [m for m in all_metrics if m.tool_executions]
    if with_tools:
        stats.average_success_rate = sum(m.success_rate for m in with_tools) / len(with_tools)

    for state in states.all():
        if state.status == RunStatus.ACTIVE:
            stats.active += 1
        elif state.status == RunStatus.COMPLETED:
            stats.completed += 1
        elif state.status == RunStatus.FAILED:
            stats.failed += 1
        elif state.status == RunStatus.PAUSED:
            stats.paused += 1
    return stats
