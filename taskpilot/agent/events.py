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

"""Run events, observer callbacks and the streamable run handle.

A started run is returned as an ``AgentRun``. Consumers can iterate its
events as they happen and then await the final result:

    run = await service.run_agentic_task(messages, "conv-1", "user-1")
    async for event in run:
        print(event.type.value, event.data)
    result = await run.result()
"""

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from taskpilot.agent.analytics import AnalyticsSummary
from taskpilot.agent.conversation_state import ConversationState
from taskpilot.agent.metrics_collector import ExecutionMetrics
from taskpilot.agent.types import CompletionStatus, RunStatus

logger = logging.getLogger(__name__)


class RunEventType(str, Enum):
    PROGRESS = "progress"
    REASONING = "reasoning"
    TOOL_CALL = "tool_call"
    STEP_FINISHED = "step_finished"
    NOTICE = "notice"
    COMPLETED = "completed"


class ReasoningPhase(str, Enum):
    ANALYSIS = "analysis"
    EXECUTION = "execution"
    VALIDATION = "validation"


@dataclass
class RunEvent:
    type: RunEventType
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


@dataclass
class ProgressUpdate:
    current_step: int
    total_steps: int
    action: str
    phase: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current_step": self.current_step,
            "total_steps": self.total_steps,
            "action": self.action,
            "phase": self.phase,
        }


@dataclass
class RunCallbacks:
    """Optional observers. Each may be a plain function or a coroutine function.

    Observer failures are logged and never affect the run.
    """

    on_progress: Optional[Callable[[ProgressUpdate], Any]] = None
    on_tool_call: Optional[Callable[..., Any]] = None
    on_step_finish: Optional[Callable[..., Any]] = None


async def notify(callback: Optional[Callable[..., Any]], *args: Any) -> None:
    if callback is None:
        return
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        logger.warning(f"Run observer {getattr(callback, '__name__', callback)} failed: {e}")


@dataclass
class FinalResult:
    """What the caller sees when a run ends.

    Internal exceptions never appear here; failures are described by
    ``completion_status``, ``status`` and the plain-language ``explanation``.
    """

    conversation_id: str
    status: RunStatus
    completion_status: CompletionStatus
    finish_reason: str
    reached_step_limit: bool
    natural_completion: bool
    steps_completed: int
    text: str = ""
    explanation: str = ""
    stopped_by: Optional[str] = None
    degraded: bool = False
    notices: List[str] = field(default_factory=list)
    messages: List[Dict[str, Any]] = field(default_factory=list)
    summary: Optional[AnalyticsSummary] = None
    state: Optional[ConversationState] = None
    metrics: Optional[ExecutionMetrics] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "status": self.status.value,
            "completion_status": self.completion_status.value,
            "finish_reason": self.finish_reason,
            "reached_step_limit": self.reached_step_limit,
            "natural_completion": self.natural_completion,
            "steps_completed": self.steps_completed,
            "text": self.text,
            "explanation": self.explanation,
            "stopped_by": self.stopped_by,
            "degraded": self.degraded,
            "notices": list(self.notices),
            "summary": self.summary.to_dict() if self.summary else None,
        }


_DONE = object()


class AgentRun:
    """Handle to a running task: an async stream of events plus the result."""

    def __init__(self, conversation_id: str, cancel_event: Optional[asyncio.Event] = None):
        self.conversation_id = conversation_id
        self.cancel_event = cancel_event or asyncio.Event()
        self._events: asyncio.Queue = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None

    def emit(self, event: RunEvent) -> None:
        self._events.put_nowait(event)

    def attach(self, task: asyncio.Task) -> None:
        self._task = task
        task.add_done_callback(lambda _: self._events.put_nowait(_DONE))

    def cancel(self) -> None:
        """Ask the run to stop before its next step."""
        self.cancel_event.set()

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    async def result(self) -> FinalResult:
        if self._task is None:
            raise RuntimeError("Run has not been started")
        return await self._task

    async def __aiter__(self) -> AsyncIterator[RunEvent]:
        while True:
            item = await self._events.get()
            if item is _DONE:
                return
            yield item
