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

"""Per-run conversation state tracking.

A ``ConversationState`` is created when a run starts, updated after every
step and finalized when the run ends. States live in a
``ConversationStateStore`` keyed by conversation id; only the run that
created a state mutates it. Old states are pruned by ``sweep``.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Collection, Dict, Iterable, List, Optional, Set

from taskpilot.agent.protocols import ToolCall
from taskpilot.agent.types import RunStatus, TaskComplexity
from taskpilot.core.clock import Clock, SystemClock

logger = logging.getLogger(__name__)

# Argument names that carry the path of a touched file
FILE_ARG_KEYS = ("path", "file_path", "file")

# Number of entries kept in context["recent_changes"]
RECENT_CHANGES_LIMIT = 20


@dataclass
class ConversationState:
    """Progress snapshot of one run.

    Attributes:
        conversation_id: Conversation the run belongs to
        user_id: User who started the run
        current_step: Steps finished so far, never above total_steps
        total_steps: Step budget of the run
        task_complexity: Tier the run was planned for
        start_time: Epoch seconds when the run started
        last_activity: Epoch seconds of the last update
        tools_used: Distinct tool names called
        files_modified: Distinct paths touched by file-mutating tools
        error_count: Failed tool executions and gateway errors
        status: ACTIVE until the run is finalized
    """

    conversation_id: str
    user_id: str
    total_steps: int
    task_complexity: TaskComplexity
    start_time: float
    last_activity: float
    landing_page_id: Optional[str] = None
    current_step: int = 0
    tools_used: Set[str] = field(default_factory=set)
    files_modified: Set[str] = field(default_factory=set)
    error_count: int = 0
    status: RunStatus = RunStatus.ACTIVE
    context: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_active(self) -> bool:
        return self.status == RunStatus.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "user_id": self.user_id,
            "landing_page_id": self.landing_page_id,
            "current_step": self.current_step,
            "total_steps": self.total_steps,
            "task_complexity": self.task_complexity.value,
            "start_time": self.start_time,
            "last_activity": self.last_activity,
            "tools_used": sorted(self.tools_used),
            "files_modified": sorted(self.files_modified),
            "error_count": self.error_count,
            "status": self.status.value,
            "context": dict(self.context),
        }


class ConversationStateStore:
    """Conversation states keyed by conversation id.

    Writes are last-write-wins; callers guarantee one active run per
    conversation.
    """

    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock or SystemClock()
        self._states: Dict[str, ConversationState] = {}

    def init(
        self,
        conversation_id: str,
        user_id: str,
        task_complexity: TaskComplexity,
        total_steps: int,
        landing_page_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> ConversationState:
        now = self._clock.time()
        state = ConversationState(
            conversation_id=conversation_id,
            user_id=user_id,
            total_steps=total_steps,
            task_complexity=task_complexity,
            start_time=now,
            last_activity=now,
            landing_page_id=landing_page_id,
            context=dict(context or {}),
        )
        self._states[conversation_id] = state
        logger.debug(
            f"Initialized state for {conversation_id}: "
            f"complexity={task_complexity.value}, total_steps={total_steps}"
        )
        return state

    def get(self, conversation_id: str) -> Optional[ConversationState]:
        return self._states.get(conversation_id)

    def update(
        self,
        conversation_id: str,
        current_step: Optional[int] = None,
        tools_used: Optional[Iterable[str]] = None,
        files_modified: Optional[Iterable[str]] = None,
        error_count: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> Optional[ConversationState]:
        """Apply a partial update and refresh ``last_activity``.

        Tool names and file paths are merged into the existing sets.
        """
        state = self._states.get(conversation_id)
        if state is None:
            logger.debug(f"No state to update for {conversation_id}")
            return None

        if current_step is not None:
            state.current_step = min(current_step, state.total_steps)
        if tools_used is not None:
            state.tools_used.update(tools_used)
        if files_modified is not None:
            state.files_modified.update(files_modified)
        if error_count is not None:
            state.error_count = error_count
        if context:
            state.context.update(context)
        state.last_activity = self._clock.time()
        return state

    def record_step(
        self,
        conversation_id: str,
        step_number: int,
        tool_calls: List[ToolCall],
        failed_calls: int = 0,
        file_mutating_tools: Collection[str] = (),
    ) -> Optional[ConversationState]:
        """Fold one finished step into the state."""
        state = self._states.get(conversation_id)
        if state is None:
            return None

        files: Set[str] = set()
        changes = list(state.context.get("recent_changes", []))
        for call in tool_calls:
            if call.tool_name in file_mutating_tools:
                path = next((call.input[k] for k in FILE_ARG_KEYS if call.input.get(k)), None)
                if path:
                    files.add(str(path))
            changes.append({"step": step_number, "tool": call.tool_name})

        return self.update(
            conversation_id,
            current_step=step_number,
            tools_used=[call.tool_name for call in tool_calls],
            files_modified=files,
            error_count=state.error_count + failed_calls,
            context={"recent_changes": changes[-RECENT_CHANGES_LIMIT:]},
        )

    def record_error(self, conversation_id: str) -> None:
        state = self._states.get(conversation_id)
        if state is not None:
            state.error_count += 1
            state.last_activity = self._clock.time()

    def finalize(self, conversation_id: str, status: RunStatus) -> Optional[ConversationState]:
        """Move the state out of ACTIVE.

        Raises:
            ValueError: If the state was already finalized with another status
        """
        state = self._states.get(conversation_id)
        if state is None:
            return None
        if status == RunStatus.ACTIVE:
            raise ValueError("Cannot finalize a run as active")
        if not state.is_active and state.status != status:
            raise ValueError(
                f"Invalid status transition {state.status.value} -> {status.value} "
                f"for {conversation_id}"
            )
        state.status = status
        state.last_activity = self._clock.time()
        logger.debug(f"Finalized state for {conversation_id}: {status.value}")
        return state

    def delete(self, conversation_id: str) -> bool:
        return self._states.pop(conversation_id, None) is not None

    def sweep(self, max_age: float, protected: Collection[str] = ()) -> List[str]:
        """Drop states idle for longer than ``max_age`` seconds.

        Args:
            max_age: Maximum idle time in seconds
            protected: Conversation ids that must be kept (e.g. running)

        Returns:
            Ids of the removed states
        """
        cutoff = self._clock.time() - max_age
        expired = [
            cid
            for cid, state in self._states.items()
            if state.last_activity < cutoff and cid not in protected
        ]
        for cid in expired:
            del self._states[cid]
        if expired:
            logger.debug(f"Swept {len(expired)} expired conversation states")
        return expired

    def all(self) -> List[ConversationState]:
        return list(self._states.values())

    def clear(self) -> None:
        self._states.clear()

    def __len__(self) -> int:
        return len(self._states)

    def __contains__(self, conversation_id: object) -> bool:
        return conversation_id in self._states
