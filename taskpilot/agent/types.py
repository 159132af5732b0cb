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

"""Shared enums and value types for the agentic engine."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class TaskComplexity(str, Enum):
    """Complexity tier sizing the step budget and model choice."""

    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"
    ADVANCED = "advanced"

    @classmethod
    def from_score(cls, score: float) -> "TaskComplexity":
        """Map a [0, 1] complexity score onto a tier."""
        if score < 0.4:
            return cls.SIMPLE
        if score < 0.7:
            return cls.MODERATE
        if score < 0.9:
            return cls.COMPLEX
        return cls.ADVANCED

    @property
    def is_heavy(self) -> bool:
        return self in (TaskComplexity.COMPLEX, TaskComplexity.ADVANCED)


class ClassificationMethod(str, Enum):
    REGEX = "regex"
    LLM_WEAK = "llm-weak"
    HYBRID = "hybrid"


@dataclass
class ComplexityScore:
    """Result of complexity classification.

    Attributes:
        score: Complexity in [0, 1]
        factors: Ordered tags naming the matched categories
        method: How the score was produced
    """

    score: float
    factors: List[str] = field(default_factory=list)
    method: ClassificationMethod = ClassificationMethod.REGEX

    @property
    def complexity(self) -> TaskComplexity:
        return TaskComplexity.from_score(self.score)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "factors": list(self.factors),
            "method": self.method.value,
            "complexity": self.complexity.value,
        }


class RunStatus(str, Enum):
    """Lifecycle of a run. Transitions only from ACTIVE."""

    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"


class CompletionStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"

    @classmethod
    def from_error_rate(cls, error_rate: float) -> "CompletionStatus":
        if error_rate == 0:
            return cls.SUCCESS
        if error_rate < 0.5:
            return cls.PARTIAL
        return cls.FAILED

    @classmethod
    def for_run(cls, error_rate: float, completed: bool) -> "CompletionStatus":
        """Runs that ended on budget, a crash or a pause never count as success."""
        if not completed:
            return cls.FAILED
        return cls.from_error_rate(error_rate)


class ErrorKind(str, Enum):
    """Failure taxonomy used to pick a recovery strategy."""

    NO_SUCH_TOOL = "no_such_tool"
    INVALID_TOOL_INPUT = "invalid_tool_input"
    TRANSPORT_OR_TIMEOUT = "transport_or_timeout"
    REPAIR_FAILURE = "repair_failure"
    UNKNOWN = "unknown"


class RecoveryStrategy(str, Enum):
    RETRY = "retry"
    ALTERNATIVE_APPROACH = "alternative"
    SIMPLIFY_TASK = "simplify"
    USER_FEEDBACK = "user_feedback"
    GRACEFUL_DEGRADATION = "degradation"


@dataclass
class ErrorContext:
    """Everything known about a failure when choosing how to recover."""

    error: BaseException
    step_number: int
    total_steps: int
    previous_attempts: int
    task_complexity: TaskComplexity
    conversation_id: str
    tool_name: Optional[str] = None
