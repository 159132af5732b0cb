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

"""Agentic task orchestration: classification, planning, execution and recovery."""

from taskpilot.agent.complexity_classifier import ComplexityClassifier, requires_tool_calling
from taskpilot.agent.conversation_state import ConversationState, ConversationStateStore
from taskpilot.agent.error_classifier import ErrorClassifier
from taskpilot.agent.error_recovery import RecoveryStrategist, select_strategy
from taskpilot.agent.events import AgentRun, FinalResult, RunCallbacks, RunEvent, RunEventType
from taskpilot.agent.metrics_collector import ExecutionMetrics, MetricsCollector
from taskpilot.agent.model_selector import ModelSelector
from taskpilot.agent.protocols import (
    ExecutionContext,
    LanguageModelGateway,
    ModelHandle,
    StepEvent,
    TokenUsage,
    ToolCall,
    ToolExecutionRegistry,
    ToolResult,
    ToolSpec,
)
from taskpilot.agent.runner import AgentRunner, RunPlan
from taskpilot.agent.service import AgenticTaskService
from taskpilot.agent.step_budget import (
    CustomCondition,
    StepBudgetConfig,
    StepBudgetPlanner,
    StepCountIs,
    StopCondition,
    TextContains,
    ToolCalled,
)
from taskpilot.agent.stores import EngineStore
from taskpilot.agent.types import (
    ComplexityScore,
    CompletionStatus,
    ErrorKind,
    RecoveryStrategy,
    RunStatus,
    TaskComplexity,
)

__all__ = [
    "AgentRun",
    "AgentRunner",
    "AgenticTaskService",
    "ComplexityClassifier",
    "ComplexityScore",
    "CompletionStatus",
    "ConversationState",
    "ConversationStateStore",
    "CustomCondition",
    "EngineStore",
    "ErrorClassifier",
    "ErrorKind",
    "ExecutionContext",
    "ExecutionMetrics",
    "FinalResult",
    "LanguageModelGateway",
    "MetricsCollector",
    "ModelHandle",
    "ModelSelector",
    "RecoveryStrategist",
    "RecoveryStrategy",
    "RunCallbacks",
    "RunEvent",
    "RunEventType",
    "RunPlan",
    "RunStatus",
    "StepBudgetConfig",
    "StepBudgetPlanner",
    "StepCountIs",
    "StepEvent",
    "StopCondition",
    "TaskComplexity",
    "TextContains",
    "TokenUsage",
    "ToolCall",
    "ToolCalled",
    "ToolExecutionRegistry",
    "ToolResult",
    "ToolSpec",
    "requires_tool_calling",
    "select_strategy",
]
