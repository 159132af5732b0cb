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

"""Protocols for the engine's external collaborators.

The engine never talks to a model or a tool directly. It consumes:

- ``LanguageModelGateway``: streams step events for a prompt, history and
  tool specs.
- ``ToolExecutionRegistry``: lists tools and executes them by name.

Message format
--------------
History entries are plain dicts with ``role`` and ``content``. Assistant
tool calls and tool results use content parts::

    {"type": "tool-call", "tool_call_id": ..., "tool_name": ..., "input": {...}}
    {"type": "tool-result", "tool_call_id": ..., "tool_name": ...,
     "output": ..., "is_error": bool}
"""

from dataclasses import dataclass, field, replace
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Protocol, runtime_checkable


@dataclass(frozen=True)
class ToolCall:
    """A tool invocation emitted by the model."""

    tool_call_id: str
    tool_name: str
    input: Dict[str, Any] = field(default_factory=dict)

    def to_message_part(self) -> Dict[str, Any]:
        return {
            "type": "tool-call",
            "tool_call_id": self.tool_call_id,
            "tool_name": self.tool_name,
            "input": dict(self.input),
        }


@dataclass
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass
class StepEvent:
    """One finished model step as delivered by the gateway.

    Attributes:
        tool_calls: Tool calls requested in this step
        text: Text generated in this step
        finish_reason: Why the model stopped ("stop", "tool-calls", "length", ...)
        usage: Token usage for this step
        response_messages: Assistant messages to append to history. When empty
            the engine synthesizes one from ``text`` and ``tool_calls``.
    """

    tool_calls: List[ToolCall] = field(default_factory=list)
    text: str = ""
    finish_reason: str = "stop"
    usage: TokenUsage = field(default_factory=TokenUsage)
    response_messages: List[Dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str = ""
    input_schema: Dict[str, Any] = field(default_factory=dict)

    @property
    def required_fields(self) -> List[str]:
        return list(self.input_schema.get("required", []))


@dataclass(frozen=True)
class ExecutionContext:
    """Identity passed to every tool execution."""

    user_id: str
    conversation_id: str
    tool_call_id: str = "pending"
    landing_page_id: Optional[str] = None

    def with_tool_call(self, tool_call_id: str) -> "ExecutionContext":
        return replace(self, tool_call_id=tool_call_id)


@dataclass
class ToolResult:
    """Outcome of a registry execution. A set ``error`` marks a ToolError."""

    output: Any = None
    error: Optional[str] = None

    @property
    def is_error(self) -> bool:
        return self.error is not None


@dataclass(frozen=True)
class ModelHandle:
    """A model chosen for a run, tagged with how it was chosen."""

    name: str
    kind: str = "weak"  # strong | weak | fallback


@runtime_checkable
class LanguageModelGateway(Protocol):
    """Protocol for the model gateway.

    ``stream_steps`` yields one ``StepEvent`` per model step. The engine
    appends tool results to ``messages`` between yielded steps, so the
    gateway must read the list again before requesting the next step.
    """

    def stream_steps(
        self,
        model: ModelHandle,
        system_prompt: str,
        messages: List[Dict[str, Any]],
        tool_specs: Mapping[str, ToolSpec],
    ) -> AsyncIterator[StepEvent]:
        """Stream step events for the conversation."""
        ...


@runtime_checkable
class ToolExecutionRegistry(Protocol):
    """Protocol for the tool registry."""

    def list_available_tools(self, context: ExecutionContext) -> Mapping[str, ToolSpec]:
        """Tools callable in this context, keyed by name."""
        ...

    async def execute(
        self, name: str, input: Dict[str, Any], context: ExecutionContext
    ) -> ToolResult:
        """Execute a tool. May raise on failure."""
        ...


async def close_stream(stream: Any) -> None:
    """Close an async generator stream if it supports closing."""
    aclose = getattr(stream, "aclose", None)
    if aclose is not None:
        await aclose()
