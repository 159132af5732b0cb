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

"""Exception types for the task orchestration engine.

This module provides:
- A base exception carrying category, details and a correlation id
- Model gateway errors (transport failures, timeouts)
- Tool errors (unknown tool, invalid input, execution failure, repair failure)
- Caller-facing errors (validation, configuration, concurrent run on a conversation)

Internal failures raised inside a run are classified and recovered from by
the engine. Only ``ConfigurationError``, ``ValidationError`` and
``AlreadyRunningError`` are expected to reach callers.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCategory(Enum):
    """Categories of errors for classification and handling."""

    # Model gateway errors
    MODEL_TRANSPORT = "model_transport"
    MODEL_TIMEOUT = "model_timeout"

    # Tool errors
    TOOL_NOT_FOUND = "tool_not_found"
    TOOL_VALIDATION = "tool_validation"
    TOOL_EXECUTION = "tool_execution"
    TOOL_REPAIR = "tool_repair"

    # Engine errors
    CLASSIFICATION = "classification"
    CONFIG_INVALID = "config_invalid"
    VALIDATION_ERROR = "validation_error"
    ALREADY_RUNNING = "already_running"

    UNKNOWN = "unknown"


class TaskPilotError(Exception):
    """Base exception for all engine errors.

    Provides structured error information including:
    - Error category
    - Correlation ID for tracking
    - Recovery suggestions
    - Original exception chain
    """

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        details: Optional[Dict[str, Any]] = None,
        recovery_hint: Optional[str] = None,
        correlation_id: Optional[str] = None,
        cause: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category
        self.details = details or {}
        self.recovery_hint = recovery_hint
        self.correlation_id = correlation_id or str(uuid.uuid4())[:8]
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error": self.message,
            "category": self.category.value,
            "correlation_id": self.correlation_id,
            "recovery_hint": self.recovery_hint,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }

    def __str__(self) -> str:
        return self.message


class ModelTransportError(TaskPilotError):
    """The language model gateway failed to deliver a step."""

    def __init__(self, message: str, model: Optional[str] = None, **kwargs: Any):
        kwargs.setdefault("category", ErrorCategory.MODEL_TRANSPORT)
        kwargs.setdefault("recovery_hint", "Check network connectivity to the model gateway.")
        super().__init__(message, **kwargs)
        self.model = model
        self.details["model"] = model


class ModelTimeoutError(ModelTransportError):
    """No step arrived from the gateway within the response timeout."""

    def __init__(
        self,
        message: str,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        **kwargs: Any,
    ):
        super().__init__(
            message,
            model=model,
            category=ErrorCategory.MODEL_TIMEOUT,
            recovery_hint="Increase response_timeout or retry later.",
            **kwargs,
        )
        self.timeout = timeout
        self.details["timeout"] = timeout


class ToolError(TaskPilotError):
    """Errors related to tool execution."""

    def __init__(self, message: str, tool_name: Optional[str] = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.tool_name = tool_name
        self.details["tool_name"] = tool_name


class ToolNotFoundError(ToolError):
    """The model requested a tool that is not registered."""

    def __init__(self, tool_name: str, **kwargs: Any):
        super().__init__(
            f"No such tool: {tool_name}",
            tool_name=tool_name,
            category=ErrorCategory.TOOL_NOT_FOUND,
            recovery_hint="Use one of the available tools.",
            **kwargs,
        )


class ToolValidationError(ToolError):
    """Tool input failed validation against the tool's input schema."""

    def __init__(self, message: str, tool_name: Optional[str] = None, **kwargs: Any):
        super().__init__(
            f"Invalid tool input: {message}",
            tool_name=tool_name,
            category=ErrorCategory.TOOL_VALIDATION,
            recovery_hint="Check the required arguments for the tool.",
            **kwargs,
        )


class ToolExecutionError(ToolError):
    """The tool ran but reported a failure."""

    def __init__(self, message: str, tool_name: Optional[str] = None, **kwargs: Any):
        kwargs.setdefault("category", ErrorCategory.TOOL_EXECUTION)
        super().__init__(message, tool_name=tool_name, **kwargs)


class ToolRepairError(ToolError):
    """The automatic tool-call repair could not produce a usable call."""

    def __init__(self, message: str, tool_name: Optional[str] = None, **kwargs: Any):
        super().__init__(
            f"Tool call repair failed: {message}",
            tool_name=tool_name,
            category=ErrorCategory.TOOL_REPAIR,
            **kwargs,
        )


class ClassificationError(TaskPilotError):
    """The model-based complexity classification failed."""

    def __init__(self, message: str, **kwargs: Any):
        super().__init__(message, category=ErrorCategory.CLASSIFICATION, **kwargs)


class ConfigurationError(TaskPilotError):
    """Invalid engine configuration. Raised at construction time."""

    def __init__(self, message: str, **kwargs: Any):
        super().__init__(message, category=ErrorCategory.CONFIG_INVALID, **kwargs)


class ValidationError(TaskPilotError):
    """Invalid input supplied by the caller."""

    def __init__(self, message: str, field: Optional[str] = None, **kwargs: Any):
        super().__init__(message, category=ErrorCategory.VALIDATION_ERROR, **kwargs)
        self.field = field
        if field:
            self.details["field"] = field


class AlreadyRunningError(TaskPilotError):
    """A run is already active for the conversation."""

    def __init__(self, conversation_id: str, **kwargs: Any):
        super().__init__(
            f"A run is already active for conversation {conversation_id}",
            category=ErrorCategory.ALREADY_RUNNING,
            recovery_hint="Wait for the active run to finish or cancel it.",
            **kwargs,
        )
        self.conversation_id = conversation_id
        self.details["conversation_id"] = conversation_id
