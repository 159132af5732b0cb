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

"""Core infrastructure: errors, clocks and logging configuration."""

from taskpilot.core.clock import Clock, ManualClock, SystemClock
from taskpilot.core.errors import (
    AlreadyRunningError,
    ClassificationError,
    ConfigurationError,
    ErrorCategory,
    ModelTimeoutError,
    ModelTransportError,
    TaskPilotError,
    ToolError,
    ToolExecutionError,
    ToolNotFoundError,
    ToolRepairError,
    ToolValidationError,
    ValidationError,
)
from taskpilot.core.log_config import configure_logging

__all__ = [
    "AlreadyRunningError",
    "ClassificationError",
    "Clock",
    "ConfigurationError",
    "ErrorCategory",
    "ManualClock",
    "ModelTimeoutError",
    "ModelTransportError",
    "SystemClock",
    "TaskPilotError",
    "ToolError",
    "ToolExecutionError",
    "ToolNotFoundError",
    "ToolRepairError",
    "ToolValidationError",
    "ValidationError",
    "configure_logging",
]
