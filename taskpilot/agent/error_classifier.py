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

"""Error classification for recovery decisions.

Failures can originate at the model gateway, the tool registry or the repair
path, so classification looks at the exception type first and then falls
back to the message text.
"""

import asyncio
from typing import Dict, List, Tuple

from taskpilot.agent.types import ErrorKind
from taskpilot.core.errors import (
    ModelTransportError,
    ToolNotFoundError,
    ToolRepairError,
    ToolValidationError,
)

# Checked in order; the first matching kind wins
MESSAGE_PATTERNS: List[Tuple[ErrorKind, List[str]]] = [
    (ErrorKind.NO_SUCH_TOOL, ["no such tool", "tool not found", "unknown tool"]),
    (ErrorKind.INVALID_TOOL_INPUT, ["invalid tool input", "validation", "invalid argument"]),
    (
        ErrorKind.TRANSPORT_OR_TIMEOUT,
        ["api call", "network", "timeout", "timed out", "connection", "rate limit"],
    ),
    (ErrorKind.REPAIR_FAILURE, ["tool call repair", "repair"]),
]

TYPE_KINDS: List[Tuple[type, ErrorKind]] = [
    (ToolNotFoundError, ErrorKind.NO_SUCH_TOOL),
    (ToolValidationError, ErrorKind.INVALID_TOOL_INPUT),
    (ToolRepairError, ErrorKind.REPAIR_FAILURE),
    (ModelTransportError, ErrorKind.TRANSPORT_OR_TIMEOUT),
    (asyncio.TimeoutError, ErrorKind.TRANSPORT_OR_TIMEOUT),
    (TimeoutError, ErrorKind.TRANSPORT_OR_TIMEOUT),
    (ConnectionError, ErrorKind.TRANSPORT_OR_TIMEOUT),
]

USER_MESSAGES: Dict[ErrorKind, str] = {
    ErrorKind.NO_SUCH_TOOL: (
        "I tried to use a tool that is not available. Let me try a different approach."
    ),
    ErrorKind.INVALID_TOOL_INPUT: (
        "I provided invalid input to a tool. Let me correct this and try again."
    ),
    ErrorKind.TRANSPORT_OR_TIMEOUT: (
        "There was a communication error with the AI service. I'll retry in a moment."
    ),
    ErrorKind.REPAIR_FAILURE: (
        "I encountered an issue while trying to fix a previous error. "
        "Let me simplify my approach."
    ),
    ErrorKind.UNKNOWN: (
        "I encountered an unexpected problem. Let me try a different approach."
    ),
}


class ErrorClassifier:
    """Maps exceptions to an ``ErrorKind`` and a user-facing message."""

    def classify(self, error: object) -> ErrorKind:
        """Classify an error.

        Args:
            error: An exception or an error message

        Returns:
            The matching ErrorKind, UNKNOWN when nothing matches
        """
        if isinstance(error, BaseException):
            for error_type, kind in TYPE_KINDS:
                if isinstance(error, error_type):
                    return kind

        message = str(error).lower()
        if not message:
            return ErrorKind.UNKNOWN

        for kind, patterns in MESSAGE_PATTERNS:
            if any(pattern in message for pattern in patterns):
                return kind
        return ErrorKind.UNKNOWN

    def user_message(self, error: object) -> str:
        """Plain-language text shown in place of the raw error."""
        return USER_MESSAGES[self.classify(error)]


_classifier = ErrorClassifier()


def get_error_classifier() -> ErrorClassifier:
    return _classifier
