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

"""Re-ask repair for failed tool calls.

The failed call and its error are shown to the model as a synthetic
tool-call/tool-result exchange and the model is asked once for a corrected
call. The corrected call replaces the failed one in the step and keeps the
original tool call id.
"""

import asyncio
import logging
from dataclasses import replace
from typing import Any, Dict, List, Mapping, Optional

from taskpilot.agent.protocols import (
    LanguageModelGateway,
    ModelHandle,
    ToolCall,
    ToolSpec,
    close_stream,
)
from taskpilot.core.errors import ToolRepairError

logger = logging.getLogger(__name__)


def build_repair_messages(
    messages: List[Dict[str, Any]], call: ToolCall, error_text: str
) -> List[Dict[str, Any]]:
    return list(messages) + [
        {"role": "assistant", "content": [call.to_message_part()]},
        {
            "role": "tool",
            "content": [
                {
                    "type": "tool-result",
                    "tool_call_id": call.tool_call_id,
                    "tool_name": call.tool_name,
                    "output": error_text,
                    "is_error": True,
                }
            ],
        },
    ]


class ToolCallRepairer:
    """Asks the model for a corrected tool call."""

    def __init__(self, gateway: LanguageModelGateway, timeout: float = 30.0):
        self.gateway = gateway
        self.timeout = timeout

    async def repair(
        self,
        call: ToolCall,
        error: BaseException,
        messages: List[Dict[str, Any]],
        system_prompt: str,
        model: ModelHandle,
        tool_specs: Mapping[str, ToolSpec],
    ) -> Optional[ToolCall]:
        """Re-ask the model once.

        Returns:
            The corrected call under the original tool call id, or None when
            the model offered no tool call

        Raises:
            ToolRepairError: If the repair request itself failed
        """
        repair_messages = build_repair_messages(messages, call, str(error))
        try:
            step = await asyncio.wait_for(
                self._first_step(model, system_prompt, repair_messages, tool_specs),
                timeout=self.timeout,
            )
        except Exception as e:
            logger.warning(f"Tool call repair failed for {call.tool_name}: {e}")
            raise ToolRepairError(str(e), tool_name=call.tool_name, cause=e) from e

        if step is None or not step.tool_calls:
            logger.debug(f"Repair produced no tool call for {call.tool_name}")
            return None

        corrected = step.tool_calls[0]
        logger.info(f"Repaired tool call {call.tool_name} -> {corrected.tool_name}")
        return replace(corrected, tool_call_id=call.tool_call_id)

    async def _first_step(self, model, system_prompt, messages, tool_specs):
        stream = self.gateway.stream_steps(model, system_prompt, messages, tool_specs)
        try:
            return await stream.__anext__()
        except StopAsyncIteration:
            return None
        finally:
            await close_stream(stream)
