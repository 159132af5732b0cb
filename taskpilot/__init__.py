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

"""TaskPilot - agentic task orchestration engine.

Drives a language model through a bounded sequence of tool-using steps, sized
by the estimated complexity of the request, with classified failure recovery
and per-run state and metrics tracking.
"""

__version__ = "0.1.0"
__author__ = "Vijaykumar Singh"
__email__ = "singhvjd@gmail.com"
__license__ = "Apache-2.0"

from taskpilot.agent.events import AgentRun, FinalResult, RunCallbacks
from taskpilot.agent.service import AgenticTaskService
from taskpilot.agent.stores import EngineStore
from taskpilot.config.settings import Settings

__all__ = [
    "AgentRun",
    "AgenticTaskService",
    "EngineStore",
    "FinalResult",
    "RunCallbacks",
    "Settings",
]
