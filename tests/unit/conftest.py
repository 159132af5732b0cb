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

"""Pytest fixtures for unit tests."""

import pytest

from taskpilot.agent.stores import EngineStore
from taskpilot.config.settings import Settings
from taskpilot.core.clock import ManualClock
from tests.mocks.gateway_mocks import FakeRegistry, RecordingSleep


@pytest.fixture
def clock() -> ManualClock:
    """A clock that only moves when the test advances it."""
    return ManualClock()


@pytest.fixture
def settings() -> Settings:
    """Settings without retry or pacing delays."""
    return Settings(retry_delay=0.0, step_delay=0.0)


@pytest.fixture
def store(settings: Settings, clock: ManualClock) -> EngineStore:
    """Engine store driven by the manual clock. The sweep task is not started."""
    return EngineStore(settings, clock=clock)


@pytest.fixture
def registry() -> FakeRegistry:
    return FakeRegistry()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()
