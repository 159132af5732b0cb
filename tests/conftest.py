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

"""Shared pytest fixtures and configuration."""

import pytest

from taskpilot.config.settings import reset_settings


@pytest.fixture(autouse=True)
def isolate_environment_variables(monkeypatch):
    """Isolate tests from TASKPILOT_* environment variables and .env files.

    Settings read from the environment, so a developer's shell or a stray
    .env file must not change what the tests see.
    """
    monkeypatch.setenv("TASKPILOT_SKIP_ENV_FILE", "1")

    settings_vars = [
        "TASKPILOT_STRONG_MODEL",
        "TASKPILOT_WEAK_MODEL",
        "TASKPILOT_FALLBACK_MODEL",
        "TASKPILOT_COMPLEXITY_THRESHOLD",
        "TASKPILOT_HYBRID_CLASSIFICATION",
        "TASKPILOT_RETRY_DELAY",
        "TASKPILOT_STEP_DELAY",
        "TASKPILOT_USER_FEEDBACK_THRESHOLD",
        "TASKPILOT_LOG_LEVEL",
    ]
    for var in settings_vars:
        monkeypatch.delenv(var, raising=False)

    reset_settings()
    yield
    reset_settings()
