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

"""Configuration management for the orchestration engine.

Values come from (highest priority first): explicit keyword arguments,
``TASKPILOT_*`` environment variables, a ``.env`` file, then the defaults
below. ``Settings.from_yaml`` layers a YAML profile on top of the defaults.
"""

import logging
import os
from pathlib import Path
from typing import List, Optional, Union

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from taskpilot.core.errors import ConfigurationError

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Main engine settings."""

    model_config = SettingsConfigDict(
        env_prefix="TASKPILOT_",
        env_file=".env" if not os.getenv("TASKPILOT_SKIP_ENV_FILE") else None,
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Model selection
    strong_model: str = "gpt-4"
    weak_model: str = "gpt-4o-mini"
    fallback_model: str = "gpt-4o-mini"
    complexity_threshold: float = 0.7
    # Switch to the strong model mid-run for long Moderate+ conversations
    dynamic_model_escalation: bool = True
    escalation_min_step: int = 2
    escalation_min_messages: int = 10

    # Timeouts (seconds)
    response_timeout: float = 30.0
    classifier_timeout: float = 5.0
    tool_timeout: float = 60.0

    # Complexity classification
    hybrid_classification: bool = False
    classifier_model: Optional[str] = None  # Falls back to weak_model
    classification_cache_ttl: float = 3600.0
    classification_cache_size: int = 512

    # Error recovery
    user_feedback_threshold: int = 2
    retry_delay: float = 1.0
    tool_call_repair: bool = True

    # State store expiry
    state_max_age: float = 86400.0
    sweep_interval: float = 3600.0

    # Pacing between steps
    step_delay: float = 0.0
    token_rate_warning: int = 10000
    token_rate_critical: int = 15000
    token_rate_window: float = 60.0
    token_rate_warning_delay: float = 3.0
    token_rate_critical_delay: float = 25.0

    # Tier-specific stop conditions
    finalize_tool_name: str = "task_complete"
    completion_marker: str = "TASK_COMPLETE"

    # Tools whose path argument counts as a modified file
    file_mutating_tools: List[str] = Field(
        default_factory=lambda: [
            "write_file",
            "replace",
            "edit_file",
            "create_file",
            "delete_file",
        ]
    )

    # Logging
    log_level: str = "INFO"

    @field_validator("complexity_threshold")
    @classmethod
    def validate_threshold(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError(f"complexity_threshold must be between 0 and 1, got {v}")
        return v

    @field_validator("response_timeout", "classifier_timeout", "tool_timeout")
    @classmethod
    def validate_timeouts(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"timeouts must be positive, got {v}")
        return v

    @field_validator("user_feedback_threshold")
    @classmethod
    def validate_feedback_threshold(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"user_feedback_threshold must be at least 1, got {v}")
        return v

    @field_validator(
        "retry_delay",
        "step_delay",
        "token_rate_warning_delay",
        "token_rate_critical_delay",
        "classification_cache_ttl",
    )
    @classmethod
    def validate_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError(f"delays and TTLs cannot be negative, got {v}")
        return v

    @property
    def effective_classifier_model(self) -> str:
        """Model used for hybrid complexity classification."""
        return self.classifier_model or self.weak_model

    @classmethod
    def from_yaml(cls, path: Union[str, Path], **overrides) -> "Settings":
        """Load settings from a YAML profile.

        Args:
            path: Path to a YAML mapping of setting names to values
            **overrides: Values taking precedence over the file

        Raises:
            ConfigurationError: If the file is missing or not a mapping
        """
        profile = Path(path)
        if not profile.exists():
            raise ConfigurationError(f"Settings file not found: {profile}")

        try:
            with open(profile, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {profile}: {e}", cause=e) from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"Settings file must contain a mapping: {profile}")

        data.update(overrides)
        logger.debug(f"Loaded {len(data)} settings from {profile}")
        return cls(**data)


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the process default settings, loading them on first use."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached default settings (used by tests)."""
    global _settings
    _settings = None
