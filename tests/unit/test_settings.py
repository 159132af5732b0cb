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

"""Tests for engine settings."""

import pydantic
import pytest

from taskpilot.config.settings import Settings, get_settings, reset_settings
from taskpilot.core.errors import ConfigurationError


class TestSettingsDefaults:
    """Tests for default values."""

    def test_defaults(self):
        """Test the documented defaults."""
        settings = Settings()
        assert settings.complexity_threshold == 0.7
        assert settings.user_feedback_threshold == 2
        assert settings.tool_call_repair is True
        assert settings.hybrid_classification is False
        assert settings.finalize_tool_name == "task_complete"
        assert "write_file" in settings.file_mutating_tools

    def test_classifier_model_falls_back_to_weak_model(self):
        """Test the classifier model defaults to the weak model."""
        assert Settings(weak_model="small").effective_classifier_model == "small"
        assert (
            Settings(weak_model="small", classifier_model="tiny").effective_classifier_model
            == "tiny"
        )

    def test_file_mutating_tools_not_shared(self):
        """Test each instance gets its own tool list."""
        first = Settings()
        first.file_mutating_tools.append("custom_writer")
        assert "custom_writer" not in Settings().file_mutating_tools


class TestSettingsEnvironment:
    """Tests for environment variable overrides."""

    def test_env_prefix(self, monkeypatch):
        """Test TASKPILOT_* variables override defaults."""
        monkeypatch.setenv("TASKPILOT_COMPLEXITY_THRESHOLD", "0.5")
        monkeypatch.setenv("TASKPILOT_WEAK_MODEL", "local-small")
        settings = Settings()
        assert settings.complexity_threshold == 0.5
        assert settings.weak_model == "local-small"

    def test_env_is_case_insensitive(self, monkeypatch):
        """Test lower-case variable names are accepted."""
        monkeypatch.setenv("taskpilot_retry_delay", "2.5")
        assert Settings().retry_delay == 2.5

    def test_kwargs_beat_env(self, monkeypatch):
        """Test explicit arguments take precedence over the environment."""
        monkeypatch.setenv("TASKPILOT_STRONG_MODEL", "from-env")
        assert Settings(strong_model="explicit").strong_model == "explicit"


class TestSettingsValidation:
    """Tests for field validators."""

    @pytest.mark.parametrize("value", [-0.1, 1.5])
    def test_threshold_out_of_range(self, value):
        """Test the complexity threshold must lie in [0, 1]."""
        with pytest.raises(pydantic.ValidationError):
            Settings(complexity_threshold=value)

    @pytest.mark.parametrize("value", [0.0, 1.0])
    def test_threshold_bounds_accepted(self, value):
        """Test the closed interval bounds are valid."""
        assert Settings(complexity_threshold=value).complexity_threshold == value

    @pytest.mark.parametrize("field", ["response_timeout", "classifier_timeout", "tool_timeout"])
    def test_timeouts_must_be_positive(self, field):
        """Test zero timeouts are rejected."""
        with pytest.raises(pydantic.ValidationError):
            Settings(**{field: 0})

    def test_feedback_threshold_at_least_one(self):
        """Test the user feedback threshold cannot be zero."""
        with pytest.raises(pydantic.ValidationError):
            Settings(user_feedback_threshold=0)

    def test_negative_delay_rejected(self):
        """Test delays cannot be negative."""
        with pytest.raises(pydantic.ValidationError):
            Settings(retry_delay=-1)


class TestSettingsYaml:
    """Tests for YAML profiles."""

    def test_from_yaml(self, tmp_path):
        """Test values are loaded from a YAML mapping."""
        profile = tmp_path / "taskpilot.yaml"
        profile.write_text("weak_model: small\nretry_delay: 0.5\nfile_mutating_tools: [save]\n")
        settings = Settings.from_yaml(profile)
        assert settings.weak_model == "small"
        assert settings.retry_delay == 0.5
        assert settings.file_mutating_tools == ["save"]

    def test_overrides_beat_file(self, tmp_path):
        """Test keyword overrides win over file values."""
        profile = tmp_path / "taskpilot.yaml"
        profile.write_text("weak_model: small\n")
        assert Settings.from_yaml(profile, weak_model="other").weak_model == "other"

    def test_empty_file_gives_defaults(self, tmp_path):
        """Test an empty profile yields the defaults."""
        profile = tmp_path / "empty.yaml"
        profile.write_text("")
        assert Settings.from_yaml(profile).complexity_threshold == 0.7

    def test_missing_file(self, tmp_path):
        """Test a missing profile raises ConfigurationError."""
        with pytest.raises(ConfigurationError, match="not found"):
            Settings.from_yaml(tmp_path / "missing.yaml")

    def test_non_mapping(self, tmp_path):
        """Test a YAML list is rejected."""
        profile = tmp_path / "list.yaml"
        profile.write_text("- one\n- two\n")
        with pytest.raises(ConfigurationError, match="mapping"):
            Settings.from_yaml(profile)

    def test_invalid_yaml(self, tmp_path):
        """Test malformed YAML raises ConfigurationError."""
        profile = tmp_path / "broken.yaml"
        profile.write_text("weak_model: [unclosed\n")
        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            Settings.from_yaml(profile)


class TestGetSettings:
    """Tests for the process default settings."""

    def test_cached(self):
        """Test get_settings returns the same instance until reset."""
        first = get_settings()
        assert get_settings() is first
        reset_settings()
        assert get_settings() is not first
