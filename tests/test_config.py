"""
Tests for Configuration Loading
===============================
"""

import json
import os

import pytest

from sprintforge.config import CONFIG_FILENAME, OrchestrationConfig


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep SPRINTFORGE_* variables from the host out of these tests."""
    for key in list(os.environ):
        if key.startswith("SPRINTFORGE_"):
            monkeypatch.delenv(key)


class TestOrchestrationConfig:
    def test_defaults(self):
        config = OrchestrationConfig()
        assert config.learning_rate_success == 0.25
        assert config.learning_rate_failure == 0.15
        assert config.approval_threshold == 0.85
        assert config.max_recent_stories == 10
        assert config.default_capacity == 20
        assert config.memory_ttl_days is None

    def test_rejects_inverted_learning_rates(self):
        with pytest.raises(ValueError):
            OrchestrationConfig(learning_rate_success=0.1, learning_rate_failure=0.2)

    def test_rejects_out_of_range_confidence(self):
        with pytest.raises(ValueError):
            OrchestrationConfig(initial_confidence=1.5)

    def test_load_defaults_without_file(self, temp_project):
        assert OrchestrationConfig.load(temp_project) == OrchestrationConfig()

    def test_load_from_file(self, temp_project):
        (temp_project / CONFIG_FILENAME).write_text(json.dumps({
            "default_capacity": 13,
            "approval_threshold": 0.9,
            "not_a_setting": True,
        }))
        config = OrchestrationConfig.load(temp_project)
        assert config.default_capacity == 13
        assert config.approval_threshold == 0.9

    def test_invalid_file_falls_back_to_defaults(self, temp_project):
        (temp_project / CONFIG_FILENAME).write_text("{not json")
        assert OrchestrationConfig.load(temp_project) == OrchestrationConfig()

    def test_environment_overrides_file(self, temp_project, monkeypatch):
        (temp_project / CONFIG_FILENAME).write_text(json.dumps({"default_capacity": 13}))
        monkeypatch.setenv("SPRINTFORGE_DEFAULT_CAPACITY", "30")
        monkeypatch.setenv("SPRINTFORGE_LEARNING_RATE_SUCCESS", "0.3")
        monkeypatch.setenv("SPRINTFORGE_MEMORY_TTL_DAYS", "2.5")

        config = OrchestrationConfig.load(temp_project)
        assert config.default_capacity == 30
        assert config.learning_rate_success == 0.3
        assert config.memory_ttl_days == 2.5

    def test_environment_none(self, temp_project, monkeypatch):
        monkeypatch.setenv("SPRINTFORGE_DATABASE_URL", "none")
        assert OrchestrationConfig.load(temp_project).database_url is None

    def test_invalid_environment_value(self, temp_project, monkeypatch):
        monkeypatch.setenv("SPRINTFORGE_LEARNING_RATE_FAILURE", "0.9")
        with pytest.raises(ValueError):
            OrchestrationConfig.load(temp_project)
