"""Unit tests for jarvis.config: Settings loading, defaults and validation."""

import pytest
from pydantic import ValidationError

from jarvis.config import Settings


class TestSettingsDefaults:
    """Verify that Settings loads correct defaults when no env is set."""

    def test_agent_budgets(self):
        s = Settings(_env_file=None)
        assert s.agent_enabled is True
        assert s.max_steps == 5
        assert s.timeout_ms == 15_000
        assert s.timeout_seconds == 15.0

    def test_memory_defaults(self):
        s = Settings(_env_file=None)
        assert s.memory_enabled is True
        assert s.similarity_threshold == 0.65
        assert s.max_episodes_to_retrieve == 5
        assert s.search_window == 100
        assert s.retention_days == 90
        assert s.cleanup_batch_size == 50

    def test_scale_thresholds(self):
        s = Settings(_env_file=None)
        assert s.scale_warning_threshold == 800
        assert s.scale_critical_threshold == 1500

    def test_default_ollama_models(self):
        s = Settings(_env_file=None)
        assert s.ollama_base_url == "http://localhost:11434"
        assert s.ollama_embed_model == "nomic-embed-text"

    def test_qdrant_disabled_by_default(self):
        s = Settings(_env_file=None)
        assert s.qdrant_url == ""

    def test_write_tools_need_confirmation(self):
        s = Settings(_env_file=None)
        for name in ("add_order", "create_note", "update_vitals"):
            assert s.needs_confirmation(name)
        assert not s.needs_confirmation("get_patient_summary")


class TestSettingsOverride:
    """Verify that Settings picks up JARVIS_* environment overrides."""

    def test_override_max_steps(self, monkeypatch):
        monkeypatch.setenv("JARVIS_MAX_STEPS", "3")
        assert Settings(_env_file=None).max_steps == 3

    def test_override_agent_disabled(self, monkeypatch):
        monkeypatch.setenv("JARVIS_AGENT_ENABLED", "false")
        assert Settings(_env_file=None).agent_enabled is False

    def test_override_confirmation_policy(self, monkeypatch):
        monkeypatch.setenv("JARVIS_REQUIRE_CONFIRMATION", '{"add_order": false}')
        s = Settings(_env_file=None)
        assert not s.needs_confirmation("add_order")

    def test_unprefixed_variable_ignored(self, monkeypatch):
        monkeypatch.setenv("MAX_STEPS", "9")
        assert Settings(_env_file=None).max_steps == 5


class TestSettingsValidation:
    """Budgets the loop cannot honour are rejected at load time."""

    @pytest.mark.parametrize(
        "field, value",
        [
            ("max_steps", 0),
            ("timeout_ms", 0),
            ("similarity_threshold", 1.5),
            ("max_episodes_to_retrieve", 0),
            ("retention_days", -1),
        ],
    )
    def test_rejects_invalid_budget(self, field, value):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, **{field: value})

    def test_rejects_inverted_scale_thresholds(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, scale_warning_threshold=2000, scale_critical_threshold=1500)
