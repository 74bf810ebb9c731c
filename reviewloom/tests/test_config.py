"""Tests for settings loading (defaults, YAML file, environment)."""

import pytest

from reviewloom.core.config import DEFAULT_PROVIDER_COMMANDS, Settings, load_settings


class TestLoadSettings:

    def test_defaults_without_file(self, tmp_path):
        settings = load_settings(tmp_path / "missing.yaml", environ={})
        assert settings.default_provider == "claude"
        assert settings.max_active_jobs == 8
        assert settings.provider_commands == DEFAULT_PROVIDER_COMMANDS

    def test_yaml_values(self, tmp_path):
        config = tmp_path / "config.yaml"
        config.write_text(
            "provider: gemini\n"
            "model: pro\n"
            "max_observers_per_job: 4\n"
            "provider_commands:\n"
            "  local: [my-llm, --model, '{model}']\n"
            "unknown_key: 1\n"
        )

        settings = load_settings(config, environ={})

        assert settings.default_provider == "gemini"
        assert settings.default_model == "pro"
        assert settings.max_observers_per_job == 4
        assert settings.provider_commands["local"] == ["my-llm", "--model", "{model}"]
        assert "claude" in settings.provider_commands

    def test_env_overrides_yaml(self, tmp_path):
        config = tmp_path / "config.yaml"
        config.write_text("max_active_jobs: 2\n")

        settings = load_settings(config, environ={
            "REVIEWLOOM_MAX_ACTIVE_JOBS": "5",
            "REVIEWLOOM_LEVEL_TIMEOUT": "12.5",
            "DATABASE_URL": "sqlite://",
        })

        assert settings.max_active_jobs == 5
        assert settings.level_timeout_seconds == 12.5
        assert settings.database_url == "sqlite://"

    def test_config_path_from_env(self, tmp_path):
        config = tmp_path / "alt.yaml"
        config.write_text("default_model: haiku\n")
        settings = load_settings(environ={"REVIEWLOOM_CONFIG": str(config)})
        assert settings.default_model == "haiku"

    def test_non_mapping_rejected(self, tmp_path):
        config = tmp_path / "config.yaml"
        config.write_text("- a\n- b\n")
        with pytest.raises(ValueError):
            load_settings(config, environ={})

    def test_provider_commands_not_shared(self):
        Settings().provider_commands["x"] = ["x"]
        assert "x" not in Settings().provider_commands
