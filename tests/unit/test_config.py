"""
Tests for config/settings.py — field validators, validate_all(), loader.
"""

import pytest
import yaml
from pydantic import ValidationError

from chatpilot.config.settings import (
    AgentConfig,
    ConfigError,
    LoggingConfig,
    Settings,
    get_settings,
    load_settings,
)


# ── Sub-models ────────────────────────────────────────────────────────────────

class TestAgentConfig:
    def test_defaults(self):
        cfg = AgentConfig()
        assert cfg.idle_timeout_seconds == 8 * 60 * 60
        assert cfg.reaper_interval_seconds == 5.0
        assert cfg.stream_update_every == 15

    def test_zero_timeout_rejected(self):
        with pytest.raises(ValidationError):
            AgentConfig(idle_timeout_seconds=0)

    def test_negative_interval_rejected(self):
        with pytest.raises(ValidationError):
            AgentConfig(reaper_interval_seconds=-1)

    def test_zero_update_every_rejected(self):
        with pytest.raises(ValidationError):
            AgentConfig(stream_update_every=0)


class TestLoggingConfig:
    def test_level_is_normalised(self):
        assert LoggingConfig(level="debug").level == "DEBUG"

    def test_unknown_level_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            LoggingConfig(level="VERBOSE")
        assert "VERBOSE" in str(exc_info.value)


class TestAssistantConfig:
    def test_blank_model_rejected(self):
        with pytest.raises(ValidationError):
            Settings(assistant={"model": "   "})


# ── Root settings ─────────────────────────────────────────────────────────────

class TestSettings:
    def test_secrets_from_env(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
        monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "123:abc")
        settings = Settings()
        assert settings.openai_api_key == "sk-env"
        assert settings.telegram_bot_token == "123:abc"

    def test_no_secrets_by_default(self):
        settings = Settings()
        assert settings.openai_api_key is None
        assert settings.telegram_bot_token is None

    def test_authorized_ids_merge(self):
        settings = Settings(TELEGRAM_USER_ID="42", telegram={"authorized_user_ids": [7, 42]})
        assert settings.authorized_telegram_ids == [7, 42]

        settings = Settings(TELEGRAM_USER_ID="99", telegram={"authorized_user_ids": [7]})
        assert settings.authorized_telegram_ids == [7, 99]

    def test_empty_user_id_is_none(self):
        assert Settings(TELEGRAM_USER_ID="").telegram_user_id is None


class TestValidateAll:
    def test_valid_telegram_config(self):
        Settings(OPENAI_API_KEY="sk-test", TELEGRAM_BOT_TOKEN="123:abc").validate_all("telegram")

    def test_cli_does_not_need_bot_token(self):
        Settings(OPENAI_API_KEY="sk-test").validate_all("cli")

    def test_every_problem_is_listed(self):
        settings = Settings(agent={"idle_timeout_seconds": 2, "reaper_interval_seconds": 10})
        with pytest.raises(ConfigError) as exc_info:
            settings.validate_all("telegram")

        message = str(exc_info.value)
        assert "3 configuration problem(s)" in message
        assert "OPENAI_API_KEY" in message
        assert "TELEGRAM_BOT_TOKEN" in message
        assert "reaper_interval_seconds" in message

    def test_unknown_interface(self):
        with pytest.raises(ConfigError) as exc_info:
            Settings(OPENAI_API_KEY="sk-test").validate_all("irc")
        assert "irc" in str(exc_info.value)


# ── Loader ────────────────────────────────────────────────────────────────────

class TestLoadSettings:
    def _write(self, path, data):
        path.write_text(yaml.safe_dump(data), encoding="utf-8")
        return path

    def test_yaml_sections_are_loaded(self, tmp_path):
        path = self._write(tmp_path / "config.yaml", {
            "assistant": {"model": "gpt-4o-mini"},
            "agent": {"stream_update_every": 5},
            "unknown_section": {"ignored": True},
        })
        settings = load_settings(path)

        assert settings.assistant.model == "gpt-4o-mini"
        assert settings.agent.stream_update_every == 5

    def test_env_var_points_at_config(self, tmp_path, monkeypatch):
        path = self._write(tmp_path / "other.yaml", {"logging": {"level": "warning"}})
        monkeypatch.setenv("CHATPILOT_CONFIG", str(path))

        assert load_settings().log_level == "WARNING"

    def test_missing_file_gives_defaults(self, tmp_path):
        settings = load_settings(tmp_path / "absent.yaml")
        assert settings.assistant.model == "gpt-4o"

    def test_invalid_yaml_value_raises(self, tmp_path):
        path = self._write(tmp_path / "config.yaml", {"agent": {"idle_timeout_seconds": -5}})
        with pytest.raises(ValidationError):
            load_settings(path)

    def test_load_sets_current_settings(self, tmp_path):
        settings = load_settings(tmp_path / "absent.yaml")
        assert get_settings() is settings
