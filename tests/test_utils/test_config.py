"""Tests for process configuration."""

import pytest

from ilm.utils.config import Config, Environment, get_config, reset_config


@pytest.fixture(autouse=True)
def fresh_config():
    reset_config()
    yield
    reset_config()


class TestEnvironmentEnum:
    """Tests for Environment enum."""

    def test_environment_enum_values(self):
        """Environment enum should have correct string values."""
        assert Environment.DEVELOPMENT.value == "development"
        assert Environment.STAGING.value == "staging"
        assert Environment.PRODUCTION.value == "production"

    def test_config_environment_from_env(self, monkeypatch):
        """Config should read environment from ILM_ENVIRONMENT."""
        monkeypatch.setenv("ILM_ENVIRONMENT", "production")

        assert get_config().environment == Environment.PRODUCTION

    def test_config_environment_defaults_to_development(self, monkeypatch):
        """Config should default to development environment."""
        monkeypatch.delenv("ILM_ENVIRONMENT", raising=False)

        assert get_config().environment == Environment.DEVELOPMENT

    def test_invalid_environment_falls_back(self, monkeypatch):
        """Unknown environments fall back to development."""
        monkeypatch.setenv("ILM_ENVIRONMENT", "moon")

        assert get_config().environment == Environment.DEVELOPMENT

    def test_config_debug_mode_by_environment(self):
        """debug_mode should be True only for development."""
        assert Config(environment=Environment.DEVELOPMENT).debug_mode is True
        assert Config(environment=Environment.STAGING).debug_mode is False
        assert Config(environment=Environment.PRODUCTION).debug_mode is False


class TestConfigFromEnv:
    """Tests for Config.from_env."""

    def test_reads_process_settings(self, monkeypatch, tmp_path):
        """Database path, log level and ops binding come from the environment."""
        db_path = str(tmp_path / "env.duckdb")
        monkeypatch.setenv("ILM_DB_PATH", db_path)
        monkeypatch.setenv("ILM_LOG_LEVEL", "debug")
        monkeypatch.setenv("ILM_OPS_HOST", "127.0.0.1")
        monkeypatch.setenv("ILM_OPS_PORT", "9090")

        config = Config.from_env()

        assert config.db_path == db_path
        assert config.log_level == "DEBUG"
        assert (config.ops_host, config.ops_port) == ("127.0.0.1", 9090)

    def test_get_config_is_cached(self, monkeypatch):
        """get_config returns the same instance until reset."""
        first = get_config()
        monkeypatch.setenv("ILM_LOG_LEVEL", "ERROR")

        assert get_config() is first
        reset_config()
        assert get_config().log_level == "ERROR"
