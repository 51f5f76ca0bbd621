"""Tests for configuration loading and validation."""

import pytest

from orchestrator.config import (
    AppConfig,
    LogLevel,
    StorageBackend,
    get_config,
    get_development_config,
    get_production_config,
    get_testing_config,
    load_config,
    reset_config,
    validate_config,
)


@pytest.fixture(autouse=True)
def fresh_config():
    reset_config()
    yield
    reset_config()


class TestFromEnv:

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("WORKFLOW_ENGINE_PORT", raising=False)
        config = AppConfig.from_env()
        assert config.port == 8000
        assert config.storage_backend == StorageBackend.MEMORY
        assert config.retention_days == 30

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("WORKFLOW_ENGINE_PORT", "9100")
        monkeypatch.setenv("WORKFLOW_ENGINE_STORAGE_BACKEND", "SQL")
        monkeypatch.setenv("WORKFLOW_ENGINE_DEBUG", "yes")
        monkeypatch.setenv("WORKFLOW_ENGINE_LOG_LEVEL", "debug")
        monkeypatch.setenv("WORKFLOW_ENGINE_TICK_INTERVAL", "0.25")
        monkeypatch.setenv("WORKFLOW_ENGINE_CORS_ORIGINS", "http://a.test,http://b.test")
        monkeypatch.setenv("WORKFLOW_ENGINE_ENABLE_HISTORICAL_DATA_CLEANUP", "false")

        config = AppConfig.from_env()

        assert config.port == 9100
        assert config.storage_backend == StorageBackend.SQL
        assert config.debug is True
        assert config.log_level == LogLevel.DEBUG
        assert config.tick_interval == 0.25
        assert config.cors_origins == ["http://a.test", "http://b.test"]
        assert config.retention_days is None

    def test_invalid_values_are_rejected(self, monkeypatch):
        monkeypatch.setenv("WORKFLOW_ENGINE_PORT", "70000")
        with pytest.raises(ValueError):
            AppConfig.from_env()

    def test_unsupported_database_scheme(self):
        with pytest.raises(ValueError):
            AppConfig(database_url="oracle://db")

    def test_global_config_is_cached(self):
        assert get_config() is get_config()


class TestLoadConfig:

    def test_reads_dotenv_file(self, monkeypatch, tmp_path):
        # Registered first so the variable is removed again on teardown
        monkeypatch.setenv("WORKFLOW_ENGINE_MAX_CONCURRENT_INSTANCES", "1")
        monkeypatch.delenv("WORKFLOW_ENGINE_MAX_CONCURRENT_INSTANCES")
        env_file = tmp_path / "orchestrator.env"
        env_file.write_text("WORKFLOW_ENGINE_MAX_CONCURRENT_INSTANCES=7\n")

        config = load_config(str(env_file))

        assert config.max_concurrent_instances == 7
        assert get_config() is config

    def test_missing_file_falls_back_to_environment(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("WORKFLOW_ENGINE_APP_NAME", "Placements")
        config = load_config(str(tmp_path / "missing.env"))
        assert config.app_name == "Placements"


class TestValidateConfig:

    def test_presets_are_valid(self):
        for config in (get_development_config(), get_testing_config()):
            validate_config(config)

    def test_presets(self):
        assert get_development_config().log_level == LogLevel.DEBUG
        production = get_production_config()
        assert production.storage_backend == StorageBackend.SQL
        assert production.structured_logging is True
        assert production.cors_origins == []
        testing = get_testing_config()
        assert testing.retention_days is None
        assert testing.max_concurrent_instances == 4

    def test_tick_interval_must_be_positive(self):
        config = get_testing_config()
        config.tick_interval = 0
        with pytest.raises(ValueError, match="Tick interval"):
            validate_config(config)

    def test_queue_bound_must_fit_the_pool(self):
        config = AppConfig(max_concurrent_instances=100, max_queued_instances=2)
        with pytest.raises(ValueError, match="Queue bound"):
            validate_config(config)

    def test_pool_sizes(self):
        with pytest.raises(ValueError):
            AppConfig(max_concurrent_instances=0)
        with pytest.raises(ValueError):
            AppConfig(default_timeout=0)
