"""Tests for application configuration."""

import pytest
from pydantic import ValidationError

from taskflow.config import (
    AppConfig,
    DatabaseType,
    LogLevel,
    get_config,
    get_testing_config,
    reset_config,
    validate_config,
)


@pytest.fixture(autouse=True)
def fresh_config():
    reset_config()
    yield
    reset_config()


class TestAppConfig:
    """Environment loading and validation."""

    def test_defaults(self):
        config = AppConfig()

        assert config.database_type == DatabaseType.SQLITE
        assert config.engine_instance_id.startswith("engine-")
        assert config.lease_timeout > config.heartbeat_interval

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("TASKFLOW_MAX_CONCURRENT_NODES", "3")
        monkeypatch.setenv("TASKFLOW_AUTOSTART_SCHEDULER", "false")
        monkeypatch.setenv("TASKFLOW_LOG_LEVEL", "debug")
        monkeypatch.setenv("TASKFLOW_ENGINE_INSTANCE_ID", "engine-a")
        monkeypatch.setenv("TASKFLOW_CORS_ORIGINS", "http://a,http://b")

        config = get_config()

        assert config.max_concurrent_nodes == 3
        assert config.autostart_scheduler is False
        assert config.log_level == LogLevel.DEBUG
        assert config.engine_instance_id == "engine-a"
        assert config.cors_origins == ["http://a", "http://b"]

    def test_global_config_is_cached_until_reset(self, monkeypatch):
        monkeypatch.setenv("TASKFLOW_PORT", "9001")
        first = get_config()
        monkeypatch.setenv("TASKFLOW_PORT", "9002")

        assert get_config() is first
        reset_config()
        assert get_config().port == 9002

    def test_lease_must_outlive_heartbeat(self):
        with pytest.raises(ValidationError, match="lease_timeout"):
            AppConfig(heartbeat_interval=10.0, lease_timeout=10.0)

    def test_unsupported_database_scheme(self):
        with pytest.raises(ValidationError, match="Unsupported database scheme"):
            AppConfig(database_url="mongodb://localhost/taskflow")

    def test_positive_limits(self):
        with pytest.raises(ValidationError):
            AppConfig(max_concurrent_nodes=0)
        with pytest.raises(ValidationError):
            AppConfig(tick_interval=0)

    def test_validate_config_rejects_oversized_pool(self):
        with pytest.raises(ValueError, match="max_concurrent_nodes"):
            validate_config(AppConfig(database_url="sqlite:///:memory:", max_concurrent_nodes=500))

    def test_testing_preset(self):
        config = get_testing_config()

        validate_config(config)
        assert config.database_url == "sqlite:///:memory:"
        assert config.autostart_scheduler is False

    def test_executor_pool_cannot_undercut_the_ceiling(self):
        with pytest.raises(ValidationError, match="executor_pool_size"):
            AppConfig(max_concurrent_nodes=4, executor_pool_size=2)
        assert AppConfig(max_concurrent_nodes=4, executor_pool_size=4).executor_pool_size == 4
