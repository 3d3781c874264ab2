"""Configuration management for the taskflow engine."""

import os
import uuid
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class DatabaseType(str, Enum):
    """Supported database types."""
    SQLITE = "sqlite"
    POSTGRESQL = "postgresql"
    MYSQL = "mysql"


ENV_PREFIX = "TASKFLOW_"


class AppConfig(BaseModel):
    """Application configuration settings."""

    # Application settings
    app_name: str = Field(default="taskflow", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    debug: bool = Field(default=False, description="Enable debug mode")

    # Server settings
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port")
    reload: bool = Field(default=False, description="Enable auto-reload in development")

    # Database settings
    database_url: str = Field(default="sqlite:///./taskflow.db", description="Database connection URL")
    database_echo: bool = Field(default=False, description="Enable SQLAlchemy query logging")

    # Scheduler settings
    engine_instance_id: str = Field(
        default_factory=lambda: f"engine-{uuid.uuid4().hex[:8]}",
        description="Identity written into attempt leases"
    )
    max_concurrent_nodes: int = Field(default=10, description="Executor calls running at once")
    executor_pool_size: Optional[int] = Field(
        default=None,
        description="Executor worker threads; defaults to four per concurrent node"
    )
    scheduler_workers: int = Field(default=2, description="Threads processing scheduler events")
    tick_interval: float = Field(default=0.5, description="Seconds between scheduling passes")
    heartbeat_interval: float = Field(default=5.0, description="Seconds between lease renewals")
    lease_timeout: float = Field(default=30.0, description="Heartbeat age after which an attempt is reclaimed")
    recovery_interval: float = Field(default=10.0, description="Seconds between recovery sweeps")
    autostart_scheduler: bool = Field(default=True, description="Start scheduler threads with the app")

    # Logging settings
    log_level: LogLevel = Field(default=LogLevel.INFO, description="Logging level")
    log_format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log message format"
    )
    log_structured: bool = Field(default=False, description="Emit JSON log lines")
    log_file: Optional[str] = Field(default=None, description="Log file path")
    log_max_size: int = Field(default=10485760, description="Maximum log file size in bytes")
    log_backup_count: int = Field(default=5, description="Number of log backup files to keep")

    # Security settings
    cors_origins: list = Field(default=["*"], description="CORS allowed origins")
    cors_methods: list = Field(default=["GET", "POST", "PUT", "DELETE"], description="CORS allowed methods")

    @field_validator('database_url')
    @classmethod
    def validate_database_url(cls, v):
        """Validate database URL format."""
        if not v:
            raise ValueError("Database URL cannot be empty")
        scheme = v.split('://')[0].lower().split('+')[0]
        supported_schemes = [t.value for t in DatabaseType]
        if scheme not in supported_schemes:
            raise ValueError(f"Unsupported database scheme: {scheme}. Supported: {supported_schemes}")
        return v

    @field_validator('port')
    @classmethod
    def validate_port(cls, v):
        if not 1 <= v <= 65535:
            raise ValueError("Port must be between 1 and 65535")
        return v

    @field_validator('max_concurrent_nodes', 'scheduler_workers')
    @classmethod
    def validate_positive(cls, v):
        if v < 1:
            raise ValueError("Value must be at least 1")
        return v

    @field_validator('tick_interval', 'heartbeat_interval', 'lease_timeout', 'recovery_interval')
    @classmethod
    def validate_intervals(cls, v):
        if v <= 0:
            raise ValueError("Intervals must be positive")
        return v

    @model_validator(mode='after')
    def validate_lease_timing(self):
        """A lease must outlive several heartbeats or healthy attempts get reclaimed."""
        if self.lease_timeout <= self.heartbeat_interval:
            raise ValueError("lease_timeout must be greater than heartbeat_interval")
        if self.executor_pool_size is not None and self.executor_pool_size < self.max_concurrent_nodes:
            raise ValueError("executor_pool_size must be at least max_concurrent_nodes")
        return self

    @property
    def database_type(self) -> DatabaseType:
        """Get the database type from the URL."""
        scheme = self.database_url.split('://')[0].lower()
        if scheme == 'sqlite':
            return DatabaseType.SQLITE
        elif scheme.startswith('postgresql'):
            return DatabaseType.POSTGRESQL
        elif scheme.startswith('mysql'):
            return DatabaseType.MYSQL
        raise ValueError(f"Unknown database type: {scheme}")

    @property
    def is_sqlite(self) -> bool:
        return self.database_type == DatabaseType.SQLITE

    def get_uvicorn_config(self) -> Dict[str, Any]:
        """Get Uvicorn server configuration."""
        return {
            "host": self.host,
            "port": self.port,
            "reload": self.reload,
            "log_level": self.log_level.value.lower(),
            "access_log": self.debug
        }

    @classmethod
    def from_env(cls) -> 'AppConfig':
        """Create configuration from ``TASKFLOW_*`` environment variables."""
        def get_env(key: str, default=None, type_func=str):
            value = os.getenv(f"{ENV_PREFIX}{key}")
            if value is None:
                return default
            if type_func == bool:
                return str(value).lower() in ('true', '1', 'yes', 'on')
            elif type_func == list:
                return value.split(',') if value else default
            return type_func(value)

        values = dict(
            app_name=get_env("APP_NAME", "taskflow"),
            app_version=get_env("APP_VERSION", "1.0.0"),
            debug=get_env("DEBUG", False, bool),
            host=get_env("HOST", "0.0.0.0"),
            port=get_env("PORT", 8000, int),
            reload=get_env("RELOAD", False, bool),
            database_url=get_env("DATABASE_URL", "sqlite:///./taskflow.db"),
            database_echo=get_env("DATABASE_ECHO", False, bool),
            max_concurrent_nodes=get_env("MAX_CONCURRENT_NODES", 10, int),
            executor_pool_size=get_env("EXECUTOR_POOL_SIZE", None, int),
            scheduler_workers=get_env("SCHEDULER_WORKERS", 2, int),
            tick_interval=get_env("TICK_INTERVAL", 0.5, float),
            heartbeat_interval=get_env("HEARTBEAT_INTERVAL", 5.0, float),
            lease_timeout=get_env("LEASE_TIMEOUT", 30.0, float),
            recovery_interval=get_env("RECOVERY_INTERVAL", 10.0, float),
            autostart_scheduler=get_env("AUTOSTART_SCHEDULER", True, bool),
            log_level=LogLevel(get_env("LOG_LEVEL", "INFO").upper()),
            log_format=get_env("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s"),
            log_structured=get_env("LOG_STRUCTURED", False, bool),
            log_file=get_env("LOG_FILE", None),
            log_max_size=get_env("LOG_MAX_SIZE", 10485760, int),
            log_backup_count=get_env("LOG_BACKUP_COUNT", 5, int),
            cors_origins=get_env("CORS_ORIGINS", ["*"], list),
            cors_methods=get_env("CORS_METHODS", ["GET", "POST", "PUT", "DELETE"], list),
        )
        engine_instance_id = get_env("ENGINE_INSTANCE_ID", None)
        if engine_instance_id:
            values["engine_instance_id"] = engine_instance_id
        return cls(**values)


# Global configuration instance
_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = AppConfig.from_env()
    return _config


def load_config(config_file: Optional[str] = None) -> AppConfig:
    """Load configuration from a .env file (if any) and the environment."""
    global _config
    from dotenv import load_dotenv

    if config_file and os.path.exists(config_file):
        load_dotenv(config_file)
    elif os.path.exists('.env'):
        load_dotenv('.env')

    _config = AppConfig.from_env()
    return _config


def reset_config():
    """Reset the global configuration instance (mainly for testing)."""
    global _config
    _config = None


def validate_config(config: AppConfig) -> None:
    """Check the filesystem and resource settings of a configuration."""
    errors = []

    if config.is_sqlite and ":memory:" not in config.database_url:
        db_path = config.database_url.replace("sqlite:///", "")
        db_dir = os.path.dirname(db_path)
        if db_dir and not os.path.exists(db_dir):
            try:
                os.makedirs(db_dir, exist_ok=True)
            except OSError as e:
                errors.append(f"Cannot create database directory {db_dir}: {e}")

    if config.log_file:
        log_dir = os.path.dirname(config.log_file)
        if log_dir and not os.path.exists(log_dir):
            try:
                os.makedirs(log_dir, exist_ok=True)
            except OSError as e:
                errors.append(f"Cannot create log directory {log_dir}: {e}")

    if config.max_concurrent_nodes > 200:
        errors.append("max_concurrent_nodes above 200 is not supported by the thread pool executor")

    if errors:
        raise ValueError(f"Configuration validation failed: {'; '.join(errors)}")


def get_testing_config() -> AppConfig:
    """In-memory database and a scheduler driven by the caller."""
    return AppConfig(
        debug=True,
        database_url="sqlite:///:memory:",
        log_level=LogLevel.WARNING,
        max_concurrent_nodes=4,
        scheduler_workers=1,
        tick_interval=0.05,
        heartbeat_interval=1.0,
        lease_timeout=5.0,
        recovery_interval=1.0,
        autostart_scheduler=False
    )
