"""Configuration management for the Workflow Orchestrator."""

import os
from typing import Optional, Dict, Any
from pydantic import BaseModel, Field, field_validator
from enum import Enum


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class StorageBackend(str, Enum):
    """Where definitions and instances are kept."""
    MEMORY = "memory"
    SQL = "sql"


class AppConfig(BaseModel):
    """Application configuration settings. Durations without a unit suffix are in ms."""

    # Application settings
    app_name: str = Field(default="Workflow Orchestrator", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    debug: bool = Field(default=False, description="Enable debug mode")

    # Server settings
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port")
    reload: bool = Field(default=False, description="Enable auto-reload in development")

    # Storage settings
    storage_backend: StorageBackend = Field(default=StorageBackend.MEMORY, description="Persistence backend")
    database_url: str = Field(
        default="sqlite:///./workflow_orchestrator.db",
        description="Database connection URL (sql backend)"
    )
    database_echo: bool = Field(default=False, description="Enable SQLAlchemy query logging")

    # Execution engine settings
    max_concurrent_instances: int = Field(default=100, description="Instances advanced at the same time")
    max_queued_instances: int = Field(default=1000, description="Instances allowed to wait for a worker")
    max_parallel_branches: int = Field(default=10, description="Concurrent branches per batch")
    default_timeout: int = Field(default=300000, description="Default step timeout (ms)")
    retry_delay: int = Field(default=1000, description="Default retry delay (ms)")
    max_retries: int = Field(default=3, description="Default retry budget")
    strict_actions: bool = Field(default=False, description="Fail steps whose action type has no handler")
    tick_interval: float = Field(default=1.0, description="Seconds between clock ticks")

    # Cleanup settings
    cleanup_interval: int = Field(default=3600000, description="Interval between retention runs (ms)")
    enable_historical_data_cleanup: bool = Field(
        default=True,
        description="Enable automatic cleanup of finished instances"
    )
    historical_data_retention_days: int = Field(
        default=30,
        description="Number of days to retain finished instances"
    )

    # Logging settings
    enable_logging: bool = Field(default=True, description="Configure logging on startup")
    enable_metrics: bool = Field(default=True, description="Expose execution metrics on the health endpoint")
    log_level: LogLevel = Field(default=LogLevel.INFO, description="Logging level")
    log_format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log message format"
    )
    log_file: Optional[str] = Field(default=None, description="Log file path")
    log_max_size: int = Field(default=10485760, description="Maximum log file size in bytes")  # 10MB
    log_backup_count: int = Field(default=5, description="Number of log backup files to keep")
    structured_logging: bool = Field(default=False, description="Emit JSON log lines")

    # Request monitoring
    slow_request_threshold: float = Field(default=5.0, description="Requests slower than this (s) are logged")

    # Security settings
    cors_origins: list = Field(
        default=["*"],
        description="CORS allowed origins"
    )

    @field_validator('database_url')
    @classmethod
    def validate_database_url(cls, v):
        """Validate database URL format."""
        if not v:
            raise ValueError("Database URL cannot be empty")

        supported_schemes = ['sqlite', 'postgresql', 'mysql']
        scheme = v.split('://')[0].split('+')[0].lower()

        if scheme not in supported_schemes:
            raise ValueError(f"Unsupported database scheme: {scheme}. Supported: {supported_schemes}")

        return v

    @field_validator('port')
    @classmethod
    def validate_port(cls, v):
        """Validate port number."""
        if not 1 <= v <= 65535:
            raise ValueError("Port must be between 1 and 65535")
        return v

    @field_validator('max_concurrent_instances', 'max_parallel_branches')
    @classmethod
    def validate_pool_sizes(cls, v):
        if v < 1:
            raise ValueError("Pool sizes must be at least 1")
        return v

    @field_validator('default_timeout', 'cleanup_interval')
    @classmethod
    def validate_timeouts(cls, v):
        """Validate timeout values."""
        if v < 1:
            raise ValueError("Timeouts must be at least 1 ms")
        return v

    @field_validator('max_queued_instances', 'retry_delay', 'max_retries')
    @classmethod
    def validate_non_negative(cls, v):
        if v < 0:
            raise ValueError("Value cannot be negative")
        return v

    @property
    def is_sqlite(self) -> bool:
        """Check if using SQLite database."""
        return self.database_url.lower().startswith("sqlite")

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return not self.debug and not self.reload

    @property
    def retention_days(self) -> Optional[int]:
        return self.historical_data_retention_days if self.enable_historical_data_cleanup else None

    def get_database_connect_args(self) -> Dict[str, Any]:
        """Get database connection arguments based on database type."""
        if self.is_sqlite:
            return {"check_same_thread": False}
        return {}

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
        """Create configuration from WORKFLOW_ENGINE_* environment variables."""
        def get_env(key: str, default=None, type_func=str):
            """Get environment variable with type conversion."""
            value = os.getenv(f"WORKFLOW_ENGINE_{key}")
            if value is None:
                return default
            if type_func == bool:
                return str(value).lower() in ('true', '1', 'yes', 'on')
            elif type_func == list:
                return value.split(',') if value else default
            return type_func(value)

        return cls(
            app_name=get_env("APP_NAME", "Workflow Orchestrator"),
            app_version=get_env("APP_VERSION", "1.0.0"),
            debug=get_env("DEBUG", False, bool),
            host=get_env("HOST", "0.0.0.0"),
            port=get_env("PORT", 8000, int),
            reload=get_env("RELOAD", False, bool),
            storage_backend=StorageBackend(get_env("STORAGE_BACKEND", "memory").lower()),
            database_url=get_env("DATABASE_URL", "sqlite:///./workflow_orchestrator.db"),
            database_echo=get_env("DATABASE_ECHO", False, bool),
            max_concurrent_instances=get_env("MAX_CONCURRENT_INSTANCES", 100, int),
            max_queued_instances=get_env("MAX_QUEUED_INSTANCES", 1000, int),
            max_parallel_branches=get_env("MAX_PARALLEL_BRANCHES", 10, int),
            default_timeout=get_env("DEFAULT_TIMEOUT", 300000, int),
            retry_delay=get_env("RETRY_DELAY", 1000, int),
            max_retries=get_env("MAX_RETRIES", 3, int),
            strict_actions=get_env("STRICT_ACTIONS", False, bool),
            tick_interval=get_env("TICK_INTERVAL", 1.0, float),
            cleanup_interval=get_env("CLEANUP_INTERVAL", 3600000, int),
            enable_historical_data_cleanup=get_env("ENABLE_HISTORICAL_DATA_CLEANUP", True, bool),
            historical_data_retention_days=get_env("HISTORICAL_DATA_RETENTION_DAYS", 30, int),
            enable_logging=get_env("ENABLE_LOGGING", True, bool),
            enable_metrics=get_env("ENABLE_METRICS", True, bool),
            log_level=LogLevel(get_env("LOG_LEVEL", "INFO").upper()),
            log_format=get_env("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s"),
            log_file=get_env("LOG_FILE", None),
            log_max_size=get_env("LOG_MAX_SIZE", 10485760, int),
            log_backup_count=get_env("LOG_BACKUP_COUNT", 5, int),
            structured_logging=get_env("STRUCTURED_LOGGING", False, bool),
            slow_request_threshold=get_env("SLOW_REQUEST_THRESHOLD", 5.0, float),
            cors_origins=get_env("CORS_ORIGINS", ["*"], list),
        )


# Global configuration instance
_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = AppConfig.from_env()
    return _config


def load_config(config_file: Optional[str] = None) -> AppConfig:
    """Load configuration from a .env file (if present) and the environment."""
    global _config

    if config_file and os.path.exists(config_file):
        from dotenv import load_dotenv
        load_dotenv(config_file)
    elif os.path.exists('.env'):
        from dotenv import load_dotenv
        load_dotenv('.env')

    _config = AppConfig.from_env()

    return _config


def reset_config():
    """Reset the global configuration instance (mainly for testing)."""
    global _config
    _config = None


def validate_config(config: AppConfig) -> None:
    """Validate configuration settings that depend on the environment."""
    errors = []

    if config.storage_backend == StorageBackend.SQL and config.is_sqlite:
        db_path = config.database_url.split(":///", 1)[-1]
        db_dir = os.path.dirname(db_path)
        if db_path != ":memory:" and db_dir and not os.path.exists(db_dir):
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

    if config.max_queued_instances < config.max_concurrent_instances // 10:
        errors.append("Queue bound is very small compared to the worker pool")

    if config.tick_interval <= 0:
        errors.append("Tick interval must be positive")

    if errors:
        raise ValueError(f"Configuration validation failed: {'; '.join(errors)}")


# Environment-specific configurations
def get_development_config() -> AppConfig:
    """Get development configuration."""
    return AppConfig(
        debug=True,
        reload=True,
        log_level=LogLevel.DEBUG,
        database_echo=True
    )


def get_production_config() -> AppConfig:
    """Get production configuration."""
    return AppConfig(
        debug=False,
        reload=False,
        log_level=LogLevel.INFO,
        storage_backend=StorageBackend.SQL,
        structured_logging=True,
        cors_origins=[]  # Restrict CORS in production
    )


def get_testing_config() -> AppConfig:
    """Get testing configuration."""
    return AppConfig(
        debug=True,
        storage_backend=StorageBackend.MEMORY,
        database_url="sqlite:///:memory:",
        log_level=LogLevel.WARNING,
        max_concurrent_instances=4,
        max_queued_instances=50,
        max_parallel_branches=4,
        default_timeout=5000,
        retry_delay=1,
        tick_interval=0.05,
        enable_historical_data_cleanup=False
    )
