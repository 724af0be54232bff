#!/usr/bin/env python3
"""
Centralized Configuration Module using Pydantic Settings

This module provides type-safe, environment-based configuration for the
insurance partner bridge: the HTTP correlator, the job workers and the
queue-depth autoscaler all read their knobs from here.

Architectural Decision: Pydantic Settings for type safety and validation
- Environment variable loading with .env support
- Type validation at startup (fail fast on misconfiguration)
- Nested section views (settings.redis, settings.autoscaler, ...)
- Easy testing with reload_settings()

Author: System Architect
Date: 2025-12-05
"""

from typing import Annotated, Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def split_queue_names(value):
    """Split a comma separated queue list; lists pass through unchanged."""
    if isinstance(value, str):
        return [name.strip() for name in value.split(",") if name.strip()]
    return value


class RedisSettings(BaseSettings):
    """
    Redis configuration for the shared expiring key-value store.

    STAGE-0.1: Redis connection configuration
    """

    REDIS_HOST: str = Field(default="localhost", description="Redis server host")
    REDIS_PORT: int = Field(default=6379, description="Redis server port")
    REDIS_DB: int = Field(default=0, description="Redis database number")
    REDIS_PASSWORD: str | None = Field(default=None, description="Redis password (if required)")
    REDIS_MAX_CONNECTIONS: int = Field(default=100, description="Maximum total connections")
    REDIS_SOCKET_TIMEOUT: int = Field(default=5, description="Socket timeout in seconds")
    REDIS_SOCKET_CONNECT_TIMEOUT: int = Field(default=5, description="Connection timeout in seconds")
    REDIS_HEALTH_CHECK_INTERVAL: int = Field(default=30, description="Health check interval in seconds")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class QueueSettings(BaseSettings):
    """
    Durable message queue configuration.

    STAGE-0.2: Queue backend selection

    Redis Streams is the default backend. Kafka is selected with QUEUE_TYPE=kafka.
    """

    QUEUE_TYPE: Literal["redis", "kafka"] = Field(default="redis", description="Queue backend")
    QUEUE_CONSUMER_GROUP: str = Field(default="workers", description="Consumer group for job queues")
    QUEUE_MAX_DEPTH: int = Field(default=10000, description="Max stream length before backpressure")
    QUEUE_BACKPRESSURE_THRESHOLD: float = Field(default=0.8, description="Warn above this utilization")
    QUEUE_BACKPRESSURE_MAX_RETRIES: int = Field(default=3, description="Produce retries when full")
    QUEUE_BACKPRESSURE_BASE_DELAY: float = Field(default=0.1, description="Initial backpressure delay (s)")
    QUEUE_BACKPRESSURE_MAX_DELAY: float = Field(default=1.0, description="Max backpressure delay (s)")
    QUEUE_VISIBILITY_TIMEOUT_MS: int = Field(
        default=60000, description="Idle time before an unacked delivery is reclaimed"
    )
    KAFKA_BOOTSTRAP_SERVERS: str = Field(default="localhost:9092", description="Kafka brokers")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class CorrelatorSettings(BaseSettings):
    """
    HTTP-side request correlator timings.

    STAGE-0.3: Correlator configuration

    Defaults give a 60 second wait budget (60 polls at 1s).
    """

    PENDING_MARKER_TTL_SECONDS: int = Field(default=120, description="Pending marker TTL")
    REPLY_POLL_INTERVAL_SECONDS: float = Field(default=1.0, description="Reply poll interval")
    REPLY_POLL_MAX_ATTEMPTS: int = Field(default=60, description="Reply poll attempts")
    ENQUEUE_MAX_ATTEMPTS: int = Field(default=10, description="Enqueue attempts before giving up")
    ENQUEUE_RETRY_DELAY_SECONDS: float = Field(default=1.0, description="Spacing between enqueue attempts")
    ENQUEUE_RECONNECT_PAUSE_SECONDS: float = Field(
        default=5.0, description="Longer pause inserted mid-sequence"
    )

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class WorkerSettings(BaseSettings):
    """
    Job consumer configuration.

    STAGE-0.4: Worker configuration
    """

    WORKER_PREFETCH: int = Field(default=5, description="Max in-flight jobs per worker process")
    WORKER_BATCH_SIZE: int = Field(default=5, description="Messages fetched per read")
    WORKER_BLOCK_MS: int = Field(default=2000, description="Blocking read timeout")
    WORKER_ERROR_BACKOFF_SECONDS: float = Field(default=5.0, description="Backoff after a loop error")
    WORKER_SHUTDOWN_TIMEOUT_SECONDS: float = Field(default=30.0, description="Drain budget on shutdown")
    WORKER_MAX_DELIVERY_ATTEMPTS: int = Field(default=5, description="Transient requeue cap")
    PROCESSING_LOCK_TTL_SECONDS: int = Field(default=30, description="Processing lock TTL")
    REPLY_RETENTION_TTL_SECONDS: int = Field(default=300, description="Unconsumed reply retention")
    COMPLETION_MARKER_TTL_SECONDS: int = Field(default=86400, description="Completion marker retention")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class AutoscalerSettings(BaseSettings):
    """
    Queue-depth autoscaler configuration.

    STAGE-0.5: Autoscaler control surface
    """

    MIN_WORKERS: int = Field(default=1, description="Lower bound on worker count")
    MAX_WORKERS: int = Field(default=5, description="Upper bound on worker count")
    SCALE_UP_THRESHOLD: int = Field(default=10, description="Backlog above which to scale up")
    SCALE_DOWN_THRESHOLD: int = Field(default=2, description="Backlog below which to scale down")
    CHECK_INTERVAL_MS: int = Field(default=10000, description="Tick interval")
    MONITORED_QUEUES: Annotated[list[str], NoDecode] = Field(
        default=["quote-requested", "booking-requested"], description="Queues summed into backlog"
    )
    AUTOSCALER_RECONNECT_DELAY_SECONDS: float = Field(default=5.0, description="Delay before re-entering Running")
    AUTOSCALER_LEADER_LOCK_ENABLED: bool = Field(default=False, description="Hold a distributed lock to scale")
    AUTOSCALER_LEADER_LOCK_TTL_SECONDS: int = Field(default=30, description="Leader lock TTL")
    WORKER_SUPERVISOR: Literal["process", "compose"] = Field(default="process", description="Supervisor type")
    WORKER_COMMAND: str = Field(default="bridge-worker", description="Command used to spawn a worker")
    COMPOSE_SERVICE_NAME: str = Field(default="worker", description="docker compose service to scale")

    @field_validator("MONITORED_QUEUES", mode="before")
    @classmethod
    def split_monitored_queues(cls, v):
        """Accept a comma separated string as well as a list."""
        return split_queue_names(v)

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class PartnerSettings(BaseSettings):
    """
    Partner (insurance provider) API configuration.

    STAGE-0.6: Partner client configuration
    """

    PARTNER_MODE: Literal["http", "fake"] = Field(default="fake", description="Partner client implementation")
    PARTNER_BASE_URL: str = Field(default="https://portal.loadsure.net", description="Partner base URL")
    PARTNER_API_KEY: str | None = Field(default=None, description="Partner API key")
    PARTNER_TIMEOUT: float = Field(default=30.0, description="Partner request timeout")
    PARTNER_MAX_RETRIES: int = Field(default=3, description="Retries on connect/timeout errors")
    PARTNER_RETRY_BASE_DELAY: float = Field(default=0.5, description="Initial retry delay")
    PARTNER_RETRY_MAX_DELAY: float = Field(default=4.0, description="Max retry delay")
    FAKE_PARTNER_LATENCY_SECONDS: float = Field(default=0.5, description="Simulated partner latency")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class LoggingSettings(BaseSettings):
    """
    Logging configuration for structured logging.

    STAGE-L: Logging configuration
    """

    LOG_LEVEL: str = Field(default="INFO", description="Logging level")
    LOG_FORMAT: Literal["json", "console"] = Field(default="json", description="Log output format")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class ApplicationSettings(BaseSettings):
    """
    General application settings.

    STAGE-0: Application initialization
    """

    ENVIRONMENT: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Application environment"
    )
    DEBUG: bool = Field(default=False, description="Debug mode")
    APP_NAME: str = Field(default="Insurance Partner Bridge", description="Application name")
    APP_VERSION: str = Field(default="1.0.0", description="Application version")
    INSTANCE_ID: str | None = Field(default=None, description="Identifier of this process instance")
    API_HOST: str = Field(default="0.0.0.0", description="API host")
    API_PORT: int = Field(default=8000, description="API port")
    CORS_ORIGINS: list[str] = Field(default=["*"], description="Allowed CORS origins")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class Settings(BaseSettings):
    """
    Main settings class that aggregates all configuration sections.

    Usage:
        from src.core.config.settings import get_settings

        settings = get_settings()
        redis_host = settings.redis.REDIS_HOST
        max_workers = settings.autoscaler.MAX_WORKERS

    Fields are declared flat (one env var each) and exposed grouped through
    the section properties below.
    """

    # Redis settings
    REDIS_HOST: str = Field(default="localhost", description="Redis server host")
    REDIS_PORT: int = Field(default=6379, description="Redis server port")
    REDIS_DB: int = Field(default=0, description="Redis database number")
    REDIS_PASSWORD: str | None = Field(default=None, description="Redis password (if required)")
    REDIS_MAX_CONNECTIONS: int = Field(default=100, description="Maximum total connections")
    REDIS_SOCKET_TIMEOUT: int = Field(default=5, description="Socket timeout in seconds")
    REDIS_SOCKET_CONNECT_TIMEOUT: int = Field(default=5, description="Connection timeout in seconds")
    REDIS_HEALTH_CHECK_INTERVAL: int = Field(default=30, description="Health check interval in seconds")

    # Queue settings
    QUEUE_TYPE: Literal["redis", "kafka"] = Field(default="redis", description="Queue backend")
    QUEUE_CONSUMER_GROUP: str = Field(default="workers", description="Consumer group for job queues")
    QUEUE_MAX_DEPTH: int = Field(default=10000, description="Max stream length before backpressure")
    QUEUE_BACKPRESSURE_THRESHOLD: float = Field(default=0.8, description="Warn above this utilization")
    QUEUE_BACKPRESSURE_MAX_RETRIES: int = Field(default=3, description="Produce retries when full")
    QUEUE_BACKPRESSURE_BASE_DELAY: float = Field(default=0.1, description="Initial backpressure delay (s)")
    QUEUE_BACKPRESSURE_MAX_DELAY: float = Field(default=1.0, description="Max backpressure delay (s)")
    QUEUE_VISIBILITY_TIMEOUT_MS: int = Field(
        default=60000, description="Idle time before an unacked delivery is reclaimed"
    )
    KAFKA_BOOTSTRAP_SERVERS: str = Field(default="localhost:9092", description="Kafka brokers")

    # Correlator settings
    PENDING_MARKER_TTL_SECONDS: int = Field(default=120, description="Pending marker TTL")
    REPLY_POLL_INTERVAL_SECONDS: float = Field(default=1.0, description="Reply poll interval")
    REPLY_POLL_MAX_ATTEMPTS: int = Field(default=60, description="Reply poll attempts")
    ENQUEUE_MAX_ATTEMPTS: int = Field(default=10, description="Enqueue attempts before giving up")
    ENQUEUE_RETRY_DELAY_SECONDS: float = Field(default=1.0, description="Spacing between enqueue attempts")
    ENQUEUE_RECONNECT_PAUSE_SECONDS: float = Field(
        default=5.0, description="Longer pause inserted mid-sequence"
    )

    # Worker settings
    WORKER_PREFETCH: int = Field(default=5, description="Max in-flight jobs per worker process")
    WORKER_BATCH_SIZE: int = Field(default=5, description="Messages fetched per read")
    WORKER_BLOCK_MS: int = Field(default=2000, description="Blocking read timeout")
    WORKER_ERROR_BACKOFF_SECONDS: float = Field(default=5.0, description="Backoff after a loop error")
    WORKER_SHUTDOWN_TIMEOUT_SECONDS: float = Field(default=30.0, description="Drain budget on shutdown")
    WORKER_MAX_DELIVERY_ATTEMPTS: int = Field(default=5, description="Transient requeue cap")
    PROCESSING_LOCK_TTL_SECONDS: int = Field(default=30, description="Processing lock TTL")
    REPLY_RETENTION_TTL_SECONDS: int = Field(default=300, description="Unconsumed reply retention")
    COMPLETION_MARKER_TTL_SECONDS: int = Field(default=86400, description="Completion marker retention")

    # Autoscaler settings
    MIN_WORKERS: int = Field(default=1, description="Lower bound on worker count")
    MAX_WORKERS: int = Field(default=5, description="Upper bound on worker count")
    SCALE_UP_THRESHOLD: int = Field(default=10, description="Backlog above which to scale up")
    SCALE_DOWN_THRESHOLD: int = Field(default=2, description="Backlog below which to scale down")
    CHECK_INTERVAL_MS: int = Field(default=10000, description="Tick interval")
    MONITORED_QUEUES: Annotated[list[str], NoDecode] = Field(
        default=["quote-requested", "booking-requested"], description="Queues summed into backlog"
    )
    AUTOSCALER_RECONNECT_DELAY_SECONDS: float = Field(default=5.0, description="Delay before re-entering Running")
    AUTOSCALER_LEADER_LOCK_ENABLED: bool = Field(default=False, description="Hold a distributed lock to scale")
    AUTOSCALER_LEADER_LOCK_TTL_SECONDS: int = Field(default=30, description="Leader lock TTL")
    WORKER_SUPERVISOR: Literal["process", "compose"] = Field(default="process", description="Supervisor type")
    WORKER_COMMAND: str = Field(default="bridge-worker", description="Command used to spawn a worker")
    COMPOSE_SERVICE_NAME: str = Field(default="worker", description="docker compose service to scale")

    # Partner settings
    PARTNER_MODE: Literal["http", "fake"] = Field(default="fake", description="Partner client implementation")
    PARTNER_BASE_URL: str = Field(default="https://portal.loadsure.net", description="Partner base URL")
    PARTNER_API_KEY: str | None = Field(default=None, description="Partner API key")
    PARTNER_TIMEOUT: float = Field(default=30.0, description="Partner request timeout")
    PARTNER_MAX_RETRIES: int = Field(default=3, description="Retries on connect/timeout errors")
    PARTNER_RETRY_BASE_DELAY: float = Field(default=0.5, description="Initial retry delay")
    PARTNER_RETRY_MAX_DELAY: float = Field(default=4.0, description="Max retry delay")
    FAKE_PARTNER_LATENCY_SECONDS: float = Field(default=0.5, description="Simulated partner latency")

    # Logging settings
    LOG_LEVEL: str = Field(default="INFO", description="Logging level")
    LOG_FORMAT: Literal["json", "console"] = Field(default="json", description="Log output format")

    # Application settings
    ENVIRONMENT: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Application environment"
    )
    DEBUG: bool = Field(default=False, description="Debug mode")
    APP_NAME: str = Field(default="Insurance Partner Bridge", description="Application name")
    APP_VERSION: str = Field(default="1.0.0", description="Application version")
    INSTANCE_ID: str | None = Field(default=None, description="Identifier of this process instance")
    API_HOST: str = Field(default="0.0.0.0", description="API host")
    API_PORT: int = Field(default=8000, description="API port")
    CORS_ORIGINS: list[str] = Field(default=["*"], description="Allowed CORS origins")

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"LOG_LEVEL must be one of {valid_levels}")
        return v.upper()

    @field_validator("MONITORED_QUEUES", mode="before")
    @classmethod
    def split_monitored_queues(cls, v):
        """Accept a comma separated string (MONITORED_QUEUES=a,b) as well as a list."""
        return split_queue_names(v)

    @model_validator(mode="after")
    def validate_scaling_bounds(self):
        """Reject worker bounds and thresholds that would make the autoscaler oscillate."""
        if self.MIN_WORKERS < 0 or self.MIN_WORKERS > self.MAX_WORKERS:
            raise ValueError("MIN_WORKERS must be between 0 and MAX_WORKERS")
        if self.SCALE_DOWN_THRESHOLD >= self.SCALE_UP_THRESHOLD:
            raise ValueError("SCALE_DOWN_THRESHOLD must be lower than SCALE_UP_THRESHOLD")
        return self

    # Nested configuration views
    @property
    def redis(self) -> RedisSettings:
        """Get Redis settings."""
        return RedisSettings(
            REDIS_HOST=self.REDIS_HOST,
            REDIS_PORT=self.REDIS_PORT,
            REDIS_DB=self.REDIS_DB,
            REDIS_PASSWORD=self.REDIS_PASSWORD,
            REDIS_MAX_CONNECTIONS=self.REDIS_MAX_CONNECTIONS,
            REDIS_SOCKET_TIMEOUT=self.REDIS_SOCKET_TIMEOUT,
            REDIS_SOCKET_CONNECT_TIMEOUT=self.REDIS_SOCKET_CONNECT_TIMEOUT,
            REDIS_HEALTH_CHECK_INTERVAL=self.REDIS_HEALTH_CHECK_INTERVAL,
        )

    @property
    def queue(self) -> QueueSettings:
        """Get message queue settings."""
        return QueueSettings(
            QUEUE_TYPE=self.QUEUE_TYPE,
            QUEUE_CONSUMER_GROUP=self.QUEUE_CONSUMER_GROUP,
            QUEUE_MAX_DEPTH=self.QUEUE_MAX_DEPTH,
            QUEUE_BACKPRESSURE_THRESHOLD=self.QUEUE_BACKPRESSURE_THRESHOLD,
            QUEUE_BACKPRESSURE_MAX_RETRIES=self.QUEUE_BACKPRESSURE_MAX_RETRIES,
            QUEUE_BACKPRESSURE_BASE_DELAY=self.QUEUE_BACKPRESSURE_BASE_DELAY,
            QUEUE_BACKPRESSURE_MAX_DELAY=self.QUEUE_BACKPRESSURE_MAX_DELAY,
            QUEUE_VISIBILITY_TIMEOUT_MS=self.QUEUE_VISIBILITY_TIMEOUT_MS,
            KAFKA_BOOTSTRAP_SERVERS=self.KAFKA_BOOTSTRAP_SERVERS,
        )

    @property
    def correlator(self) -> CorrelatorSettings:
        """Get request correlator settings."""
        return CorrelatorSettings(
            PENDING_MARKER_TTL_SECONDS=self.PENDING_MARKER_TTL_SECONDS,
            REPLY_POLL_INTERVAL_SECONDS=self.REPLY_POLL_INTERVAL_SECONDS,
            REPLY_POLL_MAX_ATTEMPTS=self.REPLY_POLL_MAX_ATTEMPTS,
            ENQUEUE_MAX_ATTEMPTS=self.ENQUEUE_MAX_ATTEMPTS,
            ENQUEUE_RETRY_DELAY_SECONDS=self.ENQUEUE_RETRY_DELAY_SECONDS,
            ENQUEUE_RECONNECT_PAUSE_SECONDS=self.ENQUEUE_RECONNECT_PAUSE_SECONDS,
        )

    @property
    def worker(self) -> WorkerSettings:
        """Get job consumer settings."""
        return WorkerSettings(
            WORKER_PREFETCH=self.WORKER_PREFETCH,
            WORKER_BATCH_SIZE=self.WORKER_BATCH_SIZE,
            WORKER_BLOCK_MS=self.WORKER_BLOCK_MS,
            WORKER_ERROR_BACKOFF_SECONDS=self.WORKER_ERROR_BACKOFF_SECONDS,
            WORKER_SHUTDOWN_TIMEOUT_SECONDS=self.WORKER_SHUTDOWN_TIMEOUT_SECONDS,
            WORKER_MAX_DELIVERY_ATTEMPTS=self.WORKER_MAX_DELIVERY_ATTEMPTS,
            PROCESSING_LOCK_TTL_SECONDS=self.PROCESSING_LOCK_TTL_SECONDS,
            REPLY_RETENTION_TTL_SECONDS=self.REPLY_RETENTION_TTL_SECONDS,
            COMPLETION_MARKER_TTL_SECONDS=self.COMPLETION_MARKER_TTL_SECONDS,
        )

    @property
    def autoscaler(self) -> AutoscalerSettings:
        """Get autoscaler settings."""
        return AutoscalerSettings(
            MIN_WORKERS=self.MIN_WORKERS,
            MAX_WORKERS=self.MAX_WORKERS,
            SCALE_UP_THRESHOLD=self.SCALE_UP_THRESHOLD,
            SCALE_DOWN_THRESHOLD=self.SCALE_DOWN_THRESHOLD,
            CHECK_INTERVAL_MS=self.CHECK_INTERVAL_MS,
            MONITORED_QUEUES=list(self.MONITORED_QUEUES),
            AUTOSCALER_RECONNECT_DELAY_SECONDS=self.AUTOSCALER_RECONNECT_DELAY_SECONDS,
            AUTOSCALER_LEADER_LOCK_ENABLED=self.AUTOSCALER_LEADER_LOCK_ENABLED,
            AUTOSCALER_LEADER_LOCK_TTL_SECONDS=self.AUTOSCALER_LEADER_LOCK_TTL_SECONDS,
            WORKER_SUPERVISOR=self.WORKER_SUPERVISOR,
            WORKER_COMMAND=self.WORKER_COMMAND,
            COMPOSE_SERVICE_NAME=self.COMPOSE_SERVICE_NAME,
        )

    @property
    def partner(self) -> PartnerSettings:
        """Get partner API settings."""
        return PartnerSettings(
            PARTNER_MODE=self.PARTNER_MODE,
            PARTNER_BASE_URL=self.PARTNER_BASE_URL,
            PARTNER_API_KEY=self.PARTNER_API_KEY,
            PARTNER_TIMEOUT=self.PARTNER_TIMEOUT,
            PARTNER_MAX_RETRIES=self.PARTNER_MAX_RETRIES,
            PARTNER_RETRY_BASE_DELAY=self.PARTNER_RETRY_BASE_DELAY,
            PARTNER_RETRY_MAX_DELAY=self.PARTNER_RETRY_MAX_DELAY,
            FAKE_PARTNER_LATENCY_SECONDS=self.FAKE_PARTNER_LATENCY_SECONDS,
        )

    @property
    def logging(self) -> LoggingSettings:
        """Get logging settings."""
        return LoggingSettings(
            LOG_LEVEL=self.LOG_LEVEL,
            LOG_FORMAT=self.LOG_FORMAT,
        )

    @property
    def app(self) -> ApplicationSettings:
        """Get application settings."""
        return ApplicationSettings(
            ENVIRONMENT=self.ENVIRONMENT,
            DEBUG=self.DEBUG,
            APP_NAME=self.APP_NAME,
            APP_VERSION=self.APP_VERSION,
            INSTANCE_ID=self.INSTANCE_ID,
            API_HOST=self.API_HOST,
            API_PORT=self.API_PORT,
            CORS_ORIGINS=self.CORS_ORIGINS,
        )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"  # Ignore extra environment variables
    )


# Global settings instance (singleton pattern)
_settings: Settings | None = None


def get_settings() -> Settings:
    """
    Get the global settings instance (singleton).

    STAGE-0.3: Settings initialization

    Returns:
        Settings: Global settings instance
    """
    global _settings

    if _settings is None:
        _settings = Settings()

    return _settings


def reload_settings() -> Settings:
    """
    Reload settings (useful for testing).

    Returns:
        Settings: New settings instance
    """
    global _settings
    _settings = Settings()
    return _settings
