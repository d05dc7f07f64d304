"""
Job queue configuration.

Provides the settings the queue reads once at initialize() time: store
location, worker pool size, retry policy and retention.
"""

from dataclasses import dataclass

from reporadar.core.exceptions import ValidationError

DEFAULT_STORE_URL = "redis://localhost:6379/0"
DEFAULT_QUEUE_NAME = "reporadar-jobs"
DAY_MS = 24 * 60 * 60 * 1000


@dataclass
class JobQueueConfig:
    """Background job queue configuration."""

    store_url: str = DEFAULT_STORE_URL  # redis://, rediss:// or sqlite:///path
    queue_name: str = DEFAULT_QUEUE_NAME
    concurrency: int = 5
    max_attempts: int = 3
    initial_delay_ms: int = 1000
    max_delay_ms: int = 30_000
    retention_ms: int = DAY_MS
    poll_interval: float = 1.0  # seconds
    lease_timeout: float = 60.0  # seconds
    drain_timeout: float = 30.0  # seconds

    def __post_init__(self) -> None:
        if not self.store_url:
            raise ValidationError("store_url must not be empty")
        if not self.queue_name:
            raise ValidationError("queue_name must not be empty")
        if self.concurrency < 1:
            raise ValidationError(f"concurrency must be >= 1, got {self.concurrency}")
        if self.max_attempts < 1:
            raise ValidationError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.initial_delay_ms < 0 or self.max_delay_ms < self.initial_delay_ms:
            raise ValidationError(
                "retry delays must satisfy 0 <= initial_delay_ms <= max_delay_ms"
            )
        if self.retention_ms < 0:
            raise ValidationError("retention_ms must be >= 0")
        if self.poll_interval <= 0:
            raise ValidationError("poll_interval must be > 0")
        if self.lease_timeout <= self.poll_interval:
            raise ValidationError("lease_timeout must be longer than poll_interval")
        if self.drain_timeout < 0:
            raise ValidationError("drain_timeout must be >= 0")


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str = "INFO"
    file: str = ""
