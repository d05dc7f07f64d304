"""
Main configuration class for RepoRadar's job subsystem.

    User's config.yaml
           ↓
    load_config() → Config object
           ↓
    Passed to: create_job_queue(), the API app, the worker CLI

Example config.yaml:

    jobs:
      store_url: ${REDIS_URL:redis://localhost:6379/0}
      concurrency: 5
      max_attempts: 3
    logging:
      level: INFO
"""

from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict

from reporadar.core.config.jobs import JobQueueConfig, LoggingConfig
from reporadar.core.exceptions import ValidationError


@dataclass
class Config:
    """Main RepoRadar jobs configuration."""

    jobs: JobQueueConfig = field(default_factory=JobQueueConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        """Build a Config from parsed YAML, ignoring unknown keys."""
        return cls(
            jobs=_build(JobQueueConfig, data.get("jobs") or {}),
            logging=_build(LoggingConfig, data.get("logging") or {}),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a plain dictionary (for saving or display)."""
        return asdict(self)


def _build(cls: Any, values: Dict[str, Any]) -> Any:
    """Instantiate a section dataclass, converting ``${VAR}`` strings to numbers."""
    types = {f.name: f.type for f in fields(cls)}
    kwargs: Dict[str, Any] = {}
    for key, value in values.items():
        if key not in types:
            continue
        expected = types[key]
        if isinstance(value, str) and expected in (int, float):
            try:
                value = expected(value)
            except ValueError as e:
                raise ValidationError(f"Invalid value for {key}: {value!r}") from e
        kwargs[key] = value
    return cls(**kwargs)
