"""
Configuration Management for RepoRadar.

    from reporadar.core.config import Config, JobQueueConfig
    from reporadar.core.config_loaders import load_config

    config = load_config()
    concurrency = config.jobs.concurrency
"""

from reporadar.core.config.config import Config
from reporadar.core.config.jobs import JobQueueConfig, LoggingConfig

__all__ = [
    "Config",
    "JobQueueConfig",
    "LoggingConfig",
]
