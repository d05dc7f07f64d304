"""
Shared pytest fixtures for RepoRadar job queue tests.

Fixture Organization
--------------------
- **job_db**: Path of a fresh SQLite job database under tmp_path
- **fast_config**: Queue configuration with millisecond delays and polling
- **clean_env**: Removes REPORADAR_* / REDIS_URL variables for config tests
"""

from pathlib import Path

import pytest

from reporadar.core.config import JobQueueConfig
from reporadar.core.config_loaders import ENV_OVERRIDES


@pytest.fixture
def job_db(tmp_path: Path) -> Path:
    """Path for a temporary SQLite job database."""
    return tmp_path / "jobs.db"


@pytest.fixture
def fast_config(job_db: Path) -> JobQueueConfig:
    """Queue config tuned for fast tests."""
    return JobQueueConfig(
        store_url=f"sqlite:///{job_db}",
        concurrency=2,
        max_attempts=3,
        initial_delay_ms=10,
        max_delay_ms=50,
        poll_interval=0.02,
        lease_timeout=5.0,
        drain_timeout=1.0,
    )


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    """Environment without config overrides."""
    for name in ENV_OVERRIDES:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch
