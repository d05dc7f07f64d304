"""
Factory functions for creating job stores and job queues.

The store backend is chosen from the URL scheme:

    redis://host:6379/0, rediss://...   -> RedisJobStore
    sqlite:///path/to/jobs.db           -> SQLiteJobStore
"""

from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

from reporadar.core.config import JobQueueConfig
from reporadar.core.exceptions import ValidationError
from reporadar.core.jobs.queue import JobQueue
from reporadar.core.jobs.redis_store import RedisJobStore
from reporadar.core.jobs.sqlite_store import SQLiteJobStore
from reporadar.core.jobs.store import JobStore

REDIS_SCHEMES = ("redis", "rediss", "unix")


def create_job_store(url: str, prefix: str = "reporadar-jobs") -> JobStore:
    """
    Create a job store from a URL.

    Args:
        url: Store URL.
        prefix: Redis key prefix (ignored for SQLite).

    Returns:
        Uninitialized JobStore.
    """
    scheme = urlparse(url).scheme
    if scheme in REDIS_SCHEMES:
        return RedisJobStore(url, prefix=prefix)
    if scheme == "sqlite":
        path = url[len("sqlite:///") :] if url.startswith("sqlite:///") else ""
        if not path:
            raise ValidationError(f"SQLite store URL needs a file path: {url}")
        return SQLiteJobStore(Path(path))
    raise ValidationError(
        f"Unsupported job store URL: {url}",
        how_to_fix=["Use redis://host:port/db or sqlite:///path/to/jobs.db"],
    )


def create_job_queue(
    config: Optional[JobQueueConfig] = None,
    store: Optional[JobStore] = None,
) -> JobQueue:
    """
    Create a job queue.

    Args:
        config: Queue configuration. Defaults to JobQueueConfig().
        store: Explicit store; otherwise built from ``config.store_url``.

    Returns:
        JobQueue instance (call initialize() before use).
    """
    config = config or JobQueueConfig()
    if store is None:
        store = create_job_store(config.store_url, prefix=config.queue_name)
    return JobQueue(store, config)
