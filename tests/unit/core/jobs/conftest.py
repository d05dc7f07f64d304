"""Fixtures for job queue tests."""

import asyncio
from pathlib import Path
from typing import Any, Callable, Optional

import pytest

from reporadar.core.jobs.models import Job, JobStatus
from reporadar.core.jobs.queue import JobQueue
from reporadar.core.jobs.sqlite_store import SQLiteJobStore


async def _wait_for_status(
    queue: JobQueue, job_id: str, *statuses: JobStatus, timeout: float = 5.0
) -> Job:
    """Poll until the job reaches one of ``statuses``."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        job = await queue.get_job(job_id)
        if job is not None and job.status in statuses:
            return job
        if loop.time() > deadline:
            state = job.status.value if job else "missing"
            raise AssertionError(f"Job {job_id} still {state} after {timeout}s")
        await asyncio.sleep(0.01)


async def _wait_until(condition: Callable[[], Any], timeout: float = 5.0) -> None:
    """Poll until ``condition()`` is truthy."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            raise AssertionError("Condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def wait_for_status() -> Callable[..., Any]:
    return _wait_for_status


@pytest.fixture
def wait_until() -> Callable[..., Any]:
    return _wait_until


@pytest.fixture
def store(job_db: Path) -> SQLiteJobStore:
    """SQLite job store on a temporary database."""
    return SQLiteJobStore(job_db)


@pytest.fixture
def make_queue(store: SQLiteJobStore, fast_config) -> Callable[..., JobQueue]:
    """Factory for queues sharing the temporary store."""

    def _make(config: Optional[Any] = None, worker_id: Optional[str] = None) -> JobQueue:
        return JobQueue(store, config or fast_config, worker_id=worker_id)

    return _make
