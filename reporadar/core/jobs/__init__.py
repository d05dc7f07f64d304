"""
Background Job Queue for RepoRadar.

Long-running work (batch repository analysis, data exports) runs here
instead of inside the HTTP request. Jobs are persisted in a shared store,
dispatched by priority with bounded concurrency, retried with exponential
backoff, and queryable by id at any time.

Architecture Context
--------------------
    ┌──────────────────┐     ┌─────────────────┐     ┌──────────────────┐
    │   API / CLI      │────→│    JobStore     │←───→│ JobQueue workers │
    │  (add_job)       │     │ (Redis/SQLite)  │     │ (processors)     │
    └──────────────────┘     └─────────────────┘     └──────────────────┘
           ↑                                                  │
           │          status, progress, result                │
           └──────────────────────────────────────────────────┘
"""

# Models
from reporadar.core.jobs.models import (
    Job,
    JobOptions,
    JobStatus,
    QueueStats,
    TERMINAL_STATUSES,
)

# Processors
from reporadar.core.jobs.processor import BaseJobProcessor, JobProcessor

# Stores
from reporadar.core.jobs.store import JobStore
from reporadar.core.jobs.sqlite_store import SQLiteJobStore
from reporadar.core.jobs.redis_store import RedisJobStore

# Queue
from reporadar.core.jobs.queue import JobQueue

# Events
from reporadar.core.jobs.events import JobEventListener, NotificationService
from reporadar.core.jobs.metrics import JobMetrics

# Factory
from reporadar.core.jobs.factory import create_job_queue, create_job_store

__all__ = [
    # Enums
    "JobStatus",
    "TERMINAL_STATUSES",
    # Models
    "Job",
    "JobOptions",
    "QueueStats",
    # Processors
    "JobProcessor",
    "BaseJobProcessor",
    # Stores
    "JobStore",
    "SQLiteJobStore",
    "RedisJobStore",
    # Queue
    "JobQueue",
    # Events
    "JobEventListener",
    "NotificationService",
    "JobMetrics",
    # Factory
    "create_job_store",
    "create_job_queue",
]
