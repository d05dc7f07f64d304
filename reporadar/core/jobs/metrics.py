"""
Job processing metrics.

JobMetrics keeps per-type totals, success rates and recent timings in memory
and mirrors them into Prometheus counters and a duration histogram, exposed
by the API's /metrics endpoint.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from prometheus_client import Counter, Histogram

from reporadar.core.jobs.events import JobEventListener
from reporadar.core.jobs.models import Job, utcnow
from reporadar.core.logging import get_logger

logger = get_logger(__name__)

DAY_MS = 24 * 60 * 60 * 1000

# --- Prometheus Metrics ---

JOBS_STARTED = Counter(
    "reporadar_jobs_started_total",
    "Total number of job attempts started",
    ["job_type"],
)

JOBS_FINISHED = Counter(
    "reporadar_jobs_finished_total",
    "Total number of jobs reaching a terminal state",
    ["job_type", "outcome"],
)

JOB_RETRIES = Counter(
    "reporadar_job_retries_total",
    "Total number of failed attempts scheduled for retry",
    ["job_type"],
)

JOB_DURATION = Histogram(
    "reporadar_job_duration_seconds",
    "Time from first start to completion or failure",
    ["job_type"],
    buckets=(0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0, 900.0),
)


@dataclass
class JobTiming:
    """Timing record for one job."""

    job_id: str
    job_type: str
    status: str
    attempts: int
    start_time: datetime
    end_time: Optional[datetime] = None
    processing_ms: Optional[float] = None
    error: Optional[str] = None


@dataclass
class JobTypeMetrics:
    """Aggregates for one job type (terminal outcomes only)."""

    job_type: str
    total_jobs: int = 0
    completed_jobs: int = 0
    failed_jobs: int = 0
    average_processing_ms: float = 0.0
    last_updated: datetime = field(default_factory=utcnow)

    @property
    def success_rate(self) -> float:
        if self.total_jobs == 0:
            return 0.0
        return self.completed_jobs / self.total_jobs * 100

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_type": self.job_type,
            "total_jobs": self.total_jobs,
            "completed_jobs": self.completed_jobs,
            "failed_jobs": self.failed_jobs,
            "average_processing_ms": self.average_processing_ms,
            "success_rate": self.success_rate,
            "last_updated": self.last_updated.isoformat(),
        }


class JobMetrics(JobEventListener):
    """Collects job processing metrics from queue events."""

    def __init__(self) -> None:
        self._by_type: Dict[str, JobTypeMetrics] = {}
        self._timings: Dict[str, JobTiming] = {}

    async def on_started(self, job: Job) -> None:
        self.record_start(job)

    async def on_retrying(self, job: Job) -> None:
        JOB_RETRIES.labels(job_type=job.type).inc()

    async def on_completed(self, job: Job) -> None:
        self.record_finish(job, "completed")

    async def on_failed(self, job: Job) -> None:
        self.record_finish(job, "failed")

    async def on_cancelled(self, job: Job) -> None:
        JOBS_FINISHED.labels(job_type=job.type, outcome="cancelled").inc()
        timing = self._timings.get(job.id)
        if timing is not None:
            timing.status = "cancelled"
            timing.end_time = job.completed_at or utcnow()

    def record_start(self, job: Job) -> None:
        """Record the start of an attempt."""
        JOBS_STARTED.labels(job_type=job.type).inc()
        existing = self._timings.get(job.id)
        if existing is not None:
            existing.status = job.status.value
            existing.attempts = job.attempts
            return
        self._timings[job.id] = JobTiming(
            job_id=job.id,
            job_type=job.type,
            status=job.status.value,
            attempts=job.attempts,
            start_time=job.started_at or utcnow(),
        )

    def record_finish(self, job: Job, outcome: str) -> None:
        """Record a completed or failed job."""
        end_time = job.completed_at or utcnow()
        start_time = job.started_at or end_time
        processing_ms = (end_time - start_time).total_seconds() * 1000

        timing = self._timings.get(job.id)
        if timing is None:
            timing = JobTiming(
                job_id=job.id,
                job_type=job.type,
                status=outcome,
                attempts=job.attempts,
                start_time=start_time,
            )
            self._timings[job.id] = timing
        timing.status = outcome
        timing.attempts = job.attempts
        timing.end_time = end_time
        timing.processing_ms = processing_ms
        timing.error = job.error if outcome == "failed" else None

        metrics = self._by_type.setdefault(job.type, JobTypeMetrics(job_type=job.type))
        metrics.total_jobs += 1
        if outcome == "completed":
            metrics.completed_jobs += 1
        else:
            metrics.failed_jobs += 1
        total_ms = metrics.average_processing_ms * (metrics.total_jobs - 1) + processing_ms
        metrics.average_processing_ms = total_ms / metrics.total_jobs
        metrics.last_updated = utcnow()

        JOBS_FINISHED.labels(job_type=job.type, outcome=outcome).inc()
        JOB_DURATION.labels(job_type=job.type).observe(processing_ms / 1000)

    def get_metrics(self, job_type: str) -> Optional[JobTypeMetrics]:
        return self._by_type.get(job_type)

    def get_all_metrics(self) -> List[JobTypeMetrics]:
        return list(self._by_type.values())

    def get_job_timing(self, job_id: str) -> Optional[JobTiming]:
        return self._timings.get(job_id)

    def recent_timings(self, limit: int = 100) -> List[JobTiming]:
        """Timings ordered by start time, newest first."""
        timings = sorted(self._timings.values(), key=lambda t: t.start_time, reverse=True)
        return timings[:limit]

    def summary(self) -> Dict[str, Any]:
        """Totals across all job types."""
        all_metrics = self.get_all_metrics()
        total = sum(m.total_jobs for m in all_metrics)
        completed = sum(m.completed_jobs for m in all_metrics)
        failed = sum(m.failed_jobs for m in all_metrics)
        total_ms = sum(m.average_processing_ms * m.total_jobs for m in all_metrics)
        return {
            "total_jobs": total,
            "completed_jobs": completed,
            "failed_jobs": failed,
            "overall_success_rate": completed / total * 100 if total else 0.0,
            "average_processing_ms": total_ms / total if total else 0.0,
            "job_types": [m.to_dict() for m in all_metrics],
        }

    def clear_old_timings(self, older_than_ms: int = DAY_MS) -> int:
        """Drop timings that started before the cutoff. Returns the count."""
        cutoff = utcnow() - timedelta(milliseconds=older_than_ms)
        stale = [job_id for job_id, t in self._timings.items() if t.start_time < cutoff]
        for job_id in stale:
            del self._timings[job_id]
        logger.debug("Cleared old job timings", count=len(stale))
        return len(stale)

    def reset(self) -> None:
        """Clear all in-memory metrics. Prometheus counters are untouched."""
        self._by_type.clear()
        self._timings.clear()
