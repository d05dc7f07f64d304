"""
Storage protocol for job records.

The store is the single source of truth for job state. Every write that
moves a job between states is a compare-and-set on the stored status (and,
for writes made by the worker running the job, on the lease token), so two
queue instances sharing a store can never both win the same transition.
"""

from datetime import datetime
from typing import Iterable, List, Optional, Protocol, Sequence

from reporadar.core.jobs.models import Job, JobStatus, QueueStats


class JobStore(Protocol):
    """Abstract interface for durable job storage backends."""

    async def initialize(self) -> None:
        """Connect and create any required schema. Idempotent."""
        ...

    async def close(self) -> None:
        """Release connections."""
        ...

    async def add(self, job: Job) -> None:
        """Persist a new job."""
        ...

    async def get(self, job_id: str) -> Optional[Job]:
        """Get job by ID."""
        ...

    async def update(
        self,
        job: Job,
        expected: Iterable[JobStatus],
        token: Optional[str] = None,
    ) -> bool:
        """
        Write ``job`` if the stored status is one of ``expected``.

        When ``token`` is given the stored lease token must match as well.
        Returns False, writing nothing, when the check fails.
        """
        ...

    async def renew_lease(
        self, job_id: str, token: str, lease_expires_at: datetime
    ) -> bool:
        """
        Extend the lease of a processing job held under ``token``.

        Only the lease expiry changes; the rest of the stored record is left
        as it is. Returns False when the job is no longer held.
        """
        ...

    async def claim(
        self,
        worker_id: str,
        job_types: Sequence[str],
        now: datetime,
        lease_seconds: float,
    ) -> Optional[Job]:
        """
        Atomically claim the next eligible job.

        Eligible means queued, ``run_at <= now`` and of one of ``job_types``.
        Highest priority wins, then oldest. The returned job has already been
        moved to processing via Job.mark_processing().
        """
        ...

    async def promote_delayed(self, now: datetime) -> int:
        """Make delayed jobs whose run_at has passed claimable."""
        ...

    async def find_expired(self, now: datetime) -> List[Job]:
        """Processing jobs whose lease expired before ``now``."""
        ...

    async def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        job_type: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Job]:
        """List jobs newest first with optional filters."""
        ...

    async def stats(self, now: datetime) -> QueueStats:
        """Count jobs by state."""
        ...

    async def delete_terminal(self, older_than: datetime) -> int:
        """Remove terminal jobs completed before ``older_than``."""
        ...
