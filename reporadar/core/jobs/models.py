"""
Data models for background job processing.

Defines the job status enum, enqueue options, the Job record with its
sanctioned lifecycle transitions, and queue statistics.

State machine
-------------
    queued ──→ processing ──→ completed
      ↑            │
      └── retry ───┤
                   └──→ failed

    queued / processing ──→ cancelled   (explicit request)

Terminal states: completed, failed, cancelled.
"""

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from reporadar.core.exceptions import (
    InvalidJobStateError,
    InvalidProgressError,
    ValidationError,
)

DEFAULT_MAX_ATTEMPTS = 3
MAX_PRIORITY = 100
MIN_PRIORITY = -MAX_PRIORITY

ProgressHook = Callable[["Job"], Awaitable[None]]


class JobStatus(Enum):
    """Job lifecycle status."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """True for states with no further automatic transition."""
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
)
ACTIVE_STATUSES = frozenset({JobStatus.QUEUED, JobStatus.PROCESSING})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_job_id() -> str:
    """Generate a globally unique job id."""
    return f"job_{uuid.uuid4().hex}"


def _error_message(error: Any) -> str:
    if isinstance(error, BaseException):
        return str(error) or type(error).__name__
    return str(error)


def _dt_to_str(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _dt_from_str(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class JobOptions:
    """
    Options accepted by JobQueue.add_job().

    Attributes:
        priority: Higher values are dispatched first (-100 to 100).
        max_attempts: Execution attempts before permanent failure.
            None means the queue's configured default.
        delay: Milliseconds before the first eligible execution.
        timeout: Per-attempt execution limit in milliseconds, or None.
    """

    priority: int = 0
    max_attempts: Optional[int] = None
    delay: int = 0
    timeout: Optional[int] = None

    def __post_init__(self) -> None:
        if not MIN_PRIORITY <= self.priority <= MAX_PRIORITY:
            raise ValidationError(
                f"priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}, "
                f"got {self.priority}"
            )
        if self.max_attempts is not None and self.max_attempts < 1:
            raise ValidationError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.delay < 0:
            raise ValidationError(f"delay must be >= 0, got {self.delay}")
        if self.timeout is not None and self.timeout <= 0:
            raise ValidationError(f"timeout must be > 0, got {self.timeout}")


@dataclass
class Job:
    """
    Represents a background job.

    Identity (id, type, data, created_at) never changes after creation. The
    remaining fields are mutated only through the transition methods below,
    invoked by the queue or by a processor's sanctioned helpers.

    Attributes:
        id: Unique job identifier.
        type: Job type; selects the processor.
        data: Producer-supplied payload (JSON-serializable).
        status: Current lifecycle status.
        progress: Completion percentage (0 to 100).
        result: Output on completion.
        error: Last failure message.
        attempts: Execution attempts made so far.
        max_attempts: Attempts allowed before permanent failure.
        priority: Higher values dispatched first.
        delay: Initial delay in milliseconds.
        timeout: Per-attempt execution limit in milliseconds.
        created_at: When the job was created.
        run_at: Earliest time the job may be dispatched.
        started_at: When the first attempt began.
        completed_at: When the job reached a terminal state.
        worker_id: Worker holding the current claim.
        lease_token: Token identifying the current claim.
        lease_expires_at: When the current claim becomes stale.
    """

    id: str
    type: str
    data: Any = None
    status: JobStatus = JobStatus.QUEUED
    progress: int = 0
    result: Any = None
    error: Optional[str] = None
    attempts: int = 0
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    priority: int = 0
    delay: int = 0
    timeout: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)
    run_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    worker_id: Optional[str] = None
    lease_token: Optional[str] = None
    lease_expires_at: Optional[datetime] = None

    # Runtime only; never persisted.
    cancel_requested: bool = field(default=False, compare=False, repr=False)
    progress_hook: Optional[ProgressHook] = field(
        default=None, init=False, compare=False, repr=False
    )

    def __post_init__(self) -> None:
        if self.run_at is None:
            self.run_at = self.created_at + timedelta(milliseconds=self.delay)

    @classmethod
    def create(
        cls, job_type: str, data: Any = None, options: Optional[JobOptions] = None
    ) -> "Job":
        """Create a new queued job."""
        if not job_type:
            raise ValidationError("job type must not be empty")
        options = options or JobOptions()
        max_attempts = (
            options.max_attempts
            if options.max_attempts is not None
            else DEFAULT_MAX_ATTEMPTS
        )
        return cls(
            id=generate_job_id(),
            type=job_type,
            data=data,
            max_attempts=max_attempts,
            priority=options.priority,
            delay=options.delay,
            timeout=options.timeout,
        )

    # ------------------------------------------------------------------
    # State queries
    # ------------------------------------------------------------------

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def is_eligible(self, now: Optional[datetime] = None) -> bool:
        """True if the job may be dispatched at ``now``."""
        now = now or utcnow()
        return self.status == JobStatus.QUEUED and self.run_at <= now

    def is_lease_expired(self, now: Optional[datetime] = None) -> bool:
        if self.status != JobStatus.PROCESSING or self.lease_expires_at is None:
            return False
        return self.lease_expires_at <= (now or utcnow())

    def can_retry(self) -> bool:
        """True if another attempt is allowed."""
        if self.status in (JobStatus.COMPLETED, JobStatus.CANCELLED):
            return False
        return self.attempts < self.max_attempts

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _require_status(self, *allowed: JobStatus) -> None:
        if self.status not in allowed:
            names = ", ".join(s.value for s in allowed)
            raise InvalidJobStateError(
                f"Job {self.id} is {self.status.value}; expected {names}"
            )

    def _clear_lease(self) -> None:
        self.worker_id = None
        self.lease_token = None
        self.lease_expires_at = None

    def update_progress(self, progress: int) -> None:
        """Set progress (0-100) for the running attempt."""
        if isinstance(progress, bool) or not isinstance(progress, (int, float)):
            raise InvalidProgressError(f"Progress must be a number, got {progress!r}")
        if progress < 0 or progress > 100:
            raise InvalidProgressError(
                f"Progress must be between 0 and 100, got {progress}"
            )
        if self.status != JobStatus.PROCESSING:
            raise InvalidProgressError(
                f"Cannot report progress for job {self.id} in state {self.status.value}"
            )
        value = int(progress)
        if value < self.progress:
            raise InvalidProgressError(
                f"Progress cannot decrease ({self.progress} -> {value})"
            )
        self.progress = value

    async def publish_progress(self) -> None:
        """Hand the current progress to the queue for persistence."""
        if self.progress_hook is not None:
            await self.progress_hook(self)

    def mark_processing(
        self,
        worker_id: Optional[str] = None,
        lease_expires_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """Start an attempt: queued -> processing."""
        self._require_status(JobStatus.QUEUED)
        if self.attempts >= self.max_attempts:
            raise InvalidJobStateError(
                f"Job {self.id} has exhausted its {self.max_attempts} attempts"
            )
        now = now or utcnow()
        self.status = JobStatus.PROCESSING
        self.attempts += 1
        if self.started_at is None:
            self.started_at = now
        self.worker_id = worker_id
        self.lease_token = uuid.uuid4().hex
        self.lease_expires_at = lease_expires_at
        self.cancel_requested = False

    def mark_complete(self, result: Any = None, now: Optional[datetime] = None) -> None:
        """Finish successfully: processing -> completed."""
        self._require_status(JobStatus.PROCESSING)
        self.status = JobStatus.COMPLETED
        self.result = result
        self.error = None
        self.progress = 100
        self.completed_at = now or utcnow()
        self._clear_lease()

    def mark_failed(self, error: Any, now: Optional[datetime] = None) -> None:
        """Fail permanently: processing -> failed."""
        self._require_status(JobStatus.PROCESSING)
        self.status = JobStatus.FAILED
        self.error = _error_message(error)
        self.result = None
        self.completed_at = now or utcnow()
        self._clear_lease()

    def schedule_retry(self, error: Any, run_at: datetime) -> None:
        """Return to the queue for another attempt: processing -> queued."""
        self._require_status(JobStatus.PROCESSING)
        if not self.can_retry():
            raise InvalidJobStateError(
                f"Job {self.id} has exhausted its {self.max_attempts} attempts"
            )
        self.status = JobStatus.QUEUED
        self.error = _error_message(error)
        self.progress = 0
        self.run_at = run_at
        self._clear_lease()

    def release_claim(self, now: Optional[datetime] = None) -> None:
        """
        Give an interrupted attempt back: processing -> queued.

        The attempt is not counted and the job is immediately claimable.
        The last recorded error is kept.
        """
        self._require_status(JobStatus.PROCESSING)
        self.status = JobStatus.QUEUED
        self.attempts = max(self.attempts - 1, 0)
        self.progress = 0
        self.run_at = now or utcnow()
        self._clear_lease()

    def mark_cancelled(self, now: Optional[datetime] = None) -> None:
        """Cancel a job that has not reached a terminal state."""
        self._require_status(JobStatus.QUEUED, JobStatus.PROCESSING)
        self.status = JobStatus.CANCELLED
        self.completed_at = now or utcnow()
        self.cancel_requested = True
        self._clear_lease()

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        return {
            "id": self.id,
            "type": self.type,
            "data": self.data,
            "status": self.status.value,
            "progress": self.progress,
            "result": self.result,
            "error": self.error,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "priority": self.priority,
            "delay": self.delay,
            "timeout": self.timeout,
            "created_at": _dt_to_str(self.created_at),
            "run_at": _dt_to_str(self.run_at),
            "started_at": _dt_to_str(self.started_at),
            "completed_at": _dt_to_str(self.completed_at),
            "worker_id": self.worker_id,
            "lease_token": self.lease_token,
            "lease_expires_at": _dt_to_str(self.lease_expires_at),
        }

    def to_public_dict(self) -> Dict[str, Any]:
        """Snapshot for API consumers, without claim bookkeeping."""
        data = self.to_dict()
        for key in ("worker_id", "lease_token", "lease_expires_at"):
            data.pop(key)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Job":
        """Create Job from dictionary."""
        return cls(
            id=data["id"],
            type=data["type"],
            data=data.get("data"),
            status=JobStatus(data["status"]),
            progress=data.get("progress", 0),
            result=data.get("result"),
            error=data.get("error"),
            attempts=data.get("attempts", 0),
            max_attempts=data.get("max_attempts", DEFAULT_MAX_ATTEMPTS),
            priority=data.get("priority", 0),
            delay=data.get("delay", 0),
            timeout=data.get("timeout"),
            created_at=datetime.fromisoformat(data["created_at"]),
            run_at=_dt_from_str(data.get("run_at")),
            started_at=_dt_from_str(data.get("started_at")),
            completed_at=_dt_from_str(data.get("completed_at")),
            worker_id=data.get("worker_id"),
            lease_token=data.get("lease_token"),
            lease_expires_at=_dt_from_str(data.get("lease_expires_at")),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, raw: str) -> "Job":
        return cls.from_dict(json.loads(raw))


@dataclass
class QueueStats:
    """Aggregate job counts by state."""

    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0
    cancelled: int = 0

    @property
    def total(self) -> int:
        return (
            self.waiting
            + self.active
            + self.completed
            + self.failed
            + self.delayed
            + self.cancelled
        )

    def to_dict(self) -> Dict[str, int]:
        return {
            "waiting": self.waiting,
            "active": self.active,
            "completed": self.completed,
            "failed": self.failed,
            "delayed": self.delayed,
            "cancelled": self.cancelled,
            "total": self.total,
        }
