"""
Job lifecycle events and the notification service.

The queue calls every registered listener after the corresponding transition
has been persisted. Listener errors are logged by the queue and never affect
the job.
"""

from collections import OrderedDict, deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional

from reporadar.core.jobs.models import Job, utcnow
from reporadar.core.logging import get_logger

logger = get_logger(__name__)

PROGRESS_MILESTONE = 25
DEFAULT_HISTORY_SIZE = 500
MAX_TRACKED_JOBS = 1000


class JobEventListener:
    """Base listener; override the hooks you need."""

    async def on_started(self, job: Job) -> None:
        pass

    async def on_progress(self, job: Job) -> None:
        pass

    async def on_retrying(self, job: Job) -> None:
        pass

    async def on_completed(self, job: Job) -> None:
        pass

    async def on_failed(self, job: Job) -> None:
        pass

    async def on_cancelled(self, job: Job) -> None:
        pass


@dataclass
class Notification:
    """A notification emitted for a job."""

    job_id: str
    job_type: str
    status: str
    message: str
    user_id: Optional[str] = None
    progress: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "job_type": self.job_type,
            "status": self.status,
            "message": self.message,
            "user_id": self.user_id,
            "progress": self.progress,
            "created_at": self.created_at.isoformat(),
        }


def summarize_result(job_type: str, result: Any) -> str:
    """One-line summary of a job result for notifications."""
    if not isinstance(result, dict):
        return "Job completed successfully"
    if job_type == "batch-analysis":
        return (
            f"Analyzed {result.get('total_repositories', 0)} repositories: "
            f"{result.get('successful_analyses', 0)} successful, "
            f"{result.get('failed_analyses', 0)} failed"
        )
    if job_type == "export":
        fmt = str(result.get("format", "")).upper()
        return f"Exported {result.get('record_count', 0)} records in {fmt} format"
    return "Job completed successfully"


def _user_id(job: Job) -> Optional[str]:
    if isinstance(job.data, dict):
        user_id = job.data.get("user_id")
        return str(user_id) if user_id is not None else None
    return None


class NotificationService(JobEventListener):
    """
    Records and logs job notifications.

    Progress notifications are sent only when a job crosses a 25% milestone.
    Recent notifications are kept in memory for the admin surface. Milestone
    tracking is bounded: jobs that finish on another instance never send a
    terminal event here, so the oldest entries are evicted past
    ``max_tracked_jobs``.
    """

    def __init__(
        self,
        history_size: int = DEFAULT_HISTORY_SIZE,
        max_tracked_jobs: int = MAX_TRACKED_JOBS,
    ) -> None:
        self._history: Deque[Notification] = deque(maxlen=history_size)
        self._milestones: "OrderedDict[str, int]" = OrderedDict()
        self.max_tracked_jobs = max_tracked_jobs

    def _send(self, notification: Notification) -> None:
        self._history.append(notification)
        logger.info(
            "Notification",
            job_id=notification.job_id,
            job_type=notification.job_type,
            status=notification.status,
            message=notification.message,
        )

    async def on_started(self, job: Job) -> None:
        self._milestones.pop(job.id, None)

    async def on_progress(self, job: Job) -> None:
        milestone = job.progress - job.progress % PROGRESS_MILESTONE
        if milestone <= self._milestones.get(job.id, 0):
            return
        self._milestones[job.id] = milestone
        self._milestones.move_to_end(job.id)
        while len(self._milestones) > self.max_tracked_jobs:
            self._milestones.popitem(last=False)
        self._send(
            Notification(
                job_id=job.id,
                job_type=job.type,
                status="in_progress",
                message=f"Job {job.id} progress: {milestone}%",
                user_id=_user_id(job),
                progress=milestone,
            )
        )

    async def on_retrying(self, job: Job) -> None:
        self._milestones.pop(job.id, None)

    async def on_completed(self, job: Job) -> None:
        self._milestones.pop(job.id, None)
        self._send(
            Notification(
                job_id=job.id,
                job_type=job.type,
                status="completed",
                message=summarize_result(job.type, job.result),
                user_id=_user_id(job),
            )
        )

    async def on_failed(self, job: Job) -> None:
        self._milestones.pop(job.id, None)
        self._send(
            Notification(
                job_id=job.id,
                job_type=job.type,
                status="failed",
                message=job.error or "Job failed",
                user_id=_user_id(job),
            )
        )

    async def on_cancelled(self, job: Job) -> None:
        self._milestones.pop(job.id, None)

    def recent(self, limit: int = 50) -> List[Notification]:
        """Most recent notifications, newest first."""
        return list(reversed(self._history))[:limit]
