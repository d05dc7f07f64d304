"""
Background Jobs API Router.

Submit jobs, poll their status and progress, cancel them, and read queue
statistics. Processing happens in worker processes; these endpoints only
talk to the shared job store.
"""

from datetime import datetime
from typing import Any, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from reporadar.core.exceptions import (
    JobNotFoundError,
    UnknownJobTypeError,
    ValidationError,
)
from reporadar.core.jobs.models import MAX_PRIORITY, MIN_PRIORITY, Job, JobOptions, JobStatus
from reporadar.core.jobs.queue import JobQueue
from reporadar.core.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/v1/jobs", tags=["jobs"])

MAX_PAGE_SIZE = 500


def get_job_queue(request: Request) -> JobQueue:
    """Dependency returning the application's job queue."""
    return request.app.state.job_queue


class JobCreateRequest(BaseModel):
    """Request to enqueue a background job."""

    type: str = Field(..., min_length=1, description="Job type, e.g. 'export'")
    data: Any = Field(None, description="Job payload")
    priority: int = Field(0, ge=MIN_PRIORITY, le=MAX_PRIORITY)
    max_attempts: Optional[int] = Field(None, ge=1)
    delay: int = Field(0, ge=0, description="Milliseconds before first run")
    timeout: Optional[int] = Field(None, gt=0, description="Per-attempt limit in ms")


class JobResponse(BaseModel):
    """Job snapshot."""

    id: str
    type: str
    data: Any = None
    status: JobStatus
    progress: int
    result: Any = None
    error: Optional[str] = None
    attempts: int
    max_attempts: int
    priority: int
    delay: int
    timeout: Optional[int] = None
    created_at: datetime
    run_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_job(cls, job: Job) -> "JobResponse":
        return cls(**job.to_public_dict())


class QueueStatsResponse(BaseModel):
    """Job counts by state."""

    waiting: int
    active: int
    completed: int
    failed: int
    delayed: int
    cancelled: int
    total: int


class JobListResponse(BaseModel):
    """Page of jobs plus current queue statistics."""

    jobs: List[JobResponse]
    stats: QueueStatsResponse


@router.post(
    "",
    response_model=JobResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Enqueue a background job",
)
async def create_job(
    request: JobCreateRequest, queue: JobQueue = Depends(get_job_queue)
) -> JobResponse:
    """Persist a queued job and return it without waiting for processing."""
    options = JobOptions(
        priority=request.priority,
        max_attempts=request.max_attempts,
        delay=request.delay,
        timeout=request.timeout,
    )
    try:
        job = await queue.add_job(request.type, request.data, options)
    except (UnknownJobTypeError, ValidationError) as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    return JobResponse.from_job(job)


@router.get("", response_model=JobListResponse, summary="List jobs")
async def list_jobs(
    job_status: Optional[JobStatus] = Query(None, alias="status"),
    job_type: Optional[str] = Query(None, alias="type"),
    limit: int = Query(50, ge=1, le=MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    queue: JobQueue = Depends(get_job_queue),
) -> JobListResponse:
    """Newest jobs first, optionally filtered by status and type."""
    jobs = await queue.list_jobs(job_status, job_type, limit, offset)
    stats = await queue.get_stats()
    return JobListResponse(
        jobs=[JobResponse.from_job(job) for job in jobs],
        stats=QueueStatsResponse(**stats.to_dict()),
    )


@router.get("/stats", response_model=QueueStatsResponse, summary="Queue statistics")
async def get_stats(queue: JobQueue = Depends(get_job_queue)) -> QueueStatsResponse:
    stats = await queue.get_stats()
    return QueueStatsResponse(**stats.to_dict())


@router.get("/{job_id}", response_model=JobResponse, summary="Get a job")
async def get_job(job_id: str, queue: JobQueue = Depends(get_job_queue)) -> JobResponse:
    try:
        job = await queue.require_job(job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    return JobResponse.from_job(job)


@router.post("/{job_id}/cancel", response_model=JobResponse, summary="Cancel a job")
async def cancel_job(
    job_id: str, queue: JobQueue = Depends(get_job_queue)
) -> JobResponse:
    """
    Cancel a queued or running job.

    Cancelling a finished job changes nothing and returns it as is.
    """
    job = await queue.cancel_job(job_id)
    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail=f"Job not found: {job_id}"
        )
    return JobResponse.from_job(job)
