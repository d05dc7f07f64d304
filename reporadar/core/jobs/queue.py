"""
Job queue orchestrator.

JobQueue persists jobs through a JobStore and runs them through registered
processors with bounded concurrency.

Dispatch
--------
One dispatcher task per queue instance. Each cycle it:

1. promotes delayed jobs whose run_at has passed,
2. renews the leases of jobs running in this instance,
3. recovers jobs whose lease expired (a crashed worker),
4. claims new jobs while fewer than ``concurrency`` are in flight.

Each claimed job runs in its own asyncio task. The dispatcher sleeps until
a job is added, a slot frees up, or ``poll_interval`` passes.

Failure handling
----------------
A processor exception or a timeout counts as a failed attempt. With attempts
left the job goes back to ``queued`` with ``run_at`` pushed out by the
backoff policy; otherwise it becomes ``failed``.
Every transition is a compare-and-set against the store, so a result
computed for a job cancelled meanwhile is discarded.

A job interrupted by shutdown is not a failure: its claim is released and
the attempt given back, so any instance can pick it up again.
"""

import asyncio
import json
import os
import socket
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Set

from reporadar.core.config import JobQueueConfig
from reporadar.core.exceptions import (
    JobCancelledError,
    JobNotFoundError,
    JobQueueError,
    ProcessorExecutionError,
    StoreConnectionError,
    UnknownJobTypeError,
    ValidationError,
)
from reporadar.core.jobs.events import JobEventListener
from reporadar.core.jobs.models import (
    Job,
    JobOptions,
    JobStatus,
    QueueStats,
    utcnow,
)
from reporadar.core.jobs.processor import (
    JobProcessor,
    invoke_hook,
    validate_processor,
)
from reporadar.core.jobs.store import JobStore
from reporadar.core.logging import get_logger
from reporadar.core.retry import BackoffPolicy

logger = get_logger(__name__)

TERMINAL_EVENTS = {
    JobStatus.COMPLETED: "on_completed",
    JobStatus.FAILED: "on_failed",
    JobStatus.CANCELLED: "on_cancelled",
}


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class JobQueue:
    """
    Background job queue.

    Example
    -------
        queue = JobQueue(SQLiteJobStore(Path("jobs.db")))
        queue.register_processor("export", ExportProcessor(source))
        await queue.initialize()

        job = await queue.add_job("export", {"export_type": "analyses"})
        status = await queue.get_job_status(job.id)

        await queue.close()
    """

    def __init__(
        self,
        store: JobStore,
        config: Optional[JobQueueConfig] = None,
        worker_id: Optional[str] = None,
    ) -> None:
        self.store = store
        self.config = config or JobQueueConfig()
        self.worker_id = worker_id or default_worker_id()
        self.backoff = BackoffPolicy(
            initial_delay_ms=self.config.initial_delay_ms,
            max_delay_ms=self.config.max_delay_ms,
        )
        self._processors: Dict[str, JobProcessor] = {}
        self._listeners: List[JobEventListener] = []
        self._in_flight: Dict[str, Job] = {}
        self._tasks: Set[asyncio.Task[None]] = set()
        self._dispatcher: Optional[asyncio.Task[None]] = None
        self._wakeup = asyncio.Event()
        self._initialized = False
        self._closing = False

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._dispatcher is not None and not self._dispatcher.done()

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    @property
    def job_types(self) -> List[str]:
        return sorted(self._processors)

    def register_processor(self, job_type: str, processor: JobProcessor) -> None:
        """
        Register the processor for a job type.

        A later registration for the same type replaces the earlier one.
        """
        if not job_type:
            raise ValidationError("job type must not be empty")
        validate_processor(processor)
        if job_type in self._processors:
            logger.warning(
                "Replacing registered processor",
                job_type=job_type,
                previous=type(self._processors[job_type]).__name__,
                processor=type(processor).__name__,
            )
        self._processors[job_type] = processor
        logger.info(
            "Registered job processor",
            job_type=job_type,
            processor=type(processor).__name__,
        )
        self._wakeup.set()

    def add_listener(self, listener: JobEventListener) -> None:
        self._listeners.append(listener)

    async def initialize(self, start_workers: bool = True) -> None:
        """
        Connect the store, recover stale jobs and start dispatching.

        Safe to call more than once. Producer-only instances pass
        ``start_workers=False``.
        """
        if not self._initialized:
            if self._closing:
                raise JobQueueError("Job queue has been closed")
            await self.store.initialize()
            self._initialized = True
            await self.recover_stale_jobs()
            logger.info(
                "Job queue initialized",
                queue=self.config.queue_name,
                worker_id=self.worker_id,
            )

        if start_workers and not self.is_running:
            self._dispatcher = asyncio.create_task(
                self._run_dispatcher(), name=f"{self.config.queue_name}-dispatcher"
            )
            logger.info(
                "Job dispatcher started",
                concurrency=self.config.concurrency,
                job_types=",".join(self.job_types),
            )

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            raise JobQueueError(
                "Job queue is not initialized",
                how_to_fix=["Call await queue.initialize() before using the queue"],
            )

    # ------------------------------------------------------------------
    # Producer operations
    # ------------------------------------------------------------------

    async def add_job(
        self,
        job_type: str,
        data: Any = None,
        options: Optional[JobOptions] = None,
    ) -> Job:
        """
        Enqueue a job.

        Returns the queued job immediately; processing happens in the
        background.

        Raises:
            UnknownJobTypeError: No processor registered for ``job_type``.
            ValidationError: ``data`` is not JSON-serializable.
        """
        self._ensure_initialized()
        if job_type not in self._processors:
            raise UnknownJobTypeError(job_type)
        try:
            json.dumps(data)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Job data must be JSON-serializable: {e}") from e

        options = options or JobOptions()
        if options.max_attempts is None:
            options = replace(options, max_attempts=self.config.max_attempts)

        job = Job.create(job_type, data, options)
        await self.store.add(job)
        logger.info(
            "Job queued",
            job_id=job.id,
            job_type=job.type,
            priority=job.priority,
            delay_ms=job.delay,
        )
        self._wakeup.set()
        return job

    async def get_job(self, job_id: str) -> Optional[Job]:
        """Get a job snapshot, or None if it does not exist."""
        self._ensure_initialized()
        return await self.store.get(job_id)

    async def require_job(self, job_id: str) -> Job:
        """Get a job snapshot or raise JobNotFoundError."""
        job = await self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def get_job_status(self, job_id: str) -> Optional[JobStatus]:
        job = await self.get_job(job_id)
        return job.status if job else None

    async def cancel_job(self, job_id: str) -> Optional[Job]:
        """
        Cancel a job.

        No-op for missing or terminal jobs. A job currently running in this
        instance is flagged so the processor can stop cooperatively; its
        eventual result is discarded.

        Returns:
            The job after the call, or None if it does not exist.
        """
        self._ensure_initialized()
        while True:
            job = await self.store.get(job_id)
            if job is None or job.is_terminal:
                return job
            previous = job.status
            token = job.lease_token if previous == JobStatus.PROCESSING else None
            job.mark_cancelled()
            if await self.store.update(job, [previous], token):
                break

        running = self._in_flight.get(job_id)
        if running is not None:
            running.cancel_requested = True
        logger.info("Job cancelled", job_id=job.id, previous_status=previous.value)
        await self._emit("on_cancelled", job)
        return job

    async def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        job_type: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Job]:
        """List jobs newest first."""
        self._ensure_initialized()
        return await self.store.list_jobs(status, job_type, limit, offset)

    async def get_stats(self) -> QueueStats:
        """Current job counts, read from the store."""
        self._ensure_initialized()
        return await self.store.stats(utcnow())

    async def cleanup(self, older_than_ms: Optional[int] = None) -> int:
        """
        Delete terminal jobs that finished more than ``older_than_ms`` ago.

        Defaults to the configured retention. Returns the number removed.
        """
        self._ensure_initialized()
        if older_than_ms is None:
            older_than_ms = self.config.retention_ms
        if older_than_ms < 0:
            raise ValidationError(f"older_than_ms must be >= 0, got {older_than_ms}")
        cutoff = utcnow() - timedelta(milliseconds=older_than_ms)
        removed = await self.store.delete_terminal(cutoff)
        logger.info("Cleaned up old jobs", removed=removed, older_than_ms=older_than_ms)
        return removed

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def _run_dispatcher(self) -> None:
        while not self._closing:
            self._wakeup.clear()
            try:
                await self._dispatch_cycle()
            except StoreConnectionError as e:
                logger.warning("Job store unavailable", error=str(e))
            except Exception:
                logger.exception("Dispatch cycle failed", queue=self.config.queue_name)

            if self._closing:
                break
            try:
                await asyncio.wait_for(
                    self._wakeup.wait(), timeout=self.config.poll_interval
                )
            except asyncio.TimeoutError:
                pass

    async def _dispatch_cycle(self) -> None:
        now = utcnow()
        await self.store.promote_delayed(now)
        await self._renew_leases()
        await self.recover_stale_jobs(now)

        while (
            not self._closing
            and self._processors
            and len(self._in_flight) < self.config.concurrency
        ):
            job = await self.store.claim(
                self.worker_id,
                self.job_types,
                utcnow(),
                self.config.lease_timeout,
            )
            if job is None:
                break
            self._start(job)

    async def _renew_leases(self) -> None:
        for job in list(self._in_flight.values()):
            if job.status != JobStatus.PROCESSING or job.lease_token is None:
                continue
            expires = utcnow() + timedelta(seconds=self.config.lease_timeout)
            if await self.store.renew_lease(job.id, job.lease_token, expires):
                job.lease_expires_at = expires
            else:
                # Cancelled, or the claim was recovered by another instance.
                job.cancel_requested = True

    async def recover_stale_jobs(self, now: Optional[datetime] = None) -> int:
        """
        Settle processing jobs whose lease has expired.

        The interrupted attempt counts as a failure: the job is re-queued
        immediately if attempts remain, otherwise it fails.
        """
        now = now or utcnow()
        recovered = 0
        for job in await self.store.find_expired(now):
            if job.id in self._in_flight:
                continue
            token = job.lease_token
            error = "lease expired"
            retry = job.can_retry()
            if retry:
                job.schedule_retry(error, run_at=now)
            else:
                job.mark_failed(error, now=now)
            if not await self.store.update(job, [JobStatus.PROCESSING], token):
                continue
            recovered += 1
            logger.warning(
                "Recovered job with expired lease",
                job_id=job.id,
                job_type=job.type,
                attempts=job.attempts,
                status=job.status.value,
            )
            await self._emit("on_retrying" if retry else "on_failed", job)
        return recovered

    def _start(self, job: Job) -> None:
        processor = self._processors[job.type]
        job.progress_hook = self._persist_progress
        self._in_flight[job.id] = job
        task = asyncio.create_task(self._execute(job, processor), name=job.id)
        self._tasks.add(task)
        task.add_done_callback(lambda t, job_id=job.id: self._finished(t, job_id))

    def _finished(self, task: asyncio.Task[None], job_id: str) -> None:
        self._tasks.discard(task)
        self._in_flight.pop(job_id, None)
        self._wakeup.set()

    async def _persist_progress(self, job: Job) -> None:
        if not await self.store.update(job, [JobStatus.PROCESSING], job.lease_token):
            job.cancel_requested = True
            raise JobCancelledError(job.id)
        logger.debug("Job progress", job_id=job.id, progress=job.progress)
        await self._emit("on_progress", job)

    async def _execute(self, job: Job, processor: JobProcessor) -> None:
        token = job.lease_token
        logger.info(
            "Job started",
            job_id=job.id,
            job_type=job.type,
            attempt=job.attempts,
            max_attempts=job.max_attempts,
        )
        await self._emit("on_started", job)

        deadline = asyncio.timeout(job.timeout / 1000 if job.timeout else None)
        try:
            async with deadline:
                result = await processor.process(job)
        except JobCancelledError:
            logger.info("Job stopped after cancellation", job_id=job.id)
            return
        except asyncio.CancelledError:
            await self._release_claim(job, token)
            raise
        except TimeoutError as e:
            if deadline.expired():
                error = ProcessorExecutionError(
                    f"Job timed out after {job.timeout} ms",
                    job_id=job.id,
                    original_type="TimeoutError",
                )
            else:
                # Raised by the processor itself, e.g. a network read timeout.
                logger.exception(
                    "Processor raised", job_id=job.id, job_type=job.type, error=str(e)
                )
                error = ProcessorExecutionError.from_exception(e, job_id=job.id)
            await self._settle_failure(job, token, processor, error)
        except Exception as e:
            logger.exception(
                "Processor raised", job_id=job.id, job_type=job.type, error=str(e)
            )
            error = ProcessorExecutionError.from_exception(e, job_id=job.id)
            await self._settle_failure(job, token, processor, error)
        else:
            await self._settle_success(job, token, processor, result)

    async def _settle_success(
        self, job: Job, token: Optional[str], processor: JobProcessor, result: Any
    ) -> None:
        settled_by_processor = job.status != JobStatus.PROCESSING
        if not settled_by_processor:
            job.mark_complete(result)

        if not await self.store.update(job, [JobStatus.PROCESSING], token):
            logger.info("Discarding result of job no longer held", job_id=job.id)
            return

        logger.info("Job completed", job_id=job.id, job_type=job.type, attempts=job.attempts)
        if not settled_by_processor:
            await invoke_hook(processor, "on_complete", job, result)
        await self._emit(TERMINAL_EVENTS[job.status], job)

    async def _settle_failure(
        self,
        job: Job,
        token: Optional[str],
        processor: JobProcessor,
        error: BaseException,
    ) -> None:
        settled_by_processor = job.status != JobStatus.PROCESSING
        retry = False
        if not settled_by_processor:
            retry = job.can_retry()
            if retry:
                delay_ms = self.backoff.delay_ms(job.attempts)
                job.schedule_retry(error, run_at=utcnow() + timedelta(milliseconds=delay_ms))
            else:
                job.mark_failed(error)

        if not await self.store.update(job, [JobStatus.PROCESSING], token):
            logger.info("Discarding failure of job no longer held", job_id=job.id)
            return

        if retry:
            logger.warning(
                "Job failed, retry scheduled",
                job_id=job.id,
                job_type=job.type,
                attempt=job.attempts,
                max_attempts=job.max_attempts,
                run_at=job.run_at.isoformat(),
                error=job.error,
            )
            await invoke_hook(processor, "on_error", job, error)
            await self._emit("on_retrying", job)
            return

        logger.error(
            "Job failed permanently",
            job_id=job.id,
            job_type=job.type,
            attempts=job.attempts,
            error=job.error,
        )
        if not settled_by_processor:
            await invoke_hook(processor, "on_error", job, error)
        await self._emit(TERMINAL_EVENTS[job.status], job)

    async def _release_claim(self, job: Job, token: Optional[str]) -> None:
        """Put a job interrupted by shutdown back in the queue, attempt not counted."""
        if job.status != JobStatus.PROCESSING:
            return
        job.release_claim()
        if not await self.store.update(job, [JobStatus.PROCESSING], token):
            logger.info("Interrupted job no longer held", job_id=job.id)
            return
        logger.warning(
            "Released interrupted job",
            job_id=job.id,
            job_type=job.type,
            attempts=job.attempts,
        )

    async def _emit(self, event: str, job: Job) -> None:
        for listener in self._listeners:
            try:
                await getattr(listener, event)(job)
            except Exception as e:
                logger.warning(
                    "Job event listener failed",
                    listener=type(listener).__name__,
                    event=event,
                    job_id=job.id,
                    error=str(e),
                )

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def close(self, timeout: Optional[float] = None) -> None:
        """
        Stop claiming, drain in-flight jobs and close the store.

        Jobs still running after ``timeout`` seconds (default: configured
        drain timeout) are interrupted and released back to the queue
        without using up an attempt.
        """
        if self._closing:
            return
        self._closing = True
        self._wakeup.set()
        drain_timeout = self.config.drain_timeout if timeout is None else timeout

        if self._dispatcher is not None:
            await self._dispatcher
            self._dispatcher = None

        if self._tasks:
            logger.info("Draining in-flight jobs", count=len(self._tasks))
            _, pending = await asyncio.wait(set(self._tasks), timeout=drain_timeout)
            for task in pending:
                task.cancel()
            if pending:
                logger.warning("Interrupting unfinished jobs", count=len(pending))
                await asyncio.gather(*pending, return_exceptions=True)

        if self._initialized:
            await self.store.close()
            self._initialized = False
        logger.info("Job queue closed", queue=self.config.queue_name)

    async def __aenter__(self) -> "JobQueue":
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
