"""
Processor contract for background jobs.

A processor handles every job of one type. The queue calls ``process(job)``
inside a concurrency slot; the returned value becomes the job result and a
raised exception becomes a failed attempt.

Processors may also define observability hooks. They are optional and any
exception they raise is logged and ignored:

    async def on_progress(self, job, progress): ...
    async def on_complete(self, job, result): ...
    async def on_error(self, job, error): ...

Example
-------
    class EmailProcessor(BaseJobProcessor):
        async def process(self, job: Job) -> dict:
            await self.update_progress(job, 50)
            self.ensure_not_cancelled(job)
            await send(job.data["to"])
            return {"sent": True}

    queue.register_processor("email", EmailProcessor())
"""

import inspect
from abc import ABC, abstractmethod
from typing import Any, Protocol, runtime_checkable

from reporadar.core.exceptions import JobCancelledError, ValidationError
from reporadar.core.jobs.models import Job
from reporadar.core.logging import get_logger

logger = get_logger(__name__)


@runtime_checkable
class JobProcessor(Protocol):
    """Minimal interface a processor must satisfy."""

    async def process(self, job: Job) -> Any:
        """Execute the job and return its result."""
        ...


def validate_processor(processor: Any) -> None:
    """Raise ValidationError unless ``processor.process`` is a coroutine function."""
    process = getattr(processor, "process", None)
    if process is None or not callable(process):
        raise ValidationError(
            f"Processor {type(processor).__name__} has no process() method"
        )
    if not inspect.iscoroutinefunction(process):
        raise ValidationError(
            f"{type(processor).__name__}.process() must be declared with async def"
        )


async def invoke_hook(processor: Any, hook_name: str, *args: Any) -> None:
    """Call an optional processor hook, logging and swallowing its errors."""
    hook = getattr(processor, hook_name, None)
    if hook is None:
        return
    try:
        outcome = hook(*args)
        if inspect.isawaitable(outcome):
            await outcome
    except Exception as e:
        logger.warning(
            "Processor hook failed",
            processor=type(processor).__name__,
            hook=hook_name,
            error=str(e),
        )


class BaseJobProcessor(ABC):
    """
    Base class for processors with progress and settlement helpers.

    Subclasses implement process(). The helpers keep job mutations inside the
    Job's own transition methods so the lifecycle rules are enforced in one
    place.
    """

    @abstractmethod
    async def process(self, job: Job) -> Any:
        """Execute the job and return its result."""

    async def on_progress(self, job: Job, progress: int) -> None:
        """Called after progress has been persisted."""

    async def on_complete(self, job: Job, result: Any) -> None:
        """Called after the job completed."""

    async def on_error(self, job: Job, error: BaseException) -> None:
        """Called after an attempt failed."""

    async def update_progress(self, job: Job, progress: int) -> None:
        """
        Report progress for a running job.

        Validates through Job.update_progress(), hands the value to the queue
        for persistence, then calls on_progress().

        Raises:
            InvalidProgressError: Value out of range, decreasing, or the job
                is not processing.
            JobCancelledError: The job was cancelled meanwhile.
        """
        job.update_progress(progress)
        await job.publish_progress()
        await invoke_hook(self, "on_progress", job, job.progress)

    async def handle_complete(self, job: Job, result: Any) -> None:
        """Mark the job completed and call on_complete()."""
        job.mark_complete(result)
        await invoke_hook(self, "on_complete", job, result)

    async def handle_error(self, job: Job, error: BaseException) -> None:
        """Mark the job failed and call on_error()."""
        job.mark_failed(error)
        await invoke_hook(self, "on_error", job, error)

    def ensure_not_cancelled(self, job: Job) -> None:
        """Raise JobCancelledError if cancellation was requested."""
        if job.cancel_requested:
            raise JobCancelledError(job.id)

