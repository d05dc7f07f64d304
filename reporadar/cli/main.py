"""Job queue command line.

Run workers and inspect the shared job store:

    reporadar-jobs worker --setup myapp.jobs:setup
    reporadar-jobs stats
    reporadar-jobs list --status failed
    reporadar-jobs show job_0123...
    reporadar-jobs cancel job_0123...
    reporadar-jobs cleanup --older-than-hours 48 --force

Store location and pool size come from config.yaml and the REPORADAR_* /
REDIS_URL environment variables.
"""

from __future__ import annotations

import asyncio
import importlib
import inspect
import json
import signal
from contextlib import asynccontextmanager
from dataclasses import replace
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Optional

import typer
from rich.console import Console
from rich.table import Table

from reporadar.core.config import Config
from reporadar.core.config_loaders import load_config
from reporadar.core.exceptions import RepoRadarError
from reporadar.core.jobs.events import NotificationService
from reporadar.core.jobs.factory import create_job_queue
from reporadar.core.jobs.metrics import JobMetrics
from reporadar.core.jobs.models import Job, JobStatus
from reporadar.core.jobs.queue import JobQueue
from reporadar.core.logging import configure_logging, get_logger

logger = get_logger(__name__)
console = Console()

app = typer.Typer(
    name="reporadar-jobs",
    help="RepoRadar background job queue",
    add_completion=False,
)

STATUS_STYLES = {
    JobStatus.QUEUED: "cyan",
    JobStatus.PROCESSING: "yellow",
    JobStatus.COMPLETED: "green",
    JobStatus.FAILED: "red",
    JobStatus.CANCELLED: "dim",
}


class _State:
    config_path: Optional[Path] = None


def _load() -> Config:
    config = load_config(_State.config_path)
    log_file = Path(config.logging.file) if config.logging.file else None
    configure_logging(config.logging.level, log_file)
    return config


@asynccontextmanager
async def _open_queue() -> AsyncIterator[JobQueue]:
    queue = create_job_queue(_load().jobs)
    await queue.initialize(start_workers=False)
    try:
        yield queue
    finally:
        await queue.close()


def _run(coro: Any) -> Any:
    try:
        return asyncio.run(coro)
    except RepoRadarError as e:
        console.print(f"[red]Error:[/red] {e}")
        for step in e.how_to_fix:
            console.print(f"  - {step}")
        raise typer.Exit(1) from e


def _status_text(status: JobStatus) -> str:
    return f"[{STATUS_STYLES[status]}]{status.value}[/]"


def _load_setup(target: str) -> Callable[..., Any]:
    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        raise typer.BadParameter("expected module:function", param_hint="--setup")
    try:
        module = importlib.import_module(module_name)
        return getattr(module, attr)
    except (ImportError, AttributeError) as e:
        raise typer.BadParameter(f"cannot load {target}: {e}", param_hint="--setup") from e


@app.callback()
def main(
    config: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Path to config.yaml"
    ),
) -> None:
    """Manage the RepoRadar background job queue."""
    _State.config_path = config


@app.command()
def worker(
    setup: str = typer.Option(
        ..., "--setup", help="module:function that registers processors on the queue"
    ),
    concurrency: Optional[int] = typer.Option(
        None, "--concurrency", min=1, help="Override configured concurrency"
    ),
) -> None:
    """Run a worker until interrupted."""
    setup_fn = _load_setup(setup)

    async def _work() -> None:
        config = _load().jobs
        if concurrency is not None:
            config = replace(config, concurrency=concurrency)
        queue = create_job_queue(config)
        queue.add_listener(NotificationService())
        queue.add_listener(JobMetrics())

        outcome = setup_fn(queue)
        if inspect.isawaitable(outcome):
            await outcome

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)

        await queue.initialize()
        console.print(
            f"[green]Worker {queue.worker_id} running[/green] "
            f"types={', '.join(queue.job_types)} concurrency={config.concurrency}"
        )
        try:
            await stop.wait()
        finally:
            console.print("Shutting down, draining in-flight jobs...")
            await queue.close()

    _run(_work())


@app.command()
def stats() -> None:
    """Show job counts by state."""

    async def _stats() -> None:
        async with _open_queue() as queue:
            counts = (await queue.get_stats()).to_dict()
        table = Table(title="Job Queue")
        table.add_column("State")
        table.add_column("Jobs", justify="right")
        for name, count in counts.items():
            table.add_row(name, str(count))
        console.print(table)

    _run(_stats())


@app.command("list")
def list_jobs(
    status: Optional[JobStatus] = typer.Option(None, "--status", "-s"),
    job_type: Optional[str] = typer.Option(None, "--type", "-t"),
    limit: int = typer.Option(20, "--limit", "-n", min=1, max=500),
) -> None:
    """List recent jobs, newest first."""

    async def _list() -> None:
        async with _open_queue() as queue:
            jobs = await queue.list_jobs(status, job_type, limit)
        if not jobs:
            console.print("No jobs found")
            return
        table = Table()
        table.add_column("ID")
        table.add_column("Type")
        table.add_column("Status")
        table.add_column("Progress", justify="right")
        table.add_column("Attempts", justify="right")
        table.add_column("Created")
        for job in jobs:
            table.add_row(
                job.id,
                job.type,
                _status_text(job.status),
                f"{job.progress}%",
                f"{job.attempts}/{job.max_attempts}",
                job.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            )
        console.print(table)

    _run(_list())


def _print_job(job: Job) -> None:
    console.print(f"[bold]{job.id}[/bold] {job.type} {_status_text(job.status)}")
    console.print(f"progress={job.progress}% attempts={job.attempts}/{job.max_attempts}")
    if job.error:
        console.print(f"[red]error:[/red] {job.error}")
    if job.result is not None:
        console.print_json(json.dumps(job.result, default=str))


@app.command()
def show(job_id: str = typer.Argument(..., help="Job ID")) -> None:
    """Show one job."""

    async def _show() -> None:
        async with _open_queue() as queue:
            job = await queue.require_job(job_id)
        _print_job(job)

    _run(_show())


@app.command()
def cancel(job_id: str = typer.Argument(..., help="Job ID")) -> None:
    """Cancel a queued or running job."""

    async def _cancel() -> Optional[Job]:
        async with _open_queue() as queue:
            return await queue.cancel_job(job_id)

    job = _run(_cancel())
    if job is None:
        console.print(f"[red]Job not found:[/red] {job_id}")
        raise typer.Exit(1)
    console.print(f"{job.id}: {_status_text(job.status)}")


@app.command()
def cleanup(
    older_than_hours: Optional[float] = typer.Option(
        None, "--older-than-hours", min=0, help="Defaults to configured retention"
    ),
    force: bool = typer.Option(False, "--force", "-f", help="Skip confirmation"),
) -> None:
    """Delete finished jobs older than the retention window."""
    if not force and not typer.confirm("Delete old completed, failed and cancelled jobs?"):
        console.print("Cleanup cancelled")
        return

    older_than_ms = int(older_than_hours * 3_600_000) if older_than_hours is not None else None

    async def _cleanup() -> int:
        async with _open_queue() as queue:
            return await queue.cleanup(older_than_ms)

    removed = _run(_cleanup())
    console.print(f"Removed {removed} job(s)")
