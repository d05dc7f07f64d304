"""Tests for JobQueue dispatch, retry, cancellation and shutdown."""

from __future__ import annotations

import asyncio
from collections import Counter
from dataclasses import replace
from datetime import timedelta
from typing import Any, List

import pytest

from reporadar.core.exceptions import (
    JobNotFoundError,
    JobQueueError,
    UnknownJobTypeError,
    ValidationError,
)
from reporadar.core.jobs.events import JobEventListener
from reporadar.core.jobs.models import Job, JobOptions, JobStatus, utcnow
from reporadar.core.jobs.processor import BaseJobProcessor


class EchoProcessor(BaseJobProcessor):
    """Returns the job data and records processing order."""

    def __init__(self, delay: float = 0.0) -> None:
        self.delay = delay
        self.order: List[str] = []
        self.running = 0
        self.max_running = 0

    async def process(self, job: Job) -> Any:
        self.order.append(job.id)
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        finally:
            self.running -= 1
        return {"echo": job.data}


class FlakyProcessor(BaseJobProcessor):
    """Fails the first ``failures`` attempts."""

    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0
        self.errors: List[str] = []

    async def process(self, job: Job) -> Any:
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError(f"boom {self.calls}")
        return "recovered"

    async def on_error(self, job: Job, error: BaseException) -> None:
        self.errors.append(str(error))


class GateProcessor(BaseJobProcessor):
    """Reports progress, then blocks until released."""

    def __init__(self, cooperative: bool = True) -> None:
        self.cooperative = cooperative
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.saw_cancel = False

    async def process(self, job: Job) -> Any:
        await self.update_progress(job, 25)
        await self.update_progress(job, 50)
        self.started.set()
        while not self.release.is_set():
            if self.cooperative and job.cancel_requested:
                self.saw_cancel = True
                self.ensure_not_cancelled(job)
            await asyncio.sleep(0.01)
        return "released"


class SleepProcessor(BaseJobProcessor):
    def __init__(self, seconds: float) -> None:
        self.seconds = seconds
        self.started = asyncio.Event()

    async def process(self, job: Job) -> Any:
        self.started.set()
        await asyncio.sleep(self.seconds)
        return "slept"


class CountingProcessor(BaseJobProcessor):
    """Counts executions per job id in a counter shared between instances."""

    def __init__(self, runs: Counter, worker_id: str) -> None:
        self.runs = runs
        self.worker_id = worker_id

    async def process(self, job: Job) -> Any:
        self.runs[job.id] += 1
        await asyncio.sleep(0.01)
        return {"worker": self.worker_id}


class ReadTimeoutProcessor(BaseJobProcessor):
    async def process(self, job: Job) -> Any:
        raise TimeoutError("GitHub API read timed out")


class RecordingListener(JobEventListener):
    def __init__(self) -> None:
        self.events: List[tuple] = []

    async def on_started(self, job: Job) -> None:
        self.events.append(("started", job.id))

    async def on_retrying(self, job: Job) -> None:
        self.events.append(("retrying", job.id))

    async def on_completed(self, job: Job) -> None:
        self.events.append(("completed", job.id))

    async def on_failed(self, job: Job) -> None:
        self.events.append(("failed", job.id))

    async def on_cancelled(self, job: Job) -> None:
        self.events.append(("cancelled", job.id))


class BrokenListener(JobEventListener):
    async def on_completed(self, job: Job) -> None:
        raise RuntimeError("listener broke")


class TestRegistrationAndEnqueue:
    """Tests for register_processor() and add_job()."""

    @pytest.mark.asyncio
    async def test_add_job_returns_queued_job(self, make_queue) -> None:
        queue = make_queue()
        queue.register_processor("echo", EchoProcessor())
        await queue.initialize(start_workers=False)
        try:
            job = await queue.add_job("echo", {"x": 1})

            assert job.status == JobStatus.QUEUED
            assert job.max_attempts == 3
            assert await queue.get_job_status(job.id) == JobStatus.QUEUED
            assert await queue.get_job(job.id) == job
        finally:
            await queue.close()

    @pytest.mark.asyncio
    async def test_unknown_type_rejected(self, make_queue) -> None:
        queue = make_queue()
        await queue.initialize(start_workers=False)
        try:
            with pytest.raises(UnknownJobTypeError):
                await queue.add_job("email", {})
            assert (await queue.get_stats()).total == 0
        finally:
            await queue.close()

    @pytest.mark.asyncio
    async def test_non_json_data_rejected(self, make_queue) -> None:
        queue = make_queue()
        queue.register_processor("echo", EchoProcessor())
        await queue.initialize(start_workers=False)
        try:
            with pytest.raises(ValidationError):
                await queue.add_job("echo", {"when": object()})
        finally:
            await queue.close()

    @pytest.mark.asyncio
    async def test_requires_initialize(self, make_queue) -> None:
        queue = make_queue()
        queue.register_processor("echo", EchoProcessor())
        with pytest.raises(JobQueueError):
            await queue.add_job("echo", {})

    @pytest.mark.asyncio
    async def test_missing_job_queries(self, make_queue) -> None:
        queue = make_queue()
        await queue.initialize(start_workers=False)
        try:
            assert await queue.get_job("job_nope") is None
            assert await queue.get_job_status("job_nope") is None
            with pytest.raises(JobNotFoundError):
                await queue.require_job("job_nope")
        finally:
            await queue.close()

    def test_sync_processor_rejected(self, make_queue) -> None:
        class SyncProcessor:
            def process(self, job: Job) -> None:
                return None

        with pytest.raises(ValidationError):
            make_queue().register_processor("sync", SyncProcessor())

    @pytest.mark.asyncio
    async def test_reregistration_replaces_processor(self, make_queue, wait_for_status) -> None:
        queue = make_queue()
        first, second = EchoProcessor(), EchoProcessor()
        queue.register_processor("echo", first)
        queue.register_processor("echo", second)
        await queue.initialize()
        try:
            job = await queue.add_job("echo", {})
            await wait_for_status(queue, job.id, JobStatus.COMPLETED)
            assert first.order == []
            assert second.order == [job.id]
        finally:
            await queue.close()


class TestProcessing:
    """End-to-end processing scenarios."""

    @pytest.mark.asyncio
    async def test_successful_job(self, make_queue, wait_for_status) -> None:
        queue = make_queue()
        queue.register_processor("echo", EchoProcessor())
        await queue.initialize()
        try:
            job = await queue.add_job("echo", {"repo": "octo/hello"})
            done = await wait_for_status(queue, job.id, JobStatus.COMPLETED)

            assert done.result == {"echo": {"repo": "octo/hello"}}
            assert done.progress == 100
            assert done.attempts == 1
            assert done.error is None
            assert done.started_at is not None
            assert done.completed_at >= done.started_at
            assert done.lease_token is None
        finally:
            await queue.close()

    @pytest.mark.asyncio
    async def test_priority_then_fifo(self, make_queue, fast_config, wait_for_status) -> None:
        queue = make_queue(replace(fast_config, concurrency=1))
        processor = EchoProcessor()
        queue.register_processor("echo", processor)
        await queue.initialize(start_workers=False)
        try:
            low = await queue.add_job("echo", {"name": "low"})
            mid_a = await queue.add_job("echo", {"name": "a"}, JobOptions(priority=5))
            mid_b = await queue.add_job("echo", {"name": "b"}, JobOptions(priority=5))
            high = await queue.add_job("echo", {"name": "high"}, JobOptions(priority=10))

            await queue.initialize()
            await wait_for_status(queue, low.id, JobStatus.COMPLETED)

            assert processor.order == [high.id, mid_a.id, mid_b.id, low.id]
        finally:
            await queue.close()

    @pytest.mark.asyncio
    async def test_concurrency_bound(self, make_queue, fast_config, wait_for_status) -> None:
        queue = make_queue(replace(fast_config, concurrency=2))
        processor = EchoProcessor(delay=0.05)
        queue.register_processor("echo", processor)
        await queue.initialize()
        try:
            jobs = [await queue.add_job("echo", {"i": i}) for i in range(6)]
            for job in jobs:
                await wait_for_status(queue, job.id, JobStatus.COMPLETED)

            assert processor.max_running == 2
            assert queue.in_flight == 0
        finally:
            await queue.close()

    @pytest.mark.asyncio
    async def test_delayed_job_waits(self, make_queue, wait_for_status) -> None:
        queue = make_queue()
        queue.register_processor("echo", EchoProcessor())
        await queue.initialize()
        try:
            job = await queue.add_job("echo", {}, JobOptions(delay=300))
            stats = await queue.get_stats()
            assert stats.delayed == 1
            assert stats.waiting == 0

            done = await wait_for_status(queue, job.id, JobStatus.COMPLETED)
            assert done.started_at >= done.created_at + timedelta(milliseconds=300)
        finally:
            await queue.close()

    @pytest.mark.asyncio
    async def test_progress_visible_while_running(self, make_queue, wait_until) -> None:
        queue = make_queue()
        processor = GateProcessor()
        queue.register_processor("gate", processor)
        listener = RecordingListener()
        queue.add_listener(listener)
        await queue.initialize()
        try:
            job = await queue.add_job("gate", {})
            await asyncio.wait_for(processor.started.wait(), timeout=5)

            running = await queue.get_job(job.id)
            assert running.status == JobStatus.PROCESSING
            assert running.progress == 50
            assert (await queue.get_stats()).active == 1

            processor.release.set()
            await wait_until(lambda: ("completed", job.id) in listener.events)
            done = await queue.get_job(job.id)
            assert done.progress == 100
            assert done.result == "released"
        finally:
            await queue.close()

    @pytest.mark.asyncio
    async def test_invalid_progress_fails_attempt(self, make_queue, wait_for_status) -> None:
        class OverReporting(BaseJobProcessor):
            async def process(self, job: Job) -> Any:
                await self.update_progress(job, 150)

        queue = make_queue()
        queue.register_processor("bad", OverReporting())
        await queue.initialize()
        try:
            job = await queue.add_job("bad", {}, JobOptions(max_attempts=1))
            failed = await wait_for_status(queue, job.id, JobStatus.FAILED)
            assert "between 0 and 100" in failed.error
        finally:
            await queue.close()

    @pytest.mark.asyncio
    async def test_timeout_fails_attempt(self, make_queue, wait_for_status) -> None:
        queue = make_queue()
        queue.register_processor("slow", SleepProcessor(5))
        await queue.initialize()
        try:
            job = await queue.add_job("slow", {}, JobOptions(max_attempts=1, timeout=50))
            failed = await wait_for_status(queue, job.id, JobStatus.FAILED)
            assert "timed out" in failed.error
        finally:
            await queue.close()

    @pytest.mark.asyncio
    async def test_processor_timeout_error_keeps_message(
        self, make_queue, wait_for_status
    ) -> None:
        queue = make_queue()
        queue.register_processor("fetch", ReadTimeoutProcessor())
        await queue.initialize()
        try:
            job = await queue.add_job("fetch", {}, JobOptions(max_attempts=1))
            failed = await wait_for_status(queue, job.id, JobStatus.FAILED)
            assert "GitHub API read timed out" in failed.error
            assert "None ms" not in failed.error
        finally:
            await queue.close()

    @pytest.mark.asyncio
    async def test_processor_timeout_error_within_job_timeout(
        self, make_queue, wait_for_status
    ) -> None:
        queue = make_queue()
        queue.register_processor("fetch", ReadTimeoutProcessor())
        await queue.initialize()
        try:
            job = await queue.add_job(
                "fetch", {}, JobOptions(max_attempts=1, timeout=5000)
            )
            failed = await wait_for_status(queue, job.id, JobStatus.FAILED)
            assert "GitHub API read timed out" in failed.error
        finally:
            await queue.close()


class TestRetry:
    """Tests for retry with backoff."""

    @pytest.mark.asyncio
    async def test_retry_until_success(self, make_queue, wait_for_status) -> None:
        queue = make_queue()
        processor = FlakyProcessor(failures=2)
        listener = RecordingListener()
        queue.register_processor("flaky", processor)
        queue.add_listener(listener)
        await queue.initialize()
        try:
            job = await queue.add_job("flaky", {})
            done = await wait_for_status(queue, job.id, JobStatus.COMPLETED)

            assert done.attempts == 3
            assert done.result == "recovered"
            assert done.error is None
            assert processor.errors == ["boom 1", "boom 2"]
            assert [e for e, _ in listener.events].count("retrying") == 2
        finally:
            await queue.close()

    @pytest.mark.asyncio
    async def test_retry_exhaustion(self, make_queue, wait_for_status) -> None:
        queue = make_queue()
        processor = FlakyProcessor(failures=10)
        queue.register_processor("flaky", processor)
        await queue.initialize()
        try:
            job = await queue.add_job("flaky", {}, JobOptions(max_attempts=2))
            failed = await wait_for_status(queue, job.id, JobStatus.FAILED)

            assert failed.attempts == 2
            assert failed.error == "boom 2"
            assert failed.result is None
            assert processor.calls == 2
        finally:
            await queue.close()

    @pytest.mark.asyncio
    async def test_backoff_delays_next_attempt(
        self, make_queue, fast_config, wait_for_status
    ) -> None:
        config = replace(fast_config, initial_delay_ms=2000, max_delay_ms=5000)
        queue = make_queue(config)
        queue.register_processor("flaky", FlakyProcessor(failures=1))
        await queue.initialize()
        try:
            before = utcnow()
            job = await queue.add_job("flaky", {})
            await asyncio.sleep(0.2)
            retrying = await wait_for_status(queue, job.id, JobStatus.QUEUED)

            assert retrying.attempts == 1
            assert retrying.error == "boom 1"
            assert retrying.progress == 0
            assert retrying.run_at >= before + timedelta(milliseconds=2000)
            assert (await queue.get_stats()).delayed == 1
        finally:
            await queue.close(timeout=0)


class TestCancellation:
    """Tests for cancel_job()."""

    @pytest.mark.asyncio
    async def test_cancel_queued_job_is_idempotent(self, make_queue) -> None:
        queue = make_queue()
        queue.register_processor("echo", EchoProcessor())
        await queue.initialize(start_workers=False)
        try:
            job = await queue.add_job("echo", {})
            first = await queue.cancel_job(job.id)
            second = await queue.cancel_job(job.id)

            assert first.status == JobStatus.CANCELLED
            assert second.status == JobStatus.CANCELLED
            assert second.completed_at == first.completed_at
            assert await queue.cancel_job("job_missing") is None
        finally:
            await queue.close()

    @pytest.mark.asyncio
    async def test_cancelled_job_never_runs(self, make_queue) -> None:
        queue = make_queue()
        processor = EchoProcessor()
        queue.register_processor("echo", processor)
        await queue.initialize(start_workers=False)
        try:
            job = await queue.add_job("echo", {})
            await queue.cancel_job(job.id)
            await queue.initialize()
            await asyncio.sleep(0.1)

            assert processor.order == []
            assert await queue.get_job_status(job.id) == JobStatus.CANCELLED
        finally:
            await queue.close()

    @pytest.mark.asyncio
    async def test_cancel_completed_job_is_noop(self, make_queue, wait_for_status) -> None:
        queue = make_queue()
        queue.register_processor("echo", EchoProcessor())
        await queue.initialize()
        try:
            job = await queue.add_job("echo", {})
            await wait_for_status(queue, job.id, JobStatus.COMPLETED)
            after = await queue.cancel_job(job.id)

            assert after.status == JobStatus.COMPLETED
            assert after.result == {"echo": {}}
        finally:
            await queue.close()

    @pytest.mark.asyncio
    async def test_cooperative_cancel_of_running_job(self, make_queue, wait_until) -> None:
        queue = make_queue()
        processor = GateProcessor(cooperative=True)
        queue.register_processor("gate", processor)
        await queue.initialize()
        try:
            job = await queue.add_job("gate", {})
            await asyncio.wait_for(processor.started.wait(), timeout=5)

            cancelled = await queue.cancel_job(job.id)
            assert cancelled.status == JobStatus.CANCELLED

            await wait_until(lambda: queue.in_flight == 0)
            assert processor.saw_cancel
            stored = await queue.get_job(job.id)
            assert stored.status == JobStatus.CANCELLED
            assert stored.result is None
        finally:
            await queue.close()

    @pytest.mark.asyncio
    async def test_result_discarded_after_cancel(self, make_queue, wait_until) -> None:
        queue = make_queue()
        processor = GateProcessor(cooperative=False)
        listener = RecordingListener()
        queue.register_processor("gate", processor)
        queue.add_listener(listener)
        await queue.initialize()
        try:
            job = await queue.add_job("gate", {})
            await asyncio.wait_for(processor.started.wait(), timeout=5)
            await queue.cancel_job(job.id)
            processor.release.set()

            await wait_until(lambda: queue.in_flight == 0)
            stored = await queue.get_job(job.id)
            assert stored.status == JobStatus.CANCELLED
            assert stored.result is None
            assert ("completed", job.id) not in listener.events
            assert ("cancelled", job.id) in listener.events
        finally:
            await queue.close()


class TestRecovery:
    """Tests for stale-lease recovery."""

    @pytest.mark.asyncio
    async def test_expired_lease_requeued_and_completed(
        self, make_queue, store, wait_for_status
    ) -> None:
        await store.initialize()
        orphan = Job.create("echo", {"from": "crashed worker"})
        await store.add(orphan)
        claimed = await store.claim("dead-worker", ["echo"], utcnow(), lease_seconds=0)
        assert claimed.status == JobStatus.PROCESSING

        queue = make_queue()
        queue.register_processor("echo", EchoProcessor())
        await queue.initialize()
        try:
            done = await wait_for_status(queue, orphan.id, JobStatus.COMPLETED)
            assert done.attempts == 2
        finally:
            await queue.close()

    @pytest.mark.asyncio
    async def test_expired_lease_on_last_attempt_fails(self, make_queue, store) -> None:
        await store.initialize()
        orphan = Job.create("echo", {}, JobOptions(max_attempts=1))
        await store.add(orphan)
        await store.claim("dead-worker", ["echo"], utcnow(), lease_seconds=0)

        queue = make_queue()
        queue.register_processor("echo", EchoProcessor())
        await queue.initialize(start_workers=False)
        try:
            job = await queue.get_job(orphan.id)
            assert job.status == JobStatus.FAILED
            assert job.error == "lease expired"
        finally:
            await queue.close()

    @pytest.mark.asyncio
    async def test_live_lease_left_alone(self, make_queue, store) -> None:
        await store.initialize()
        job = Job.create("echo", {})
        await store.add(job)
        await store.claim("other-worker", ["echo"], utcnow(), lease_seconds=300)

        queue = make_queue()
        queue.register_processor("echo", EchoProcessor())
        await queue.initialize(start_workers=False)
        try:
            assert await queue.recover_stale_jobs() == 0
            assert await queue.get_job_status(job.id) == JobStatus.PROCESSING
        finally:
            await queue.close()


class TestMultipleInstances:
    """Several queue instances sharing one store."""

    @pytest.mark.asyncio
    async def test_each_job_runs_once_across_instances(
        self, make_queue, wait_for_status
    ) -> None:
        runs: Counter = Counter()
        workers = [make_queue(worker_id=f"worker-{n}") for n in range(3)]
        for queue in workers:
            queue.register_processor("count", CountingProcessor(runs, queue.worker_id))
            await queue.initialize(start_workers=False)

        jobs = [await workers[0].add_job("count", {"n": n}) for n in range(12)]
        for queue in workers:
            await queue.initialize()
        try:
            for job in jobs:
                done = await wait_for_status(workers[0], job.id, JobStatus.COMPLETED)
                assert done.attempts == 1
            assert sorted(runs) == sorted(job.id for job in jobs)
            assert set(runs.values()) == {1}
        finally:
            for queue in workers:
                await queue.close()

    @pytest.mark.asyncio
    async def test_lease_renewal_keeps_job_with_its_worker(
        self, make_queue, fast_config, wait_until
    ) -> None:
        config = replace(fast_config, lease_timeout=0.2)
        first = make_queue(config, worker_id="worker-a")
        gate = GateProcessor()
        first.register_processor("gate", gate)
        await first.initialize()
        second = make_queue(config, worker_id="worker-b")
        other = GateProcessor()
        second.register_processor("gate", other)
        try:
            job = await first.add_job("gate", {})
            await asyncio.wait_for(gate.started.wait(), timeout=5)
            await second.initialize()
            await asyncio.sleep(0.5)

            running = await first.get_job(job.id)
            assert running.status == JobStatus.PROCESSING
            assert running.worker_id == "worker-a"
            assert running.progress == 50
            assert not other.started.is_set()

            gate.release.set()
            await wait_until(lambda: first.in_flight == 0)
            assert (await first.get_job(job.id)).status == JobStatus.COMPLETED
        finally:
            gate.release.set()
            other.release.set()
            await second.close()
            await first.close()


class TestStatsAndCleanup:
    @pytest.mark.asyncio
    async def test_stats_and_listing(self, make_queue, wait_for_status) -> None:
        queue = make_queue()
        queue.register_processor("echo", EchoProcessor())
        queue.register_processor("flaky", FlakyProcessor(failures=10))
        await queue.initialize(start_workers=False)
        try:
            ok = await queue.add_job("echo", {})
            bad = await queue.add_job("flaky", {}, JobOptions(max_attempts=1))
            cancelled = await queue.add_job("echo", {})
            await queue.cancel_job(cancelled.id)
            waiting = await queue.add_job("echo", {}, JobOptions(delay=60_000))

            await queue.initialize()
            await wait_for_status(queue, ok.id, JobStatus.COMPLETED)
            await wait_for_status(queue, bad.id, JobStatus.FAILED)

            stats = await queue.get_stats()
            assert stats.completed == 1
            assert stats.failed == 1
            assert stats.cancelled == 1
            assert stats.delayed == 1
            assert stats.total == 4

            listed = await queue.list_jobs()
            assert [j.id for j in listed] == [waiting.id, cancelled.id, bad.id, ok.id]
            failed = await queue.list_jobs(status=JobStatus.FAILED)
            assert [j.id for j in failed] == [bad.id]
        finally:
            await queue.close(timeout=0)

    @pytest.mark.asyncio
    async def test_cleanup_removes_old_terminal_jobs(self, make_queue, store) -> None:
        queue = make_queue()
        queue.register_processor("echo", EchoProcessor())
        await queue.initialize(start_workers=False)
        try:
            old = await queue.add_job("echo", {})
            await queue.cancel_job(old.id)
            stored = await store.get(old.id)
            stored.completed_at = utcnow() - timedelta(days=2)
            await store.update(stored, [JobStatus.CANCELLED])

            recent = await queue.add_job("echo", {})
            await queue.cancel_job(recent.id)
            pending = await queue.add_job("echo", {})

            assert await queue.cleanup() == 1
            assert await queue.get_job(old.id) is None
            assert await queue.get_job(recent.id) is not None
            assert await queue.get_job(pending.id) is not None
            assert await queue.cleanup(older_than_ms=0) == 1
        finally:
            await queue.close()

    @pytest.mark.asyncio
    async def test_cleanup_rejects_negative_threshold(self, make_queue) -> None:
        queue = make_queue()
        await queue.initialize(start_workers=False)
        try:
            with pytest.raises(ValidationError):
                await queue.cleanup(older_than_ms=-1)
        finally:
            await queue.close()


class TestListenersAndShutdown:
    @pytest.mark.asyncio
    async def test_listener_errors_do_not_affect_jobs(self, make_queue, wait_for_status) -> None:
        queue = make_queue()
        queue.register_processor("echo", EchoProcessor())
        queue.add_listener(BrokenListener())
        recorder = RecordingListener()
        queue.add_listener(recorder)
        await queue.initialize()
        try:
            job = await queue.add_job("echo", {})
            await wait_for_status(queue, job.id, JobStatus.COMPLETED)
            await asyncio.sleep(0.05)
            assert ("started", job.id) in recorder.events
            assert ("completed", job.id) in recorder.events
        finally:
            await queue.close()

    @pytest.mark.asyncio
    async def test_close_waits_for_in_flight_jobs(self, make_queue, store) -> None:
        queue = make_queue()
        processor = SleepProcessor(0.1)
        queue.register_processor("slow", processor)
        await queue.initialize()
        job = await queue.add_job("slow", {})
        await asyncio.wait_for(processor.started.wait(), timeout=5)

        await queue.close(timeout=5)

        stored = await store.get(job.id)
        assert stored.status == JobStatus.COMPLETED
        assert not queue.is_running

    @pytest.mark.asyncio
    async def test_close_interrupts_and_releases(self, make_queue, store) -> None:
        queue = make_queue()
        processor = SleepProcessor(30)
        queue.register_processor("slow", processor)
        await queue.initialize()
        job = await queue.add_job("slow", {})
        await asyncio.wait_for(processor.started.wait(), timeout=5)

        await queue.close(timeout=0.05)

        stored = await store.get(job.id)
        assert stored.status == JobStatus.QUEUED
        assert stored.attempts == 0
        assert stored.error is None
        assert stored.lease_token is None
        assert stored.worker_id is None
        assert stored.is_eligible()

    @pytest.mark.asyncio
    async def test_close_on_last_attempt_keeps_job_claimable(
        self, make_queue, store, wait_for_status
    ) -> None:
        first = make_queue(worker_id="worker-a")
        blocked = SleepProcessor(60)
        first.register_processor("slow", blocked)
        resumed = FlakyProcessor(failures=0)
        await first.initialize()
        job = await first.add_job("slow", {}, JobOptions(max_attempts=1))
        await asyncio.wait_for(blocked.started.wait(), timeout=5)

        await first.close(timeout=0.05)

        stored = await store.get(job.id)
        assert stored.status == JobStatus.QUEUED
        assert stored.attempts == 0
        assert stored.can_retry()

        second = make_queue(worker_id="worker-b")
        second.register_processor("slow", resumed)
        await second.initialize()
        try:
            done = await wait_for_status(second, job.id, JobStatus.COMPLETED)
            assert done.attempts == 1
            assert done.result == "recovered"
            assert resumed.errors == []
        finally:
            await second.close()

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, make_queue) -> None:
        queue = make_queue()
        await queue.initialize()
        await queue.close()
        await queue.close()
        with pytest.raises(JobQueueError):
            await queue.initialize()

    @pytest.mark.asyncio
    async def test_async_context_manager(self, make_queue, wait_for_status) -> None:
        queue = make_queue()
        queue.register_processor("echo", EchoProcessor())
        async with queue:
            job = await queue.add_job("echo", {})
            await wait_for_status(queue, job.id, JobStatus.COMPLETED)
        assert not queue.is_running
