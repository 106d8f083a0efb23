import asyncio
from datetime import timedelta

import pytest

from enforcement_orchestrator.core.exceptions import CircuitOpenError, ExecutionSuspended, JobCancelledError
from enforcement_orchestrator.models.job import Job, JobProgress, JobStatus, JobType
from enforcement_orchestrator.services.job_handlers import JobHandler
from enforcement_orchestrator.services.queue_manager import QueueManager
from enforcement_orchestrator.services.worker_pool import WorkerPool
from enforcement_orchestrator.storage.memory import MemoryJobStore
from enforcement_orchestrator.utils.config import WorkerSettings

from conftest import FixedRandom


class ScriptedHandler(JobHandler):
    """Runs whatever coroutine function the test hands it."""

    job_type = JobType.EXECUTE_BATCH

    def __init__(self, behaviour):
        super().__init__()
        self.behaviour = behaviour
        self.contexts = []

    async def handle(self, context):
        self.contexts.append(context)
        return await self.behaviour(context)


@pytest.fixture
def queue(clock):
    return QueueManager(MemoryJobStore(), clock=clock, rng=FixedRandom())


def _pool(queue, clock, behaviour=None, **settings):
    handlers = [ScriptedHandler(behaviour)] if behaviour else []
    values = dict(concurrency=1, poll_interval_seconds=0.01, reaper_interval_seconds=0.01)
    values.update(settings)
    return WorkerPool(queue, handlers, settings=WorkerSettings(**values), clock=clock, name="test")


async def _enqueue(queue, job_id="j1"):
    await queue.enqueue(Job(job_id=job_id, job_type=JobType.EXECUTE_BATCH, payload={"batch_id": "b1"}))


class TestOutcomes:
    @pytest.mark.asyncio
    async def test_success_completes_job(self, queue, clock):
        async def succeed(context):
            await context.report_progress(JobProgress(current_step="executing", completed_steps=1, total_steps=2))
            return {"completed": 2}

        pool = _pool(queue, clock, succeed)
        await _enqueue(queue)

        assert await pool.process_next("test-0")

        job = await queue.get_status("j1")
        assert job.status == JobStatus.SUCCEEDED
        assert job.result == {"completed": 2}
        assert pool.jobs_processed == 1
        assert pool.active_jobs == {}

    @pytest.mark.asyncio
    async def test_handler_sees_deadline_and_worker(self, queue, clock):
        async def succeed(context):
            return {}

        pool = _pool(queue, clock, succeed, job_timeout_seconds=90)
        await _enqueue(queue)
        await pool.process_next("test-0")

        context = pool.handlers[JobType.EXECUTE_BATCH].contexts[0]
        assert context.worker_id == "test-0"
        assert context.deadline == clock() + timedelta(seconds=90)

    @pytest.mark.asyncio
    async def test_suspension_reschedules_without_spending_attempt(self, queue, clock):
        async def suspend(context):
            raise ExecutionSuspended("b1", 120.0, "rate limit wait exceeds job budget")

        pool = _pool(queue, clock, suspend)
        await _enqueue(queue)
        await pool.process_next("test-0")

        job = await queue.get_status("j1")
        assert job.status == JobStatus.QUEUED
        assert job.attempt_count == 0
        assert job.run_at == clock() + timedelta(seconds=120)

    @pytest.mark.asyncio
    async def test_open_circuit_reschedules(self, queue, clock):
        async def circuit_open(context):
            raise CircuitOpenError("sim", 45.0)

        pool = _pool(queue, clock, circuit_open)
        await _enqueue(queue)
        await pool.process_next("test-0")

        job = await queue.get_status("j1")
        assert job.status == JobStatus.QUEUED
        assert job.progress.current_step == "waiting: circuit open for sim"

    @pytest.mark.asyncio
    async def test_cancelled_handler_marks_job_cancelled(self, queue, clock):
        async def cancelled(context):
            raise JobCancelledError(context.job.job_id, {"completed": 50})

        pool = _pool(queue, clock, cancelled)
        await _enqueue(queue)
        await pool.process_next("test-0")

        job = await queue.get_status("j1")
        assert job.status == JobStatus.CANCELLED
        assert job.result == {"completed": 50}

    @pytest.mark.asyncio
    async def test_unexpected_error_is_retried(self, queue, clock):
        async def explode(context):
            raise RuntimeError("disk full")

        pool = _pool(queue, clock, explode)
        await _enqueue(queue)
        await pool.process_next("test-0")

        job = await queue.get_status("j1")
        assert job.status == JobStatus.QUEUED
        assert job.attempt_count == 1
        assert job.error_message == "disk full"

    @pytest.mark.asyncio
    async def test_missing_handler_fails_job(self, queue, clock):
        pool = _pool(queue, clock)
        await _enqueue(queue)
        await pool.process_next("test-0")

        job = await queue.get_status("j1")
        assert job.status == JobStatus.FAILED
        assert job.error_code == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failed_attempt(self, queue, clock):
        async def hang(context):
            await asyncio.sleep(5)

        pool = _pool(queue, clock, hang, job_timeout_seconds=0.05)
        await _enqueue(queue)
        await pool.process_next("test-0")

        job = await queue.get_status("j1")
        assert job.status == JobStatus.QUEUED
        assert job.error_code == "JOB_TIMEOUT"


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_nothing_to_claim(self, queue, clock):
        pool = _pool(queue, clock)
        assert await pool.process_next("test-0") is False
        assert await pool.run_until_idle() == 0

    @pytest.mark.asyncio
    async def test_run_until_idle_drains_queue(self, queue, clock):
        async def succeed(context):
            return {}

        pool = _pool(queue, clock, succeed)
        for n in range(3):
            await _enqueue(queue, f"j{n}")

        assert await pool.run_until_idle() == 3

    @pytest.mark.asyncio
    async def test_background_workers_process_jobs(self, queue, clock):
        async def succeed(context):
            return {"ok": True}

        pool = _pool(queue, clock, succeed, concurrency=2)
        await pool.start()
        assert pool.is_running
        await _enqueue(queue)

        for _ in range(200):
            if (await queue.get_status("j1")).status == JobStatus.SUCCEEDED:
                break
            await asyncio.sleep(0.01)

        await pool.stop(timeout=1.0)

        assert (await queue.get_status("j1")).status == JobStatus.SUCCEEDED
        assert not pool.is_running

    def test_worker_status(self, queue, clock):
        pool = _pool(queue, clock, concurrency=3)

        status = pool.get_worker_status()

        assert status["pool"] == "test"
        assert status["concurrency"] == 3
        assert status["running"] is False
        assert pool.worker_ids() == ["test-0", "test-1", "test-2"]
        assert "memory_mb" in status["resources"]

    @pytest.mark.asyncio
    async def test_reaper_deletes_jobs_past_retention(self, queue, clock):
        await queue.enqueue(Job(job_id="old", job_type=JobType.EXECUTE_BATCH, payload={"batch_id": "b1"}, run_at=clock()))
        await queue.complete(await queue.claim_next("w1"), {}, "w1")
        clock.advance(120)
        pool = _pool(queue, clock, job_retention_seconds=60)

        await pool.start()
        for _ in range(200):
            if not await queue.list_jobs():
                break
            await asyncio.sleep(0.01)
        await pool.stop(timeout=1.0)

        assert await queue.list_jobs() == []
