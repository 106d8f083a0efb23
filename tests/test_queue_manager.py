from datetime import timedelta

import pytest
import pytest_asyncio

from enforcement_orchestrator.core.exceptions import JobNotFoundError, QueueError, ValidationError
from enforcement_orchestrator.models.job import Job, JobPriority, JobProgress, JobStatus, JobType
from enforcement_orchestrator.services.queue_manager import QueueManager
from enforcement_orchestrator.storage.memory import MemoryJobStore
from enforcement_orchestrator.utils.metrics import EnforcementMetrics

from conftest import FakeClock, FixedRandom


@pytest.fixture
def queue(clock):
    return QueueManager(MemoryJobStore(), metrics=EnforcementMetrics(), clock=clock, rng=FixedRandom())


def _job(clock, job_id, priority=JobPriority.NORMAL, max_attempts=5):
    return Job(
        job_id=job_id,
        job_type=JobType.EXECUTE_BATCH,
        payload={"batch_id": f"batch-{job_id}"},
        priority=priority,
        max_attempts=max_attempts,
        run_at=clock(),
        created_at=clock(),
        updated_at=clock()
    )


class TestClaiming:
    @pytest.mark.asyncio
    async def test_priority_first_then_fifo(self, queue, clock):
        await queue.enqueue(_job(clock, "low", JobPriority.LOW))
        await queue.enqueue(_job(clock, "normal-1"))
        await queue.enqueue(_job(clock, "critical", JobPriority.CRITICAL))
        await queue.enqueue(_job(clock, "normal-2"))

        order = []
        for _ in range(5):
            job = await queue.claim_next("w1")
            if job is None:
                break
            order.append(job.job_id)

        assert order == ["critical", "normal-1", "normal-2", "low"]

    @pytest.mark.asyncio
    async def test_claim_sets_lease_fields(self, queue, clock):
        await queue.enqueue(_job(clock, "a"))

        job = await queue.claim_next("w1")

        assert job.status == JobStatus.RUNNING
        assert job.locked_by == "w1"
        assert job.attempt_count == 1
        assert job.heartbeat_at == clock()
        assert job.started_at == clock()

    @pytest.mark.asyncio
    async def test_future_jobs_are_not_claimed(self, queue, clock):
        await queue.enqueue(_job(clock, "later"), delay_seconds=60)

        assert await queue.claim_next("w1") is None
        clock.advance(60)
        assert (await queue.claim_next("w1")).job_id == "later"

    @pytest.mark.asyncio
    async def test_paused_queue_hands_out_nothing(self, queue, clock):
        await queue.enqueue(_job(clock, "a"))

        await queue.pause_processing()
        assert await queue.claim_next("w1") is None

        await queue.resume_processing()
        assert (await queue.claim_next("w1")).job_id == "a"


class TestFailures:
    @pytest.mark.asyncio
    async def test_retry_is_scheduled_with_backoff(self, queue, clock):
        await queue.enqueue(_job(clock, "a"))
        job = await queue.claim_next("w1")

        failed = await queue.fail(job, RuntimeError("boom"), "w1")

        assert failed.status == JobStatus.QUEUED
        assert failed.run_at == clock() + timedelta(seconds=30)
        assert failed.error_code == "RuntimeError"
        assert failed.locked_by is None
        assert await queue.claim_next("w1") is None

        clock.advance(30)
        assert (await queue.claim_next("w1")).attempt_count == 2

    @pytest.mark.asyncio
    async def test_exhausted_attempts_go_to_dead_letter(self, queue, clock):
        await queue.enqueue(_job(clock, "a", max_attempts=2))
        job = await queue.claim_next("w1")
        await queue.fail(job, RuntimeError("boom"), "w1")
        clock.advance(30)
        job = await queue.claim_next("w1")

        failed = await queue.fail(job, RuntimeError("boom again"), "w1")

        assert failed.status == JobStatus.DEAD_LETTER
        assert [j.job_id for j in await queue.list_dead_letter()] == ["a"]
        assert queue.metrics.get_sample(
            "enforcement_jobs_total", {"job_type": "execute_batch", "status": "dead_letter"}
        ) == 1.0

    @pytest.mark.asyncio
    async def test_non_retryable_error_fails_immediately(self, queue, clock):
        await queue.enqueue(_job(clock, "a"))
        job = await queue.claim_next("w1")

        failed = await queue.fail(job, ValidationError("plan", "bad plan"), "w1")

        assert failed.status == JobStatus.FAILED
        assert failed.error_code == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_requeue_dead_letter_resets_attempts(self, queue, clock):
        await queue.enqueue(_job(clock, "a", max_attempts=1))
        job = await queue.claim_next("w1")
        await queue.fail(job, RuntimeError("boom"), "w1")

        requeued = await queue.requeue_dead_letter("a")

        assert requeued.status == JobStatus.QUEUED
        assert requeued.attempt_count == 0
        assert requeued.error_code is None
        assert (await queue.claim_next("w2")).job_id == "a"

    @pytest.mark.asyncio
    async def test_requeue_rejects_other_states(self, queue, clock):
        await queue.enqueue(_job(clock, "a"))

        with pytest.raises(QueueError):
            await queue.requeue_dead_letter("a")
        with pytest.raises(JobNotFoundError):
            await queue.requeue_dead_letter("missing")

    @pytest.mark.asyncio
    async def test_reschedule_does_not_spend_an_attempt(self, queue, clock):
        await queue.enqueue(_job(clock, "a"))
        job = await queue.claim_next("w1")

        assert await queue.reschedule(job, 45.0, "rate limited", "w1")

        stored = await queue.get_status("a")
        assert stored.status == JobStatus.QUEUED
        assert stored.attempt_count == 0
        assert stored.run_at == clock() + timedelta(seconds=45)
        assert stored.progress.current_step == "waiting: rate limited"


class TestCancellation:
    @pytest.mark.asyncio
    async def test_queued_job_is_cancelled_at_once(self, queue, clock):
        await queue.enqueue(_job(clock, "a"))

        assert await queue.request_cancel("a")

        assert (await queue.get_status("a")).status == JobStatus.CANCELLED
        assert await queue.claim_next("w1") is None

    @pytest.mark.asyncio
    async def test_running_job_is_flagged(self, queue, clock):
        await queue.enqueue(_job(clock, "a"))
        job = await queue.claim_next("w1")

        assert await queue.request_cancel("a")

        assert (await queue.get_status("a")).status == JobStatus.RUNNING
        assert await queue.is_cancel_requested("a")

        failed = await queue.fail(job, RuntimeError("interrupted"), "w1")
        assert failed.status == JobStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_reschedule_of_cancelled_job_cancels_it(self, queue, clock):
        await queue.enqueue(_job(clock, "a"))
        job = await queue.claim_next("w1")
        await queue.request_cancel("a")

        await queue.reschedule(job, 10.0, "circuit open", "w1")

        assert (await queue.get_status("a")).status == JobStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_terminal_job_cannot_be_cancelled(self, queue, clock):
        await queue.enqueue(_job(clock, "a"))
        job = await queue.claim_next("w1")
        await queue.complete(job, {"ok": True}, "w1")

        assert await queue.request_cancel("a") is False

    @pytest.mark.asyncio
    async def test_unknown_job(self, queue):
        with pytest.raises(JobNotFoundError):
            await queue.request_cancel("missing")


class TestLeases:
    @pytest.mark.asyncio
    async def test_progress_is_persisted(self, queue, clock):
        await queue.enqueue(_job(clock, "a"))
        await queue.claim_next("w1")

        progress = JobProgress(current_step="executing", total_steps=3, completed_steps=1, percentage=33.3)
        assert await queue.report_progress("a", progress, worker_id="w1")

        assert (await queue.get_status("a")).progress.completed_steps == 1

    @pytest.mark.asyncio
    async def test_updates_from_a_worker_without_the_lease_are_dropped(self, queue, clock):
        await queue.enqueue(_job(clock, "a"))
        job = await queue.claim_next("w1")

        assert await queue.complete(job, {"ok": True}, "w2") is False
        assert not await queue.report_progress("a", JobProgress(), worker_id="w2")
        assert (await queue.get_status("a")).status == JobStatus.RUNNING

    @pytest.mark.asyncio
    async def test_complete_records_result(self, queue, clock):
        await queue.enqueue(_job(clock, "a"))
        job = await queue.claim_next("w1")
        clock.advance(4)

        assert await queue.complete(job, {"completed": 3}, "w1")

        stored = await queue.get_status("a")
        assert stored.status == JobStatus.SUCCEEDED
        assert stored.result == {"completed": 3}
        assert stored.progress.percentage == 100.0
        assert stored.get_duration() == 4.0

    @pytest.mark.asyncio
    async def test_stale_running_job_is_reaped(self, queue, clock):
        await queue.enqueue(_job(clock, "a"))
        await queue.claim_next("w1")
        clock.advance(200)

        reaped = await queue.requeue_stale_jobs(120)

        assert reaped == ["a"]
        stored = await queue.get_status("a")
        assert stored.status == JobStatus.QUEUED
        assert stored.error_code == "HEARTBEAT_TIMEOUT"
        assert stored.locked_by is None

    @pytest.mark.asyncio
    async def test_heartbeat_keeps_job_alive(self, queue, clock):
        await queue.enqueue(_job(clock, "a"))
        await queue.claim_next("w1")
        clock.advance(100)
        assert await queue.heartbeat("a", "w1")
        clock.advance(100)

        assert await queue.requeue_stale_jobs(120) == []
        assert not await queue.heartbeat("a", "w2")


class TestFailureListeners:
    @pytest_asyncio.fixture
    async def notified(self, queue):
        jobs = []

        async def listener(job):
            jobs.append((job.job_id, job.status))

        queue.add_failure_listener(listener)
        return jobs

    @pytest.mark.asyncio
    async def test_called_when_a_job_dead_letters(self, queue, clock, notified):
        await queue.enqueue(_job(clock, "a", max_attempts=2))
        await queue.fail(await queue.claim_next("w1"), RuntimeError("boom"), "w1")
        assert notified == []
        clock.advance(30)

        await queue.fail(await queue.claim_next("w1"), RuntimeError("boom again"), "w1")

        assert notified == [("a", JobStatus.DEAD_LETTER)]

    @pytest.mark.asyncio
    async def test_called_when_a_job_fails_permanently(self, queue, clock, notified):
        await queue.enqueue(_job(clock, "a"))

        await queue.fail(await queue.claim_next("w1"), ValidationError("plan", "bad plan"), "w1")

        assert notified == [("a", JobStatus.FAILED)]

    @pytest.mark.asyncio
    async def test_called_when_the_reaper_exhausts_a_job(self, queue, clock, notified):
        await queue.enqueue(_job(clock, "a", max_attempts=1))
        await queue.claim_next("w1")
        clock.advance(200)

        await queue.requeue_stale_jobs(120)

        assert notified == [("a", JobStatus.DEAD_LETTER)]

    @pytest.mark.asyncio
    async def test_listener_errors_do_not_undo_the_transition(self, queue, clock):
        async def broken(job):
            raise RuntimeError("listener down")

        queue.add_failure_listener(broken)
        await queue.enqueue(_job(clock, "a"))

        failed = await queue.fail(await queue.claim_next("w1"), ValidationError("plan", "bad plan"), "w1")

        assert failed.status == JobStatus.FAILED
        assert (await queue.get_status("a")).status == JobStatus.FAILED


class TestRetention:
    @pytest.mark.asyncio
    async def test_finished_jobs_age_from_completion_dead_letters_from_creation(self, queue, clock):
        await queue.enqueue(_job(clock, "dead", max_attempts=1))
        clock.advance(3000)
        await queue.fail(await queue.claim_next("w1"), RuntimeError("boom"), "w1")
        await queue.enqueue(_job(clock, "done"))
        await queue.complete(await queue.claim_next("w1"), {"ok": True}, "w1")
        await queue.enqueue(_job(clock, "waiting"))
        clock.advance(1000)

        deleted = await queue.cleanup_jobs(3600)

        assert deleted == 1
        assert {j.job_id for j in await queue.list_jobs()} == {"done", "waiting"}
        with pytest.raises(JobNotFoundError):
            await queue.get_status("dead")

    @pytest.mark.asyncio
    async def test_active_jobs_are_never_deleted(self, queue, clock):
        await queue.enqueue(_job(clock, "queued"))
        await queue.enqueue(_job(clock, "running"))
        await queue.claim_next("w1")
        clock.advance(10 * 86400)

        assert await queue.cleanup_jobs(60) == 0
        assert len(await queue.list_jobs()) == 2


@pytest.mark.asyncio
async def test_queue_statistics(queue, clock):
    await queue.enqueue(_job(clock, "a"))
    await queue.enqueue(_job(clock, "b"))
    await queue.claim_next("w1")

    stats = await queue.get_queue_statistics()

    assert stats["queue_size"] == 1
    assert stats["processing_jobs"] == 1
    assert stats["dead_letter_jobs"] == 0
    assert stats["is_paused"] is False


def test_default_retry_policy():
    policy = QueueManager(MemoryJobStore(), clock=FakeClock()).retry_policy
    assert (policy.max_attempts, policy.initial_delay, policy.max_delay) == (5, 30.0, 900.0)
