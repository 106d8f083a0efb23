"""
Idempotent action executor.

Applies one action batch against its provider, sub-batch by sub-batch:

- a batch already in a terminal state is replayed from storage without
  contacting the provider;
- before_state is captured and persisted before every provider call;
- rejected items fail alone, transient failures are retried with backoff and
  then isolated to their sub-batch;
- progress is checkpointed after every sub-batch so a restarted run skips
  everything already applied;
- cancel requests are honoured between sub-batches, never mid-call.
"""

import asyncio
import random
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Dict, Any, List, Optional, Tuple, Union

from ..core.exceptions import (
    BatchNotFoundError,
    CircuitOpenError,
    CredentialError,
    ExecutionSuspended,
    RateLimitedError,
    classify_provider_error,
)
from ..models.action import (
    ActionBatch,
    ActionItem,
    BatchExecutionResult,
    BatchStatus,
    ItemStatus,
    JOB_FAILED,
    ROLLBACK_CONFLICT,
    derive_batch_status,
)
from ..models.checkpoint import BatchCheckpoint
from ..models.job import JobProgress
from ..models.provider import ItemResult
from ..providers.base import ProviderAdapter, ProviderRegistry
from ..storage.base import BatchRepository, CheckpointStore
from ..utils.clock import Clock, Sleeper, utc_now, default_sleep
from ..utils.config import ProviderSettings
from ..utils.logger import get_logger, set_log_context
from ..utils.metrics import EnforcementMetrics
from .audit import AuditDispatcher, AuditRecord
from .batch_planner import BatchPlanner, SubBatch
from .fault_tolerance import RetryPolicy
from .rate_tracker import ProviderStateTracker

ProgressCallback = Callable[[JobProgress], Awaitable[None]]
CancelCheck = Callable[[], Awaitable[bool]]


@dataclass
class _RunCounters:
    """Figures accumulated by one execute() invocation."""
    provider_calls: int = 0
    rate_limit_wait: float = 0.0


@dataclass
class _PlannedWork:
    sub_batch: SubBatch
    pending: List[ActionItem]
    processed_after: int


def states_match(current: Optional[Dict[str, Any]], expected: Optional[Dict[str, Any]]) -> bool:
    """True when every field of ``expected`` has the same value in ``current``."""
    if expected is None:
        return True
    if current is None:
        return False
    return all(current.get(key) == value for key, value in expected.items())


class IdempotentActionExecutor:
    """
    Executes action batches against provider adapters.

    execute() may be called any number of times for the same batch; only the
    first successful application of each item reaches the provider.
    """

    def __init__(
        self,
        repository: BatchRepository,
        checkpoints: CheckpointStore,
        tracker: ProviderStateTracker,
        planner: BatchPlanner,
        providers: ProviderRegistry,
        settings_lookup: Callable[[str], ProviderSettings],
        audit: Optional[AuditDispatcher] = None,
        metrics: Optional[EnforcementMetrics] = None,
        clock: Clock = utc_now,
        sleep: Sleeper = default_sleep,
        rng: Optional[random.Random] = None
    ):
        self.repository = repository
        self.checkpoints = checkpoints
        self.tracker = tracker
        self.planner = planner
        self.providers = providers
        self._settings_lookup = settings_lookup
        self.audit = audit
        self.metrics = metrics
        self._clock = clock
        self._sleep = sleep
        self._rng = rng or random.Random()

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="executor")

    async def execute(
        self,
        batch: Union[ActionBatch, str],
        deadline: Optional[datetime] = None,
        is_cancel_requested: Optional[CancelCheck] = None,
        report_progress: Optional[ProgressCallback] = None
    ) -> BatchExecutionResult:
        """
        Execute a batch, resuming from its checkpoint if it was interrupted.

        Args:
            batch: Batch (looked up by idempotency key, created if new) or batch id
            deadline: Time by which the caller must get the worker back
            is_cancel_requested: Polled between sub-batches
            report_progress: Receives a progress snapshot after every sub-batch

        Returns:
            BatchExecutionResult with the stored summary

        Raises:
            ExecutionSuspended: A rate wait exceeds what the caller can block for
            CircuitOpenError: The provider circuit is open beyond the inline wait budget
            CredentialError: The provider rejected the owner's credential
        """
        batch = await self._load(batch)

        if batch.is_terminal:
            self.logger.info("Batch already finished, replaying stored result", extra={
                "batch_id": batch.id,
                "status": batch.status.value
            })
            return BatchExecutionResult(
                batch_id=batch.id,
                status=batch.status,
                summary=batch.summary,
                replayed=True,
                cancelled=batch.status == BatchStatus.CANCELLED
            )

        started = self._clock()
        counters = _RunCounters()

        if batch.dry_run:
            return await self._complete_dry_run(batch, started)

        batch.status = BatchStatus.RUNNING
        batch.updated_at = started
        await self.repository.save_batch(batch)

        checkpoint = await self.checkpoints.get(batch.id)
        work, total_steps = self._plan_work(batch, checkpoint)
        completed_steps = total_steps - len(work)

        self.logger.info("Executing batch", extra={
            "batch_id": batch.id,
            "provider": batch.provider,
            "total_items": len(batch.items),
            "sub_batches_remaining": len(work),
            "resumed_from": checkpoint.items_processed if checkpoint else 0
        })
        await self._report(report_progress, batch, completed_steps, total_steps, "executing")

        try:
            for planned in work:
                if is_cancel_requested is not None and await is_cancel_requested():
                    return await self._finish_cancelled(batch, counters, started)

                if planned.pending:
                    await self._run_sub_batch(batch, planned.sub_batch, planned.pending, counters, deadline)

                await self.checkpoints.save(BatchCheckpoint(
                    batch_id=batch.id,
                    last_completed_item_id=planned.sub_batch.items[-1].id,
                    items_processed=planned.processed_after,
                    total_items=len(batch.items),
                    sub_batches_completed=planned.sub_batch.index + 1,
                    updated_at=self._clock()
                ))
                completed_steps += 1
                await self._report(report_progress, batch, completed_steps, total_steps, "executing")

        except (ExecutionSuspended, CircuitOpenError, CredentialError) as e:
            await self._persist_interrupted(batch, counters, started)
            self.logger.warning("Batch execution interrupted", extra={
                "batch_id": batch.id,
                "reason": e.error_code
            })
            raise

        return await self._finalize(batch, counters, started, report_progress, total_steps)

    async def abandon(self, batch_id: str, reason: str, cancelled: bool = False) -> Optional[BatchExecutionResult]:
        """
        Settle a running batch whose job will not run it again.

        Items that were not applied fail with JOB_FAILED and the batch gets
        the status its items imply; with ``cancelled`` they stay pending and
        the batch is cancelled. Batches that are not running, including
        credential-interrupted ones waiting in pending, are left alone.

        Returns:
            The settled result, or None when there was nothing to settle
        """
        batch = await self.repository.get_batch(batch_id)
        if batch is None or batch.status != BatchStatus.RUNNING:
            return None

        now = self._clock()
        pending = [i for i in batch.items if not i.is_terminal]
        if cancelled:
            batch.status = BatchStatus.CANCELLED
        else:
            for item in pending:
                item.mark_failed(f"job ended before the item was applied: {reason}", JOB_FAILED, now, recoverable=True)
            await self.repository.save_items(pending)
            self._emit_terminal(batch, pending)
            batch.status = derive_batch_status(batch.items)

        batch.summary.recount(batch.items)
        batch.completed_at = now
        batch.updated_at = now
        await self.repository.save_batch(batch)
        await self.checkpoints.clear(batch.id)

        self.logger.warning("Batch abandoned by its job", extra={
            "batch_id": batch.id,
            "status": batch.status.value,
            "unapplied": len(pending),
            "reason": reason
        })
        return BatchExecutionResult(
            batch_id=batch.id,
            status=batch.status,
            summary=batch.summary,
            cancelled=cancelled
        )

    async def reopen(self, batch_id: str) -> bool:
        """
        Return JOB_FAILED items of a settled batch to pending so it can run again.

        Returns:
            True if the batch was reopened
        """
        batch = await self.repository.get_batch(batch_id)
        if batch is None or not batch.is_terminal:
            return False
        stranded = [i for i in batch.items if i.status == ItemStatus.FAILED and i.error_code == JOB_FAILED]
        if not stranded:
            return False

        now = self._clock()
        for item in stranded:
            item.reopen(now)
        await self.repository.save_items(stranded)

        batch.status = BatchStatus.PENDING
        batch.summary.recount(batch.items)
        batch.completed_at = None
        batch.updated_at = now
        await self.repository.save_batch(batch)

        self.logger.info("Batch reopened", extra={"batch_id": batch.id, "items": len(stranded)})
        return True

    # Loading and planning

    async def _load(self, batch: Union[ActionBatch, str]) -> ActionBatch:
        if isinstance(batch, str):
            stored = await self.repository.get_batch(batch)
            if stored is None:
                raise BatchNotFoundError(batch)
            return stored

        stored = await self.repository.get_batch_by_key(batch.idempotency_key)
        if stored is not None:
            return stored
        stored, _ = await self.repository.create_batch(batch)
        return stored

    def _plan_work(self, batch: ActionBatch, checkpoint: Optional[BatchCheckpoint]) -> Tuple[List[_PlannedWork], int]:
        """
        Plan every item, then drop what the checkpoint and item states show as done.

        Planning always covers the full batch so sub-batch boundaries, and
        therefore checkpoint positions, are the same on every run.
        """
        sub_batches = self.planner.plan(batch.items, batch.provider)
        processed_before = checkpoint.items_processed if checkpoint else 0

        work: List[_PlannedWork] = []
        cursor = 0
        for sub in sub_batches:
            start = cursor
            cursor += sub.size
            if cursor <= processed_before:
                continue
            pending = [
                item for offset, item in enumerate(sub.items)
                if start + offset >= processed_before and not item.is_terminal
            ]
            work.append(_PlannedWork(sub_batch=sub, pending=pending, processed_after=cursor))
        return work, len(sub_batches)

    # Sub-batch execution

    async def _run_sub_batch(
        self,
        batch: ActionBatch,
        sub: SubBatch,
        items: List[ActionItem],
        counters: _RunCounters,
        deadline: Optional[datetime]
    ):
        settings = self._settings_lookup(batch.provider)
        adapter = self.providers.get(batch.provider)

        to_apply = await self._capture_before_state(batch, adapter, sub, items)

        if to_apply:
            await self._apply_with_retry(batch, adapter, settings, sub, to_apply, counters, deadline)

        await self.repository.save_items(items)
        self._emit_terminal(batch, items)

    async def _capture_before_state(
        self,
        batch: ActionBatch,
        adapter: ProviderAdapter,
        sub: SubBatch,
        items: List[ActionItem]
    ) -> List[ActionItem]:
        """Snapshot and persist before_state; returns the items still to apply."""
        states = await adapter.capture_state(batch.owner_id, sub.action, items)
        now = self._clock()

        to_apply = []
        for item in items:
            current = states.get(item.id) or item.assumed_before_state()
            first_capture = item.before_state is None
            if first_capture:
                item.before_state = current
                item.updated_at = now

            # Already at the restore target: nothing to send
            if item.target_state is not None and states_match(current, item.target_state):
                item.mark_completed(dict(current), now)
                continue

            # An earlier interrupted run may have applied the call already, so only
            # the first capture is compared against the expected state
            if item.is_rollback and first_capture and not states_match(current, item.expected_state):
                item.mark_failed(
                    "entity changed since the original action; not overwriting",
                    ROLLBACK_CONFLICT,
                    now
                )
                continue
            to_apply.append(item)

        await self.repository.save_items(items)
        return to_apply

    async def _apply_with_retry(
        self,
        batch: ActionBatch,
        adapter: ProviderAdapter,
        settings: ProviderSettings,
        sub: SubBatch,
        items: List[ActionItem],
        counters: _RunCounters,
        deadline: Optional[datetime]
    ):
        provider = batch.provider
        policy = RetryPolicy(
            max_attempts=settings.transient_max_attempts,
            initial_delay=settings.transient_initial_delay,
            max_delay=settings.transient_max_delay
        )
        attempts = 0
        rate_limit_hits = 0

        while True:
            await self._await_permission(batch, settings, counters, deadline)
            counters.provider_calls += 1

            try:
                results = await asyncio.wait_for(
                    adapter.apply_batch(batch.owner_id, sub.action, items),
                    timeout=settings.call_timeout_seconds
                )

            except RateLimitedError as e:
                await self.tracker.record_failure(provider, is_rate_limit=True, retry_after=e.retry_after)
                self._record_call(provider, "rate_limited")
                rate_limit_hits += 1
                if rate_limit_hits > settings.max_rate_limit_retries:
                    raise ExecutionSuspended(
                        batch.id,
                        e.retry_after or settings.default_rate_limit_wait_seconds,
                        "provider keeps rate limiting"
                    )
                continue

            except CredentialError as e:
                await self.tracker.release_probe(provider)
                self._record_call(provider, "credential")
                if e.owner_id is None:
                    e.owner_id = batch.owner_id
                    e.details["owner_id"] = batch.owner_id
                raise

            except Exception as e:
                error_code = classify_provider_error(e)
                await self.tracker.record_failure(provider, is_rate_limit=False)
                self._record_call(provider, "transient")
                attempts += 1
                decision = policy.decide(attempts, rng=self._rng)

                self.logger.warning("Provider call failed", extra={
                    "batch_id": batch.id,
                    "provider": provider,
                    "sub_batch": sub.index,
                    "attempt": attempts,
                    "error_code": error_code,
                    "error": str(e),
                    "will_retry": decision.should_retry
                })

                if decision.should_retry:
                    await self._sleep(decision.delay_seconds)
                    continue

                now = self._clock()
                for item in items:
                    item.mark_failed(f"provider call failed after {attempts} attempts: {e}", error_code, now)
                return

            await self.tracker.record_success(provider)
            self._record_call(provider, "success")
            self._apply_results(items, results)
            return

    async def _await_permission(
        self,
        batch: ActionBatch,
        settings: ProviderSettings,
        counters: _RunCounters,
        deadline: Optional[datetime]
    ):
        """Block until the tracker grants a call, or hand the job back to the queue."""
        provider = batch.provider
        while True:
            wait = await self.tracker.wait_duration(provider)
            if wait <= 0:
                if await self.tracker.reserve(provider):
                    return
                continue

            budget = settings.max_inline_wait_seconds
            if deadline is not None:
                budget = min(budget, (deadline - self._clock()).total_seconds())

            if wait > budget:
                if self.tracker.is_circuit_open(provider):
                    raise CircuitOpenError(provider, wait)
                raise ExecutionSuspended(batch.id, wait, "rate limit wait exceeds job budget")

            await self._sleep(wait)
            counters.rate_limit_wait += wait
            if self.metrics:
                self.metrics.record_rate_limit_wait(provider, wait)

    def _apply_results(self, items: List[ActionItem], results: List[ItemResult]):
        now = self._clock()
        by_id = {r.item_id: r for r in results or []}
        for item in items:
            result = by_id.get(item.id)
            if result is None:
                item.mark_failed("provider returned no result for item", "MISSING_RESULT", now)
            elif result.success:
                item.mark_completed(result.state, now)
            else:
                item.mark_failed(
                    result.error or "rejected by provider",
                    result.error_code or "REJECTED",
                    now,
                    recoverable=result.recoverable
                )

    # Completion

    async def _complete_dry_run(self, batch: ActionBatch, started: datetime) -> BatchExecutionResult:
        now = self._clock()
        pending = [i for i in batch.items if not i.is_terminal]
        for item in pending:
            item.mark_skipped("dry run", now)
        await self.repository.save_items(pending)
        self._emit_terminal(batch, pending)

        batch.summary.recount(batch.items)
        batch.summary.execution_time += (now - started).total_seconds()
        batch.status = derive_batch_status(batch.items)
        batch.completed_at = now
        batch.updated_at = now
        await self.repository.save_batch(batch)

        self.logger.info("Dry run completed", extra={"batch_id": batch.id, "skipped": len(pending)})
        return BatchExecutionResult(batch_id=batch.id, status=batch.status, summary=batch.summary)

    async def _finalize(
        self,
        batch: ActionBatch,
        counters: _RunCounters,
        started: datetime,
        report_progress: Optional[ProgressCallback],
        total_steps: int
    ) -> BatchExecutionResult:
        now = self._clock()
        self._fold_counters(batch, counters, started, now)
        batch.status = derive_batch_status(batch.items)
        batch.completed_at = now
        batch.updated_at = now
        await self.repository.save_batch(batch)
        await self.checkpoints.clear(batch.id)
        await self._report(report_progress, batch, total_steps, total_steps, batch.status.value)

        self.logger.info("Batch execution finished", extra={
            "batch_id": batch.id,
            "status": batch.status.value,
            "completed": batch.summary.completed,
            "failed": batch.summary.failed,
            "skipped": batch.summary.skipped,
            "provider_calls": batch.summary.provider_calls_made
        })
        return BatchExecutionResult(batch_id=batch.id, status=batch.status, summary=batch.summary)

    async def _finish_cancelled(self, batch: ActionBatch, counters: _RunCounters, started: datetime) -> BatchExecutionResult:
        now = self._clock()
        self._fold_counters(batch, counters, started, now)
        batch.status = BatchStatus.CANCELLED
        batch.completed_at = now
        batch.updated_at = now
        await self.repository.save_batch(batch)
        await self.checkpoints.clear(batch.id)

        self.logger.info("Batch cancelled", extra={
            "batch_id": batch.id,
            "completed": batch.summary.completed,
            "total": batch.summary.total
        })
        return BatchExecutionResult(batch_id=batch.id, status=batch.status, summary=batch.summary, cancelled=True)

    async def _persist_interrupted(self, batch: ActionBatch, counters: _RunCounters, started: datetime):
        now = self._clock()
        self._fold_counters(batch, counters, started, now)
        batch.status = BatchStatus.PENDING
        batch.updated_at = now
        await self.repository.save_batch(batch)

    def _fold_counters(self, batch: ActionBatch, counters: _RunCounters, started: datetime, now: datetime):
        summary = batch.summary
        summary.recount(batch.items)
        summary.execution_time += (now - started).total_seconds()
        summary.provider_calls_made += counters.provider_calls
        summary.total_rate_limit_wait_time += counters.rate_limit_wait

    # Side channels

    async def _report(
        self,
        report_progress: Optional[ProgressCallback],
        batch: ActionBatch,
        completed_steps: int,
        total_steps: int,
        step: str
    ):
        if report_progress is None:
            return
        total = len(batch.items)
        done = sum(1 for i in batch.items if i.is_terminal)
        batch.summary.recount(batch.items)
        await report_progress(JobProgress(
            current_step=step,
            total_steps=total_steps,
            completed_steps=completed_steps,
            percentage=(done / total * 100) if total else 100.0,
            details={
                "batch_id": batch.id,
                "total": total,
                "completed": batch.summary.completed,
                "failed": batch.summary.failed,
                "skipped": batch.summary.skipped
            }
        ))

    def _emit_terminal(self, batch: ActionBatch, items: List[ActionItem]):
        for item in items:
            if not item.is_terminal:
                continue
            if self.metrics:
                self.metrics.record_item(batch.provider, item.status.value)
            if self.audit:
                self.audit.publish(AuditRecord.for_item(batch, item))

    def _record_call(self, provider: str, outcome: str):
        if self.metrics:
            self.metrics.record_provider_call(provider, outcome)
