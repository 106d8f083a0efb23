"""
Rollback engine.

Builds a rollback batch of inverse actions for a finished batch (or a subset
of its items) and runs it through the same executor as forward batches.
"""

import hashlib
import uuid
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Set, Tuple

from ..core.exceptions import BatchNotFoundError, RollbackError
from ..models.action import (
    ActionBatch,
    ActionItem,
    BatchStatus,
    ItemStatus,
    ROLLBACK_CONFLICT,
    RollbackResult,
    make_idempotency_key,
)
from ..storage.base import BatchRepository
from ..utils.clock import Clock, utc_now
from ..utils.logger import get_logger, set_log_context
from .executor import IdempotentActionExecutor, CancelCheck, ProgressCallback


def rollback_key(batch_id: str, item_ids: Sequence[str]) -> str:
    """Idempotency key of the rollback batch for ``item_ids`` of ``batch_id``."""
    digest = hashlib.sha256(",".join(sorted(item_ids)).encode("utf-8")).hexdigest()[:16]
    return f"rollback:{batch_id}:{digest}"


class RollbackEngine:
    """Constructs and executes inverse actions."""

    def __init__(
        self,
        repository: BatchRepository,
        executor: IdempotentActionExecutor,
        clock: Clock = utc_now
    ):
        self.repository = repository
        self.executor = executor
        self._clock = clock

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="rollback")

    async def rollback(
        self,
        batch_id: str,
        item_ids: Optional[Sequence[str]] = None,
        reason: Optional[str] = None,
        deadline: Optional[datetime] = None,
        is_cancel_requested: Optional[CancelCheck] = None,
        report_progress: Optional[ProgressCallback] = None
    ) -> RollbackResult:
        """
        Roll back a finished batch, or only the given items of it.

        Repeating the same request resumes or replays the same rollback batch.

        Args:
            batch_id: Batch to roll back
            item_ids: Subset of item ids; all items when omitted
            reason: Operator-supplied reason, stored on the rollback batch

        Returns:
            RollbackResult describing what was reversed, what conflicted and
            what could not be rolled back

        Raises:
            BatchNotFoundError: Unknown batch
            RollbackError: The batch has not reached a terminal state
        """
        original = await self.repository.get_batch(batch_id)
        if original is None:
            raise BatchNotFoundError(batch_id)
        if not original.is_terminal:
            raise RollbackError(batch_id, f"batch is {original.status.value}; only finished batches can be rolled back")

        requested = self._requested(original, item_ids)
        key = rollback_key(batch_id, requested)

        rollback_batch = await self.repository.get_batch_by_key(key)
        # A rollback whose job gave up is picked up where it stopped
        if rollback_batch is not None and await self.executor.reopen(rollback_batch.id):
            rollback_batch = await self.repository.get_batch(rollback_batch.id)
        covered = {i.rollback_of for i in rollback_batch.items} if rollback_batch else set()
        eligible, non_rollbackable = self._select(original, requested, covered)

        if rollback_batch is None:
            if not eligible:
                self.logger.info("Nothing to roll back", extra={
                    "batch_id": batch_id,
                    "non_rollbackable": len(non_rollbackable)
                })
                return RollbackResult(
                    original_batch_id=batch_id,
                    rollback_batch_id=None,
                    status=BatchStatus.COMPLETED,
                    non_rollbackable=non_rollbackable
                )
            rollback_batch = self._build(original, eligible, key, reason)

        self.logger.info("Executing rollback", extra={
            "batch_id": batch_id,
            "rollback_batch_id": rollback_batch.id,
            "items": len(rollback_batch.items),
            "reason": reason
        })

        result = await self.executor.execute(
            rollback_batch,
            deadline=deadline,
            is_cancel_requested=is_cancel_requested,
            report_progress=report_progress
        )

        stored = await self.repository.get_batch(result.batch_id)
        rolled_back, conflicts = await self._mark_originals(original, stored)

        self.logger.info("Rollback finished", extra={
            "batch_id": batch_id,
            "rollback_batch_id": stored.id,
            "status": result.status.value,
            "rolled_back": len(rolled_back),
            "conflicts": len(conflicts)
        })

        return RollbackResult(
            original_batch_id=batch_id,
            rollback_batch_id=stored.id,
            status=result.status,
            summary=result.summary,
            rolled_back_item_ids=rolled_back,
            conflicts=conflicts,
            non_rollbackable=non_rollbackable
        )

    async def find_rollback_batch(self, batch_id: str, item_ids: Optional[Sequence[str]] = None) -> Optional[ActionBatch]:
        """Rollback batch created for this request, if it has run at all."""
        original = await self.repository.get_batch(batch_id)
        if original is None:
            return None
        return await self.repository.get_batch_by_key(rollback_key(batch_id, self._requested(original, item_ids)))

    @staticmethod
    def _requested(original: ActionBatch, item_ids: Optional[Sequence[str]]) -> List[str]:
        return sorted(set(item_ids)) if item_ids is not None else sorted(i.id for i in original.items)

    def _select(
        self,
        original: ActionBatch,
        requested: List[str],
        covered: Set[str]
    ) -> Tuple[List[ActionItem], List[Dict[str, str]]]:
        eligible: List[ActionItem] = []
        rejected: List[Dict[str, str]] = []

        for item_id in requested:
            if item_id in covered:
                continue
            item = original.item_by_id(item_id)
            reason = self._ineligibility(item)
            if reason:
                rejected.append({"item_id": item_id, "reason": reason})
            else:
                eligible.append(item)

        eligible.sort(key=lambda i: i.position)
        return eligible, rejected

    @staticmethod
    def _ineligibility(item: Optional[ActionItem]) -> Optional[str]:
        if item is None:
            return "not_found"
        if item.status == ItemStatus.ROLLED_BACK:
            return "already_rolled_back"
        if item.status != ItemStatus.COMPLETED:
            return f"not_completed:{item.status.value}"
        if item.action.inverse is None:
            return "no_inverse"
        if item.before_state is None:
            return "no_before_state"
        return None

    def _build(self, original: ActionBatch, eligible: List[ActionItem], key: str, reason: Optional[str]) -> ActionBatch:
        batch_id = str(uuid.uuid4())
        now = self._clock()
        batch = ActionBatch(
            id=batch_id,
            owner_id=original.owner_id,
            provider=original.provider,
            idempotency_key=key,
            options={"reason": reason, "original_batch_id": original.id},
            rollback_of=original.id,
            created_at=now,
            updated_at=now
        )
        for source in eligible:
            inverse = source.action.inverse
            batch.items.append(ActionItem(
                id=str(uuid.uuid4()),
                batch_id=batch_id,
                entity_type=source.entity_type,
                entity_id=source.entity_id,
                action=inverse,
                idempotency_key=make_idempotency_key(
                    batch_id, source.entity_type, source.entity_id, inverse, source.container
                ),
                position=len(batch.items),
                container=source.container,
                expected_state=source.after_state,
                target_state=source.before_state,
                rollback_of=source.id,
                created_at=now,
                updated_at=now
            ))
        batch.summary.recount(batch.items)
        return batch

    async def _mark_originals(self, original: ActionBatch, rollback_batch: ActionBatch) -> Tuple[List[str], List[str]]:
        """Set reversed originals to rolled_back; returns (rolled back ids, conflicting ids)."""
        now = self._clock()
        rolled_back: List[str] = []
        conflicts: List[str] = []
        changed: List[ActionItem] = []

        for item in rollback_batch.ordered_items():
            source = original.item_by_id(item.rollback_of)
            if source is None:
                continue
            if item.status == ItemStatus.COMPLETED:
                rolled_back.append(source.id)
                if source.status != ItemStatus.ROLLED_BACK:
                    source.status = ItemStatus.ROLLED_BACK
                    source.updated_at = now
                    changed.append(source)
            elif item.error_code == ROLLBACK_CONFLICT:
                conflicts.append(source.id)

        if changed:
            await self.repository.save_items(changed)
        return rolled_back, conflicts
