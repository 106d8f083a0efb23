"""
Batch planner.

Turns enforcement plans into action batches, and splits a batch's pending
items into provider-sized sub-batches grouped by (action, container).
"""

import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from ..models.action import ActionBatch, ActionItem, ActionKind, make_idempotency_key
from ..models.plan import EnforcementPlan
from ..utils.clock import Clock, utc_now
from ..utils.config import ProviderSettings
from ..utils.logger import get_logger, set_log_context


@dataclass
class SubBatch:
    """Items sent to the provider in one call."""
    index: int
    action: ActionKind
    container: Optional[str]
    items: List[ActionItem] = field(default_factory=list)

    @property
    def size(self) -> int:
        return len(self.items)

    @property
    def item_ids(self) -> List[str]:
        return [i.id for i in self.items]


class BatchPlanner:
    """
    Groups and chunks action items.

    Grouping is by first appearance of each (action, container) key and items
    keep their batch order inside a group, so planning the same input twice
    yields the same sub-batches.
    """

    def __init__(self, settings_lookup: Callable[[str], ProviderSettings], clock: Clock = utc_now):
        self._settings_lookup = settings_lookup
        self._clock = clock
        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="batch_planner")

    def plan(self, items: Sequence[ActionItem], provider: str) -> List[SubBatch]:
        """
        Split items into sub-batches no larger than the provider's batch size.

        Args:
            items: Candidate items, in batch order
            provider: Provider name used to look up batch sizes

        Returns:
            Ordered list of sub-batches
        """
        settings = self._settings_lookup(provider)

        groups: Dict[Tuple[str, str], List[ActionItem]] = {}
        for item in sorted(items, key=lambda i: i.position):
            key = (item.action.value, item.container or "")
            groups.setdefault(key, []).append(item)

        sub_batches: List[SubBatch] = []
        for (action_value, container), group in groups.items():
            size = settings.batch_size_for(action_value)
            for start in range(0, len(group), size):
                sub_batches.append(SubBatch(
                    index=len(sub_batches),
                    action=ActionKind(action_value),
                    container=container or None,
                    items=group[start:start + size]
                ))

        self.logger.debug("Planned sub-batches", extra={
            "provider": provider,
            "items": len(items),
            "sub_batches": len(sub_batches)
        })
        return sub_batches

    def build_batch(self, plan: EnforcementPlan, batch_id: Optional[str] = None) -> ActionBatch:
        """
        Materialize a validated plan into a pending batch with its items.

        Duplicate actions (same idempotency key) collapse to the first occurrence.
        """
        batch_id = batch_id or str(uuid.uuid4())
        now = self._clock()
        batch = ActionBatch(
            id=batch_id,
            owner_id=plan.owner_id,
            provider=plan.provider,
            idempotency_key=plan.idempotency_key,
            dry_run=plan.options.dry_run,
            options=plan.options.model_dump(mode="json"),
            created_at=now,
            updated_at=now
        )

        seen = set()
        for planned in plan.actions:
            key = make_idempotency_key(
                batch_id,
                planned.entity_type,
                planned.entity_id,
                planned.action,
                planned.target_container
            )
            if key in seen:
                continue
            seen.add(key)
            batch.items.append(ActionItem(
                id=str(uuid.uuid4()),
                batch_id=batch_id,
                entity_type=planned.entity_type,
                entity_id=planned.entity_id,
                action=planned.action,
                idempotency_key=key,
                position=len(batch.items),
                container=planned.target_container,
                created_at=now,
                updated_at=now
            ))

        batch.summary.recount(batch.items)
        if len(batch.items) < len(plan.actions):
            self.logger.info("Collapsed duplicate planned actions", extra={
                "batch_id": batch_id,
                "planned": len(plan.actions),
                "kept": len(batch.items)
            })
        return batch
