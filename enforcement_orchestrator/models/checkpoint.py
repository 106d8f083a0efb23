"""
Checkpoint model for resumable batch execution.
"""

from datetime import datetime
from typing import Optional, Dict, Any
from dataclasses import dataclass, field

from ..utils.clock import utc_now, parse_timestamp, isoformat


@dataclass
class BatchCheckpoint:
    """Durable marker of the last completed position within a batch."""
    batch_id: str
    last_completed_item_id: Optional[str] = None
    items_processed: int = 0
    total_items: int = 0
    sub_batches_completed: int = 0
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def is_complete(self) -> bool:
        return self.total_items > 0 and self.items_processed >= self.total_items

    @property
    def progress_percentage(self) -> float:
        if self.total_items == 0:
            return 0.0
        return (self.items_processed / self.total_items) * 100

    def supersedes(self, other: Optional["BatchCheckpoint"]) -> bool:
        """Whether this checkpoint may replace ``other`` without moving progress backwards."""
        if other is None:
            return True
        return self.items_processed >= other.items_processed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "last_completed_item_id": self.last_completed_item_id,
            "items_processed": self.items_processed,
            "total_items": self.total_items,
            "sub_batches_completed": self.sub_batches_completed,
            "updated_at": isoformat(self.updated_at)
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BatchCheckpoint":
        data = dict(data)
        if data.get("updated_at"):
            data["updated_at"] = parse_timestamp(data["updated_at"])
        else:
            data.pop("updated_at", None)
        return cls(**data)
