"""
Action-related data models for Enforcement Orchestrator

Defines action batches, the atomic action items they own, the closed set of
supported action kinds with their rollback inverses, and batch summaries.
"""

import hashlib
from enum import Enum
from datetime import datetime
from typing import Optional, Dict, Any, List, Iterable
from dataclasses import dataclass, field

from ..utils.clock import utc_now, parse_timestamp, isoformat


class EntityType(Enum):
    """Kind of provider entity an action targets."""
    TRACK = "track"
    ARTIST = "artist"
    ALBUM = "album"
    PLAYLIST = "playlist"


class ActionKind(Enum):
    """Supported enforcement actions."""
    REMOVE_LIKED_SONG = "remove_liked_song"
    ADD_LIKED_SONG = "add_liked_song"
    REMOVE_PLAYLIST_TRACK = "remove_playlist_track"
    ADD_PLAYLIST_TRACK = "add_playlist_track"
    UNFOLLOW_ARTIST = "unfollow_artist"
    FOLLOW_ARTIST = "follow_artist"
    REMOVE_SAVED_ALBUM = "remove_saved_album"
    ADD_SAVED_ALBUM = "add_saved_album"
    SKIP_TRACK = "skip_track"

    @property
    def inverse(self) -> Optional["ActionKind"]:
        """Action that undoes this one, or None when it cannot be undone."""
        return INVERSE_ACTIONS.get(self)

    @property
    def requires_container(self) -> bool:
        return self in CONTAINER_ACTIONS

    @property
    def effect(self) -> str:
        """Effect on entity presence: 'remove', 'add' or 'none'."""
        return ACTION_EFFECTS[self]


INVERSE_ACTIONS: Dict[ActionKind, ActionKind] = {
    ActionKind.REMOVE_LIKED_SONG: ActionKind.ADD_LIKED_SONG,
    ActionKind.ADD_LIKED_SONG: ActionKind.REMOVE_LIKED_SONG,
    ActionKind.REMOVE_PLAYLIST_TRACK: ActionKind.ADD_PLAYLIST_TRACK,
    ActionKind.ADD_PLAYLIST_TRACK: ActionKind.REMOVE_PLAYLIST_TRACK,
    ActionKind.UNFOLLOW_ARTIST: ActionKind.FOLLOW_ARTIST,
    ActionKind.FOLLOW_ARTIST: ActionKind.UNFOLLOW_ARTIST,
    ActionKind.REMOVE_SAVED_ALBUM: ActionKind.ADD_SAVED_ALBUM,
    ActionKind.ADD_SAVED_ALBUM: ActionKind.REMOVE_SAVED_ALBUM,
}

CONTAINER_ACTIONS = frozenset({
    ActionKind.REMOVE_PLAYLIST_TRACK,
    ActionKind.ADD_PLAYLIST_TRACK,
})

ACTION_EFFECTS: Dict[ActionKind, str] = {
    ActionKind.REMOVE_LIKED_SONG: "remove",
    ActionKind.ADD_LIKED_SONG: "add",
    ActionKind.REMOVE_PLAYLIST_TRACK: "remove",
    ActionKind.ADD_PLAYLIST_TRACK: "add",
    ActionKind.UNFOLLOW_ARTIST: "remove",
    ActionKind.FOLLOW_ARTIST: "add",
    ActionKind.REMOVE_SAVED_ALBUM: "remove",
    ActionKind.ADD_SAVED_ALBUM: "add",
    ActionKind.SKIP_TRACK: "none",
}


class ItemStatus(Enum):
    """Action item status enumeration."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    ROLLED_BACK = "rolled_back"


TERMINAL_ITEM_STATUSES = frozenset({
    ItemStatus.COMPLETED,
    ItemStatus.FAILED,
    ItemStatus.SKIPPED,
    ItemStatus.ROLLED_BACK,
})


class BatchStatus(Enum):
    """Action batch status enumeration."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIALLY_FAILED = "partially_failed"
    CANCELLED = "cancelled"


TERMINAL_BATCH_STATUSES = frozenset({
    BatchStatus.COMPLETED,
    BatchStatus.FAILED,
    BatchStatus.PARTIALLY_FAILED,
    BatchStatus.CANCELLED,
})

ROLLBACK_CONFLICT = "rollback_conflict"

# Item never reached the provider because its job failed for good
JOB_FAILED = "JOB_FAILED"


def make_idempotency_key(
    batch_id: str,
    entity_type: EntityType,
    entity_id: str,
    action: ActionKind,
    container: Optional[str] = None
) -> str:
    """Deterministic key for one logical operation inside a batch."""
    parts = [batch_id, entity_type.value, entity_id, action.value]
    if container:
        parts.append(container)
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()


def entity_state(
    entity_type: EntityType,
    entity_id: str,
    container: Optional[str],
    present: bool
) -> Dict[str, Any]:
    """Snapshot describing whether an entity is present in its container."""
    return {
        "entity_type": entity_type.value,
        "entity_id": entity_id,
        "container": container,
        "present": present,
    }


@dataclass
class ActionItem:
    """One atomic operation against the provider."""

    id: str
    batch_id: str
    entity_type: EntityType
    entity_id: str
    action: ActionKind
    idempotency_key: str

    # Ordering and grouping
    position: int = 0
    container: Optional[str] = None

    # State snapshots
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    expected_state: Optional[Dict[str, Any]] = None
    target_state: Optional[Dict[str, Any]] = None
    rollback_of: Optional[str] = None

    status: ItemStatus = ItemStatus.PENDING
    error: Optional[str] = None
    error_code: Optional[str] = None
    # Set from the provider's verdict; None falls back to the error code
    recoverable: Optional[bool] = None

    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ITEM_STATUSES

    @property
    def is_rollback(self) -> bool:
        return self.rollback_of is not None

    def assumed_before_state(self) -> Dict[str, Any]:
        """Presence snapshot implied by the action when the provider cannot report one."""
        if self.expected_state is not None:
            return dict(self.expected_state)
        present = self.action.effect != "add"
        return entity_state(self.entity_type, self.entity_id, self.container, present)

    def assumed_after_state(self) -> Dict[str, Any]:
        if self.target_state is not None:
            return dict(self.target_state)
        present = self.action.effect != "remove"
        return entity_state(self.entity_type, self.entity_id, self.container, present)

    def mark_completed(self, after_state: Optional[Dict[str, Any]], now: datetime):
        self.status = ItemStatus.COMPLETED
        self.after_state = after_state if after_state is not None else self.assumed_after_state()
        self.error = None
        self.error_code = None
        self.recoverable = None
        self.updated_at = now

    def mark_failed(self, error: str, error_code: Optional[str], now: datetime, recoverable: Optional[bool] = None):
        self.status = ItemStatus.FAILED
        self.error = error
        self.error_code = error_code
        self.recoverable = recoverable
        self.updated_at = now

    def is_recoverable(self) -> bool:
        """Whether a later retry of this item may succeed."""
        if self.recoverable is not None:
            return self.recoverable
        return (self.error_code or "") in RECOVERABLE_ERROR_CODES

    def mark_skipped(self, reason: str, now: datetime):
        self.status = ItemStatus.SKIPPED
        self.error = reason
        self.updated_at = now

    def reopen(self, now: datetime):
        """Back to pending; captured snapshots are kept."""
        self.status = ItemStatus.PENDING
        self.error = None
        self.error_code = None
        self.recoverable = None
        self.updated_at = now

    def to_dict(self) -> Dict[str, Any]:
        """Convert action item to dictionary for serialization."""
        return {
            "id": self.id,
            "batch_id": self.batch_id,
            "entity_type": self.entity_type.value,
            "entity_id": self.entity_id,
            "action": self.action.value,
            "idempotency_key": self.idempotency_key,
            "position": self.position,
            "container": self.container,
            "before_state": self.before_state,
            "after_state": self.after_state,
            "expected_state": self.expected_state,
            "target_state": self.target_state,
            "rollback_of": self.rollback_of,
            "status": self.status.value,
            "error": self.error,
            "error_code": self.error_code,
            "recoverable": self.recoverable,
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at)
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ActionItem":
        """Create action item from dictionary."""
        data = dict(data)
        data["entity_type"] = EntityType(data["entity_type"])
        data["action"] = ActionKind(data["action"])
        data["status"] = ItemStatus(data.get("status", "pending"))
        for field_name in ["created_at", "updated_at"]:
            if data.get(field_name):
                data[field_name] = parse_timestamp(data[field_name])
            else:
                data.pop(field_name, None)
        return cls(**data)


@dataclass
class BatchError:
    """Error detail recorded in a batch summary for one failed item."""
    item_id: str
    entity_id: str
    error_code: Optional[str]
    message: Optional[str]
    recoverable: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item_id": self.item_id,
            "entity_id": self.entity_id,
            "error_code": self.error_code,
            "message": self.message,
            "recoverable": self.recoverable
        }


# Error codes that a later retry of the same item may get past
RECOVERABLE_ERROR_CODES = frozenset({"SERVER_ERROR", "TIMEOUT", "CONNECTION", "RATE_LIMITED", "UNKNOWN"})


@dataclass
class BatchSummary:
    """Counts and timing for a batch run."""
    total: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    execution_time: float = 0.0
    provider_calls_made: int = 0
    total_rate_limit_wait_time: float = 0.0
    errors: List[BatchError] = field(default_factory=list)

    def recount(self, items: Iterable[ActionItem]):
        """Recompute item counts and errors from the current item states."""
        items = list(items)
        self.total = len(items)
        # Items that were later rolled back were completed by this batch
        self.completed = sum(1 for i in items if i.status in (ItemStatus.COMPLETED, ItemStatus.ROLLED_BACK))
        self.failed = sum(1 for i in items if i.status == ItemStatus.FAILED)
        self.skipped = sum(1 for i in items if i.status == ItemStatus.SKIPPED)
        self.errors = [
            BatchError(
                item_id=i.id,
                entity_id=i.entity_id,
                error_code=i.error_code,
                message=i.error,
                recoverable=i.is_recoverable()
            )
            for i in items if i.status == ItemStatus.FAILED
        ]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "completed": self.completed,
            "failed": self.failed,
            "skipped": self.skipped,
            "execution_time": round(self.execution_time, 6),
            "provider_calls_made": self.provider_calls_made,
            "total_rate_limit_wait_time": round(self.total_rate_limit_wait_time, 6),
            "errors": [e.to_dict() for e in self.errors]
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "BatchSummary":
        if not data:
            return cls()
        return cls(
            total=int(data.get("total", 0)),
            completed=int(data.get("completed", 0)),
            failed=int(data.get("failed", 0)),
            skipped=int(data.get("skipped", 0)),
            execution_time=float(data.get("execution_time", 0.0)),
            provider_calls_made=int(data.get("provider_calls_made", 0)),
            total_rate_limit_wait_time=float(data.get("total_rate_limit_wait_time", 0.0)),
            errors=[BatchError(**e) for e in data.get("errors", [])]
        )


def derive_batch_status(items: List[ActionItem]) -> BatchStatus:
    """Status of a batch whose items have all been processed."""
    if any(not i.is_terminal for i in items):
        return BatchStatus.RUNNING
    failed = sum(1 for i in items if i.status == ItemStatus.FAILED)
    if failed == 0:
        return BatchStatus.COMPLETED
    if failed == len(items):
        return BatchStatus.FAILED
    return BatchStatus.PARTIALLY_FAILED


@dataclass
class ActionBatch:
    """A set of action items representing one enforcement or rollback run."""

    id: str
    owner_id: str
    provider: str
    idempotency_key: str
    dry_run: bool = False
    status: BatchStatus = BatchStatus.PENDING
    options: Dict[str, Any] = field(default_factory=dict)
    summary: BatchSummary = field(default_factory=BatchSummary)
    rollback_of: Optional[str] = None
    items: List[ActionItem] = field(default_factory=list)

    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_BATCH_STATUSES

    @property
    def is_rollback(self) -> bool:
        return self.rollback_of is not None

    def ordered_items(self) -> List[ActionItem]:
        return sorted(self.items, key=lambda i: i.position)

    def item_by_id(self, item_id: str) -> Optional[ActionItem]:
        for item in self.items:
            if item.id == item_id:
                return item
        return None

    def to_dict(self, include_items: bool = True) -> Dict[str, Any]:
        """Convert batch to dictionary for serialization."""
        data = {
            "id": self.id,
            "owner_id": self.owner_id,
            "provider": self.provider,
            "idempotency_key": self.idempotency_key,
            "dry_run": self.dry_run,
            "status": self.status.value,
            "options": self.options,
            "summary": self.summary.to_dict(),
            "rollback_of": self.rollback_of,
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
            "completed_at": isoformat(self.completed_at)
        }
        if include_items:
            data["items"] = [i.to_dict() for i in self.ordered_items()]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ActionBatch":
        """Create batch from dictionary."""
        data = dict(data)
        data["status"] = BatchStatus(data.get("status", "pending"))
        data["summary"] = BatchSummary.from_dict(data.get("summary"))
        data["items"] = [ActionItem.from_dict(i) for i in data.get("items", [])]
        data["options"] = data.get("options") or {}
        for field_name in ["created_at", "updated_at", "completed_at"]:
            if data.get(field_name):
                data[field_name] = parse_timestamp(data[field_name])
            elif field_name == "completed_at":
                data[field_name] = None
            else:
                data.pop(field_name, None)
        return cls(**data)


@dataclass
class BatchExecutionResult:
    """Outcome of one execute() call for a batch."""
    batch_id: str
    status: BatchStatus
    summary: BatchSummary
    replayed: bool = False
    cancelled: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "status": self.status.value,
            "summary": self.summary.to_dict(),
            "replayed": self.replayed,
            "cancelled": self.cancelled
        }


@dataclass
class RollbackResult:
    """Outcome of rolling back a batch or a subset of its items."""
    original_batch_id: str
    rollback_batch_id: Optional[str]
    status: BatchStatus
    summary: BatchSummary = field(default_factory=BatchSummary)
    rolled_back_item_ids: List[str] = field(default_factory=list)
    conflicts: List[str] = field(default_factory=list)
    non_rollbackable: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "original_batch_id": self.original_batch_id,
            "rollback_batch_id": self.rollback_batch_id,
            "status": self.status.value,
            "summary": self.summary.to_dict(),
            "rolled_back_item_ids": list(self.rolled_back_item_ids),
            "conflicts": list(self.conflicts),
            "non_rollbackable": list(self.non_rollbackable)
        }
