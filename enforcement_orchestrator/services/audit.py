"""
Audit emission for terminal action items.

Every item that reaches a terminal state produces one AuditRecord. Delivery
is fire-and-forget: the dispatcher schedules each delivery as a background
task and a failing sink is logged, never raised into the executor.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Set

import httpx

from ..models.action import ActionBatch, ActionItem
from ..utils.clock import utc_now, isoformat
from ..utils.logger import get_logger, set_log_context


@dataclass
class AuditRecord:
    batch_id: str
    item_id: str
    owner_id: str
    provider: str
    entity_type: str
    entity_id: str
    action: str
    status: str
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    error_code: Optional[str] = None
    rollback_of: Optional[str] = None
    timestamp: datetime = field(default_factory=utc_now)

    @classmethod
    def for_item(cls, batch: ActionBatch, item: ActionItem, timestamp: Optional[datetime] = None) -> "AuditRecord":
        return cls(
            batch_id=batch.id,
            item_id=item.id,
            owner_id=batch.owner_id,
            provider=batch.provider,
            entity_type=item.entity_type.value,
            entity_id=item.entity_id,
            action=item.action.value,
            status=item.status.value,
            before_state=item.before_state,
            after_state=item.after_state,
            error_code=item.error_code,
            rollback_of=item.rollback_of,
            timestamp=timestamp or item.updated_at
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "item_id": self.item_id,
            "owner_id": self.owner_id,
            "provider": self.provider,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "status": self.status,
            "before_state": self.before_state,
            "after_state": self.after_state,
            "error_code": self.error_code,
            "rollback_of": self.rollback_of,
            "timestamp": isoformat(self.timestamp)
        }


class AuditSink(ABC):
    """Destination for audit records."""

    @abstractmethod
    async def emit(self, record: AuditRecord) -> None:
        """Deliver one record. May raise; the dispatcher contains failures."""

    async def close(self) -> None:
        return None


class LoggingAuditSink(AuditSink):
    """Writes audit records to the audit logger."""

    def __init__(self, logger_name: str = "enforcement_orchestrator.audit"):
        self.logger = get_logger(logger_name)

    async def emit(self, record: AuditRecord) -> None:
        self.logger.info("Action item audited", extra={"audit": record.to_dict()})


class HttpAuditSink(AuditSink):
    """POSTs each record as JSON to an audit-log webhook."""

    def __init__(self, url: str, timeout: float = 5.0, client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def emit(self, record: AuditRecord) -> None:
        response = await self._client.post(self.url, json=record.to_dict())
        response.raise_for_status()

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class AuditDispatcher:
    """Schedules audit deliveries without blocking the caller."""

    def __init__(self, sink: Optional[AuditSink] = None):
        self.sink = sink or LoggingAuditSink()
        self._pending: Set[asyncio.Task] = set()
        self.delivered = 0
        self.failed = 0

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="audit")

    def publish(self, record: AuditRecord):
        """Schedule delivery of ``record`` and return immediately."""
        task = asyncio.get_running_loop().create_task(self._deliver(record))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, record: AuditRecord):
        try:
            await self.sink.emit(record)
            self.delivered += 1
        except Exception as e:
            self.failed += 1
            self.logger.warning("Audit delivery failed", extra={
                "item_id": record.item_id,
                "batch_id": record.batch_id,
                "error": str(e)
            })

    async def drain(self, timeout: Optional[float] = None):
        """Wait for outstanding deliveries, e.g. before shutdown."""
        if not self._pending:
            return
        await asyncio.wait(set(self._pending), timeout=timeout)

    async def close(self):
        await self.drain(timeout=5.0)
        await self.sink.close()
