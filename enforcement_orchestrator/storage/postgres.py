"""
PostgreSQL storage backend.

Implements the repository interfaces over DatabaseManager's asyncpg pool.
Job claims use ``FOR UPDATE SKIP LOCKED`` so concurrent workers, in one
process or many, never claim the same job. Checkpoint writes are a
conditional upsert that refuses to move progress backwards.
"""

from datetime import datetime
from typing import Dict, Any, List, Optional, Sequence, Tuple

from ..core.exceptions import DatabaseError
from ..models.action import ActionBatch, ActionItem
from ..models.checkpoint import BatchCheckpoint
from ..models.job import Job, JobStatus, JobType
from ..utils.clock import utc_now
from ..utils.database import DatabaseManager
from .base import BatchRepository, CheckpointStore, JobStore


def _updated_one(status: Any) -> bool:
    # asyncpg returns command tags like "UPDATE 1"
    return str(status).split()[-1:] == ["1"]


def _job_from_row(row) -> Job:
    data = dict(row)
    data.pop("priority_rank", None)
    return Job.from_dict(data)


_BATCH_INSERT = """
    INSERT INTO action_batches (
        id, owner_id, provider, idempotency_key, dry_run, status, options,
        summary, rollback_of, created_at, updated_at, completed_at
    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
    ON CONFLICT (idempotency_key) DO NOTHING
    RETURNING id
"""

_ITEM_UPSERT = """
    INSERT INTO action_items (
        id, batch_id, entity_type, entity_id, action, idempotency_key, position,
        container, before_state, after_state, expected_state, target_state, rollback_of,
        status, error, error_code, recoverable, created_at, updated_at
    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16, $17, $18, $19)
    ON CONFLICT (id) DO UPDATE SET
        before_state = EXCLUDED.before_state,
        after_state = EXCLUDED.after_state,
        status = EXCLUDED.status,
        error = EXCLUDED.error,
        error_code = EXCLUDED.error_code,
        recoverable = EXCLUDED.recoverable,
        updated_at = EXCLUDED.updated_at
"""


def _item_args(item: ActionItem) -> Tuple:
    return (
        item.id, item.batch_id, item.entity_type.value, item.entity_id,
        item.action.value, item.idempotency_key, item.position, item.container,
        item.before_state, item.after_state, item.expected_state, item.target_state, item.rollback_of,
        item.status.value, item.error, item.error_code, item.recoverable, item.created_at, item.updated_at
    )


class PostgresBatchRepository(BatchRepository):
    """Batches in ``action_batches``, items in ``action_items``."""

    def __init__(self, database_manager: DatabaseManager):
        self.db = database_manager

    async def create_batch(self, batch: ActionBatch) -> Tuple[ActionBatch, bool]:
        try:
            async with self.db.transaction() as conn:
                row = await conn.fetchrow(
                    _BATCH_INSERT,
                    batch.id, batch.owner_id, batch.provider, batch.idempotency_key,
                    batch.dry_run, batch.status.value, batch.options, batch.summary.to_dict(),
                    batch.rollback_of, batch.created_at, batch.updated_at, batch.completed_at
                )
                if row is None:
                    existing = await self._fetch(conn, "idempotency_key", batch.idempotency_key)
                    return existing, False
                if batch.items:
                    await conn.executemany(_ITEM_UPSERT, [_item_args(i) for i in batch.items])
                return batch, True
        except Exception as e:
            raise DatabaseError("create_batch", str(e), "action_batches")

    async def get_batch(self, batch_id: str) -> Optional[ActionBatch]:
        try:
            async with self.db.get_connection() as conn:
                return await self._fetch(conn, "id", batch_id)
        except Exception as e:
            raise DatabaseError("get_batch", str(e), "action_batches")

    async def get_batch_by_key(self, idempotency_key: str) -> Optional[ActionBatch]:
        try:
            async with self.db.get_connection() as conn:
                return await self._fetch(conn, "idempotency_key", idempotency_key)
        except Exception as e:
            raise DatabaseError("get_batch_by_key", str(e), "action_batches")

    async def save_batch(self, batch: ActionBatch) -> None:
        try:
            async with self.db.get_connection() as conn:
                await conn.execute("""
                    UPDATE action_batches
                    SET status = $2, summary = $3, options = $4, updated_at = $5, completed_at = $6
                    WHERE id = $1
                """,
                batch.id, batch.status.value, batch.summary.to_dict(), batch.options,
                batch.updated_at, batch.completed_at)
        except Exception as e:
            raise DatabaseError("save_batch", str(e), "action_batches")

    async def save_items(self, items: Sequence[ActionItem]) -> None:
        if not items:
            return
        try:
            async with self.db.get_connection() as conn:
                await conn.executemany(_ITEM_UPSERT, [_item_args(i) for i in items])
        except Exception as e:
            raise DatabaseError("save_items", str(e), "action_items")

    async def list_batches(self, owner_id: Optional[str] = None, limit: int = 50) -> List[ActionBatch]:
        try:
            async with self.db.get_connection() as conn:
                rows = await conn.fetch("""
                    SELECT * FROM action_batches
                    WHERE ($1::text IS NULL OR owner_id = $1)
                    ORDER BY created_at DESC
                    LIMIT $2
                """, owner_id, limit)
                return [ActionBatch.from_dict(dict(row)) for row in rows]
        except Exception as e:
            raise DatabaseError("list_batches", str(e), "action_batches")

    async def _fetch(self, conn, column: str, value: str) -> Optional[ActionBatch]:
        # column is one of two fixed names, never caller input
        row = await conn.fetchrow(f"SELECT * FROM action_batches WHERE {column} = $1", value)
        if row is None:
            return None
        item_rows = await conn.fetch(
            "SELECT * FROM action_items WHERE batch_id = $1 ORDER BY position ASC",
            row["id"]
        )
        data = dict(row)
        data["items"] = [dict(r) for r in item_rows]
        return ActionBatch.from_dict(data)


class PostgresCheckpointStore(CheckpointStore):
    """Checkpoints in ``batch_checkpoints``."""

    def __init__(self, database_manager: DatabaseManager):
        self.db = database_manager

    async def get(self, batch_id: str) -> Optional[BatchCheckpoint]:
        try:
            async with self.db.get_connection() as conn:
                row = await conn.fetchrow("SELECT * FROM batch_checkpoints WHERE batch_id = $1", batch_id)
                return BatchCheckpoint.from_dict(dict(row)) if row else None
        except Exception as e:
            raise DatabaseError("get_checkpoint", str(e), "batch_checkpoints")

    async def save(self, checkpoint: BatchCheckpoint) -> bool:
        try:
            async with self.db.get_connection() as conn:
                row = await conn.fetchrow("""
                    INSERT INTO batch_checkpoints (
                        batch_id, last_completed_item_id, items_processed,
                        total_items, sub_batches_completed, updated_at
                    ) VALUES ($1, $2, $3, $4, $5, $6)
                    ON CONFLICT (batch_id) DO UPDATE SET
                        last_completed_item_id = EXCLUDED.last_completed_item_id,
                        items_processed = EXCLUDED.items_processed,
                        total_items = EXCLUDED.total_items,
                        sub_batches_completed = EXCLUDED.sub_batches_completed,
                        updated_at = EXCLUDED.updated_at
                    WHERE batch_checkpoints.items_processed <= EXCLUDED.items_processed
                    RETURNING batch_id
                """,
                checkpoint.batch_id, checkpoint.last_completed_item_id, checkpoint.items_processed,
                checkpoint.total_items, checkpoint.sub_batches_completed, checkpoint.updated_at)
                return row is not None
        except Exception as e:
            raise DatabaseError("save_checkpoint", str(e), "batch_checkpoints")

    async def clear(self, batch_id: str) -> None:
        try:
            async with self.db.get_connection() as conn:
                await conn.execute("DELETE FROM batch_checkpoints WHERE batch_id = $1", batch_id)
        except Exception as e:
            raise DatabaseError("clear_checkpoint", str(e), "batch_checkpoints")


class PostgresJobStore(JobStore):
    """Job queue in the ``jobs`` table."""

    def __init__(self, database_manager: DatabaseManager):
        self.db = database_manager

    async def insert(self, job: Job) -> Job:
        try:
            async with self.db.get_connection() as conn:
                row = await conn.fetchrow("""
                    INSERT INTO jobs (
                        job_id, job_type, payload, priority, priority_rank, status,
                        owner_id, provider, attempt_count, max_attempts, run_at,
                        cancel_requested, progress, created_at, updated_at
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15)
                    RETURNING sequence
                """,
                job.job_id, job.job_type.value, job.payload, job.priority.value, job.priority.rank,
                job.status.value, job.owner_id, job.provider, job.attempt_count, job.max_attempts,
                job.run_at, job.cancel_requested, job.progress.to_dict(), job.created_at, job.updated_at)
                job.sequence = int(row["sequence"])
                return job
        except Exception as e:
            raise DatabaseError("insert_job", str(e), "jobs")

    async def get(self, job_id: str) -> Optional[Job]:
        try:
            async with self.db.get_connection() as conn:
                row = await conn.fetchrow("SELECT * FROM jobs WHERE job_id = $1", job_id)
                return _job_from_row(row) if row else None
        except Exception as e:
            raise DatabaseError("get_job", str(e), "jobs")

    async def update(self, job: Job, expected_worker: Optional[str] = None) -> bool:
        try:
            async with self.db.get_connection() as conn:
                status = await conn.execute("""
                    UPDATE jobs SET
                        payload = $2,
                        priority = $3,
                        priority_rank = $4,
                        status = $5,
                        attempt_count = $6,
                        max_attempts = $7,
                        run_at = $8,
                        locked_by = $9,
                        heartbeat_at = $10,
                        cancel_requested = cancel_requested OR $11,
                        progress = $12,
                        result = $13,
                        error_message = $14,
                        error_code = $15,
                        updated_at = $16,
                        started_at = $17,
                        completed_at = $18
                    WHERE job_id = $1
                      AND ($19::text IS NULL OR (status = 'running' AND locked_by = $19))
                """,
                job.job_id, job.payload, job.priority.value, job.priority.rank, job.status.value,
                job.attempt_count, job.max_attempts, job.run_at, job.locked_by, job.heartbeat_at,
                job.cancel_requested, job.progress.to_dict(), job.result, job.error_message,
                job.error_code, job.updated_at, job.started_at, job.completed_at, expected_worker)
                return _updated_one(status)
        except Exception as e:
            raise DatabaseError("update_job", str(e), "jobs")

    async def claim_next(self, worker_id: str, now: datetime) -> Optional[Job]:
        try:
            async with self.db.get_connection() as conn:
                row = await conn.fetchrow("""
                    UPDATE jobs
                    SET status = 'running',
                        locked_by = $1,
                        heartbeat_at = $2,
                        attempt_count = attempt_count + 1,
                        started_at = COALESCE(started_at, $2),
                        updated_at = $2
                    WHERE job_id = (
                        SELECT j.job_id
                        FROM jobs j
                        WHERE j.status = 'queued'
                          AND j.run_at <= $2
                          AND NOT j.cancel_requested
                        ORDER BY j.priority_rank DESC, j.sequence ASC
                        FOR UPDATE SKIP LOCKED
                        LIMIT 1
                    )
                    RETURNING *
                """, worker_id, now)
                return _job_from_row(row) if row else None
        except Exception as e:
            raise DatabaseError("claim_next", str(e), "jobs")

    async def heartbeat(self, job_id: str, worker_id: str, now: datetime) -> bool:
        try:
            async with self.db.get_connection() as conn:
                status = await conn.execute("""
                    UPDATE jobs SET heartbeat_at = $3
                    WHERE job_id = $1 AND status = 'running' AND locked_by = $2
                """, job_id, worker_id, now)
                return _updated_one(status)
        except Exception as e:
            raise DatabaseError("heartbeat", str(e), "jobs")

    async def request_cancel(self, job_id: str) -> Optional[Job]:
        try:
            async with self.db.get_connection() as conn:
                row = await conn.fetchrow("""
                    UPDATE jobs SET cancel_requested = TRUE, updated_at = $2
                    WHERE job_id = $1
                    RETURNING *
                """, job_id, utc_now())
                return _job_from_row(row) if row else None
        except Exception as e:
            raise DatabaseError("request_cancel", str(e), "jobs")

    async def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        owner_id: Optional[str] = None,
        limit: int = 100
    ) -> List[Job]:
        try:
            async with self.db.get_connection() as conn:
                rows = await conn.fetch("""
                    SELECT * FROM jobs
                    WHERE ($1::text IS NULL OR status = $1)
                      AND ($2::text IS NULL OR owner_id = $2)
                    ORDER BY sequence DESC
                    LIMIT $3
                """, status.value if status else None, owner_id, limit)
                return [_job_from_row(row) for row in rows]
        except Exception as e:
            raise DatabaseError("list_jobs", str(e), "jobs")

    async def find_active_for_batch(self, batch_id: str, job_type: JobType = JobType.EXECUTE_BATCH) -> Optional[Job]:
        try:
            async with self.db.get_connection() as conn:
                row = await conn.fetchrow("""
                    SELECT * FROM jobs
                    WHERE job_type = $1
                      AND payload ->> 'batch_id' = $2
                      AND status IN ('queued', 'running')
                    ORDER BY sequence ASC
                    LIMIT 1
                """, job_type.value, batch_id)
                return _job_from_row(row) if row else None
        except Exception as e:
            raise DatabaseError("find_active_for_batch", str(e), "jobs")

    async def find_stale_running(self, heartbeat_before: datetime) -> List[Job]:
        try:
            async with self.db.get_connection() as conn:
                rows = await conn.fetch("""
                    SELECT * FROM jobs
                    WHERE status = 'running'
                      AND (heartbeat_at IS NULL OR heartbeat_at < $1)
                    ORDER BY heartbeat_at ASC NULLS FIRST
                    LIMIT 500
                """, heartbeat_before)
                return [_job_from_row(row) for row in rows]
        except Exception as e:
            raise DatabaseError("find_stale_running", str(e), "jobs")

    async def count_by_status(self) -> Dict[str, int]:
        try:
            async with self.db.get_connection() as conn:
                rows = await conn.fetch("SELECT status, COUNT(*) AS count FROM jobs GROUP BY status")
                counts = {status.value: 0 for status in JobStatus}
                for row in rows:
                    counts[row["status"]] = int(row["count"])
                return counts
        except Exception as e:
            raise DatabaseError("count_by_status", str(e), "jobs")

    async def delete_finished_before(self, cutoff: datetime) -> int:
        try:
            async with self.db.get_connection() as conn:
                status = await conn.execute("""
                    DELETE FROM jobs
                    WHERE (status IN ('succeeded', 'failed', 'cancelled')
                           AND COALESCE(completed_at, updated_at) < $1)
                       OR (status = 'dead_letter' AND created_at < $1)
                """, cutoff)
                # Command tag is "DELETE <count>"
                return int(str(status).split()[-1])
        except Exception as e:
            raise DatabaseError("delete_finished_before", str(e), "jobs")
