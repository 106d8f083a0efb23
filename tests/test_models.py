from datetime import timedelta

import pytest
from pydantic import ValidationError as PydanticValidationError

from enforcement_orchestrator.models.action import (
    ActionBatch,
    ActionItem,
    ActionKind,
    BatchStatus,
    BatchSummary,
    EntityType,
    ItemStatus,
    derive_batch_status,
    make_idempotency_key,
)
from enforcement_orchestrator.models.checkpoint import BatchCheckpoint
from enforcement_orchestrator.models.job import Job, JobPriority, JobStatus, JobType, can_transition_to
from enforcement_orchestrator.models.plan import EnforcementPlan

from conftest import START


def _item(item_id, status=ItemStatus.PENDING, error_code=None, position=0):
    item = ActionItem(
        id=item_id,
        batch_id="b1",
        entity_type=EntityType.TRACK,
        entity_id=f"e-{item_id}",
        action=ActionKind.REMOVE_LIKED_SONG,
        idempotency_key=f"k-{item_id}",
        position=position
    )
    item.status = status
    item.error_code = error_code
    return item


class TestIdempotencyKey:
    def test_same_operation_gives_same_key(self):
        first = make_idempotency_key("b1", EntityType.TRACK, "t1", ActionKind.REMOVE_LIKED_SONG)
        second = make_idempotency_key("b1", EntityType.TRACK, "t1", ActionKind.REMOVE_LIKED_SONG)
        assert first == second
        assert len(first) == 64

    def test_key_depends_on_every_component(self):
        base = make_idempotency_key("b1", EntityType.TRACK, "t1", ActionKind.REMOVE_LIKED_SONG)
        assert base != make_idempotency_key("b2", EntityType.TRACK, "t1", ActionKind.REMOVE_LIKED_SONG)
        assert base != make_idempotency_key("b1", EntityType.ALBUM, "t1", ActionKind.REMOVE_LIKED_SONG)
        assert base != make_idempotency_key("b1", EntityType.TRACK, "t2", ActionKind.REMOVE_LIKED_SONG)
        assert base != make_idempotency_key("b1", EntityType.TRACK, "t1", ActionKind.ADD_LIKED_SONG)

    def test_container_distinguishes_playlist_removals(self):
        one = make_idempotency_key("b1", EntityType.TRACK, "t1", ActionKind.REMOVE_PLAYLIST_TRACK, "p1")
        two = make_idempotency_key("b1", EntityType.TRACK, "t1", ActionKind.REMOVE_PLAYLIST_TRACK, "p2")
        assert one != two


class TestActionKind:
    @pytest.mark.parametrize("kind", [k for k in ActionKind if k.inverse is not None])
    def test_inverse_of_inverse_is_original(self, kind):
        assert kind.inverse.inverse == kind

    def test_skip_track_cannot_be_undone(self):
        assert ActionKind.SKIP_TRACK.inverse is None
        assert ActionKind.SKIP_TRACK.effect == "none"

    def test_playlist_actions_require_container(self):
        assert ActionKind.REMOVE_PLAYLIST_TRACK.requires_container
        assert not ActionKind.UNFOLLOW_ARTIST.requires_container


class TestBatchStatus:
    def test_all_completed(self):
        items = [_item("a", ItemStatus.COMPLETED), _item("b", ItemStatus.SKIPPED)]
        assert derive_batch_status(items) == BatchStatus.COMPLETED

    def test_some_failed(self):
        items = [_item("a", ItemStatus.COMPLETED), _item("b", ItemStatus.FAILED)]
        assert derive_batch_status(items) == BatchStatus.PARTIALLY_FAILED

    def test_all_failed(self):
        items = [_item("a", ItemStatus.FAILED), _item("b", ItemStatus.FAILED)]
        assert derive_batch_status(items) == BatchStatus.FAILED

    def test_pending_items_keep_batch_running(self):
        items = [_item("a", ItemStatus.COMPLETED), _item("b")]
        assert derive_batch_status(items) == BatchStatus.RUNNING


class TestBatchSummary:
    def test_recount_respects_total(self):
        items = [
            _item("a", ItemStatus.COMPLETED),
            _item("b", ItemStatus.FAILED, "SERVER_ERROR"),
            _item("c", ItemStatus.SKIPPED),
            _item("d"),
            _item("e", ItemStatus.ROLLED_BACK),
        ]
        summary = BatchSummary()
        summary.recount(items)

        assert summary.total == 5
        assert summary.completed == 2
        assert summary.failed == 1
        assert summary.skipped == 1
        assert summary.completed + summary.failed + summary.skipped <= summary.total

    def test_errors_mark_recoverable_codes(self):
        summary = BatchSummary()
        summary.recount([
            _item("a", ItemStatus.FAILED, "SERVER_ERROR"),
            _item("b", ItemStatus.FAILED, "NOT_FOUND"),
        ])
        recoverable = {e.item_id: e.recoverable for e in summary.errors}
        assert recoverable == {"a": True, "b": False}

    def test_provider_verdict_overrides_error_code(self):
        retryable = _item("a", ItemStatus.FAILED, "NOT_FOUND")
        retryable.recoverable = True
        permanent = _item("b", ItemStatus.FAILED, "SERVER_ERROR")
        permanent.recoverable = False
        summary = BatchSummary()

        summary.recount([retryable, permanent])

        recoverable = {e.item_id: e.recoverable for e in summary.errors}
        assert recoverable == {"a": True, "b": False}


class TestActionBatchSerialization:
    def test_from_dict_restores_items_and_status(self):
        batch = ActionBatch(
            id="b1",
            owner_id="o1",
            provider="sim",
            idempotency_key="k1",
            status=BatchStatus.PARTIALLY_FAILED,
            items=[_item("b", ItemStatus.FAILED, position=1), _item("a", ItemStatus.COMPLETED, position=0)],
            created_at=START,
            updated_at=START,
            completed_at=START + timedelta(seconds=5)
        )

        restored = ActionBatch.from_dict(batch.to_dict())

        assert restored.status == BatchStatus.PARTIALLY_FAILED
        assert [i.id for i in restored.items] == ["a", "b"]
        assert restored.items[1].status == ItemStatus.FAILED
        assert restored.completed_at == START + timedelta(seconds=5)


class TestEnforcementPlan:
    def test_provider_is_normalized(self):
        plan = EnforcementPlan.model_validate({
            "owner_id": "o1",
            "provider": " Spotify ",
            "idempotency_key": "k",
            "actions": []
        })
        assert plan.provider == "spotify"

    def test_playlist_action_without_container_is_rejected(self):
        with pytest.raises(PydanticValidationError):
            EnforcementPlan.model_validate({
                "owner_id": "o1",
                "provider": "sim",
                "idempotency_key": "k",
                "actions": [{"entity_type": "track", "entity_id": "t1", "action": "remove_playlist_track"}]
            })

    def test_unknown_action_is_rejected(self):
        with pytest.raises(PydanticValidationError):
            EnforcementPlan.model_validate({
                "owner_id": "o1",
                "provider": "sim",
                "idempotency_key": "k",
                "actions": [{"entity_type": "track", "entity_id": "t1", "action": "delete_account"}]
            })

    def test_extra_options_are_kept(self):
        plan = EnforcementPlan.model_validate({
            "owner_id": "o1",
            "provider": "sim",
            "idempotency_key": "k",
            "options": {"dry_run": True, "source": "nightly"}
        })
        dumped = plan.options.model_dump()
        assert dumped["dry_run"] is True
        assert dumped["source"] == "nightly"


class TestCheckpoint:
    def test_supersedes_only_forward(self):
        older = BatchCheckpoint(batch_id="b1", items_processed=50, total_items=120)
        newer = BatchCheckpoint(batch_id="b1", items_processed=100, total_items=120)
        assert newer.supersedes(older)
        assert not older.supersedes(newer)
        assert older.supersedes(None)

    def test_progress_percentage(self):
        checkpoint = BatchCheckpoint(batch_id="b1", items_processed=30, total_items=120)
        assert checkpoint.progress_percentage == pytest.approx(25.0)
        assert not checkpoint.is_complete


class TestJob:
    def test_claim_order_prefers_priority_then_sequence(self):
        low = Job(job_id="a", job_type=JobType.EXECUTE_BATCH, priority=JobPriority.LOW, sequence=1)
        high = Job(job_id="b", job_type=JobType.EXECUTE_BATCH, priority=JobPriority.HIGH, sequence=2)
        high_later = Job(job_id="c", job_type=JobType.EXECUTE_BATCH, priority=JobPriority.HIGH, sequence=3)
        ordered = sorted([low, high_later, high], key=lambda j: j.claim_order())
        assert [j.job_id for j in ordered] == ["b", "c", "a"]

    def test_cancel_flag_blocks_claim(self):
        job = Job(job_id="a", job_type=JobType.EXECUTE_BATCH, run_at=START)
        assert job.is_claimable(START)
        job.cancel_requested = True
        assert not job.is_claimable(START)

    def test_from_dict_parses_enums_and_timestamps(self):
        job = Job(job_id="a", job_type=JobType.ROLLBACK_BATCH, run_at=START, created_at=START, updated_at=START)
        restored = Job.from_dict(job.to_dict())
        assert restored.job_type == JobType.ROLLBACK_BATCH
        assert restored.status == JobStatus.QUEUED
        assert restored.run_at == START

    def test_dead_letter_can_only_be_requeued(self):
        assert can_transition_to(JobStatus.DEAD_LETTER, JobStatus.QUEUED)
        assert not can_transition_to(JobStatus.DEAD_LETTER, JobStatus.RUNNING)
        assert not can_transition_to(JobStatus.SUCCEEDED, JobStatus.QUEUED)
