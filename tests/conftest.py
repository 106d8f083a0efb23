"""
Shared fixtures: a controllable clock, a deterministic random source and an
in-memory provider that enforces its own rate budget.
"""

import asyncio
import random
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Set

import pytest

from enforcement_orchestrator.core.exceptions import CredentialError, RateLimitedError, TransientProviderError
from enforcement_orchestrator.models.action import ActionKind, EntityType, entity_state
from enforcement_orchestrator.models.plan import EnforcementPlan
from enforcement_orchestrator.models.provider import ItemResult
from enforcement_orchestrator.providers.base import ProviderAdapter, ProviderRegistry
from enforcement_orchestrator.services.audit import AuditDispatcher, AuditSink
from enforcement_orchestrator.services.batch_planner import BatchPlanner
from enforcement_orchestrator.services.executor import IdempotentActionExecutor
from enforcement_orchestrator.services.rate_tracker import ProviderStateTracker
from enforcement_orchestrator.services.rollback import RollbackEngine
from enforcement_orchestrator.storage.memory import MemoryBatchRepository, MemoryCheckpointStore
from enforcement_orchestrator.utils.clock import utc_now
from enforcement_orchestrator.utils.config import OrchestratorConfig, ProviderSettings
from enforcement_orchestrator.utils.metrics import EnforcementMetrics


START = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Clock whose sleep advances time instead of waiting."""

    def __init__(self, start: datetime = START):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now += timedelta(seconds=seconds)

    async def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.advance(max(0.0, seconds))
        await asyncio.sleep(0)


class FixedRandom(random.Random):
    """Jitter factor is always the midpoint, so backoff delays are exact."""

    def uniform(self, a, b):
        return (a + b) / 2


class SimulatedCrash(BaseException):
    """Stands in for the process dying in the middle of a provider call."""


class SimulatedProvider(ProviderAdapter):
    """
    In-memory provider library.

    Enforces ``requests_per_window`` calls per ``window_seconds`` on the
    clock it is given and records every violation, so tests can check that
    the executor never exceeds the budget.
    """

    def __init__(
        self,
        name: str = "sim",
        clock: Callable[[], datetime] = utc_now,
        requests_per_window: int = 1000,
        window_seconds: float = 60.0
    ):
        super().__init__(name)
        self.clock = clock
        self.requests_per_window = requests_per_window
        self.window_seconds = window_seconds

        self.library: Set[tuple] = set()
        self.calls: List[Dict[str, Any]] = []
        self.violations = 0
        self.apply_counts: Dict[tuple, int] = {}

        self.rejections: Dict[str, str] = {}
        # Rejected entities the provider marks as worth retrying
        self.recoverable_rejections: Set[str] = set()
        self.missing_results: Set[str] = set()
        self.transient_failures: Set[int] = set()
        self.rate_limited_calls: Dict[int, Optional[float]] = {}
        self.crash_on_call: Optional[int] = None
        self.credential_failures = 0
        self.refresh_succeeds = True
        # capture_state raises from this call number on
        self.capture_fails_from: Optional[int] = None
        self.capture_calls = 0
        self.refreshed_owners: List[str] = []
        self.on_apply: Optional[Callable] = None

    def add(self, entity_type: str, entity_id: str, container: Optional[str] = None):
        self.library.add((entity_type, entity_id, container))

    def has(self, entity_type: str, entity_id: str, container: Optional[str] = None) -> bool:
        return (entity_type, entity_id, container) in self.library

    @property
    def call_count(self) -> int:
        return len(self.calls)

    async def apply_batch(self, owner_id, action, items):
        now = self.clock()
        recent = [c for c in self.calls if now - c["at"] < timedelta(seconds=self.window_seconds)]
        if len(recent) >= self.requests_per_window:
            self.violations += 1

        self.calls.append({"at": now, "action": action, "entity_ids": [i.entity_id for i in items]})
        number = len(self.calls)

        if self.on_apply is not None:
            await self.on_apply(items)
        if self.crash_on_call == number:
            raise SimulatedCrash()
        if self.credential_failures > 0:
            self.credential_failures -= 1
            raise CredentialError(self.name, "token expired")
        if number in self.rate_limited_calls:
            raise RateLimitedError(self.name, retry_after=self.rate_limited_calls[number])
        if number in self.transient_failures:
            raise TransientProviderError(self.name, "503 service unavailable", status_code=503)

        results = []
        for item in items:
            if item.entity_id in self.missing_results:
                continue
            if item.entity_id in self.rejections:
                results.append(ItemResult.rejected(
                    item.id,
                    "rejected",
                    self.rejections[item.entity_id],
                    recoverable=item.entity_id in self.recoverable_rejections
                ))
                continue

            key = (item.entity_type.value, item.entity_id, item.container)
            self.apply_counts[key] = self.apply_counts.get(key, 0) + 1
            if action.effect == "remove":
                self.library.discard(key)
            elif action.effect == "add":
                self.library.add(key)
            results.append(ItemResult.ok(item.id, entity_state(
                item.entity_type, item.entity_id, item.container, key in self.library
            )))
        return results

    async def capture_state(self, owner_id, action, items):
        self.capture_calls += 1
        if self.capture_fails_from is not None and self.capture_calls >= self.capture_fails_from:
            raise RuntimeError("library lookup failed")
        return {
            item.id: entity_state(
                item.entity_type,
                item.entity_id,
                item.container,
                (item.entity_type.value, item.entity_id, item.container) in self.library
            )
            for item in items
        }

    async def refresh_credential(self, owner_id: str) -> bool:
        self.refreshed_owners.append(owner_id)
        return self.refresh_succeeds


class RecordingAuditSink(AuditSink):
    def __init__(self):
        self.records = []

    async def emit(self, record):
        self.records.append(record)


def make_plan(
    count: int,
    key: str = "plan-1",
    provider: str = "sim",
    action: str = "remove_liked_song",
    entity_type: str = "track",
    owner_id: str = "owner-1",
    dry_run: bool = False,
    container: Optional[str] = None
) -> EnforcementPlan:
    return EnforcementPlan.model_validate({
        "owner_id": owner_id,
        "provider": provider,
        "idempotency_key": key,
        "options": {"dry_run": dry_run},
        "actions": [
            {
                "entity_type": entity_type,
                "entity_id": f"t{i}",
                "action": action,
                "target_container": container
            }
            for i in range(count)
        ]
    })


def sim_settings(**overrides) -> ProviderSettings:
    values = dict(
        name="sim",
        max_batch_size=50,
        optimal_batch_size=50,
        requests_per_window=100,
        window_seconds=60.0,
        min_interval_seconds=0.0,
        failure_threshold=5,
        transient_max_attempts=3,
        transient_initial_delay=0.1,
        max_inline_wait_seconds=60.0,
    )
    values.update(overrides)
    return ProviderSettings(**values)


class ExecutorEnv:
    """The executor and everything it talks to, wired on a fake clock."""

    def __init__(self, **settings_overrides):
        self.clock = FakeClock()
        self.rng = FixedRandom(7)
        self.settings = sim_settings(**settings_overrides)
        self.config = OrchestratorConfig(providers={"sim": self.settings})
        self.provider = SimulatedProvider(
            clock=self.clock,
            requests_per_window=self.settings.requests_per_window,
            window_seconds=self.settings.window_seconds
        )
        self.registry = ProviderRegistry([self.provider])
        self.repository = MemoryBatchRepository()
        self.checkpoints = MemoryCheckpointStore()
        self.metrics = EnforcementMetrics()
        self.audit_sink = RecordingAuditSink()
        self.audit = AuditDispatcher(self.audit_sink)
        self.tracker = ProviderStateTracker(
            self.config.provider_settings, clock=self.clock, rng=self.rng, metrics=self.metrics
        )
        self.planner = BatchPlanner(self.config.provider_settings, clock=self.clock)
        self.executor = IdempotentActionExecutor(
            self.repository,
            self.checkpoints,
            self.tracker,
            self.planner,
            self.registry,
            self.config.provider_settings,
            audit=self.audit,
            metrics=self.metrics,
            clock=self.clock,
            sleep=self.clock.sleep,
            rng=self.rng
        )
        self.rollback_engine = RollbackEngine(self.repository, self.executor, clock=self.clock)

    def seed_library(self, plan: EnforcementPlan):
        """Put every entity the plan touches into the provider library."""
        for action in plan.actions:
            self.provider.add(action.entity_type.value, action.entity_id, action.target_container)

    async def create(self, plan: EnforcementPlan):
        batch, _ = await self.repository.create_batch(self.planner.build_batch(plan))
        return batch


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_env():
    def _make(**settings_overrides) -> ExecutorEnv:
        return ExecutorEnv(**settings_overrides)
    return _make


@pytest.fixture
def env(make_env):
    return make_env()
