import asyncio
from datetime import timedelta

import pytest

from enforcement_orchestrator.models.provider import CircuitState
from enforcement_orchestrator.services.rate_tracker import ProviderStateTracker
from enforcement_orchestrator.utils.config import OrchestratorConfig
from enforcement_orchestrator.utils.metrics import EnforcementMetrics

from conftest import FakeClock, FixedRandom, sim_settings


def _tracker(clock, metrics=None, **overrides):
    config = OrchestratorConfig(providers={"sim": sim_settings(**overrides)})
    return ProviderStateTracker(config.provider_settings, clock=clock, rng=FixedRandom(), metrics=metrics)


class TestRateBudget:
    @pytest.mark.asyncio
    async def test_budget_exhaustion_and_window_reset(self):
        clock = FakeClock()
        tracker = _tracker(clock, requests_per_window=3, window_seconds=10.0)

        assert [await tracker.reserve("sim") for _ in range(3)] == [True, True, True]
        assert await tracker.reserve("sim") is False
        assert await tracker.can_proceed("sim") is False
        assert await tracker.wait_duration("sim") == pytest.approx(10.0)

        clock.advance(4)
        assert await tracker.wait_duration("sim") == pytest.approx(6.0)

        clock.advance(6)
        assert await tracker.wait_duration("sim") == 0.0
        assert await tracker.reserve("sim") is True

    @pytest.mark.asyncio
    async def test_sliding_window_frees_budget_one_call_at_a_time(self):
        clock = FakeClock()
        tracker = _tracker(clock, requests_per_window=2, window_seconds=10.0)

        await tracker.reserve("sim")
        clock.advance(5)
        await tracker.reserve("sim")

        assert await tracker.wait_duration("sim") == pytest.approx(5.0)
        clock.advance(5)
        assert await tracker.reserve("sim") is True
        assert tracker.get_rate_state("sim").requests_remaining == 0

    @pytest.mark.asyncio
    async def test_min_interval_between_calls(self):
        clock = FakeClock()
        tracker = _tracker(clock, min_interval_seconds=1.5)

        await tracker.reserve("sim")
        assert await tracker.wait_duration("sim") == pytest.approx(1.5)

        clock.advance(1.5)
        assert await tracker.can_proceed("sim")

    @pytest.mark.asyncio
    async def test_rate_limit_response_blocks_for_hint(self):
        clock = FakeClock()
        tracker = _tracker(clock)

        await tracker.record_failure("sim", is_rate_limit=True, retry_after=30.0)

        assert await tracker.wait_duration("sim") == pytest.approx(30.0)
        circuit = tracker.get_circuit_state("sim")
        assert circuit.state == CircuitState.CLOSED
        assert circuit.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_rate_limit_without_hint_uses_default_wait(self):
        clock = FakeClock()
        tracker = _tracker(clock, default_rate_limit_wait_seconds=45.0)

        await tracker.record_failure("sim", is_rate_limit=True)

        assert await tracker.wait_duration("sim") == pytest.approx(45.0)

    @pytest.mark.asyncio
    async def test_success_reporting_empty_budget_blocks_until_reset(self):
        clock = FakeClock()
        tracker = _tracker(clock)

        await tracker.record_success("sim", requests_remaining=0, reset_at=clock() + timedelta(seconds=12))

        assert await tracker.wait_duration("sim") == pytest.approx(12.0)

    @pytest.mark.asyncio
    async def test_concurrent_reservations_never_exceed_budget(self):
        clock = FakeClock()
        tracker = _tracker(clock, requests_per_window=5, window_seconds=60.0)

        granted = await asyncio.gather(*[tracker.reserve("sim") for _ in range(20)])

        assert sum(granted) == 5

    @pytest.mark.asyncio
    async def test_providers_are_tracked_independently(self):
        clock = FakeClock()
        tracker = _tracker(clock, requests_per_window=1)

        await tracker.reserve("sim")

        assert not await tracker.can_proceed("sim")
        assert await tracker.can_proceed("spotify")


class TestCircuitBreaker:
    async def _trip(self, tracker, count):
        for _ in range(count):
            await tracker.record_failure("sim", is_rate_limit=False)

    @pytest.mark.asyncio
    async def test_opens_after_threshold(self):
        clock = FakeClock()
        metrics = EnforcementMetrics()
        tracker = _tracker(clock, metrics=metrics, failure_threshold=3, circuit_base_cooldown_seconds=30.0)

        await self._trip(tracker, 2)
        assert tracker.get_circuit_state("sim").state == CircuitState.CLOSED

        await self._trip(tracker, 1)
        circuit = tracker.get_circuit_state("sim")
        assert circuit.state == CircuitState.OPEN
        assert circuit.retry_after == clock() + timedelta(seconds=30)
        assert await tracker.wait_duration("sim") == pytest.approx(30.0)
        assert not await tracker.can_proceed("sim")
        assert tracker.is_circuit_open("sim")
        assert metrics.get_sample("enforcement_circuit_trips_total", {"provider": "sim"}) == 1.0
        assert metrics.get_sample("enforcement_circuit_state", {"provider": "sim"}) == 2.0

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self):
        clock = FakeClock()
        tracker = _tracker(clock, failure_threshold=3)

        await self._trip(tracker, 2)
        await tracker.record_success("sim")
        await self._trip(tracker, 2)

        assert tracker.get_circuit_state("sim").state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_half_open_allows_single_probe(self):
        clock = FakeClock()
        tracker = _tracker(clock, failure_threshold=1, circuit_base_cooldown_seconds=30.0)
        await self._trip(tracker, 1)

        clock.advance(30)
        assert await tracker.reserve("sim") is True
        assert tracker.get_circuit_state("sim").state == CircuitState.HALF_OPEN
        assert await tracker.reserve("sim") is False
        assert tracker.is_circuit_open("sim")

    @pytest.mark.asyncio
    async def test_successful_probe_closes_circuit(self):
        clock = FakeClock()
        tracker = _tracker(clock, failure_threshold=1, circuit_base_cooldown_seconds=30.0)
        await self._trip(tracker, 1)
        clock.advance(30)
        await tracker.reserve("sim")

        await tracker.record_success("sim")

        circuit = tracker.get_circuit_state("sim")
        assert circuit.state == CircuitState.CLOSED
        assert circuit.consecutive_failures == 0
        assert await tracker.can_proceed("sim")

    @pytest.mark.asyncio
    async def test_failed_probe_reopens_with_doubled_cooldown(self):
        clock = FakeClock()
        tracker = _tracker(
            clock,
            failure_threshold=1,
            circuit_base_cooldown_seconds=30.0,
            circuit_max_cooldown_seconds=100.0
        )
        await self._trip(tracker, 1)

        clock.advance(30)
        await tracker.reserve("sim")
        await self._trip(tracker, 1)
        circuit = tracker.get_circuit_state("sim")
        assert circuit.state == CircuitState.OPEN
        assert circuit.open_count == 1
        assert await tracker.wait_duration("sim") == pytest.approx(60.0)

        clock.advance(60)
        await tracker.reserve("sim")
        await self._trip(tracker, 1)
        assert await tracker.wait_duration("sim") == pytest.approx(100.0)

    @pytest.mark.asyncio
    async def test_rate_limited_probe_releases_slot_without_reopening(self):
        clock = FakeClock()
        tracker = _tracker(clock, failure_threshold=1, circuit_base_cooldown_seconds=30.0)
        await self._trip(tracker, 1)
        clock.advance(30)
        await tracker.reserve("sim")

        await tracker.record_failure("sim", is_rate_limit=True, retry_after=5.0)

        circuit = tracker.get_circuit_state("sim")
        assert circuit.state == CircuitState.HALF_OPEN
        assert not circuit.probe_in_flight
        assert await tracker.wait_duration("sim") == pytest.approx(5.0)

    @pytest.mark.asyncio
    async def test_release_probe_frees_half_open_slot(self):
        clock = FakeClock()
        tracker = _tracker(clock, failure_threshold=1, circuit_base_cooldown_seconds=30.0)
        await self._trip(tracker, 1)
        clock.advance(30)
        await tracker.reserve("sim")

        await tracker.release_probe("sim")

        assert await tracker.reserve("sim") is True

    @pytest.mark.asyncio
    async def test_abandoned_probe_expires_after_call_timeout(self):
        clock = FakeClock()
        tracker = _tracker(clock, failure_threshold=1, circuit_base_cooldown_seconds=30.0, call_timeout_seconds=10.0)
        await self._trip(tracker, 1)
        clock.advance(30)
        await tracker.reserve("sim")

        clock.advance(10)

        assert await tracker.reserve("sim") is True

    @pytest.mark.asyncio
    async def test_reset_circuit(self):
        clock = FakeClock()
        tracker = _tracker(clock, failure_threshold=1)
        await self._trip(tracker, 1)

        assert await tracker.reset_circuit("sim")

        assert tracker.get_circuit_state("sim").state == CircuitState.CLOSED
        assert await tracker.can_proceed("sim")

    @pytest.mark.asyncio
    async def test_provider_health_snapshot(self):
        clock = FakeClock()
        tracker = _tracker(clock, failure_threshold=1)
        await self._trip(tracker, 1)

        health = tracker.get_provider_health()

        assert health["sim"]["circuit"]["state"] == "open"
        assert health["sim"]["wait_seconds"] > 0
        assert "requests_remaining" in health["sim"]["rate_limit"]
