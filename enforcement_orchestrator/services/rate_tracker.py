"""
Rate/Circuit state tracker.

Keeps, per provider, the remaining request budget over a sliding window and
the circuit breaker health. State lives in a keyed store owned by the tracker
instance; every read-modify-write happens under that provider's lock, so
several workers can share one tracker safely.
"""

import asyncio
import copy
import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Any

from ..models.provider import RateLimitState, CircuitBreakerState, CircuitState
from ..utils.clock import Clock, utc_now
from ..utils.config import ProviderSettings
from ..utils.logger import get_logger, set_log_context
from ..utils.metrics import EnforcementMetrics
from .fault_tolerance import exponential_backoff


@dataclass
class _ProviderEntry:
    settings: ProviderSettings
    rate: RateLimitState
    circuit: CircuitBreakerState
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class ProviderStateTracker:
    """
    Per-provider rate budget and circuit breaker.

    Contract:
    - can_proceed(provider): whether a call would be permitted right now
    - wait_duration(provider): seconds until a call may be permitted (0 if now)
    - reserve(provider): atomically claim permission for one call
    - record_success / record_failure: feed the outcome of a call back
    """

    def __init__(
        self,
        settings_lookup: Callable[[str], ProviderSettings],
        clock: Clock = utc_now,
        rng: Optional[random.Random] = None,
        metrics: Optional[EnforcementMetrics] = None
    ):
        """
        Initialize the tracker.

        Args:
            settings_lookup: Returns the ProviderSettings for a provider name
            clock: Source of the current time
            rng: Random source for cool-down jitter
            metrics: Optional metrics sink
        """
        self._settings_lookup = settings_lookup
        self._clock = clock
        self._rng = rng or random.Random()
        self._metrics = metrics
        self._entries: Dict[str, _ProviderEntry] = {}

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="rate_tracker")

    def _entry(self, provider: str) -> _ProviderEntry:
        entry = self._entries.get(provider)
        if entry is None:
            settings = self._settings_lookup(provider)
            entry = _ProviderEntry(
                settings=settings,
                rate=RateLimitState(
                    provider=provider,
                    requests_per_window=settings.requests_per_window,
                    window_seconds=settings.window_seconds,
                    min_interval=settings.min_interval_seconds
                ),
                circuit=CircuitBreakerState(provider=provider)
            )
            self._entries[provider] = entry
        return entry

    # Queries

    async def can_proceed(self, provider: str) -> bool:
        """Whether a call to ``provider`` would be permitted right now."""
        return await self.wait_duration(provider) == 0.0

    async def wait_duration(self, provider: str) -> float:
        """Seconds until a call to ``provider`` may be permitted; 0 if immediately."""
        entry = self._entry(provider)
        async with entry.lock:
            return self._wait_locked(entry, self._clock())

    def is_circuit_open(self, provider: str) -> bool:
        """True while the circuit blocks ordinary calls (open, or half-open with a probe out)."""
        entry = self._entry(provider)
        circuit = entry.circuit
        if circuit.state == CircuitState.OPEN:
            return True
        return circuit.state == CircuitState.HALF_OPEN and circuit.probe_in_flight

    def get_rate_state(self, provider: str) -> RateLimitState:
        entry = self._entry(provider)
        entry.rate.prune(self._clock())
        return copy.deepcopy(entry.rate)

    def get_circuit_state(self, provider: str) -> CircuitBreakerState:
        return copy.deepcopy(self._entry(provider).circuit)

    def get_provider_health(self) -> Dict[str, Dict[str, Any]]:
        """Snapshot of every provider seen so far."""
        now = self._clock()
        health = {}
        for provider, entry in self._entries.items():
            entry.rate.prune(now)
            health[provider] = {
                "circuit": entry.circuit.to_dict(),
                "rate_limit": entry.rate.to_dict(),
                "wait_seconds": round(self._wait_locked(entry, now), 3)
            }
        return health

    # Mutations

    async def reserve(self, provider: str) -> bool:
        """
        Atomically claim permission for one call.

        Consumes one unit of the rate budget and, when the circuit is
        open or half-open, claims the single probe slot.

        Returns:
            True if the caller may issue the call now
        """
        entry = self._entry(provider)
        async with entry.lock:
            now = self._clock()
            if self._wait_locked(entry, now) > 0:
                return False

            circuit = entry.circuit
            if circuit.state in (CircuitState.OPEN, CircuitState.HALF_OPEN):
                if circuit.state == CircuitState.OPEN:
                    self.logger.info("Circuit half-open, allowing probe", extra={"provider": provider})
                circuit.state = CircuitState.HALF_OPEN
                circuit.probe_in_flight = True
                circuit.probe_started_at = now
                self._publish_circuit(provider, circuit)

            rate = entry.rate
            rate.recent_calls.append(now)
            rate.last_request_at = now
            rate.prune(now)
            return True

    async def record_success(
        self,
        provider: str,
        requests_remaining: Optional[int] = None,
        reset_at: Optional[datetime] = None
    ):
        """
        Record a successful provider call.

        Args:
            provider: Provider name
            requests_remaining: Remaining budget reported by the provider, if any
            reset_at: When the provider's window resets, if reported
        """
        entry = self._entry(provider)
        async with entry.lock:
            now = self._clock()
            circuit = entry.circuit
            was_half_open = circuit.state == CircuitState.HALF_OPEN

            circuit.consecutive_failures = 0
            if circuit.state != CircuitState.CLOSED:
                circuit.state = CircuitState.CLOSED
                circuit.open_count = 0
                circuit.opened_at = None
                circuit.retry_after = None
                circuit.probe_in_flight = False
                circuit.probe_started_at = None
                self._publish_circuit(provider, circuit)

            if requests_remaining is not None and requests_remaining <= 0:
                entry.rate.blocked_until = reset_at or (now + timedelta(seconds=entry.settings.default_rate_limit_wait_seconds))
            entry.rate.prune(now)

        if was_half_open:
            self.logger.info("Circuit closed after successful probe", extra={"provider": provider})

    async def record_failure(self, provider: str, is_rate_limit: bool, retry_after: Optional[float] = None):
        """
        Record a failed provider call.

        Args:
            provider: Provider name
            is_rate_limit: Whether the provider rejected the call for rate limiting
            retry_after: Provider hint, in seconds, before calls may resume
        """
        entry = self._entry(provider)
        async with entry.lock:
            now = self._clock()
            circuit = entry.circuit

            if is_rate_limit:
                wait = retry_after if retry_after is not None else entry.settings.default_rate_limit_wait_seconds
                entry.rate.blocked_until = now + timedelta(seconds=max(0.0, wait))
                entry.rate.prune(now)
                # A throttled probe says nothing about provider health
                if circuit.state == CircuitState.HALF_OPEN:
                    circuit.probe_in_flight = False
                    circuit.probe_started_at = None
                self.logger.warning("Provider rate limited", extra={
                    "provider": provider,
                    "retry_after": wait
                })
                return

            circuit.consecutive_failures += 1
            circuit.last_failure_at = now

            if circuit.state == CircuitState.HALF_OPEN:
                circuit.open_count += 1
                self._open_circuit(provider, entry, now)
            elif circuit.state == CircuitState.CLOSED and circuit.consecutive_failures >= entry.settings.failure_threshold:
                circuit.open_count = 0
                self._open_circuit(provider, entry, now)

    async def release_probe(self, provider: str):
        """Give back a half-open probe slot without recording an outcome."""
        entry = self._entry(provider)
        async with entry.lock:
            circuit = entry.circuit
            if circuit.state == CircuitState.HALF_OPEN:
                circuit.probe_in_flight = False
                circuit.probe_started_at = None

    async def reset_circuit(self, provider: str) -> bool:
        """Operator action: force the circuit closed."""
        entry = self._entry(provider)
        async with entry.lock:
            entry.circuit = CircuitBreakerState(provider=provider)
            self._publish_circuit(provider, entry.circuit)
        self.logger.info("Circuit reset", extra={"provider": provider})
        return True

    # Internals

    def _wait_locked(self, entry: _ProviderEntry, now: datetime) -> float:
        circuit_wait = self._circuit_wait(entry, now)
        if circuit_wait > 0:
            return circuit_wait

        rate = entry.rate
        rate.prune(now)
        wait = 0.0
        if rate.requests_remaining <= 0 and rate.window_reset_at is not None:
            wait = (rate.window_reset_at - now).total_seconds()
        if rate.min_interval > 0 and rate.last_request_at is not None:
            next_allowed = rate.last_request_at + timedelta(seconds=rate.min_interval)
            wait = max(wait, (next_allowed - now).total_seconds())
        return max(0.0, wait)

    def _circuit_wait(self, entry: _ProviderEntry, now: datetime) -> float:
        circuit = entry.circuit
        if circuit.state == CircuitState.CLOSED:
            return 0.0
        if circuit.state == CircuitState.OPEN:
            if circuit.retry_after is not None and now < circuit.retry_after:
                return (circuit.retry_after - now).total_seconds()
            return 0.0
        # Half-open: one probe at a time; a probe that never reported back expires
        if circuit.probe_in_flight:
            started = circuit.probe_started_at or now
            expires = started + timedelta(seconds=entry.settings.call_timeout_seconds)
            if now < expires:
                return min(entry.settings.probe_poll_seconds, (expires - now).total_seconds())
            circuit.probe_in_flight = False
        return 0.0

    def _open_circuit(self, provider: str, entry: _ProviderEntry, now: datetime):
        settings = entry.settings
        circuit = entry.circuit
        cooldown = exponential_backoff(
            settings.circuit_base_cooldown_seconds,
            circuit.open_count,
            settings.circuit_max_cooldown_seconds,
            rng=self._rng
        )
        circuit.state = CircuitState.OPEN
        circuit.opened_at = now
        circuit.retry_after = now + timedelta(seconds=cooldown)
        circuit.probe_in_flight = False
        circuit.probe_started_at = None

        self._publish_circuit(provider, circuit)
        if self._metrics:
            self._metrics.record_circuit_trip(provider)

        self.logger.warning("Circuit opened", extra={
            "provider": provider,
            "consecutive_failures": circuit.consecutive_failures,
            "open_count": circuit.open_count,
            "cooldown_seconds": round(cooldown, 3)
        })

    def _publish_circuit(self, provider: str, circuit: CircuitBreakerState):
        if self._metrics:
            self._metrics.set_circuit_state(provider, circuit.state)
