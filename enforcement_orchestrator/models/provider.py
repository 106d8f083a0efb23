"""
Provider-facing data models for Enforcement Orchestrator

Per-provider rate-limit and circuit-breaker state kept by the rate tracker,
and the per-item result shape provider adapters report back.
"""

from enum import Enum
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field

from ..utils.clock import isoformat


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class RateLimitState:
    """Remaining request budget for one provider."""
    provider: str
    requests_per_window: int
    window_seconds: float
    min_interval: float = 0.0

    requests_remaining: Optional[int] = None
    window_reset_at: Optional[datetime] = None
    last_request_at: Optional[datetime] = None

    # Timestamps of calls inside the current sliding window
    recent_calls: List[datetime] = field(default_factory=list)

    # Provider-imposed block from a rate-limit response or header hint
    blocked_until: Optional[datetime] = None

    def __post_init__(self):
        if self.requests_remaining is None:
            self.requests_remaining = self.requests_per_window

    def prune(self, now: datetime):
        """Drop calls that fell out of the sliding window and refresh derived fields."""
        window = timedelta(seconds=self.window_seconds)
        self.recent_calls = [t for t in self.recent_calls if now - t < window]
        self.requests_remaining = max(0, self.requests_per_window - len(self.recent_calls))
        if self.blocked_until is not None and self.blocked_until <= now:
            self.blocked_until = None

        if self.blocked_until is not None:
            self.requests_remaining = 0
            self.window_reset_at = self.blocked_until
        elif self.recent_calls:
            self.window_reset_at = self.recent_calls[0] + window
        else:
            self.window_reset_at = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "requests_per_window": self.requests_per_window,
            "window_seconds": self.window_seconds,
            "min_interval": self.min_interval,
            "requests_remaining": self.requests_remaining,
            "window_reset_at": isoformat(self.window_reset_at),
            "last_request_at": isoformat(self.last_request_at),
            "blocked_until": isoformat(self.blocked_until)
        }


@dataclass
class CircuitBreakerState:
    """Health of one provider as seen by the circuit breaker."""
    provider: str
    state: CircuitState = CircuitState.CLOSED
    consecutive_failures: int = 0
    opened_at: Optional[datetime] = None
    retry_after: Optional[datetime] = None

    # Consecutive reopenings; doubles the cool-down each time
    open_count: int = 0
    probe_in_flight: bool = False
    probe_started_at: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "state": self.state.value,
            "consecutive_failures": self.consecutive_failures,
            "opened_at": isoformat(self.opened_at),
            "retry_after": isoformat(self.retry_after),
            "open_count": self.open_count,
            "probe_in_flight": self.probe_in_flight,
            "probe_started_at": isoformat(self.probe_started_at),
            "last_failure_at": isoformat(self.last_failure_at)
        }


@dataclass
class ItemResult:
    """Outcome of one item inside a provider batch call."""
    item_id: str
    success: bool
    state: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    recoverable: bool = False

    @classmethod
    def ok(cls, item_id: str, state: Optional[Dict[str, Any]] = None) -> "ItemResult":
        return cls(item_id=item_id, success=True, state=state)

    @classmethod
    def rejected(cls, item_id: str, error: str, error_code: str = "REJECTED", recoverable: bool = False) -> "ItemResult":
        return cls(item_id=item_id, success=False, error=error, error_code=error_code, recoverable=recoverable)
