"""
Prometheus metrics for the enforcement core.

Each orchestrator owns its own CollectorRegistry so several instances (and
test cases) can coexist in one process.
"""

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest

from ..models.provider import CircuitState


CIRCUIT_STATE_VALUES = {
    CircuitState.CLOSED: 0,
    CircuitState.HALF_OPEN: 1,
    CircuitState.OPEN: 2,
}


class EnforcementMetrics:
    """
    Metrics for the enforcement core.

    Tracks:
    - Provider calls by outcome and rate-limit waiting
    - Circuit breaker state and trips
    - Action items reaching terminal states
    - Jobs reaching terminal states and their duration
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None, namespace: str = "enforcement"):
        self.registry = registry or CollectorRegistry()

        self.provider_calls_total = Counter(
            f"{namespace}_provider_calls_total",
            "Total provider batch calls",
            ["provider", "outcome"],
            registry=self.registry,
        )

        self.rate_limit_wait_seconds_total = Counter(
            f"{namespace}_rate_limit_wait_seconds_total",
            "Seconds spent waiting on provider rate budgets",
            ["provider"],
            registry=self.registry,
        )

        self.circuit_state = Gauge(
            f"{namespace}_circuit_state",
            "Circuit state per provider (0=closed, 1=half_open, 2=open)",
            ["provider"],
            registry=self.registry,
        )

        self.circuit_trips_total = Counter(
            f"{namespace}_circuit_trips_total",
            "Times a provider circuit opened",
            ["provider"],
            registry=self.registry,
        )

        self.items_total = Counter(
            f"{namespace}_items_total",
            "Action items reaching a terminal state",
            ["provider", "status"],
            registry=self.registry,
        )

        self.jobs_total = Counter(
            f"{namespace}_jobs_total",
            "Jobs reaching a terminal or rescheduled state",
            ["job_type", "status"],
            registry=self.registry,
        )

        self.job_duration_seconds = Histogram(
            f"{namespace}_job_duration_seconds",
            "Wall-clock job handler duration in seconds",
            ["job_type"],
            buckets=[0.1, 0.5, 1.0, 5.0, 30.0, 60.0, 300.0, 900.0],
            registry=self.registry,
        )

    def record_provider_call(self, provider: str, outcome: str):
        self.provider_calls_total.labels(provider=provider, outcome=outcome).inc()

    def record_rate_limit_wait(self, provider: str, seconds: float):
        if seconds > 0:
            self.rate_limit_wait_seconds_total.labels(provider=provider).inc(seconds)

    def set_circuit_state(self, provider: str, state: CircuitState):
        self.circuit_state.labels(provider=provider).set(CIRCUIT_STATE_VALUES[state])

    def record_circuit_trip(self, provider: str):
        self.circuit_trips_total.labels(provider=provider).inc()

    def record_item(self, provider: str, status: str):
        self.items_total.labels(provider=provider, status=status).inc()

    def record_job(self, job_type: str, status: str, duration_seconds: Optional[float] = None):
        self.jobs_total.labels(job_type=job_type, status=status).inc()
        if duration_seconds is not None:
            self.job_duration_seconds.labels(job_type=job_type).observe(duration_seconds)

    def get_sample(self, name: str, labels: dict) -> Optional[float]:
        return self.registry.get_sample_value(name, labels)

    def export(self) -> bytes:
        """Render the registry in Prometheus text exposition format."""
        return generate_latest(self.registry)
