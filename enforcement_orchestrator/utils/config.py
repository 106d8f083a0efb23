"""
Configuration for Enforcement Orchestrator

Settings are pydantic models loaded from a YAML file, with a small set of
environment overrides applied on top.
"""

import os
from pathlib import Path
from typing import Dict, Any, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from ..core.exceptions import ConfigurationError


class ProviderSettings(BaseModel):
    """Rate budget, batch sizing and circuit behaviour for one provider."""

    name: str
    max_batch_size: int = Field(default=50, ge=1)
    optimal_batch_size: int = Field(default=50, ge=1)
    # Per action kind overrides of the optimal batch size
    batch_sizes: Dict[str, int] = Field(default_factory=dict)

    requests_per_window: int = Field(default=100, ge=1)
    window_seconds: float = Field(default=3600.0, gt=0)
    min_interval_seconds: float = Field(default=0.1, ge=0)
    default_rate_limit_wait_seconds: float = Field(default=60.0, gt=0)
    max_rate_limit_retries: int = Field(default=10, ge=0)

    failure_threshold: int = Field(default=5, ge=1)
    circuit_base_cooldown_seconds: float = Field(default=30.0, gt=0)
    circuit_max_cooldown_seconds: float = Field(default=300.0, gt=0)
    probe_poll_seconds: float = Field(default=1.0, gt=0)

    call_timeout_seconds: float = Field(default=30.0, gt=0)
    transient_max_attempts: int = Field(default=3, ge=1)
    transient_initial_delay: float = Field(default=0.1, ge=0)
    transient_max_delay: float = Field(default=30.0, ge=0)

    # Longest wait a worker will sleep through before handing the job back to the queue
    max_inline_wait_seconds: float = Field(default=60.0, ge=0)

    def batch_size_for(self, action: str) -> int:
        size = self.batch_sizes.get(action, self.optimal_batch_size)
        return max(1, min(size, self.max_batch_size))


class RetrySettings(BaseModel):
    """Exponential backoff with jitter."""

    max_attempts: int = Field(default=5, ge=1)
    initial_delay: float = Field(default=30.0, ge=0)
    max_delay: float = Field(default=900.0, ge=0)
    exponential_base: float = Field(default=2.0, ge=1)
    jitter: bool = True


class WorkerSettings(BaseModel):
    concurrency: int = Field(default=2, ge=1)
    poll_interval_seconds: float = Field(default=1.0, gt=0)
    heartbeat_interval_seconds: float = Field(default=30.0, gt=0)
    stale_after_seconds: float = Field(default=120.0, gt=0)
    job_timeout_seconds: float = Field(default=300.0, gt=0)
    reaper_interval_seconds: float = Field(default=30.0, gt=0)
    # Finished jobs older than this are deleted by the reaper; None keeps them forever
    job_retention_seconds: Optional[float] = Field(default=None, gt=0)


class OrchestratorConfig(BaseModel):
    """Top level configuration."""

    database_url: Optional[str] = None
    database_pool_size: int = Field(default=10, ge=1)
    providers: Dict[str, ProviderSettings] = Field(default_factory=dict)
    job_retry: RetrySettings = Field(default_factory=RetrySettings)
    workers: WorkerSettings = Field(default_factory=WorkerSettings)
    audit_webhook_url: Optional[str] = None
    checkpoint_dir: Optional[str] = None
    log_level: str = "INFO"
    structured_logs: bool = True

    def provider_settings(self, provider: str) -> ProviderSettings:
        """Settings for ``provider``, falling back to the built-in defaults."""
        key = provider.lower()
        if key in self.providers:
            return self.providers[key]
        if key in DEFAULT_PROVIDERS:
            return DEFAULT_PROVIDERS[key].model_copy()
        return ProviderSettings(name=key)


DEFAULT_PROVIDERS: Dict[str, ProviderSettings] = {
    "spotify": ProviderSettings(
        name="spotify",
        max_batch_size=50,
        optimal_batch_size=50,
        batch_sizes={"unfollow_artist": 50, "remove_playlist_track": 100, "add_playlist_track": 100},
        requests_per_window=100,
        window_seconds=60.0,
        circuit_max_cooldown_seconds=120.0,
    ),
    "apple_music": ProviderSettings(
        name="apple_music",
        max_batch_size=100,
        optimal_batch_size=50,
        requests_per_window=1000,
        window_seconds=3600.0,
        circuit_max_cooldown_seconds=300.0,
    ),
}

ENV_OVERRIDES = {
    "ENFORCEMENT_DATABASE_URL": ("database_url", str),
    "ENFORCEMENT_LOG_LEVEL": ("log_level", str),
    "ENFORCEMENT_AUDIT_WEBHOOK_URL": ("audit_webhook_url", str),
}


def load_config(
    path: Optional[Union[str, Path]] = None,
    overrides: Optional[Dict[str, Any]] = None,
    environ: Optional[Dict[str, str]] = None
) -> OrchestratorConfig:
    """
    Load configuration from YAML, then apply environment and explicit overrides.

    Args:
        path: Optional YAML file path
        overrides: Values that win over both file and environment
        environ: Environment mapping (defaults to os.environ)

    Returns:
        Validated OrchestratorConfig

    Raises:
        ConfigurationError: If the file cannot be read or values are invalid
    """
    data: Dict[str, Any] = {}
    env = os.environ if environ is None else environ

    if path:
        try:
            with open(path, "r", encoding="utf-8") as f:
                loaded = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(str(path), f"Unable to read configuration: {e}")
        if not isinstance(loaded, dict):
            raise ConfigurationError(str(path), "Top level of configuration must be a mapping")
        data.update(loaded)

    for env_key, (config_key, cast) in ENV_OVERRIDES.items():
        if env.get(env_key):
            data[config_key] = cast(env[env_key])

    if env.get("ENFORCEMENT_WORKER_CONCURRENCY"):
        workers = dict(data.get("workers") or {})
        workers["concurrency"] = env["ENFORCEMENT_WORKER_CONCURRENCY"]
        data["workers"] = workers

    if overrides:
        data.update({k: v for k, v in overrides.items() if v is not None})

    # Provider entries layer over the built-in defaults; the mapping key supplies the name
    providers = data.get("providers") or {}
    if not isinstance(providers, dict):
        raise ConfigurationError("providers", "must be a mapping of provider name to settings")
    merged: Dict[str, Dict[str, Any]] = {}
    for name, settings in providers.items():
        key = str(name).lower()
        base = DEFAULT_PROVIDERS[key].model_dump() if key in DEFAULT_PROVIDERS else {}
        base.update(settings or {})
        base["name"] = key
        merged[key] = base
    data["providers"] = merged

    try:
        return OrchestratorConfig.model_validate(data)
    except PydanticValidationError as e:
        first = e.errors()[0] if e.errors() else {}
        key = ".".join(str(p) for p in first.get("loc", ())) or "config"
        raise ConfigurationError(key, first.get("msg", str(e)))
