"""
Utilities package for Enforcement Orchestrator

Contains utility modules for database management, logging, configuration and metrics.
"""

from .database import DatabaseManager
from .logger import setup_logger, get_logger, set_log_context, LoggerContext
from .config import OrchestratorConfig, ProviderSettings, RetrySettings, WorkerSettings, load_config
from .metrics import EnforcementMetrics

__all__ = [
    "DatabaseManager",
    "setup_logger",
    "get_logger",
    "set_log_context",
    "LoggerContext",
    "OrchestratorConfig",
    "ProviderSettings",
    "RetrySettings",
    "WorkerSettings",
    "load_config",
    "EnforcementMetrics"
]
