"""
Logging utilities for Enforcement Orchestrator

Structured JSON or plain-text log output, with the enforcement context
(component, job, batch, provider, worker) stamped onto every record.
"""

import logging
import sys
import json
from datetime import datetime, timezone
from typing import Dict, Any, Optional, Tuple
from pathlib import Path


# Attributes every LogRecord has; anything else arrived through extra= or the context filter
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}

# Context keys shown inline by the text formatter, in this order
CONTEXT_KEYS: Tuple[str, ...] = ("component", "job_id", "worker_id", "batch_id", "provider")


def _extras(record: logging.LogRecord) -> Dict[str, Any]:
    return {key: value for key, value in record.__dict__.items() if key not in _RECORD_ATTRS}


class StructuredFormatter(logging.Formatter):
    """
    Formats each record as one JSON object.

    Context and ``extra=`` fields are nested under ``context`` so they can
    never clobber the fixed keys.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}"
        }

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": self.formatException(record.exc_info)
            }

        context = _extras(record)
        if context:
            entry["context"] = context

        return json.dumps(entry, default=str, ensure_ascii=False)


class ContextTextFormatter(logging.Formatter):
    """Human-readable lines: ``time level logger [component job=.. batch=..] message key=value``."""

    def __init__(self):
        super().__init__("%(asctime)s %(levelname)-7s %(name)s %(context)s%(message)s%(fields)s")

    def format(self, record: logging.LogRecord) -> str:
        extras = _extras(record)
        tags = [str(extras.pop(key)) if key == "component" else f"{key}={extras.pop(key)}"
                for key in CONTEXT_KEYS if extras.get(key) is not None]
        for key in CONTEXT_KEYS:
            extras.pop(key, None)

        record.context = f"[{' '.join(tags)}] " if tags else ""
        record.fields = "".join(f" {key}={value}" for key, value in extras.items())
        try:
            return super().format(record)
        finally:
            del record.context
            del record.fields


class ExecutionContextFilter(logging.Filter):
    """Copies the logger's standing context onto each record, unless the call passed the same key."""

    def __init__(self):
        super().__init__()
        self.context: Dict[str, Any] = {}

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in self.context.items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


def setup_logger(
    name: str,
    level: str = "INFO",
    structured: bool = True,
    log_file: Optional[str] = None
) -> logging.Logger:
    """
    Set up a logger with appropriate configuration.

    Args:
        name: Logger name
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        structured: JSON output when True, context-tagged text otherwise
        log_file: Optional log file path

    Returns:
        Configured logger instance
    """
    logger = get_logger(name)
    log_level = getattr(logging, level.upper(), logging.INFO)
    logger.setLevel(log_level)

    # Configure output once; later calls only adjust the level
    if any(not isinstance(h, logging.NullHandler) for h in logger.handlers):
        return logger

    formatter = StructuredFormatter() if structured else ContextTextFormatter()
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    for handler in handlers:
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger with an execution context filter attached."""
    logger = logging.getLogger(name)
    if not hasattr(logger, 'context_filter'):
        context_filter = ExecutionContextFilter()
        logger.addFilter(context_filter)
        logger.context_filter = context_filter
    return logger


def set_log_context(logger: logging.Logger, **kwargs):
    """Add standing context (e.g. ``component="executor"``) to every record of ``logger``."""
    get_logger(logger.name).context_filter.context.update(kwargs)


class LoggerContext:
    """
    Context manager for temporary log context.

    Used around a single job so that every record emitted inside the block
    carries its identifiers.
    """

    def __init__(self, logger: logging.Logger, **kwargs):
        self.logger = get_logger(logger.name)
        self.context = kwargs
        self._saved: Dict[str, Any] = {}

    def __enter__(self):
        context_filter = self.logger.context_filter
        self._saved = dict(context_filter.context)
        context_filter.context.update(self.context)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.logger.context_filter.context = self._saved
