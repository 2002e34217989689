"""Structured logging utilities for ingestion runs and dispatch."""

from __future__ import annotations

import json
import logging
import sys
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from time import perf_counter
from typing import Any

REDACTED = "***"
_SECRET_MARKERS = ("password", "secret", "api_key", "apikey", "token")

_CONTEXT_FIELDS = ("pipeline_id", "run_id", "connector")


def _is_secret_key(key: str) -> bool:
    key = key.lower()
    return any(marker in key for marker in _SECRET_MARKERS)


def redact(value: Any) -> Any:
    """Return a copy of ``value`` with secret-looking mapping keys masked."""
    if isinstance(value, dict):
        return {k: (REDACTED if _is_secret_key(str(k)) else redact(v)) for k, v in value.items()}
    if isinstance(value, list):
        return [redact(v) for v in value]
    return value


class JSONFormatter(logging.Formatter):
    """Format log records as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key in _CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                log_data[key] = value

        standard_attrs = {
            "name", "msg", "args", "created", "filename", "funcName",
            "levelname", "levelno", "lineno", "module", "msecs", "pathname",
            "process", "processName", "relativeCreated", "stack_info",
            "exc_info", "exc_text", "thread", "threadName", "taskName",
            "message", *_CONTEXT_FIELDS,
        }

        for key, value in record.__dict__.items():
            if key in standard_attrs or key.startswith("_"):
                continue
            if _is_secret_key(key):
                log_data[key] = REDACTED
            elif isinstance(value, datetime):
                log_data[key] = value.isoformat()
            elif isinstance(value, (dict, list)):
                log_data[key] = redact(value)
            elif hasattr(value, "__dict__"):
                log_data[key] = str(value)
            else:
                try:
                    json.dumps(value)
                    log_data[key] = value
                except (TypeError, ValueError):
                    log_data[key] = str(value)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class RunContextFilter(logging.Filter):
    """Attach the current thread's pipeline/run context to every record.

    Runs execute on worker threads, so the context is thread-local and set
    with :func:`log_context`.
    """

    _local = threading.local()

    @classmethod
    def current(cls) -> dict[str, Any]:
        return dict(getattr(cls._local, "context", {}))

    @classmethod
    def set_context(cls, context: dict[str, Any]) -> None:
        cls._local.context = context

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in self.current().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


@contextmanager
def log_context(**context: Any):
    """Bind ``pipeline_id``/``run_id``/``connector`` to logs emitted on this thread."""
    previous = RunContextFilter.current()
    RunContextFilter.set_context({**previous, **{k: v for k, v in context.items() if v is not None}})
    try:
        yield
    finally:
        RunContextFilter.set_context(previous)


def setup_logging(level: str = "INFO", json_format: bool = True) -> None:
    """Configure logging for the application."""
    root_logger = logging.getLogger()
    root_logger.setLevel(level.upper())
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level.upper())

    if json_format:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )

    handler.addFilter(RunContextFilter())
    root_logger.addHandler(handler)

    for noisy in ("urllib3", "elasticsearch", "elastic_transport", "snowflake"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the given name."""
    return logging.getLogger(name)


@contextmanager
def log_operation(logger: logging.Logger, operation: str, **context: Any):
    """Context manager for logging operation start/end with timing."""
    start_time = perf_counter()
    logger.info(f"Starting {operation}", extra=context)

    try:
        yield
    except Exception as e:
        duration_ms = int((perf_counter() - start_time) * 1000)
        logger.error(
            f"Failed {operation}",
            extra={**context, "duration_ms": duration_ms, "error": str(e)},
            exc_info=True,
        )
        raise
    else:
        duration_ms = int((perf_counter() - start_time) * 1000)
        logger.info(f"Completed {operation}", extra={**context, "duration_ms": duration_ms})
