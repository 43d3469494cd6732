# retention_engine/logging_config.py
"""
Structured JSON logging for retention runs.

Provides structured logging with trace IDs for correlating the events of
one backlog chain across entity types, plus a context manager that times a
single cleanup invocation.
"""

import json
import logging
import sys
import time
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

# Context variables for trace correlation
trace_id_var: ContextVar[str | None] = ContextVar("trace_id", default=None)
entity_var: ContextVar[str | None] = ContextVar("entity", default=None)

# Extra fields copied from log records into the JSON payload
EXTRA_FIELDS = (
    "event",
    "duration_ms",
    "table",
    "strategy",
    "count",
    "failed",
    "remaining",
    "dry_run",
    "reason",
    "round",
    "max_rounds",
    "lock_key",
    "lock_backend",
    "chunk",
    "archived",
    "items_processed",
    "items_total",
    "items_succeeded",
    "items_failed",
    "error",
)


# -----------------------------------------------------------------------------
# JSON Formatter
# -----------------------------------------------------------------------------


class JSONFormatter(logging.Formatter):
    """
    Format log records as single-line JSON.

    Output format:
    {"timestamp": "...", "level": "INFO", "message": "...", "trace_id": "...", ...}
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        trace_id = trace_id_var.get()
        if trace_id:
            log_data["trace_id"] = trace_id

        entity = entity_var.get()
        if entity:
            log_data["entity"] = entity

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key in EXTRA_FIELDS:
            if hasattr(record, key):
                log_data[key] = getattr(record, key)

        return json.dumps(log_data, default=str)


def configure_logging(json_format: bool = True, level: str = "INFO") -> None:
    """
    Configure logging for production or local development.

    Args:
        json_format: If True, use JSON format. If False, use human-readable format.
        level: Log level (DEBUG, INFO, WARNING, ERROR)
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(getattr(logging, level.upper()))

    if json_format:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))

    root_logger.addHandler(handler)

    # Reduce noise from third-party libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy").setLevel(logging.WARNING)


# -----------------------------------------------------------------------------
# Retention Logger
# -----------------------------------------------------------------------------


class RetentionLogger:
    """
    Structured logger for retention events.

    Every message carries an `event` name so collectors can count skips,
    failures and round transitions without parsing the text.
    """

    def __init__(self, name: str = "retention"):
        self._logger = logging.getLogger(name)

    def info(self, event: str, message: str, **kwargs: Any) -> None:
        self._log(logging.INFO, event, message, **kwargs)

    def warning(self, event: str, message: str, **kwargs: Any) -> None:
        self._log(logging.WARNING, event, message, **kwargs)

    def error(self, event: str, message: str, **kwargs: Any) -> None:
        self._log(logging.ERROR, event, message, **kwargs)

    def debug(self, event: str, message: str, **kwargs: Any) -> None:
        self._log(logging.DEBUG, event, message, **kwargs)

    def _log(self, level: int, event: str, message: str, **kwargs: Any) -> None:
        """Internal logging method that adds extra fields."""
        extra = {"event": event}
        extra.update(kwargs)
        self._logger.log(level, message, extra=extra)


# Global retention logger instance
retention_logger = RetentionLogger()


# -----------------------------------------------------------------------------
# Context Managers
# -----------------------------------------------------------------------------


@contextmanager
def log_cleanup(table: str, strategy: str, dry_run: bool = False):
    """
    Context manager for one cleanup invocation.

    Logs start and failure with duration and re-raises; the caller logs
    completion because only it knows the counts.

    Usage:
        with log_cleanup("notifications", "destroy") as metrics:
            ...
            metrics["count"] = removed
    """
    token = entity_var.set(table)
    start_time = time.time()
    logger = logging.getLogger("retention.cleanup")
    metrics: dict = {"count": 0}

    logger.info(
        f"Cleanup of {table} started ({strategy}, dry_run={dry_run})",
        extra={"event": "cleanup_started", "table": table, "strategy": strategy, "dry_run": dry_run},
    )

    try:
        yield metrics
        metrics["duration_ms"] = int((time.time() - start_time) * 1000)
    except Exception as e:
        duration_ms = int((time.time() - start_time) * 1000)
        logger.error(
            f"Cleanup of {table} failed: {e}",
            extra={
                "event": "cleanup_failed",
                "table": table,
                "strategy": strategy,
                "duration_ms": duration_ms,
                "count": metrics["count"],
                "error": str(e),
            },
            exc_info=True,
        )
        raise
    finally:
        entity_var.reset(token)


# -----------------------------------------------------------------------------
# Progress Tracker
# -----------------------------------------------------------------------------


@dataclass
class ProgressTracker:
    """
    Track progress for batch operations with periodic logging.

    Usage:
        tracker = ProgressTracker(total=100, stage="destroy:notifications", log_every=100)
        for row in rows:
            tracker.increment(success=remove(row))
        tracker.finish()
    """

    total: int
    stage: str
    log_every: int = 1000

    processed: int = field(default=0, init=False)
    succeeded: int = field(default=0, init=False)
    failed: int = field(default=0, init=False)
    _start_time: float = field(default_factory=time.time, init=False)
    _logger: logging.Logger = field(init=False)

    def __post_init__(self):
        self._logger = logging.getLogger("retention.progress")

    def increment(self, success: bool = True, amount: int = 1) -> None:
        """Increment progress counter."""
        previous = self.processed
        self.processed += amount
        if success:
            self.succeeded += amount
        else:
            self.failed += amount

        if self.processed // self.log_every > previous // self.log_every or self.processed == self.total:
            self._log_progress()

    def _log_progress(self) -> None:
        elapsed = time.time() - self._start_time
        rate = self.processed / elapsed if elapsed > 0 else 0

        self._logger.info(
            f"{self.stage}: {self.processed}/{self.total} "
            f"({self.succeeded} ok, {self.failed} failed) [{rate:.1f}/s]",
            extra={
                "event": "progress_update",
                "items_processed": self.processed,
                "items_total": self.total,
                "items_succeeded": self.succeeded,
                "items_failed": self.failed,
            },
        )

    def finish(self) -> dict:
        """Finalize progress tracking and return summary."""
        elapsed = time.time() - self._start_time

        self._logger.debug(
            f"{self.stage}: Completed {self.processed}/{self.total} "
            f"({self.succeeded} ok, {self.failed} failed) in {elapsed:.1f}s",
            extra={
                "event": "progress_complete",
                "items_processed": self.processed,
                "items_total": self.total,
                "items_succeeded": self.succeeded,
                "items_failed": self.failed,
            },
        )

        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "duration_seconds": round(elapsed, 1),
        }
