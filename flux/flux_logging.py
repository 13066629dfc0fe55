"""Logging and observability utilities for Flux.

Flux logs through the standard ``flux.*`` logger hierarchy. Structured
fields travel on the record as ``extra_fields`` and are merged into the
JSON lines written by :class:`JsonFormatter`. Durations measured by
:func:`log_performance` are kept in ``performance_monitor``, which holds a
bounded window of recent samples plus running totals per metric.
"""

from __future__ import annotations

import json
import time
import logging as std_logging
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import wraps
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional, Union

DEFAULT_METRIC_WINDOW = 100


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def setup_logging(log_level: Union[str, int] = std_logging.INFO, log_file: Optional[Path] = None) -> None:
    """Configure the ``flux`` logger: readable lines on stderr, JSON lines in ``log_file``."""
    logger = std_logging.getLogger("flux")
    logger.setLevel(log_level)
    logger.handlers.clear()

    # stderr, so stdout stays free for the stdio MCP transport
    console = std_logging.StreamHandler()
    console.setLevel(log_level)
    console.setFormatter(std_logging.Formatter(
        fmt="%(asctime)s - %(name)s - %(levelname)s - %(module)s:%(funcName)s:%(lineno)d - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))
    logger.addHandler(console)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = std_logging.FileHandler(log_file)
        file_handler.setLevel(std_logging.DEBUG)
        file_handler.setFormatter(JsonFormatter())
        logger.addHandler(file_handler)

    logger.info("Flux logging initialized")


class JsonFormatter(std_logging.Formatter):
    """One JSON object per record, with ``extra_fields`` merged in."""

    def format(self, record: std_logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        entry.update(getattr(record, "extra_fields", {}))
        return json.dumps(entry, default=str)


# ------------------------------------------------------------------
# Performance metrics
# ------------------------------------------------------------------


@dataclass(slots=True)
class MetricSummary:
    count: int = 0
    errors: int = 0
    total: float = 0.0
    maximum: float = 0.0

    def add(self, value: float, failed: bool) -> None:
        self.count += 1
        self.errors += int(failed)
        self.total += value
        self.maximum = max(self.maximum, value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "count": self.count,
            "errors": self.errors,
            "mean": self.total / self.count if self.count else 0.0,
            "max": self.maximum,
        }


class PerformanceMonitor:
    """Recent samples and running totals for named metrics.

    Only the last ``window`` samples of each metric are kept; the summary
    counts every sample ever recorded.
    """

    def __init__(self, window: int = DEFAULT_METRIC_WINDOW):
        self.window = window
        self._samples: Dict[str, Deque[Dict[str, Any]]] = {}
        self._summaries: Dict[str, MetricSummary] = {}

    def record_metric(self, name: str, value: float, tags: Optional[Dict[str, str]] = None) -> None:
        sample = {"timestamp": _utc_now(), "name": name, "value": value, "tags": tags or {}}
        self._samples.setdefault(name, deque(maxlen=self.window)).append(sample)
        failed = sample["tags"].get("status") == "error"
        self._summaries.setdefault(name, MetricSummary()).add(float(value), failed)
        std_logging.getLogger("flux.performance").debug(
            f"Metric recorded: {name}={value}", extra={"extra_fields": sample}
        )

    def recent(self, name: str) -> List[Dict[str, Any]]:
        """Retained samples for ``name``, oldest first."""
        return list(self._samples.get(name, ()))

    def summary(self) -> Dict[str, Dict[str, Any]]:
        return {name: stats.to_dict() for name, stats in sorted(self._summaries.items())}

    def clear(self) -> None:
        self._samples.clear()
        self._summaries.clear()


performance_monitor = PerformanceMonitor()


def _timing_fields(operation_name: str, started: float, status: str, error: Optional[BaseException] = None,
                   **extra_fields) -> Dict[str, Any]:
    fields: Dict[str, Any] = {
        "operation": operation_name,
        "status": status,
        "duration": time.perf_counter() - started,
        **extra_fields,
    }
    if error is not None:
        fields["error_type"] = type(error).__name__
        fields["error_message"] = str(error)
    return fields


def log_performance(operation_name: str):
    """Decorator recording ``<operation_name>_duration`` for every call, failed or not."""
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            logger = std_logging.getLogger("flux.performance")
            started = time.perf_counter()
            try:
                result = func(*args, **kwargs)
            except Exception as exc:
                fields = _timing_fields(operation_name, started, "error", exc)
                performance_monitor.record_metric(
                    f"{operation_name}_duration", fields["duration"], {"status": "error", "error_type": fields["error_type"]}
                )
                logger.error(
                    f"Failed operation: {operation_name} after {fields['duration']:.3f}s - {exc}",
                    extra={"extra_fields": fields},
                )
                raise
            fields = _timing_fields(operation_name, started, "success")
            performance_monitor.record_metric(f"{operation_name}_duration", fields["duration"], {"status": "success"})
            logger.debug(
                f"Completed operation: {operation_name} in {fields['duration']:.3f}s",
                extra={"extra_fields": fields},
            )
            return result
        return wrapper
    return decorator


@contextmanager
def log_operation(operation_name: str, **extra_fields):
    """Log the start, completion or failure of a unit of work on ``flux.operations``."""
    logger = std_logging.getLogger("flux.operations")
    started = time.perf_counter()
    logger.debug(
        f"Starting operation: {operation_name}",
        extra={"extra_fields": {"operation": operation_name, "status": "started", **extra_fields}},
    )
    try:
        yield
    except Exception as exc:
        fields = _timing_fields(operation_name, started, "failed", exc, **extra_fields)
        logger.error(
            f"Failed operation: {operation_name} after {fields['duration']:.3f}s - {exc}",
            extra={"extra_fields": fields},
        )
        raise
    fields = _timing_fields(operation_name, started, "completed", **extra_fields)
    logger.info(f"Completed operation: {operation_name} in {fields['duration']:.3f}s", extra={"extra_fields": fields})


def log_domain_event(event: str, **extra_fields) -> None:
    """Log a domain event emitted after a successful mutation."""
    std_logging.getLogger("flux.events").info(
        f"Domain event: {event}",
        extra={"extra_fields": {"timestamp": _utc_now(), "event": event, **extra_fields}},
    )


def log_error_with_context(error: Exception, context: Dict[str, Any], **extra_fields) -> None:
    """Log ``error`` with its traceback and the operation context it happened in."""
    error_data = {
        "timestamp": _utc_now(),
        "error_type": type(error).__name__,
        "error_message": str(error),
        "context": context,
        **extra_fields,
    }
    std_logging.getLogger("flux.errors").error(
        f"Error in {context.get('operation', 'unknown operation')}: {error}",
        extra={"extra_fields": error_data},
        exc_info=error,
    )
