"""Logging and observability utilities for the task ledger.

This module provides structured logging, timing of store operations,
and observability hooks fired on task, archive and audit events.
"""

from __future__ import annotations

import json
import time
import logging as std_logging
from collections import deque
from contextlib import contextmanager
from datetime import datetime, timezone
from functools import wraps
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional, Union

ROOT_LOGGER = "taskledger"
DEFAULT_MAX_SAMPLES = 1000


def setup_logging(log_level: Union[str, int] = std_logging.INFO, log_file: Optional[Path] = None) -> None:
    """Configure console logging and, optionally, a JSON file log."""
    logger = std_logging.getLogger(ROOT_LOGGER)
    logger.setLevel(log_level)
    logger.handlers.clear()

    detailed_formatter = std_logging.Formatter(
        fmt="%(asctime)s - %(name)s - %(levelname)s - %(module)s:%(funcName)s:%(lineno)d - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # MCP stdio transport owns stdout, so the console handler writes to stderr.
    console_handler = std_logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(detailed_formatter)
    logger.addHandler(console_handler)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = std_logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(std_logging.DEBUG)
        file_handler.setFormatter(JsonFormatter())
        logger.addHandler(file_handler)

    logger.info("Task ledger logging initialized")


class JsonFormatter(std_logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: std_logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        extra_fields = getattr(record, "extra_fields", None)
        if isinstance(extra_fields, dict):
            log_entry.update(extra_fields)

        return json.dumps(log_entry, default=str)


class PerformanceMonitor:
    """In-process record of operation durations.

    Only the most recent ``max_samples`` metrics are kept per name.
    """

    def __init__(self, max_samples: int = DEFAULT_MAX_SAMPLES) -> None:
        self.max_samples = max_samples
        self.metrics: Dict[str, Deque[Dict[str, Any]]] = {}

    def record_metric(self, name: str, value: Any, tags: Optional[Dict[str, str]] = None) -> None:
        metric = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "name": name,
            "value": value,
            "tags": tags or {},
        }
        self.metrics.setdefault(name, deque(maxlen=self.max_samples)).append(metric)
        std_logging.getLogger(f"{ROOT_LOGGER}.performance").debug(
            "Metric recorded: %s=%s", name, value, extra={"extra_fields": metric}
        )

    def get_metrics(self, name: Optional[str] = None) -> Dict[str, List[Dict[str, Any]]]:
        if name:
            return {name: list(self.metrics.get(name, []))}
        return {key: list(values) for key, values in self.metrics.items()}

    def reset(self) -> None:
        self.metrics.clear()


performance_monitor = PerformanceMonitor()


def log_performance(operation_name: str) -> Callable:
    """Decorator recording the duration and outcome of a store operation."""

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            logger = std_logging.getLogger(f"{ROOT_LOGGER}.performance")
            start_time = time.perf_counter()
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                duration = time.perf_counter() - start_time
                performance_monitor.record_metric(
                    f"{operation_name}_duration",
                    duration,
                    {"status": "error", "error_type": type(e).__name__},
                )
                logger.warning(
                    "Failed operation: %s after %.3fs - %s",
                    operation_name,
                    duration,
                    e,
                    extra={"extra_fields": {
                        "operation": operation_name,
                        "duration": duration,
                        "status": "error",
                        "error_type": type(e).__name__,
                    }},
                )
                raise

            duration = time.perf_counter() - start_time
            performance_monitor.record_metric(f"{operation_name}_duration", duration, {"status": "success"})
            logger.debug(
                "Completed operation: %s in %.3fs",
                operation_name,
                duration,
                extra={"extra_fields": {"operation": operation_name, "duration": duration, "status": "success"}},
            )
            return result

        return wrapper

    return decorator


@contextmanager
def log_operation(operation_name: str, **extra_fields: Any):
    """Context manager logging start, completion or failure of an operation."""
    logger = std_logging.getLogger(f"{ROOT_LOGGER}.operations")
    start_time = time.perf_counter()

    logger.debug("Starting operation: %s", operation_name, extra={"extra_fields": {
        "operation": operation_name,
        "status": "started",
        **extra_fields,
    }})

    try:
        yield
    except Exception as e:
        duration = time.perf_counter() - start_time
        logger.error("Failed operation: %s after %.3fs - %s", operation_name, duration, e, extra={"extra_fields": {
            "operation": operation_name,
            "status": "failed",
            "duration": duration,
            "error_type": type(e).__name__,
            "error_message": str(e),
            **extra_fields,
        }})
        raise

    duration = time.perf_counter() - start_time
    logger.info("Completed operation: %s in %.3fs", operation_name, duration, extra={"extra_fields": {
        "operation": operation_name,
        "status": "completed",
        "duration": duration,
        **extra_fields,
    }})


class ObservabilityHooks:
    """Callbacks fired on ledger events such as ``task_completed``."""

    def __init__(self) -> None:
        self.hooks: Dict[str, List[Callable[..., Any]]] = {}
        self.logger = std_logging.getLogger(f"{ROOT_LOGGER}.observability")

    def register_hook(self, event_type: str, callback: Callable[..., Any]) -> None:
        self.hooks.setdefault(event_type, []).append(callback)
        self.logger.debug("Registered hook for event: %s", event_type)

    def unregister_hook(self, event_type: str, callback: Callable[..., Any]) -> None:
        callbacks = self.hooks.get(event_type, [])
        if callback in callbacks:
            callbacks.remove(callback)

    def trigger_hooks(self, event_type: str, **data: Any) -> None:
        for hook in list(self.hooks.get(event_type, [])):
            try:
                hook(**data)
            except Exception as e:
                # A broken subscriber must not fail the store operation.
                self.logger.error("Hook failed for event %s: %s", event_type, e)

    def log_event(self, event_type: str, task_id: Optional[str] = None, **data: Any) -> None:
        """Log a ledger event and trigger its hooks."""
        event_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type,
            "task_id": task_id,
            **data,
        }
        self.logger.info("Ledger event: %s", event_type, extra={"extra_fields": event_data})

        hook_data = {k: v for k, v in event_data.items() if k != "event_type"}
        self.trigger_hooks(event_type, **hook_data)


observability_hooks = ObservabilityHooks()


def log_error_with_context(error: Exception, context: Dict[str, Any], **extra_fields: Any) -> None:
    """Log an error with the operation context that produced it."""
    logger = std_logging.getLogger(f"{ROOT_LOGGER}.errors")

    error_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "error_type": type(error).__name__,
        "error_message": str(error),
        "context": context,
        **extra_fields,
    }

    logger.error(
        "Error in %s: %s",
        context.get("operation", "unknown operation"),
        error,
        extra={"extra_fields": error_data},
        exc_info=error,
    )


def log_task_event(event: str, task_id: Optional[str], **extra_fields: Any) -> None:
    """Log a task lifecycle event (created, started, completed, deleted, ...)."""
    observability_hooks.log_event(f"task_{event.lower()}", task_id=task_id, **extra_fields)


def log_archive_event(event: str, archive_id: str, **extra_fields: Any) -> None:
    observability_hooks.log_event(f"archive_{event.lower()}", archive_id=archive_id, **extra_fields)


def log_audit_event(event: str, **extra_fields: Any) -> None:
    observability_hooks.log_event(f"audit_{event.lower()}", **extra_fields)
