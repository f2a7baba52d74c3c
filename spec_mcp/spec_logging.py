"""Logging and observability utilities for Spec MCP.

This module provides structured logging, operation timing and observability
hooks for the task workflow engine. Status transitions and administrative
resets are emitted as different event types so their audit trails never mix.
"""

from __future__ import annotations

import json
import logging as std_logging
import sys
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from functools import wraps
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from .models import TransitionRecord

LOGGER_NAME = "spec_mcp"


def setup_logging(
    log_level: Union[str, int] = std_logging.INFO,
    log_file: Optional[Path] = None,
) -> std_logging.Logger:
    """Setup structured logging for Spec MCP.

    Console output goes to stderr; stdout is reserved for the MCP stdio
    transport.
    """

    logger = std_logging.getLogger(LOGGER_NAME)
    logger.setLevel(log_level)
    logger.handlers.clear()

    detailed_formatter = std_logging.Formatter(
        fmt="%(asctime)s - %(name)s - %(levelname)s - %(module)s:%(funcName)s:%(lineno)d - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    console_handler = std_logging.StreamHandler(sys.stderr)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(detailed_formatter)
    logger.addHandler(console_handler)

    if log_file:
        file_handler = std_logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(std_logging.DEBUG)
        file_handler.setFormatter(JsonFormatter())
        logger.addHandler(file_handler)

    logger.info("Spec MCP logging initialized")
    return logger


class JsonFormatter(std_logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: std_logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "extra_fields"):
            log_entry.update(record.extra_fields)

        return json.dumps(log_entry, default=str)


def log_performance(operation_name: str):
    """Decorator to log the duration of an operation."""
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            start_time = time.time()
            logger = std_logging.getLogger(f"{LOGGER_NAME}.performance")

            try:
                result = func(*args, **kwargs)
            except Exception as e:
                duration = time.time() - start_time
                logger.warning(
                    f"Failed operation: {operation_name} after {duration:.3f}s - {e}",
                    extra={"extra_fields": {
                        "operation": operation_name,
                        "duration": duration,
                        "status": "error",
                        "error_type": type(e).__name__,
                    }},
                )
                raise

            duration = time.time() - start_time
            logger.debug(
                f"Completed operation: {operation_name} in {duration:.3f}s",
                extra={"extra_fields": {
                    "operation": operation_name,
                    "duration": duration,
                    "status": "success",
                }},
            )
            return result

        return wrapper
    return decorator


@contextmanager
def log_operation(operation_name: str, **extra_fields):
    """Context manager to log operations with custom fields."""
    logger = std_logging.getLogger(f"{LOGGER_NAME}.operations")
    start_time = time.time()

    logger.debug(f"Starting operation: {operation_name}", extra={"extra_fields": {
        "operation": operation_name,
        "status": "started",
        **extra_fields,
    }})

    try:
        yield
    except Exception as e:
        duration = time.time() - start_time
        logger.warning(f"Failed operation: {operation_name} after {duration:.3f}s - {e}", extra={"extra_fields": {
            "operation": operation_name,
            "status": "failed",
            "duration": duration,
            "error_type": type(e).__name__,
            "error_message": str(e),
            **extra_fields,
        }})
        raise

    duration = time.time() - start_time
    logger.info(f"Completed operation: {operation_name} in {duration:.3f}s", extra={"extra_fields": {
        "operation": operation_name,
        "status": "completed",
        "duration": duration,
        **extra_fields,
    }})


class ObservabilityHooks:
    """Observability hooks for workflow events.

    Each workflow run owns its hooks instance; callers pass it explicitly.
    """

    def __init__(self):
        self.hooks: Dict[str, List[Callable[..., Any]]] = {}
        self.logger = std_logging.getLogger(f"{LOGGER_NAME}.observability")

    def register_hook(self, event_type: str, callback: Callable[..., Any]) -> None:
        """Register a callback for a specific event type."""
        self.hooks.setdefault(event_type, []).append(callback)
        self.logger.debug(f"Registered hook for event: {event_type}")

    def trigger_hooks(self, event_type: str, **data) -> None:
        """Trigger all callbacks for a specific event type."""
        for hook in self.hooks.get(event_type, []):
            try:
                hook(**data)
            except Exception as e:
                # observers never fail the event they observe
                self.logger.error(f"Hook failed for event {event_type}: {e}", exc_info=True)

    def log_workflow_event(self, event_type: str, project_id: Optional[str] = None, **data) -> None:
        """Log a workflow event and trigger hooks."""
        event_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type,
            "project_id": project_id,
            **data,
        }

        self.logger.info(f"Workflow event: {event_type}", extra={"extra_fields": event_data})

        hook_data = {k: v for k, v in event_data.items() if k != "event_type"}
        self.trigger_hooks(event_type, **hook_data)


def log_transition(
    record: TransitionRecord,
    hooks: Optional[ObservabilityHooks] = None,
    project_id: Optional[str] = None,
) -> None:
    """Log an organic forward status transition."""
    logger = std_logging.getLogger(f"{LOGGER_NAME}.transitions")
    logger.info(
        f"Task {record.task_id}: {record.previous.label} -> {record.current.label}",
        extra={"extra_fields": {"project_id": project_id, **record.to_dict()}},
    )
    if hooks:
        hooks.log_workflow_event("task_transition", project_id=project_id, **record.to_dict())


def log_reset(
    record: TransitionRecord,
    hooks: Optional[ObservabilityHooks] = None,
    project_id: Optional[str] = None,
) -> None:
    """Log an administrative reset, kept apart from forward transitions."""
    logger = std_logging.getLogger(f"{LOGGER_NAME}.resets")
    logger.warning(
        f"Task {record.task_id} reset from {record.previous.label} to {record.current.label}",
        extra={"extra_fields": {"project_id": project_id, **record.to_dict()}},
    )
    if hooks:
        hooks.log_workflow_event("task_reset", project_id=project_id, **record.to_dict())


def log_conflict(project_id: str, kind: str, attempt: int, max_attempts: int) -> None:
    """Log an optimistic-write race that will be retried or surfaced."""
    logger = std_logging.getLogger(f"{LOGGER_NAME}.store")
    logger.info(
        f"Write conflict on {kind} for '{project_id}' (attempt {attempt}/{max_attempts})",
        extra={"extra_fields": {
            "project_id": project_id,
            "kind": kind,
            "attempt": attempt,
            "max_attempts": max_attempts,
        }},
    )


def log_error_with_context(error: Exception, context: Dict[str, Any], **extra_fields):
    """Log an error with rich context information."""
    logger = std_logging.getLogger(f"{LOGGER_NAME}.errors")

    error_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "error_type": type(error).__name__,
        "error_message": str(error),
        "context": context,
        **extra_fields,
    }

    logger.error(
        f"Error in {context.get('operation', 'unknown operation')}: {error}",
        extra={"extra_fields": error_data},
    )


_default_logging_initialized = False


def ensure_logging(log_level: Union[str, int] = std_logging.INFO, log_file: Optional[Path] = None) -> None:
    """Initialize default logging if not already done."""
    global _default_logging_initialized
    if not _default_logging_initialized:
        setup_logging(log_level, log_file)
        _default_logging_initialized = True
