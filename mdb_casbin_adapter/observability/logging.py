"""
Enhanced logging utilities for MDB_CASBIN_ADAPTER.

Provides structured logging with correlation IDs and per-adapter context
(database and collection), so log lines from several adapters in one process
can be told apart.
"""

import contextvars
import logging
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Any

# Context variable for correlation ID
_correlation_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "correlation_id", default=None
)


def get_correlation_id() -> str | None:
    """Get the current correlation ID from context."""
    return _correlation_id.get()


def set_correlation_id(correlation_id: str | None = None) -> str:
    """
    Set a correlation ID in the current context.

    Args:
        correlation_id: Optional correlation ID (generates new one if None)

    Returns:
        The correlation ID that was set
    """
    if correlation_id is None:
        correlation_id = str(uuid.uuid4())
    _correlation_id.set(correlation_id)
    return correlation_id


def clear_correlation_id() -> None:
    """Clear the correlation ID from context."""
    _correlation_id.set(None)


@contextmanager
def correlation_scope(correlation_id: str | None = None) -> Iterator[str]:
    """
    Bind a correlation ID for the duration of a block.

    Useful to tie every adapter call made while serving one enforcer request
    together:

        with correlation_scope(request_id):
            enforcer.add_policy("alice", "data1", "read")
    """
    token = _correlation_id.set(correlation_id or str(uuid.uuid4()))
    try:
        yield _correlation_id.get()
    finally:
        _correlation_id.reset(token)


def get_logging_context() -> dict[str, Any]:
    """
    Get current logging context.

    Returns:
        Dictionary with a timestamp and the correlation ID, when one is set
    """
    context: dict[str, Any] = {
        "timestamp": datetime.now().isoformat(),
    }

    correlation_id = get_correlation_id()
    if correlation_id:
        context["correlation_id"] = correlation_id

    return context


class ContextualLoggerAdapter(logging.LoggerAdapter):
    """
    Logger adapter that adds the correlation ID and its bound context
    (e.g. db_name, collection) to every record.
    """

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        """Add context to log records."""
        context = get_logging_context()
        if self.extra:
            context.update(self.extra)

        extra = kwargs.get("extra", {})
        if extra:
            context.update(extra)

        kwargs["extra"] = context
        return msg, kwargs

    def bind(self, **context: Any) -> "ContextualLoggerAdapter":
        """Return a logger with additional bound context."""
        merged = dict(self.extra or {})
        merged.update(context)
        return ContextualLoggerAdapter(self.logger, merged)


def get_logger(name: str, **context: Any) -> ContextualLoggerAdapter:
    """
    Get a contextual logger.

    Args:
        name: Logger name (typically __name__)
        **context: Context attached to every record from this logger

    Returns:
        ContextualLoggerAdapter instance
    """
    base_logger = logging.getLogger(name)
    return ContextualLoggerAdapter(base_logger, context)


def log_operation(
    logger: logging.Logger | logging.LoggerAdapter,
    operation: str,
    level: int = logging.DEBUG,
    success: bool = True,
    duration_ms: float | None = None,
    **context: Any,
) -> None:
    """
    Log an adapter operation with structured context.

    Args:
        logger: Logger instance
        operation: Operation name (e.g. "add_policy")
        level: Log level
        success: Whether operation succeeded
        duration_ms: Operation duration in milliseconds
        **context: Additional context (ptype, rule counts, ...)
    """
    log_context: dict[str, Any] = {
        "operation": operation,
        "success": success,
    }

    if duration_ms is not None:
        log_context["duration_ms"] = round(duration_ms, 2)

    if context:
        log_context.update(context)

    message = f"Policy operation: {operation}"
    if not success:
        message = f"Policy operation failed: {operation}"
    if duration_ms is not None:
        message += f" (duration: {duration_ms:.2f}ms)"

    logger.log(level, message, extra=log_context)
