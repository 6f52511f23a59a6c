"""
Logging helper utilities for consistent, structured logging across the service.

Every helper appends ``| id=<request id> | user_id=<user> | key=value`` to the
message so log lines from one request can be grepped together.
"""

import logging
from typing import Optional

from core.logging import request_id_var


def get_request_id() -> str:
    """Get the current request ID from context."""
    return request_id_var.get("")


def format_context(message: str, user_id: Optional[int] = None, **kwargs) -> str:
    context_parts = []
    request_id = get_request_id()
    if request_id:
        context_parts.append(f"id={request_id}")
    if user_id:
        context_parts.append(f"user_id={user_id}")

    for key, value in kwargs.items():
        if value is not None:
            context_parts.append(f"{key}={value}")

    if not context_parts:
        return message
    return f"{message} | " + " | ".join(context_parts)


def log_with_context(
    logger: logging.Logger,
    level: int,
    message: str,
    user_id: Optional[int] = None,
    exc_info: bool = False,
    **kwargs,
):
    """
    Log a message with structured context.

    Args:
        logger: The logger instance
        level: Log level (logging.INFO, logging.WARNING, etc.)
        message: The log message
        user_id: Optional acting user for context
        exc_info: Attach the current exception traceback
        **kwargs: Additional context key-value pairs (conversation_id, ...)
    """
    logger.log(level, format_context(message, user_id, **kwargs), exc_info=exc_info)


def log_info(
    logger: logging.Logger, message: str, user_id: Optional[int] = None, **kwargs
):
    """Log info message with context."""
    log_with_context(logger, logging.INFO, message, user_id, **kwargs)


def log_warning(
    logger: logging.Logger, message: str, user_id: Optional[int] = None, **kwargs
):
    """Log warning message with context."""
    log_with_context(logger, logging.WARNING, message, user_id, **kwargs)


def log_error(
    logger: logging.Logger,
    message: str,
    user_id: Optional[int] = None,
    exc_info: bool = False,
    **kwargs,
):
    """Log error message with context."""
    log_with_context(logger, logging.ERROR, message, user_id, exc_info=exc_info, **kwargs)
