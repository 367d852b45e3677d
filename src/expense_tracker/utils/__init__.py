"""Utility modules for the Expense Tracker service."""

from .logging_utils import (
    RequestLoggingMiddleware,
    log_application_lifecycle,
    log_error_with_context,
    log_performance,
    log_security_event,
)

__all__ = [
    "log_performance",
    "log_security_event",
    "RequestLoggingMiddleware",
    "log_application_lifecycle",
    "log_error_with_context",
]
