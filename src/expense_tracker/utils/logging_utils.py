"""Logging utilities for request tracing, performance timing and security events.

This module provides the request logging middleware, a performance decorator and
helpers for structured lifecycle, security and error logs.
"""

import asyncio
from contextvars import ContextVar
from datetime import datetime, timezone
import functools
import os
import time
import traceback
from typing import Any, Callable, Dict, Optional
import uuid

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from expense_tracker.config import settings
from expense_tracker.managers.logging_manager import get_logger
from expense_tracker.utils.error_handling import sanitize_sensitive_data

# Context variables for request tracing
request_id_context: ContextVar[str] = ContextVar("request_id", default="")
user_id_context: ContextVar[str] = ContextVar("user_id", default="")
ip_address_context: ContextVar[str] = ContextVar("ip_address", default="")

SLOW_REQUEST_SECONDS = 1.0
SLOW_OPERATION_SECONDS = 2.0


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Request/response logging middleware.

    Logs every incoming request and outgoing response with timing, status code
    and client information, and flags slow requests.
    """

    def __init__(self, app: ASGIApp):
        super().__init__(app)
        self.logger = get_logger(name="Expense_Tracker_Requests", prefix="[REQUEST]")

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = str(uuid.uuid4())[:8]
        start_time = time.time()

        client_ip = self._get_client_ip(request)
        request_id_context.set(request_id)
        ip_address_context.set(client_ip)

        base_log = {
            "request_id": request_id,
            "method": request.method,
            "path": str(request.url.path),
            "client_ip": client_ip,
            "user_agent": request.headers.get("user-agent", "unknown"),
            "process": os.getpid(),
            "app": settings.APP_NAME,
            "env": settings.ENV,
        }
        self.logger.info(
            {
                **base_log,
                "event": "request_received",
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "query_params": str(request.url.query) or None,
            }
        )

        try:
            response = await call_next(request)
        except Exception as e:
            self.logger.error(
                {
                    **base_log,
                    "event": "request_error",
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                    "duration": time.time() - start_time,
                    "exception": str(e),
                    "stack_trace": traceback.format_exc(),
                }
            )
            raise

        duration = time.time() - start_time
        response_log = {
            **base_log,
            "event": "response_sent",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "status_code": response.status_code,
            "duration": duration,
        }
        self.logger.info(response_log)
        if duration > SLOW_REQUEST_SECONDS:
            self.logger.warning({**response_log, "event": "slow_request"})
        response.headers["X-Request-ID"] = request_id
        return response

    def _get_client_ip(self, request: Request) -> str:
        """Extract client IP address from request headers."""
        forwarded_for = request.headers.get("x-forwarded-for")
        if forwarded_for:
            return forwarded_for.split(",")[0].strip()
        real_ip = request.headers.get("x-real-ip")
        if real_ip:
            return real_ip
        return getattr(request.client, "host", "unknown")


def log_performance(operation_name: str, log_args: bool = False):
    """
    Decorator for logging coroutine performance with timing.

    Args:
        operation_name: Name of the operation for logging
        log_args: Whether to log function arguments (sanitized)
    """

    def decorator(func: Callable) -> Callable:
        logger = get_logger(name="Expense_Tracker_Performance", prefix="[PERFORMANCE]")

        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            start_time = time.time()
            operation_id = str(uuid.uuid4())[:8]

            if log_args and kwargs:
                logger.debug("[%s] Starting %s with args: %s", operation_id, operation_name, _sanitize_args(kwargs))
            else:
                logger.debug("[%s] Starting %s", operation_id, operation_name)

            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                logger.error(
                    "[%s] Failed %s after %.3fs: %s", operation_id, operation_name, time.time() - start_time, e
                )
                raise

            duration = time.time() - start_time
            logger.info("[%s] Completed %s in %.3fs", operation_id, operation_name, duration)
            if duration > SLOW_OPERATION_SECONDS:
                logger.warning("[%s] SLOW OPERATION: %s took %.3fs", operation_id, operation_name, duration)
            return result

        if not asyncio.iscoroutinefunction(func):
            raise TypeError(f"log_performance expects a coroutine function, got {func!r}")
        return async_wrapper

    return decorator


def log_security_event(
    event_type: str,
    user_id: Optional[str] = None,
    ip_address: Optional[str] = None,
    success: bool = True,
    details: Optional[Dict[str, Any]] = None,
):
    """
    Log security-related events (login, logout, token refresh, access denial).

    Args:
        event_type: Type of security event
        user_id: User identifier if available
        ip_address: Client IP address if available
        success: Whether the security event was successful
        details: Additional event details
    """
    logger = get_logger(name="Expense_Tracker_Security", prefix="[SECURITY]")

    event_data = {
        "event_type": event_type,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "success": success,
        "user_id": user_id or "anonymous",
        "ip_address": ip_address or ip_address_context.get() or "unknown",
        "request_id": request_id_context.get() or None,
    }
    if details:
        event_data["details"] = sanitize_sensitive_data(details)

    status = "SUCCESS" if success else "FAILURE"
    logger.info("SECURITY EVENT [%s]: %s - %s", status, event_type, event_data)


def log_application_lifecycle(event: str, details: Optional[Dict[str, Any]] = None):
    """Log application lifecycle events (startup, shutdown, etc.)."""
    logger = get_logger(name="Expense_Tracker_Lifecycle", prefix="[LIFECYCLE]")
    event_data = {"event": event, "timestamp": datetime.now(timezone.utc).isoformat()}
    if details:
        event_data.update(details)
    logger.info("APPLICATION LIFECYCLE: %s - %s", event, event_data)


def log_error_with_context(error: Exception, context: Optional[Dict[str, Any]] = None, operation: Optional[str] = None):
    """
    Log errors with full context and stack trace.

    Args:
        error: The exception that occurred
        context: Additional context information
        operation: Name of the operation that failed
    """
    logger = get_logger(name="Expense_Tracker_Errors", prefix="[ERROR]")

    error_data: Dict[str, Any] = {
        "error_type": type(error).__name__,
        "error_message": str(error),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "request_id": request_id_context.get() or None,
        "stack_trace": "".join(traceback.format_exception(type(error), error, error.__traceback__)),
    }
    if operation:
        error_data["operation"] = operation
    if context:
        error_data["context"] = sanitize_sensitive_data(context)

    logger.error("ERROR OCCURRED: %s", error_data)


def _sanitize_args(kwargs: Dict[str, Any]) -> Dict[str, str]:
    """Redact sensitive keyword arguments and truncate long values."""
    sanitized = sanitize_sensitive_data(kwargs)
    return {key: (str(value)[:100] + ("..." if len(str(value)) > 100 else "")) for key, value in sanitized.items()}
