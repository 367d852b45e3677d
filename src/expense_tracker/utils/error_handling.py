"""
Error handling and resilience utilities.

This module holds the error taxonomy shared by every manager, the retry helper used for
optimistic writes, and the translation from domain errors to HTTP responses.

Error taxonomy:
- ValidationError: malformed or out-of-range input (400), carries per-field messages
- NotFoundError: missing user, expense, family or notification (404)
- AccessDeniedError: authorization failure (403)
- ConflictError: capacity, duplicate and state conflicts (409)
- PreconditionFailedError: missing family membership for family scoped operations (412)
- RetryableError: transient exhaustion the client may retry (503)
- CreationError / TransactionError: unexpected persistence failures (500)
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
import hashlib
import re
from typing import Any, Callable, Dict, List, Optional, Type

from fastapi import HTTPException, status

from expense_tracker.managers.logging_manager import get_logger

logger = get_logger(prefix="[Error Handling]")

DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_RETRY_DELAY = 0.05
DEFAULT_RETRY_BACKOFF = 2.0

SENSITIVE_KEYS = ["password", "token", "secret", "key", "auth", "credential", "private", "signature"]

SENSITIVE_PATTERNS = [
    r'(password["\']?\s*[:=]\s*["\']?)([^"\'}\s,]+)',
    r'(token["\']?\s*[:=]\s*["\']?)([^"\'}\s,]+)',
    r'(secret["\']?\s*[:=]\s*["\']?)([^"\'}\s,]+)',
    r'(key["\']?\s*[:=]\s*["\']?)([^"\'}\s,]+)',
    r'(bearer\s+)([A-Za-z0-9\-_\.]+)',
]


class RetryStrategy(Enum):
    """Retry strategies for failed operations."""

    FIXED_DELAY = "fixed_delay"
    EXPONENTIAL_BACKOFF = "exponential_backoff"
    LINEAR_BACKOFF = "linear_backoff"


@dataclass
class ErrorContext:
    """Context information for error handling and recovery."""

    operation: str
    user_id: Optional[str] = None
    family_id: Optional[str] = None
    request_id: Optional[str] = None
    ip_address: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "operation": self.operation,
            "user_id": self.user_id,
            "family_id": self.family_id,
            "request_id": self.request_id,
            "ip_address": self.ip_address,
            "timestamp": self.timestamp.isoformat(),
            "metadata": self.metadata,
        }


@dataclass
class RetryConfig:
    """Configuration for retry mechanisms."""

    max_attempts: int = DEFAULT_RETRY_ATTEMPTS
    initial_delay: float = DEFAULT_RETRY_DELAY
    backoff_factor: float = DEFAULT_RETRY_BACKOFF
    max_delay: float = 2.0
    strategy: RetryStrategy = RetryStrategy.EXPONENTIAL_BACKOFF
    retryable_exceptions: List[Type[Exception]] = field(default_factory=list)


# --- Domain error taxonomy ---


class ExpenseTrackerError(Exception):
    """Base exception for all domain errors raised by managers."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_code: str = "INTERNAL_ERROR"

    def __init__(self, message: str, error_code: Optional[str] = None, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.default_code
        self.context = context or {}
        self.timestamp = datetime.now(timezone.utc)

    def to_detail(self) -> Dict[str, Any]:
        """Response body for this error."""
        return {"error": self.error_code, "message": self.message}


class ValidationError(ExpenseTrackerError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_code = "VALIDATION_ERROR"

    def __init__(self, message: str, errors: Optional[List[str]] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.errors = errors if errors is not None else [message]

    def to_detail(self) -> Dict[str, Any]:
        detail = super().to_detail()
        detail["errors"] = self.errors
        return detail


class NotFoundError(ExpenseTrackerError):
    status_code = status.HTTP_404_NOT_FOUND
    default_code = "NOT_FOUND"


class AccessDeniedError(ExpenseTrackerError):
    status_code = status.HTTP_403_FORBIDDEN
    default_code = "ACCESS_DENIED"


class ConflictError(ExpenseTrackerError):
    status_code = status.HTTP_409_CONFLICT
    default_code = "CONFLICT"


class PreconditionFailedError(ExpenseTrackerError):
    status_code = status.HTTP_412_PRECONDITION_FAILED
    default_code = "PRECONDITION_FAILED"


class RetryableError(ExpenseTrackerError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_code = "RETRYABLE_ERROR"

    def to_detail(self) -> Dict[str, Any]:
        detail = super().to_detail()
        detail["retryable"] = True
        return detail


class CreationError(ExpenseTrackerError):
    default_code = "CREATION_ERROR"


class TransactionError(ExpenseTrackerError):
    default_code = "TRANSACTION_ERROR"


class RetryExhaustedError(ExpenseTrackerError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_code = "RETRY_EXHAUSTED"


def to_http_exception(error: ExpenseTrackerError) -> HTTPException:
    """Translate a domain error into an HTTPException with a structured detail."""
    if error.status_code >= 500 and not isinstance(error, (RetryableError, RetryExhaustedError)):
        # Internal detail stays in the logs
        return HTTPException(
            status_code=error.status_code,
            detail={"error": error.error_code, "message": "An internal error occurred. Please try again later."},
        )
    return HTTPException(status_code=error.status_code, detail=error.to_detail())


async def retry_with_backoff(func: Callable, config: RetryConfig, context: ErrorContext, *args, **kwargs) -> Any:
    """
    Execute an async function with retry logic and configurable backoff.

    Only exceptions listed in ``config.retryable_exceptions`` are retried; anything
    else propagates on the first occurrence.

    Raises:
        RetryExhaustedError: When all retry attempts are exhausted
    """
    last_exception: Optional[Exception] = None
    delay = config.initial_delay

    for attempt in range(config.max_attempts):
        try:
            result = await func(*args, **kwargs)
            if attempt > 0:
                logger.info("Operation succeeded after %d attempts: %s", attempt + 1, context.operation)
            return result
        except Exception as e:
            if not any(isinstance(e, exc_type) for exc_type in config.retryable_exceptions):
                raise
            last_exception = e
            if attempt < config.max_attempts - 1:
                logger.warning(
                    "Attempt %d/%d failed for %s, retrying in %.2fs: %s",
                    attempt + 1,
                    config.max_attempts,
                    context.operation,
                    delay,
                    str(e),
                )
                await asyncio.sleep(delay)
                delay = _calculate_next_delay(delay, config)
            else:
                logger.error("All %d attempts failed for %s: %s", config.max_attempts, context.operation, str(e))

    raise RetryExhaustedError(
        f"Operation {context.operation} failed after {config.max_attempts} attempts. Please try again.",
        context={"last_error": str(last_exception)},
    ) from last_exception


def _calculate_next_delay(current_delay: float, config: RetryConfig) -> float:
    """Calculate next delay based on retry strategy."""
    if config.strategy == RetryStrategy.FIXED_DELAY:
        return config.initial_delay
    if config.strategy == RetryStrategy.LINEAR_BACKOFF:
        return min(current_delay + config.initial_delay, config.max_delay)
    return min(current_delay * config.backoff_factor, config.max_delay)


def sanitize_sensitive_data(data: Any) -> Any:
    """
    Sanitize sensitive data from logs and error messages.

    Args:
        data: Data to sanitize (string, dict, list, etc.)

    Returns:
        Sanitized data with sensitive information redacted
    """
    if isinstance(data, str):
        sanitized = data
        for pattern in SENSITIVE_PATTERNS:
            sanitized = re.sub(pattern, r"\1<REDACTED>", sanitized, flags=re.IGNORECASE)
        return sanitized
    if isinstance(data, dict):
        return {
            key: "<REDACTED>"
            if any(sensitive in str(key).lower() for sensitive in SENSITIVE_KEYS)
            else sanitize_sensitive_data(value)
            for key, value in data.items()
        }
    if isinstance(data, list):
        return [sanitize_sensitive_data(item) for item in data]
    if isinstance(data, tuple):
        return tuple(sanitize_sensitive_data(item) for item in data)
    return data


def create_user_friendly_error(
    exception: Exception, context: ErrorContext, include_technical_details: bool = False
) -> Dict[str, Any]:
    """
    Create user-friendly error messages from technical exceptions.

    Args:
        exception: Original exception
        context: Error context
        include_technical_details: Whether to include technical details

    Returns:
        User-friendly error response
    """
    error_type = type(exception).__name__

    user_messages = {
        "ValidationError": "The information you provided is not valid. Please check your input and try again.",
        "AccessDeniedError": "You do not have permission to perform this action.",
        "NotFoundError": "The requested resource could not be found.",
        "RetryExhaustedError": "The operation could not be completed after multiple attempts. Please try again later.",
        "TimeoutError": "The operation took too long to complete. Please try again.",
        "ConnectionError": "Unable to connect to the service. Please check your connection and try again.",
    }
    user_message = user_messages.get(error_type, "An unexpected error occurred. Please try again later.")

    error_response: Dict[str, Any] = {
        "error": {
            "code": error_type.upper(),
            "message": user_message,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "request_id": context.request_id,
            "support_reference": _generate_support_reference(exception, context),
        }
    }

    if include_technical_details:
        error_response["error"]["technical_details"] = {
            "exception_type": error_type,
            "exception_message": sanitize_sensitive_data(str(exception)),
            "operation": context.operation,
            "context": sanitize_sensitive_data(context.to_dict()),
        }

    return error_response


def _generate_support_reference(exception: Exception, context: ErrorContext) -> str:
    """Generate a unique support reference for error tracking."""
    error_data = f"{type(exception).__name__}:{context.operation}:{context.timestamp.isoformat()}"
    return hashlib.md5(error_data.encode()).hexdigest()[:12].upper()
