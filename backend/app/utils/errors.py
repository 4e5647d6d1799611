"""
Centralized error handling utilities for the Makos credits API.

This module provides the credit-domain error types and consistent
error responses and logging across all routers.
"""

import logging
from typing import Optional, Dict, Any
from fastapi import HTTPException, status

logger = logging.getLogger(__name__)


class AppError(Exception):
    """Base application error with structured data."""

    def __init__(
        self,
        message: str,
        code: str = "INTERNAL_ERROR",
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


# Common error codes
class ErrorCodes:
    """Standard error codes for API responses."""
    INTERNAL_ERROR = "INTERNAL_ERROR"
    NOT_FOUND = "NOT_FOUND"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    DATABASE_ERROR = "DATABASE_ERROR"
    INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"
    USER_NOT_RESOLVED = "USER_NOT_RESOLVED"
    PAYMENT_PROVIDER_ERROR = "PAYMENT_PROVIDER_ERROR"


# =============================================================================
# CREDIT DOMAIN ERRORS
# =============================================================================

class InsufficientCredits(AppError):
    """Spend blocked: the balance does not cover the cost."""

    def __init__(self, required: int, available: int):
        self.required = required
        self.available = available
        shortfall = required - available
        super().__init__(
            message=(
                f"Not enough credits. You need {required} credit{'s' if required != 1 else ''} "
                f"but have {available}. Purchase {shortfall} more or upgrade your plan."
            ),
            code=ErrorCodes.INSUFFICIENT_CREDITS,
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            details={"required": required, "available": available, "shortfall": shortfall},
        )


class UserNotResolved(AppError):
    """A payment event could not be mapped to an account."""

    def __init__(self, event_id: Optional[str] = None, email: Optional[str] = None):
        super().__init__(
            message="Could not resolve a user for this event",
            code=ErrorCodes.USER_NOT_RESOLVED,
            status_code=status.HTTP_404_NOT_FOUND,
            details={"event_id": event_id, "email": email},
        )


class StoreWriteFailed(AppError):
    """The balance store rejected or lost a write."""

    def __init__(self, operation: str, user_id: Optional[str] = None, cause: Optional[Exception] = None):
        self.operation = operation
        self.user_id = user_id
        super().__init__(
            message=f"Failed to persist {operation}",
            code=ErrorCodes.DATABASE_ERROR,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            details={"operation": operation, "user_id": user_id, "cause": str(cause) if cause else None},
        )


class UnauthorizedRefresh(AppError):
    """Scheduler call without a valid bearer token."""

    def __init__(self):
        super().__init__(
            message="Unauthorized",
            code=ErrorCodes.UNAUTHORIZED,
            status_code=status.HTTP_401_UNAUTHORIZED,
        )


class PaymentProviderError(AppError):
    """Polar API call failed."""

    def __init__(self, message: str, provider_status: Optional[int] = None):
        super().__init__(
            message=message,
            code=ErrorCodes.PAYMENT_PROVIDER_ERROR,
            status_code=status.HTTP_502_BAD_GATEWAY,
            details={"provider_status": provider_status},
        )


# Postgres SQLSTATE for unique_violation
UNIQUE_VIOLATION = "23505"


def is_unique_violation(error: Exception) -> bool:
    """Whether a PostgREST error is a duplicate-key insert."""
    return getattr(error, "code", None) == UNIQUE_VIOLATION or "duplicate key" in str(error).lower()


def to_http_exception(error: AppError) -> HTTPException:
    """Convert an AppError into the standard error body."""
    return HTTPException(
        status_code=error.status_code,
        detail={
            "error": error.code,
            "message": error.message,
            "details": error.details
        }
    )


def handle_exception(
    error: Exception,
    operation: str,
    *,
    user_id: Optional[str] = None,
    event_id: Optional[str] = None,
    log_level: str = "error"
) -> HTTPException:
    """
    Handle exceptions and return appropriate HTTPException.

    This function:
    1. Logs the error with context for debugging
    2. Returns a user-friendly error message (not exposing internals)
    3. Preserves original HTTPExceptions

    Args:
        error: The caught exception
        operation: Description of what operation failed (e.g., "spend_credits")
        user_id: Optional user ID for context
        event_id: Optional payment event ID for context
        log_level: Logging level ("error", "warning", "info")

    Returns:
        HTTPException with appropriate status code and message

    Example:
        try:
            # ... operation
        except HTTPException:
            raise
        except Exception as e:
            raise handle_exception(e, "cancel_subscription", user_id=user_id)
    """
    # Build context for logging
    context = {
        "operation": operation,
        "error_type": type(error).__name__,
        "error_message": str(error),
    }
    if user_id:
        context["user_id"] = user_id
    if event_id:
        context["event_id"] = event_id

    # Log the full error with context
    log_message = f"Error in {operation}: {error}"
    if log_level == "warning":
        logger.warning(log_message, extra=context, exc_info=True)
    elif log_level == "info":
        logger.info(log_message, extra=context)
    else:
        logger.error(log_message, extra=context, exc_info=True)

    # If it's already an HTTPException, preserve it
    if isinstance(error, HTTPException):
        return error

    # If it's an AppError, use its details
    if isinstance(error, AppError):
        return to_http_exception(error)

    # Map common exception types to appropriate responses
    error_mapping = _get_error_mapping(error)

    return HTTPException(
        status_code=error_mapping["status_code"],
        detail={
            "error": error_mapping["code"],
            "message": error_mapping["message"]
        }
    )


def _get_error_mapping(error: Exception) -> Dict[str, Any]:
    """Map exception types to user-friendly error responses."""
    error_type = type(error).__name__
    error_str = str(error).lower()

    # Database/connection errors
    if "connection" in error_str or "timeout" in error_str:
        return {
            "status_code": status.HTTP_503_SERVICE_UNAVAILABLE,
            "code": ErrorCodes.SERVICE_UNAVAILABLE,
            "message": "Service temporarily unavailable. Please try again."
        }

    # Validation errors
    if error_type in ("ValidationError", "ValueError", "TypeError"):
        return {
            "status_code": status.HTTP_400_BAD_REQUEST,
            "code": ErrorCodes.VALIDATION_ERROR,
            "message": "Invalid request data. Please check your input."
        }

    # Default internal error
    return {
        "status_code": status.HTTP_500_INTERNAL_SERVER_ERROR,
        "code": ErrorCodes.INTERNAL_ERROR,
        "message": "An unexpected error occurred. Please try again."
    }


def raise_not_found(resource: str, resource_id: Optional[str] = None) -> HTTPException:
    """
    Raise a standardized 404 Not Found error.

    Args:
        resource: Name of the resource (e.g., "Credit account")
        resource_id: Optional ID for logging

    Example:
        if not account:
            raise_not_found("Credit account", user_id)
    """
    message = f"{resource} not found"
    if resource_id:
        logger.warning(f"{resource} not found: {resource_id}")

    raise HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={
            "error": ErrorCodes.NOT_FOUND,
            "message": message
        }
    )


def raise_forbidden(message: str = "You don't have permission to perform this action") -> HTTPException:
    """Raise a standardized 403 Forbidden error."""
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={
            "error": ErrorCodes.FORBIDDEN,
            "message": message
        }
    )


def raise_validation_error(message: str, field: Optional[str] = None) -> HTTPException:
    """Raise a standardized 400 Validation error."""
    detail = {
        "error": ErrorCodes.VALIDATION_ERROR,
        "message": message
    }
    if field:
        detail["field"] = field

    raise HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail=detail
    )
