"""
Utility modules for the Makos credits backend.
"""

from .errors import (
    handle_exception,
    to_http_exception,
    raise_not_found,
    raise_forbidden,
    raise_validation_error,
    AppError,
    ErrorCodes,
    InsufficientCredits,
    UserNotResolved,
    StoreWriteFailed,
    UnauthorizedRefresh,
    PaymentProviderError,
)

__all__ = [
    # Error handling utilities
    "handle_exception",
    "to_http_exception",
    "raise_not_found",
    "raise_forbidden",
    "raise_validation_error",
    "AppError",
    "ErrorCodes",
    # Credit domain errors
    "InsufficientCredits",
    "UserNotResolved",
    "StoreWriteFailed",
    "UnauthorizedRefresh",
    "PaymentProviderError",
]
