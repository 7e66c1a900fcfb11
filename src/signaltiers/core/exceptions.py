"""Custom exceptions for SignalTiers.

This module provides the exception hierarchy surfaced by interactive billing
operations. Every exception carries:
- A machine-readable error code
- The HTTP status a transport layer should map it to
- A user-facing message
- Structured details for logging
"""

from __future__ import annotations

from enum import Enum
from http import HTTPStatus
from typing import Any


class ErrorCode(str, Enum):
    """Machine-readable error codes."""

    # General errors (1xxx)
    INTERNAL_ERROR = "ST1000"
    UNKNOWN_ERROR = "ST1001"
    CONFIGURATION_ERROR = "ST1002"

    # Authorization errors (3xxx)
    PERMISSION_DENIED = "ST3000"
    NOT_OWNER = "ST3001"

    # Validation errors (4xxx)
    VALIDATION_ERROR = "ST4000"
    TIER_INACTIVE = "ST4001"
    INVALID_TIER_CHANGE = "ST4002"
    ALREADY_CANCELLED = "ST4003"

    # Resource errors (5xxx)
    RESOURCE_NOT_FOUND = "ST5000"
    TIER_NOT_FOUND = "ST5001"
    SUBSCRIPTION_NOT_FOUND = "ST5002"

    # Conflict errors (6xxx)
    CONFLICT = "ST6000"
    DUPLICATE_SUBSCRIPTION = "ST6001"
    CONCURRENT_MODIFICATION = "ST6002"

    # Payment errors (7xxx)
    PAYMENT_FAILED = "ST7000"


class SignalTiersException(Exception):
    """Base exception for all SignalTiers errors.

    Attributes:
        message: Human-readable error message.
        error_code: Machine-readable error code.
        http_status: HTTP status code for API responses.
        details: Additional context for debugging.
        user_message: User-friendly message (may differ from message).
    """

    message: str = "An unexpected error occurred"
    error_code: ErrorCode = ErrorCode.UNKNOWN_ERROR
    http_status: HTTPStatus = HTTPStatus.INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str | None = None,
        *,
        error_code: ErrorCode | None = None,
        http_status: HTTPStatus | None = None,
        details: dict[str, Any] | None = None,
        user_message: str | None = None,
    ) -> None:
        """Initialize exception.

        Args:
            message: Human-readable error message.
            error_code: Machine-readable error code.
            http_status: HTTP status code for API responses.
            details: Additional context for debugging.
            user_message: User-friendly message for end users.
        """
        self.message = message or self.__class__.message
        self.error_code = error_code or self.__class__.error_code
        self.http_status = http_status or self.__class__.http_status
        self.details = details or {}
        self.user_message = user_message or self.message
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.user_message,
                "details": self.details if self.details else None,
            }
        }

    def __str__(self) -> str:
        """String representation including error code."""
        return f"[{self.error_code.value}] {self.message}"

    def __repr__(self) -> str:
        """Detailed representation for debugging."""
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"error_code={self.error_code.value}, "
            f"http_status={self.http_status.value}, "
            f"details={self.details!r}"
            f")"
        )


# ============================================================================
# Authorization Exceptions
# ============================================================================


class AuthorizationError(SignalTiersException):
    """Authorization-related errors."""

    message = "Permission denied"
    error_code = ErrorCode.PERMISSION_DENIED
    http_status = HTTPStatus.FORBIDDEN


class NotOwnerError(AuthorizationError):
    """Caller does not own the tier or subscription it is acting on."""

    message = "You do not own this resource"
    error_code = ErrorCode.NOT_OWNER

    def __init__(
        self,
        message: str | None = None,
        *,
        resource_type: str | None = None,
        resource_id: str | None = None,
        **kwargs: Any,
    ) -> None:
        details = kwargs.pop("details", {}) or {}
        if resource_type:
            details["resource_type"] = resource_type
        if resource_id:
            details["resource_id"] = resource_id
        if not message and resource_type:
            message = f"Not your {resource_type}"
        super().__init__(message, details=details, **kwargs)


# ============================================================================
# Validation Exceptions
# ============================================================================


class ValidationError(SignalTiersException):
    """Validation-related errors."""

    message = "Validation error"
    error_code = ErrorCode.VALIDATION_ERROR
    http_status = HTTPStatus.BAD_REQUEST

    def __init__(
        self,
        message: str | None = None,
        *,
        field: str | None = None,
        value: Any = None,
        constraint: str | None = None,
        **kwargs: Any,
    ) -> None:
        """Initialize validation error.

        Args:
            message: Error message.
            field: Name of the field that failed validation.
            value: The invalid value.
            constraint: Description of the constraint that was violated.
            **kwargs: Additional arguments passed to parent.
        """
        details = kwargs.pop("details", {}) or {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)
        if constraint:
            details["constraint"] = constraint

        super().__init__(message, details=details, **kwargs)


class TierInactiveError(ValidationError):
    """Tier exists but no longer accepts subscribers."""

    message = "This subscription tier is not available"
    error_code = ErrorCode.TIER_INACTIVE


class InvalidTierChangeError(ValidationError):
    """Requested tier change is not allowed."""

    message = "Invalid tier change"
    error_code = ErrorCode.INVALID_TIER_CHANGE


class AlreadyCancelledError(ValidationError):
    """Subscription has already been cancelled or has ended."""

    message = "Subscription is already cancelled"
    error_code = ErrorCode.ALREADY_CANCELLED


# ============================================================================
# Resource Exceptions
# ============================================================================


class NotFoundError(SignalTiersException):
    """Resource not found errors."""

    message = "Resource not found"
    error_code = ErrorCode.RESOURCE_NOT_FOUND
    http_status = HTTPStatus.NOT_FOUND

    def __init__(
        self,
        message: str | None = None,
        *,
        resource_type: str | None = None,
        resource_id: str | None = None,
        **kwargs: Any,
    ) -> None:
        """Initialize not found error.

        Args:
            message: Error message.
            resource_type: Type of resource not found.
            resource_id: ID of the resource.
            **kwargs: Additional arguments passed to parent.
        """
        details = kwargs.pop("details", {}) or {}
        if resource_type:
            details["resource_type"] = resource_type
        if resource_id:
            details["resource_id"] = resource_id

        # Subclasses with their own message keep it
        if not message and resource_type and self.message == NotFoundError.message:
            message = f"{resource_type} not found"

        super().__init__(message, details=details, **kwargs)


class TierNotFoundError(NotFoundError):
    """Subscription tier not found."""

    message = "Subscription tier not found"
    error_code = ErrorCode.TIER_NOT_FOUND


class SubscriptionNotFoundError(NotFoundError):
    """Subscription not found."""

    message = "Subscription not found"
    error_code = ErrorCode.SUBSCRIPTION_NOT_FOUND


# ============================================================================
# Conflict Exceptions
# ============================================================================


class ConflictError(SignalTiersException):
    """State conflicts with the requested operation."""

    message = "Conflict"
    error_code = ErrorCode.CONFLICT
    http_status = HTTPStatus.CONFLICT


class DuplicateSubscriptionError(ConflictError):
    """User already holds an active subscription to the tier."""

    message = "Already subscribed to this tier"
    error_code = ErrorCode.DUPLICATE_SUBSCRIPTION


class ConcurrentModificationError(ConflictError):
    """Subscription row was changed by another operation mid-flight."""

    message = "Subscription was modified concurrently, please retry"
    error_code = ErrorCode.CONCURRENT_MODIFICATION


# ============================================================================
# Payment Exceptions
# ============================================================================


class PaymentFailedError(SignalTiersException):
    """A synchronous charge was declined, timed out or failed to settle."""

    message = "Payment failed"
    error_code = ErrorCode.PAYMENT_FAILED
    http_status = HTTPStatus.PAYMENT_REQUIRED

    def __init__(
        self,
        message: str | None = None,
        *,
        reason: str | None = None,
        amount: Any = None,
        **kwargs: Any,
    ) -> None:
        """Initialize payment failure.

        Args:
            message: Error message.
            reason: Failure reason reported by the payment gateway.
            amount: Amount that was attempted.
            **kwargs: Additional arguments passed to parent.
        """
        details = kwargs.pop("details", {}) or {}
        if reason:
            details["reason"] = reason
        if amount is not None:
            details["amount"] = str(amount)
        if not message and reason:
            message = f"Payment failed: {reason}"
        self.reason = reason
        super().__init__(message, details=details, **kwargs)


def get_http_status_for_exception(exc: Exception) -> HTTPStatus:
    """Get the appropriate HTTP status code for an exception."""
    if isinstance(exc, SignalTiersException):
        return exc.http_status

    exception_status_map: dict[type, HTTPStatus] = {
        ValueError: HTTPStatus.BAD_REQUEST,
        PermissionError: HTTPStatus.FORBIDDEN,
        TimeoutError: HTTPStatus.GATEWAY_TIMEOUT,
    }

    for exc_type, status in exception_status_map.items():
        if isinstance(exc, exc_type):
            return status

    return HTTPStatus.INTERNAL_SERVER_ERROR
