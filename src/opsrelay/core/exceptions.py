"""
Custom Exceptions for opsrelay
==============================

Structured error handling lets the relay decide what to retry, what to
surface as a warning and what to swallow, based on type rather than on
parsing strings.

Error Codes:
- 1xxx: Client errors (caller input, validation)
- 2xxx: Inbound errors (untrusted callback payloads)
- 3xxx: Capacity errors (queue or approval map full)
- 4xxx: Delivery errors (transport calls)
- 5xxx: Approval outcomes and system errors
"""

from enum import IntEnum
from typing import Any


class ErrorCode(IntEnum):
    """Structured error codes for user-friendly messages"""

    # 1xxx: Client Errors
    VALIDATION_ERROR = 1001
    INVALID_PARAMETERS = 1002

    # 2xxx: Inbound Errors
    MALFORMED_CALLBACK = 2001
    FOREIGN_ORIGIN = 2002

    # 3xxx: Capacity Errors
    QUEUE_FULL = 3001
    APPROVALS_FULL = 3002

    # 4xxx: Delivery Errors
    DELIVERY_TRANSIENT = 4001
    DELIVERY_PERMANENT = 4002
    RETRIES_EXHAUSTED = 4003

    # 5xxx: Approval outcomes / System Errors
    APPROVAL_TIMEOUT = 5001
    APPROVAL_CANCELLED = 5002
    INTERNAL_ERROR = 5101
    CONFIGURATION_ERROR = 5102


class RelayError(Exception):
    """Base exception for all opsrelay errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for structured logging"""
        return {
            'error_type': self.__class__.__name__,
            'error_code': int(self.error_code),
            'message': self.message,
            'details': self.details
        }

    def user_message(self) -> str:
        """Get user-friendly error message based on error code"""
        code_messages = {
            ErrorCode.VALIDATION_ERROR: "Invalid input provided",
            ErrorCode.INVALID_PARAMETERS: "Invalid parameters",
            ErrorCode.MALFORMED_CALLBACK: "Malformed callback payload",
            ErrorCode.FOREIGN_ORIGIN: "Callback from an unexpected chat",
            ErrorCode.QUEUE_FULL: "Notification queue full, flushed early",
            ErrorCode.APPROVALS_FULL: "Too many pending approvals, oldest evicted",
            ErrorCode.DELIVERY_TRANSIENT: "Temporary delivery failure",
            ErrorCode.DELIVERY_PERMANENT: "Delivery failed",
            ErrorCode.RETRIES_EXHAUSTED: "Delivery failed after retries",
            ErrorCode.APPROVAL_TIMEOUT: "Approval request timed out",
            ErrorCode.APPROVAL_CANCELLED: "Approval request cancelled",
            ErrorCode.INTERNAL_ERROR: "Internal error",
            ErrorCode.CONFIGURATION_ERROR: "Configuration error",
        }
        return f"Error {self.error_code}: {code_messages.get(self.error_code, self.message)}"


class ValidationError(RelayError):
    """Raised when caller input validation fails"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, ErrorCode.VALIDATION_ERROR, details)


class DeliveryError(RelayError):
    """Base class for failures talking to the chat transport"""


class TransientDeliveryError(DeliveryError):
    """Network error, timeout or 5xx-equivalent. Retried by DeliveryClient."""

    def __init__(
        self,
        message: str,
        retry_after: float | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, ErrorCode.DELIVERY_TRANSIENT, details)
        self.retry_after = retry_after


class PermanentDeliveryError(DeliveryError):
    """Auth/validation failure, or a transient failure after retry exhaustion."""

    def __init__(
        self,
        message: str,
        attempts: int = 1,
        cause: BaseException | None = None,
        details: dict[str, Any] | None = None,
    ):
        code = ErrorCode.RETRIES_EXHAUSTED if attempts > 1 else ErrorCode.DELIVERY_PERMANENT
        super().__init__(message, code, details)
        self.attempts = attempts
        self.cause = cause


class CapacityExceeded(RelayError):
    """A bounded resource was full and its admission policy was applied"""

    def __init__(self, message: str, error_code: ErrorCode, details: dict[str, Any] | None = None):
        super().__init__(message, error_code, details)


class MalformedCallbackError(RelayError):
    """Raised while decoding an unparsable inbound callback payload"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, ErrorCode.MALFORMED_CALLBACK, details)


class ApprovalTimeout(RelayError):
    """Raised by ApprovalResult.raise_for_outcome() for an unanswered request"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, ErrorCode.APPROVAL_TIMEOUT, details)


class ApprovalCancelled(RelayError):
    """Raised by ApprovalResult.raise_for_outcome() for cancelled or evicted requests"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, ErrorCode.APPROVAL_CANCELLED, details)
