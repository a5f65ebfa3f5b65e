"""Core opsrelay module — shared types, errors and logging."""

from opsrelay.core.exceptions import (
    ApprovalCancelled,
    ApprovalTimeout,
    CapacityExceeded,
    DeliveryError,
    ErrorCode,
    MalformedCallbackError,
    PermanentDeliveryError,
    RelayError,
    TransientDeliveryError,
    ValidationError,
)
from opsrelay.core.types import (
    ApprovalOption,
    ApprovalOutcome,
    ApprovalResult,
    ApprovalTicket,
    MessageHandle,
    NotifyResult,
    Priority,
)

__all__ = [
    "ApprovalCancelled",
    "ApprovalOption",
    "ApprovalOutcome",
    "ApprovalResult",
    "ApprovalTicket",
    "ApprovalTimeout",
    "CapacityExceeded",
    "DeliveryError",
    "ErrorCode",
    "MalformedCallbackError",
    "MessageHandle",
    "NotifyResult",
    "PermanentDeliveryError",
    "Priority",
    "RelayError",
    "TransientDeliveryError",
    "ValidationError",
]
