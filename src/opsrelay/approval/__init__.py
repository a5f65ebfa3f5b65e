"""
Approval requests: issuing choice messages, tracking them, and resolving them
from inbound callbacks or from the caller's deadline.
"""

from .callbacks import (
    CallbackPayload,
    MalformedCallback,
    encode_callback_data,
    parse_callback_payload,
)
from .coordinator import ApprovalCoordinator, ApprovalState, PendingApproval

__all__ = [
    "ApprovalCoordinator",
    "ApprovalState",
    "CallbackPayload",
    "MalformedCallback",
    "PendingApproval",
    "encode_callback_data",
    "parse_callback_payload",
]
