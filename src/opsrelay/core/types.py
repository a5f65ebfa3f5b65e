"""
Core Type Definitions
=====================

Centralized type definitions shared by the batcher, the approval coordinator
and the Relay facade. Outcomes are enums rather than magic strings so callers
can branch on them safely.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .exceptions import ApprovalCancelled, ApprovalTimeout, RelayError


class Priority(str, Enum):
    """Notification priority. LOW and NORMAL are batched, HIGH is sent at once."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"

    def __str__(self) -> str:
        return self.value


class ApprovalOutcome(str, Enum):
    """Terminal outcome of a single approval request"""

    CHOSEN = "chosen"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    EVICTED = "evicted"
    NOT_FOUND = "not_found"
    UNDELIVERED = "undelivered"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class MessageHandle:
    """Identifies a message already delivered to the destination chat."""
    chat_id: int | str
    message_id: int


@dataclass(frozen=True)
class ApprovalOption:
    """One choice control offered to the operator."""
    label: str
    value: str = ""
    description: str | None = None

    def __post_init__(self):
        if not self.value:
            object.__setattr__(self, "value", self.label)

    @classmethod
    def from_any(cls, raw: "ApprovalOption | dict[str, Any] | str") -> "ApprovalOption":
        if isinstance(raw, ApprovalOption):
            return raw
        if isinstance(raw, str):
            return cls(label=raw)
        return cls(
            label=raw.get("label", ""),
            value=raw.get("value", "") or "",
            description=raw.get("description"),
        )


@dataclass(frozen=True)
class ApprovalTicket:
    """Returned by ApprovalCoordinator.request_approval()."""
    approval_id: str
    evicted_id: str | None = None


@dataclass
class ApprovalResult:
    """
    Result of waiting on an approval request.

    ``option`` is only set when ``outcome`` is CHOSEN. ``warnings`` carries
    non-fatal conditions met on the way (capacity eviction, delivery issues).
    """
    approval_id: str | None
    outcome: ApprovalOutcome
    option: ApprovalOption | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def chosen(self) -> bool:
        return self.outcome is ApprovalOutcome.CHOSEN

    @property
    def value(self) -> str | None:
        return self.option.value if self.option else None

    def raise_for_outcome(self) -> ApprovalOption:
        """Return the chosen option or raise the matching typed error."""
        if self.outcome is ApprovalOutcome.CHOSEN and self.option is not None:
            return self.option
        details = {"approval_id": self.approval_id, "outcome": self.outcome.value}
        if self.outcome is ApprovalOutcome.TIMED_OUT:
            raise ApprovalTimeout("Approval request timed out", details)
        if self.outcome in (ApprovalOutcome.CANCELLED, ApprovalOutcome.EVICTED):
            raise ApprovalCancelled(f"Approval request {self.outcome.value}", details)
        raise RelayError(f"Approval request {self.outcome.value}", details=details)

    def to_dict(self) -> dict[str, Any]:
        return {
            "approval_id": self.approval_id,
            "outcome": self.outcome.value,
            "value": self.value,
            "label": self.option.label if self.option else None,
            "warnings": list(self.warnings),
        }


@dataclass
class NotifyResult:
    """
    Result of Relay.notify().

    ``delivered`` is True when the text (alone or inside a batch) reached the
    transport during this call; ``queued`` when it is waiting for the batch
    window. Failures are reported in ``warnings``, never raised.
    """
    delivered: bool = False
    queued: bool = False
    warnings: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.warnings
