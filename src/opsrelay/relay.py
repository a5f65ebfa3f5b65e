"""
Relay — the caller-facing API
=============================

One ``Relay`` per process and destination chat. It owns the whole stack::

    notify() ──────────► MessageBatcher ──────┐
    request_approval() ► ApprovalCoordinator ─┴► DeliveryClient ► RateLimiter ► Transport
    on_callback() ─────► ApprovalCoordinator

Nothing here raises on delivery trouble: notifications report failures as
warnings on ``NotifyResult`` and approvals end in a typed ``ApprovalResult``.
Only invalid caller input raises (``ValidationError``).
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

from opsrelay.approval.coordinator import ApprovalCoordinator
from opsrelay.batching.batcher import MessageBatcher
from opsrelay.config.settings import Settings
from opsrelay.core.exceptions import ValidationError
from opsrelay.core.structured_logger import TraceContext, get_logger
from opsrelay.core.types import (
    ApprovalOption,
    ApprovalOutcome,
    ApprovalResult,
    NotifyResult,
    Priority,
)
from opsrelay.delivery.client import DeliveryClient
from opsrelay.delivery.rate_limiter import RateLimiter
from opsrelay.delivery.transport import Transport
from opsrelay.interfaces.telegram.renderers import markdown_to_html
from opsrelay.lifecycle import ShutdownController

logger = get_logger("Relay")


def validate_notification(text: Any, priority: Any) -> Priority:
    if not isinstance(text, str) or not text.strip():
        raise ValidationError('Invalid input: "text" must be a non-empty string')
    try:
        return Priority(priority)
    except ValueError:
        raise ValidationError(
            'Invalid input: "priority" must be one of: low, normal, high',
            {"priority": priority},
        ) from None


def validate_approval_request(
    question: Any,
    options: Any,
    header: Any = None,
    timeout_seconds: Any = None,
) -> list[ApprovalOption]:
    if not isinstance(question, str) or not question.strip():
        raise ValidationError('Invalid input: "question" must be a non-empty string')
    if isinstance(options, (str, bytes)) or not isinstance(options, Sequence) or not options:
        raise ValidationError('Invalid input: "options" must be a non-empty array')

    parsed = []
    for index, raw in enumerate(options):
        if not isinstance(raw, (ApprovalOption, Mapping, str)):
            raise ValidationError(f"Invalid input: option at index {index} must be an object")
        option = ApprovalOption.from_any(raw)
        if not isinstance(option.label, str) or not option.label.strip():
            raise ValidationError(f'Invalid input: option at index {index} must have a "label" string')
        parsed.append(option)

    if len({o.value for o in parsed}) != len(parsed):
        raise ValidationError('Invalid input: option values must be unique')
    if header is not None and not isinstance(header, str):
        raise ValidationError('Invalid input: "header" must be a string if provided')
    if timeout_seconds is not None and (
        isinstance(timeout_seconds, bool)
        or not isinstance(timeout_seconds, (int, float))
        or timeout_seconds <= 0
    ):
        raise ValidationError('Invalid input: "timeout_seconds" must be a positive number')
    return parsed


class Relay:
    """Notification relay and approval gate for one destination chat."""

    def __init__(
        self,
        transport: Transport,
        settings: Settings | None = None,
        render_markdown: bool = True,
    ) -> None:
        self.settings = settings or Settings()
        self.transport = transport
        self.render_markdown = render_markdown

        delivery = self.settings.delivery
        self.rate_limiter = RateLimiter(
            max_requests=delivery.rate_limit_requests,
            window_seconds=delivery.rate_limit_window_seconds,
        )
        self.delivery = DeliveryClient(
            transport,
            self.rate_limiter,
            max_attempts=delivery.retry_attempts,
            base_delay=delivery.retry_base_delay,
        )

        batching = self.settings.batching
        self.batcher = MessageBatcher(
            self.delivery,
            window_seconds=batching.window_seconds,
            max_queue_size=batching.max_queue_size,
            edit_in_place=batching.edit_in_place,
        )

        approvals = self.settings.approvals
        self.coordinator = ApprovalCoordinator(
            self.delivery,
            max_concurrent_approvals=approvals.max_concurrent_approvals,
            default_timeout=approvals.default_timeout_seconds,
            poll_mode=approvals.poll_mode,
            poll_interval_floor=approvals.poll_interval_floor,
            poll_interval_step=approvals.poll_interval_step,
            poll_interval_ceiling=approvals.poll_interval_ceiling,
            destination=self.settings.telegram.chat_id if self.settings.telegram else None,
            sweep_interval=approvals.sweep_interval_seconds,
        )

        self.shutdown_controller = ShutdownController(
            self.batcher, self.coordinator, shutdown_timeout=self.settings.shutdown_timeout
        )

    async def start(self) -> None:
        await self.coordinator.start()

    async def __aenter__(self) -> "Relay":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.shutdown()

    async def notify(self, text: str, priority: Priority | str = Priority.NORMAL) -> NotifyResult:
        """Queue or send a notification. Delivery problems come back as warnings."""
        level = validate_notification(text, priority)
        if self.shutdown_controller.shutting_down:
            return NotifyResult(warnings=["Relay is shutting down, notification dropped"])

        body = markdown_to_html(text, preserve_formatting=True) if self.render_markdown else text
        with TraceContext():
            result = await self.batcher.add(body, level)
            for warning in result.warnings:
                logger.warning("Notification warning", warning=warning, priority=level.value)
        return result

    async def request_approval(
        self,
        question: str,
        options: Sequence[ApprovalOption | Mapping[str, Any] | str],
        timeout_seconds: float | None = None,
        header: str | None = None,
    ) -> ApprovalResult:
        """Ask the operator and wait for the choice, a timeout or cancellation."""
        choices = validate_approval_request(question, options, header, timeout_seconds)
        if self.shutdown_controller.shutting_down:
            return ApprovalResult(None, ApprovalOutcome.CANCELLED, warnings=["Relay is shutting down"])

        result = await self.coordinator.wait_for_decision(question, choices, timeout_seconds, header)
        if result.outcome is not ApprovalOutcome.CHOSEN:
            logger.info(
                "Approval finished without a choice",
                approval_id=result.approval_id,
                outcome=result.outcome.value,
            )
        return result

    async def on_callback(self, raw_payload: Any, origin: int | str | None = None) -> bool:
        """Feed an inbound button press (untrusted) into the coordinator."""
        return await self.coordinator.handle_callback(raw_payload, origin)

    async def flush(self) -> str | None:
        return await self.batcher.flush()

    async def shutdown(self) -> dict[str, Any]:
        return await self.shutdown_controller.shutdown()

    def get_stats(self) -> dict[str, Any]:
        return {
            "batcher": self.batcher.get_stats(),
            "approvals": self.coordinator.get_stats(),
            "delivery": dict(self.delivery.stats),
            "rate_limit": self.rate_limiter.get_stats(),
        }
