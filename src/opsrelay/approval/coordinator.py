"""Approval Coordinator — operator choices bridged into a blocking-style wait."""

from __future__ import annotations

import asyncio
import secrets
import time
from collections import OrderedDict
from collections.abc import Coroutine, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from opsrelay.core.exceptions import CapacityExceeded, DeliveryError, ErrorCode
from opsrelay.core.structured_logger import TraceContext, get_logger
from opsrelay.core.types import (
    ApprovalOption,
    ApprovalOutcome,
    ApprovalResult,
    ApprovalTicket,
    MessageHandle,
)
from opsrelay.delivery.client import DeliveryClient
from opsrelay.interfaces.telegram.renderers import format_resolution

from .callbacks import MalformedCallback, parse_callback_payload

logger = get_logger("ApprovalCoordinator")


class ApprovalState(Enum):
    CREATED = "created"
    RESOLVED = "resolved"
    EXPIRED = "expired"
    EVICTED = "evicted"
    CANCELLED = "cancelled"


_STATE_OUTCOMES = {
    ApprovalState.EXPIRED: ApprovalOutcome.TIMED_OUT,
    ApprovalState.EVICTED: ApprovalOutcome.EVICTED,
    ApprovalState.CANCELLED: ApprovalOutcome.CANCELLED,
}


@dataclass
class PendingApproval:
    approval_id: str
    question: str
    options: tuple[ApprovalOption, ...]
    created_at: float
    timeout_at: float
    header: str | None = None
    handle: MessageHandle | None = None
    state: ApprovalState = ApprovalState.CREATED
    result: asyncio.Future = field(default=None, repr=False)

    def __post_init__(self):
        if self.result is None:
            self.result = asyncio.get_running_loop().create_future()

    def is_expired(self, now: float) -> bool:
        return now >= self.timeout_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "approval_id": self.approval_id,
            "question": self.question,
            "options": [o.value for o in self.options],
            "state": self.state.value,
            "created_at": self.created_at,
            "timeout_at": self.timeout_at,
        }


class ApprovalCoordinator:
    """
    Tracks outstanding approval requests.

    Two paths touch a request: the caller waiting in ``poll()`` and the
    inbound callback handler calling ``resolve()``. Both run on the same
    event loop and may interleave at any await; each request's result is
    written exactly once (``_settle``) and late writers are no-ops.

    Settled requests leave the live map immediately and wait in a bounded
    tombstone map until a poller collects the outcome, so a caller whose
    request was evicted or cancelled still learns why.
    """

    def __init__(
        self,
        client: DeliveryClient,
        max_concurrent_approvals: int = 10,
        default_timeout: float = 300.0,
        poll_mode: str = "event",
        poll_interval_floor: float = 0.1,
        poll_interval_step: float = 0.1,
        poll_interval_ceiling: float = 1.0,
        destination: int | str | None = None,
        sweep_interval: float = 5.0,
        clock=time.monotonic,
        sleep=asyncio.sleep,
    ) -> None:
        if max_concurrent_approvals < 1:
            raise ValueError("max_concurrent_approvals must be at least 1")
        if poll_mode not in ("event", "adaptive"):
            raise ValueError(f"Unknown poll_mode: {poll_mode}")
        self.client = client
        self.max_concurrent = max_concurrent_approvals
        self.default_timeout = default_timeout
        self.poll_mode = poll_mode
        self.poll_interval_floor = poll_interval_floor
        self.poll_interval_step = poll_interval_step
        self.poll_interval_ceiling = poll_interval_ceiling
        self.destination = destination
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._sleep = sleep

        self._pending: dict[str, PendingApproval] = {}
        self._settled: OrderedDict[str, ApprovalResult] = OrderedDict()
        self._max_settled = max(64, 4 * max_concurrent_approvals)
        self._background: set[asyncio.Task] = set()
        self._sweep_task: asyncio.Task | None = None
        self._running = False
        self.stats = {
            "requested": 0,
            "resolved": 0,
            "expired": 0,
            "evicted": 0,
            "cancelled": 0,
            "malformed_callbacks": 0,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the background sweep that expires requests nobody is polling."""
        if self._running:
            return
        self._running = True
        self._sweep_task = asyncio.create_task(self._sweep_loop(), name="approval-sweep")
        logger.info("ApprovalCoordinator started", sweep_interval=self.sweep_interval)

    async def stop(self) -> None:
        self._running = False
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    async def request_approval(
        self,
        question: str,
        options: Sequence[ApprovalOption | dict | str],
        timeout_seconds: float | None = None,
        header: str | None = None,
    ) -> ApprovalTicket:
        """
        Send a choice request and start tracking it.

        The record is admitted before the message is sent, so concurrent
        requests can never push the live count past the cap.

        Raises:
            PermanentDeliveryError: the choice message could not be delivered
        """
        choices = tuple(ApprovalOption.from_any(o) for o in options)
        timeout = timeout_seconds if timeout_seconds is not None else self.default_timeout

        self._sweep()
        evicted_id = None
        if len(self._pending) >= self.max_concurrent:
            evicted_id = self._evict_oldest()

        approval_id = self._new_id()
        now = self._clock()
        record = PendingApproval(
            approval_id=approval_id,
            question=question,
            options=choices,
            created_at=now,
            timeout_at=now + timeout,
            header=header,
        )
        self._pending[approval_id] = record
        self.stats["requested"] += 1

        with TraceContext(approval_id):
            try:
                record.handle = await self.client.send_choice(approval_id, header, question, choices)
            except DeliveryError as e:
                if record.state is ApprovalState.CREATED:
                    record.state = ApprovalState.CANCELLED
                    self._pending.pop(approval_id, None)
                    record.result.set_result(
                        ApprovalResult(approval_id, ApprovalOutcome.UNDELIVERED)
                    )
                logger.error("Approval request not delivered", error=e.message)
                raise

            if record.state is not ApprovalState.CREATED:
                # Settled (evicted or cancelled) while the message was in flight
                outcome = _STATE_OUTCOMES.get(record.state, ApprovalOutcome.CANCELLED)
                self._spawn(self._acknowledge(record, outcome))

            logger.info(
                "Approval requested",
                approval_id=approval_id,
                options=len(choices),
                timeout_seconds=timeout,
                evicted_id=evicted_id,
            )
        return ApprovalTicket(approval_id=approval_id, evicted_id=evicted_id)

    # ------------------------------------------------------------------
    # Producer side: inbound callbacks
    # ------------------------------------------------------------------

    def resolve(self, approval_id: str, chosen: ApprovalOption | int | str) -> bool:
        """
        Record the operator's choice.

        Returns:
            False when the id is unknown, already settled or expired, or the
            choice does not match one of the request's options.
        """
        record = self._pending.get(approval_id)
        if record is None or record.state is not ApprovalState.CREATED:
            logger.debug("Resolve ignored for unknown or settled approval", approval_id=approval_id)
            return False

        option = self._match_option(record, chosen)
        if option is None:
            logger.warning("Resolve with unknown option ignored", approval_id=approval_id)
            return False

        if record.is_expired(self._clock()):
            self._expire(record)
            return False

        self._settle(
            record,
            ApprovalState.RESOLVED,
            ApprovalResult(approval_id, ApprovalOutcome.CHOSEN, option),
        )
        self.stats["resolved"] += 1
        with TraceContext(approval_id):
            logger.info("Approval resolved", approval_id=approval_id, option=option.value)
        return True

    async def handle_callback(self, raw_payload: Any, origin: int | str | None = None) -> bool:
        """
        Entry point for inbound button presses.

        Malformed payloads and callbacks from other chats are logged and
        dropped; they never raise. With a destination configured, a callback
        that carries no chat id is treated as foreign.
        """
        if self.destination is not None and (origin is None or str(origin) != str(self.destination)):
            logger.warning(
                "Callback from unexpected chat ignored",
                origin=None if origin is None else str(origin),
                error_code=int(ErrorCode.FOREIGN_ORIGIN),
            )
            return False

        payload = parse_callback_payload(raw_payload)
        if isinstance(payload, MalformedCallback):
            self.stats["malformed_callbacks"] += 1
            logger.warning(
                "Malformed callback ignored",
                reason=payload.reason,
                error_code=int(ErrorCode.MALFORMED_CALLBACK),
            )
            return False

        record = self._pending.get(payload.approval_id)
        if record is None:
            logger.debug("Callback for unknown approval", approval_id=payload.approval_id)
            return False
        if payload.option_index >= len(record.options):
            logger.warning(
                "Callback option out of range",
                approval_id=payload.approval_id,
                option_index=payload.option_index,
            )
            return False

        option = record.options[payload.option_index]
        if not self.resolve(record.approval_id, option):
            return False

        await self._acknowledge(record, ApprovalOutcome.CHOSEN, option)
        return True

    # ------------------------------------------------------------------
    # Consumer side: the caller's wait
    # ------------------------------------------------------------------

    async def poll(self, approval_id: str) -> ApprovalResult:
        """
        Wait until the request is settled or its deadline passes.

        The outcome is handed out once; asking again returns NOT_FOUND.
        """
        record = self._pending.get(approval_id)
        if record is None:
            settled = self._settled.pop(approval_id, None)
            return settled or ApprovalResult(approval_id, ApprovalOutcome.NOT_FOUND)

        if self.poll_mode == "adaptive":
            await self._wait_adaptive(record)
        else:
            await self._wait_event(record)

        if not record.result.done():
            self._expire(record)

        # concurrent pollers of one id: the first to wake collects the outcome
        settled = self._settled.pop(approval_id, None)
        return settled or ApprovalResult(approval_id, ApprovalOutcome.NOT_FOUND)

    async def wait_for_decision(
        self,
        question: str,
        options: Sequence[ApprovalOption | dict | str],
        timeout_seconds: float | None = None,
        header: str | None = None,
    ) -> ApprovalResult:
        """``request_approval`` followed by ``poll``; delivery failures become UNDELIVERED."""
        try:
            ticket = await self.request_approval(question, options, timeout_seconds, header)
        except DeliveryError as e:
            return ApprovalResult(None, ApprovalOutcome.UNDELIVERED, warnings=[e.message])

        result = await self.poll(ticket.approval_id)
        if ticket.evicted_id:
            result.warnings.append(
                f"Approval capacity reached, request {ticket.evicted_id} was evicted"
            )
        return result

    async def _wait_event(self, record: PendingApproval) -> None:
        remaining = record.timeout_at - self._clock()
        if remaining <= 0:
            return
        try:
            await asyncio.wait_for(asyncio.shield(record.result), timeout=remaining)
        except TimeoutError:
            pass

    async def _wait_adaptive(self, record: PendingApproval) -> None:
        interval = self.poll_interval_floor
        while not record.result.done():
            remaining = record.timeout_at - self._clock()
            if remaining <= 0:
                return
            await self._sleep(min(interval, remaining))
            interval = min(interval + self.poll_interval_step, self.poll_interval_ceiling)

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    async def cancel_all(self, reason: str = "shutdown", acknowledge: bool = True) -> int:
        """Settle every live request as CANCELLED, releasing their pollers."""
        cancelled = list(self._pending.values())
        for record in cancelled:
            self._settle(
                record,
                ApprovalState.CANCELLED,
                ApprovalResult(record.approval_id, ApprovalOutcome.CANCELLED),
            )
        self.stats["cancelled"] += len(cancelled)
        if cancelled:
            logger.info("Cancelled pending approvals", count=len(cancelled), reason=reason)
            if acknowledge:
                await asyncio.gather(
                    *(self._acknowledge(r, ApprovalOutcome.CANCELLED) for r in cancelled)
                )
        return len(cancelled)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def get_pending(self) -> list[PendingApproval]:
        return list(self._pending.values())

    def get_stats(self) -> dict[str, Any]:
        return {**self.stats, "pending": len(self._pending), "running": self._running}

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _new_id(self) -> str:
        while True:
            approval_id = secrets.token_hex(4)
            if approval_id not in self._pending and approval_id not in self._settled:
                return approval_id

    @staticmethod
    def _match_option(record: PendingApproval, chosen: ApprovalOption | int | str) -> ApprovalOption | None:
        if isinstance(chosen, ApprovalOption):
            return chosen if chosen in record.options else None
        if isinstance(chosen, int) and not isinstance(chosen, bool):
            return record.options[chosen] if 0 <= chosen < len(record.options) else None
        for option in record.options:
            if chosen in (option.value, option.label):
                return option
        return None

    def _settle(self, record: PendingApproval, state: ApprovalState, result: ApprovalResult) -> bool:
        """Write the result slot once and move the record out of the live map."""
        if record.state is not ApprovalState.CREATED:
            return False
        record.state = state
        if not record.result.done():
            record.result.set_result(result)
        if self._pending.get(record.approval_id) is record:
            del self._pending[record.approval_id]
        self._settled[record.approval_id] = result
        while len(self._settled) > self._max_settled:
            self._settled.popitem(last=False)
        return True

    def _expire(self, record: PendingApproval) -> None:
        if self._settle(
            record,
            ApprovalState.EXPIRED,
            ApprovalResult(record.approval_id, ApprovalOutcome.TIMED_OUT),
        ):
            self.stats["expired"] += 1
            logger.warning("Approval timed out", approval_id=record.approval_id)
            self._spawn(self._acknowledge(record, ApprovalOutcome.TIMED_OUT))

    def _evict_oldest(self) -> str:
        # dicts keep insertion order, so the first live record is the oldest
        oldest = next(iter(self._pending.values()))
        self._settle(
            oldest,
            ApprovalState.EVICTED,
            ApprovalResult(oldest.approval_id, ApprovalOutcome.EVICTED),
        )
        self.stats["evicted"] += 1
        capacity = CapacityExceeded(
            f"Approval capacity ({self.max_concurrent}) reached, evicted {oldest.approval_id}",
            ErrorCode.APPROVALS_FULL,
            {"evicted_id": oldest.approval_id},
        )
        logger.warning(capacity.message, **capacity.to_dict()["details"])
        self._spawn(self._acknowledge(oldest, ApprovalOutcome.EVICTED))
        return oldest.approval_id

    def _sweep(self) -> None:
        now = self._clock()
        for record in list(self._pending.values()):
            if record.is_expired(now):
                self._expire(record)

    async def _sweep_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.sweep_interval)
                self._sweep()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Error in approval sweep loop: %s", e, exc_info=True)

    async def _acknowledge(
        self,
        record: PendingApproval,
        outcome: ApprovalOutcome,
        option: ApprovalOption | None = None,
    ) -> None:
        """Rewrite the choice message to show how it was settled (drops its buttons)."""
        if record.handle is None:
            return
        try:
            await self.client.edit(record.handle, format_resolution(record.question, outcome, option))
        except DeliveryError as e:
            logger.warning(
                "Could not update approval message",
                approval_id=record.approval_id,
                error=e.message,
            )

    def _spawn(self, coro: Coroutine) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
