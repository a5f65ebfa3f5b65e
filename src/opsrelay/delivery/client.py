"""Delivery Client — rate limiting and bounded retry around every transport call."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import TYPE_CHECKING, TypeVar

from opsrelay.core.exceptions import (
    DeliveryError,
    PermanentDeliveryError,
    TransientDeliveryError,
)
from opsrelay.core.types import ApprovalOption, MessageHandle

from .rate_limiter import RateLimiter, Sleeper

if TYPE_CHECKING:
    from .transport import Transport

logger = logging.getLogger(__name__)

T = TypeVar("T")


def classify_error(exc: BaseException) -> DeliveryError:
    """Map any exception raised by a transport onto the delivery taxonomy."""
    if isinstance(exc, DeliveryError):
        return exc
    if isinstance(exc, (TimeoutError, ConnectionError, OSError)):
        return TransientDeliveryError(f"{type(exc).__name__}: {exc}")
    return PermanentDeliveryError(f"{type(exc).__name__}: {exc}", cause=exc)


class DeliveryClient:
    """
    Sends and edits messages through the transport.

    Every call is throttled by the shared RateLimiter, then attempted up to
    ``max_attempts`` times. Transient failures back off exponentially
    (``base_delay * 2 ** (attempt - 1)``); permanent failures are raised at
    once. Exhausted retries are raised as PermanentDeliveryError, which
    callers are expected to catch and report.
    """

    def __init__(
        self,
        transport: Transport,
        rate_limiter: RateLimiter | None = None,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.transport = transport
        self.rate_limiter = rate_limiter or RateLimiter()
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self._sleep = sleep
        self.stats = {"sent": 0, "edited": 0, "retried": 0, "failed": 0}

    def backoff_delay(self, attempt: int) -> float:
        """Delay before the retry following failed attempt number ``attempt`` (1-based)."""
        return self.base_delay * (2 ** (attempt - 1))

    async def send(self, text: str) -> MessageHandle:
        handle = await self._deliver("send", lambda: self.transport.send_message(text))
        self.stats["sent"] += 1
        return handle

    async def edit(self, handle: MessageHandle, text: str) -> MessageHandle:
        new_handle = await self._deliver("edit", lambda: self.transport.edit_message(handle, text))
        self.stats["edited"] += 1
        return new_handle

    async def send_choice(
        self,
        approval_id: str,
        header: str | None,
        question: str,
        options: Sequence[ApprovalOption],
    ) -> MessageHandle:
        handle = await self._deliver(
            "send_choice",
            lambda: self.transport.send_choice_request(approval_id, header, question, options),
        )
        self.stats["sent"] += 1
        return handle

    async def _deliver(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        last_error: DeliveryError | None = None

        for attempt in range(1, self.max_attempts + 1):
            await self.rate_limiter.throttle()
            try:
                return await call()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                error = classify_error(e)

            if isinstance(error, PermanentDeliveryError):
                self.stats["failed"] += 1
                logger.error(
                    "%s failed permanently on attempt %d: %s", operation, attempt, error.message
                )
                raise error

            last_error = error
            if attempt == self.max_attempts:
                break

            delay = self.backoff_delay(attempt)
            if isinstance(error, TransientDeliveryError) and error.retry_after:
                delay = max(delay, error.retry_after)
            self.stats["retried"] += 1
            logger.warning(
                "%s attempt %d/%d failed (%s), retrying in %.2fs",
                operation,
                attempt,
                self.max_attempts,
                error.message,
                delay,
            )
            await self._sleep(delay)

        self.stats["failed"] += 1
        logger.error(
            "%s gave up after %d attempts: %s",
            operation,
            self.max_attempts,
            last_error.message if last_error else "unknown error",
        )
        raise PermanentDeliveryError(
            f"{operation} failed after {self.max_attempts} attempts",
            attempts=self.max_attempts,
            cause=last_error,
            details={"operation": operation},
        ) from last_error
