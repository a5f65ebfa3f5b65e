"""
Message Batcher
===============

Collects normal-priority notifications for a short window and delivers them
as one combined chat message, so a burst of progress updates does not turn
into a burst of phone notifications.

Rules:
- HIGH priority: queued messages are flushed first (one combined delivery),
  then the high-priority text goes out on its own. Nothing is reordered.
- NORMAL/LOW priority: appended to the queue; the first item since the last
  flush arms a single timer for ``window_seconds``.
- Entries older than twice the window are dropped before each add.
- A full queue is flushed before the new item is appended.
- A flush longer than one chat message goes out as several combined
  messages, split between items and in order.
- Failed deliveries are logged and reported, never re-queued.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from opsrelay.core.exceptions import CapacityExceeded, DeliveryError, ErrorCode
from opsrelay.core.types import MessageHandle, NotifyResult, Priority
from opsrelay.delivery.client import DeliveryClient
from opsrelay.delivery.transport import MAX_MESSAGE_LENGTH

logger = logging.getLogger(__name__)

BATCH_SEPARATOR = "\n\n─────────────\n\n"


def compose_batch(texts: list[str]) -> str:
    """Header with the count, then every body in order, separated."""
    return f"📦 <b>{len(texts)} updates</b>\n\n" + BATCH_SEPARATOR.join(texts)


def split_batch(texts: list[str], limit: int = MAX_MESSAGE_LENGTH) -> list[list[str]]:
    """
    Split *texts*, in order, into groups whose combined message fits *limit*.

    A single text longer than the limit still gets a group of its own.
    """
    groups: list[list[str]] = []
    current: list[str] = []
    for text in texts:
        if current and len(compose_batch([*current, text])) > limit:
            groups.append(current)
            current = []
        current.append(text)
    if current:
        groups.append(current)
    return groups


@dataclass
class QueuedMessage:
    text: str
    priority: Priority
    enqueued_at: float = field(default_factory=time.monotonic)


class MessageBatcher:
    """Time-window notification batcher in front of a DeliveryClient."""

    def __init__(
        self,
        client: DeliveryClient,
        window_seconds: float = 5.0,
        max_queue_size: int = 100,
        edit_in_place: bool = True,
        clock=time.monotonic,
    ) -> None:
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        if max_queue_size < 1:
            raise ValueError("max_queue_size must be at least 1")
        self.client = client
        self.window = window_seconds
        self.max_queue_size = max_queue_size
        self.edit_in_place = edit_in_place
        self._clock = clock

        self.pending: list[QueuedMessage] = []
        self.timer: asyncio.Task | None = None

        # Last combined message and what it shows; only valid while it is
        # the most recent thing this batcher delivered
        self._batch_handle: MessageHandle | None = None
        self._batch_texts: list[str] = []

        self._delivery_lock = asyncio.Lock()
        self._background: set[asyncio.Task] = set()
        self.stats = {"flushes": 0, "delivered": 0, "dropped": 0, "forced_flushes": 0}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def add(self, text: str, priority: Priority | str = Priority.NORMAL) -> NotifyResult:
        priority = Priority(priority)
        if priority is Priority.HIGH:
            return await self._add_high(text)
        return await self._add_normal(text, priority)

    async def flush(self) -> str | None:
        """
        Deliver everything queued as a single message.

        Returns:
            The delivered text, or None when the queue was empty or the
            delivery failed.
        """
        text, _warning = await self._flush()
        return text

    async def stop(self) -> None:
        """Disarm the timer and wait for timer-driven flushes already running."""
        self._cancel_timer()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    def get_stats(self) -> dict[str, Any]:
        return {
            **self.stats,
            "pending": len(self.pending),
            "timer_armed": self.timer is not None,
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _add_high(self, text: str) -> NotifyResult:
        result = NotifyResult()
        if self.pending:
            _text, warning = await self._flush()
            if warning:
                result.warnings.append(warning)

        async with self._delivery_lock:
            try:
                await self.client.send(text)
            except DeliveryError as e:
                logger.warning("High-priority notification lost: %s", e.message)
                result.warnings.append(f"High-priority notification not delivered: {e.message}")
                self.stats["dropped"] += 1
                return result
            finally:
                self._forget_batch_message()

        self.stats["delivered"] += 1
        result.delivered = True
        return result

    async def _add_normal(self, text: str, priority: Priority) -> NotifyResult:
        result = NotifyResult()
        self._purge_stale(result)

        while len(self.pending) >= self.max_queue_size:
            capacity = CapacityExceeded(
                f"Notification queue full ({self.max_queue_size}), flushing early",
                ErrorCode.QUEUE_FULL,
                {"max_queue_size": self.max_queue_size},
            )
            logger.warning(capacity.message)
            result.warnings.append(capacity.message)
            self.stats["forced_flushes"] += 1
            _text, warning = await self._flush()
            if warning:
                result.warnings.append(warning)

        self.pending.append(QueuedMessage(text=text, priority=priority, enqueued_at=self._clock()))
        if self.timer is None:
            self._arm_timer()
        result.queued = True
        return result

    def _purge_stale(self, result: NotifyResult) -> None:
        cutoff = self._clock() - 2 * self.window
        fresh = [m for m in self.pending if m.enqueued_at >= cutoff]
        dropped = len(self.pending) - len(fresh)
        if dropped:
            self.pending = fresh
            self.stats["dropped"] += dropped
            logger.warning("Dropped %d stale queued notification(s)", dropped)
            result.warnings.append(f"Dropped {dropped} stale queued notification(s)")

    def _arm_timer(self) -> None:
        task = asyncio.create_task(self._flush_after_window(), name="batch-window")
        self.timer = task
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _cancel_timer(self) -> None:
        timer, self.timer = self.timer, None
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()

    async def _flush_after_window(self) -> None:
        try:
            await asyncio.sleep(self.window)
        except asyncio.CancelledError:
            return
        await self._flush()

    async def _flush(self) -> tuple[str | None, str | None]:
        self._cancel_timer()
        if not self.pending:
            return None, None
        batch, self.pending = self.pending, []
        self.stats["flushes"] += 1
        return await self._deliver_batch([m.text for m in batch])

    async def _deliver_batch(self, texts: list[str]) -> tuple[str | None, str | None]:
        async with self._delivery_lock:
            delivered: list[str] = []
            warnings: list[str] = []
            for chunk in split_batch(texts):
                text, warning = await self._deliver_chunk(chunk)
                if text is not None:
                    delivered.append(text)
                if warning:
                    warnings.append(warning)
            return "\n\n".join(delivered) or None, "; ".join(warnings) or None

    async def _deliver_chunk(self, texts: list[str]) -> tuple[str | None, str | None]:
        if len(texts) == 1:
            return await self._send_standalone(texts[0], count=1)

        if self.edit_in_place and self._batch_handle is not None:
            edited = await self._try_edit_batch(texts)
            if edited is not None:
                return edited, None

        combined = compose_batch(texts)
        try:
            handle = await self.client.send(combined)
        except DeliveryError as e:
            self._forget_batch_message()
            return None, self._lost(len(texts), e)

        self.stats["delivered"] += len(texts)
        if self.edit_in_place:
            self._batch_handle = handle
            self._batch_texts = list(texts)
        return combined, None

    async def _send_standalone(self, text: str, count: int) -> tuple[str | None, str | None]:
        try:
            await self.client.send(text)
        except DeliveryError as e:
            return None, self._lost(count, e)
        finally:
            self._forget_batch_message()
        self.stats["delivered"] += count
        return text, None

    async def _try_edit_batch(self, texts: list[str]) -> str | None:
        merged = self._batch_texts + texts
        combined = compose_batch(merged)
        if len(combined) > MAX_MESSAGE_LENGTH:
            self._forget_batch_message()
            return None
        try:
            self._batch_handle = await self.client.edit(self._batch_handle, combined)
        except DeliveryError as e:
            logger.info("Editing previous batch message failed (%s), sending a new one", e.message)
            self._forget_batch_message()
            return None
        self._batch_texts = merged
        self.stats["delivered"] += len(texts)
        return combined

    def _forget_batch_message(self) -> None:
        self._batch_handle = None
        self._batch_texts = []

    def _lost(self, count: int, error: DeliveryError) -> str:
        self.stats["dropped"] += count
        logger.warning("Batch of %d notification(s) lost: %s", count, error.message)
        return f"{count} notification(s) not delivered: {error.message}"


async def batch_notifications(
    batcher: MessageBatcher, messages: Iterable[Mapping[str, Any]]
) -> int:
    """
    Queue several ``{"text": ..., "priority": ...}`` items in order.

    Items are queued as normal priority to keep them together; if any of
    them was high priority the whole set is flushed at once.

    Returns:
        Number of messages queued.
    """
    count = 0
    urgent = False
    for message in messages:
        priority = Priority(message.get("priority") or Priority.NORMAL)
        urgent = urgent or priority is Priority.HIGH
        await batcher.add(message["text"], Priority.NORMAL)
        count += 1
    if urgent:
        await batcher.flush()
    return count
