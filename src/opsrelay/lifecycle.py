"""Lifecycle Management — signal handling and graceful shutdown for the relay."""

from __future__ import annotations

import asyncio
import inspect
import signal
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from opsrelay.core.structured_logger import get_logger

if TYPE_CHECKING:
    from opsrelay.approval.coordinator import ApprovalCoordinator
    from opsrelay.batching.batcher import MessageBatcher

logger = get_logger("Lifecycle")


class ShutdownPriority(Enum):
    """Shutdown priority levels (higher = shuts down first)."""

    CRITICAL = 100
    HIGH = 75
    NORMAL = 50
    LOW = 25
    LOWEST = 0


@dataclass
class ShutdownCallback:
    """Shutdown callback with priority."""

    callback: Callable
    priority: ShutdownPriority
    name: str
    timeout: float | None = None


class ShutdownController:
    """
    Drains the batcher and releases every waiting approval on termination.

    Order: final batch flush, batcher timer stop, cancel outstanding
    approvals (their pollers get CANCELLED), stop the approval sweep, then
    registered callbacks by priority (e.g. stopping the Telegram listener).
    Each step is time-boxed; a failing step is logged and the next one runs.
    """

    def __init__(
        self,
        batcher: MessageBatcher,
        coordinator: ApprovalCoordinator,
        shutdown_timeout: float = 10.0,
    ) -> None:
        self.batcher = batcher
        self.coordinator = coordinator
        self.shutdown_timeout = shutdown_timeout
        self.shutdown_callbacks: list[ShutdownCallback] = []
        self._shutdown_event = asyncio.Event()
        self._shutdown_in_progress = False
        self._completed = False
        self._loop: asyncio.AbstractEventLoop | None = None
        self._previous_handlers: dict[int, Any] = {}

    def install_signal_handlers(self) -> None:
        """Setup OS signal handlers for graceful shutdown."""
        self._loop = asyncio.get_running_loop()

        def signal_handler(signum, _frame):
            signal_name = signal.Signals(signum).name
            logger.info("Received %s, initiating graceful shutdown", signal_name)
            self._loop.call_soon_threadsafe(self._shutdown_event.set)

        for signum in (signal.SIGINT, signal.SIGTERM):
            self._previous_handlers[signum] = signal.signal(signum, signal_handler)
        logger.debug("Signal handlers registered")

    def request_shutdown(self) -> None:
        """Trigger shutdown from code, as a signal would."""
        self._shutdown_event.set()

    async def wait_for_shutdown(self) -> None:
        """Wait for shutdown signal."""
        await self._shutdown_event.wait()

    @property
    def shutting_down(self) -> bool:
        return self._shutdown_in_progress or self._completed

    async def shutdown(self) -> dict[str, Any]:
        """Graceful shutdown; never raises. Returns a summary of what was done."""
        summary: dict[str, Any] = {"flushed": None, "cancelled": 0, "completed": False}
        if self._completed:
            logger.debug("Shutdown already completed")
            summary["completed"] = True
            return summary
        if self._shutdown_in_progress:
            logger.warning("Shutdown already in progress")
            return summary

        self._shutdown_in_progress = True
        self._shutdown_event.set()
        loop = asyncio.get_running_loop()
        shutdown_start = loop.time()
        step_timeout = self.shutdown_timeout * 0.5
        logger.info("Starting graceful shutdown", timeout_seconds=self.shutdown_timeout)

        try:
            try:
                summary["flushed"] = await asyncio.wait_for(self.batcher.flush(), timeout=step_timeout)
            except TimeoutError:
                logger.error("Final batch flush timed out")
            except Exception as e:
                logger.error("Error flushing batcher: %s", e, exc_info=True)

            await self._run_step("batcher.stop", self.batcher.stop(), 5.0)

            try:
                summary["cancelled"] = await asyncio.wait_for(
                    self.coordinator.cancel_all(reason="shutdown"), timeout=step_timeout
                )
            except TimeoutError:
                logger.error("Cancelling approvals timed out")
            except Exception as e:
                logger.error("Error cancelling approvals: %s", e, exc_info=True)

            await self._run_step("coordinator.stop", self.coordinator.stop(), 5.0)
            await self._run_shutdown_callbacks()
            self._restore_signal_handlers()

            self._completed = True
            summary["completed"] = True
            logger.info(
                "Shutdown completed",
                duration_seconds=loop.time() - shutdown_start,
                cancelled_approvals=summary["cancelled"],
            )
        finally:
            self._shutdown_in_progress = False
        return summary

    def _restore_signal_handlers(self) -> None:
        for signum, handler in self._previous_handlers.items():
            if handler is not None:
                signal.signal(signum, handler)
        self._previous_handlers.clear()

    async def _run_step(self, name: str, awaitable, timeout: float) -> None:
        try:
            await asyncio.wait_for(awaitable, timeout=timeout)
        except TimeoutError:
            logger.error("Shutdown step timed out: %s", name)
        except Exception as e:
            logger.error("Error in shutdown step %s: %s", name, e, exc_info=True)

    async def _run_shutdown_callbacks(self) -> None:
        """Run registered shutdown callbacks in priority order."""
        sorted_callbacks = sorted(
            self.shutdown_callbacks, key=lambda cb: cb.priority.value, reverse=True
        )
        for cb in sorted_callbacks:
            cb_timeout = cb.timeout or 10.0
            try:
                if inspect.iscoroutinefunction(cb.callback):
                    await asyncio.wait_for(cb.callback(), timeout=cb_timeout)
                else:
                    cb.callback()
            except TimeoutError:
                logger.error("Shutdown callback timed out: %s", cb.name)
            except Exception as e:
                logger.error("Error in shutdown callback %s: %s", cb.name, e, exc_info=True)

    def register_shutdown_callback(
        self,
        callback: Callable,
        priority: ShutdownPriority = ShutdownPriority.NORMAL,
        name: str | None = None,
        timeout: float | None = None,
    ) -> None:
        """Register a callback to be executed during shutdown."""
        callback_name = name or getattr(callback, "__name__", "unknown")
        self.shutdown_callbacks.append(
            ShutdownCallback(
                callback=callback, priority=priority, name=callback_name, timeout=timeout
            )
        )
        logger.debug("Registered shutdown callback: %s", callback_name, priority=priority.value)
