"""
Pytest configuration for opsrelay tests — shared fakes for the chat transport
and the clock, plus marker registration.
"""

import asyncio
from collections.abc import Sequence

import pytest

from opsrelay.config.settings import Settings
from opsrelay.core.types import ApprovalOption, MessageHandle
from opsrelay.delivery.client import DeliveryClient
from opsrelay.delivery.rate_limiter import RateLimiter

TEST_CHAT_ID = 424242
TEST_BOT_TOKEN = "123456789:AAHdqTcvCH1vGWJxfSeofSAs0K5PALDsaw"


# =============================================================================
# FAKES
# =============================================================================


class FakeTransport:
    """
    In-memory Transport. Records every call in order; queue exceptions in
    ``failures`` to make the next calls fail.
    """

    def __init__(self, chat_id: int = TEST_CHAT_ID) -> None:
        self.chat_id = chat_id
        self.calls: list[tuple[str, object]] = []
        self.sent: list[str] = []
        self.edits: list[tuple[MessageHandle, str]] = []
        self.choices: list[dict] = []
        self.failures: list[Exception] = []
        self.delay = 0.0
        self._next_message_id = 100

    async def initialize(self) -> None:
        self.calls.append(("initialize", None))

    async def shutdown(self) -> None:
        self.calls.append(("shutdown", None))

    def _new_handle(self) -> MessageHandle:
        self._next_message_id += 1
        return MessageHandle(chat_id=self.chat_id, message_id=self._next_message_id)

    async def _before_call(self) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures:
            raise self.failures.pop(0)

    async def send_message(self, text: str) -> MessageHandle:
        await self._before_call()
        self.sent.append(text)
        self.calls.append(("send", text))
        return self._new_handle()

    async def edit_message(self, handle: MessageHandle, text: str) -> MessageHandle:
        await self._before_call()
        self.edits.append((handle, text))
        self.calls.append(("edit", text))
        return handle

    async def send_choice_request(
        self,
        approval_id: str,
        header: str | None,
        question: str,
        options: Sequence[ApprovalOption],
    ) -> MessageHandle:
        await self._before_call()
        handle = self._new_handle()
        self.choices.append(
            {
                "approval_id": approval_id,
                "header": header,
                "question": question,
                "options": list(options),
                "handle": handle,
            }
        )
        self.calls.append(("choice", approval_id))
        return handle


class FakeClock:
    """Monotonic clock whose ``sleep`` advances time instead of waiting."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


# =============================================================================
# SHARED FIXTURES
# =============================================================================


@pytest.fixture
def fake_transport():
    return FakeTransport()


@pytest.fixture
def transport_factory():
    """The FakeTransport class, for tests that build their own instances."""
    return FakeTransport


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def delivery_client(fake_transport):
    """DeliveryClient with a roomy rate limit and no real backoff sleeps."""

    async def no_sleep(_seconds):
        await asyncio.sleep(0)

    return DeliveryClient(
        fake_transport,
        RateLimiter(max_requests=1000, window_seconds=1.0),
        max_attempts=3,
        base_delay=0.0,
        sleep=no_sleep,
    )


@pytest.fixture
def settings():
    """Settings with a valid Telegram section and fast test timings."""
    return Settings(
        telegram={"bot_token": TEST_BOT_TOKEN, "chat_id": TEST_CHAT_ID},
        batching={"window_seconds": 0.05, "max_queue_size": 5},
        approvals={
            "max_concurrent_approvals": 2,
            "default_timeout_seconds": 1.0,
            "sweep_interval_seconds": 0.05,
        },
        delivery={"retry_attempts": 2, "retry_base_delay": 0.0},
        shutdown_timeout=2.0,
    )


# =============================================================================
# PYTEST CONFIGURATION
# =============================================================================


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "unit: Fast unit tests with no external dependencies"
    )
    config.addinivalue_line(
        "markers", "slow: Tests that take more than 5 seconds"
    )
