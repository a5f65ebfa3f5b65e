"""Tests for opsrelay.delivery.client — retry, backoff and error classification"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from opsrelay.core.exceptions import (
    DeliveryError,
    ErrorCode,
    PermanentDeliveryError,
    TransientDeliveryError,
)
from opsrelay.core.types import ApprovalOption, MessageHandle
from opsrelay.delivery.client import DeliveryClient, classify_error
from opsrelay.delivery.rate_limiter import RateLimiter


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def client(fake_transport, sleeps):
    async def record_sleep(seconds):
        sleeps.append(seconds)

    return DeliveryClient(
        fake_transport,
        RateLimiter(max_requests=100, window_seconds=1.0),
        max_attempts=3,
        base_delay=1.0,
        sleep=record_sleep,
    )


class TestClassifyError:
    def test_delivery_errors_pass_through(self):
        err = TransientDeliveryError("slow down", retry_after=3)
        assert classify_error(err) is err

    @pytest.mark.parametrize("exc", [TimeoutError("t"), ConnectionError("c"), OSError("o")])
    def test_network_errors_are_transient(self, exc):
        assert isinstance(classify_error(exc), TransientDeliveryError)

    def test_unknown_errors_are_permanent(self):
        err = classify_error(ValueError("bad chat"))
        assert isinstance(err, PermanentDeliveryError)
        assert "bad chat" in err.message


class TestBackoff:
    def test_exponential_backoff(self, client):
        assert [client.backoff_delay(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]

    def test_invalid_attempts(self, fake_transport):
        with pytest.raises(ValueError):
            DeliveryClient(fake_transport, max_attempts=0)


class TestSend:
    @pytest.mark.asyncio
    async def test_send_returns_handle(self, client, fake_transport):
        handle = await client.send("hello")
        assert isinstance(handle, MessageHandle)
        assert fake_transport.sent == ["hello"]
        assert client.stats["sent"] == 1

    @pytest.mark.asyncio
    async def test_edit(self, client, fake_transport):
        handle = await client.send("v1")
        assert await client.edit(handle, "v2") == handle
        assert fake_transport.edits == [(handle, "v2")]
        assert client.stats["edited"] == 1

    @pytest.mark.asyncio
    async def test_send_choice(self, client, fake_transport):
        options = [ApprovalOption("Yes"), ApprovalOption("No")]
        await client.send_choice("abcd1234", "Deploy", "Ship it?", options)
        assert fake_transport.choices[0]["approval_id"] == "abcd1234"
        assert fake_transport.choices[0]["options"] == options

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self, client, fake_transport, sleeps):
        fake_transport.failures = [TransientDeliveryError("timeout")]

        await client.send("hello")

        assert fake_transport.sent == ["hello"]
        assert sleeps == [1.0]
        assert client.stats["retried"] == 1

    @pytest.mark.asyncio
    async def test_raw_network_error_is_retried(self, client, fake_transport, sleeps):
        fake_transport.failures = [ConnectionError("reset"), TimeoutError()]

        await client.send("hello")

        assert sleeps == [1.0, 2.0]
        assert fake_transport.sent == ["hello"]

    @pytest.mark.asyncio
    async def test_retry_after_hint_raises_delay(self, client, fake_transport, sleeps):
        fake_transport.failures = [TransientDeliveryError("flood", retry_after=7.0)]

        await client.send("hello")

        assert sleeps == [7.0]

    @pytest.mark.asyncio
    async def test_exhausted_retries_become_permanent(self, client, fake_transport, sleeps):
        fake_transport.failures = [TransientDeliveryError("down") for _ in range(3)]

        with pytest.raises(PermanentDeliveryError) as exc_info:
            await client.send("hello")

        err = exc_info.value
        assert err.attempts == 3
        assert err.error_code == ErrorCode.RETRIES_EXHAUSTED
        assert err.details["operation"] == "send"
        assert isinstance(err.cause, TransientDeliveryError)
        assert sleeps == [1.0, 2.0]
        assert fake_transport.sent == []
        assert client.stats["failed"] == 1

    @pytest.mark.asyncio
    async def test_permanent_failure_is_not_retried(self, client, fake_transport, sleeps):
        fake_transport.failures = [PermanentDeliveryError("chat not found")]

        with pytest.raises(PermanentDeliveryError) as exc_info:
            await client.send("hello")

        assert exc_info.value.error_code == ErrorCode.DELIVERY_PERMANENT
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_every_attempt_is_throttled(self, fake_transport):
        limiter = RateLimiter()
        limiter.throttle = AsyncMock(return_value=0.0)
        client = DeliveryClient(
            fake_transport, limiter, max_attempts=3, base_delay=0.0, sleep=AsyncMock()
        )
        fake_transport.failures = [TransientDeliveryError("x"), TransientDeliveryError("y")]

        await client.send("hello")

        assert limiter.throttle.await_count == 3

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self, client, fake_transport):
        fake_transport.failures = [asyncio.CancelledError()]

        with pytest.raises(asyncio.CancelledError):
            await client.send("hello")

    @pytest.mark.asyncio
    async def test_errors_are_delivery_errors(self, client, fake_transport):
        fake_transport.failures = [RuntimeError("boom")]
        with pytest.raises(DeliveryError):
            await client.send("hello")
