"""Dependency factories for the Relay — decouples creation from core logic."""

from __future__ import annotations

from dataclasses import dataclass

from opsrelay.config.settings import Settings
from opsrelay.core.exceptions import ErrorCode, RelayError
from opsrelay.core.structured_logger import get_logger
from opsrelay.delivery.transport import TelegramTransport, Transport
from opsrelay.interfaces.telegram.interface import TelegramInterface, build_application
from opsrelay.lifecycle import ShutdownPriority
from opsrelay.relay import Relay

logger = get_logger("Factories")


def _require_telegram(settings: Settings):
    if settings.telegram is None:
        raise RelayError(
            "Telegram configuration (bot_token, chat_id) is required",
            ErrorCode.CONFIGURATION_ERROR,
        )
    return settings.telegram


def create_transport(settings: Settings) -> TelegramTransport:
    """Return a standalone TelegramTransport (outbound only, no listener)."""
    telegram = _require_telegram(settings)
    logger.info("Creating TelegramTransport", chat_id=str(telegram.chat_id))
    return TelegramTransport(
        chat_id=telegram.chat_id,
        bot_token=telegram.bot_token,
        parse_mode=telegram.parse_mode,
        request_timeout=telegram.request_timeout,
    )


def create_relay(settings: Settings, transport: Transport | None = None) -> Relay:
    """Return a Relay over *transport*, or over a new TelegramTransport."""
    if transport is None:
        transport = create_transport(settings)
    logger.info(
        "Creating Relay",
        batch_window=settings.batching.window_seconds,
        max_approvals=settings.approvals.max_concurrent_approvals,
    )
    return Relay(transport, settings)


@dataclass
class TelegramRuntime:
    """A Relay wired to Telegram in both directions."""

    relay: Relay
    transport: TelegramTransport
    interface: TelegramInterface

    async def start(self) -> None:
        await self.transport.initialize()
        await self.relay.start()
        await self.interface.start()

    async def shutdown(self) -> dict:
        return await self.relay.shutdown()


def create_telegram_runtime(settings: Settings) -> TelegramRuntime:
    """
    Build the Relay, TelegramTransport and TelegramInterface around one
    python-telegram-bot Application so outbound calls and the callback
    listener share a Bot. Relay shutdown also stops the listener.
    """
    telegram = _require_telegram(settings)
    application = build_application(telegram.bot_token)
    transport = TelegramTransport(
        chat_id=telegram.chat_id,
        bot=application.bot,
        parse_mode=telegram.parse_mode,
    )
    relay = create_relay(settings, transport)
    interface = TelegramInterface(relay, application)
    relay.shutdown_controller.register_shutdown_callback(
        interface.stop, priority=ShutdownPriority.LOW, name="telegram_listener"
    )
    relay.shutdown_controller.register_shutdown_callback(
        transport.shutdown, priority=ShutdownPriority.LOWEST, name="telegram_transport"
    )
    logger.info("Telegram runtime created")
    return TelegramRuntime(relay=relay, transport=transport, interface=interface)
