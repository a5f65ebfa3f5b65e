"""
Telegram Interface - Inbound Adapter for the Relay
==================================================

Receives button presses (callback queries) from Telegram and hands them to
the injected Relay. It does not build the Relay or load configuration; the
Application is shared with TelegramTransport so both sides use one Bot.

Architecture:
    Telegram → Application (polling) → TelegramInterface → Relay.on_callback
"""

import logging
from typing import TYPE_CHECKING

from telegram import Update
from telegram.error import TelegramError
from telegram.ext import Application, CallbackQueryHandler, ContextTypes

from opsrelay.approval.callbacks import CALLBACK_TYPE

if TYPE_CHECKING:
    from opsrelay.relay import Relay

logger = logging.getLogger(__name__)


def build_application(bot_token: str) -> Application:
    """Application without its own updater loop; start/stop are driven by TelegramInterface."""
    return Application.builder().token(bot_token).build()


class TelegramInterface:
    """
    Listens for callback queries and forwards them to ``Relay.on_callback``.

    Args:
        relay: the Relay whose coordinator owns the outstanding approvals
        application: a python-telegram-bot Application (see build_application)
    """

    def __init__(self, relay: "Relay", application: Application) -> None:
        self.relay = relay
        self.application = application
        self._running = False

        # Callback data is JSON tagged with the approval type; anything else
        # still reaches the relay so it is counted as malformed.
        self.application.add_handler(CallbackQueryHandler(self._handle_callback_query))
        logger.info("Callback handler registered for '%s' payloads", CALLBACK_TYPE)

    @property
    def is_running(self) -> bool:
        return self._running

    async def _handle_callback_query(
        self,
        update: Update,
        context: ContextTypes.DEFAULT_TYPE
    ) -> None:
        query = update.callback_query
        if query is None:
            return

        # Telegram keeps the button spinner going until the query is answered
        try:
            await query.answer()
        except TelegramError as e:
            logger.warning("Could not answer callback query: %s", e)

        origin = None
        if query.message is not None:
            origin = query.message.chat.id
        elif update.effective_chat is not None:
            origin = update.effective_chat.id

        handled = await self.relay.on_callback(query.data, origin)
        logger.debug("Callback query processed (handled=%s)", handled)

    async def start(self) -> None:
        """Initialize the application and start long polling for callback queries."""
        if self._running:
            return
        await self.application.initialize()
        await self.application.start()
        await self.application.updater.start_polling(
            allowed_updates=[Update.CALLBACK_QUERY],
            drop_pending_updates=True,
        )
        self._running = True
        logger.info("Telegram listener started")

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self.application.updater and self.application.updater.running:
            await self.application.updater.stop()
        await self.application.stop()
        await self.application.shutdown()
        logger.info("Telegram listener stopped")
