"""
Chat Transport — the outbound boundary of the relay
====================================================

``Transport`` is the protocol every outbound call goes through. The only
production implementation is ``TelegramTransport`` (python-telegram-bot);
tests substitute an in-memory fake.

Transports raise ``TransientDeliveryError`` or ``PermanentDeliveryError`` so
that DeliveryClient can decide what to retry without knowing the library.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import timedelta
from typing import Protocol, runtime_checkable

from telegram import Bot, InlineKeyboardButton, InlineKeyboardMarkup
from telegram.constants import ParseMode
from telegram.error import (
    BadRequest,
    ChatMigrated,
    Forbidden,
    InvalidToken,
    NetworkError,
    RetryAfter,
    TelegramError,
    TimedOut,
)
from telegram.request import HTTPXRequest

from opsrelay.approval.callbacks import encode_callback_data
from opsrelay.core.exceptions import PermanentDeliveryError, TransientDeliveryError
from opsrelay.core.types import ApprovalOption, MessageHandle
from opsrelay.interfaces.telegram.renderers import format_choice_request

logger = logging.getLogger(__name__)

# Telegram rejects messages longer than this
MAX_MESSAGE_LENGTH = 4096


@runtime_checkable
class Transport(Protocol):
    """What the relay needs from a chat transport."""

    async def send_message(self, text: str) -> MessageHandle: ...

    async def edit_message(self, handle: MessageHandle, text: str) -> MessageHandle: ...

    async def send_choice_request(
        self,
        approval_id: str,
        header: str | None,
        question: str,
        options: Sequence[ApprovalOption],
    ) -> MessageHandle: ...


def _retry_after_seconds(value: int | float | timedelta) -> float:
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


def classify_telegram_error(exc: TelegramError) -> TransientDeliveryError | PermanentDeliveryError:
    """Map a python-telegram-bot error onto the delivery taxonomy."""
    # BadRequest subclasses NetworkError, so it must be checked first
    if isinstance(exc, (BadRequest, Forbidden, InvalidToken, ChatMigrated)):
        return PermanentDeliveryError(
            f"Telegram rejected the request: {exc}",
            cause=exc,
            details={"telegram_error": type(exc).__name__},
        )
    if isinstance(exc, RetryAfter):
        return TransientDeliveryError(
            f"Telegram flood control: {exc}",
            retry_after=_retry_after_seconds(exc.retry_after),
            details={"telegram_error": "RetryAfter"},
        )
    if isinstance(exc, (TimedOut, NetworkError)):
        return TransientDeliveryError(
            f"Telegram network error: {exc}",
            details={"telegram_error": type(exc).__name__},
        )
    return TransientDeliveryError(
        f"Telegram error: {exc}", details={"telegram_error": type(exc).__name__}
    )


def _truncate(text: str) -> str:
    if len(text) <= MAX_MESSAGE_LENGTH:
        return text
    return text[: MAX_MESSAGE_LENGTH - 1] + "…"


class TelegramTransport:
    """
    Telegram Bot API transport for one fixed destination chat.

    The ``Bot`` is injected so the interface layer can share the one owned by
    its ``Application``; when omitted a bot is built from the token.
    """

    def __init__(
        self,
        chat_id: int | str,
        bot: Bot | None = None,
        bot_token: str | None = None,
        parse_mode: str = ParseMode.HTML,
        request_timeout: float = 10.0,
    ) -> None:
        if bot is None:
            if not bot_token:
                raise ValueError("TelegramTransport needs either a Bot or a bot_token")
            bot = Bot(
                token=bot_token,
                request=HTTPXRequest(
                    connect_timeout=request_timeout, read_timeout=request_timeout
                ),
            )
        self.bot = bot
        self.chat_id = chat_id
        self.parse_mode = parse_mode
        self._initialized = False

    async def initialize(self) -> None:
        if not self._initialized:
            await self.bot.initialize()
            self._initialized = True

    async def shutdown(self) -> None:
        if self._initialized:
            await self.bot.shutdown()
            self._initialized = False

    async def send_message(self, text: str) -> MessageHandle:
        try:
            message = await self.bot.send_message(
                chat_id=self.chat_id,
                text=_truncate(text),
                parse_mode=self.parse_mode,
            )
        except TelegramError as e:
            raise classify_telegram_error(e) from e
        return MessageHandle(chat_id=self.chat_id, message_id=message.message_id)

    async def edit_message(self, handle: MessageHandle, text: str) -> MessageHandle:
        try:
            await self.bot.edit_message_text(
                text=_truncate(text),
                chat_id=handle.chat_id,
                message_id=handle.message_id,
                parse_mode=self.parse_mode,
            )
        except BadRequest as e:
            # Same text as before: the message already shows what we want
            if "not modified" in str(e).lower():
                return handle
            raise classify_telegram_error(e) from e
        except TelegramError as e:
            raise classify_telegram_error(e) from e
        return handle

    async def send_choice_request(
        self,
        approval_id: str,
        header: str | None,
        question: str,
        options: Sequence[ApprovalOption],
    ) -> MessageHandle:
        keyboard = InlineKeyboardMarkup(
            [
                [
                    InlineKeyboardButton(
                        option.label, callback_data=encode_callback_data(approval_id, index)
                    )
                ]
                for index, option in enumerate(options)
            ]
        )
        try:
            message = await self.bot.send_message(
                chat_id=self.chat_id,
                text=_truncate(format_choice_request(header, question, options)),
                parse_mode=self.parse_mode,
                reply_markup=keyboard,
            )
        except TelegramError as e:
            raise classify_telegram_error(e) from e
        logger.debug("Choice request %s sent as message %s", approval_id, message.message_id)
        return MessageHandle(chat_id=self.chat_id, message_id=message.message_id)
