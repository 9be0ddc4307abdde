from __future__ import annotations

from typing import Sequence

from aiogram import Bot
from aiogram.exceptions import TelegramBadRequest
from aiogram.types import InlineKeyboardButton, InlineKeyboardMarkup

from api.utils.logging import get_logger
from api.utils.payments import DecisionOption, MessageRef

logger = get_logger("bot.transport")


def build_decision_markup(options: Sequence[DecisionOption]) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(
        inline_keyboard=[
            [
                InlineKeyboardButton(text=option.label, callback_data=option.decision.encode())
                for option in options
            ]
        ]
    )


class AiogramTransport:
    """Deliver workflow messages through the Telegram bot."""

    def __init__(self, bot: Bot) -> None:
        self._bot = bot

    async def notify(self, user_id: int, text: str) -> None:
        await self._bot.send_message(user_id, text)

    async def notify_with_decision(
        self,
        operator_id: int,
        proof_ref: str,
        caption: str,
        options: Sequence[DecisionOption],
    ) -> MessageRef | None:
        message = await self._bot.send_photo(
            operator_id,
            photo=proof_ref,
            caption=caption,
            reply_markup=build_decision_markup(options),
        )
        return MessageRef(chat_id=message.chat.id, message_id=message.message_id)

    async def update_decision_affordance(self, message: MessageRef, text: str) -> None:
        # Proofs arrive as photos; plain-text messages have no caption to edit.
        try:
            await self._bot.edit_message_caption(
                chat_id=message.chat_id,
                message_id=message.message_id,
                caption=text,
                reply_markup=None,
            )
        except TelegramBadRequest:
            logger.debug(
                "Message has no caption; editing text instead",
                extra={"chat_id": message.chat_id, "message_id": message.message_id},
            )
            await self._bot.edit_message_text(
                text,
                chat_id=message.chat_id,
                message_id=message.message_id,
                reply_markup=None,
            )


__all__ = ["AiogramTransport", "build_decision_markup"]
