from __future__ import annotations

import logging
from dataclasses import dataclass

from aiogram import Dispatcher, F, Router
from aiogram.filters import Command, CommandStart
from aiogram.types import CallbackQuery, Message

from api.utils.decisions import MalformedDecisionError, decode_decision, is_decision_data
from api.utils.keys import KeyService
from api.utils.payments import (
    DecisionPressed,
    FreeText,
    MessageRef,
    PaymentWorkflow,
    ProofSubmitted,
)

HELP_TEXT = (
    "Команды:\n"
    "/start - регистрация\n"
    "/getkey - получить ключ\n"
    "/status - срок действия ключа\n"
    "Чтобы продлить подписку, отправьте фото чека об оплате."
)

router = Router(name="payments")


@dataclass(slots=True)
class PaymentHandlerDependencies:
    workflow: PaymentWorkflow
    keys: KeyService
    logger: logging.Logger


_deps: PaymentHandlerDependencies | None = None


def setup_payment_handlers(dp: Dispatcher, deps: PaymentHandlerDependencies) -> None:
    global _deps
    _deps = deps
    dp.include_router(router)
    deps.logger.info("Payment handlers initialised")


def _get_deps() -> PaymentHandlerDependencies:
    if _deps is None:
        raise RuntimeError("Payment handler dependencies not configured")
    return _deps


@router.message(CommandStart())
async def handle_start(message: Message) -> None:
    user = message.from_user
    if user is None:
        return
    reply = await _get_deps().keys.register(user.id, user.username)
    await message.answer(reply)


@router.message(Command("getkey"))
async def handle_get_key(message: Message) -> None:
    if message.from_user is None:
        return
    await message.answer(await _get_deps().keys.issue_key(message.from_user.id))


@router.message(Command("status"))
async def handle_status(message: Message) -> None:
    if message.from_user is None:
        return
    await message.answer(await _get_deps().keys.key_status(message.from_user.id))


@router.message(Command("help"))
async def handle_help(message: Message) -> None:
    await message.answer(HELP_TEXT)


@router.message(F.photo)
async def handle_payment_proof(message: Message) -> None:
    user = message.from_user
    if user is None or not message.photo:
        return
    # The last size is the largest one.
    proof_ref = message.photo[-1].file_id
    await _get_deps().workflow.submit_proof(
        ProofSubmitted(sender_id=user.id, proof_ref=proof_ref, sender_name=user.username)
    )


@router.callback_query(F.data.func(is_decision_data))
async def handle_decision(callback: CallbackQuery) -> None:
    deps = _get_deps()
    try:
        decision = decode_decision(callback.data or "")
    except MalformedDecisionError:
        deps.logger.warning(
            "Dropping malformed decision callback",
            extra={"data": callback.data, "telegram_id": callback.from_user.id},
        )
        await callback.answer()
        return

    message = None
    if callback.message is not None:
        message = MessageRef(chat_id=callback.message.chat.id, message_id=callback.message.message_id)

    await callback.answer()
    await deps.workflow.handle_decision(
        DecisionPressed(operator_id=callback.from_user.id, decision=decision, message=message)
    )


FREE_TEXT = F.text & ~F.text.startswith("/")


@router.message(FREE_TEXT)
async def handle_free_text(message: Message) -> None:
    user = message.from_user
    if user is None:
        return
    handled = await _get_deps().workflow.capture_rejection_reason(
        FreeText(sender_id=user.id, text=message.text or "")
    )
    if not handled:
        _get_deps().logger.debug("Ignoring free text", extra={"telegram_id": user.id})


__all__ = ["PaymentHandlerDependencies", "router", "setup_payment_handlers"]
