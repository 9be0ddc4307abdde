"""Payment approval workflow: proof submission, operator decisions, renewal."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable, Protocol, Sequence, TypeVar

from api.integrations.panel.errors import KeyNotFoundError, ProvisioningError
from api.utils import db
from api.utils.db import Payment, PaymentStatus, PersistenceError, User
from api.utils.decisions import Decision, DecisionAction, MalformedDecisionError
from api.utils.logging import get_logger
from api.utils.pending import PendingReasonTracker

logger = get_logger("payments")

T = TypeVar("T")

DEFAULT_RENEWAL_DAYS = 30
DATE_FORMAT = "%d.%m.%Y"

REGISTER_FIRST_TEXT = "Сначала выполните /start"
PAYMENT_SAVE_FAILED_TEXT = "Не удалось сохранить оплату. Попробуйте позже"
PAYMENT_SUBMITTED_TEXT = "Платеж отправлен на проверку"
NO_KEY_TEXT = "У вас нет активного ключа. Запросите /getkey"
KEY_MISSING_TEXT = "Ключ не найден. Запросите новый через /getkey"
EXTEND_FAILED_TEXT = "Не удалось продлить подписку. Свяжитесь с админом"
PAYMENT_CONFIRMED_TEXT = "Оплата подтверждена! Новый срок: {expires}"
OPERATOR_CONFIRMED_TEXT = "Оплата подтверждена"
ASK_REASON_TEXT = "Отправьте причину отказа сообщением"
EMPTY_REASON_TEXT = "Причина отказа не может быть пустой. Отправьте текст сообщением"
PAYMENT_REJECTED_TEXT = "Оплата отклонена: {comment}"
REASON_DELIVERED_TEXT = "Комментарий отправлен пользователю"
REASON_NOT_DELIVERED_TEXT = "Отказ сохранён, но сообщение пользователю не доставлено"
REASON_FAILED_TEXT = "Не удалось сохранить отказ. Отправьте причину ещё раз"
ALREADY_PROCESSED_TEXT = "Платёж уже обработан"

CONFIRM_LABEL = "✅ Подтвердить"
REJECT_LABEL = "❌ Отклонить"


class UnregisteredUserError(RuntimeError):
    """Raised when an action requires a registered user."""


def format_expiry(value: datetime) -> str:
    return value.strftime(DATE_FORMAT)


# === Events and collaborator contracts ===


@dataclass(frozen=True, slots=True)
class MessageRef:
    chat_id: int
    message_id: int


@dataclass(frozen=True, slots=True)
class DecisionOption:
    label: str
    decision: Decision


@dataclass(frozen=True, slots=True)
class ProofSubmitted:
    sender_id: int
    proof_ref: str
    sender_name: str | None = None


@dataclass(frozen=True, slots=True)
class DecisionPressed:
    operator_id: int
    decision: Decision
    message: MessageRef | None = None


@dataclass(frozen=True, slots=True)
class FreeText:
    sender_id: int
    text: str


class Transport(Protocol):
    async def notify(self, user_id: int, text: str) -> None:
        ...

    async def notify_with_decision(
        self,
        operator_id: int,
        proof_ref: str,
        caption: str,
        options: Sequence[DecisionOption],
    ) -> MessageRef | None:
        ...

    async def update_decision_affordance(self, message: MessageRef, text: str) -> None:
        ...


class RecordStore(Protocol):
    def get_user_by_handle(self, telegram_id: int) -> User | None:
        ...

    def get_user_by_id(self, user_id: int) -> User | None:
        ...

    def confirm_payment(self, payment_id: int, user_id: int, key_id: str, expires_at: datetime) -> bool:
        ...

    def create_payment(self, user_id: int, proof_ref: str) -> Payment:
        ...

    def get_payment(self, payment_id: int) -> Payment | None:
        ...

    def set_payment_status(
        self, payment_id: int, status: PaymentStatus, comment: str | None = None
    ) -> bool:
        ...


class KeyExtender(Protocol):
    async def extend_key(self, key_id: str, days: int) -> datetime:
        ...


def decision_options(payment_id: int) -> list[DecisionOption]:
    return [
        DecisionOption(CONFIRM_LABEL, Decision(DecisionAction.CONFIRM, payment_id)),
        DecisionOption(REJECT_LABEL, Decision(DecisionAction.REJECT, payment_id)),
    ]


# === Workflow ===


class PaymentWorkflow:
    """Drive a payment from ``pending`` to ``confirmed`` or ``rejected``.

    Loading, provisioning and the store write of each transition run under a
    deadline. External calls happen before the matching store write, and
    messages are only sent after the write succeeded. Any failure leaves the
    payment pending so an operator can retry.
    """

    def __init__(
        self,
        *,
        provisioning: KeyExtender,
        transport: Transport,
        operator_ids: Iterable[int],
        store: RecordStore | Any = db,
        tracker: PendingReasonTracker | None = None,
        renewal_days: int = DEFAULT_RENEWAL_DAYS,
        timeout: float | None = 30.0,
    ) -> None:
        self._store = store
        self._provisioning = provisioning
        self._transport = transport
        self._tracker = tracker or PendingReasonTracker()
        self._operators = frozenset(operator_ids)
        self._renewal_days = renewal_days
        self._timeout = timeout

    @property
    def tracker(self) -> PendingReasonTracker:
        return self._tracker

    def is_operator(self, telegram_id: int) -> bool:
        return telegram_id in self._operators

    # --- helpers ---

    async def _call_store(self, operation: Callable[..., T], *args: Any) -> T:
        return await asyncio.to_thread(operation, *args)

    async def _notify(self, user_id: int, text: str) -> bool:
        try:
            await self._transport.notify(user_id, text)
        except Exception:
            logger.exception("Failed to send notification", extra={"chat_id": user_id})
            return False
        return True

    async def _update_affordance(self, message: MessageRef | None, text: str) -> None:
        if message is None:
            return
        try:
            await self._transport.update_decision_affordance(message, text)
        except Exception:
            logger.exception(
                "Failed to update decision message",
                extra={"chat_id": message.chat_id, "message_id": message.message_id},
            )

    async def _require_user(self, telegram_id: int) -> User:
        user = await self._call_store(self._store.get_user_by_handle, telegram_id)
        if user is None:
            raise UnregisteredUserError(f"user {telegram_id} is not registered")
        return user

    async def _load_payment(self, payment_id: int) -> Payment:
        payment = await self._call_store(self._store.get_payment, payment_id)
        if payment is None:
            raise MalformedDecisionError(f"unknown payment id: {payment_id}")
        return payment

    async def _load_owner(self, payment: Payment) -> User:
        user = await self._call_store(self._store.get_user_by_id, payment.user_id)
        if user is None:
            raise PersistenceError(f"payment {payment.id} references missing user {payment.user_id}")
        return user

    async def _with_deadline(self, operation: Awaitable[T]) -> T:
        async with asyncio.timeout(self._timeout):
            return await operation

    # --- submit proof ---

    async def submit_proof(self, event: ProofSubmitted) -> Payment | None:
        try:
            user, payment = await self._with_deadline(self._create_payment(event))
        except UnregisteredUserError:
            logger.info("Proof submitted by unregistered user", extra={"telegram_id": event.sender_id})
            await self._notify(event.sender_id, REGISTER_FIRST_TEXT)
            return None
        except (PersistenceError, TimeoutError):
            logger.exception("Failed to store payment proof", extra={"telegram_id": event.sender_id})
            await self._notify(event.sender_id, PAYMENT_SAVE_FAILED_TEXT)
            return None

        display_name = event.sender_name or user.username or str(event.sender_id)
        caption = f"Новый платеж от @{display_name} (ID {user.id})"
        options = decision_options(payment.id)
        for operator_id in sorted(self._operators):
            try:
                await self._transport.notify_with_decision(operator_id, payment.proof_ref, caption, options)
            except Exception:
                logger.exception(
                    "Failed to forward payment proof to operator",
                    extra={"operator_id": operator_id, "payment_id": payment.id},
                )

        await self._notify(event.sender_id, PAYMENT_SUBMITTED_TEXT)
        return payment

    async def _create_payment(self, event: ProofSubmitted) -> tuple[User, Payment]:
        user = await self._require_user(event.sender_id)
        payment = await self._call_store(self._store.create_payment, user.id, event.proof_ref)
        return user, payment

    # --- operator decisions ---

    async def handle_decision(self, event: DecisionPressed) -> bool:
        if not self.is_operator(event.operator_id):
            logger.warning(
                "Ignoring decision from non-operator",
                extra={"telegram_id": event.operator_id, "payment_id": event.decision.payment_id},
            )
            return False

        if event.decision.action is DecisionAction.CONFIRM:
            return await self.confirm(event.operator_id, event.decision.payment_id, event.message)
        return await self.request_rejection_reason(
            event.operator_id, event.decision.payment_id, event.message
        )

    async def confirm(self, operator_id: int, payment_id: int, message: MessageRef | None = None) -> bool:
        """Extend the owner's key and mark the payment confirmed.

        The deadline covers loading, provisioning and the store write. Messages
        go out afterwards so a slow chat cannot undo a committed confirmation.
        """

        log_extra = {"operator_id": operator_id, "payment_id": payment_id}
        try:
            user, expires_at, notice = await self._with_deadline(self._confirm(payment_id, log_extra))
        except MalformedDecisionError:
            logger.warning("Confirmation references unknown payment", extra=log_extra)
            return False
        except PersistenceError:
            logger.exception("Failed to persist payment confirmation", extra=log_extra)
            return False
        except TimeoutError:
            logger.error("Payment confirmation timed out; payment stays pending", extra=log_extra)
            return False

        if expires_at is None:
            if user is not None and notice is not None:
                await self._notify(user.telegram_id, notice)
            return False

        await self._notify(
            user.telegram_id, PAYMENT_CONFIRMED_TEXT.format(expires=format_expiry(expires_at))
        )
        await self._update_affordance(message, OPERATOR_CONFIRMED_TEXT)
        logger.info("Payment confirmed", extra={**log_extra, "user_id": user.id})
        return True

    async def _confirm(
        self, payment_id: int, log_extra: dict
    ) -> tuple[User | None, datetime | None, str | None]:
        payment = await self._load_payment(payment_id)
        if not payment.is_pending:
            logger.info(
                "Payment already processed; ignoring confirmation",
                extra={**log_extra, "status": payment.status.value},
            )
            return None, None, None

        user = await self._load_owner(payment)
        if not user.has_key:
            logger.info("Cannot confirm payment: user has no key", extra={**log_extra, "user_id": user.id})
            return user, None, NO_KEY_TEXT

        try:
            expires_at = await self._provisioning.extend_key(user.key_id, self._renewal_days)
        except KeyNotFoundError:
            logger.warning("Key vanished from panel", extra={**log_extra, "key_id": user.key_id})
            return user, None, KEY_MISSING_TEXT
        except ProvisioningError:
            logger.exception("Failed to extend key", extra={**log_extra, "key_id": user.key_id})
            return user, None, EXTEND_FAILED_TEXT

        try:
            confirmed = await self._call_store(
                self._store.confirm_payment, payment.id, user.id, user.key_id, expires_at
            )
        except PersistenceError:
            logger.exception(
                "Key extended but confirmation was not stored",
                extra={**log_extra, "key_id": user.key_id},
            )
            return user, None, EXTEND_FAILED_TEXT

        if not confirmed:
            # TODO: decide with the business whether to roll back the panel extension here.
            logger.warning(
                "Payment was finalised by another operator after the key was extended",
                extra={**log_extra, "key_id": user.key_id},
            )
            return user, None, None
        return user, expires_at, None

    async def request_rejection_reason(
        self, operator_id: int, payment_id: int, message: MessageRef | None = None
    ) -> bool:
        log_extra = {"operator_id": operator_id, "payment_id": payment_id}
        try:
            payment = await self._with_deadline(self._load_payment(payment_id))
        except MalformedDecisionError:
            logger.warning("Rejection references unknown payment", extra=log_extra)
            return False
        except (PersistenceError, TimeoutError):
            logger.exception("Failed to load payment for rejection", extra=log_extra)
            return False

        if not payment.is_pending:
            logger.info(
                "Payment already processed; ignoring rejection",
                extra={**log_extra, "status": payment.status.value},
            )
            return False

        await self._tracker.set(operator_id, payment_id)
        await self._update_affordance(message, ASK_REASON_TEXT)
        logger.info("Awaiting rejection reason", extra=log_extra)
        return True

    async def capture_rejection_reason(self, event: FreeText) -> bool:
        """Consume operator free text as a rejection reason.

        Returns ``True`` when the text belonged to this transition, whatever the
        outcome, and ``False`` when it should be handled elsewhere.
        """

        if not self.is_operator(event.sender_id):
            return False
        payment_id, found = await self._tracker.take_if_present(event.sender_id)
        if not found:
            return False

        operator_id = event.sender_id
        log_extra = {"operator_id": operator_id, "payment_id": payment_id}
        comment = (event.text or "").strip()
        if not comment:
            await self._tracker.set(operator_id, payment_id)
            await self._notify(operator_id, EMPTY_REASON_TEXT)
            return True

        try:
            user = await self._with_deadline(self._reject(payment_id, comment, log_extra))
        except MalformedDecisionError:
            logger.warning("Rejection reason references unknown payment", extra=log_extra)
            return True
        except (PersistenceError, TimeoutError):
            logger.exception("Failed to store payment rejection", extra=log_extra)
            await self._tracker.set(operator_id, payment_id)
            await self._notify(operator_id, REASON_FAILED_TEXT)
            return True

        if user is None:
            await self._notify(operator_id, ALREADY_PROCESSED_TEXT)
            return True

        delivered = await self._notify(user.telegram_id, PAYMENT_REJECTED_TEXT.format(comment=comment))
        await self._notify(operator_id, REASON_DELIVERED_TEXT if delivered else REASON_NOT_DELIVERED_TEXT)
        logger.info("Payment rejected", extra={**log_extra, "user_id": user.id})
        return True

    async def _reject(self, payment_id: int, comment: str, log_extra: dict) -> User | None:
        """Store the rejection; ``None`` means the payment was already final."""

        payment = await self._load_payment(payment_id)
        if not payment.is_pending:
            logger.info(
                "Payment already processed; rejection reason dropped",
                extra={**log_extra, "status": payment.status.value},
            )
            return None

        user = await self._load_owner(payment)
        updated = await self._call_store(
            self._store.set_payment_status, payment.id, PaymentStatus.REJECTED, comment
        )
        return user if updated else None


__all__ = [
    "DecisionOption",
    "DecisionPressed",
    "FreeText",
    "MessageRef",
    "PaymentWorkflow",
    "ProofSubmitted",
    "RecordStore",
    "Transport",
    "UnregisteredUserError",
    "decision_options",
    "format_expiry",
]
