from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from api.integrations.panel.errors import AuthExhaustedError, KeyNotFoundError
from api.utils import db
from api.utils.db import PaymentStatus, PersistenceError
from api.utils.decisions import Decision, DecisionAction
from api.utils.payments import (
    ASK_REASON_TEXT,
    EMPTY_REASON_TEXT,
    EXTEND_FAILED_TEXT,
    KEY_MISSING_TEXT,
    NO_KEY_TEXT,
    OPERATOR_CONFIRMED_TEXT,
    PAYMENT_SUBMITTED_TEXT,
    REASON_DELIVERED_TEXT,
    REASON_FAILED_TEXT,
    REGISTER_FIRST_TEXT,
    DecisionPressed,
    FreeText,
    MessageRef,
    PaymentWorkflow,
    ProofSubmitted,
    format_expiry,
)

OPERATOR = 900
OTHER_OPERATOR = 901


class RecordingTransport:
    def __init__(self) -> None:
        self.messages: list[tuple[int, str]] = []
        self.decisions: list[tuple[int, str, str, list]] = []
        self.affordances: list[tuple[MessageRef, str]] = []
        self.fail_for: set[int] = set()

    async def notify(self, user_id: int, text: str) -> None:
        if user_id in self.fail_for:
            raise RuntimeError("chat not found")
        self.messages.append((user_id, text))

    async def notify_with_decision(self, operator_id, proof_ref, caption, options):
        self.decisions.append((operator_id, proof_ref, caption, list(options)))
        return MessageRef(chat_id=operator_id, message_id=len(self.decisions))

    async def update_decision_affordance(self, message: MessageRef, text: str) -> None:
        self.affordances.append((message, text))

    def texts_for(self, chat_id: int) -> list[str]:
        return [text for target, text in self.messages if target == chat_id]


class FakeProvisioning:
    def __init__(self, error: Exception | None = None) -> None:
        self.calls: list[tuple[str, int]] = []
        self.error = error

    async def extend_key(self, key_id: str, days: int) -> datetime:
        self.calls.append((key_id, days))
        if self.error is not None:
            raise self.error
        return datetime.now(UTC).replace(microsecond=0) + timedelta(days=days)


def _workflow(provisioning=None, transport=None, **kwargs) -> PaymentWorkflow:
    return PaymentWorkflow(
        provisioning=provisioning or FakeProvisioning(),
        transport=transport or RecordingTransport(),
        operator_ids=[OPERATOR, OTHER_OPERATOR],
        **kwargs,
    )


def _pending_payment(telegram_id: int = 100, key_id: str | None = "abc123"):
    user = db.upsert_user(telegram_id, "payer")
    if key_id:
        db.set_user_key(user.id, key_id, datetime.now(UTC) + timedelta(days=2))
    payment = db.create_payment(user.id, "photo-file-id")
    return db.get_user_by_id(user.id), payment


def _press(workflow, action: DecisionAction, payment_id: int, operator_id: int = OPERATOR):
    event = DecisionPressed(
        operator_id=operator_id,
        decision=Decision(action, payment_id),
        message=MessageRef(chat_id=operator_id, message_id=1),
    )
    return asyncio.run(workflow.handle_decision(event))


def test_submit_proof_creates_pending_payment_and_notifies_operators():
    db.upsert_user(100, "payer")
    transport = RecordingTransport()
    workflow = _workflow(transport=transport)

    payment = asyncio.run(workflow.submit_proof(ProofSubmitted(sender_id=100, proof_ref="file-1")))

    assert payment is not None
    assert db.get_payment(payment.id).status is PaymentStatus.PENDING
    assert [target for target, *_ in transport.decisions] == [OPERATOR, OTHER_OPERATOR]
    _, proof_ref, caption, options = transport.decisions[0]
    assert proof_ref == "file-1"
    assert "@payer" in caption
    assert [option.decision.encode() for option in options] == [
        f"confirm:{payment.id}",
        f"reject:{payment.id}",
    ]
    assert transport.texts_for(100) == [PAYMENT_SUBMITTED_TEXT]


def test_unregistered_submitter_is_told_to_register():
    transport = RecordingTransport()
    workflow = _workflow(transport=transport)

    payment = asyncio.run(workflow.submit_proof(ProofSubmitted(sender_id=555, proof_ref="file-1")))

    assert payment is None
    assert db.count_payments() == 0
    assert transport.decisions == []
    assert transport.texts_for(555) == [REGISTER_FIRST_TEXT]


def test_confirm_extends_key_and_notifies_user():
    user, payment = _pending_payment(key_id="abc123")
    provisioning = FakeProvisioning()
    transport = RecordingTransport()
    workflow = _workflow(provisioning=provisioning, transport=transport)

    assert _press(workflow, DecisionAction.CONFIRM, payment.id) is True

    stored = db.get_payment(payment.id)
    assert stored.status is PaymentStatus.CONFIRMED
    assert stored.comment is None
    assert provisioning.calls == [("abc123", 30)]
    refreshed = db.get_user_by_id(user.id)
    assert abs(refreshed.expires_at - (datetime.now(UTC) + timedelta(days=30))) < timedelta(seconds=5)
    assert format_expiry(refreshed.expires_at) in transport.texts_for(user.telegram_id)[0]
    assert transport.affordances[-1][1] == OPERATOR_CONFIRMED_TEXT


def test_second_confirm_is_a_no_op():
    _, payment = _pending_payment()
    provisioning = FakeProvisioning()
    workflow = _workflow(provisioning=provisioning)

    assert _press(workflow, DecisionAction.CONFIRM, payment.id) is True
    assert _press(workflow, DecisionAction.CONFIRM, payment.id, OTHER_OPERATOR) is False

    assert len(provisioning.calls) == 1
    assert db.get_payment(payment.id).status is PaymentStatus.CONFIRMED


def test_confirm_without_key_keeps_payment_pending():
    user, payment = _pending_payment(key_id=None)
    provisioning = FakeProvisioning()
    transport = RecordingTransport()
    workflow = _workflow(provisioning=provisioning, transport=transport)

    assert _press(workflow, DecisionAction.CONFIRM, payment.id) is False

    assert provisioning.calls == []
    assert db.get_payment(payment.id).status is PaymentStatus.PENDING
    assert transport.texts_for(user.telegram_id) == [NO_KEY_TEXT]


@pytest.mark.parametrize(
    ("error", "text"),
    [
        (AuthExhaustedError("panel_unauthorized"), EXTEND_FAILED_TEXT),
        (KeyNotFoundError("client not found"), KEY_MISSING_TEXT),
    ],
)
def test_provisioning_failure_keeps_payment_pending(error, text):
    user, payment = _pending_payment()
    transport = RecordingTransport()
    workflow = _workflow(provisioning=FakeProvisioning(error), transport=transport)

    assert _press(workflow, DecisionAction.CONFIRM, payment.id) is False

    assert db.get_payment(payment.id).status is PaymentStatus.PENDING
    assert db.get_user_by_id(user.id).expires_at == user.expires_at
    assert transport.texts_for(user.telegram_id) == [text]


def test_confirm_times_out_when_panel_hangs():
    class HangingProvisioning:
        async def extend_key(self, key_id, days):
            await asyncio.sleep(10)

    _, payment = _pending_payment()
    workflow = _workflow(provisioning=HangingProvisioning(), timeout=0.05)

    assert _press(workflow, DecisionAction.CONFIRM, payment.id) is False
    assert db.get_payment(payment.id).status is PaymentStatus.PENDING


def test_decisions_from_non_operators_are_ignored():
    _, payment = _pending_payment()
    provisioning = FakeProvisioning()
    workflow = _workflow(provisioning=provisioning)

    assert _press(workflow, DecisionAction.CONFIRM, payment.id, operator_id=12345) is False
    assert provisioning.calls == []


def test_unknown_payment_is_dropped():
    workflow = _workflow()

    assert _press(workflow, DecisionAction.CONFIRM, 4242) is False
    assert _press(workflow, DecisionAction.REJECT, 4242) is False


def test_reject_flow_captures_reason_and_notifies_user():
    user, payment = _pending_payment()
    transport = RecordingTransport()
    workflow = _workflow(transport=transport)

    assert _press(workflow, DecisionAction.REJECT, payment.id) is True
    assert asyncio.run(workflow.tracker.snapshot()) == {OPERATOR: payment.id}
    assert db.get_payment(payment.id).status is PaymentStatus.PENDING
    assert transport.affordances[-1][1] == ASK_REASON_TEXT

    handled = asyncio.run(
        workflow.capture_rejection_reason(FreeText(sender_id=OPERATOR, text="invalid screenshot"))
    )

    assert handled is True
    stored = db.get_payment(payment.id)
    assert stored.status is PaymentStatus.REJECTED
    assert stored.comment == "invalid screenshot"
    assert asyncio.run(workflow.tracker.snapshot()) == {}
    assert any("invalid screenshot" in text for text in transport.texts_for(user.telegram_id))
    assert transport.texts_for(OPERATOR) == [REASON_DELIVERED_TEXT]


def test_latest_reject_click_wins():
    _, first = _pending_payment(telegram_id=100)
    _, second = _pending_payment(telegram_id=101)
    workflow = _workflow()

    _press(workflow, DecisionAction.REJECT, first.id)
    _press(workflow, DecisionAction.REJECT, second.id)
    asyncio.run(workflow.capture_rejection_reason(FreeText(sender_id=OPERATOR, text="duplicate")))

    assert db.get_payment(first.id).status is PaymentStatus.PENDING
    assert db.get_payment(second.id).status is PaymentStatus.REJECTED


def test_free_text_without_entry_is_not_consumed():
    workflow = _workflow()

    assert asyncio.run(workflow.capture_rejection_reason(FreeText(sender_id=OPERATOR, text="hi"))) is False
    assert asyncio.run(workflow.capture_rejection_reason(FreeText(sender_id=777, text="hi"))) is False


def test_blank_reason_keeps_entry_and_prompts_again():
    _, payment = _pending_payment()
    transport = RecordingTransport()
    workflow = _workflow(transport=transport)
    _press(workflow, DecisionAction.REJECT, payment.id)

    assert asyncio.run(workflow.capture_rejection_reason(FreeText(sender_id=OPERATOR, text="   "))) is True

    assert asyncio.run(workflow.tracker.snapshot()) == {OPERATOR: payment.id}
    assert db.get_payment(payment.id).status is PaymentStatus.PENDING
    assert transport.texts_for(OPERATOR) == [EMPTY_REASON_TEXT]


def test_rejection_is_stored_before_user_is_notified(monkeypatch):
    user, payment = _pending_payment()
    transport = RecordingTransport()
    workflow = _workflow(transport=transport)
    _press(workflow, DecisionAction.REJECT, payment.id)

    def broken_status_update(*args, **kwargs):
        raise PersistenceError("set_payment_status_failed")

    monkeypatch.setattr(db, "set_payment_status", broken_status_update)
    asyncio.run(workflow.capture_rejection_reason(FreeText(sender_id=OPERATOR, text="fake receipt")))

    assert transport.texts_for(user.telegram_id) == []
    assert transport.texts_for(OPERATOR) == [REASON_FAILED_TEXT]
    assert asyncio.run(workflow.tracker.snapshot()) == {OPERATOR: payment.id}
    assert db.get_payment(payment.id).status is PaymentStatus.PENDING


def test_rejection_after_confirmation_does_not_overwrite_status():
    _, payment = _pending_payment()
    workflow = _workflow()

    _press(workflow, DecisionAction.REJECT, payment.id, OTHER_OPERATOR)
    _press(workflow, DecisionAction.CONFIRM, payment.id)
    asyncio.run(workflow.capture_rejection_reason(FreeText(sender_id=OTHER_OPERATOR, text="late")))

    stored = db.get_payment(payment.id)
    assert stored.status is PaymentStatus.CONFIRMED
    assert stored.comment is None


def test_store_failure_after_extension_leaves_no_partial_state(monkeypatch):
    user, payment = _pending_payment()
    provisioning = FakeProvisioning()
    transport = RecordingTransport()
    workflow = _workflow(provisioning=provisioning, transport=transport)

    def broken_confirmation(*args, **kwargs):
        raise PersistenceError("confirm_payment_failed")

    monkeypatch.setattr(db, "confirm_payment", broken_confirmation)

    assert _press(workflow, DecisionAction.CONFIRM, payment.id) is False

    assert provisioning.calls == [("abc123", 30)]
    assert db.get_payment(payment.id).status is PaymentStatus.PENDING
    assert db.get_user_by_id(user.id).expires_at == user.expires_at
    assert transport.texts_for(user.telegram_id) == [EXTEND_FAILED_TEXT]
    assert transport.affordances == []


def test_confirm_payment_rolls_back_when_user_row_is_missing():
    _, payment = _pending_payment()
    with db.connect() as con:
        con.execute("DELETE FROM users WHERE id=?", (payment.user_id,))

    with pytest.raises(PersistenceError):
        db.confirm_payment(payment.id, payment.user_id, "abc123", datetime.now(UTC))

    assert db.get_payment(payment.id).status is PaymentStatus.PENDING


def test_lost_race_does_not_store_new_expiry():
    user, payment = _pending_payment()
    db.set_payment_status(payment.id, PaymentStatus.REJECTED, "already handled")

    confirmed = db.confirm_payment(payment.id, user.id, "abc123", datetime.now(UTC) + timedelta(days=30))

    assert confirmed is False
    assert db.get_user_by_id(user.id).expires_at == user.expires_at
    assert db.get_payment(payment.id).status is PaymentStatus.REJECTED


class SlowUserTransport(RecordingTransport):
    def __init__(self, slow_chat: int) -> None:
        super().__init__()
        self.slow_chat = slow_chat

    async def notify(self, user_id: int, text: str) -> None:
        if user_id == self.slow_chat:
            await asyncio.sleep(0.3)
        await super().notify(user_id, text)


def test_slow_user_notification_does_not_undo_rejection():
    user, payment = _pending_payment()
    transport = SlowUserTransport(user.telegram_id)
    workflow = _workflow(transport=transport, timeout=0.1)
    _press(workflow, DecisionAction.REJECT, payment.id)

    asyncio.run(workflow.capture_rejection_reason(FreeText(sender_id=OPERATOR, text="bad receipt")))

    assert db.get_payment(payment.id).status is PaymentStatus.REJECTED
    assert asyncio.run(workflow.tracker.snapshot()) == {}
    assert transport.texts_for(OPERATOR) == [REASON_DELIVERED_TEXT]


def test_slow_user_notification_does_not_undo_confirmation():
    user, payment = _pending_payment()
    transport = SlowUserTransport(user.telegram_id)
    workflow = _workflow(transport=transport, timeout=0.1)

    assert _press(workflow, DecisionAction.CONFIRM, payment.id) is True

    assert db.get_payment(payment.id).status is PaymentStatus.CONFIRMED
    assert len(transport.texts_for(user.telegram_id)) == 1
    assert transport.affordances[-1][1] == OPERATOR_CONFIRMED_TEXT
