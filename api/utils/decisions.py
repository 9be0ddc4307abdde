"""Operator decisions carried by inline keyboard buttons."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

_SEPARATOR = ":"


class MalformedDecisionError(ValueError):
    """Raised when callback data cannot be decoded into a decision."""


class DecisionAction(str, Enum):
    CONFIRM = "confirm"
    REJECT = "reject"


@dataclass(frozen=True, slots=True)
class Decision:
    action: DecisionAction
    payment_id: int

    def encode(self) -> str:
        return f"{self.action.value}{_SEPARATOR}{self.payment_id}"


def decode_decision(raw: str | None) -> Decision:
    """Parse ``confirm:<id>`` / ``reject:<id>`` callback data."""

    if not raw:
        raise MalformedDecisionError("empty decision")
    parts = raw.split(_SEPARATOR)
    if len(parts) != 2:
        raise MalformedDecisionError(f"unexpected decision format: {raw!r}")
    action_raw, id_raw = parts
    try:
        action = DecisionAction(action_raw.strip().lower())
    except ValueError as exc:
        raise MalformedDecisionError(f"unknown decision action: {action_raw!r}") from exc
    try:
        payment_id = int(id_raw.strip())
    except ValueError as exc:
        raise MalformedDecisionError(f"invalid payment id: {id_raw!r}") from exc
    if payment_id <= 0:
        raise MalformedDecisionError(f"invalid payment id: {id_raw!r}")
    return Decision(action=action, payment_id=payment_id)


def is_decision_data(raw: str | None) -> bool:
    """Cheap filter for the dispatcher; full validation happens in ``decode_decision``."""

    if not raw or _SEPARATOR not in raw:
        return False
    return raw.split(_SEPARATOR, 1)[0] in {action.value for action in DecisionAction}


__all__ = [
    "Decision",
    "DecisionAction",
    "MalformedDecisionError",
    "decode_decision",
    "is_decision_data",
]
