from __future__ import annotations

import asyncio

from api.utils.logging import get_logger

logger = get_logger("pending_reasons")


class PendingReasonTracker:
    """Remember which payment each operator is writing a rejection reason for.

    One entry per operator. A newer reject click from the same operator
    replaces the older one; entries never expire on their own.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._entries: dict[int, int] = {}

    async def set(self, operator_id: int, payment_id: int) -> None:
        async with self._lock:
            previous = self._entries.get(operator_id)
            self._entries[operator_id] = payment_id
        if previous is not None and previous != payment_id:
            logger.info(
                "Replaced pending rejection reason request",
                extra={"operator_id": operator_id, "previous": previous, "payment_id": payment_id},
            )

    async def take_if_present(self, operator_id: int) -> tuple[int | None, bool]:
        """Remove and return the operator's entry as ``(payment_id, found)``."""

        async with self._lock:
            payment_id = self._entries.pop(operator_id, None)
        return payment_id, payment_id is not None

    async def snapshot(self) -> dict[int, int]:
        async with self._lock:
            return dict(self._entries)


__all__ = ["PendingReasonTracker"]
