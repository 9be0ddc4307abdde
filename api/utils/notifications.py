from __future__ import annotations

import asyncio
import threading
from datetime import UTC, datetime, timedelta
from typing import Any, Awaitable, Callable, Sequence

from api.utils import db
from api.utils.db import User
from api.utils.logging import get_logger
from api.utils.payments import format_expiry
from api.utils.telegram import send_message as telegram_send_message

logger = get_logger("renewal.notifications")

REMINDER_TEXT = "Напоминание об оплате. Срок действия до {expires}"

_DEFAULT_LOOKAHEAD = timedelta(hours=24)


class RenewalNotifier:
    """Send payment reminders to users whose key is about to expire."""

    def __init__(
        self,
        *,
        send_message: Callable[[int, str], Awaitable[Any] | Any] | None = None,
        fetch_users: Callable[[datetime, datetime], Sequence[User]] | None = None,
    ) -> None:
        self._send_message = send_message or telegram_send_message
        self._fetch_users = fetch_users or db.list_users_expiring_between

    def sweep_expiring_between(self, start: datetime, end: datetime) -> int:
        """Remind every user expiring in ``[start, end)``; return how many were notified.

        Failing to load the candidates propagates to the caller. A failed
        delivery is logged and the sweep moves on to the next user.
        """

        users = list(self._fetch_users(start, end))
        notified = 0

        for user in users:
            if user.expires_at is None:
                continue
            message = REMINDER_TEXT.format(expires=format_expiry(user.expires_at))
            try:
                self._dispatch_message(user.telegram_id, message)
            except Exception:
                logger.exception(
                    "Failed to deliver renewal reminder",
                    extra={"user_id": user.id, "telegram_id": user.telegram_id},
                )
                continue
            notified += 1

        if notified or users:
            logger.info(
                "Renewal reminder sweep completed",
                extra={"notified": notified, "candidates": len(users)},
            )
        return notified

    def _dispatch_message(self, chat_id: int, message: str) -> Any:
        result = self._send_message(chat_id, message)
        if asyncio.iscoroutine(result):
            return asyncio.run(result)
        return result


def _next_run_after(moment: datetime, hour: int) -> datetime:
    candidate = moment.replace(hour=hour, minute=0, second=0, microsecond=0)
    if candidate <= moment:
        candidate += timedelta(days=1)
    return candidate


class RenewalScheduler:
    """Background thread firing the reminder sweep once a day at ``hour`` UTC."""

    def __init__(
        self,
        notifier: RenewalNotifier | None = None,
        *,
        hour: int = 9,
        lookahead: timedelta = _DEFAULT_LOOKAHEAD,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if not 0 <= hour <= 23:
            logger.warning("Invalid renewal reminder hour; using default", extra={"hour": hour})
            hour = 9
        if lookahead <= timedelta(0):
            logger.warning(
                "Invalid renewal reminder lookahead; using default",
                extra={"lookahead_seconds": lookahead.total_seconds()},
            )
            lookahead = _DEFAULT_LOOKAHEAD
        self.hour = hour
        self.lookahead = lookahead
        self._notifier = notifier or RenewalNotifier()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def notifier(self) -> RenewalNotifier:
        return self._notifier

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            logger.debug("Renewal reminder scheduler already running")
            return
        self._stop_event.clear()
        thread = threading.Thread(target=self._run_loop, name="renewal-notifier", daemon=True)
        thread.start()
        self._thread = thread
        logger.info("Renewal reminder scheduler started", extra={"hour": self.hour})

    def stop(self) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread and thread.is_alive():
            thread.join(timeout=5.0)
        self._thread = None
        logger.info("Renewal reminder scheduler stopped")

    def run_once(self, now: datetime | None = None) -> int:
        start = now or self._clock()
        return self._notifier.sweep_expiring_between(start, start + self.lookahead)

    def seconds_until_next_run(self) -> float:
        now = self._clock()
        return max((_next_run_after(now, self.hour) - now).total_seconds(), 0.0)

    def _run_loop(self) -> None:
        while not self._stop_event.wait(self.seconds_until_next_run()):
            try:
                self.run_once()
            except Exception:
                logger.exception("Unexpected error during renewal reminder sweep")


__all__ = ["REMINDER_TEXT", "RenewalNotifier", "RenewalScheduler"]
