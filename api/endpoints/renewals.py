from __future__ import annotations

from datetime import UTC, datetime, timedelta

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from api.utils import db
from api.utils.auth import require_admin
from api.utils.db import User
from api.utils.logging import get_logger
from api.utils.notifications import RenewalScheduler

router = APIRouter(tags=["renewals"])
logger = get_logger("endpoints.renewals")


class ExpiringUser(BaseModel):
    id: int
    telegram_id: int
    username: str | None = None
    key_id: str | None = None
    expires_at: datetime | None = None

    @classmethod
    def from_user(cls, user: User) -> "ExpiringUser":
        return cls(
            id=user.id,
            telegram_id=user.telegram_id,
            username=user.username,
            key_id=user.key_id,
            expires_at=user.expires_at,
        )


class ExpiringUsersResponse(BaseModel):
    ok: bool = True
    days: int
    expiring: list[ExpiringUser]


class RenewalRunRequest(BaseModel):
    now: datetime | None = Field(None, description="Начало окна рассылки (UTC); по умолчанию текущее время")
    hours: float | None = Field(None, gt=0, description="Длина окна в часах")


class RenewalRunResponse(BaseModel):
    ok: bool = True
    window_start: datetime
    window_end: datetime
    notified: int


@router.get("/users/expiring", response_model=ExpiringUsersResponse)
def list_expiring_users(
    days: int = Query(default=3, ge=1, le=365),
    _: None = Depends(require_admin),
) -> ExpiringUsersResponse:
    """Возвращает пользователей, у которых ключ истекает в ближайшие ``days`` дней."""

    users = db.list_users_expiring_within(days)
    logger.info("Found expiring users", extra={"count": len(users), "days": days})
    return ExpiringUsersResponse(days=days, expiring=[ExpiringUser.from_user(user) for user in users])


@router.post("/admin/renewals/run", response_model=RenewalRunResponse)
def run_renewal_sweep(
    request: Request,
    payload: RenewalRunRequest | None = None,
    _: None = Depends(require_admin),
) -> RenewalRunResponse:
    """Trigger the reminder sweep immediately instead of waiting for the daily run."""

    scheduler: RenewalScheduler = request.app.state.renewal_scheduler
    payload = payload or RenewalRunRequest()
    start = payload.now or datetime.now(UTC)
    if start.tzinfo is None:
        start = start.replace(tzinfo=UTC)
    window = timedelta(hours=payload.hours) if payload.hours else scheduler.lookahead
    end = start + window

    notified = scheduler.notifier.sweep_expiring_between(start, end)
    logger.info("Manual renewal sweep finished", extra={"notified": notified})
    return RenewalRunResponse(window_start=start, window_end=end, notified=notified)
