"""System status endpoints."""

from __future__ import annotations

import os

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from api.utils import db
from api.utils.auth import require_admin
from api.utils.db import PaymentStatus
from api.utils.logging import get_logger

router = APIRouter(tags=["status"])

logger = get_logger("endpoints.status")


class StatusResponse(BaseModel):
    ok: bool = True
    bot_status: str
    users: int
    keys: int
    expiring: int
    pending_payments: int


def _bot_status() -> str:
    token = os.getenv("BOT_TOKEN")
    if not token:
        logger.warning("BOT_TOKEN is not configured; bot status offline")
        return "offline"

    return "active"


@router.get("/status", response_model=StatusResponse)
def system_status(_: None = Depends(require_admin)) -> StatusResponse:
    """Return a high-level summary of system state."""

    return StatusResponse(
        bot_status=_bot_status(),
        users=db.count_users(),
        keys=db.count_users(with_key=True),
        expiring=len(db.list_users_expiring_within(3)),
        pending_payments=db.count_payments(status=PaymentStatus.PENDING),
    )
