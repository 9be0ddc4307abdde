from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel

from api.utils import db
from api.utils.auth import require_admin
from api.utils.db import Payment, PaymentStatus
from api.utils.logging import get_logger

router = APIRouter(prefix="/payments", tags=["payments"])
logger = get_logger("endpoints.payments")


class PaymentRecord(BaseModel):
    id: int
    user_id: int
    proof_ref: str
    status: PaymentStatus
    comment: str | None = None
    created_at: datetime | None = None

    @classmethod
    def from_payment(cls, payment: Payment) -> "PaymentRecord":
        return cls(
            id=payment.id,
            user_id=payment.user_id,
            proof_ref=payment.proof_ref,
            status=payment.status,
            comment=payment.comment,
            created_at=payment.created_at,
        )


class PaymentsResponse(BaseModel):
    ok: bool = True
    total: int
    payments: list[PaymentRecord]


class PaymentResponse(BaseModel):
    ok: bool = True
    payment: PaymentRecord


@router.get("", response_model=PaymentsResponse)
def list_payments(
    payment_status: PaymentStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=500),
    _: None = Depends(require_admin),
) -> PaymentsResponse:
    payments = db.list_payments(status=payment_status, limit=limit)
    total = db.count_payments(status=payment_status)
    logger.debug(
        "Listed payments",
        extra={"status": payment_status.value if payment_status else None, "count": len(payments)},
    )
    return PaymentsResponse(total=total, payments=[PaymentRecord.from_payment(p) for p in payments])


@router.get("/{payment_id}", response_model=PaymentResponse)
def get_payment(payment_id: int, _: None = Depends(require_admin)) -> PaymentResponse:
    payment = db.get_payment(payment_id)
    if payment is None:
        logger.info("Payment not found", extra={"payment_id": payment_id})
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="payment_not_found")
    return PaymentResponse(payment=PaymentRecord.from_payment(payment))
