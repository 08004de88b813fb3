from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.deps import require_capability
from app.models.invoice import Payment, PaymentMethod
from app.models.user import User
from app.schemas.invoice import PaymentOut

router = APIRouter(prefix="/payments", tags=["payments"])


@router.get("", response_model=list[PaymentOut])
def list_payments(
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("billing.view")),
    account_id: int | None = Query(default=None),
    invoice_id: int | None = Query(default=None),
    method: PaymentMethod | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
):
    stmt = select(Payment).where(Payment.clinic_id == user.clinic_id)
    if account_id is not None:
        stmt = stmt.where(Payment.account_id == account_id)
    if invoice_id is not None:
        stmt = stmt.where(Payment.invoice_id == invoice_id)
    if method is not None:
        stmt = stmt.where(Payment.method == method)
    stmt = stmt.order_by(Payment.paid_at.desc(), Payment.id.desc()).limit(limit).offset(offset)
    return list(db.scalars(stmt))


@router.get("/{payment_id}", response_model=PaymentOut)
def get_payment(
    payment_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("billing.view")),
):
    payment = db.scalar(
        select(Payment).where(Payment.id == payment_id, Payment.clinic_id == user.clinic_id)
    )
    if not payment:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment not found")
    return payment
