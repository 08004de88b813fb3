from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.deps import request_ip, require_capability
from app.models.payment_plan import PaymentPlan, PaymentPlanStatus
from app.models.user import User
from app.schemas.payment_plan import PaymentPlanCancel, PaymentPlanCreate, PaymentPlanOut
from app.services import billing
from app.services.audit import log_event, snapshot_model

router = APIRouter(prefix="/payment-plans", tags=["payment-plans"])


def _plan_or_404(db: Session, clinic_id: int, plan_id: int) -> PaymentPlan:
    plan = db.scalar(
        select(PaymentPlan).where(PaymentPlan.id == plan_id, PaymentPlan.clinic_id == clinic_id)
    )
    if not plan:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment plan not found")
    return plan


@router.post("", response_model=PaymentPlanOut, status_code=status.HTTP_201_CREATED)
def create_payment_plan(
    payload: PaymentPlanCreate,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("billing.write")),
    request_id: str | None = Header(default=None),
):
    account = billing.get_account(db, user.clinic_id, payload.account_id)
    financed, monthly = billing.payment_plan_amounts(
        payload.total_pence, payload.down_payment_pence, payload.number_of_payments
    )
    plan = PaymentPlan(
        clinic_id=user.clinic_id,
        account_id=account.id,
        plan_number=billing.generate_number(db, PaymentPlan.plan_number, user.clinic_id, "PP"),
        status=PaymentPlanStatus.active,
        total_pence=payload.total_pence,
        down_payment_pence=payload.down_payment_pence,
        number_of_payments=payload.number_of_payments,
        financed_pence=financed,
        monthly_payment_pence=monthly,
        remaining_pence=financed,
        start_date=payload.start_date,
        notes=payload.notes,
        created_by_user_id=user.id,
        updated_by_user_id=user.id,
    )
    db.add(plan)
    db.flush()
    log_event(
        db,
        actor=user,
        action="payment_plan.created",
        entity_type="payment_plan",
        entity_id=str(plan.id),
        after_obj=plan,
        request_id=request_id,
        ip_address=request_ip(request),
    )
    db.commit()
    db.refresh(plan)
    return plan


@router.get("", response_model=list[PaymentPlanOut])
def list_payment_plans(
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("billing.view")),
    account_id: int | None = Query(default=None),
    plan_status: PaymentPlanStatus | None = Query(default=None, alias="status"),
):
    stmt = select(PaymentPlan).where(PaymentPlan.clinic_id == user.clinic_id)
    if account_id is not None:
        stmt = stmt.where(PaymentPlan.account_id == account_id)
    if plan_status is not None:
        stmt = stmt.where(PaymentPlan.status == plan_status)
    return list(db.scalars(stmt.order_by(PaymentPlan.id.desc())).unique())


@router.get("/{plan_id}", response_model=PaymentPlanOut)
def get_payment_plan(
    plan_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("billing.view")),
):
    return _plan_or_404(db, user.clinic_id, plan_id)


@router.post("/{plan_id}/cancel", response_model=PaymentPlanOut)
def cancel_payment_plan(
    plan_id: int,
    request: Request,
    payload: PaymentPlanCancel | None = None,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("billing.write")),
    request_id: str | None = Header(default=None),
):
    plan = _plan_or_404(db, user.clinic_id, plan_id)
    if plan.status != PaymentPlanStatus.active:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Only active plans can be cancelled")
    before_data = snapshot_model(plan)
    plan.status = PaymentPlanStatus.cancelled
    if payload and payload.reason:
        plan.notes = f"{plan.notes}\n{payload.reason}".strip() if plan.notes else payload.reason
    plan.updated_by_user_id = user.id
    log_event(
        db,
        actor=user,
        action="payment_plan.cancelled",
        entity_type="payment_plan",
        entity_id=str(plan.id),
        before_data=before_data,
        after_obj=plan,
        request_id=request_id,
        ip_address=request_ip(request),
    )
    db.commit()
    db.refresh(plan)
    return plan
