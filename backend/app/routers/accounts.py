from fastapi import APIRouter, Depends, Header, Query, Request, Response, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.deps import request_ip, require_capability
from app.models.account import AccountStatus, PatientAccount
from app.models.patient import Patient
from app.models.user import User
from app.routers.patients import get_clinic_patient
from app.schemas.account import (
    AccountCreate,
    AccountOut,
    AccountPaymentCreate,
    AccountPaymentResult,
    AgencyEligibilityOut,
    RecalculateAllOut,
)
from app.schemas.invoice import PaymentOut
from app.services import billing
from app.services.agencies import check_agency_eligibility, get_agency
from app.services.audit import log_event
from app.services.collections import refresh_account

router = APIRouter(prefix="/accounts", tags=["accounts"])


@router.post("", response_model=AccountOut)
def create_account(
    payload: AccountCreate,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("billing.write")),
    request_id: str | None = Header(default=None),
):
    patient = get_clinic_patient(db, user.clinic_id, payload.patient_id)
    account, created = billing.ensure_account(
        db, clinic_id=user.clinic_id, patient=patient, actor=user
    )
    if not created:
        response.status_code = status.HTTP_200_OK
        return account
    log_event(
        db,
        actor=user,
        action="account.created",
        entity_type="patient_account",
        entity_id=str(account.id),
        after_obj=account,
        request_id=request_id,
        ip_address=request_ip(request),
    )
    db.commit()
    db.refresh(account)
    response.status_code = status.HTTP_201_CREATED
    return account


@router.get("", response_model=list[AccountOut])
def list_accounts(
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("billing.view")),
    account_status: AccountStatus | None = Query(default=None, alias="status"),
    q: str | None = Query(default=None),
    min_balance: int | None = Query(default=None, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
):
    stmt = (
        select(PatientAccount)
        .join(Patient, Patient.id == PatientAccount.patient_id)
        .where(
            PatientAccount.clinic_id == user.clinic_id,
            PatientAccount.deleted_at.is_(None),
            Patient.deleted_at.is_(None),
        )
    )
    if account_status is not None:
        stmt = stmt.where(PatientAccount.status == account_status)
    if min_balance is not None:
        stmt = stmt.where(PatientAccount.current_balance_pence >= min_balance)
    if q:
        like = f"%{q.strip()}%"
        stmt = stmt.where(
            PatientAccount.account_number.ilike(like)
            | Patient.first_name.ilike(like)
            | Patient.last_name.ilike(like)
        )
    stmt = stmt.order_by(PatientAccount.account_number).limit(limit).offset(offset)
    return list(db.scalars(stmt).unique())


@router.post("/recalculate", response_model=RecalculateAllOut)
def recalculate_all(
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("billing.write")),
    request_id: str | None = Header(default=None),
):
    accounts = list(
        db.scalars(
            select(PatientAccount).where(
                PatientAccount.clinic_id == user.clinic_id,
                PatientAccount.deleted_at.is_(None),
            )
        ).unique()
    )
    changed = 0
    for account in accounts:
        if refresh_account(
            db, account, actor=user, request_id=request_id, ip_address=request_ip(request)
        ):
            changed += 1
    db.commit()
    return RecalculateAllOut(accounts=len(accounts), changed=changed)


@router.get("/{account_id}", response_model=AccountOut)
def get_account(
    account_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("billing.view")),
):
    return billing.get_account(db, user.clinic_id, account_id)


@router.post("/{account_id}/recalculate", response_model=AccountOut)
def recalculate_account(
    account_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("billing.write")),
    request_id: str | None = Header(default=None),
):
    account = billing.get_account(db, user.clinic_id, account_id)
    refresh_account(db, account, actor=user, request_id=request_id, ip_address=request_ip(request))
    db.commit()
    db.refresh(account)
    return account


@router.post(
    "/{account_id}/payments",
    response_model=AccountPaymentResult,
    status_code=status.HTTP_201_CREATED,
)
def add_account_payment(
    account_id: int,
    payload: AccountPaymentCreate,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("billing.write")),
    request_id: str | None = Header(default=None),
):
    account = billing.get_account(db, user.clinic_id, account_id)
    payments = billing.allocate_payment(
        db,
        account=account,
        amount_pence=payload.amount_pence,
        method=payload.method,
        actor=user,
        paid_at=payload.paid_at,
        reference=payload.reference,
    )
    for payment in payments:
        log_event(
            db,
            actor=user,
            action="payment.recorded",
            entity_type="payment",
            entity_id=str(payment.id),
            after_obj=payment,
            request_id=request_id,
            ip_address=request_ip(request),
        )
    refresh_account(db, account, actor=user, request_id=request_id, ip_address=request_ip(request))
    db.commit()
    db.refresh(account)
    return AccountPaymentResult(
        account=AccountOut.model_validate(account),
        payments=[PaymentOut.model_validate(payment) for payment in payments],
    )


@router.get("/{account_id}/agency-eligibility", response_model=AgencyEligibilityOut)
def agency_eligibility(
    account_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("collections.view")),
    agency_id: int | None = Query(default=None),
):
    agency = get_agency(db, user.clinic_id, agency_id) if agency_id is not None else None
    return check_agency_eligibility(db, user.clinic_id, account_id, agency=agency)
