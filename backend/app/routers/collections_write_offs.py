from datetime import date, datetime, time, timezone
from math import ceil

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.deps import request_ip, require_capability
from app.models.collections import WriteOff, WriteOffReason, WriteOffStatus
from app.models.invoice import Invoice
from app.models.user import User
from app.schemas.collections import (
    WriteOffApprove,
    WriteOffCreate,
    WriteOffOut,
    WriteOffPage,
    WriteOffRecover,
    WriteOffReject,
    WriteOffTotals,
)
from app.services import write_offs as write_off_service
from app.services.audit import log_event, snapshot_model
from app.services.billing import get_account

router = APIRouter(prefix="/collections/write-offs", tags=["collections"])


def _audit(
    db: Session,
    *,
    user: User,
    write_off: WriteOff,
    verb: str,
    before_data: dict | None,
    request: Request,
    request_id: str | None,
) -> WriteOff:
    log_event(
        db,
        actor=user,
        action=f"write_off.{verb}",
        entity_type="write_off",
        entity_id=str(write_off.id),
        before_data=before_data,
        after_obj=write_off,
        request_id=request_id,
        ip_address=request_ip(request),
    )
    db.commit()
    db.refresh(write_off)
    return write_off


@router.get("", response_model=WriteOffPage)
def list_write_offs(
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("collections.view")),
    write_off_status: WriteOffStatus | None = Query(default=None, alias="status"),
    reason: WriteOffReason | None = Query(default=None),
    account_id: int | None = Query(default=None),
    min_amount: int | None = Query(default=None, ge=0),
    max_amount: int | None = Query(default=None, ge=0),
    date_from: date | None = Query(default=None, alias="from"),
    date_to: date | None = Query(default=None, alias="to"),
    pending_only: bool = Query(default=False),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=25, ge=1, le=100),
):
    criteria = [WriteOff.clinic_id == user.clinic_id]
    if pending_only:
        criteria.append(WriteOff.status == WriteOffStatus.pending)
    elif write_off_status is not None:
        criteria.append(WriteOff.status == write_off_status)
    if reason is not None:
        criteria.append(WriteOff.reason == reason)
    if account_id is not None:
        criteria.append(WriteOff.account_id == account_id)
    if min_amount is not None:
        criteria.append(WriteOff.amount_pence >= min_amount)
    if max_amount is not None:
        criteria.append(WriteOff.amount_pence <= max_amount)
    if date_from is not None:
        criteria.append(WriteOff.requested_at >= datetime.combine(date_from, time.min, tzinfo=timezone.utc))
    if date_to is not None:
        criteria.append(WriteOff.requested_at <= datetime.combine(date_to, time.max, tzinfo=timezone.utc))

    count, amount, recovered = db.execute(
        select(
            func.count(WriteOff.id),
            func.coalesce(func.sum(WriteOff.amount_pence), 0),
            func.coalesce(func.sum(WriteOff.recovered_amount_pence), 0),
        ).where(*criteria)
    ).one()
    items = list(
        db.scalars(
            select(WriteOff)
            .where(*criteria)
            .order_by(WriteOff.requested_at.desc(), WriteOff.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        ).unique()
    )
    total = int(count or 0)
    return WriteOffPage(
        items=[WriteOffOut.model_validate(item) for item in items],
        total=total,
        page=page,
        page_size=page_size,
        total_pages=ceil(total / page_size) if total else 0,
        totals=WriteOffTotals(
            count=total, amount_pence=int(amount or 0), recovered_pence=int(recovered or 0)
        ),
    )


@router.post("", response_model=WriteOffOut, status_code=status.HTTP_201_CREATED)
def request_write_off(
    payload: WriteOffCreate,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("collections.manage")),
    request_id: str | None = Header(default=None),
):
    account = get_account(db, user.clinic_id, payload.account_id)
    invoice = None
    if payload.invoice_id is not None:
        invoice = db.scalar(
            select(Invoice).where(
                Invoice.id == payload.invoice_id, Invoice.clinic_id == user.clinic_id
            )
        )
        if not invoice:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Invoice not found")
    write_off = write_off_service.request_write_off(
        db,
        account=account,
        amount_pence=payload.amount_pence,
        reason=payload.reason,
        actor=user,
        invoice=invoice,
        reason_details=payload.reason_details,
    )
    return _audit(
        db, user=user, write_off=write_off, verb="requested", before_data=None,
        request=request, request_id=request_id,
    )


@router.get("/{write_off_id}", response_model=WriteOffOut)
def get_write_off(
    write_off_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("collections.view")),
):
    return write_off_service.get_write_off(db, user.clinic_id, write_off_id)


@router.post("/{write_off_id}/approve", response_model=WriteOffOut)
def approve_write_off(
    write_off_id: int,
    request: Request,
    payload: WriteOffApprove | None = None,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("collections.write_offs.approve")),
    request_id: str | None = Header(default=None),
):
    write_off = write_off_service.get_write_off(db, user.clinic_id, write_off_id)
    before_data = snapshot_model(write_off)
    write_off_service.approve_write_off(
        db, write_off, actor=user, notes=payload.notes if payload else None
    )
    return _audit(
        db, user=user, write_off=write_off, verb="approved", before_data=before_data,
        request=request, request_id=request_id,
    )


@router.post("/{write_off_id}/reject", response_model=WriteOffOut)
def reject_write_off(
    write_off_id: int,
    payload: WriteOffReject,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("collections.write_offs.approve")),
    request_id: str | None = Header(default=None),
):
    write_off = write_off_service.get_write_off(db, user.clinic_id, write_off_id)
    before_data = snapshot_model(write_off)
    write_off_service.reject_write_off(db, write_off, actor=user, reason=payload.reason)
    return _audit(
        db, user=user, write_off=write_off, verb="rejected", before_data=before_data,
        request=request, request_id=request_id,
    )


@router.post("/{write_off_id}/recover", response_model=WriteOffOut)
def recover_write_off(
    write_off_id: int,
    payload: WriteOffRecover,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("collections.manage")),
    request_id: str | None = Header(default=None),
):
    write_off = write_off_service.get_write_off(db, user.clinic_id, write_off_id)
    before_data = snapshot_model(write_off)
    write_off_service.record_recovery(
        db,
        write_off,
        amount_pence=payload.amount_pence,
        actor=user,
        payment_reference=payload.payment_reference,
        notes=payload.notes,
    )
    return _audit(
        db, user=user, write_off=write_off, verb="recovered", before_data=before_data,
        request=request, request_id=request_id,
    )
