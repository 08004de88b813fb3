from datetime import date
from math import ceil

from fastapi import APIRouter, Depends, Header, Query, Request
from sqlalchemy.orm import Session

from app.core.clock import today
from app.db.session import get_db
from app.deps import request_ip, require_capability
from app.models.collections import PaymentPromise, PromiseStatus
from app.models.user import User
from app.routers.collections_accounts import promise_out
from app.schemas.collections import (
    PromiseBreak,
    PromiseCancel,
    PromiseFulfill,
    PromiseOut,
    PromisePage,
    PromiseUpdate,
)
from app.services import promises as promise_service
from app.services.audit import log_event, snapshot_model

router = APIRouter(prefix="/collections/promises", tags=["collections"])


def _audit(
    db: Session,
    *,
    user: User,
    promise: PaymentPromise,
    verb: str,
    before_data: dict,
    request: Request,
    request_id: str | None,
) -> PromiseOut:
    log_event(
        db,
        actor=user,
        action=f"payment_promise.{verb}",
        entity_type="payment_promise",
        entity_id=str(promise.id),
        before_data=before_data,
        after_obj=promise,
        request_id=request_id,
        ip_address=request_ip(request),
    )
    db.commit()
    db.refresh(promise)
    return promise_out(promise)


@router.get("", response_model=PromisePage)
def list_promises(
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("collections.view")),
    promise_status: PromiseStatus | None = Query(default=None, alias="status"),
    account_id: int | None = Query(default=None),
    due_today: bool = Query(default=False),
    overdue: bool = Query(default=False),
    date_from: date | None = Query(default=None, alias="from"),
    date_to: date | None = Query(default=None, alias="to"),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=25, ge=1, le=100),
):
    items, total = promise_service.list_promises(
        db,
        user.clinic_id,
        page=page,
        page_size=page_size,
        today=today(),
        status=promise_status,
        account_id=account_id,
        due_today=due_today,
        overdue=overdue,
        date_from=date_from,
        date_to=date_to,
    )
    return PromisePage(
        items=[promise_out(item) for item in items],
        total=total,
        page=page,
        page_size=page_size,
        total_pages=ceil(total / page_size) if total else 0,
    )


@router.get("/{promise_id}", response_model=PromiseOut)
def get_promise(
    promise_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("collections.view")),
):
    return promise_out(promise_service.get_promise(db, user.clinic_id, promise_id))


@router.patch("/{promise_id}", response_model=PromiseOut)
def update_promise(
    promise_id: int,
    payload: PromiseUpdate,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("collections.manage")),
    request_id: str | None = Header(default=None),
):
    promise = promise_service.get_promise(db, user.clinic_id, promise_id)
    before_data = snapshot_model(promise)
    promise_service.update_promise(
        promise,
        actor=user,
        promised_amount_pence=payload.promised_amount_pence,
        promised_date=payload.promised_date,
        notes=payload.notes,
    )
    return _audit(
        db, user=user, promise=promise, verb="updated", before_data=before_data,
        request=request, request_id=request_id,
    )


@router.post("/{promise_id}/fulfill", response_model=PromiseOut)
def fulfill_promise(
    promise_id: int,
    payload: PromiseFulfill,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("collections.manage")),
    request_id: str | None = Header(default=None),
):
    promise = promise_service.get_promise(db, user.clinic_id, promise_id)
    before_data = snapshot_model(promise)
    promise_service.fulfill_promise(
        db,
        promise,
        paid_amount_pence=payload.paid_amount_pence,
        paid_date=payload.paid_date,
        actor=user,
        notes=payload.notes,
    )
    return _audit(
        db, user=user, promise=promise, verb="fulfilled", before_data=before_data,
        request=request, request_id=request_id,
    )


@router.post("/{promise_id}/broken", response_model=PromiseOut)
def break_promise(
    promise_id: int,
    payload: PromiseBreak,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("collections.manage")),
    request_id: str | None = Header(default=None),
):
    promise = promise_service.get_promise(db, user.clinic_id, promise_id)
    before_data = snapshot_model(promise)
    promise_service.break_promise(db, promise, reason=payload.reason, actor=user)
    return _audit(
        db, user=user, promise=promise, verb="broken", before_data=before_data,
        request=request, request_id=request_id,
    )


@router.post("/{promise_id}/cancel", response_model=PromiseOut)
def cancel_promise(
    promise_id: int,
    request: Request,
    payload: PromiseCancel | None = None,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("collections.manage")),
    request_id: str | None = Header(default=None),
):
    promise = promise_service.get_promise(db, user.clinic_id, promise_id)
    before_data = snapshot_model(promise)
    promise_service.cancel_promise(promise, actor=user, reason=payload.reason if payload else None)
    return _audit(
        db, user=user, promise=promise, verb="cancelled", before_data=before_data,
        request=request, request_id=request_id,
    )
