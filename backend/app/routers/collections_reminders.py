from math import ceil

from fastapi import APIRouter, Depends, Header, Query, Request, status
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.deps import request_ip, require_capability
from app.models.collections import Channel, PaymentReminder, ReminderType
from app.models.user import User
from app.schemas.collections import (
    ReminderBatch,
    ReminderBatchOut,
    ReminderCreate,
    ReminderOut,
    ReminderPage,
    ReminderStats,
)
from app.services import reminders as reminder_service
from app.services.audit import log_event

router = APIRouter(prefix="/collections/reminders", tags=["collections"])


@router.get("", response_model=ReminderPage)
def list_reminders(
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("collections.view")),
    account_id: int | None = Query(default=None),
    reminder_type: ReminderType | None = Query(default=None),
    channel: Channel | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=25, ge=1, le=100),
):
    criteria = [PaymentReminder.clinic_id == user.clinic_id]
    if account_id is not None:
        criteria.append(PaymentReminder.account_id == account_id)
    if reminder_type is not None:
        criteria.append(PaymentReminder.reminder_type == reminder_type)
    if channel is not None:
        criteria.append(PaymentReminder.channel == channel)
    total = int(db.scalar(select(func.count(PaymentReminder.id)).where(*criteria)) or 0)
    items = list(
        db.scalars(
            select(PaymentReminder)
            .where(*criteria)
            .order_by(PaymentReminder.sent_at.desc(), PaymentReminder.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        ).unique()
    )
    return ReminderPage(
        items=[ReminderOut.model_validate(item) for item in items],
        total=total,
        page=page,
        page_size=page_size,
        total_pages=ceil(total / page_size) if total else 0,
        stats=ReminderStats(**reminder_service.reminder_stats(db, user.clinic_id)),
    )


@router.post("", response_model=ReminderOut, status_code=status.HTTP_201_CREATED)
def send_reminder(
    payload: ReminderCreate,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("collections.manage")),
    request_id: str | None = Header(default=None),
):
    reminder = reminder_service.send_reminder(
        db,
        clinic_id=user.clinic_id,
        account_id=payload.account_id,
        reminder_type=payload.reminder_type,
        channel=payload.channel,
        actor=user,
        template_id=payload.template_id,
        subject=payload.subject,
        body=payload.body,
        include_payment_link=payload.include_payment_link,
    )
    log_event(
        db,
        actor=user,
        action="payment_reminder.sent",
        entity_type="payment_reminder",
        entity_id=str(reminder.id),
        after_obj=reminder,
        request_id=request_id,
        ip_address=request_ip(request),
    )
    db.commit()
    db.refresh(reminder)
    return reminder


@router.post("/batch", response_model=ReminderBatchOut)
def send_batch(
    payload: ReminderBatch,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("collections.manage")),
    request_id: str | None = Header(default=None),
):
    result = reminder_service.send_batch_reminders(
        db,
        clinic_id=user.clinic_id,
        reminder_type=payload.reminder_type,
        channel=payload.channel,
        actor=user,
        template_id=payload.template_id,
        min_days_overdue=payload.min_days_overdue,
        max_days_overdue=payload.max_days_overdue,
        min_balance_pence=payload.min_balance_pence,
        max_accounts=payload.max_accounts,
        include_payment_link=payload.include_payment_link,
    )
    log_event(
        db,
        actor=user,
        action="payment_reminder.batch_sent",
        entity_type="payment_reminder",
        entity_id="batch",
        after_data={**payload.model_dump(mode="json"), **result},
        request_id=request_id,
        ip_address=request_ip(request),
    )
    db.commit()
    return result
