from __future__ import annotations

import logging
from datetime import date, timedelta

from sqlalchemy import Select, func, select
from sqlalchemy.orm import Session

from app.core.clock import utcnow
from app.core.errors import InvalidStateError, NotFoundError, ValidationFailed
from app.models.collections import (
    OPEN_COLLECTION_STATUSES,
    AccountCollection,
    ActivityType,
    CollectionStatus,
    PaymentPromise,
    PromiseStatus,
)
from app.models.user import User
from app.services.collections import format_pence, log_activity

logger = logging.getLogger("ortho_pms.collections")

BREAKABLE_STATUSES = (PromiseStatus.pending, PromiseStatus.partial)


def get_promise(db: Session, clinic_id: int, promise_id: int) -> PaymentPromise:
    promise = db.scalar(
        select(PaymentPromise).where(
            PaymentPromise.id == promise_id, PaymentPromise.clinic_id == clinic_id
        )
    )
    if promise is None:
        raise NotFoundError("Promise not found")
    return promise


def create_promise(
    db: Session,
    collection: AccountCollection,
    *,
    promised_amount_pence: int,
    promised_date: date,
    actor: User,
    notes: str | None = None,
) -> PaymentPromise:
    if collection.status not in OPEN_COLLECTION_STATUSES or collection.status == CollectionStatus.agency:
        raise InvalidStateError("Promises can only be recorded on open collections not at an agency")
    if promised_amount_pence <= 0:
        raise ValidationFailed("Promised amount must be positive")
    promise = PaymentPromise(
        clinic_id=collection.clinic_id,
        account_id=collection.account_id,
        promised_amount_pence=promised_amount_pence,
        promised_date=promised_date,
        status=PromiseStatus.pending,
        paid_amount_pence=0,
        notes=notes,
        created_by_user_id=actor.id,
        updated_by_user_id=actor.id,
    )
    collection.promises.append(promise)
    db.add(promise)
    log_activity(
        db,
        collection,
        ActivityType.promise_made,
        f"Promise to pay {format_pence(promised_amount_pence)} by {promised_date.isoformat()}",
        actor=actor,
    )
    db.flush()
    return promise


def update_promise(
    promise: PaymentPromise,
    *,
    actor: User,
    promised_amount_pence: int | None = None,
    promised_date: date | None = None,
    notes: str | None = None,
) -> PaymentPromise:
    if promise.status != PromiseStatus.pending:
        raise InvalidStateError("Only pending promises can be edited")
    if promised_amount_pence is not None:
        if promised_amount_pence <= 0:
            raise ValidationFailed("Promised amount must be positive")
        promise.promised_amount_pence = promised_amount_pence
    if promised_date is not None:
        promise.promised_date = promised_date
    if notes is not None:
        promise.notes = notes
    promise.updated_by_user_id = actor.id
    return promise


def fulfill_promise(
    db: Session,
    promise: PaymentPromise,
    *,
    paid_amount_pence: int,
    paid_date: date,
    actor: User,
    notes: str | None = None,
) -> PaymentPromise:
    if promise.status != PromiseStatus.pending:
        raise InvalidStateError("Only pending promises can be fulfilled")
    if paid_amount_pence <= 0:
        raise ValidationFailed("Paid amount must be positive")
    promise.paid_amount_pence = paid_amount_pence
    promise.paid_date = paid_date
    promise.status = (
        PromiseStatus.fulfilled
        if paid_amount_pence >= promise.promised_amount_pence
        else PromiseStatus.partial
    )
    if notes:
        promise.notes = notes
    promise.updated_by_user_id = actor.id
    log_activity(
        db,
        promise.account_collection,
        ActivityType.payment_received,
        f"Promise {promise.status.value}: {format_pence(paid_amount_pence)} of {format_pence(promise.promised_amount_pence)}",
        actor=actor,
        payment_received_pence=paid_amount_pence,
    )
    return promise


def break_promise(
    db: Session, promise: PaymentPromise, *, reason: str, actor: User | None
) -> PaymentPromise:
    if promise.status not in BREAKABLE_STATUSES:
        raise InvalidStateError("Only pending or partial promises can be marked broken")
    if not reason or not reason.strip():
        raise ValidationFailed("A reason is required")
    promise.status = PromiseStatus.broken
    promise.broken_reason = reason.strip()[:500]
    promise.broken_at = utcnow()
    if actor is not None:
        promise.updated_by_user_id = actor.id
    log_activity(
        db,
        promise.account_collection,
        ActivityType.promise_broken,
        f"Promise of {format_pence(promise.promised_amount_pence)} due {promise.promised_date.isoformat()} broken: {promise.broken_reason}",
        actor=actor,
    )
    return promise


def cancel_promise(promise: PaymentPromise, *, actor: User, reason: str | None = None) -> PaymentPromise:
    if promise.status != PromiseStatus.pending:
        raise InvalidStateError("Only pending promises can be cancelled")
    promise.status = PromiseStatus.cancelled
    if reason:
        promise.notes = f"{promise.notes}\n{reason}" if promise.notes else reason
    promise.updated_by_user_id = actor.id
    return promise


def promise_days_overdue(promise: PaymentPromise, today: date) -> int:
    if promise.status != PromiseStatus.pending:
        return 0
    return max((today - promise.promised_date).days, 0)


def promise_query(
    clinic_id: int,
    *,
    today: date,
    status: PromiseStatus | None = None,
    account_id: int | None = None,
    due_today: bool = False,
    overdue: bool = False,
    date_from: date | None = None,
    date_to: date | None = None,
) -> Select:
    stmt = select(PaymentPromise).where(PaymentPromise.clinic_id == clinic_id)
    if status is not None:
        stmt = stmt.where(PaymentPromise.status == status)
    if account_id is not None:
        stmt = stmt.where(PaymentPromise.account_id == account_id)
    if due_today:
        stmt = stmt.where(
            PaymentPromise.status == PromiseStatus.pending, PaymentPromise.promised_date == today
        )
    if overdue:
        stmt = stmt.where(
            PaymentPromise.status == PromiseStatus.pending, PaymentPromise.promised_date < today
        )
    if date_from is not None:
        stmt = stmt.where(PaymentPromise.promised_date >= date_from)
    if date_to is not None:
        stmt = stmt.where(PaymentPromise.promised_date <= date_to)
    return stmt


def list_promises(
    db: Session, clinic_id: int, *, page: int, page_size: int, **filters
) -> tuple[list[PaymentPromise], int]:
    stmt = promise_query(clinic_id, **filters)
    total = int(db.scalar(select(func.count()).select_from(stmt.subquery())) or 0)
    items = list(
        db.scalars(
            stmt.order_by(PaymentPromise.promised_date.asc(), PaymentPromise.id.asc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        ).unique()
    )
    return items, total


def promises_due_today(db: Session, clinic_id: int, today: date) -> list[PaymentPromise]:
    return list(db.scalars(promise_query(clinic_id, today=today, due_today=True)).unique())


def overdue_promises(db: Session, clinic_id: int, today: date) -> list[PaymentPromise]:
    return list(db.scalars(promise_query(clinic_id, today=today, overdue=True)).unique())


def break_lapsed_promises(
    db: Session, clinic_id: int, *, today: date, grace_days: int, actor: User | None
) -> list[PaymentPromise]:
    cutoff = today - timedelta(days=grace_days)
    lapsed = list(
        db.scalars(
            select(PaymentPromise).where(
                PaymentPromise.clinic_id == clinic_id,
                PaymentPromise.status == PromiseStatus.pending,
                PaymentPromise.promised_date < cutoff,
            )
        ).unique()
    )
    for promise in lapsed:
        break_promise(db, promise, reason="Promise date passed", actor=actor)
    if lapsed:
        logger.info("Marked %s lapsed promises broken for clinic %s", len(lapsed), clinic_id)
    return lapsed
