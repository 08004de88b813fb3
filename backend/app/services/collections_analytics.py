from __future__ import annotations

import math
from datetime import date, datetime, time, timedelta, timezone

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.core.clock import as_utc
from app.core.settings import settings
from app.models.account import PatientAccount
from app.models.collections import (
    OPEN_COLLECTION_STATUSES,
    AccountCollection,
    AgencyReferral,
    CollectionStatus,
    CollectionWorkflow,
    PaymentPromise,
    PaymentReminder,
    PromiseStatus,
    WriteOff,
    WriteOffStatus,
)
from app.services.aging import (
    AGING_BUCKETS,
    account_buckets,
    bucket_label,
    calculate_dso,
    empty_buckets,
    percentage,
)
from app.services.billing import credit_sales_pence

AR_TYPES = ("all", "patient", "insurance")
APPROVED_WRITE_OFF_STATUSES = (
    WriteOffStatus.approved,
    WriteOffStatus.partially_recovered,
    WriteOffStatus.fully_recovered,
)


def _start_of(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def _sum(db: Session, column, *criteria) -> int:
    return int(db.scalar(select(func.coalesce(func.sum(column), 0)).where(*criteria)) or 0)


def _count(db: Session, column, *criteria) -> int:
    return int(db.scalar(select(func.count(column)).where(*criteria)) or 0)


def _live_accounts(clinic_id: int):
    return select(PatientAccount).where(
        PatientAccount.clinic_id == clinic_id, PatientAccount.deleted_at.is_(None)
    )


def aging_summary(db: Session, clinic_id: int, *, include_zero_balance: bool = False) -> dict:
    stmt = _live_accounts(clinic_id)
    if not include_zero_balance:
        stmt = stmt.where(PatientAccount.current_balance_pence > 0)
    accounts = list(db.scalars(stmt).unique())
    buckets = empty_buckets()
    for account in accounts:
        for bucket, amount in account_buckets(account).items():
            buckets[bucket] += amount
    outstanding = [a for a in accounts if a.current_balance_pence > 0]
    average_days = (
        round(sum(a.days_overdue for a in outstanding) / len(outstanding), 1) if outstanding else 0.0
    )
    return {
        "total_ar_pence": sum(a.current_balance_pence for a in accounts),
        "patient_ar_pence": sum(a.patient_balance_pence for a in accounts),
        "insurance_ar_pence": sum(a.insurance_balance_pence for a in accounts),
        "buckets": [
            {"bucket": bucket, "label": bucket_label(bucket), "amount_pence": buckets[bucket]}
            for bucket in AGING_BUCKETS
        ],
        "account_count": len(accounts),
        "average_days_outstanding": average_days,
    }


def _row_balance(account: PatientAccount, ar_type: str) -> int:
    if ar_type == "patient":
        return account.patient_balance_pence
    if ar_type == "insurance":
        return account.insurance_balance_pence
    return account.current_balance_pence


def aging_rows(
    db: Session,
    clinic_id: int,
    *,
    ar_type: str = "all",
    min_balance_pence: int | None = None,
    include_zero_balance: bool = False,
) -> list[dict]:
    accounts = db.scalars(_live_accounts(clinic_id).order_by(PatientAccount.days_overdue.desc(), PatientAccount.id)).unique()
    open_accounts = set(
        db.scalars(
            select(AccountCollection.account_id).where(
                AccountCollection.clinic_id == clinic_id,
                AccountCollection.status.in_(OPEN_COLLECTION_STATUSES),
            )
        )
    )
    rows: list[dict] = []
    for account in accounts:
        balance = _row_balance(account, ar_type)
        if balance <= 0 and not include_zero_balance:
            continue
        if min_balance_pence is not None and balance < min_balance_pence:
            continue
        rows.append(
            {
                "account_id": account.id,
                "account_number": account.account_number,
                "patient_id": account.patient_id,
                "patient_name": account.patient.full_name,
                "balance_pence": balance,
                "buckets": account_buckets(account),
                "days_overdue": account.days_overdue,
                "status": account.status.value,
                "in_collections": account.id in open_accounts,
            }
        )
    return rows


def aging_report(
    db: Session,
    clinic_id: int,
    *,
    ar_type: str = "all",
    min_balance_pence: int | None = None,
    include_zero_balance: bool = False,
    page: int = 1,
    page_size: int = 100,
) -> dict:
    rows = aging_rows(
        db,
        clinic_id,
        ar_type=ar_type,
        min_balance_pence=min_balance_pence,
        include_zero_balance=include_zero_balance,
    )
    totals = empty_buckets()
    for row in rows:
        for bucket, amount in row["buckets"].items():
            totals[bucket] += amount
    start = (page - 1) * page_size
    return {
        "items": rows[start : start + page_size],
        "total": len(rows),
        "page": page,
        "page_size": page_size,
        "total_pages": math.ceil(len(rows) / page_size) if rows else 0,
        "totals": {
            "balance_pence": sum(row["balance_pence"] for row in rows),
            "buckets": totals,
        },
    }


def days_sales_outstanding(
    db: Session, clinic_id: int, *, today: date, period_days: int | None = None
) -> dict:
    period_days = period_days or settings.dso_period_days
    start = today - timedelta(days=period_days)
    total_ar = _sum(
        db,
        PatientAccount.current_balance_pence,
        PatientAccount.clinic_id == clinic_id,
        PatientAccount.deleted_at.is_(None),
    )
    sales = credit_sales_pence(db, clinic_id, start, today)
    return {
        "dso": calculate_dso(total_ar, sales, period_days),
        "total_ar_pence": total_ar,
        "credit_sales_pence": sales,
        "period_days": period_days,
    }


def collection_summary(db: Session, clinic_id: int) -> dict:
    scoped = AccountCollection.clinic_id == clinic_id

    def _status_count(status: CollectionStatus) -> int:
        return _count(db, AccountCollection.id, scoped, AccountCollection.status == status)

    total_started = _sum(db, AccountCollection.starting_balance_pence, scoped)
    total_collected = _sum(db, AccountCollection.paid_amount_pence, scoped)
    pending_promise_filter = (
        PaymentPromise.clinic_id == clinic_id,
        PaymentPromise.status == PromiseStatus.pending,
    )
    pending_write_off_filter = (
        WriteOff.clinic_id == clinic_id,
        WriteOff.status == WriteOffStatus.pending,
    )
    return {
        "active_count": _status_count(CollectionStatus.active),
        "paused_count": _status_count(CollectionStatus.paused),
        "payment_plan_count": _status_count(CollectionStatus.payment_plan),
        "agency_count": _status_count(CollectionStatus.agency),
        "total_balance_pence": _sum(
            db,
            AccountCollection.current_balance_pence,
            scoped,
            AccountCollection.status.in_(OPEN_COLLECTION_STATUSES),
        ),
        "total_collected_pence": total_collected,
        "pending_promises": _count(db, PaymentPromise.id, *pending_promise_filter),
        "pending_promises_pence": _sum(db, PaymentPromise.promised_amount_pence, *pending_promise_filter),
        "pending_write_offs": _count(db, WriteOff.id, *pending_write_off_filter),
        "pending_write_offs_pence": _sum(db, WriteOff.amount_pence, *pending_write_off_filter),
        "collection_rate": percentage(total_collected, total_started),
    }


def _average_days_to_complete(collections: list[AccountCollection]) -> float:
    durations = [
        (as_utc(c.completed_at) - as_utc(c.started_at)).days
        for c in collections
        if c.completed_at is not None
    ]
    if not durations:
        return 0.0
    return round(sum(durations) / len(durations), 1)


def workflow_effectiveness(
    db: Session,
    workflow: CollectionWorkflow,
    *,
    date_from: date | None = None,
    date_to: date | None = None,
) -> dict:
    stmt = select(AccountCollection).where(AccountCollection.workflow_id == workflow.id)
    if date_from is not None:
        stmt = stmt.where(AccountCollection.started_at >= _start_of(date_from))
    if date_to is not None:
        stmt = stmt.where(AccountCollection.started_at < _start_of(date_to + timedelta(days=1)))
    collections = list(db.scalars(stmt).unique())
    finished = [
        c for c in collections if c.status in (CollectionStatus.completed, CollectionStatus.settled)
    ]
    starting = sum(c.starting_balance_pence for c in collections)
    collected = sum(c.paid_amount_pence for c in collections)
    return {
        "workflow_id": workflow.id,
        "workflow_name": workflow.name,
        "total_accounts": len(collections),
        "completed": len(finished),
        "completion_rate": percentage(len(finished), len(collections)),
        "starting_balance_pence": starting,
        "collected_pence": collected,
        "collection_rate": percentage(collected, starting),
        "average_days_to_complete": _average_days_to_complete(finished),
    }


def collections_analytics(db: Session, clinic_id: int, *, today: date, period_days: int = 30) -> dict:
    period_start = today - timedelta(days=period_days)
    since = _start_of(period_start)
    summary = collection_summary(db, clinic_id)
    aging = aging_summary(db, clinic_id)
    dso = days_sales_outstanding(db, clinic_id, today=today)

    finished_recently = list(
        db.scalars(
            select(AccountCollection).where(
                AccountCollection.clinic_id == clinic_id,
                AccountCollection.status.in_((CollectionStatus.completed, CollectionStatus.settled)),
                AccountCollection.completed_at >= since,
            )
        ).unique()
    )

    approved_filter = (
        WriteOff.clinic_id == clinic_id,
        WriteOff.status.in_(APPROVED_WRITE_OFF_STATUSES),
    )
    written_off = _sum(db, WriteOff.amount_pence, *approved_filter)
    recovered = _sum(db, WriteOff.recovered_amount_pence, *approved_filter)
    written_off_in_period = _sum(db, WriteOff.amount_pence, *approved_filter, WriteOff.approved_at >= since)

    promise_filter = (
        PaymentPromise.clinic_id == clinic_id,
        PaymentPromise.promised_date >= period_start,
        PaymentPromise.promised_date <= today,
    )
    kept = _count(db, PaymentPromise.id, *promise_filter, PaymentPromise.status == PromiseStatus.fulfilled)
    resolved = _count(
        db,
        PaymentPromise.id,
        *promise_filter,
        PaymentPromise.status.in_((PromiseStatus.fulfilled, PromiseStatus.partial, PromiseStatus.broken)),
    )

    referral_filter = (AgencyReferral.clinic_id == clinic_id,)
    referred = _sum(db, AgencyReferral.amount_referred_pence, *referral_filter)
    agency_collected = _sum(db, AgencyReferral.amount_collected_pence, *referral_filter)

    reminder_filter = (PaymentReminder.clinic_id == clinic_id, PaymentReminder.sent_at >= since)
    reminders_sent = _count(db, PaymentReminder.id, *reminder_filter)
    reminders_paid = _count(db, PaymentReminder.id, *reminder_filter, PaymentReminder.payment_received.is_(True))

    billed = credit_sales_pence(db, clinic_id, period_start, today)

    return {
        "period_days": period_days,
        "summary": {
            "total_ar_pence": aging["total_ar_pence"],
            "in_collection_pence": summary["total_balance_pence"],
            "collection_rate": summary["collection_rate"],
            "average_days_to_collect": _average_days_to_complete(finished_recently),
            "dso": dso["dso"],
            "recovery_rate": percentage(recovered, written_off),
        },
        "aging": aging,
        "performance": {
            "promise_kept_rate": percentage(kept, resolved),
            "agency_recovery_rate": percentage(agency_collected, referred),
            "write_off_rate": percentage(written_off_in_period, billed),
            "reminder_response_rate": percentage(reminders_paid, reminders_sent),
        },
    }
