from __future__ import annotations

import logging
from datetime import date, datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.orm import InstrumentedAttribute, Session

from app.core.clock import today as clinic_today
from app.core.clock import as_utc, utcnow
from app.core.errors import InvalidStateError, NotFoundError, ValidationFailed
from app.core.settings import settings
from app.models.account import AccountStatus, PatientAccount
from app.models.invoice import Invoice, InvoiceStatus, Payment, PaymentMethod
from app.models.patient import Patient
from app.models.user import User
from app.services.aging import BUCKET_COLUMNS, aging_bucket, days_past_due, empty_buckets
from app.services.audit import log_event

logger = logging.getLogger("ortho_pms.billing")

BILLED_EXCLUDED_STATUSES = (InvoiceStatus.draft, InvoiceStatus.void)
PAYABLE_STATUSES = (InvoiceStatus.issued, InvoiceStatus.part_paid)

BALANCE_FIELDS = (
    "current_balance_pence",
    "patient_balance_pence",
    "insurance_balance_pence",
    "credit_balance_pence",
    *BUCKET_COLUMNS.values(),
    "days_overdue",
)


def generate_number(
    db: Session,
    column: InstrumentedAttribute,
    clinic_id: int,
    prefix: str,
    *,
    year: int | None = None,
) -> str:
    """Next ``PREFIX-YYYY-NNNNN`` for the clinic, based on the highest issued number."""
    model = column.class_
    year = year or clinic_today().year
    stem = f"{prefix}-{year}-"
    last = db.scalar(
        select(column)
        .where(model.clinic_id == clinic_id, column.startswith(stem))
        .order_by(func.length(column).desc(), column.desc())
        .limit(1)
    )
    next_number = 1
    if last:
        try:
            next_number = int(last[len(stem):]) + 1
        except ValueError:
            next_number = 1
    return f"{stem}{next_number:05d}"


def get_account(db: Session, clinic_id: int, account_id: int) -> PatientAccount:
    account = db.scalar(
        select(PatientAccount).where(
            PatientAccount.id == account_id,
            PatientAccount.clinic_id == clinic_id,
            PatientAccount.deleted_at.is_(None),
        )
    )
    if account is None:
        raise NotFoundError("Account not found", code="ACCOUNT_NOT_FOUND")
    return account


def get_account_for_patient(db: Session, clinic_id: int, patient_id: int) -> PatientAccount | None:
    return db.scalar(
        select(PatientAccount)
        .where(
            PatientAccount.clinic_id == clinic_id,
            PatientAccount.patient_id == patient_id,
            PatientAccount.deleted_at.is_(None),
        )
        .order_by(PatientAccount.id.asc())
        .limit(1)
    )


def ensure_account(
    db: Session, *, clinic_id: int, patient: Patient, actor: User
) -> tuple[PatientAccount, bool]:
    existing = get_account_for_patient(db, clinic_id, patient.id)
    if existing:
        return existing, False
    account = PatientAccount(
        clinic_id=clinic_id,
        patient_id=patient.id,
        account_number=generate_number(db, PatientAccount.account_number, clinic_id, "ACC"),
        status=AccountStatus.active,
        created_by_user_id=actor.id,
        updated_by_user_id=actor.id,
    )
    db.add(account)
    db.flush()
    return account, True


def compute_invoice_totals(invoice: Invoice) -> None:
    subtotal = 0
    line_discounts = 0
    insurance = 0
    for line in invoice.lines:
        gross = line.quantity * line.unit_price_pence
        line.line_total_pence = gross - line.discount_pence
        subtotal += gross
        line_discounts += line.discount_pence
        insurance += line.insurance_pence
    adjustments = line_discounts + (invoice.discount_pence or 0)
    invoice.subtotal_pence = subtotal
    invoice.adjustments_pence = adjustments
    invoice.insurance_pence = insurance
    invoice.total_pence = subtotal - adjustments
    invoice.patient_amount_pence = max(subtotal - adjustments - insurance, 0)


def sync_invoice_status(invoice: Invoice) -> None:
    if invoice.status in BILLED_EXCLUDED_STATUSES:
        return
    if invoice.balance_pence == 0:
        invoice.status = InvoiceStatus.paid
    elif invoice.paid_pence > 0 or invoice.written_off_pence > 0:
        invoice.status = InvoiceStatus.part_paid
    else:
        invoice.status = InvoiceStatus.issued


def issue_invoice(
    invoice: Invoice, *, issue_date: date | None = None, due_date: date | None = None
) -> None:
    if invoice.status != InvoiceStatus.draft:
        raise InvalidStateError("Only draft invoices can be issued")
    if not invoice.lines:
        raise ValidationFailed("Invoice has no lines")
    compute_invoice_totals(invoice)
    invoice.issue_date = issue_date or invoice.issue_date or clinic_today()
    invoice.due_date = (
        due_date or invoice.due_date or invoice.issue_date + timedelta(days=settings.invoice_due_days)
    )
    invoice.status = InvoiceStatus.issued
    sync_invoice_status(invoice)


def void_invoice(invoice: Invoice) -> None:
    if invoice.status == InvoiceStatus.void:
        raise InvalidStateError("Invoice already void")
    if invoice.payments:
        raise InvalidStateError("Cannot void an invoice with payments")
    invoice.status = InvoiceStatus.void


def fifo_key(invoice: Invoice) -> tuple[date, int]:
    return (invoice.due_date or date.max, invoice.id)


def open_invoices(db: Session, account: PatientAccount) -> list[Invoice]:
    """Payable invoices with a balance, oldest due first."""
    db.flush()
    invoices = db.scalars(
        select(Invoice).where(
            Invoice.account_id == account.id,
            Invoice.status.in_(PAYABLE_STATUSES),
        )
    ).unique()
    return sorted((inv for inv in invoices if inv.balance_pence > 0), key=fifo_key)


def record_payment(
    db: Session,
    *,
    invoice: Invoice,
    amount_pence: int,
    method: PaymentMethod,
    actor: User,
    paid_at: datetime | None = None,
    reference: str | None = None,
) -> Payment:
    if invoice.status not in PAYABLE_STATUSES:
        raise InvalidStateError("Payments can only be recorded against issued invoices")
    if amount_pence < 1:
        raise ValidationFailed("Payment amount must be positive")
    if amount_pence > invoice.balance_pence:
        raise ValidationFailed("Payment exceeds invoice balance")
    payment = Payment(
        clinic_id=invoice.clinic_id,
        account_id=invoice.account_id,
        payment_number=generate_number(db, Payment.payment_number, invoice.clinic_id, "PAY"),
        amount_pence=amount_pence,
        method=method,
        paid_at=as_utc(paid_at) if paid_at else utcnow(),
        recorded_at=utcnow(),
        reference=reference,
        received_by_user_id=actor.id,
    )
    invoice.payments.append(payment)
    db.flush()
    sync_invoice_status(invoice)
    return payment


def allocate_payment(
    db: Session,
    *,
    account: PatientAccount,
    amount_pence: int,
    method: PaymentMethod,
    actor: User,
    paid_at: datetime | None = None,
    reference: str | None = None,
) -> list[Payment]:
    """Spread an account-level amount across open invoices, oldest due first."""
    if amount_pence < 1:
        raise ValidationFailed("Payment amount must be positive")
    invoices = open_invoices(db, account)
    outstanding = sum(inv.balance_pence for inv in invoices)
    if amount_pence > outstanding:
        raise ValidationFailed("Payment exceeds account balance")
    remaining = amount_pence
    payments: list[Payment] = []
    for invoice in invoices:
        if remaining <= 0:
            break
        applied = min(remaining, invoice.balance_pence)
        payments.append(
            record_payment(
                db,
                invoice=invoice,
                amount_pence=applied,
                method=method,
                actor=actor,
                paid_at=paid_at,
                reference=reference,
            )
        )
        remaining -= applied
    return payments


def allocate_write_off(
    db: Session,
    *,
    account: PatientAccount,
    amount_pence: int,
    invoice: Invoice | None = None,
) -> list[tuple[Invoice, int]]:
    targets = [invoice] if invoice is not None else open_invoices(db, account)
    outstanding = sum(inv.balance_pence for inv in targets)
    if amount_pence > outstanding:
        raise ValidationFailed("Write-off exceeds outstanding balance")
    remaining = amount_pence
    applied: list[tuple[Invoice, int]] = []
    for target in targets:
        if remaining <= 0:
            break
        portion = min(remaining, target.balance_pence)
        target.written_off_pence += portion
        sync_invoice_status(target)
        applied.append((target, portion))
        remaining -= portion
    db.flush()
    return applied


def _balance_values(account: PatientAccount) -> dict[str, int]:
    return {field: int(getattr(account, field) or 0) for field in BALANCE_FIELDS}


def recalculate_account_balance(
    db: Session,
    account: PatientAccount,
    *,
    today: date | None = None,
    actor: User | None = None,
    request_id: str | None = None,
    ip_address: str | None = None,
) -> bool:
    """Rebuild balances and aging buckets from the account's billed invoices.

    Returns True when any stored value changed. The caller commits.
    """
    today = today or clinic_today()
    db.flush()
    invoices = db.scalars(
        select(Invoice).where(
            Invoice.account_id == account.id,
            Invoice.status.not_in(BILLED_EXCLUDED_STATUSES),
        )
    ).unique()

    current = 0
    insurance = 0
    credit = 0
    buckets = empty_buckets()
    days_overdue = 0
    for invoice in invoices:
        balance = invoice.balance_pence
        credit += invoice.credit_pence
        if balance <= 0:
            continue
        current += balance
        insurance += invoice.insurance_pence
        days = days_past_due(invoice.due_date, today)
        buckets[aging_bucket(days)] += balance
        days_overdue = max(days_overdue, days)

    before = _balance_values(account)
    account.current_balance_pence = current
    account.patient_balance_pence = current
    account.insurance_balance_pence = insurance
    account.credit_balance_pence = credit
    for bucket, column in BUCKET_COLUMNS.items():
        setattr(account, column, buckets[bucket])
    account.days_overdue = max(days_overdue, 0)
    account.balance_updated_at = utcnow()
    after = _balance_values(account)

    changed = before != after
    if changed:
        log_event(
            db,
            actor=actor,
            clinic_id=account.clinic_id,
            action="account.balance_recalculated",
            entity_type="patient_account",
            entity_id=str(account.id),
            before_data=before,
            after_data=after,
            request_id=request_id,
            ip_address=ip_address,
        )
        logger.debug(
            "Account %s recalculated: balance %s -> %s",
            account.id,
            before["current_balance_pence"],
            after["current_balance_pence"],
        )
    return changed


def credit_sales_pence(db: Session, clinic_id: int, start: date, end: date) -> int:
    total = db.scalar(
        select(func.coalesce(func.sum(Invoice.total_pence), 0)).where(
            Invoice.clinic_id == clinic_id,
            Invoice.status.not_in(BILLED_EXCLUDED_STATUSES),
            Invoice.issue_date >= start,
            Invoice.issue_date <= end,
        )
    )
    return int(total or 0)


def payment_plan_amounts(total_pence: int, down_payment_pence: int, number_of_payments: int) -> tuple[int, int]:
    if down_payment_pence > total_pence:
        raise ValidationFailed("Down payment cannot exceed total")
    if number_of_payments < 1:
        raise ValidationFailed("Number of payments must be at least 1")
    financed = total_pence - down_payment_pence
    monthly = round(financed / number_of_payments)
    return financed, monthly
