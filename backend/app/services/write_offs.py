from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.clock import utcnow
from app.core.errors import InvalidStateError, NotFoundError, PermissionDenied, ValidationFailed
from app.models.account import PatientAccount
from app.models.collections import (
    ActivityType,
    CollectionStatus,
    WriteOff,
    WriteOffReason,
    WriteOffStatus,
)
from app.models.invoice import Invoice
from app.models.user import Role, User
from app.services.billing import (
    PAYABLE_STATUSES,
    allocate_write_off,
    generate_number,
    recalculate_account_balance,
)
from app.services.collections import (
    find_open_collection,
    format_pence,
    log_activity,
    sync_account_collection,
    transition,
)

logger = logging.getLogger("ortho_pms.collections")

RECOVERABLE_STATUSES = (WriteOffStatus.approved, WriteOffStatus.partially_recovered)


def get_write_off(db: Session, clinic_id: int, write_off_id: int) -> WriteOff:
    write_off = db.scalar(
        select(WriteOff).where(WriteOff.id == write_off_id, WriteOff.clinic_id == clinic_id)
    )
    if write_off is None:
        raise NotFoundError("Write-off not found")
    return write_off


def request_write_off(
    db: Session,
    *,
    account: PatientAccount,
    amount_pence: int,
    reason: WriteOffReason,
    actor: User,
    invoice: Invoice | None = None,
    reason_details: str | None = None,
) -> WriteOff:
    if amount_pence <= 0:
        raise ValidationFailed("Write-off amount must be positive")
    recalculate_account_balance(db, account, actor=actor)
    if amount_pence > account.current_balance_pence:
        raise ValidationFailed("Write-off exceeds account balance")
    if invoice is not None:
        if invoice.account_id != account.id:
            raise ValidationFailed("Invoice belongs to a different account")
        if invoice.status not in PAYABLE_STATUSES:
            raise ValidationFailed("Invoice is not open")
        if amount_pence > invoice.balance_pence:
            raise ValidationFailed("Write-off exceeds invoice balance")
        duplicate = db.scalar(
            select(WriteOff.id)
            .where(WriteOff.invoice_id == invoice.id, WriteOff.status == WriteOffStatus.pending)
            .limit(1)
        )
        if duplicate is not None:
            raise InvalidStateError("A pending write-off already exists for this invoice")

    collection = find_open_collection(db, account.id)
    write_off = WriteOff(
        clinic_id=account.clinic_id,
        write_off_number=generate_number(db, WriteOff.write_off_number, account.clinic_id, "WO"),
        account_id=account.id,
        invoice_id=invoice.id if invoice else None,
        account_collection_id=collection.id if collection else None,
        amount_pence=amount_pence,
        reason=reason,
        reason_details=reason_details,
        status=WriteOffStatus.pending,
        requested_by_user_id=actor.id,
        requested_at=utcnow(),
        recovered_amount_pence=0,
    )
    db.add(write_off)
    db.flush()
    return write_off


def approve_write_off(
    db: Session, write_off: WriteOff, *, actor: User, notes: str | None = None
) -> WriteOff:
    if write_off.status != WriteOffStatus.pending:
        raise InvalidStateError("Only pending write-offs can be approved")
    if write_off.requested_by_user_id == actor.id and actor.role != Role.superadmin:
        raise PermissionDenied("You cannot approve your own write-off request")

    account = write_off.account
    allocate_write_off(db, account=account, amount_pence=write_off.amount_pence, invoice=write_off.invoice)
    write_off.status = WriteOffStatus.approved
    write_off.approved_by_user_id = actor.id
    write_off.approved_at = utcnow()
    write_off.approval_notes = notes
    recalculate_account_balance(db, account, actor=actor)

    collection = find_open_collection(db, account.id)
    if collection is not None:
        collection.written_off_pence += write_off.amount_pence
        collection.current_balance_pence = account.current_balance_pence
        log_activity(
            db,
            collection,
            ActivityType.written_off,
            f"{format_pence(write_off.amount_pence)} written off ({write_off.reason.value})",
            actor=actor,
        )
        if collection.current_balance_pence == 0:
            transition(db, collection, CollectionStatus.written_off)
    sync_account_collection(db, account, actor=actor)
    logger.info("Write-off %s approved for account %s", write_off.write_off_number, account.id)
    return write_off


def reject_write_off(db: Session, write_off: WriteOff, *, actor: User, reason: str) -> WriteOff:
    if write_off.status != WriteOffStatus.pending:
        raise InvalidStateError("Only pending write-offs can be rejected")
    if not reason or not reason.strip():
        raise ValidationFailed("A rejection reason is required")
    write_off.status = WriteOffStatus.rejected
    write_off.rejected_by_user_id = actor.id
    write_off.rejected_at = utcnow()
    write_off.rejection_reason = reason.strip()
    return write_off


def record_recovery(
    db: Session,
    write_off: WriteOff,
    *,
    amount_pence: int,
    actor: User,
    payment_reference: str | None = None,
    notes: str | None = None,
) -> WriteOff:
    if write_off.status not in RECOVERABLE_STATUSES:
        raise InvalidStateError("Only approved write-offs can record recoveries")
    if amount_pence <= 0:
        raise ValidationFailed("Recovery amount must be positive")
    if write_off.recovered_amount_pence + amount_pence > write_off.amount_pence:
        raise ValidationFailed("Recovery exceeds the written-off amount")
    write_off.recovered_amount_pence += amount_pence
    write_off.recovered_at = utcnow()
    if payment_reference:
        write_off.recovery_reference = payment_reference
    if notes:
        write_off.approval_notes = f"{write_off.approval_notes}\n{notes}" if write_off.approval_notes else notes
    write_off.status = (
        WriteOffStatus.fully_recovered
        if write_off.recovered_amount_pence == write_off.amount_pence
        else WriteOffStatus.partially_recovered
    )
    logger.info(
        "Recovered %s on write-off %s by user %s", amount_pence, write_off.write_off_number, actor.id
    )
    return write_off
