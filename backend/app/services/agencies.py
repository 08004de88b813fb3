from __future__ import annotations

import csv
import io
import logging
from datetime import date

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.clock import utcnow
from app.core.errors import InvalidStateError, NotFoundError, ValidationFailed
from app.models.account import PatientAccount
from app.models.collections import (
    AccountCollection,
    ActivityType,
    AgencyPayment,
    AgencyReferral,
    AgencyReferralStatus,
    CollectionAgency,
    CollectionStatus,
)
from app.models.invoice import PaymentMethod
from app.models.user import User
from app.services.billing import allocate_payment, generate_number
from app.services.collections import (
    active_referral,
    format_pence,
    has_active_payment_plan,
    log_activity,
    refresh_account,
    transition,
)

logger = logging.getLogger("ortho_pms.collections")

LIVE_REFERRAL_STATUSES = (AgencyReferralStatus.active, AgencyReferralStatus.partial)

EXPORT_COLUMNS = [
    "referral_number",
    "account_number",
    "patient_name",
    "patient_email",
    "patient_phone",
    "amount_referred",
    "referral_date",
]


def get_agency(db: Session, clinic_id: int, agency_id: int) -> CollectionAgency:
    agency = db.scalar(
        select(CollectionAgency).where(
            CollectionAgency.id == agency_id,
            CollectionAgency.clinic_id == clinic_id,
            CollectionAgency.deleted_at.is_(None),
        )
    )
    if agency is None:
        raise NotFoundError("Agency not found")
    return agency


def get_referral(db: Session, clinic_id: int, referral_id: int) -> AgencyReferral:
    referral = db.scalar(
        select(AgencyReferral).where(
            AgencyReferral.id == referral_id, AgencyReferral.clinic_id == clinic_id
        )
    )
    if referral is None:
        raise NotFoundError("Referral not found")
    return referral


def retire_agency(db: Session, agency: CollectionAgency, *, actor: User) -> str:
    """Deactivate an agency that has referrals, otherwise soft-delete it."""
    has_referrals = db.scalar(
        select(AgencyReferral.id).where(AgencyReferral.agency_id == agency.id).limit(1)
    )
    agency.updated_by_user_id = actor.id
    if has_referrals is not None:
        agency.is_active = False
        return "deactivated"
    agency.deleted_at = utcnow()
    agency.deleted_by_user_id = actor.id
    return "deleted"


def check_agency_eligibility(
    db: Session,
    clinic_id: int,
    account_id: int,
    *,
    agency: CollectionAgency | None = None,
) -> dict:
    account = db.scalar(
        select(PatientAccount).where(
            PatientAccount.id == account_id,
            PatientAccount.clinic_id == clinic_id,
            PatientAccount.deleted_at.is_(None),
        )
    )
    if account is None:
        return {"eligible": False, "reason": "Account not found", "days_overdue": 0, "balance_pence": 0}
    balance = account.current_balance_pence
    days_overdue = account.days_overdue

    def _result(eligible: bool, reason: str | None = None) -> dict:
        return {
            "eligible": eligible,
            "reason": reason,
            "days_overdue": days_overdue,
            "balance_pence": balance,
        }

    existing = db.scalar(
        select(AgencyReferral.id)
        .where(
            AgencyReferral.account_id == account.id,
            AgencyReferral.status.in_(LIVE_REFERRAL_STATUSES),
        )
        .limit(1)
    )
    if existing is not None:
        return _result(False, "Account already referred to an agency")
    if has_active_payment_plan(db, account.id):
        return _result(False, "Account has an active payment plan")
    if agency is not None:
        if balance < agency.min_balance_pence:
            return _result(
                False, f"Balance below agency minimum of {format_pence(agency.min_balance_pence)}"
            )
        if days_overdue < agency.min_days:
            return _result(False, f"Account must be at least {agency.min_days} days overdue")
    return _result(True)


def send_to_agency(
    db: Session,
    collection: AccountCollection,
    *,
    agency: CollectionAgency,
    actor: User,
    notes: str | None = None,
) -> AgencyReferral:
    if not agency.is_active:
        raise ValidationFailed("Agency is not active")
    if collection.status not in (CollectionStatus.active, CollectionStatus.paused):
        raise InvalidStateError("Only active or paused collections can be sent to an agency")
    eligibility = check_agency_eligibility(
        db, collection.clinic_id, collection.account_id, agency=agency
    )
    if not eligibility["eligible"]:
        raise ValidationFailed(eligibility["reason"], code="NOT_ELIGIBLE")

    transition(db, collection, CollectionStatus.agency)
    collection.paused_at = None
    collection.pause_reason = None
    collection.updated_by_user_id = actor.id
    referral = AgencyReferral(
        clinic_id=collection.clinic_id,
        referral_number=generate_number(
            db, AgencyReferral.referral_number, collection.clinic_id, "REF"
        ),
        agency_id=agency.id,
        account_id=collection.account_id,
        account_collection_id=collection.id,
        status=AgencyReferralStatus.active,
        amount_referred_pence=collection.current_balance_pence,
        amount_collected_pence=0,
        fees_paid_pence=0,
        referred_at=utcnow(),
        notes=notes,
        created_by_user_id=actor.id,
        updated_by_user_id=actor.id,
    )
    db.add(referral)
    log_activity(
        db,
        collection,
        ActivityType.sent_to_agency,
        f"Sent to {agency.name} ({format_pence(referral.amount_referred_pence)})",
        actor=actor,
    )
    db.flush()
    logger.info("Account %s referred to agency %s", collection.account_id, agency.id)
    return referral


def recall_from_agency(
    db: Session, collection: AccountCollection, *, reason: str, actor: User
) -> AgencyReferral | None:
    if collection.status != CollectionStatus.agency:
        raise InvalidStateError("Collection is not at an agency")
    if not reason or not reason.strip():
        raise ValidationFailed("A recall reason is required")
    referral = active_referral(db, collection)
    transition(db, collection, CollectionStatus.active)
    collection.entered_stage_at = utcnow()
    collection.updated_by_user_id = actor.id
    if referral is not None:
        referral.status = AgencyReferralStatus.recalled
        referral.recalled_at = utcnow()
        referral.recall_reason = reason.strip()[:500]
        referral.updated_by_user_id = actor.id
    log_activity(
        db,
        collection,
        ActivityType.recalled_from_agency,
        f"Recalled from agency: {reason.strip()}",
        actor=actor,
    )
    return referral


def record_agency_payment(
    db: Session,
    referral: AgencyReferral,
    *,
    gross_amount_pence: int,
    agency_fee_pence: int,
    payment_date: date,
    actor: User,
    agency_reference: str | None = None,
    check_number: str | None = None,
) -> AgencyPayment:
    if referral.status not in LIVE_REFERRAL_STATUSES:
        raise InvalidStateError("Referral is not accepting payments")
    if gross_amount_pence <= 0:
        raise ValidationFailed("Gross amount must be positive")
    if gross_amount_pence > referral.outstanding_pence:
        raise ValidationFailed("Payment exceeds the outstanding referral amount")
    if agency_fee_pence < 0 or agency_fee_pence > gross_amount_pence:
        raise ValidationFailed("Agency fee must be between zero and the gross amount")

    payment = AgencyPayment(
        clinic_id=referral.clinic_id,
        gross_amount_pence=gross_amount_pence,
        agency_fee_pence=agency_fee_pence,
        net_amount_pence=gross_amount_pence - agency_fee_pence,
        payment_date=payment_date,
        agency_reference=agency_reference,
        check_number=check_number,
        recorded_by_user_id=actor.id,
        created_at=utcnow(),
    )
    referral.payments.append(payment)
    referral.amount_collected_pence += gross_amount_pence
    referral.fees_paid_pence += agency_fee_pence
    referral.last_payment_at = payment_date
    referral.status = (
        AgencyReferralStatus.collected
        if referral.amount_collected_pence >= referral.amount_referred_pence
        else AgencyReferralStatus.partial
    )
    referral.updated_by_user_id = actor.id

    account = referral.account
    reference = agency_reference or referral.referral_number
    allocate_payment(
        db,
        account=account,
        amount_pence=gross_amount_pence,
        method=PaymentMethod.agency,
        actor=actor,
        reference=reference,
    )
    refresh_account(db, account, actor=actor)
    db.flush()
    return payment


def export_referrals_csv(db: Session, agency: CollectionAgency) -> str:
    referrals = db.scalars(
        select(AgencyReferral)
        .where(
            AgencyReferral.agency_id == agency.id,
            AgencyReferral.status == AgencyReferralStatus.active,
        )
        .order_by(AgencyReferral.referred_at.asc(), AgencyReferral.id.asc())
    ).unique()
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(EXPORT_COLUMNS)
    for referral in referrals:
        account = referral.account
        patient = account.patient
        writer.writerow(
            [
                referral.referral_number,
                account.account_number,
                patient.full_name,
                patient.email or "",
                patient.phone or "",
                f"{referral.amount_referred_pence / 100:.2f}",
                referral.referred_at.date().isoformat(),
            ]
        )
    return buffer.getvalue()
