from __future__ import annotations

import logging

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.core.clock import utcnow
from app.core.errors import NotFoundError, ValidationFailed
from app.models.account import PatientAccount
from app.models.collections import ActivityType, Channel, PaymentReminder, ReminderType
from app.models.user import User
from app.services.aging import days_overdue_from_aging, percentage
from app.services.collections import find_open_collection, log_activity

logger = logging.getLogger("ortho_pms.collections")

CHANNEL_ACTIVITY = {
    Channel.email: ActivityType.email_sent,
    Channel.sms: ActivityType.sms_sent,
    Channel.letter: ActivityType.letter_sent,
    Channel.phone: ActivityType.phone_call,
}


def _recipient(account: PatientAccount, channel: Channel) -> str | None:
    patient = account.patient
    if channel == Channel.email:
        return patient.email
    if channel in (Channel.sms, Channel.phone):
        return patient.phone
    return None


def _reachable(account: PatientAccount, channel: Channel) -> bool:
    if channel == Channel.email:
        return bool(account.patient.email)
    if channel == Channel.sms:
        return bool(account.patient.phone)
    return True


def _record(
    db: Session,
    account: PatientAccount,
    *,
    reminder_type: ReminderType,
    channel: Channel,
    actor: User,
    template_id: str | None = None,
    subject: str | None = None,
    body: str | None = None,
    include_payment_link: bool = True,
) -> PaymentReminder:
    reminder = PaymentReminder(
        clinic_id=account.clinic_id,
        account_id=account.id,
        reminder_type=reminder_type,
        channel=channel,
        template_id=template_id,
        days_overdue=days_overdue_from_aging(account),
        sent_to=_recipient(account, channel) or "",
        sent_at=utcnow(),
        subject=subject,
        body=body,
        include_payment_link=include_payment_link,
        payment_received=False,
        sent_by_user_id=actor.id,
    )
    db.add(reminder)
    collection = find_open_collection(db, account.id)
    if collection is not None:
        log_activity(
            db,
            collection,
            CHANNEL_ACTIVITY.get(channel, ActivityType.manual_note),
            f"Reminder sent: {reminder_type.value.replace('_', ' ')}",
            actor=actor,
            channel=channel,
            template_id=template_id,
            sent_to=reminder.sent_to or None,
        )
    return reminder


def send_reminder(
    db: Session,
    *,
    clinic_id: int,
    account_id: int,
    reminder_type: ReminderType,
    channel: Channel,
    actor: User,
    template_id: str | None = None,
    subject: str | None = None,
    body: str | None = None,
    include_payment_link: bool = True,
) -> PaymentReminder:
    account = db.scalar(
        select(PatientAccount).where(
            PatientAccount.id == account_id,
            PatientAccount.clinic_id == clinic_id,
            PatientAccount.deleted_at.is_(None),
        )
    )
    if account is None:
        raise NotFoundError("Account not found", code="ACCOUNT_NOT_FOUND")
    if channel == Channel.email and not account.patient.email:
        raise ValidationFailed("Patient has no email address", code="NO_EMAIL")
    if channel == Channel.sms and not account.patient.phone:
        raise ValidationFailed("Patient has no phone number", code="NO_PHONE")
    reminder = _record(
        db,
        account,
        reminder_type=reminder_type,
        channel=channel,
        actor=actor,
        template_id=template_id,
        subject=subject,
        body=body,
        include_payment_link=include_payment_link,
    )
    db.flush()
    logger.info("Reminder %s queued for account %s via %s", reminder.id, account.id, channel.value)
    return reminder


def send_batch_reminders(
    db: Session,
    *,
    clinic_id: int,
    reminder_type: ReminderType,
    channel: Channel,
    actor: User,
    template_id: str | None = None,
    min_days_overdue: int | None = None,
    max_days_overdue: int | None = None,
    min_balance_pence: int | None = None,
    max_accounts: int = 100,
    include_payment_link: bool = True,
) -> dict[str, int]:
    stmt = select(PatientAccount).where(
        PatientAccount.clinic_id == clinic_id,
        PatientAccount.deleted_at.is_(None),
        PatientAccount.current_balance_pence > 0,
    )
    if min_balance_pence:
        stmt = stmt.where(PatientAccount.current_balance_pence >= min_balance_pence)
    accounts = list(db.scalars(stmt.order_by(PatientAccount.id).limit(max_accounts)).unique())

    sent = 0
    for account in accounts:
        days_overdue = days_overdue_from_aging(account)
        if min_days_overdue is not None and days_overdue < min_days_overdue:
            continue
        if max_days_overdue is not None and days_overdue > max_days_overdue:
            continue
        if not _reachable(account, channel):
            continue
        _record(
            db,
            account,
            reminder_type=reminder_type,
            channel=channel,
            actor=actor,
            template_id=template_id,
            include_payment_link=include_payment_link,
        )
        sent += 1
    db.flush()
    logger.info("Batch reminders for clinic %s: %s sent, %s skipped", clinic_id, sent, len(accounts) - sent)
    return {"sent": sent, "skipped": len(accounts) - sent}


def reminder_stats(db: Session, clinic_id: int) -> dict:
    total_sent = int(
        db.scalar(select(func.count(PaymentReminder.id)).where(PaymentReminder.clinic_id == clinic_id))
        or 0
    )
    with_payment = int(
        db.scalar(
            select(func.count(PaymentReminder.id)).where(
                PaymentReminder.clinic_id == clinic_id,
                PaymentReminder.payment_received.is_(True),
            )
        )
        or 0
    )
    return {
        "total_sent": total_sent,
        "with_payment": with_payment,
        "conversion_rate": percentage(with_payment, total_sent),
    }
