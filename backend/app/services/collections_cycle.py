"""Scheduled collections processing for one clinic.

Runs the same steps the nightly job and ``POST /collections/process`` use:
recalculate balances, enrol newly overdue accounts into the default
workflow, escalate stalled collections and break lapsed promises. Nothing
is committed here.
"""

from __future__ import annotations

import logging
from datetime import date

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.clock import as_utc, utcnow
from app.core.errors import DomainError
from app.core.settings import settings
from app.models.account import PatientAccount
from app.models.collections import AccountCollection, CollectionStatus
from app.models.invoice import Invoice
from app.models.user import User
from app.services.audit import log_event
from app.services.collections import (
    advance_stage,
    find_open_collection,
    get_default_workflow,
    has_active_payment_plan,
    next_stage,
    refresh_account,
    stage_for,
    start_collection,
)
from app.services.promises import break_lapsed_promises
from app.services.users import first_superadmin

logger = logging.getLogger("ortho_pms.collections")


def _accounts_with_invoices(db: Session, clinic_id: int) -> list[PatientAccount]:
    account_ids = select(Invoice.account_id).where(Invoice.clinic_id == clinic_id).distinct()
    return list(
        db.scalars(
            select(PatientAccount)
            .where(
                PatientAccount.clinic_id == clinic_id,
                PatientAccount.deleted_at.is_(None),
                PatientAccount.id.in_(account_ids),
            )
            .order_by(PatientAccount.id)
        ).unique()
    )


def _closed_without_new_billing(db: Session, account: PatientAccount) -> bool:
    latest = db.scalar(
        select(AccountCollection)
        .where(AccountCollection.account_id == account.id)
        .order_by(AccountCollection.id.desc())
        .limit(1)
    )
    if latest is None or latest.is_open:
        return False
    # A settled, written-off or closed collection stays closed until the balance grows again.
    return account.current_balance_pence <= latest.current_balance_pence


def _auto_enroll(
    db: Session, clinic_id: int, accounts: list[PatientAccount], actor: User | None, today: date
) -> int:
    workflow = get_default_workflow(db, clinic_id)
    if workflow is None or not workflow.stages or actor is None:
        return 0
    enrolled = 0
    for account in accounts:
        if account.days_overdue < workflow.trigger_days:
            continue
        if account.current_balance_pence <= 0 or account.current_balance_pence < workflow.min_balance_pence:
            continue
        if find_open_collection(db, account.id) is not None:
            continue
        if _closed_without_new_billing(db, account):
            continue
        if has_active_payment_plan(db, account.id):
            continue
        try:
            collection = start_collection(
                db, account=account, actor=actor, workflow=workflow, today=today
            )
        except DomainError as exc:
            logger.warning("Auto-enrol skipped account %s: %s", account.id, exc.message)
            continue
        log_event(
            db,
            actor=actor,
            action="account_collection.created",
            entity_type="account_collection",
            entity_id=str(collection.id),
            after_obj=collection,
        )
        enrolled += 1
    return enrolled


def _escalate(db: Session, clinic_id: int, actor: User | None, today: date) -> int:
    escalated = 0
    collections = db.scalars(
        select(AccountCollection)
        .where(
            AccountCollection.clinic_id == clinic_id,
            AccountCollection.status == CollectionStatus.active,
        )
        .order_by(AccountCollection.id)
    ).unique()
    for collection in list(collections):
        stage = stage_for(collection)
        if stage is None or not stage.escalate_after_days:
            continue
        if next_stage(collection) is None:
            continue
        if (today - as_utc(collection.entered_stage_at).date()).days < stage.escalate_after_days:
            continue
        before_stage = collection.current_stage
        advance_stage(db, collection, actor=actor, notes="escalated automatically")
        log_event(
            db,
            actor=actor,
            clinic_id=clinic_id,
            action="account_collection.stage_advanced",
            entity_type="account_collection",
            entity_id=str(collection.id),
            before_data={"current_stage": before_stage},
            after_data={"current_stage": collection.current_stage},
        )
        escalated += 1
    return escalated


def run_collections_cycle(db: Session, *, clinic_id: int, today: date | None = None) -> dict[str, int]:
    today = today or utcnow().date()
    actor = first_superadmin(db, clinic_id)

    accounts = _accounts_with_invoices(db, clinic_id)
    recalculated = 0
    for account in accounts:
        if refresh_account(db, account, actor=actor, today=today):
            recalculated += 1

    enrolled = _auto_enroll(db, clinic_id, accounts, actor, today)
    escalated = _escalate(db, clinic_id, actor, today)
    broken = break_lapsed_promises(
        db, clinic_id, today=today, grace_days=settings.promise_grace_days, actor=actor
    )
    for promise in broken:
        log_event(
            db,
            actor=actor,
            clinic_id=clinic_id,
            action="payment_promise.broken",
            entity_type="payment_promise",
            entity_id=str(promise.id),
            after_data={"status": promise.status.value, "broken_reason": promise.broken_reason},
        )

    result = {
        "accounts_checked": len(accounts),
        "balances_recalculated": recalculated,
        "collections_started": enrolled,
        "collections_escalated": escalated,
        "promises_broken": len(broken),
    }
    logger.info("Collections cycle for clinic %s on %s: %s", clinic_id, today.isoformat(), result)
    return result
