"""Account collection lifecycle.

An account collection walks an overdue account through the stages of a
workflow. Status changes go through ``transition`` so that every caller
honours the same transition table; a rejected move raises
``InvalidStateError`` and leaves the record untouched.

Functions here mutate and add activities but never commit. Routers record
the audit entry for the change they asked for and commit.
"""

from __future__ import annotations

import logging
from datetime import date, timedelta

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from app.core.clock import utcnow
from app.core.errors import InvalidStateError, NotFoundError, ValidationFailed
from app.models.account import AccountStatus, PatientAccount
from app.models.collections import (
    OPEN_COLLECTION_STATUSES,
    TERMINAL_COLLECTION_STATUSES,
    AccountCollection,
    ActivityType,
    AgencyReferral,
    AgencyReferralStatus,
    Channel,
    CollectionActivity,
    CollectionStage,
    CollectionStatus,
    CollectionWorkflow,
    PaymentReminder,
)
from app.models.invoice import Payment
from app.models.payment_plan import PaymentPlan, PaymentPlanStatus
from app.models.user import User
from app.services.audit import log_event
from app.services.billing import recalculate_account_balance

logger = logging.getLogger("ortho_pms.collections")

ALLOWED_TRANSITIONS: dict[CollectionStatus, frozenset[CollectionStatus]] = {
    CollectionStatus.active: frozenset(
        {
            CollectionStatus.paused,
            CollectionStatus.payment_plan,
            CollectionStatus.agency,
            CollectionStatus.settled,
            CollectionStatus.written_off,
            CollectionStatus.completed,
        }
    ),
    CollectionStatus.paused: frozenset(
        {
            CollectionStatus.active,
            CollectionStatus.agency,
            CollectionStatus.settled,
            CollectionStatus.written_off,
            CollectionStatus.completed,
        }
    ),
    CollectionStatus.payment_plan: frozenset(
        {
            CollectionStatus.active,
            CollectionStatus.settled,
            CollectionStatus.written_off,
            CollectionStatus.completed,
        }
    ),
    CollectionStatus.agency: frozenset(
        {
            CollectionStatus.active,
            CollectionStatus.settled,
            CollectionStatus.written_off,
            CollectionStatus.completed,
        }
    ),
    CollectionStatus.settled: frozenset(),
    CollectionStatus.written_off: frozenset(),
    CollectionStatus.completed: frozenset(),
}


def format_pence(amount_pence: int) -> str:
    return f"£{amount_pence / 100:,.2f}"


def can_transition(current: CollectionStatus, target: CollectionStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def transition(db: Session, collection: AccountCollection, target: CollectionStatus) -> None:
    current = collection.status
    if not can_transition(current, target):
        raise InvalidStateError(
            f"Cannot move collection from {current.value} to {target.value}"
        )
    now = utcnow()
    collection.status = target
    collection.last_action_at = now
    if target in TERMINAL_COLLECTION_STATUSES:
        collection.completed_at = now
        if collection.account is not None:
            collection.account.status = AccountStatus.active
        if current == CollectionStatus.agency:
            close_referral(db, collection)


def close_referral(db: Session, collection: AccountCollection) -> AgencyReferral | None:
    """Close the live referral of a collection leaving the agency for good.

    The referral counts as collected only when the account was paid off;
    settlements, write-offs and forced closes hand it back as returned.
    """
    referral = active_referral(db, collection)
    if referral is None:
        return None
    if collection.status == CollectionStatus.completed and collection.current_balance_pence == 0:
        referral.status = AgencyReferralStatus.collected
    else:
        referral.status = AgencyReferralStatus.returned
    return referral


def log_activity(
    db: Session,
    collection: AccountCollection,
    activity_type: ActivityType,
    description: str,
    *,
    actor: User | None,
    channel: Channel | None = None,
    template_id: str | None = None,
    sent_to: str | None = None,
    result: str | None = None,
    response_received: bool = False,
    payment_received_pence: int | None = None,
) -> CollectionActivity:
    activity = CollectionActivity(
        clinic_id=collection.clinic_id,
        account_id=collection.account_id,
        activity_type=activity_type,
        stage_number=collection.current_stage,
        description=description[:1000],
        channel=channel,
        template_id=template_id,
        sent_to=sent_to,
        result=result,
        response_received=response_received,
        payment_received_pence=payment_received_pence,
        performed_by_user_id=actor.id if actor else None,
        created_at=utcnow(),
    )
    collection.activities.append(activity)
    collection.last_action_at = activity.created_at
    return activity


def get_collection(db: Session, clinic_id: int, collection_id: int) -> AccountCollection:
    collection = db.scalar(
        select(AccountCollection).where(
            AccountCollection.id == collection_id,
            AccountCollection.clinic_id == clinic_id,
        )
    )
    if collection is None:
        raise NotFoundError("Account collection not found")
    return collection


def find_open_collection(db: Session, account_id: int) -> AccountCollection | None:
    db.flush()
    return db.scalar(
        select(AccountCollection)
        .where(
            AccountCollection.account_id == account_id,
            AccountCollection.status.in_(OPEN_COLLECTION_STATUSES),
        )
        .order_by(AccountCollection.id.desc())
        .limit(1)
    )


def get_default_workflow(db: Session, clinic_id: int) -> CollectionWorkflow | None:
    return db.scalar(
        select(CollectionWorkflow)
        .where(
            CollectionWorkflow.clinic_id == clinic_id,
            CollectionWorkflow.is_default.is_(True),
            CollectionWorkflow.is_active.is_(True),
            CollectionWorkflow.deleted_at.is_(None),
        )
        .order_by(CollectionWorkflow.id.asc())
        .limit(1)
    )


def get_workflow(db: Session, clinic_id: int, workflow_id: int) -> CollectionWorkflow:
    workflow = db.scalar(
        select(CollectionWorkflow).where(
            CollectionWorkflow.id == workflow_id,
            CollectionWorkflow.clinic_id == clinic_id,
            CollectionWorkflow.deleted_at.is_(None),
        )
    )
    if workflow is None:
        raise NotFoundError("Workflow not found")
    return workflow


def stage_for(collection: AccountCollection) -> CollectionStage | None:
    for stage in collection.workflow.stages:
        if stage.stage_number == collection.current_stage:
            return stage
    return None


def next_stage(collection: AccountCollection) -> CollectionStage | None:
    later = [s for s in collection.workflow.stages if s.stage_number > collection.current_stage]
    return min(later, key=lambda s: s.stage_number) if later else None


def has_active_payment_plan(db: Session, account_id: int) -> bool:
    plan_id = db.scalar(
        select(PaymentPlan.id)
        .where(PaymentPlan.account_id == account_id, PaymentPlan.status == PaymentPlanStatus.active)
        .limit(1)
    )
    return plan_id is not None


def start_collection(
    db: Session,
    *,
    account: PatientAccount,
    actor: User,
    workflow: CollectionWorkflow | None = None,
    assigned_to_user_id: int | None = None,
    notes: str | None = None,
    today: date | None = None,
) -> AccountCollection:
    if workflow is None:
        workflow = get_default_workflow(db, account.clinic_id)
        if workflow is None:
            raise ValidationFailed("No default collection workflow", code="NO_DEFAULT_WORKFLOW")
    if not workflow.is_active:
        raise ValidationFailed("Workflow is not active")
    if not workflow.stages:
        raise ValidationFailed("Workflow has no stages")
    recalculate_account_balance(db, account, today=today, actor=actor)
    if account.current_balance_pence <= 0:
        raise ValidationFailed("Account has no outstanding balance")
    if find_open_collection(db, account.id) is not None:
        raise InvalidStateError("Account already has an open collection")

    first = min(workflow.stages, key=lambda s: s.stage_number)
    now = utcnow()
    collection = AccountCollection(
        clinic_id=account.clinic_id,
        account_id=account.id,
        workflow_id=workflow.id,
        status=CollectionStatus.active,
        current_stage=first.stage_number,
        starting_balance_pence=account.current_balance_pence,
        current_balance_pence=account.current_balance_pence,
        paid_amount_pence=0,
        written_off_pence=0,
        started_at=now,
        entered_stage_at=now,
        last_action_at=now,
        assigned_to_user_id=assigned_to_user_id,
        notes=notes,
        created_by_user_id=actor.id,
        updated_by_user_id=actor.id,
    )
    collection.account = account
    collection.workflow = workflow
    db.add(collection)
    account.status = AccountStatus.collections
    log_activity(
        db,
        collection,
        ActivityType.workflow_started,
        f"Collection workflow '{workflow.name}' started at stage {first.stage_number}: {first.name}",
        actor=actor,
    )
    db.flush()
    logger.info(
        "Collection %s started for account %s (workflow %s)", collection.id, account.id, workflow.id
    )
    return collection


def pause_collection(
    db: Session, collection: AccountCollection, *, reason: str, actor: User
) -> AccountCollection:
    if not reason or not reason.strip():
        raise ValidationFailed("Pause reason is required")
    if collection.status != CollectionStatus.active:
        raise InvalidStateError("Only active collections can be paused")
    transition(db, collection, CollectionStatus.paused)
    collection.paused_at = utcnow()
    collection.pause_reason = reason.strip()[:500]
    collection.updated_by_user_id = actor.id
    log_activity(db, collection, ActivityType.paused, f"Collection paused: {collection.pause_reason}", actor=actor)
    return collection


def resume_collection(
    db: Session, collection: AccountCollection, *, actor: User, notes: str | None = None
) -> AccountCollection:
    if collection.status not in (CollectionStatus.paused, CollectionStatus.payment_plan):
        raise InvalidStateError("Only paused or payment plan collections can be resumed")
    transition(db, collection, CollectionStatus.active)
    collection.paused_at = None
    collection.pause_reason = None
    collection.entered_stage_at = utcnow()
    collection.updated_by_user_id = actor.id
    description = "Collection resumed"
    if notes:
        description = f"{description}: {notes}"
    log_activity(db, collection, ActivityType.resumed, description, actor=actor)
    return collection


def advance_stage(
    db: Session, collection: AccountCollection, *, actor: User | None, notes: str | None = None
) -> CollectionStage:
    if collection.status != CollectionStatus.active:
        raise InvalidStateError("Only active collections can advance")
    stage = next_stage(collection)
    if stage is None:
        raise InvalidStateError("Already at final stage")
    now = utcnow()
    collection.current_stage = stage.stage_number
    collection.entered_stage_at = now
    collection.last_action_at = now
    if actor is not None:
        collection.updated_by_user_id = actor.id
    description = f"Advanced to stage {stage.stage_number}: {stage.name}"
    if notes:
        description = f"{description} ({notes})"
    log_activity(db, collection, ActivityType.stage_advanced, description, actor=actor)
    return stage


def start_payment_plan(
    db: Session, collection: AccountCollection, *, plan: PaymentPlan, actor: User
) -> AccountCollection:
    if plan.account_id != collection.account_id:
        raise ValidationFailed("Payment plan belongs to a different account")
    if plan.status != PaymentPlanStatus.active:
        raise ValidationFailed("Payment plan is not active")
    if collection.status != CollectionStatus.active:
        raise InvalidStateError("Only active collections can move to a payment plan")
    transition(db, collection, CollectionStatus.payment_plan)
    collection.updated_by_user_id = actor.id
    log_activity(
        db,
        collection,
        ActivityType.manual_note,
        f"Payment plan {plan.plan_number} set up ({format_pence(plan.monthly_payment_pence)} x {plan.number_of_payments})",
        actor=actor,
    )
    return collection


def settle_collection(
    db: Session,
    collection: AccountCollection,
    *,
    settlement_amount_pence: int,
    actor: User,
    notes: str | None = None,
) -> AccountCollection:
    if settlement_amount_pence < 0:
        raise ValidationFailed("Settlement amount cannot be negative")
    transition(db, collection, CollectionStatus.settled)
    collection.updated_by_user_id = actor.id
    description = f"Settled for {format_pence(settlement_amount_pence)}"
    if notes:
        description = f"{description}: {notes}"
    log_activity(
        db,
        collection,
        ActivityType.completed,
        description,
        actor=actor,
        payment_received_pence=settlement_amount_pence or None,
    )
    return collection


def complete_collection(
    db: Session,
    collection: AccountCollection,
    *,
    actor: User | None,
    force: bool = False,
    notes: str | None = None,
) -> AccountCollection:
    if collection.current_balance_pence > 0 and not force:
        raise InvalidStateError("Collection still has an outstanding balance")
    transition(db, collection, CollectionStatus.completed)
    if actor is not None:
        collection.updated_by_user_id = actor.id
    log_activity(db, collection, ActivityType.completed, notes or "Collection completed", actor=actor)
    return collection


REMINDER_ATTRIBUTION_DAYS = 30


def mark_reminders_paid(db: Session, account_id: int) -> None:
    since = utcnow() - timedelta(days=REMINDER_ATTRIBUTION_DAYS)
    db.execute(
        update(PaymentReminder)
        .where(
            PaymentReminder.account_id == account_id,
            PaymentReminder.payment_received.is_(False),
            PaymentReminder.sent_at >= since,
        )
        .values(payment_received=True)
        .execution_options(synchronize_session=False)
    )


def active_referral(db: Session, collection: AccountCollection) -> AgencyReferral | None:
    return db.scalar(
        select(AgencyReferral)
        .where(
            AgencyReferral.account_id == collection.account_id,
            AgencyReferral.status.in_((AgencyReferralStatus.active, AgencyReferralStatus.partial)),
        )
        .order_by(AgencyReferral.id.desc())
        .limit(1)
    )


def sync_account_collection(
    db: Session,
    account: PatientAccount,
    *,
    actor: User | None = None,
    request_id: str | None = None,
    ip_address: str | None = None,
) -> AccountCollection | None:
    """Mirror the account balance onto its open collection after money moved."""
    collection = find_open_collection(db, account.id)
    if collection is None:
        return None
    collection.current_balance_pence = account.current_balance_pence

    paid_since_start = int(
        db.scalar(
            select(func.coalesce(func.sum(Payment.amount_pence), 0)).where(
                Payment.account_id == account.id,
                Payment.recorded_at >= collection.started_at,
            )
        )
        or 0
    )
    if paid_since_start > collection.paid_amount_pence:
        delta = paid_since_start - collection.paid_amount_pence
        collection.paid_amount_pence = paid_since_start
        mark_reminders_paid(db, account.id)
        log_activity(
            db,
            collection,
            ActivityType.payment_received,
            f"Payment received: {format_pence(delta)}",
            actor=actor,
            payment_received_pence=delta,
        )

    if collection.current_balance_pence == 0:
        before_status = collection.status.value
        transition(db, collection, CollectionStatus.completed)
        log_activity(db, collection, ActivityType.completed, "Balance paid in full", actor=actor)
        log_event(
            db,
            actor=actor,
            clinic_id=collection.clinic_id,
            action="account_collection.completed",
            entity_type="account_collection",
            entity_id=str(collection.id),
            before_data={"status": before_status},
            after_data={"status": collection.status.value},
            request_id=request_id,
            ip_address=ip_address,
        )
        logger.info("Collection %s completed after balance reached zero", collection.id)
    return collection


def refresh_account(
    db: Session,
    account: PatientAccount,
    *,
    actor: User | None = None,
    today: date | None = None,
    request_id: str | None = None,
    ip_address: str | None = None,
) -> bool:
    changed = recalculate_account_balance(
        db, account, today=today, actor=actor, request_id=request_id, ip_address=ip_address
    )
    sync_account_collection(db, account, actor=actor, request_id=request_id, ip_address=ip_address)
    return changed
