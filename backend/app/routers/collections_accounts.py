from math import ceil

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from sqlalchemy import exists, func, select
from sqlalchemy.orm import Session

from app.core.clock import today
from app.db.session import get_db
from app.deps import request_ip, require_capability
from app.models.account import PatientAccount
from app.models.collections import (
    AccountCollection,
    CollectionStatus,
    PaymentPromise,
    PromiseStatus,
)
from app.models.patient import Patient
from app.models.payment_plan import PaymentPlan
from app.models.user import User
from app.schemas.collections import (
    AccountCollectionDetailOut,
    AccountCollectionOut,
    AccountCollectionPage,
    ActivityCreate,
    ActivityOut,
    CollectionComplete,
    CollectionNotes,
    CollectionPause,
    CollectionPaymentPlan,
    CollectionSettle,
    CollectionStart,
    PromiseCreate,
    PromiseOut,
    RecallFromAgency,
    ReferralOut,
    SendToAgency,
    StageOut,
)
from app.services import collections as collection_service
from app.services.agencies import get_agency, recall_from_agency, send_to_agency
from app.services.audit import log_event
from app.services.billing import get_account
from app.services.promises import create_promise, promise_days_overdue

router = APIRouter(prefix="/collections/accounts", tags=["collections"])

SORT_COLUMNS = {
    "started_at": AccountCollection.started_at,
    "current_balance": AccountCollection.current_balance_pence,
    "last_action_at": AccountCollection.last_action_at,
    "current_stage": AccountCollection.current_stage,
    "days_overdue": PatientAccount.days_overdue,
}


def collection_out(collection: AccountCollection) -> AccountCollectionOut:
    account = collection.account
    return AccountCollectionOut(
        id=collection.id,
        account_id=collection.account_id,
        account_number=account.account_number,
        patient_id=account.patient_id,
        patient_name=account.patient.full_name,
        workflow_id=collection.workflow_id,
        workflow_name=collection.workflow.name,
        status=collection.status,
        current_stage=collection.current_stage,
        starting_balance_pence=collection.starting_balance_pence,
        current_balance_pence=collection.current_balance_pence,
        paid_amount_pence=collection.paid_amount_pence,
        written_off_pence=collection.written_off_pence,
        started_at=collection.started_at,
        entered_stage_at=collection.entered_stage_at,
        last_action_at=collection.last_action_at,
        paused_at=collection.paused_at,
        pause_reason=collection.pause_reason,
        completed_at=collection.completed_at,
        assigned_to_user_id=collection.assigned_to_user_id,
        notes=collection.notes,
    )


def promise_out(promise: PaymentPromise) -> PromiseOut:
    data = PromiseOut.model_validate(promise)
    data.days_overdue = promise_days_overdue(promise, today())
    return data


def collection_detail(db: Session, collection: AccountCollection) -> AccountCollectionDetailOut:
    referral = collection_service.active_referral(db, collection)
    return AccountCollectionDetailOut(
        **collection_out(collection).model_dump(),
        stages=[StageOut.model_validate(stage) for stage in collection.workflow.stages],
        activities=[ActivityOut.model_validate(activity) for activity in collection.activities],
        promises=[promise_out(promise) for promise in collection.promises],
        active_referral=ReferralOut.model_validate(referral) if referral else None,
    )


def _audit(
    db: Session,
    *,
    user: User,
    collection: AccountCollection,
    verb: str,
    before_status: str | None,
    request: Request,
    request_id: str | None,
    extra: dict | None = None,
) -> None:
    after = {"status": collection.status.value, "current_stage": collection.current_stage}
    if extra:
        after.update(extra)
    log_event(
        db,
        actor=user,
        action=f"account_collection.{verb}",
        entity_type="account_collection",
        entity_id=str(collection.id),
        before_data={"status": before_status} if before_status else None,
        after_data=after,
        request_id=request_id,
        ip_address=request_ip(request),
    )


def _finish(db: Session, collection: AccountCollection) -> AccountCollectionDetailOut:
    db.commit()
    db.refresh(collection)
    return collection_detail(db, collection)


@router.get("", response_model=AccountCollectionPage)
def list_collections(
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("collections.view")),
    collection_status: CollectionStatus | None = Query(default=None, alias="status"),
    workflow_id: int | None = Query(default=None),
    current_stage: int | None = Query(default=None, ge=1),
    min_balance: int | None = Query(default=None, ge=0),
    max_balance: int | None = Query(default=None, ge=0),
    has_promise: bool | None = Query(default=None),
    at_agency: bool | None = Query(default=None),
    q: str | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=25, ge=1, le=100),
    sort_by: str = Query(default="started_at"),
    sort_order: str = Query(default="desc", pattern="^(asc|desc)$"),
):
    if sort_by not in SORT_COLUMNS:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Unsupported sort column")
    stmt = (
        select(AccountCollection)
        .join(PatientAccount, PatientAccount.id == AccountCollection.account_id)
        .join(Patient, Patient.id == PatientAccount.patient_id)
        .where(AccountCollection.clinic_id == user.clinic_id, Patient.deleted_at.is_(None))
    )
    if collection_status is not None:
        stmt = stmt.where(AccountCollection.status == collection_status)
    if workflow_id is not None:
        stmt = stmt.where(AccountCollection.workflow_id == workflow_id)
    if current_stage is not None:
        stmt = stmt.where(AccountCollection.current_stage == current_stage)
    if min_balance is not None:
        stmt = stmt.where(AccountCollection.current_balance_pence >= min_balance)
    if max_balance is not None:
        stmt = stmt.where(AccountCollection.current_balance_pence <= max_balance)
    if has_promise is not None:
        pending = exists().where(
            PaymentPromise.account_collection_id == AccountCollection.id,
            PaymentPromise.status == PromiseStatus.pending,
        )
        stmt = stmt.where(pending if has_promise else ~pending)
    if at_agency is not None:
        if at_agency:
            stmt = stmt.where(AccountCollection.status == CollectionStatus.agency)
        else:
            stmt = stmt.where(AccountCollection.status != CollectionStatus.agency)
    if q:
        like = f"%{q.strip()}%"
        stmt = stmt.where(
            PatientAccount.account_number.ilike(like)
            | Patient.first_name.ilike(like)
            | Patient.last_name.ilike(like)
        )

    total = int(db.scalar(select(func.count()).select_from(stmt.subquery())) or 0)
    column = SORT_COLUMNS[sort_by]
    ordering = column.asc() if sort_order == "asc" else column.desc()
    items = list(
        db.scalars(
            stmt.order_by(ordering, AccountCollection.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        ).unique()
    )
    return AccountCollectionPage(
        items=[collection_out(item) for item in items],
        total=total,
        page=page,
        page_size=page_size,
        total_pages=ceil(total / page_size) if total else 0,
    )


@router.post("", response_model=AccountCollectionDetailOut, status_code=status.HTTP_201_CREATED)
def start_collection(
    payload: CollectionStart,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("collections.manage")),
    request_id: str | None = Header(default=None),
):
    account = get_account(db, user.clinic_id, payload.account_id)
    workflow = (
        collection_service.get_workflow(db, user.clinic_id, payload.workflow_id)
        if payload.workflow_id is not None
        else None
    )
    collection = collection_service.start_collection(
        db,
        account=account,
        actor=user,
        workflow=workflow,
        assigned_to_user_id=payload.assigned_to_user_id,
        notes=payload.notes,
    )
    _audit(
        db,
        user=user,
        collection=collection,
        verb="started",
        before_status=None,
        request=request,
        request_id=request_id,
        extra={
            "account_id": account.id,
            "workflow_id": collection.workflow_id,
            "starting_balance_pence": collection.starting_balance_pence,
        },
    )
    return _finish(db, collection)


@router.get("/{collection_id}", response_model=AccountCollectionDetailOut)
def get_collection(
    collection_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("collections.view")),
):
    collection = collection_service.get_collection(db, user.clinic_id, collection_id)
    return collection_detail(db, collection)


@router.post("/{collection_id}/pause", response_model=AccountCollectionDetailOut)
def pause_collection(
    collection_id: int,
    payload: CollectionPause,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("collections.manage")),
    request_id: str | None = Header(default=None),
):
    collection = collection_service.get_collection(db, user.clinic_id, collection_id)
    before = collection.status.value
    collection_service.pause_collection(db, collection, reason=payload.reason, actor=user)
    _audit(
        db,
        user=user,
        collection=collection,
        verb="paused",
        before_status=before,
        request=request,
        request_id=request_id,
        extra={"reason": collection.pause_reason},
    )
    return _finish(db, collection)


@router.post("/{collection_id}/resume", response_model=AccountCollectionDetailOut)
def resume_collection(
    collection_id: int,
    request: Request,
    payload: CollectionNotes | None = None,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("collections.manage")),
    request_id: str | None = Header(default=None),
):
    collection = collection_service.get_collection(db, user.clinic_id, collection_id)
    before = collection.status.value
    collection_service.resume_collection(
        db, collection, actor=user, notes=payload.notes if payload else None
    )
    _audit(
        db,
        user=user,
        collection=collection,
        verb="resumed",
        before_status=before,
        request=request,
        request_id=request_id,
    )
    return _finish(db, collection)


@router.post("/{collection_id}/advance", response_model=AccountCollectionDetailOut)
def advance_collection(
    collection_id: int,
    request: Request,
    payload: CollectionNotes | None = None,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("collections.manage")),
    request_id: str | None = Header(default=None),
):
    collection = collection_service.get_collection(db, user.clinic_id, collection_id)
    before_stage = collection.current_stage
    collection_service.advance_stage(
        db, collection, actor=user, notes=payload.notes if payload else None
    )
    _audit(
        db,
        user=user,
        collection=collection,
        verb="advanced",
        before_status=collection.status.value,
        request=request,
        request_id=request_id,
        extra={"previous_stage": before_stage},
    )
    return _finish(db, collection)


@router.post("/{collection_id}/payment-plan", response_model=AccountCollectionDetailOut)
def link_payment_plan(
    collection_id: int,
    payload: CollectionPaymentPlan,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("collections.manage")),
    request_id: str | None = Header(default=None),
):
    collection = collection_service.get_collection(db, user.clinic_id, collection_id)
    plan = db.scalar(
        select(PaymentPlan).where(
            PaymentPlan.id == payload.plan_id, PaymentPlan.clinic_id == user.clinic_id
        )
    )
    if not plan:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment plan not found")
    before = collection.status.value
    collection_service.start_payment_plan(db, collection, plan=plan, actor=user)
    _audit(
        db,
        user=user,
        collection=collection,
        verb="payment_plan_started",
        before_status=before,
        request=request,
        request_id=request_id,
        extra={"plan_id": plan.id},
    )
    return _finish(db, collection)


@router.post("/{collection_id}/settle", response_model=AccountCollectionDetailOut)
def settle_collection(
    collection_id: int,
    payload: CollectionSettle,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("collections.manage")),
    request_id: str | None = Header(default=None),
):
    collection = collection_service.get_collection(db, user.clinic_id, collection_id)
    before = collection.status.value
    collection_service.settle_collection(
        db,
        collection,
        settlement_amount_pence=payload.settlement_amount_pence,
        actor=user,
        notes=payload.notes,
    )
    _audit(
        db,
        user=user,
        collection=collection,
        verb="settled",
        before_status=before,
        request=request,
        request_id=request_id,
        extra={"settlement_amount_pence": payload.settlement_amount_pence},
    )
    return _finish(db, collection)


@router.post("/{collection_id}/complete", response_model=AccountCollectionDetailOut)
def complete_collection(
    collection_id: int,
    request: Request,
    payload: CollectionComplete | None = None,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("collections.manage")),
    request_id: str | None = Header(default=None),
):
    payload = payload or CollectionComplete()
    collection = collection_service.get_collection(db, user.clinic_id, collection_id)
    before = collection.status.value
    collection_service.complete_collection(
        db, collection, actor=user, force=payload.force, notes=payload.notes
    )
    _audit(
        db,
        user=user,
        collection=collection,
        verb="completed",
        before_status=before,
        request=request,
        request_id=request_id,
        extra={"forced": payload.force},
    )
    return _finish(db, collection)


@router.post(
    "/{collection_id}/activities",
    response_model=ActivityOut,
    status_code=status.HTTP_201_CREATED,
)
def add_activity(
    collection_id: int,
    payload: ActivityCreate,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("collections.manage")),
    request_id: str | None = Header(default=None),
):
    collection = collection_service.get_collection(db, user.clinic_id, collection_id)
    activity = collection_service.log_activity(
        db,
        collection,
        payload.activity_type,
        payload.description,
        actor=user,
        channel=payload.channel,
        template_id=payload.template_id,
        sent_to=payload.sent_to,
        result=payload.result,
        response_received=payload.response_received,
        payment_received_pence=payload.payment_received_pence,
    )
    db.flush()
    log_event(
        db,
        actor=user,
        action="collection_activity.created",
        entity_type="collection_activity",
        entity_id=str(activity.id),
        after_obj=activity,
        request_id=request_id,
        ip_address=request_ip(request),
    )
    db.commit()
    db.refresh(activity)
    return activity


@router.post(
    "/{collection_id}/promises",
    response_model=PromiseOut,
    status_code=status.HTTP_201_CREATED,
)
def add_promise(
    collection_id: int,
    payload: PromiseCreate,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("collections.manage")),
    request_id: str | None = Header(default=None),
):
    collection = collection_service.get_collection(db, user.clinic_id, collection_id)
    promise = create_promise(
        db,
        collection,
        promised_amount_pence=payload.promised_amount_pence,
        promised_date=payload.promised_date,
        actor=user,
        notes=payload.notes,
    )
    log_event(
        db,
        actor=user,
        action="payment_promise.created",
        entity_type="payment_promise",
        entity_id=str(promise.id),
        after_obj=promise,
        request_id=request_id,
        ip_address=request_ip(request),
    )
    db.commit()
    db.refresh(promise)
    return promise_out(promise)


@router.post("/{collection_id}/send-to-agency", response_model=AccountCollectionDetailOut)
def refer_to_agency(
    collection_id: int,
    payload: SendToAgency,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("collections.manage")),
    request_id: str | None = Header(default=None),
):
    collection = collection_service.get_collection(db, user.clinic_id, collection_id)
    agency = get_agency(db, user.clinic_id, payload.agency_id)
    before = collection.status.value
    referral = send_to_agency(db, collection, agency=agency, actor=user, notes=payload.notes)
    _audit(
        db,
        user=user,
        collection=collection,
        verb="sent_to_agency",
        before_status=before,
        request=request,
        request_id=request_id,
        extra={"agency_id": agency.id, "referral_id": referral.id},
    )
    log_event(
        db,
        actor=user,
        action="agency_referral.created",
        entity_type="agency_referral",
        entity_id=str(referral.id),
        after_obj=referral,
        request_id=request_id,
        ip_address=request_ip(request),
    )
    return _finish(db, collection)


@router.post("/{collection_id}/recall", response_model=AccountCollectionDetailOut)
def recall_collection(
    collection_id: int,
    payload: RecallFromAgency,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("collections.manage")),
    request_id: str | None = Header(default=None),
):
    collection = collection_service.get_collection(db, user.clinic_id, collection_id)
    before = collection.status.value
    referral = recall_from_agency(db, collection, reason=payload.reason, actor=user)
    _audit(
        db,
        user=user,
        collection=collection,
        verb="recalled",
        before_status=before,
        request=request,
        request_id=request_id,
        extra={"referral_id": referral.id if referral else None, "reason": payload.reason},
    )
    return _finish(db, collection)
