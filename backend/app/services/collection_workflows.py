from __future__ import annotations

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.core.clock import utcnow
from app.core.errors import InvalidStateError, NotFoundError, ValidationFailed
from app.models.collections import (
    OPEN_COLLECTION_STATUSES,
    AccountCollection,
    CollectionStage,
    CollectionWorkflow,
    PatientType,
)
from app.models.user import User


def _clear_other_defaults(db: Session, workflow: CollectionWorkflow) -> None:
    db.execute(
        update(CollectionWorkflow)
        .where(
            CollectionWorkflow.clinic_id == workflow.clinic_id,
            CollectionWorkflow.id != workflow.id,
            CollectionWorkflow.is_default.is_(True),
        )
        .values(is_default=False)
        .execution_options(synchronize_session="fetch")
    )


def _stage_from_payload(payload: dict) -> CollectionStage:
    return CollectionStage(
        stage_number=payload["stage_number"],
        name=payload["name"],
        description=payload.get("description"),
        days_from_previous=payload.get("days_from_previous", 0),
        days_overdue=payload.get("days_overdue", 0),
        escalate_after_days=payload.get("escalate_after_days"),
        actions=list(payload.get("actions") or []),
    )


def _check_unique_numbers(stages: list[dict]) -> None:
    numbers = [stage["stage_number"] for stage in stages]
    if len(numbers) != len(set(numbers)):
        raise ValidationFailed("Stage numbers must be unique within a workflow")


def create_workflow(db: Session, *, clinic_id: int, data: dict, actor: User) -> CollectionWorkflow:
    stages = data.get("stages") or []
    if not stages:
        raise ValidationFailed("A workflow needs at least one stage")
    _check_unique_numbers(stages)
    workflow = CollectionWorkflow(
        clinic_id=clinic_id,
        name=data["name"],
        description=data.get("description"),
        is_active=data.get("is_active", True),
        is_default=data.get("is_default", False),
        trigger_days=data.get("trigger_days", 30),
        min_balance_pence=data.get("min_balance_pence", 0),
        patient_type=data.get("patient_type") or PatientType.patient,
        created_by_user_id=actor.id,
        updated_by_user_id=actor.id,
    )
    workflow.stages = [_stage_from_payload(stage) for stage in sorted(stages, key=lambda s: s["stage_number"])]
    db.add(workflow)
    db.flush()
    if workflow.is_default:
        _clear_other_defaults(db, workflow)
    return workflow


def update_workflow(db: Session, workflow: CollectionWorkflow, *, data: dict, actor: User) -> CollectionWorkflow:
    for field in ("name", "description", "is_active", "is_default", "trigger_days", "min_balance_pence", "patient_type"):
        if field in data:
            setattr(workflow, field, data[field])
    workflow.updated_by_user_id = actor.id
    db.flush()
    if workflow.is_default:
        _clear_other_defaults(db, workflow)
    return workflow


def open_collection_count(db: Session, *, workflow_id: int, stage_number: int | None = None) -> int:
    stmt = select(AccountCollection.id).where(
        AccountCollection.workflow_id == workflow_id,
        AccountCollection.status.in_(OPEN_COLLECTION_STATUSES),
    )
    if stage_number is not None:
        stmt = stmt.where(AccountCollection.current_stage == stage_number)
    return len(list(db.scalars(stmt)))


def delete_workflow(db: Session, workflow: CollectionWorkflow, *, actor: User) -> None:
    if open_collection_count(db, workflow_id=workflow.id):
        raise InvalidStateError("Workflow has open account collections")
    workflow.deleted_at = utcnow()
    workflow.deleted_by_user_id = actor.id
    workflow.is_active = False
    workflow.is_default = False


def get_stage(workflow: CollectionWorkflow, stage_id: int) -> CollectionStage:
    for stage in workflow.stages:
        if stage.id == stage_id:
            return stage
    raise NotFoundError("Stage not found")


def add_stage(db: Session, workflow: CollectionWorkflow, *, data: dict, actor: User) -> CollectionStage:
    if any(stage.stage_number == data["stage_number"] for stage in workflow.stages):
        raise ValidationFailed("Stage number already used in this workflow")
    stage = _stage_from_payload(data)
    workflow.stages.append(stage)
    workflow.stages.sort(key=lambda s: s.stage_number)
    workflow.updated_by_user_id = actor.id
    db.flush()
    return stage


def update_stage(
    db: Session, workflow: CollectionWorkflow, stage: CollectionStage, *, data: dict, actor: User
) -> CollectionStage:
    new_number = data.get("stage_number")
    if new_number is not None and new_number != stage.stage_number:
        if any(other.stage_number == new_number for other in workflow.stages if other.id != stage.id):
            raise ValidationFailed("Stage number already used in this workflow")
        if open_collection_count(db, workflow_id=workflow.id, stage_number=stage.stage_number):
            raise InvalidStateError("Stage has open account collections")
    for field in ("stage_number", "name", "description", "days_from_previous", "days_overdue", "escalate_after_days"):
        if field in data:
            setattr(stage, field, data[field])
    if "actions" in data:
        stage.actions = list(data["actions"] or [])
    workflow.stages.sort(key=lambda s: s.stage_number)
    workflow.updated_by_user_id = actor.id
    db.flush()
    return stage


def delete_stage(db: Session, workflow: CollectionWorkflow, stage: CollectionStage, *, actor: User) -> None:
    if len(workflow.stages) <= 1:
        raise InvalidStateError("A workflow needs at least one stage")
    if open_collection_count(db, workflow_id=workflow.id, stage_number=stage.stage_number):
        raise InvalidStateError("Stage has open account collections")
    workflow.stages.remove(stage)
    workflow.updated_by_user_id = actor.id
    db.flush()
