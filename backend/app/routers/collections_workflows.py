from datetime import date

from fastapi import APIRouter, Depends, Header, Query, Request, Response, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.deps import request_ip, require_capability
from app.models.collections import CollectionWorkflow
from app.models.user import User
from app.schemas.collections import (
    StageCreate,
    StageOut,
    StageUpdate,
    WorkflowCreate,
    WorkflowEffectivenessOut,
    WorkflowOut,
    WorkflowUpdate,
)
from app.services import collection_workflows as workflow_service
from app.services.audit import log_event, snapshot_model
from app.services.collections import get_workflow
from app.services.collections_analytics import workflow_effectiveness

router = APIRouter(prefix="/collections/workflows", tags=["collections"])


def _workflow_snapshot(workflow: CollectionWorkflow) -> dict:
    data = snapshot_model(workflow)
    data["stages"] = [snapshot_model(stage) for stage in workflow.stages]
    return data


def _audit(
    db: Session,
    *,
    user: User,
    workflow: CollectionWorkflow,
    action: str,
    before_data: dict | None,
    request: Request,
    request_id: str | None,
) -> None:
    log_event(
        db,
        actor=user,
        action=action,
        entity_type="collection_workflow",
        entity_id=str(workflow.id),
        before_data=before_data,
        after_data=_workflow_snapshot(workflow),
        request_id=request_id,
        ip_address=request_ip(request),
    )
    db.commit()
    db.refresh(workflow)


@router.get("", response_model=list[WorkflowOut])
def list_workflows(
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("collections.view")),
    active_only: bool = Query(default=False),
):
    stmt = select(CollectionWorkflow).where(
        CollectionWorkflow.clinic_id == user.clinic_id,
        CollectionWorkflow.deleted_at.is_(None),
    )
    if active_only:
        stmt = stmt.where(CollectionWorkflow.is_active.is_(True))
    stmt = stmt.order_by(CollectionWorkflow.is_default.desc(), CollectionWorkflow.name)
    return list(db.scalars(stmt).unique())


@router.post("", response_model=WorkflowOut, status_code=status.HTTP_201_CREATED)
def create_workflow(
    payload: WorkflowCreate,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("collections.manage")),
    request_id: str | None = Header(default=None),
):
    workflow = workflow_service.create_workflow(
        db, clinic_id=user.clinic_id, data=payload.model_dump(mode="json"), actor=user
    )
    _audit(
        db, user=user, workflow=workflow, action="collection_workflow.created",
        before_data=None, request=request, request_id=request_id,
    )
    return workflow


@router.get("/{workflow_id}", response_model=WorkflowOut)
def get_workflow_detail(
    workflow_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("collections.view")),
):
    return get_workflow(db, user.clinic_id, workflow_id)


@router.patch("/{workflow_id}", response_model=WorkflowOut)
def update_workflow(
    workflow_id: int,
    payload: WorkflowUpdate,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("collections.manage")),
    request_id: str | None = Header(default=None),
):
    workflow = get_workflow(db, user.clinic_id, workflow_id)
    before_data = _workflow_snapshot(workflow)
    workflow_service.update_workflow(
        db, workflow, data=payload.model_dump(mode="json", exclude_unset=True), actor=user
    )
    _audit(
        db, user=user, workflow=workflow, action="collection_workflow.updated",
        before_data=before_data, request=request, request_id=request_id,
    )
    return workflow


@router.delete("/{workflow_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_workflow(
    workflow_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("collections.manage")),
    request_id: str | None = Header(default=None),
):
    workflow = get_workflow(db, user.clinic_id, workflow_id)
    before_data = _workflow_snapshot(workflow)
    workflow_service.delete_workflow(db, workflow, actor=user)
    _audit(
        db, user=user, workflow=workflow, action="collection_workflow.deleted",
        before_data=before_data, request=request, request_id=request_id,
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{workflow_id}/effectiveness", response_model=WorkflowEffectivenessOut)
def get_effectiveness(
    workflow_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("collections.view")),
    date_from: date | None = Query(default=None, alias="from"),
    date_to: date | None = Query(default=None, alias="to"),
):
    workflow = get_workflow(db, user.clinic_id, workflow_id)
    return workflow_effectiveness(db, workflow, date_from=date_from, date_to=date_to)


@router.post(
    "/{workflow_id}/stages", response_model=StageOut, status_code=status.HTTP_201_CREATED
)
def add_stage(
    workflow_id: int,
    payload: StageCreate,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("collections.manage")),
    request_id: str | None = Header(default=None),
):
    workflow = get_workflow(db, user.clinic_id, workflow_id)
    before_data = _workflow_snapshot(workflow)
    stage = workflow_service.add_stage(db, workflow, data=payload.model_dump(mode="json"), actor=user)
    _audit(
        db, user=user, workflow=workflow, action="collection_workflow.stage_added",
        before_data=before_data, request=request, request_id=request_id,
    )
    db.refresh(stage)
    return stage


@router.patch("/{workflow_id}/stages/{stage_id}", response_model=StageOut)
def update_stage(
    workflow_id: int,
    stage_id: int,
    payload: StageUpdate,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("collections.manage")),
    request_id: str | None = Header(default=None),
):
    workflow = get_workflow(db, user.clinic_id, workflow_id)
    stage = workflow_service.get_stage(workflow, stage_id)
    before_data = _workflow_snapshot(workflow)
    workflow_service.update_stage(
        db,
        workflow,
        stage,
        data=payload.model_dump(mode="json", exclude_unset=True),
        actor=user,
    )
    _audit(
        db, user=user, workflow=workflow, action="collection_workflow.stage_updated",
        before_data=before_data, request=request, request_id=request_id,
    )
    db.refresh(stage)
    return stage


@router.delete("/{workflow_id}/stages/{stage_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_stage(
    workflow_id: int,
    stage_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("collections.manage")),
    request_id: str | None = Header(default=None),
):
    workflow = get_workflow(db, user.clinic_id, workflow_id)
    stage = workflow_service.get_stage(workflow, stage_id)
    before_data = _workflow_snapshot(workflow)
    workflow_service.delete_stage(db, workflow, stage, actor=user)
    _audit(
        db, user=user, workflow=workflow, action="collection_workflow.stage_removed",
        before_data=before_data, request=request, request_id=request_id,
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)
