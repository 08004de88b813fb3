from fastapi import APIRouter, Depends, Header, Query, Request, Response, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.deps import request_ip, require_capability
from app.models.collections import AgencyReferral, AgencyReferralStatus, CollectionAgency
from app.models.user import User
from app.schemas.collections import (
    AgencyCreate,
    AgencyDeleteOut,
    AgencyOut,
    AgencyPaymentCreate,
    AgencyPaymentOut,
    AgencyUpdate,
    ReferralOut,
)
from app.services import agencies as agency_service
from app.services.audit import log_event, snapshot_model

router = APIRouter(prefix="/collections/agencies", tags=["collections"])


@router.get("", response_model=list[AgencyOut])
def list_agencies(
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("collections.view")),
    active_only: bool = Query(default=False),
):
    stmt = select(CollectionAgency).where(
        CollectionAgency.clinic_id == user.clinic_id, CollectionAgency.deleted_at.is_(None)
    )
    if active_only:
        stmt = stmt.where(CollectionAgency.is_active.is_(True))
    return list(db.scalars(stmt.order_by(CollectionAgency.name)).unique())


@router.post("", response_model=AgencyOut, status_code=status.HTTP_201_CREATED)
def create_agency(
    payload: AgencyCreate,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("collections.manage")),
    request_id: str | None = Header(default=None),
):
    agency = CollectionAgency(
        **payload.model_dump(),
        clinic_id=user.clinic_id,
        created_by_user_id=user.id,
        updated_by_user_id=user.id,
    )
    db.add(agency)
    db.flush()
    log_event(
        db,
        actor=user,
        action="collection_agency.created",
        entity_type="collection_agency",
        entity_id=str(agency.id),
        after_obj=agency,
        request_id=request_id,
        ip_address=request_ip(request),
    )
    db.commit()
    db.refresh(agency)
    return agency


@router.post("/payments", response_model=AgencyPaymentOut, status_code=status.HTTP_201_CREATED)
def record_agency_payment(
    payload: AgencyPaymentCreate,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("collections.manage")),
    request_id: str | None = Header(default=None),
):
    referral = agency_service.get_referral(db, user.clinic_id, payload.referral_id)
    before_data = {
        "status": referral.status,
        "amount_collected_pence": referral.amount_collected_pence,
    }
    payment = agency_service.record_agency_payment(
        db,
        referral,
        gross_amount_pence=payload.gross_amount_pence,
        agency_fee_pence=payload.agency_fee_pence,
        payment_date=payload.payment_date,
        actor=user,
        agency_reference=payload.agency_reference,
        check_number=payload.check_number,
    )
    log_event(
        db,
        actor=user,
        action="agency_payment.recorded",
        entity_type="agency_referral",
        entity_id=str(referral.id),
        before_data=before_data,
        after_data={
            "status": referral.status,
            "amount_collected_pence": referral.amount_collected_pence,
            "agency_payment_id": payment.id,
            "net_amount_pence": payment.net_amount_pence,
        },
        request_id=request_id,
        ip_address=request_ip(request),
    )
    db.commit()
    db.refresh(payment)
    return payment


@router.get("/{agency_id}", response_model=AgencyOut)
def get_agency(
    agency_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("collections.view")),
):
    return agency_service.get_agency(db, user.clinic_id, agency_id)


@router.patch("/{agency_id}", response_model=AgencyOut)
def update_agency(
    agency_id: int,
    payload: AgencyUpdate,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("collections.manage")),
    request_id: str | None = Header(default=None),
):
    agency = agency_service.get_agency(db, user.clinic_id, agency_id)
    before_data = snapshot_model(agency)
    for field, value in payload.model_dump(exclude_unset=True).items():
        if value is None and field in {"name", "export_format", "fee_percentage", "min_balance_pence", "min_days", "is_active"}:
            continue
        setattr(agency, field, value)
    agency.updated_by_user_id = user.id
    log_event(
        db,
        actor=user,
        action="collection_agency.updated",
        entity_type="collection_agency",
        entity_id=str(agency.id),
        before_data=before_data,
        after_obj=agency,
        request_id=request_id,
        ip_address=request_ip(request),
    )
    db.commit()
    db.refresh(agency)
    return agency


@router.delete("/{agency_id}", response_model=AgencyDeleteOut)
def delete_agency(
    agency_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("collections.manage")),
    request_id: str | None = Header(default=None),
):
    agency = agency_service.get_agency(db, user.clinic_id, agency_id)
    before_data = snapshot_model(agency)
    result = agency_service.retire_agency(db, agency, actor=user)
    log_event(
        db,
        actor=user,
        action=f"collection_agency.{result}",
        entity_type="collection_agency",
        entity_id=str(agency.id),
        before_data=before_data,
        after_obj=agency,
        request_id=request_id,
        ip_address=request_ip(request),
    )
    db.commit()
    return AgencyDeleteOut(id=agency_id, result=result)


@router.get("/{agency_id}/referrals", response_model=list[ReferralOut])
def list_referrals(
    agency_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("collections.view")),
    referral_status: AgencyReferralStatus | None = Query(default=None, alias="status"),
):
    agency = agency_service.get_agency(db, user.clinic_id, agency_id)
    stmt = select(AgencyReferral).where(AgencyReferral.agency_id == agency.id)
    if referral_status is not None:
        stmt = stmt.where(AgencyReferral.status == referral_status)
    return list(db.scalars(stmt.order_by(AgencyReferral.referred_at.desc())).unique())


@router.get("/{agency_id}/export.csv")
def export_referrals(
    agency_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("collections.manage")),
    request_id: str | None = Header(default=None),
):
    agency = agency_service.get_agency(db, user.clinic_id, agency_id)
    csv_text = agency_service.export_referrals_csv(db, agency)
    log_event(
        db,
        actor=user,
        action="collection_agency.exported",
        entity_type="collection_agency",
        entity_id=str(agency.id),
        after_data={"format": "csv"},
        request_id=request_id,
        ip_address=request_ip(request),
    )
    db.commit()
    filename = f"agency-{agency.id}-referrals.csv"
    headers = {"Content-Disposition": f'attachment; filename="{filename}"'}
    return Response(content=csv_text, media_type="text/csv", headers=headers)
