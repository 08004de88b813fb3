from datetime import date

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from app.core.clock import utcnow
from app.db.session import get_db
from app.deps import request_ip, require_capability
from app.models.patient import Patient
from app.models.user import User
from app.schemas.account import AccountOut
from app.schemas.patient import (
    PatientCreate,
    PatientOut,
    PatientSearchOut,
    PatientUpdate,
    PortalAccessOut,
)
from app.services.audit import log_event, snapshot_model
from app.services.billing import get_account_for_patient
from app.services.portal_auth import set_portal_access

router = APIRouter(prefix="/patients", tags=["patients"])


def get_clinic_patient(db: Session, clinic_id: int, patient_id: int) -> Patient:
    patient = db.scalar(
        select(Patient).where(
            Patient.id == patient_id,
            Patient.clinic_id == clinic_id,
            Patient.deleted_at.is_(None),
        )
    )
    if not patient:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Patient not found")
    return patient


@router.get("", response_model=list[PatientOut])
def list_patients(
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("patients.view")),
    q: str | None = Query(default=None),
    email: str | None = Query(default=None),
    dob: date | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
):
    stmt = (
        select(Patient)
        .where(Patient.clinic_id == user.clinic_id, Patient.deleted_at.is_(None))
        .order_by(Patient.last_name, Patient.first_name)
    )
    if q:
        like = f"%{q.strip()}%"
        stmt = stmt.where(
            or_(
                Patient.first_name.ilike(like),
                Patient.last_name.ilike(like),
                Patient.email.ilike(like),
                Patient.phone.ilike(like),
            )
        )
    if email:
        stmt = stmt.where(Patient.email.ilike(f"%{email.strip()}%"))
    if dob:
        stmt = stmt.where(Patient.date_of_birth == dob)
    stmt = stmt.limit(limit).offset(offset)
    return list(db.scalars(stmt))


@router.get("/search", response_model=list[PatientSearchOut])
def search_patients(
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("patients.view")),
    q: str = Query(min_length=1),
    limit: int = Query(default=20, ge=1, le=50),
):
    term = q.strip()
    like = f"%{term}%"
    stmt = select(Patient).where(
        Patient.clinic_id == user.clinic_id, Patient.deleted_at.is_(None)
    )
    criteria = [
        Patient.first_name.ilike(like),
        Patient.last_name.ilike(like),
        Patient.phone.ilike(like),
    ]
    try:
        parsed = date.fromisoformat(term)
        criteria.append(Patient.date_of_birth == parsed)
    except ValueError:
        pass
    stmt = stmt.where(or_(*criteria)).order_by(Patient.last_name, Patient.first_name).limit(limit)
    return list(db.scalars(stmt))


@router.post("", response_model=PatientOut, status_code=status.HTTP_201_CREATED)
def create_patient(
    payload: PatientCreate,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("patients.write")),
    request_id: str | None = Header(default=None),
):
    data = payload.model_dump()
    if data.get("email"):
        data["email"] = data["email"].lower()
    patient = Patient(
        **data,
        clinic_id=user.clinic_id,
        created_by_user_id=user.id,
        updated_by_user_id=user.id,
    )
    db.add(patient)
    db.flush()
    log_event(
        db,
        actor=user,
        action="patient.created",
        entity_type="patient",
        entity_id=str(patient.id),
        after_obj=patient,
        request_id=request_id,
        ip_address=request_ip(request),
    )
    db.commit()
    db.refresh(patient)
    return patient


@router.get("/{patient_id}", response_model=PatientOut)
def get_patient(
    patient_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("patients.view")),
):
    return get_clinic_patient(db, user.clinic_id, patient_id)


@router.patch("/{patient_id}", response_model=PatientOut)
def update_patient(
    patient_id: int,
    payload: PatientUpdate,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("patients.write")),
    request_id: str | None = Header(default=None),
):
    patient = get_clinic_patient(db, user.clinic_id, patient_id)
    before_data = snapshot_model(patient)
    for field, value in payload.model_dump(exclude_unset=True).items():
        if field == "email" and value:
            value = value.lower()
        setattr(patient, field, value)
    patient.updated_by_user_id = user.id
    patient.updated_at = utcnow()
    db.add(patient)
    log_event(
        db,
        actor=user,
        action="patient.updated",
        entity_type="patient",
        entity_id=str(patient.id),
        before_data=before_data,
        after_obj=patient,
        request_id=request_id,
        ip_address=request_ip(request),
    )
    db.commit()
    db.refresh(patient)
    return patient


@router.delete("/{patient_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_patient(
    patient_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("patients.write")),
    request_id: str | None = Header(default=None),
):
    patient = get_clinic_patient(db, user.clinic_id, patient_id)
    before_data = snapshot_model(patient)
    patient.deleted_at = utcnow()
    patient.deleted_by_user_id = user.id
    patient.updated_by_user_id = user.id
    db.add(patient)
    log_event(
        db,
        actor=user,
        action="patient.deleted",
        entity_type="patient",
        entity_id=str(patient.id),
        before_data=before_data,
        after_obj=patient,
        request_id=request_id,
        ip_address=request_ip(request),
    )
    db.commit()


@router.get("/{patient_id}/account", response_model=AccountOut)
def get_patient_account(
    patient_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("billing.view")),
):
    patient = get_clinic_patient(db, user.clinic_id, patient_id)
    account = get_account_for_patient(db, user.clinic_id, patient.id)
    if not account:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Account not found")
    return account


def _portal_access(
    db: Session,
    *,
    user: User,
    patient_id: int,
    active: bool,
    request: Request,
    request_id: str | None,
) -> PortalAccessOut:
    patient = get_clinic_patient(db, user.clinic_id, patient_id)
    account = set_portal_access(db, clinic_id=user.clinic_id, patient_id=patient.id, active=active)
    log_event(
        db,
        actor=user,
        action="portal_account.reactivated" if active else "portal_account.deactivated",
        entity_type="portal_account",
        entity_id=str(account.id),
        after_data={"patient_id": patient.id, "status": account.status},
        request_id=request_id,
        ip_address=request_ip(request),
    )
    db.commit()
    return PortalAccessOut(
        patient_id=patient.id, portal_account_id=account.id, status=account.status.value
    )


@router.post("/{patient_id}/portal/deactivate", response_model=PortalAccessOut)
def deactivate_portal(
    patient_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("portal.manage")),
    request_id: str | None = Header(default=None),
):
    return _portal_access(
        db, user=user, patient_id=patient_id, active=False, request=request, request_id=request_id
    )


@router.post("/{patient_id}/portal/reactivate", response_model=PortalAccessOut)
def reactivate_portal(
    patient_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("portal.manage")),
    request_id: str | None = Header(default=None),
):
    return _portal_access(
        db, user=user, patient_id=patient_id, active=True, request=request, request_id=request_id
    )
