from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.deps import request_ip, require_capability
from app.models.user import Role, User
from app.schemas.capability import CapabilityOut, UserCapabilitiesUpdate
from app.schemas.user import UserCreate, UserOut, UserPasswordResetRequest, UserPasswordResetResponse, UserUpdate
from app.services.audit import log_event
from app.services.capabilities import get_user_capabilities, replace_user_capabilities
from app.services.users import (
    create_user,
    get_clinic_user,
    get_user_by_email,
    list_clinic_users,
    set_password,
    update_user,
)

router = APIRouter(prefix="/users", tags=["users"])


def _user_or_404(db: Session, admin: User, user_id: int) -> User:
    user = get_clinic_user(db, admin.clinic_id, user_id)
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return user


@router.get("", response_model=list[UserOut])
def list_users(
    db: Session = Depends(get_db),
    admin: User = Depends(require_capability("admin.users.manage")),
):
    return list_clinic_users(db, admin.clinic_id)


@router.post("", response_model=UserOut, status_code=status.HTTP_201_CREATED)
def add_user(
    payload: UserCreate,
    request: Request,
    db: Session = Depends(get_db),
    admin: User = Depends(require_capability("admin.users.manage")),
):
    existing = get_user_by_email(db, payload.email)
    if existing:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Email already exists")
    if payload.role == Role.superadmin and admin.role != Role.superadmin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only superadmins can create superadmins")
    user = create_user(
        db,
        clinic_id=admin.clinic_id,
        email=payload.email,
        password=payload.temp_password,
        full_name=payload.full_name,
        role=Role(payload.role),
        is_active=True,
        must_change_password=True,
        granted_by=admin,
    )
    log_event(
        db,
        actor=admin,
        action="user.created",
        entity_type="user",
        entity_id=str(user.id),
        after_data={"email": user.email, "role": user.role.value},
        ip_address=request_ip(request),
    )
    db.commit()
    return user


@router.get("/roles", response_model=list[str])
def list_roles(_=Depends(require_capability("admin.users.manage"))):
    return [role.value for role in Role]


@router.get("/{user_id}", response_model=UserOut)
def get_user(
    user_id: int,
    db: Session = Depends(get_db),
    admin: User = Depends(require_capability("admin.users.manage")),
):
    return _user_or_404(db, admin, user_id)


@router.patch("/{user_id}", response_model=UserOut)
def patch_user(
    user_id: int,
    payload: UserUpdate,
    request: Request,
    db: Session = Depends(get_db),
    admin: User = Depends(require_capability("admin.users.manage")),
):
    user = _user_or_404(db, admin, user_id)
    if payload.role == Role.superadmin and admin.role != Role.superadmin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only superadmins can grant superadmin")
    previous_role = user.role
    updated = update_user(
        db,
        user=user,
        full_name=payload.full_name,
        role=Role(payload.role) if payload.role else None,
        is_active=payload.is_active,
        password=payload.password,
    )
    if payload.role and updated.role != previous_role:
        log_event(
            db,
            actor=admin,
            action="user.role_changed",
            entity_type="user",
            entity_id=str(updated.id),
            before_data={"role": previous_role.value},
            after_data={"role": updated.role.value},
            ip_address=request_ip(request),
        )
        db.commit()
    return updated


@router.post("/{user_id}/reset-password", response_model=UserPasswordResetResponse)
def reset_user_password(
    user_id: int,
    payload: UserPasswordResetRequest,
    request: Request,
    db: Session = Depends(get_db),
    admin: User = Depends(require_capability("admin.users.manage")),
):
    user = _user_or_404(db, admin, user_id)
    temp_password = payload.temp_password
    if len(temp_password.encode("utf-8")) > 72:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Password too long")
    set_password(db, user=user, new_password=temp_password, must_change_password=True)
    log_event(
        db,
        actor=admin,
        action="user.password_reset",
        entity_type="user",
        entity_id=str(user.id),
        after_data={"status": "issued"},
        ip_address=request_ip(request),
    )
    db.commit()
    return UserPasswordResetResponse(message="Temporary password set.")


@router.get("/{user_id}/capabilities", response_model=list[CapabilityOut])
def get_capabilities(
    user_id: int,
    db: Session = Depends(get_db),
    admin: User = Depends(require_capability("admin.permissions.manage")),
):
    user = _user_or_404(db, admin, user_id)
    return get_user_capabilities(db, user.id)


@router.put("/{user_id}/capabilities", response_model=list[CapabilityOut])
def put_capabilities(
    user_id: int,
    payload: UserCapabilitiesUpdate,
    request: Request,
    db: Session = Depends(get_db),
    admin: User = Depends(require_capability("admin.permissions.manage")),
):
    user = _user_or_404(db, admin, user_id)
    before = [cap.code for cap in get_user_capabilities(db, user.id)]
    try:
        capabilities = replace_user_capabilities(
            db, user.id, payload.capability_codes, granted_by=admin
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    log_event(
        db,
        actor=admin,
        action="user.capabilities_updated",
        entity_type="user",
        entity_id=str(user.id),
        before_data={"capabilities": before},
        after_data={"capabilities": [cap.code for cap in capabilities]},
        ip_address=request_ip(request),
    )
    db.commit()
    return capabilities
