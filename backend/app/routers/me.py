from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.deps import get_current_user
from app.models.user import Role, User
from app.schemas.user import MeOut
from app.services.capabilities import ALL_CODES, get_user_capabilities

router = APIRouter(prefix="/me", tags=["me"])


@router.get("", response_model=MeOut)
def get_me(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    if user.role == Role.superadmin:
        codes = list(ALL_CODES)
    else:
        codes = [cap.code for cap in get_user_capabilities(db, user.id)]
    return MeOut(
        id=user.id,
        clinic_id=user.clinic_id,
        email=user.email,
        full_name=user.full_name,
        role=user.role,
        is_active=user.is_active,
        must_change_password=user.must_change_password,
        created_at=user.created_at,
        clinic_name=user.clinic.name,
        clinic_slug=user.clinic.slug,
        capabilities=codes,
    )
