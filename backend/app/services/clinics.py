from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models.clinic import Clinic

logger = logging.getLogger("ortho_pms.clinics")


def get_clinic_by_slug(db: Session, slug: str) -> Clinic | None:
    return db.scalar(select(Clinic).where(Clinic.slug == slug.strip().lower()))


def ensure_default_clinic(db: Session, *, name: str, slug: str) -> Clinic:
    clinic = get_clinic_by_slug(db, slug)
    if clinic:
        return clinic
    clinic = Clinic(name=name.strip() or slug, slug=slug.strip().lower(), is_active=True)
    db.add(clinic)
    db.commit()
    db.refresh(clinic)
    logger.info("Default clinic created (%s).", clinic.slug)
    return clinic


def list_active_clinics(db: Session) -> list[Clinic]:
    return list(db.scalars(select(Clinic).where(Clinic.is_active.is_(True)).order_by(Clinic.id)))
