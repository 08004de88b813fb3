from __future__ import annotations

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from app.models.capability import Capability, UserCapability
from app.models.user import Role, User

CAPABILITIES: list[tuple[str, str, str]] = [
    ("patients.view", "patients", "View patients"),
    ("patients.write", "patients", "Create and edit patients"),
    ("billing.view", "billing", "View accounts, invoices and payments"),
    ("billing.write", "billing", "Create invoices, record payments and payment plans"),
    ("collections.view", "collections", "View collections, aging and analytics"),
    ("collections.manage", "collections", "Run collection workflows, promises, agencies and reminders"),
    ("collections.write_offs.approve", "collections", "Approve or reject write-offs"),
    ("portal.manage", "portal", "Manage patient portal access"),
    ("audit.view", "admin", "View the audit trail"),
    ("admin.users.manage", "admin", "Manage users"),
    ("admin.permissions.manage", "admin", "Manage user permissions"),
]

ALL_CODES = [code for code, _, _ in CAPABILITIES]

ROLE_CAPABILITIES: dict[Role, list[str]] = {
    Role.superadmin: ALL_CODES,
    Role.office_manager: [
        "patients.view",
        "patients.write",
        "billing.view",
        "billing.write",
        "collections.view",
        "collections.manage",
        "collections.write_offs.approve",
        "portal.manage",
        "audit.view",
        "admin.users.manage",
    ],
    Role.orthodontist: ["patients.view", "patients.write", "billing.view", "collections.view"],
    Role.billing: [
        "patients.view",
        "billing.view",
        "billing.write",
        "collections.view",
        "collections.manage",
    ],
    Role.front_desk: ["patients.view", "patients.write", "billing.view", "portal.manage"],
    Role.assistant: ["patients.view"],
}


def list_capabilities(db: Session) -> list[Capability]:
    return list(db.scalars(select(Capability).order_by(Capability.code)))


def ensure_capabilities(db: Session) -> list[Capability]:
    existing = {
        cap.code: cap
        for cap in db.scalars(select(Capability).where(Capability.code.in_(ALL_CODES)))
    }
    created: list[Capability] = []
    updated = False
    for code, area, description in CAPABILITIES:
        cap = existing.get(code)
        if cap:
            if cap.description != description or cap.area != area:
                cap.description = description
                cap.area = area
                db.add(cap)
                updated = True
            continue
        cap = Capability(code=code, area=area, description=description)
        db.add(cap)
        created.append(cap)
    if created or updated:
        db.commit()
    return list_capabilities(db)


def grant_role_capabilities(db: Session, user: User, *, granted_by: User | None = None) -> int:
    """Add the default grants for the user's role; the caller commits."""
    codes = ROLE_CAPABILITIES.get(user.role, [])
    if not codes:
        return 0
    capability_ids = list(db.scalars(select(Capability.id).where(Capability.code.in_(codes))))
    existing = set(
        db.scalars(
            select(UserCapability.capability_id).where(UserCapability.user_id == user.id)
        )
    )
    missing = [cap_id for cap_id in capability_ids if cap_id not in existing]
    for cap_id in missing:
        db.add(
            UserCapability(
                user_id=user.id,
                capability_id=cap_id,
                granted_by_user_id=granted_by.id if granted_by else None,
            )
        )
    return len(missing)


def backfill_user_capabilities(db: Session) -> int:
    granted_user_ids = set(db.scalars(select(UserCapability.user_id).distinct()))
    created = 0
    for user in db.scalars(select(User).order_by(User.id)).unique():
        if user.id in granted_user_ids:
            continue
        created += grant_role_capabilities(db, user)
    if created:
        db.commit()
    return created


def get_user_capabilities(db: Session, user_id: int) -> list[Capability]:
    stmt = (
        select(Capability)
        .join(UserCapability, UserCapability.capability_id == Capability.id)
        .where(UserCapability.user_id == user_id)
        .order_by(Capability.code)
    )
    return list(db.scalars(stmt))


def user_has_capability(db: Session, user: User, code: str) -> bool:
    if user.role == Role.superadmin:
        return True
    stmt = (
        select(UserCapability.user_id)
        .join(Capability, UserCapability.capability_id == Capability.id)
        .where(UserCapability.user_id == user.id, Capability.code == code)
    )
    return db.scalar(stmt) is not None


def replace_user_capabilities(
    db: Session,
    user_id: int,
    capability_codes: list[str],
    *,
    granted_by: User | None = None,
) -> list[Capability]:
    codes = [code.strip() for code in capability_codes if code.strip()]
    if not codes:
        db.execute(delete(UserCapability).where(UserCapability.user_id == user_id))
        db.commit()
        return []
    capabilities = list(
        db.scalars(select(Capability).where(Capability.code.in_(codes)))
    )
    found_codes = {cap.code for cap in capabilities}
    missing = [code for code in codes if code not in found_codes]
    if missing:
        raise ValueError(f"Unknown capability codes: {', '.join(sorted(missing))}")
    db.execute(delete(UserCapability).where(UserCapability.user_id == user_id))
    for cap in capabilities:
        db.add(
            UserCapability(
                user_id=user_id,
                capability_id=cap.id,
                granted_by_user_id=granted_by.id if granted_by else None,
            )
        )
    db.commit()
    return get_user_capabilities(db, user_id)
