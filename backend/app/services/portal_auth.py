"""Patient portal authentication.

Every token handed to a patient (magic link, email verification, password
reset, session) is stored only as its SHA-256 hash. The patient-facing
flows commit their own changes so that failed-login counters survive the
error response; staff-side helpers leave the commit to the router.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.core.clock import as_utc, utcnow
from app.core.errors import (
    AccountLocked,
    AuthenticationFailed,
    InvalidStateError,
    NotFoundError,
    PermissionDenied,
    ValidationFailed,
)
from app.core.security import generate_token, hash_password, hash_token, verify_password
from app.core.settings import settings
from app.models.clinic import Clinic
from app.models.patient import Patient
from app.models.portal import (
    PortalAccount,
    PortalAccountStatus,
    PortalActivityLog,
    PortalActivityType,
    PortalSession,
)
from app.services.clinics import get_clinic_by_slug

logger = logging.getLogger("ortho_pms.portal")


@dataclass
class IssuedToken:
    account: PortalAccount | None
    token: str | None = None


@dataclass
class PortalLogin:
    account: PortalAccount
    session: PortalSession
    session_token: str


@dataclass
class RequestMeta:
    ip_address: str | None = None
    user_agent: str | None = None


def detect_device_type(user_agent: str | None) -> str:
    ua = (user_agent or "").lower()
    if re.search(r"mobile|android|iphone|ipad|ipod", ua):
        return "tablet" if re.search(r"tablet|ipad", ua) else "mobile"
    return "desktop"


def extract_device_name(user_agent: str | None) -> str:
    ua = user_agent or ""
    for marker, name in (
        ("iPhone", "iPhone"),
        ("iPad", "iPad"),
        ("Android", "Android Device"),
        ("Edg", "Edge Browser"),
        ("Chrome", "Chrome Browser"),
        ("Safari", "Safari Browser"),
        ("Firefox", "Firefox Browser"),
    ):
        if marker in ua:
            return name
    return "Unknown Device"


def _clinic_or_404(db: Session, clinic_slug: str) -> Clinic:
    clinic = get_clinic_by_slug(db, clinic_slug)
    if clinic is None or not clinic.is_active:
        raise NotFoundError("Clinic not found", code="CLINIC_NOT_FOUND")
    return clinic


def _find_patient(db: Session, clinic_id: int, email: str) -> Patient | None:
    return db.scalar(
        select(Patient)
        .where(
            Patient.clinic_id == clinic_id,
            Patient.email.is_not(None),
            Patient.email.ilike(email.strip()),
            Patient.deleted_at.is_(None),
        )
        .order_by(Patient.id.asc())
        .limit(1)
    )


def _find_account(db: Session, clinic_id: int, *, email: str | None = None, patient_id: int | None = None) -> PortalAccount | None:
    stmt = select(PortalAccount).where(
        PortalAccount.clinic_id == clinic_id, PortalAccount.deleted_at.is_(None)
    )
    if email is not None:
        stmt = stmt.where(PortalAccount.email == email.strip().lower())
    if patient_id is not None:
        stmt = stmt.where(PortalAccount.patient_id == patient_id)
    return db.scalar(stmt.limit(1))


def _is_locked(account: PortalAccount) -> bool:
    locked_until = as_utc(account.locked_until)
    return (
        account.status == PortalAccountStatus.locked
        and locked_until is not None
        and locked_until > utcnow()
    )


def log_portal_activity(
    db: Session,
    account: PortalAccount,
    activity_type: PortalActivityType,
    description: str | None = None,
    meta: RequestMeta | None = None,
) -> PortalActivityLog:
    meta = meta or RequestMeta()
    entry = PortalActivityLog(
        portal_account_id=account.id,
        activity_type=activity_type,
        description=description,
        ip_address=meta.ip_address,
        user_agent=meta.user_agent,
        created_at=utcnow(),
    )
    db.add(entry)
    return entry


def find_or_create_account(db: Session, *, clinic_id: int, patient: Patient) -> tuple[PortalAccount, bool]:
    existing = _find_account(db, clinic_id, patient_id=patient.id)
    if existing:
        return existing, False
    account = PortalAccount(
        clinic_id=clinic_id,
        patient_id=patient.id,
        email=(patient.email or "").strip().lower(),
        status=PortalAccountStatus.pending,
        email_verified=False,
        failed_login_attempts=0,
    )
    db.add(account)
    db.flush()
    return account, True


def _open_session(db: Session, account: PortalAccount, meta: RequestMeta) -> tuple[PortalSession, str]:
    token = generate_token()
    now = utcnow()
    session = PortalSession(
        portal_account_id=account.id,
        token_hash=hash_token(token),
        user_agent=meta.user_agent,
        ip_address=meta.ip_address,
        device_type=detect_device_type(meta.user_agent),
        device_name=extract_device_name(meta.user_agent) if meta.user_agent else None,
        expires_at=now + timedelta(days=settings.portal_session_days),
        is_active=True,
        last_activity_at=now,
    )
    db.add(session)
    account.last_login_at = now
    account.last_login_ip = meta.ip_address
    account.last_login_user_agent = meta.user_agent
    return session, token


def request_magic_link(db: Session, *, email: str, clinic_slug: str) -> IssuedToken:
    clinic = _clinic_or_404(db, clinic_slug)
    patient = _find_patient(db, clinic.id, email)
    if patient is None:
        logger.info("Magic link requested for unknown email at clinic %s", clinic.slug)
        return IssuedToken(account=None)
    account, created = find_or_create_account(db, clinic_id=clinic.id, patient=patient)
    if account.status == PortalAccountStatus.deactivated:
        db.commit()
        raise PermissionDenied("Account has been deactivated", code="ACCOUNT_DEACTIVATED")
    if _is_locked(account):
        db.commit()
        raise AccountLocked("Account is temporarily locked")
    token = generate_token()
    account.magic_link_token_hash = hash_token(token)
    account.magic_link_expires_at = utcnow() + timedelta(minutes=settings.portal_magic_link_minutes)
    db.commit()
    db.refresh(account)
    if created:
        logger.info("Portal account %s created for patient %s", account.id, patient.id)
    return IssuedToken(account=account, token=token)


def verify_magic_link(db: Session, *, token: str, meta: RequestMeta) -> PortalLogin:
    account = db.scalar(
        select(PortalAccount).where(
            PortalAccount.magic_link_token_hash == hash_token(token),
            PortalAccount.magic_link_expires_at > utcnow(),
            PortalAccount.deleted_at.is_(None),
        )
    )
    if account is None:
        raise ValidationFailed("Invalid or expired link", code="INVALID_TOKEN")
    if account.status == PortalAccountStatus.deactivated:
        raise PermissionDenied("Account has been deactivated", code="ACCOUNT_DEACTIVATED")
    account.magic_link_token_hash = None
    account.magic_link_expires_at = None
    if not account.email_verified:
        account.email_verified = True
        account.email_verified_at = utcnow()
    if account.status in (PortalAccountStatus.pending, PortalAccountStatus.locked):
        account.status = PortalAccountStatus.active
    account.failed_login_attempts = 0
    account.locked_until = None
    session, session_token = _open_session(db, account, meta)
    log_portal_activity(db, account, PortalActivityType.login, "Logged in via magic link", meta)
    db.commit()
    db.refresh(account)
    db.refresh(session)
    return PortalLogin(account=account, session=session, session_token=session_token)


def register(db: Session, *, email: str, password: str, clinic_slug: str) -> IssuedToken:
    clinic = _clinic_or_404(db, clinic_slug)
    patient = _find_patient(db, clinic.id, email)
    if patient is None:
        raise NotFoundError(
            "No patient record found for this email. Please contact the clinic.",
            code="PATIENT_NOT_FOUND",
        )
    account, _ = find_or_create_account(db, clinic_id=clinic.id, patient=patient)
    if account.password_hash:
        raise InvalidStateError("An account already exists for this email", code="ACCOUNT_EXISTS")
    token = generate_token()
    now = utcnow()
    account.password_hash = hash_password(password)
    account.verification_token_hash = hash_token(token)
    account.verification_expires_at = now + timedelta(hours=settings.portal_verification_hours)
    account.terms_accepted_at = now
    db.commit()
    db.refresh(account)
    return IssuedToken(account=account, token=token)


def verify_email(db: Session, *, token: str) -> PortalAccount:
    account = db.scalar(
        select(PortalAccount).where(
            PortalAccount.verification_token_hash == hash_token(token),
            PortalAccount.verification_expires_at > utcnow(),
            PortalAccount.deleted_at.is_(None),
        )
    )
    if account is None:
        raise ValidationFailed("Invalid or expired verification link", code="INVALID_TOKEN")
    account.email_verified = True
    account.email_verified_at = utcnow()
    account.verification_token_hash = None
    account.verification_expires_at = None
    if account.status == PortalAccountStatus.pending:
        account.status = PortalAccountStatus.active
    log_portal_activity(db, account, PortalActivityType.email_verified, "Email address verified")
    db.commit()
    db.refresh(account)
    return account


def _record_failed_login(db: Session, account: PortalAccount, meta: RequestMeta) -> None:
    attempts = account.failed_login_attempts + 1
    account.failed_login_attempts = attempts
    if attempts >= settings.portal_max_failed_attempts:
        account.status = PortalAccountStatus.locked
        account.locked_until = utcnow() + timedelta(minutes=settings.portal_lockout_minutes)
        logger.warning("Portal account %s locked after %s failed attempts", account.id, attempts)
    log_portal_activity(
        db,
        account,
        PortalActivityType.login_failed,
        f"Failed login attempt ({attempts}/{settings.portal_max_failed_attempts})",
        meta,
    )
    db.commit()


def login(db: Session, *, email: str, password: str, clinic_slug: str, meta: RequestMeta) -> PortalLogin:
    clinic = get_clinic_by_slug(db, clinic_slug)
    if clinic is None:
        raise AuthenticationFailed("Invalid email or password")
    account = _find_account(db, clinic.id, email=email)
    if account is None or not account.password_hash:
        if account is not None:
            _record_failed_login(db, account, meta)
        raise AuthenticationFailed("Invalid email or password")
    if _is_locked(account):
        raise AccountLocked("Account is temporarily locked. Please try again later.")
    if account.status == PortalAccountStatus.deactivated:
        raise PermissionDenied("Account has been deactivated", code="ACCOUNT_DEACTIVATED")
    if not verify_password(password, account.password_hash):
        _record_failed_login(db, account, meta)
        raise AuthenticationFailed("Invalid email or password")
    if not account.email_verified:
        raise PermissionDenied("Please verify your email address first", code="EMAIL_NOT_VERIFIED")

    account.failed_login_attempts = 0
    account.locked_until = None
    if account.status == PortalAccountStatus.locked:
        account.status = PortalAccountStatus.active
    session, session_token = _open_session(db, account, meta)
    log_portal_activity(db, account, PortalActivityType.login, "Logged in with password", meta)
    db.commit()
    db.refresh(account)
    db.refresh(session)
    return PortalLogin(account=account, session=session, session_token=session_token)


def request_password_reset(db: Session, *, email: str, clinic_slug: str) -> IssuedToken:
    clinic = get_clinic_by_slug(db, clinic_slug)
    if clinic is None:
        return IssuedToken(account=None)
    account = _find_account(db, clinic.id, email=email)
    if account is None:
        return IssuedToken(account=None)
    token = generate_token()
    account.reset_token_hash = hash_token(token)
    account.reset_expires_at = utcnow() + timedelta(hours=settings.portal_reset_hours)
    db.commit()
    return IssuedToken(account=account, token=token)


def revoke_sessions(db: Session, account: PortalAccount, *, reason: str) -> None:
    db.execute(
        update(PortalSession)
        .where(PortalSession.portal_account_id == account.id, PortalSession.is_active.is_(True))
        .values(is_active=False, revoked_at=utcnow(), revoked_reason=reason)
        .execution_options(synchronize_session=False)
    )


def reset_password(db: Session, *, token: str, new_password: str) -> PortalAccount:
    account = db.scalar(
        select(PortalAccount).where(
            PortalAccount.reset_token_hash == hash_token(token),
            PortalAccount.reset_expires_at > utcnow(),
            PortalAccount.deleted_at.is_(None),
        )
    )
    if account is None:
        raise ValidationFailed("Invalid or expired reset link", code="INVALID_TOKEN")
    account.password_hash = hash_password(new_password)
    account.reset_token_hash = None
    account.reset_expires_at = None
    account.failed_login_attempts = 0
    account.locked_until = None
    if account.status == PortalAccountStatus.locked:
        account.status = PortalAccountStatus.active
    revoke_sessions(db, account, reason="password_reset")
    log_portal_activity(db, account, PortalActivityType.password_reset, "Password was reset")
    db.commit()
    db.refresh(account)
    return account


def validate_session(db: Session, token: str) -> PortalSession | None:
    session = db.scalar(
        select(PortalSession).where(
            PortalSession.token_hash == hash_token(token),
            PortalSession.is_active.is_(True),
            PortalSession.expires_at > utcnow(),
        )
    )
    if session is None:
        return None
    account = session.portal_account
    if account is None or account.deleted_at is not None:
        return None
    if account.status != PortalAccountStatus.active:
        return None
    session.last_activity_at = utcnow()
    db.commit()
    db.refresh(session)
    return session


def logout(db: Session, *, token: str, meta: RequestMeta) -> None:
    session = db.scalar(select(PortalSession).where(PortalSession.token_hash == hash_token(token)))
    if session is None or not session.is_active:
        return
    session.is_active = False
    session.revoked_at = utcnow()
    session.revoked_reason = "logout"
    log_portal_activity(db, session.portal_account, PortalActivityType.logout, "Logged out", meta)
    db.commit()


def set_portal_access(db: Session, *, clinic_id: int, patient_id: int, active: bool) -> PortalAccount:
    account = _find_account(db, clinic_id, patient_id=patient_id)
    if account is None:
        raise NotFoundError("Patient has no portal account", code="PORTAL_ACCOUNT_NOT_FOUND")
    if active:
        if account.status == PortalAccountStatus.deactivated:
            account.status = (
                PortalAccountStatus.active if account.email_verified else PortalAccountStatus.pending
            )
        account.failed_login_attempts = 0
        account.locked_until = None
    else:
        account.status = PortalAccountStatus.deactivated
        revoke_sessions(db, account, reason="deactivated")
    return account
