"""Patient-facing portal endpoints.

Auth endpoints never reveal whether an email belongs to a patient. Tokens are
only echoed back when PORTAL_DEBUG_TOKENS is enabled, since delivery by email
happens outside this service.
"""

from fastapi import APIRouter, Depends, Request
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.settings import settings
from app.db.session import get_db
from app.deps import bearer_token, get_portal_session, request_ip
from app.models.collections import PaymentPromise, PromiseStatus
from app.models.portal import PortalActivityType, PortalSession
from app.schemas.portal import (
    PortalAccountOut,
    PortalBillingOut,
    PortalInvoiceOut,
    PortalLoginRequest,
    PortalMagicLinkRequest,
    PortalMeOut,
    PortalMessage,
    PortalProfileUpdate,
    PortalPromiseOut,
    PortalRegisterRequest,
    PortalResetConfirm,
    PortalResetRequest,
    PortalSessionOut,
    PortalTokenRequest,
)
from app.services import portal_auth
from app.services.aging import account_buckets, empty_buckets
from app.services.audit import log_event
from app.services.billing import get_account_for_patient, open_invoices

router = APIRouter(prefix="/portal", tags=["portal"])

MAGIC_LINK_MESSAGE = "If an account exists for this email, a sign-in link has been sent."
RESET_MESSAGE = "If an account exists for this email, a password reset link has been sent."


def _meta(request: Request) -> portal_auth.RequestMeta:
    return portal_auth.RequestMeta(
        ip_address=request_ip(request), user_agent=request.headers.get("user-agent")
    )


def _debug_token(token: str | None) -> str | None:
    return token if settings.portal_debug_tokens else None


def _session_out(login: portal_auth.PortalLogin) -> PortalSessionOut:
    return PortalSessionOut(
        session_token=login.session_token,
        expires_at=login.session.expires_at,
        account=PortalAccountOut.model_validate(login.account),
        patient_name=login.account.patient.full_name,
    )


@router.post("/auth/magic-link", response_model=PortalMessage)
def request_magic_link(payload: PortalMagicLinkRequest, db: Session = Depends(get_db)):
    issued = portal_auth.request_magic_link(
        db, email=str(payload.email), clinic_slug=payload.clinic_slug
    )
    return PortalMessage(message=MAGIC_LINK_MESSAGE, token=_debug_token(issued.token))


@router.post("/auth/magic-link/verify", response_model=PortalSessionOut)
def verify_magic_link(
    payload: PortalTokenRequest, request: Request, db: Session = Depends(get_db)
):
    login = portal_auth.verify_magic_link(db, token=payload.token, meta=_meta(request))
    return _session_out(login)


@router.post("/auth/register", response_model=PortalMessage, status_code=201)
def register(payload: PortalRegisterRequest, db: Session = Depends(get_db)):
    issued = portal_auth.register(
        db,
        email=str(payload.email),
        password=payload.password,
        clinic_slug=payload.clinic_slug,
    )
    return PortalMessage(
        message="Registration received. Please verify your email address.",
        token=_debug_token(issued.token),
    )


@router.post("/auth/verify-email", response_model=PortalAccountOut)
def verify_email(payload: PortalTokenRequest, db: Session = Depends(get_db)):
    return portal_auth.verify_email(db, token=payload.token)


@router.post("/auth/login", response_model=PortalSessionOut)
def login(payload: PortalLoginRequest, request: Request, db: Session = Depends(get_db)):
    result = portal_auth.login(
        db,
        email=str(payload.email),
        password=payload.password,
        clinic_slug=payload.clinic_slug,
        meta=_meta(request),
    )
    return _session_out(result)


@router.post("/auth/password-reset/request", response_model=PortalMessage)
def request_password_reset(payload: PortalResetRequest, db: Session = Depends(get_db)):
    issued = portal_auth.request_password_reset(
        db, email=str(payload.email), clinic_slug=payload.clinic_slug
    )
    return PortalMessage(message=RESET_MESSAGE, token=_debug_token(issued.token))


@router.post("/auth/password-reset/confirm", response_model=PortalMessage)
def confirm_password_reset(payload: PortalResetConfirm, db: Session = Depends(get_db)):
    portal_auth.reset_password(db, token=payload.token, new_password=payload.new_password)
    return PortalMessage(message="Password updated. Please sign in again.")


@router.post("/auth/logout", response_model=PortalMessage)
def logout(
    request: Request,
    db: Session = Depends(get_db),
    session: PortalSession = Depends(get_portal_session),
):
    token = bearer_token(request.headers.get("authorization"))
    portal_auth.logout(db, token=token, meta=_meta(request))
    return PortalMessage(message="Signed out")


def _me(session: PortalSession) -> PortalMeOut:
    account = session.portal_account
    patient = account.patient
    return PortalMeOut(
        account=PortalAccountOut.model_validate(account),
        patient_name=patient.full_name,
        clinic_name=account.clinic.name,
        phone=patient.phone,
        address_line1=patient.address_line1,
        address_line2=patient.address_line2,
        city=patient.city,
        postcode=patient.postcode,
    )


@router.get("/me", response_model=PortalMeOut)
def get_me(session: PortalSession = Depends(get_portal_session)):
    return _me(session)


@router.patch("/profile", response_model=PortalMeOut)
def update_profile(
    payload: PortalProfileUpdate,
    request: Request,
    db: Session = Depends(get_db),
    session: PortalSession = Depends(get_portal_session),
):
    account = session.portal_account
    patient = account.patient
    changes = payload.model_dump(exclude_unset=True)
    before_data = {field: getattr(patient, field) for field in changes}
    for field, value in changes.items():
        setattr(patient, field, value)
    portal_auth.log_portal_activity(
        db,
        account,
        PortalActivityType.profile_updated,
        "Updated " + ", ".join(sorted(changes)) if changes else "Profile saved without changes",
        _meta(request),
    )
    log_event(
        db,
        actor=None,
        clinic_id=account.clinic_id,
        action="patient.portal_profile_updated",
        entity_type="patient",
        entity_id=str(patient.id),
        before_data=before_data,
        after_data=changes,
        ip_address=request_ip(request),
    )
    db.commit()
    db.refresh(session)
    return _me(session)


@router.get("/account", response_model=PortalBillingOut)
def get_billing(
    db: Session = Depends(get_db),
    session: PortalSession = Depends(get_portal_session),
):
    portal_account = session.portal_account
    account = get_account_for_patient(db, portal_account.clinic_id, portal_account.patient_id)
    if account is None:
        return PortalBillingOut(
            current_balance_pence=0,
            days_overdue=0,
            aging=empty_buckets(),
            open_invoices=[],
            pending_promises=[],
        )
    promises = db.scalars(
        select(PaymentPromise)
        .where(
            PaymentPromise.account_id == account.id,
            PaymentPromise.status == PromiseStatus.pending,
        )
        .order_by(PaymentPromise.promised_date)
    ).unique()
    return PortalBillingOut(
        account_number=account.account_number,
        current_balance_pence=account.current_balance_pence,
        days_overdue=account.days_overdue,
        aging=account_buckets(account),
        open_invoices=[
            PortalInvoiceOut(
                id=invoice.id,
                invoice_number=invoice.invoice_number,
                issue_date=invoice.issue_date,
                due_date=invoice.due_date,
                total_pence=invoice.total_pence,
                balance_pence=invoice.balance_pence,
            )
            for invoice in open_invoices(db, account)
        ],
        pending_promises=[
            PortalPromiseOut(
                id=promise.id,
                promised_amount_pence=promise.promised_amount_pence,
                promised_date=promise.promised_date,
            )
            for promise in promises
        ],
    )
