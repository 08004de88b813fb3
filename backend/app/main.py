import logging

from fastapi import FastAPI
from sqlalchemy.orm import Session

from app.core.errors import register_error_handlers
from app.core.logging import configure_logging
from app.core.settings import settings, validate_settings
from app.db.session import SessionLocal, engine
from app.models import Base
from app.routers.accounts import router as accounts_router
from app.routers.audit import router as audit_router
from app.routers.auth import router as auth_router
from app.routers.capabilities import router as capabilities_router
from app.routers.collections_accounts import router as collections_accounts_router
from app.routers.collections_agencies import router as collections_agencies_router
from app.routers.collections_promises import router as collections_promises_router
from app.routers.collections_reminders import router as collections_reminders_router
from app.routers.collections_reports import router as collections_reports_router
from app.routers.collections_workflows import router as collections_workflows_router
from app.routers.collections_write_offs import router as collections_write_offs_router
from app.routers.invoices import router as invoices_router
from app.routers.me import router as me_router
from app.routers.patients import router as patients_router
from app.routers.payment_plans import router as payment_plans_router
from app.routers.payments import router as payments_router
from app.routers.portal import router as portal_router
from app.routers.users import router as users_router
from app.services.capabilities import backfill_user_capabilities, ensure_capabilities
from app.services.clinics import ensure_default_clinic
from app.services.users import seed_initial_admin

configure_logging(settings.log_level)

app = FastAPI(title="Ortho PMS API", version="0.1.0")
logger = logging.getLogger("ortho_pms.startup")

register_error_handlers(app)


@app.on_event("startup")
def startup():
    validate_settings(settings)
    Base.metadata.create_all(bind=engine)

    admin_email = str(settings.admin_email)
    admin_password = settings.admin_password.strip()
    db: Session = SessionLocal()
    try:
        clinic = ensure_default_clinic(
            db, name=settings.default_clinic_name, slug=settings.default_clinic_slug
        )
        created = seed_initial_admin(
            db, clinic_id=clinic.id, email=admin_email, password=admin_password
        )
        if created:
            logger.info("Initial admin created for %s (must change password on first login).", admin_email)
        else:
            logger.info("Initial admin not created (users already exist).")
        ensured = ensure_capabilities(db)
        if ensured:
            logger.info("Capabilities ensured (%s total).", len(ensured))
        backfilled = backfill_user_capabilities(db)
        if backfilled:
            logger.info("Capabilities backfilled for existing users (%s grants).", backfilled)
    finally:
        db.close()


@app.get("/health")
def health():
    return {"status": "ok"}


app.include_router(auth_router)
app.include_router(me_router)
app.include_router(users_router)
app.include_router(capabilities_router)
app.include_router(audit_router)
app.include_router(patients_router)
app.include_router(accounts_router)
app.include_router(invoices_router)
app.include_router(payments_router)
app.include_router(payment_plans_router)
app.include_router(collections_workflows_router)
app.include_router(collections_accounts_router)
app.include_router(collections_promises_router)
app.include_router(collections_agencies_router)
app.include_router(collections_write_offs_router)
app.include_router(collections_reminders_router)
app.include_router(collections_reports_router)
app.include_router(portal_router)
