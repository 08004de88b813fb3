from app.models.base import Base
from app.models.clinic import Clinic
from app.models.user import Role, User
from app.models.audit_log import AuditLog
from app.models.capability import Capability, UserCapability
from app.models.patient import Patient
from app.models.account import AccountStatus, PatientAccount
from app.models.invoice import Invoice, InvoiceLine, InvoiceStatus, Payment, PaymentMethod
from app.models.payment_plan import PaymentPlan, PaymentPlanStatus
from app.models.collections import (
    ActivityType,
    AccountCollection,
    AgencyPayment,
    AgencyReferral,
    AgencyReferralStatus,
    Channel,
    CollectionActivity,
    CollectionAgency,
    CollectionStage,
    CollectionStatus,
    CollectionWorkflow,
    PatientType,
    PaymentPromise,
    PaymentReminder,
    PromiseStatus,
    ReminderType,
    StageActionType,
    WriteOff,
    WriteOffReason,
    WriteOffStatus,
)
from app.models.portal import (
    PortalAccount,
    PortalAccountStatus,
    PortalActivityLog,
    PortalActivityType,
    PortalSession,
)

__all__ = [
    "Base",
    "Clinic",
    "Role",
    "User",
    "AuditLog",
    "Capability",
    "UserCapability",
    "Patient",
    "AccountStatus",
    "PatientAccount",
    "Invoice",
    "InvoiceLine",
    "InvoiceStatus",
    "Payment",
    "PaymentMethod",
    "PaymentPlan",
    "PaymentPlanStatus",
    "ActivityType",
    "AccountCollection",
    "AgencyPayment",
    "AgencyReferral",
    "AgencyReferralStatus",
    "Channel",
    "CollectionActivity",
    "CollectionAgency",
    "CollectionStage",
    "CollectionStatus",
    "CollectionWorkflow",
    "PatientType",
    "PaymentPromise",
    "PaymentReminder",
    "PromiseStatus",
    "ReminderType",
    "StageActionType",
    "WriteOff",
    "WriteOffReason",
    "WriteOffStatus",
    "PortalAccount",
    "PortalAccountStatus",
    "PortalActivityLog",
    "PortalActivityType",
    "PortalSession",
]
