from __future__ import annotations

import enum
from datetime import date, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import AuditMixin, Base, ClinicScopedMixin, SoftDeleteMixin


class CollectionStatus(str, enum.Enum):
    active = "active"
    paused = "paused"
    payment_plan = "payment_plan"
    settled = "settled"
    written_off = "written_off"
    agency = "agency"
    completed = "completed"


OPEN_COLLECTION_STATUSES = (
    CollectionStatus.active,
    CollectionStatus.paused,
    CollectionStatus.payment_plan,
    CollectionStatus.agency,
)
TERMINAL_COLLECTION_STATUSES = (
    CollectionStatus.settled,
    CollectionStatus.written_off,
    CollectionStatus.completed,
)


class ActivityType(str, enum.Enum):
    workflow_started = "workflow_started"
    stage_advanced = "stage_advanced"
    email_sent = "email_sent"
    sms_sent = "sms_sent"
    letter_sent = "letter_sent"
    phone_call = "phone_call"
    task_created = "task_created"
    payment_received = "payment_received"
    promise_made = "promise_made"
    promise_broken = "promise_broken"
    paused = "paused"
    resumed = "resumed"
    sent_to_agency = "sent_to_agency"
    recalled_from_agency = "recalled_from_agency"
    written_off = "written_off"
    completed = "completed"
    manual_note = "manual_note"


class Channel(str, enum.Enum):
    email = "email"
    sms = "sms"
    letter = "letter"
    phone = "phone"
    portal = "portal"


class PromiseStatus(str, enum.Enum):
    pending = "pending"
    fulfilled = "fulfilled"
    partial = "partial"
    broken = "broken"
    cancelled = "cancelled"


class AgencyReferralStatus(str, enum.Enum):
    active = "active"
    collected = "collected"
    partial = "partial"
    returned = "returned"
    recalled = "recalled"


class WriteOffReason(str, enum.Enum):
    bankruptcy = "bankruptcy"
    deceased = "deceased"
    uncollectible = "uncollectible"
    statute_of_limitations = "statute_of_limitations"
    small_balance = "small_balance"
    hardship = "hardship"
    other = "other"


class WriteOffStatus(str, enum.Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"
    partially_recovered = "partially_recovered"
    fully_recovered = "fully_recovered"


class ReminderType(str, enum.Enum):
    upcoming_due = "upcoming_due"
    past_due_gentle = "past_due_gentle"
    past_due_firm = "past_due_firm"
    past_due_urgent = "past_due_urgent"
    final_notice = "final_notice"
    payment_plan_due = "payment_plan_due"
    payment_plan_late = "payment_plan_late"


class StageActionType(str, enum.Enum):
    email = "email"
    sms = "sms"
    letter = "letter"
    phone_call = "phone_call"
    create_task = "create_task"
    flag_account = "flag_account"
    apply_late_fee = "apply_late_fee"
    send_to_agency = "send_to_agency"
    suspend_treatment = "suspend_treatment"


class PatientType(str, enum.Enum):
    patient = "patient"
    insurance = "insurance"
    both = "both"


class CollectionWorkflow(Base, ClinicScopedMixin, AuditMixin, SoftDeleteMixin):
    __tablename__ = "collection_workflows"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    trigger_days: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    min_balance_pence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    patient_type: Mapped[PatientType] = mapped_column(
        Enum(PatientType, name="collection_patient_type"),
        nullable=False,
        default=PatientType.patient,
    )

    stages = relationship(
        "CollectionStage",
        back_populates="workflow",
        cascade="all, delete-orphan",
        order_by="CollectionStage.stage_number",
        lazy="selectin",
    )


class CollectionStage(Base):
    __tablename__ = "collection_stages"
    __table_args__ = (
        UniqueConstraint("workflow_id", "stage_number", name="uq_collection_stages_workflow_number"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    workflow_id: Mapped[int] = mapped_column(
        ForeignKey("collection_workflows.id"), nullable=False, index=True
    )
    stage_number: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    days_from_previous: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    days_overdue: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    escalate_after_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    actions: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    workflow = relationship("CollectionWorkflow", back_populates="stages")


class AccountCollection(Base, ClinicScopedMixin, AuditMixin):
    __tablename__ = "account_collections"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    account_id: Mapped[int] = mapped_column(
        ForeignKey("patient_accounts.id"), nullable=False, index=True
    )
    workflow_id: Mapped[int] = mapped_column(
        ForeignKey("collection_workflows.id"), nullable=False, index=True
    )
    status: Mapped[CollectionStatus] = mapped_column(
        Enum(CollectionStatus, name="collection_status"),
        nullable=False,
        default=CollectionStatus.active,
        index=True,
    )
    current_stage: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    starting_balance_pence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    current_balance_pence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    paid_amount_pence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    written_off_pence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    entered_stage_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_action_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    paused_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    pause_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    assigned_to_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    account = relationship("PatientAccount", lazy="joined")
    workflow = relationship("CollectionWorkflow", lazy="joined")
    assigned_to = relationship("User", foreign_keys=[assigned_to_user_id], lazy="joined")
    activities = relationship(
        "CollectionActivity",
        back_populates="account_collection",
        cascade="all, delete-orphan",
        order_by="desc(CollectionActivity.id)",
        lazy="selectin",
    )
    promises = relationship(
        "PaymentPromise",
        back_populates="account_collection",
        order_by="PaymentPromise.promised_date",
        lazy="selectin",
    )

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_COLLECTION_STATUSES


class CollectionActivity(Base, ClinicScopedMixin):
    __tablename__ = "collection_activities"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    account_collection_id: Mapped[int] = mapped_column(
        ForeignKey("account_collections.id"), nullable=False, index=True
    )
    account_id: Mapped[int] = mapped_column(
        ForeignKey("patient_accounts.id"), nullable=False, index=True
    )
    activity_type: Mapped[ActivityType] = mapped_column(
        Enum(ActivityType, name="collection_activity_type"), nullable=False
    )
    stage_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    description: Mapped[str] = mapped_column(String(1000), nullable=False)
    channel: Mapped[Channel | None] = mapped_column(
        Enum(Channel, name="collection_channel"), nullable=True
    )
    template_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    sent_to: Mapped[str | None] = mapped_column(String(320), nullable=True)
    result: Mapped[str | None] = mapped_column(String(500), nullable=True)
    response_received: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    payment_received_pence: Mapped[int | None] = mapped_column(Integer, nullable=True)
    performed_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    account_collection = relationship("AccountCollection", back_populates="activities")
    performed_by = relationship("User", lazy="joined")


class PaymentPromise(Base, ClinicScopedMixin, AuditMixin):
    __tablename__ = "payment_promises"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    account_collection_id: Mapped[int] = mapped_column(
        ForeignKey("account_collections.id"), nullable=False, index=True
    )
    account_id: Mapped[int] = mapped_column(
        ForeignKey("patient_accounts.id"), nullable=False, index=True
    )
    promised_amount_pence: Mapped[int] = mapped_column(Integer, nullable=False)
    promised_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    status: Mapped[PromiseStatus] = mapped_column(
        Enum(PromiseStatus, name="promise_status"),
        nullable=False,
        default=PromiseStatus.pending,
        index=True,
    )
    paid_amount_pence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    paid_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    broken_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    broken_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    account_collection = relationship("AccountCollection", back_populates="promises")
    account = relationship("PatientAccount", lazy="joined")


class CollectionAgency(Base, ClinicScopedMixin, AuditMixin, SoftDeleteMixin):
    __tablename__ = "collection_agencies"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    contact_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    export_format: Mapped[str] = mapped_column(String(20), nullable=False, default="CSV")
    fee_percentage: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    min_balance_pence: Mapped[int] = mapped_column(Integer, nullable=False, default=10000)
    min_days: Mapped[int] = mapped_column(Integer, nullable=False, default=120)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)


class AgencyReferral(Base, ClinicScopedMixin, AuditMixin):
    __tablename__ = "agency_referrals"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    referral_number: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    agency_id: Mapped[int] = mapped_column(
        ForeignKey("collection_agencies.id"), nullable=False, index=True
    )
    account_id: Mapped[int] = mapped_column(
        ForeignKey("patient_accounts.id"), nullable=False, index=True
    )
    account_collection_id: Mapped[int | None] = mapped_column(
        ForeignKey("account_collections.id"), nullable=True
    )
    status: Mapped[AgencyReferralStatus] = mapped_column(
        Enum(AgencyReferralStatus, name="agency_referral_status"),
        nullable=False,
        default=AgencyReferralStatus.active,
        index=True,
    )
    amount_referred_pence: Mapped[int] = mapped_column(Integer, nullable=False)
    amount_collected_pence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    fees_paid_pence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    referred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_payment_at: Mapped[date | None] = mapped_column(Date, nullable=True)
    recalled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    recall_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    agency = relationship("CollectionAgency", lazy="joined")
    account = relationship("PatientAccount", lazy="joined")
    payments = relationship(
        "AgencyPayment", back_populates="referral", order_by="AgencyPayment.id", lazy="selectin"
    )

    @property
    def outstanding_pence(self) -> int:
        return max(self.amount_referred_pence - self.amount_collected_pence, 0)


class AgencyPayment(Base, ClinicScopedMixin):
    __tablename__ = "agency_payments"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    referral_id: Mapped[int] = mapped_column(
        ForeignKey("agency_referrals.id"), nullable=False, index=True
    )
    gross_amount_pence: Mapped[int] = mapped_column(Integer, nullable=False)
    agency_fee_pence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    net_amount_pence: Mapped[int] = mapped_column(Integer, nullable=False)
    payment_date: Mapped[date] = mapped_column(Date, nullable=False)
    agency_reference: Mapped[str | None] = mapped_column(String(100), nullable=True)
    check_number: Mapped[str | None] = mapped_column(String(50), nullable=True)
    recorded_by_user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    referral = relationship("AgencyReferral", back_populates="payments")


class WriteOff(Base, ClinicScopedMixin):
    __tablename__ = "write_offs"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    write_off_number: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    account_id: Mapped[int] = mapped_column(
        ForeignKey("patient_accounts.id"), nullable=False, index=True
    )
    invoice_id: Mapped[int | None] = mapped_column(ForeignKey("invoices.id"), nullable=True)
    account_collection_id: Mapped[int | None] = mapped_column(
        ForeignKey("account_collections.id"), nullable=True
    )
    amount_pence: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[WriteOffReason] = mapped_column(
        Enum(WriteOffReason, name="write_off_reason"), nullable=False
    )
    reason_details: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    status: Mapped[WriteOffStatus] = mapped_column(
        Enum(WriteOffStatus, name="write_off_status"),
        nullable=False,
        default=WriteOffStatus.pending,
        index=True,
    )
    requested_by_user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    approved_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    approval_notes: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    rejected_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    recovered_amount_pence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    recovered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    recovery_reference: Mapped[str | None] = mapped_column(String(100), nullable=True)

    account = relationship("PatientAccount", lazy="joined")
    invoice = relationship("Invoice", lazy="joined")
    requested_by = relationship("User", foreign_keys=[requested_by_user_id], lazy="joined")
    approved_by = relationship("User", foreign_keys=[approved_by_user_id], lazy="joined")


class PaymentReminder(Base, ClinicScopedMixin):
    __tablename__ = "payment_reminders"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    account_id: Mapped[int] = mapped_column(
        ForeignKey("patient_accounts.id"), nullable=False, index=True
    )
    reminder_type: Mapped[ReminderType] = mapped_column(
        Enum(ReminderType, name="reminder_type"), nullable=False
    )
    channel: Mapped[Channel] = mapped_column(Enum(Channel, name="collection_channel"), nullable=False)
    template_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    days_overdue: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sent_to: Mapped[str | None] = mapped_column(String(320), nullable=True)
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    subject: Mapped[str | None] = mapped_column(String(200), nullable=True)
    body: Mapped[str | None] = mapped_column(Text, nullable=True)
    include_payment_link: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    payment_received: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sent_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)

    account = relationship("PatientAccount", lazy="joined")
