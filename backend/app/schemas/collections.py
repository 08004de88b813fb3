from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from app.models.collections import (
    ActivityType,
    AgencyReferralStatus,
    Channel,
    CollectionStatus,
    PatientType,
    PromiseStatus,
    ReminderType,
    StageActionType,
    WriteOffReason,
    WriteOffStatus,
)


class StageAction(BaseModel):
    type: StageActionType
    template_id: Optional[str] = Field(default=None, max_length=100)
    assign_to: Optional[str] = Field(default=None, max_length=100)
    notes: Optional[str] = Field(default=None, max_length=500)


class StageCreate(BaseModel):
    stage_number: int = Field(ge=1)
    name: str = Field(min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    days_from_previous: int = Field(default=0, ge=0)
    days_overdue: int = Field(default=0, ge=0)
    escalate_after_days: Optional[int] = Field(default=None, ge=1)
    actions: list[StageAction] = Field(default_factory=list)


class StageUpdate(BaseModel):
    stage_number: Optional[int] = Field(default=None, ge=1)
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    days_from_previous: Optional[int] = Field(default=None, ge=0)
    days_overdue: Optional[int] = Field(default=None, ge=0)
    escalate_after_days: Optional[int] = Field(default=None, ge=1)
    actions: Optional[list[StageAction]] = None


class StageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    stage_number: int
    name: str
    description: Optional[str] = None
    days_from_previous: int
    days_overdue: int
    escalate_after_days: Optional[int] = None
    actions: list[dict]


class WorkflowCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    is_active: bool = True
    is_default: bool = False
    trigger_days: int = Field(default=30, ge=1, le=365)
    min_balance_pence: int = Field(default=0, ge=0)
    patient_type: PatientType = PatientType.patient
    stages: list[StageCreate] = Field(min_length=1)


class WorkflowUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    is_active: Optional[bool] = None
    is_default: Optional[bool] = None
    trigger_days: Optional[int] = Field(default=None, ge=1, le=365)
    min_balance_pence: Optional[int] = Field(default=None, ge=0)
    patient_type: Optional[PatientType] = None


class WorkflowOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: Optional[str] = None
    is_active: bool
    is_default: bool
    trigger_days: int
    min_balance_pence: int
    patient_type: PatientType
    stages: list[StageOut]
    created_at: datetime
    updated_at: datetime


class WorkflowEffectivenessOut(BaseModel):
    workflow_id: int
    workflow_name: str
    total_accounts: int
    completed: int
    completion_rate: float
    starting_balance_pence: int
    collected_pence: int
    collection_rate: float
    average_days_to_complete: float


class CollectionStart(BaseModel):
    account_id: int
    workflow_id: Optional[int] = None
    assigned_to_user_id: Optional[int] = None
    notes: Optional[str] = Field(default=None, max_length=1000)


class CollectionPause(BaseModel):
    reason: str = Field(min_length=1, max_length=500)


class CollectionNotes(BaseModel):
    notes: Optional[str] = Field(default=None, max_length=1000)


class CollectionPaymentPlan(BaseModel):
    plan_id: int


class CollectionSettle(BaseModel):
    settlement_amount_pence: int = Field(ge=0)
    notes: Optional[str] = Field(default=None, max_length=1000)


class CollectionComplete(BaseModel):
    force: bool = False
    notes: Optional[str] = Field(default=None, max_length=1000)


class ActivityCreate(BaseModel):
    activity_type: ActivityType
    description: str = Field(min_length=1, max_length=1000)
    channel: Optional[Channel] = None
    template_id: Optional[str] = Field(default=None, max_length=100)
    sent_to: Optional[str] = Field(default=None, max_length=320)
    result: Optional[str] = Field(default=None, max_length=500)
    response_received: bool = False
    payment_received_pence: Optional[int] = Field(default=None, ge=0)


class ActivityOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    activity_type: ActivityType
    stage_number: Optional[int] = None
    description: str
    channel: Optional[Channel] = None
    template_id: Optional[str] = None
    sent_to: Optional[str] = None
    result: Optional[str] = None
    response_received: bool
    payment_received_pence: Optional[int] = None
    performed_by_user_id: Optional[int] = None
    created_at: datetime


class PromiseCreate(BaseModel):
    promised_amount_pence: int = Field(ge=1)
    promised_date: date
    notes: Optional[str] = Field(default=None, max_length=1000)


class PromiseUpdate(BaseModel):
    promised_amount_pence: Optional[int] = Field(default=None, ge=1)
    promised_date: Optional[date] = None
    notes: Optional[str] = Field(default=None, max_length=1000)


class PromiseFulfill(BaseModel):
    paid_amount_pence: int = Field(ge=1)
    paid_date: date
    notes: Optional[str] = Field(default=None, max_length=1000)


class PromiseBreak(BaseModel):
    reason: str = Field(min_length=1, max_length=500)


class PromiseCancel(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class PromiseOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_collection_id: int
    account_id: int
    promised_amount_pence: int
    promised_date: date
    status: PromiseStatus
    paid_amount_pence: int
    paid_date: Optional[date] = None
    notes: Optional[str] = None
    broken_reason: Optional[str] = None
    created_by_user_id: int
    created_at: datetime
    days_overdue: int = 0


class PromisePage(BaseModel):
    items: list[PromiseOut]
    total: int
    page: int
    page_size: int
    total_pages: int


class ReferralOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    referral_number: str
    agency_id: int
    account_id: int
    account_collection_id: Optional[int] = None
    status: AgencyReferralStatus
    amount_referred_pence: int
    amount_collected_pence: int
    fees_paid_pence: int
    outstanding_pence: int
    referred_at: datetime
    last_payment_at: Optional[date] = None
    recalled_at: Optional[datetime] = None
    recall_reason: Optional[str] = None
    notes: Optional[str] = None


class AccountCollectionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_id: int
    account_number: str
    patient_id: int
    patient_name: str
    workflow_id: int
    workflow_name: str
    status: CollectionStatus
    current_stage: int
    starting_balance_pence: int
    current_balance_pence: int
    paid_amount_pence: int
    written_off_pence: int
    started_at: datetime
    entered_stage_at: datetime
    last_action_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    pause_reason: Optional[str] = None
    completed_at: Optional[datetime] = None
    assigned_to_user_id: Optional[int] = None
    notes: Optional[str] = None


class AccountCollectionDetailOut(AccountCollectionOut):
    stages: list[StageOut]
    activities: list[ActivityOut]
    promises: list[PromiseOut]
    active_referral: Optional[ReferralOut] = None


class AccountCollectionPage(BaseModel):
    items: list[AccountCollectionOut]
    total: int
    page: int
    page_size: int
    total_pages: int


class AgencyCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    contact_name: Optional[str] = Field(default=None, max_length=200)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(default=None, max_length=50)
    address: Optional[str] = Field(default=None, max_length=500)
    export_format: str = Field(default="CSV", max_length=20)
    fee_percentage: float = Field(default=0, ge=0, le=100)
    min_balance_pence: int = Field(default=10000, ge=0)
    min_days: int = Field(default=120, ge=0)
    is_active: bool = True
    notes: Optional[str] = Field(default=None, max_length=1000)


class AgencyUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    contact_name: Optional[str] = Field(default=None, max_length=200)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(default=None, max_length=50)
    address: Optional[str] = Field(default=None, max_length=500)
    export_format: Optional[str] = Field(default=None, max_length=20)
    fee_percentage: Optional[float] = Field(default=None, ge=0, le=100)
    min_balance_pence: Optional[int] = Field(default=None, ge=0)
    min_days: Optional[int] = Field(default=None, ge=0)
    is_active: Optional[bool] = None
    notes: Optional[str] = Field(default=None, max_length=1000)


class AgencyOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    contact_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    export_format: str
    fee_percentage: float
    min_balance_pence: int
    min_days: int
    is_active: bool
    notes: Optional[str] = None
    created_at: datetime


class AgencyDeleteOut(BaseModel):
    id: int
    result: str


class SendToAgency(BaseModel):
    agency_id: int
    notes: Optional[str] = Field(default=None, max_length=1000)


class RecallFromAgency(BaseModel):
    reason: str = Field(min_length=1, max_length=500)


class AgencyPaymentCreate(BaseModel):
    referral_id: int
    gross_amount_pence: int = Field(ge=1)
    agency_fee_pence: int = Field(default=0, ge=0)
    payment_date: date
    agency_reference: Optional[str] = Field(default=None, max_length=100)
    check_number: Optional[str] = Field(default=None, max_length=50)


class AgencyPaymentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    referral_id: int
    gross_amount_pence: int
    agency_fee_pence: int
    net_amount_pence: int
    payment_date: date
    agency_reference: Optional[str] = None
    check_number: Optional[str] = None
    recorded_by_user_id: int
    created_at: datetime


class WriteOffCreate(BaseModel):
    account_id: int
    invoice_id: Optional[int] = None
    amount_pence: int = Field(ge=1)
    reason: WriteOffReason
    reason_details: Optional[str] = Field(default=None, max_length=1000)


class WriteOffApprove(BaseModel):
    notes: Optional[str] = Field(default=None, max_length=1000)


class WriteOffReject(BaseModel):
    reason: str = Field(min_length=1, max_length=1000)


class WriteOffRecover(BaseModel):
    amount_pence: int = Field(ge=1)
    payment_reference: Optional[str] = Field(default=None, max_length=100)
    notes: Optional[str] = Field(default=None, max_length=1000)


class WriteOffOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    write_off_number: str
    account_id: int
    invoice_id: Optional[int] = None
    account_collection_id: Optional[int] = None
    amount_pence: int
    reason: WriteOffReason
    reason_details: Optional[str] = None
    status: WriteOffStatus
    requested_by_user_id: int
    requested_at: datetime
    approved_by_user_id: Optional[int] = None
    approved_at: Optional[datetime] = None
    approval_notes: Optional[str] = None
    rejected_by_user_id: Optional[int] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    recovered_amount_pence: int
    recovered_at: Optional[datetime] = None
    recovery_reference: Optional[str] = None


class WriteOffTotals(BaseModel):
    count: int
    amount_pence: int
    recovered_pence: int


class WriteOffPage(BaseModel):
    items: list[WriteOffOut]
    total: int
    page: int
    page_size: int
    total_pages: int
    totals: WriteOffTotals


class ReminderCreate(BaseModel):
    account_id: int
    reminder_type: ReminderType
    channel: Channel
    template_id: Optional[str] = Field(default=None, max_length=100)
    subject: Optional[str] = Field(default=None, max_length=200)
    body: Optional[str] = Field(default=None, max_length=5000)
    include_payment_link: bool = True


class ReminderBatch(BaseModel):
    reminder_type: ReminderType
    channel: Channel
    template_id: Optional[str] = Field(default=None, max_length=100)
    min_days_overdue: Optional[int] = Field(default=None, ge=0)
    max_days_overdue: Optional[int] = Field(default=None, ge=0)
    min_balance_pence: Optional[int] = Field(default=None, ge=0)
    max_accounts: int = Field(default=100, ge=1, le=500)
    include_payment_link: bool = True


class ReminderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_id: int
    reminder_type: ReminderType
    channel: Channel
    template_id: Optional[str] = None
    days_overdue: int
    sent_to: Optional[str] = None
    sent_at: datetime
    subject: Optional[str] = None
    include_payment_link: bool
    payment_received: bool


class ReminderBatchOut(BaseModel):
    sent: int
    skipped: int


class ReminderStats(BaseModel):
    total_sent: int
    with_payment: int
    conversion_rate: float


class ReminderPage(BaseModel):
    items: list[ReminderOut]
    total: int
    page: int
    page_size: int
    total_pages: int
    stats: ReminderStats


class AgingBucketOut(BaseModel):
    bucket: str
    label: str
    amount_pence: int


class AgingSummaryOut(BaseModel):
    total_ar_pence: int
    patient_ar_pence: int
    insurance_ar_pence: int
    buckets: list[AgingBucketOut]
    account_count: int
    average_days_outstanding: float


class AgingRowOut(BaseModel):
    account_id: int
    account_number: str
    patient_id: int
    patient_name: str
    balance_pence: int
    buckets: dict[str, int]
    days_overdue: int
    status: str
    in_collections: bool


class AgingTotalsOut(BaseModel):
    balance_pence: int
    buckets: dict[str, int]


class AgingReportOut(BaseModel):
    items: list[AgingRowOut]
    total: int
    page: int
    page_size: int
    total_pages: int
    totals: AgingTotalsOut


class DsoOut(BaseModel):
    dso: float
    total_ar_pence: int
    credit_sales_pence: int
    period_days: int


class CollectionSummaryOut(BaseModel):
    active_count: int
    paused_count: int
    payment_plan_count: int
    agency_count: int
    total_balance_pence: int
    total_collected_pence: int
    pending_promises: int
    pending_promises_pence: int
    pending_write_offs: int
    pending_write_offs_pence: int
    collection_rate: float


class AnalyticsSummaryOut(BaseModel):
    total_ar_pence: int
    in_collection_pence: int
    collection_rate: float
    average_days_to_collect: float
    dso: float
    recovery_rate: float


class AnalyticsPerformanceOut(BaseModel):
    promise_kept_rate: float
    agency_recovery_rate: float
    write_off_rate: float
    reminder_response_rate: float


class AnalyticsOut(BaseModel):
    period_days: int
    summary: AnalyticsSummaryOut
    aging: AgingSummaryOut
    performance: AnalyticsPerformanceOut


class ProcessRunOut(BaseModel):
    accounts_checked: int
    balances_recalculated: int
    collections_started: int
    collections_escalated: int
    promises_broken: int
