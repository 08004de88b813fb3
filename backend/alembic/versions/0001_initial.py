"""initial schema

Revision ID: 0001_initial
Revises: 
Create Date: 2026-10-18 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    ]


def _audit_columns() -> list[sa.Column]:
    return _timestamps() + [
        sa.Column("created_by_user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("updated_by_user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
    ]


def _soft_delete_columns() -> list[sa.Column]:
    return [
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deleted_by_user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
    ]


def _clinic_column() -> sa.Column:
    return sa.Column("clinic_id", sa.Integer(), sa.ForeignKey("clinics.id"), nullable=False)


def _pence(name: str, nullable: bool = False) -> sa.Column:
    if nullable:
        return sa.Column(name, sa.Integer(), nullable=True)
    return sa.Column(name, sa.Integer(), nullable=False, server_default="0")


def upgrade() -> None:
    op.create_table(
        "clinics",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("slug", sa.String(length=80), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.UniqueConstraint("slug"),
    )
    op.create_index("ix_clinics_slug", "clinics", ["slug"])

    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _clinic_column(),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("full_name", sa.String(length=200), nullable=False, server_default=""),
        sa.Column(
            "role",
            sa.Enum(
                "orthodontist",
                "office_manager",
                "billing",
                "front_desk",
                "assistant",
                "superadmin",
                name="role_enum",
            ),
            nullable=False,
            server_default="front_desk",
        ),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("must_change_password", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("hashed_password", sa.String(length=255), nullable=False),
        sa.Column("reset_token_hash", sa.String(length=64), nullable=True),
        sa.Column("reset_token_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reset_token_used_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("email"),
    )
    op.create_index("ix_users_email", "users", ["email"])
    op.create_index("ix_users_clinic_id", "users", ["clinic_id"])

    op.create_table(
        "capabilities",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("code", sa.String(length=120), nullable=False),
        sa.Column("area", sa.String(length=50), nullable=False, server_default="general"),
        sa.Column("description", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.UniqueConstraint("code"),
    )
    op.create_index("ix_capabilities_code", "capabilities", ["code"])

    op.create_table(
        "user_capabilities",
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), primary_key=True),
        sa.Column("capability_id", sa.Integer(), sa.ForeignKey("capabilities.id"), primary_key=True),
        sa.Column("granted_by_user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("clinic_id", sa.Integer(), sa.ForeignKey("clinics.id"), nullable=True),
        sa.Column("actor_user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("actor_email", sa.String(length=320), nullable=True),
        sa.Column("action", sa.String(length=64), nullable=False),
        sa.Column("entity_type", sa.String(length=50), nullable=False),
        sa.Column("entity_id", sa.String(length=64), nullable=False),
        sa.Column("request_id", sa.String(length=120), nullable=True),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
        sa.Column("before_json", sa.JSON(), nullable=True),
        sa.Column("after_json", sa.JSON(), nullable=True),
    )
    op.create_index("ix_audit_logs_clinic_id", "audit_logs", ["clinic_id"])
    op.create_index("ix_audit_logs_entity", "audit_logs", ["entity_type", "entity_id"])

    op.create_table(
        "patients",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _clinic_column(),
        sa.Column("title", sa.String(length=50), nullable=True),
        sa.Column("first_name", sa.String(length=120), nullable=False),
        sa.Column("last_name", sa.String(length=120), nullable=False),
        sa.Column("date_of_birth", sa.Date(), nullable=True),
        sa.Column("phone", sa.String(length=50), nullable=True),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("address_line1", sa.String(length=200), nullable=True),
        sa.Column("address_line2", sa.String(length=200), nullable=True),
        sa.Column("city", sa.String(length=100), nullable=True),
        sa.Column("postcode", sa.String(length=20), nullable=True),
        sa.Column("responsible_party_name", sa.String(length=200), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        *_audit_columns(),
        *_soft_delete_columns(),
    )
    op.create_index("ix_patients_clinic_id", "patients", ["clinic_id"])
    op.create_index("ix_patients_email", "patients", ["email"])
    op.create_index("ix_patients_deleted_at", "patients", ["deleted_at"])

    op.create_table(
        "patient_accounts",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _clinic_column(),
        sa.Column("patient_id", sa.Integer(), sa.ForeignKey("patients.id"), nullable=False),
        sa.Column("account_number", sa.String(length=32), nullable=False),
        sa.Column(
            "status",
            sa.Enum("active", "collections", "closed", name="account_status"),
            nullable=False,
            server_default="active",
        ),
        _pence("current_balance_pence"),
        _pence("patient_balance_pence"),
        _pence("insurance_balance_pence"),
        _pence("credit_balance_pence"),
        _pence("aging_current_pence"),
        _pence("aging_1_30_pence"),
        _pence("aging_31_60_pence"),
        _pence("aging_61_90_pence"),
        _pence("aging_91_120_pence"),
        _pence("aging_120_plus_pence"),
        sa.Column("days_overdue", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("balance_updated_at", sa.DateTime(timezone=True), nullable=True),
        *_audit_columns(),
        *_soft_delete_columns(),
        sa.UniqueConstraint("clinic_id", "account_number", name="uq_patient_accounts_clinic_number"),
    )
    op.create_index("ix_patient_accounts_clinic_id", "patient_accounts", ["clinic_id"])
    op.create_index("ix_patient_accounts_patient_id", "patient_accounts", ["patient_id"])
    op.create_index("ix_patient_accounts_account_number", "patient_accounts", ["account_number"])
    op.create_index("ix_patient_accounts_deleted_at", "patient_accounts", ["deleted_at"])

    op.create_table(
        "invoices",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _clinic_column(),
        sa.Column("account_id", sa.Integer(), sa.ForeignKey("patient_accounts.id"), nullable=False),
        sa.Column("patient_id", sa.Integer(), sa.ForeignKey("patients.id"), nullable=False),
        sa.Column("invoice_number", sa.String(length=32), nullable=False),
        sa.Column("issue_date", sa.Date(), nullable=True),
        sa.Column("due_date", sa.Date(), nullable=True),
        sa.Column(
            "status",
            sa.Enum("draft", "issued", "part_paid", "paid", "void", name="invoice_status"),
            nullable=False,
            server_default="draft",
        ),
        sa.Column("notes", sa.Text(), nullable=True),
        _pence("subtotal_pence"),
        _pence("discount_pence"),
        _pence("adjustments_pence"),
        _pence("insurance_pence"),
        _pence("patient_amount_pence"),
        _pence("total_pence"),
        _pence("written_off_pence"),
        *_audit_columns(),
        sa.UniqueConstraint("clinic_id", "invoice_number", name="uq_invoices_clinic_number"),
    )
    op.create_index("ix_invoices_clinic_id", "invoices", ["clinic_id"])
    op.create_index("ix_invoices_account_id", "invoices", ["account_id"])
    op.create_index("ix_invoices_patient_id", "invoices", ["patient_id"])
    op.create_index("ix_invoices_invoice_number", "invoices", ["invoice_number"])

    op.create_table(
        "invoice_lines",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("invoice_id", sa.Integer(), sa.ForeignKey("invoices.id"), nullable=False),
        sa.Column("description", sa.String(length=255), nullable=False),
        sa.Column("procedure_code", sa.String(length=20), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        _pence("unit_price_pence"),
        _pence("discount_pence"),
        _pence("insurance_pence"),
        _pence("line_total_pence"),
    )
    op.create_index("ix_invoice_lines_invoice_id", "invoice_lines", ["invoice_id"])

    op.create_table(
        "payments",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _clinic_column(),
        sa.Column("invoice_id", sa.Integer(), sa.ForeignKey("invoices.id"), nullable=False),
        sa.Column("account_id", sa.Integer(), sa.ForeignKey("patient_accounts.id"), nullable=False),
        sa.Column("payment_number", sa.String(length=32), nullable=False),
        sa.Column("amount_pence", sa.Integer(), nullable=False),
        sa.Column(
            "method",
            sa.Enum(
                "cash", "card", "bank_transfer", "insurance", "agency", "other",
                name="payment_method",
            ),
            nullable=False,
        ),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("reference", sa.Text(), nullable=True),
        sa.Column("received_by_user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
    )
    op.create_index("ix_payments_clinic_id", "payments", ["clinic_id"])
    op.create_index("ix_payments_invoice_id", "payments", ["invoice_id"])
    op.create_index("ix_payments_account_id", "payments", ["account_id"])
    op.create_index("ix_payments_payment_number", "payments", ["payment_number"])

    op.create_table(
        "payment_plans",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _clinic_column(),
        sa.Column("account_id", sa.Integer(), sa.ForeignKey("patient_accounts.id"), nullable=False),
        sa.Column("plan_number", sa.String(length=32), nullable=False),
        sa.Column(
            "status",
            sa.Enum("active", "completed", "cancelled", "defaulted", name="payment_plan_status"),
            nullable=False,
            server_default="active",
        ),
        sa.Column("total_pence", sa.Integer(), nullable=False),
        _pence("down_payment_pence"),
        sa.Column("number_of_payments", sa.Integer(), nullable=False),
        sa.Column("financed_pence", sa.Integer(), nullable=False),
        sa.Column("monthly_payment_pence", sa.Integer(), nullable=False),
        sa.Column("remaining_pence", sa.Integer(), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        *_audit_columns(),
    )
    op.create_index("ix_payment_plans_clinic_id", "payment_plans", ["clinic_id"])
    op.create_index("ix_payment_plans_account_id", "payment_plans", ["account_id"])
    op.create_index("ix_payment_plans_plan_number", "payment_plans", ["plan_number"])

    op.create_table(
        "collection_workflows",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _clinic_column(),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("trigger_days", sa.Integer(), nullable=False, server_default="30"),
        _pence("min_balance_pence"),
        sa.Column(
            "patient_type",
            sa.Enum("patient", "insurance", "both", name="collection_patient_type"),
            nullable=False,
            server_default="patient",
        ),
        *_audit_columns(),
        *_soft_delete_columns(),
    )
    op.create_index("ix_collection_workflows_clinic_id", "collection_workflows", ["clinic_id"])
    op.create_index("ix_collection_workflows_deleted_at", "collection_workflows", ["deleted_at"])

    op.create_table(
        "collection_stages",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("workflow_id", sa.Integer(), sa.ForeignKey("collection_workflows.id"), nullable=False),
        sa.Column("stage_number", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("days_from_previous", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("days_overdue", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("escalate_after_days", sa.Integer(), nullable=True),
        sa.Column("actions", sa.JSON(), nullable=False),
        sa.UniqueConstraint("workflow_id", "stage_number", name="uq_collection_stages_workflow_number"),
    )
    op.create_index("ix_collection_stages_workflow_id", "collection_stages", ["workflow_id"])

    op.create_table(
        "account_collections",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _clinic_column(),
        sa.Column("account_id", sa.Integer(), sa.ForeignKey("patient_accounts.id"), nullable=False),
        sa.Column("workflow_id", sa.Integer(), sa.ForeignKey("collection_workflows.id"), nullable=False),
        sa.Column(
            "status",
            sa.Enum(
                "active", "paused", "payment_plan", "settled", "written_off", "agency", "completed",
                name="collection_status",
            ),
            nullable=False,
            server_default="active",
        ),
        sa.Column("current_stage", sa.Integer(), nullable=False, server_default="1"),
        _pence("starting_balance_pence"),
        _pence("current_balance_pence"),
        _pence("paid_amount_pence"),
        _pence("written_off_pence"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("entered_stage_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_action_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("paused_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("pause_reason", sa.String(length=500), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("assigned_to_user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        *_audit_columns(),
    )
    op.create_index("ix_account_collections_clinic_id", "account_collections", ["clinic_id"])
    op.create_index("ix_account_collections_account_id", "account_collections", ["account_id"])
    op.create_index("ix_account_collections_workflow_id", "account_collections", ["workflow_id"])
    op.create_index("ix_account_collections_status", "account_collections", ["status"])

    op.create_table(
        "collection_activities",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _clinic_column(),
        sa.Column(
            "account_collection_id", sa.Integer(), sa.ForeignKey("account_collections.id"), nullable=False
        ),
        sa.Column("account_id", sa.Integer(), sa.ForeignKey("patient_accounts.id"), nullable=False),
        sa.Column(
            "activity_type",
            sa.Enum(
                "workflow_started",
                "stage_advanced",
                "email_sent",
                "sms_sent",
                "letter_sent",
                "phone_call",
                "task_created",
                "payment_received",
                "promise_made",
                "promise_broken",
                "paused",
                "resumed",
                "sent_to_agency",
                "recalled_from_agency",
                "written_off",
                "completed",
                "manual_note",
                name="collection_activity_type",
            ),
            nullable=False,
        ),
        sa.Column("stage_number", sa.Integer(), nullable=True),
        sa.Column("description", sa.String(length=1000), nullable=False),
        sa.Column(
            "channel",
            sa.Enum("email", "sms", "letter", "phone", "portal", name="collection_channel"),
            nullable=True,
        ),
        sa.Column("template_id", sa.String(length=100), nullable=True),
        sa.Column("sent_to", sa.String(length=320), nullable=True),
        sa.Column("result", sa.String(length=500), nullable=True),
        sa.Column("response_received", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        _pence("payment_received_pence", nullable=True),
        sa.Column("performed_by_user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("ix_collection_activities_clinic_id", "collection_activities", ["clinic_id"])
    op.create_index(
        "ix_collection_activities_account_collection_id", "collection_activities", ["account_collection_id"]
    )
    op.create_index("ix_collection_activities_account_id", "collection_activities", ["account_id"])

    op.create_table(
        "payment_promises",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _clinic_column(),
        sa.Column(
            "account_collection_id", sa.Integer(), sa.ForeignKey("account_collections.id"), nullable=False
        ),
        sa.Column("account_id", sa.Integer(), sa.ForeignKey("patient_accounts.id"), nullable=False),
        sa.Column("promised_amount_pence", sa.Integer(), nullable=False),
        sa.Column("promised_date", sa.Date(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "fulfilled", "partial", "broken", "cancelled", name="promise_status"),
            nullable=False,
            server_default="pending",
        ),
        _pence("paid_amount_pence"),
        sa.Column("paid_date", sa.Date(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("broken_reason", sa.String(length=500), nullable=True),
        sa.Column("broken_at", sa.DateTime(timezone=True), nullable=True),
        *_audit_columns(),
    )
    op.create_index("ix_payment_promises_clinic_id", "payment_promises", ["clinic_id"])
    op.create_index("ix_payment_promises_account_collection_id", "payment_promises", ["account_collection_id"])
    op.create_index("ix_payment_promises_account_id", "payment_promises", ["account_id"])
    op.create_index("ix_payment_promises_promised_date", "payment_promises", ["promised_date"])
    op.create_index("ix_payment_promises_status", "payment_promises", ["status"])

    op.create_table(
        "collection_agencies",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _clinic_column(),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("contact_name", sa.String(length=200), nullable=True),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("phone", sa.String(length=50), nullable=True),
        sa.Column("address", sa.Text(), nullable=True),
        sa.Column("export_format", sa.String(length=20), nullable=False, server_default="CSV"),
        sa.Column("fee_percentage", sa.Float(), nullable=False, server_default="0"),
        sa.Column("min_balance_pence", sa.Integer(), nullable=False, server_default="10000"),
        sa.Column("min_days", sa.Integer(), nullable=False, server_default="120"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("notes", sa.Text(), nullable=True),
        *_audit_columns(),
        *_soft_delete_columns(),
    )
    op.create_index("ix_collection_agencies_clinic_id", "collection_agencies", ["clinic_id"])
    op.create_index("ix_collection_agencies_deleted_at", "collection_agencies", ["deleted_at"])

    op.create_table(
        "agency_referrals",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _clinic_column(),
        sa.Column("referral_number", sa.String(length=32), nullable=False),
        sa.Column("agency_id", sa.Integer(), sa.ForeignKey("collection_agencies.id"), nullable=False),
        sa.Column("account_id", sa.Integer(), sa.ForeignKey("patient_accounts.id"), nullable=False),
        sa.Column(
            "account_collection_id", sa.Integer(), sa.ForeignKey("account_collections.id"), nullable=True
        ),
        sa.Column(
            "status",
            sa.Enum(
                "active", "collected", "partial", "returned", "recalled",
                name="agency_referral_status",
            ),
            nullable=False,
            server_default="active",
        ),
        sa.Column("amount_referred_pence", sa.Integer(), nullable=False),
        _pence("amount_collected_pence"),
        _pence("fees_paid_pence"),
        sa.Column("referred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_payment_at", sa.Date(), nullable=True),
        sa.Column("recalled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("recall_reason", sa.String(length=500), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        *_audit_columns(),
    )
    op.create_index("ix_agency_referrals_clinic_id", "agency_referrals", ["clinic_id"])
    op.create_index("ix_agency_referrals_referral_number", "agency_referrals", ["referral_number"])
    op.create_index("ix_agency_referrals_agency_id", "agency_referrals", ["agency_id"])
    op.create_index("ix_agency_referrals_account_id", "agency_referrals", ["account_id"])
    op.create_index("ix_agency_referrals_status", "agency_referrals", ["status"])

    op.create_table(
        "agency_payments",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _clinic_column(),
        sa.Column("referral_id", sa.Integer(), sa.ForeignKey("agency_referrals.id"), nullable=False),
        sa.Column("gross_amount_pence", sa.Integer(), nullable=False),
        _pence("agency_fee_pence"),
        sa.Column("net_amount_pence", sa.Integer(), nullable=False),
        sa.Column("payment_date", sa.Date(), nullable=False),
        sa.Column("agency_reference", sa.String(length=100), nullable=True),
        sa.Column("check_number", sa.String(length=50), nullable=True),
        sa.Column("recorded_by_user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("ix_agency_payments_clinic_id", "agency_payments", ["clinic_id"])
    op.create_index("ix_agency_payments_referral_id", "agency_payments", ["referral_id"])

    op.create_table(
        "write_offs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _clinic_column(),
        sa.Column("write_off_number", sa.String(length=32), nullable=False),
        sa.Column("account_id", sa.Integer(), sa.ForeignKey("patient_accounts.id"), nullable=False),
        sa.Column("invoice_id", sa.Integer(), sa.ForeignKey("invoices.id"), nullable=True),
        sa.Column(
            "account_collection_id", sa.Integer(), sa.ForeignKey("account_collections.id"), nullable=True
        ),
        sa.Column("amount_pence", sa.Integer(), nullable=False),
        sa.Column(
            "reason",
            sa.Enum(
                "bankruptcy",
                "deceased",
                "uncollectible",
                "statute_of_limitations",
                "small_balance",
                "hardship",
                "other",
                name="write_off_reason",
            ),
            nullable=False,
        ),
        sa.Column("reason_details", sa.String(length=1000), nullable=True),
        sa.Column(
            "status",
            sa.Enum(
                "pending",
                "approved",
                "rejected",
                "partially_recovered",
                "fully_recovered",
                name="write_off_status",
            ),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("requested_by_user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("requested_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("approved_by_user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("approval_notes", sa.String(length=1000), nullable=True),
        sa.Column("rejected_by_user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("rejected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejection_reason", sa.String(length=1000), nullable=True),
        _pence("recovered_amount_pence"),
        sa.Column("recovered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("recovery_reference", sa.String(length=100), nullable=True),
    )
    op.create_index("ix_write_offs_clinic_id", "write_offs", ["clinic_id"])
    op.create_index("ix_write_offs_write_off_number", "write_offs", ["write_off_number"])
    op.create_index("ix_write_offs_account_id", "write_offs", ["account_id"])
    op.create_index("ix_write_offs_status", "write_offs", ["status"])

    op.create_table(
        "payment_reminders",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _clinic_column(),
        sa.Column("account_id", sa.Integer(), sa.ForeignKey("patient_accounts.id"), nullable=False),
        sa.Column(
            "reminder_type",
            sa.Enum(
                "upcoming_due",
                "past_due_gentle",
                "past_due_firm",
                "past_due_urgent",
                "final_notice",
                "payment_plan_due",
                "payment_plan_late",
                name="reminder_type",
            ),
            nullable=False,
        ),
        sa.Column(
            "channel",
            postgresql.ENUM(
                "email", "sms", "letter", "phone", "portal", name="collection_channel", create_type=False
            ),
            nullable=False,
        ),
        sa.Column("template_id", sa.String(length=100), nullable=True),
        sa.Column("days_overdue", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("sent_to", sa.String(length=320), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("subject", sa.String(length=200), nullable=True),
        sa.Column("body", sa.Text(), nullable=True),
        sa.Column("include_payment_link", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("payment_received", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("sent_by_user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
    )
    op.create_index("ix_payment_reminders_clinic_id", "payment_reminders", ["clinic_id"])
    op.create_index("ix_payment_reminders_account_id", "payment_reminders", ["account_id"])

    op.create_table(
        "portal_accounts",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _clinic_column(),
        sa.Column("patient_id", sa.Integer(), sa.ForeignKey("patients.id"), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("password_hash", sa.String(length=255), nullable=True),
        sa.Column(
            "status",
            sa.Enum("pending", "active", "locked", "deactivated", name="portal_account_status"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("email_verified", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("email_verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("verification_token_hash", sa.String(length=64), nullable=True),
        sa.Column("verification_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("magic_link_token_hash", sa.String(length=64), nullable=True),
        sa.Column("magic_link_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reset_token_hash", sa.String(length=64), nullable=True),
        sa.Column("reset_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_login_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("locked_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_login_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_login_ip", sa.String(length=64), nullable=True),
        sa.Column("last_login_user_agent", sa.String(length=500), nullable=True),
        sa.Column("terms_accepted_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        *_soft_delete_columns(),
        sa.UniqueConstraint("clinic_id", "email", name="uq_portal_accounts_clinic_email"),
    )
    op.create_index("ix_portal_accounts_clinic_id", "portal_accounts", ["clinic_id"])
    op.create_index("ix_portal_accounts_patient_id", "portal_accounts", ["patient_id"])
    op.create_index("ix_portal_accounts_email", "portal_accounts", ["email"])
    op.create_index("ix_portal_accounts_deleted_at", "portal_accounts", ["deleted_at"])

    op.create_table(
        "portal_sessions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("portal_account_id", sa.Integer(), sa.ForeignKey("portal_accounts.id"), nullable=False),
        sa.Column("token_hash", sa.String(length=64), nullable=False),
        sa.Column("user_agent", sa.String(length=500), nullable=True),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
        sa.Column("device_type", sa.String(length=20), nullable=False, server_default="desktop"),
        sa.Column("device_name", sa.String(length=100), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_reason", sa.String(length=100), nullable=True),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.UniqueConstraint("token_hash"),
    )
    op.create_index("ix_portal_sessions_portal_account_id", "portal_sessions", ["portal_account_id"])
    op.create_index("ix_portal_sessions_token_hash", "portal_sessions", ["token_hash"])

    op.create_table(
        "portal_activity_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("portal_account_id", sa.Integer(), sa.ForeignKey("portal_accounts.id"), nullable=False),
        sa.Column(
            "activity_type",
            sa.Enum(
                "login",
                "login_failed",
                "logout",
                "password_reset",
                "profile_updated",
                "email_verified",
                name="portal_activity_type",
            ),
            nullable=False,
        ),
        sa.Column("description", sa.String(length=500), nullable=True),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
        sa.Column("user_agent", sa.String(length=500), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("ix_portal_activity_logs_portal_account_id", "portal_activity_logs", ["portal_account_id"])


TABLES = (
    "portal_activity_logs",
    "portal_sessions",
    "portal_accounts",
    "payment_reminders",
    "write_offs",
    "agency_payments",
    "agency_referrals",
    "collection_agencies",
    "payment_promises",
    "collection_activities",
    "account_collections",
    "collection_stages",
    "collection_workflows",
    "payment_plans",
    "payments",
    "invoice_lines",
    "invoices",
    "patient_accounts",
    "patients",
    "audit_logs",
    "user_capabilities",
    "capabilities",
    "users",
    "clinics",
)

ENUMS = (
    "portal_activity_type",
    "portal_account_status",
    "reminder_type",
    "write_off_status",
    "write_off_reason",
    "agency_referral_status",
    "promise_status",
    "collection_channel",
    "collection_activity_type",
    "collection_status",
    "collection_patient_type",
    "payment_plan_status",
    "payment_method",
    "invoice_status",
    "account_status",
    "role_enum",
)


def downgrade() -> None:
    for table in TABLES:
        op.drop_table(table)
    bind = op.get_bind()
    for enum_name in ENUMS:
        sa.Enum(name=enum_name).drop(bind, checkfirst=True)
