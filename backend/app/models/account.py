from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import DateTime, Enum, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import AuditMixin, Base, ClinicScopedMixin, SoftDeleteMixin


class AccountStatus(str, enum.Enum):
    active = "active"
    collections = "collections"
    closed = "closed"


class PatientAccount(Base, ClinicScopedMixin, AuditMixin, SoftDeleteMixin):
    __tablename__ = "patient_accounts"
    __table_args__ = (
        UniqueConstraint("clinic_id", "account_number", name="uq_patient_accounts_clinic_number"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    patient_id: Mapped[int] = mapped_column(ForeignKey("patients.id"), nullable=False, index=True)
    account_number: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    status: Mapped[AccountStatus] = mapped_column(
        Enum(AccountStatus, name="account_status"), nullable=False, default=AccountStatus.active
    )
    current_balance_pence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    patient_balance_pence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    insurance_balance_pence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    credit_balance_pence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    aging_current_pence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    aging_1_30_pence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    aging_31_60_pence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    aging_61_90_pence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    aging_91_120_pence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    aging_120_plus_pence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    days_overdue: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    balance_updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    patient = relationship("Patient", back_populates="accounts", lazy="joined")
    invoices = relationship("Invoice", back_populates="account", lazy="selectin")
