from __future__ import annotations

import enum
from datetime import date

from sqlalchemy import Date, Enum, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import AuditMixin, Base, ClinicScopedMixin


class PaymentPlanStatus(str, enum.Enum):
    active = "active"
    completed = "completed"
    cancelled = "cancelled"
    defaulted = "defaulted"


class PaymentPlan(Base, ClinicScopedMixin, AuditMixin):
    __tablename__ = "payment_plans"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    account_id: Mapped[int] = mapped_column(
        ForeignKey("patient_accounts.id"), nullable=False, index=True
    )
    plan_number: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    status: Mapped[PaymentPlanStatus] = mapped_column(
        Enum(PaymentPlanStatus, name="payment_plan_status"),
        nullable=False,
        default=PaymentPlanStatus.active,
    )
    total_pence: Mapped[int] = mapped_column(Integer, nullable=False)
    down_payment_pence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    number_of_payments: Mapped[int] = mapped_column(Integer, nullable=False)
    financed_pence: Mapped[int] = mapped_column(Integer, nullable=False)
    monthly_payment_pence: Mapped[int] = mapped_column(Integer, nullable=False)
    remaining_pence: Mapped[int] = mapped_column(Integer, nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    account = relationship("PatientAccount", lazy="joined")
