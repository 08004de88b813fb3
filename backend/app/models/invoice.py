from __future__ import annotations

import enum
from datetime import date, datetime

from sqlalchemy import Date, DateTime, Enum, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import AuditMixin, Base, ClinicScopedMixin


class InvoiceStatus(str, enum.Enum):
    draft = "draft"
    issued = "issued"
    part_paid = "part_paid"
    paid = "paid"
    void = "void"


class PaymentMethod(str, enum.Enum):
    cash = "cash"
    card = "card"
    bank_transfer = "bank_transfer"
    insurance = "insurance"
    agency = "agency"
    other = "other"


class Invoice(Base, ClinicScopedMixin, AuditMixin):
    __tablename__ = "invoices"
    __table_args__ = (
        UniqueConstraint("clinic_id", "invoice_number", name="uq_invoices_clinic_number"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    account_id: Mapped[int] = mapped_column(
        ForeignKey("patient_accounts.id"), nullable=False, index=True
    )
    patient_id: Mapped[int] = mapped_column(ForeignKey("patients.id"), nullable=False, index=True)
    invoice_number: Mapped[str] = mapped_column(String(32), index=True)
    issue_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    status: Mapped[InvoiceStatus] = mapped_column(
        Enum(InvoiceStatus, name="invoice_status"),
        nullable=False,
        default=InvoiceStatus.draft,
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    subtotal_pence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    discount_pence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    adjustments_pence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    insurance_pence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    patient_amount_pence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_pence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    written_off_pence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    account = relationship("PatientAccount", back_populates="invoices")
    patient = relationship("Patient", lazy="joined")
    lines = relationship(
        "InvoiceLine", back_populates="invoice", cascade="all, delete-orphan", lazy="selectin"
    )
    payments = relationship(
        "Payment", back_populates="invoice", cascade="all, delete-orphan", lazy="selectin"
    )

    @property
    def paid_pence(self) -> int:
        return sum(payment.amount_pence for payment in self.payments or [])

    @property
    def balance_pence(self) -> int:
        return max(self.patient_amount_pence - self.paid_pence - self.written_off_pence, 0)

    @property
    def credit_pence(self) -> int:
        return max(self.paid_pence + self.written_off_pence - self.patient_amount_pence, 0)


class InvoiceLine(Base):
    __tablename__ = "invoice_lines"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    invoice_id: Mapped[int] = mapped_column(ForeignKey("invoices.id"), nullable=False, index=True)
    description: Mapped[str] = mapped_column(String(255), nullable=False)
    procedure_code: Mapped[str | None] = mapped_column(String(20), nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    unit_price_pence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    discount_pence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    insurance_pence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    line_total_pence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    invoice = relationship("Invoice", back_populates="lines")


class Payment(Base, ClinicScopedMixin):
    __tablename__ = "payments"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    invoice_id: Mapped[int] = mapped_column(ForeignKey("invoices.id"), nullable=False, index=True)
    account_id: Mapped[int] = mapped_column(
        ForeignKey("patient_accounts.id"), nullable=False, index=True
    )
    payment_number: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    amount_pence: Mapped[int] = mapped_column(Integer, nullable=False)
    method: Mapped[PaymentMethod] = mapped_column(
        Enum(PaymentMethod, name="payment_method"), nullable=False
    )
    paid_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    reference: Mapped[str | None] = mapped_column(Text, nullable=True)
    received_by_user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)

    invoice = relationship("Invoice", back_populates="payments")
