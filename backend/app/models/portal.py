from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Enum, ForeignKey, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import Base, ClinicScopedMixin, SoftDeleteMixin


class PortalAccountStatus(str, enum.Enum):
    pending = "pending"
    active = "active"
    locked = "locked"
    deactivated = "deactivated"


class PortalActivityType(str, enum.Enum):
    login = "login"
    login_failed = "login_failed"
    logout = "logout"
    password_reset = "password_reset"
    profile_updated = "profile_updated"
    email_verified = "email_verified"


class PortalAccount(Base, ClinicScopedMixin, SoftDeleteMixin):
    __tablename__ = "portal_accounts"
    __table_args__ = (
        UniqueConstraint("clinic_id", "email", name="uq_portal_accounts_clinic_email"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    patient_id: Mapped[int] = mapped_column(ForeignKey("patients.id"), nullable=False, index=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False, index=True)
    password_hash: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[PortalAccountStatus] = mapped_column(
        Enum(PortalAccountStatus, name="portal_account_status"),
        nullable=False,
        default=PortalAccountStatus.pending,
    )
    email_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    email_verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    verification_token_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    verification_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    magic_link_token_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    magic_link_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    reset_token_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    reset_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_login_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    locked_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_login_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_login_ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    last_login_user_agent: Mapped[str | None] = mapped_column(String(500), nullable=True)
    terms_accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    patient = relationship("Patient", lazy="joined")
    clinic = relationship("Clinic", lazy="joined")


class PortalSession(Base):
    __tablename__ = "portal_sessions"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    portal_account_id: Mapped[int] = mapped_column(
        ForeignKey("portal_accounts.id"), nullable=False, index=True
    )
    token_hash: Mapped[str] = mapped_column(String(64), unique=True, index=True, nullable=False)
    user_agent: Mapped[str | None] = mapped_column(String(500), nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    device_type: Mapped[str] = mapped_column(String(20), nullable=False, default="desktop")
    device_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    revoked_reason: Mapped[str | None] = mapped_column(String(100), nullable=True)
    last_activity_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    portal_account = relationship("PortalAccount", lazy="joined")


class PortalActivityLog(Base):
    __tablename__ = "portal_activity_logs"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    portal_account_id: Mapped[int] = mapped_column(
        ForeignKey("portal_accounts.id"), nullable=False, index=True
    )
    activity_type: Mapped[PortalActivityType] = mapped_column(
        Enum(PortalActivityType, name="portal_activity_type"), nullable=False
    )
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
