from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from app.models.portal import PortalAccountStatus


class PortalMagicLinkRequest(BaseModel):
    email: EmailStr
    clinic_slug: str = Field(min_length=1, max_length=80)


class PortalTokenRequest(BaseModel):
    token: str = Field(min_length=20)


class PortalRegisterRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=8, max_length=72)
    clinic_slug: str = Field(min_length=1, max_length=80)


class PortalLoginRequest(BaseModel):
    email: EmailStr
    password: str
    clinic_slug: str = Field(min_length=1, max_length=80)


class PortalResetRequest(BaseModel):
    email: EmailStr
    clinic_slug: str = Field(min_length=1, max_length=80)


class PortalResetConfirm(BaseModel):
    token: str = Field(min_length=20)
    new_password: str = Field(min_length=8, max_length=72)


class PortalMessage(BaseModel):
    message: str
    token: Optional[str] = None


class PortalAccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    clinic_id: int
    patient_id: int
    email: str
    status: PortalAccountStatus
    email_verified: bool
    last_login_at: Optional[datetime] = None


class PortalSessionOut(BaseModel):
    session_token: str
    expires_at: datetime
    account: PortalAccountOut
    patient_name: str


class PortalMeOut(BaseModel):
    account: PortalAccountOut
    patient_name: str
    clinic_name: str
    phone: Optional[str] = None
    address_line1: Optional[str] = None
    address_line2: Optional[str] = None
    city: Optional[str] = None
    postcode: Optional[str] = None


class PortalProfileUpdate(BaseModel):
    phone: Optional[str] = Field(default=None, max_length=50)
    address_line1: Optional[str] = Field(default=None, max_length=200)
    address_line2: Optional[str] = Field(default=None, max_length=200)
    city: Optional[str] = Field(default=None, max_length=100)
    postcode: Optional[str] = Field(default=None, max_length=20)


class PortalInvoiceOut(BaseModel):
    id: int
    invoice_number: str
    issue_date: Optional[date] = None
    due_date: Optional[date] = None
    total_pence: int
    balance_pence: int


class PortalPromiseOut(BaseModel):
    id: int
    promised_amount_pence: int
    promised_date: date


class PortalBillingOut(BaseModel):
    account_number: Optional[str] = None
    current_balance_pence: int
    days_overdue: int
    aging: dict[str, int]
    open_invoices: list[PortalInvoiceOut]
    pending_promises: list[PortalPromiseOut]
