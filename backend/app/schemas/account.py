from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from app.models.account import AccountStatus
from app.models.invoice import PaymentMethod
from app.schemas.invoice import PaymentOut


class AccountCreate(BaseModel):
    patient_id: int


class AccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    clinic_id: int
    patient_id: int
    account_number: str
    status: AccountStatus
    current_balance_pence: int
    patient_balance_pence: int
    insurance_balance_pence: int
    credit_balance_pence: int
    aging_current_pence: int
    aging_1_30_pence: int
    aging_31_60_pence: int
    aging_61_90_pence: int
    aging_91_120_pence: int
    aging_120_plus_pence: int
    days_overdue: int
    balance_updated_at: Optional[datetime] = None
    created_at: datetime


class AccountPaymentCreate(BaseModel):
    amount_pence: int = Field(ge=1)
    method: PaymentMethod
    paid_at: Optional[datetime] = None
    reference: Optional[str] = Field(default=None, max_length=200)


class AccountPaymentResult(BaseModel):
    account: AccountOut
    payments: list[PaymentOut]


class RecalculateAllOut(BaseModel):
    accounts: int
    changed: int


class AgencyEligibilityOut(BaseModel):
    eligible: bool
    reason: Optional[str] = None
    days_overdue: int
    balance_pence: int
