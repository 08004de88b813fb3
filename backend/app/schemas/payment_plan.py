from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from app.models.payment_plan import PaymentPlanStatus


class PaymentPlanCreate(BaseModel):
    account_id: int
    total_pence: int = Field(ge=1)
    down_payment_pence: int = Field(default=0, ge=0)
    number_of_payments: int = Field(ge=1, le=120)
    start_date: date
    notes: Optional[str] = Field(default=None, max_length=1000)

    @model_validator(mode="after")
    def _down_payment_within_total(self):
        if self.down_payment_pence > self.total_pence:
            raise ValueError("down_payment_pence cannot exceed total_pence")
        return self


class PaymentPlanCancel(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class PaymentPlanOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_id: int
    plan_number: str
    status: PaymentPlanStatus
    total_pence: int
    down_payment_pence: int
    number_of_payments: int
    financed_pence: int
    monthly_payment_pence: int
    remaining_pence: int
    start_date: date
    notes: Optional[str] = None
    created_at: datetime
