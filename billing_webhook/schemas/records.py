"""
Request bodies for the development /test/* endpoints. They mirror the table
columns so a row can be written without going through a signed event.
"""
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field


class _RecordIn(BaseModel):
    metadata: Optional[Dict[str, Any]] = None

    def to_record(self) -> dict[str, Any]:
        # Only what the caller sent, so upserts stay partial
        return self.model_dump(exclude_unset=True)


class TransactionIn(_RecordIn):
    user_id: Optional[str] = None
    order_id: str = Field(..., max_length=255)
    payment_id: Optional[str] = Field(None, max_length=255)
    payment_method: str = "card"
    amount_paid: Decimal
    bnpl_status: Literal["success", "failed"] = "success"
    user_email: Optional[str] = None

    def to_record(self) -> dict[str, Any]:
        record = super().to_record()
        record.setdefault("payment_method", self.payment_method)
        record.setdefault("bnpl_status", self.bnpl_status)
        return record


class SubscriptionIn(_RecordIn):
    subscription_id: str = Field(..., max_length=255)
    user_id: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    status: Optional[str] = None
    start_date: Optional[date] = None
    next_billing_date: Optional[date] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    user_email: Optional[str] = None


class InsuranceLogIn(_RecordIn):
    nft_id: str = Field(..., max_length=255)
    user_id: Optional[str] = None
    event_type: str = Field(..., max_length=50)
    amount: Optional[Decimal] = None
