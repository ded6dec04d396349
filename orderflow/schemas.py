from uuid import UUID
from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime
from typing import Literal, Optional

from orderflow.models import OrderStatus

class OrderCreate(BaseModel):
    item_id: str = Field(..., min_length=1)
    # Smallest currency unit; what the buyer was charged after any coupon
    amount: int = Field(..., gt=0, description="Expected amount in the smallest currency unit, must be > 0")
    pay_method: str = Field(..., min_length=1)
    tx_id: str = Field(..., min_length=1, description="Gateway transaction id reported by the client")
    merchant_ref: str = Field(..., min_length=1, description="Merchant reference sent to the gateway")
    provider: Optional[str] = None
    coupon_ref: Optional[str] = None

class PaymentWebhook(BaseModel):
    tx_id: str = Field(..., min_length=1)
    merchant_ref: Optional[str] = None
    status: Optional[str] = None

class RefundRequest(BaseModel):
    order_id: UUID
    refund_amount: int = Field(..., gt=0)
    refund_reason: str = Field(..., min_length=1)

class OrderDetail(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    merchant_ref: str
    buyer_id: str
    item_id: str
    expected_amount: int
    coupon_ref: Optional[str] = None
    discount_applied: int = 0
    status: OrderStatus
    tx_id: Optional[str] = None
    pay_method: Optional[str] = None
    provider: Optional[str] = None
    refund_amount: Optional[int] = None
    refund_reason: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    webhook_verified_at: datetime | None = None
    refunded_at: datetime | None = None

class LedgerEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    order_id: UUID
    account: Literal["CASH", "REVENUE"]
    debit_cents: int
    credit_cents: int

class LedgerSummaryOut(BaseModel):
    order_id: UUID
    total_debits: int
    total_credits: int
