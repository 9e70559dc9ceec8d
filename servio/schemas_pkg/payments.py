from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class CreateOrderRequest(BaseModel):
    booking_id: int
    amount: Decimal            # major units, e.g. rupees
    notes: Optional[Dict[str, Any]] = None


class VerifyPaymentRequest(BaseModel):
    gateway_order_id: str = Field(..., min_length=1)
    gateway_payment_id: str = Field(..., min_length=1)
    gateway_signature: str = Field(..., min_length=1)


class RefundRequest(BaseModel):
    amount: Optional[Decimal] = None   # defaults to the full remaining amount
    notes: Optional[Dict[str, Any]] = None


class RefundLineOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    refund_id: str
    amount: float
    status: str
    created_at: Optional[datetime] = None


class PaymentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    booking_id: int
    user_id: int
    amount: float
    currency: str
    status: str

    gateway_order_id: str
    gateway_payment_id: Optional[str] = None
    payment_method: Optional[str] = None
    payment_details: Optional[Dict[str, Any]] = None
    receipt_id: Optional[str] = None
    notes: Optional[Dict[str, Any]] = None

    refund_id: Optional[str] = None
    refund_amount: float = 0
    refund_status: str
    refunds: List[RefundLineOut] = []

    error_code: Optional[str] = None
    error_description: Optional[str] = None

    captured_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    version: int


class CreateOrderResponse(BaseModel):
    payment_id: int
    order: Dict[str, Any]
    key_id: Optional[str] = None
    amount: float
    currency: str


class VerifyPaymentResponse(BaseModel):
    verified: bool
    payment: PaymentOut


class RefundResponse(BaseModel):
    refund: Dict[str, Any]
    payment: PaymentOut
