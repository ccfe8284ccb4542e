from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class CreatePaymentRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    # Kept as sent: the signer may have used a JSON number
    order_id: Union[int, str]
    payment_method: str
    idempotency_key: Optional[str] = None
    session: Optional[str] = None
    amount: Optional[Decimal] = Field(default=None, ge=0)
    currency: Optional[str] = None
    customer_data: Optional[Dict[str, Any]] = None
    description: Optional[str] = None


class CancelPaymentRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    payment_method: str
    timestamp: str
    reason: Optional[str] = None
    force: bool = False
    cancelled_by: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class UpdateStatusRequest(BaseModel):
    status: Literal["completed", "failed", "cancelled"]
    transaction_id: Optional[str] = None
    gateway_response: Optional[Dict[str, Any]] = None


class PaypalOrderRequest(BaseModel):
    payment_id: str


class PaypalCaptureRequest(BaseModel):
    payment_id: str
    paypal_order_id: str


class PaymentResponse(BaseModel):
    payment_id: str
    session_id: str
    idempotency_key: str
    payment_url: Optional[str] = None
    qr_code_url: Optional[str] = None
    expires_at: datetime
    status: str


class PaymentStatusResponse(BaseModel):
    payment_id: str
    session_id: str
    order_id: str
    status: str
    amount: Decimal
    currency: str
    transaction_id: Optional[str] = None
    gateway_response: Optional[Dict[str, Any]] = None
    completed_at: Optional[datetime] = None
    expires_at: datetime
