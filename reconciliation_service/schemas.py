import enum
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from reconciliation_service.models import RefundStatus


class Outcome(enum.Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    NOT_FOUND = "not_found"
    STALE = "stale"
    IGNORED = "ignored"


class WebhookAck(BaseModel):
    success: bool = True
    event: str
    outcome: Outcome
    message: str = "Webhook processed successfully"


class RefundCreate(BaseModel):
    return_request_id: str = Field(..., example="ret-123")
    payment_id: str = Field(..., example="pay_29QQoUBi66xm2f")
    amount: float = Field(..., gt=0.0, example=499.0)
    notes: Dict[str, str] = Field(default_factory=dict)
    initiated_by: Optional[str] = None


class RefundResult(BaseModel):
    success: bool = True
    refund_id: str
    transaction_number: Optional[str] = None
    status: RefundStatus
    persisted: bool = True
    message: Optional[str] = None


class RefundStatusRead(BaseModel):
    return_request_id: str
    status: RefundStatus
    refund_id: Optional[str] = None
    amount: Optional[float] = None
    created_at: Optional[datetime] = None


class RefundTransactionRead(BaseModel):
    id: str
    transaction_number: str
    return_request_id: str
    order_id: str
    razorpay_payment_id: str
    razorpay_refund_id: Optional[str] = None
    refund_amount: float
    original_amount: float
    deduction_amount: float
    status: RefundStatus
    failure_reason: Optional[str] = None
    retry_of_id: Optional[str] = None
    initiated_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class RefundTransactionList(BaseModel):
    return_request_id: str
    transactions: List[RefundTransactionRead]


class PaymentVerification(BaseModel):
    order_id: str
    razorpay_order_id: str
    razorpay_payment_id: str
    razorpay_signature: str


class PaymentVerificationResult(BaseModel):
    verified: bool
    order_id: str
    outcome: Outcome
