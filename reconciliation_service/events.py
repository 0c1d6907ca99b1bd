"""
Classification of verified Razorpay webhook bodies.

The gateway sends one envelope shape for every event::

    {"entity": "event", "event": "payment.captured",
     "payload": {"payment": {"entity": {...}}, "order": {"entity": {...}}}}

``classify_event`` turns that into exactly one of the typed variants below,
keyed by the ``event`` field. Anything not modelled becomes ``UnhandledEvent``
so it can be acknowledged without being retried forever.
"""
import json
import logging
from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field, ValidationError, field_validator

from reconciliation_service.errors import MalformedEventError

logger = logging.getLogger(__name__)

PAYMENT_CAPTURED = "payment.captured"
PAYMENT_FAILED = "payment.failed"
ORDER_PAID = "order.paid"
REFUND_EVENTS = ("refund.created", "refund.processed", "refund.failed")


class PaymentEntity(BaseModel):
    id: str
    order_id: str
    amount: int = Field(..., ge=0)  # minor units (paise)
    currency: str = "INR"
    status: Optional[str] = None
    method: Optional[str] = None
    error_code: Optional[str] = None
    error_description: Optional[str] = None

    class Config:
        extra = "allow"


class OrderEntity(BaseModel):
    id: str
    amount: Optional[int] = None
    amount_paid: Optional[int] = None
    status: Optional[str] = None
    receipt: Optional[str] = None

    class Config:
        extra = "allow"


class RefundEntity(BaseModel):
    id: str
    payment_id: str
    amount: int = Field(..., ge=0)
    currency: str = "INR"
    status: str
    notes: Dict[str, str] = Field(default_factory=dict)
    speed_processed: Optional[str] = None
    speed_requested: Optional[str] = None

    @field_validator("notes", mode="before")
    @classmethod
    def normalize_notes(cls, v: Any) -> Dict[str, str]:
        # Razorpay serializes an empty notes map as []
        if v is None or v == []:
            return {}
        if isinstance(v, dict):
            return {str(key): "" if value is None else str(value) for key, value in v.items()}
        return v

    @property
    def return_request_id(self) -> Optional[str]:
        return self.notes.get("return_request_id") or None

    class Config:
        extra = "allow"


class PaymentCaptured(BaseModel):
    kind: Literal["payment_captured"] = "payment_captured"
    event: str
    payment: PaymentEntity


class PaymentFailed(BaseModel):
    kind: Literal["payment_failed"] = "payment_failed"
    event: str
    payment: PaymentEntity


class OrderPaid(BaseModel):
    kind: Literal["order_paid"] = "order_paid"
    event: str
    order: OrderEntity
    payment: Optional[PaymentEntity] = None


class RefundUpdated(BaseModel):
    kind: Literal["refund_updated"] = "refund_updated"
    event: str
    refund: RefundEntity


class UnhandledEvent(BaseModel):
    kind: Literal["unhandled"] = "unhandled"
    event: str


WebhookEvent = Union[PaymentCaptured, PaymentFailed, OrderPaid, RefundUpdated, UnhandledEvent]


def _entity(payload: Dict[str, Any], name: str) -> Optional[Dict[str, Any]]:
    wrapper = payload.get(name)
    if not isinstance(wrapper, dict):
        return None
    entity = wrapper.get("entity")
    return entity if isinstance(entity, dict) else None


def _require(payload: Dict[str, Any], name: str, event_name: str) -> Dict[str, Any]:
    entity = _entity(payload, name)
    if entity is None:
        raise MalformedEventError(f"Event {event_name} is missing the {name} entity")
    return entity


def classify_event(body: bytes) -> WebhookEvent:
    try:
        envelope = json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedEventError(f"Webhook body is not valid JSON: {e}")

    if not isinstance(envelope, dict):
        raise MalformedEventError("Webhook body must be a JSON object")

    event_name = envelope.get("event")
    if not isinstance(event_name, str) or not event_name:
        raise MalformedEventError("Webhook body has no event field")

    payload = envelope.get("payload") or {}
    if not isinstance(payload, dict):
        raise MalformedEventError("Webhook payload must be a JSON object")

    try:
        if event_name == PAYMENT_CAPTURED:
            return PaymentCaptured(event=event_name, payment=_require(payload, "payment", event_name))
        if event_name == PAYMENT_FAILED:
            return PaymentFailed(event=event_name, payment=_require(payload, "payment", event_name))
        if event_name == ORDER_PAID:
            return OrderPaid(
                event=event_name,
                order=_require(payload, "order", event_name),
                payment=_entity(payload, "payment"),
            )
        if event_name in REFUND_EVENTS:
            return RefundUpdated(event=event_name, refund=_require(payload, "refund", event_name))
    except ValidationError as e:
        raise MalformedEventError(f"Event {event_name} has invalid fields: {e.errors()}")

    logger.info("Unhandled webhook event: %s", event_name)
    return UnhandledEvent(event=event_name)
