import logging
from datetime import datetime
from typing import Any, Dict, Optional

from reconciliation_service.errors import InvalidTransitionError
from reconciliation_service.models import Order, PaymentStatus

logger = logging.getLogger(__name__)

DEFAULT_PAYMENT_ERROR = "Payment failed"

ALLOWED_TRANSITIONS = {
    PaymentStatus.PENDING: {PaymentStatus.PAID, PaymentStatus.FAILED},
    PaymentStatus.FAILED: {PaymentStatus.PAID, PaymentStatus.FAILED},
    PaymentStatus.PAID: {PaymentStatus.REFUND_INITIATED},
    # a failed refund puts the order back to paid so it can be refunded again
    PaymentStatus.REFUND_INITIATED: {PaymentStatus.REFUND_COMPLETED, PaymentStatus.PAID},
    PaymentStatus.REFUND_COMPLETED: set(),
}


def can_transition(current: PaymentStatus, target: PaymentStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, set())


def transition(order: Order, target: PaymentStatus):
    current = order.payment_status or PaymentStatus.PENDING
    if not can_transition(current, target):
        raise InvalidTransitionError(
            f"Order {order.id} cannot move from {current.value} to {target.value}"
        )
    order.payment_status = target
    order.updated_at = datetime.utcnow()
    logger.info("Order %s payment status %s -> %s", order.id, current.value, target.value)


def is_settled(order: Order) -> bool:
    """True once a payment has been applied, including any refund stage after it."""
    return order.payment_status in (
        PaymentStatus.PAID,
        PaymentStatus.REFUND_INITIATED,
        PaymentStatus.REFUND_COMPLETED,
    )


def mark_paid(order: Order, payment_id: str, details: Optional[Dict[str, Any]] = None):
    if order.razorpay_payment_id and order.razorpay_payment_id != payment_id:
        raise InvalidTransitionError(
            f"Order {order.id} already bound to payment {order.razorpay_payment_id}"
        )
    transition(order, PaymentStatus.PAID)
    order.razorpay_payment_id = payment_id
    order.payment_error = None
    if details is not None:
        order.payment_details = details


def mark_failed(order: Order, error: Optional[str], details: Optional[Dict[str, Any]] = None):
    transition(order, PaymentStatus.FAILED)
    order.payment_error = error or DEFAULT_PAYMENT_ERROR
    if details is not None:
        order.payment_details = details


def mark_refund_initiated(order: Order):
    transition(order, PaymentStatus.REFUND_INITIATED)


def mark_refund_completed(order: Order):
    transition(order, PaymentStatus.REFUND_COMPLETED)


def revert_refund(order: Order):
    transition(order, PaymentStatus.PAID)
