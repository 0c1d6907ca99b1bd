import logging
from typing import Any, Dict, Optional

import httpx
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from reconciliation_service.config import Settings
from reconciliation_service.errors import (
    ConfigurationError,
    InvalidSignatureError,
    InvalidTransitionError,
    OrderNotFoundError,
    StorageUnavailableError,
)
from reconciliation_service.events import (
    OrderPaid,
    PaymentCaptured,
    PaymentFailed,
    RefundUpdated,
    UnhandledEvent,
    WebhookEvent,
    classify_event,
)
from reconciliation_service.idempotency import (
    CaptureDecision,
    check_capture,
    find_order_by_gateway_order_id,
)
from reconciliation_service.gateway import GatewayError, RazorpayClient
from reconciliation_service.inventory import LedgerReport, decrement_inventory_for_order
from reconciliation_service.messaging import (
    INVENTORY_EXCHANGE,
    PAYMENT_EXCHANGE,
    build_event,
    publish_event,
)
from reconciliation_service.models import Order, PaymentStatus
from reconciliation_service.orders import mark_failed, mark_paid
from reconciliation_service.refunds import apply_refund_update
from reconciliation_service.schemas import (
    Outcome,
    PaymentVerification,
    PaymentVerificationResult,
    WebhookAck,
)
from reconciliation_service.signature import verify_payment_signature, verify_webhook

logger = logging.getLogger(__name__)


async def _rollback(session: AsyncSession):
    try:
        await session.rollback()
    except SQLAlchemyError as e:
        logger.error("Rollback failed: %s", e)


async def publish_reconciliation_alert(order_id: str, payment_id: str, report: LedgerReport):
    await publish_event(INVENTORY_EXCHANGE, "inventory.reconciliation_required", build_event(
        "InventoryReconciliationRequired",
        order_id=order_id,
        payment_id=payment_id,
        truncated=report.truncated,
        failed_items=[item.model_dump() for item in report.failed],
    ))


async def apply_captured_payment(
    session: AsyncSession,
    gateway_order_id: str,
    payment_id: str,
    details: Optional[Dict[str, Any]],
    settings: Settings,
) -> Outcome:
    """
    Move an order to paid and take its line items out of stock, at most once
    per payment id.

    The paid write and every inventory decrement commit together; a line item
    that fails is rolled back to its own savepoint and reported instead.
    """
    decision, order = await check_capture(session, payment_id, gateway_order_id)
    if decision == CaptureDecision.DUPLICATE:
        await _rollback(session)
        return Outcome.DUPLICATE
    if decision == CaptureDecision.NOT_FOUND:
        await _rollback(session)
        return Outcome.NOT_FOUND

    try:
        mark_paid(order, payment_id, details)
    except InvalidTransitionError as e:
        logger.warning("Payment %s not applied: %s", payment_id, e)
        await _rollback(session)
        return Outcome.DUPLICATE

    try:
        session.add(order)
        await session.flush()
    except IntegrityError:
        # another delivery bound this payment id first
        await _rollback(session)
        logger.warning(
            "Duplicate payment %s rejected by unique constraint", payment_id,
            extra={"payment_id": payment_id, "order_id": order.id},
        )
        return Outcome.DUPLICATE
    except SQLAlchemyError as e:
        await _rollback(session)
        raise StorageUnavailableError(f"Failed to mark order {order.id} paid: {e}")

    reason = f"Order {order.order_number or order.id} - payment {payment_id} captured"
    try:
        report = await decrement_inventory_for_order(session, order, reason, settings.max_line_items)
    except StorageUnavailableError:
        await _rollback(session)
        raise

    try:
        await session.commit()
    except IntegrityError:
        await _rollback(session)
        logger.warning("Duplicate payment %s rejected at commit", payment_id)
        return Outcome.DUPLICATE
    except SQLAlchemyError as e:
        await _rollback(session)
        raise StorageUnavailableError(f"Failed to commit payment {payment_id}: {e}")

    logger.info(
        "Order %s marked paid with payment %s (%s decremented, %s skipped, %s failed)",
        order.id, payment_id, len(report.decremented), len(report.skipped), len(report.failed),
    )
    if report.needs_reconciliation:
        await publish_reconciliation_alert(order.id, payment_id, report)
    await publish_event(PAYMENT_EXCHANGE, "payment.reconciled", build_event(
        "PaymentReconciled",
        order_id=order.id,
        payment_id=payment_id,
        total_amount=order.total_amount,
    ))
    return Outcome.APPLIED


async def process_payment_captured(session: AsyncSession, event: PaymentCaptured, settings: Settings) -> Outcome:
    payment = event.payment
    logger.info("Processing payment.captured event: %s", payment.id)
    return await apply_captured_payment(session, payment.order_id, payment.id, payment.model_dump(), settings)


async def process_order_paid(session: AsyncSession, event: OrderPaid, settings: Settings) -> Outcome:
    logger.info("Processing order.paid event: %s", event.order.id)
    if event.payment is None:
        # without a payment id there is nothing to bind; payment.captured carries it
        logger.warning("order.paid for %s has no payment entity, ignoring", event.order.id)
        return Outcome.IGNORED
    details = {"order": event.order.model_dump(), "payment": event.payment.model_dump()}
    return await apply_captured_payment(session, event.order.id, event.payment.id, details, settings)


async def process_payment_failed(session: AsyncSession, event: PaymentFailed, settings: Settings) -> Outcome:
    payment = event.payment
    logger.info("Processing payment.failed event: %s", payment.id)

    order = await find_order_by_gateway_order_id(session, payment.order_id, for_update=True)
    if order is None:
        logger.warning("Order not found for failed payment: %s", payment.order_id)
        await _rollback(session)
        return Outcome.NOT_FOUND

    if order.payment_status not in (PaymentStatus.PENDING, PaymentStatus.FAILED):
        logger.info(
            "Ignoring payment.failed %s for order %s already %s",
            payment.id, order.id, order.payment_status.value,
        )
        await _rollback(session)
        return Outcome.STALE

    mark_failed(order, payment.error_description, payment.model_dump())
    try:
        session.add(order)
        await session.commit()
    except SQLAlchemyError as e:
        await _rollback(session)
        raise StorageUnavailableError(f"Failed to mark order {order.id} failed: {e}")

    logger.info("Order status updated to failed: %s", order.id)
    await publish_event(PAYMENT_EXCHANGE, "payment.failed", build_event(
        "PaymentFailed",
        order_id=order.id,
        payment_id=payment.id,
        reason=order.payment_error,
    ))
    return Outcome.APPLIED


async def process_refund_updated(session: AsyncSession, event: RefundUpdated, settings: Settings) -> Outcome:
    logger.info("Processing %s for refund %s", event.event, event.refund.id)
    return await apply_refund_update(session, event.refund)


async def dispatch_event(session: AsyncSession, event: WebhookEvent, settings: Settings) -> Outcome:
    if isinstance(event, PaymentCaptured):
        return await process_payment_captured(session, event, settings)
    if isinstance(event, PaymentFailed):
        return await process_payment_failed(session, event, settings)
    if isinstance(event, OrderPaid):
        return await process_order_paid(session, event, settings)
    if isinstance(event, RefundUpdated):
        return await process_refund_updated(session, event, settings)
    if isinstance(event, UnhandledEvent):
        logger.info("Unhandled webhook event acknowledged: %s", event.event)
    return Outcome.IGNORED


async def handle_webhook(session: AsyncSession, body: bytes, signature: Optional[str], settings: Settings) -> WebhookAck:
    verify_webhook(body, signature, settings.razorpay_webhook_secret)
    event = classify_event(body)
    outcome = await dispatch_event(session, event, settings)
    logger.info("Webhook %s handled: %s", event.event, outcome.value)
    return WebhookAck(event=event.event, outcome=outcome)


async def fetch_payment_details(gateway: Optional[RazorpayClient], verification: PaymentVerification) -> Dict[str, Any]:
    """Gateway payment entity for the order record; falls back to the callback fields."""
    details = {"source": "checkout", "razorpay_order_id": verification.razorpay_order_id}
    if gateway is None:
        return details
    try:
        payment = await gateway.fetch_payment(verification.razorpay_payment_id)
    except (GatewayError, httpx.HTTPError) as e:
        logger.warning(
            "Could not fetch payment %s, continuing without gateway details: %s",
            verification.razorpay_payment_id, e,
        )
        return details
    return payment.model_dump()


async def verify_checkout_payment(
    session: AsyncSession,
    verification: PaymentVerification,
    settings: Settings,
    gateway: Optional[RazorpayClient] = None,
) -> PaymentVerificationResult:
    """
    Confirm the signed checkout callback and apply the payment through the same
    guarded path as ``payment.captured``, so whichever arrives second is a no-op.
    """
    if not settings.razorpay_key_secret:
        raise ConfigurationError("Payment gateway not configured")

    valid = verify_payment_signature(
        verification.razorpay_order_id,
        verification.razorpay_payment_id,
        verification.razorpay_signature,
        settings.razorpay_key_secret,
    )
    # fetched before the order row is locked
    details = await fetch_payment_details(gateway, verification) if valid else None

    order = await session.get(Order, verification.order_id, with_for_update=True)
    if order is None:
        await _rollback(session)
        raise OrderNotFoundError(f"Order {verification.order_id} not found")

    if not valid:
        logger.error(
            "Payment signature verification failed for order %s payment %s",
            verification.order_id, verification.razorpay_payment_id,
        )
        if order.payment_status in (PaymentStatus.PENDING, PaymentStatus.FAILED):
            mark_failed(order, "Invalid payment signature")
            try:
                await session.commit()
            except SQLAlchemyError as e:
                await _rollback(session)
                raise StorageUnavailableError(f"Failed to mark order {order.id} failed: {e}")
        else:
            await _rollback(session)
        raise InvalidSignatureError("Payment verification failed")

    if order.razorpay_order_id != verification.razorpay_order_id:
        await _rollback(session)
        raise InvalidSignatureError("Payment does not belong to this order")

    outcome = await apply_captured_payment(
        session,
        verification.razorpay_order_id,
        verification.razorpay_payment_id,
        details,
        settings,
    )
    return PaymentVerificationResult(verified=True, order_id=order.id, outcome=outcome)
