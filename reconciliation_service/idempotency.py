import enum
import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from reconciliation_service.errors import StorageUnavailableError
from reconciliation_service.models import Order, RefundStatus, RefundTransaction
from reconciliation_service.orders import is_settled

logger = logging.getLogger(__name__)

REFUND_STATUS_RANK = {
    RefundStatus.PENDING: 0,
    RefundStatus.INITIATED: 1,
    RefundStatus.PROCESSED: 2,
    RefundStatus.FAILED: 2,
}


class CaptureDecision(enum.Enum):
    PROCEED = "proceed"
    DUPLICATE = "duplicate"
    NOT_FOUND = "not_found"


async def find_order_by_payment_id(session: AsyncSession, payment_id: str) -> Optional[Order]:
    try:
        result = await session.execute(
            select(Order).where(Order.razorpay_payment_id == payment_id).limit(1)
        )
        return result.scalars().first()
    except SQLAlchemyError as e:
        logger.error("Lookup of payment %s failed: %s", payment_id, e)
        raise StorageUnavailableError(f"Failed to look up payment {payment_id}")


async def find_order_by_gateway_order_id(
    session: AsyncSession, gateway_order_id: str, for_update: bool = False
) -> Optional[Order]:
    try:
        query = select(Order).where(Order.razorpay_order_id == gateway_order_id).limit(1)
        if for_update:
            query = query.with_for_update()
        result = await session.execute(query)
        return result.scalars().first()
    except SQLAlchemyError as e:
        logger.error("Lookup of gateway order %s failed: %s", gateway_order_id, e)
        raise StorageUnavailableError(f"Failed to look up order {gateway_order_id}")


async def find_refund_transaction(
    session: AsyncSession, refund_id: str, for_update: bool = False
) -> Optional[RefundTransaction]:
    try:
        query = select(RefundTransaction).where(RefundTransaction.razorpay_refund_id == refund_id).limit(1)
        if for_update:
            query = query.with_for_update()
        result = await session.execute(query)
        return result.scalars().first()
    except SQLAlchemyError as e:
        logger.error("Lookup of refund %s failed: %s", refund_id, e)
        raise StorageUnavailableError(f"Failed to look up refund {refund_id}")


async def check_capture(session: AsyncSession, payment_id: str, gateway_order_id: str):
    """
    Decide whether a captured payment may be applied.

    Returns ``(decision, order)``. The order is row-locked when the decision is
    PROCEED, so the paid write that follows cannot interleave with another
    delivery of the same event inside the same database.
    """
    existing = await find_order_by_payment_id(session, payment_id)
    if existing is not None:
        logger.warning(
            "Duplicate payment blocked: payment %s already applied to order %s (%s)",
            payment_id, existing.id, existing.payment_status.value,
            extra={"payment_id": payment_id, "order_id": existing.id},
        )
        return CaptureDecision.DUPLICATE, existing

    order = await find_order_by_gateway_order_id(session, gateway_order_id, for_update=True)
    if order is None:
        logger.warning("Order not found for gateway order %s", gateway_order_id)
        return CaptureDecision.NOT_FOUND, None

    if is_settled(order):
        logger.warning(
            "Order %s already paid with payment %s, ignoring payment %s",
            order.id, order.razorpay_payment_id, payment_id,
            extra={"payment_id": payment_id, "order_id": order.id},
        )
        return CaptureDecision.DUPLICATE, order

    return CaptureDecision.PROCEED, order


def refund_status_advances(current: RefundStatus, target: RefundStatus) -> bool:
    return REFUND_STATUS_RANK[target] > REFUND_STATUS_RANK[current]
