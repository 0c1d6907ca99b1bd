"""
Refund orchestration for approved return requests.

Refunds are created through the gateway API and tracked locally as
``RefundTransaction`` rows. Their final status arrives later through the
``refund.*`` webhooks (or an explicit sync), which is applied by
``apply_refund_update``. Status only moves forward; a failed refund is retried
by creating a new transaction, never by editing the failed one.
"""
import logging
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List, Optional
from uuid import uuid4

import httpx
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from reconciliation_service.errors import (
    DuplicateRefundError,
    InsufficientBalanceError,
    InvalidTransitionError,
    ReconciliationError,
    RefundError,
    RefundGatewayError,
    RefundNotFoundError,
    ReturnRequestNotFoundError,
    StorageUnavailableError,
)
from reconciliation_service.events import RefundEntity
from reconciliation_service.gateway import GatewayError, RazorpayClient, UnreadableResponseError
from reconciliation_service.idempotency import find_refund_transaction, refund_status_advances
from reconciliation_service.messaging import PAYMENT_EXCHANGE, build_event, publish_event
from reconciliation_service.models import (
    Order,
    RefundStatus,
    RefundTransaction,
    ReturnRequest,
    ReturnStatus,
    ReturnStatusHistory,
)
from reconciliation_service.orders import mark_refund_completed, mark_refund_initiated, revert_refund
from reconciliation_service.schemas import Outcome, RefundResult, RefundStatusRead

logger = logging.getLogger(__name__)

INSUFFICIENT_BALANCE_MARKER = "does not have enough balance"
INSUFFICIENT_BALANCE_MESSAGE = (
    "Insufficient balance in Razorpay account to process refund. Please add funds to your "
    "Razorpay account from the dashboard or contact support."
)
DEFAULT_REFUND_FAILURE = "Refund failed at gateway"

ACTIVE_REFUND_STATUSES = (RefundStatus.PENDING, RefundStatus.INITIATED, RefundStatus.PROCESSED)

GATEWAY_REFUND_STATUS = {
    "created": RefundStatus.INITIATED,
    "pending": RefundStatus.INITIATED,
    "processed": RefundStatus.PROCESSED,
    "failed": RefundStatus.FAILED,
}


def to_minor_units(amount) -> int:
    """Rupees to paise, rounding half up."""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def generate_transaction_number() -> str:
    return f"RFD-{datetime.utcnow():%Y%m%d}-{uuid4().hex[:8].upper()}"


async def load_return_request(session: AsyncSession, return_request_id: str,
                              for_update: bool = False) -> ReturnRequest:
    try:
        if for_update:
            return_request = await session.get(
                ReturnRequest, return_request_id, with_for_update=True, populate_existing=True
            )
        else:
            return_request = await session.get(ReturnRequest, return_request_id)
    except SQLAlchemyError as e:
        logger.error("Failed to load return request %s: %s", return_request_id, e)
        raise StorageUnavailableError(f"Failed to load return request {return_request_id}")
    if return_request is None:
        raise ReturnRequestNotFoundError(f"Return request {return_request_id} not found")
    return return_request


async def list_refund_transactions(session: AsyncSession, return_request_id: str) -> List[RefundTransaction]:
    try:
        result = await session.execute(
            select(RefundTransaction)
            .where(RefundTransaction.return_request_id == return_request_id)
            .order_by(RefundTransaction.created_at.desc())
        )
        return list(result.scalars().all())
    except SQLAlchemyError as e:
        logger.error("Failed to list refunds for return %s: %s", return_request_id, e)
        raise StorageUnavailableError(f"Failed to list refunds for return {return_request_id}")


async def latest_refund_transaction(session: AsyncSession, return_request_id: str) -> Optional[RefundTransaction]:
    transactions = await list_refund_transactions(session, return_request_id)
    return transactions[0] if transactions else None


def add_status_history(session: AsyncSession, return_request_id: str, status: str, notes: str,
                       created_by: Optional[str] = None):
    session.add(ReturnStatusHistory(
        return_request_id=return_request_id,
        status=status,
        notes=notes,
        created_by=created_by,
    ))


async def _report_unrecorded_refund(refund_id: str, return_request_id: str, payment_id: str,
                                    amount: float, error: Exception) -> RefundResult:
    logger.critical(
        "Refund %s accepted by gateway but not recorded for return %s: %s",
        refund_id, return_request_id, error,
        extra={"refund_id": refund_id, "return_request_id": return_request_id, "payment_id": payment_id},
    )
    await publish_event(PAYMENT_EXCHANGE, "refund.persistence_failed", build_event(
        "RefundPersistenceFailed",
        refund_id=refund_id,
        return_request_id=return_request_id,
        payment_id=payment_id,
        amount=amount,
        error=str(error),
    ))
    return RefundResult(
        refund_id=refund_id,
        status=RefundStatus.INITIATED,
        persisted=False,
        message="Refund accepted by gateway but could not be recorded; reconciliation required",
    )


async def initiate_refund(
    session: AsyncSession,
    gateway: RazorpayClient,
    return_request_id: str,
    payment_id: str,
    amount: float,
    notes: Optional[Dict[str, str]] = None,
    retry_of: Optional[RefundTransaction] = None,
    initiated_by: Optional[str] = None,
) -> RefundResult:
    """
    Create a gateway refund for an approved return and record it.

    The return request row stays locked from the active-refund check until the
    commit, so concurrent calls for one return see each other's refund.
    """
    return_request = await load_return_request(session, return_request_id, for_update=True)
    amount_minor = to_minor_units(amount)
    gateway_notes = {"return_request_id": return_request_id, **(notes or {})}

    try:
        if return_request.status != ReturnStatus.APPROVED:
            raise InvalidTransitionError(
                f"Return {return_request_id} is {return_request.status.value}, not approved"
            )
        latest = await latest_refund_transaction(session, return_request_id)
        if latest is not None and latest.status in ACTIVE_REFUND_STATUSES:
            raise DuplicateRefundError(
                f"Return {return_request_id} already has refund {latest.transaction_number} ({latest.status.value})"
            )

        logger.info("Initiating refund for return %s: %s (%s paise)", return_request_id, amount, amount_minor)
        try:
            refund = await gateway.create_refund(payment_id, amount_minor, notes=gateway_notes)
        except UnreadableResponseError:
            raise
        except GatewayError as e:
            if INSUFFICIENT_BALANCE_MARKER in e.description:
                raise InsufficientBalanceError(INSUFFICIENT_BALANCE_MESSAGE)
            raise RefundGatewayError(e.description)
        except httpx.HTTPError as e:
            logger.error("Refund request for payment %s did not complete: %s", payment_id, e)
            raise RefundGatewayError(f"Refund request to gateway failed: {e}")
    except UnreadableResponseError as e:
        # accepted by the gateway, but without a usable refund entity to record
        await session.rollback()
        refund_id = str(e.payload.get("id") or "unknown")
        return await _report_unrecorded_refund(refund_id, return_request_id, payment_id, amount, e)
    except ReconciliationError:
        await session.rollback()
        raise

    # From here on the gateway has accepted the refund; local failures must not
    # be reported as a failed refund.
    original_amount = return_request.original_order_amount or amount
    transaction = RefundTransaction(
        transaction_number=generate_transaction_number(),
        return_request_id=return_request_id,
        order_id=return_request.order_id,
        razorpay_payment_id=payment_id,
        razorpay_refund_id=refund.id,
        refund_amount=amount,
        original_amount=original_amount,
        deduction_amount=round(original_amount - amount, 2),
        status=RefundStatus.INITIATED,
        razorpay_status=refund.status,
        razorpay_speed=refund.speed_requested or "normal",
        razorpay_response=refund.model_dump(),
        initiated_at=datetime.utcnow(),
        retry_of_id=retry_of.id if retry_of is not None else None,
        notes=notes or None,
        initiated_by=initiated_by,
    )

    try:
        session.add(transaction)
        order = await session.get(Order, return_request.order_id, with_for_update=True)
        if order is not None:
            try:
                mark_refund_initiated(order)
            except InvalidTransitionError as e:
                logger.warning("Order payment status not moved for refund %s: %s", refund.id, e)
        return_request.status = ReturnStatus.REFUND_INITIATED
        return_request.razorpay_refund_id = refund.id
        return_request.updated_at = datetime.utcnow()
        add_status_history(
            session, return_request_id, ReturnStatus.REFUND_INITIATED.value,
            f"Refund initiated: {transaction.transaction_number}", initiated_by,
        )
        await session.commit()
    except SQLAlchemyError as e:
        await session.rollback()
        return await _report_unrecorded_refund(refund.id, return_request_id, payment_id, amount, e)

    logger.info("Refund created successfully: %s (%s)", refund.id, transaction.transaction_number)
    await publish_event(PAYMENT_EXCHANGE, "refund.initiated", build_event(
        "RefundInitiated",
        refund_id=refund.id,
        transaction_number=transaction.transaction_number,
        return_request_id=return_request_id,
        amount=amount,
    ))
    return RefundResult(
        refund_id=refund.id,
        transaction_number=transaction.transaction_number,
        status=transaction.status,
    )


async def _cascade_refund_result(session: AsyncSession, transaction: RefundTransaction,
                                 target: RefundStatus, refund: RefundEntity):
    return_request = await session.get(ReturnRequest, transaction.return_request_id)
    order = await session.get(Order, transaction.order_id, with_for_update=True)
    now = datetime.utcnow()

    if target == RefundStatus.PROCESSED:
        if order is not None:
            try:
                mark_refund_completed(order)
            except InvalidTransitionError as e:
                logger.warning("Order not moved to refund_completed for refund %s: %s", refund.id, e)
        if return_request is not None:
            return_request.status = ReturnStatus.REFUND_COMPLETED
            return_request.updated_at = now
        add_status_history(
            session, transaction.return_request_id, ReturnStatus.REFUND_COMPLETED.value,
            f"Refund processed by Razorpay: {refund.id}",
        )
    else:
        if order is not None:
            try:
                revert_refund(order)
            except InvalidTransitionError as e:
                logger.warning("Order not reverted for failed refund %s: %s", refund.id, e)
        if return_request is not None:
            # back to approved so an operator can retry
            return_request.status = ReturnStatus.APPROVED
            return_request.updated_at = now
        add_status_history(
            session, transaction.return_request_id, ReturnStatus.APPROVED.value,
            f"Refund failed in Razorpay: {refund.id}. Admin needs to retry.",
        )


async def apply_refund_update(session: AsyncSession, refund: RefundEntity) -> Outcome:
    target = GATEWAY_REFUND_STATUS.get(refund.status)
    if target is None:
        logger.info("Refund %s has unrecognised status %s, ignoring", refund.id, refund.status)
        return Outcome.IGNORED

    transaction = await find_refund_transaction(session, refund.id, for_update=True)
    if transaction is None:
        logger.warning("No refund transaction for refund %s", refund.id)
        return Outcome.NOT_FOUND

    if not refund_status_advances(transaction.status, target):
        logger.info(
            "Refund %s already %s, ignoring %s update",
            refund.id, transaction.status.value, refund.status,
        )
        return Outcome.DUPLICATE

    if refund.return_request_id and refund.return_request_id != transaction.return_request_id:
        logger.warning(
            "Refund %s notes reference return %s but transaction belongs to %s",
            refund.id, refund.return_request_id, transaction.return_request_id,
        )

    now = datetime.utcnow()
    try:
        transaction.status = target
        transaction.razorpay_status = refund.status
        transaction.razorpay_response = refund.model_dump()
        transaction.updated_at = now
        if target == RefundStatus.PROCESSED:
            transaction.processed_at = now
        elif target == RefundStatus.FAILED:
            transaction.failed_at = now
            transaction.failure_reason = (refund.model_extra or {}).get("error_description") or DEFAULT_REFUND_FAILURE
        if target in (RefundStatus.PROCESSED, RefundStatus.FAILED):
            await _cascade_refund_result(session, transaction, target, refund)
        await session.commit()
    except SQLAlchemyError as e:
        await session.rollback()
        logger.error("Failed to apply refund update %s: %s", refund.id, e)
        raise StorageUnavailableError(f"Failed to apply refund update {refund.id}")

    logger.info("Refund transaction %s moved to %s", transaction.transaction_number, target.value)
    if target in (RefundStatus.PROCESSED, RefundStatus.FAILED):
        routing_key = "refund.completed" if target == RefundStatus.PROCESSED else "refund.failed"
        await publish_event(PAYMENT_EXCHANGE, routing_key, build_event(
            "RefundCompleted" if target == RefundStatus.PROCESSED else "RefundFailed",
            refund_id=refund.id,
            transaction_number=transaction.transaction_number,
            return_request_id=transaction.return_request_id,
            amount=transaction.refund_amount,
        ))
    return Outcome.APPLIED


async def retry_failed_refund(session: AsyncSession, gateway: RazorpayClient, return_request_id: str,
                              initiated_by: Optional[str] = None) -> RefundResult:
    return_request = await load_return_request(session, return_request_id)
    if not return_request.final_refund_amount:
        raise RefundError("Final refund amount not set")

    latest = await latest_refund_transaction(session, return_request_id)
    if latest is None or latest.status != RefundStatus.FAILED:
        raise RefundError(f"Return {return_request_id} has no failed refund to retry")

    logger.info("Retrying failed refund %s for return %s", latest.transaction_number, return_request_id)
    return await initiate_refund(
        session,
        gateway,
        return_request_id,
        latest.razorpay_payment_id,
        return_request.final_refund_amount,
        notes={"retry": "true", "original_refund_id": latest.razorpay_refund_id or ""},
        retry_of=latest,
        initiated_by=initiated_by,
    )


async def get_refund_status(session: AsyncSession, return_request_id: str) -> RefundStatusRead:
    latest = await latest_refund_transaction(session, return_request_id)
    if latest is None:
        raise RefundNotFoundError(f"No refund transaction found for return {return_request_id}")
    return RefundStatusRead(
        return_request_id=return_request_id,
        status=latest.status,
        refund_id=latest.razorpay_refund_id,
        amount=latest.refund_amount,
        created_at=latest.created_at,
    )


async def sync_refund_status(session: AsyncSession, gateway: RazorpayClient, return_request_id: str) -> Outcome:
    latest = await latest_refund_transaction(session, return_request_id)
    if latest is None or not latest.razorpay_refund_id:
        raise RefundNotFoundError(f"No gateway refund recorded for return {return_request_id}")
    try:
        refund = await gateway.fetch_refund(latest.razorpay_payment_id, latest.razorpay_refund_id)
    except GatewayError as e:
        raise RefundGatewayError(e.description)
    except httpx.HTTPError as e:
        raise RefundGatewayError(f"Refund status request failed: {e}")
    return await apply_refund_update(session, refund)
