import asyncio
from datetime import datetime
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from reconciliation_service.errors import (
    DuplicateRefundError,
    InsufficientBalanceError,
    InvalidTransitionError,
    RefundError,
    RefundGatewayError,
    RefundNotFoundError,
)
from reconciliation_service.events import RefundEntity
from reconciliation_service.gateway import GatewayError, UnreadableResponseError
from reconciliation_service.models import (
    Order,
    PaymentStatus,
    RefundStatus,
    RefundTransaction,
    ReturnRequest,
    ReturnStatus,
    ReturnStatusHistory,
)
from reconciliation_service.refunds import (
    apply_refund_update,
    get_refund_status,
    initiate_refund,
    retry_failed_refund,
    sync_refund_status,
    to_minor_units,
)
from reconciliation_service.schemas import Outcome

from conftest import refund_entity


def make_return(**fields):
    values = dict(id="ret-1", order_id="o-1", status=ReturnStatus.APPROVED,
                  original_order_amount=500.0, final_refund_amount=499.0)
    values.update(fields)
    return ReturnRequest(**values)


def make_transaction(status=RefundStatus.INITIATED, **fields):
    values = dict(id="txn-1", transaction_number="RFD-20261019-AAAA0001", return_request_id="ret-1",
                  order_id="o-1", razorpay_payment_id="pay_1", razorpay_refund_id="rfnd_1",
                  refund_amount=499.0, original_amount=500.0, deduction_amount=1.0, status=status,
                  created_at=datetime(2026, 10, 19, 12, 0))
    values.update(fields)
    return RefundTransaction(**values)


def gateway_refund(status="processed", **fields):
    return RefundEntity.model_validate(refund_entity(status=status, **fields))


def mock_gateway(**methods):
    gateway = AsyncMock()
    for name, value in methods.items():
        setattr(gateway, name, value)
    return gateway


def added(mock_session, cls):
    return [c.args[0] for c in mock_session.add.call_args_list if isinstance(c.args[0], cls)]


@pytest.mark.parametrize("amount, paise", [(499, 49900), (499.99, 49999), (0.005, 1), ("10.10", 1010)])
def test_to_minor_units(amount, paise):
    assert to_minor_units(amount) == paise


@pytest.mark.asyncio
async def test_initiate_refund_records_transaction(mock_session):
    return_request = make_return()
    order = Order(id="o-1", payment_status=PaymentStatus.PAID, razorpay_payment_id="pay_1")
    mock_session.get.return_value = order
    gateway = mock_gateway(create_refund=AsyncMock(return_value=gateway_refund(status="pending")))

    with patch("reconciliation_service.refunds.load_return_request", new=AsyncMock(return_value=return_request)), \
            patch("reconciliation_service.refunds.latest_refund_transaction", new=AsyncMock(return_value=None)), \
            patch("reconciliation_service.refunds.publish_event", new=AsyncMock()) as mock_publish_event:
        result = await initiate_refund(mock_session, gateway, "ret-1", "pay_1", 499.0, initiated_by="admin-1")

    assert result.persisted
    assert result.refund_id == "rfnd_1"
    assert result.status == RefundStatus.INITIATED
    assert result.transaction_number.startswith("RFD-")

    args, kwargs = gateway.create_refund.call_args
    assert args == ("pay_1", 49900)
    assert kwargs["notes"]["return_request_id"] == "ret-1"

    transaction = added(mock_session, RefundTransaction)[0]
    assert transaction.status == RefundStatus.INITIATED
    assert transaction.deduction_amount == 1.0
    assert transaction.retry_of_id is None
    assert order.payment_status == PaymentStatus.REFUND_INITIATED
    assert return_request.status == ReturnStatus.REFUND_INITIATED
    assert return_request.razorpay_refund_id == "rfnd_1"
    assert added(mock_session, ReturnStatusHistory)[0].created_by == "admin-1"
    mock_session.commit.assert_awaited_once()
    assert mock_publish_event.call_args.args[1] == "refund.initiated"


@pytest.mark.asyncio
async def test_initiate_refund_refuses_when_refund_active(mock_session):
    gateway = mock_gateway(create_refund=AsyncMock())

    with patch("reconciliation_service.refunds.load_return_request", new=AsyncMock(return_value=make_return())), \
            patch("reconciliation_service.refunds.latest_refund_transaction",
                  new=AsyncMock(return_value=make_transaction(RefundStatus.INITIATED))):
        with pytest.raises(DuplicateRefundError):
            await initiate_refund(mock_session, gateway, "ret-1", "pay_1", 499.0)

    gateway.create_refund.assert_not_called()


@pytest.mark.asyncio
async def test_insufficient_balance_is_reported(mock_session):
    error = GatewayError(400, "The merchant does not have enough balance to process the refund", "BAD_REQUEST_ERROR")
    gateway = mock_gateway(create_refund=AsyncMock(side_effect=error))

    with patch("reconciliation_service.refunds.load_return_request", new=AsyncMock(return_value=make_return())), \
            patch("reconciliation_service.refunds.latest_refund_transaction", new=AsyncMock(return_value=None)):
        with pytest.raises(InsufficientBalanceError) as exc_info:
            await initiate_refund(mock_session, gateway, "ret-1", "pay_1", 499.0)

    assert "Insufficient balance" in exc_info.value.message
    mock_session.add.assert_not_called()
    mock_session.commit.assert_not_called()


@pytest.mark.asyncio
async def test_gateway_rejection_and_timeout_are_gateway_errors(mock_session):
    for side_effect in (GatewayError(400, "Payment already refunded"), httpx.ReadTimeout("timed out")):
        gateway = mock_gateway(create_refund=AsyncMock(side_effect=side_effect))
        with patch("reconciliation_service.refunds.load_return_request", new=AsyncMock(return_value=make_return())), \
                patch("reconciliation_service.refunds.latest_refund_transaction", new=AsyncMock(return_value=None)):
            with pytest.raises(RefundGatewayError) as exc_info:
                await initiate_refund(mock_session, gateway, "ret-1", "pay_1", 499.0)
        assert not isinstance(exc_info.value, InsufficientBalanceError)
    mock_session.commit.assert_not_called()


@pytest.mark.asyncio
async def test_accepted_refund_that_fails_to_persist_is_not_a_failure(mock_session, caplog):
    mock_session.get.return_value = Order(id="o-1", payment_status=PaymentStatus.PAID)
    mock_session.commit.side_effect = OperationalError("COMMIT", {}, Exception("connection lost"))
    gateway = mock_gateway(create_refund=AsyncMock(return_value=gateway_refund(status="pending")))

    with patch("reconciliation_service.refunds.load_return_request", new=AsyncMock(return_value=make_return())), \
            patch("reconciliation_service.refunds.latest_refund_transaction", new=AsyncMock(return_value=None)), \
            patch("reconciliation_service.refunds.publish_event", new=AsyncMock()) as mock_publish_event:
        result = await initiate_refund(mock_session, gateway, "ret-1", "pay_1", 499.0)

    assert result.success
    assert not result.persisted
    assert result.refund_id == "rfnd_1"
    mock_session.rollback.assert_awaited_once()
    assert any(r.levelname == "CRITICAL" and getattr(r, "refund_id", None) == "rfnd_1" for r in caplog.records)
    assert mock_publish_event.call_args.args[1] == "refund.persistence_failed"


@pytest.mark.asyncio
async def test_processed_refund_completes_order_and_return(mock_session):
    transaction = make_transaction(RefundStatus.INITIATED)
    order = Order(id="o-1", payment_status=PaymentStatus.REFUND_INITIATED)
    return_request = make_return(status=ReturnStatus.REFUND_INITIATED)
    mock_session.get.side_effect = [return_request, order]

    with patch("reconciliation_service.refunds.find_refund_transaction", new=AsyncMock(return_value=transaction)), \
            patch("reconciliation_service.refunds.publish_event", new=AsyncMock()) as mock_publish_event:
        outcome = await apply_refund_update(mock_session, gateway_refund("processed"))

    assert outcome == Outcome.APPLIED
    assert transaction.status == RefundStatus.PROCESSED
    assert transaction.processed_at is not None
    assert order.payment_status == PaymentStatus.REFUND_COMPLETED
    assert return_request.status == ReturnStatus.REFUND_COMPLETED
    history = added(mock_session, ReturnStatusHistory)[0]
    assert history.notes == "Refund processed by Razorpay: rfnd_1"
    mock_session.commit.assert_awaited_once()
    assert mock_publish_event.call_args.args[1] == "refund.completed"


@pytest.mark.asyncio
async def test_failed_refund_reverts_for_retry(mock_session):
    transaction = make_transaction(RefundStatus.INITIATED)
    order = Order(id="o-1", payment_status=PaymentStatus.REFUND_INITIATED)
    return_request = make_return(status=ReturnStatus.REFUND_INITIATED)
    mock_session.get.side_effect = [return_request, order]
    refund = gateway_refund("failed", error_description="Bank account closed")

    with patch("reconciliation_service.refunds.find_refund_transaction", new=AsyncMock(return_value=transaction)), \
            patch("reconciliation_service.refunds.publish_event", new=AsyncMock()) as mock_publish_event:
        outcome = await apply_refund_update(mock_session, refund)

    assert outcome == Outcome.APPLIED
    assert transaction.status == RefundStatus.FAILED
    assert transaction.failure_reason == "Bank account closed"
    assert transaction.failed_at is not None
    assert order.payment_status == PaymentStatus.PAID
    assert return_request.status == ReturnStatus.APPROVED
    assert "Admin needs to retry" in added(mock_session, ReturnStatusHistory)[0].notes
    assert mock_publish_event.call_args.args[1] == "refund.failed"


@pytest.mark.asyncio
async def test_refund_created_only_records_initiated(mock_session):
    transaction = make_transaction(RefundStatus.PENDING)

    with patch("reconciliation_service.refunds.find_refund_transaction", new=AsyncMock(return_value=transaction)), \
            patch("reconciliation_service.refunds.publish_event", new=AsyncMock()) as mock_publish_event:
        outcome = await apply_refund_update(mock_session, gateway_refund("created"))

    assert outcome == Outcome.APPLIED
    assert transaction.status == RefundStatus.INITIATED
    mock_session.get.assert_not_called()
    mock_publish_event.assert_not_called()


@pytest.mark.asyncio
@pytest.mark.parametrize("current, incoming", [
    (RefundStatus.PROCESSED, "created"),
    (RefundStatus.PROCESSED, "processed"),
    (RefundStatus.PROCESSED, "failed"),
    (RefundStatus.FAILED, "processed"),
    (RefundStatus.INITIATED, "pending"),
])
async def test_refund_status_never_moves_backward(mock_session, current, incoming):
    transaction = make_transaction(current)

    with patch("reconciliation_service.refunds.find_refund_transaction", new=AsyncMock(return_value=transaction)):
        outcome = await apply_refund_update(mock_session, gateway_refund(incoming))

    assert outcome == Outcome.DUPLICATE
    assert transaction.status == current
    mock_session.commit.assert_not_called()


@pytest.mark.asyncio
async def test_unknown_refund_is_not_found(mock_session):
    with patch("reconciliation_service.refunds.find_refund_transaction", new=AsyncMock(return_value=None)):
        outcome = await apply_refund_update(mock_session, gateway_refund("processed"))

    assert outcome == Outcome.NOT_FOUND
    mock_session.commit.assert_not_called()


@pytest.mark.asyncio
async def test_unrecognised_refund_status_is_ignored(mock_session):
    with patch("reconciliation_service.refunds.find_refund_transaction", new=AsyncMock()) as mock_find:
        outcome = await apply_refund_update(mock_session, gateway_refund("reversed"))

    assert outcome == Outcome.IGNORED
    mock_find.assert_not_called()


@pytest.mark.asyncio
async def test_retry_creates_new_transaction_linked_to_failed_one(mock_session):
    failed = make_transaction(RefundStatus.FAILED)
    return_request = make_return()
    mock_session.get.return_value = Order(id="o-1", payment_status=PaymentStatus.PAID)
    gateway = mock_gateway(create_refund=AsyncMock(return_value=gateway_refund("pending", id="rfnd_2")))

    with patch("reconciliation_service.refunds.load_return_request", new=AsyncMock(return_value=return_request)), \
            patch("reconciliation_service.refunds.latest_refund_transaction", new=AsyncMock(return_value=failed)), \
            patch("reconciliation_service.refunds.publish_event", new=AsyncMock()):
        result = await retry_failed_refund(mock_session, gateway, "ret-1")

    assert result.refund_id == "rfnd_2"
    transaction = added(mock_session, RefundTransaction)[0]
    assert transaction is not failed
    assert transaction.retry_of_id == "txn-1"
    assert transaction.refund_amount == 499.0
    assert failed.status == RefundStatus.FAILED
    notes = gateway.create_refund.call_args.kwargs["notes"]
    assert notes["retry"] == "true"
    assert notes["original_refund_id"] == "rfnd_1"


@pytest.mark.asyncio
async def test_retry_requires_a_failed_refund(mock_session):
    with patch("reconciliation_service.refunds.load_return_request", new=AsyncMock(return_value=make_return())), \
            patch("reconciliation_service.refunds.latest_refund_transaction",
                  new=AsyncMock(return_value=make_transaction(RefundStatus.PROCESSED))):
        with pytest.raises(RefundError):
            await retry_failed_refund(mock_session, mock_gateway(), "ret-1")


@pytest.mark.asyncio
async def test_retry_requires_final_amount(mock_session):
    with patch("reconciliation_service.refunds.load_return_request",
               new=AsyncMock(return_value=make_return(final_refund_amount=None))):
        with pytest.raises(RefundError):
            await retry_failed_refund(mock_session, mock_gateway(), "ret-1")


@pytest.mark.asyncio
async def test_refund_status_reads_latest_transaction(mock_session):
    with patch("reconciliation_service.refunds.latest_refund_transaction",
               new=AsyncMock(return_value=make_transaction(RefundStatus.PROCESSED))):
        status = await get_refund_status(mock_session, "ret-1")

    assert status.status == RefundStatus.PROCESSED
    assert status.refund_id == "rfnd_1"

    with patch("reconciliation_service.refunds.latest_refund_transaction", new=AsyncMock(return_value=None)):
        with pytest.raises(RefundNotFoundError):
            await get_refund_status(mock_session, "ret-1")


@pytest.mark.asyncio
async def test_sync_applies_gateway_status(mock_session):
    gateway = mock_gateway(fetch_refund=AsyncMock(return_value=gateway_refund("processed")))

    with patch("reconciliation_service.refunds.latest_refund_transaction",
               new=AsyncMock(return_value=make_transaction())), \
            patch("reconciliation_service.refunds.apply_refund_update",
                  new=AsyncMock(return_value=Outcome.APPLIED)) as mock_apply:
        outcome = await sync_refund_status(mock_session, gateway, "ret-1")

    assert outcome == Outcome.APPLIED
    gateway.fetch_refund.assert_awaited_once_with("pay_1", "rfnd_1")
    assert mock_apply.call_args.args[1].status == "processed"


class LockedReturnStore:
    """Shared rows for several sessions; the return request row lock is held until commit or rollback."""

    def __init__(self, return_request, order):
        self.lock = asyncio.Lock()
        self.return_request = return_request
        self.order = order
        self.transactions = []

    async def latest(self, session, return_request_id):
        return self.transactions[-1] if self.transactions else None

    def session(self):
        session = AsyncMock(spec=AsyncSession)
        held = []

        async def get(model, ident, with_for_update=False, **kwargs):
            if model is ReturnRequest:
                if with_for_update:
                    await self.lock.acquire()
                    held.append(True)
                return self.return_request
            return self.order

        async def release():
            if held:
                held.pop()
                self.lock.release()

        def add(obj):
            if isinstance(obj, RefundTransaction):
                self.transactions.append(obj)

        session.get.side_effect = get
        session.commit.side_effect = release
        session.rollback.side_effect = release
        session.add.side_effect = add
        return session


@pytest.mark.asyncio
async def test_concurrent_initiations_refund_once():
    store = LockedReturnStore(make_return(), Order(id="o-1", payment_status=PaymentStatus.PAID))
    calls = []

    async def create_refund(payment_id, amount, notes=None):
        calls.append(payment_id)
        await asyncio.sleep(0.05)
        return gateway_refund("pending", id=f"rfnd_{len(calls)}")

    gateway = mock_gateway(create_refund=AsyncMock(side_effect=create_refund))

    with patch("reconciliation_service.refunds.latest_refund_transaction", new=store.latest), \
            patch("reconciliation_service.refunds.publish_event", new=AsyncMock()):
        results = await asyncio.gather(
            initiate_refund(store.session(), gateway, "ret-1", "pay_1", 499.0),
            initiate_refund(store.session(), gateway, "ret-1", "pay_1", 499.0),
            return_exceptions=True,
        )

    assert len(calls) == 1
    assert len(store.transactions) == 1
    succeeded = [r for r in results if not isinstance(r, Exception)]
    refused = [r for r in results if isinstance(r, Exception)]
    assert len(succeeded) == 1 and succeeded[0].persisted
    assert len(refused) == 1
    assert isinstance(refused[0], (InvalidTransitionError, DuplicateRefundError))
    assert not store.lock.locked()


@pytest.mark.asyncio
async def test_initiate_locks_the_return_request(mock_session):
    mock_session.get.side_effect = [make_return(), Order(id="o-1", payment_status=PaymentStatus.PAID)]
    gateway = mock_gateway(create_refund=AsyncMock(return_value=gateway_refund(status="pending")))

    with patch("reconciliation_service.refunds.latest_refund_transaction", new=AsyncMock(return_value=None)), \
            patch("reconciliation_service.refunds.publish_event", new=AsyncMock()):
        await initiate_refund(mock_session, gateway, "ret-1", "pay_1", 499.0)

    args, kwargs = mock_session.get.call_args_list[0]
    assert args == (ReturnRequest, "ret-1")
    assert kwargs["with_for_update"] is True


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [ReturnStatus.PENDING, ReturnStatus.REJECTED, ReturnStatus.REFUND_INITIATED])
async def test_only_approved_returns_are_refunded(mock_session, status):
    gateway = mock_gateway(create_refund=AsyncMock())

    with patch("reconciliation_service.refunds.load_return_request",
               new=AsyncMock(return_value=make_return(status=status))):
        with pytest.raises(InvalidTransitionError):
            await initiate_refund(mock_session, gateway, "ret-1", "pay_1", 499.0)

    gateway.create_refund.assert_not_called()
    mock_session.rollback.assert_awaited_once()


@pytest.mark.asyncio
async def test_unreadable_gateway_answer_is_reported_as_unrecorded(mock_session, caplog):
    error = UnreadableResponseError(200, "Unexpected gateway response", {"id": "rfnd_9", "entity": "refund"})
    gateway = mock_gateway(create_refund=AsyncMock(side_effect=error))

    with patch("reconciliation_service.refunds.load_return_request", new=AsyncMock(return_value=make_return())), \
            patch("reconciliation_service.refunds.latest_refund_transaction", new=AsyncMock(return_value=None)), \
            patch("reconciliation_service.refunds.publish_event", new=AsyncMock()) as mock_publish_event:
        result = await initiate_refund(mock_session, gateway, "ret-1", "pay_1", 499.0)

    assert result.success
    assert not result.persisted
    assert result.refund_id == "rfnd_9"
    mock_session.add.assert_not_called()
    mock_session.rollback.assert_awaited_once()
    assert any(r.levelname == "CRITICAL" and getattr(r, "refund_id", None) == "rfnd_9" for r in caplog.records)
    assert mock_publish_event.call_args.args[1] == "refund.persistence_failed"
