import logging
from typing import Optional

import uvicorn
from fastapi import Depends, FastAPI, Header, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from reconciliation_service import database, messaging
from reconciliation_service.config import Settings, configure_logging, load_settings
from reconciliation_service.errors import ConfigurationError, ReconciliationError
from reconciliation_service.gateway import RazorpayClient
from reconciliation_service.reconciler import handle_webhook, verify_checkout_payment
from reconciliation_service.refunds import (
    get_refund_status,
    initiate_refund,
    list_refund_transactions,
    retry_failed_refund,
    sync_refund_status,
)
from reconciliation_service.schemas import (
    PaymentVerification,
    PaymentVerificationResult,
    RefundCreate,
    RefundResult,
    RefundStatusRead,
    RefundTransactionList,
    RefundTransactionRead,
    WebhookAck,
)

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "Content-Type, Authorization, X-Razorpay-Signature, X-Signature",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
}

app = FastAPI(title="Payment Reconciliation Service")


@app.on_event("startup")
async def startup_event():
    settings = load_settings()
    configure_logging(settings.log_level)
    app.state.settings = settings
    database.configure_engine(settings.database_url)
    await messaging.setup_rabbitmq(settings.rabbitmq_url)


@app.on_event("shutdown")
async def shutdown_event():
    await messaging.close_rabbitmq()
    await database.dispose_engine()


@app.exception_handler(ReconciliationError)
async def reconciliation_error_handler(request: Request, exc: ReconciliationError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    else:
        logger.warning("%s %s rejected: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message}, headers=CORS_HEADERS)


def get_settings(request: Request) -> Settings:
    settings = getattr(request.app.state, "settings", None)
    if settings is None:
        raise ConfigurationError("Service configuration not loaded")
    return settings


async def get_db():
    async for session in database.get_session():
        yield session


async def get_gateway(settings: Settings = Depends(get_settings)):
    gateway = RazorpayClient.from_settings(settings)
    try:
        yield gateway
    finally:
        await gateway.aclose()


async def get_optional_gateway(settings: Settings = Depends(get_settings)):
    if not settings.razorpay_key_id or not settings.razorpay_key_secret:
        yield None
        return
    gateway = RazorpayClient.from_settings(settings)
    try:
        yield gateway
    finally:
        await gateway.aclose()


@app.post("/api/razorpay-webhook", response_model=WebhookAck)
async def razorpay_webhook(
    request: Request,
    x_razorpay_signature: Optional[str] = Header(None, alias="X-Razorpay-Signature"),
    x_signature: Optional[str] = Header(None, alias="X-Signature"),
    settings: Settings = Depends(get_settings),
    db: AsyncSession = Depends(get_db),
):
    # raw bytes: the signature covers the body exactly as sent
    body = await request.body()
    ack = await handle_webhook(db, body, x_razorpay_signature or x_signature, settings)
    return JSONResponse(status_code=200, content=ack.model_dump(mode="json"), headers=CORS_HEADERS)


@app.options("/api/razorpay-webhook")
async def razorpay_webhook_options():
    return Response(status_code=204, headers=CORS_HEADERS)


@app.post("/api/verify-payment", response_model=PaymentVerificationResult)
async def verify_payment(
    verification: PaymentVerification,
    settings: Settings = Depends(get_settings),
    db: AsyncSession = Depends(get_db),
    gateway: Optional[RazorpayClient] = Depends(get_optional_gateway),
):
    return await verify_checkout_payment(db, verification, settings, gateway)


@app.post("/api/refunds", response_model=RefundResult, status_code=201)
async def create_refund(
    refund_data: RefundCreate,
    db: AsyncSession = Depends(get_db),
    gateway: RazorpayClient = Depends(get_gateway),
):
    return await initiate_refund(
        db,
        gateway,
        refund_data.return_request_id,
        refund_data.payment_id,
        refund_data.amount,
        notes=refund_data.notes,
        initiated_by=refund_data.initiated_by,
    )


@app.post("/api/refunds/{return_request_id}/retry", response_model=RefundResult, status_code=201)
async def retry_refund(
    return_request_id: str,
    db: AsyncSession = Depends(get_db),
    gateway: RazorpayClient = Depends(get_gateway),
):
    return await retry_failed_refund(db, gateway, return_request_id)


@app.get("/api/refunds/{return_request_id}", response_model=RefundStatusRead)
async def refund_status(return_request_id: str, db: AsyncSession = Depends(get_db)):
    return await get_refund_status(db, return_request_id)


@app.get("/api/refunds/{return_request_id}/transactions", response_model=RefundTransactionList)
async def refund_transactions(return_request_id: str, db: AsyncSession = Depends(get_db)):
    transactions = await list_refund_transactions(db, return_request_id)
    return RefundTransactionList(
        return_request_id=return_request_id,
        transactions=[RefundTransactionRead.model_validate(t) for t in transactions],
    )


@app.post("/api/refunds/{return_request_id}/sync")
async def sync_refund(
    return_request_id: str,
    db: AsyncSession = Depends(get_db),
    gateway: RazorpayClient = Depends(get_gateway),
):
    outcome = await sync_refund_status(db, gateway, return_request_id)
    return {"return_request_id": return_request_id, "outcome": outcome.value}


@app.get("/health")
async def health():
    return {"status": "ok"}


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
