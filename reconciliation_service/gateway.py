import logging
from typing import Dict, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from reconciliation_service.config import Settings
from reconciliation_service.events import PaymentEntity, RefundEntity

logger = logging.getLogger(__name__)


class GatewayError(Exception):
    def __init__(self, status_code: int, description: str, code: Optional[str] = None):
        super().__init__(description)
        self.status_code = status_code
        self.description = description
        self.code = code


class UnreadableResponseError(GatewayError):
    """The gateway answered 2xx but the body could not be read as the expected entity."""

    def __init__(self, status_code: int, description: str, payload: Optional[dict] = None):
        super().__init__(status_code, description)
        self.payload = payload or {}


def _error_from_response(response: httpx.Response) -> GatewayError:
    try:
        body = response.json()
    except ValueError:
        body = {}
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return GatewayError(response.status_code, error.get("description") or "Gateway request failed", error.get("code"))
    return GatewayError(response.status_code, response.text[:200] or "Gateway request failed")


def _parse_entity(response: httpx.Response, entity_cls):
    try:
        body = response.json()
    except ValueError as e:
        raise UnreadableResponseError(response.status_code, f"Gateway response is not JSON: {e}")
    try:
        return entity_cls.model_validate(body)
    except ValueError as e:
        payload = body if isinstance(body, dict) else None
        raise UnreadableResponseError(response.status_code, f"Unexpected gateway response: {e}", payload)


class RazorpayClient:
    def __init__(self, key_id: str, key_secret: str, base_url: str, timeout: float = 15.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self._client = httpx.AsyncClient(
            base_url=base_url,
            auth=httpx.BasicAuth(key_id, key_secret),
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "RazorpayClient":
        settings.require_gateway_credentials()
        return cls(settings.razorpay_key_id, settings.razorpay_key_secret, settings.razorpay_api_base)

    async def aclose(self):
        await self._client.aclose()

    async def create_refund(self, payment_id: str, amount: int, notes: Optional[Dict[str, str]] = None,
                            speed: str = "normal", receipt: Optional[str] = None) -> RefundEntity:
        # Not retried: a resent request could move money twice.
        payload = {"amount": amount, "speed": speed}
        if notes:
            payload["notes"] = notes
        if receipt:
            payload["receipt"] = receipt

        logger.info("Creating refund of %s paise for payment %s", amount, payment_id)
        response = await self._client.post(f"/payments/{payment_id}/refund", json=payload)
        if response.status_code >= 400:
            error = _error_from_response(response)
            logger.error("Razorpay refund rejected for payment %s: %s", payment_id, error.description)
            raise error
        return _parse_entity(response, RefundEntity)

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        reraise=True,
    )
    async def fetch_refund(self, payment_id: str, refund_id: str) -> RefundEntity:
        response = await self._client.get(f"/payments/{payment_id}/refunds/{refund_id}")
        if response.status_code >= 400:
            raise _error_from_response(response)
        return _parse_entity(response, RefundEntity)

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        reraise=True,
    )
    async def fetch_payment(self, payment_id: str) -> PaymentEntity:
        response = await self._client.get(f"/payments/{payment_id}")
        if response.status_code >= 400:
            raise _error_from_response(response)
        return _parse_entity(response, PaymentEntity)
