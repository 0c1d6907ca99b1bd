import hashlib
import hmac
import logging
from typing import Optional

from reconciliation_service.errors import (
    ConfigurationError,
    InvalidSignatureError,
    MissingSignatureError,
)

logger = logging.getLogger(__name__)


def compute_signature(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: str, secret: str) -> bool:
    """
    Check a hex HMAC-SHA256 signature over the exact bytes received.

    The body must not be decoded and re-serialized first: any change in
    whitespace or key order changes the digest.
    """
    expected = compute_signature(body, secret)
    return hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8"))


def verify_webhook(body: bytes, signature: Optional[str], secret: Optional[str]):
    if not secret:
        logger.error("Webhook secret not configured")
        raise ConfigurationError("Webhook secret not configured")
    if not signature:
        logger.warning("Webhook rejected: missing signature header")
        raise MissingSignatureError("Missing signature header")
    if not verify_signature(body, signature, secret):
        logger.warning("Webhook rejected: invalid signature")
        raise InvalidSignatureError("Invalid signature")


def verify_payment_signature(order_id: str, payment_id: str, signature: str, key_secret: str) -> bool:
    """Checkout callback signature: HMAC(key_secret, "<order_id>|<payment_id>")."""
    payload = f"{order_id}|{payment_id}".encode("utf-8")
    return verify_signature(payload, signature, key_secret)
