"""
Gateway signature verification.

Both entry points prove that a payload came from the gateway with an
HMAC-SHA256 hex digest keyed by a shared secret:

* client verification signs ``"<order_id>|<payment_id>"`` with the API key secret;
* webhooks sign the raw, unparsed request body with the webhook secret.

Verification never raises. Anything malformed, missing or mismatched is
simply ``False`` and the caller rejects the request.
"""
import hashlib
import hmac
from typing import Optional, Union

import structlog

logger = structlog.get_logger(__name__)

Payload = Union[bytes, bytearray, str]


def compute_signature(payload: Payload, secret: str) -> str:
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), bytes(payload), hashlib.sha256).hexdigest()


def verify(payload: Optional[Payload], signature: Optional[str], secret: Optional[str]) -> bool:
    """Constant-time check that signature is the gateway's digest of payload"""
    if not secret or not signature or payload is None:
        return False
    if not isinstance(payload, (bytes, bytearray, str)) or not isinstance(signature, str):
        return False
    try:
        expected = compute_signature(payload, secret)
        return hmac.compare_digest(expected, signature.strip().lower())
    except (TypeError, ValueError, UnicodeError) as e:
        logger.warning("Signature verification failed on malformed input", error=str(e))
        return False


def payment_signature_payload(order_id: str, payment_id: str) -> str:
    return f"{order_id}|{payment_id}"


def verify_payment_signature(order_id: str, payment_id: str, signature: str, secret: str) -> bool:
    """Client verify path: digest over ``order_id|payment_id``"""
    if not order_id or not payment_id:
        return False
    return verify(payment_signature_payload(order_id, payment_id), signature, secret)


def verify_webhook_signature(raw_body: bytes, signature: str, secret: str) -> bool:
    """Webhook path: digest over the exact request bytes"""
    return verify(raw_body, signature, secret)
