"""
HTTP client for the hosted payment gateway (Razorpay REST API)
"""
from datetime import timedelta
from typing import Any, Dict, List, Optional

import httpx
import structlog

from donation_service.core.circuit_breaker import CircuitBreaker, CircuitBreakerError
from donation_service.core.config import get_settings
from donation_service.core.exceptions import GatewayUnavailable, InvalidPaymentRequest

logger = structlog.get_logger(__name__)

RECEIPT_MAX_LENGTH = 40


class GatewayServerError(Exception):
    """Gateway answered with a 5xx"""
    pass


# Global circuit breaker instance for gateway calls
gateway_circuit_breaker = CircuitBreaker(
    name="payment-gateway",
    failure_threshold=5,
    recovery_timeout=timedelta(seconds=30),
    expected_exceptions=(httpx.TransportError, GatewayServerError)
)


def flatten_notes(notes: Optional[Dict[str, Any]]) -> Dict[str, str]:
    """Gateway notes are a flat string map"""
    if not notes:
        return {}
    return {str(key): "" if value is None else str(value) for key, value in notes.items()}


class RazorpayGateway:
    """Thin async client over the gateway's orders and payments endpoints"""

    def __init__(self, key_id: str, key_secret: str, base_url: str, timeout: float = 10.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.key_id = key_id
        self._key_secret = key_secret
        self.base_url = base_url.rstrip("/")
        self.timeout = httpx.Timeout(timeout, connect=5.0)
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.key_id and self._key_secret)

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        async with httpx.AsyncClient(
            base_url=self.base_url,
            auth=(self.key_id, self._key_secret),
            timeout=self.timeout,
            transport=self._transport
        ) as client:
            response = await client.request(method, path, **kwargs)

        if response.status_code >= 500:
            raise GatewayServerError(f"{method} {path} returned {response.status_code}")
        if response.status_code >= 400:
            try:
                description = response.json().get("error", {}).get("description")
            except ValueError:
                description = None
            logger.error(
                "Gateway rejected request",
                method=method,
                path=path,
                status_code=response.status_code,
                error=description or response.text
            )
            raise InvalidPaymentRequest(description or f"Gateway rejected request ({response.status_code})")
        try:
            return response.json()
        except ValueError as e:
            raise GatewayServerError(f"{method} {path} returned a non-JSON body") from e

    async def _call(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        if not self.configured:
            logger.error("Payment gateway credentials are not configured")
            raise GatewayUnavailable("Payment gateway is not configured")

        try:
            return await gateway_circuit_breaker.call(self._request, method, path, **kwargs)
        except CircuitBreakerError as e:
            logger.warning("Gateway circuit open, failing fast", path=path)
            raise GatewayUnavailable(str(e)) from e
        except httpx.TimeoutException as e:
            logger.error("Timeout calling payment gateway", method=method, path=path)
            raise GatewayUnavailable("Payment gateway timeout") from e
        except httpx.TransportError as e:
            logger.error("Connection error to payment gateway", method=method, path=path, error=str(e))
            raise GatewayUnavailable("Payment gateway unavailable") from e
        except GatewayServerError as e:
            logger.error("Payment gateway server error", method=method, path=path, error=str(e))
            raise GatewayUnavailable("Payment gateway error") from e

    async def create_order(self, amount_minor: int, currency: str, receipt: str,
                           notes: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Create a hosted order.

        Args:
            amount_minor: Amount in paise
            currency: ISO currency code
            receipt: Merchant receipt reference, truncated to the gateway's limit
            notes: Free-form notes, flattened to strings

        Returns:
            Gateway order object (``id``, ``amount``, ``currency``, ``receipt``, ...)
        """
        order = await self._call("POST", "/orders", json={
            "amount": amount_minor,
            "currency": currency,
            "receipt": receipt[:RECEIPT_MAX_LENGTH],
            "notes": flatten_notes(notes),
        })
        logger.info("Gateway order created", order_id=order.get("id"), amount=amount_minor, currency=currency)
        return order

    async def fetch_payment(self, payment_id: str) -> Dict[str, Any]:
        return await self._call("GET", f"/payments/{payment_id}")

    async def fetch_order(self, order_id: str) -> Dict[str, Any]:
        return await self._call("GET", f"/orders/{order_id}")

    async def fetch_order_payments(self, order_id: str) -> List[Dict[str, Any]]:
        result = await self._call("GET", f"/orders/{order_id}/payments")
        return result.get("items", [])


def get_gateway() -> RazorpayGateway:
    """Dependency to get the gateway client"""
    settings = get_settings()
    return RazorpayGateway(
        key_id=settings.razorpay_key_id,
        key_secret=settings.razorpay_key_secret,
        base_url=settings.razorpay_base_url,
        timeout=settings.gateway_timeout_seconds
    )
