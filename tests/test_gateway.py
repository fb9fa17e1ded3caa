"""
Tests for the payment gateway HTTP client
"""
import httpx
import pytest

from donation_service.core.exceptions import GatewayUnavailable, InvalidPaymentRequest
from donation_service.services.gateway import RazorpayGateway, gateway_circuit_breaker


def make_gateway(handler, key_id="rzp_test_key", key_secret="test_key_secret"):
    return RazorpayGateway(
        key_id=key_id,
        key_secret=key_secret,
        base_url="https://api.razorpay.test/v1",
        transport=httpx.MockTransport(handler)
    )


# ============================================================================
# TESTS
# ============================================================================

class TestRazorpayGateway:

    @pytest.mark.asyncio
    async def test_create_order_sends_paise_and_truncated_receipt(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["body"] = request.read()
            return httpx.Response(200, json={"id": "order_1", "amount": 50000, "currency": "INR"})

        order = await make_gateway(handler).create_order(50000, "INR", "R" * 60, notes={"campaign": None})

        assert order["id"] == "order_1"
        assert seen["path"] == "/v1/orders"
        assert b'"receipt":"' + b"R" * 40 + b'"' in seen["body"].replace(b" ", b"")
        assert b'"campaign":""' in seen["body"].replace(b" ", b"")

    @pytest.mark.asyncio
    async def test_fetch_order(self):
        def handler(request):
            assert request.url.path == "/v1/orders/order_1"
            return httpx.Response(200, json={"id": "order_1", "status": "paid"})

        order = await make_gateway(handler).fetch_order("order_1")

        assert order["status"] == "paid"

    @pytest.mark.asyncio
    async def test_non_json_success_body_is_unavailable(self):
        def handler(request):
            return httpx.Response(200, text="<html>maintenance</html>")

        with pytest.raises(GatewayUnavailable):
            await make_gateway(handler).fetch_payment("pay_1")

    @pytest.mark.asyncio
    async def test_client_error_is_invalid_request(self):
        def handler(request):
            return httpx.Response(400, json={"error": {"description": "The id provided does not exist"}})

        with pytest.raises(InvalidPaymentRequest) as exc_info:
            await make_gateway(handler).fetch_payment("pay_missing")

        assert exc_info.value.message == "The id provided does not exist"

    @pytest.mark.asyncio
    async def test_server_error_is_unavailable(self):
        def handler(request):
            return httpx.Response(502, text="bad gateway")

        with pytest.raises(GatewayUnavailable):
            await make_gateway(handler).fetch_order_payments("order_1")

    @pytest.mark.asyncio
    async def test_circuit_opens_after_repeated_failures(self):
        calls = {"n": 0}

        def handler(request):
            calls["n"] += 1
            raise httpx.ConnectError("connection refused")

        gateway = make_gateway(handler)
        for _ in range(gateway_circuit_breaker.failure_threshold):
            with pytest.raises(GatewayUnavailable):
                await gateway.fetch_order("order_1")

        with pytest.raises(GatewayUnavailable):
            await gateway.fetch_order("order_1")

        assert calls["n"] == gateway_circuit_breaker.failure_threshold

    @pytest.mark.asyncio
    async def test_unconfigured_gateway_fails_fast(self):
        def handler(request):
            raise AssertionError("no request expected")

        with pytest.raises(GatewayUnavailable):
            await make_gateway(handler, key_id="", key_secret="").fetch_order("order_1")
