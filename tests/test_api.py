"""
HTTP tests for the donation payment endpoints
"""
from datetime import timedelta
from decimal import Decimal

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy import func, select

from donation_service.database.database import get_db
from donation_service.kafka.producer import get_event_producer
from donation_service.main import app
from donation_service.models import Donation
from donation_service.services.gateway import get_gateway

OPERATOR_HEADERS = {"X-Operator-Key": "test-operator-key"}


class RecordingProducer:
    """Collects published donations instead of talking to Kafka"""

    def __init__(self):
        self.published = []

    async def publish_donation_completed(self, donation):
        self.published.append(donation.receipt_number)


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def producer():
    return RecordingProducer()


@pytest_asyncio.fixture
async def client(session_factory, gateway, producer):
    """Test client with database, gateway and producer overrides"""
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_event_producer] = lambda: producer

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def order(client):
    """Order created through the API"""
    response = await client.post("/donations/create-order", json={
        "amount": 500,
        "receiptNumber": "R1",
        "notes": {"campaign": "winter"},
        "donationData": {"donorName": "Asha Rao", "amount": 500},
    })
    assert response.status_code == 201
    return response.json()


# ============================================================================
# HEALTH
# ============================================================================

class TestHealthCheck:

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_metrics(self, client):
        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "payment_signals_total" in response.text


# ============================================================================
# CREATE ORDER
# ============================================================================

class TestCreateOrderEndpoint:

    @pytest.mark.asyncio
    async def test_create_order(self, order):
        assert order["success"] is True
        assert order["order_id"].startswith("order_")
        assert order["key_id"] == "rzp_test_key"
        assert order["amount"] == 50000
        assert order["currency"] == "INR"
        assert order["receipt"] == "R1"

    @pytest.mark.asyncio
    async def test_receipt_is_required(self, client):
        response = await client.post("/donations/create-order", json={"amount": 500})

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_non_positive_amount(self, client):
        response = await client.post("/donations/create-order", json={"amount": 0, "receiptNumber": "R1"})

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_below_minimum(self, client):
        response = await client.post("/donations/create-order", json={"amount": 0.5, "receiptNumber": "R1"})

        assert response.status_code == 400
        assert response.json()["code"] == "invalid_request"

    @pytest.mark.asyncio
    async def test_malformed_donation_data_string(self, client):
        response = await client.post("/donations/create-order", json={
            "amount": 500, "receiptNumber": "R1", "donationData": "{not json"
        })

        assert response.status_code == 422


# ============================================================================
# VERIFY PAYMENT
# ============================================================================

class TestVerifyPaymentEndpoint:

    @pytest.mark.asyncio
    async def test_verify_is_idempotent(self, client, order, sign_payment, producer):
        body = {
            "razorpayOrderId": order["order_id"],
            "razorpayPaymentId": "pay_1",
            "razorpaySignature": sign_payment(order["order_id"], "pay_1"),
            "donationData": '{"donorName": "Asha Rao", "amount": 500}',
        }

        first = await client.post("/donations/verify-payment", json=body)
        second = await client.post("/donations/verify-payment", json=body)

        assert first.status_code == 200
        assert first.json()["already_processed"] is False
        assert second.status_code == 200
        assert second.json()["already_processed"] is True
        assert second.json()["donation"]["id"] == first.json()["donation"]["id"]
        assert Decimal(first.json()["donation"]["amount"]) == Decimal("500")
        assert first.json()["donation"]["status"] == "completed"
        assert len(producer.published) == 1

    @pytest.mark.asyncio
    async def test_first_verify_creates_donation(self, client, order, sign_payment):
        response = await client.post("/donations/verify-payment", json={
            "razorpayOrderId": order["order_id"],
            "razorpayPaymentId": "pay_1",
            "razorpaySignature": sign_payment(order["order_id"], "pay_1"),
            "donationData": {"donorName": "Asha Rao", "amount": 500},
        })

        assert response.status_code == 200
        body = response.json()
        assert body["already_processed"] is False
        assert body["donation"]["gateway_payment_id"] == "pay_1"
        assert body["donation"]["receipt_number"].startswith("KSS-")

    @pytest.mark.asyncio
    async def test_bad_signature(self, client, order):
        response = await client.post("/donations/verify-payment", json={
            "razorpayOrderId": order["order_id"],
            "razorpayPaymentId": "pay_1",
            "razorpaySignature": "f" * 64,
            "donationData": {"donorName": "Asha Rao"},
        })

        assert response.status_code == 400
        assert response.json() == {
            "success": False,
            "code": "invalid_signature",
            "message": "Invalid payment signature"
        }

    @pytest.mark.asyncio
    async def test_sold_out_item(self, client, make_item, sign_payment, gateway):
        item = make_item(total_quantity=1)
        created = await client.post("/donations/create-order", json={"amount": 200, "receiptNumber": "R9"})
        order_id = created.json()["order_id"]

        response = await client.post("/donations/verify-payment", json={
            "razorpayOrderId": order_id,
            "razorpayPaymentId": "pay_9",
            "razorpaySignature": sign_payment(order_id, "pay_9"),
            "donationData": {"eventItemId": item.id, "itemQuantity": 3},
        })

        assert response.status_code == 409
        assert response.json()["code"] == "insufficient_inventory"


# ============================================================================
# WEBHOOK
# ============================================================================

class TestWebhookEndpoint:

    @pytest.mark.asyncio
    async def test_capture_then_verify(self, client, order, webhook_body, sign_webhook, sign_payment, producer):
        raw = webhook_body("payment.captured", order["order_id"], "pay_1")

        response = await client.post(
            "/donations/webhook",
            content=raw,
            headers={"Content-Type": "application/json", "X-Razorpay-Signature": sign_webhook(raw)}
        )
        assert response.status_code == 200
        assert response.json() == {"success": True, "message": "Donation created"}

        verify = await client.post("/donations/verify-payment", json={
            "razorpayOrderId": order["order_id"],
            "razorpayPaymentId": "pay_1",
            "razorpaySignature": sign_payment(order["order_id"], "pay_1"),
            "donationData": {"donorName": "Asha Rao", "amount": 500},
        })
        assert verify.json()["already_processed"] is True
        assert verify.json()["donation"]["donor_name"] == "Asha Rao"
        assert len(producer.published) == 1

    @pytest.mark.asyncio
    async def test_first_delivery_creates_one_donation(self, client, order, webhook_body, sign_webhook,
                                                       session_factory):
        raw = webhook_body("payment.captured", order["order_id"], "pay_1")

        response = await client.post("/donations/webhook", content=raw,
                                     headers={"X-Razorpay-Signature": sign_webhook(raw)})

        assert response.status_code == 200
        assert response.json()["message"] == "Donation created"
        session = session_factory()
        try:
            donations = session.execute(select(Donation)).scalars().all()
        finally:
            session.close()
        assert len(donations) == 1
        assert donations[0].gateway_order_id == order["order_id"]
        assert donations[0].amount == Decimal("500.00")

    @pytest.mark.asyncio
    async def test_unknown_event_reference_is_flagged(self, client, webhook_body, sign_webhook, session_factory):
        created = await client.post("/donations/create-order", json={
            "amount": 500, "receiptNumber": "R2", "donationData": {"eventId": 9999}
        })
        order_id = created.json()["order_id"]
        raw = webhook_body("payment.captured", order_id, "pay_2")

        response = await client.post("/donations/webhook", content=raw,
                                     headers={"X-Razorpay-Signature": sign_webhook(raw)})

        assert response.status_code == 200
        assert response.json()["message"] == "Payment recorded, flagged for review"
        session = session_factory()
        try:
            assert session.execute(select(func.count(Donation.id))).scalar_one() == 0
        finally:
            session.close()

    @pytest.mark.asyncio
    async def test_duplicate_delivery_is_acknowledged(self, client, order, webhook_body, sign_webhook):
        raw = webhook_body("payment.captured", order["order_id"], "pay_1")
        headers = {"X-Razorpay-Signature": sign_webhook(raw)}

        await client.post("/donations/webhook", content=raw, headers=headers)
        response = await client.post("/donations/webhook", content=raw, headers=headers)

        assert response.status_code == 200
        assert response.json()["message"] == "Payment already processed"

    @pytest.mark.asyncio
    async def test_forged_webhook_is_rejected(self, client, order, webhook_body, sign_webhook):
        raw = webhook_body("payment.captured", order["order_id"], "pay_1")

        response = await client.post(
            "/donations/webhook",
            content=raw,
            headers={"X-Razorpay-Signature": sign_webhook(raw, secret="attacker")}
        )

        assert response.status_code == 400
        assert response.json()["code"] == "invalid_signature"

    @pytest.mark.asyncio
    async def test_missing_signature_header(self, client, order, webhook_body):
        raw = webhook_body("payment.captured", order["order_id"], "pay_1")

        response = await client.post("/donations/webhook", content=raw)

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_unhandled_event_is_acknowledged(self, client, order, webhook_body, sign_webhook):
        raw = webhook_body("order.notification.delivered", order["order_id"], "pay_1")

        response = await client.post("/donations/webhook", content=raw,
                                     headers={"X-Razorpay-Signature": sign_webhook(raw)})

        assert response.status_code == 200
        assert response.json()["message"] == "Event not handled"


# ============================================================================
# LEDGER INSPECTION
# ============================================================================

class TestTransactionsEndpoint:

    @pytest.mark.asyncio
    async def test_requires_operator_key(self, client, order):
        assert (await client.get("/donations/transactions")).status_code == 401
        assert (await client.get("/donations/transactions",
                                 headers={"X-Operator-Key": "guess"})).status_code == 401

    @pytest.mark.asyncio
    async def test_list_and_detail(self, client, order, webhook_body, sign_webhook):
        raw = webhook_body("payment.captured", order["order_id"], "pay_1")
        await client.post("/donations/webhook", content=raw, headers={"X-Razorpay-Signature": sign_webhook(raw)})

        listing = await client.get("/donations/transactions", headers=OPERATOR_HEADERS,
                                   params={"status": "captured"})
        assert listing.status_code == 200
        body = listing.json()
        assert body["pagination"]["total_items"] == 1
        assert body["data"][0]["processed"] is True

        detail = await client.get(f"/donations/transactions/{body['data'][0]['id']}", headers=OPERATOR_HEADERS)
        assert detail.status_code == 200
        detail_body = detail.json()
        assert detail_body["donation"]["gateway_payment_id"] == "pay_1"
        assert detail_body["metadata"]["donation_data"]["donor_name"] == "Asha Rao"
        assert [e["event"] for e in detail_body["webhook_events"]] == ["payment.captured"]

    @pytest.mark.asyncio
    async def test_unknown_transaction(self, client):
        response = await client.get("/donations/transactions/999", headers=OPERATOR_HEADERS)

        assert response.status_code == 404
        assert response.json()["code"] == "transaction_not_found"


# ============================================================================
# DONATION LINKS & WALLET
# ============================================================================

class TestDonationLinkEndpoints:

    @pytest.mark.asyncio
    async def test_active_link(self, client, make_link):
        make_link(slug="winter-2024")

        response = await client.get("/donations/links/winter-2024")

        assert response.status_code == 200
        assert response.json()["slug"] == "winter-2024"
        assert response.json()["purpose"] == "event"

    @pytest.mark.asyncio
    async def test_unknown_and_inactive_links(self, client, make_link):
        make_link(slug="paused", is_active=False)

        assert (await client.get("/donations/links/missing")).status_code == 404
        assert (await client.get("/donations/links/paused")).status_code == 404

    @pytest.mark.asyncio
    async def test_expired_link(self, client, make_link):
        make_link(slug="old", expires_in=timedelta(days=-1))

        response = await client.get("/donations/links/old")

        assert response.status_code == 410
        assert response.json()["code"] == "donation_link_expired"

    @pytest.mark.asyncio
    async def test_event_items(self, client, make_event, make_item, make_link):
        event = make_event(name="Flood Relief")
        make_item(event=event, name="Tarpaulin", total_quantity=10)
        make_link(slug="flood", event_id=event.id)

        response = await client.get("/donations/links/flood/event-items")

        assert response.status_code == 200
        body = response.json()
        assert body["event"]["name"] == "Flood Relief"
        assert body["items"][0]["name"] == "Tarpaulin"
        assert body["items"][0]["remaining_quantity"] == 10
        assert body["items"][0]["status"] == "pending"

    @pytest.mark.asyncio
    async def test_link_without_event_has_no_items(self, client, make_link):
        make_link(slug="general", event_id=None)

        response = await client.get("/donations/links/general/event-items")

        assert response.json() == {"event": None, "items": []}


class TestWalletEndpoint:

    @pytest.mark.asyncio
    async def test_wallet_sums_completed_donations(self, client, order, webhook_body, sign_webhook):
        raw = webhook_body("payment.captured", order["order_id"], "pay_1")
        await client.post("/donations/webhook", content=raw, headers={"X-Razorpay-Signature": sign_webhook(raw)})

        response = await client.get("/donations/wallet")

        assert response.status_code == 200
        assert Decimal(response.json()["total_donations"]) == Decimal("500")
        assert response.json()["donation_count"] == 1
        assert response.json()["currency"] == "INR"
