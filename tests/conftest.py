"""
Shared fixtures: a real SQLite database file per test, seed factories,
signing helpers and an in-memory payment gateway.
"""
import json
import os
import sys
import tempfile
from datetime import timedelta
from decimal import Decimal
from pathlib import Path
# Add parent folder (project root) to sys.path so local modules can be imported
PROJECT_ROOT = Path(__file__).resolve().parents[1]
proj_root_str = str(PROJECT_ROOT)
if proj_root_str not in sys.path:
    sys.path.insert(0, proj_root_str)

# Settings are cached on first use, so the environment is prepared before any import
os.environ.setdefault("RAZORPAY_KEY_ID", "rzp_test_key")
os.environ.setdefault("RAZORPAY_KEY_SECRET", "test_key_secret")
os.environ.setdefault("RAZORPAY_WEBHOOK_SECRET", "test_webhook_secret")
os.environ.setdefault("OPERATOR_API_KEY", "test-operator-key")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{Path(tempfile.gettempdir()) / 'donation_service_test.db'}")

import pytest
from sqlalchemy.orm import sessionmaker

from donation_service.core.config import get_settings
from donation_service.core.exceptions import InvalidPaymentRequest
from donation_service.database.database import build_engine
from donation_service.models import Base, DonationLink, DonationPurpose, Event, EventItem, utcnow
from donation_service.services.gateway import gateway_circuit_breaker
from donation_service.services.ledger import LedgerService
from donation_service.services.signature import compute_signature, payment_signature_payload


# ============================================================================
# DATABASE
# ============================================================================

@pytest.fixture
def engine(tmp_path):
    """Fresh SQLite database file; conditional UPDATEs and unique keys behave as in production"""
    test_engine = build_engine(f"sqlite:///{tmp_path / 'donations.db'}")
    Base.metadata.create_all(bind=test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture(autouse=True)
def reset_gateway_breaker():
    gateway_circuit_breaker.reset()
    yield
    gateway_circuit_breaker.reset()


@pytest.fixture
def settings():
    return get_settings()


# ============================================================================
# SEED FACTORIES
# ============================================================================

@pytest.fixture
def make_event(db):
    def _make(name="Winter Relief Drive"):
        event = Event(name=name)
        db.add(event)
        db.commit()
        db.refresh(event)
        return event
    return _make


@pytest.fixture
def make_item(db, make_event):
    """Event item with a finite quantity"""
    def _make(total_quantity=5, unit_price=Decimal("100.00"), event=None, name="Blanket"):
        event = event or make_event()
        item = EventItem(
            event_id=event.id,
            name=name,
            unit_price=unit_price,
            total_quantity=total_quantity,
            donated_quantity=0,
            total_amount=unit_price * total_quantity,
            donated_amount=Decimal("0"),
        )
        db.add(item)
        db.commit()
        db.refresh(item)
        return item
    return _make


@pytest.fixture
def make_link(db):
    def _make(slug="winter-2024", purpose=DonationPurpose.EVENT, event_id=None,
              is_active=True, expires_in=timedelta(days=30)):
        link = DonationLink(
            slug=slug,
            title="Keep a family warm",
            purpose=purpose,
            event_id=event_id,
            suggested_amount=Decimal("500.00"),
            is_active=is_active,
            expires_at=utcnow() + expires_in if expires_in is not None else None,
            donation_count=0,
            total_amount=Decimal("0"),
        )
        db.add(link)
        db.commit()
        db.refresh(link)
        return link
    return _make


@pytest.fixture
def make_transaction(db):
    """Ledger entry as create-order leaves it"""
    counter = {"n": 0}

    def _make(order_id=None, amount=50000, donation_data=None, receipt="R1"):
        counter["n"] += 1
        return LedgerService.create_transaction(
            db,
            order_id=order_id or f"order_seed{counter['n']:04d}",
            amount=amount,
            currency="INR",
            metadata={"receipt_number": receipt, "notes": {}, "donation_data": donation_data},
            receipt=receipt,
        )
    return _make


# ============================================================================
# SIGNING HELPERS
# ============================================================================

@pytest.fixture
def sign_payment(settings):
    """Signature the checkout widget hands back to the client"""
    def _sign(order_id, payment_id, secret=None):
        return compute_signature(
            payment_signature_payload(order_id, payment_id),
            secret or settings.razorpay_key_secret
        )
    return _sign


@pytest.fixture
def webhook_body():
    """Raw webhook body as the gateway sends it"""
    def _body(event, order_id, payment_id, amount=50000, status=None, method="upi"):
        payment_status = status or {
            "payment.captured": "captured",
            "payment.authorized": "authorized",
            "payment.failed": "failed",
            "order.paid": "captured",
        }.get(event, "captured")
        payload = {
            "entity": "event",
            "event": event,
            "contains": ["payment"],
            "payload": {
                "payment": {
                    "entity": {
                        "id": payment_id,
                        "entity": "payment",
                        "amount": amount,
                        "currency": "INR",
                        "status": payment_status,
                        "order_id": order_id,
                        "method": method,
                    }
                }
            },
            "created_at": 1700000000,
        }
        if event.startswith("refund."):
            payload["contains"] = ["refund", "payment"]
            payload["payload"]["refund"] = {
                "entity": {"id": f"rfnd_{payment_id}", "payment_id": payment_id, "amount": amount}
            }
        return json.dumps(payload, separators=(",", ":")).encode("utf-8")
    return _body


@pytest.fixture
def sign_webhook(settings):
    def _sign(raw_body, secret=None):
        return compute_signature(raw_body, secret or settings.razorpay_webhook_secret)
    return _sign


# ============================================================================
# GATEWAY
# ============================================================================

class FakeGateway:
    """In-memory stand-in for RazorpayGateway"""

    def __init__(self, key_id="rzp_test_key"):
        self.key_id = key_id
        self.orders = {}
        self.payments = {}
        self.fail_with = None

    async def create_order(self, amount_minor, currency, receipt, notes=None):
        if self.fail_with is not None:
            raise self.fail_with
        order_id = f"order_fake{len(self.orders) + 1:04d}"
        order = {
            "id": order_id,
            "entity": "order",
            "amount": amount_minor,
            "currency": currency,
            "receipt": receipt[:40],
            "status": "created",
            "notes": {k: str(v) for k, v in (notes or {}).items()},
        }
        self.orders[order_id] = order
        return order

    def add_payment(self, order_id, payment_id, status="captured", amount=50000, method="upi", created_at=1700000000):
        self.payments[payment_id] = {
            "id": payment_id,
            "entity": "payment",
            "order_id": order_id,
            "amount": amount,
            "currency": "INR",
            "status": status,
            "method": method,
            "created_at": created_at,
        }
        order = self.orders.get(order_id)
        if order is not None and order["status"] != "paid":
            order["status"] = "paid" if status == "captured" else "attempted"
        return self.payments[payment_id]

    async def fetch_payment(self, payment_id):
        if payment_id not in self.payments:
            raise InvalidPaymentRequest(f"The id provided does not exist: {payment_id}")
        return self.payments[payment_id]

    async def fetch_order(self, order_id):
        if order_id not in self.orders:
            raise InvalidPaymentRequest(f"The id provided does not exist: {order_id}")
        return self.orders[order_id]

    async def fetch_order_payments(self, order_id):
        return [p for p in self.payments.values() if p["order_id"] == order_id]


@pytest.fixture
def gateway():
    return FakeGateway()
