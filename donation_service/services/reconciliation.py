"""
Payment reconciliation: order creation, client verification, gateway webhooks
and the periodic sweep.

All three signal paths converge on the same ledger gate, so whichever path
reaches ``LedgerService.try_mark_processed`` first creates the Donation and
every other path returns that Donation unchanged.
"""
import asyncio
import json
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional, Tuple

import structlog
from pydantic import ValidationError
from sqlalchemy.orm import Session

from donation_service.core.config import get_settings
from donation_service.core.exceptions import (
    DonationServiceError,
    EventItemNotFound,
    EventNotFound,
    InsufficientInventory,
    InvalidPaymentRequest,
    InvalidSignature,
    PaymentNotCaptured,
)
from donation_service.database.database import SessionLocal
from donation_service.middleware.metrics import payment_signals_total
from donation_service.models import Donation, PaymentTransaction, TransactionStatus, utcnow
from donation_service.schemas import (
    CreateOrderRequest,
    CreateOrderResponse,
    DonationIntent,
    ReconciliationSummary,
    VerifyPaymentRequest,
)
from donation_service.services.gateway import RazorpayGateway
from donation_service.services.ledger import LedgerService
from donation_service.services.materializer import DonationMaterializer, MaterializeResult
from donation_service.services.signature import verify_payment_signature, verify_webhook_signature

logger = structlog.get_logger(__name__)

# Gateway entity status -> ledger status
GATEWAY_STATUS = {
    "created": TransactionStatus.CREATED,
    "authorized": TransactionStatus.AUTHORIZED,
    "captured": TransactionStatus.CAPTURED,
    "paid": TransactionStatus.CAPTURED,
    "refunded": TransactionStatus.REFUNDED,
    "failed": TransactionStatus.FAILED,
}

# Webhook event name -> ledger status, used when the entity carries no usable status
WEBHOOK_EVENT_STATUS = {
    "payment.authorized": TransactionStatus.AUTHORIZED,
    "payment.captured": TransactionStatus.CAPTURED,
    "order.paid": TransactionStatus.CAPTURED,
    "payment.failed": TransactionStatus.FAILED,
    "refund.processed": TransactionStatus.REFUNDED,
    "refund.created": TransactionStatus.REFUNDED,
}


@dataclass
class WebhookOutcome:
    message: str
    result: Optional[MaterializeResult] = None


def to_minor_units(amount: Decimal) -> int:
    """Rupees -> paise"""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def intent_from_metadata(transaction: PaymentTransaction) -> DonationIntent:
    """Donation intent captured at order creation; defaults when none was stored"""
    data = (transaction.intent_metadata or {}).get("donation_data") or {}
    try:
        return DonationIntent.model_validate(data)
    except ValidationError as e:
        logger.warning(
            "Stored donation intent is invalid, materializing with defaults",
            order_id=transaction.order_id,
            error=str(e)
        )
        return DonationIntent()


def _entity(payload: Dict[str, Any], name: str) -> Dict[str, Any]:
    entity = ((payload.get("payload") or {}).get(name) or {}).get("entity")
    return entity if isinstance(entity, dict) else {}


class ReconciliationService:
    """Entry points that turn gateway signals into ledger updates and donations"""

    @staticmethod
    async def create_order(db: Session, gateway: RazorpayGateway, request: CreateOrderRequest) -> CreateOrderResponse:
        settings = get_settings()
        amount_minor = to_minor_units(request.amount)
        if amount_minor < settings.min_order_amount_minor:
            raise InvalidPaymentRequest(
                f"Amount must be at least {Decimal(settings.min_order_amount_minor) / 100} {settings.currency}"
            )

        order = await gateway.create_order(
            amount_minor=amount_minor,
            currency=settings.currency,
            receipt=request.receipt_number,
            notes=request.notes
        )

        metadata = {
            "receipt_number": request.receipt_number,
            "notes": request.notes or {},
            "donation_data": (
                request.donation_data.model_dump(mode="json", exclude_none=True)
                if request.donation_data else None
            ),
        }
        transaction = LedgerService.create_transaction(
            db,
            order_id=order["id"],
            amount=int(order.get("amount", amount_minor)),
            currency=order.get("currency", settings.currency),
            metadata=metadata,
            receipt=order.get("receipt", request.receipt_number[:40]),
            raw_payload=order
        )

        return CreateOrderResponse(
            order_id=transaction.order_id,
            key_id=gateway.key_id,
            amount=transaction.amount,
            currency=transaction.currency,
            receipt=transaction.receipt
        )

    @staticmethod
    async def verify_payment(
        db: Session,
        gateway: RazorpayGateway,
        request: VerifyPaymentRequest,
    ) -> MaterializeResult:
        """
        Client confirmation after checkout.

        Returns the Donation for the order; ``created`` is False when an
        earlier verify call, a webhook or the sweep already materialized it.
        """
        settings = get_settings()
        order_id = request.order_id
        payment_id = request.payment_id

        if not verify_payment_signature(order_id, payment_id, request.signature, settings.razorpay_key_secret):
            payment_signals_total.labels(path="verify", outcome="invalid_signature").inc()
            logger.warning("Payment signature verification failed", order_id=order_id, payment_id=payment_id)
            raise InvalidSignature()

        new_status = TransactionStatus.CAPTURED
        payment_method = None
        raw_payload: Dict[str, Any] = {"order_id": order_id, "payment_id": payment_id, "source": "verify"}
        if settings.verify_fetch_payment:
            payment = await gateway.fetch_payment(payment_id)
            if payment.get("order_id") and payment["order_id"] != order_id:
                raise InvalidPaymentRequest(f"Payment {payment_id} does not belong to order {order_id}")
            new_status = GATEWAY_STATUS.get(payment.get("status"), TransactionStatus.CREATED)
            payment_method = payment.get("method")
            raw_payload = payment

        intent_amount = request.donation_data.amount
        transaction = LedgerService.record_status(
            db,
            order_id=order_id,
            payment_id=payment_id,
            new_status=new_status,
            raw_payload=raw_payload,
            amount=to_minor_units(intent_amount) if intent_amount is not None else None,
            payment_method=payment_method
        )

        if transaction.processed:
            existing = LedgerService.find_donation(db, order_id)
            if existing is not None:
                payment_signals_total.labels(path="verify", outcome="duplicate").inc()
                logger.info("Payment already processed", order_id=order_id, receipt_number=existing.receipt_number)
                return MaterializeResult(donation=existing, created=False)

        if transaction.status != TransactionStatus.CAPTURED:
            payment_signals_total.labels(path="verify", outcome="not_captured").inc()
            logger.warning("Payment not captured", order_id=order_id, status=transaction.status.value)
            raise PaymentNotCaptured(f"Payment not successful. Status: {transaction.status.value}")

        result = DonationMaterializer.materialize(db, transaction, request.donation_data, path="verify")
        payment_signals_total.labels(
            path="verify", outcome="materialized" if result.created else "duplicate"
        ).inc()
        return result

    @staticmethod
    def handle_webhook(db: Session, raw_body: bytes, signature: Optional[str]) -> WebhookOutcome:
        """
        Verify and apply one gateway webhook delivery.

        Raises InvalidSignature / InvalidPaymentRequest for deliveries the
        gateway must not retry; returns normally for duplicates, unhandled
        events and captures that had to be flagged for review.
        """
        settings = get_settings()

        if not signature or not verify_webhook_signature(raw_body, signature, settings.razorpay_webhook_secret):
            payment_signals_total.labels(path="webhook", outcome="invalid_signature").inc()
            logger.warning("Webhook signature verification failed", body_size=len(raw_body))
            raise InvalidSignature("Invalid webhook signature")

        try:
            payload = json.loads(raw_body)
        except (ValueError, UnicodeDecodeError) as e:
            raise InvalidPaymentRequest("Webhook body is not valid JSON") from e
        if not isinstance(payload, dict):
            raise InvalidPaymentRequest("Webhook body must be a JSON object")

        event = payload.get("event")
        payment = _entity(payload, "payment")
        order = _entity(payload, "order")
        refund = _entity(payload, "refund")

        new_status = WEBHOOK_EVENT_STATUS.get(event)
        if new_status is None:
            payment_signals_total.labels(path="webhook", outcome="ignored").inc()
            logger.info("Webhook event not handled", webhook_event=event)
            return WebhookOutcome(message="Event not handled")
        if event.startswith("payment.") and payment.get("status") in GATEWAY_STATUS:
            new_status = GATEWAY_STATUS[payment["status"]]

        payment_id = payment.get("id") or refund.get("payment_id")
        order_id = payment.get("order_id") or order.get("id")
        if not order_id and payment_id:
            known = LedgerService.get_by_payment_id(db, payment_id)
            order_id = known.order_id if known else None
        if not order_id:
            raise InvalidPaymentRequest(f"Webhook {event} carries no resolvable order id")

        logger.info("Webhook received", webhook_event=event, order_id=order_id, payment_id=payment_id)

        transaction = LedgerService.record_status(
            db,
            order_id=order_id,
            payment_id=payment_id,
            new_status=new_status,
            raw_payload=payload,
            amount=payment.get("amount") or order.get("amount"),
            currency=payment.get("currency") or order.get("currency"),
            payment_method=payment.get("method"),
            event=event
        )

        if transaction.status != TransactionStatus.CAPTURED or new_status != TransactionStatus.CAPTURED:
            payment_signals_total.labels(path="webhook", outcome="status_only").inc()
            return WebhookOutcome(message="Webhook processed")

        if transaction.processed:
            payment_signals_total.labels(path="webhook", outcome="duplicate").inc()
            logger.info("Webhook for already processed payment", order_id=order_id, webhook_event=event)
            return WebhookOutcome(message="Payment already processed")

        try:
            result = DonationMaterializer.materialize(
                db, transaction, intent_from_metadata(transaction), path="webhook"
            )
        except (InsufficientInventory, EventItemNotFound, EventNotFound):
            payment_signals_total.labels(path="webhook", outcome="flagged").inc()
            return WebhookOutcome(message="Payment recorded, flagged for review")

        payment_signals_total.labels(
            path="webhook", outcome="materialized" if result.created else "duplicate"
        ).inc()
        return WebhookOutcome(
            message="Donation created" if result.created else "Payment already processed",
            result=result
        )


def _pick_payment(payments) -> Optional[Dict[str, Any]]:
    """Captured payment if the order has one, otherwise the most recent attempt"""
    if not payments:
        return None
    for payment in payments:
        if payment.get("status") == "captured":
            return payment
    return max(payments, key=lambda p: p.get("created_at") or 0)


class ReconciliationSweep:
    """Safety net for missed webhooks: re-check stale unprocessed orders against the gateway"""

    @staticmethod
    async def run_once(
        db: Session,
        gateway: RazorpayGateway,
        age_minutes: Optional[int] = None,
        limit: int = 100,
        producer=None,
    ) -> ReconciliationSummary:
        settings = get_settings()
        age = age_minutes if age_minutes is not None else settings.reconciliation_age_minutes
        cutoff = utcnow() - timedelta(minutes=age)
        summary = ReconciliationSummary()

        for transaction in LedgerService.pending_captures(db, cutoff, limit=limit):
            summary.examined += 1
            order_id = transaction.order_id
            try:
                created, updated = await ReconciliationSweep._reconcile(db, gateway, transaction)
            except (InsufficientInventory, EventItemNotFound, EventNotFound):
                summary.failed += 1
                continue
            except DonationServiceError as e:
                logger.warning("Reconciliation failed for order", order_id=order_id, code=e.code, error=e.message)
                summary.failed += 1
                continue

            if updated:
                summary.updated += 1
            if created is not None:
                summary.materialized += 1
                if producer is not None:
                    await producer.publish_donation_completed(created)

        logger.info(
            "Reconciliation sweep finished",
            examined=summary.examined,
            materialized=summary.materialized,
            updated=summary.updated,
            failed=summary.failed
        )
        return summary

    @staticmethod
    async def _reconcile(
        db: Session,
        gateway: RazorpayGateway,
        transaction: PaymentTransaction,
    ) -> Tuple[Optional[Donation], bool]:
        order_id = transaction.order_id
        before = transaction.status

        order = await gateway.fetch_order(order_id)
        if order.get("status") == "created":
            # No checkout attempt yet
            return None, False

        payment = _pick_payment(await gateway.fetch_order_payments(order_id))
        if payment is None:
            return None, False

        new_status = GATEWAY_STATUS.get(payment.get("status"))
        if new_status is None:
            return None, False

        transaction = LedgerService.record_status(
            db,
            order_id=order_id,
            payment_id=payment.get("id"),
            new_status=new_status,
            raw_payload=payment,
            payment_method=payment.get("method")
        )
        updated = transaction.status != before

        if transaction.status != TransactionStatus.CAPTURED or transaction.processed:
            return None, updated

        result = DonationMaterializer.materialize(
            db, transaction, intent_from_metadata(transaction), path="sweep"
        )
        payment_signals_total.labels(
            path="sweep", outcome="materialized" if result.created else "duplicate"
        ).inc()
        return (result.donation if result.created else None), updated

    @staticmethod
    async def run_periodically(gateway: RazorpayGateway, interval_seconds: int, producer=None):
        """Background loop started on application startup"""
        logger.info("Reconciliation sweep started", interval_seconds=interval_seconds)
        while True:
            await asyncio.sleep(interval_seconds)
            db = SessionLocal()
            try:
                await ReconciliationSweep.run_once(db, gateway, producer=producer)
            except Exception as e:
                # Keep the loop alive; the next run retries the same orders
                logger.error("Reconciliation sweep run failed", error=str(e), exc_info=True)
            finally:
                db.close()
