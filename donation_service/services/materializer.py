"""
Donation materialization: turn a captured ledger entry into exactly one Donation.

One database transaction per attempt:

1. pass the ledger gate (conditional ``processed`` false -> true);
2. reserve item stock with a conditional increment;
3. insert the Donation with a fresh receipt number and bump link/item counters;
4. commit.

The gate is the first write, so concurrent signals for the same order are
serialized on it and a loser never touches inventory. Any failure after
step 1 rolls the whole transaction back: the reservation is released and
``processed`` stays false, so a later signal can retry.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

import structlog
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from donation_service.core.config import get_settings
from donation_service.core.exceptions import (
    EventItemNotFound,
    EventNotFound,
    InsufficientInventory,
    LedgerWriteConflict,
)
from donation_service.middleware.metrics import donations_materialized_total
from donation_service.models import (
    Donation,
    DonationPurpose,
    DonationStatus,
    DonationType,
    Event,
    PaymentMode,
    PaymentTransaction,
)
from donation_service.schemas import DonationIntent
from donation_service.services.donation_link import DonationLinkService
from donation_service.services.inventory import InventoryService
from donation_service.services.ledger import LedgerService
from donation_service.services.receipts import generate_receipt_number

logger = structlog.get_logger(__name__)


@dataclass
class ResolvedIntent:
    donor_name: str
    purpose: DonationPurpose
    event_id: Optional[int]
    event_item_id: Optional[int]
    item_quantity: int
    donation_type: DonationType
    is_anonymous: bool
    donation_link_slug: Optional[str]

    @property
    def reserves_inventory(self) -> bool:
        return (self.donation_type == DonationType.ITEM_SPECIFIC
                and self.event_item_id is not None
                and self.item_quantity > 0)


@dataclass
class MaterializeResult:
    donation: Donation
    created: bool


def amount_from_minor(amount_minor: int) -> Decimal:
    return (Decimal(amount_minor) / Decimal(100)).quantize(Decimal("0.01"))


def is_receipt_collision(error: IntegrityError) -> bool:
    # SQLite names the column, PostgreSQL the ix_donations_receipt_number index
    return "receipt_number" in str(error.orig)


class DonationMaterializer:
    """Creates the Donation for a captured transaction, once"""

    @staticmethod
    def resolve_intent(db: Session, intent: DonationIntent) -> ResolvedIntent:
        purpose = intent.purpose
        event_id = intent.event_id
        slug = intent.donation_link_slug

        if slug:
            link = DonationLinkService.find_by_slug(db, slug)
            if link is None:
                logger.warning("Donation references unknown link", slug=slug)
                slug = None
            else:
                # Captured money is kept even when the link has since expired
                if link.is_expired() or not link.is_active:
                    logger.info("Donation arrived through an inactive or expired link", slug=slug)
                purpose = purpose or link.purpose
                event_id = event_id or link.event_id

        donation_type = intent.donation_type
        if intent.event_item_id is not None:
            donation_type = donation_type or DonationType.ITEM_SPECIFIC
            item = InventoryService.get_item(db, intent.event_item_id)
            if event_id is None:
                event_id = item.event_id

        if event_id is not None and db.get(Event, event_id) is None:
            raise EventNotFound(f"Event {event_id} not found")

        if purpose is None:
            purpose = DonationPurpose.EVENT if event_id is not None else DonationPurpose.GENERAL

        return ResolvedIntent(
            donor_name=intent.donor_name or "Anonymous",
            purpose=purpose,
            event_id=event_id,
            event_item_id=intent.event_item_id,
            item_quantity=intent.item_quantity or 0,
            donation_type=donation_type or DonationType.GENERAL,
            is_anonymous=intent.is_anonymous,
            donation_link_slug=slug,
        )

    @staticmethod
    def materialize(
        db: Session,
        transaction: PaymentTransaction,
        intent: DonationIntent,
        path: str = "verify",
    ) -> MaterializeResult:
        """Returns the Donation and whether this call created it; path labels the signal (verify, webhook, sweep)"""
        order_id = transaction.order_id
        amount = amount_from_minor(transaction.amount)

        if intent.amount is not None and Decimal(intent.amount) != amount:
            logger.warning(
                "Donation intent amount differs from captured amount, using captured amount",
                order_id=order_id,
                intent_amount=str(intent.amount),
                captured_amount=str(amount)
            )

        try:
            resolved = DonationMaterializer.resolve_intent(db, intent)
        except (EventNotFound, EventItemNotFound) as e:
            db.rollback()
            LedgerService.flag_for_review(db, order_id, e.message)
            raise

        try:
            donation = DonationMaterializer._persist(db, order_id, resolved, amount)
        except InsufficientInventory as e:
            db.rollback()
            LedgerService.flag_for_review(db, order_id, e.message)
            raise
        except OperationalError as e:
            db.rollback()
            logger.error("Materialization hit a write conflict", order_id=order_id, error=str(e.orig))
            raise LedgerWriteConflict(f"Could not materialize order {order_id}, please retry") from e
        except Exception as e:
            db.rollback()
            logger.warning(
                "Materialization rolled back",
                order_id=order_id,
                item_id=resolved.event_item_id,
                quantity=resolved.item_quantity if resolved.reserves_inventory else 0,
                error=str(e)
            )
            raise

        if donation is None:
            existing = LedgerService.find_donation(db, order_id)
            logger.info("Payment already materialized", order_id=order_id, path=path,
                        receipt_number=existing.receipt_number if existing else None)
            return MaterializeResult(donation=existing, created=False)

        donations_materialized_total.labels(path=path).inc()
        logger.info(
            "Donation materialized",
            order_id=order_id,
            path=path,
            payment_id=donation.gateway_payment_id,
            receipt_number=donation.receipt_number,
            amount=str(donation.amount),
            donation_type=donation.donation_type.value
        )
        return MaterializeResult(donation=donation, created=True)

    @staticmethod
    def _persist(db: Session, order_id: str, resolved: ResolvedIntent, amount: Decimal) -> Optional[Donation]:
        """Gate, reservation and insert in one transaction; None when another caller already holds the gate"""
        settings = get_settings()
        for attempt in range(1, settings.receipt_max_attempts + 1):
            gate = LedgerService.try_mark_processed(db, order_id)
            if gate.already_processed:
                db.rollback()
                return None

            if resolved.reserves_inventory:
                reservation = InventoryService.reserve(
                    db, resolved.event_item_id, resolved.item_quantity, commit=False
                )
                if not reservation.ok:
                    raise InsufficientInventory(
                        f"Insufficient inventory for item {resolved.event_item_id}: "
                        f"requested {resolved.item_quantity}, remaining {reservation.remaining}",
                        item_id=resolved.event_item_id,
                        remaining=reservation.remaining
                    )

            donation = Donation(
                receipt_number=generate_receipt_number(db, settings.receipt_prefix),
                donor_name=resolved.donor_name,
                amount=amount,
                purpose=resolved.purpose,
                payment_mode=PaymentMode.RAZORPAY,
                status=DonationStatus.COMPLETED,
                is_anonymous=resolved.is_anonymous,
                donation_type=resolved.donation_type,
                event_id=resolved.event_id,
                event_item_id=resolved.event_item_id,
                item_quantity=resolved.item_quantity,
                donation_link_slug=resolved.donation_link_slug,
                transaction_id=gate.transaction.id,
                gateway_order_id=order_id,
                gateway_payment_id=gate.transaction.payment_id,
            )
            db.add(donation)
            if resolved.donation_link_slug:
                DonationLinkService.record_donation(db, resolved.donation_link_slug, amount)
            if resolved.event_item_id is not None and resolved.donation_type == DonationType.ITEM_SPECIFIC:
                InventoryService.add_donated_amount(db, resolved.event_item_id, amount)

            try:
                db.commit()
            except IntegrityError as e:
                db.rollback()
                if not is_receipt_collision(e):
                    raise
                logger.warning(
                    "Donation insert collided, retrying",
                    order_id=order_id,
                    receipt_number=donation.receipt_number,
                    attempt=attempt,
                    error=str(e.orig)
                )
                continue

            db.refresh(donation)
            return donation

        raise LedgerWriteConflict(f"Could not allocate a receipt number for order {order_id}")
