from dataclasses import dataclass
from decimal import Decimal
from typing import List

import structlog
from sqlalchemy import update, select
from sqlalchemy.orm import Session

from donation_service.core.exceptions import EventItemNotFound, InvalidPaymentRequest
from donation_service.core.retry import run_with_retries
from donation_service.middleware.metrics import inventory_reservations_total
from donation_service.models import EventItem, utcnow

logger = structlog.get_logger(__name__)


@dataclass
class ReservationResult:
    ok: bool
    remaining: int


class InventoryService:
    """Quantity-safe reservation against event item stock"""

    @staticmethod
    def reserve(db: Session, item_id: int, quantity: int, commit: bool = True) -> ReservationResult:
        """
        Claim quantity units of an item. The bound check and the increment are
        one conditional UPDATE, so concurrent donors can never push
        donated_quantity past total_quantity.

        With commit=True the reservation is committed on its own and undone
        with release(). With commit=False it joins the caller's transaction
        and the caller's rollback undoes it.
        """
        if quantity <= 0:
            raise InvalidPaymentRequest("Item quantity must be at least 1")

        def _reserve() -> bool:
            result = db.execute(
                update(EventItem)
                .where(
                    EventItem.id == item_id,
                    EventItem.donated_quantity + quantity <= EventItem.total_quantity,
                )
                .values(
                    donated_quantity=EventItem.donated_quantity + quantity,
                    updated_at=utcnow()
                )
                .execution_options(synchronize_session=False)
            )
            if commit:
                db.commit()
            return result.rowcount == 1

        if commit:
            ok = run_with_retries(db, _reserve, f"reserve(item={item_id})")
        else:
            ok = _reserve()

        item = db.get(EventItem, item_id, populate_existing=True)
        if item is None:
            raise EventItemNotFound(f"Event item {item_id} not found")

        inventory_reservations_total.labels(outcome="reserved" if ok else "refused").inc()
        if ok:
            logger.info("Item quantity reserved", item_id=item_id, quantity=quantity,
                        remaining=item.remaining_quantity)
        else:
            logger.warning("Item reservation refused", item_id=item_id, quantity=quantity,
                           remaining=item.remaining_quantity)
        return ReservationResult(ok=ok, remaining=item.remaining_quantity)

    @staticmethod
    def release(db: Session, item_id: int, quantity: int) -> int:
        """Compensate a committed reservation whose materialization failed"""
        def _release() -> bool:
            result = db.execute(
                update(EventItem)
                .where(
                    EventItem.id == item_id,
                    EventItem.donated_quantity >= quantity,
                )
                .values(
                    donated_quantity=EventItem.donated_quantity - quantity,
                    updated_at=utcnow()
                )
                .execution_options(synchronize_session=False)
            )
            db.commit()
            return result.rowcount == 1

        released = run_with_retries(db, _release, f"release(item={item_id})")
        item = db.get(EventItem, item_id, populate_existing=True)
        remaining = item.remaining_quantity if item is not None else 0

        inventory_reservations_total.labels(outcome="released" if released else "release_failed").inc()
        if released:
            logger.info("Item reservation released", item_id=item_id, quantity=quantity, remaining=remaining)
        else:
            logger.error("Item reservation could not be released", item_id=item_id, quantity=quantity)
        return remaining

    @staticmethod
    def add_donated_amount(db: Session, item_id: int, amount: Decimal) -> None:
        """Accumulate an item's donated amount inside the caller's transaction"""
        db.execute(
            update(EventItem)
            .where(EventItem.id == item_id)
            .values(donated_amount=EventItem.donated_amount + amount, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )

    @staticmethod
    def get_item(db: Session, item_id: int) -> EventItem:
        item = db.get(EventItem, item_id)
        if item is None:
            raise EventItemNotFound(f"Event item {item_id} not found")
        return item

    @staticmethod
    def get_event_items(db: Session, event_id: int, limit: int = 100) -> List[EventItem]:
        return list(db.execute(
            select(EventItem)
            .where(EventItem.event_id == event_id)
            .order_by(EventItem.id)
            .limit(limit)
        ).scalars().all())
