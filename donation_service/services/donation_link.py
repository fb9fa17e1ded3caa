from decimal import Decimal
from typing import Optional

import structlog
from sqlalchemy import select, update, func
from sqlalchemy.orm import Session

from donation_service.core.exceptions import DonationLinkNotFound, DonationLinkExpired
from donation_service.models import Donation, DonationLink, DonationStatus, Event, utcnow
from donation_service.schemas import (
    DonationLinkEventItemsResponse,
    EventItemResponse,
    EventSummary,
    WalletResponse,
)
from donation_service.services.inventory import InventoryService

logger = structlog.get_logger(__name__)


class DonationLinkService:
    """Read side of shareable donation links"""

    @staticmethod
    def find_by_slug(db: Session, slug: str) -> Optional[DonationLink]:
        return db.execute(select(DonationLink).where(DonationLink.slug == slug)).scalar_one_or_none()

    @staticmethod
    def get_active_link(db: Session, slug: str) -> DonationLink:
        """Public lookup: unknown or inactive is 404, expired is 410"""
        link = DonationLinkService.find_by_slug(db, slug)
        if link is None or not link.is_active:
            logger.warning("Donation link not found", slug=slug)
            raise DonationLinkNotFound()
        if link.is_expired():
            logger.info("Donation link expired", slug=slug)
            raise DonationLinkExpired()
        return link

    @staticmethod
    def get_event_items(db: Session, slug: str) -> DonationLinkEventItemsResponse:
        link = DonationLinkService.get_active_link(db, slug)
        if link.event_id is None:
            return DonationLinkEventItemsResponse(event=None, items=[])

        event = db.get(Event, link.event_id)
        items = InventoryService.get_event_items(db, link.event_id)
        return DonationLinkEventItemsResponse(
            event=EventSummary.model_validate(event) if event else None,
            items=[EventItemResponse.model_validate(item) for item in items]
        )

    @staticmethod
    def record_donation(db: Session, slug: str, amount: Decimal) -> None:
        """Bump link counters inside the caller's transaction"""
        db.execute(
            update(DonationLink)
            .where(DonationLink.slug == slug)
            .values(
                donation_count=DonationLink.donation_count + 1,
                total_amount=DonationLink.total_amount + amount,
                updated_at=utcnow()
            )
            .execution_options(synchronize_session=False)
        )


class WalletService:
    """Wallet balance derived from the donation ledger on every read"""

    @staticmethod
    def get_wallet(db: Session, currency: str) -> WalletResponse:
        total, count = db.execute(
            select(func.coalesce(func.sum(Donation.amount), 0), func.count(Donation.id))
            .where(Donation.status == DonationStatus.COMPLETED)
        ).one()
        return WalletResponse(
            total_donations=Decimal(str(total)),
            donation_count=count,
            currency=currency
        )
