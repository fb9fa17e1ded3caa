from datetime import date
from typing import Optional

from sqlalchemy import select, func
from sqlalchemy.orm import Session

from donation_service.models import Donation, utcnow


def receipt_prefix_for(prefix: str, day: date) -> str:
    return f"{prefix}-{day.strftime('%Y%m%d')}-"


def generate_receipt_number(db: Session, prefix: str, day: Optional[date] = None) -> str:
    """
    Next receipt number for the day, e.g. ``KSS-20240115-00001``.

    Two concurrent callers can compute the same number; the unique index on
    ``donations.receipt_number`` rejects the loser, which retries.
    """
    day_prefix = receipt_prefix_for(prefix, day or utcnow().date())
    last = db.execute(
        select(func.max(Donation.receipt_number))
        .where(Donation.receipt_number.like(f"{day_prefix}%"))
    ).scalar_one_or_none()

    sequence = 1
    if last:
        try:
            sequence = int(last.rsplit("-", 1)[1]) + 1
        except (IndexError, ValueError):
            sequence = 1
    return f"{day_prefix}{sequence:05d}"
