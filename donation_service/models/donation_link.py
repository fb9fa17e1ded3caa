import secrets
from sqlalchemy import Column, Integer, String, Numeric, DateTime, Enum, Boolean, ForeignKey, Text
from sqlalchemy.orm import relationship

from donation_service.models.base import Base, utcnow
from donation_service.models.donation import DonationPurpose


def generate_slug() -> str:
    return secrets.token_hex(8)


class DonationLink(Base):
    """Shareable public donation link"""
    __tablename__ = "donation_links"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    slug = Column(String(64), unique=True, nullable=False, index=True, default=generate_slug)
    title = Column(String(255), nullable=False, default="Support Our Cause")
    description = Column(Text, nullable=True)
    purpose = Column(Enum(DonationPurpose), nullable=False, default=DonationPurpose.GENERAL)
    event_id = Column(Integer, ForeignKey("events.id"), nullable=True)
    suggested_amount = Column(Numeric(12, 2), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    expires_at = Column(DateTime, nullable=True)

    donation_count = Column(Integer, nullable=False, default=0)
    total_amount = Column(Numeric(14, 2), nullable=False, default=0)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    event = relationship("Event")

    def is_expired(self, now=None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at < (now or utcnow())

    def __repr__(self):
        return f"<DonationLink(slug={self.slug}, purpose='{self.purpose.value}')>"
