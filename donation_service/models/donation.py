from sqlalchemy import Column, Integer, String, Numeric, DateTime, Enum, Boolean, ForeignKey
from sqlalchemy.orm import relationship
import enum

from donation_service.models.base import Base, utcnow


class DonationPurpose(enum.Enum):
    EVENT = "event"
    GENERAL = "general"
    EMERGENCY = "emergency"


class PaymentMode(enum.Enum):
    UPI = "upi"
    CASH = "cash"
    BANK = "bank"
    RAZORPAY = "razorpay"


class DonationStatus(enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"


class DonationType(enum.Enum):
    GENERAL = "general"
    ITEM_SPECIFIC = "item_specific"
    EXPENSE_SPECIFIC = "expense_specific"


class Donation(Base):
    """Durable donation record, one per captured gateway transaction"""
    __tablename__ = "donations"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    receipt_number = Column(String(32), unique=True, nullable=False, index=True)
    donor_name = Column(String(255), nullable=False, default="Anonymous")
    amount = Column(Numeric(12, 2), nullable=False)  # major units (rupees)
    purpose = Column(Enum(DonationPurpose), nullable=False, default=DonationPurpose.GENERAL)
    payment_mode = Column(Enum(PaymentMode), nullable=False)
    status = Column(Enum(DonationStatus), nullable=False, default=DonationStatus.COMPLETED)
    is_anonymous = Column(Boolean, nullable=False, default=False)
    donation_type = Column(Enum(DonationType), nullable=False, default=DonationType.GENERAL)

    event_id = Column(Integer, ForeignKey("events.id"), nullable=True, index=True)
    event_item_id = Column(Integer, ForeignKey("event_items.id"), nullable=True, index=True)
    item_quantity = Column(Integer, nullable=False, default=0)
    donation_link_slug = Column(String(64), nullable=True, index=True)

    # Unique: a transaction can never back two donations
    transaction_id = Column(Integer, ForeignKey("payment_transactions.id"), unique=True, nullable=True)
    gateway_order_id = Column(String(64), nullable=True, index=True)
    gateway_payment_id = Column(String(64), nullable=True, index=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    transaction = relationship("PaymentTransaction", back_populates="donation")
    event_item = relationship("EventItem")

    def __repr__(self):
        return (f"<Donation(receipt_number={self.receipt_number}, amount={self.amount}, "
                f"status='{self.status.value}')>")
