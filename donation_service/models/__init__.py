from .base import Base, utcnow
from .payment_transaction import PaymentTransaction, WebhookEvent, TransactionStatus, ALLOWED_PREDECESSORS
from .donation import Donation, DonationPurpose, PaymentMode, DonationStatus, DonationType
from .donation_link import DonationLink
from .event import Event, EventItem

__all__ = [
    "Base",
    "utcnow",
    "PaymentTransaction",
    "WebhookEvent",
    "TransactionStatus",
    "ALLOWED_PREDECESSORS",
    "Donation",
    "DonationPurpose",
    "PaymentMode",
    "DonationStatus",
    "DonationType",
    "DonationLink",
    "Event",
    "EventItem",
]
