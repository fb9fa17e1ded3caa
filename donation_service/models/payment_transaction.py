from sqlalchemy import Column, Integer, String, DateTime, Enum, Text, Boolean, JSON, ForeignKey, Index
from sqlalchemy.orm import relationship
import enum

from donation_service.models.base import Base, utcnow


class TransactionStatus(enum.Enum):
    """Gateway payment lifecycle, forward-only"""
    CREATED = "created"  # Order created at the gateway
    AUTHORIZED = "authorized"  # Payment authorized but not captured
    CAPTURED = "captured"  # Money captured, the only state that materializes a donation
    REFUNDED = "refunded"  # Captured payment refunded
    FAILED = "failed"  # Payment failed before capture


# Statuses a transaction may move *from* to reach the key status
ALLOWED_PREDECESSORS = {
    TransactionStatus.CREATED: frozenset(),
    TransactionStatus.AUTHORIZED: frozenset({TransactionStatus.CREATED}),
    TransactionStatus.CAPTURED: frozenset({TransactionStatus.CREATED, TransactionStatus.AUTHORIZED}),
    TransactionStatus.REFUNDED: frozenset({TransactionStatus.CAPTURED}),
    TransactionStatus.FAILED: frozenset({TransactionStatus.CREATED, TransactionStatus.AUTHORIZED}),
}


class PaymentTransaction(Base):
    """Ledger entry for one gateway order. Never deleted."""
    __tablename__ = "payment_transactions"
    __table_args__ = (
        Index("ix_payment_transactions_status_processed", "status", "processed"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    order_id = Column(String(64), unique=True, nullable=False, index=True)
    payment_id = Column(String(64), unique=True, nullable=True, index=True)
    amount = Column(Integer, nullable=False)  # minor units (paise)
    currency = Column(String(3), nullable=False, default="INR")
    status = Column(Enum(TransactionStatus), nullable=False, default=TransactionStatus.CREATED)
    payment_method = Column(String(32), nullable=True)
    receipt = Column(String(40), nullable=True)

    processed = Column(Boolean, nullable=False, default=False)
    processed_at = Column(DateTime, nullable=True)
    needs_review = Column(Boolean, nullable=False, default=False)
    error = Column(Text, nullable=True)

    # Donation intent captured at order time; "metadata" is reserved on declarative classes
    intent_metadata = Column("metadata", JSON, nullable=True)
    raw_payload = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    donation = relationship("Donation", back_populates="transaction", uselist=False)
    webhook_events = relationship(
        "WebhookEvent",
        back_populates="transaction",
        order_by="WebhookEvent.received_at",
    )

    def __repr__(self):
        return (f"<PaymentTransaction(order_id={self.order_id}, payment_id={self.payment_id}, "
                f"status='{self.status.value}', processed={self.processed})>")


class WebhookEvent(Base):
    """Journal of verified gateway events received for a transaction"""
    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    transaction_id = Column(Integer, ForeignKey("payment_transactions.id"), nullable=False, index=True)
    event = Column(String(64), nullable=False)
    payment_id = Column(String(64), nullable=True)
    payload = Column(JSON, nullable=True)
    received_at = Column(DateTime, default=utcnow, nullable=False)

    transaction = relationship("PaymentTransaction", back_populates="webhook_events")

    def __repr__(self):
        return f"<WebhookEvent(event={self.event}, transaction_id={self.transaction_id})>"
