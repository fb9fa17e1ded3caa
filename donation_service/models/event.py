from decimal import Decimal
from sqlalchemy import Column, Integer, String, Numeric, DateTime, ForeignKey, Text, CheckConstraint
from sqlalchemy.orm import relationship

from donation_service.models.base import Base, utcnow


class Event(Base):
    """Event owned by the events subsystem; only what donations need"""
    __tablename__ = "events"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    items = relationship("EventItem", back_populates="event")

    def __repr__(self):
        return f"<Event(id={self.id}, name={self.name})>"


class EventItem(Base):
    """Donatable item with a finite quantity"""
    __tablename__ = "event_items"
    __table_args__ = (
        CheckConstraint("donated_quantity >= 0", name="ck_event_items_donated_nonneg"),
        CheckConstraint("donated_quantity <= total_quantity", name="ck_event_items_no_oversell"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    event_id = Column(Integer, ForeignKey("events.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    priority = Column(String(16), nullable=False, default="medium")
    unit_price = Column(Numeric(12, 2), nullable=False)
    total_quantity = Column(Integer, nullable=False)
    donated_quantity = Column(Integer, nullable=False, default=0)
    total_amount = Column(Numeric(14, 2), nullable=False)
    donated_amount = Column(Numeric(14, 2), nullable=False, default=0)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    event = relationship("Event", back_populates="items")

    @property
    def remaining_quantity(self) -> int:
        return max(0, self.total_quantity - (self.donated_quantity or 0))

    @property
    def remaining_amount(self) -> Decimal:
        return max(Decimal("0"), Decimal(self.total_amount) - Decimal(self.donated_amount or 0))

    @property
    def completion_percentage(self) -> float:
        if not self.total_amount:
            return 0.0
        return min(100.0, float(Decimal(self.donated_amount or 0) / Decimal(self.total_amount) * 100))

    @property
    def status(self) -> str:
        if Decimal(self.donated_amount or 0) >= Decimal(self.total_amount):
            return "completed"
        if (self.donated_amount or 0) > 0:
            return "partial"
        return "pending"

    def __repr__(self):
        return (f"<EventItem(id={self.id}, donated={self.donated_quantity}/"
                f"{self.total_quantity})>")
