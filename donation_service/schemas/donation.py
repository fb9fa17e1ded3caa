import json
from datetime import datetime
from decimal import Decimal
from typing import Any, List, Optional

from pydantic import BaseModel, Field, AliasChoices, field_validator

from donation_service.models import DonationPurpose, DonationStatus, DonationType, PaymentMode


def parse_json_object(value: Any) -> Any:
    """Accept an object either as JSON or as a JSON-encoded string"""
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return None
        try:
            value = json.loads(stripped)
        except json.JSONDecodeError as e:
            raise ValueError(f"not a valid JSON object: {e.msg}") from e
        if not isinstance(value, dict):
            raise ValueError("expected a JSON object")
    return value


class DonationIntent(BaseModel):
    """What the donor meant to give; carried from checkout or from order metadata"""
    donor_name: Optional[str] = Field(
        None, max_length=255,
        validation_alias=AliasChoices("donorName", "donor_name")
    )
    amount: Optional[Decimal] = Field(None, gt=0, description="Amount in rupees")
    purpose: Optional[DonationPurpose] = None
    event_id: Optional[int] = Field(None, validation_alias=AliasChoices("eventId", "event_id"))
    event_item_id: Optional[int] = Field(
        None, validation_alias=AliasChoices("eventItemId", "event_item_id")
    )
    item_quantity: int = Field(
        0, ge=0, validation_alias=AliasChoices("itemQuantity", "item_quantity")
    )
    donation_type: Optional[DonationType] = Field(
        None, validation_alias=AliasChoices("donationType", "donation_type")
    )
    is_anonymous: bool = Field(False, validation_alias=AliasChoices("isAnonymous", "is_anonymous"))
    donation_link_slug: Optional[str] = Field(
        None, max_length=64,
        validation_alias=AliasChoices("donationLinkSlug", "donation_link_slug", "slug")
    )

    @field_validator("donor_name", "donation_link_slug", mode="before")
    @classmethod
    def blank_to_none(cls, value):
        if isinstance(value, str):
            value = value.strip()
            return value or None
        return value

    @field_validator("event_id", "event_item_id", mode="before")
    @classmethod
    def empty_id_to_none(cls, value):
        if value == "":
            return None
        return value

    class Config:
        populate_by_name = True
        json_schema_extra = {
            "example": {
                "donorName": "Asha Rao",
                "amount": 500,
                "purpose": "event",
                "eventId": 3,
                "eventItemId": 12,
                "itemQuantity": 2,
                "isAnonymous": False,
                "donationLinkSlug": "9f2c1ab4de67f011"
            }
        }


class DonationResponse(BaseModel):
    """Schema for donation responses"""
    id: int
    receipt_number: str
    donor_name: str
    amount: Decimal
    purpose: DonationPurpose
    payment_mode: PaymentMode
    status: DonationStatus
    is_anonymous: bool
    donation_type: DonationType
    event_id: Optional[int]
    event_item_id: Optional[int]
    item_quantity: int
    donation_link_slug: Optional[str]
    gateway_order_id: Optional[str]
    gateway_payment_id: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


class DonationLinkResponse(BaseModel):
    slug: str
    title: str
    description: Optional[str]
    purpose: DonationPurpose
    event_id: Optional[int]
    suggested_amount: Optional[Decimal]
    expires_at: Optional[datetime]
    donation_count: int
    total_amount: Decimal

    class Config:
        from_attributes = True


class EventSummary(BaseModel):
    id: int
    name: str

    class Config:
        from_attributes = True


class EventItemResponse(BaseModel):
    id: int
    event_id: int
    name: str
    description: Optional[str]
    priority: str
    unit_price: Decimal
    total_quantity: int
    donated_quantity: int
    remaining_quantity: int
    total_amount: Decimal
    donated_amount: Decimal
    remaining_amount: Decimal
    completion_percentage: float
    status: str

    class Config:
        from_attributes = True


class DonationLinkEventItemsResponse(BaseModel):
    event: Optional[EventSummary]
    items: List[EventItemResponse]


class WalletResponse(BaseModel):
    """Derived on read from completed donations"""
    total_donations: Decimal
    donation_count: int
    currency: str
