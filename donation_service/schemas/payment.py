from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, AliasChoices, field_validator

from donation_service.models import TransactionStatus
from donation_service.schemas.donation import DonationIntent, DonationResponse, parse_json_object


class CreateOrderRequest(BaseModel):
    """Schema for creating a hosted gateway order"""
    amount: Decimal = Field(..., gt=0, description="Amount in rupees")
    receipt_number: str = Field(
        ..., min_length=1, max_length=64,
        validation_alias=AliasChoices("receiptNumber", "receipt_number", "receipt")
    )
    notes: Optional[Dict[str, Any]] = None
    donation_data: Optional[DonationIntent] = Field(
        None, validation_alias=AliasChoices("donationData", "donation_data")
    )

    @field_validator("receipt_number", mode="before")
    @classmethod
    def strip_receipt(cls, value):
        return value.strip() if isinstance(value, str) else value

    @field_validator("notes", "donation_data", mode="before")
    @classmethod
    def decode_json(cls, value):
        return parse_json_object(value)

    class Config:
        populate_by_name = True
        json_schema_extra = {
            "example": {
                "amount": 500,
                "receiptNumber": "R1",
                "notes": {"campaign": "winter-relief"},
                "donationData": {"donorName": "Asha Rao", "amount": 500, "purpose": "general"}
            }
        }


class CreateOrderResponse(BaseModel):
    success: bool = True
    order_id: str
    key_id: str
    amount: int = Field(..., description="Amount in paise")
    currency: str
    receipt: Optional[str] = None


class VerifyPaymentRequest(BaseModel):
    """Schema for the client confirmation call after checkout"""
    donation_data: DonationIntent = Field(
        ..., validation_alias=AliasChoices("donationData", "donation_data")
    )
    order_id: str = Field(
        ..., min_length=1,
        validation_alias=AliasChoices("razorpayOrderId", "razorpay_order_id", "orderId", "order_id")
    )
    payment_id: str = Field(
        ..., min_length=1,
        validation_alias=AliasChoices("razorpayPaymentId", "razorpay_payment_id", "paymentId", "payment_id")
    )
    signature: str = Field(
        ..., min_length=1,
        validation_alias=AliasChoices("razorpaySignature", "razorpay_signature", "signature")
    )

    @field_validator("donation_data", mode="before")
    @classmethod
    def decode_json(cls, value):
        return parse_json_object(value)

    @field_validator("order_id", "payment_id", "signature", mode="before")
    @classmethod
    def strip_ids(cls, value):
        return value.strip() if isinstance(value, str) else value

    class Config:
        populate_by_name = True


class VerifyPaymentResponse(BaseModel):
    success: bool = True
    already_processed: bool
    donation: DonationResponse


class WebhookResponse(BaseModel):
    success: bool
    message: str


class WebhookEventResponse(BaseModel):
    event: str
    payment_id: Optional[str]
    received_at: datetime

    class Config:
        from_attributes = True


class PaymentTransactionResponse(BaseModel):
    id: int
    order_id: str
    payment_id: Optional[str]
    amount: int
    currency: str
    status: TransactionStatus
    payment_method: Optional[str]
    receipt: Optional[str]
    processed: bool
    processed_at: Optional[datetime]
    needs_review: bool
    error: Optional[str]
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class PaymentTransactionDetailResponse(PaymentTransactionResponse):
    metadata: Optional[Dict[str, Any]] = Field(
        None, validation_alias=AliasChoices("intent_metadata", "metadata")
    )
    donation: Optional[DonationResponse] = None
    webhook_events: List[WebhookEventResponse] = []


class Pagination(BaseModel):
    current_page: int
    total_pages: int
    total_items: int
    items_per_page: int
    has_next_page: bool
    has_prev_page: bool


class PaymentTransactionListResponse(BaseModel):
    success: bool = True
    data: List[PaymentTransactionResponse]
    pagination: Pagination


class ReconciliationSummary(BaseModel):
    examined: int = 0
    materialized: int = 0
    updated: int = 0
    failed: int = 0
