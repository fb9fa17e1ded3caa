import hmac
import math
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from sqlalchemy.orm import Session

from donation_service.core.config import get_settings
from donation_service.database.database import get_db
from donation_service.kafka.producer import DonationEventProducer, get_event_producer
from donation_service.models import TransactionStatus
from donation_service.schemas import (
    CreateOrderRequest,
    CreateOrderResponse,
    DonationLinkEventItemsResponse,
    DonationLinkResponse,
    DonationResponse,
    Pagination,
    PaymentTransactionDetailResponse,
    PaymentTransactionListResponse,
    PaymentTransactionResponse,
    VerifyPaymentRequest,
    VerifyPaymentResponse,
    WalletResponse,
    WebhookResponse,
)
from donation_service.services.donation_link import DonationLinkService, WalletService
from donation_service.services.gateway import RazorpayGateway, get_gateway
from donation_service.services.ledger import LedgerService
from donation_service.services.reconciliation import ReconciliationService

router = APIRouter(prefix="/donations", tags=["donations"])
logger = structlog.get_logger(__name__)


def require_operator(x_operator_key: Optional[str] = Header(None, alias="X-Operator-Key")):
    """Ledger inspection is limited to callers holding the operator key"""
    expected = get_settings().operator_api_key
    if not expected:
        raise HTTPException(status_code=403, detail="Ledger inspection is disabled")
    if not x_operator_key or not hmac.compare_digest(x_operator_key, expected):
        raise HTTPException(status_code=401, detail="Invalid operator key")


@router.post("/create-order", response_model=CreateOrderResponse, status_code=201)
async def create_order(
    order_request: CreateOrderRequest,
    db: Session = Depends(get_db),
    gateway: RazorpayGateway = Depends(get_gateway)
):
    """
    Create a hosted gateway order for a donation.

    No Donation is created here; the donation intent is stored with the
    ledger entry so a webhook can materialize it without the client.
    """
    logger.info(
        "Creating payment order",
        amount=str(order_request.amount),
        receipt_number=order_request.receipt_number
    )
    return await ReconciliationService.create_order(db, gateway, order_request)


@router.post("/verify-payment", response_model=VerifyPaymentResponse)
async def verify_payment(
    verify_request: VerifyPaymentRequest,
    db: Session = Depends(get_db),
    gateway: RazorpayGateway = Depends(get_gateway),
    producer: DonationEventProducer = Depends(get_event_producer)
):
    """Confirm a checkout; repeated calls return the same Donation"""
    result = await ReconciliationService.verify_payment(db, gateway, verify_request)
    if result.created:
        await producer.publish_donation_completed(result.donation)

    return VerifyPaymentResponse(
        already_processed=not result.created,
        donation=DonationResponse.model_validate(result.donation)
    )


@router.post("/webhook", response_model=WebhookResponse)
async def payment_webhook(
    request: Request,
    x_razorpay_signature: Optional[str] = Header(None, alias="X-Razorpay-Signature"),
    db: Session = Depends(get_db),
    producer: DonationEventProducer = Depends(get_event_producer)
):
    """
    Gateway webhook. The signature covers the raw body, so the body is read
    as bytes and only parsed after verification.
    """
    raw_body = await request.body()
    outcome = ReconciliationService.handle_webhook(db, raw_body, x_razorpay_signature)
    if outcome.result is not None and outcome.result.created:
        await producer.publish_donation_completed(outcome.result.donation)

    return WebhookResponse(success=True, message=outcome.message)


@router.get(
    "/transactions",
    response_model=PaymentTransactionListResponse,
    dependencies=[Depends(require_operator)]
)
async def list_transactions(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status: Optional[TransactionStatus] = Query(None),
    processed: Optional[bool] = Query(None),
    db: Session = Depends(get_db)
):
    """List ledger entries, newest first"""
    transactions, total = LedgerService.list_transactions(
        db, page=page, limit=limit, status=status, processed=processed
    )
    total_pages = math.ceil(total / limit) if total else 0
    return PaymentTransactionListResponse(
        data=[PaymentTransactionResponse.model_validate(t) for t in transactions],
        pagination=Pagination(
            current_page=page,
            total_pages=total_pages,
            total_items=total,
            items_per_page=limit,
            has_next_page=page < total_pages,
            has_prev_page=page > 1
        )
    )


@router.get(
    "/transactions/{transaction_id}",
    response_model=PaymentTransactionDetailResponse,
    dependencies=[Depends(require_operator)]
)
async def get_transaction(transaction_id: int, db: Session = Depends(get_db)):
    transaction = LedgerService.get_transaction(db, transaction_id)
    return PaymentTransactionDetailResponse.model_validate(transaction)


@router.get("/links/{slug}", response_model=DonationLinkResponse)
async def get_donation_link(slug: str, db: Session = Depends(get_db)):
    """Resolve a shareable donation link"""
    return DonationLinkService.get_active_link(db, slug)


@router.get("/links/{slug}/event-items", response_model=DonationLinkEventItemsResponse)
async def get_donation_link_event_items(slug: str, db: Session = Depends(get_db)):
    """Event and donatable items behind a link; empty when the link has no event"""
    return DonationLinkService.get_event_items(db, slug)


@router.get("/wallet", response_model=WalletResponse)
async def get_wallet(db: Session = Depends(get_db)):
    return WalletService.get_wallet(db, get_settings().currency)
