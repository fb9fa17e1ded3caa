from .donation import (
    DonationIntent,
    DonationResponse,
    DonationLinkResponse,
    DonationLinkEventItemsResponse,
    EventItemResponse,
    EventSummary,
    WalletResponse,
    parse_json_object,
)
from .payment import (
    CreateOrderRequest,
    CreateOrderResponse,
    VerifyPaymentRequest,
    VerifyPaymentResponse,
    WebhookResponse,
    PaymentTransactionResponse,
    PaymentTransactionDetailResponse,
    PaymentTransactionListResponse,
    Pagination,
    ReconciliationSummary,
)

__all__ = [
    "DonationIntent",
    "DonationResponse",
    "DonationLinkResponse",
    "DonationLinkEventItemsResponse",
    "EventItemResponse",
    "EventSummary",
    "WalletResponse",
    "parse_json_object",
    "CreateOrderRequest",
    "CreateOrderResponse",
    "VerifyPaymentRequest",
    "VerifyPaymentResponse",
    "WebhookResponse",
    "PaymentTransactionResponse",
    "PaymentTransactionDetailResponse",
    "PaymentTransactionListResponse",
    "Pagination",
    "ReconciliationSummary",
]
