"""
Domain errors for the donation reconciliation pipeline.

Every error carries the HTTP status the API layer answers with and a stable
``code`` clients can switch on. ``AlreadyProcessed`` is deliberately absent:
a duplicate payment signal is an idempotent success, not a failure.
"""
from typing import Optional


class DonationServiceError(Exception):
    """Base class for errors surfaced to API callers"""

    status_code: int = 500
    code: str = "internal_error"
    retryable: bool = False

    def __init__(self, message: Optional[str] = None, **context):
        self.message = message or self.__class__.__doc__ or self.code
        self.context = context
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"success": False, "code": self.code, "message": self.message}


class InvalidSignature(DonationServiceError):
    """Invalid payment signature"""
    status_code = 400
    code = "invalid_signature"


class InvalidPaymentRequest(DonationServiceError):
    """Invalid payment request"""
    status_code = 400
    code = "invalid_request"


class DuplicateOrder(DonationServiceError):
    """Order already exists"""
    status_code = 409
    code = "duplicate_order"


class InsufficientInventory(DonationServiceError):
    """Requested item quantity is no longer available"""
    status_code = 409
    code = "insufficient_inventory"


class PaymentNotCaptured(DonationServiceError):
    """Payment has not been captured yet"""
    status_code = 409
    code = "payment_not_captured"


class GatewayUnavailable(DonationServiceError):
    """Payment gateway temporarily unavailable"""
    status_code = 503
    code = "gateway_unavailable"
    retryable = True


class LedgerWriteConflict(DonationServiceError):
    """Ledger write conflict, please retry"""
    status_code = 503
    code = "ledger_write_conflict"
    retryable = True


class TransactionNotFound(DonationServiceError):
    """Payment transaction not found"""
    status_code = 404
    code = "transaction_not_found"


class DonationLinkNotFound(DonationServiceError):
    """Donation link not found or expired"""
    status_code = 404
    code = "donation_link_not_found"


class DonationLinkExpired(DonationServiceError):
    """Donation link has expired"""
    status_code = 410
    code = "donation_link_expired"


class EventItemNotFound(DonationServiceError):
    """Event item not found"""
    status_code = 404
    code = "event_item_not_found"


class EventNotFound(DonationServiceError):
    """Event not found"""
    status_code = 404
    code = "event_not_found"
