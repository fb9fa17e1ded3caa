"""
Payment transaction ledger.

The ledger is the single source of truth for "have we seen this payment
before". Every mutation that can race is one conditional ``UPDATE``; the
affected row count decides the outcome, never a value read earlier in Python.
"""
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import update, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from donation_service.core.config import get_settings
from donation_service.core.exceptions import (
    DuplicateOrder,
    InvalidPaymentRequest,
    TransactionNotFound,
)
from donation_service.core.retry import run_with_retries
from donation_service.models import (
    ALLOWED_PREDECESSORS,
    Donation,
    PaymentTransaction,
    TransactionStatus,
    WebhookEvent,
    utcnow,
)

logger = structlog.get_logger(__name__)


@dataclass
class GateResult:
    """Outcome of the idempotency gate"""
    already_processed: bool
    transaction: PaymentTransaction


class LedgerService:
    """Business logic for the payment transaction ledger"""

    @staticmethod
    def create_transaction(
        db: Session,
        order_id: str,
        amount: int,
        currency: str,
        metadata: Optional[Dict[str, Any]] = None,
        receipt: Optional[str] = None,
        raw_payload: Optional[Dict[str, Any]] = None,
    ) -> PaymentTransaction:
        """Record a freshly created gateway order; an existing order id is a DuplicateOrder"""
        transaction = PaymentTransaction(
            order_id=order_id,
            amount=amount,
            currency=currency,
            status=TransactionStatus.CREATED,
            receipt=receipt,
            intent_metadata=metadata or {},
            raw_payload=raw_payload,
        )
        db.add(transaction)
        try:
            db.commit()
        except IntegrityError as e:
            db.rollback()
            logger.warning("Duplicate gateway order", order_id=order_id)
            raise DuplicateOrder(f"Order {order_id} already exists") from e

        db.refresh(transaction)
        logger.info(
            "Payment transaction created",
            order_id=order_id,
            amount=amount,
            currency=currency
        )
        return transaction

    @staticmethod
    def get_by_order_id(db: Session, order_id: str, refresh: bool = False) -> Optional[PaymentTransaction]:
        query = select(PaymentTransaction).where(PaymentTransaction.order_id == order_id)
        if refresh:
            query = query.execution_options(populate_existing=True)
        return db.execute(query).scalar_one_or_none()

    @staticmethod
    def get_by_payment_id(db: Session, payment_id: str) -> Optional[PaymentTransaction]:
        return db.execute(
            select(PaymentTransaction).where(PaymentTransaction.payment_id == payment_id)
        ).scalar_one_or_none()

    @staticmethod
    def get_transaction(db: Session, transaction_id: int) -> PaymentTransaction:
        transaction = db.get(PaymentTransaction, transaction_id)
        if transaction is None:
            raise TransactionNotFound(f"Payment transaction {transaction_id} not found")
        return transaction

    @staticmethod
    def list_transactions(
        db: Session,
        page: int = 1,
        limit: int = 20,
        status: Optional[TransactionStatus] = None,
        processed: Optional[bool] = None,
    ) -> Tuple[List[PaymentTransaction], int]:
        """Newest first, with optional status/processed filters"""
        query = select(PaymentTransaction)
        count_query = select(func.count(PaymentTransaction.id))
        if status is not None:
            query = query.where(PaymentTransaction.status == status)
            count_query = count_query.where(PaymentTransaction.status == status)
        if processed is not None:
            query = query.where(PaymentTransaction.processed.is_(processed))
            count_query = count_query.where(PaymentTransaction.processed.is_(processed))

        query = query.order_by(PaymentTransaction.created_at.desc(), PaymentTransaction.id.desc())
        query = query.offset((page - 1) * limit).limit(limit)

        transactions = list(db.execute(query).scalars().all())
        total = db.execute(count_query).scalar_one()
        return transactions, total

    @staticmethod
    def find_donation(db: Session, order_id: str) -> Optional[Donation]:
        return db.execute(
            select(Donation)
            .join(PaymentTransaction, Donation.transaction_id == PaymentTransaction.id)
            .where(PaymentTransaction.order_id == order_id)
        ).scalar_one_or_none()

    @staticmethod
    def record_status(
        db: Session,
        order_id: str,
        payment_id: Optional[str],
        new_status: TransactionStatus,
        raw_payload: Optional[Dict[str, Any]] = None,
        amount: Optional[int] = None,
        currency: Optional[str] = None,
        payment_method: Optional[str] = None,
        event: Optional[str] = None,
    ) -> PaymentTransaction:
        """
        Upsert the ledger entry for order_id and apply a status signal.

        The payment id is attached only if none is known yet. The status moves
        only forward; a signal that is not ahead of the stored status is a
        silent no-op, which absorbs duplicate and out-of-order deliveries.
        When ``event`` is given the signal is also appended to the webhook journal.
        """
        settings = get_settings()

        def _record() -> PaymentTransaction:
            transaction = LedgerService.get_by_order_id(db, order_id)
            if transaction is None:
                LedgerService._insert_unknown_order(
                    db, order_id, amount or 0, currency or settings.currency
                )

            if payment_id:
                try:
                    db.execute(
                        update(PaymentTransaction)
                        .where(
                            PaymentTransaction.order_id == order_id,
                            PaymentTransaction.payment_id.is_(None),
                        )
                        .values(payment_id=payment_id, updated_at=utcnow())
                        .execution_options(synchronize_session=False)
                    )
                    db.flush()
                except IntegrityError as e:
                    db.rollback()
                    logger.error(
                        "Payment id already attached to another order",
                        order_id=order_id,
                        payment_id=payment_id
                    )
                    raise InvalidPaymentRequest(
                        f"Payment {payment_id} does not belong to order {order_id}"
                    ) from e

            values = {"status": new_status, "updated_at": utcnow()}
            if raw_payload is not None:
                values["raw_payload"] = raw_payload
            if payment_method:
                values["payment_method"] = payment_method

            result = db.execute(
                update(PaymentTransaction)
                .where(
                    PaymentTransaction.order_id == order_id,
                    PaymentTransaction.status.in_(ALLOWED_PREDECESSORS[new_status]),
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            transitioned = result.rowcount == 1

            transaction = LedgerService.get_by_order_id(db, order_id, refresh=True)

            if not transitioned and transaction.status != new_status:
                logger.warning(
                    "Ignoring status signal that is not ahead of stored status",
                    order_id=order_id,
                    stored_status=transaction.status.value,
                    incoming_status=new_status.value,
                    webhook_event=event
                )
                if new_status == TransactionStatus.CAPTURED and transaction.status == TransactionStatus.FAILED:
                    transaction.needs_review = True
                    transaction.error = f"Capture of payment {payment_id} reported after failure"

            if event:
                db.add(WebhookEvent(
                    transaction_id=transaction.id,
                    event=event,
                    payment_id=payment_id,
                    payload=raw_payload,
                ))

            db.commit()
            db.refresh(transaction)

            if transitioned:
                logger.info(
                    "Payment transaction status updated",
                    order_id=order_id,
                    payment_id=payment_id,
                    status=new_status.value,
                    webhook_event=event
                )
            return transaction

        return run_with_retries(db, _record, f"record_status({order_id})")

    @staticmethod
    def _insert_unknown_order(db: Session, order_id: str, amount: int, currency: str):
        """A signal for an order we never created; concurrent inserts are resolved by the unique key"""
        db.add(PaymentTransaction(
            order_id=order_id,
            amount=amount,
            currency=currency,
            status=TransactionStatus.CREATED,
            intent_metadata={},
        ))
        try:
            db.commit()
            logger.warning("Ledger entry created from signal for unknown order", order_id=order_id)
        except IntegrityError:
            db.rollback()

    @staticmethod
    def try_mark_processed(db: Session, order_id: str) -> GateResult:
        """
        The idempotency gate: flip ``processed`` false -> true in one
        conditional UPDATE. Exactly one caller per order ever sees
        ``already_processed=False``.

        The flip is NOT committed here. The caller commits it in the same
        transaction as the Donation insert, or rolls it back so a later
        signal can retry materialization.
        """
        def _flip() -> GateResult:
            now = utcnow()
            result = db.execute(
                update(PaymentTransaction)
                .where(
                    PaymentTransaction.order_id == order_id,
                    PaymentTransaction.processed.is_(False),
                )
                .values(processed=True, processed_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            flipped = result.rowcount == 1

            transaction = LedgerService.get_by_order_id(db, order_id, refresh=True)
            if transaction is None:
                raise TransactionNotFound(f"No ledger entry for order {order_id}")
            return GateResult(already_processed=not flipped, transaction=transaction)

        return run_with_retries(db, _flip, f"try_mark_processed({order_id})")

    @staticmethod
    def flag_for_review(db: Session, order_id: str, reason: str) -> None:
        """Mark a transaction for manual review; the sweep skips flagged entries"""
        def _flag():
            db.execute(
                update(PaymentTransaction)
                .where(PaymentTransaction.order_id == order_id)
                .values(needs_review=True, error=reason, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            db.commit()

        run_with_retries(db, _flag, f"flag_for_review({order_id})")
        logger.warning("Payment transaction flagged for review", order_id=order_id, reason=reason)

    @staticmethod
    def pending_captures(db: Session, older_than, limit: int = 100) -> List[PaymentTransaction]:
        """Unprocessed, unflagged transactions created before older_than"""
        return list(db.execute(
            select(PaymentTransaction)
            .where(
                PaymentTransaction.processed.is_(False),
                PaymentTransaction.needs_review.is_(False),
                PaymentTransaction.status.in_([
                    TransactionStatus.CREATED,
                    TransactionStatus.AUTHORIZED,
                    TransactionStatus.CAPTURED,
                ]),
                PaymentTransaction.created_at < older_than,
            )
            .order_by(PaymentTransaction.created_at)
            .limit(limit)
        ).scalars().all())
