import time
from typing import Callable, TypeVar

import structlog
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from donation_service.core.config import get_settings
from donation_service.core.exceptions import LedgerWriteConflict

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def run_with_retries(db: Session, operation: Callable[[], T], description: str, attempts: int = None) -> T:
    """
    Run a conditional write, retrying when the database reports a lock or
    serialization failure. The session is rolled back before each retry, so
    the operation must be the first write of its unit of work.
    """
    attempts = attempts or get_settings().ledger_max_retries
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except OperationalError as e:
            db.rollback()
            logger.warning(
                "Write conflict",
                operation=description,
                attempt=attempt,
                max_attempts=attempts,
                error=str(e.orig) if e.orig is not None else str(e)
            )
            if attempt == attempts:
                raise LedgerWriteConflict(f"{description} failed after {attempts} attempts") from e
            time.sleep(0.05 * attempt)
