# consensus_engine/db/transaction.py
import logging
import time
from typing import Any, Callable, TypeVar

from sqlalchemy.exc import DisconnectionError, OperationalError
from sqlalchemy.orm import Session

from consensus_engine.core.config import settings
from consensus_engine.core.errors import TransientStoreFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_ERRORS = (OperationalError, DisconnectionError)


def run_in_transaction(
    db: Session,
    work: Callable[..., T],
    *args: Any,
    **kwargs: Any,
) -> T:
    """
    Run ``work(db, *args, **kwargs)`` and commit it as one unit.

    Any error rolls back everything ``work`` wrote. Connectivity errors are
    retried a bounded number of times with exponential backoff, then surface
    as TransientStoreFailure. Everything else propagates unchanged.
    """
    attempts = max(1, settings.STORE_RETRY_ATTEMPTS)
    backoff = settings.STORE_RETRY_BACKOFF_SECONDS

    for attempt in range(1, attempts + 1):
        try:
            result = work(db, *args, **kwargs)
            db.commit()
            return result
        except TRANSIENT_ERRORS as e:
            db.rollback()
            if attempt >= attempts:
                logger.error(f"Store still unavailable after {attempts} attempts: {e}")
                raise TransientStoreFailure(str(e)) from e
            logger.warning(
                f"Transient store error (attempt {attempt}/{attempts}), "
                f"retrying in {backoff:.2f}s: {e}"
            )
            time.sleep(backoff)
            backoff *= 2
        except Exception:
            db.rollback()
            raise

    # unreachable: the loop either returns or raises
    raise TransientStoreFailure("retry loop exhausted")
