# Overview: Serializable transaction runner with retry on conflicts; every order/stock write goes through it.

"""
Transactional repository.

within_tx(fn) runs fn(tx) in one database transaction and commits it. If the
database reports a serialization conflict the attempt is rolled back and fn
is called again from scratch; each attempt gets its own frozen `tx.now`, so
every timestamp written by one attempt is identical and a retried attempt
never mixes clocks with the failed one.

Unique-key violations and every other error roll back and propagate to the
caller unchanged. Transactions do not nest: composite operations are one
top-level within_tx call.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, TypeVar

from flask import current_app
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from .. import time_utils
from .cancellation import CancellationToken

T = TypeVar("T")

# PostgreSQL SQLSTATEs: serialization_failure, deadlock_detected
SERIALIZATION_SQLSTATES = {"40001", "40P01"}
UNIQUE_VIOLATION_SQLSTATE = "23505"

_SQLITE_BUSY_MESSAGES = ("database is locked", "database table is locked", "database is busy")


class TransactionError(RuntimeError):
    """Raised for misuse of the transaction runner."""


class NestedTransactionError(TransactionError):
    """Raised when within_tx is called while a transaction is already active."""


class TransactionCancelled(TransactionError):
    """Raised when the cancellation token fires between retry attempts."""


class NotFound(LookupError):
    """Lookup by id/uuid returned nothing."""


@dataclass(frozen=True)
class TxContext:
    now: datetime
    attempt: int


_state = threading.local()


def current_tx() -> TxContext | None:
    return getattr(_state, "tx", None)


def require_tx() -> TxContext:
    """Return the active transaction context; writes outside within_tx are refused."""
    tx = current_tx()
    if tx is None:
        raise TransactionError("operation must run inside within_tx")
    return tx


def _sqlstate(exc: BaseException) -> str | None:
    orig = getattr(exc, "orig", None)
    if orig is None:
        return None
    # psycopg2 exposes pgcode, psycopg 3 exposes sqlstate
    return getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)


def is_serialization_failure(exc: BaseException) -> bool:
    """True for errors that mean 'another transaction won, try again'."""
    if isinstance(exc, StaleDataError):
        return True
    if not isinstance(exc, DBAPIError):
        return False
    if _sqlstate(exc) in SERIALIZATION_SQLSTATES:
        return True
    if isinstance(exc, OperationalError):
        message = str(exc.orig).lower()
        return any(m in message for m in _SQLITE_BUSY_MESSAGES)
    return False


def is_unique_violation(exc: BaseException) -> bool:
    if not isinstance(exc, IntegrityError):
        return False
    if _sqlstate(exc) == UNIQUE_VIOLATION_SQLSTATE:
        return True
    return "unique constraint failed" in str(exc.orig).lower()


def within_tx(
    fn: Callable[[TxContext], T],
    *,
    cancel: CancellationToken | None = None,
) -> T:
    """
    Run fn(tx) under serializable isolation, retrying on serialization conflicts.

    Retries are unbounded; deployments bound them with an outer timeout or by
    cancelling the token, which is checked before every attempt.

    Raises:
        NestedTransactionError: if a transaction is already active in this thread
        TransactionCancelled: if the token is cancelled before an attempt
    """
    if current_tx() is not None:
        raise NestedTransactionError("within_tx does not nest; express the operation as one transaction")

    backoff_base = current_app.config.get("TX_RETRY_BACKOFF_BASE", 0.05)
    backoff_max = current_app.config.get("TX_RETRY_BACKOFF_MAX", 1.0)

    attempt = 0
    while True:
        if cancel is not None and cancel.cancelled:
            raise TransactionCancelled("transaction cancelled before attempt")

        attempt += 1
        tx = TxContext(now=time_utils.utcnow(), attempt=attempt)
        _state.tx = tx
        try:
            result = fn(tx)
            db.session.commit()
            return result
        except Exception as exc:
            db.session.rollback()
            if not is_serialization_failure(exc):
                raise
            current_app.logger.debug(
                "serialization conflict, retrying transaction",
                extra={"attempt": attempt, "err": str(exc)},
            )
        finally:
            _state.tx = None

        delay = min(backoff_base * (2 ** (attempt - 1)), backoff_max)
        if delay > 0:
            if cancel is not None:
                if cancel.wait(delay):
                    raise TransactionCancelled("transaction cancelled while backing off")
            else:
                time.sleep(delay)
