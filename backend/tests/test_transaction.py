"""
Transaction runner tests.

Verifies:
- Commit on success, rollback on error
- Serialization conflicts are retried with a fresh transaction context
- Unique violations and other errors propagate unchanged
- Nested transactions and writes outside a transaction are refused
- Cancellation is honoured between attempts
"""

from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from storefront.extensions import db
from storefront.models import CurrencyRate, PromoCode, Setting
from storefront.services import stock_service
from storefront.services.cancellation import CancellationToken
from storefront.services.order_service import CartItem
from storefront.services.transaction import (
    NestedTransactionError,
    TransactionCancelled,
    TransactionError,
    current_tx,
    is_serialization_failure,
    is_unique_violation,
    require_tx,
    within_tx,
)


def _locked_error():
    return OperationalError("UPDATE product_size", {}, Exception("database is locked"))


class _PgError(Exception):
    def __init__(self, pgcode):
        super().__init__(f"sqlstate {pgcode}")
        self.pgcode = pgcode


# =============================================================================
# COMMIT / ROLLBACK
# =============================================================================


class TestCommitAndRollback:
    def test_commits_on_success(self, db_session):
        def _op(tx):
            db.session.add(Setting(key="k", value="v"))
            return "done"

        assert within_tx(_op) == "done"
        db.session.expire_all()
        assert db.session.get(Setting, "k").value == "v"

    def test_rolls_back_on_error(self, db_session):
        def _op(tx):
            db.session.add(Setting(key="k", value="v"))
            db.session.flush()
            raise ValueError("boom")

        with pytest.raises(ValueError):
            within_tx(_op)
        assert db.session.get(Setting, "k") is None

    def test_context_cleared_after_run(self, db_session):
        seen = []
        within_tx(lambda tx: seen.append(current_tx()))
        assert seen[0] is not None
        assert current_tx() is None

    def test_timestamps_share_frozen_now(self, db_session):
        def _op(tx):
            db.session.add(CurrencyRate(currency="AAA", rate=Decimal("1.5"), updated_at=tx.now))
            db.session.add(CurrencyRate(currency="BBB", rate=Decimal("2.5"), updated_at=tx.now))
            return tx.now

        now = within_tx(_op)
        rows = db.session.query(CurrencyRate).filter(CurrencyRate.currency.in_(["AAA", "BBB"])).all()
        assert {r.updated_at for r in rows} == {now}


# =============================================================================
# RETRY
# =============================================================================


class TestRetry:
    def test_serialization_conflict_reruns_with_fresh_context(self, db_session):
        contexts = []

        def _op(tx):
            contexts.append(tx)
            db.session.add(Setting(key=f"attempt-{tx.attempt}", value="x"))
            if tx.attempt < 3:
                raise _locked_error()
            return tx.attempt

        assert within_tx(_op) == 3
        assert [c.attempt for c in contexts] == [1, 2, 3]
        assert contexts[0] is not contexts[1]
        assert contexts[0].now <= contexts[1].now <= contexts[2].now

        # Only the last attempt's writes survive
        keys = {s.key for s in db.session.query(Setting).all()}
        assert keys == {"attempt-3"}

    def test_stale_data_is_retried(self, db_session):
        attempts = []

        def _op(tx):
            attempts.append(tx.attempt)
            if tx.attempt == 1:
                raise StaleDataError("row changed")

        within_tx(_op)
        assert attempts == [1, 2]

    def test_cancel_between_attempts(self, db_session):
        token = CancellationToken()
        attempts = []

        def _op(tx):
            attempts.append(tx.attempt)
            token.cancel()
            raise _locked_error()

        with pytest.raises(TransactionCancelled):
            within_tx(_op, cancel=token)
        assert attempts == [1]

    def test_already_cancelled_token_runs_nothing(self, db_session):
        token = CancellationToken()
        token.cancel()
        calls = []
        with pytest.raises(TransactionCancelled):
            within_tx(lambda tx: calls.append(tx), cancel=token)
        assert calls == []


# =============================================================================
# ERROR CLASSIFICATION
# =============================================================================


class TestClassification:
    def test_sqlite_busy_is_serialization_failure(self):
        assert is_serialization_failure(_locked_error())

    def test_postgres_sqlstates(self):
        assert is_serialization_failure(OperationalError("s", {}, _PgError("40001")))
        assert is_serialization_failure(OperationalError("s", {}, _PgError("40P01")))
        assert not is_serialization_failure(OperationalError("s", {}, _PgError("08006")))

    def test_other_errors_are_not_retried(self):
        assert not is_serialization_failure(ValueError("x"))
        assert not is_serialization_failure(
            IntegrityError("s", {}, Exception("UNIQUE constraint failed: promo_code.code"))
        )

    def test_unique_violation(self):
        assert is_unique_violation(IntegrityError("s", {}, Exception("UNIQUE constraint failed: promo_code.code")))
        assert is_unique_violation(IntegrityError("s", {}, _PgError("23505")))
        assert not is_unique_violation(IntegrityError("s", {}, Exception("CHECK constraint failed")))

    def test_unique_violation_propagates_unchanged(self, db_session):
        expiration = datetime(2030, 1, 1)
        db.session.add(PromoCode(code="DUP", expiration=expiration))
        db.session.commit()

        def _op(tx):
            db.session.add(PromoCode(code="DUP", expiration=expiration))
            db.session.flush()

        with pytest.raises(IntegrityError) as excinfo:
            within_tx(_op)
        assert is_unique_violation(excinfo.value)


# =============================================================================
# MISUSE
# =============================================================================


class TestMisuse:
    def test_nested_within_tx_fails(self, db_session):
        with pytest.raises(NestedTransactionError):
            within_tx(lambda tx: within_tx(lambda inner: None))
        assert current_tx() is None

    def test_require_tx_outside_transaction(self, db_session):
        with pytest.raises(TransactionError):
            require_tx()

    def test_stock_writes_need_transaction(self, catalog):
        with pytest.raises(TransactionError):
            stock_service.reserve([CartItem(catalog.product_p, catalog.size_s, 1)])
