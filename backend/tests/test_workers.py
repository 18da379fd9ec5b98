"""
Background worker tests.

Verifies:
- Stuck placed orders are cancelled only once older than the threshold
- Orders past their payment deadline are expired and stock is restored
- A failing order is logged and counted; the tick continues
- Worker start/stop lifecycle and the background loop
- Pre-order reconciliation survives a failing cleaner
"""

import time
from datetime import timedelta
from unittest.mock import patch

import pytest

from conftest import FakeProvider, one_p, stock_of
from storefront import time_utils
from storefront.extensions import db
from storefront.models import Order, OrderStatusName
from storefront.services import order_service
from storefront.services.cancellation import CancellationToken
from storefront.services.payment_provider import ProviderPreOrderCleaner
from storefront.services.rates_service import TransientExternal
from storefront.services.workers import (
    OrderCleanupWorker,
    PeriodicWorker,
    PreOrderReconcileWorker,
    WorkerError,
)

S = OrderStatusName


def status(order_uuid):
    db.session.expire_all()
    return order_service.order_status(order_service.get_order(order_uuid))


def placed_at(order_uuid):
    db.session.expire_all()
    return db.session.query(Order.placed_at).filter_by(uuid=order_uuid).scalar()


# =============================================================================
# ORDER CLEANUP
# =============================================================================


class TestOrderCleanup:
    def test_stuck_order_cancelled_after_threshold(self, app, catalog, buyer):
        uuid = order_service.place_order(one_p(catalog), buyer, "EUR", catalog.carrier_x).uuid
        t0 = placed_at(uuid)
        worker = OrderCleanupWorker(app)

        assert worker.tick(now=t0 + timedelta(hours=24)).cancelled == 0
        assert status(uuid) == S.PLACED

        result = worker.tick(now=t0 + timedelta(hours=24, seconds=1))
        assert result.cancelled == 1
        assert status(uuid) == S.CANCELLED
        assert stock_of(catalog.product_p, catalog.size_s) == 2
        assert order_service.get_order(uuid).history[-1].notes == "not paid in time"

    def test_awaiting_payment_not_cancelled_as_stuck(self, app, catalog, buyer):
        uuid = order_service.place_order(one_p(catalog), buyer, "EUR", catalog.carrier_x).uuid
        order_service.begin_payment(uuid, "pi_1")
        worker = OrderCleanupWorker(app, placed_threshold=timedelta(seconds=1))

        result = worker.tick(now=placed_at(uuid) + timedelta(minutes=30))
        assert (result.cancelled, result.expired) == (0, 0)
        assert status(uuid) == S.AWAITING_PAYMENT

    def test_expires_past_deadline(self, app, catalog, buyer):
        uuid = order_service.place_order(one_p(catalog), buyer, "EUR", catalog.carrier_x).uuid
        order_service.begin_payment(uuid, "pi_1")
        deadline = order_service.get_order(uuid).expires_at
        worker = OrderCleanupWorker(app)

        assert worker.tick(now=deadline).expired == 0
        assert worker.tick(now=deadline + timedelta(seconds=1)).expired == 1
        assert status(uuid) == S.EXPIRED
        assert stock_of(catalog.product_p, catalog.size_s) == 2

    def test_confirmed_orders_untouched(self, app, catalog, buyer):
        uuid = order_service.place_order(one_p(catalog), buyer, "EUR", catalog.carrier_x).uuid
        order_service.begin_payment(uuid, "pi_1")
        order_service.handle_intent_succeeded({"intent_id": "pi_1", "amount": "100", "currency": "EUR"})

        result = OrderCleanupWorker(app).tick(now=time_utils.utcnow() + timedelta(days=7))
        assert (result.cancelled, result.expired, result.failed) == (0, 0, 0)
        assert status(uuid) == S.CONFIRMED

    def test_failure_is_counted_and_tick_continues(self, app, catalog, buyer):
        first = order_service.place_order(one_p(catalog), buyer, "EUR", catalog.carrier_x).uuid
        second = order_service.place_order(one_p(catalog), buyer, "EUR", catalog.carrier_x).uuid
        real_cancel = order_service.cancel

        def flaky_cancel(order_uuid, reason=None):
            if order_uuid == first:
                raise RuntimeError("boom")
            return real_cancel(order_uuid, reason=reason)

        with patch.object(order_service, "cancel", side_effect=flaky_cancel):
            result = OrderCleanupWorker(app).tick(now=time_utils.utcnow() + timedelta(days=2))

        assert result.failed == 1
        assert result.cancelled == 1
        assert status(first) == S.PLACED
        assert status(second) == S.CANCELLED

    def test_cancelled_token_stops_tick(self, app, catalog, buyer):
        uuid = order_service.place_order(one_p(catalog), buyer, "EUR", catalog.carrier_x).uuid
        token = CancellationToken()
        token.cancel()
        result = OrderCleanupWorker(app).tick(now=time_utils.utcnow() + timedelta(days=2), cancel=token)
        assert result.cancelled == 0
        assert status(uuid) == S.PLACED


# =============================================================================
# LIFECYCLE
# =============================================================================


class TestLifecycle:
    def test_base_worker_needs_tick(self, app):
        with pytest.raises(TypeError):
            PeriodicWorker(app, interval=timedelta(seconds=10))

    def test_stop_without_start(self, app):
        with pytest.raises(WorkerError):
            OrderCleanupWorker(app).stop()

    def test_double_start(self, app):
        worker = PreOrderReconcileWorker(app, interval=timedelta(seconds=10))
        worker.start()
        try:
            with pytest.raises(WorkerError):
                worker.start()
        finally:
            worker.stop(timeout=5)
        assert not worker.running

    def test_background_loop_runs_ticks(self, app, db_session):
        provider = FakeProvider()
        provider.cleanup_result = 1
        worker = PreOrderReconcileWorker(
            app,
            cleaners=[ProviderPreOrderCleaner(provider, "fake")],
            interval=timedelta(milliseconds=10),
        )
        worker.start()
        try:
            deadline = time.monotonic() + 5
            while len(provider.cleanup_calls) < 2 and time.monotonic() < deadline:
                time.sleep(0.01)
        finally:
            worker.stop(timeout=5)
        assert len(provider.cleanup_calls) >= 2


# =============================================================================
# PRE-ORDER RECONCILIATION
# =============================================================================


class TestPreOrderReconcile:
    def test_cutoff_passed_to_cleaners(self, app):
        provider = FakeProvider()
        provider.cleanup_result = 3
        worker = PreOrderReconcileWorker(app, cleaners=[ProviderPreOrderCleaner(provider, "fake")])
        now = time_utils.utcnow()

        assert worker.tick(now=now) == 3
        assert provider.cleanup_calls == [now - timedelta(hours=24)]

    def test_failing_cleaner_does_not_stop_others(self, app):
        broken = FakeProvider()
        broken.fail_cleanup = True
        healthy = FakeProvider()
        healthy.cleanup_result = 2
        worker = PreOrderReconcileWorker(app)
        worker.register(ProviderPreOrderCleaner(broken, "broken"))
        worker.register(ProviderPreOrderCleaner(healthy, "healthy"))

        assert worker.tick() == 2
        assert len(broken.cleanup_calls) == 1
        assert len(healthy.cleanup_calls) == 1

    def test_provider_errors_become_transient(self, app):
        provider = FakeProvider()
        provider.fail_cleanup = True
        with pytest.raises(TransientExternal):
            ProviderPreOrderCleaner(provider, "fake").cleanup(time_utils.utcnow())
