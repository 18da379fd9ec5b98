# Overview: Background workers; stuck/expired order cleanup and orphaned pre-order payment intent reconciliation.

"""
Periodic workers.

Each worker runs `tick()` in a daemon thread every `interval`, inside an
application context. The loop waits on a CancellationToken with the
interval as timeout, so stop() interrupts the wait immediately; a tick in
progress finishes its current item and then returns.

tick() is also callable directly (CLI, tests) with an explicit `now`.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable

from flask import Flask

from .. import time_utils
from ..extensions import db
from . import order_service
from .cancellation import CancellationToken
from .payment_provider import PreOrderCleaner


class WorkerError(RuntimeError):
    """Raised for worker lifecycle misuse (double start, stop without start)."""


class PeriodicWorker(ABC):
    """
    Base class of the background workers. Subclasses set `name` and
    implement tick(), which runs once per interval.
    """

    name = "worker"

    def __init__(self, app: Flask, interval: timedelta):
        self.app = app
        self.interval = interval
        self._token: CancellationToken | None = None
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self, cancel: CancellationToken | None = None) -> None:
        with self._lock:
            if self._token is not None:
                raise WorkerError(f"{self.name} already started")
            self._token = cancel.child() if cancel is not None else CancellationToken()
            self._thread = threading.Thread(
                target=self._run,
                args=(self._token,),
                name=self.name,
                daemon=True,
            )
            self._thread.start()
        self.app.logger.info("worker started", extra={"worker": self.name})

    def stop(self, timeout: float | None = None) -> None:
        with self._lock:
            if self._token is None:
                raise WorkerError(f"{self.name} not started")
            token, thread = self._token, self._thread
            self._token = None
            self._thread = None
        token.cancel()
        if thread is not None:
            thread.join(timeout)
        self.app.logger.info("worker stopped", extra={"worker": self.name})

    def join(self, timeout: float | None = None) -> None:
        thread = self._thread
        if thread is not None:
            thread.join(timeout)

    def _run(self, token: CancellationToken) -> None:
        interval = self.interval.total_seconds()
        while not token.wait(interval):
            with self.app.app_context():
                try:
                    self.tick(cancel=token)
                except Exception as exc:
                    self.app.logger.exception("worker tick failed", extra={"worker": self.name, "err": str(exc)})

    @abstractmethod
    def tick(self, now: datetime | None = None, cancel: CancellationToken | None = None):
        """One pass of the worker."""


@dataclass
class CleanupResult:
    cancelled: int = 0
    expired: int = 0
    failed: int = 0


class OrderCleanupWorker(PeriodicWorker):
    """
    Cancels orders stuck in `placed` past the threshold and expires orders
    whose payment deadline passed. Both release the reserved stock.
    """

    name = "order-cleanup"

    def __init__(self, app: Flask, interval: timedelta | None = None, placed_threshold: timedelta | None = None):
        super().__init__(app, interval or app.config["ORDER_CLEANUP_INTERVAL"])
        self.placed_threshold = placed_threshold or app.config["ORDER_CLEANUP_PLACED_THRESHOLD"]

    def tick(self, now: datetime | None = None, cancel: CancellationToken | None = None) -> CleanupResult:
        now = now or time_utils.utcnow()
        result = CleanupResult()
        logger = self.app.logger

        older_than = now - self.placed_threshold
        for order_uuid, order_id in self._snapshot(order_service.get_stuck_placed_orders(older_than)):
            if cancel is not None and cancel.cancelled:
                return result
            try:
                order_service.cancel(order_uuid, reason="not paid in time")
            except Exception as exc:
                result.failed += 1
                logger.exception(
                    "can't cancel stuck order",
                    extra={"err": str(exc), "order_uuid": order_uuid, "order_id": order_id},
                )
                continue
            result.cancelled += 1
            logger.info("stuck order cancelled", extra={"order_uuid": order_uuid, "order_id": order_id})

        for order_uuid, order_id in self._snapshot(order_service.get_expired_awaiting_payment_orders(now)):
            if cancel is not None and cancel.cancelled:
                return result
            try:
                order_service.expire(order_uuid)
            except Exception as exc:
                result.failed += 1
                logger.exception(
                    "can't expire order",
                    extra={"err": str(exc), "order_uuid": order_uuid, "order_id": order_id},
                )
                continue
            result.expired += 1
            logger.info("order expired", extra={"order_uuid": order_uuid, "order_id": order_id})

        return result

    @staticmethod
    def _snapshot(orders) -> list[tuple[str, int]]:
        keys = [(o.uuid, o.id) for o in orders]
        # End the read transaction; each order gets its own
        db.session.rollback()
        return keys


class PreOrderReconcileWorker(PeriodicWorker):
    """Asks every registered cleaner to cancel pre-order intents older than the threshold."""

    name = "pre-order-reconcile"

    def __init__(
        self,
        app: Flask,
        cleaners: Iterable[PreOrderCleaner] = (),
        interval: timedelta | None = None,
        pre_order_threshold: timedelta | None = None,
    ):
        super().__init__(app, interval or app.config["PI_RECONCILE_INTERVAL"])
        self.cleaners = list(cleaners)
        self.pre_order_threshold = pre_order_threshold or app.config["PI_RECONCILE_PRE_ORDER_THRESHOLD"]

    def register(self, cleaner: PreOrderCleaner) -> None:
        self.cleaners.append(cleaner)

    def tick(self, now: datetime | None = None, cancel: CancellationToken | None = None) -> int:
        now = now or time_utils.utcnow()
        older_than = now - self.pre_order_threshold
        total = 0
        for cleaner in self.cleaners:
            if cancel is not None and cancel.cancelled:
                break
            name = getattr(cleaner, "name", type(cleaner).__name__)
            try:
                total += cleaner.cleanup(older_than) or 0
            except Exception as exc:
                self.app.logger.error(
                    "pre-order intent cleanup failed",
                    extra={"err": str(exc), "cleaner": name},
                )
        return total
