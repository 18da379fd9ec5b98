# Overview: Process-local TTL store of pre-order payment intent sessions keyed by idempotency key.

"""
Pre-order payment intent sessions.

Checkout may ask for a payment intent before any order exists. The client
retries such calls with the same idempotency key; the store memoizes the
intent created for that key so the retry resolves to the same intent.

Sessions live in process memory only. After a restart retried calls create
fresh intents and the abandoned ones are cancelled by the pre-order
reconcile worker.
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from decimal import Decimal

from flask import Flask

from .. import time_utils
from .cancellation import CancellationToken

DEFAULT_TTL = timedelta(minutes=30)
DEFAULT_SWEEP_INTERVAL = timedelta(minutes=1)


@dataclass(frozen=True)
class PISession:
    payment_intent_id: str
    client_secret: str
    cart_fingerprint: str
    amount: Decimal | None = None
    currency: str | None = None
    created_at: datetime | None = None
    expires_at: datetime | None = None


class ReadWriteLock:
    """Many concurrent readers or one writer; waiting writers block new readers."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    def acquire_read(self) -> None:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1

    def release_read(self) -> None:
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self) -> None:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True

    def release_write(self) -> None:
        with self._cond:
            self._writer = False
            self._cond.notify_all()


class PISessionStore:
    def __init__(self, ttl: timedelta = DEFAULT_TTL, sweep_interval: timedelta = DEFAULT_SWEEP_INTERVAL):
        self.ttl = ttl
        self.sweep_interval = sweep_interval
        self._sessions: dict[str, PISession] = {}
        self._lock = ReadWriteLock()
        self._token: CancellationToken | None = None
        self._thread: threading.Thread | None = None
        self._logger = None

    def init_app(self, app: Flask) -> None:
        self.ttl = app.config.get("PI_SESSION_TTL", DEFAULT_TTL)
        self.sweep_interval = app.config.get("PI_SESSION_SWEEP_INTERVAL", DEFAULT_SWEEP_INTERVAL)
        self._logger = app.logger

    def get(self, key: str) -> PISession | None:
        """Return the session iff present and not yet expired."""
        now = time_utils.utcnow()
        self._lock.acquire_read()
        try:
            session = self._sessions.get(key)
        finally:
            self._lock.release_read()
        if session is None or not now < session.expires_at:
            return None
        return session

    def put(self, session: PISession, key: str | None = None) -> str:
        """Store session under key (a new uuid if none), stamped with its TTL, overwriting any prior entry."""
        if not key:
            key = str(uuid.uuid4())
        now = time_utils.utcnow()
        session = replace(session, created_at=now, expires_at=now + self.ttl)
        self._lock.acquire_write()
        try:
            self._sessions[key] = session
        finally:
            self._lock.release_write()
        return key

    def delete(self, key: str) -> None:
        self._lock.acquire_write()
        try:
            self._sessions.pop(key, None)
        finally:
            self._lock.release_write()

    def sweep(self, now: datetime | None = None) -> int:
        """Evict expired sessions. Returns the number evicted."""
        now = now or time_utils.utcnow()
        self._lock.acquire_write()
        try:
            expired = [k for k, s in self._sessions.items() if not now < s.expires_at]
            for key in expired:
                del self._sessions[key]
        finally:
            self._lock.release_write()
        if expired and self._logger is not None:
            self._logger.debug("pre-order payment session cleanup", extra={"expired": len(expired)})
        return len(expired)

    def clear(self) -> None:
        self._lock.acquire_write()
        try:
            self._sessions.clear()
        finally:
            self._lock.release_write()

    def __len__(self) -> int:
        self._lock.acquire_read()
        try:
            return len(self._sessions)
        finally:
            self._lock.release_read()

    # ------------------------------------------------------------------
    # Background sweeper
    # ------------------------------------------------------------------

    @property
    def sweeping(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self, cancel: CancellationToken | None = None) -> None:
        if self._token is not None:
            raise RuntimeError("pre-order session sweeper already started")
        self._token = cancel.child() if cancel is not None else CancellationToken()
        self._thread = threading.Thread(
            target=self._sweep_loop,
            args=(self._token,),
            name="pi-session-sweeper",
            daemon=True,
        )
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        if self._token is None:
            raise RuntimeError("pre-order session sweeper not started")
        self._token.cancel()
        if self._thread is not None:
            self._thread.join(timeout)
        self._token = None
        self._thread = None

    def _sweep_loop(self, token: CancellationToken) -> None:
        interval = self.sweep_interval.total_seconds()
        while not token.wait(interval):
            self.sweep()
