# Overview: Cancellation tokens shared by background workers, the session sweeper and transaction retries.

from __future__ import annotations

import threading


class CancellationToken:
    """
    Thread-safe cancellation signal.

    A child token is cancelled when its parent is; cancelling a child never
    touches the parent. Waiting blocks on an Event, never polls.
    """

    def __init__(self, parent: CancellationToken | None = None):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._children: list[CancellationToken] = []
        if parent is not None:
            parent._adopt(self)

    def _adopt(self, child: CancellationToken) -> None:
        with self._lock:
            if not self._event.is_set():
                self._children.append(child)
                return
        child.cancel()

    def child(self) -> CancellationToken:
        return CancellationToken(parent=self)

    def cancel(self) -> None:
        with self._lock:
            self._event.set()
            children, self._children = self._children, []
        for child in children:
            child.cancel()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until cancelled or timeout elapses. Returns True if cancelled."""
        return self._event.wait(timeout)
