"""Cooperative cancellation for long-running sync runs."""

import threading
from typing import Optional


class CancellationToken:
    """A stop flag that is polled, never pre-emptive.

    The harvester checks it before each page request and the enricher before
    each batch. Setting it from another thread (the API's stop endpoint, a
    signal handler) is safe.
    """

    def __init__(self):
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: Optional[str] = None) -> None:
        if not self._event.is_set():
            self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self.cancelled}, reason={self.reason!r})"
