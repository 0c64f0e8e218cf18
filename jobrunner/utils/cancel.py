from __future__ import annotations

import threading


class CancelledError(RuntimeError):
    """Raised inside a handler when its batch no longer wants the result."""


class CancellationToken:
    """Thread-safe flag shared by the handlers of one claimed batch."""

    def __init__(self) -> None:
        self._event = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def request_cancel(self) -> None:
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancelledError("Cancelled")
