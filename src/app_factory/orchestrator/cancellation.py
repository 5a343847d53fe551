"""Cooperative cancellation shared by the driver, the loop and agent calls."""

from __future__ import annotations

import threading


class CancelToken:
    """Thread-safe one-way cancellation flag."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return True early if cancellation arrives."""

        return self._event.wait(max(0.0, seconds))

    def __call__(self) -> bool:
        return self._event.is_set()
