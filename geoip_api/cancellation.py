"""Cooperative cancellation shared between the scheduler and refresh workers."""

from __future__ import annotations

import threading

from .errors import RefreshCancelled


class CancellationToken:
    """Thread-safe flag checked by the fetch and extract steps between chunks."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RefreshCancelled("Refresh cancelled")

    def sleep(self, seconds: float) -> None:
        """Sleep for ``seconds``, waking early and raising if cancelled."""

        if self._event.wait(timeout=max(0.0, seconds)):
            raise RefreshCancelled("Refresh cancelled")
