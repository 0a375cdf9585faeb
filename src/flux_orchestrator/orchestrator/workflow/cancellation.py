"""Explicit cancellation tokens.

A token is passed down through every evaluation instead of relying on a
process-wide signal trap. Cancelling a token cancels every token derived from
it; the process layer notices and signals the process groups it owns.
"""

from __future__ import annotations

import signal
import threading


class CancellationToken:
    """Cooperative cancellation shared between the evaluator and its processes."""

    def __init__(self, *, parent: CancellationToken | None = None) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._children: list[CancellationToken] = []
        self.signal: signal.Signals = signal.SIGTERM
        self.reason: str | None = None

        if parent is not None:
            parent._adopt(self)

    def _adopt(self, child: CancellationToken) -> None:
        with self._lock:
            self._children.append(child)
            already = self._event.is_set()
        if already:
            child.cancel(sig=self.signal, reason=self.reason)

    def child(self) -> CancellationToken:
        return CancellationToken(parent=self)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, *, sig: signal.Signals = signal.SIGTERM, reason: str | None = None) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self.signal = sig
            self.reason = reason
            self._event.set()
            children = list(self._children)
        for child in children:
            child.cancel(sig=sig, reason=reason)

    def sleep(self, seconds: float) -> bool:
        """Sleep up to `seconds`; return False if woken early by cancellation."""

        if seconds <= 0:
            return not self.cancelled
        return not self._event.wait(seconds)
