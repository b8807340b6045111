"""Advisory cancellation and run deadlines.

Manifesto:
    A Python thread cannot be killed from outside, and a handler may be
    blocked inside a library call we do not control.  So the engine never
    pretends to stop a handler.  It gives each run a ``CancellationToken``
    the handler may poll, and a ``Deadline`` that fires once
    ``max_runtime_ms`` has elapsed.  When the deadline fires the run is
    recorded as ``timed_out`` and the token is signalled: "the engine gave
    up waiting", not "the handler stopped".

Architecture:
    ::

        worker thread                         timer thread
        ─────────────                         ────────────
        deadline.start()  ──────────────────► Timer(max_runtime_ms)
        handler(params, ctx)                        │ expires
          ctx.cancellation.cancelled? ◄──────────── token.cancel(reason)
        deadline.cancel()   (returned in time)      on_expire(): mark timed_out

Examples:
    >>> token = CancellationToken()
    >>> deadline = Deadline(0.5, on_expire=lambda: token.cancel("timed out"))
    >>> deadline.start()
    >>> token.wait(1.0)
    True

Tags:
    cancellation, timeout, deadline, threading, cadence
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable

from cadence.core.errors import CadenceError, ErrorCategory
from cadence.core.logging import get_logger

logger = get_logger(__name__)


class Cancelled(CadenceError):
    """Raised by ``CancellationToken.raise_if_cancelled`` inside a handler."""

    default_category = ErrorCategory.TIMEOUT


class CancellationToken:
    """Thread-safe, one-way cancellation flag with a reason."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason: str | None = None
        self._lock = threading.Lock()

    def cancel(self, reason: str = "cancelled") -> bool:
        """Signal cancellation; returns False if it was already signalled."""
        with self._lock:
            if self._event.is_set():
                return False
            self._reason = reason
            self._event.set()
        return True

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def wait(self, timeout: float | None = None) -> bool:
        """Block until cancelled or *timeout* elapses; True if cancelled."""
        return self._event.wait(timeout)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise Cancelled(self._reason or "cancelled")

    def __repr__(self) -> str:
        state = f"cancelled: {self._reason}" if self.cancelled else "active"
        return f"CancellationToken({state})"


class Deadline:
    """Calls *on_expire* once, *seconds* after ``start()``, unless cancelled first.

    Attributes:
        timeout_seconds: Configured limit
        started_at: Monotonic start time (None before ``start()``)
    """

    def __init__(
        self,
        seconds: float,
        on_expire: Callable[[], None],
        *,
        name: str = "deadline",
    ) -> None:
        self.timeout_seconds = seconds
        self.name = name
        self.started_at: float | None = None
        self._on_expire = on_expire
        self._expired = threading.Event()
        self._timer = threading.Timer(seconds, self._fire)
        self._timer.daemon = True
        self._timer.name = f"cadence-{name}"

    def start(self) -> Deadline:
        self.started_at = time.monotonic()
        self._timer.start()
        return self

    def cancel(self) -> None:
        """Disarm the timer (no-op once it has fired)."""
        self._timer.cancel()

    @property
    def expired(self) -> bool:
        return self._expired.is_set()

    def remaining(self) -> float:
        """Seconds left; negative once past the deadline."""
        if self.started_at is None:
            return self.timeout_seconds
        return self.timeout_seconds - (time.monotonic() - self.started_at)

    def _fire(self) -> None:
        self._expired.set()
        try:
            self._on_expire()
        except Exception:
            logger.exception("deadline_callback_failed", deadline=self.name)


__all__ = ["Cancelled", "CancellationToken", "Deadline"]
