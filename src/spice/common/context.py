import threading
from typing import Optional


class Cancelled(Exception):
    """Raised by CancelContext.raise_if_cancelled()."""
    pass


class CancelContext:
    """
    Cancellation signal shared by a command and every worker it starts.

    Usage:
        ctx = CancelContext()
        signal.signal(signal.SIGINT, lambda *_: ctx.cancel())
        engine.classify_transactions(ctx)
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise Cancelled("operation cancelled")

    def wait(self, timeout: Optional[float]) -> bool:
        """Sleep up to timeout seconds; returns True if cancelled meanwhile."""
        return self._event.wait(timeout)
