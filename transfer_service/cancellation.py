"""
Cooperative cancellation shared by the units of one transfer.
"""
import threading
import weakref
from typing import Optional

from .errors import TransferCancelledError


class CancellationToken:
    """Flag checked at every network call of a transfer.

    A token created with a parent reports cancellation when either it or
    the parent has been cancelled, so a coordinator can stop its own units
    without touching the caller's token. Cancelling a parent wakes every
    child blocked in ``wait``.
    """

    def __init__(self, parent: Optional["CancellationToken"] = None):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._children: "weakref.WeakSet[CancellationToken]" = weakref.WeakSet()
        self._parent = parent
        if parent is not None:
            parent._adopt(self)

    def _adopt(self, child: "CancellationToken") -> None:
        with self._lock:
            self._children.add(child)
        if self.cancelled:
            child.cancel()

    def cancel(self) -> None:
        self._event.set()
        with self._lock:
            children = list(self._children)
        for child in children:
            child.cancel()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._parent is not None and self._parent.cancelled

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Sleep up to ``timeout`` seconds, returning early once cancelled.

        Returns:
            True if the token was cancelled
        """
        return self._event.wait(timeout)

    def raise_if_cancelled(self, bucket: Optional[str] = None,
                           key: Optional[str] = None) -> None:
        if self.cancelled:
            raise TransferCancelledError("Transfer was cancelled", bucket=bucket, key=key)

    def child(self) -> "CancellationToken":
        return CancellationToken(parent=self)
