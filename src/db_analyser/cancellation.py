"""Cancellation tokens shared by every analyzer, signal and query of a run."""
import logging
import threading
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, Optional

from .errors import AnalysisCancelled

logger = logging.getLogger(__name__)


class CancellationToken:
    """Thread-safe cancellation flag with callbacks for in-flight work.

    Providers register a callback (e.g. ``connection.cancel``) for the
    duration of a statement so that cancelling the token aborts the query
    on the server, not only the queries that have not started yet.
    """

    def __init__(self, parent: Optional["CancellationToken"] = None):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: Dict[int, Callable[[], None]] = {}
        self._next_id = 0
        self._parent_handle = None
        self._parent = parent
        if parent is not None:
            self._parent_handle = parent.register(self.cancel)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self):
        """Set the flag and fire every registered callback once."""
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = list(self._callbacks.values())
            self._callbacks.clear()
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.warning("Cancellation callback failed", exc_info=True)

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise AnalysisCancelled()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)

    def register(self, callback: Callable[[], None]) -> Optional[int]:
        """Register a callback. Runs immediately if already cancelled."""
        with self._lock:
            if not self._event.is_set():
                handle = self._next_id
                self._next_id += 1
                self._callbacks[handle] = callback
                return handle
        callback()
        return None

    def unregister(self, handle: Optional[int]):
        if handle is None:
            return
        with self._lock:
            self._callbacks.pop(handle, None)

    @contextmanager
    def on_cancel(self, callback: Callable[[], None]) -> Iterator[None]:
        """Keep ``callback`` registered while the block runs."""
        handle = self.register(callback)
        try:
            yield
        finally:
            self.unregister(handle)

    def detach(self):
        """Stop listening to the parent token."""
        if self._parent is not None:
            self._parent.unregister(self._parent_handle)
            self._parent = None


def ensure_token(token: Optional[CancellationToken]) -> CancellationToken:
    return token if token is not None else CancellationToken()
