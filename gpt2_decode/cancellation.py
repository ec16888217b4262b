import itertools
import threading
from collections.abc import Callable

from .errors import Cancelled


class Cancellable:
    """Cooperative cancellation token shared between a caller and a worker.

    The flag may be polled from any thread. Connected callbacks run on the
    thread that calls ``cancel()``, once.
    """

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: dict[int, Callable[[], None]] = {}
        self._ids = itertools.count(1)

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = list(self._callbacks.values())
            self._callbacks.clear()

        for callback in callbacks:
            callback()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise Cancelled("Operation was cancelled")

    def connect(self, callback: Callable[[], None]) -> int:
        with self._lock:
            if not self._event.is_set():
                handle = next(self._ids)
                self._callbacks[handle] = callback
                return handle

        callback()
        return 0

    def disconnect(self, handle: int) -> None:
        with self._lock:
            self._callbacks.pop(handle, None)

    def __repr__(self) -> str:
        return f"Cancellable(cancelled={self.is_cancelled})"
