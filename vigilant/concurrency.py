"""Small threading helpers."""

from __future__ import annotations

import queue
import threading
from typing import Any, Callable, Generic, TypeVar

T = TypeVar("T")
K = TypeVar("K")

_POLL_INTERVAL = 0.05


def push_or_quit(channel: queue.Queue, msg: Any, quit_event: threading.Event) -> bool:
    """Put ``msg`` on ``channel``, giving up once ``quit_event`` is set.

    Returns True if the message was delivered.
    """
    while True:
        try:
            channel.put(msg, timeout=_POLL_INTERVAL)
            return True
        except queue.Full:
            if quit_event.is_set():
                return False


class GuardedKey(Generic[K]):
    """A private key guarded by a lock."""

    def __init__(self, key: K) -> None:
        self._key = key
        self._lock = threading.Lock()

    def key(self) -> K:
        with self._lock:
            return self._key

    def use(self, operation: Callable[[K], T]) -> T:
        """Run ``operation`` with the key while holding the lock."""
        with self._lock:
            return operation(self._key)