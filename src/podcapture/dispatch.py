"""
Per-key event dispatch.

Events for the same workload must be applied in order (an ADDED
processed after its DELETED would resurrect a capture), while a slow
stop for one workload must not hold up any other. Each key gets at
most one worker thread; while it is busy, newer events for that key
replace the pending one, since only the latest snapshot matters to a
level-based reconciler.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Generic, Hashable, Optional, TypeVar

logger = logging.getLogger("podcapture.dispatch")

T = TypeVar("T")


class KeyedDispatcher(Generic[T]):
    """Runs ``handler(item)`` serially per key, concurrently across keys.

    Args:
        handler: Callable invoked for every item that is not superseded.
        name: Prefix for worker thread names.
    """

    def __init__(self, handler: Callable[[T], None], name: str = "dispatch"):
        self._handler = handler
        self._name = name
        self._cond = threading.Condition()
        self._pending: dict[Hashable, T] = {}
        self._active: set[Hashable] = set()

    def submit(self, key: Hashable, item: T) -> None:
        """Queue item for key, replacing any item not yet picked up."""
        with self._cond:
            if key in self._pending:
                logger.debug("Coalescing pending event for %s", key)
            self._pending[key] = item
            if key in self._active:
                return
            self._active.add(key)

        worker = threading.Thread(
            target=self._drain,
            args=(key,),
            name=f"{self._name}-{key}",
            daemon=True,
        )
        worker.start()

    def _drain(self, key: Hashable) -> None:
        while True:
            with self._cond:
                if key not in self._pending:
                    self._active.discard(key)
                    self._cond.notify_all()
                    return
                item = self._pending.pop(key)
            try:
                self._handler(item)
            except Exception:
                logger.exception("Handler failed for %s", key)

    def busy_keys(self) -> list[Hashable]:
        with self._cond:
            return list(self._active)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no key has a worker running.

        Returns:
            True if idle, False if the timeout expired first.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while self._active:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._cond.wait(remaining)
            return True
