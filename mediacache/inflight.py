from __future__ import annotations

import threading
from typing import Dict, Optional, Tuple


class PendingFetch:
    """Completion handle shared by every request waiting on one cache key."""

    def __init__(self, key: str):
        self.key = key
        self._done = threading.Event()
        self.error: Optional[BaseException] = None
        self.waiters = 0
        self._sink = None

    def resolve(self) -> None:
        self._done.set()

    def fail(self, error: BaseException) -> None:
        self.error = error
        self._done.set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._done.wait(timeout)

    def attach(self, sink) -> None:
        """Expose the leader's cache sink so waiters can tell a slow fetch from a stuck one."""
        self._sink = sink

    @property
    def progress(self) -> int:
        sink = self._sink
        return sink.bytes_written if sink is not None else 0

    @property
    def done(self) -> bool:
        return self._done.is_set()

    @property
    def ok(self) -> bool:
        return self._done.is_set() and self.error is None


class InflightRegistry:
    """
    Maps cache key -> PendingFetch for fetches currently running.

    The first ``begin()`` for a key is the leader and must call ``finish()``
    once its PendingFetch is resolved or failed. Later callers join as waiters.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._pending: Dict[str, PendingFetch] = {}

    def begin(self, key: str) -> Tuple[PendingFetch, bool]:
        with self._lock:
            pending = self._pending.get(key)
            if pending is not None:
                pending.waiters += 1
                return pending, False
            pending = PendingFetch(key)
            self._pending[key] = pending
            return pending, True

    def finish(self, key: str) -> None:
        with self._lock:
            pending = self._pending.pop(key, None)
        if pending is not None and not pending.done:
            # Leader bailed out without settling; release anyone waiting.
            pending.fail(RuntimeError(f"fetch for {key} ended without a result"))

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._pending

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)
