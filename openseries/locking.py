"""Per-series advisory critical sections.

Materialization and scoped operations on the same series are serialized
through a re-entrant lock keyed by series id. Different series never contend.
The lock is process-local; across processes the unique
``(series_id, instance_date)`` constraint remains the arbiter.

Locks live only while some thread holds or waits on them, so the registry
does not grow with the number of series ever touched.
"""

from __future__ import annotations

import threading
import weakref
from collections.abc import Iterator
from contextlib import contextmanager


class _SeriesLock:
    __slots__ = ("_lock", "__weakref__")

    def __init__(self) -> None:
        self._lock = threading.RLock()

    def __enter__(self) -> _SeriesLock:
        self._lock.acquire()
        return self

    def __exit__(self, *exc_info) -> None:
        self._lock.release()


_registry_guard = threading.Lock()
_locks: weakref.WeakValueDictionary[str, _SeriesLock] = weakref.WeakValueDictionary()


def _lock_for(series_id: str) -> _SeriesLock:
    with _registry_guard:
        lock = _locks.get(series_id)
        if lock is None:
            lock = _SeriesLock()
            _locks[series_id] = lock
        return lock


@contextmanager
def series_lock(series_id: str) -> Iterator[None]:
    # The local reference keeps the registry entry alive until release.
    lock = _lock_for(series_id)
    with lock:
        yield
