"""
Scoped ownership of intermediate arrays.

Every array created while preprocessing an image or running a forward pass
is tracked in a :class:`TensorArena`. Leaving the arena drops all references
it holds and records the release in an :class:`AllocationLedger`, so a
long-lived process can verify that no run leaks intermediates.
"""

import threading
from typing import List, Optional, Tuple

import numpy as np


class AllocationLedger:
    """Thread-safe allocation/release counter shared by many arenas."""

    def __init__(self):
        self._lock = threading.Lock()
        self.allocated = 0
        self.released = 0

    @property
    def outstanding(self) -> int:
        with self._lock:
            return self.allocated - self.released

    def record_allocation(self, count: int = 1) -> None:
        with self._lock:
            self.allocated += count

    def record_release(self, count: int) -> None:
        with self._lock:
            self.released += count


class TensorArena:
    """
    Context manager owning the arrays of a single run.

    Usage::

        with TensorArena(ledger) as arena:
            x = arena.track(np.asarray(image))
            ...
        # every tracked array is released here, success or failure
    """

    def __init__(self, ledger: Optional[AllocationLedger] = None):
        self.ledger = ledger if ledger is not None else AllocationLedger()
        self._arrays: List[np.ndarray] = []
        self._closed = False

    def __enter__(self) -> "TensorArena":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

    def __len__(self) -> int:
        return len(self._arrays)

    def track(self, array: np.ndarray) -> np.ndarray:
        if self._closed:
            raise RuntimeError("TensorArena already released")
        self._arrays.append(array)
        self.ledger.record_allocation()
        return array

    def zeros(self, shape: Tuple[int, ...], dtype=np.float32) -> np.ndarray:
        return self.track(np.zeros(shape, dtype=dtype))

    def release(self) -> None:
        if self._closed:
            return
        count = len(self._arrays)
        self._arrays.clear()
        self._closed = True
        self.ledger.record_release(count)


def track(arena: Optional[TensorArena], array: np.ndarray) -> np.ndarray:
    """Track ``array`` in ``arena`` when one is given."""
    if arena is None:
        return array
    return arena.track(array)
