"""In-flight cache for upload admission control.

The cache is an LRU-bounded set of absolute path strings. A path is admitted
once; further admission attempts fail until the path is released. None of
the operations block beyond a short critical section.
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from pathlib import Path

logger = logging.getLogger(__name__)

# Estimated memory cost of one entry (key string, value and bookkeeping)
ESTIMATED_ENTRY_SIZE = 512  # bytes


class InFlightCache:
    """Thread-safe admission set with LRU eviction.

    Capacity is derived from a byte budget divided by the estimated cost of
    one entry. Evicting an entry that is still in flight means the
    deployment has more concurrent files than provisioned; the evicted path
    may then be admitted and processed a second time.

    Usage:
        cache = InFlightCache(max_bytes=1024 * 1024)
        if cache.try_admit(path):
            try:
                handle(path)
            finally:
                cache.release(path)
    """

    def __init__(self, max_bytes: int, entry_size: int = ESTIMATED_ENTRY_SIZE) -> None:
        """Initialize the cache.

        Args:
            max_bytes: Memory budget of the cache.
            entry_size: Estimated cost of one entry in bytes.
        """
        self._capacity = max(max_bytes // entry_size, 1)
        self._entries: OrderedDict[str, Path] = OrderedDict()
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        """Get the maximum number of entries."""
        return self._capacity

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, path: object) -> bool:
        with self._lock:
            return str(path) in self._entries

    def try_admit(self, path: Path | str) -> bool:
        """Record a path as in flight.

        Args:
            path: Absolute path of the file.

        Returns:
            True if the path was admitted, False if it is already in flight.
        """
        key = str(path)
        with self._lock:
            if key in self._entries:
                self._entries.move_to_end(key)
                return False
            self._entries[key] = Path(key)
            if len(self._entries) > self._capacity:
                evicted, _ = self._entries.popitem(last=False)
                logger.warning(
                    "In-flight cache is full (capacity %d); evicted '%s'. "
                    "Consider increasing files-in-progress-cache-size",
                    self._capacity,
                    evicted,
                )
            return True

    def release(self, path: Path | str) -> bool:
        """Remove a path from the cache.

        Args:
            path: Path previously admitted.

        Returns:
            True if the path was present, False if it was already gone.
        """
        with self._lock:
            return self._entries.pop(str(path), None) is not None

    def clear(self) -> None:
        """Remove every entry."""
        with self._lock:
            self._entries.clear()
