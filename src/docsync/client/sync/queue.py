"""Bounded channel between trigger sources and the upload pipeline.

This module provides:
- PathChannel: Thread-safe bounded FIFO with blocking backpressure

Producers block in put() while the channel is full instead of dropping
paths or queueing without bound. Closing the channel wakes every waiting
producer and consumer.

Usage:
    channel = PathChannel(capacity=100)
    # producer thread
    channel.put(path)
    # consumer thread
    for path in channel:
        handle(path)
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator

logger = logging.getLogger(__name__)

DEFAULT_CHANNEL_CAPACITY = 100


class ChannelClosedError(RuntimeError):
    """The channel was closed."""


class PathChannel:
    """Thread-safe bounded FIFO of file paths.

    Attributes:
        capacity: Maximum number of buffered paths.
    """

    def __init__(self, capacity: int = DEFAULT_CHANNEL_CAPACITY) -> None:
        """Initialize the channel.

        Args:
            capacity: Maximum number of buffered paths.
        """
        if capacity < 1:
            raise ValueError("Channel capacity must be positive")
        self.capacity = capacity
        self._lock = threading.RLock()
        self._not_empty = threading.Condition(self._lock)
        self._not_full = threading.Condition(self._lock)
        self._paths: deque[Path] = deque()
        self._closed = False

    @property
    def closed(self) -> bool:
        """Check if the channel is closed."""
        return self._closed

    def put(self, path: Path, timeout: float | None = None) -> bool:
        """Append a path, blocking while the channel is full.

        Args:
            path: Path to enqueue.
            timeout: Maximum seconds to wait (None = wait forever).

        Returns:
            True if the path was enqueued, False if the timeout expired.

        Raises:
            ChannelClosedError: If the channel is closed.
        """
        with self._not_full:
            deadline = None if timeout is None else time.monotonic() + timeout
            while len(self._paths) >= self.capacity and not self._closed:
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return False
                    self._not_full.wait(timeout=remaining)
                else:
                    self._not_full.wait()

            if self._closed:
                raise ChannelClosedError("Channel is closed")

            self._paths.append(path)
            self._not_empty.notify()
            return True

    def get(self, timeout: float | None = None) -> Path | None:
        """Take the oldest path, blocking while the channel is empty.

        Args:
            timeout: Maximum seconds to wait (None = wait forever).

        Returns:
            The oldest path, or None if the timeout expired.

        Raises:
            ChannelClosedError: If the channel is closed and drained.
        """
        with self._not_empty:
            deadline = None if timeout is None else time.monotonic() + timeout
            while not self._paths and not self._closed:
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return None
                    self._not_empty.wait(timeout=remaining)
                else:
                    self._not_empty.wait()

            if not self._paths:
                raise ChannelClosedError("Channel is closed")

            path = self._paths.popleft()
            self._not_full.notify()
            return path

    def close(self) -> None:
        """Close the channel and wake up waiting threads.

        Paths still buffered can be drained with get().
        """
        with self._lock:
            self._closed = True
            self._not_empty.notify_all()
            self._not_full.notify_all()
            logger.debug("Path channel closed (%d paths buffered)", len(self._paths))

    def __len__(self) -> int:
        with self._lock:
            return len(self._paths)

    def __iter__(self) -> Iterator[Path]:
        """Yield paths until the channel is closed and drained."""
        while True:
            try:
                path = self.get()
            except ChannelClosedError:
                return
            if path is not None:
                yield path
