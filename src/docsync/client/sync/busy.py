"""File-busy tests run before a file is renamed for upload.

This module provides:
- FileBusyTester: Strategy deciding whether a file is still being written
- NeverBusy, AlwaysBusy, FileSizeChanged: Available strategies
- create_busy_tester: Build the strategy selected by configuration
- is_still_busy: Wait for a file to settle, bounded by a timeout
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from docsync.core.types import FileBusyTestStrategy

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)


class FileBusyTester(ABC):
    """Decides whether a file is still being written by another process."""

    @abstractmethod
    def is_busy(self, file: Path) -> bool:
        """Check whether the file is busy."""


class NeverBusy(FileBusyTester):
    """Treats every file as ready."""

    def is_busy(self, file: Path) -> bool:
        return False


class AlwaysBusy(FileBusyTester):
    """Treats every file as busy. Only useful for testing."""

    def is_busy(self, file: Path) -> bool:
        return True


class FileSizeChanged(FileBusyTester):
    """Samples the file size twice; a changed size means the file is busy."""

    def __init__(self, interval: float, stop_event: threading.Event | None = None) -> None:
        """Initialize the tester.

        Args:
            interval: Seconds between the two size samples.
            stop_event: Optional event cutting the sampling wait short.
        """
        if interval <= 0:
            raise ValueError("File busy test interval must be positive")
        self._interval = interval
        self._stop_event = stop_event or threading.Event()

    def is_busy(self, file: Path) -> bool:
        try:
            start_size = file.stat().st_size
            self._stop_event.wait(self._interval)
            end_size = file.stat().st_size
        except OSError as e:
            logger.warning("Failed to determine file size for file '%s': %s", file, e)
            return False
        busy = start_size != end_size
        logger.debug(
            "'%s' busy state: %s; start size: %d, end size: %d",
            file.name,
            busy,
            start_size,
            end_size,
        )
        return busy


def create_busy_tester(
    strategy: FileBusyTestStrategy,
    interval: float,
    stop_event: threading.Event | None = None,
) -> FileBusyTester:
    """Build the busy tester for a configured strategy.

    Args:
        strategy: Configured strategy.
        interval: Sampling interval in seconds (FILE_SIZE_CHANGED only).
        stop_event: Optional event cutting waits short on shutdown.

    Returns:
        The tester instance.
    """
    if strategy == FileBusyTestStrategy.FILE_SIZE_CHANGED:
        logger.info("Using file-busy-test strategy 'FILE_SIZE_CHANGED' (interval %.2fs)", interval)
        return FileSizeChanged(interval, stop_event)
    if strategy == FileBusyTestStrategy.ALWAYS_BUSY:
        logger.info("Using file-busy-test strategy 'ALWAYS_BUSY'")
        return AlwaysBusy()
    logger.info("Using file-busy-test strategy 'NEVER_BUSY'")
    return NeverBusy()


def is_still_busy(
    tester: FileBusyTester,
    file: Path,
    interval: float,
    timeout: float,
    stop_event: threading.Event | None = None,
) -> bool:
    """Wait for a file to stop being busy.

    Args:
        tester: Busy test strategy.
        file: File to check.
        interval: Seconds to wait between checks.
        timeout: Maximum seconds to wait for the file to settle.
        stop_event: Optional event aborting the wait.

    Returns:
        False as soon as the file is not busy; True if it is still busy
        when the timeout expires or the stop event is set.
    """
    stop_event = stop_event or threading.Event()
    deadline = time.monotonic() + timeout
    while tester.is_busy(file):
        remaining = deadline - time.monotonic()
        if remaining <= 0 or stop_event.is_set():
            return True
        logger.debug("'%s' is still busy; waiting %.2fs for it to become available", file, interval)
        if stop_event.wait(min(interval, remaining)):
            return True
    return False
