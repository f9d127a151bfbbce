"""Polling trigger: re-lists source folders at a fixed delay."""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

from docsync.client.sync.watcher import TriggerSource, list_by_mtime

if TYPE_CHECKING:
    from collections.abc import Iterable
    from pathlib import Path

    from docsync.client.sync.queue import PathChannel

logger = logging.getLogger(__name__)


class PollingTrigger(TriggerSource):
    """Lists every source folder, oldest file first, then sleeps and repeats.

    Files still present in a source folder are emitted again on every
    cycle; the in-flight cache keeps a slow upload from being started twice.
    """

    def __init__(
        self,
        directories: Iterable[Path],
        channel: PathChannel,
        delay: float,
        stop_event: threading.Event | None = None,
    ) -> None:
        """Initialize the polling trigger.

        Args:
            directories: Source folders to poll.
            channel: Channel receiving candidate paths.
            delay: Seconds to wait between two polls.
            stop_event: Optional shared shutdown event.
        """
        super().__init__(directories, channel)
        self._delay = delay
        self._stop_event = stop_event or threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        """Start polling in a background thread."""
        if self._running:
            return
        self._check_startable()

        for directory in self._directories:
            logger.info("Polling source directory every %.1fs: '%s'", self._delay, directory)
        self._running = True
        self._thread = threading.Thread(target=self._poll_loop, name="PollingTrigger", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Stop polling."""
        if not self._running:
            return

        self._running = False
        self._stopped = True
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=5.0)
            self._thread = None
        logger.info("Directory poller stopped")

    def poll_once(self) -> int:
        """List every source folder once and emit its entries.

        Returns:
            Number of paths emitted.
        """
        emitted = 0
        for directory in self._directories:
            try:
                entries = list_by_mtime(directory)
            except OSError as e:
                logger.error("Failed to list source directory '%s': %s", directory, e)
                continue
            for path in entries:
                if self._stopped or not self.emit(path):
                    return emitted
                emitted += 1
        return emitted

    def _poll_loop(self) -> None:
        while self._running and not self._stop_event.is_set():
            try:
                self.poll_once()
            except Exception:
                logger.exception("Unexpected error while polling source directories")
            logger.debug("Next poll in %.1fs", self._delay)
            if self._stop_event.wait(self._delay):
                break
