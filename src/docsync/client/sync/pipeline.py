"""Upload pipeline: filters candidate paths and dispatches uploads.

Architecture:
    TriggerSource → PathChannel → UploadPipeline → WorkerPool → UploadHandler

For every path taken from the channel the pipeline applies, in order and
stopping at the first failure:

1. the path is a regular file
2. the extension is ``.xml``
3. the in-flight cache admits the path

Admitted files are matched to their connector and handed to the upload
worker pool. The cache entry is released when the upload task ends,
whatever its outcome.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum, auto
from typing import TYPE_CHECKING

from docsync.client.sync.queue import ChannelClosedError

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

    from docsync.client.sync.cache import InFlightCache
    from docsync.client.sync.queue import PathChannel
    from docsync.client.sync.upload import UploadHandler, UploadOutcome
    from docsync.client.sync.workers import WorkerPool
    from docsync.core.config import Connector

logger = logging.getLogger(__name__)

UPLOAD_EXTENSION = ".xml"


class PipelineState(Enum):
    """State of the upload pipeline."""

    STOPPED = auto()
    RUNNING = auto()
    STOPPING = auto()


@dataclass
class PipelineStats:
    """Counters of the upload pipeline."""

    received: int = 0
    ignored: int = 0
    already_in_flight: int = 0
    dispatched: int = 0
    unmatched: int = 0


class UploadPipeline:
    """Consumes candidate paths and dispatches admitted files for upload.

    Usage:
        pipeline = UploadPipeline(channel, cache, pool, handler, config.connector_for_source_file)
        pipeline.start()
        ...
        pipeline.stop()
    """

    def __init__(
        self,
        channel: PathChannel,
        cache: InFlightCache,
        pool: WorkerPool,
        handler: UploadHandler,
        connector_for: Callable[[Path], Connector | None],
    ) -> None:
        """Initialize the pipeline.

        Args:
            channel: Channel fed by the trigger source.
            cache: In-flight cache used for admission.
            pool: Upload worker pool.
            handler: Upload handler run for each admitted file.
            connector_for: Resolves the connector owning a source file.
        """
        self._channel = channel
        self._cache = cache
        self._pool = pool
        self._handler = handler
        self._connector_for = connector_for

        self._state = PipelineState.STOPPED
        self._lock = threading.RLock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._stats = PipelineStats()

    @property
    def state(self) -> PipelineState:
        """Get current pipeline state."""
        return self._state

    @property
    def stats(self) -> PipelineStats:
        """Get pipeline statistics."""
        return self._stats

    def start(self) -> None:
        """Start the pipeline consumer thread."""
        with self._lock:
            if self._state != PipelineState.STOPPED:
                logger.warning("Upload pipeline already running")
                return

            self._state = PipelineState.RUNNING
            self._stop_event.clear()
            self._thread = threading.Thread(
                target=self._run,
                name="UploadPipeline",
                daemon=True,
            )
            self._thread.start()
            logger.info("Upload pipeline started")

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the pipeline.

        Args:
            timeout: Maximum time to wait for the consumer thread.
        """
        with self._lock:
            if self._state == PipelineState.STOPPED:
                return

            self._state = PipelineState.STOPPING
            self._stop_event.set()
            logger.info("Upload pipeline stopping...")

        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=timeout)

        with self._lock:
            self._state = PipelineState.STOPPED
            self._thread = None
            logger.info("Upload pipeline stopped")

    def _run(self) -> None:
        """Main processing loop."""
        while not self._stop_event.is_set():
            try:
                path = self._channel.get(timeout=0.1)
            except ChannelClosedError:
                logger.debug("Path channel closed; upload pipeline loop ending")
                break
            if path is None:
                continue
            try:
                self.process(path)
            except Exception:
                logger.exception("Error processing '%s'", path)

    def process(self, path: Path) -> bool:
        """Run one candidate path through the filter chain.

        Args:
            path: Absolute path emitted by a trigger source.

        Returns:
            True if the file was dispatched for upload.
        """
        self._stats.received += 1

        if not path.is_file():
            logger.debug("'%s' is not a regular file; ignored", path)
            self._stats.ignored += 1
            return False

        if path.suffix != UPLOAD_EXTENSION:
            logger.debug("'%s' does not end with '%s'; ignored", path.name, UPLOAD_EXTENSION)
            self._stats.ignored += 1
            return False

        if not self._cache.try_admit(path):
            logger.info("'%s' in '%s' is already being processed; ignoring", path.name, path.parent)
            self._stats.already_in_flight += 1
            return False

        connector = self._connector_for(path)
        if connector is None:
            logger.warning("No connector found for '%s'; ignoring", path)
            self._stats.unmatched += 1
            self._release(path)
            return False

        logger.info("Queuing '%s' for upload", path)
        if self._pool.submit(self._upload, path, connector) is None:
            self._release(path)
            return False
        self._stats.dispatched += 1
        return True

    def _upload(self, path: Path, connector: Connector) -> UploadOutcome:
        try:
            outcome = self._handler.handle(path, connector)
            logger.info("'%s' upload finished: %s", path, outcome.value)
            return outcome
        finally:
            self._release(path)

    def _release(self, path: Path) -> None:
        if not self._cache.release(path):
            logger.warning("'%s' was not in the in-flight cache when releasing it", path)
