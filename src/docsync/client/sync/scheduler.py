"""Scheduler for periodic download rounds.

This module provides:
- DownloadScheduler: Runs a download round for every connector at a fixed delay

The delay is measured from the end of one round to the start of the next,
so a slow round never overlaps the following one.

Each round submits one task per connector to the download worker pool, so
connectors are pulled concurrently up to the pool size and a failing
connector never blocks another.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import wait
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.date import DateTrigger

from docsync.client.sync.paths import path_is_directory_and_writable

if TYPE_CHECKING:
    from concurrent.futures import Future
    from pathlib import Path

    from docsync.client.sync.download import PullHandler
    from docsync.client.sync.workers import WorkerPool
    from docsync.core.config import Connector
    from docsync.core.types import Mode

logger = logging.getLogger(__name__)

DEFAULT_INITIAL_DELAY = 2.0  # seconds


class DownloadScheduler:
    """Runs download rounds on a fixed delay using a background scheduler."""

    def __init__(
        self,
        connectors: list[Connector],
        local_folder: Path,
        handler: PullHandler,
        pool: WorkerPool,
        schedule_delay: float,
        initial_delay: float = DEFAULT_INITIAL_DELAY,
    ) -> None:
        """Initialize the scheduler.

        Args:
            connectors: Connectors to pull documents for.
            local_folder: Staging folder for in-transit downloads.
            handler: Pull handler running one connector round.
            pool: Download worker pool.
            schedule_delay: Seconds between rounds.
            initial_delay: Seconds before the first round.
        """
        self._connectors = connectors
        self._local_folder = local_folder
        self._handler = handler
        self._pool = pool
        self._schedule_delay = schedule_delay
        self._initial_delay = initial_delay
        self._scheduler: BackgroundScheduler | None = None
        self._lock = threading.Lock()

    def _download_job(self) -> None:
        """Job function for scheduled download rounds."""
        try:
            self.run_once()
        except Exception:
            logger.exception("Error during scheduled download round")
        finally:
            self._schedule_next(self._schedule_delay)

    def _schedule_next(self, delay: float) -> None:
        with self._lock:
            if self._scheduler is None:
                return
            self._scheduler.add_job(
                self._download_job,
                trigger=DateTrigger(run_date=datetime.now() + timedelta(seconds=delay)),
                name="Document download",
                misfire_grace_time=None,
            )

    def start(self) -> None:
        """Start the scheduler."""
        with self._lock:
            if self._scheduler is not None:
                return  # Already running
            self._scheduler = BackgroundScheduler()
            self._scheduler.start()
        self._schedule_next(self._initial_delay)
        logger.info(
            "Download scheduler started (%d connectors, every %.1fs)",
            len(self._connectors),
            self._schedule_delay,
        )

    def stop(self) -> None:
        """Stop the scheduler.

        A round that is already running finishes on the worker pool.
        """
        with self._lock:
            scheduler, self._scheduler = self._scheduler, None
        if scheduler is not None:
            scheduler.shutdown(wait=False)
            logger.info("Download scheduler stopped")

    def run_once(self) -> dict[tuple[str, Mode], int]:
        """Run one download round for every connector and wait for it to finish.

        Returns:
            Number of documents delivered per (connector id, mode); connectors
            whose round failed are missing from the result.
        """
        if not path_is_directory_and_writable(self._local_folder):
            logger.error(
                "Local folder '%s' is not a writable directory; skipping round",
                self._local_folder,
            )
            return {}

        futures: dict[tuple[str, Mode], Future[int]] = {}
        for connector in self._connectors:
            future = self._pool.submit(self._handler.pull_connector, connector)
            if future is not None:
                futures[(connector.connector_id, connector.mode)] = future

        wait(futures.values())

        results: dict[tuple[str, Mode], int] = {}
        for key, future in futures.items():
            if future.cancelled():
                continue
            error = future.exception()
            if error is not None:
                logger.error("Download round for connector '%s' failed: %s", key[0], error)
                continue
            results[key] = future.result()
        return results
