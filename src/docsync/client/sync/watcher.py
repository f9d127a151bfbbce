"""Trigger sources producing candidate upload paths.

This module provides:
- TriggerSource: Base class for producers feeding a PathChannel
- EventTrigger: Watches source folders for new files using watchdog
- list_by_mtime: Directory listing ordered by last-modified time

Producers block when the channel is full. A trigger cannot be restarted
once stopped; build a new one instead.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import TYPE_CHECKING

from watchdog.events import (
    DirCreatedEvent,
    DirMovedEvent,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from docsync.client.sync.queue import ChannelClosedError

if TYPE_CHECKING:
    from collections.abc import Iterable

    from watchdog.observers.api import BaseObserver

    from docsync.client.sync.queue import PathChannel

logger = logging.getLogger(__name__)


def _decode(path: str | bytes) -> str:
    if isinstance(path, bytes):
        return path.decode("utf-8", errors="replace")
    return path


def list_by_mtime(directory: Path) -> list[Path]:
    """List the entries of a directory, oldest modification first.

    Entries that vanish while listing are skipped.
    """
    entries: list[tuple[float, Path]] = []
    for entry in directory.iterdir():
        try:
            entries.append((entry.stat().st_mtime, entry.absolute()))
        except OSError:
            continue
    entries.sort(key=lambda item: item[0])
    return [path for _, path in entries]


class TriggerSource:
    """Base class for producers of candidate upload paths."""

    def __init__(self, directories: Iterable[Path], channel: PathChannel) -> None:
        """Initialize the trigger.

        Args:
            directories: Source folders to observe.
            channel: Channel receiving candidate paths.
        """
        self._directories = [Path(d).absolute() for d in directories]
        self._channel = channel
        self._running = False
        self._stopped = False

    @property
    def directories(self) -> list[Path]:
        """Get the observed source folders."""
        return list(self._directories)

    @property
    def is_running(self) -> bool:
        """Check if the trigger is running."""
        return self._running

    def emit(self, path: Path) -> bool:
        """Push a path into the channel, blocking while it is full.

        Returns:
            False if the channel was closed.
        """
        try:
            self._channel.put(path)
        except ChannelClosedError:
            return False
        return True

    def start(self) -> None:
        """Start producing paths."""
        raise NotImplementedError

    def stop(self) -> None:
        """Stop producing paths."""
        raise NotImplementedError

    def _check_startable(self) -> None:
        if self._stopped:
            raise RuntimeError(f"{type(self).__name__} cannot be restarted once stopped")

    def __enter__(self) -> TriggerSource:
        """Context manager entry."""
        self.start()
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.stop()


class _CreatedFileHandler(FileSystemEventHandler):
    """Forwards created files; modifications and deletions are dropped."""

    def __init__(self, trigger: EventTrigger) -> None:
        super().__init__()
        self._trigger = trigger

    def on_created(self, event: FileSystemEvent) -> None:
        """Handle created event."""
        if isinstance(event, DirCreatedEvent):
            return
        path = Path(_decode(event.src_path)).absolute()
        logger.debug("File created: '%s'", path)
        self._trigger.emit(path)

    def on_moved(self, event: FileSystemEvent) -> None:
        """Handle moved event; a file moved into a source folder counts as created."""
        if isinstance(event, DirMovedEvent):
            return
        dest = Path(_decode(event.dest_path)).absolute()
        if dest.parent in self._trigger.directories:
            logger.debug("File moved in: '%s'", dest)
            self._trigger.emit(dest)

    def on_modified(self, event: FileSystemEvent) -> None:
        """Handle modified event."""
        logger.debug("File modified: '%s'; ignored", _decode(event.src_path))

    def on_deleted(self, event: FileSystemEvent) -> None:
        """Handle deleted event."""
        logger.debug("File deleted: '%s'; ignored, was probably us", _decode(event.src_path))


class EventTrigger(TriggerSource):
    """Watches source folders for new files.

    One non-recursive watch is scheduled per source folder. Only creations
    (and files moved into a folder) are forwarded. Optionally the files
    already present at start are emitted first, oldest first, so files left
    behind by a previous run are not stranded.
    """

    def __init__(
        self,
        directories: Iterable[Path],
        channel: PathChannel,
        scan_existing: bool = True,
    ) -> None:
        """Initialize the event trigger.

        Args:
            directories: Source folders to watch.
            channel: Channel receiving candidate paths.
            scan_existing: Emit files already present when started.

        Raises:
            ValueError: If a source folder is not a directory.
        """
        super().__init__(directories, channel)
        for directory in self._directories:
            if not directory.is_dir():
                raise ValueError(f"Watch path must be a directory: {directory}")
        self._scan_existing = scan_existing
        self._handler = _CreatedFileHandler(self)
        self._observer: BaseObserver = Observer()
        self._scanner: threading.Thread | None = None

    def start(self) -> None:
        """Start watching for new files."""
        if self._running:
            return
        self._check_startable()

        for directory in self._directories:
            logger.info("Watching source directory: '%s'", directory)
            self._observer.schedule(self._handler, str(directory), recursive=False)
        self._observer.start()
        self._running = True

        if self._scan_existing:
            self._scanner = threading.Thread(
                target=self._emit_existing,
                name="EventTrigger-scan",
                daemon=True,
            )
            self._scanner.start()

    def stop(self) -> None:
        """Stop watching for new files."""
        if not self._running:
            return

        self._running = False
        self._stopped = True
        self._observer.stop()
        self._observer.join(timeout=5.0)
        if self._scanner is not None:
            self._scanner.join(timeout=5.0)
        logger.info("File watcher stopped")

    def _emit_existing(self) -> None:
        for directory in self._directories:
            try:
                entries = list_by_mtime(directory)
            except OSError as e:
                logger.error("Failed to list source directory '%s': %s", directory, e)
                continue
            for path in entries:
                if not self._running or not self.emit(path):
                    return
