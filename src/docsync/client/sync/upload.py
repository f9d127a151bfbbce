"""Upload handler: per-file state machine for outbound documents.

A file moves through these states:

    source.xml --rename--> source.upload --upload--> deleted or archived  (success)
                                               \\--> source.error + source.response  (4xx)
                                               \\--> retried after a delay  (5xx, transport)

Retries reuse the same ``.upload`` file. When the retry schedule is
exhausted the ``.upload`` file stays on disk for operator inspection. On
shutdown a pending retry is abandoned and the file is renamed back to
``.xml`` so it is picked up again after restart.
"""

from __future__ import annotations

import logging
import threading
import uuid
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

from docsync.client.api import (
    UploadClientError,
    UploadServerError,
    UploadSuccess,
    UploadTransportError,
    new_trace_id,
)
from docsync.client.sync.busy import NeverBusy, is_still_busy
from docsync.client.sync.paths import move_file, with_suffix_replaced

if TYPE_CHECKING:
    from collections.abc import Callable

    from docsync.client.api import DocumentApi
    from docsync.client.sync.busy import FileBusyTester
    from docsync.client.sync.retry import RetryPolicy
    from docsync.core.config import Connector

logger = logging.getLogger(__name__)

UPLOAD_EXTENSION = ".upload"
ERROR_EXTENSION = ".error"
RESPONSE_EXTENSION = ".response"
ARCHIVE_EXTENSION = ".xml"
DATE_FOLDER_FORMAT = "%Y%m%d"


class UploadOutcome(Enum):
    """Terminal outcome of handling one file."""

    UPLOADED = "uploaded"
    REJECTED = "rejected"
    RETRIES_EXHAUSTED = "retries_exhausted"
    NOT_RENAMED = "not_renamed"
    BUSY = "busy"
    CANCELLED = "cancelled"


class UploadHandler:
    """Uploads one file at a time with a bounded retry schedule.

    The handler is stateless between files and safe to share across the
    upload worker threads.
    """

    def __init__(
        self,
        api: DocumentApi,
        retry_policy: RetryPolicy,
        stop_event: threading.Event | None = None,
        busy_tester: FileBusyTester | None = None,
        busy_test_interval: float = 0.25,
        busy_test_timeout: float = 1.0,
        now: Callable[[], datetime] = datetime.now,
    ) -> None:
        """Initialize the handler.

        Args:
            api: Remote document API.
            retry_policy: Delays between attempts after 5xx/transport errors.
            stop_event: Set on shutdown; aborts backoff waits.
            busy_tester: Strategy deciding whether a file is still being written.
            busy_test_interval: Seconds between busy checks.
            busy_test_timeout: Maximum seconds to wait for a busy file.
            now: Clock used for date sub-folders.
        """
        self._api = api
        self._retry_policy = retry_policy
        self._stop_event = stop_event or threading.Event()
        self._busy_tester = busy_tester or NeverBusy()
        self._busy_test_interval = busy_test_interval
        self._busy_test_timeout = busy_test_timeout
        self._now = now

    def handle(self, file: Path, connector: Connector) -> UploadOutcome:
        """Upload a file and perform the resulting filesystem transition.

        Args:
            file: ``.xml`` file in one of the connector's source folders.
            connector: Connector owning the file.

        Returns:
            The terminal outcome for this file.
        """
        if is_still_busy(
            self._busy_tester,
            file,
            self._busy_test_interval,
            self._busy_test_timeout,
            self._stop_event,
        ):
            logger.warning(
                "'%s' is still busy after %.2fs; giving up, file will be picked up again later",
                file,
                self._busy_test_timeout,
            )
            return UploadOutcome.BUSY

        if self._stop_event.is_set():
            return UploadOutcome.CANCELLED

        upload_file = with_suffix_replaced(file, UPLOAD_EXTENSION)
        try:
            move_file(file, upload_file)
        except OSError as e:
            logger.error("Failed to rename '%s' to '%s': %s", file, upload_file.name, e)
            return UploadOutcome.NOT_RENAMED

        return self._upload_renamed(upload_file, file, connector)

    def _upload_renamed(
        self, upload_file: Path, original: Path, connector: Connector
    ) -> UploadOutcome:
        trace_id = new_trace_id()
        retry_index = 0

        while True:
            result = self._api.upload(
                connector.connector_id,
                connector.mode,
                connector.content_type,
                upload_file,
                trace_id,
            )

            match result:
                case UploadSuccess():
                    logger.info(
                        "'%s' uploaded for connector '%s'", upload_file.name, connector.connector_id
                    )
                    self._delete_or_archive(upload_file, connector)
                    return UploadOutcome.UPLOADED

                case UploadClientError(code=code, body=body):
                    logger.error(
                        "Upload of '%s' rejected with client error %d; no retry will be attempted",
                        upload_file.name,
                        code,
                    )
                    self._mark_as_error(upload_file, body, connector)
                    return UploadOutcome.REJECTED

                case UploadServerError() | UploadTransportError():
                    delay = self._retry_policy.delay_for(retry_index)
                    if delay is None:
                        logger.error(
                            "Upload of '%s' failed after %d retries; leaving it as '%s'",
                            upload_file.name,
                            retry_index,
                            upload_file.name,
                        )
                        return UploadOutcome.RETRIES_EXHAUSTED

                    logger.warning(
                        "Upload of '%s' failed (%s); retry #%d in %.2fs",
                        upload_file.name,
                        _describe(result),
                        retry_index + 1,
                        delay,
                    )
                    if self._stop_event.wait(delay):
                        self._restore(upload_file, original)
                        return UploadOutcome.CANCELLED
                    retry_index += 1

                case _:
                    raise TypeError(f"Unknown upload result: {result!r}")

    def _date_folder(self, root: Path) -> Path:
        folder = root / self._now().strftime(DATE_FOLDER_FORMAT)
        folder.mkdir(parents=True, exist_ok=True)
        return folder

    def _delete_or_archive(self, upload_file: Path, connector: Connector) -> None:
        try:
            if connector.source_archive_enabled:
                folder = self._date_folder(connector.archive_folder_for(upload_file))
                target = folder / f"{upload_file.stem}_{uuid.uuid4()}{ARCHIVE_EXTENSION}"
                move_file(upload_file, target)
                logger.debug("Archived '%s' to '%s'", upload_file.name, target)
            elif not _unlink(upload_file):
                logger.warning("Tried to delete '%s' but it was already gone", upload_file)
        except OSError as e:
            logger.error("Error handling successful upload of '%s': %s", upload_file, e)

    def _mark_as_error(self, upload_file: Path, body: str, connector: Connector) -> None:
        error_file = with_suffix_replaced(upload_file, ERROR_EXTENSION)
        if error_file.exists():
            unique = f"{upload_file.stem}_{uuid.uuid4()}{ERROR_EXTENSION}"
            error_file = upload_file.with_name(unique)
        response_file = with_suffix_replaced(error_file, RESPONSE_EXTENSION)

        try:
            move_file(upload_file, error_file)
            with response_file.open("a", encoding="utf-8") as fh:
                fh.write(body)

            error_root = connector.error_folder_for(upload_file)
            if error_root is not None and error_root.resolve() != upload_file.parent.resolve():
                folder = self._date_folder(error_root)
                move_file(error_file, folder / error_file.name)
                move_file(response_file, folder / response_file.name)
        except OSError as e:
            logger.error("Error handling failed upload of '%s': %s", upload_file, e)

    def _restore(self, upload_file: Path, original: Path) -> None:
        logger.info(
            "Upload of '%s' cancelled by shutdown; renaming it back to '%s'",
            upload_file.name,
            original.name,
        )
        try:
            move_file(upload_file, original)
        except OSError as e:
            logger.error("Failed to rename '%s' back to '%s': %s", upload_file, original.name, e)


def _unlink(file: Path) -> bool:
    try:
        file.unlink()
    except FileNotFoundError:
        return False
    return True


def _describe(result: UploadServerError | UploadTransportError) -> str:
    if isinstance(result, UploadServerError):
        return f"server error {result.code}"
    return f"transport error: {result.cause}"
