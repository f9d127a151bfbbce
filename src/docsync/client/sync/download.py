"""Pull handler: drains a connector's download queue.

For each pending document the handler runs, strictly in order:

1. download-next stages the document as ``{local-folder}/{id}.tmp``
2. acknowledge removes it from the server queue
3. the staged file moves into the target folder, still named ``.tmp``
4. the ``.tmp`` file is renamed to ``.xml`` in place

A crash between steps 3 and 4 leaves an unambiguous ``.tmp`` artifact in
the target folder instead of a half-written ``.xml`` document.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

from docsync.client.api import (
    AcknowledgeSuccess,
    DownloadError,
    DownloadSuccess,
    NoDocumentPending,
    new_trace_id,
)
from docsync.client.sync.documents import detect_document_type
from docsync.client.sync.paths import (
    path_is_directory_and_writable,
    replace_file,
    with_suffix_replaced,
)
from docsync.core.types import DocumentType

if TYPE_CHECKING:
    from pathlib import Path

    from docsync.client.api import DocumentApi
    from docsync.core.config import Connector

logger = logging.getLogger(__name__)

DOCUMENT_EXTENSION = ".xml"


class PullHandler:
    """Downloads, acknowledges and delivers documents for one connector at a time."""

    def __init__(self, api: DocumentApi, stop_event: threading.Event | None = None) -> None:
        """Initialize the handler.

        Args:
            api: Remote document API.
            stop_event: Set on shutdown; the round stops between documents.
        """
        self._api = api
        self._stop_event = stop_event or threading.Event()

    def pull_connector(self, connector: Connector) -> int:
        """Run one download round for a connector until its queue is empty.

        Any error aborts the round; the next scheduled round tries again.

        Args:
            connector: Connector to pull documents for.

        Returns:
            Number of documents delivered in this round.
        """
        logger.info(
            "Sync connector '%s' (%s) - pulling", connector.connector_id, connector.mode.value
        )
        count = 0

        while not self._stop_event.is_set():
            if not path_is_directory_and_writable(connector.target_folder):
                logger.error(
                    "Target folder of connector '%s' is not a writable directory; aborting round",
                    connector.connector_id,
                )
                break

            trace_id = new_trace_id()
            result = self._api.download_next(connector.connector_id, connector.mode, trace_id)

            match result:
                case DownloadSuccess(document_id=document_id, file=file):
                    if not self._acknowledge_and_deliver(connector, document_id, file, trace_id):
                        break
                    count += 1
                case NoDocumentPending():
                    logger.info(
                        "Sync connector '%s' done - %d file(s) pulled",
                        connector.connector_id,
                        count,
                    )
                    return count
                case DownloadError(cause=cause, code=code):
                    logger.error(
                        "Download for connector '%s' failed (status %s): %s",
                        connector.connector_id,
                        code,
                        cause,
                    )
                    break
                case _:
                    raise TypeError(f"Unknown download result: {result!r}")

        logger.info(
            "Synced %d file(s) for connector '%s' before the round stopped",
            count,
            connector.connector_id,
        )
        return count

    def _acknowledge_and_deliver(
        self,
        connector: Connector,
        document_id: str,
        file: Path,
        trace_id: str,
    ) -> bool:
        result = self._api.acknowledge(
            connector.connector_id, connector.mode, document_id, trace_id
        )
        match result:
            case AcknowledgeSuccess():
                pass
            case DownloadError(cause=cause, code=code):
                logger.error(
                    "Acknowledge of document '%s' for connector '%s' failed (status %s): %s",
                    document_id,
                    connector.connector_id,
                    code,
                    cause,
                )
                # Not acknowledged, so the server will deliver it again
                file.unlink(missing_ok=True)
                return False
            case _:
                raise TypeError(f"Unknown acknowledge result: {result!r}")

        target_dir = self._target_folder(connector, file)
        staged_target = target_dir / file.name
        final_target = with_suffix_replaced(staged_target, DOCUMENT_EXTENSION)
        try:
            target_dir.mkdir(parents=True, exist_ok=True)
            replace_file(file, staged_target)
            replace_file(staged_target, final_target)
        except OSError as e:
            logger.error("Unable to move '%s' to '%s': %s", file, target_dir, e)
            return False

        logger.debug("Moved document '%s' to '%s'", document_id, final_target)
        return True

    def _target_folder(self, connector: Connector, file: Path) -> Path:
        if not connector.doc_type_folders:
            return connector.target_folder
        doc_type = detect_document_type(file)
        target = connector.target_folder_for(doc_type)
        if doc_type == DocumentType.UNDEFINED or target == connector.target_folder:
            logger.debug(
                "No specific target folder defined for documents of type '%s'", doc_type.value
            )
        return target
