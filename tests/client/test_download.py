"""Tests for the pull handler and the download scheduler."""

from __future__ import annotations

import threading
import time
from collections.abc import Iterator
from pathlib import Path

import pytest

from docsync.client.api import DownloadError, NoDocumentPending
from docsync.client.sync.documents import detect_document_type
from docsync.client.sync.download import PullHandler
from docsync.client.sync.scheduler import DownloadScheduler
from docsync.client.sync.workers import WorkerPool
from docsync.core.config import ClientConfig, Connector
from docsync.core.types import DocumentType, Mode
from tests.fakes import DOCUMENT, FakeDocumentApi, RecordingEvent, make_config

CREDIT = b'<credit xmlns="http://sumex1.net/gcr"><amount>1</amount></credit>'


class TestDetectDocumentType:
    """Tests for detect_document_type."""

    @pytest.mark.parametrize(
        ("body", "expected"),
        [
            (DOCUMENT, DocumentType.INVOICE),
            (CREDIT, DocumentType.CREDIT),
            (b'<form xmlns="http://www.forum-datenaustausch.ch/form"/>', DocumentType.FORM),
            (b'<x xmlns="urn:unknown"/>', DocumentType.UNDEFINED),
            (b"<plain/>", DocumentType.UNDEFINED),
            (b"not xml", DocumentType.UNDEFINED),
        ],
    )
    def test_namespace_mapping(self, tmp_path: Path, body: bytes, expected: DocumentType) -> None:
        """Should classify documents by their root namespace."""
        file = tmp_path / "doc.tmp"
        file.write_bytes(body)

        assert detect_document_type(file) == expected

    def test_missing_file(self, tmp_path: Path) -> None:
        """Should classify an unreadable file as undefined."""
        assert detect_document_type(tmp_path / "missing.tmp") == DocumentType.UNDEFINED


class TestPullHandler:
    """Tests for PullHandler."""

    def test_delivers_all_pending_documents(
        self, config: ClientConfig, fake_api: FakeDocumentApi, stop_event: RecordingEvent
    ) -> None:
        """Should download, acknowledge and deliver until the queue is empty."""
        connector = config.customer[0]
        fake_api.add_documents("connector-1", 3)

        count = PullHandler(fake_api, stop_event).pull_connector(connector)

        assert count == 3
        assert fake_api.count("download") == 4
        assert fake_api.count("acknowledge") == 3
        delivered = sorted(connector.target_folder.iterdir())
        assert len(delivered) == 3
        assert all(file.suffix == ".xml" for file in delivered)
        assert all(file.read_bytes() == DOCUMENT for file in delivered)
        assert list(config.local_folder.iterdir()) == []

    def test_acknowledges_before_delivery(
        self, config: ClientConfig, fake_api: FakeDocumentApi, stop_event: RecordingEvent
    ) -> None:
        """Should acknowledge each document right after downloading it."""
        fake_api.add_documents("connector-1", 2)

        PullHandler(fake_api, stop_event).pull_connector(config.customer[0])

        operations = [call[0] for call in fake_api.calls]
        assert operations == ["download", "acknowledge", "download", "acknowledge", "download"]

    def test_delivered_name_is_document_id(
        self, config: ClientConfig, fake_api: FakeDocumentApi, stop_event: RecordingEvent
    ) -> None:
        """Should name the delivered file after the document id."""
        connector = config.customer[0]
        fake_api.add_documents("connector-1", 1)

        PullHandler(fake_api, stop_event).pull_connector(connector)

        document_id = fake_api.calls[1][2]
        assert (connector.target_folder / f"{document_id}.xml").exists()

    def test_acknowledge_failure_aborts_round(
        self, config: ClientConfig, fake_api: FakeDocumentApi, stop_event: RecordingEvent
    ) -> None:
        """Should drop the staged file and stop the round when acknowledge fails."""
        connector = config.customer[0]
        fake_api.add_documents("connector-1", 2)
        fake_api.acknowledge_results = [DownloadError("gateway timeout", 504)]

        count = PullHandler(fake_api, stop_event).pull_connector(connector)

        assert count == 0
        assert fake_api.count("download") == 1
        assert list(config.local_folder.iterdir()) == []
        assert list(connector.target_folder.iterdir()) == []

    def test_download_error_aborts_round(
        self, config: ClientConfig, fake_api: FakeDocumentApi, stop_event: RecordingEvent
    ) -> None:
        """Should stop the round on a download error."""
        fake_api.download_results = [DownloadError("unauthorized", 401)]

        assert PullHandler(fake_api, stop_event).pull_connector(config.customer[0]) == 0
        assert fake_api.count("download") == 1
        assert fake_api.count("acknowledge") == 0

    def test_empty_queue(
        self, config: ClientConfig, fake_api: FakeDocumentApi, stop_event: RecordingEvent
    ) -> None:
        """Should make a single download call when nothing is pending."""
        fake_api.download_results = [NoDocumentPending()]

        assert PullHandler(fake_api, stop_event).pull_connector(config.customer[0]) == 0
        assert fake_api.calls == [("download", "connector-1")]

    def test_stop_event_ends_round(
        self, config: ClientConfig, fake_api: FakeDocumentApi, stop_event: RecordingEvent
    ) -> None:
        """Should not start a download once stopping."""
        fake_api.add_documents("connector-1", 5)
        stop_event.set()

        assert PullHandler(fake_api, stop_event).pull_connector(config.customer[0]) == 0
        assert fake_api.calls == []

    def test_unwritable_target_aborts_round(
        self, config: ClientConfig, fake_api: FakeDocumentApi, stop_event: RecordingEvent
    ) -> None:
        """Should not download when the target folder is missing."""
        connector = config.customer[0]
        connector.target_folder.rmdir()
        fake_api.add_documents("connector-1", 1)

        assert PullHandler(fake_api, stop_event).pull_connector(connector) == 0
        assert fake_api.calls == []

    def test_routes_by_document_type(
        self, tmp_path: Path, fake_api: FakeDocumentApi, stop_event: RecordingEvent
    ) -> None:
        """Should deliver typed documents into their document type target folder."""
        config = make_config(
            tmp_path,
            connector_options={"doc-type-folders": {"invoice": {"target-folder": "invoices"}}},
        )
        connector = config.customer[0]
        fake_api.add_documents("connector-1", 1, DOCUMENT)
        fake_api.add_documents("connector-1", 1, CREDIT)

        assert PullHandler(fake_api, stop_event).pull_connector(connector) == 2

        invoices = list((connector.target_folder / "invoices").glob("*.xml"))
        others = list(connector.target_folder.glob("*.xml"))
        assert len(invoices) == 1
        assert invoices[0].read_bytes() == DOCUMENT
        assert len(others) == 1
        assert others[0].read_bytes() == CREDIT


class TestDownloadScheduler:
    """Tests for DownloadScheduler."""

    @pytest.fixture
    def pool(self) -> Iterator[WorkerPool]:
        pool = WorkerPool("download", max_workers=2)
        pool.start()
        yield pool
        pool.stop(timeout=2.0)

    def test_round_drains_every_connector(
        self,
        tmp_path: Path,
        fake_api: FakeDocumentApi,
        stop_event: RecordingEvent,
        pool: WorkerPool,
    ) -> None:
        """Should pull every connector until its queue is empty."""
        config = make_config(tmp_path, connector_ids=("connector-1", "connector-2"))
        fake_api.add_documents("connector-1", 75)
        fake_api.add_documents("connector-2", 50)
        scheduler = DownloadScheduler(
            config.customer, config.local_folder, PullHandler(fake_api, stop_event), pool, 60.0
        )

        results = scheduler.run_once()

        assert results == {("connector-1", Mode.TEST): 75, ("connector-2", Mode.TEST): 50}
        assert len(fake_api.calls) == 2 * 75 + 2 * 50 + 2
        assert fake_api.count("download", "connector-1") == 76
        assert fake_api.count("acknowledge", "connector-2") == 50
        assert len(list(config.customer[0].target_folder.glob("*.xml"))) == 75
        assert len(list(config.customer[1].target_folder.glob("*.xml"))) == 50
        assert list(config.local_folder.iterdir()) == []

    def test_failing_connector_does_not_block_others(
        self,
        tmp_path: Path,
        fake_api: FakeDocumentApi,
        stop_event: RecordingEvent,
        pool: WorkerPool,
    ) -> None:
        """Should still pull other connectors when one raises."""
        config = make_config(tmp_path, connector_ids=("connector-1", "connector-2"))
        fake_api.add_documents("connector-2", 2)
        handler = PullHandler(fake_api, stop_event)
        original = handler.pull_connector

        def pull(connector: Connector) -> int:
            if connector.connector_id == "connector-1":
                raise RuntimeError("boom")
            return original(connector)

        handler.pull_connector = pull  # type: ignore[method-assign]
        scheduler = DownloadScheduler(config.customer, config.local_folder, handler, pool, 60.0)

        assert scheduler.run_once() == {("connector-2", Mode.TEST): 2}

    def test_skips_round_without_local_folder(
        self, config: ClientConfig, fake_api: FakeDocumentApi, pool: WorkerPool
    ) -> None:
        """Should not pull when the local folder is unusable."""
        config.local_folder.rmdir()
        fake_api.add_documents("connector-1", 1)
        scheduler = DownloadScheduler(
            config.customer, config.local_folder, PullHandler(fake_api), pool, 60.0
        )

        assert scheduler.run_once() == {}
        assert fake_api.calls == []

    def test_start_and_stop(
        self, config: ClientConfig, fake_api: FakeDocumentApi, pool: WorkerPool
    ) -> None:
        """Should run the first round after the initial delay."""
        fake_api.add_documents("connector-1", 1)
        scheduler = DownloadScheduler(
            config.customer,
            config.local_folder,
            PullHandler(fake_api),
            pool,
            60.0,
            initial_delay=0.0,
        )

        scheduler.start()
        try:
            target = config.customer[0].target_folder
            for _ in range(100):
                if list(target.glob("*.xml")):
                    break
                time.sleep(0.05)
        finally:
            scheduler.stop()

        assert len(list(config.customer[0].target_folder.glob("*.xml"))) == 1

    def test_slow_rounds_do_not_overlap(
        self, config: ClientConfig, fake_api: FakeDocumentApi, pool: WorkerPool
    ) -> None:
        """Should wait the delay after a round ends before starting the next one."""
        handler = PullHandler(fake_api)
        lock = threading.Lock()
        running = 0
        overlaps = 0
        rounds = 0

        def pull(connector: Connector) -> int:
            nonlocal running, overlaps, rounds
            with lock:
                running += 1
                if running > 1:
                    overlaps += 1
            time.sleep(0.15)
            with lock:
                running -= 1
                rounds += 1
            return 0

        handler.pull_connector = pull  # type: ignore[method-assign]
        scheduler = DownloadScheduler(
            config.customer, config.local_folder, handler, pool, 0.02, initial_delay=0.0
        )

        scheduler.start()
        try:
            for _ in range(100):
                if rounds >= 3:
                    break
                time.sleep(0.05)
        finally:
            scheduler.stop()

        assert rounds >= 3
        assert overlaps == 0
