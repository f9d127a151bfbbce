"""Tests for the upload pipeline."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterator
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from docsync.client.sync.cache import InFlightCache
from docsync.client.sync.pipeline import PipelineState, UploadPipeline
from docsync.client.sync.queue import PathChannel
from docsync.client.sync.retry import RetryPolicy
from docsync.client.sync.upload import UploadHandler, UploadOutcome
from docsync.client.sync.workers import WorkerPool
from docsync.core.config import ClientConfig
from tests.fakes import DOCUMENT, FakeDocumentApi


@pytest.fixture
def pool() -> Iterator[WorkerPool]:
    """Create and start a two-worker upload pool."""
    pool = WorkerPool("upload", max_workers=2)
    pool.start()
    yield pool
    pool.stop(timeout=2.0)


def wait_until(condition: Callable[[], bool], timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.01)
    return condition()


def make_pipeline(
    config: ClientConfig,
    api: FakeDocumentApi,
    pool: WorkerPool,
    cache: InFlightCache | None = None,
    channel: PathChannel | None = None,
) -> UploadPipeline:
    handler = UploadHandler(api, RetryPolicy(()))
    return UploadPipeline(
        channel if channel is not None else PathChannel(),
        cache if cache is not None else InFlightCache(10_000),
        pool,
        handler,
        config.connector_for_source_file,
    )


class TestFilterChain:
    """Tests for UploadPipeline.process."""

    def test_dispatches_xml_file(
        self, config: ClientConfig, fake_api: FakeDocumentApi, pool: WorkerPool
    ) -> None:
        """Should upload an .xml file in a source folder."""
        file = config.customer[0].source_folder / "doc.xml"
        file.write_bytes(DOCUMENT)
        pipeline = make_pipeline(config, fake_api, pool)

        assert pipeline.process(file) is True
        assert wait_until(lambda: pool.completed_count + pool.error_count == 1)

        assert fake_api.calls == [("upload", "connector-1", "doc.upload")]
        assert pipeline.stats.dispatched == 1

    @pytest.mark.parametrize("name", ["doc.txt", "doc.upload", "doc.error", "doc.XML"])
    def test_ignores_other_extensions(
        self, config: ClientConfig, fake_api: FakeDocumentApi, pool: WorkerPool, name: str
    ) -> None:
        """Should ignore files that do not end with .xml."""
        file = config.customer[0].source_folder / name
        file.write_bytes(DOCUMENT)
        pipeline = make_pipeline(config, fake_api, pool)

        assert pipeline.process(file) is False
        assert pipeline.stats.ignored == 1

    def test_ignores_directories_and_missing_files(
        self, config: ClientConfig, fake_api: FakeDocumentApi, pool: WorkerPool
    ) -> None:
        """Should ignore paths that are not regular files."""
        folder = config.customer[0].source_folder / "nested.xml"
        folder.mkdir()
        pipeline = make_pipeline(config, fake_api, pool)

        assert pipeline.process(folder) is False
        assert pipeline.process(config.customer[0].source_folder / "gone.xml") is False
        assert pipeline.stats.ignored == 2

    def test_rejects_file_already_in_flight(
        self, config: ClientConfig, fake_api: FakeDocumentApi, pool: WorkerPool
    ) -> None:
        """Should not dispatch a file twice while its upload runs."""
        file = config.customer[0].source_folder / "doc.xml"
        file.write_bytes(DOCUMENT)
        fake_api.upload_gate = threading.Event()
        cache = InFlightCache(10_000)
        pipeline = make_pipeline(config, fake_api, pool, cache=cache)

        assert pipeline.process(file) is True
        assert fake_api.upload_started.wait(2.0)
        (config.customer[0].source_folder / "doc.xml").write_bytes(DOCUMENT)
        assert pipeline.process(file) is False
        assert pipeline.stats.already_in_flight == 1

        fake_api.upload_gate.set()
        assert wait_until(lambda: pool.completed_count + pool.error_count == 1)
        assert file not in cache

    def test_unmatched_file_is_released(
        self, config: ClientConfig, fake_api: FakeDocumentApi, pool: WorkerPool, tmp_path: Path
    ) -> None:
        """Should release a file that belongs to no connector."""
        file = tmp_path / "stray.xml"
        file.write_bytes(DOCUMENT)
        cache = InFlightCache(10_000)
        pipeline = make_pipeline(config, fake_api, pool, cache=cache)

        assert pipeline.process(file) is False
        assert pipeline.stats.unmatched == 1
        assert file not in cache

    def test_releases_when_pool_stopped(
        self, config: ClientConfig, fake_api: FakeDocumentApi
    ) -> None:
        """Should release the cache entry when the pool refuses the task."""
        file = config.customer[0].source_folder / "doc.xml"
        file.write_bytes(DOCUMENT)
        cache = InFlightCache(10_000)
        pipeline = make_pipeline(config, fake_api, WorkerPool("upload", 1), cache=cache)

        assert pipeline.process(file) is False
        assert file not in cache

    def test_releases_after_handler_error(
        self, config: ClientConfig, pool: WorkerPool
    ) -> None:
        """Should release the cache entry even when the handler raises."""
        file = config.customer[0].source_folder / "doc.xml"
        file.write_bytes(DOCUMENT)
        cache = InFlightCache(10_000)
        handler = MagicMock(spec=UploadHandler)
        handler.handle.side_effect = RuntimeError("boom")
        pipeline = UploadPipeline(
            PathChannel(), cache, pool, handler, config.connector_for_source_file
        )

        assert pipeline.process(file) is True
        assert wait_until(lambda: pool.completed_count + pool.error_count == 1)

        assert file not in cache
        assert pool.error_count == 1

    def test_release_after_success(
        self, config: ClientConfig, pool: WorkerPool
    ) -> None:
        """Should allow the same path again once its upload finished."""
        file = config.customer[0].source_folder / "doc.xml"
        file.write_bytes(DOCUMENT)
        handler = MagicMock(spec=UploadHandler)
        handler.handle.return_value = UploadOutcome.UPLOADED
        cache = InFlightCache(10_000)
        pipeline = UploadPipeline(
            PathChannel(), cache, pool, handler, config.connector_for_source_file
        )

        assert pipeline.process(file) is True
        assert wait_until(lambda: pool.completed_count + pool.error_count == 1)

        assert file not in cache
        handler.handle.assert_called_once_with(file, config.customer[0])


class TestPipelineLifecycle:
    """Tests for the consumer thread."""

    def test_consumes_channel(
        self, config: ClientConfig, fake_api: FakeDocumentApi, pool: WorkerPool
    ) -> None:
        """Should take paths from the channel and upload them."""
        channel = PathChannel()
        pipeline = make_pipeline(config, fake_api, pool, channel=channel)
        file = config.customer[0].source_folder / "doc.xml"
        file.write_bytes(DOCUMENT)

        pipeline.start()
        assert pipeline.state == PipelineState.RUNNING
        channel.put(file)
        assert fake_api.upload_started.wait(2.0)
        pipeline.stop()

        assert pipeline.state == PipelineState.STOPPED
        assert pipeline.stats.received == 1

    def test_stops_when_channel_closes(
        self, config: ClientConfig, fake_api: FakeDocumentApi, pool: WorkerPool
    ) -> None:
        """Should end the consumer loop once the channel is closed."""
        channel = PathChannel()
        pipeline = make_pipeline(config, fake_api, pool, channel=channel)
        pipeline.start()

        channel.close()
        pipeline.stop(timeout=2.0)

        assert pipeline.state == PipelineState.STOPPED
