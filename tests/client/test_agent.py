"""Tests for the document agent lifecycle."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest
import yaml

from docsync.client.agent import DocumentAgent, ensure_folders
from docsync.client.credentials import CredentialRenewalError, RenewFailure, RenewSuccess
from docsync.client.environment import ConfigEnvironment, ConfigurationHolder
from docsync.core.config import ClientConfig, ConfigurationError
from docsync.core.types import SyncStatus
from tests.fakes import DOCUMENT, FakeDocumentApi, client_tree, make_config, write_yaml


def wait_until(condition: Callable[[], bool], timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.02)
    return condition()


def agent_tree(root: Path, **settings: Any) -> dict[str, Any]:
    tree = client_tree(root)
    tree["client"].update(
        {
            "upload-trigger": "polling",
            "schedule-delay": "50ms",
            "retry-delay": ["10ms"],
            "shutdown-grace-period": "1s",
            **settings,
        }
    )
    return tree


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    """Write a polling configuration below tmp_path."""
    return write_yaml(tmp_path / "application.yml", agent_tree(tmp_path))


@pytest.fixture
def holder(config_file: Path) -> ConfigurationHolder:
    """Create a holder for the configuration file."""
    return ConfigurationHolder(ConfigEnvironment.from_files([config_file], environ={}))


@pytest.fixture
def fake_api(tmp_path: Path) -> FakeDocumentApi:
    """Create a fake API staging downloads in the local folder."""
    return FakeDocumentApi(tmp_path / "local")


@pytest.fixture
def agent(holder: ConfigurationHolder, fake_api: FakeDocumentApi) -> Iterator[DocumentAgent]:
    """Create an agent using the fake API."""
    agent = DocumentAgent(holder, api_factory=lambda config: fake_api, download_initial_delay=0.0)
    yield agent
    agent.stop(grace_period=1.0)


class TestEnsureFolders:
    """Tests for ensure_folders."""

    def test_creates_missing_folders(self, tmp_path: Path) -> None:
        """Should create the local and every connector folder."""
        config = make_config(
            tmp_path,
            connector_options={
                "doc-type-folders": {"invoice": {"source-folder": "in", "target-folder": "out"}}
            },
        )
        connector = config.customer[0]
        connector.target_folder.rmdir()
        config.local_folder.rmdir()

        ensure_folders(config)

        assert config.local_folder.is_dir()
        assert connector.target_folder.is_dir()
        assert (connector.source_folder / "in").is_dir()
        assert (connector.target_folder / "out").is_dir()

    def test_reports_uncreatable_folder(self, tmp_path: Path) -> None:
        """Should raise a configuration error when a folder cannot be created."""
        config = make_config(tmp_path)
        blocker = tmp_path / "blocker"
        blocker.write_text("a file")
        broken = config.model_copy(update={"local_folder": blocker / "local"})

        with pytest.raises(ConfigurationError, match="Failed to create directory"):
            ensure_folders(broken)


class TestDocumentAgent:
    """Tests for DocumentAgent."""

    def test_uploads_files(
        self, agent: DocumentAgent, fake_api: FakeDocumentApi, tmp_path: Path
    ) -> None:
        """Should pick up and upload files placed in a source folder."""
        agent.start()
        assert agent.status == SyncStatus.SYNCHRONIZING

        (tmp_path / "source" / "doc.xml").write_bytes(DOCUMENT)

        assert wait_until(lambda: not list((tmp_path / "source").iterdir()))
        assert fake_api.count("upload", "1234") == 1

    def test_downloads_documents(
        self, agent: DocumentAgent, fake_api: FakeDocumentApi, tmp_path: Path
    ) -> None:
        """Should deliver pending documents into the target folder."""
        fake_api.add_documents("1234", 3)

        agent.start()

        assert wait_until(lambda: len(list((tmp_path / "target").glob("*.xml"))) == 3)

    def test_stop(self, agent: DocumentAgent) -> None:
        """Should stop every component and report STOPPED."""
        agent.start()
        agent.stop(grace_period=1.0)

        assert agent.status == SyncStatus.STOPPED
        with pytest.raises(RuntimeError, match="not running"):
            _ = agent.api

    def test_stop_shares_grace_period(
        self, agent: DocumentAgent, fake_api: FakeDocumentApi, tmp_path: Path
    ) -> None:
        """Should give both worker pools one grace period together."""
        fake_api.upload_gate = threading.Event()
        fake_api.download_gate = threading.Event()
        agent.start()
        (tmp_path / "source" / "doc.xml").write_bytes(DOCUMENT)
        assert fake_api.upload_started.wait(2.0)
        assert fake_api.download_started.wait(2.0)

        try:
            started = time.monotonic()
            agent.stop(grace_period=0.5)
            elapsed = time.monotonic() - started
        finally:
            fake_api.upload_gate.set()
            fake_api.download_gate.set()

        assert agent.status == SyncStatus.STOPPED
        assert elapsed < 0.9

    def test_api_before_start(self, agent: DocumentAgent) -> None:
        """Should refuse access to the API client before starting."""
        with pytest.raises(RuntimeError):
            _ = agent.api

    def test_renewal_before_start(self, holder: ConfigurationHolder, config_file: Path) -> None:
        """Should fail renewal without building an API client when not running."""
        before = config_file.read_text()
        factory = MagicMock()
        agent = DocumentAgent(holder, api_factory=factory)

        result = agent.renewal_service.renew()

        assert isinstance(result, RenewFailure)
        assert isinstance(result.cause, CredentialRenewalError)
        assert "not running" in str(result.cause)
        factory.assert_not_called()
        assert config_file.read_text() == before

    def test_renewal_uses_running_client(
        self, holder: ConfigurationHolder, fake_api: FakeDocumentApi
    ) -> None:
        """Should renew through the client created at startup."""
        factory = MagicMock(return_value=fake_api)
        agent = DocumentAgent(holder, api_factory=factory, download_initial_delay=0.0)
        agent.start()
        try:
            result = agent.renewal_service.renew()
        finally:
            agent.stop(grace_period=1.0)

        assert isinstance(result, RenewSuccess)
        assert fake_api.count("renew") == 1
        assert factory.call_count == 2

    def test_disabled_synchronization(self, tmp_path: Path, fake_api: FakeDocumentApi) -> None:
        """Should start without sync components when synchronization is disabled."""
        path = write_yaml(
            tmp_path / "application.yml",
            agent_tree(tmp_path, **{"file-synchronization-enabled": False}),
        )
        holder = ConfigurationHolder(ConfigEnvironment.from_files([path], environ={}))
        agent = DocumentAgent(holder, api_factory=lambda config: fake_api)
        (tmp_path / "source" / "doc.xml").write_bytes(DOCUMENT)

        agent.start()
        try:
            assert agent.status == SyncStatus.DISABLED
            assert agent.api is fake_api
            time.sleep(0.2)
            assert (tmp_path / "source" / "doc.xml").exists()
        finally:
            agent.stop()

    def test_invalid_configuration(self, tmp_path: Path, fake_api: FakeDocumentApi) -> None:
        """Should refuse to start with an invalid configuration."""
        tree = agent_tree(tmp_path)
        tree["client"]["idp-credentials"]["client-secret"] = "value-required"
        path = write_yaml(tmp_path / "application.yml", tree)
        holder = ConfigurationHolder(ConfigEnvironment.from_files([path], environ={}))
        factory = MagicMock(return_value=fake_api)
        agent = DocumentAgent(holder, api_factory=factory)

        with pytest.raises(ConfigurationError) as exc_info:
            agent.start()

        assert agent.status == SyncStatus.ERROR
        assert "Client secret is a placeholder value" in exc_info.value.problems
        factory.assert_not_called()

    def test_creates_missing_folders_on_start(
        self, agent: DocumentAgent, tmp_path: Path
    ) -> None:
        """Should create a missing target folder before starting."""
        (tmp_path / "target").rmdir()

        agent.start()

        assert (tmp_path / "target").is_dir()

    def test_reload_restarts_components(
        self, holder: ConfigurationHolder, fake_api: FakeDocumentApi, tmp_path: Path
    ) -> None:
        """Should rebuild the sync components on the reloaded configuration."""
        factory = MagicMock(return_value=fake_api)
        agent = DocumentAgent(holder, api_factory=factory, download_initial_delay=0.0)
        agent.start()
        try:
            other_source = tmp_path / "other-source"
            tree = agent_tree(tmp_path)
            tree["client"]["customer"][0]["source-folder"] = str(other_source)
            write_yaml(tmp_path / "application.yml", tree)

            config = agent.reload()

            assert agent.config is config
            assert factory.call_count == 2
            assert other_source.is_dir()
            (other_source / "doc.xml").write_bytes(DOCUMENT)
            assert wait_until(lambda: not (other_source / "doc.xml").exists())
            assert agent.status == SyncStatus.SYNCHRONIZING
        finally:
            agent.stop(grace_period=1.0)

    def test_reload_creates_new_local_folder(
        self, agent: DocumentAgent, fake_api: FakeDocumentApi, tmp_path: Path
    ) -> None:
        """Should create a new local folder before validating the reloaded configuration."""
        agent.start()
        new_local = tmp_path / "new-local"
        tree = agent_tree(tmp_path)
        tree["client"]["local-folder"] = str(new_local)
        write_yaml(tmp_path / "application.yml", tree)

        config = agent.reload()

        assert new_local.is_dir()
        assert config.local_folder == new_local
        assert agent.config is config
        assert agent.status == SyncStatus.SYNCHRONIZING

    def test_uncreatable_folder_on_reload(
        self, agent: DocumentAgent, tmp_path: Path
    ) -> None:
        """Should keep the previous configuration when a new folder cannot be created."""
        agent.start()
        previous = agent.config
        blocker = tmp_path / "blocker"
        blocker.write_text("a file")
        tree = agent_tree(tmp_path)
        tree["client"]["local-folder"] = str(blocker / "local")
        write_yaml(tmp_path / "application.yml", tree)

        with pytest.raises(ConfigurationError, match="Failed to create directory"):
            agent.reload()

        assert agent.config is previous
        assert agent.status == SyncStatus.SYNCHRONIZING

    def test_invalid_reload_keeps_running(
        self, agent: DocumentAgent, fake_api: FakeDocumentApi, tmp_path: Path
    ) -> None:
        """Should keep the previous components when the reloaded configuration is invalid."""
        agent.start()
        tree = agent_tree(tmp_path)
        tree["client"]["idp-credentials"]["client-secret"] = " "
        write_yaml(tmp_path / "application.yml", tree)

        with pytest.raises(ConfigurationError):
            agent.reload()

        assert agent.status == SyncStatus.SYNCHRONIZING
        (tmp_path / "source" / "doc.xml").write_bytes(DOCUMENT)
        assert wait_until(lambda: fake_api.count("upload") == 1)

    def test_renews_credentials_at_startup(
        self, tmp_path: Path, fake_api: FakeDocumentApi
    ) -> None:
        """Should renew the secret, rewrite the file and reload when renewal is enabled."""
        tree = agent_tree(tmp_path)
        tree["client"]["idp-credentials"]["renew-credential"] = True
        path = write_yaml(tmp_path / "application.yml", tree)
        holder = ConfigurationHolder(ConfigEnvironment.from_files([path], environ={}))
        agent = DocumentAgent(holder, api_factory=lambda config: fake_api)

        agent.start()
        try:
            assert wait_until(
                lambda: holder.current.idp_credentials.client_secret.get_secret_value()
                == "new-secret"
            )
        finally:
            agent.stop(grace_period=1.0)

        data = yaml.safe_load(path.read_text())
        assert data["client"]["idp-credentials"]["client-secret"] == "new-secret"
        assert fake_api.count("renew") == 1

    def test_start_twice(self, agent: DocumentAgent) -> None:
        """Should ignore a second start."""
        agent.start()
        agent.start()

        assert agent.status == SyncStatus.SYNCHRONIZING
        assert isinstance(agent.config, ClientConfig)
