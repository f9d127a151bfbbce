"""Shared pytest fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from docsync.core.config import ClientConfig
from tests.fakes import FakeDocumentApi, RecordingEvent, make_config


@pytest.fixture
def config(tmp_path: Path) -> ClientConfig:
    """Create a valid single-connector configuration."""
    return make_config(tmp_path)


@pytest.fixture
def fake_api(tmp_path: Path) -> FakeDocumentApi:
    """Create a fake API staging downloads in the configuration's local folder."""
    local = tmp_path / "local"
    local.mkdir(parents=True, exist_ok=True)
    return FakeDocumentApi(local)


@pytest.fixture
def stop_event() -> RecordingEvent:
    """Create a stop event recording its waits."""
    return RecordingEvent()
