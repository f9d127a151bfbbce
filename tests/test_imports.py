"""Tests that every entry module imports in a fresh interpreter."""

from __future__ import annotations

import os
import subprocess
import sys
from pathlib import Path

import pytest

SRC = Path(__file__).resolve().parent.parent / "src"


@pytest.mark.parametrize(
    "module",
    [
        "docsync.client.api",
        "docsync.client.agent",
        "docsync.client.credentials",
        "docsync.client.sync.download",
        "docsync.client.sync.upload",
        "docsync.client.cli",
    ],
)
def test_module_imports_first(module: str) -> None:
    """Should import the module when nothing else is loaded yet."""
    env = dict(os.environ)
    env["PYTHONPATH"] = os.pathsep.join(filter(None, [str(SRC), env.get("PYTHONPATH")]))

    result = subprocess.run(
        [sys.executable, "-c", f"import {module}"],
        capture_output=True,
        text=True,
        env=env,
        timeout=60,
    )

    assert result.returncode == 0, result.stderr
