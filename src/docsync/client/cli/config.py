"""Shared helpers for docsync CLI commands.

This module provides the ``--config`` option, configuration loading and
logging setup used across commands.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any

import click

from docsync.client.environment import ConfigEnvironment
from docsync.core.config import ConfigurationError

LOG_FORMAT = "%(asctime)s %(levelname)-7s [%(threadName)s] %(name)s: %(message)s"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def config_option(func: Callable[..., Any]) -> Callable[..., Any]:
    """Add the repeatable ``--config`` option to a command."""
    return click.option(
        "--config",
        "-c",
        "config_files",
        multiple=True,
        required=True,
        type=click.Path(exists=True, dir_okay=False, path_type=Path),
        help="YAML or properties configuration file; earlier files take precedence.",
    )(func)


def configure_logging(level: str, log_file: Path | None = None) -> None:
    """Configure the root logger for a CLI run.

    Args:
        level: Log level name.
        log_file: Also write log records to this file.
    """
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)


def load_environment(config_files: Sequence[Path]) -> ConfigEnvironment:
    """Build the configuration environment or exit with an error message."""
    try:
        return ConfigEnvironment.from_files(config_files)
    except ConfigurationError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


def echo_problems(error: ConfigurationError) -> None:
    """Print a configuration error and its problem list to stderr."""
    if error.problems:
        click.echo("Error: invalid configuration:", err=True)
        for problem in error.problems:
            click.echo(f"  ✗ {problem}", err=True)
    else:
        click.echo(f"Error: {error}", err=True)
