"""Command-line interface for docsync.

This module provides the main CLI entry point and assembles all commands.

Commands:
- run: Run the document agent until interrupted
- check-config: Validate the configuration
- renew-secret: Renew the client secret once
"""

from __future__ import annotations

from pathlib import Path

import click

from docsync.client.cli.check import check_config
from docsync.client.cli.config import (
    LOG_LEVELS,
    config_option,
    configure_logging,
    echo_problems,
    load_environment,
)
from docsync.client.cli.renew import renew_secret
from docsync.client.cli.run import run


@click.group()
@click.version_option(package_name="docsync-agent")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Log level.",
)
@click.option(
    "--log-file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Also write the log to this file.",
)
def cli(log_level: str, log_file: Path | None) -> None:
    """docsync - Document exchange agent."""
    configure_logging(log_level, log_file)


# Agent commands
cli.add_command(run)
cli.add_command(renew_secret)

# Configuration commands
cli.add_command(check_config)


def main() -> None:
    """Entry point for the CLI."""
    cli()


__all__ = [
    # Main entry points
    "cli",
    "main",
    # Shared helpers
    "config_option",
    "configure_logging",
    "echo_problems",
    "load_environment",
]
