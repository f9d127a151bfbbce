"""Run command for docsync CLI.

Commands:
- run: Run the document agent until interrupted
"""

from __future__ import annotations

import signal
import sys
import threading
from pathlib import Path

import click

from docsync.client.cli.config import config_option, echo_problems, load_environment


@click.command()
@config_option
@click.option(
    "--grace-period",
    type=float,
    default=None,
    help="Seconds in-flight transfers get on shutdown (default: shutdown-grace-period).",
)
def run(config_files: tuple[Path, ...], grace_period: float | None) -> None:
    """Run the document agent.

    Uploads files dropped into the connector source folders and delivers
    downloaded documents into the target folders until interrupted.
    """
    from docsync.client.agent import DocumentAgent
    from docsync.client.environment import ConfigurationHolder
    from docsync.core.config import ConfigurationError

    environment = load_environment(config_files)
    try:
        holder = ConfigurationHolder(environment)
        agent = DocumentAgent(holder)
        agent.start()
    except ConfigurationError as e:
        echo_problems(e)
        sys.exit(1)

    config = holder.current
    click.echo(f"Document agent {agent.status.value}: {len(config.customer)} connectors")
    for connector in config.customer:
        click.echo(
            f"  {connector.connector_id} ({connector.mode.value}): "
            f"{connector.source_folder} → {connector.target_folder}"
        )
    click.echo("\nRunning... (Ctrl+C to stop)\n")

    stopped = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: stopped.set())
    try:
        while not stopped.wait(1.0):
            pass
    except KeyboardInterrupt:
        click.echo("\nStopping...")

    agent.stop(grace_period)
