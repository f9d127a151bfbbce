"""Configuration check command for docsync CLI.

Commands:
- check-config: Validate the configuration and print any problem
"""

from __future__ import annotations

import sys
from pathlib import Path

import click

from docsync.client.cli.config import config_option, echo_problems, load_environment
from docsync.client.environment import CLIENT_SECRET_KEY
from docsync.core.config import ConfigurationError, validate_config


@click.command("check-config")
@config_option
def check_config(config_files: tuple[Path, ...]) -> None:
    """Validate the configuration without starting the agent."""
    environment = load_environment(config_files)
    try:
        config = environment.load()
    except ConfigurationError as e:
        echo_problems(e)
        sys.exit(1)

    problems = validate_config(config)
    if problems:
        echo_problems(ConfigurationError("Invalid configuration", problems))
        sys.exit(1)

    click.echo(f"Configuration is valid: {len(config.customer)} connectors")
    for connector in config.customer:
        click.echo(f"  {connector.connector_id} ({connector.mode.value})")
    origins = environment.origins_of(CLIENT_SECRET_KEY)
    if origins:
        click.echo(f"Client secret from: {', '.join(str(origin) for origin in origins)}")
