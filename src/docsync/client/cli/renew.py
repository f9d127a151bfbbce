"""Credential renewal command for docsync CLI.

Commands:
- renew-secret: Renew the client secret and rewrite its configuration file
"""

from __future__ import annotations

import sys
from pathlib import Path

import click

from docsync.client.cli.config import config_option, echo_problems, load_environment


@click.command("renew-secret")
@config_option
def renew_secret(config_files: tuple[Path, ...]) -> None:
    """Renew the client secret once.

    The file supplying the secret is rewritten in place; the secret must
    come from exactly one YAML or properties file.
    """
    from docsync.client.api import DocumentApiClient
    from docsync.client.credentials import (
        CredentialRenewalService,
        RenewFailure,
        RenewSuccess,
    )
    from docsync.client.environment import ConfigurationHolder
    from docsync.core.config import ConfigurationError

    environment = load_environment(config_files)
    try:
        holder = ConfigurationHolder(environment)
    except ConfigurationError as e:
        echo_problems(e)
        sys.exit(1)

    with DocumentApiClient(holder.current) as client:
        service = CredentialRenewalService(environment, lambda: client, holder.reload)
        result = service.renew()

    match result:
        case RenewSuccess(resource=resource):
            click.echo(f"Client secret renewed in {resource}")
        case RenewFailure(cause=cause):
            click.echo(f"Error: client secret not renewed: {cause}", err=True)
            sys.exit(1)
        case _:
            raise TypeError(f"Unknown renewal result: {result!r}")
