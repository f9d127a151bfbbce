"""Client secret renewal.

This module provides:
- CredentialRenewalService: Rewrites the configuration file holding the
  client secret with a freshly issued secret, then reloads the configuration
- CredentialRenewalScheduler: Runs the renewal at startup and then periodically

The renewal target must be unambiguous: exactly one configuration source
may supply the secret, and it must be a writable YAML or properties file.
The remote renewal call is only made once the file is known to be
rewritable, so a misconfigured agent never loses its current secret.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from docsync.client.api import RenewSecretError, RenewSecretSuccess, new_trace_id
from docsync.client.environment import (
    CLIENT_SECRET_KEY,
    PROPERTIES_SUFFIX,
    YAML_SUFFIXES,
)
from docsync.core.config import ConfigurationError, DocSyncError
from docsync.core.properties import set_property

if TYPE_CHECKING:
    from docsync.client.api import DocumentApi
    from docsync.client.environment import ConfigEnvironment, Origin

logger = logging.getLogger(__name__)

_YAML_SECRET_PATH = ("client", "idp-credentials", "client-secret")


class CredentialRenewalError(DocSyncError):
    """The client secret could not be renewed."""


@dataclass(frozen=True)
class RenewSuccess:
    """The secret was renewed and written to ``resource``."""

    resource: Path


@dataclass(frozen=True)
class RenewFailure:
    """The secret was not renewed; the current one stays in force."""

    cause: Exception


RenewResult = RenewSuccess | RenewFailure


class _FileKind(Enum):
    YAML = "yaml"
    PROPERTIES = "properties"


class CredentialRenewalService:
    """Renews the client secret and persists it to its configuration file."""

    def __init__(
        self,
        environment: ConfigEnvironment,
        api_factory: Callable[[], DocumentApi],
        reload: Callable[[], Any],
    ) -> None:
        """Initialize the service.

        Args:
            environment: Configuration environment to search for the secret.
            api_factory: Returns the API client used for the renewal call.
            reload: Reloads the configuration after the file was rewritten.
        """
        self._environment = environment
        self._api_factory = api_factory
        self._reload = reload

    def renew(self, trace_id: str | None = None) -> RenewResult:
        """Run one renewal cycle.

        Args:
            trace_id: Trace id for the remote call; a new one if omitted.

        Returns:
            RenewSuccess with the rewritten file, or RenewFailure. Never raises.
        """
        trace_id = trace_id or new_trace_id()
        try:
            resource = self._writable_file(self._find_secret_origin())
            kind = self._file_kind(resource)

            def new_secret() -> str:
                return self._new_secret(trace_id)

            match kind:
                case _FileKind.YAML:
                    self._update_yaml(resource, new_secret)
                case _FileKind.PROPERTIES:
                    self._update_properties(resource, new_secret)
                case _:
                    raise TypeError(f"Unknown file kind: {kind!r}")
            logger.info("Client secret renewed in '%s'", resource)

            self._reload()
        except (DocSyncError, OSError, yaml.YAMLError) as e:
            logger.error("Client secret renewal failed: %s", e)
            return RenewFailure(e)
        except Exception as e:
            logger.exception("Client secret renewal failed unexpectedly")
            return RenewFailure(e)
        return RenewSuccess(resource)

    def _find_secret_origin(self) -> Origin:
        origins = self._environment.origins_of(CLIENT_SECRET_KEY)
        if not origins:
            raise ConfigurationError(f"No origin found for client secret '{CLIENT_SECRET_KEY}'")
        if len(origins) > 1:
            found = ", ".join(str(origin) for origin in origins)
            raise ConfigurationError(
                f"Multiple origins found for client secret '{CLIENT_SECRET_KEY}': {found}"
            )
        return origins[0]

    @staticmethod
    def _writable_file(origin: Origin) -> Path:
        if origin.path is None:
            raise CredentialRenewalError(f"Client secret does not come from a file: {origin}")
        if not origin.path.is_file() or not os.access(origin.path, os.W_OK):
            raise CredentialRenewalError(f"Resource is not writable: '{origin.path}'")
        return origin.path

    @staticmethod
    def _file_kind(path: Path) -> _FileKind:
        suffix = path.suffix.lower()
        if suffix in YAML_SUFFIXES:
            return _FileKind.YAML
        if suffix == PROPERTIES_SUFFIX:
            return _FileKind.PROPERTIES
        raise CredentialRenewalError(f"Don't know file type for extension '{suffix}': '{path}'")

    def _new_secret(self, trace_id: str) -> str:
        result = self._api_factory().renew_secret(trace_id)
        match result:
            case RenewSecretSuccess(client_secret=secret):
                return secret
            case RenewSecretError(cause=cause, code=code):
                status = f" (status code {code})" if code is not None else ""
                raise CredentialRenewalError(f"Remote secret renewal failed{status}: {cause}")
            case _:
                raise TypeError(f"Unknown renewal result: {result!r}")

    @staticmethod
    def _update_yaml(path: Path, new_secret: Callable[[], str]) -> None:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)

        node = data
        for key in _YAML_SECRET_PATH[:-1]:
            node = node.get(key) if isinstance(node, dict) else None
        if not isinstance(node, dict):
            raise CredentialRenewalError(
                f"'{'.'.join(_YAML_SECRET_PATH[:-1])}' is not a mapping in '{path}'"
            )
        node[_YAML_SECRET_PATH[-1]] = new_secret()

        with open(path, "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)

    @staticmethod
    def _update_properties(path: Path, new_secret: Callable[[], str]) -> None:
        text = path.read_text(encoding="utf-8")
        path.write_text(set_property(text, CLIENT_SECRET_KEY, new_secret()), encoding="utf-8")


class CredentialRenewalScheduler:
    """Runs credential renewal at startup and then every ``interval``."""

    def __init__(
        self,
        service: CredentialRenewalService,
        interval: timedelta,
        run_at_startup: bool = True,
    ) -> None:
        """Initialize the scheduler.

        Args:
            service: Renewal service to run.
            interval: Time between two renewals.
            run_at_startup: Run a renewal as soon as the scheduler starts.
        """
        self._service = service
        self._interval = interval
        self._run_at_startup = run_at_startup
        self._scheduler: BackgroundScheduler | None = None
        self.last_result: RenewResult | None = None

    def _renew_job(self) -> None:
        """Job function for scheduled renewals."""
        try:
            self.last_result = self._service.renew()
        except Exception:
            logger.exception("Unexpected error during credential renewal")

    def start(self) -> None:
        """Start the scheduler."""
        if self._scheduler is not None:
            return

        now = datetime.now()
        first_run = now if self._run_at_startup else now + self._interval
        self._scheduler = BackgroundScheduler()
        self._scheduler.add_job(
            self._renew_job,
            trigger=IntervalTrigger(seconds=self._interval.total_seconds()),
            id="credential_renewal",
            name="Credential renewal",
            next_run_time=first_run,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self._scheduler.start()
        logger.info("Credential renewal scheduled every %s", self._interval)

    def stop(self) -> None:
        """Stop the scheduler."""
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("Credential renewal scheduler stopped")
