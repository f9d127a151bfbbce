"""Document agent: builds and runs the sync engine from a configuration.

Architecture:
    ConfigurationHolder → DocumentAgent
        ├── upload:   trigger → PathChannel → UploadPipeline → WorkerPool → UploadHandler
        ├── download: DownloadScheduler → download WorkerPool → PullHandler
        └── CredentialRenewalScheduler (optional) → CredentialRenewalService → reload()

A reload swaps in the new configuration and restarts the upload and
download components on it. The credential renewal scheduler survives
reloads, so a renewal that triggers a reload does not run again at once.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from docsync.client.api import DocumentApiClient
from docsync.client.credentials import (
    CredentialRenewalError,
    CredentialRenewalScheduler,
    CredentialRenewalService,
)
from docsync.client.sync import (
    DownloadScheduler,
    EventTrigger,
    InFlightCache,
    PathChannel,
    PollingTrigger,
    PullHandler,
    RetryPolicy,
    UploadHandler,
    UploadPipeline,
    WorkerPool,
    create_busy_tester,
)
from docsync.core.config import ConfigurationError, validate_config
from docsync.core.types import SyncStatus, UploadTriggerType

if TYPE_CHECKING:
    from pathlib import Path

    from docsync.client.api import DocumentApi
    from docsync.client.environment import ConfigurationHolder
    from docsync.client.sync import TriggerSource
    from docsync.core.config import ClientConfig

logger = logging.getLogger(__name__)

ApiFactory = Callable[["ClientConfig"], "DocumentApi"]


def ensure_folders(config: ClientConfig) -> None:
    """Create missing connector folders and the local folder.

    Raises:
        ConfigurationError: If a folder cannot be created.
    """
    folders: list[Path] = [config.local_folder]
    for connector in config.customer:
        folders.extend(connector.source_folders)
        folders.append(connector.target_folder)
        folders.extend(connector.doc_type_target_folders)

    for folder in folders:
        if folder.is_dir():
            continue
        logger.info("Creating non existing directory '%s'", folder)
        try:
            folder.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigurationError(
                f"Failed to create directory '{folder}'; is the path reachable "
                f"and are there sufficient access rights? ({e})"
            ) from e


@dataclass
class _SyncComponents:
    """Components built from one configuration."""

    stop_event: threading.Event
    channel: PathChannel
    upload_pool: WorkerPool
    download_pool: WorkerPool
    pipeline: UploadPipeline
    trigger: TriggerSource
    scheduler: DownloadScheduler


class DocumentAgent:
    """Runs document upload and download for every configured connector.

    Usage:
        agent = DocumentAgent(holder)
        agent.start()
        ...
        agent.stop()
    """

    def __init__(
        self,
        holder: ConfigurationHolder,
        api_factory: ApiFactory | None = None,
        download_initial_delay: float | None = None,
    ) -> None:
        """Initialize the agent.

        Args:
            holder: Holder of the current configuration.
            api_factory: Builds the API client for a configuration
                (defaults to DocumentApiClient).
            download_initial_delay: Seconds before the first download round
                (defaults to the scheduler's own delay).
        """
        self._holder = holder
        self._api_factory: ApiFactory = api_factory or DocumentApiClient
        self._download_initial_delay = download_initial_delay
        self._lock = threading.RLock()
        self._status = SyncStatus.STOPPED
        self._running = False
        self._api: DocumentApi | None = None
        self._components: _SyncComponents | None = None
        self._renewal: CredentialRenewalScheduler | None = None
        self._renewal_service: CredentialRenewalService | None = None
        self._holder.add_listener(self._on_reload)

    @property
    def status(self) -> SyncStatus:
        """Get the synchronization status."""
        return self._status

    @property
    def config(self) -> ClientConfig:
        """Get the configuration in force."""
        return self._holder.current

    @property
    def api(self) -> DocumentApi:
        """Get the API client of the running configuration.

        Raises:
            RuntimeError: If the agent has not been started.
        """
        if self._api is None:
            raise RuntimeError("Document agent is not running")
        return self._api

    @property
    def renewal_service(self) -> CredentialRenewalService:
        """Get the credential renewal service."""
        if self._renewal_service is None:
            self._renewal_service = CredentialRenewalService(
                self._holder.environment,
                self._renewal_api,
                self.reload,
            )
        return self._renewal_service

    def _renewal_api(self) -> DocumentApi:
        api = self._api
        if api is None:
            raise CredentialRenewalError("Document agent is not running")
        return api

    def start(self) -> None:
        """Validate the configuration and start every component.

        Raises:
            ConfigurationError: If the configuration is invalid; the status
                becomes ERROR.
        """
        with self._lock:
            if self._running:
                logger.warning("Document agent already running")
                return

            config = self._holder.current
            try:
                ensure_folders(config)
            except ConfigurationError:
                self._status = SyncStatus.ERROR
                raise
            problems = validate_config(config)
            if problems:
                for problem in problems:
                    logger.error("Configuration problem: %s", problem)
                self._status = SyncStatus.ERROR
                raise ConfigurationError(
                    f"Invalid configuration: {'; '.join(problems)}", problems
                )

            self._start_sync(config)
            self._running = True

            credentials = config.idp_credentials
            if credentials.renew_credential and self._renewal is None:
                self._renewal = CredentialRenewalScheduler(
                    self.renewal_service, credentials.max_credential_age
                )
                self._renewal.start()

    def stop(self, grace_period: float | None = None) -> None:
        """Stop every component.

        Args:
            grace_period: Seconds in-flight tasks get to finish their current
                attempt (defaults to ``shutdown-grace-period``).
        """
        with self._lock:
            if not self._running:
                return
            if self._renewal is not None:
                self._renewal.stop()
                self._renewal = None
            if grace_period is None:
                grace_period = self._holder.current.shutdown_grace_period.total_seconds()
            self._stop_sync(grace_period)
            self._running = False
            self._status = SyncStatus.STOPPED
            logger.info("Document agent stopped")

    def reload(self) -> ClientConfig:
        """Reload the configuration and restart the sync components on it.

        Missing folders named by the new configuration are created before
        it is validated.

        Returns:
            The new configuration.

        Raises:
            ConfigurationError: If the new configuration is invalid or a
                folder cannot be created; the previous one stays in force.
        """
        return self._holder.reload(prepare=self._prepare_reload)

    def _prepare_reload(self, config: ClientConfig) -> None:
        if self._running:
            ensure_folders(config)

    def _on_reload(self, config: ClientConfig) -> None:
        with self._lock:
            if not self._running:
                return
            logger.info("Restarting sync components on reloaded configuration")
            self._stop_sync(config.shutdown_grace_period.total_seconds())
            self._start_sync(config)

    # === Sync components ===

    def _start_sync(self, config: ClientConfig) -> None:
        self._api = self._api_factory(config)

        if not config.file_synchronization_enabled:
            logger.warning("File synchronization is disabled by configuration")
            self._status = SyncStatus.DISABLED
            return

        components = self._build(config, self._api)
        components.upload_pool.start()
        components.download_pool.start()
        components.pipeline.start()
        components.trigger.start()
        components.scheduler.start()
        self._components = components
        self._status = SyncStatus.SYNCHRONIZING
        logger.info(
            "Document agent started: %d connectors, %s upload trigger",
            len(config.customer),
            config.upload_trigger.value,
        )

    def _build(self, config: ClientConfig, api: DocumentApi) -> _SyncComponents:
        stop_event = threading.Event()
        channel = PathChannel()
        upload_pool = WorkerPool("upload", config.push_thread_pool_size)
        download_pool = WorkerPool("download", config.pull_thread_pool_size)

        interval = config.file_busy_test_interval.total_seconds()
        handler = UploadHandler(
            api,
            RetryPolicy.from_durations(config.retry_delay),
            stop_event=stop_event,
            busy_tester=create_busy_tester(config.file_busy_test_strategy, interval, stop_event),
            busy_test_interval=interval,
            busy_test_timeout=config.file_busy_test_timeout.total_seconds(),
        )
        pipeline = UploadPipeline(
            channel,
            InFlightCache(config.files_in_progress_cache_size),
            upload_pool,
            handler,
            config.connector_for_source_file,
        )

        trigger: TriggerSource
        if config.upload_trigger == UploadTriggerType.POLLING:
            trigger = PollingTrigger(
                config.source_folders,
                channel,
                config.schedule_delay.total_seconds(),
                stop_event,
            )
        else:
            trigger = EventTrigger(config.source_folders, channel)

        scheduler_options: dict[str, float] = {}
        if self._download_initial_delay is not None:
            scheduler_options["initial_delay"] = self._download_initial_delay
        scheduler = DownloadScheduler(
            config.customer,
            config.local_folder,
            PullHandler(api, stop_event),
            download_pool,
            config.schedule_delay.total_seconds(),
            **scheduler_options,
        )
        return _SyncComponents(
            stop_event=stop_event,
            channel=channel,
            upload_pool=upload_pool,
            download_pool=download_pool,
            pipeline=pipeline,
            trigger=trigger,
            scheduler=scheduler,
        )

    def _stop_sync(self, grace_period: float) -> None:
        components, self._components = self._components, None
        if components is not None:
            # Cut backoff waits short first so retrying uploads restore their files
            components.stop_event.set()
            components.channel.close()
            components.trigger.stop()
            components.scheduler.stop()
            components.pipeline.stop()
            pools = (components.upload_pool, components.download_pool)
            for pool in pools:
                pool.begin_stop()
            # Both pools share one grace period
            deadline = time.monotonic() + grace_period
            for pool in pools:
                pool.join(max(deadline - time.monotonic(), 0.0))

        api, self._api = self._api, None
        close = getattr(api, "close", None)
        if close is not None:
            close()
