"""Configuration model for docsync.

The configuration is a tree of immutable pydantic models rooted at
ClientConfig. Keys in configuration files are kebab-case
(``idp-credentials.client-secret``); field names are accepted as well.
A reload never mutates a model in place: it binds a new ClientConfig.
"""

from __future__ import annotations

import os
import re
import tempfile
from datetime import timedelta
from pathlib import Path
from typing import Annotated

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    SecretStr,
    field_validator,
)

from docsync.core.types import (
    DocumentType,
    FileBusyTestStrategy,
    Mode,
    UploadTriggerType,
)

DEFAULT_CONTENT_TYPE = "application/forumdatenaustausch+xml;charset=UTF-8"
PLACEHOLDER_VALUE = "value-required"
DEFAULT_ARCHIVE_FOLDER_NAME = "docsync-archive"

_DATA_SIZE_UNITS = {
    "": 1,
    "B": 1,
    "KB": 1024,
    "MB": 1024**2,
    "GB": 1024**3,
}
_DATA_SIZE_PATTERN = re.compile(r"^\s*(\d+)\s*([A-Za-z]*)\s*$")


class DocSyncError(Exception):
    """Base exception for docsync errors."""


class ConfigurationError(DocSyncError):
    """The configuration is invalid or ambiguous."""

    def __init__(self, message: str, problems: list[str] | None = None) -> None:
        super().__init__(message)
        self.problems = problems or []


def parse_data_size(value: object) -> int:
    """Parse a data size such as ``512``, ``64KB`` or ``1MB`` into bytes.

    Args:
        value: Integer byte count or size string.

    Returns:
        Size in bytes.

    Raises:
        ValueError: If the value cannot be parsed.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid data size: {value!r}")
    if isinstance(value, int):
        return value
    match = _DATA_SIZE_PATTERN.match(str(value))
    if not match:
        raise ValueError(f"Invalid data size: {value!r}")
    amount, unit = match.groups()
    multiplier = _DATA_SIZE_UNITS.get(unit.upper())
    if multiplier is None:
        raise ValueError(f"Unknown data size unit: {unit!r}")
    return int(amount) * multiplier


DataSize = Annotated[int, BeforeValidator(parse_data_size)]

_DURATION_UNITS = {
    "ms": timedelta(milliseconds=1),
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
    "d": timedelta(days=1),
}
_DURATION_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h|d)?\s*$", re.IGNORECASE)


def parse_duration(value: object) -> object:
    """Parse simple durations such as ``250ms``, ``10s`` or ``30``.

    Bare numbers are seconds. Anything else (ISO-8601 ``PT10S``, timedelta
    instances) is passed through to pydantic unchanged.
    """
    if isinstance(value, str):
        match = _DURATION_PATTERN.match(value)
        if match:
            amount, unit = match.groups()
            return float(amount) * _DURATION_UNITS[(unit or "s").lower()]
    return value


Duration = Annotated[timedelta, BeforeValidator(parse_duration)]


def _kebab(name: str) -> str:
    return name.replace("_", "-")


class _ConfigModel(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        alias_generator=_kebab,
        populate_by_name=True,
        extra="ignore",
    )


class Endpoint(_ConfigModel):
    """Location of a remote HTTP API."""

    scheme: str = "https"
    host: str = "localhost"
    port: int = 443
    base_path: str = ""

    @property
    def base_url(self) -> str:
        """Get the URL of the service root (without base path)."""
        return f"{self.scheme}://{self.host}:{self.port}"

    @property
    def url(self) -> str:
        """Get the full URL including the base path."""
        path = self.base_path.strip("/")
        return f"{self.base_url}/{path}" if path else self.base_url


class DocTypeFolders(_ConfigModel):
    """Additional folders for one document type, relative to the connector folders."""

    source_folder: Path | None = None
    target_folder: Path | None = None


class Connector(_ConfigModel):
    """One tenant/mode synchronization unit.

    Attributes:
        connector_id: Identifier sent in the ``cdr-connector-id`` header.
        source_folder: Outbound staging directory (watched or polled).
        target_folder: Inbound delivery directory.
        content_type: Content type used for uploads.
        mode: Processing mode.
        source_archive_enabled: Archive uploaded files instead of deleting them.
        source_archive_folder: Archive root; relative paths resolve against the
            uploaded file's directory.
        source_error_folder: Folder receiving ``.error``/``.response`` pairs;
            relative paths resolve against the file's directory.
        doc_type_folders: Per document type source and target sub-folders.
    """

    connector_id: str
    source_folder: Path
    target_folder: Path
    content_type: str = DEFAULT_CONTENT_TYPE
    mode: Mode
    source_archive_enabled: bool = False
    source_archive_folder: Path | None = None
    source_error_folder: Path | None = None
    doc_type_folders: dict[DocumentType, DocTypeFolders] = Field(default_factory=dict)

    @property
    def doc_type_source_folders(self) -> list[Path]:
        """Get the effective source folders declared per document type."""
        return [
            self.source_folder / folders.source_folder
            for folders in self.doc_type_folders.values()
            if folders.source_folder is not None
        ]

    @property
    def source_folders(self) -> list[Path]:
        """Get the main source folder followed by the document type source folders."""
        return [self.source_folder, *self.doc_type_source_folders]

    @property
    def doc_type_target_folders(self) -> list[Path]:
        """Get the effective target folders declared per document type."""
        return [
            self.target_folder / folders.target_folder
            for folders in self.doc_type_folders.values()
            if folders.target_folder is not None
        ]

    def target_folder_for(self, doc_type: DocumentType) -> Path:
        """Get the delivery folder for a document type.

        Args:
            doc_type: Detected document type.

        Returns:
            The document type target folder, or the connector target folder
            if none is configured for that type.
        """
        folders = self.doc_type_folders.get(doc_type)
        if folders is None or folders.target_folder is None:
            return self.target_folder
        return self.target_folder / folders.target_folder

    def archive_folder_for(self, file: Path) -> Path:
        """Get the archive root for a file uploaded by this connector."""
        if self.source_archive_folder is None:
            return Path(tempfile.gettempdir()) / DEFAULT_ARCHIVE_FOLDER_NAME
        return file.parent / self.source_archive_folder

    def error_folder_for(self, file: Path) -> Path | None:
        """Get the error folder for a file rejected by the server, if any."""
        if self.source_error_folder is None:
            return None
        return file.parent / self.source_error_folder


class IdpCredentials(_ConfigModel):
    """OAuth2 client credentials of the agent."""

    tenant_id: str = ""
    client_id: str
    client_secret: SecretStr
    scope: str = ""
    renew_credential: bool = False
    max_credential_age: Duration = timedelta(days=365)


class RetryTemplateConfig(_ConfigModel):
    """Exponential backoff used for token and credential calls."""

    retries: int = Field(default=3, ge=0)
    initial_delay: Duration = timedelta(seconds=1)
    max_delay: Duration = timedelta(seconds=10)
    multiplier: float = Field(default=2.0, ge=1.0)


class ClientConfig(_ConfigModel):
    """Complete agent configuration, bound from the ``client`` root key."""

    file_synchronization_enabled: bool = True
    customer: list[Connector] = Field(default_factory=list)
    cdr_api: Endpoint = Field(default_factory=Endpoint)
    credential_api: Endpoint = Field(default_factory=Endpoint)
    idp_endpoint: str = ""
    idp_credentials: IdpCredentials
    local_folder: Path
    pull_thread_pool_size: int = Field(default=1, ge=1)
    push_thread_pool_size: int = Field(default=1, ge=1)
    retry_delay: list[Duration] = Field(
        default_factory=lambda: [
            timedelta(seconds=1),
            timedelta(seconds=2),
            timedelta(seconds=8),
            timedelta(seconds=32),
        ]
    )
    schedule_delay: Duration = timedelta(seconds=10)
    files_in_progress_cache_size: DataSize = 1024**2
    upload_trigger: UploadTriggerType = UploadTriggerType.EVENT
    file_busy_test_strategy: FileBusyTestStrategy = FileBusyTestStrategy.NEVER_BUSY
    file_busy_test_interval: Duration = timedelta(milliseconds=250)
    file_busy_test_timeout: Duration = timedelta(seconds=1)
    retry_template: RetryTemplateConfig = Field(default_factory=RetryTemplateConfig)
    connection_timeout: Duration = timedelta(seconds=10)
    read_timeout: Duration = timedelta(seconds=60)
    shutdown_grace_period: Duration = timedelta(seconds=10)

    @field_validator("files_in_progress_cache_size")
    @classmethod
    def validate_cache_size(cls, v: int) -> int:
        """Reject a cache budget that cannot hold a single entry."""
        if v <= 0:
            raise ValueError("files-in-progress-cache-size must be positive")
        return v

    @property
    def source_folders(self) -> list[Path]:
        """Get every source folder of every connector."""
        return [folder for connector in self.customer for folder in connector.source_folders]

    def connector_for_source_file(self, file: Path) -> Connector | None:
        """Find the connector owning a file in one of its source folders.

        Compares the file's parent directory with each connector's source
        folders; the first match wins.

        Args:
            file: Absolute path of a candidate upload file.

        Returns:
            The owning connector, or None if the file is in no source folder.
        """
        parent = _normalize(file.parent)
        for connector in self.customer:
            for folder in connector.source_folders:
                if _normalize(folder) == parent:
                    return connector
        return None


def _normalize(path: Path) -> Path:
    return path.expanduser().resolve()


def _is_read_writable_dir(path: Path) -> bool:
    return path.is_dir() and os.access(path, os.R_OK | os.W_OK | os.X_OK)


def validate_config(config: ClientConfig) -> list[str]:
    """Check a configuration for problems the model cannot catch on its own.

    Args:
        config: Configuration to check.

    Returns:
        Human readable problem descriptions; empty if the configuration is usable.
    """
    problems: list[str] = []

    if not config.customer:
        problems.append("No connector configured")

    seen_modes: set[tuple[str, Mode]] = set()
    for connector in config.customer:
        if connector.mode == Mode.NONE:
            problems.append(f"Connector '{connector.connector_id}' has illegal mode 'none'")
        key = (connector.connector_id, connector.mode)
        if key in seen_modes:
            problems.append(
                f"Connector '{connector.connector_id}' is configured more than once "
                f"for mode '{connector.mode.value}'"
            )
        seen_modes.add(key)

    sources = [_normalize(folder) for folder in config.source_folders]
    duplicates = sorted({str(folder) for folder in sources if sources.count(folder) > 1})
    for folder in duplicates:
        problems.append(f"Source folder '{folder}' is used more than once")

    targets = {
        _normalize(folder)
        for connector in config.customer
        for folder in (connector.target_folder, *connector.doc_type_target_folders)
    }
    for folder in sorted(targets & set(sources)):
        problems.append(f"Target folder '{folder}' overlaps with a source folder")

    local = _normalize(config.local_folder)
    if local in sources:
        problems.append(f"Local folder '{local}' overlaps with a source folder")
    if local in targets:
        problems.append(f"Local folder '{local}' overlaps with a target folder")
    if not config.local_folder.exists():
        problems.append(f"Local folder '{config.local_folder}' does not exist")
    elif not _is_read_writable_dir(config.local_folder):
        problems.append(f"Local folder '{config.local_folder}' is not a read/writable directory")

    secret = config.idp_credentials.client_secret.get_secret_value()
    if not secret.strip():
        problems.append("Client secret is blank")
    elif secret == PLACEHOLDER_VALUE:
        problems.append("Client secret is a placeholder value")

    if config.file_busy_test_timeout <= config.file_busy_test_interval:
        problems.append("file-busy-test-timeout must be longer than file-busy-test-interval")

    return problems
