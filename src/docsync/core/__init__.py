"""Core module - Configuration model, shared enums and properties files."""

from docsync.core.config import (
    ClientConfig,
    ConfigurationError,
    Connector,
    DataSize,
    DocSyncError,
    DocTypeFolders,
    Duration,
    Endpoint,
    IdpCredentials,
    RetryTemplateConfig,
    parse_data_size,
    parse_duration,
    validate_config,
)
from docsync.core.properties import load_properties, set_property
from docsync.core.types import (
    DocumentType,
    FileBusyTestStrategy,
    Mode,
    SyncStatus,
    UploadTriggerType,
)

__all__ = [
    # Config
    "ClientConfig",
    "ConfigurationError",
    "Connector",
    "DataSize",
    "DocSyncError",
    "DocTypeFolders",
    "Duration",
    "Endpoint",
    "IdpCredentials",
    "RetryTemplateConfig",
    "parse_data_size",
    "parse_duration",
    "validate_config",
    # Properties
    "load_properties",
    "set_property",
    # Types
    "DocumentType",
    "FileBusyTestStrategy",
    "Mode",
    "SyncStatus",
    "UploadTriggerType",
]
