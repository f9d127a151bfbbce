"""Sync engine for document upload and download.

Architecture:
    EventTrigger | PollingTrigger → PathChannel → UploadPipeline
        → WorkerPool → UploadHandler
    DownloadScheduler → WorkerPool → PullHandler

Components:
- **EventTrigger / PollingTrigger**: Produce candidate paths from source folders
- **PathChannel**: Bounded channel with blocking backpressure
- **InFlightCache**: Admission set preventing concurrent reprocessing of a file
- **UploadPipeline**: Filters candidates and dispatches admitted files
- **UploadHandler**: Rename, upload, retry and terminal file transitions
- **PullHandler**: Download, acknowledge and deliver documents for a connector
- **DownloadScheduler**: Runs pull rounds for every connector at a fixed delay
- **WorkerPool**: Bounded worker threads (one pool for uploads, one for downloads)
"""

from docsync.client.sync.busy import (
    AlwaysBusy,
    FileBusyTester,
    FileSizeChanged,
    NeverBusy,
    create_busy_tester,
    is_still_busy,
)
from docsync.client.sync.cache import ESTIMATED_ENTRY_SIZE, InFlightCache
from docsync.client.sync.documents import detect_document_type
from docsync.client.sync.download import PullHandler
from docsync.client.sync.pipeline import PipelineState, PipelineStats, UploadPipeline
from docsync.client.sync.poller import PollingTrigger
from docsync.client.sync.queue import (
    DEFAULT_CHANNEL_CAPACITY,
    ChannelClosedError,
    PathChannel,
)
from docsync.client.sync.retry import RetryPolicy
from docsync.client.sync.scheduler import DownloadScheduler
from docsync.client.sync.upload import UploadHandler, UploadOutcome
from docsync.client.sync.watcher import EventTrigger, TriggerSource, list_by_mtime
from docsync.client.sync.workers import PoolState, WorkerPool, WorkerTask

__all__ = [
    # Busy tests
    "AlwaysBusy",
    "FileBusyTester",
    "FileSizeChanged",
    "NeverBusy",
    "create_busy_tester",
    "is_still_busy",
    # Cache
    "ESTIMATED_ENTRY_SIZE",
    "InFlightCache",
    # Channel
    "DEFAULT_CHANNEL_CAPACITY",
    "ChannelClosedError",
    "PathChannel",
    # Triggers
    "EventTrigger",
    "PollingTrigger",
    "TriggerSource",
    "list_by_mtime",
    # Pipeline
    "PipelineState",
    "PipelineStats",
    "UploadPipeline",
    # Handlers
    "PullHandler",
    "UploadHandler",
    "UploadOutcome",
    "detect_document_type",
    # Scheduling
    "DownloadScheduler",
    # Retry
    "RetryPolicy",
    # Workers
    "PoolState",
    "WorkerPool",
    "WorkerTask",
]
