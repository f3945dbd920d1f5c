"""Edge/hub synchronization for racelog-sync."""

from racelog_sync.sync.client import HubClient, HubClientError
from racelog_sync.sync.hub import HubService
from racelog_sync.sync.protocol import (
    DownloadResult,
    HubTransport,
    RecordOutcome,
    ResolutionNotice,
    SyncOutcome,
    TransportError,
    UploadRequest,
    UploadResult,
)
from racelog_sync.sync.queue import InvalidTransitionError, SyncQueue
from racelog_sync.sync.resolver import DeduplicationResolver
from racelog_sync.sync.review import (
    ConflictAlreadyResolvedError,
    ConflictNotFoundError,
    ConflictReviewService,
)
from racelog_sync.sync.scheduler import SyncScheduler
from racelog_sync.sync.sync_engine import CycleReport, CycleStatus, SyncEngine
from racelog_sync.sync.writer import RecordNotFoundError, RecordWriter

__all__ = [
    "HubClient",
    "HubClientError",
    "HubService",
    "HubTransport",
    "TransportError",
    "DownloadResult",
    "RecordOutcome",
    "ResolutionNotice",
    "SyncOutcome",
    "UploadRequest",
    "UploadResult",
    "InvalidTransitionError",
    "SyncQueue",
    "DeduplicationResolver",
    "ConflictAlreadyResolvedError",
    "ConflictNotFoundError",
    "ConflictReviewService",
    "SyncScheduler",
    "CycleReport",
    "CycleStatus",
    "SyncEngine",
    "RecordNotFoundError",
    "RecordWriter",
]
