"""racelog-sync - Offline edge/hub synchronization for race-incident logging."""

from racelog_sync.core.context import NodeContext, NodeRole
from racelog_sync.core.record import RecordKind, RecordState, SyncableRecord
from racelog_sync.storage.sqlite_store import SQLiteStorage
from racelog_sync.sync.hub import HubService
from racelog_sync.sync.sync_engine import SyncEngine
from racelog_sync.sync.writer import RecordWriter

__version__ = "0.1.0"

__all__ = [
    # Core models
    "NodeContext",
    "NodeRole",
    "RecordKind",
    "RecordState",
    "SyncableRecord",
    # Storage
    "SQLiteStorage",
    # Sync
    "HubService",
    "RecordWriter",
    "SyncEngine",
    # Version
    "__version__",
]
