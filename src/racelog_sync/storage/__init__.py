"""Storage backends for racelog-sync."""

from racelog_sync.storage.base import SyncStorage
from racelog_sync.storage.sqlite_nodes import NodeRecord
from racelog_sync.storage.sqlite_queue import QueueEntry, QueueEntryKind, QueueState
from racelog_sync.storage.sqlite_store import SQLiteStorage

__all__ = [
    "SyncStorage",
    "SQLiteStorage",
    "NodeRecord",
    "QueueEntry",
    "QueueEntryKind",
    "QueueState",
]
