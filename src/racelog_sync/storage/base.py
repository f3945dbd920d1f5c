"""Abstract base class for sync storage backends."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from racelog_sync.core.conflict import ConflictRecord, ConflictStatus
    from racelog_sync.core.fingerprint import Fingerprint
    from racelog_sync.core.record import RecordKind, RecordState, SyncableRecord
    from racelog_sync.storage.sqlite_nodes import NodeRecord
    from racelog_sync.storage.sqlite_queue import QueueEntry, QueueEntryKind, QueueState


class SyncStorage(ABC):
    """
    Abstract interface for the durable state of one node.

    Implementations persist records, the sync queue, the fingerprint
    index, conflicts, redirects, the node registry and batch outcomes.
    """

    @abstractmethod
    async def initialize(self) -> None: ...

    @abstractmethod
    async def close(self) -> None: ...

    # ========== Records ==========

    @abstractmethod
    async def add_record(self, record: SyncableRecord) -> SyncableRecord:
        """
        Insert a record.

        Returns:
            The stored record with its ``local_id`` set

        Raises:
            ValueError: If the global id already exists
        """
        ...

    @abstractmethod
    async def update_record(self, record: SyncableRecord) -> None:
        """
        Overwrite payload, revision and state of an existing record.

        Raises:
            ValueError: If the record does not exist
        """
        ...

    @abstractmethod
    async def set_record_state(
        self,
        global_id: str,
        state: RecordState,
        merged_into: str | None = None,
    ) -> bool: ...

    @abstractmethod
    async def get_record(self, global_id: str) -> SyncableRecord | None: ...

    @abstractmethod
    async def get_records(self, global_ids: list[str]) -> dict[str, SyncableRecord]: ...

    @abstractmethod
    async def list_records(
        self,
        kind: RecordKind | None = None,
        state: RecordState | None = None,
        parent_id: str | None = None,
        limit: int = 1000,
    ) -> list[SyncableRecord]: ...

    @abstractmethod
    async def count_records(self) -> dict[str, int]: ...

    @abstractmethod
    async def repoint_references(self, loser_id: str, winner_id: str) -> list[str]:
        """Rewrite reference fields from *loser_id* to *winner_id*."""
        ...

    # ========== Redirects ==========

    @abstractmethod
    async def add_redirect(self, from_id: str, to_id: str) -> None: ...

    @abstractmethod
    async def resolve_redirect(self, global_id: str) -> str: ...

    @abstractmethod
    async def list_redirects(self, target_ids: list[str] | None = None) -> dict[str, str]: ...

    # ========== Fingerprint index ==========

    @abstractmethod
    async def index_fingerprint(self, global_id: str, fingerprint: Fingerprint) -> None: ...

    @abstractmethod
    async def remove_fingerprint(self, global_id: str) -> bool: ...

    @abstractmethod
    async def get_fingerprint(self, global_id: str) -> Fingerprint | None: ...

    @abstractmethod
    async def find_fingerprint_candidates(
        self,
        fingerprint: Fingerprint,
    ) -> list[tuple[str, Fingerprint]]: ...

    # ========== Sync queue ==========

    @abstractmethod
    async def insert_queue_entry(
        self,
        global_id: str,
        target: str,
        revision: int,
        kind: QueueEntryKind,
        payload: dict[str, Any] | None = None,
        conflict_id: str | None = None,
    ) -> QueueEntry: ...

    @abstractmethod
    async def get_queue_entry(self, entry_id: int) -> QueueEntry | None: ...

    @abstractmethod
    async def find_queue_entries(
        self,
        global_id: str | None = None,
        target: str | None = None,
        states: tuple[QueueState, ...] | None = None,
        kind: QueueEntryKind | None = None,
        conflict_id: str | None = None,
        limit: int = 1000,
    ) -> list[QueueEntry]: ...

    @abstractmethod
    async def list_due_entries(
        self,
        target: str,
        kind: QueueEntryKind,
        now: datetime,
        limit: int = 100,
    ) -> list[QueueEntry]: ...

    @abstractmethod
    async def update_queue_entry(
        self,
        entry_id: int,
        expected_state: QueueState,
        new_state: QueueState,
        **fields: Any,
    ) -> bool:
        """
        Compare-and-set an entry's state.

        Returns:
            False if the entry was not in *expected_state*
        """
        ...

    @abstractmethod
    async def reset_in_transit(self, target: str | None = None) -> int: ...

    @abstractmethod
    async def prune_queue(self, older_than_days: int = 30) -> int: ...

    @abstractmethod
    async def get_queue_stats(self, target: str | None = None) -> dict[str, int]: ...

    # ========== Conflicts ==========

    @abstractmethod
    async def save_conflict(self, conflict: ConflictRecord) -> None: ...

    @abstractmethod
    async def get_conflict(self, conflict_id: str) -> ConflictRecord | None: ...

    @abstractmethod
    async def list_conflicts(
        self,
        status: ConflictStatus | None = None,
        limit: int = 100,
    ) -> list[ConflictRecord]: ...

    @abstractmethod
    async def find_open_conflict(self, global_id: str) -> ConflictRecord | None: ...

    @abstractmethod
    async def count_conflicts(self) -> dict[str, int]: ...

    # ========== Nodes, holders, batches ==========

    @abstractmethod
    async def register_node(self, node_id: str, node_name: str = "") -> NodeRecord: ...

    @abstractmethod
    async def get_node(self, node_id: str) -> NodeRecord | None: ...

    @abstractmethod
    async def list_nodes(self) -> list[NodeRecord]: ...

    @abstractmethod
    async def touch_node_sync(self, node_id: str) -> None: ...

    @abstractmethod
    async def add_holder(self, global_id: str, node_id: str, revision: int) -> None: ...

    @abstractmethod
    async def list_holders(self, global_ids: list[str] | tuple[str, ...]) -> list[str]: ...

    @abstractmethod
    async def save_batch_outcome(
        self,
        batch_id: str,
        node_id: str,
        outcome: dict[str, Any],
    ) -> None: ...

    @abstractmethod
    async def get_batch_outcomes(self, batch_id: str) -> list[dict[str, Any]]: ...

    # ========== Statistics ==========

    @abstractmethod
    async def get_stats(self) -> dict[str, Any]: ...
