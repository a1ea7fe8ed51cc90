"""Storage interfaces used by the ledger components.

The state machine and the managers depend on these Protocols rather than on
``JsonStorage`` so the backing store (flat files, an embedded database, an
object store) can be swapped without touching lifecycle logic.
"""

from __future__ import annotations

from contextlib import AbstractContextManager
from typing import Dict, List, Optional, Protocol, runtime_checkable

from .models import Archive, DeletedTaskRecord, HistoryEntry, TaskCollection


@runtime_checkable
class CollectionStore(Protocol):
    """Read-modify-write access to the live task collection."""

    def read_collection(self) -> TaskCollection: ...

    def write_collection(self, collection: TaskCollection) -> None: ...

    def transaction(self) -> AbstractContextManager[TaskCollection]: ...

    def locked(self) -> AbstractContextManager[None]: ...


@runtime_checkable
class HistoryLog(Protocol):
    """Append-only operation log."""

    def append_history(self, entry: HistoryEntry) -> None: ...

    def read_history(self) -> List[HistoryEntry]: ...


@runtime_checkable
class DeletedTaskStore(Protocol):
    """Recoverable backups of soft-deleted tasks, keyed by task id."""

    def load_deleted(self) -> Dict[str, DeletedTaskRecord]: ...

    def save_deleted(self, records: Dict[str, DeletedTaskRecord]) -> None: ...


@runtime_checkable
class ArchiveStore(Protocol):
    """Write-once snapshots of the whole collection."""

    def save_archive(self, archive: Archive) -> None: ...

    def load_archive(self, archive_ref: str) -> Optional[Archive]: ...

    def list_archives(self) -> List[Archive]: ...


@runtime_checkable
class LedgerStorage(CollectionStore, HistoryLog, DeletedTaskStore, ArchiveStore, Protocol):
    """Everything a ``TaskLedger`` needs from its backing store."""
