"""Archive snapshots of the live collection and restores from them.

An archive is written once and never modified. Restoring either merges the
archived tasks into the live collection (live tasks win on id collisions) or
replaces the live collection outright. Replace does not take a safety
snapshot first; callers that want one create an archive before restoring.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .audit import DUPLICATE_ID, audit_tasks
from .errors import ConflictRequiresConfirmationError, InvalidInputError, NotFoundError
from .history import record_event
from .ledger_logging import log_archive_event, log_operation, log_performance
from .models import Archive, ArchiveStats, Task, parse_timestamp, utc_now, utc_now_iso
from .persistence import ARCHIVE_PREFIX
from .ports import LedgerStorage

logger = logging.getLogger("taskledger.archive")

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(slots=True)
class ArchiveListing:
    """Archive metadata plus total and filtered counts."""

    archives: List[Dict[str, Any]] = field(default_factory=list)
    total_count: int = 0
    filtered_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "archives": list(self.archives),
            "total_count": self.total_count,
            "filtered_count": self.filtered_count,
        }


@dataclass(slots=True)
class RestoreResult:
    """What a restore changed."""

    archive_id: str
    merge: bool
    preserve_ids: bool
    restored_count: int = 0
    restored_ids: List[str] = field(default_factory=list)
    skipped_ids: List[str] = field(default_factory=list)
    conflicts: List[Dict[str, str]] = field(default_factory=list)
    replaced_count: int = 0
    id_map: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "archive_id": self.archive_id,
            "merge": self.merge,
            "preserve_ids": self.preserve_ids,
            "restored_count": self.restored_count,
            "restored_ids": list(self.restored_ids),
            "skipped_ids": list(self.skipped_ids),
            "conflicts": list(self.conflicts),
            "replaced_count": self.replaced_count,
            "id_map": dict(self.id_map),
        }


def _archive_stamp() -> str:
    return utc_now().strftime("%Y%m%dT%H%M%S%fZ")


class ArchiveManager:
    """Create, list and restore archive snapshots."""

    def __init__(self, storage: LedgerStorage):
        self.storage = storage

    @log_performance("create_archive")
    def create_archive(self, description: str, name: Optional[str] = None) -> Archive:
        """Snapshot the whole live collection under ``description``."""
        if not description or not description.strip():
            raise InvalidInputError("Archive description cannot be empty")

        with self.storage.locked():
            collection = self.storage.read_collection()
            archive_id = f"{ARCHIVE_PREFIX}{_archive_stamp()}_{uuid.uuid4().hex[:8]}"
            archive = Archive(
                id=archive_id,
                filename=f"{archive_id}.json",
                name=name,
                description=description.strip(),
                tasks=collection.tasks,
                initial_request=collection.initial_request,
                created_at=utc_now_iso(),
                stats=ArchiveStats.from_tasks(collection.tasks),
            )
            self.storage.save_archive(archive)

        record_event(self.storage, "archive", None, archive_id=archive.id, tasks_count=len(archive.tasks))
        log_archive_event("created", archive.id, tasks_count=len(archive.tasks))
        return archive

    def list_archives(self, filter: Optional[str] = None) -> ArchiveListing:
        """Archive metadata, newest first, filtered by substring on description, name or filename."""
        archives = sorted(
            self.storage.list_archives(),
            key=lambda item: parse_timestamp(item.created_at) or _EPOCH,
            reverse=True,
        )
        needle = filter.lower().strip() if filter else ""
        matched = [
            archive
            for archive in archives
            if not needle
            or any(needle in (value or "").lower() for value in (archive.description, archive.name, archive.filename))
        ]
        return ArchiveListing(
            archives=[archive.metadata() for archive in matched],
            total_count=len(archives),
            filtered_count=len(matched),
        )

    def get_archive(self, archive_ref: str) -> Archive:
        if not archive_ref:
            raise InvalidInputError("Archive id cannot be empty")
        archive = self.storage.load_archive(archive_ref)
        if archive is None:
            raise NotFoundError(f"Archive '{archive_ref}' not found")
        return archive

    @log_performance("restore_from_archive")
    def restore_from_archive(
        self,
        archive_ref: str,
        merge: bool = True,
        preserve_ids: bool = True,
        force: bool = False,
    ) -> RestoreResult:
        """Bring archived tasks back into the live collection.

        ``merge`` unions with the live collection, skipping ids that already
        exist; otherwise the live collection is replaced. ``preserve_ids=False``
        gives every restored task a fresh id and rewrites dependencies between
        archived tasks accordingly. Dependencies that point outside the archive
        are left as they are for the consistency auditor to report.
        """
        archive = self.get_archive(archive_ref)
        result = RestoreResult(archive_id=archive.id, merge=merge, preserve_ids=preserve_ids)

        duplicates = [issue for issue in audit_tasks(archive.tasks) if issue.type == DUPLICATE_ID]
        if duplicates and not force:
            raise ConflictRequiresConfirmationError(
                f"Archive '{archive.id}' contains {len(duplicates)} duplicated task id(s); "
                "restore with force to keep only the first copy of each",
                issues=[issue.to_dict() for issue in duplicates],
            )

        candidates: List[Task] = []
        seen: set[str] = set()
        for task in archive.tasks:
            if task.id in seen:
                result.skipped_ids.append(task.id)
                continue
            seen.add(task.id)
            candidates.append(task)

        if not preserve_ids:
            result.id_map = {task.id: str(uuid.uuid4()) for task in candidates}
            for task in candidates:
                task.id = result.id_map[task.id]
                task.dependencies = [result.id_map.get(dep, dep) for dep in task.dependencies]

        with log_operation("restore_from_archive", archive_id=archive.id, merge=merge):
            with self.storage.locked():
                collection = self.storage.read_collection()
                if merge:
                    live_ids = collection.ids()
                    now = utc_now_iso()
                    for task in candidates:
                        if task.id in live_ids:
                            if preserve_ids:
                                result.skipped_ids.append(task.id)
                            else:
                                original = next(k for k, v in result.id_map.items() if v == task.id)
                                result.conflicts.append({"archived_id": original, "remapped_id": task.id})
                            continue
                        task.updated_at = now
                        collection.tasks.append(task)
                        live_ids.add(task.id)
                        result.restored_ids.append(task.id)
                else:
                    result.replaced_count = len(collection.tasks)
                    collection.tasks = list(candidates)
                    collection.initial_request = archive.initial_request
                    result.restored_ids = [task.id for task in candidates]
                result.restored_count = len(result.restored_ids)
                self.storage.write_collection(collection)

        if result.conflicts:
            logger.warning(f"Restore from {archive.id} skipped {len(result.conflicts)} remapped id collision(s)")
        record_event(
            self.storage,
            "restore",
            None,
            archive_id=archive.id,
            mode="merge" if merge else "replace",
            restored_count=result.restored_count,
            skipped_count=len(result.skipped_ids) or None,
        )
        log_archive_event("restored", archive.id, restored_count=result.restored_count, merge=merge)
        return result
