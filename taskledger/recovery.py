"""Soft delete and recovery of tasks."""

from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .config import DEFAULT_DELETED_PAGE_SIZE
from .dependencies import dependents_of
from .errors import InvalidInputError, InvalidStateError, NotFoundError
from .history import coerce_since, record_event
from .ledger_logging import log_performance, log_task_event
from .models import DeletedTaskRecord, Task, parse_timestamp, utc_now_iso
from .ports import LedgerStorage

logger = logging.getLogger("taskledger.recovery")

TASK_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.:-]*$")
MAX_TASK_ID_LENGTH = 128

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def validate_task_id(task_id: Any) -> str:
    """Reject ids that could not have been issued by the store."""
    if not isinstance(task_id, str) or not task_id.strip():
        raise InvalidInputError("Task id cannot be empty")
    task_id = task_id.strip()
    if len(task_id) > MAX_TASK_ID_LENGTH or not TASK_ID_PATTERN.match(task_id):
        raise InvalidInputError(f"Malformed task id: {task_id!r}")
    return task_id


@dataclass(slots=True)
class DeleteResult:
    task: Task
    deleted_at: str
    dependents: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deleted": True,
            "task_id": self.task.id,
            "task_name": self.task.name,
            "deleted_at": self.deleted_at,
            "dependents": list(self.dependents),
        }


class RecoveryManager:
    """Keep recoverable backups of deleted tasks."""

    def __init__(self, storage: LedgerStorage, page_size: int = DEFAULT_DELETED_PAGE_SIZE):
        self.storage = storage
        self.page_size = page_size

    @log_performance("delete_task")
    def delete_task(self, task_id: str, force: bool = False) -> DeleteResult:
        """Back the task up, then remove it from the live collection.

        Deleting a task that other live tasks depend on needs ``force``; the
        dependents keep their now-dangling references.
        """
        with self.storage.locked():
            collection = self.storage.read_collection()
            index = collection.index_of(task_id)
            if index < 0:
                raise NotFoundError(f"Task '{task_id}' not found")
            task = collection.tasks[index]

            dependents = [dependent.id for dependent in dependents_of(collection.tasks, task_id)]
            if dependents and not force:
                raise InvalidStateError(
                    f"Task '{task.name}' is a dependency of {len(dependents)} task(s): {', '.join(dependents)}. "
                    "Delete with force to remove it anyway"
                )

            deleted_at = utc_now_iso()
            records = self.storage.load_deleted()
            records[task.id] = DeletedTaskRecord(task=task, deleted_at=deleted_at)
            self.storage.save_deleted(records)

            del collection.tasks[index]
            self.storage.write_collection(collection)

        record_event(self.storage, "delete", task, forced=force or None, dependents=dependents or None)
        log_task_event("deleted", task.id, task_name=task.name, forced=force)
        return DeleteResult(task=task, deleted_at=deleted_at, dependents=dependents)

    def list_deleted(self, since: Optional[datetime | str] = None, limit: Optional[int] = None) -> List[DeletedTaskRecord]:
        """Deleted-task backups, newest first, never more than one page."""
        if limit is not None and limit <= 0:
            raise InvalidInputError("limit must be a positive integer")
        cap = min(limit, self.page_size) if limit else self.page_size
        since_dt = coerce_since(since)

        records = sorted(
            self.storage.load_deleted().values(),
            key=lambda record: parse_timestamp(record.deleted_at) or _EPOCH,
            reverse=True,
        )
        if since_dt is not None:
            records = [
                record for record in records
                if (parse_timestamp(record.deleted_at) or _EPOCH) >= since_dt
            ]
        return records[:cap]

    @log_performance("recover_task")
    def recover_task(self, task_id: str, preserve_ids: bool = True) -> Task:
        """Move a backup back into the live collection.

        Dependencies are not re-checked here; run the consistency audit for
        that. If a live task already holds the id, recovery is refused unless
        ``preserve_ids`` is false, in which case the task gets a fresh id.

        The backup is removed only after the live collection is written. A
        retry after a failed backup removal finds the same task already live
        and just drops the stale backup.
        """
        task_id = validate_task_id(task_id)

        with self.storage.locked():
            records = self.storage.load_deleted()
            record = records.get(task_id)
            if record is None:
                raise NotFoundError(f"No deleted backup found for task '{task_id}'")

            collection = self.storage.read_collection()
            task = record.task
            live = collection.find(task.id)
            if live is not None and preserve_ids and _same_task(live, task):
                del records[task_id]
                self.storage.save_deleted(records)
                logger.info(f"Task {task_id} was already live; dropped its stale backup")
                return live
            if live is not None:
                if preserve_ids:
                    raise InvalidStateError(
                        f"A live task already uses id '{task.id}'; recover with preserve_ids=False for a new id"
                    )
                task.id = str(uuid.uuid4())
                logger.info(f"Recovered task {task_id} under new id {task.id}")

            task.touch()
            collection.tasks.append(task)
            self.storage.write_collection(collection)

            del records[task_id]
            self.storage.save_deleted(records)

        record_event(self.storage, "recover", task, original_id=task_id if task.id != task_id else None)
        log_task_event("recovered", task.id, task_name=task.name)
        return task

    def purge_deleted(self, task_id: str) -> DeletedTaskRecord:
        """Permanently destroy a deleted-task backup."""
        task_id = validate_task_id(task_id)
        with self.storage.locked():
            records = self.storage.load_deleted()
            record = records.pop(task_id, None)
            if record is None:
                raise NotFoundError(f"No deleted backup found for task '{task_id}'")
            self.storage.save_deleted(records)

        record_event(self.storage, "purge", record.task)
        logger.info(f"Purged deleted backup of task {task_id}")
        return record


def _same_task(live: Task, backup: Task) -> bool:
    """True when the live task is the recovered backup apart from ``updated_at``."""
    live_data, backup_data = live.to_dict(), backup.to_dict()
    live_data.pop("updated_at", None)
    backup_data.pop("updated_at", None)
    return live_data == backup_data
