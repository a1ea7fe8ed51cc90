"""Ledger facade.

``TaskLedger`` wires one storage root to the task store, state machine,
auditor, archive manager and recovery manager, and exposes the operations
collaborators call. It raises the typed errors from ``taskledger.errors``;
turning them into user-facing responses is the caller's job.
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .archive import ArchiveListing, ArchiveManager, RestoreResult
from .audit import ConsistencyAuditor
from .completion import build_completion_details
from .config import LedgerSettings, get_settings
from .dependencies import can_execute
from .history import query_history, record_event
from .ledger_logging import log_operation, observability_hooks
from .lifecycle import StartResult, TaskStateMachine, VerificationResult
from .models import Archive, DeletedTaskRecord, ExecutionCheck, HistoryEntry, SyncReport, Task
from .persistence import JsonStorage
from .recovery import DeleteResult, RecoveryManager
from .store import PlanResult, TaskSpec, TaskStore

logger = logging.getLogger("taskledger.ledger")

# Score given to completed tasks that predate structured completion details.
BACKFILL_SCORE = 80


class TaskLedger:
    """Entry point for every task lifecycle operation on one storage root."""

    def __init__(self, root: Path | str | None = None, settings: Optional[LedgerSettings] = None):
        self.settings = settings or get_settings(root)
        self.storage = JsonStorage(self.settings.data_dir, self.settings.storage_dir)
        self.store = TaskStore(self.storage)
        self.state_machine = TaskStateMachine(
            self.storage,
            completion_threshold=self.settings.completion_threshold,
            min_summary_length=self.settings.min_summary_length,
        )
        self.auditor = ConsistencyAuditor(self.storage)
        self.archives = ArchiveManager(self.storage)
        self.recovery = RecoveryManager(self.storage, page_size=self.settings.deleted_page_size)
        observability_hooks.log_event("ledger_opened", root=str(self.storage.base_dir))

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def get_task(self, task_id: str) -> Task:
        return self.store.get_task(task_id)

    def list_tasks(
        self,
        status: Optional[str] = None,
        agent: Optional[str] = None,
        query: Optional[str] = None,
    ) -> List[Task]:
        return self.store.list_tasks(status=status, agent=agent, query=query)

    def create_task(self, name: str, description: str, **fields: Any) -> Task:
        return self.store.create_task(name, description, **fields)

    def update_task(self, task_id: str, **changes: Any) -> Task:
        return self.store.update_task(task_id, **changes)

    def plan_tasks(self, specs: Sequence[TaskSpec | Dict[str, Any]], update_mode: str = "append") -> PlanResult:
        return self.store.plan_tasks(specs, update_mode=update_mode)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def can_execute(self, task_id: str) -> ExecutionCheck:
        return can_execute(self.storage.read_collection(), task_id)

    def start_execution(self, task_id: str) -> StartResult:
        return self.state_machine.start_execution(task_id)

    def verify_and_maybe_complete(
        self,
        task_id: str,
        summary: str,
        score: int,
        key_accomplishments: Optional[Sequence[str]] = None,
        implementation_details: Optional[Sequence[str]] = None,
        technical_challenges: Optional[Sequence[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> VerificationResult:
        return self.state_machine.verify_task(
            task_id,
            summary,
            score,
            key_accomplishments=key_accomplishments,
            implementation_details=implementation_details,
            technical_challenges=technical_challenges,
            metadata=metadata,
        )

    # ------------------------------------------------------------------
    # Soft delete and recovery
    # ------------------------------------------------------------------

    def delete_task(self, task_id: str, force: bool = False) -> DeleteResult:
        return self.recovery.delete_task(task_id, force=force)

    def list_deleted(self, since: Optional[datetime | str] = None, limit: Optional[int] = None) -> List[DeletedTaskRecord]:
        return self.recovery.list_deleted(since=since, limit=limit)

    def recover_task(self, task_id: str, preserve_ids: bool = True) -> Task:
        return self.recovery.recover_task(task_id, preserve_ids=preserve_ids)

    def purge_deleted(self, task_id: str) -> DeletedTaskRecord:
        return self.recovery.purge_deleted(task_id)

    # ------------------------------------------------------------------
    # Archives
    # ------------------------------------------------------------------

    def create_archive(self, description: str, name: Optional[str] = None) -> Archive:
        return self.archives.create_archive(description, name=name)

    def list_archives(self, filter: Optional[str] = None) -> ArchiveListing:
        return self.archives.list_archives(filter)

    def get_archive(self, archive_ref: str) -> Archive:
        return self.archives.get_archive(archive_ref)

    def restore_from_archive(
        self,
        archive_ref: str,
        merge: bool = True,
        preserve_ids: bool = True,
        force: bool = False,
    ) -> RestoreResult:
        return self.archives.restore_from_archive(archive_ref, merge=merge, preserve_ids=preserve_ids, force=force)

    # ------------------------------------------------------------------
    # Audit, history and collection metadata
    # ------------------------------------------------------------------

    def audit_consistency(self, check_only: bool = False, force: bool = False) -> SyncReport:
        return self.auditor.audit(check_only=check_only, force=force)

    def get_history(
        self,
        limit: Optional[int] = None,
        since: Optional[datetime | str] = None,
        task_id: Optional[str] = None,
        operation: Optional[str] = None,
    ) -> List[HistoryEntry]:
        return query_history(
            self.storage,
            limit=limit if limit is not None else self.settings.history_limit,
            since=since,
            task_id=task_id,
            operation=operation,
        )

    def set_initial_request(self, text: str) -> None:
        self.store.set_initial_request(text)

    def get_initial_request(self) -> Optional[str]:
        return self.store.get_initial_request()

    def get_stats(self) -> Dict[str, Any]:
        return self.store.get_stats()

    def backfill_completion_details(self, dry_run: bool = False) -> Dict[str, Any]:
        """Give completed tasks without completion details a parsed record.

        Tasks completed before completion details existed only carry a
        summary. They get details parsed from it with a score of 80.
        """
        migrated: List[Task] = []
        with log_operation("backfill_completion_details", dry_run=dry_run):
            with self.storage.locked():
                collection = self.storage.read_collection()
                for task in _needs_backfill(collection.tasks):
                    task.completion_details = build_completion_details(
                        task.summary,
                        BACKFILL_SCORE,
                        metadata={"backfilled": True},
                        completed_at=task.completed_at or task.updated_at,
                    )
                    migrated.append(task)
                if migrated and not dry_run:
                    self.storage.write_collection(collection)

            if not dry_run:
                for task in migrated:
                    record_event(self.storage, "update", task, fields=["completion_details"], reason="backfill")

        logger.info(f"Backfilled completion details for {len(migrated)} task(s) (dry_run={dry_run})")
        return {
            "dry_run": dry_run,
            "migrated_count": len(migrated),
            "migrated_ids": [task.id for task in migrated],
        }


def _needs_backfill(tasks: Iterable[Task]) -> List[Task]:
    return [task for task in tasks if task.is_completed() and task.completion_details is None]
