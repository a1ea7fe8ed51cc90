"""Live task collection management.

``TaskStore`` owns the live collection: lookups, creation, content updates,
batch planning and the initial request. Every mutation goes through the
storage transaction and leaves a history entry behind.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .dependencies import resolve_dependency_refs
from .errors import InvalidInputError, InvalidStateError, NotFoundError
from .history import record_event
from .ledger_logging import log_operation, log_performance, log_task_event
from .models import (
    DeletedTaskRecord,
    RelatedFile,
    Task,
    TaskCollection,
    TaskStatus,
    dedupe,
    utc_now_iso,
)
from .ports import LedgerStorage

logger = logging.getLogger("taskledger.store")

UPDATE_MODES = ("append", "overwrite", "selective", "clear_all_tasks")
EDITABLE_FIELDS = (
    "name",
    "description",
    "notes",
    "dependencies",
    "related_files",
    "agent",
    "implementation_guide",
    "verification_criteria",
    "summary",
)
# Completed tasks are frozen except for these.
COMPLETED_EDITABLE_FIELDS = ("summary", "related_files")


def generate_task_id() -> str:
    return str(uuid.uuid4())


def _coerce_related_files(items: Optional[Iterable[Any]]) -> List[RelatedFile]:
    files: List[RelatedFile] = []
    for item in items or []:
        if isinstance(item, RelatedFile):
            files.append(item)
        elif isinstance(item, dict):
            files.append(RelatedFile.from_dict(item))
        elif isinstance(item, str):
            files.append(RelatedFile(path=item))
        else:
            raise InvalidInputError(f"Unsupported related file entry: {item!r}")
    return files


@dataclass(slots=True)
class TaskSpec:
    """Input for one task in a batch plan."""

    name: str
    description: str
    notes: Optional[str] = None
    dependencies: List[str] = field(default_factory=list)
    related_files: List[Any] = field(default_factory=list)
    implementation_guide: Optional[str] = None
    verification_criteria: Optional[str] = None
    agent: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TaskSpec":
        return cls(
            name=data.get("name", ""),
            description=data.get("description", ""),
            notes=data.get("notes"),
            dependencies=list(data.get("dependencies") or []),
            related_files=list(data.get("related_files") or data.get("relatedFiles") or []),
            implementation_guide=data.get("implementation_guide") or data.get("implementationGuide"),
            verification_criteria=data.get("verification_criteria") or data.get("verificationCriteria"),
            agent=data.get("agent"),
        )


@dataclass(slots=True)
class PlanResult:
    """Outcome of a batch plan."""

    update_mode: str
    created: List[Task] = field(default_factory=list)
    updated: List[Task] = field(default_factory=list)
    soft_deleted: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "update_mode": self.update_mode,
            "created": [task.to_dict() for task in self.created],
            "updated": [task.to_dict() for task in self.updated],
            "soft_deleted": list(self.soft_deleted),
            "created_count": len(self.created),
            "updated_count": len(self.updated),
            "soft_deleted_count": len(self.soft_deleted),
        }


class TaskStore:
    """Create, read and edit tasks in the live collection."""

    def __init__(self, storage: LedgerStorage):
        self.storage = storage

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_task(self, task_id: str) -> Task:
        task = self.storage.read_collection().find(task_id)
        if task is None:
            raise NotFoundError(f"Task '{task_id}' not found")
        return task

    def list_tasks(
        self,
        status: Optional[str] = None,
        agent: Optional[str] = None,
        query: Optional[str] = None,
    ) -> List[Task]:
        """List live tasks in stored order with optional filtering."""
        if status is not None and not TaskStatus.is_valid(status):
            raise InvalidInputError(f"Invalid status filter: {status}")
        needle = query.lower() if query else None

        tasks: List[Task] = []
        for task in self.storage.read_collection().tasks:
            if status and task.status != status:
                continue
            if agent and task.agent != agent:
                continue
            if needle and not any(
                needle in (value or "").lower()
                for value in (task.id, task.name, task.description, task.notes, task.summary)
            ):
                continue
            tasks.append(task)
        return tasks

    # ------------------------------------------------------------------
    # Creation and edits
    # ------------------------------------------------------------------

    @log_performance("create_task")
    def create_task(
        self,
        name: str,
        description: str,
        *,
        notes: Optional[str] = None,
        dependencies: Optional[Sequence[str]] = None,
        related_files: Optional[Iterable[Any]] = None,
        agent: Optional[str] = None,
        implementation_guide: Optional[str] = None,
        verification_criteria: Optional[str] = None,
    ) -> Task:
        """Add a new pending task to the live collection."""
        if not name or not name.strip():
            raise InvalidInputError("Task name cannot be empty")
        if not description or not description.strip():
            raise InvalidInputError("Task description cannot be empty")

        task = Task(
            id=generate_task_id(),
            name=name.strip(),
            description=description.strip(),
            dependencies=dedupe(dependencies or []),
            related_files=_coerce_related_files(related_files),
            notes=notes,
            agent=agent,
            implementation_guide=implementation_guide,
            verification_criteria=verification_criteria,
        )

        with log_operation("create_task", task_name=task.name):
            with self.storage.transaction() as collection:
                unknown = [dep for dep in task.dependencies if dep not in collection.ids()]
                if unknown:
                    logger.warning("Task %s created with unresolved dependencies: %s", task.id, unknown)
                collection.tasks.append(task)
            record_event(self.storage, "create", task, dependencies=list(task.dependencies) or None)

        log_task_event("created", task.id, task_name=task.name)
        return task

    @log_performance("update_task")
    def update_task(self, task_id: str, **changes: Any) -> Task:
        """Edit task content; completed tasks only accept summary and related files."""
        unknown_fields = sorted(set(changes) - set(EDITABLE_FIELDS))
        if unknown_fields:
            raise InvalidInputError(f"Fields cannot be edited: {', '.join(unknown_fields)}")
        changes = {key: value for key, value in changes.items() if value is not None}

        with self.storage.locked():
            collection = self.storage.read_collection()
            task = collection.find(task_id)
            if task is None:
                raise NotFoundError(f"Task '{task_id}' not found")
            if not changes:
                return task

            if task.is_completed():
                frozen = sorted(set(changes) - set(COMPLETED_EDITABLE_FIELDS))
                if frozen:
                    raise InvalidStateError(
                        f"Task '{task.name}' is completed; only summary and related_files can change "
                        f"(attempted: {', '.join(frozen)})"
                    )

            for key, value in changes.items():
                if key == "dependencies":
                    value = dedupe(value)
                    if task.id in value:
                        raise InvalidInputError("Task cannot depend on itself")
                elif key == "related_files":
                    value = _coerce_related_files(value)
                elif key in ("name", "description") and not str(value).strip():
                    raise InvalidInputError(f"Task {key} cannot be empty")
                setattr(task, key, value)
            task.touch()
            self.storage.write_collection(collection)

        record_event(self.storage, "update", task, fields=sorted(changes))
        log_task_event("updated", task.id, fields=sorted(changes))
        return task

    @log_performance("plan_tasks")
    def plan_tasks(self, specs: Sequence[TaskSpec | Dict[str, Any]], update_mode: str = "append") -> PlanResult:
        """Create or update a batch of tasks.

        Modes:
            append: keep every existing task and add the new ones.
            overwrite: keep completed tasks, soft-delete unfinished ones.
            selective: update unfinished tasks whose name matches, keep the rest.
            clear_all_tasks: soft-delete everything before adding.

        Dependencies may name tasks by id or by name, including other tasks in
        the same batch. References that resolve to nothing are dropped.
        """
        if update_mode not in UPDATE_MODES:
            raise InvalidInputError(f"update_mode must be one of {', '.join(UPDATE_MODES)}")
        task_specs = [spec if isinstance(spec, TaskSpec) else TaskSpec.from_dict(spec) for spec in specs]
        for spec in task_specs:
            if not spec.name.strip() or not spec.description.strip():
                raise InvalidInputError("Every planned task needs a name and a description")

        result = PlanResult(update_mode=update_mode)
        with log_operation("plan_tasks", update_mode=update_mode, task_count=len(task_specs)):
            with self.storage.locked():
                collection = self.storage.read_collection()
                existing = list(collection.tasks)
                kept, removed = self._partition_for_mode(existing, update_mode)

                name_to_id: Dict[str, str] = {task.name: task.id for task in kept}

                planned: List[Task] = []
                for spec in task_specs:
                    match = self._selective_match(existing, spec, update_mode)
                    if match is not None:
                        match.description = spec.description
                        match.notes = spec.notes
                        match.agent = spec.agent
                        match.implementation_guide = spec.implementation_guide
                        match.verification_criteria = spec.verification_criteria
                        if spec.related_files:
                            match.related_files = _coerce_related_files(spec.related_files)
                        match.touch()
                        result.updated.append(match)
                        planned.append(match)
                    else:
                        task = Task(
                            id=generate_task_id(),
                            name=spec.name.strip(),
                            description=spec.description.strip(),
                            notes=spec.notes,
                            related_files=_coerce_related_files(spec.related_files),
                            agent=spec.agent,
                            implementation_guide=spec.implementation_guide,
                            verification_criteria=spec.verification_criteria,
                        )
                        name_to_id[task.name] = task.id
                        result.created.append(task)
                        planned.append(task)

                known_ids = {task.id for task in kept} | {task.id for task in planned}
                for spec, task in zip(task_specs, planned):
                    if spec.dependencies:
                        task.dependencies = [
                            dep for dep in resolve_dependency_refs(spec.dependencies, name_to_id, known_ids)
                            if dep != task.id
                        ]

                if removed:
                    records = self.storage.load_deleted()
                    deleted_at = utc_now_iso()
                    for task in removed:
                        records[task.id] = DeletedTaskRecord(task=task, deleted_at=deleted_at)
                        result.soft_deleted.append(task.id)
                    self.storage.save_deleted(records)

                # Selectively updated tasks stay where they are in ``kept``.
                collection.tasks = kept + result.created
                self.storage.write_collection(collection)

            for task in removed:
                record_event(self.storage, "delete", task, reason=f"plan:{update_mode}")
            for task in result.created:
                record_event(self.storage, "create", task, update_mode=update_mode)
            for task in result.updated:
                record_event(self.storage, "update", task, update_mode=update_mode)

        logger.info(
            "Planned %d new and %d updated tasks (%s mode, %d soft-deleted)",
            len(result.created),
            len(result.updated),
            update_mode,
            len(result.soft_deleted),
        )
        return result

    @staticmethod
    def _partition_for_mode(existing: List[Task], update_mode: str) -> tuple[List[Task], List[Task]]:
        """Split the live tasks into (kept, soft-deleted) for ``update_mode``."""
        if update_mode in ("append", "selective"):
            return list(existing), []
        if update_mode == "overwrite":
            kept = [task for task in existing if task.is_completed()]
            return kept, [task for task in existing if not task.is_completed()]
        return [], list(existing)

    @staticmethod
    def _selective_match(existing: List[Task], spec: TaskSpec, update_mode: str) -> Optional[Task]:
        if update_mode != "selective":
            return None
        for task in existing:
            if task.name == spec.name.strip() and not task.is_completed():
                return task
        return None

    # ------------------------------------------------------------------
    # Initial request
    # ------------------------------------------------------------------

    def get_initial_request(self) -> Optional[str]:
        return self.storage.read_collection().initial_request

    def set_initial_request(self, text: str) -> None:
        if text is None:
            raise InvalidInputError("Initial request cannot be None")
        with self.storage.transaction() as collection:
            collection.initial_request = text
        record_event(self.storage, "set_initial_request", None, length=len(text))

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def get_stats(self, collection: Optional[TaskCollection] = None) -> Dict[str, Any]:
        """Counts per status plus archive, deleted-backup and history totals."""
        collection = collection or self.storage.read_collection()
        tasks = collection.tasks
        return {
            "total_tasks": len(tasks),
            "pending_tasks": sum(1 for task in tasks if task.status == TaskStatus.PENDING),
            "in_progress_tasks": sum(1 for task in tasks if task.status == TaskStatus.IN_PROGRESS),
            "completed_tasks": sum(1 for task in tasks if task.status == TaskStatus.COMPLETED),
            "last_updated": collection.updated_at,
            "archives": len(self.storage.list_archives()),
            "deleted_task_backups": len(self.storage.load_deleted()),
            "history_entries": len(self.storage.read_history()),
        }
