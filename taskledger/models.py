"""Data models for the task ledger.

This module contains the records persisted by the store: tasks and their
completion details, the live collection, deleted-task backups, archives,
history entries and consistency reports.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional


class TaskStatus:
    """Allowed task statuses."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"

    ALL = (PENDING, IN_PROGRESS, COMPLETED)

    @classmethod
    def is_valid(cls, value: Any) -> bool:
        return value in cls.ALL


RELATED_FILE_TYPES = ("TO_MODIFY", "REFERENCE", "CREATE", "DEPENDENCY", "OTHER")
REQUIRED_TASK_FIELDS = ("id", "name", "description", "status", "created_at", "updated_at")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Render an aware datetime as an ISO-8601 UTC string ending in ``Z``."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


def utc_now_iso() -> str:
    return format_timestamp(utc_now())


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a stored timestamp into an aware datetime; ``None`` if unparseable.

    Naive values are taken as UTC, a trailing ``Z`` is accepted on every
    supported interpreter.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z") or text.endswith("z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def dedupe(values: Iterable[str]) -> List[str]:
    """Drop repeats and blanks while keeping first-seen order."""
    seen: set[str] = set()
    ordered: List[str] = []
    for value in values:
        if not value or value in seen:
            continue
        seen.add(value)
        ordered.append(value)
    return ordered


def _dependency_ids(raw: Any) -> List[str]:
    # Older documents store dependencies as [{"taskId": "..."}].
    ids: List[str] = []
    for item in raw or []:
        if isinstance(item, str):
            ids.append(item)
        elif isinstance(item, dict):
            ref = item.get("task_id") or item.get("taskId")
            if isinstance(ref, str):
                ids.append(ref)
    return ids


def _first(data: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


@dataclass(slots=True)
class RelatedFile:
    """A file touched or referenced by a task."""

    path: str
    type: str = "REFERENCE"
    description: str = ""
    line_start: Optional[int] = None
    line_end: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "type": self.type,
            "description": self.description,
            "line_start": self.line_start,
            "line_end": self.line_end,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RelatedFile":
        return cls(
            path=data.get("path", ""),
            type=data.get("type", "REFERENCE"),
            description=data.get("description", ""),
            line_start=_first(data, "line_start", "lineStart"),
            line_end=_first(data, "line_end", "lineEnd"),
        )


@dataclass(slots=True)
class CompletionDetails:
    """Structured record of what was done when a task completed.

    ``metadata`` is an opaque bag for caller extras; it is stored beside the
    typed lists and never merged into them.
    """

    key_accomplishments: List[str] = field(default_factory=list)
    implementation_details: List[str] = field(default_factory=list)
    technical_challenges: List[str] = field(default_factory=list)
    verification_score: int = 0
    completed_at: str = field(default_factory=utc_now_iso)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key_accomplishments": list(self.key_accomplishments),
            "implementation_details": list(self.implementation_details),
            "technical_challenges": list(self.technical_challenges),
            "verification_score": self.verification_score,
            "completed_at": self.completed_at,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CompletionDetails":
        return cls(
            key_accomplishments=list(_first(data, "key_accomplishments", "keyAccomplishments", default=[])),
            implementation_details=list(_first(data, "implementation_details", "implementationDetails", default=[])),
            technical_challenges=list(_first(data, "technical_challenges", "technicalChallenges", default=[])),
            verification_score=int(_first(data, "verification_score", "verificationScore", default=0)),
            completed_at=_first(data, "completed_at", "completedAt", default="") or utc_now_iso(),
            metadata=dict(data.get("metadata") or {}),
        )

    def is_complete(self) -> bool:
        """True when every list carries at least one entry."""
        return bool(self.key_accomplishments and self.implementation_details and self.technical_challenges)


@dataclass(slots=True)
class Task:
    """A unit of work with status, dependencies and completion metadata.

    Required fields may be empty on records loaded from a damaged document;
    ``missing_fields()`` reports them instead of failing the load.
    """

    id: str
    name: str
    description: str
    status: str = TaskStatus.PENDING
    dependencies: List[str] = field(default_factory=list)
    created_at: Optional[str] = field(default_factory=utc_now_iso)
    updated_at: Optional[str] = field(default_factory=utc_now_iso)
    completed_at: Optional[str] = None
    summary: Optional[str] = None
    completion_details: Optional[CompletionDetails] = None
    related_files: List[RelatedFile] = field(default_factory=list)
    notes: Optional[str] = None
    agent: Optional[str] = None
    implementation_guide: Optional[str] = None
    verification_criteria: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "status": self.status,
            "dependencies": dedupe(self.dependencies),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "completed_at": self.completed_at,
            "summary": self.summary,
            "completion_details": self.completion_details.to_dict() if self.completion_details else None,
            "related_files": [item.to_dict() for item in self.related_files],
            "notes": self.notes,
            "agent": self.agent,
            "implementation_guide": self.implementation_guide,
            "verification_criteria": self.verification_criteria,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        details = _first(data, "completion_details", "completionDetails")
        return cls(
            id=data.get("id") or "",
            name=data.get("name") or "",
            description=data.get("description") or "",
            status=data.get("status") or "",
            dependencies=_dependency_ids(data.get("dependencies")),
            created_at=_first(data, "created_at", "createdAt"),
            updated_at=_first(data, "updated_at", "updatedAt"),
            completed_at=_first(data, "completed_at", "completedAt"),
            summary=data.get("summary"),
            completion_details=CompletionDetails.from_dict(details) if isinstance(details, dict) else None,
            related_files=[
                RelatedFile.from_dict(item)
                for item in _first(data, "related_files", "relatedFiles", default=[])
                if isinstance(item, dict)
            ],
            notes=data.get("notes"),
            agent=data.get("agent"),
            implementation_guide=_first(data, "implementation_guide", "implementationGuide"),
            verification_criteria=_first(data, "verification_criteria", "verificationCriteria"),
        )

    def touch(self) -> None:
        self.updated_at = utc_now_iso()

    def missing_fields(self) -> List[str]:
        return [name for name in REQUIRED_TASK_FIELDS if not getattr(self, name)]

    def is_completed(self) -> bool:
        return self.status == TaskStatus.COMPLETED

    def validate(self) -> List[str]:
        """Validate task data and return any issues."""
        issues = [f"Missing required field: {name}" for name in self.missing_fields()]

        if self.status and not TaskStatus.is_valid(self.status):
            issues.append(f"Invalid status: {self.status}")
        if self.id and self.id in self.dependencies:
            issues.append("Task cannot depend on itself")

        created = parse_timestamp(self.created_at)
        updated = parse_timestamp(self.updated_at)
        if self.created_at and created is None:
            issues.append(f"Unparseable created_at: {self.created_at}")
        if self.updated_at and updated is None:
            issues.append(f"Unparseable updated_at: {self.updated_at}")
        if created and updated and updated < created:
            issues.append("updated_at is earlier than created_at")

        for item in self.related_files:
            if item.type not in RELATED_FILE_TYPES:
                issues.append(f"Invalid related file type: {item.type}")

        return issues


@dataclass(slots=True)
class TaskCollection:
    """The live task set plus the planning prompt that produced it."""

    tasks: List[Task] = field(default_factory=list)
    initial_request: Optional[str] = None
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tasks": [task.to_dict() for task in self.tasks],
            "initial_request": self.initial_request,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "TaskCollection":
        if isinstance(data, list):
            # Legacy document: a bare list of tasks.
            return cls(tasks=[Task.from_dict(item) for item in data if isinstance(item, dict)])
        return cls(
            tasks=[Task.from_dict(item) for item in data.get("tasks") or [] if isinstance(item, dict)],
            initial_request=_first(data, "initial_request", "initialRequest"),
            created_at=_first(data, "created_at", "createdAt", default="") or utc_now_iso(),
            updated_at=_first(data, "updated_at", "updatedAt", default="") or utc_now_iso(),
        )

    def find(self, task_id: str) -> Optional[Task]:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def index_of(self, task_id: str) -> int:
        for index, task in enumerate(self.tasks):
            if task.id == task_id:
                return index
        return -1

    def ids(self) -> set[str]:
        return {task.id for task in self.tasks if task.id}

    def by_id(self) -> Dict[str, Task]:
        """Map ids to tasks; the first occurrence wins for duplicated ids."""
        mapping: Dict[str, Task] = {}
        for task in self.tasks:
            if task.id and task.id not in mapping:
                mapping[task.id] = task
        return mapping


@dataclass(slots=True)
class DeletedTaskRecord:
    """A soft-deleted task waiting for recovery or purge."""

    task: Task
    deleted_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {"task": self.task.to_dict(), "deleted_at": self.deleted_at}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeletedTaskRecord":
        return cls(
            task=Task.from_dict(data.get("task") or {}),
            deleted_at=_first(data, "deleted_at", "deletedAt", default="") or utc_now_iso(),
        )


@dataclass(slots=True)
class ArchiveStats:
    """Task counts per status, frozen at snapshot time."""

    total: int = 0
    pending: int = 0
    in_progress: int = 0
    completed: int = 0

    @classmethod
    def from_tasks(cls, tasks: Iterable[Task]) -> "ArchiveStats":
        stats = cls()
        for task in tasks:
            stats.total += 1
            if task.status == TaskStatus.PENDING:
                stats.pending += 1
            elif task.status == TaskStatus.IN_PROGRESS:
                stats.in_progress += 1
            elif task.status == TaskStatus.COMPLETED:
                stats.completed += 1
        return stats

    def to_dict(self) -> Dict[str, int]:
        return {
            "total": self.total,
            "pending": self.pending,
            "in_progress": self.in_progress,
            "completed": self.completed,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ArchiveStats":
        return cls(
            total=int(data.get("total", 0)),
            pending=int(data.get("pending", 0)),
            in_progress=int(_first(data, "in_progress", "inProgress", default=0)),
            completed=int(data.get("completed", 0)),
        )


@dataclass(slots=True)
class Archive:
    """Immutable named snapshot of the whole task collection."""

    id: str
    filename: str
    description: str
    tasks: List[Task]
    initial_request: Optional[str] = None
    name: Optional[str] = None
    created_at: str = field(default_factory=utc_now_iso)
    stats: ArchiveStats = field(default_factory=ArchiveStats)

    def metadata(self) -> Dict[str, Any]:
        """Archive listing entry without task bodies."""
        return {
            "id": self.id,
            "filename": self.filename,
            "name": self.name,
            "description": self.description,
            "created_at": self.created_at,
            "tasks_count": len(self.tasks),
            "stats": self.stats.to_dict(),
        }

    def to_dict(self) -> Dict[str, Any]:
        data = self.metadata()
        data["initial_request"] = self.initial_request
        data["tasks"] = [task.to_dict() for task in self.tasks]
        return data

    @classmethod
    def from_dict(cls, data: Any, filename: str = "") -> "Archive":
        if isinstance(data, list):
            # Oldest archives are a bare list of tasks.
            data = {"tasks": data}
        # Older archives nest the collection as {"meta": ..., "tasksData": {...}}.
        meta = data.get("meta") if isinstance(data.get("meta"), dict) else {}
        nested = data.get("tasksData") if isinstance(data.get("tasksData"), dict) else {}
        raw_tasks = data.get("tasks")
        if raw_tasks is None:
            raw_tasks = nested.get("tasks")
        if not isinstance(raw_tasks, list):
            raw_tasks = []
        tasks = [Task.from_dict(item) for item in raw_tasks if isinstance(item, dict)]
        stats_data = data.get("stats")
        return cls(
            id=data.get("id") or filename,
            filename=data.get("filename") or filename,
            name=data.get("name"),
            description=data.get("description") or meta.get("description") or "",
            created_at=_first(data, "created_at", "createdAt", default="") or meta.get("createdAt") or utc_now_iso(),
            tasks=tasks,
            initial_request=_first(data, "initial_request", "initialRequest", default=nested.get("initialRequest")),
            stats=ArchiveStats.from_dict(stats_data) if isinstance(stats_data, dict) else ArchiveStats.from_tasks(tasks),
        )


@dataclass(slots=True)
class HistoryEntry:
    """Append-only audit record of a store mutation."""

    operation: str
    task_id: Optional[str] = None
    task_name: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "operation": self.operation,
            "task_id": self.task_id,
            "task_name": self.task_name,
            "details": dict(self.details),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HistoryEntry":
        return cls(
            timestamp=data.get("timestamp") or utc_now_iso(),
            operation=data.get("operation") or "",
            task_id=data.get("task_id"),
            task_name=data.get("task_name"),
            details=dict(data.get("details") or {}),
        )


@dataclass(slots=True)
class ExecutionCheck:
    """Result of a dependency-satisfaction check."""

    task_id: str
    can_execute: bool
    blocked_by: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "can_execute": self.can_execute,
            "blocked_by": list(self.blocked_by),
        }


@dataclass(slots=True)
class SyncIssue:
    """One structural problem found by the consistency auditor."""

    type: str  # 'duplicate_id', 'inconsistent_timestamp', 'dependency_mismatch', 'corrupted_data', 'dependency_cycle'
    severity: str  # 'low', 'medium', 'high', 'critical'
    description: str
    task_id: Optional[str] = None
    task_name: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    suggested_action: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "severity": self.severity,
            "description": self.description,
            "task_id": self.task_id,
            "task_name": self.task_name,
            "details": dict(self.details),
            "suggested_action": self.suggested_action,
        }


@dataclass(slots=True)
class SyncReport:
    """Outcome of a consistency audit."""

    issues: List[SyncIssue] = field(default_factory=list)
    resolved: List[SyncIssue] = field(default_factory=list)
    stats: Dict[str, Any] = field(default_factory=dict)
    checks_performed: List[str] = field(default_factory=list)
    timestamp: str = field(default_factory=utc_now_iso)
    check_only: bool = False
    requires_confirmation: bool = False
    synced_successfully: bool = False
    changes_written: bool = False

    def issues_by_severity(self, severity: str) -> List[SyncIssue]:
        return [issue for issue in self.issues if issue.severity == severity]

    def has_critical(self) -> bool:
        return bool(self.issues_by_severity("critical"))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "issues": [issue.to_dict() for issue in self.issues],
            "resolved": [issue.to_dict() for issue in self.resolved],
            "stats": dict(self.stats),
            "checks_performed": list(self.checks_performed),
            "timestamp": self.timestamp,
            "check_only": self.check_only,
            "requires_confirmation": self.requires_confirmation,
            "synced_successfully": self.synced_successfully,
            "changes_written": self.changes_written,
            "issue_count": len(self.issues),
            "resolved_count": len(self.resolved),
        }
