"""Consistency auditing and repair for the live collection.

The auditor scans for structural damage (duplicate ids, reversed
timestamps, dangling dependencies, records missing required fields and
dependency cycles) and optionally repairs what can be fixed without
guessing. Timestamp repair is always attempted outside ``check_only`` mode;
anything that drops or rewrites data needs ``force``.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Sequence, Set

from .dependencies import find_cycles
from .history import record_event
from .ledger_logging import log_audit_event, log_error_with_context, log_performance
from .models import (
    SyncIssue,
    SyncReport,
    Task,
    TaskCollection,
    TaskStatus,
    format_timestamp,
    parse_timestamp,
    utc_now,
)
from .ports import LedgerStorage

logger = logging.getLogger("taskledger.audit")

DUPLICATE_ID = "duplicate_id"
INCONSISTENT_TIMESTAMP = "inconsistent_timestamp"
DEPENDENCY_MISMATCH = "dependency_mismatch"
CORRUPTED_DATA = "corrupted_data"
DEPENDENCY_CYCLE = "dependency_cycle"

CHECKS = (DUPLICATE_ID, INCONSISTENT_TIMESTAMP, DEPENDENCY_MISMATCH, CORRUPTED_DATA, DEPENDENCY_CYCLE)


def _duplicate_issues(tasks: Sequence[Task]) -> List[SyncIssue]:
    first_seen: Dict[str, int] = {}
    issues: List[SyncIssue] = []
    for index, task in enumerate(tasks):
        if not task.id:
            continue
        if task.id not in first_seen:
            first_seen[task.id] = index
            continue
        issues.append(
            SyncIssue(
                type=DUPLICATE_ID,
                severity="critical",
                description=f"Task id '{task.id}' appears more than once",
                task_id=task.id,
                task_name=task.name,
                details={"index": index, "first_index": first_seen[task.id]},
                suggested_action="Re-run with force to drop exact copies and re-identify divergent ones",
            )
        )
    return issues


def _timestamp_issues(tasks: Sequence[Task]) -> List[SyncIssue]:
    issues: List[SyncIssue] = []
    for index, task in enumerate(tasks):
        created = parse_timestamp(task.created_at)
        updated = parse_timestamp(task.updated_at)
        if created is None or updated is None or updated >= created:
            continue
        issues.append(
            SyncIssue(
                type=INCONSISTENT_TIMESTAMP,
                severity="medium",
                description=f"Task '{task.name}' was updated before it was created",
                task_id=task.id,
                task_name=task.name,
                details={"index": index, "created_at": task.created_at, "updated_at": task.updated_at},
                suggested_action="Reset updated_at to the current time",
            )
        )
    return issues


def _dependency_issues(tasks: Sequence[Task]) -> List[SyncIssue]:
    known = {task.id for task in tasks if task.id}
    issues: List[SyncIssue] = []
    for index, task in enumerate(tasks):
        for dep_id in dict.fromkeys(task.dependencies):
            if dep_id in known:
                continue
            issues.append(
                SyncIssue(
                    type=DEPENDENCY_MISMATCH,
                    severity="high",
                    description=f"Task '{task.name}' depends on unknown task '{dep_id}'",
                    task_id=task.id,
                    task_name=task.name,
                    details={"index": index, "missing_dependency": dep_id},
                    suggested_action="Re-run with force to remove the dangling reference",
                )
            )
    return issues


def _missing_field_issues(tasks: Sequence[Task]) -> List[SyncIssue]:
    issues: List[SyncIssue] = []
    for index, task in enumerate(tasks):
        missing = task.missing_fields()
        if not missing:
            continue
        issues.append(
            SyncIssue(
                type=CORRUPTED_DATA,
                severity="high",
                description=f"Task at position {index} is missing required fields: {', '.join(missing)}",
                task_id=task.id or None,
                task_name=task.name or None,
                details={"index": index, "missing_fields": missing},
                suggested_action="Restore the task from an archive or delete and recreate it",
            )
        )
    return issues


def _cycle_issues(tasks: Sequence[Task]) -> List[SyncIssue]:
    names = {task.id: task.name for task in tasks}
    issues: List[SyncIssue] = []
    for cycle in find_cycles(tasks):
        issues.append(
            SyncIssue(
                type=DEPENDENCY_CYCLE,
                severity="high",
                description="Dependency cycle: " + " -> ".join(names.get(i) or i for i in cycle + cycle[:1]),
                task_id=cycle[0],
                task_name=names.get(cycle[0]),
                details={"cycle": list(cycle)},
                suggested_action="Edit the dependencies of one task in the cycle",
            )
        )
    return issues


def audit_tasks(tasks: Sequence[Task]) -> List[SyncIssue]:
    """Run every check over ``tasks`` without touching storage."""
    issues: List[SyncIssue] = []
    issues.extend(_duplicate_issues(tasks))
    issues.extend(_timestamp_issues(tasks))
    issues.extend(_dependency_issues(tasks))
    issues.extend(_missing_field_issues(tasks))
    issues.extend(_cycle_issues(tasks))
    return issues


def collection_stats(tasks: Sequence[Task], issues: Sequence[SyncIssue]) -> Dict[str, Any]:
    by_severity: Dict[str, int] = {}
    for issue in issues:
        by_severity[issue.severity] = by_severity.get(issue.severity, 0) + 1
    return {
        "total_tasks": len(tasks),
        "pending_tasks": sum(1 for task in tasks if task.status == TaskStatus.PENDING),
        "in_progress_tasks": sum(1 for task in tasks if task.status == TaskStatus.IN_PROGRESS),
        "completed_tasks": sum(1 for task in tasks if task.status == TaskStatus.COMPLETED),
        "issues_by_severity": by_severity,
    }


class ConsistencyAuditor:
    """Audit the live collection and repair what the caller consents to."""

    def __init__(self, storage: LedgerStorage):
        self.storage = storage

    @log_performance("audit_consistency")
    def audit(self, check_only: bool = False, force: bool = False) -> SyncReport:
        """Scan the collection and, unless ``check_only``, attempt repairs.

        Critical issues without ``force`` stop the run before any write and
        the report comes back with ``requires_confirmation`` set.
        """
        report = SyncReport(checks_performed=list(CHECKS), check_only=check_only)

        with self.storage.locked():
            collection = self.storage.read_collection()
            report.issues = audit_tasks(collection.tasks)
            report.stats = collection_stats(collection.tasks, report.issues)

            if check_only:
                report.synced_successfully = not report.issues
                log_audit_event("checked", issue_count=len(report.issues))
                return report

            if report.has_critical() and not force:
                report.requires_confirmation = True
                logger.warning(
                    f"Audit found {len(report.issues_by_severity('critical'))} critical issue(s); "
                    "re-run with force to repair"
                )
                log_audit_event("confirmation_required", issue_count=len(report.issues))
                return report

            self._repair(collection, report, force)
            if report.resolved:
                self.storage.write_collection(collection)
                report.changes_written = True

        report.synced_successfully = not report.issues
        if report.resolved:
            record_event(
                self.storage,
                "repair",
                None,
                resolved=len(report.resolved),
                types=sorted({issue.type for issue in report.resolved}),
                force=force,
            )
        log_audit_event(
            "repaired",
            resolved_count=len(report.resolved),
            remaining_count=len(report.issues),
            force=force,
        )
        return report

    def _repair(self, collection: TaskCollection, report: SyncReport, force: bool) -> None:
        tasks = collection.tasks
        drop_indexes: Set[int] = set()
        remaining: List[SyncIssue] = []

        for issue in report.issues:
            try:
                fixed = self._repair_issue(tasks, issue, force, drop_indexes)
            except Exception as e:
                log_error_with_context(e, {"operation": "audit_repair", "issue_type": issue.type, "task_id": issue.task_id})
                fixed = False
            if fixed:
                report.resolved.append(issue)
            else:
                remaining.append(issue)

        report.issues = remaining
        if drop_indexes:
            collection.tasks = [task for index, task in enumerate(tasks) if index not in drop_indexes]

    def _repair_issue(self, tasks: List[Task], issue: SyncIssue, force: bool, drop_indexes: Set[int]) -> bool:
        index = issue.details.get("index")

        if issue.type == INCONSISTENT_TIMESTAMP:
            task = tasks[index]
            created = parse_timestamp(task.created_at)
            task.updated_at = format_timestamp(max(utc_now(), created))
            return True

        if issue.type == DEPENDENCY_MISMATCH and force:
            task = tasks[index]
            missing = issue.details["missing_dependency"]
            task.dependencies = [dep for dep in task.dependencies if dep != missing]
            return True

        if issue.type == DUPLICATE_ID and force:
            duplicate = tasks[index]
            original = tasks[issue.details["first_index"]]
            if duplicate.to_dict() == original.to_dict():
                drop_indexes.add(index)
                issue.details["action"] = "dropped"
            else:
                duplicate.id = str(uuid.uuid4())
                issue.details["action"] = "reidentified"
                issue.details["new_id"] = duplicate.id
            return True

        return False
