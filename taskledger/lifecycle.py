"""Task status state machine.

Statuses only move forward: ``pending -> in_progress -> completed``. Starting
a task that is already running or finished is a no-op rather than an error,
since duplicate start requests are a common caller race. Completion is gated
on a verification score.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from .completion import build_completion_details
from .config import DEFAULT_COMPLETION_THRESHOLD, DEFAULT_MIN_SUMMARY_LENGTH
from .dependencies import check_dependencies
from .errors import BlockedError, InvalidInputError, InvalidStateError, NotFoundError
from .history import record_event
from .ledger_logging import log_performance, log_task_event, observability_hooks
from .models import Task, TaskStatus, utc_now_iso
from .ports import LedgerStorage

logger = logging.getLogger("taskledger.lifecycle")


@dataclass(slots=True)
class StartResult:
    """Outcome of a start request."""

    task: Task
    started: bool
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {"task": self.task.to_dict(), "started": self.started, "message": self.message}


@dataclass(slots=True)
class VerificationResult:
    """Outcome of a verification; ``feedback`` is set when the score fell short."""

    task: Task
    completed: bool
    score: int
    threshold: int
    feedback: Optional[str] = None
    missing_points: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "task": self.task.to_dict(),
            "completed": self.completed,
            "score": self.score,
            "threshold": self.threshold,
        }
        if self.feedback is not None:
            data["feedback"] = self.feedback
            data["missing_points"] = list(self.missing_points)
        return data


class TaskStateMachine:
    """Apply start and verify transitions to tasks in the live collection."""

    def __init__(
        self,
        storage: LedgerStorage,
        completion_threshold: int = DEFAULT_COMPLETION_THRESHOLD,
        min_summary_length: int = DEFAULT_MIN_SUMMARY_LENGTH,
    ):
        self.storage = storage
        self.completion_threshold = completion_threshold
        self.min_summary_length = min_summary_length

    @log_performance("start_execution")
    def start_execution(self, task_id: str) -> StartResult:
        """Move a pending task to ``in_progress`` once its dependencies are done."""
        with self.storage.locked():
            collection = self.storage.read_collection()
            task = collection.find(task_id)
            if task is None:
                raise NotFoundError(f"Task '{task_id}' not found")

            if task.status == TaskStatus.COMPLETED:
                return StartResult(task, False, f"Task '{task.name}' is already completed; nothing to start")
            if task.status == TaskStatus.IN_PROGRESS:
                return StartResult(task, False, f"Task '{task.name}' is already in progress")
            if task.status != TaskStatus.PENDING:
                raise InvalidStateError(f"Task '{task.name}' has unknown status '{task.status}'")

            check = check_dependencies(task, collection.by_id())
            if not check.can_execute:
                logger.info(f"Task {task_id} blocked by {check.blocked_by}")
                raise BlockedError(
                    f"Task '{task.name}' is blocked by unfinished dependencies: {', '.join(check.blocked_by)}",
                    blocked_by=check.blocked_by,
                )

            task.status = TaskStatus.IN_PROGRESS
            task.touch()
            self.storage.write_collection(collection)

        record_event(self.storage, "start", task)
        log_task_event("started", task.id, task_name=task.name)
        return StartResult(task, True, f"Task '{task.name}' is now in progress")

    @log_performance("verify_task")
    def verify_task(
        self,
        task_id: str,
        summary: str,
        score: int,
        *,
        key_accomplishments: Optional[Sequence[str]] = None,
        implementation_details: Optional[Sequence[str]] = None,
        technical_challenges: Optional[Sequence[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> VerificationResult:
        """Complete an in-progress task when ``score`` reaches the threshold.

        A score below the threshold changes nothing on disk; the summary comes
        back as feedback so the caller can address what is missing.
        """
        text = (summary or "").strip()
        if len(text) < self.min_summary_length:
            raise InvalidInputError(
                f"Summary must be at least {self.min_summary_length} characters "
                f"(got {len(text)})"
            )
        if isinstance(score, bool) or not isinstance(score, int) or not 0 <= score <= 100:
            raise InvalidInputError(f"Score must be an integer between 0 and 100 (got {score!r})")

        with self.storage.locked():
            collection = self.storage.read_collection()
            task = collection.find(task_id)
            if task is None:
                raise NotFoundError(f"Task '{task_id}' not found")
            if task.status != TaskStatus.IN_PROGRESS:
                raise InvalidStateError(
                    f"Task '{task.name}' must be in progress to be verified (current status: {task.status})"
                )

            if score < self.completion_threshold:
                logger.info(f"Verification of {task_id} scored {score}, below {self.completion_threshold}")
                observability_hooks.log_event("verification_rejected", task_id=task.id, score=score)
                return VerificationResult(
                    task=task,
                    completed=False,
                    score=score,
                    threshold=self.completion_threshold,
                    feedback=text,
                    missing_points=_feedback_points(text),
                )

            completed_at = utc_now_iso()
            task.status = TaskStatus.COMPLETED
            task.summary = text
            task.completed_at = completed_at
            task.updated_at = completed_at
            task.completion_details = build_completion_details(
                text,
                score,
                key_accomplishments=key_accomplishments,
                implementation_details=implementation_details,
                technical_challenges=technical_challenges,
                metadata=metadata,
                completed_at=completed_at,
            )
            self.storage.write_collection(collection)

        record_event(self.storage, "complete", task, score=score)
        log_task_event("completed", task.id, task_name=task.name, score=score)
        return VerificationResult(task=task, completed=True, score=score, threshold=self.completion_threshold)


def _feedback_points(summary: str) -> List[str]:
    points = [line.strip().lstrip("-*+").strip() for line in summary.splitlines()]
    return [point for point in points if point]
