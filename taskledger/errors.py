"""Exception types raised by the taskledger core."""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class TaskLedgerError(Exception):
    """Base class for every error the core raises."""

    code = "task_ledger_error"

    def __init__(self, message: str, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "error_type": self.code}


class NotFoundError(TaskLedgerError):
    """Unknown task, archive or deleted-task record."""

    code = "not_found"


class InvalidInputError(TaskLedgerError):
    """Malformed identifier, summary too short, score out of range."""

    code = "invalid_input"


class InvalidStateError(TaskLedgerError):
    """Operation is not legal for the task's current status."""

    code = "invalid_state"


class BlockedError(TaskLedgerError):
    """A dependency of the task is not completed yet."""

    code = "blocked"

    def __init__(self, message: str, blocked_by: List[str]) -> None:
        super().__init__(message)
        self.blocked_by = list(blocked_by)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["blocked_by"] = list(self.blocked_by)
        return data


class ConflictRequiresConfirmationError(TaskLedgerError):
    """Critical consistency issues are present and ``force`` was not given."""

    code = "conflict_requires_confirmation"

    def __init__(self, message: str, issues: Optional[List[Dict[str, Any]]] = None) -> None:
        super().__init__(message)
        self.issues = list(issues or [])

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["issues"] = list(self.issues)
        return data


class PersistenceError(TaskLedgerError):
    """The underlying storage could not be read or written."""

    code = "persistence_error"
