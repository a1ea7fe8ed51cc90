"""taskledger - task lifecycle and dependency store for coding-agent workflows."""

from .errors import TaskLedgerError
from .ledger import TaskLedger
from .models import CompletionDetails, SyncReport, Task, TaskCollection, TaskStatus

__all__ = [
    "TaskLedger",
    "Task",
    "TaskCollection",
    "TaskStatus",
    "CompletionDetails",
    "SyncReport",
    "TaskLedgerError",
]
