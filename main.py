"""MCP server exposing taskledger operations as tools."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from mcp.server.fastmcp import FastMCP

from taskledger.config import DEFAULT_STORAGE_DIR, get_settings
from taskledger.errors import InvalidInputError, TaskLedgerError
from taskledger.ledger import TaskLedger
from taskledger.ledger_logging import log_error_with_context, setup_logging

mcp = FastMCP("taskledger")


DATA_DIR_ENV = "TASKLEDGER_DATA_DIR"
SERVER_ROOT = Path(__file__).resolve().parent

ERROR_SUGGESTIONS = {
    "not_found": "Check the id with list_tasks, list_deleted or list_archives",
    "invalid_input": "Correct the arguments and call the tool again",
    "invalid_state": "Check the task status with get_task before retrying",
    "blocked": "Complete the tasks listed in blocked_by first",
    "conflict_requires_confirmation": "Review the reported issues and repeat the call with force=True",
    "persistence_error": "Storage failed; the call can be retried once the disk problem is fixed",
}


def _candidate_bases() -> List[Path]:
    cwd = Path.cwd().resolve()
    bases: List[Path] = [cwd]
    bases.extend(cwd.parents)
    if SERVER_ROOT not in bases:
        bases.append(SERVER_ROOT)
    return bases


def _locate_storage_root() -> Optional[Path]:
    marker = os.getenv("TASKLEDGER_STORAGE_DIR") or DEFAULT_STORAGE_DIR
    for base in _candidate_bases():
        if (base / marker).is_dir():
            return base
    return None


def _resolve_root(root: Optional[str]) -> Optional[Path]:
    """Explicit root, then TASKLEDGER_DATA_DIR, then the nearest existing store."""
    if root:
        resolved = Path(root).expanduser().resolve()
        if not resolved.exists():
            raise InvalidInputError(f"Provided root '{root}' does not exist.")
        return resolved
    if os.getenv(DATA_DIR_ENV):
        return None
    return _locate_storage_root()


def _ledger(root: Optional[str]) -> TaskLedger:
    return TaskLedger(_resolve_root(root))


def error_response(error: TaskLedgerError) -> Dict[str, Any]:
    response = error.to_dict()
    response["suggestion"] = ERROR_SUGGESTIONS.get(error.code, "")
    return response


def _respond(action: Callable[[], Dict[str, Any]], operation: str) -> Dict[str, Any]:
    try:
        return action()
    except TaskLedgerError as e:
        log_error_with_context(e, {"operation": operation, "error_type": e.code})
        return error_response(e)


@mcp.tool()
def get_task(task_id: str, root: Optional[str] = None) -> Dict[str, Any]:
    """Fetch one task with its status, dependencies and completion details."""

    return _respond(lambda: {"task": _ledger(root).get_task(task_id).to_dict()}, "get_task")


@mcp.tool()
def list_tasks(
    status: Optional[str] = None,
    agent: Optional[str] = None,
    query: Optional[str] = None,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """List live tasks, optionally filtered by status (pending, in_progress, completed), agent or text."""

    def action() -> Dict[str, Any]:
        tasks = _ledger(root).list_tasks(status=status, agent=agent, query=query)
        return {"tasks": [task.to_dict() for task in tasks], "count": len(tasks)}

    return _respond(action, "list_tasks")


@mcp.tool()
def create_task(
    name: str,
    description: str,
    dependencies: Optional[List[str]] = None,
    notes: Optional[str] = None,
    related_files: Optional[List[Dict[str, Any]]] = None,
    implementation_guide: Optional[str] = None,
    verification_criteria: Optional[str] = None,
    agent: Optional[str] = None,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """Add a pending task to the live collection."""

    def action() -> Dict[str, Any]:
        task = _ledger(root).create_task(
            name,
            description,
            dependencies=dependencies,
            notes=notes,
            related_files=related_files,
            implementation_guide=implementation_guide,
            verification_criteria=verification_criteria,
            agent=agent,
        )
        return {"task": task.to_dict(), "next_suggested_step": "start_execution"}

    return _respond(action, "create_task")


@mcp.tool()
def update_task(
    task_id: str,
    name: Optional[str] = None,
    description: Optional[str] = None,
    notes: Optional[str] = None,
    dependencies: Optional[List[str]] = None,
    related_files: Optional[List[Dict[str, Any]]] = None,
    implementation_guide: Optional[str] = None,
    verification_criteria: Optional[str] = None,
    agent: Optional[str] = None,
    summary: Optional[str] = None,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """Edit task content. Completed tasks only accept summary and related_files."""

    def action() -> Dict[str, Any]:
        task = _ledger(root).update_task(
            task_id,
            name=name,
            description=description,
            notes=notes,
            dependencies=dependencies,
            related_files=related_files,
            implementation_guide=implementation_guide,
            verification_criteria=verification_criteria,
            agent=agent,
            summary=summary,
        )
        return {"task": task.to_dict()}

    return _respond(action, "update_task")


@mcp.tool()
def plan_tasks(
    tasks: List[Dict[str, Any]],
    update_mode: str = "append",
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """Create or update a batch of tasks.

    update_mode: append, overwrite (keeps completed tasks), selective (updates tasks
    matched by name) or clear_all_tasks. Dependencies may reference task names.
    """

    return _respond(lambda: _ledger(root).plan_tasks(tasks, update_mode=update_mode).to_dict(), "plan_tasks")


@mcp.tool()
def can_execute(task_id: str, root: Optional[str] = None) -> Dict[str, Any]:
    """Report whether every dependency of a task is completed."""

    return _respond(lambda: _ledger(root).can_execute(task_id).to_dict(), "can_execute")


@mcp.tool()
def start_execution(task_id: str, root: Optional[str] = None) -> Dict[str, Any]:
    """Move a pending task to in_progress. Already running or completed tasks are left unchanged."""

    def action() -> Dict[str, Any]:
        response = _ledger(root).start_execution(task_id).to_dict()
        response["next_suggested_step"] = "verify_task"
        return response

    return _respond(action, "start_execution")


@mcp.tool()
def verify_task(
    task_id: str,
    summary: str,
    score: int,
    key_accomplishments: Optional[List[str]] = None,
    implementation_details: Optional[List[str]] = None,
    technical_challenges: Optional[List[str]] = None,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """Submit a verification summary and a 0-100 score; scores of 80 or more complete the task."""

    def action() -> Dict[str, Any]:
        result = _ledger(root).verify_and_maybe_complete(
            task_id,
            summary,
            score,
            key_accomplishments=key_accomplishments,
            implementation_details=implementation_details,
            technical_challenges=technical_challenges,
        )
        response = result.to_dict()
        if not result.completed:
            response["message"] = (
                f"Score {result.score} is below {result.threshold}; address the feedback and verify again"
            )
        return response

    return _respond(action, "verify_task")


@mcp.tool()
def delete_task(task_id: str, force: bool = False, root: Optional[str] = None) -> Dict[str, Any]:
    """Soft-delete a task; a recoverable backup is kept."""

    return _respond(lambda: _ledger(root).delete_task(task_id, force=force).to_dict(), "delete_task")


@mcp.tool()
def list_deleted(since: Optional[str] = None, limit: Optional[int] = None, root: Optional[str] = None) -> Dict[str, Any]:
    """List deleted-task backups, newest first."""

    def action() -> Dict[str, Any]:
        records = _ledger(root).list_deleted(since=since, limit=limit)
        return {"deleted_tasks": [record.to_dict() for record in records], "count": len(records)}

    return _respond(action, "list_deleted")


@mcp.tool()
def recover_task(task_id: str, preserve_ids: bool = True, root: Optional[str] = None) -> Dict[str, Any]:
    """Bring a deleted task back into the live collection."""

    def action() -> Dict[str, Any]:
        task = _ledger(root).recover_task(task_id, preserve_ids=preserve_ids)
        return {"task": task.to_dict(), "next_suggested_step": "audit_consistency"}

    return _respond(action, "recover_task")


@mcp.tool()
def purge_deleted(task_id: str, root: Optional[str] = None) -> Dict[str, Any]:
    """Permanently destroy a deleted-task backup."""

    def action() -> Dict[str, Any]:
        record = _ledger(root).purge_deleted(task_id)
        return {"purged": True, "task_id": record.task.id, "task_name": record.task.name}

    return _respond(action, "purge_deleted")


@mcp.tool()
def create_archive(description: str, name: Optional[str] = None, root: Optional[str] = None) -> Dict[str, Any]:
    """Snapshot the whole task collection into a new archive."""

    return _respond(lambda: {"archive": _ledger(root).create_archive(description, name=name).metadata()}, "create_archive")


@mcp.tool()
def list_archives(filter: Optional[str] = None, root: Optional[str] = None) -> Dict[str, Any]:
    """List archive metadata, newest first, optionally filtered by text."""

    return _respond(lambda: _ledger(root).list_archives(filter).to_dict(), "list_archives")


@mcp.tool()
def restore_from_archive(
    archive_id: str,
    merge: bool = True,
    preserve_ids: bool = True,
    force: bool = False,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """Restore an archive. merge=False replaces the live collection without a safety archive."""

    def action() -> Dict[str, Any]:
        result = _ledger(root).restore_from_archive(archive_id, merge=merge, preserve_ids=preserve_ids, force=force)
        response = result.to_dict()
        response["next_suggested_step"] = "audit_consistency"
        return response

    return _respond(action, "restore_from_archive")


@mcp.tool()
def audit_consistency(check_only: bool = False, force: bool = False, root: Optional[str] = None) -> Dict[str, Any]:
    """Scan the collection for duplicate ids, bad timestamps, dangling dependencies and damaged records."""

    return _respond(lambda: _ledger(root).audit_consistency(check_only=check_only, force=force).to_dict(), "audit_consistency")


@mcp.tool()
def get_history(
    limit: Optional[int] = None,
    since: Optional[str] = None,
    task_id: Optional[str] = None,
    operation: Optional[str] = None,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """Read the operation history, newest first."""

    def action() -> Dict[str, Any]:
        entries = _ledger(root).get_history(limit=limit, since=since, task_id=task_id, operation=operation)
        return {"history": [entry.to_dict() for entry in entries], "count": len(entries)}

    return _respond(action, "get_history")


@mcp.tool()
def set_initial_request(text: str, root: Optional[str] = None) -> Dict[str, Any]:
    """Store the planning prompt the task collection was built from."""

    def action() -> Dict[str, Any]:
        _ledger(root).set_initial_request(text)
        return {"saved": True, "length": len(text)}

    return _respond(action, "set_initial_request")


@mcp.tool()
def get_initial_request(root: Optional[str] = None) -> Dict[str, Any]:
    """Return the stored planning prompt, if any."""

    return _respond(lambda: {"initial_request": _ledger(root).get_initial_request()}, "get_initial_request")


@mcp.tool()
def get_stats(root: Optional[str] = None) -> Dict[str, Any]:
    """Task counts per status plus archive, deleted-backup and history totals."""

    return _respond(lambda: _ledger(root).get_stats(), "get_stats")


@mcp.tool()
def backfill_completion_details(dry_run: bool = False, root: Optional[str] = None) -> Dict[str, Any]:
    """Add completion details to completed tasks that predate them."""

    return _respond(lambda: _ledger(root).backfill_completion_details(dry_run=dry_run), "backfill_completion_details")


if __name__ == "__main__":
    settings = get_settings()
    setup_logging(settings.log_level, settings.log_file)
    mcp.run(transport="stdio")
