"""
Integration tests for the task ledger.

These tests drive a complete agent workflow through the TaskLedger facade:
planning, execution, verification, archiving, soft delete, recovery and
consistency auditing against one on-disk store.
"""

import json
import tempfile
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

from taskledger.errors import BlockedError
from taskledger.ledger import TaskLedger
from taskledger.models import TaskStatus


class TestTaskLifecycleIntegration:
    """End-to-end scenarios against a real storage directory."""

    @pytest.fixture
    def temp_project_dir(self):
        """Create a temporary project directory for integration testing."""
        with tempfile.TemporaryDirectory() as temp_dir:
            yield Path(temp_dir)

    @pytest.fixture
    def ledger(self, temp_project_dir):
        return TaskLedger(temp_project_dir)

    def test_example_scenario(self, ledger):
        """A pending task is started and completed with a passing score."""
        t1 = ledger.create_task("T1", "Implement the login form")

        ledger.start_execution(t1.id)
        assert ledger.get_task(t1.id).status == TaskStatus.IN_PROGRESS

        ledger.verify_and_maybe_complete(t1.id, "Implemented the login form with validation and tests.", 85)
        completed = ledger.get_task(t1.id)
        assert completed.status == TaskStatus.COMPLETED
        assert completed.completion_details.verification_score == 85

    def test_full_workflow(self, ledger, temp_project_dir):
        """Plan, execute in dependency order, snapshot, reset and restore."""
        ledger.set_initial_request("Build authentication for the web app")
        plan = ledger.plan_tasks(
            [
                {"name": "Schema", "description": "Design the users table"},
                {"name": "API", "description": "Write login endpoints", "dependencies": ["Schema"]},
                {"name": "UI", "description": "Build the login form", "dependencies": ["API", "Schema"]},
            ]
        )
        schema, api, ui = plan.created

        with pytest.raises(BlockedError) as excinfo:
            ledger.start_execution(ui.id)
        assert excinfo.value.blocked_by == [api.id, schema.id]

        summary = (
            "## Key Accomplishments\n- Finished the work\n\n"
            "## Implementation Details\n- Followed the plan\n\n"
            "## Technical Challenges\n- None worth noting\n"
        )
        for task in (schema, api, ui):
            assert ledger.can_execute(task.id).can_execute
            ledger.start_execution(task.id)
            ledger.verify_and_maybe_complete(task.id, summary, 90)

        assert {t.status for t in ledger.list_tasks()} == {TaskStatus.COMPLETED}
        assert ledger.get_task(ui.id).completion_details.technical_challenges == ["None worth noting"]

        archive = ledger.create_archive("Authentication done")
        ledger.plan_tasks([{"name": "Next", "description": "Next feature"}], update_mode="clear_all_tasks")
        assert len(ledger.list_deleted()) == 3

        ledger.restore_from_archive(archive.id, merge=False)
        assert sorted(t.id for t in ledger.list_tasks()) == sorted([schema.id, api.id, ui.id])
        assert ledger.get_initial_request() == "Build authentication for the web app"

        report = ledger.audit_consistency(check_only=True)
        assert report.issues == []

        operations = [entry.operation for entry in ledger.get_history(limit=100)]
        assert operations[0] == "restore"
        assert operations.count("complete") == 3

        document = json.loads((temp_project_dir / ".taskledger" / "tasks.json").read_text(encoding="utf-8"))
        assert len(document["tasks"]) == 3

    def test_damage_detection_and_repair(self, ledger, temp_project_dir):
        """A hand-edited document with duplicates and dangling references is repaired with force."""
        first = ledger.create_task("Schema", "Design tables")
        ledger.create_task("API", "Write endpoints", dependencies=[first.id])

        path = temp_project_dir / ".taskledger" / "tasks.json"
        document = json.loads(path.read_text(encoding="utf-8"))
        document["tasks"].append(dict(document["tasks"][0], name="Schema copy"))
        document["tasks"][1]["dependencies"].append("deleted-long-ago")
        path.write_text(json.dumps(document), encoding="utf-8")

        assert ledger.audit_consistency().requires_confirmation

        report = ledger.audit_consistency(force=True)
        assert report.issues == []
        assert len(report.resolved) == 2
        ids = [t.id for t in ledger.list_tasks()]
        assert len(ids) == len(set(ids)) == 3

    def test_delete_and_recover_with_dependents(self, ledger):
        """Forced deletes leave a dangling reference that recovery heals."""
        base = ledger.create_task("Schema", "Design tables")
        dependent = ledger.create_task("API", "Write endpoints", dependencies=[base.id])

        ledger.delete_task(base.id, force=True)
        assert ledger.audit_consistency(check_only=True).issues[0].type == "dependency_mismatch"

        ledger.recover_task(base.id)
        assert ledger.audit_consistency(check_only=True).issues == []
        assert ledger.can_execute(dependent.id).blocked_by == [base.id]

    def test_concurrent_completions_do_not_clobber(self, temp_project_dir):
        """Ledgers on separate threads completing different tasks all persist their writes."""
        setup = TaskLedger(temp_project_dir)
        task_ids = [setup.create_task(f"Task {index}", f"Work item {index}").id for index in range(8)]
        barrier = threading.Barrier(len(task_ids))

        def complete(task_id):
            ledger = TaskLedger(temp_project_dir)
            barrier.wait()
            ledger.start_execution(task_id)
            return ledger.verify_and_maybe_complete(
                task_id, "Finished the work item and covered it with tests.", 90
            ).completed

        with ThreadPoolExecutor(max_workers=len(task_ids)) as pool:
            outcomes = list(pool.map(complete, task_ids))

        assert outcomes == [True] * len(task_ids)
        reloaded = TaskLedger(temp_project_dir)
        assert {t.id: t.status for t in reloaded.list_tasks()} == {
            task_id: TaskStatus.COMPLETED for task_id in task_ids
        }
        assert len(reloaded.get_history(operation="complete", limit=100)) == len(task_ids)
