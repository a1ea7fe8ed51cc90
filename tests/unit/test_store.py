"""Unit tests for the task store: CRUD, batch planning and statistics."""

import pytest

from taskledger.errors import InvalidInputError, InvalidStateError, NotFoundError
from taskledger.ledger import TaskLedger
from taskledger.models import TaskStatus
from taskledger.store import TaskSpec


@pytest.fixture
def ledger(tmp_path):
    return TaskLedger(tmp_path)


def complete(ledger, task_id, score=90):
    ledger.start_execution(task_id)
    ledger.verify_and_maybe_complete(task_id, "Implemented everything that was asked, with tests.", score)


class TestCreateAndGet:
    """Test cases for task creation and lookup."""

    def test_create_task(self, ledger):
        task = ledger.create_task(
            "Login form",
            "Build the login form",
            related_files=[{"path": "src/login.py", "type": "CREATE"}, "README.md"],
            agent="frontend",
        )

        stored = ledger.get_task(task.id)
        assert stored.status == TaskStatus.PENDING
        assert stored.name == "Login form"
        assert [f.path for f in stored.related_files] == ["src/login.py", "README.md"]
        assert ledger.get_history(task_id=task.id)[0].operation == "create"

    @pytest.mark.parametrize("name,description", [("", "d"), ("  ", "d"), ("n", "")])
    def test_create_task_requires_name_and_description(self, ledger, name, description):
        with pytest.raises(InvalidInputError):
            ledger.create_task(name, description)

    def test_get_unknown_task(self, ledger):
        with pytest.raises(NotFoundError):
            ledger.get_task("missing")

    def test_list_tasks_filters(self, ledger):
        first = ledger.create_task("Login form", "Build the form", agent="frontend")
        ledger.create_task("API client", "Write the client", agent="backend")
        ledger.start_execution(first.id)

        assert [t.name for t in ledger.list_tasks()] == ["Login form", "API client"]
        assert [t.name for t in ledger.list_tasks(status="in_progress")] == ["Login form"]
        assert [t.name for t in ledger.list_tasks(agent="backend")] == ["API client"]
        assert [t.name for t in ledger.list_tasks(query="CLIENT")] == ["API client"]

    def test_list_tasks_rejects_unknown_status(self, ledger):
        with pytest.raises(InvalidInputError):
            ledger.list_tasks(status="paused")


class TestUpdateTask:
    """Test cases for content edits."""

    def test_update_pending_task(self, ledger):
        task = ledger.create_task("Login form", "Build the form")
        updated = ledger.update_task(task.id, description="Build the login form", dependencies=["x", "x"])

        assert updated.description == "Build the login form"
        assert updated.dependencies == ["x"]
        assert ledger.get_history(operation="update")[0].details["fields"] == ["dependencies", "description"]

    def test_update_rejects_self_dependency(self, ledger):
        task = ledger.create_task("Login form", "Build the form")
        with pytest.raises(InvalidInputError):
            ledger.update_task(task.id, dependencies=[task.id])

    def test_update_rejects_unknown_fields(self, ledger):
        task = ledger.create_task("Login form", "Build the form")
        with pytest.raises(InvalidInputError):
            ledger.update_task(task.id, status="completed")

    def test_completed_task_only_accepts_summary_and_files(self, ledger):
        task = ledger.create_task("Login form", "Build the form")
        complete(ledger, task.id)

        updated = ledger.update_task(task.id, summary="Revised summary", related_files=["src/login.py"])
        assert updated.summary == "Revised summary"
        assert updated.status == TaskStatus.COMPLETED

        with pytest.raises(InvalidStateError):
            ledger.update_task(task.id, name="Renamed")


class TestPlanTasks:
    """Test cases for batch planning."""

    def test_append_resolves_names(self, ledger):
        existing = ledger.create_task("Setup", "Install dependencies")
        result = ledger.plan_tasks(
            [
                {"name": "Schema", "description": "Design tables", "dependencies": ["Setup"]},
                TaskSpec(name="API", description="Write endpoints", dependencies=["Schema", "Nope"]),
            ]
        )

        schema, api = result.created
        assert schema.dependencies == [existing.id]
        assert api.dependencies == [schema.id]
        assert len(ledger.list_tasks()) == 3

    def test_overwrite_keeps_completed_and_soft_deletes_the_rest(self, ledger):
        done = ledger.create_task("Done", "Finished work")
        complete(ledger, done.id)
        open_task = ledger.create_task("Open", "Unfinished work")

        result = ledger.plan_tasks([{"name": "New", "description": "Fresh work"}], update_mode="overwrite")

        assert result.soft_deleted == [open_task.id]
        assert [t.name for t in ledger.list_tasks()] == ["Done", "New"]
        assert [r.task.id for r in ledger.list_deleted()] == [open_task.id]

    def test_selective_updates_matching_unfinished_tasks(self, ledger):
        first = ledger.create_task("Schema", "Old description")
        ledger.create_task("Other", "Untouched")

        result = ledger.plan_tasks(
            [{"name": "Schema", "description": "New description"}, {"name": "Extra", "description": "Added"}],
            update_mode="selective",
        )

        assert [t.id for t in result.updated] == [first.id]
        assert ledger.get_task(first.id).description == "New description"
        assert [t.name for t in ledger.list_tasks()] == ["Schema", "Other", "Extra"]

    def test_clear_all_tasks(self, ledger):
        ledger.create_task("One", "First")
        ledger.create_task("Two", "Second")

        result = ledger.plan_tasks([{"name": "Three", "description": "Third"}], update_mode="clear_all_tasks")

        assert len(result.soft_deleted) == 2
        assert [t.name for t in ledger.list_tasks()] == ["Three"]

    def test_invalid_mode_and_specs(self, ledger):
        with pytest.raises(InvalidInputError):
            ledger.plan_tasks([], update_mode="merge")
        with pytest.raises(InvalidInputError):
            ledger.plan_tasks([{"name": "No description"}])


class TestInitialRequestAndStats:
    """Test cases for the initial request and statistics."""

    def test_initial_request(self, ledger):
        assert ledger.get_initial_request() is None
        ledger.set_initial_request("Build a login page")
        assert ledger.get_initial_request() == "Build a login page"
        assert ledger.get_history(operation="set_initial_request")

    def test_stats(self, ledger):
        task = ledger.create_task("One", "First")
        ledger.create_task("Two", "Second")
        ledger.start_execution(task.id)
        ledger.create_archive("Snapshot")

        stats = ledger.get_stats()
        assert stats["total_tasks"] == 2
        assert stats["pending_tasks"] == 1
        assert stats["in_progress_tasks"] == 1
        assert stats["completed_tasks"] == 0
        assert stats["archives"] == 1
        assert stats["deleted_task_backups"] == 0
        assert stats["history_entries"] == 4
