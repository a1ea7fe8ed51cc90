"""Unit tests for the JSON storage backend."""

import json
import os
from unittest.mock import patch

import pytest

from taskledger.errors import PersistenceError
from taskledger.ledger import TaskLedger
from taskledger.models import Archive, DeletedTaskRecord, HistoryEntry, Task, TaskCollection
from taskledger.persistence import JsonStorage
from taskledger.ports import LedgerStorage


class TestStorageInitialization:
    """Test cases for storage setup."""

    def test_directories_created(self, tmp_path):
        """The storage and memory directories are created on init."""
        storage = JsonStorage(tmp_path)

        assert storage.base_dir == tmp_path.resolve() / ".taskledger"
        assert storage.memory_dir.is_dir()
        assert isinstance(storage, LedgerStorage)

    def test_custom_storage_dir(self, tmp_path):
        storage = JsonStorage(tmp_path, storage_dir=".custom")
        assert storage.base_dir.name == ".custom"

    def test_missing_collection_reads_empty(self, tmp_path):
        collection = JsonStorage(tmp_path).read_collection()
        assert collection.tasks == []
        assert collection.initial_request is None


class TestCollectionDocument:
    """Test cases for reading and writing the live collection."""

    def test_write_then_read(self, tmp_path):
        storage = JsonStorage(tmp_path)
        storage.write_collection(
            TaskCollection(tasks=[Task(id="a", name="n", description="d")], initial_request="Build")
        )

        collection = storage.read_collection()
        assert [task.id for task in collection.tasks] == ["a"]
        assert collection.initial_request == "Build"

    def test_transaction_commits(self, tmp_path):
        storage = JsonStorage(tmp_path)
        with storage.transaction() as collection:
            collection.tasks.append(Task(id="a", name="n", description="d"))

        assert storage.read_collection().find("a") is not None

    def test_transaction_discards_on_error(self, tmp_path):
        """An exception inside the block leaves the stored document untouched."""
        storage = JsonStorage(tmp_path)
        with pytest.raises(RuntimeError):
            with storage.transaction() as collection:
                collection.tasks.append(Task(id="a", name="n", description="d"))
                raise RuntimeError("boom")

        assert storage.read_collection().tasks == []

    def test_legacy_list_document(self, tmp_path):
        storage = JsonStorage(tmp_path)
        storage.tasks_path.write_text(
            json.dumps([{"id": "a", "name": "n", "description": "d", "status": "pending"}]), encoding="utf-8"
        )
        assert storage.read_collection().tasks[0].id == "a"

    def test_corrupted_document_raises(self, tmp_path):
        storage = JsonStorage(tmp_path)
        storage.tasks_path.write_text("{not json", encoding="utf-8")

        with pytest.raises(PersistenceError):
            storage.read_collection()

    def test_failed_write_keeps_previous_document(self, tmp_path):
        """A failing replace raises PersistenceError and leaves no temp files behind."""
        storage = JsonStorage(tmp_path)
        storage.write_collection(TaskCollection(tasks=[Task(id="a", name="n", description="d")]))

        with patch("taskledger.persistence.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(PersistenceError):
                storage.write_collection(TaskCollection())

        assert [task.id for task in storage.read_collection().tasks] == ["a"]
        assert [p.name for p in storage.base_dir.iterdir() if p.name.endswith(".tmp")] == []


class TestHistoryLog:
    """Test cases for the append-only history log."""

    def test_append_and_read(self, tmp_path):
        storage = JsonStorage(tmp_path)
        storage.append_history(HistoryEntry(operation="create", task_id="a"))
        storage.append_history(HistoryEntry(operation="start", task_id="a"))

        assert [entry.operation for entry in storage.read_history()] == ["create", "start"]

    def test_unreadable_lines_are_skipped(self, tmp_path):
        storage = JsonStorage(tmp_path)
        storage.append_history(HistoryEntry(operation="create", task_id="a"))
        with storage.history_path.open("a", encoding="utf-8") as handle:
            handle.write("garbage\n\n")

        assert len(storage.read_history()) == 1


class TestDeletedAndArchives:
    """Test cases for deleted-task backups and archive files."""

    def test_deleted_records_round_trip(self, tmp_path):
        storage = JsonStorage(tmp_path)
        record = DeletedTaskRecord(task=Task(id="a", name="n", description="d"))
        storage.save_deleted({"a": record})

        assert storage.load_deleted() == {"a": record}
        assert storage.deleted_path.parent == storage.memory_dir

    def test_archive_save_load_list(self, tmp_path):
        storage = JsonStorage(tmp_path)
        archive = Archive(
            id="archive_1",
            filename="archive_1.json",
            description="first",
            tasks=[Task(id="a", name="n", description="d")],
        )
        storage.save_archive(archive)

        assert storage.load_archive("archive_1").description == "first"
        assert storage.load_archive("archive_1.json").tasks[0].id == "a"
        assert storage.load_archive("nope") is None
        assert [item.id for item in storage.list_archives()] == ["archive_1"]

    def test_archive_is_never_overwritten(self, tmp_path):
        storage = JsonStorage(tmp_path)
        archive = Archive(id="archive_1", filename="archive_1.json", description="first", tasks=[])
        storage.save_archive(archive)

        with pytest.raises(PersistenceError):
            storage.save_archive(archive)

    def test_unreadable_archive_is_skipped(self, tmp_path):
        storage = JsonStorage(tmp_path)
        (storage.memory_dir / "archive_broken.json").write_text("{", encoding="utf-8")

        assert storage.list_archives() == []
        assert os.path.exists(storage.memory_dir / "archive_broken.json")

    def test_bare_list_archive_restores(self, tmp_path):
        """The oldest archive format, a bare list of tasks, loads and restores."""
        ledger = TaskLedger(tmp_path)
        task = Task(id="legacy-1", name="Legacy", description="From a list-only archive")
        (ledger.storage.memory_dir / "archive_legacy.json").write_text(
            json.dumps([task.to_dict()]), encoding="utf-8"
        )

        archive = ledger.storage.load_archive("archive_legacy.json")
        assert [t.id for t in archive.tasks] == ["legacy-1"]

        result = ledger.restore_from_archive("archive_legacy.json", merge=False)
        assert result.restored_ids == ["legacy-1"]
        assert ledger.get_task("legacy-1").name == "Legacy"


class TestUnexpectedDocumentShapes:
    """Well-formed JSON of the wrong shape surfaces as PersistenceError."""

    def test_collection_document(self, tmp_path):
        storage = JsonStorage(tmp_path)
        storage.tasks_path.write_text(json.dumps("just a string"), encoding="utf-8")

        with pytest.raises(PersistenceError):
            storage.read_collection()

    def test_deleted_document(self, tmp_path):
        storage = JsonStorage(tmp_path)
        storage.deleted_path.write_text(json.dumps([1, 2, 3]), encoding="utf-8")

        with pytest.raises(PersistenceError):
            storage.load_deleted()

    def test_archive_document(self, tmp_path):
        storage = JsonStorage(tmp_path)
        (storage.memory_dir / "archive_odd.json").write_text(json.dumps(42), encoding="utf-8")

        with pytest.raises(PersistenceError):
            storage.load_archive("archive_odd.json")
        assert storage.list_archives() == []

    def test_restore_reports_typed_error(self, tmp_path):
        ledger = TaskLedger(tmp_path)
        (ledger.storage.memory_dir / "archive_odd.json").write_text(json.dumps("text"), encoding="utf-8")

        with pytest.raises(PersistenceError):
            ledger.restore_from_archive("archive_odd.json")
