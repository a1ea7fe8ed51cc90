"""File-backed persistence for the task ledger.

All durable state lives under ``<root>/<storage_dir>/``::

    tasks.json                    live collection and initial request
    history.jsonl                 append-only operation log
    memory/deleted_tasks.json     soft-deleted task backups keyed by id
    memory/archive_<stamp>.json   one immutable file per archive

Documents are written to a temporary file in the target directory and moved
into place with ``os.replace`` so a crash never leaves a half-written file.
A re-entrant lock serialises read-modify-write cycles within the process.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from .config import DEFAULT_STORAGE_DIR
from .errors import PersistenceError
from .ledger_logging import log_error_with_context, log_performance
from .models import Archive, DeletedTaskRecord, HistoryEntry, TaskCollection, utc_now_iso

logger = logging.getLogger("taskledger.persistence")

TASKS_FILE = "tasks.json"
HISTORY_FILE = "history.jsonl"
DELETED_FILE = "deleted_tasks.json"
ARCHIVE_PREFIX = "archive_"

# One lock per storage directory so separate JsonStorage objects pointed at the
# same root still share a single write choke point.
_LOCKS: Dict[Path, threading.RLock] = {}
_LOCKS_GUARD = threading.Lock()


def _lock_for(path: Path) -> threading.RLock:
    with _LOCKS_GUARD:
        lock = _LOCKS.get(path)
        if lock is None:
            lock = _LOCKS[path] = threading.RLock()
        return lock


class JsonStorage:
    """JSON document store implementing every port in ``taskledger.ports``."""

    def __init__(self, root: Path | str, storage_dir: str = DEFAULT_STORAGE_DIR):
        self.root = Path(root).resolve()
        self.base_dir = self.root / storage_dir
        self.memory_dir = self.base_dir / "memory"

        try:
            self.base_dir.mkdir(parents=True, exist_ok=True)
            self.memory_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            log_error_with_context(e, {"operation": "storage_init", "root": str(self.root)})
            raise PersistenceError(f"Could not initialize storage at {self.base_dir}: {e}") from e

        self._lock = _lock_for(self.base_dir)
        logger.info("Storage initialized at %s", self.base_dir)

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    @property
    def tasks_path(self) -> Path:
        return self.base_dir / TASKS_FILE

    @property
    def history_path(self) -> Path:
        return self.base_dir / HISTORY_FILE

    @property
    def deleted_path(self) -> Path:
        return self.memory_dir / DELETED_FILE

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    @contextmanager
    def locked(self) -> Iterator[None]:
        """Hold the write lock without committing anything."""
        with self._lock:
            yield

    @contextmanager
    def transaction(self) -> Iterator[TaskCollection]:
        """Yield the current collection and write it back if the block succeeds."""
        with self._lock:
            collection = self.read_collection()
            yield collection
            self.write_collection(collection)

    # ------------------------------------------------------------------
    # Live collection
    # ------------------------------------------------------------------

    def read_collection(self) -> TaskCollection:
        data = self._read_document(self.tasks_path, None, (dict, list))
        if data is None:
            return TaskCollection()
        return TaskCollection.from_dict(data)

    @log_performance("write_collection")
    def write_collection(self, collection: TaskCollection) -> None:
        with self._lock:
            collection.updated_at = utc_now_iso()
            self._write_json(self.tasks_path, collection.to_dict())

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def append_history(self, entry: HistoryEntry) -> None:
        line = json.dumps(entry.to_dict(), ensure_ascii=False, default=str)
        with self._lock:
            try:
                with self.history_path.open("a", encoding="utf-8") as handle:
                    handle.write(line + "\n")
            except OSError as e:
                raise PersistenceError(f"Could not append to history log {self.history_path}: {e}") from e

    def read_history(self) -> List[HistoryEntry]:
        if not self.history_path.exists():
            return []
        try:
            lines = self.history_path.read_text(encoding="utf-8").splitlines()
        except OSError as e:
            raise PersistenceError(f"Could not read history log {self.history_path}: {e}") from e

        entries: List[HistoryEntry] = []
        for number, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                entries.append(HistoryEntry.from_dict(json.loads(line)))
            except (json.JSONDecodeError, AttributeError) as e:
                logger.warning("Skipping unreadable history line %d: %s", number, e)
        return entries

    # ------------------------------------------------------------------
    # Deleted-task backups
    # ------------------------------------------------------------------

    def load_deleted(self) -> Dict[str, DeletedTaskRecord]:
        data = self._read_document(self.deleted_path, {}, (dict,))
        records: Dict[str, DeletedTaskRecord] = {}
        for task_id, raw in data.items():
            if isinstance(raw, dict):
                records[task_id] = DeletedTaskRecord.from_dict(raw)
        return records

    def save_deleted(self, records: Dict[str, DeletedTaskRecord]) -> None:
        with self._lock:
            self._write_json(self.deleted_path, {task_id: record.to_dict() for task_id, record in records.items()})

    # ------------------------------------------------------------------
    # Archives
    # ------------------------------------------------------------------

    def save_archive(self, archive: Archive) -> None:
        path = self.memory_dir / archive.filename
        with self._lock:
            if path.exists():
                raise PersistenceError(f"Archive {archive.filename} already exists")
            self._write_json(path, archive.to_dict())

    def load_archive(self, archive_ref: str) -> Optional[Archive]:
        """Load an archive by filename or by id."""
        candidate = self.memory_dir / Path(archive_ref).name
        if candidate.name.startswith(ARCHIVE_PREFIX) and candidate.suffix == ".json" and candidate.exists():
            return Archive.from_dict(self._read_document(candidate, {}, (dict, list)), filename=candidate.name)

        for archive in self.list_archives():
            if archive.id == archive_ref or archive.filename == archive_ref:
                return archive
        return None

    def list_archives(self) -> List[Archive]:
        archives: List[Archive] = []
        for path in sorted(self.memory_dir.glob(f"{ARCHIVE_PREFIX}*.json")):
            try:
                archives.append(Archive.from_dict(self._read_document(path, {}, (dict, list)), filename=path.name))
            except (PersistenceError, AttributeError, TypeError, ValueError) as e:
                logger.warning("Skipping unreadable archive %s: %s", path.name, e)
        return archives

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _read_json(self, path: Path, default: Any) -> Any:
        if not path.exists():
            return default
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise PersistenceError(f"Corrupted JSON document {path}: {e}") from e
        except OSError as e:
            raise PersistenceError(f"Could not read {path}: {e}") from e

    def _read_document(self, path: Path, default: Any, expected: Tuple[type, ...]) -> Any:
        data = self._read_json(path, default)
        if data is default or isinstance(data, expected):
            return data
        raise PersistenceError(f"Unexpected document shape in {path}: {type(data).__name__}")

    def _write_json(self, path: Path, data: Any) -> None:
        payload = json.dumps(data, indent=2, ensure_ascii=False, default=str)
        tmp_name: Optional[str] = None
        try:
            fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, path)
        except OSError as e:
            if tmp_name and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            log_error_with_context(e, {"operation": "write_json", "path": str(path)})
            raise PersistenceError(f"Could not write {path}: {e}") from e
