"""File-based task repository with process- and thread-safe locking.

Stores the task set as a single JSON document (``tasks.json``) in the data
directory.  All mutations go through :meth:`TaskRepository.transaction`, which
holds an in-process mutex plus an exclusive file lock around the whole
load → mutate → atomic save cycle.
"""

from __future__ import annotations

import threading
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from loguru import logger

from ..constants import DEFAULT_LOCK_TIMEOUT, LOCK_FILENAME, STORE_FILENAME
from ..errors import CorruptStore, IOFailure, NotFound
from ..io_utils import FileLock, _atomic_write_json, _load_json_document
from ..utils import _now_iso
from .model import Task, TaskSet, TaskStatus


def _check_entries(raw_tasks: list[Any], path: Path) -> None:
    """Reject entries that would be dropped or coerced on load."""
    statuses = {s.value for s in TaskStatus}
    for i, entry in enumerate(raw_tasks):
        if not isinstance(entry, dict):
            raise CorruptStore(f"{path.name}: tasks[{i}] is not an object", path=str(path))
        if not entry.get("id"):
            raise CorruptStore(f"{path.name}: tasks[{i}] has no id", path=str(path))
        if entry.get("status") not in statuses:
            raise CorruptStore(
                f"{path.name}: tasks[{i}] has unknown status {entry.get('status')!r}", path=str(path)
            )


class TaskRepository:
    """Durable storage of the task collection.

    Parameters
    ----------
    data_dir:
        Storage root holding ``tasks.json`` and its lock file.
    lock_timeout:
        Seconds to wait for the file lock before raising
        :class:`~task_ledger.errors.ConcurrentModification`.
    """

    def __init__(self, data_dir: Path, lock_timeout: float = DEFAULT_LOCK_TIMEOUT) -> None:
        self._data_dir = data_dir
        self._store_path = data_dir / STORE_FILENAME
        self._mutex = threading.RLock()
        self._file_lock = FileLock(data_dir / LOCK_FILENAME, timeout=lock_timeout)
        self._depth = 0

    @property
    def data_dir(self) -> Path:
        return self._data_dir

    @property
    def store_path(self) -> Path:
        return self._store_path

    # -- raw contract --------------------------------------------------------

    def load(self) -> TaskSet:
        """Read the persisted task set.

        Raises :class:`NotFound` if the store was never written and
        :class:`~task_ledger.errors.CorruptStore` if it cannot be decoded
        or holds an entry that is not a complete task.
        """
        data = _load_json_document(self._store_path)
        if not isinstance(data.get("tasks"), list):
            raise CorruptStore(f"{self._store_path.name}: missing 'tasks' array", path=str(self._store_path))
        _check_entries(data["tasks"], self._store_path)
        return TaskSet.from_dict(data)

    def load_or_empty(self) -> TaskSet:
        """Like :meth:`load`, treating a missing store as an empty set."""
        try:
            return self.load()
        except CorruptStore:
            raise
        except NotFound as exc:
            logger.debug("No task store at {} yet: {}", self._store_path, exc)
            return TaskSet()

    def save_atomic(self, task_set: TaskSet) -> None:
        """Write-tmp-then-rename so a crash never leaves a partial store."""
        task_set.updated_at = _now_iso()
        try:
            _atomic_write_json(self._store_path, task_set.to_dict())
        except OSError as exc:
            logger.error("Saving {} tasks to {} failed: {}", len(task_set), self._store_path, exc)
            raise IOFailure(f"Could not write {self._store_path.name}: {exc}") from exc

    @staticmethod
    def next_id() -> str:
        return str(uuid.uuid4())

    # -- locking -------------------------------------------------------------

    @contextmanager
    def locked(self) -> Iterator[None]:
        """Hold the writer lock; re-entrant within one thread."""
        with self._mutex:
            if self._depth:
                self._depth += 1
                try:
                    yield
                finally:
                    self._depth -= 1
                return
            with self._file_lock:
                self._depth = 1
                try:
                    yield
                finally:
                    self._depth = 0

    @contextmanager
    def transaction(self) -> Iterator["TaskTx"]:
        """Acquire the lock, load tasks, yield a transaction, and save on exit.

        Usage::

            with repo.transaction() as tx:
                task = tx.require(task_id)
                task.notes = "..."
                tx.mark_dirty()
                # saved on exit, discarded if the block raises
        """
        with self.locked():
            tx = TaskTx(self.load_or_empty())
            yield tx
            if tx.dirty:
                self.save_atomic(tx.task_set)

    def read_snapshot(self) -> TaskSet:
        """Return an independent copy of the current task set."""
        with self.locked():
            return self.load_or_empty()


class TaskTx:
    """In-memory transaction over a loaded :class:`TaskSet`.

    Mutations are flushed to disk when the ``transaction`` context exits
    without an exception.
    """

    def __init__(self, task_set: TaskSet) -> None:
        self.task_set = task_set
        self.dirty = False

    @property
    def tasks(self) -> list[Task]:
        return self.task_set.tasks

    # -- lookups ------------------------------------------------------------

    def require(self, task_id: str) -> Task:
        task = self.task_set.get(task_id)
        if task is None:
            raise NotFound(f"Task {task_id} not found", task_id=task_id)
        return task

    # -- mutations ----------------------------------------------------------

    def mark_dirty(self) -> None:
        self.dirty = True

    def remove(self, task_id: str) -> Task:
        task = self.require(task_id)
        self.task_set.tasks.remove(task)
        self.dirty = True
        return task

    def replace_all(self, task_set: TaskSet) -> None:
        self.task_set = task_set
        self.dirty = True
