"""Tests for write-once backups (task_engine/backup.py)."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from task_ledger.errors import CorruptStore, NotFound
from task_ledger.task_engine.backup import BackupArchiver
from task_ledger.task_engine.model import Task, TaskSet


def test_for_data_dir_uses_memory_subdir(tmp_path: Path) -> None:
    assert BackupArchiver.for_data_dir(tmp_path).archive_dir == tmp_path / "memory"


def test_snapshot_writes_full_task_set(tmp_path: Path) -> None:
    archiver = BackupArchiver(tmp_path / "memory")
    task_set = TaskSet(tasks=[Task(id="a", name="A"), Task(id="b", name="B", dependencies=["a"])])
    handle = archiver.snapshot(task_set, reason="overwrite")

    assert handle.path.parent == tmp_path / "memory"
    assert handle.path.name.startswith("tasks_memory_")
    assert handle.task_count == 2
    payload = json.loads(handle.path.read_text(encoding="utf-8"))
    assert payload["reason"] == "overwrite"
    assert [t["id"] for t in payload["tasks"]] == ["a", "b"]


def test_snapshots_never_overwrite(tmp_path: Path) -> None:
    archiver = BackupArchiver(tmp_path)
    first = archiver.snapshot(TaskSet(tasks=[Task(name="one")]))
    second = archiver.snapshot(TaskSet(tasks=[Task(name="two")]))
    assert first.path != second.path
    assert archiver.load_backup(first).tasks[0].name == "one"
    assert archiver.load_backup(second.path).tasks[0].name == "two"


def test_artifact_path_adds_suffix_on_collision(tmp_path: Path) -> None:
    archiver = BackupArchiver(tmp_path)
    now = datetime(2024, 1, 2, 3, 4, 5, 678, tzinfo=timezone.utc)
    taken = archiver._artifact_path(now)
    taken.write_text("{}", encoding="utf-8")
    assert taken.name == "tasks_memory_2024-01-02T03-04-05-000678.json"
    assert archiver._artifact_path(now).name == "tasks_memory_2024-01-02T03-04-05-000678_1.json"


def test_list_backups(tmp_path: Path) -> None:
    archiver = BackupArchiver(tmp_path / "memory")
    assert archiver.list_backups() == []
    handle = archiver.snapshot(TaskSet())
    (tmp_path / "memory" / "unrelated.json").write_text("{}", encoding="utf-8")
    assert archiver.list_backups() == [handle.path]


def test_load_backup_errors(tmp_path: Path) -> None:
    archiver = BackupArchiver(tmp_path)
    with pytest.raises(NotFound):
        archiver.load_backup(tmp_path / "missing.json")
    broken = tmp_path / "tasks_memory_broken.json"
    broken.write_text("{nope", encoding="utf-8")
    with pytest.raises(CorruptStore):
        archiver.load_backup(broken)
