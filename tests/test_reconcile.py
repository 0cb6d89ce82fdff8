"""Tests for batch reconciliation (task_engine/reconcile.py)."""

from __future__ import annotations

from pathlib import Path

import pytest

from task_ledger.errors import IOFailure, ValidationError
from task_ledger.task_engine.backup import BackupArchiver
from task_ledger.task_engine.model import AttemptStatus, Task, TaskSet, TaskStatus
from task_ledger.task_engine.reconcile import ReconciliationEngine, UpdateMode, ensure_unique_names
from task_ledger.task_engine.drafts import parse_drafts


@pytest.fixture
def archiver(tmp_path: Path) -> BackupArchiver:
    return BackupArchiver(tmp_path / "memory")


@pytest.fixture
def engine(archiver: BackupArchiver) -> ReconciliationEngine:
    return ReconciliationEngine(archiver)


def _existing() -> TaskSet:
    done = Task(id="done-1", name="Done", status=TaskStatus.COMPLETED, summary="finished")
    active = Task(id="active-1", name="Active", status=TaskStatus.IN_PROGRESS)
    active.append_attempt(AttemptStatus.STARTED)
    pending = Task(id="pending-1", name="Pending", dependencies=["done-1"])
    return TaskSet(tasks=[done, active, pending])


class TestUpdateMode:
    def test_coerce_accepts_values(self) -> None:
        assert UpdateMode.coerce("clearAllTasks") is UpdateMode.CLEAR_ALL
        assert UpdateMode.coerce(UpdateMode.APPEND) is UpdateMode.APPEND

    def test_coerce_rejects_unknown(self) -> None:
        with pytest.raises(ValidationError, match="Unknown update mode"):
            UpdateMode.coerce("replace")

    def test_every_mode_has_a_handler(self, engine: ReconciliationEngine) -> None:
        assert set(engine._handlers) == set(UpdateMode)


class TestBatchValidation:
    def test_duplicate_names_rejected(self) -> None:
        drafts = parse_drafts([{"name": "A"}, {"name": "B"}, {"name": "A"}])
        with pytest.raises(ValidationError, match="Duplicate task names"):
            ensure_unique_names(drafts)

    def test_duplicate_batch_has_no_effect(self, engine: ReconciliationEngine, archiver: BackupArchiver) -> None:
        existing = _existing()
        before = existing.to_dict()
        with pytest.raises(ValidationError):
            engine.reconcile(existing, [{"name": "X"}, {"name": "X"}], UpdateMode.CLEAR_ALL)
        assert existing.to_dict() == before
        assert archiver.list_backups() == []

    def test_unresolvable_dependency(self, engine: ReconciliationEngine) -> None:
        with pytest.raises(ValidationError, match="Unresolvable dependency references") as info:
            engine.reconcile(TaskSet(), [{"name": "A", "dependencies": ["ghost"]}], "append")
        assert info.value.errors == ["A -> ghost"]

    def test_cycle_rejected(self, engine: ReconciliationEngine) -> None:
        batch = [
            {"name": "A", "dependencies": ["B"]},
            {"name": "B", "dependencies": ["A"]},
        ]
        with pytest.raises(ValidationError, match="cycle"):
            engine.reconcile(TaskSet(), batch, "append")

    def test_self_dependency_rejected(self, engine: ReconciliationEngine) -> None:
        with pytest.raises(ValidationError, match="cycle"):
            engine.reconcile(TaskSet(), [{"name": "A", "dependencies": ["A"]}], "append")

    def test_invalid_draft_rejected(self, engine: ReconciliationEngine) -> None:
        with pytest.raises(ValidationError, match=r"tasks\[0\]"):
            engine.reconcile(TaskSet(), [{"name": "   "}], "append")


class TestAppend:
    def test_keeps_existing_and_adds(self, engine: ReconciliationEngine) -> None:
        existing = _existing()
        result = engine.reconcile(existing, [{"name": "New", "dependencies": ["Pending"]}], "append")
        assert [t.name for t in result.task_set] == ["Done", "Active", "Pending", "New"]
        assert result.created[0].dependencies == ["pending-1"]
        assert result.backup is None
        assert result.discarded == []

    def test_existing_input_not_mutated(self, engine: ReconciliationEngine) -> None:
        existing = _existing()
        engine.reconcile(existing, [{"name": "New"}], "append")
        assert len(existing) == 3

    def test_name_collision_rejected(self, engine: ReconciliationEngine) -> None:
        with pytest.raises(ValidationError, match="already exist"):
            engine.reconcile(_existing(), [{"name": "Pending"}], "append")

    def test_dependency_by_existing_id(self, engine: ReconciliationEngine) -> None:
        result = engine.reconcile(_existing(), [{"name": "New", "dependencies": ["done-1", "Done"]}], "append")
        assert result.created[0].dependencies == ["done-1"]


class TestForwardReferences:
    def test_dependency_on_later_task_in_batch(self, engine: ReconciliationEngine) -> None:
        result = engine.reconcile(
            TaskSet(),
            [{"name": "A", "dependencies": ["B"]}, {"name": "B"}],
            UpdateMode.CLEAR_ALL,
        )
        a, b = result.batch
        assert a.dependencies == [b.id]

    def test_ids_come_from_factory(self, archiver: BackupArchiver) -> None:
        ids = iter(["id-1", "id-2"])
        engine = ReconciliationEngine(archiver, id_factory=lambda: next(ids))
        result = engine.reconcile(TaskSet(), [{"name": "A"}, {"name": "B", "dependencies": ["A"]}], "append")
        assert [t.id for t in result.created] == ["id-1", "id-2"]
        assert result.created[1].dependencies == ["id-1"]


class TestOverwrite:
    def test_keeps_completed_and_discards_rest(self, engine: ReconciliationEngine) -> None:
        result = engine.reconcile(_existing(), [{"name": "Fresh", "dependencies": ["Done"]}], "overwrite")
        assert [t.name for t in result.task_set] == ["Done", "Fresh"]
        assert sorted(t.id for t in result.discarded) == ["active-1", "pending-1"]
        assert result.created[0].dependencies == ["done-1"]

    def test_backs_up_previous_set(self, engine: ReconciliationEngine, archiver: BackupArchiver) -> None:
        existing = _existing()
        result = engine.reconcile(existing, [{"name": "Fresh"}], "overwrite")
        assert result.backup is not None
        restored = archiver.load_backup(result.backup)
        assert restored.to_dict()["tasks"] == existing.to_dict()["tasks"]

    def test_no_backup_when_nothing_discarded(self, engine: ReconciliationEngine, archiver: BackupArchiver) -> None:
        existing = TaskSet(tasks=[Task(id="d", name="Done", status=TaskStatus.COMPLETED)])
        result = engine.reconcile(existing, [{"name": "Fresh"}], "overwrite")
        assert result.backup is None
        assert archiver.list_backups() == []

    def test_completed_name_still_reserved(self, engine: ReconciliationEngine) -> None:
        with pytest.raises(ValidationError, match="already exist"):
            engine.reconcile(_existing(), [{"name": "Done"}], "overwrite")

    def test_discarded_task_cannot_be_referenced(self, engine: ReconciliationEngine) -> None:
        with pytest.raises(ValidationError, match="Unresolvable"):
            engine.reconcile(_existing(), [{"name": "Fresh", "dependencies": ["Active"]}], "overwrite")


class TestSelective:
    def test_updates_matching_task_in_place(self, engine: ReconciliationEngine) -> None:
        existing = _existing()
        result = engine.reconcile(
            existing,
            [{"name": "Active", "description": "rewritten"}, {"name": "Other"}],
            "selective",
        )
        assert [t.name for t in result.updated] == ["Active"]
        assert [t.name for t in result.created] == ["Other"]
        active = result.task_set.get("active-1")
        assert active.description == "rewritten"
        assert active.status == TaskStatus.IN_PROGRESS
        assert len(active.attempt_history) == 1
        assert existing.get("active-1").description == ""

    def test_unmatched_existing_tasks_kept(self, engine: ReconciliationEngine) -> None:
        result = engine.reconcile(_existing(), [{"name": "Other"}], "selective")
        assert len(result.task_set) == 4
        assert result.backup is None

    def test_matched_task_keeps_id_for_references(self, engine: ReconciliationEngine) -> None:
        result = engine.reconcile(
            _existing(),
            [{"name": "Pending", "description": "v2"}, {"name": "After", "dependencies": ["Pending"]}],
            "selective",
        )
        assert result.created[0].dependencies == ["pending-1"]


class TestClearAll:
    def test_replaces_everything(self, engine: ReconciliationEngine) -> None:
        result = engine.reconcile(_existing(), [{"name": "Done"}, {"name": "Second"}], "clearAllTasks")
        assert [t.name for t in result.task_set] == ["Done", "Second"]
        assert all(t.status == TaskStatus.PENDING for t in result.task_set)
        assert len(result.discarded) == 3

    def test_exactly_one_backup_that_round_trips(self, engine: ReconciliationEngine, archiver: BackupArchiver) -> None:
        existing = _existing()
        result = engine.reconcile(existing, [{"name": "Only"}], UpdateMode.CLEAR_ALL)
        backups = archiver.list_backups()
        assert len(backups) == 1
        assert backups[0] == result.backup.path
        assert result.backup.reason == "clearAllTasks"
        restored = archiver.load_backup(backups[0])
        assert [t.to_dict() for t in restored] == [t.to_dict() for t in existing]

    def test_backs_up_even_when_empty(self, engine: ReconciliationEngine, archiver: BackupArchiver) -> None:
        result = engine.reconcile(TaskSet(), [{"name": "Only"}], UpdateMode.CLEAR_ALL)
        assert result.backup is not None
        assert result.backup.task_count == 0

    def test_analysis_result_attached(self, engine: ReconciliationEngine) -> None:
        result = engine.reconcile(TaskSet(), [{"name": "A"}, {"name": "B"}], UpdateMode.CLEAR_ALL, "shared analysis")
        assert {t.analysis_result for t in result.task_set} == {"shared analysis"}

    def test_backup_failure_aborts(self, tmp_path: Path) -> None:
        blocker = tmp_path / "memory"
        blocker.write_text("not a directory", encoding="utf-8")
        engine = ReconciliationEngine(BackupArchiver(blocker))
        with pytest.raises(IOFailure):
            engine.reconcile(_existing(), [{"name": "Only"}], UpdateMode.CLEAR_ALL)
