"""Tests for the task model (task_engine/model.py)."""

from __future__ import annotations

import uuid

from task_ledger.task_engine.model import (
    AttemptStatus,
    RelatedFile,
    RelatedFileType,
    Task,
    TaskSet,
    TaskStatus,
)


class TestTaskCreation:
    def test_default_values(self) -> None:
        t = Task(name="Write parser")
        assert t.status == TaskStatus.PENDING
        assert t.dependencies == []
        assert t.attempt_history == []
        assert t.expert_suggestions == []
        assert t.summary is None
        assert t.completed_at is None
        assert uuid.UUID(t.id)

    def test_id_generation_unique(self) -> None:
        ids = {Task().id for _ in range(100)}
        assert len(ids) == 100


class TestAttempts:
    def test_attempt_numbers_follow_starts(self) -> None:
        t = Task(name="Retry me")
        first = t.append_attempt(AttemptStatus.STARTED)
        failed = t.append_attempt(AttemptStatus.FAILED, error="boom")
        second = t.append_attempt(AttemptStatus.STARTED)
        assert (first.attempt_number, failed.attempt_number, second.attempt_number) == (1, 1, 2)
        assert t.started_attempts == 2
        assert t.last_attempt is second

    def test_append_touches_updated_at(self) -> None:
        t = Task(name="Touch", updated_at="2000-01-01T00:00:00+00:00")
        t.append_attempt(AttemptStatus.STARTED)
        assert t.updated_at > "2000-01-01T00:00:00+00:00"


class TestSerialization:
    def test_round_trip(self) -> None:
        t = Task(
            name="Add login",
            description="Session based login",
            notes="Keep it simple",
            implementation_guide="1. form 2. handler",
            verification_criteria="Login works",
            dependencies=["a", "b"],
            related_files=[
                RelatedFile(path="src/auth.py", type=RelatedFileType.TO_MODIFY, description="auth", line_start=3, line_end=9),
                RelatedFile(path="docs/auth.md", type=RelatedFileType.REFERENCE),
            ],
        )
        t.append_attempt(AttemptStatus.STARTED)
        t.append_attempt(AttemptStatus.FAILED, error="tests failed")

        restored = Task.from_dict(t.to_dict())
        assert restored == t

    def test_enums_serialize_to_values(self) -> None:
        t = Task(name="x", status=TaskStatus.IN_PROGRESS)
        t.append_attempt(AttemptStatus.STARTED)
        data = t.to_dict()
        assert data["status"] == "in_progress"
        assert data["attempt_history"][0]["status"] == "started"

    def test_related_file_without_range_omits_lines(self) -> None:
        data = RelatedFile(path="a.py", type=RelatedFileType.CREATE).to_dict()
        assert "line_start" not in data
        assert data["type"] == "CREATE"

    def test_from_dict_tolerates_unknown_enum_values(self) -> None:
        t = Task.from_dict({"id": "t1", "name": "odd", "status": "exploded"})
        assert t.status == TaskStatus.PENDING


class TestTaskSet:
    def test_lookup_helpers(self) -> None:
        a, b = Task(name="A"), Task(name="B")
        ts = TaskSet(tasks=[a, b])
        assert ts.get(b.id) is b
        assert ts.by_name("A") is a
        assert ts.get("missing") is None
        assert len(ts) == 2

    def test_copy_is_independent(self) -> None:
        ts = TaskSet(tasks=[Task(name="A")])
        clone = ts.copy()
        clone.tasks[0].name = "changed"
        assert ts.tasks[0].name == "A"

    def test_document_round_trip(self) -> None:
        ts = TaskSet(tasks=[Task(name="A"), Task(name="B", dependencies=["x"])])
        restored = TaskSet.from_dict(ts.to_dict())
        assert [t.to_dict() for t in restored] == [t.to_dict() for t in ts]
        assert restored.version == ts.version
