"""Task model for the task store and execution engine.

Tasks are plain dataclasses serialized to JSON for file-based persistence.
Enums serialize to their values; nested records (related files, attempts,
expert suggestions) serialize to plain dicts.
"""

from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator, Optional

from ..constants import STORE_VERSION
from ..utils import _now_iso


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class TaskStatus(str, Enum):
    """Lifecycle status; COMPLETED is terminal."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class AttemptStatus(str, Enum):
    """Outcome recorded for one entry of a task's attempt history."""

    STARTED = "started"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class RelatedFileType(str, Enum):
    """How a file relates to the task."""

    TO_MODIFY = "TO_MODIFY"
    REFERENCE = "REFERENCE"
    CREATE = "CREATE"
    DEPENDENCY = "DEPENDENCY"
    OTHER = "OTHER"


# ---------------------------------------------------------------------------
# Helper
# ---------------------------------------------------------------------------

def _generate_id() -> str:
    return str(uuid.uuid4())


def _enum(enum_cls: type[Enum], raw: Any, default: Enum) -> Any:
    if raw is None:
        return default
    if isinstance(raw, enum_cls):
        return raw
    try:
        return enum_cls(str(raw))
    except (ValueError, KeyError):
        return default


def _opt_int(raw: Any) -> Optional[int]:
    if raw is None:
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


# ---------------------------------------------------------------------------
# Nested records
# ---------------------------------------------------------------------------

@dataclass
class RelatedFile:
    path: str
    type: RelatedFileType = RelatedFileType.OTHER
    description: str = ""
    line_start: Optional[int] = None
    line_end: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "path": self.path,
            "type": self.type.value,
            "description": self.description,
        }
        if self.line_start is not None and self.line_end is not None:
            data["line_start"] = self.line_start
            data["line_end"] = self.line_end
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RelatedFile":
        return cls(
            path=str(data.get("path", "")),
            type=_enum(RelatedFileType, data.get("type"), RelatedFileType.OTHER),
            description=str(data.get("description", "") or ""),
            line_start=_opt_int(data.get("line_start")),
            line_end=_opt_int(data.get("line_end")),
        )


@dataclass
class AttemptRecord:
    """One append-only entry in a task's attempt history."""

    status: AttemptStatus
    timestamp: str = field(default_factory=_now_iso)
    attempt_number: int = 1
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "timestamp": self.timestamp,
            "status": self.status.value,
            "attempt_number": self.attempt_number,
        }
        if self.error is not None:
            data["error"] = self.error
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AttemptRecord":
        return cls(
            status=_enum(AttemptStatus, data.get("status"), AttemptStatus.STARTED),
            timestamp=str(data.get("timestamp") or _now_iso()),
            attempt_number=int(data.get("attempt_number", 1) or 1),
            error=data.get("error"),
        )


@dataclass
class ExpertSuggestion:
    advice: str
    timestamp: str = field(default_factory=_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {"timestamp": self.timestamp, "advice": self.advice}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExpertSuggestion":
        return cls(
            advice=str(data.get("advice", "") or ""),
            timestamp=str(data.get("timestamp") or _now_iso()),
        )


# ---------------------------------------------------------------------------
# Task dataclass
# ---------------------------------------------------------------------------

@dataclass
class Task:
    """A unit of work with a lifecycle and dependency relationships."""

    # Identity
    id: str = field(default_factory=_generate_id)
    name: str = ""

    # Work definition
    description: str = ""
    notes: str = ""
    implementation_guide: str = ""
    verification_criteria: str = ""
    analysis_result: Optional[str] = None
    related_files: list[RelatedFile] = field(default_factory=list)

    # Lifecycle
    status: TaskStatus = TaskStatus.PENDING
    dependencies: list[str] = field(default_factory=list)
    attempt_history: list[AttemptRecord] = field(default_factory=list)
    expert_suggestions: list[ExpertSuggestion] = field(default_factory=list)
    complexity: Optional[str] = None
    summary: Optional[str] = None

    # Timestamps
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)
    completed_at: Optional[str] = None

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a plain dict for JSON persistence."""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "notes": self.notes,
            "implementation_guide": self.implementation_guide,
            "verification_criteria": self.verification_criteria,
            "analysis_result": self.analysis_result,
            "related_files": [f.to_dict() for f in self.related_files],
            "status": self.status.value,
            "dependencies": list(self.dependencies),
            "attempt_history": [a.to_dict() for a in self.attempt_history],
            "expert_suggestions": [s.to_dict() for s in self.expert_suggestions],
            "complexity": self.complexity,
            "summary": self.summary,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "completed_at": self.completed_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        """Deserialize from a plain dict, coercing enums gracefully."""
        d = dict(data)
        return cls(
            id=str(d.get("id") or _generate_id()),
            name=str(d.get("name", "")),
            description=str(d.get("description", "") or ""),
            notes=str(d.get("notes", "") or ""),
            implementation_guide=str(d.get("implementation_guide", "") or ""),
            verification_criteria=str(d.get("verification_criteria", "") or ""),
            analysis_result=d.get("analysis_result"),
            related_files=[RelatedFile.from_dict(f) for f in d.get("related_files") or []],
            status=_enum(TaskStatus, d.get("status"), TaskStatus.PENDING),
            dependencies=[str(x) for x in d.get("dependencies") or []],
            attempt_history=[AttemptRecord.from_dict(a) for a in d.get("attempt_history") or []],
            expert_suggestions=[ExpertSuggestion.from_dict(s) for s in d.get("expert_suggestions") or []],
            complexity=d.get("complexity"),
            summary=d.get("summary"),
            created_at=str(d.get("created_at") or _now_iso()),
            updated_at=str(d.get("updated_at") or _now_iso()),
            completed_at=d.get("completed_at"),
        )

    # ------------------------------------------------------------------
    # Status helpers
    # ------------------------------------------------------------------

    def touch(self) -> None:
        """Bump ``updated_at`` to now."""
        self.updated_at = _now_iso()

    @property
    def is_completed(self) -> bool:
        return self.status == TaskStatus.COMPLETED

    @property
    def started_attempts(self) -> int:
        return sum(1 for a in self.attempt_history if a.status == AttemptStatus.STARTED)

    def append_attempt(self, status: AttemptStatus, error: Optional[str] = None) -> AttemptRecord:
        """Append to the attempt history; earlier records are never rewritten."""
        number = self.started_attempts
        if status == AttemptStatus.STARTED:
            number += 1
        record = AttemptRecord(status=status, attempt_number=max(number, 1), error=error)
        self.attempt_history.append(record)
        self.touch()
        return record

    @property
    def last_attempt(self) -> Optional[AttemptRecord]:
        return self.attempt_history[-1] if self.attempt_history else None


# ---------------------------------------------------------------------------
# Task set
# ---------------------------------------------------------------------------

@dataclass
class TaskSet:
    """The full, ordered task collection persisted as one document."""

    tasks: list[Task] = field(default_factory=list)
    version: int = STORE_VERSION
    updated_at: str = field(default_factory=_now_iso)

    def __iter__(self) -> Iterator[Task]:
        return iter(self.tasks)

    def __len__(self) -> int:
        return len(self.tasks)

    def get(self, task_id: str) -> Optional[Task]:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def by_name(self, name: str) -> Optional[Task]:
        for task in self.tasks:
            if task.name == name:
                return task
        return None

    def copy(self) -> "TaskSet":
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "updated_at": self.updated_at,
            "tasks": [t.to_dict() for t in self.tasks],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaskSet":
        raw_tasks = data.get("tasks")
        tasks = [Task.from_dict(t) for t in raw_tasks if isinstance(t, dict)] if isinstance(raw_tasks, list) else []
        return cls(
            tasks=tasks,
            version=int(data.get("version", STORE_VERSION) or STORE_VERSION),
            updated_at=str(data.get("updated_at") or _now_iso()),
        )
