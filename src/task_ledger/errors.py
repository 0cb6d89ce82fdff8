"""Typed errors raised by the task store and execution engine."""

from __future__ import annotations

from typing import Optional, Sequence


class TaskEngineError(Exception):
    """Base class for every error the engine reports to its callers."""


class NotFound(TaskEngineError, LookupError):
    """A task (or the store itself) does not exist."""

    def __init__(self, message: str, task_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.task_id = task_id


class CorruptStore(NotFound):
    """The store file exists but cannot be decoded into a task set."""

    def __init__(self, message: str, path: Optional[str] = None) -> None:
        super().__init__(message)
        self.path = path


class ValidationError(TaskEngineError, ValueError):
    """Input was rejected before any state was mutated."""

    def __init__(self, message: str, errors: Optional[Sequence[str]] = None) -> None:
        super().__init__(message)
        self.errors = list(errors or [message])


class DependenciesBlocked(TaskEngineError):
    """The task has prerequisites that are not yet completed."""

    def __init__(self, task_id: str, blocked_by: Sequence[str]) -> None:
        self.task_id = task_id
        self.blocked_by = list(blocked_by)
        super().__init__(f"Task {task_id} is blocked by unfinished dependencies: {self.blocked_by}")


class AlreadyCompleted(TaskEngineError):
    """The task is already completed; the requested step is a no-op."""

    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"Task {task_id} is already completed")


class ConcurrentModification(TaskEngineError):
    """The store lock could not be acquired in time; retry the operation."""


class IOFailure(TaskEngineError):
    """Disk or backup I/O failed; the current operation was aborted."""


class InconsistentState(TaskEngineError):
    """Recoverable mismatch between the requested step and the stored status.

    Never raised: it is logged and attached to the operation result.
    """
