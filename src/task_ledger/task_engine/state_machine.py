"""Per-task lifecycle: PENDING -> IN_PROGRESS -> COMPLETED.

The state machine mutates tasks inside a loaded :class:`TaskSet`; persisting
the result is the caller's job (see :meth:`TaskRepository.transaction`).
Every transition appends to the attempt history and refreshes ``updated_at``.
There is no transition out of COMPLETED.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from loguru import logger

from ..errors import AlreadyCompleted, DependenciesBlocked, InconsistentState, NotFound, ValidationError
from ..utils import _now_iso
from .dependencies import DependencyResolver
from .loop_detection import ConsecutiveFailureDetector, LoopDetector, LoopReport
from .model import AttemptStatus, Task, TaskSet, TaskStatus


@dataclass
class AttemptOutcome:
    """What ``report_result`` recorded, plus the loop verdict for failures."""

    task: Task
    outcome: AttemptStatus
    loop: Optional[LoopReport] = None

    @property
    def needs_escalation(self) -> bool:
        return bool(self.loop and self.loop.is_looping)


@dataclass
class CompletionOutcome:
    task: Task
    inconsistency: Optional[InconsistentState] = None


class ExecutionStateMachine:
    """Apply lifecycle transitions to tasks in a task set."""

    def __init__(self, loop_detector: Optional[LoopDetector] = None, loop_threshold: Optional[int] = None) -> None:
        self.loop_detector: LoopDetector = loop_detector or ConsecutiveFailureDetector()
        self.loop_threshold = loop_threshold

    @staticmethod
    def _require(task_set: TaskSet, task_id: str) -> Task:
        task = task_set.get(task_id)
        if task is None:
            raise NotFound(f"Task {task_id} not found", task_id=task_id)
        return task

    def start(self, task_set: TaskSet, task_id: str) -> Task:
        """Move a PENDING (or retrying IN_PROGRESS) task to IN_PROGRESS.

        Raises :class:`AlreadyCompleted` for completed tasks and
        :class:`DependenciesBlocked` while any dependency is unfinished.
        """
        task = self._require(task_set, task_id)
        check = DependencyResolver(task_set).can_execute(task_id)
        if check.already_completed:
            raise AlreadyCompleted(task_id)
        if not check.allowed:
            raise DependenciesBlocked(task_id, check.blocked_by)

        previous = task.status
        task.status = TaskStatus.IN_PROGRESS
        record = task.append_attempt(AttemptStatus.STARTED)
        logger.info(
            "Task {} ({}) started: {} -> in_progress, attempt {}",
            task.id, task.name, previous.value, record.attempt_number,
        )
        return task

    def report_result(
        self,
        task_set: TaskSet,
        task_id: str,
        outcome: AttemptStatus | str,
        error: Optional[str] = None,
    ) -> AttemptOutcome:
        """Record the outcome of the current attempt.

        ``succeeded`` completes the task; ``failed`` keeps it IN_PROGRESS so the
        caller can retry with :meth:`start` or abandon it.
        """
        try:
            result = AttemptStatus(outcome)
        except ValueError as exc:
            raise ValidationError(f"Unknown attempt outcome: {outcome!r}") from exc
        if result == AttemptStatus.STARTED:
            raise ValidationError("Attempt outcome must be 'succeeded' or 'failed'")
        if result == AttemptStatus.FAILED and not (error and error.strip()):
            raise ValidationError("An error description is required when reporting a failure")

        task = self._require(task_set, task_id)
        if task.status == TaskStatus.COMPLETED:
            raise AlreadyCompleted(task_id)
        if task.status != TaskStatus.IN_PROGRESS:
            raise ValidationError(
                f"Task {task_id} is {task.status.value}; only in-progress tasks can report a result"
            )

        if result == AttemptStatus.SUCCEEDED:
            task.append_attempt(AttemptStatus.SUCCEEDED)
            task.status = TaskStatus.COMPLETED
            task.completed_at = _now_iso()
            logger.info("Task {} ({}) succeeded: in_progress -> completed", task.id, task.name)
            return AttemptOutcome(task=task, outcome=result)

        task.append_attempt(AttemptStatus.FAILED, error=error)
        loop = self.loop_detector.detect(task, self.loop_threshold)
        if loop.is_looping:
            logger.warning(
                "Task {} ({}) failed {} times in a row; escalation needed",
                task.id, task.name, loop.failure_count,
            )
        else:
            logger.info("Task {} ({}) failed: {}", task.id, task.name, error)
        return AttemptOutcome(task=task, outcome=result, loop=loop)

    def complete(self, task_set: TaskSet, task_id: str, summary: str) -> CompletionOutcome:
        """Record the completion summary; idempotent.

        Calling this before the task reached COMPLETED is tolerated: the
        mismatch is logged and returned, and the status is left untouched.
        """
        task = self._require(task_set, task_id)
        inconsistency: Optional[InconsistentState] = None
        if task.status != TaskStatus.COMPLETED:
            inconsistency = InconsistentState(
                f"complete called for task {task_id} with status {task.status.value}, expected completed"
            )
            logger.warning("{}", inconsistency)
        task.summary = summary
        task.touch()
        return CompletionOutcome(task=task, inconsistency=inconsistency)
