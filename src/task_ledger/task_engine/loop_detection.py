"""Detect tasks that keep failing and need escalation.

The state machine only depends on the :class:`LoopDetector` protocol, so a
smarter heuristic (for example one comparing error similarity) can replace
:class:`ConsecutiveFailureDetector` without touching the lifecycle code.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Protocol

from ..constants import DEFAULT_LOOP_THRESHOLD
from .model import AttemptStatus, Task


@dataclass(frozen=True)
class LoopReport:
    is_looping: bool
    failure_history: list[str] = field(default_factory=list)

    @property
    def failure_count(self) -> int:
        return len(self.failure_history)


class LoopDetector(Protocol):
    def detect(self, task: Task, threshold: Optional[int] = None) -> LoopReport: ...


class ConsecutiveFailureDetector:
    """Flag a loop once the most recent attempts are *threshold* failures in a row.

    ``started`` entries between failures are retries and do not break the run;
    a ``succeeded`` entry, or a ``started`` entry with no failure after it at
    the head of the history, does.  Errors are not compared, so two different
    failure causes still count toward the same run.
    """

    def __init__(self, threshold: int = DEFAULT_LOOP_THRESHOLD) -> None:
        if threshold < 1:
            raise ValueError("threshold must be at least 1")
        self.threshold = threshold

    def detect(self, task: Task, threshold: Optional[int] = None) -> LoopReport:
        limit = self.threshold if threshold is None else threshold
        failures: list[str] = []
        history = task.attempt_history
        for pos in range(len(history) - 1, -1, -1):
            record = history[pos]
            if record.status == AttemptStatus.FAILED:
                failures.append(record.error or "unknown error")
                continue
            if record.status == AttemptStatus.STARTED and failures:
                # The retry that produced the failure already counted.
                continue
            break
        failures.reverse()
        return LoopReport(is_looping=len(failures) >= limit, failure_history=failures)
