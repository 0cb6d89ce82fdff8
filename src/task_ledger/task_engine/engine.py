"""Task engine: the entry point collaborators use to drive tasks.

This wraps :class:`TaskRepository` with the lifecycle state machine,
dependency checks, reconciliation and backups.  Every mutating operation runs
inside one repository transaction (lock -> load -> mutate -> atomic save), so
concurrent callers never overwrite each other's changes.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from loguru import logger

from ..config import EngineConfig, load_engine_config
from ..constants import DEFAULT_COMPLETION_SUMMARY, EVENTS_FILENAME
from ..errors import NotFound, ValidationError
from ..io_utils import _append_event, _read_jsonl_tail
from ..utils import _minutes_between, _parse_iso
from .backup import BackupArchiver, BackupHandle
from .complexity import ComplexityAssessment, ComplexityAssessor, assess_complexity
from .dependencies import DependencyGraph, DependencyResolver, ExecutionCheck
from .drafts import TaskContentUpdate, TaskDraft, parse_content_update
from .loop_detection import ConsecutiveFailureDetector, LoopDetector
from .model import AttemptStatus, ExpertSuggestion, Task, TaskSet, TaskStatus
from .reconcile import ReconcileResult, ReconciliationEngine, UpdateMode
from .state_machine import AttemptOutcome, CompletionOutcome, ExecutionStateMachine
from .store import TaskRepository

Summarizer = Callable[[Task], Optional[str]]

_SEARCH_FIELDS = (
    "name",
    "description",
    "notes",
    "implementation_guide",
    "verification_criteria",
    "summary",
)


@dataclass
class StartOutcome:
    task: Task
    complexity: ComplexityAssessment


@dataclass
class ClearResult:
    removed: int
    backup: BackupHandle


@dataclass
class SearchPage:
    tasks: list[Task]
    page: int
    page_size: int
    total_results: int
    total_pages: int


@dataclass
class AgentStatusEntry:
    """Activity report for one in-progress task."""

    task_id: str
    name: str
    updated_at: str
    last_action: str
    last_action_at: str
    minutes_since_action: int
    stalled: bool
    last_error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)


@dataclass
class EngineComponents:
    """Collaborators injected into :class:`TaskEngine`; defaults are built from config."""

    repository: Optional[TaskRepository] = None
    archiver: Optional[BackupArchiver] = None
    loop_detector: Optional[LoopDetector] = None
    complexity_assessor: ComplexityAssessor = assess_complexity
    summarizer: Optional[Summarizer] = None


class TaskEngine:
    """Manage persisted tasks and their execution lifecycle.

    Parameters
    ----------
    data_dir:
        Storage root. Ignored when *config* is given.
    config:
        Pre-resolved :class:`EngineConfig`.
    components:
        Optional replacements for the repository, archiver, loop detector,
        complexity assessor and summarizer.
    """

    def __init__(
        self,
        data_dir: Optional[Path | str] = None,
        *,
        config: Optional[EngineConfig] = None,
        components: Optional[EngineComponents] = None,
    ) -> None:
        self.config = config or load_engine_config(data_dir)
        parts = components or EngineComponents()
        self.repository = parts.repository or TaskRepository(
            self.config.data_dir, lock_timeout=self.config.lock_timeout
        )
        self.archiver = parts.archiver or BackupArchiver.for_data_dir(self.config.data_dir)
        self.state_machine = ExecutionStateMachine(
            loop_detector=parts.loop_detector or ConsecutiveFailureDetector(self.config.loop_threshold),
        )
        self.reconciler = ReconciliationEngine(self.archiver, id_factory=self.repository.next_id)
        self.complexity_assessor = parts.complexity_assessor
        self.summarizer = parts.summarizer
        self._events_path = self.config.data_dir / EVENTS_FILENAME

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _emit_event(self, event_type: str, task: Optional[Task], **details: Any) -> None:
        """Append a task event; failures are logged, never raised."""
        try:
            payload: dict[str, Any] = {"type": event_type}
            if task is not None:
                payload["task_id"] = task.id
                payload["status"] = task.status.value
            if details:
                payload["details"] = details
            _append_event(self._events_path, payload)
        except OSError:
            logger.exception("Failed to append task event {} for {}", event_type, task.id if task else "-")

    def get_recent_events(self, limit: int = 100) -> list[dict[str, Any]]:
        return _read_jsonl_tail(self._events_path, limit)

    def get_task_events(self, task_id: str, limit: int = 100) -> list[dict[str, Any]]:
        events = self.get_recent_events(limit=max(limit * 5, limit))
        filtered = [e for e in events if str(e.get("task_id")) == task_id]
        return filtered[-limit:]

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def snapshot(self) -> TaskSet:
        return self.repository.read_snapshot()

    def list_tasks(self, status: Optional[TaskStatus | str] = None) -> list[Task]:
        """List tasks, optionally filtered by status (``"all"`` means no filter)."""
        tasks = self.snapshot().tasks
        if status is None or status == "all":
            return tasks
        try:
            wanted = TaskStatus(status)
        except ValueError as exc:
            raise ValidationError(f"Unknown task status filter: {status!r}") from exc
        return [t for t in tasks if t.status == wanted]

    def get_task(self, task_id: str) -> Task:
        task = self.snapshot().get(task_id)
        if task is None:
            raise NotFound(f"Task {task_id} not found", task_id=task_id)
        return task

    def get_task_detail(self, task_ref: str) -> Task:
        """Fetch a task by full ID or unambiguous ID prefix."""
        ref = task_ref.strip()
        if not ref:
            raise ValidationError("Task ID must not be empty")
        tasks = self.snapshot().tasks
        for task in tasks:
            if task.id == ref:
                return task
        matches = [t for t in tasks if t.id.startswith(ref)]
        if not matches:
            raise NotFound(f"Task {ref} not found", task_id=ref)
        if len(matches) > 1:
            raise ValidationError(f"Task ID prefix {ref!r} is ambiguous ({len(matches)} matches)")
        return matches[0]

    def search(
        self,
        query: str,
        by_id: bool = False,
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> SearchPage:
        """Search by ID (exact or prefix) or by whitespace-separated keywords.

        Every keyword must appear (case-insensitive) in one of the text fields.
        Results are ordered by ``updated_at``, newest first.
        """
        query = (query or "").strip()
        if not query:
            raise ValidationError("Search query must not be empty")
        size = self.config.default_page_size if page_size is None else page_size
        if page < 1:
            raise ValidationError("page must be >= 1")
        if not 1 <= size <= self.config.max_page_size:
            raise ValidationError(f"page_size must be between 1 and {self.config.max_page_size}")

        tasks = self.snapshot().tasks
        if by_id:
            hits = [t for t in tasks if t.id == query or t.id.startswith(query)]
        else:
            keywords = [k.lower() for k in query.split()]
            hits = []
            for task in tasks:
                haystack = " ".join(str(getattr(task, f) or "") for f in _SEARCH_FIELDS).lower()
                if all(k in haystack for k in keywords):
                    hits.append(task)
        hits.sort(key=lambda t: t.updated_at, reverse=True)

        total = len(hits)
        total_pages = max(1, math.ceil(total / size))
        start = (page - 1) * size
        return SearchPage(
            tasks=hits[start:start + size],
            page=page,
            page_size=size,
            total_results=total,
            total_pages=total_pages,
        )

    def can_execute(self, task_id: str) -> ExecutionCheck:
        return DependencyResolver(self.snapshot()).can_execute(task_id)

    def get_execution_order(self) -> list[list[str]]:
        """Batches of unfinished task IDs that can run in parallel, in order."""
        return DependencyGraph(self.snapshot().tasks).execution_batches()

    def check_agent_status(self, now: Optional[datetime] = None) -> list[AgentStatusEntry]:
        """Report how long each in-progress task has been without recorded activity."""
        current = now or datetime.now(timezone.utc)
        report: list[AgentStatusEntry] = []
        for task in self.list_tasks(TaskStatus.IN_PROGRESS):
            last_action = "no recorded action"
            last_at = task.updated_at
            last_error: Optional[str] = None
            attempt = task.last_attempt
            if attempt is not None:
                last_at = attempt.timestamp
                last_error = attempt.error
                if attempt.status == AttemptStatus.STARTED:
                    last_action = f"attempt {attempt.attempt_number} started"
                else:
                    last_action = f"attempt {attempt.attempt_number} {attempt.status.value}"
            if task.expert_suggestions:
                suggestion = task.expert_suggestions[-1]
                suggested_at = _parse_iso(suggestion.timestamp)
                action_at = _parse_iso(last_at)
                if suggested_at and (action_at is None or suggested_at > action_at):
                    last_at = suggestion.timestamp
                    last_action = "expert suggestion received"
            action_dt = _parse_iso(last_at) or current
            minutes = max(0, _minutes_between(action_dt, current))
            report.append(
                AgentStatusEntry(
                    task_id=task.id,
                    name=task.name,
                    updated_at=task.updated_at,
                    last_action=last_action,
                    last_action_at=last_at,
                    minutes_since_action=minutes,
                    stalled=minutes > self.config.stall_minutes,
                    last_error=last_error,
                )
            )
        return report

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start_task(self, task_id: str) -> StartOutcome:
        with self.repository.transaction() as tx:
            task = self.state_machine.start(tx.task_set, task_id)
            assessment = self.complexity_assessor(task)
            task.complexity = assessment.level.value
            tx.mark_dirty()
        self._emit_event("task.started", task, attempt=task.started_attempts, complexity=task.complexity)
        return StartOutcome(task=task, complexity=assessment)

    def report_result(self, task_id: str, outcome: AttemptStatus | str, error: Optional[str] = None) -> AttemptOutcome:
        with self.repository.transaction() as tx:
            result = self.state_machine.report_result(tx.task_set, task_id, outcome, error)
            tx.mark_dirty()
        details: dict[str, Any] = {"outcome": result.outcome.value}
        if result.loop is not None:
            details["consecutive_failures"] = result.loop.failure_count
            details["looping"] = result.loop.is_looping
        self._emit_event("task.result_reported", result.task, **details)
        return result

    def complete_task(
        self,
        task_id: str,
        summary: Optional[str] = None,
        summarizer: Optional[Summarizer] = None,
    ) -> CompletionOutcome:
        """Finalize a task with an explicit, generated or default summary.

        *summarizer* overrides the one injected through :class:`EngineComponents`.
        """
        with self.repository.transaction() as tx:
            task = tx.require(task_id)
            final_summary = summary.strip() if summary else ""
            generate = summarizer or self.summarizer
            if not final_summary and generate is not None:
                final_summary = (generate(task) or "").strip()
            result = self.state_machine.complete(tx.task_set, task_id, final_summary or DEFAULT_COMPLETION_SUMMARY)
            tx.mark_dirty()
        self._emit_event("task.completed", result.task, consistent=result.inconsistency is None)
        return result

    # ------------------------------------------------------------------
    # Content edits
    # ------------------------------------------------------------------

    def update_task_content(self, task_id: str, changes: TaskContentUpdate | dict[str, Any]) -> Task:
        """Edit a task's descriptive fields.

        Completed tasks accept only ``summary`` and ``related_files`` edits.
        """
        update = parse_content_update(changes)
        fields = update.changed_fields()
        if not fields:
            raise ValidationError("No fields to update")

        with self.repository.transaction() as tx:
            task = tx.require(task_id)
            if task.is_completed and fields - {"summary", "related_files"}:
                raise ValidationError(
                    f"Task {task_id} is completed; only summary and related files can be edited"
                )
            if update.name is not None and update.name != task.name:
                clash = tx.task_set.by_name(update.name)
                if clash is not None:
                    raise ValidationError(f"Task name {update.name!r} already exists")
                task.name = update.name
            if update.dependencies is not None:
                task.dependencies = self._resolve_refs(tx.task_set, task, update.dependencies)
                DependencyGraph(tx.tasks).validate()
            for attr in ("description", "notes", "implementation_guide", "verification_criteria", "summary"):
                value = getattr(update, attr)
                if value is not None:
                    setattr(task, attr, value)
            if update.related_files is not None:
                task.related_files = [f.to_related_file() for f in update.related_files]
            task.touch()
            tx.mark_dirty()
        self._emit_event("task.updated", task, fields=sorted(fields))
        logger.info("Updated task {} ({}): {}", task.id, task.name, sorted(fields))
        return task

    @staticmethod
    def _resolve_refs(task_set: TaskSet, task: Task, refs: Iterable[str]) -> list[str]:
        resolved: list[str] = []
        unknown: list[str] = []
        for ref in refs:
            ref = ref.strip()
            dep = task_set.get(ref) or task_set.by_name(ref)
            if dep is None:
                unknown.append(ref)
            elif dep.id not in resolved:
                resolved.append(dep.id)
        if unknown:
            raise ValidationError(f"Unknown dependency references for {task.name}: {unknown}")
        return resolved

    def record_expert_suggestion(self, task_id: str, advice: str) -> Task:
        if not advice or not advice.strip():
            raise ValidationError("Advice must not be empty")
        with self.repository.transaction() as tx:
            task = tx.require(task_id)
            task.expert_suggestions.append(ExpertSuggestion(advice=advice.strip()))
            task.touch()
            tx.mark_dirty()
        self._emit_event("task.expert_suggestion", task)
        return task

    # ------------------------------------------------------------------
    # Removal and reconciliation
    # ------------------------------------------------------------------

    def delete_task(self, task_id: str) -> Task:
        """Remove a task that is not completed and that nothing depends on."""
        with self.repository.transaction() as tx:
            task = tx.require(task_id)
            if task.is_completed:
                raise ValidationError(f"Task {task_id} is completed and cannot be deleted")
            dependents = [t.name for t in tx.tasks if task_id in t.dependencies]
            if dependents:
                raise ValidationError(f"Task {task.name} is a dependency of: {dependents}")
            tx.remove(task_id)
        self._emit_event("task.deleted", task)
        logger.info("Deleted task {} ({})", task.id, task.name)
        return task

    def clear_all(self) -> ClearResult:
        """Archive every task, then empty the store."""
        with self.repository.transaction() as tx:
            backup = self.archiver.snapshot(tx.task_set, reason="clear_all")
            removed = len(tx.tasks)
            tx.replace_all(TaskSet(version=tx.task_set.version))
        self._emit_event("tasks.cleared", None, removed=removed, backup=str(backup.path))
        logger.info("Cleared {} tasks (backup {})", removed, backup.path.name)
        return ClearResult(removed=removed, backup=backup)

    def reconcile(
        self,
        tasks: Iterable[TaskDraft | dict[str, Any]],
        mode: UpdateMode | str = UpdateMode.CLEAR_ALL,
        analysis_result: Optional[str] = None,
    ) -> ReconcileResult:
        with self.repository.transaction() as tx:
            result = self.reconciler.reconcile(tx.task_set, tasks, mode, analysis_result)
            tx.replace_all(result.task_set)
        self._emit_event(
            "tasks.reconciled",
            None,
            mode=result.mode.value,
            created=[t.id for t in result.created],
            updated=[t.id for t in result.updated],
            discarded=[t.id for t in result.discarded],
        )
        return result
