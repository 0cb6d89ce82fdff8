"""Apply a batch of task definitions to an existing task set.

Each :class:`UpdateMode` has exactly one partition handler that decides which
existing tasks survive, which are discarded and which are matched for an
in-place update.  Everything after that (creating tasks, resolving dependency
names to IDs, name and cycle validation, backups) is shared.  The whole batch
is validated before anything is returned, so a rejected batch has no effect.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable, Optional, Sequence

from loguru import logger

from ..errors import ValidationError
from .backup import BackupArchiver, BackupHandle
from .dependencies import DependencyGraph
from .drafts import TaskDraft, parse_drafts
from .model import Task, TaskSet, TaskStatus, _generate_id


class UpdateMode(str, Enum):
    APPEND = "append"
    OVERWRITE = "overwrite"
    SELECTIVE = "selective"
    CLEAR_ALL = "clearAllTasks"

    @classmethod
    def coerce(cls, value: "UpdateMode | str") -> "UpdateMode":
        try:
            return cls(value)
        except ValueError as exc:
            valid = [m.value for m in cls]
            raise ValidationError(f"Unknown update mode {value!r}; expected one of {valid}") from exc


@dataclass
class _Partition:
    kept: list[Task]
    discarded: list[Task] = field(default_factory=list)
    matched: dict[str, Task] = field(default_factory=dict)


@dataclass
class ReconcileResult:
    mode: UpdateMode
    task_set: TaskSet
    created: list[Task] = field(default_factory=list)
    updated: list[Task] = field(default_factory=list)
    discarded: list[Task] = field(default_factory=list)
    backup: Optional[BackupHandle] = None
    batch: list[Task] = field(default_factory=list)
    """Created and updated tasks in the order they were submitted."""


def ensure_unique_names(drafts: Sequence[TaskDraft]) -> None:
    seen: set[str] = set()
    duplicates: list[str] = []
    for draft in drafts:
        if draft.name in seen and draft.name not in duplicates:
            duplicates.append(draft.name)
        seen.add(draft.name)
    if duplicates:
        raise ValidationError(f"Duplicate task names in batch: {duplicates}")


class ReconciliationEngine:
    """Produce a new consistent task set from an existing one and a batch."""

    _DESTRUCTIVE = frozenset({UpdateMode.OVERWRITE, UpdateMode.CLEAR_ALL})

    def __init__(
        self,
        archiver: BackupArchiver,
        id_factory: Callable[[], str] = _generate_id,
    ) -> None:
        self.archiver = archiver
        self.id_factory = id_factory
        self._handlers: dict[UpdateMode, Callable[[TaskSet, Sequence[TaskDraft]], _Partition]] = {
            UpdateMode.APPEND: self._partition_append,
            UpdateMode.OVERWRITE: self._partition_overwrite,
            UpdateMode.SELECTIVE: self._partition_selective,
            UpdateMode.CLEAR_ALL: self._partition_clear_all,
        }
        missing = set(UpdateMode) - set(self._handlers)
        if missing:
            raise RuntimeError(f"no reconciliation handler for {sorted(m.value for m in missing)}")

    # -- partition handlers -------------------------------------------------

    @staticmethod
    def _partition_append(existing: TaskSet, drafts: Sequence[TaskDraft]) -> _Partition:
        return _Partition(kept=list(existing.tasks))

    @staticmethod
    def _partition_overwrite(existing: TaskSet, drafts: Sequence[TaskDraft]) -> _Partition:
        kept = [t for t in existing if t.status == TaskStatus.COMPLETED]
        discarded = [t for t in existing if t.status != TaskStatus.COMPLETED]
        return _Partition(kept=kept, discarded=discarded)

    @staticmethod
    def _partition_selective(existing: TaskSet, drafts: Sequence[TaskDraft]) -> _Partition:
        matched: dict[str, Task] = {}
        for draft in drafts:
            task = existing.by_name(draft.name)
            if task is not None:
                matched[draft.name] = task
        return _Partition(kept=list(existing.tasks), matched=matched)

    @staticmethod
    def _partition_clear_all(existing: TaskSet, drafts: Sequence[TaskDraft]) -> _Partition:
        return _Partition(kept=[], discarded=list(existing.tasks))

    # -- public API ---------------------------------------------------------

    def reconcile(
        self,
        existing: TaskSet,
        incoming: Iterable[TaskDraft | dict[str, Any]],
        mode: UpdateMode | str,
        analysis_result: Optional[str] = None,
    ) -> ReconcileResult:
        """Return the reconciled task set; *existing* is not modified.

        Raises :class:`ValidationError` for duplicate or colliding names,
        unresolvable dependency references and dependency cycles, and
        :class:`~task_ledger.errors.IOFailure` if a required backup fails.
        """
        update_mode = UpdateMode.coerce(mode)
        drafts = parse_drafts(incoming)
        ensure_unique_names(drafts)

        working = existing.copy()
        partition = self._handlers[update_mode](working, drafts)

        kept_names = {t.name for t in partition.kept}
        collisions = [d.name for d in drafts if d.name not in partition.matched and d.name in kept_names]
        if collisions:
            raise ValidationError(f"Task names already exist: {collisions}")

        # Assign IDs first so dependencies can reference later tasks in the batch.
        batch: list[tuple[TaskDraft, Task, bool]] = []
        for draft in drafts:
            target = partition.matched.get(draft.name)
            if target is not None:
                batch.append((draft, target, False))
            else:
                batch.append((draft, Task(id=self.id_factory(), name=draft.name), True))

        batch_ids = {draft.name: task.id for draft, task, _ in batch}
        kept_ids = {t.id for t in partition.kept}
        kept_by_name = {t.name: t.id for t in partition.kept}

        errors: list[str] = []
        for draft, task, _ in batch:
            deps = self._resolve_dependencies(draft, batch_ids, kept_ids, kept_by_name, errors)
            self._apply_draft(task, draft, deps, analysis_result)
        if errors:
            raise ValidationError("Unresolvable dependency references: " + "; ".join(errors), errors)

        created = [task for _, task, is_new in batch if is_new]
        updated = [task for _, task, is_new in batch if not is_new]
        result_set = TaskSet(tasks=partition.kept + created, version=working.version)
        DependencyGraph(result_set.tasks).validate()

        backup: Optional[BackupHandle] = None
        if update_mode == UpdateMode.CLEAR_ALL or (update_mode in self._DESTRUCTIVE and partition.discarded):
            backup = self.archiver.snapshot(existing, reason=update_mode.value)

        logger.info(
            "Reconciled {} tasks ({}): {} created, {} updated, {} discarded",
            len(drafts), update_mode.value, len(created), len(updated), len(partition.discarded),
        )
        return ReconcileResult(
            mode=update_mode,
            task_set=result_set,
            created=created,
            updated=updated,
            discarded=partition.discarded,
            backup=backup,
            batch=[task for _, task, _ in batch],
        )

    # -- helpers ------------------------------------------------------------

    @staticmethod
    def _resolve_dependencies(
        draft: TaskDraft,
        batch_ids: dict[str, str],
        kept_ids: set[str],
        kept_by_name: dict[str, str],
        errors: list[str],
    ) -> list[str]:
        resolved: list[str] = []
        for ref in draft.dependencies:
            ref = ref.strip()
            if ref in kept_ids or ref in batch_ids.values():
                dep_id = ref
            elif ref in batch_ids:
                dep_id = batch_ids[ref]
            elif ref in kept_by_name:
                dep_id = kept_by_name[ref]
            else:
                errors.append(f"{draft.name} -> {ref}")
                continue
            if dep_id not in resolved:
                resolved.append(dep_id)
        return resolved

    @staticmethod
    def _apply_draft(task: Task, draft: TaskDraft, dependencies: list[str], analysis_result: Optional[str]) -> None:
        task.description = draft.description
        task.notes = draft.notes
        task.implementation_guide = draft.implementation_guide
        task.verification_criteria = draft.verification_criteria
        task.dependencies = dependencies
        task.related_files = [f.to_related_file() for f in draft.related_files]
        if analysis_result is not None:
            task.analysis_result = analysis_result
        task.touch()
