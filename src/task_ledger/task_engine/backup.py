"""Write-once snapshots of the task set taken before destructive changes."""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from loguru import logger

from ..constants import BACKUP_DIR_NAME, BACKUP_PREFIX
from ..errors import IOFailure
from ..io_utils import _load_json_document, _write_new_json
from .model import TaskSet


@dataclass(frozen=True)
class BackupHandle:
    path: Path
    created_at: str
    task_count: int
    reason: str

    def to_dict(self) -> dict[str, object]:
        return {
            "path": str(self.path),
            "created_at": self.created_at,
            "task_count": self.task_count,
            "reason": self.reason,
        }


class BackupArchiver:
    """Snapshot task sets into ``<data_dir>/memory/``.

    Artifacts are never modified or pruned here; retention is left to the
    operator.
    """

    def __init__(self, archive_dir: Path) -> None:
        self.archive_dir = archive_dir

    @classmethod
    def for_data_dir(cls, data_dir: Path) -> "BackupArchiver":
        return cls(data_dir / BACKUP_DIR_NAME)

    def _artifact_path(self, now: datetime) -> Path:
        stamp = now.strftime("%Y-%m-%dT%H-%M-%S-%f")
        candidate = self.archive_dir / f"{BACKUP_PREFIX}{stamp}.json"
        counter = 1
        while candidate.exists():
            candidate = self.archive_dir / f"{BACKUP_PREFIX}{stamp}_{counter}.json"
            counter += 1
        return candidate

    def snapshot(self, task_set: TaskSet, reason: str = "manual") -> BackupHandle:
        """Persist *task_set* to a new artifact.

        Raises :class:`IOFailure` when the artifact cannot be written, so the
        destructive operation it protects can abort.
        """
        now = datetime.now(timezone.utc)
        payload = task_set.to_dict()
        payload["reason"] = reason
        payload["backed_up_at"] = now.isoformat()
        try:
            self.archive_dir.mkdir(parents=True, exist_ok=True)
            path = self._artifact_path(now)
            _write_new_json(path, payload)
        except OSError as exc:
            logger.error("Backup of {} tasks to {} failed: {}", len(task_set), self.archive_dir, exc)
            raise IOFailure(f"Could not write task backup: {exc}") from exc
        logger.info("Backed up {} tasks to {} ({})", len(task_set), path.name, reason)
        return BackupHandle(path=path, created_at=now.isoformat(), task_count=len(task_set), reason=reason)

    def list_backups(self) -> list[Path]:
        if not self.archive_dir.exists():
            return []
        return sorted(
            (p for p in self.archive_dir.glob(f"{BACKUP_PREFIX}*.json") if p.is_file()),
            key=lambda p: (os.path.getmtime(p), p.name),
        )

    def load_backup(self, handle: BackupHandle | Path | str) -> TaskSet:
        path = handle.path if isinstance(handle, BackupHandle) else Path(handle)
        return TaskSet.from_dict(_load_json_document(path))
