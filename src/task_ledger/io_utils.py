from __future__ import annotations

import json
import os
import tempfile
import time
from pathlib import Path
from typing import Any, Optional

import yaml
from loguru import logger

from .constants import LOCK_POLL_INTERVAL, WINDOWS_LOCK_BYTES
from .errors import ConcurrentModification, CorruptStore, IOFailure, NotFound
from .utils import _now_iso


class FileLock:
    """Best-effort cross-platform file lock.

    With a ``timeout`` the lock is polled without blocking and
    :class:`ConcurrentModification` is raised once the deadline passes.
    """

    def __init__(self, lock_path: Path, timeout: Optional[float] = None):
        self.lock_path = lock_path
        self.timeout = timeout
        self.handle: Optional[Any] = None
        self.lock_bytes = WINDOWS_LOCK_BYTES

    def _try_lock(self) -> bool:
        assert self.handle is not None
        try:
            import fcntl
        except ImportError:
            if os.name != "nt":
                return True
            import msvcrt
            self.handle.seek(0)
            try:
                msvcrt.locking(self.handle.fileno(), msvcrt.LK_NBLCK, self.lock_bytes)
            except OSError:
                return False
            return True
        try:
            fcntl.flock(self.handle, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            return False
        return True

    def __enter__(self) -> "FileLock":
        try:
            self.lock_path.parent.mkdir(parents=True, exist_ok=True)
            self.handle = open(self.lock_path, "a+")
        except OSError as exc:
            logger.error("Cannot open lock file {}: {}", self.lock_path, exc)
            raise IOFailure(f"Could not open {self.lock_path.name}: {exc}") from exc
        if os.name == "nt":
            self.handle.seek(0)
            self.handle.truncate(self.lock_bytes)
            self.handle.flush()
        deadline = None if self.timeout is None else time.monotonic() + self.timeout
        while not self._try_lock():
            if deadline is not None and time.monotonic() >= deadline:
                logger.error("Timed out after {}s waiting for {}", self.timeout, self.lock_path)
                self.handle.close()
                self.handle = None
                raise ConcurrentModification(
                    f"Could not acquire {self.lock_path.name} within {self.timeout}s"
                )
            time.sleep(LOCK_POLL_INTERVAL)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if not self.handle:
            return
        try:
            import fcntl
            fcntl.flock(self.handle, fcntl.LOCK_UN)
        except ImportError:
            if os.name == "nt":
                import msvcrt
                self.handle.seek(0)
                msvcrt.locking(self.handle.fileno(), msvcrt.LK_UNLCK, self.lock_bytes)
        self.handle.close()
        self.handle = None


def _atomic_write_json(path: Path, data: Any) -> None:
    """Write *data* next to *path* and replace it only once fully flushed."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=str(path.parent), prefix=path.name, suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=2, ensure_ascii=False)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


def _write_new_json(path: Path, data: Any) -> None:
    """Create *path* exclusively; an existing file is never overwritten."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "x", encoding="utf-8") as handle:
        json.dump(data, handle, indent=2, ensure_ascii=False)
        handle.flush()
        os.fsync(handle.fileno())


def _load_json_document(path: Path) -> dict[str, Any]:
    """Load a JSON object from *path*.

    Raises :class:`NotFound` when the file is missing and :class:`CorruptStore`
    when it cannot be read or parsed into an object.
    """
    if not path.exists():
        raise NotFound(f"{path.name} does not exist")
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = json.load(handle)
    except json.JSONDecodeError as exc:
        raise CorruptStore(f"{path.name}: JSONDecodeError: {exc}", path=str(path)) from exc
    except UnicodeDecodeError as exc:
        raise CorruptStore(f"{path.name}: {exc}", path=str(path)) from exc
    except OSError as exc:
        raise CorruptStore(f"{path.name}: unreadable: {exc}", path=str(path)) from exc
    if not isinstance(data, dict):
        raise CorruptStore(
            f"{path.name}: expected object, got {type(data).__name__}", path=str(path)
        )
    return data


def _load_data_with_error(
    path: Path,
    default: dict[str, Any],
) -> tuple[dict[str, Any], str | None]:
    """
    Load JSON/YAML and return (data, error_message).

    Parse/IO failures are reported instead of raised so callers can fall back to
    defaults without masking the problem.
    """
    if not path.exists():
        return default, None
    try:
        with open(path, "r", encoding="utf-8") as handle:
            if path.suffix in {".yaml", ".yml"}:
                data = yaml.safe_load(handle)
            else:
                data = json.load(handle)
        if data is None:
            return default, None
        if not isinstance(data, dict):
            return default, f"{path.name}: expected object, got {type(data).__name__}"
        return data, None
    except OSError as exc:
        return default, f"{path.name}: {exc.__class__.__name__}: {exc}"
    except json.JSONDecodeError as exc:
        return default, f"{path.name}: JSONDecodeError: {exc}"
    except yaml.YAMLError as exc:
        return default, f"{path.name}: YAMLError: {exc}"


def _append_event(events_path: Path, event: dict[str, Any]) -> None:
    events_path.parent.mkdir(parents=True, exist_ok=True)
    payload = dict(event)
    payload.setdefault("ts", _now_iso())
    line = json.dumps(payload) + "\n"
    with open(events_path, "a", encoding="utf-8") as handle:
        handle.write(line)
        handle.flush()
        os.fsync(handle.fileno())


def _read_jsonl_tail(path: Path, limit: int) -> list[dict[str, Any]]:
    if limit < 1 or not path.exists():
        return []
    lines = path.read_text(encoding="utf-8").splitlines()
    events: list[dict[str, Any]] = []
    for line in lines[-limit:]:
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict):
            events.append(payload)
    return events
