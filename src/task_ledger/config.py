"""Load engine configuration from `<data_dir>/config.yaml` and the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional

from loguru import logger

from .constants import (
    CONFIG_FILE,
    DATA_DIR_ENV,
    DEFAULT_DATA_DIR_NAME,
    DEFAULT_LOCK_TIMEOUT,
    DEFAULT_LOOP_THRESHOLD,
    DEFAULT_PAGE_SIZE,
    DEFAULT_STALL_MINUTES,
    LOCK_TIMEOUT_ENV,
    LOOP_THRESHOLD_ENV,
    MAX_PAGE_SIZE,
)
from .io_utils import _load_data_with_error


@dataclass(frozen=True)
class EngineConfig:
    """Resolved settings shared by every engine component."""

    data_dir: Path
    loop_threshold: int = DEFAULT_LOOP_THRESHOLD
    lock_timeout: float = DEFAULT_LOCK_TIMEOUT
    stall_minutes: int = DEFAULT_STALL_MINUTES
    default_page_size: int = DEFAULT_PAGE_SIZE
    max_page_size: int = MAX_PAGE_SIZE


def resolve_data_dir(
    data_dir: Optional[Path | str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Path:
    env = os.environ if environ is None else environ
    if data_dir:
        return Path(data_dir).expanduser().resolve()
    raw = env.get(DATA_DIR_ENV)
    if raw:
        return Path(raw).expanduser().resolve()
    return (Path.cwd() / DEFAULT_DATA_DIR_NAME).resolve()


def load_engine_config_file(data_dir: Path) -> tuple[dict[str, Any], str | None]:
    """Load the optional config file.

    Args:
        data_dir: Storage root holding ``config.yaml``.

    Returns:
        A tuple of `(config, error_message)`. If the file is missing, returns `({}, None)`.
    """
    path = data_dir / CONFIG_FILE
    data, err = _load_data_with_error(path, {})
    if err:
        return {}, err
    return data, None


def _positive_int(value: Any, default: int) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return default
    return parsed if parsed > 0 else default


def _positive_float(value: Any, default: float) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return default
    return parsed if parsed > 0 else default


def load_engine_config(
    data_dir: Optional[Path | str] = None,
    environ: Optional[Mapping[str, str]] = None,
    **overrides: Any,
) -> EngineConfig:
    """Build an :class:`EngineConfig`.

    Precedence: keyword overrides, then environment, then ``config.yaml``,
    then defaults. A malformed config file is logged and ignored.
    """
    env = os.environ if environ is None else environ
    root = resolve_data_dir(data_dir, env)
    file_cfg, err = load_engine_config_file(root)
    if err:
        logger.warning("Ignoring unreadable engine config: {}", err)

    values: dict[str, Any] = {
        "loop_threshold": _positive_int(file_cfg.get("loop_threshold"), DEFAULT_LOOP_THRESHOLD),
        "lock_timeout": _positive_float(file_cfg.get("lock_timeout"), DEFAULT_LOCK_TIMEOUT),
        "stall_minutes": _positive_int(file_cfg.get("stall_minutes"), DEFAULT_STALL_MINUTES),
        "default_page_size": _positive_int(file_cfg.get("default_page_size"), DEFAULT_PAGE_SIZE),
        "max_page_size": _positive_int(file_cfg.get("max_page_size"), MAX_PAGE_SIZE),
    }
    if env.get(LOOP_THRESHOLD_ENV):
        values["loop_threshold"] = _positive_int(env[LOOP_THRESHOLD_ENV], values["loop_threshold"])
    if env.get(LOCK_TIMEOUT_ENV):
        values["lock_timeout"] = _positive_float(env[LOCK_TIMEOUT_ENV], values["lock_timeout"])
    for key, value in overrides.items():
        if key in values and value is not None:
            values[key] = value
    values["default_page_size"] = min(values["default_page_size"], values["max_page_size"])
    return EngineConfig(data_dir=root, **values)
