"""Provide the public `task_ledger` package exports."""

from __future__ import annotations

from .task_engine.engine import TaskEngine

__all__ = ["TaskEngine"]
