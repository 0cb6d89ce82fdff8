"""Rule-based task complexity assessment.

The engine stores the resulting level on ``start`` but never interprets it;
callers may inject any callable with the same signature instead.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from .model import Task


class ComplexityLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    VERY_HIGH = "very_high"

    @property
    def rank(self) -> int:
        return {"low": 0, "medium": 1, "high": 2, "very_high": 3}[self.value]


# (medium, high, very_high) thresholds; a metric above a bound reaches that level.
DESCRIPTION_LENGTH_THRESHOLDS = (500, 1000, 2000)
DEPENDENCIES_COUNT_THRESHOLDS = (2, 5, 10)
NOTES_LENGTH_THRESHOLDS = (200, 500, 1000)


@dataclass(frozen=True)
class ComplexityAssessment:
    level: ComplexityLevel
    description_length: int
    dependencies_count: int
    notes_length: int
    recommendations: list[str] = field(default_factory=list)


ComplexityAssessor = Callable[[Task], ComplexityAssessment]


def _level_for(value: int, thresholds: tuple[int, int, int]) -> ComplexityLevel:
    medium, high, very_high = thresholds
    if value > very_high:
        return ComplexityLevel.VERY_HIGH
    if value > high:
        return ComplexityLevel.HIGH
    if value > medium:
        return ComplexityLevel.MEDIUM
    return ComplexityLevel.LOW


def assess_complexity(task: Task) -> ComplexityAssessment:
    desc_len = len(task.description)
    deps = len(task.dependencies)
    notes_len = len(task.notes)

    level = max(
        _level_for(desc_len, DESCRIPTION_LENGTH_THRESHOLDS),
        _level_for(deps, DEPENDENCIES_COUNT_THRESHOLDS),
        _level_for(notes_len, NOTES_LENGTH_THRESHOLDS),
        key=lambda lvl: lvl.rank,
    )

    recommendations: list[str] = []
    if level == ComplexityLevel.VERY_HIGH:
        recommendations.append("Split this task into smaller, independently verifiable tasks")
    if level in (ComplexityLevel.HIGH, ComplexityLevel.VERY_HIGH):
        recommendations.append("Plan the implementation in stages and checkpoint progress")
    if deps > DEPENDENCIES_COUNT_THRESHOLDS[0]:
        recommendations.append("Confirm the outputs of every dependency before starting")
    if notes_len > NOTES_LENGTH_THRESHOLDS[0]:
        recommendations.append("Review the notes for special handling requirements")

    return ComplexityAssessment(
        level=level,
        description_length=desc_len,
        dependencies_count=deps,
        notes_length=notes_len,
        recommendations=recommendations,
    )
