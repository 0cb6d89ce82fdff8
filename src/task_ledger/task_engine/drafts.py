"""Pydantic input models for task definitions submitted by collaborators.

Drafts accept both snake_case and the camelCase keys used by planning tools
(``implementationGuide``, ``relatedFiles``, ``lineStart`` ...).
"""

from __future__ import annotations

from typing import Any, Iterable, Optional

import pydantic
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..constants import MAX_TASK_NAME_LENGTH
from ..errors import ValidationError
from .model import RelatedFile, RelatedFileType


def _clean_name(value: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError("task name must not be blank")
    return value


class RelatedFileDraft(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    path: str = Field(min_length=1)
    type: RelatedFileType = RelatedFileType.OTHER
    description: str = ""
    line_start: Optional[int] = Field(default=None, alias="lineStart", gt=0)
    line_end: Optional[int] = Field(default=None, alias="lineEnd", gt=0)

    @model_validator(mode="after")
    def _check_line_range(self) -> "RelatedFileDraft":
        if (self.line_start is None) != (self.line_end is None):
            raise ValueError(
                f"{self.path}: line_start and line_end must be given together"
            )
        if self.line_start is not None and self.line_end is not None and self.line_start >= self.line_end:
            raise ValueError(f"{self.path}: line_start must be less than line_end")
        return self

    def to_related_file(self) -> RelatedFile:
        return RelatedFile(
            path=self.path,
            type=self.type,
            description=self.description,
            line_start=self.line_start,
            line_end=self.line_end,
        )


class TaskDraft(BaseModel):
    """One incoming task definition for reconciliation."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str = Field(min_length=1, max_length=MAX_TASK_NAME_LENGTH)
    description: str = ""
    notes: str = ""
    implementation_guide: str = Field(default="", alias="implementationGuide")
    verification_criteria: str = Field(default="", alias="verificationCriteria")
    dependencies: list[str] = Field(default_factory=list)
    related_files: list[RelatedFileDraft] = Field(default_factory=list, alias="relatedFiles")

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        return _clean_name(value)

    @field_validator("notes", "implementation_guide", "verification_criteria", mode="before")
    @classmethod
    def _none_as_empty(cls, value: Any) -> Any:
        return "" if value is None else value


class TaskContentUpdate(BaseModel):
    """Partial content edit; ``None`` means "leave unchanged"."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: Optional[str] = Field(default=None, min_length=1, max_length=MAX_TASK_NAME_LENGTH)
    description: Optional[str] = None
    notes: Optional[str] = None
    implementation_guide: Optional[str] = Field(default=None, alias="implementationGuide")
    verification_criteria: Optional[str] = Field(default=None, alias="verificationCriteria")
    dependencies: Optional[list[str]] = None
    related_files: Optional[list[RelatedFileDraft]] = Field(default=None, alias="relatedFiles")
    summary: Optional[str] = None

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: Optional[str]) -> Optional[str]:
        return None if value is None else _clean_name(value)

    def changed_fields(self) -> set[str]:
        return set(self.model_dump(exclude_none=True))


def _format_errors(exc: pydantic.ValidationError) -> list[str]:
    messages: list[str] = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ()))
        msg = str(err.get("msg", "invalid value"))
        messages.append(f"{loc}: {msg}" if loc else msg)
    return messages


def parse_drafts(raw: Iterable[Any]) -> list[TaskDraft]:
    """Validate raw dicts (or drafts) into :class:`TaskDraft` objects.

    Raises :class:`ValidationError` listing every problem in the batch.
    """
    drafts: list[TaskDraft] = []
    errors: list[str] = []
    for i, item in enumerate(raw):
        if isinstance(item, TaskDraft):
            drafts.append(item)
            continue
        try:
            drafts.append(TaskDraft.model_validate(item))
        except pydantic.ValidationError as exc:
            errors.extend(f"tasks[{i}].{msg}" for msg in _format_errors(exc))
    if errors:
        raise ValidationError("Invalid task definitions: " + "; ".join(errors), errors)
    return drafts


def parse_content_update(raw: Any) -> TaskContentUpdate:
    if isinstance(raw, TaskContentUpdate):
        return raw
    try:
        return TaskContentUpdate.model_validate(raw)
    except pydantic.ValidationError as exc:
        errors = _format_errors(exc)
        raise ValidationError("Invalid task update: " + "; ".join(errors), errors) from exc
