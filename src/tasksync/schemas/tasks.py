"""Schema for task records read from a JSON task export."""

from __future__ import annotations

from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from ..sync.models import Task


class TaskRecord(BaseModel):
    """One task as exported by the task extractor.

    Keys may be camelCase (``startDate``) or snake_case (``start_date``).
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str = Field(..., min_length=1)
    summary: str = ""
    start_date: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("startDate", "start_date")
    )
    due_date: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("dueDate", "due_date")
    )
    time_window_start: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("timeWindowStart", "time_window_start")
    )
    time_window_end: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("timeWindowEnd", "time_window_end")
    )
    recurrence_rule: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("recurrenceRule", "recurrence_rule")
    )
    is_completed: bool = Field(
        default=False, validation_alias=AliasChoices("isCompleted", "is_completed")
    )
    priority: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    scheduled_date: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("scheduledDate", "scheduled_date")
    )
    created_date: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("createdDate", "created_date")
    )
    completion_date: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("completionDate", "completion_date")
    )
    source_path: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("sourcePath", "source_path")
    )
    source_line: Optional[int] = Field(
        default=None, ge=0, validation_alias=AliasChoices("sourceLine", "source_line")
    )
    block_link: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("blockLink", "block_link")
    )
    notes: list[str] = Field(default_factory=list)

    @field_validator("tags", "notes", mode="before")
    @classmethod
    def _none_as_empty(cls, value):
        return [] if value is None else value

    def to_task(self) -> Task:
        return Task(
            id=self.id,
            summary=self.summary,
            start_date=self.start_date,
            due_date=self.due_date,
            time_window_start=self.time_window_start,
            time_window_end=self.time_window_end,
            recurrence_rule=self.recurrence_rule,
            is_completed=self.is_completed,
            priority=self.priority,
            tags=list(self.tags),
            scheduled_date=self.scheduled_date,
            created_date=self.created_date,
            completion_date=self.completion_date,
            source_path=self.source_path,
            source_line=self.source_line,
            block_link=self.block_link,
            notes=list(self.notes),
        )


__all__ = ["TaskRecord"]
