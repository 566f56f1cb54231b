from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

DispatchRunStatus = Literal["completed", "failed"]

_LEADING_INT = re.compile(r"^\s*([+-]?\d+)")


def coerce_reminder_minutes(value: Any) -> int:
    """Lenient integer parse; anything unparseable means no reminder."""
    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value == value else 0
    match = _LEADING_INT.match(str(value))
    return int(match.group(1)) if match else 0


def _coerce_occurrence_keys(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return {str(key): item for key, item in value.items() if item}
    if isinstance(value, list):
        return {str(item): True for item in value if item not in (None, "")}
    return {}


class _StoredRecord(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    reminder: int = 0
    completed: bool = False
    recurrence: Any = None
    completed_occurrences: dict[str, Any] = Field(default_factory=dict, alias="completedOccurrences")

    @field_validator("reminder", mode="before")
    @classmethod
    def _coerce_reminder(cls, value: Any) -> int:
        return coerce_reminder_minutes(value)

    @field_validator("completed", mode="before")
    @classmethod
    def _coerce_completed(cls, value: Any) -> bool:
        return bool(value)

    @field_validator("completed_occurrences", mode="before")
    @classmethod
    def _coerce_completed_occurrences(cls, value: Any) -> dict[str, Any]:
        return _coerce_occurrence_keys(value)


def _display_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


class StoredEvent(_StoredRecord):
    name: str = ""
    date: str | int | float | None = None
    external_id: str | None = Field(default=None, alias="externalId")
    notes: str | None = None
    reminder_user_set: bool = Field(default=False, alias="reminderUserSet")

    @field_validator("name", mode="before")
    @classmethod
    def _coerce_name(cls, value: Any) -> str:
        return _display_text(value)

    @field_validator("reminder_user_set", mode="before")
    @classmethod
    def _coerce_user_set(cls, value: Any) -> bool:
        return bool(value)

    @field_validator("external_id", "notes", mode="before")
    @classmethod
    def _coerce_optional_text(cls, value: Any) -> str | None:
        if value is None:
            return None
        return str(value)

    @property
    def imported(self) -> bool:
        if self.external_id:
            return True
        return isinstance(self.notes, str) and "[Imported" in self.notes


class StoredTask(_StoredRecord):
    title: str = ""
    due_date: str | int | float | None = Field(default=None, alias="dueDate")

    @field_validator("title", mode="before")
    @classmethod
    def _coerce_title(cls, value: Any) -> str:
        return _display_text(value)


class StoredPlannerBlock(_StoredRecord):
    id: str | None = None
    title: str = ""
    start_at: str | int | float | None = Field(default=None, alias="startAt")
    date: str | None = None
    start: str | None = None
    time_zone: str | None = Field(default=None, alias="timeZone")

    @field_validator("title", mode="before")
    @classmethod
    def _coerce_title(cls, value: Any) -> str:
        return _display_text(value)

    @field_validator("id", "date", "start", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> str | None:
        if value is None or value == "":
            return None
        return str(value)


class StoredSharedSubject(BaseModel):
    model_config = ConfigDict(extra="ignore")

    owner: str | None = None
    members: dict[str, Any] = Field(default_factory=dict)
    tasks: dict[str, Any] = Field(default_factory=dict)

    @field_validator("members", "tasks", mode="before")
    @classmethod
    def _coerce_mapping(cls, value: Any) -> dict[str, Any]:
        return value if isinstance(value, dict) else {}

    def recipients(self) -> list[str]:
        ordered: list[str] = []
        for user_id in [self.owner, *self.members.keys()]:
            if user_id and user_id not in ordered:
                ordered.append(user_id)
        return ordered


class SubscriptionKeys(BaseModel):
    model_config = ConfigDict(extra="allow")

    p256dh: str = Field(min_length=1)
    auth: str = Field(min_length=1)


class PushSubscriptionInfo(BaseModel):
    model_config = ConfigDict(extra="allow")

    endpoint: str = Field(min_length=1)
    keys: SubscriptionKeys


class CronResponse(BaseModel):
    ok: bool
    timestamp: datetime
    sent: int
    skipped: int
    failed: int


class DispatchRunResponse(BaseModel):
    run_id: str
    started_at: datetime
    finished_at: datetime | None = None
    status: DispatchRunStatus
    evaluated_count: int
    triggered_count: int
    sent_count: int
    skipped_count: int
    failed_count: int
    error_message: str | None = None
