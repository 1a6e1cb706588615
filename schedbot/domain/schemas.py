"""Validated inputs for schedule and vote commands."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, field_validator

from schedbot.core.result import ValidationError
from schedbot.domain.entities import MAX_SLOTS, ResponseStatus
from schedbot.domain import timing

MAX_TITLE_LENGTH = 100
MAX_DESCRIPTION_LENGTH = 2000
MAX_COMMENT_LENGTH = 1000


class SlotInput(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: Optional[str] = Field(default=None, max_length=64)
    label: str = Field(min_length=1, max_length=100)

    @field_validator("label")
    @classmethod
    def _strip_label(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("slot label must not be blank")
        return value


def _as_slot_items(value):
    if isinstance(value, list):
        return [{"label": item} if isinstance(item, str) else item for item in value]
    return value


def _check_unique(slots: List[SlotInput]) -> List[SlotInput]:
    labels = [slot.label for slot in slots]
    if len(set(labels)) != len(labels):
        raise ValueError("slot labels must be unique")
    ids = [slot.id for slot in slots if slot.id]
    if len(set(ids)) != len(ids):
        raise ValueError("slot ids must be unique")
    return slots


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ScheduleDraft(BaseModel):
    guild_id: str = Field(min_length=1)
    channel_id: str = Field(min_length=1)
    author_id: str = Field(min_length=1)
    author_name: str = ""
    title: str = Field(min_length=1, max_length=MAX_TITLE_LENGTH)
    description: Optional[str] = Field(default=None, max_length=MAX_DESCRIPTION_LENGTH)
    slots: List[SlotInput] = Field(min_length=1, max_length=MAX_SLOTS)
    deadline: Optional[datetime] = None
    reminder_timings: Optional[List[str]] = None
    reminder_mentions: List[str] = Field(default_factory=list)

    @field_validator("title")
    @classmethod
    def _strip_title(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("title must not be blank")
        return value

    @field_validator("slots", mode="before")
    @classmethod
    def _coerce_slots(cls, value):
        return _as_slot_items(value)

    @field_validator("slots")
    @classmethod
    def _unique_slots(cls, value: List[SlotInput]) -> List[SlotInput]:
        return _check_unique(value)

    @field_validator("deadline")
    @classmethod
    def _deadline_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _aware(value)

    @field_validator("reminder_timings")
    @classmethod
    def _check_timings(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        if value is None:
            return None
        return timing.validate_timings(value)

    @field_validator("reminder_mentions")
    @classmethod
    def _check_mentions(cls, value: List[str]) -> List[str]:
        return timing.validate_mentions(value)


class ScheduleEdit(BaseModel):
    """Partial update; only fields explicitly set are applied."""

    title: Optional[str] = Field(default=None, min_length=1, max_length=MAX_TITLE_LENGTH)
    description: Optional[str] = Field(default=None, max_length=MAX_DESCRIPTION_LENGTH)
    deadline: Optional[datetime] = None
    add_slots: List[SlotInput] = Field(default_factory=list)
    reminder_timings: Optional[List[str]] = None
    reminder_mentions: Optional[List[str]] = None

    @field_validator("add_slots", mode="before")
    @classmethod
    def _coerce_slots(cls, value):
        return _as_slot_items(value)

    @field_validator("add_slots")
    @classmethod
    def _unique_slots(cls, value: List[SlotInput]) -> List[SlotInput]:
        return _check_unique(value)

    @field_validator("deadline")
    @classmethod
    def _deadline_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _aware(value)

    @field_validator("reminder_timings")
    @classmethod
    def _check_timings(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        if value is None:
            return None
        return timing.validate_timings(value)

    @field_validator("reminder_mentions")
    @classmethod
    def _check_mentions(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        if value is None:
            return None
        return timing.validate_mentions(value)


class VoteRequest(BaseModel):
    schedule_id: str = Field(min_length=1)
    guild_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    display_name: str = ""
    statuses: Dict[str, ResponseStatus] = Field(default_factory=dict)
    comment: Optional[str] = Field(default=None, max_length=MAX_COMMENT_LENGTH)


def to_validation_error(exc: PydanticValidationError) -> ValidationError:
    """Collapse a pydantic error into the first offending field."""

    first = exc.errors()[0]
    field = ".".join(str(part) for part in first.get("loc", ())) or "input"
    message = str(first.get("msg", "invalid value"))
    raw = first.get("input")
    value = raw if isinstance(raw, str) else None
    return ValidationError(field=field, message=message, value=value)


__all__ = [
    "MAX_TITLE_LENGTH",
    "MAX_DESCRIPTION_LENGTH",
    "MAX_COMMENT_LENGTH",
    "SlotInput",
    "ScheduleDraft",
    "ScheduleEdit",
    "VoteRequest",
    "to_validation_error",
]
