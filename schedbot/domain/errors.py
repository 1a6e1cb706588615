from __future__ import annotations

from dataclasses import dataclass


class InvalidTimingFormat(ValueError):
    """Reminder offset does not match ``<integer><unit>``."""

    def __init__(self, token: object) -> None:
        super().__init__(f"Invalid timing format: {token!r}")
        self.token = token


class InvalidMentionFormat(ValueError):
    """Mention token is outside the supported grammar."""

    def __init__(self, token: object) -> None:
        super().__init__(f"Invalid mention format: {token!r}")
        self.token = token


class StaleWriteError(RuntimeError):
    """Conditional write matched no row: someone else wrote first."""

    def __init__(self, entity_type: str, entity_id: object) -> None:
        super().__init__(f"{entity_type} {entity_id} was modified concurrently")
        self.entity_type = entity_type
        self.entity_id = entity_id


@dataclass(frozen=True, slots=True)
class PermissionDeniedError:
    schedule_id: str
    user_id: str
    action: str

    def __str__(self) -> str:
        return f"User {self.user_id} may not {self.action} schedule {self.schedule_id}"


@dataclass(frozen=True, slots=True)
class ScheduleClosedError:
    schedule_id: str

    def __str__(self) -> str:
        return f"Schedule {self.schedule_id} is closed"


@dataclass(frozen=True, slots=True)
class AlreadyClosedError:
    schedule_id: str

    def __str__(self) -> str:
        return f"Schedule {self.schedule_id} is already closed"


@dataclass(frozen=True, slots=True)
class NotClosedError:
    schedule_id: str

    def __str__(self) -> str:
        return f"Schedule {self.schedule_id} is not closed"


__all__ = [
    "InvalidTimingFormat",
    "InvalidMentionFormat",
    "StaleWriteError",
    "PermissionDeniedError",
    "ScheduleClosedError",
    "AlreadyClosedError",
    "NotClosedError",
]
