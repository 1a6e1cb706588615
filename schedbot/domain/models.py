from datetime import datetime, timezone
from typing import List, Optional
import uuid

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Schedule(Base):
    __tablename__ = "schedules"
    __table_args__ = (
        UniqueConstraint("guild_id", "message_id", name="uq_schedules_guild_message"),
        Index("ix_schedules_guild_status", "guild_id", "status"),
        Index("ix_schedules_status_deadline", "status", "deadline"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    guild_id: Mapped[str] = mapped_column(String(64), nullable=False)
    channel_id: Mapped[str] = mapped_column(String(64), nullable=False)
    message_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    title: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    slots: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    deadline: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="open")
    reminder_timings: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    reminder_mentions: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    reminders_sent: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    author_id: Mapped[str] = mapped_column(String(64), nullable=False)
    author_name: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    total_responses: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    responses: Mapped[List["ScheduleResponse"]] = relationship(
        back_populates="schedule",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return f"<Schedule {self.id} {self.status} v{self.version}>"


class ScheduleResponse(Base):
    __tablename__ = "schedule_responses"
    __table_args__ = (
        UniqueConstraint("schedule_id", "user_id", name="uq_schedule_responses_user"),
        Index("ix_schedule_responses_guild_schedule", "guild_id", "schedule_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    schedule_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("schedules.id", ondelete="CASCADE"), nullable=False
    )
    guild_id: Mapped[str] = mapped_column(String(64), nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    display_name: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    statuses: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    comment: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    schedule: Mapped["Schedule"] = relationship(back_populates="responses")

    def __repr__(self) -> str:
        return f"<ScheduleResponse {self.schedule_id}:{self.user_id} v{self.version}>"


__all__ = ["Schedule", "ScheduleResponse"]
