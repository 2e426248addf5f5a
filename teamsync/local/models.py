"""SQLAlchemy 2.0 models for the client-local durable store (SQLite)."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import JSON, Boolean, Float, Index, Integer, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from teamsync.constants import COMPLETIONS_TABLE, LOCAL_COMPLETED_TABLE


def activity_key(event_id: int, team_id: int, activity_id: int) -> str:
    """Composite primary key of a ledger mark: '{event}_{team}_{activity}'."""
    return f"{event_id}_{team_id}_{activity_id}"


class LocalBase(DeclarativeBase):
    pass


class CompletionRecord(LocalBase):
    __tablename__ = COMPLETIONS_TABLE

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[int] = mapped_column(Integer)
    team_id: Mapped[int] = mapped_column(Integer)
    activity_id: Mapped[int] = mapped_column(Integer)
    activity_snapshot: Mapped[dict] = mapped_column(JSON, default=dict)
    success: Mapped[bool] = mapped_column(Boolean, default=True)
    media: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    valorate_value: Mapped[int | None] = mapped_column(Integer, nullable=True)
    points_to_add: Mapped[int | None] = mapped_column(Integer, nullable=True)
    enqueued_at: Mapped[float] = mapped_column(Float)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    last_retry_at: Mapped[float | None] = mapped_column(Float, nullable=True)


class LocalCompletionRecord(LocalBase):
    __tablename__ = LOCAL_COMPLETED_TABLE
    __table_args__ = (Index("ix_local_completed_event_team", "event_id", "team_id"),)

    activity_key: Mapped[str] = mapped_column(String(64), primary_key=True)
    event_id: Mapped[int] = mapped_column(Integer)
    team_id: Mapped[int] = mapped_column(Integer)
    activity_id: Mapped[int] = mapped_column(Integer)
    completed_at: Mapped[float] = mapped_column(Float)
    synced: Mapped[bool] = mapped_column(Boolean, default=False)
    synced_at: Mapped[float | None] = mapped_column(Float, nullable=True)


@dataclass
class CompletionJob:
    """A pending sync of one completion attempt.

    `id` is assigned by the store on enqueue. Negative ids mark jobs held
    in memory because the local store was unavailable.
    """

    event_id: int
    team_id: int
    activity_id: int
    activity_snapshot: dict[str, Any] = field(default_factory=dict)
    success: bool = True
    media: dict[str, Any] | None = None
    valorate_value: int | None = None
    points_to_add: int | None = None
    enqueued_at: float = field(default_factory=time.time)
    retry_count: int = 0
    last_retry_at: float | None = None
    id: int | None = None

    @property
    def exclusive(self) -> bool:
        return bool(self.activity_snapshot.get("exclusive", False))

    @property
    def key(self) -> str:
        return activity_key(self.event_id, self.team_id, self.activity_id)

    @classmethod
    def from_record(cls, record: CompletionRecord) -> CompletionJob:
        return cls(
            id=record.id,
            event_id=record.event_id,
            team_id=record.team_id,
            activity_id=record.activity_id,
            activity_snapshot=dict(record.activity_snapshot or {}),
            success=record.success,
            media=record.media,
            valorate_value=record.valorate_value,
            points_to_add=record.points_to_add,
            enqueued_at=record.enqueued_at,
            retry_count=record.retry_count,
            last_retry_at=record.last_retry_at,
        )

    def to_record(self) -> CompletionRecord:
        return CompletionRecord(
            event_id=self.event_id,
            team_id=self.team_id,
            activity_id=self.activity_id,
            activity_snapshot=self.activity_snapshot,
            success=self.success,
            media=self.media,
            valorate_value=self.valorate_value,
            points_to_add=self.points_to_add,
            enqueued_at=self.enqueued_at,
            retry_count=self.retry_count,
            last_retry_at=self.last_retry_at,
        )


@dataclass
class LocalCompletionMark:
    """Client-local assertion that an activity is complete."""

    event_id: int
    team_id: int
    activity_id: int
    completed_at: float = field(default_factory=time.time)
    synced: bool = False
    synced_at: float | None = None

    @property
    def key(self) -> str:
        return activity_key(self.event_id, self.team_id, self.activity_id)

    @classmethod
    def from_record(cls, record: LocalCompletionRecord) -> LocalCompletionMark:
        return cls(
            event_id=record.event_id,
            team_id=record.team_id,
            activity_id=record.activity_id,
            completed_at=record.completed_at,
            synced=record.synced,
            synced_at=record.synced_at,
        )
