"""SQLAlchemy 2.0 async models for the shared event/team records (PostgreSQL)."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, ForeignKey, Integer, String, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from teamsync.constants import DB_SCHEMA


class RemoteBase(DeclarativeBase):
    pass


class EventRecord(RemoteBase):
    __tablename__ = "events"
    __table_args__ = {"schema": DB_SCHEMA}

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    name: Mapped[str] = mapped_column(String(256), default="")
    # Team ids taking part in the event; arbitration reads competitors from here.
    roster: Mapped[list[int]] = mapped_column(JSONB, default=list)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class TeamRecord(RemoteBase):
    __tablename__ = "teams"
    __table_args__ = {"schema": DB_SCHEMA}

    event_id: Mapped[int] = mapped_column(
        Integer, ForeignKey(f"{DB_SCHEMA}.events.id", ondelete="CASCADE"), primary_key=True
    )
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    name: Mapped[str] = mapped_column(String(256), default="")
    points: Mapped[int] = mapped_column(Integer, default=0)
    # TeamActivityRecord entries: {id, complete, complete_time, data, valorate,
    # awarded_points, deleted, exclusive, ...}
    activities: Mapped[list[dict[str, Any]]] = mapped_column(JSONB, default=list)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def to_snapshot(self) -> dict[str, Any]:
        """Plain-dict view handed to subscribers and the reconciler."""
        return {
            "id": self.id,
            "event_id": self.event_id,
            "name": self.name,
            "points": self.points or 0,
            "activities": [dict(a) for a in (self.activities or [])],
        }
