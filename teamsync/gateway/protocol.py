from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator


class CompletionParams(BaseModel):
    """A completion attempt reported by a team device."""

    activity: dict[str, Any] = Field(default_factory=dict)
    activity_id: int | None = None
    success: bool = True
    media: dict[str, Any] | None = None
    valorate_value: int | None = None
    points_to_add: int | None = None

    @field_validator("valorate_value")
    @classmethod
    def _validate_valorate(cls, v: int | None) -> int | None:
        if v is not None and v not in (0, 1):
            msg = f"valorate_value must be 0 or 1 (got {v})"
            raise ValueError(msg)
        return v

    def resolved_activity_id(self) -> int:
        if self.activity_id is not None:
            return self.activity_id
        if "id" in self.activity:
            return int(self.activity["id"])
        msg = "activity_id missing (neither activity_id nor activity.id given)"
        raise ValueError(msg)


class ArbitrationParams(BaseModel):
    activity: dict[str, Any] = Field(default_factory=dict)
    success: bool = True
    media: dict[str, Any] | None = None
    valorate_value: int | None = None
    points_to_add: int | None = None


class FieldUpdateParams(BaseModel):
    """Admin edit of one activity entry."""

    field_updates: dict[str, Any] = Field(default_factory=dict)
    fields_to_delete: list[str] = Field(default_factory=list)
    points_to_add: int | None = None

    @field_validator("field_updates")
    @classmethod
    def _forbid_id(cls, v: dict[str, Any]) -> dict[str, Any]:
        if "id" in v:
            msg = "field_updates must not change the activity id"
            raise ValueError(msg)
        return v


class ConnectivityParams(BaseModel):
    online: bool


class ReconnectParams(BaseModel):
    only_unhealthy: bool = False


class ErrorBody(BaseModel):
    code: str
    message: str
