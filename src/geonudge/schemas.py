"""入站数据校验（客户端上报的事件载荷）"""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field, field_validator

from geonudge.datamodel import Coordinate, EventKind


class EventPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    user_id: int = Field(gt=0)
    task_id: int = Field(gt=0)
    geofence_id: int = Field(gt=0)
    kind: EventKind
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    confidence: float = Field(default=1.0, ge=0, le=1)
    occurred_at: datetime | None = None
    client_event_id: str | None = Field(default=None, min_length=1, max_length=128)

    @field_validator("occurred_at")
    @classmethod
    def _to_utc(cls, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    @property
    def coordinate(self) -> Coordinate:
        return Coordinate(self.latitude, self.longitude)

    def observed_at(self, now: datetime) -> datetime:
        """客户端观测时间，缺省为 now，不晚于 now；精确到秒（与存储一致）"""
        observed = self.occurred_at if self.occurred_at is not None and self.occurred_at <= now else now
        return observed.replace(microsecond=0)


__all__ = ["EventPayload"]
