from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from geonudge.datamodel import ActionType, MuteDuration, NotificationStyle, Platform

MAX_BATCH_SIZE = 100


@dataclass
class RuntimeControl:
    shutdown_event: asyncio.Event
    started_at: float


class ShutdownRequest(BaseModel):
    reason: str = Field(default="manual")


class BatchEventsRequest(BaseModel):
    # 单个事件的校验在服务层逐条完成，格式错误只影响对应位置
    events: list[dict[str, Any]] = Field(min_length=1, max_length=MAX_BATCH_SIZE)


class OfflineSyncRequest(BaseModel):
    user_id: int = Field(gt=0)
    events: list[dict[str, Any]] = Field(min_length=1, max_length=MAX_BATCH_SIZE)


class NotificationActionRequest(BaseModel):
    user_id: int = Field(gt=0)
    action: ActionType
    task_id: int | None = Field(default=None, gt=0)
    mute_duration: MuteDuration = MuteDuration.PERMANENT


class PushTokenRequest(BaseModel):
    user_id: int = Field(gt=0)
    platform: Platform
    device_token: str = Field(min_length=1, max_length=4096)
    device_id: str | None = Field(default=None, max_length=255)
    app_version: str | None = Field(default=None, max_length=64)


class POIRefreshRequest(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)


class PurgeRequest(BaseModel):
    older_than_hours: int = Field(default=24, ge=0)


HHMM_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"


class QuietHoursModel(BaseModel):
    start: str = Field(pattern=HHMM_PATTERN)
    end: str = Field(pattern=HHMM_PATTERN)


class PreferencesRequest(BaseModel):
    timezone: str | None = Field(default=None, min_length=1, max_length=64)
    notification_style: NotificationStyle | None = None
    quiet_hours: QuietHoursModel | None = None
    clear_quiet_hours: bool = False


class FocusModeRequest(BaseModel):
    # 客户端上报专注模式的截止时间；null 表示已退出
    focus_until: datetime | None = None
