from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

__all__ = [
    "TaskStatus", "LocationType", "PlaceKind", "POICategory",
    "GeofenceType", "EventKind", "EventStatus",
    "NotificationType", "NotificationStyle", "ActionType", "DeliveryStatus",
    "QueueStatus", "Platform", "SnoozeDuration", "MuteDuration",
    "Coordinate", "QuietHours", "GeofenceRadii",
    "UserInfo", "Place", "Task", "POI",
    "GeofenceSpec", "Geofence", "GeofenceEvent", "ProcessingResult",
    "NotificationAction", "Notification", "ScheduledNotification",
    "QueuedEvent", "PushToken", "SendResult", "BulkDeliveryResult",
    "Snooze", "TaskMute",
    "APPROACH_TYPES",
]


# ----------------- 枚举 ----------------
class TaskStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    MUTED = "muted"


class LocationType(str, Enum):
    CUSTOM_PLACE = "custom_place"
    POI_CATEGORY = "poi_category"


class PlaceKind(str, Enum):
    HOME = "home"
    WORK = "work"
    CUSTOM = "custom"


class POICategory(str, Enum):
    GAS = "gas"
    PHARMACY = "pharmacy"
    GROCERY = "grocery"
    BANK = "bank"
    POST_OFFICE = "post_office"


class GeofenceType(str, Enum):
    APPROACH_5MI = "approach_5mi"
    APPROACH_3MI = "approach_3mi"
    APPROACH_1MI = "approach_1mi"
    ARRIVAL = "arrival"
    POST_ARRIVAL = "post_arrival"


APPROACH_TYPES = frozenset({GeofenceType.APPROACH_5MI, GeofenceType.APPROACH_3MI, GeofenceType.APPROACH_1MI})


class EventKind(str, Enum):
    ENTER = "enter"
    EXIT = "exit"
    DWELL = "dwell"


class EventStatus(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    COOLDOWN = "cooldown"
    FAILED = "failed"


class NotificationType(str, Enum):
    APPROACH = "approach"
    ARRIVAL = "arrival"
    POST_ARRIVAL = "post_arrival"
    BUNDLE = "bundle"


class NotificationStyle(str, Enum):
    MINIMAL = "minimal"
    STANDARD = "standard"
    DETAILED = "detailed"


class ActionType(str, Enum):
    COMPLETE = "complete"
    SNOOZE_15M = "snooze_15m"
    SNOOZE_1H = "snooze_1h"
    SNOOZE_TODAY = "snooze_today"
    OPEN_MAP = "open_map"
    MUTE = "mute"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    FAILED = "failed"


class QueueStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Platform(str, Enum):
    IOS = "ios"
    ANDROID = "android"


class SnoozeDuration(str, Enum):
    MINUTES_15 = "15m"
    HOUR_1 = "1h"
    TODAY = "today"


class MuteDuration(str, Enum):
    HOUR_1 = "1h"
    HOURS_4 = "4h"
    HOURS_8 = "8h"
    HOURS_24 = "24h"
    UNTIL_TOMORROW = "until_tomorrow"
    PERMANENT = "permanent"


# ----------------- 基础值对象 ----------------
@dataclass(frozen=True)
class Coordinate:
    latitude: float
    longitude: float


@dataclass(frozen=True)
class QuietHours:
    start: str  # 格式: "HH:MM"，用户本地时间
    end: str    # 格式: "HH:MM"，允许跨夜 (start > end)


@dataclass(frozen=True)
class GeofenceRadii:
    approach_miles: Optional[float] = None
    arrival_meters: Optional[float] = None
    post_arrival: bool = False


# ----------------- 外部实体 (用户/地点/任务) ----------------
@dataclass
class UserInfo:
    user_id: int
    timezone: str = "UTC"  # IANA时区字符串，例如 "America/Los_Angeles"
    notification_style: NotificationStyle = NotificationStyle.STANDARD
    quiet_hours: Optional[QuietHours] = None
    focus_until: Optional[datetime] = None
    created_at: Optional[datetime] = None


@dataclass
class Place:
    place_id: int
    user_id: int
    name: str
    coordinate: Coordinate
    kind: PlaceKind = PlaceKind.CUSTOM
    default_radii: Optional[GeofenceRadii] = None


@dataclass
class Task:
    task_id: int
    user_id: int
    title: str
    location_type: LocationType
    description: Optional[str] = None
    place_id: Optional[int] = None
    poi_category: Optional[POICategory] = None
    custom_radii: Optional[GeofenceRadii] = None
    status: TaskStatus = TaskStatus.ACTIVE
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def location_consistent(self) -> bool:
        """place_id 与 poi_category 恰有一个被设置，且与 location_type 一致"""
        if self.location_type == LocationType.CUSTOM_PLACE:
            return self.place_id is not None and self.poi_category is None
        return self.poi_category is not None and self.place_id is None


@dataclass(frozen=True)
class POI:
    poi_id: str
    name: str
    category: POICategory
    coordinate: Coordinate


# ----------------- 地理围栏 ----------------
@dataclass(frozen=True)
class GeofenceSpec:
    task_id: int
    user_id: int
    center: Coordinate
    radius_m: float
    geofence_type: GeofenceType

    @property
    def is_template(self) -> bool:
        return self.center.latitude == 0 and self.center.longitude == 0


@dataclass
class Geofence:
    geofence_id: int
    task_id: int
    user_id: int
    center: Coordinate
    radius_m: float
    geofence_type: GeofenceType
    is_active: bool = True
    cooldown_until: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @property
    def is_template(self) -> bool:
        """POI 类别任务的模板围栏以 (0, 0) 作为占位中心"""
        return self.center.latitude == 0 and self.center.longitude == 0


# ----------------- 事件 ----------------
@dataclass
class GeofenceEvent:
    event_id: int
    user_id: int
    task_id: int
    geofence_id: int
    kind: EventKind
    coordinate: Coordinate
    occurred_at: datetime
    confidence: float = 1.0
    status: EventStatus = EventStatus.PENDING
    reason: Optional[str] = None
    client_event_id: Optional[str] = None
    cooldown_until: Optional[datetime] = None
    bundled_with: Optional[str] = None  # 所属 bundle 的 id (即主事件的 notification_id)
    notify: bool = False
    notification_sent: bool = False
    created_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None

    @property
    def notification_id(self) -> str:
        return f"notification_{self.event_id}"


@dataclass
class ProcessingResult:
    event_id: Optional[int]
    accepted: bool
    notify: bool
    status: Optional[EventStatus]
    reason: str
    bundled_with: Optional[str] = None
    cooldown_minutes: Optional[int] = None
    notification_id: Optional[str] = None
    queued_item_id: Optional[int] = None


# ----------------- 通知 ----------------
@dataclass(frozen=True)
class NotificationAction:
    action_id: str
    title: str
    type: ActionType
    destructive: bool = False


@dataclass
class Notification:
    notification_id: str
    user_id: int
    task_id: int
    type: NotificationType
    title: str
    body: str
    actions: List[NotificationAction] = field(default_factory=list)
    event_ids: List[int] = field(default_factory=list)
    task_ids: List[int] = field(default_factory=list)
    location: Optional[Coordinate] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_bundle(self) -> bool:
        return self.type == NotificationType.BUNDLE


@dataclass
class ScheduledNotification:
    scheduled_id: str
    notification: Notification
    user_id: int
    scheduled_at: datetime
    status: DeliveryStatus = DeliveryStatus.PENDING
    attempts: int = 0
    in_flight: bool = False
    last_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None
    reason: Optional[str] = None
    created_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None


# ----------------- 重试队列 ----------------
@dataclass
class QueuedEvent:
    item_id: int
    user_id: int
    payload: Dict[str, Any]
    status: QueueStatus = QueueStatus.PENDING
    attempts: int = 0
    next_retry_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None
    created_at: Optional[datetime] = None


# ----------------- 推送 ----------------
@dataclass
class PushToken:
    token_id: int
    user_id: int
    platform: Platform
    device_token: str
    is_active: bool = True
    failure_count: int = 0
    last_error: Optional[str] = None
    last_used_at: Optional[datetime] = None
    device_id: Optional[str] = None
    app_version: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class SendResult:
    success: bool
    platform: Platform
    device_token: str
    message_id: Optional[str] = None
    error: Optional[str] = None
    retryable: bool = False
    permanent: bool = False


@dataclass
class BulkDeliveryResult:
    results: List[SendResult] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failure_count(self) -> int:
        return sum(1 for r in self.results if not r.success)

    @property
    def delivered(self) -> bool:
        return self.success_count > 0

    @property
    def retryable(self) -> bool:
        """至少一个 token 的失败是暂时性的"""
        return any(not r.success and r.retryable for r in self.results)


# ----------------- 稍后提醒 / 静音 ----------------
@dataclass
class Snooze:
    snooze_id: int
    user_id: int
    task_id: int
    duration: SnoozeDuration
    snooze_until: datetime
    notification_id: Optional[str] = None
    status: str = "active"  # 'active', 'expired', 'cancelled'
    snooze_count: int = 1


@dataclass
class TaskMute:
    mute_id: int
    user_id: int
    task_id: int
    duration: MuteDuration
    mute_until: Optional[datetime] = None  # None 表示永久
    status: str = "active"  # 'active', 'expired', 'cancelled'
    reason: Optional[str] = None
