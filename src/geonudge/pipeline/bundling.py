"""事件打包

同一用户在 500 m、5 分钟内类型兼容的事件合并为一条通知（approach 只与 approach 合并，
arrival 与 arrival，post_arrival 与 post_arrival）。最早的、未被打包且通知尚未送达的事件作为主事件，
它的 notification_id 同时作为 bundle id；每个 bundle 最多 5 个事件。
"""

from dataclasses import dataclass, field
from datetime import timedelta

import geonudge.storage.geofence_event as event_store
from geonudge.config.settings import BUNDLE_MAX_EVENTS, BUNDLE_RADIUS_METERS, BUNDLE_WINDOW_MINUTES
from geonudge.datamodel import APPROACH_TYPES, Coordinate, GeofenceEvent, GeofenceType
from geonudge.logger import logger
from geonudge.utils import centroid, haversine_m


def type_group(geofence_type: GeofenceType) -> str:
    if geofence_type in APPROACH_TYPES:
        return "approach"
    return GeofenceType(geofence_type).value


@dataclass
class Bundle:
    bundle_id: str
    primary: GeofenceEvent
    members: list[GeofenceEvent] = field(default_factory=list)

    @property
    def events(self) -> list[GeofenceEvent]:
        return [self.primary, *self.members]

    @property
    def size(self) -> int:
        return 1 + len(self.members)

    @property
    def event_ids(self) -> list[int]:
        return [e.event_id for e in self.events]

    @property
    def task_ids(self) -> list[int]:
        seen: list[int] = []
        for e in self.events:
            if e.task_id not in seen:
                seen.append(e.task_id)
        return seen

    @property
    def center(self) -> Coordinate:
        return centroid(e.coordinate for e in self.events)


def bundle_message(event_count: int, task_count: int) -> str:
    if task_count <= 1:
        return f"You have {event_count} reminders for this area"
    return f"You have {event_count} reminders for {task_count} tasks in this area"


class BundlingEngine:
    def __init__(
        self,
        radius_m: float = BUNDLE_RADIUS_METERS,
        window_minutes: int = BUNDLE_WINDOW_MINUTES,
        max_events: int = BUNDLE_MAX_EVENTS,
    ) -> None:
        self.radius_m = radius_m
        self.window = timedelta(minutes=window_minutes)
        self.max_events = max_events

    async def find_bundle(self, event: GeofenceEvent, geofence_type: GeofenceType) -> str | None:
        """返回事件应并入的 bundle id；没有可并入的主事件（或都已满）时返回 None，事件自己成为主事件"""
        group = type_group(geofence_type)
        candidates = await event_store.find_bundle_primaries(
            event.user_id, event.occurred_at - self.window, event.occurred_at + self.window, event.event_id
        )
        for primary, primary_type in candidates:
            if type_group(primary_type) != group:
                continue
            if haversine_m(primary.coordinate, event.coordinate) > self.radius_m:
                continue
            members = await event_store.list_bundle_members(primary.notification_id)
            if 1 + len(members) >= self.max_events:
                logger.debug(f"bundle 已满: bundle_id={primary.notification_id}, size={1 + len(members)}")
                continue
            return primary.notification_id
        return None

    async def load(self, primary: GeofenceEvent) -> Bundle:
        members = await event_store.list_bundle_members(primary.notification_id)
        return Bundle(bundle_id=primary.notification_id, primary=primary, members=members)


__all__ = ["BundlingEngine", "Bundle", "bundle_message", "type_group"]
