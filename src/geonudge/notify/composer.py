"""通知内容模板

纯函数部分按 (通知类型, 用户风格) 渲染标题/正文/操作按钮；
NotificationComposer 负责加载事件相关的任务、地点和用户偏好，再交给模板渲染。
"""

import math
from dataclasses import dataclass

import geonudge.storage.geofence as geofence_store
import geonudge.storage.task as task_store
import geonudge.storage.user as user_store
from geonudge.datamodel import (
    APPROACH_TYPES, ActionType, GeofenceType, LocationType, Notification, NotificationAction, NotificationStyle,
    NotificationType, Task,
)
from geonudge.errors import ValidationError
from geonudge.geofence.poi import display_name
from geonudge.pipeline.bundling import Bundle, bundle_message
from geonudge.utils import haversine_m

ONE_MILE_M = 1609
_MILE_DIVISOR = 1609.34

ACTIONS = {
    ActionType.COMPLETE: NotificationAction("complete", "Complete", ActionType.COMPLETE),
    ActionType.SNOOZE_15M: NotificationAction("snooze_15m", "Snooze 15m", ActionType.SNOOZE_15M),
    ActionType.SNOOZE_1H: NotificationAction("snooze_1h", "Snooze 1h", ActionType.SNOOZE_1H),
    ActionType.SNOOZE_TODAY: NotificationAction("snooze_today", "Snooze Today", ActionType.SNOOZE_TODAY),
    ActionType.OPEN_MAP: NotificationAction("open_map", "Open Map", ActionType.OPEN_MAP),
    ActionType.MUTE: NotificationAction("mute", "Mute", ActionType.MUTE, destructive=True),
}

ACTION_SETS = {
    NotificationType.APPROACH: [ActionType.COMPLETE, ActionType.SNOOZE_15M, ActionType.OPEN_MAP, ActionType.MUTE],
    NotificationType.ARRIVAL: [ActionType.COMPLETE, ActionType.SNOOZE_15M, ActionType.SNOOZE_1H, ActionType.MUTE],
    NotificationType.POST_ARRIVAL: [
        ActionType.COMPLETE, ActionType.SNOOZE_1H, ActionType.SNOOZE_TODAY, ActionType.MUTE,
    ],
    NotificationType.BUNDLE: [ActionType.COMPLETE, ActionType.SNOOZE_1H, ActionType.OPEN_MAP, ActionType.MUTE],
}


@dataclass
class Rendered:
    title: str
    body: str
    actions: list[NotificationAction]


def _round_half_up(value: float, digits: int = 0) -> float:
    factor = 10 ** digits
    return math.floor(value * factor + 0.5) / factor


def _miles(distance_m: float) -> float:
    return _round_half_up(distance_m / _MILE_DIVISOR, 1)


def format_distance(distance_m: float) -> str:
    if distance_m >= ONE_MILE_M:
        miles = _miles(distance_m)
        return f"{miles:g} mile{'' if miles == 1 else 's'}"
    if distance_m >= 100:
        return f"{int(_round_half_up(distance_m / 10) * 10)}m"
    return "very close"


def notification_type_for(geofence_type: GeofenceType) -> NotificationType:
    if geofence_type in APPROACH_TYPES:
        return NotificationType.APPROACH
    return NotificationType(GeofenceType(geofence_type).value)


def actions_for(notification_type: NotificationType, style: NotificationStyle) -> list[NotificationAction]:
    actions = [ACTIONS[a] for a in ACTION_SETS[notification_type]]
    if style == NotificationStyle.MINIMAL and notification_type != NotificationType.BUNDLE:
        return actions[:2]
    return actions


def render_approach(title: str, location: str, distance_m: float | None, style: NotificationStyle,
                    description: str | None = None) -> Rendered:
    if distance_m is not None and distance_m > ONE_MILE_M:
        heading = f"Approaching {location}"
        body = f"You're {_miles(distance_m):g} miles from {location} — {title}?"
    else:
        heading = f"Near {location}"
        body = f"You're close to {location} — {title}?"
    if style == NotificationStyle.DETAILED and description:
        body += f"\n{description}"
    return Rendered(heading, body, actions_for(NotificationType.APPROACH, style))


def render_arrival(title: str, location: str, style: NotificationStyle, description: str | None = None) -> Rendered:
    body = f"Arriving at {location} — {title} now?"
    if style == NotificationStyle.DETAILED and description:
        body += f"\n{description}"
    elif style == NotificationStyle.MINIMAL:
        body = f"{title} now?"
    return Rendered(f"Arrived at {location}", body, actions_for(NotificationType.ARRIVAL, style))


def render_post_arrival(title: str, location: str, style: NotificationStyle,
                        description: str | None = None) -> Rendered:
    body = f"Still need to {title.lower()}?"
    if style == NotificationStyle.DETAILED and description:
        body += f"\n{description}"
    elif style == NotificationStyle.STANDARD:
        body = f"Still at {location} — {title.lower()}?"
    return Rendered(f"Still at {location}", body, actions_for(NotificationType.POST_ARRIVAL, style))


def render_bundle(event_count: int, task_count: int, location: str, style: NotificationStyle) -> Rendered:
    body = bundle_message(event_count, task_count)
    if style == NotificationStyle.DETAILED:
        body += f" near {location}"
    return Rendered(f"{event_count} reminders nearby", body, actions_for(NotificationType.BUNDLE, style))


async def location_name_for(task: Task) -> str:
    if task.location_type == LocationType.POI_CATEGORY:
        return display_name(task.poi_category)
    place = await user_store.get_place_by_id(task.place_id)
    return place.name if place else "your location"


class NotificationComposer:
    """把 (可能是打包的) 已处理事件变成具体通知"""

    async def compose(self, bundle: Bundle) -> Notification:
        primary = bundle.primary
        geofence = await geofence_store.get_geofence_by_id(primary.geofence_id)
        task = await task_store.get_task_by_id(primary.task_id)
        user = await user_store.get_user_by_id(primary.user_id)
        if geofence is None or task is None or user is None:
            raise ValidationError(f"通知引用的围栏/任务/用户已不存在: event_id={primary.event_id}")

        style = user.notification_style
        location = await location_name_for(task)
        notification_type = notification_type_for(geofence.geofence_type)
        distance_m = None if geofence.is_template else haversine_m(primary.coordinate, geofence.center)

        if bundle.size > 1:
            rendered = render_bundle(bundle.size, len(bundle.task_ids), location, style)
            notification_type = NotificationType.BUNDLE
        elif notification_type == NotificationType.APPROACH:
            rendered = render_approach(task.title, location, distance_m, style, task.description)
        elif notification_type == NotificationType.ARRIVAL:
            rendered = render_arrival(task.title, location, style, task.description)
        else:
            rendered = render_post_arrival(task.title, location, style, task.description)

        return Notification(
            notification_id=bundle.bundle_id,
            user_id=primary.user_id,
            task_id=primary.task_id,
            type=notification_type,
            title=rendered.title,
            body=rendered.body,
            actions=rendered.actions,
            event_ids=bundle.event_ids,
            task_ids=bundle.task_ids,
            location=bundle.center if bundle.size > 1 else geofence.center,
            metadata={
                "geofence_id": geofence.geofence_id,
                "geofence_type": geofence.geofence_type.value,
                "location_name": location,
                "distance": format_distance(distance_m) if distance_m is not None else None,
                "style": style.value,
            },
        )


__all__ = [
    "NotificationComposer", "Rendered", "ACTIONS", "ACTION_SETS",
    "format_distance", "notification_type_for", "actions_for",
    "render_approach", "render_arrival", "render_post_arrival", "render_bundle", "location_name_for",
]
