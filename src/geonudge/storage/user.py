"""用户与地点存储（外部协作者的最小实现，事件校验与围栏生成需要按 id 查找）"""

from datetime import datetime

import geonudge.storage.db_config as db_config
from geonudge.datamodel import (
    Coordinate, GeofenceRadii, NotificationStyle, Place, PlaceKind, QuietHours, UserInfo,
)
from geonudge.logger import logger
from geonudge.utils import from_db_time, to_db_time


def _ensure_conn():
    if db_config.conn is None:
        raise RuntimeError("数据库未初始化，请先调用 init_db()")


def _row_to_user(row) -> UserInfo:
    quiet_hours = None
    if row["quiet_hours_start"] and row["quiet_hours_end"]:
        quiet_hours = QuietHours(start=row["quiet_hours_start"], end=row["quiet_hours_end"])
    return UserInfo(
        user_id=row["user_id"],
        timezone=row["timezone"],
        notification_style=NotificationStyle(row["notification_style"]),
        quiet_hours=quiet_hours,
        focus_until=from_db_time(row["focus_until"]),
        created_at=from_db_time(row["created_at"]),
    )


def _row_to_place(row) -> Place:
    default_radii = None
    if row["approach_miles"] is not None or row["arrival_meters"] is not None or row["post_arrival"]:
        default_radii = GeofenceRadii(
            approach_miles=row["approach_miles"],
            arrival_meters=row["arrival_meters"],
            post_arrival=bool(row["post_arrival"]),
        )
    return Place(
        place_id=row["place_id"],
        user_id=row["user_id"],
        name=row["name"],
        coordinate=Coordinate(row["latitude"], row["longitude"]),
        kind=PlaceKind(row["kind"]),
        default_radii=default_radii,
    )


async def create_user(
    timezone: str = "UTC",
    notification_style: NotificationStyle = NotificationStyle.STANDARD,
    quiet_hours: QuietHours | None = None,
) -> UserInfo:
    _ensure_conn()
    async with db_config.conn.execute(
        "INSERT INTO users (timezone, notification_style, quiet_hours_start, quiet_hours_end) VALUES (?, ?, ?, ?)",
        (
            timezone,
            NotificationStyle(notification_style).value,
            quiet_hours.start if quiet_hours else None,
            quiet_hours.end if quiet_hours else None,
        ),
    ) as cursor:
        user_id = cursor.lastrowid
    await db_config.conn.commit()
    logger.info(f"创建新用户: user_id={user_id}, timezone={timezone}")
    return await get_user_by_id(user_id)


async def get_user_by_id(user_id: int) -> UserInfo | None:
    """通过用户 ID 获取用户信息"""
    _ensure_conn()
    async with db_config.conn.execute("SELECT * FROM users WHERE user_id = ?", (user_id,)) as cursor:
        row = await cursor.fetchone()
    return _row_to_user(row) if row else None


async def update_user_preferences(
    user_id: int,
    *,
    timezone: str | None = None,
    notification_style: NotificationStyle | None = None,
    quiet_hours: QuietHours | None = None,
    clear_quiet_hours: bool = False,
) -> None:
    _ensure_conn()
    sets, params = [], []
    if timezone is not None:
        sets.append("timezone = ?")
        params.append(timezone)
    if notification_style is not None:
        sets.append("notification_style = ?")
        params.append(NotificationStyle(notification_style).value)
    if quiet_hours is not None:
        sets.append("quiet_hours_start = ?, quiet_hours_end = ?")
        params.extend([quiet_hours.start, quiet_hours.end])
    elif clear_quiet_hours:
        sets.append("quiet_hours_start = NULL, quiet_hours_end = NULL")
    if not sets:
        return
    params.append(user_id)
    await db_config.conn.execute(f"UPDATE users SET {', '.join(sets)} WHERE user_id = ?", params)
    await db_config.conn.commit()
    logger.trace(f"更新用户偏好: user_id={user_id}")


async def set_focus_until(user_id: int, focus_until: datetime | None) -> None:
    """客户端上报的专注模式截止时间；None 表示已退出专注模式"""
    _ensure_conn()
    await db_config.conn.execute(
        "UPDATE users SET focus_until = ? WHERE user_id = ?", (to_db_time(focus_until), user_id)
    )
    await db_config.conn.commit()
    logger.trace(f"更新专注模式: user_id={user_id}, focus_until={focus_until}")


async def create_place(
    user_id: int,
    name: str,
    coordinate: Coordinate,
    kind: PlaceKind = PlaceKind.CUSTOM,
    default_radii: GeofenceRadii | None = None,
) -> Place:
    _ensure_conn()
    async with db_config.conn.execute(
        "INSERT INTO places (user_id, name, latitude, longitude, kind, approach_miles, arrival_meters, post_arrival) "
        "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
        (
            user_id, name, coordinate.latitude, coordinate.longitude, PlaceKind(kind).value,
            default_radii.approach_miles if default_radii else None,
            default_radii.arrival_meters if default_radii else None,
            int(default_radii.post_arrival) if default_radii else 0,
        ),
    ) as cursor:
        place_id = cursor.lastrowid
    await db_config.conn.commit()
    logger.trace(f"创建地点: place_id={place_id}, user_id={user_id}, name={name}, kind={kind}")
    return await get_place_by_id(place_id)


async def get_place_by_id(place_id: int) -> Place | None:
    _ensure_conn()
    async with db_config.conn.execute("SELECT * FROM places WHERE place_id = ?", (place_id,)) as cursor:
        row = await cursor.fetchone()
    return _row_to_place(row) if row else None


__all__ = [
    "create_user", "get_user_by_id", "update_user_preferences", "set_focus_until",
    "create_place", "get_place_by_id",
]
