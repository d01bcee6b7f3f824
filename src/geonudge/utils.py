import math
from datetime import datetime, timezone
from typing import Iterable, Protocol
from zoneinfo import ZoneInfo

from geonudge.datamodel import Coordinate

__all__ = ["Clock", "SystemClock", "now_utc", "to_db_time", "from_db_time", "to_user_local",
           "haversine_m", "centroid", "miles_to_meters", "meters_to_miles",
           "EARTH_RADIUS_M", "METERS_PER_MILE"]

EARTH_RADIUS_M = 6371000.0
METERS_PER_MILE = 1609.344

_DB_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """墙上时钟，返回带时区的 UTC 时间"""

    def now(self) -> datetime:
        return now_utc()


def now_utc() -> datetime:
    """获取当前 UTC 时间"""
    return datetime.now(timezone.utc)


def to_db_time(dt: datetime | None) -> str | None:
    """datetime -> 'YYYY-MM-DD HH:MM:SS' (UTC)，字符串可直接按字典序比较"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime(_DB_TIME_FORMAT)


def from_db_time(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.strptime(value, _DB_TIME_FORMAT).replace(tzinfo=timezone.utc)


def to_user_local(dt: datetime, user_tz: str | None) -> datetime:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(ZoneInfo(user_tz or "UTC"))


def haversine_m(a: Coordinate, b: Coordinate) -> float:
    """两点间大圆距离（米）"""
    lat1 = math.radians(a.latitude)
    lat2 = math.radians(b.latitude)
    dlat = lat2 - lat1
    dlon = math.radians(b.longitude - a.longitude)

    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def centroid(coords: Iterable[Coordinate]) -> Coordinate:
    """坐标的算术平均；空输入返回 (0, 0)"""
    points = list(coords)
    if not points:
        return Coordinate(0.0, 0.0)
    return Coordinate(
        latitude=sum(p.latitude for p in points) / len(points),
        longitude=sum(p.longitude for p in points) / len(points),
    )


def miles_to_meters(miles: float) -> int:
    return round(miles * METERS_PER_MILE)


def meters_to_miles(meters: float) -> float:
    return meters / METERS_PER_MILE
