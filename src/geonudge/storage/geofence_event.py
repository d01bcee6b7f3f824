from datetime import datetime

import geonudge.storage.db_config as db_config
from geonudge.datamodel import Coordinate, EventKind, EventStatus, GeofenceEvent, GeofenceType
from geonudge.logger import logger
from geonudge.utils import from_db_time, to_db_time


def _ensure_conn():
    if db_config.conn is None:
        raise RuntimeError("数据库未初始化，请先调用 init_db()")


def _row_to_event(row) -> GeofenceEvent:
    return GeofenceEvent(
        event_id=row["event_id"],
        user_id=row["user_id"],
        task_id=row["task_id"],
        geofence_id=row["geofence_id"],
        kind=EventKind(row["kind"]),
        coordinate=Coordinate(row["latitude"], row["longitude"]),
        occurred_at=from_db_time(row["occurred_at"]),
        confidence=row["confidence"],
        status=EventStatus(row["status"]),
        reason=row["reason"],
        client_event_id=row["client_event_id"],
        cooldown_until=from_db_time(row["cooldown_until"]),
        bundled_with=row["bundled_with"],
        notify=bool(row["notify"]),
        notification_sent=bool(row["notification_sent"]),
        created_at=from_db_time(row["created_at"]),
        processed_at=from_db_time(row["processed_at"]),
    )


async def create_event(
    user_id: int,
    task_id: int,
    geofence_id: int,
    kind: EventKind,
    coordinate: Coordinate,
    occurred_at: datetime,
    created_at: datetime,
    confidence: float = 1.0,
    client_event_id: str | None = None,
) -> GeofenceEvent:
    """写入一条 pending 状态的事件"""
    _ensure_conn()
    async with db_config.conn.execute(
        "INSERT INTO geofence_events (user_id, task_id, geofence_id, kind, latitude, longitude, confidence, "
        "status, client_event_id, occurred_at, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, 'pending', ?, ?, ?)",
        (
            user_id, task_id, geofence_id, EventKind(kind).value, coordinate.latitude, coordinate.longitude,
            confidence, client_event_id, to_db_time(occurred_at), to_db_time(created_at),
        ),
    ) as cursor:
        event_id = cursor.lastrowid
    await db_config.conn.commit()
    logger.trace(f"写入事件: event_id={event_id}, user_id={user_id}, task_id={task_id}, kind={kind}")
    return await get_event_by_id(event_id)


async def get_event_by_id(event_id: int) -> GeofenceEvent | None:
    _ensure_conn()
    async with db_config.conn.execute("SELECT * FROM geofence_events WHERE event_id = ?", (event_id,)) as cursor:
        row = await cursor.fetchone()
    return _row_to_event(row) if row else None


async def get_event_by_client_id(user_id: int, client_event_id: str) -> GeofenceEvent | None:
    _ensure_conn()
    async with db_config.conn.execute(
        "SELECT * FROM geofence_events WHERE user_id = ? AND client_event_id = ?", (user_id, client_event_id)
    ) as cursor:
        row = await cursor.fetchone()
    return _row_to_event(row) if row else None


async def find_same_kind_between(
    user_id: int,
    task_id: int,
    kind: EventKind,
    start: datetime,
    end: datetime,
    exclude_event_id: int | None = None,
) -> list[GeofenceEvent]:
    """同一 (用户, 任务, 事件类型) 在 [start, end] 内已完成处理的事件；pending/failed 不参与去重"""
    _ensure_conn()
    async with db_config.conn.execute(
        "SELECT * FROM geofence_events WHERE user_id = ? AND task_id = ? AND kind = ? "
        "AND occurred_at BETWEEN ? AND ? AND status IN ('processed', 'duplicate', 'cooldown') "
        "AND event_id != ? ORDER BY occurred_at, event_id",
        (user_id, task_id, EventKind(kind).value, to_db_time(start), to_db_time(end), exclude_event_id or -1),
    ) as cursor:
        rows = await cursor.fetchall()
    return [_row_to_event(row) for row in rows]


async def find_bundle_primaries(
    user_id: int,
    start: datetime,
    end: datetime,
    exclude_event_id: int,
) -> list[tuple[GeofenceEvent, GeofenceType]]:
    """可作为 bundle 主事件的候选: 已触发通知、未被打包、通知尚未送达"""
    _ensure_conn()
    async with db_config.conn.execute(
        "SELECT e.*, g.geofence_type AS geofence_type FROM geofence_events e "
        "JOIN geofences g ON g.geofence_id = e.geofence_id "
        "WHERE e.user_id = ? AND e.status = 'processed' AND e.notify = 1 AND e.bundled_with IS NULL "
        "AND e.notification_sent = 0 AND e.occurred_at BETWEEN ? AND ? AND e.event_id != ? "
        "ORDER BY e.occurred_at, e.event_id",
        (user_id, to_db_time(start), to_db_time(end), exclude_event_id),
    ) as cursor:
        rows = await cursor.fetchall()
    return [(_row_to_event(row), GeofenceType(row["geofence_type"])) for row in rows]


async def list_bundle_members(bundle_id: str) -> list[GeofenceEvent]:
    """bundle 的非主成员（bundled_with = 主事件的 notification_id）"""
    _ensure_conn()
    async with db_config.conn.execute(
        "SELECT * FROM geofence_events WHERE bundled_with = ? ORDER BY occurred_at, event_id", (bundle_id,)
    ) as cursor:
        rows = await cursor.fetchall()
    return [_row_to_event(row) for row in rows]


async def update_event_outcome(
    event_id: int,
    status: EventStatus,
    reason: str,
    processed_at: datetime,
    *,
    notify: bool = False,
    bundled_with: str | None = None,
    cooldown_until: datetime | None = None,
) -> None:
    _ensure_conn()
    await db_config.conn.execute(
        "UPDATE geofence_events SET status = ?, reason = ?, notify = ?, bundled_with = ?, cooldown_until = ?, "
        "processed_at = ? WHERE event_id = ?",
        (
            EventStatus(status).value, reason, 1 if notify else 0, bundled_with,
            to_db_time(cooldown_until), to_db_time(processed_at), event_id,
        ),
    )
    await db_config.conn.commit()
    logger.trace(f"更新事件结果: event_id={event_id}, status={status}, reason={reason}")


async def mark_notification_sent(event_ids: list[int]) -> None:
    _ensure_conn()
    if not event_ids:
        return
    placeholders = ",".join("?" for _ in event_ids)
    await db_config.conn.execute(
        f"UPDATE geofence_events SET notification_sent = 1 WHERE event_id IN ({placeholders})", tuple(event_ids)
    )
    await db_config.conn.commit()


async def list_undispatched(since: datetime, limit: int = 100) -> list[GeofenceEvent]:
    """已触发通知、尚未送达、也没有对应投递记录的主事件（组装或安排时中断）"""
    _ensure_conn()
    async with db_config.conn.execute(
        "SELECT e.* FROM geofence_events e WHERE e.status = 'processed' AND e.notify = 1 "
        "AND e.notification_sent = 0 AND e.processed_at >= ? "
        "AND NOT EXISTS (SELECT 1 FROM scheduled_notifications s "
        "WHERE s.notification_id = 'notification_' || e.event_id) "
        "ORDER BY e.processed_at, e.event_id LIMIT ?",
        (to_db_time(since), limit),
    ) as cursor:
        rows = await cursor.fetchall()
    return [_row_to_event(row) for row in rows]


async def find_user_events_between(user_id: int, start: datetime, end: datetime) -> list[GeofenceEvent]:
    _ensure_conn()
    async with db_config.conn.execute(
        "SELECT * FROM geofence_events WHERE user_id = ? AND occurred_at BETWEEN ? AND ? AND status != 'failed' "
        "ORDER BY occurred_at, event_id",
        (user_id, to_db_time(start), to_db_time(end)),
    ) as cursor:
        rows = await cursor.fetchall()
    return [_row_to_event(row) for row in rows]


async def purge_older_than(cutoff: datetime) -> int:
    _ensure_conn()
    async with db_config.conn.execute(
        "DELETE FROM geofence_events WHERE created_at < ?", (to_db_time(cutoff),)
    ) as cursor:
        deleted = cursor.rowcount
    await db_config.conn.commit()
    return deleted


async def get_processing_stats(user_id: int, since: datetime) -> dict:
    _ensure_conn()
    async with db_config.conn.execute(
        "SELECT status, COUNT(1) AS n, SUM(CASE WHEN bundled_with IS NOT NULL THEN 1 ELSE 0 END) AS bundled, "
        "SUM(notification_sent) AS sent FROM geofence_events WHERE user_id = ? AND created_at >= ? GROUP BY status",
        (user_id, to_db_time(since)),
    ) as cursor:
        rows = await cursor.fetchall()
    by_status = {s.value: 0 for s in EventStatus}
    total = bundled = sent = 0
    for row in rows:
        by_status[row["status"]] = row["n"]
        total += row["n"]
        bundled += row["bundled"] or 0
        sent += row["sent"] or 0
    return {"total": total, "by_status": by_status, "bundled": bundled, "notifications_sent": sent}


__all__ = [
    "create_event", "get_event_by_id", "get_event_by_client_id", "find_same_kind_between",
    "find_bundle_primaries", "list_bundle_members", "update_event_outcome", "mark_notification_sent",
    "list_undispatched", "find_user_events_between", "purge_older_than", "get_processing_stats",
]
