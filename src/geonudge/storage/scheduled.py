"""待投递通知表

pending 记录由调度器轮询；in_flight=1 表示已被某次投递认领，
此时取消无效，投递结果仍会被记录。
"""

import json
from datetime import datetime

import geonudge.storage.db_config as db_config
from geonudge.datamodel import (
    ActionType, Coordinate, DeliveryStatus, Notification, NotificationAction, NotificationType,
    ScheduledNotification,
)
from geonudge.logger import logger
from geonudge.utils import from_db_time, to_db_time


def _ensure_conn():
    if db_config.conn is None:
        raise RuntimeError("数据库未初始化，请先调用 init_db()")


def notification_to_json(notification: Notification) -> str:
    return json.dumps({
        "notification_id": notification.notification_id,
        "user_id": notification.user_id,
        "task_id": notification.task_id,
        "type": notification.type.value,
        "title": notification.title,
        "body": notification.body,
        "actions": [
            {"action_id": a.action_id, "title": a.title, "type": a.type.value, "destructive": a.destructive}
            for a in notification.actions
        ],
        "event_ids": notification.event_ids,
        "task_ids": notification.task_ids,
        "location": (
            [notification.location.latitude, notification.location.longitude] if notification.location else None
        ),
        "metadata": notification.metadata,
    }, ensure_ascii=False)


def notification_from_json(raw: str) -> Notification:
    data = json.loads(raw)
    location = data.get("location")
    return Notification(
        notification_id=data["notification_id"],
        user_id=data["user_id"],
        task_id=data["task_id"],
        type=NotificationType(data["type"]),
        title=data["title"],
        body=data["body"],
        actions=[
            NotificationAction(
                action_id=a["action_id"], title=a["title"], type=ActionType(a["type"]),
                destructive=a.get("destructive", False),
            )
            for a in data.get("actions", [])
        ],
        event_ids=data.get("event_ids", []),
        task_ids=data.get("task_ids", []),
        location=Coordinate(location[0], location[1]) if location else None,
        metadata=data.get("metadata", {}),
    )


def _row_to_scheduled(row) -> ScheduledNotification:
    return ScheduledNotification(
        scheduled_id=row["scheduled_id"],
        notification=notification_from_json(row["payload"]),
        user_id=row["user_id"],
        scheduled_at=from_db_time(row["scheduled_at"]),
        status=DeliveryStatus(row["status"]),
        attempts=row["attempts"],
        in_flight=bool(row["in_flight"]),
        last_attempt_at=from_db_time(row["last_attempt_at"]),
        last_error=row["last_error"],
        reason=row["reason"],
        created_at=from_db_time(row["created_at"]),
        delivered_at=from_db_time(row["delivered_at"]),
    )


async def insert_scheduled(record: ScheduledNotification, now: datetime) -> bool:
    """写入待投递记录；scheduled_id 已存在时不覆盖并返回 False"""
    _ensure_conn()
    async with db_config.conn.execute(
        "INSERT OR IGNORE INTO scheduled_notifications (scheduled_id, notification_id, user_id, task_id, payload, "
        "scheduled_at, status, attempts, in_flight, reason, created_at, updated_at) "
        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?)",
        (
            record.scheduled_id, record.notification.notification_id, record.user_id,
            record.notification.task_id, notification_to_json(record.notification),
            to_db_time(record.scheduled_at), record.status.value, record.attempts, record.reason,
            to_db_time(now), to_db_time(now),
        ),
    ) as cursor:
        inserted = cursor.rowcount > 0
    await db_config.conn.commit()
    logger.trace(f"写入待投递通知: scheduled_id={record.scheduled_id}, inserted={inserted}")
    return inserted


async def get_scheduled(scheduled_id: str) -> ScheduledNotification | None:
    _ensure_conn()
    async with db_config.conn.execute(
        "SELECT * FROM scheduled_notifications WHERE scheduled_id = ?", (scheduled_id,)
    ) as cursor:
        row = await cursor.fetchone()
    return _row_to_scheduled(row) if row else None


async def get_by_notification_id(notification_id: str) -> ScheduledNotification | None:
    _ensure_conn()
    async with db_config.conn.execute(
        "SELECT * FROM scheduled_notifications WHERE notification_id = ?", (notification_id,)
    ) as cursor:
        row = await cursor.fetchone()
    return _row_to_scheduled(row) if row else None


async def list_due(now: datetime, limit: int = 100) -> list[ScheduledNotification]:
    _ensure_conn()
    async with db_config.conn.execute(
        "SELECT * FROM scheduled_notifications WHERE status = 'pending' AND in_flight = 0 AND scheduled_at <= ? "
        "ORDER BY scheduled_at, created_at LIMIT ?",
        (to_db_time(now), limit),
    ) as cursor:
        rows = await cursor.fetchall()
    return [_row_to_scheduled(row) for row in rows]


async def list_pending_for_task(task_id: int) -> list[ScheduledNotification]:
    _ensure_conn()
    async with db_config.conn.execute(
        "SELECT * FROM scheduled_notifications WHERE task_id = ? AND status = 'pending' ORDER BY scheduled_at",
        (task_id,),
    ) as cursor:
        rows = await cursor.fetchall()
    return [_row_to_scheduled(row) for row in rows]


async def claim(scheduled_id: str, now: datetime) -> bool:
    """原子地认领一条 pending 记录；已被认领或已结束时返回 False"""
    _ensure_conn()
    async with db_config.conn.execute(
        "UPDATE scheduled_notifications SET in_flight = 1, updated_at = ? "
        "WHERE scheduled_id = ? AND status = 'pending' AND in_flight = 0",
        (to_db_time(now), scheduled_id),
    ) as cursor:
        claimed = cursor.rowcount > 0
    await db_config.conn.commit()
    return claimed


async def reschedule(
    scheduled_id: str,
    scheduled_at: datetime,
    now: datetime,
    *,
    attempts: int | None = None,
    last_error: str | None = None,
    reason: str | None = None,
) -> None:
    """保持 pending，释放认领并改期"""
    _ensure_conn()
    sets = ["scheduled_at = ?", "in_flight = 0", "updated_at = ?", "reason = ?"]
    params: list = [to_db_time(scheduled_at), to_db_time(now), reason]
    if attempts is not None:
        sets += ["attempts = ?", "last_attempt_at = ?"]
        params += [attempts, to_db_time(now)]
    if last_error is not None:
        sets.append("last_error = ?")
        params.append(last_error)
    params.append(scheduled_id)
    await db_config.conn.execute(
        f"UPDATE scheduled_notifications SET {', '.join(sets)} WHERE scheduled_id = ? AND status = 'pending'",
        params,
    )
    await db_config.conn.commit()
    logger.trace(f"改期通知: scheduled_id={scheduled_id}, scheduled_at={scheduled_at}, reason={reason}")


async def finish(
    scheduled_id: str,
    status: DeliveryStatus,
    now: datetime,
    *,
    attempts: int | None = None,
    last_error: str | None = None,
    reason: str | None = None,
) -> None:
    """进入终态 delivered / cancelled / failed"""
    _ensure_conn()
    status = DeliveryStatus(status)
    sets = ["status = ?", "in_flight = 0", "updated_at = ?", "reason = ?"]
    params: list = [status.value, to_db_time(now), reason]
    if attempts is not None:
        sets += ["attempts = ?", "last_attempt_at = ?"]
        params += [attempts, to_db_time(now)]
    if last_error is not None:
        sets.append("last_error = ?")
        params.append(last_error)
    if status == DeliveryStatus.DELIVERED:
        sets.append("delivered_at = ?")
        params.append(to_db_time(now))
    params.append(scheduled_id)
    await db_config.conn.execute(
        f"UPDATE scheduled_notifications SET {', '.join(sets)} WHERE scheduled_id = ? AND status = 'pending'",
        params,
    )
    await db_config.conn.commit()
    logger.trace(f"通知进入终态: scheduled_id={scheduled_id}, status={status.value}, reason={reason}")


async def cancel_if_idle(scheduled_id: str, now: datetime, reason: str) -> bool:
    """仅当记录 pending 且未被认领时取消"""
    _ensure_conn()
    async with db_config.conn.execute(
        "UPDATE scheduled_notifications SET status = 'cancelled', reason = ?, updated_at = ? "
        "WHERE scheduled_id = ? AND status = 'pending' AND in_flight = 0",
        (reason, to_db_time(now), scheduled_id),
    ) as cursor:
        cancelled = cursor.rowcount > 0
    await db_config.conn.commit()
    return cancelled


async def update_payload_if_idle(scheduled_id: str, notification: Notification, now: datetime) -> bool:
    """bundle 成员变化后重新渲染内容；已被认领的记录不改动"""
    _ensure_conn()
    async with db_config.conn.execute(
        "UPDATE scheduled_notifications SET payload = ?, updated_at = ? "
        "WHERE scheduled_id = ? AND status = 'pending' AND in_flight = 0",
        (notification_to_json(notification), to_db_time(now), scheduled_id),
    ) as cursor:
        updated = cursor.rowcount > 0
    await db_config.conn.commit()
    return updated


async def release_stale_in_flight() -> int:
    """进程启动时释放上次崩溃遗留的认领"""
    _ensure_conn()
    async with db_config.conn.execute(
        "UPDATE scheduled_notifications SET in_flight = 0 WHERE status = 'pending' AND in_flight = 1"
    ) as cursor:
        released = cursor.rowcount
    await db_config.conn.commit()
    return released


async def release_expired_claims(cutoff: datetime) -> int:
    """释放 cutoff 之前认领、至今未结束的记录（投递过程中断且未能改期）"""
    _ensure_conn()
    async with db_config.conn.execute(
        "UPDATE scheduled_notifications SET in_flight = 0 "
        "WHERE status = 'pending' AND in_flight = 1 AND updated_at < ?",
        (to_db_time(cutoff),),
    ) as cursor:
        released = cursor.rowcount
    await db_config.conn.commit()
    return released


async def delete_terminal_before(cutoff: datetime, statuses: tuple[str, ...] = ("delivered", "cancelled")) -> int:
    _ensure_conn()
    placeholders = ",".join("?" for _ in statuses)
    async with db_config.conn.execute(
        f"DELETE FROM scheduled_notifications WHERE status IN ({placeholders}) AND updated_at < ?",
        (*statuses, to_db_time(cutoff)),
    ) as cursor:
        deleted = cursor.rowcount
    await db_config.conn.commit()
    return deleted


async def count_by_status() -> dict:
    _ensure_conn()
    async with db_config.conn.execute(
        "SELECT status, COUNT(1) AS n, SUM(in_flight) AS in_flight FROM scheduled_notifications GROUP BY status"
    ) as cursor:
        rows = await cursor.fetchall()
    counts = {s.value: 0 for s in DeliveryStatus}
    in_flight = 0
    for row in rows:
        counts[row["status"]] = row["n"]
        in_flight += row["in_flight"] or 0
    counts["in_flight"] = in_flight
    return counts


async def user_delivery_counts(user_id: int, since: datetime) -> dict:
    """since 之后进入终态的记录数，供频率控制决策使用"""
    _ensure_conn()
    async with db_config.conn.execute(
        "SELECT status, COUNT(1) AS n FROM scheduled_notifications WHERE user_id = ? AND updated_at >= ? "
        "AND status != 'pending' GROUP BY status",
        (user_id, to_db_time(since)),
    ) as cursor:
        rows = await cursor.fetchall()
    counts = {"delivered": 0, "cancelled": 0, "failed": 0}
    for row in rows:
        counts[row["status"]] = row["n"]
    return counts


__all__ = [
    "notification_to_json", "notification_from_json",
    "insert_scheduled", "get_scheduled", "get_by_notification_id", "list_due", "list_pending_for_task",
    "claim", "reschedule", "finish", "cancel_if_idle", "update_payload_if_idle",
    "release_stale_in_flight", "release_expired_claims",
    "delete_terminal_before", "count_by_status", "user_delivery_counts",
]
