"""稍后提醒 (snooze) 与任务静音 (mute) 记录"""

from datetime import datetime

import geonudge.storage.db_config as db_config
from geonudge.datamodel import MuteDuration, Snooze, SnoozeDuration, TaskMute
from geonudge.logger import logger
from geonudge.utils import from_db_time, to_db_time


def _ensure_conn():
    if db_config.conn is None:
        raise RuntimeError("数据库未初始化，请先调用 init_db()")


def _row_to_snooze(row) -> Snooze:
    return Snooze(
        snooze_id=row["snooze_id"],
        user_id=row["user_id"],
        task_id=row["task_id"],
        duration=SnoozeDuration(row["duration"]),
        snooze_until=from_db_time(row["snooze_until"]),
        notification_id=row["notification_id"],
        status=row["status"],
        snooze_count=row["snooze_count"],
    )


def _row_to_mute(row) -> TaskMute:
    return TaskMute(
        mute_id=row["mute_id"],
        user_id=row["user_id"],
        task_id=row["task_id"],
        duration=MuteDuration(row["duration"]),
        mute_until=from_db_time(row["mute_until"]),
        status=row["status"],
        reason=row["reason"],
    )


async def create_snooze(
    user_id: int,
    task_id: int,
    duration: SnoozeDuration,
    snooze_until: datetime,
    now: datetime,
    notification_id: str | None = None,
) -> Snooze:
    """新的 snooze 会替换该任务仍生效的旧记录，snooze_count 累加"""
    _ensure_conn()
    async with db_config.conn.execute(
        "SELECT COALESCE(MAX(snooze_count), 0) FROM notification_snoozes WHERE task_id = ? AND status = 'active'",
        (task_id,),
    ) as cursor:
        row = await cursor.fetchone()
        previous = row[0] if row else 0
    await db_config.conn.execute(
        "UPDATE notification_snoozes SET status = 'cancelled' WHERE task_id = ? AND status = 'active'", (task_id,)
    )
    async with db_config.conn.execute(
        "INSERT INTO notification_snoozes (user_id, task_id, notification_id, duration, snooze_until, status, "
        "snooze_count, created_at) VALUES (?, ?, ?, ?, ?, 'active', ?, ?)",
        (user_id, task_id, notification_id, SnoozeDuration(duration).value, to_db_time(snooze_until),
         previous + 1, to_db_time(now)),
    ) as cursor:
        snooze_id = cursor.lastrowid
    await db_config.conn.commit()
    logger.trace(f"创建 snooze: snooze_id={snooze_id}, task_id={task_id}, until={snooze_until}")
    async with db_config.conn.execute("SELECT * FROM notification_snoozes WHERE snooze_id = ?", (snooze_id,)) as cursor:
        return _row_to_snooze(await cursor.fetchone())


async def get_active_snooze(task_id: int, notification_id: str | None, now: datetime) -> Snooze | None:
    """当前生效的 snooze: 针对该通知，或针对整个任务"""
    _ensure_conn()
    async with db_config.conn.execute(
        "SELECT * FROM notification_snoozes WHERE status = 'active' AND snooze_until > ? "
        "AND (task_id = ? OR (notification_id IS NOT NULL AND notification_id = ?)) "
        "ORDER BY snooze_until DESC LIMIT 1",
        (to_db_time(now), task_id, notification_id),
    ) as cursor:
        row = await cursor.fetchone()
    return _row_to_snooze(row) if row else None


async def create_mute(
    user_id: int,
    task_id: int,
    duration: MuteDuration,
    mute_until: datetime | None,
    now: datetime,
    reason: str | None = None,
) -> TaskMute:
    _ensure_conn()
    await db_config.conn.execute(
        "UPDATE task_mutes SET status = 'cancelled' WHERE task_id = ? AND status = 'active'", (task_id,)
    )
    async with db_config.conn.execute(
        "INSERT INTO task_mutes (user_id, task_id, duration, mute_until, status, reason, created_at) "
        "VALUES (?, ?, ?, ?, 'active', ?, ?)",
        (user_id, task_id, MuteDuration(duration).value, to_db_time(mute_until), reason, to_db_time(now)),
    ) as cursor:
        mute_id = cursor.lastrowid
    await db_config.conn.commit()
    logger.trace(f"创建静音: mute_id={mute_id}, task_id={task_id}, until={mute_until}")
    async with db_config.conn.execute("SELECT * FROM task_mutes WHERE mute_id = ?", (mute_id,)) as cursor:
        return _row_to_mute(await cursor.fetchone())


async def get_active_mute(task_id: int, now: datetime) -> TaskMute | None:
    _ensure_conn()
    async with db_config.conn.execute(
        "SELECT * FROM task_mutes WHERE task_id = ? AND status = 'active' "
        "AND (mute_until IS NULL OR mute_until > ?) ORDER BY mute_id DESC LIMIT 1",
        (task_id, to_db_time(now)),
    ) as cursor:
        row = await cursor.fetchone()
    return _row_to_mute(row) if row else None


async def cancel_mutes(task_id: int) -> int:
    _ensure_conn()
    async with db_config.conn.execute(
        "UPDATE task_mutes SET status = 'cancelled' WHERE task_id = ? AND status = 'active'", (task_id,)
    ) as cursor:
        cancelled = cursor.rowcount
    await db_config.conn.commit()
    return cancelled


async def list_expired_mutes(now: datetime) -> list[TaskMute]:
    """到期但仍标记 active 的静音记录（维护循环据此解除静音）"""
    _ensure_conn()
    async with db_config.conn.execute(
        "SELECT * FROM task_mutes WHERE status = 'active' AND mute_until IS NOT NULL AND mute_until <= ?",
        (to_db_time(now),),
    ) as cursor:
        rows = await cursor.fetchall()
    return [_row_to_mute(row) for row in rows]


async def expire_records(now: datetime) -> dict:
    _ensure_conn()
    async with db_config.conn.execute(
        "UPDATE notification_snoozes SET status = 'expired' WHERE status = 'active' AND snooze_until <= ?",
        (to_db_time(now),),
    ) as cursor:
        snoozes = cursor.rowcount
    async with db_config.conn.execute(
        "UPDATE task_mutes SET status = 'expired' WHERE status = 'active' AND mute_until IS NOT NULL "
        "AND mute_until <= ?",
        (to_db_time(now),),
    ) as cursor:
        mutes = cursor.rowcount
    await db_config.conn.commit()
    return {"snoozes": snoozes, "mutes": mutes}


__all__ = [
    "create_snooze", "get_active_snooze", "create_mute", "get_active_mute", "cancel_mutes",
    "list_expired_mutes", "expire_records",
]
