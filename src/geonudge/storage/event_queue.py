import json
from datetime import datetime

import geonudge.storage.db_config as db_config
from geonudge.datamodel import QueueStatus, QueuedEvent
from geonudge.logger import logger
from geonudge.utils import from_db_time, to_db_time


def _ensure_conn():
    if db_config.conn is None:
        raise RuntimeError("数据库未初始化，请先调用 init_db()")


def _row_to_item(row) -> QueuedEvent:
    return QueuedEvent(
        item_id=row["item_id"],
        user_id=row["user_id"],
        payload=json.loads(row["payload"]),
        status=QueueStatus(row["status"]),
        attempts=row["attempts"],
        next_retry_at=from_db_time(row["next_retry_at"]),
        last_attempt_at=from_db_time(row["last_attempt_at"]),
        last_error=row["last_error"],
        created_at=from_db_time(row["created_at"]),
    )


async def enqueue(user_id: int, payload: dict, next_retry_at: datetime, now: datetime,
                  last_error: str | None = None) -> QueuedEvent:
    _ensure_conn()
    async with db_config.conn.execute(
        "INSERT INTO event_queue (user_id, payload, status, attempts, next_retry_at, last_error, created_at, updated_at) "
        "VALUES (?, ?, 'pending', 0, ?, ?, ?, ?)",
        (user_id, json.dumps(payload, ensure_ascii=False), to_db_time(next_retry_at), last_error,
         to_db_time(now), to_db_time(now)),
    ) as cursor:
        item_id = cursor.lastrowid
    await db_config.conn.commit()
    logger.trace(f"事件入队: item_id={item_id}, user_id={user_id}")
    return await get_item(item_id)


async def get_item(item_id: int) -> QueuedEvent | None:
    _ensure_conn()
    async with db_config.conn.execute("SELECT * FROM event_queue WHERE item_id = ?", (item_id,)) as cursor:
        row = await cursor.fetchone()
    return _row_to_item(row) if row else None


async def list_due(now: datetime, limit: int = 100) -> list[QueuedEvent]:
    _ensure_conn()
    async with db_config.conn.execute(
        "SELECT * FROM event_queue WHERE status = 'pending' AND next_retry_at <= ? "
        "ORDER BY next_retry_at, item_id LIMIT ?",
        (to_db_time(now), limit),
    ) as cursor:
        rows = await cursor.fetchall()
    return [_row_to_item(row) for row in rows]


async def list_for_user(user_id: int, statuses: tuple[str, ...] = ("pending", "processing", "failed")) -> list[QueuedEvent]:
    _ensure_conn()
    placeholders = ",".join("?" for _ in statuses)
    async with db_config.conn.execute(
        f"SELECT * FROM event_queue WHERE user_id = ? AND status IN ({placeholders}) ORDER BY item_id",
        (user_id, *statuses),
    ) as cursor:
        rows = await cursor.fetchall()
    return [_row_to_item(row) for row in rows]


async def claim(item_id: int, now: datetime) -> bool:
    """pending -> processing；已被其他 sweep 认领时返回 False"""
    _ensure_conn()
    async with db_config.conn.execute(
        "UPDATE event_queue SET status = 'processing', last_attempt_at = ?, updated_at = ? "
        "WHERE item_id = ? AND status = 'pending'",
        (to_db_time(now), to_db_time(now), item_id),
    ) as cursor:
        claimed = cursor.rowcount > 0
    await db_config.conn.commit()
    return claimed


async def update_item(
    item_id: int,
    status: QueueStatus,
    now: datetime,
    *,
    attempts: int | None = None,
    next_retry_at: datetime | None = None,
    last_error: str | None = None,
) -> None:
    _ensure_conn()
    sets = ["status = ?", "updated_at = ?"]
    params: list = [QueueStatus(status).value, to_db_time(now)]
    if attempts is not None:
        sets.append("attempts = ?")
        params.append(attempts)
    if next_retry_at is not None:
        sets.append("next_retry_at = ?")
        params.append(to_db_time(next_retry_at))
    if last_error is not None:
        sets.append("last_error = ?")
        params.append(last_error)
    params.append(item_id)
    await db_config.conn.execute(f"UPDATE event_queue SET {', '.join(sets)} WHERE item_id = ?", params)
    await db_config.conn.commit()
    logger.trace(f"更新队列条目: item_id={item_id}, status={status}")


async def delete_item(item_id: int) -> bool:
    """删除条目；处理中的条目不可删除"""
    _ensure_conn()
    async with db_config.conn.execute(
        "DELETE FROM event_queue WHERE item_id = ? AND status != 'processing'", (item_id,)
    ) as cursor:
        deleted = cursor.rowcount > 0
    await db_config.conn.commit()
    return deleted


async def release_stale_processing(now: datetime) -> int:
    """进程启动时把崩溃遗留的 processing 条目放回 pending"""
    _ensure_conn()
    async with db_config.conn.execute(
        "UPDATE event_queue SET status = 'pending', next_retry_at = ?, updated_at = ? WHERE status = 'processing'",
        (to_db_time(now), to_db_time(now)),
    ) as cursor:
        released = cursor.rowcount
    await db_config.conn.commit()
    return released


async def delete_with_status_before(status: QueueStatus, cutoff: datetime) -> int:
    _ensure_conn()
    async with db_config.conn.execute(
        "DELETE FROM event_queue WHERE status = ? AND updated_at < ?", (QueueStatus(status).value, to_db_time(cutoff))
    ) as cursor:
        deleted = cursor.rowcount
    await db_config.conn.commit()
    return deleted


async def get_stats() -> dict:
    _ensure_conn()
    async with db_config.conn.execute(
        "SELECT status, COUNT(1) AS n, SUM(attempts) AS retries FROM event_queue GROUP BY status"
    ) as cursor:
        rows = await cursor.fetchall()
    stats = {s.value: 0 for s in QueueStatus}
    retries = 0
    for row in rows:
        stats[row["status"]] = row["n"]
        retries += row["retries"] or 0
    stats["total_retries"] = retries
    return stats


__all__ = [
    "enqueue", "get_item", "list_due", "list_for_user", "claim", "update_item", "delete_item",
    "release_stale_processing", "delete_with_status_before", "get_stats",
]
