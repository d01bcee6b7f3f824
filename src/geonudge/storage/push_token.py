from datetime import datetime

import geonudge.storage.db_config as db_config
from geonudge.datamodel import Platform, PushToken
from geonudge.logger import logger
from geonudge.utils import from_db_time, to_db_time


def _ensure_conn():
    if db_config.conn is None:
        raise RuntimeError("数据库未初始化，请先调用 init_db()")


def _row_to_token(row) -> PushToken:
    return PushToken(
        token_id=row["token_id"],
        user_id=row["user_id"],
        platform=Platform(row["platform"]),
        device_token=row["device_token"],
        is_active=bool(row["is_active"]),
        failure_count=row["failure_count"],
        last_error=row["last_error"],
        last_used_at=from_db_time(row["last_used_at"]),
        device_id=row["device_id"],
        app_version=row["app_version"],
        created_at=from_db_time(row["created_at"]),
    )


async def upsert_token(
    user_id: int,
    platform: Platform,
    device_token: str,
    now: datetime,
    device_id: str | None = None,
    app_version: str | None = None,
) -> PushToken:
    """注册或重新激活 token；同一 token 换绑用户时归属新用户"""
    _ensure_conn()
    platform = Platform(platform)
    await db_config.conn.execute(
        "INSERT INTO push_tokens (user_id, platform, device_token, device_id, app_version, is_active, "
        "failure_count, created_at, updated_at) VALUES (?, ?, ?, ?, ?, 1, 0, ?, ?) "
        "ON CONFLICT (platform, device_token) DO UPDATE SET user_id = excluded.user_id, "
        "device_id = excluded.device_id, app_version = excluded.app_version, is_active = 1, "
        "failure_count = 0, last_error = NULL, updated_at = excluded.updated_at",
        (user_id, platform.value, device_token, device_id, app_version, to_db_time(now), to_db_time(now)),
    )
    await db_config.conn.commit()
    logger.trace(f"注册推送 token: user_id={user_id}, platform={platform.value}")
    async with db_config.conn.execute(
        "SELECT * FROM push_tokens WHERE platform = ? AND device_token = ?", (platform.value, device_token)
    ) as cursor:
        row = await cursor.fetchone()
    return _row_to_token(row)


async def list_active_for_user(user_id: int) -> list[PushToken]:
    _ensure_conn()
    async with db_config.conn.execute(
        "SELECT * FROM push_tokens WHERE user_id = ? AND is_active = 1 ORDER BY token_id", (user_id,)
    ) as cursor:
        rows = await cursor.fetchall()
    return [_row_to_token(row) for row in rows]


async def mark_used(token_id: int, now: datetime) -> None:
    _ensure_conn()
    await db_config.conn.execute(
        "UPDATE push_tokens SET last_used_at = ?, failure_count = 0, last_error = NULL, updated_at = ? "
        "WHERE token_id = ?",
        (to_db_time(now), to_db_time(now), token_id),
    )
    await db_config.conn.commit()


async def record_failure(token_id: int, error: str, now: datetime) -> None:
    _ensure_conn()
    await db_config.conn.execute(
        "UPDATE push_tokens SET failure_count = failure_count + 1, last_error = ?, updated_at = ? WHERE token_id = ?",
        (error, to_db_time(now), token_id),
    )
    await db_config.conn.commit()


async def deactivate(token_id: int, error: str, now: datetime) -> None:
    _ensure_conn()
    await db_config.conn.execute(
        "UPDATE push_tokens SET is_active = 0, last_error = ?, updated_at = ? WHERE token_id = ?",
        (error, to_db_time(now), token_id),
    )
    await db_config.conn.commit()
    logger.trace(f"停用推送 token: token_id={token_id}, error={error}")


async def delete_inactive_before(cutoff: datetime) -> int:
    _ensure_conn()
    async with db_config.conn.execute(
        "DELETE FROM push_tokens WHERE is_active = 0 AND updated_at < ?", (to_db_time(cutoff),)
    ) as cursor:
        deleted = cursor.rowcount
    await db_config.conn.commit()
    return deleted


async def get_stats() -> dict:
    _ensure_conn()
    async with db_config.conn.execute(
        "SELECT platform, COUNT(1) AS total, SUM(is_active) AS active FROM push_tokens GROUP BY platform"
    ) as cursor:
        rows = await cursor.fetchall()
    by_platform = {p.value: {"total": 0, "active": 0} for p in Platform}
    total = active = 0
    for row in rows:
        by_platform[row["platform"]] = {"total": row["total"], "active": row["active"] or 0}
        total += row["total"]
        active += row["active"] or 0
    return {"total": total, "active": active, "inactive": total - active, "by_platform": by_platform}


__all__ = [
    "upsert_token", "list_active_for_user", "mark_used", "record_failure", "deactivate",
    "delete_inactive_before", "get_stats",
]
