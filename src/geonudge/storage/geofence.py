from datetime import datetime

import geonudge.storage.db_config as db_config
from geonudge.datamodel import Coordinate, Geofence, GeofenceSpec, GeofenceType
from geonudge.logger import logger
from geonudge.utils import from_db_time, to_db_time

_TEMPLATE_SQL = "(latitude = 0 AND longitude = 0)"


def _ensure_conn():
    if db_config.conn is None:
        raise RuntimeError("数据库未初始化，请先调用 init_db()")


def _row_to_geofence(row) -> Geofence:
    return Geofence(
        geofence_id=row["geofence_id"],
        task_id=row["task_id"],
        user_id=row["user_id"],
        center=Coordinate(row["latitude"], row["longitude"]),
        radius_m=row["radius_m"],
        geofence_type=GeofenceType(row["geofence_type"]),
        is_active=bool(row["is_active"]),
        cooldown_until=from_db_time(row["cooldown_until"]),
        created_at=from_db_time(row["created_at"]),
    )


async def _select(sql: str, params: tuple = ()) -> list[Geofence]:
    async with db_config.conn.execute(sql, params) as cursor:
        rows = await cursor.fetchall()
    return [_row_to_geofence(row) for row in rows]


async def create_geofences(specs: list[GeofenceSpec], created_at: datetime) -> list[Geofence]:
    """批量写入围栏；模板围栏 (中心为 0,0) 以未激活状态保存"""
    _ensure_conn()
    created: list[int] = []
    for spec in specs:
        async with db_config.conn.execute(
            "INSERT INTO geofences (task_id, user_id, latitude, longitude, radius_m, geofence_type, is_active, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                spec.task_id, spec.user_id, spec.center.latitude, spec.center.longitude,
                spec.radius_m, spec.geofence_type.value, 0 if spec.is_template else 1,
                to_db_time(created_at),
            ),
        ) as cursor:
            created.append(cursor.lastrowid)
    await db_config.conn.commit()
    logger.trace(f"创建围栏: {len(created)} 个, ids={created}")
    if not created:
        return []
    placeholders = ",".join("?" for _ in created)
    return await _select(f"SELECT * FROM geofences WHERE geofence_id IN ({placeholders}) ORDER BY geofence_id", tuple(created))


async def get_geofence_by_id(geofence_id: int) -> Geofence | None:
    _ensure_conn()
    found = await _select("SELECT * FROM geofences WHERE geofence_id = ?", (geofence_id,))
    return found[0] if found else None


async def list_for_task(task_id: int, active_only: bool = False) -> list[Geofence]:
    _ensure_conn()
    sql = "SELECT * FROM geofences WHERE task_id = ?"
    if active_only:
        sql += " AND is_active = 1"
    return await _select(sql + " ORDER BY geofence_id", (task_id,))


async def list_templates_for_task(task_id: int) -> list[Geofence]:
    _ensure_conn()
    return await _select(
        f"SELECT * FROM geofences WHERE task_id = ? AND {_TEMPLATE_SQL} ORDER BY geofence_id", (task_id,)
    )


async def list_active_for_user(user_id: int) -> list[tuple[Geofence, datetime | None]]:
    """用户当前激活的围栏，连同所属任务的创建时间（淘汰评分需要）"""
    _ensure_conn()
    async with db_config.conn.execute(
        "SELECT g.*, t.created_at AS task_created_at FROM geofences g "
        "LEFT JOIN tasks t ON t.task_id = g.task_id "
        "WHERE g.user_id = ? AND g.is_active = 1 ORDER BY g.geofence_id",
        (user_id,),
    ) as cursor:
        rows = await cursor.fetchall()
    return [(_row_to_geofence(row), from_db_time(row["task_created_at"])) for row in rows]


async def list_evicted_for_user(user_id: int) -> list[tuple[Geofence, datetime | None]]:
    """被淘汰 (未激活、非模板) 且所属任务仍为 active 的围栏"""
    _ensure_conn()
    async with db_config.conn.execute(
        "SELECT g.*, t.created_at AS task_created_at FROM geofences g "
        "JOIN tasks t ON t.task_id = g.task_id "
        "WHERE g.user_id = ? AND g.is_active = 0 AND t.status = 'active' AND NOT (g.latitude = 0 AND g.longitude = 0) "
        "ORDER BY g.geofence_id",
        (user_id,),
    ) as cursor:
        rows = await cursor.fetchall()
    return [(_row_to_geofence(row), from_db_time(row["task_created_at"])) for row in rows]


async def count_active_for_user(user_id: int) -> int:
    _ensure_conn()
    async with db_config.conn.execute(
        "SELECT COUNT(1) FROM geofences WHERE user_id = ? AND is_active = 1", (user_id,)
    ) as cursor:
        row = await cursor.fetchone()
    return row[0] if row else 0


async def set_active(geofence_ids: list[int], active: bool) -> None:
    _ensure_conn()
    if not geofence_ids:
        return
    placeholders = ",".join("?" for _ in geofence_ids)
    await db_config.conn.execute(
        f"UPDATE geofences SET is_active = ? WHERE geofence_id IN ({placeholders})",
        (1 if active else 0, *geofence_ids),
    )
    await db_config.conn.commit()
    logger.trace(f"更新围栏激活状态: active={active}, ids={geofence_ids}")


async def delete_for_task(task_id: int, bound_only: bool = False) -> int:
    """删除任务的围栏；bound_only=True 时保留模板围栏"""
    _ensure_conn()
    sql = "DELETE FROM geofences WHERE task_id = ?"
    if bound_only:
        sql += f" AND NOT {_TEMPLATE_SQL}"
    async with db_config.conn.execute(sql, (task_id,)) as cursor:
        deleted = cursor.rowcount
    await db_config.conn.commit()
    logger.trace(f"删除围栏: task_id={task_id}, bound_only={bound_only}, count={deleted}")
    return deleted


async def set_cooldown(geofence_id: int, cooldown_until: datetime) -> None:
    _ensure_conn()
    await db_config.conn.execute(
        "UPDATE geofences SET cooldown_until = ? WHERE geofence_id = ?",
        (to_db_time(cooldown_until), geofence_id),
    )
    await db_config.conn.commit()


async def get_type_counts(user_id: int) -> dict:
    """统计: total / active / 按类型的激活数"""
    _ensure_conn()
    async with db_config.conn.execute(
        "SELECT geofence_type, COUNT(1) AS total, SUM(is_active) AS active FROM geofences "
        "WHERE user_id = ? GROUP BY geofence_type",
        (user_id,),
    ) as cursor:
        rows = await cursor.fetchall()
    by_type = {t.value: 0 for t in GeofenceType}
    total = active = 0
    for row in rows:
        total += row["total"]
        active += row["active"] or 0
        by_type[row["geofence_type"]] = row["active"] or 0
    return {"total": total, "active": active, "by_type": by_type}


__all__ = [
    "create_geofences", "get_geofence_by_id", "list_for_task", "list_templates_for_task",
    "list_active_for_user", "list_evicted_for_user", "count_active_for_user", "set_active",
    "delete_for_task", "set_cooldown", "get_type_counts",
]
