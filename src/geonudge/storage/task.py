import geonudge.storage.db_config as db_config
from geonudge.datamodel import GeofenceRadii, LocationType, POICategory, Task, TaskStatus
from geonudge.errors import ValidationError
from geonudge.logger import logger
from geonudge.utils import from_db_time, now_utc, to_db_time
from datetime import datetime


def _ensure_conn():
    if db_config.conn is None:
        raise RuntimeError("数据库未初始化，请先调用 init_db()")


def _row_to_task(row) -> Task:
    custom_radii = None
    if row["approach_miles"] is not None or row["arrival_meters"] is not None or row["post_arrival"] is not None:
        custom_radii = GeofenceRadii(
            approach_miles=row["approach_miles"],
            arrival_meters=row["arrival_meters"],
            post_arrival=bool(row["post_arrival"]),
        )
    return Task(
        task_id=row["task_id"],
        user_id=row["user_id"],
        title=row["title"],
        description=row["description"],
        location_type=LocationType(row["location_type"]),
        place_id=row["place_id"],
        poi_category=POICategory(row["poi_category"]) if row["poi_category"] else None,
        custom_radii=custom_radii,
        status=TaskStatus(row["status"]),
        created_at=from_db_time(row["created_at"]),
        completed_at=from_db_time(row["completed_at"]),
        updated_at=from_db_time(row["updated_at"]),
    )


async def create_task(
    user_id: int,
    title: str,
    location_type: LocationType,
    *,
    place_id: int | None = None,
    poi_category: POICategory | None = None,
    description: str | None = None,
    custom_radii: GeofenceRadii | None = None,
    created_at: datetime | None = None,
) -> Task:
    """创建任务；place_id 与 poi_category 必须恰好设置一个"""
    _ensure_conn()
    location_type = LocationType(location_type)
    draft = Task(
        task_id=0, user_id=user_id, title=title, location_type=location_type,
        place_id=place_id, poi_category=POICategory(poi_category) if poi_category else None,
    )
    if not draft.location_consistent:
        raise ValidationError(
            "任务位置引用与 location_type 不一致",
            [f"location_type={location_type.value}, place_id={place_id}, poi_category={poi_category}"],
        )

    created = to_db_time(created_at or now_utc())
    async with db_config.conn.execute(
        "INSERT INTO tasks (user_id, title, description, location_type, place_id, poi_category, "
        "approach_miles, arrival_meters, post_arrival, status, created_at, updated_at) "
        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 'active', ?, ?)",
        (
            user_id, title, description, location_type.value, place_id,
            draft.poi_category.value if draft.poi_category else None,
            custom_radii.approach_miles if custom_radii else None,
            custom_radii.arrival_meters if custom_radii else None,
            int(custom_radii.post_arrival) if custom_radii else None,
            created, created,
        ),
    ) as cursor:
        task_id = cursor.lastrowid
    await db_config.conn.commit()
    logger.trace(f"创建任务: task_id={task_id}, user_id={user_id}, title={title}")
    return await get_task_by_id(task_id)


async def get_task_by_id(task_id: int) -> Task | None:
    _ensure_conn()
    async with db_config.conn.execute("SELECT * FROM tasks WHERE task_id = ?", (task_id,)) as cursor:
        row = await cursor.fetchone()
    return _row_to_task(row) if row else None


async def update_task_location(
    task_id: int,
    *,
    place_id: int | None = None,
    poi_category: POICategory | None = None,
    custom_radii: GeofenceRadii | None = None,
) -> Task:
    """修改任务位置 (地点或 POI 类别) 与自定义半径"""
    _ensure_conn()
    if (place_id is None) == (poi_category is None):
        raise ValidationError("place_id 与 poi_category 必须恰好设置一个")
    location_type = LocationType.CUSTOM_PLACE if place_id is not None else LocationType.POI_CATEGORY
    await db_config.conn.execute(
        "UPDATE tasks SET location_type = ?, place_id = ?, poi_category = ?, approach_miles = ?, "
        "arrival_meters = ?, post_arrival = ?, updated_at = ? WHERE task_id = ?",
        (
            location_type.value, place_id,
            POICategory(poi_category).value if poi_category else None,
            custom_radii.approach_miles if custom_radii else None,
            custom_radii.arrival_meters if custom_radii else None,
            int(custom_radii.post_arrival) if custom_radii else None,
            to_db_time(now_utc()), task_id,
        ),
    )
    await db_config.conn.commit()
    logger.trace(f"更新任务位置: task_id={task_id}, location_type={location_type.value}")
    return await get_task_by_id(task_id)


async def set_task_status(task_id: int, status: TaskStatus, at: datetime | None = None) -> None:
    _ensure_conn()
    status = TaskStatus(status)
    at_db = to_db_time(at or now_utc())
    completed_at = at_db if status == TaskStatus.COMPLETED else None
    await db_config.conn.execute(
        "UPDATE tasks SET status = ?, completed_at = ?, updated_at = ? WHERE task_id = ?",
        (status.value, completed_at, at_db, task_id),
    )
    await db_config.conn.commit()
    logger.trace(f"更新任务状态: task_id={task_id}, status={status.value}")


async def list_completed_task_ids_before(cutoff: datetime) -> list[int]:
    """完成时间早于 cutoff 的任务 id"""
    _ensure_conn()
    async with db_config.conn.execute(
        "SELECT task_id FROM tasks WHERE status = 'completed' AND completed_at IS NOT NULL AND completed_at < ?",
        (to_db_time(cutoff),),
    ) as cursor:
        rows = await cursor.fetchall()
    return [row["task_id"] for row in rows]


__all__ = [
    "create_task", "get_task_by_id", "update_task_location", "set_task_status",
    "list_completed_task_ids_before",
]
