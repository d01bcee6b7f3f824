"""地理围栏分配器

- 按任务的位置类型与半径策略计算所需围栏
- 维护每个用户同时激活的围栏上限：超出时按优先级淘汰（停用而非删除）
- POI 类别任务先生成模板围栏（中心为 0,0，不激活、不占配额），再绑定到附近的具体 POI

优先级分数 = 类型等级 + floor(任务创建天数 / 7)，分数越低越优先保留；
同分时按围栏创建时间、再按 id 升序，保证结果可复现。
"""

import math
from datetime import datetime, timedelta
from typing import Iterable

import geonudge.storage.geofence as geofence_store
import geonudge.storage.task as task_store
import geonudge.storage.user as user_store
from geonudge.config.settings import COMPLETED_TASK_GEOFENCE_RETENTION_DAYS, MAX_ACTIVE_GEOFENCES
from geonudge.datamodel import (
    POI, Coordinate, Geofence, GeofenceRadii, GeofenceSpec, GeofenceType, LocationType, PlaceKind, Task, TaskStatus,
)
from geonudge.errors import CapacityError, ValidationError
from geonudge.events import E, Bus
from geonudge.geofence.poi import DEFAULT_MAX_POIS, DEFAULT_SEARCH_RADIUS_M, POIProvider
from geonudge.locks import UserLocks
from geonudge.logger import logger
from geonudge.utils import Clock, SystemClock, miles_to_meters

TYPE_RANK = {
    GeofenceType.ARRIVAL: 1,
    GeofenceType.POST_ARRIVAL: 2,
    GeofenceType.APPROACH_1MI: 3,
    GeofenceType.APPROACH_3MI: 4,
    GeofenceType.APPROACH_5MI: 5,
}

POI_TEMPLATE_RADII = {
    GeofenceType.APPROACH_5MI: 8047,
    GeofenceType.APPROACH_3MI: 4828,
    GeofenceType.APPROACH_1MI: 1609,
    GeofenceType.ARRIVAL: 100,
}
HOME_WORK_APPROACH_M = 3219
CUSTOM_PLACE_APPROACH_M = 8047
ARRIVAL_M = 100

APPROACH_MILES_RANGE = (0.1, 50.0)
ARRIVAL_METERS_RANGE = (10.0, 1000.0)

TEMPLATE_CENTER = Coordinate(0.0, 0.0)


def validate_radii(radii: GeofenceRadii | None) -> None:
    """自定义半径校验，不合法时抛出 ValidationError（在任何写入之前）"""
    if radii is None:
        return
    errors = []
    if radii.approach_miles is not None:
        lo, hi = APPROACH_MILES_RANGE
        if not lo <= radii.approach_miles <= hi:
            errors.append(f"Approach radius must be between {lo} and {hi:g} miles")
    if radii.arrival_meters is not None:
        lo, hi = ARRIVAL_METERS_RANGE
        if not lo <= radii.arrival_meters <= hi:
            errors.append(f"Arrival radius must be between {lo:g} and {hi:g} meters")
    if errors:
        raise ValidationError("围栏半径不合法", errors)


def priority_score(geofence: Geofence, task_created_at: datetime | None, now: datetime) -> int:
    score = TYPE_RANK[geofence.geofence_type]
    if task_created_at is not None:
        age_days = (now - task_created_at).total_seconds() / 86400
        score += math.floor(max(0.0, age_days) / 7)
    return score


def rank_for_retention(entries: Iterable[tuple[Geofence, datetime | None]], now: datetime) -> list[Geofence]:
    """按保留优先级排序（越靠前越应保留）"""
    def sort_key(entry):
        geofence, task_created_at = entry
        created = geofence.created_at or datetime.min.replace(tzinfo=now.tzinfo)
        return priority_score(geofence, task_created_at, now), created, geofence.geofence_id

    return [geofence for geofence, _ in sorted(entries, key=sort_key)]


class GeofenceAllocator:
    def __init__(
        self,
        bus: Bus,
        locks: UserLocks,
        clock: Clock | None = None,
        poi_provider: POIProvider | None = None,
        ceiling: int = MAX_ACTIVE_GEOFENCES,
    ) -> None:
        self.bus = bus
        self.locks = locks
        self.clock = clock or SystemClock()
        self.poi_provider = poi_provider
        self.ceiling = ceiling

    # ---------------- 计算 ----------------
    async def compute_geofences(self, task: Task) -> list[GeofenceSpec]:
        """计算任务需要的围栏集合（不写库）"""
        if not task.location_consistent:
            raise ValidationError(f"任务位置引用不一致: task_id={task.task_id}")
        validate_radii(task.custom_radii)

        if task.location_type == LocationType.CUSTOM_PLACE:
            place = await user_store.get_place_by_id(task.place_id)
            if place is None or place.user_id != task.user_id:
                raise ValidationError(f"地点不存在: place_id={task.place_id}")
            radii = task.custom_radii or place.default_radii or GeofenceRadii()
            validate_radii(radii)
            default_approach = (
                HOME_WORK_APPROACH_M if place.kind in (PlaceKind.HOME, PlaceKind.WORK) else CUSTOM_PLACE_APPROACH_M
            )
            approach_m = miles_to_meters(radii.approach_miles) if radii.approach_miles else default_approach
            arrival_m = radii.arrival_meters or ARRIVAL_M

            specs = [
                GeofenceSpec(task.task_id, task.user_id, place.coordinate, approach_m, GeofenceType.APPROACH_5MI),
                GeofenceSpec(task.task_id, task.user_id, place.coordinate, arrival_m, GeofenceType.ARRIVAL),
            ]
            if radii.post_arrival:
                specs.append(
                    GeofenceSpec(task.task_id, task.user_id, place.coordinate, arrival_m, GeofenceType.POST_ARRIVAL)
                )
            return specs

        radii = task.custom_radii or GeofenceRadii()
        specs = []
        for geofence_type, default_radius in POI_TEMPLATE_RADII.items():
            radius = default_radius
            if geofence_type == GeofenceType.APPROACH_5MI and radii.approach_miles:
                radius = miles_to_meters(radii.approach_miles)
            elif geofence_type == GeofenceType.ARRIVAL and radii.arrival_meters:
                radius = radii.arrival_meters
            specs.append(GeofenceSpec(task.task_id, task.user_id, TEMPLATE_CENTER, radius, geofence_type))
        return specs

    # ---------------- 淘汰 ----------------
    def _check_capacity(self, incoming: int, user_id: int) -> None:
        if incoming > self.ceiling:
            raise CapacityError(
                f"需要 {incoming} 个围栏，超过上限 {self.ceiling}: user_id={user_id}",
                requested=incoming,
                ceiling=self.ceiling,
            )

    async def _optimize_locked(self, user_id: int, incoming_count: int) -> list[int]:
        active = await geofence_store.list_active_for_user(user_id)
        keep = self.ceiling - incoming_count
        if len(active) <= keep:
            return []
        ranked = rank_for_retention(active, self.clock.now())
        evicted = [g.geofence_id for g in ranked[keep:]]
        await geofence_store.set_active(evicted, False)
        logger.info(f"围栏淘汰: user_id={user_id}, 保留 {keep}, 停用 {len(evicted)} 个: {evicted}")
        return evicted

    async def optimize(self, user_id: int, incoming_count: int) -> list[int]:
        """为 incoming_count 个新围栏腾出位置，返回被停用的围栏 id"""
        self._check_capacity(incoming_count, user_id)
        async with self.locks(user_id):
            return await self._optimize_locked(user_id, incoming_count)

    async def _make_room_and_create(self, user_id: int, specs: list[GeofenceSpec]) -> list[Geofence]:
        incoming = sum(1 for spec in specs if not spec.is_template)
        if incoming:
            current = await geofence_store.count_active_for_user(user_id)
            if current + incoming > self.ceiling:
                await self._optimize_locked(user_id, incoming)
        return await geofence_store.create_geofences(specs, self.clock.now())

    # ---------------- 生命周期 ----------------
    async def allocate(self, task: Task) -> list[Geofence]:
        """为活跃任务创建围栏；超出上限时先淘汰，单个任务本身超过上限则抛出 CapacityError"""
        if task.status != TaskStatus.ACTIVE:
            raise ValidationError(f"只能为活跃任务创建围栏: task_id={task.task_id}, status={task.status.value}")
        specs = await self.compute_geofences(task)
        self._check_capacity(sum(1 for s in specs if not s.is_template), task.user_id)

        async with self.locks(task.user_id):
            created = await self._make_room_and_create(task.user_id, specs)

        logger.info(f"围栏已创建: task_id={task.task_id}, count={len(created)}")
        self.bus.emit(E.GEOFENCES_CHANGED, user_id=task.user_id, task_id=task.task_id, action="created")
        return created

    async def update(self, task: Task) -> list[Geofence]:
        """任务位置或半径变更：先校验，再删除旧围栏并按新配置重建"""
        if task.status == TaskStatus.ACTIVE:
            specs = await self.compute_geofences(task)
            self._check_capacity(sum(1 for s in specs if not s.is_template), task.user_id)
        else:
            specs = []

        async with self.locks(task.user_id):
            await geofence_store.delete_for_task(task.task_id)
            created = await self._make_room_and_create(task.user_id, specs) if specs else []
            if not specs:
                await self._rebalance_locked(task.user_id)

        logger.info(f"围栏已更新: task_id={task.task_id}, count={len(created)}")
        self.bus.emit(E.GEOFENCES_CHANGED, user_id=task.user_id, task_id=task.task_id, action="updated")
        return created

    async def mute(self, task: Task) -> int:
        """停用任务的全部围栏（保留记录），释放出的配额交给其他任务被淘汰的围栏"""
        async with self.locks(task.user_id):
            geofences = await geofence_store.list_for_task(task.task_id, active_only=True)
            await geofence_store.set_active([g.geofence_id for g in geofences], False)
            await self._rebalance_locked(task.user_id, exclude_task_id=task.task_id)

        logger.info(f"围栏已静音: task_id={task.task_id}, count={len(geofences)}")
        self.bus.emit(E.GEOFENCES_CHANGED, user_id=task.user_id, task_id=task.task_id, action="muted")
        return len(geofences)

    async def unmute(self, task: Task) -> list[Geofence]:
        """重新激活任务的具体围栏，同样受上限约束"""
        geofences = [g for g in await geofence_store.list_for_task(task.task_id) if not g.is_template]
        self._check_capacity(len(geofences), task.user_id)

        async with self.locks(task.user_id):
            inactive = [g for g in geofences if not g.is_active]
            if inactive:
                current = await geofence_store.count_active_for_user(task.user_id)
                if current + len(inactive) > self.ceiling:
                    await self._optimize_locked(task.user_id, len(inactive))
                await geofence_store.set_active([g.geofence_id for g in inactive], True)

        logger.info(f"围栏已恢复: task_id={task.task_id}, count={len(inactive)}")
        self.bus.emit(E.GEOFENCES_CHANGED, user_id=task.user_id, task_id=task.task_id, action="unmuted")
        return await geofence_store.list_for_task(task.task_id, active_only=True)

    async def delete(self, task: Task) -> int:
        async with self.locks(task.user_id):
            deleted = await geofence_store.delete_for_task(task.task_id)
            await self._rebalance_locked(task.user_id)

        logger.info(f"围栏已删除: task_id={task.task_id}, count={deleted}")
        self.bus.emit(E.GEOFENCES_CHANGED, user_id=task.user_id, task_id=task.task_id, action="deleted")
        return deleted

    # ---------------- POI 绑定 ----------------
    async def bind_to_pois(self, task: Task, pois: list[POI]) -> list[Geofence]:
        """删除任务此前绑定的具体围栏，按 模板 x POI 重新创建"""
        if task.location_type != LocationType.POI_CATEGORY:
            raise ValidationError(f"只有 POI 类别任务可以绑定 POI: task_id={task.task_id}")
        if task.status != TaskStatus.ACTIVE:
            raise ValidationError(f"只能为活跃任务绑定 POI: task_id={task.task_id}")

        templates = await geofence_store.list_templates_for_task(task.task_id)
        missing_templates = [] if templates else await self.compute_geofences(task)
        template_shapes = [(t.geofence_type, t.radius_m) for t in (templates or missing_templates)]

        specs = [
            GeofenceSpec(task.task_id, task.user_id, poi.coordinate, radius, geofence_type)
            for poi in pois
            for geofence_type, radius in template_shapes
        ]
        self._check_capacity(len(specs), task.user_id)

        async with self.locks(task.user_id):
            await geofence_store.delete_for_task(task.task_id, bound_only=True)
            if missing_templates:
                await geofence_store.create_geofences(missing_templates, self.clock.now())
            created = await self._make_room_and_create(task.user_id, specs)

        logger.info(f"POI 围栏已绑定: task_id={task.task_id}, pois={len(pois)}, geofences={len(created)}")
        self.bus.emit(E.GEOFENCES_CHANGED, user_id=task.user_id, task_id=task.task_id, action="bound")
        return created

    async def refresh_poi_bindings(
        self,
        task: Task,
        user_location: Coordinate,
        radius_m: float = DEFAULT_SEARCH_RADIUS_M,
        limit: int = DEFAULT_MAX_POIS,
    ) -> list[Geofence]:
        """查询附近 POI 并绑定；POI 服务失败时推迟绑定，保留现有围栏"""
        if self.poi_provider is None:
            logger.warning(f"未配置 POI 服务，推迟绑定: task_id={task.task_id}")
            return []
        try:
            pois = await self.poi_provider.find_nearby(task.poi_category, user_location, radius_m, limit)
        except Exception as e:
            logger.warning(f"POI 查询失败，推迟绑定: task_id={task.task_id}, error={e}")
            return []
        if not pois:
            logger.debug(f"附近没有匹配的 POI: task_id={task.task_id}, category={task.poi_category}")
            return []
        return await self.bind_to_pois(task, pois)

    # ---------------- 再平衡 / 统计 / 清理 ----------------
    async def _rebalance_locked(self, user_id: int, exclude_task_id: int | None = None) -> list[int]:
        free = self.ceiling - await geofence_store.count_active_for_user(user_id)
        if free <= 0:
            return []
        evicted = [
            entry for entry in await geofence_store.list_evicted_for_user(user_id)
            if entry[0].task_id != exclude_task_id
        ]
        if not evicted:
            return []
        restored = [g.geofence_id for g in rank_for_retention(evicted, self.clock.now())[:free]]
        await geofence_store.set_active(restored, True)
        logger.info(f"围栏再平衡: user_id={user_id}, 恢复 {len(restored)} 个: {restored}")
        return restored

    async def rebalance(self, user_id: int) -> list[int]:
        """按优先级重新激活此前被淘汰的围栏，直到达到上限"""
        async with self.locks(user_id):
            return await self._rebalance_locked(user_id)

    async def get_stats(self, user_id: int) -> dict:
        counts = await geofence_store.get_type_counts(user_id)
        counts["ceiling"] = self.ceiling
        counts["utilization_percentage"] = round(counts["active"] / self.ceiling * 100, 1) if self.ceiling else 0.0
        return counts

    async def cleanup_completed(self, retention_days: int = COMPLETED_TASK_GEOFENCE_RETENTION_DAYS) -> int:
        """删除完成超过 retention_days 天的任务的围栏"""
        cutoff = self.clock.now() - timedelta(days=retention_days)
        deleted = 0
        for task_id in await task_store.list_completed_task_ids_before(cutoff):
            deleted += await geofence_store.delete_for_task(task_id)
        if deleted:
            logger.info(f"已清理已完成任务的围栏: {deleted} 个")
        return deleted


__all__ = [
    "GeofenceAllocator", "validate_radii", "priority_score", "rank_for_retention",
    "TYPE_RANK", "POI_TEMPLATE_RADII", "TEMPLATE_CENTER",
]
