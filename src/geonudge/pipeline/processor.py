"""事件处理流水线

按顺序执行，命中即返回：
1. 引用校验: 围栏存在且激活、任务存在且活跃、用户存在；否则 ValidationError（不重试）
2. 去重: 同一 (用户, 任务, 事件类型) 在 15 分钟窗口内、100 m 以内已有事件 -> duplicate
3. 冷却: 围栏仍在冷却期 -> cooldown
4. 服务端复核: enter/dwell 要求距离 <= 半径，exit 要求距离 > 0.8 x 半径；不满足视为噪声
5. 打包: 可并入已有 bundle 时不单独通知
6. 设置围栏冷却期，事件标记 processed

所有时间窗口都以事件的观测时间 (occurred_at) 计算，批量补报时结果与到达顺序无关。
"""

import sqlite3
from datetime import timedelta

import pydantic

import geonudge.storage.geofence as geofence_store
import geonudge.storage.geofence_event as event_store
import geonudge.storage.task as task_store
import geonudge.storage.user as user_store
from geonudge.config.settings import DEDUP_DISTANCE_METERS, DEDUP_WINDOW_MINUTES
from geonudge.datamodel import (
    EventKind, EventStatus, Geofence, GeofenceEvent, GeofenceType, ProcessingResult, TaskStatus,
)
from geonudge.errors import TransientInfraError, ValidationError
from geonudge.events import E, Bus
from geonudge.locks import UserLocks
from geonudge.logger import logger
from geonudge.metrics import RuntimeMetrics, runtime_metrics
from geonudge.pipeline.bundling import BundlingEngine
from geonudge.schemas import EventPayload
from geonudge.utils import Clock, SystemClock, haversine_m

COOLDOWN_MINUTES = {
    GeofenceType.APPROACH_5MI: 60,
    GeofenceType.APPROACH_3MI: 45,
    GeofenceType.APPROACH_1MI: 30,
    GeofenceType.ARRIVAL: 15,
    GeofenceType.POST_ARRIVAL: 120,
}
EXIT_MIN_RADIUS_FRACTION = 0.8


def parse_payload(payload: EventPayload | dict) -> EventPayload:
    if isinstance(payload, EventPayload):
        return payload
    try:
        return EventPayload.model_validate(payload)
    except pydantic.ValidationError as e:
        details = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
        raise ValidationError("事件格式错误", details) from e


def is_plausible(kind: EventKind, distance_m: float, radius_m: float) -> bool:
    if kind == EventKind.EXIT:
        return distance_m > EXIT_MIN_RADIUS_FRACTION * radius_m
    return distance_m <= radius_m


def result_from_event(event: GeofenceEvent, geofence_type: GeofenceType | None = None) -> ProcessingResult:
    """由已存储的事件重建处理结果（客户端用同一 client_event_id 重试时返回）"""
    cooldown = COOLDOWN_MINUTES.get(geofence_type) if geofence_type and event.status == EventStatus.PROCESSED else None
    return ProcessingResult(
        event_id=event.event_id,
        accepted=event.status != EventStatus.FAILED,
        notify=event.notify,
        status=event.status,
        reason=event.reason or event.status.value,
        bundled_with=event.bundled_with,
        cooldown_minutes=cooldown,
        notification_id=event.notification_id if event.notify else event.bundled_with,
    )


class EventProcessor:
    def __init__(
        self,
        bus: Bus,
        locks: UserLocks,
        clock: Clock | None = None,
        bundler: BundlingEngine | None = None,
        metrics: RuntimeMetrics = runtime_metrics,
        dedup_window_minutes: int = DEDUP_WINDOW_MINUTES,
        dedup_distance_m: float = DEDUP_DISTANCE_METERS,
    ) -> None:
        self.bus = bus
        self.locks = locks
        self.clock = clock or SystemClock()
        self.bundler = bundler or BundlingEngine()
        self.metrics = metrics
        self.dedup_window = timedelta(minutes=dedup_window_minutes)
        self.dedup_distance_m = dedup_distance_m

    async def process(self, payload: EventPayload | dict) -> ProcessingResult:
        """处理单个事件；ValidationError 直接抛给调用方，存储故障转换为 TransientInfraError"""
        try:
            event_payload = parse_payload(payload)
        except ValidationError:
            self.metrics.record_rejected()
            raise

        try:
            async with self.locks(event_payload.user_id):
                result = await self._process_locked(event_payload)
        except ValidationError as e:
            self.metrics.record_rejected()
            logger.info(f"事件被拒绝: user_id={event_payload.user_id}, task_id={event_payload.task_id}, {e}")
            raise
        except sqlite3.Error as e:
            logger.warning(f"事件处理遇到存储故障: user_id={event_payload.user_id}, error={e}")
            raise TransientInfraError(f"存储故障: {e}") from e

        self.bus.emit(E.EVENT_PROCESSED, result=result, user_id=event_payload.user_id)
        return result

    async def process_batch(self, payloads: list[EventPayload | dict]) -> list[ProcessingResult | Exception]:
        """按观测时间排序后逐个处理；返回值与输入顺序一一对应，失败项为对应的异常对象"""
        now = self.clock.now()
        parsed: list[tuple[int, EventPayload | Exception]] = []
        for index, payload in enumerate(payloads):
            try:
                parsed.append((index, parse_payload(payload)))
            except ValidationError as e:
                self.metrics.record_rejected()
                parsed.append((index, e))

        order = sorted(
            (item for item in parsed if isinstance(item[1], EventPayload)),
            key=lambda item: (item[1].observed_at(now), item[0]),
        )
        outcomes: dict[int, ProcessingResult | Exception] = {
            index: item for index, item in parsed if isinstance(item, Exception)
        }
        for index, event_payload in order:
            try:
                outcomes[index] = await self.process(event_payload)
            except (ValidationError, TransientInfraError) as e:
                outcomes[index] = e
        return [outcomes[index] for index in range(len(payloads))]

    async def _validate_references(self, payload: EventPayload) -> Geofence:
        geofence = await geofence_store.get_geofence_by_id(payload.geofence_id)
        if geofence is None:
            raise ValidationError(f"围栏不存在: geofence_id={payload.geofence_id}")
        if not geofence.is_active:
            raise ValidationError(f"围栏未激活: geofence_id={payload.geofence_id}")
        if geofence.task_id != payload.task_id or geofence.user_id != payload.user_id:
            raise ValidationError(f"围栏不属于该任务: geofence_id={payload.geofence_id}, task_id={payload.task_id}")

        task = await task_store.get_task_by_id(payload.task_id)
        if task is None or task.user_id != payload.user_id:
            raise ValidationError(f"任务不存在: task_id={payload.task_id}")
        if task.status != TaskStatus.ACTIVE:
            raise ValidationError(f"任务不是活跃状态: task_id={payload.task_id}, status={task.status.value}")

        if await user_store.get_user_by_id(payload.user_id) is None:
            raise ValidationError(f"用户不存在: user_id={payload.user_id}")
        return geofence

    async def _process_locked(self, payload: EventPayload) -> ProcessingResult:
        now = self.clock.now()

        event = None
        if payload.client_event_id:
            event = await event_store.get_event_by_client_id(payload.user_id, payload.client_event_id)
            if event is not None and event.status not in (EventStatus.PENDING, EventStatus.FAILED):
                logger.debug(f"重复提交的客户端事件，返回已有结果: client_event_id={payload.client_event_id}")
                geofence = await geofence_store.get_geofence_by_id(event.geofence_id)
                return result_from_event(event, geofence.geofence_type if geofence else None)

        geofence = await self._validate_references(payload)

        if event is None:
            event = await event_store.create_event(
                user_id=payload.user_id,
                task_id=payload.task_id,
                geofence_id=payload.geofence_id,
                kind=payload.kind,
                coordinate=payload.coordinate,
                occurred_at=payload.observed_at(now),
                created_at=now,
                confidence=payload.confidence,
                client_event_id=payload.client_event_id,
            )

        # 去重
        priors = await event_store.find_same_kind_between(
            event.user_id, event.task_id, event.kind,
            event.occurred_at - self.dedup_window, event.occurred_at + self.dedup_window,
            exclude_event_id=event.event_id,
        )
        for prior in priors:
            if haversine_m(prior.coordinate, event.coordinate) <= self.dedup_distance_m:
                logger.info(f"重复事件: event_id={event.event_id}, 与 event_id={prior.event_id} 重复")
                return await self._finish(event, EventStatus.DUPLICATE, "duplicate", now)

        # 冷却
        if geofence.cooldown_until is not None and event.occurred_at < geofence.cooldown_until:
            logger.info(f"围栏冷却中: geofence_id={geofence.geofence_id}, until={geofence.cooldown_until}")
            return await self._finish(event, EventStatus.COOLDOWN, "cooldown", now)

        # 服务端复核
        distance = haversine_m(event.coordinate, geofence.center)
        if not is_plausible(event.kind, distance, geofence.radius_m):
            logger.info(
                f"事件位置与围栏不符，视为噪声: event_id={event.event_id}, kind={event.kind.value}, "
                f"distance={distance:.1f}m, radius={geofence.radius_m}m"
            )
            return await self._finish(event, EventStatus.PROCESSED, "implausible", now)

        cooldown_minutes = COOLDOWN_MINUTES[geofence.geofence_type]
        cooldown_until = event.occurred_at + timedelta(minutes=cooldown_minutes)
        await geofence_store.set_cooldown(geofence.geofence_id, cooldown_until)

        bundle_id = await self.bundler.find_bundle(event, geofence.geofence_type)
        if bundle_id is not None:
            logger.info(f"事件并入 bundle: event_id={event.event_id}, bundle_id={bundle_id}")
            return await self._finish(
                event, EventStatus.PROCESSED, "bundled", now,
                bundled_with=bundle_id, cooldown_until=cooldown_until, cooldown_minutes=cooldown_minutes,
            )

        logger.debug(f"事件触发通知: event_id={event.event_id}, geofence_type={geofence.geofence_type.value}")
        return await self._finish(
            event, EventStatus.PROCESSED, "notify", now,
            notify=True, cooldown_until=cooldown_until, cooldown_minutes=cooldown_minutes,
        )

    async def _finish(
        self,
        event: GeofenceEvent,
        status: EventStatus,
        reason: str,
        now,
        *,
        notify: bool = False,
        bundled_with: str | None = None,
        cooldown_until=None,
        cooldown_minutes: int | None = None,
    ) -> ProcessingResult:
        await event_store.update_event_outcome(
            event.event_id, status, reason, now,
            notify=notify, bundled_with=bundled_with, cooldown_until=cooldown_until,
        )
        self.metrics.record_outcome(reason)
        return ProcessingResult(
            event_id=event.event_id,
            accepted=True,
            notify=notify,
            status=status,
            reason=reason,
            bundled_with=bundled_with,
            cooldown_minutes=cooldown_minutes,
            notification_id=event.notification_id if notify else bundled_with,
        )


__all__ = ["EventProcessor", "COOLDOWN_MINUTES", "is_plausible", "parse_payload", "result_from_event"]
