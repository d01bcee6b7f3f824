"""GeoNudge 服务门面

对外暴露事件摄取、地理围栏生命周期、通知安排与通知动作。

# 事件到通知的流水线
1. 摄取: EventProcessor 处理事件（校验、去重、冷却、复核、打包）。存储抖动时事件进入 IngestionQueue 稍后重试。
2. 通知就绪: 事件需要通知（或并入了已有 bundle）时发出 NOTIFICATION_READY，由独立 task 处理，摄取方不等待投递。
3. 组装与安排: 加载 bundle，NotificationComposer 渲染内容，NotificationScheduler 安排（或刷新）投递。
4. 补发: 第 3 步中断（存储故障或进程退出）时事件已标记 notify 但没有投递记录，
   启动恢复与补发循环按 notify=1 且无投递记录重新组装。
"""

import asyncio
import sqlite3
from datetime import datetime, timedelta, timezone as dt_timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import geonudge.storage.geofence as geofence_store
import geonudge.storage.geofence_event as event_store
import geonudge.storage.scheduled as scheduled_store
import geonudge.storage.suppression as suppression_store
import geonudge.storage.task as task_store
import geonudge.storage.user as user_store
from geonudge.channels.base import PushAdapter
from geonudge.channels.gateway import DeliveryGateway, build_adapters
from geonudge.config.settings import DISPATCH_RECOVERY_HOURS, SCHEDULER_SWEEP_SECONDS
from geonudge.datamodel import (
    ActionType, Coordinate, DeliveryStatus, Geofence, MuteDuration, Notification, NotificationStyle, Platform,
    ProcessingResult, PushToken, QuietHours, Task, TaskStatus, UserInfo,
)
from geonudge.errors import GeoNudgeError, NotFoundError, TransientInfraError, ValidationError
from geonudge.events import E, Bus, bus as default_bus
from geonudge.geofence.allocator import GeofenceAllocator
from geonudge.geofence.poi import POIProvider
from geonudge.ingest.queue import IngestionQueue
from geonudge.locks import UserLocks
from geonudge.logger import logger
from geonudge.metrics import RuntimeMetrics, runtime_metrics
from geonudge.notify.composer import NotificationComposer
from geonudge.notify.scheduler import FocusModeProvider, NotificationScheduler, scheduled_id_for
from geonudge.notify.suppression import SNOOZE_ACTIONS, mute_until, snooze_until
from geonudge.pipeline.bundling import BundlingEngine
from geonudge.pipeline.processor import EventProcessor, parse_payload
from geonudge.schemas import EventPayload
from geonudge.utils import Clock, SystemClock

__all__ = ["GeoNudgeService", "event_id_from_notification_id"]


def event_id_from_notification_id(notification_id: str) -> int:
    """notification_{event_id} -> event_id"""
    prefix, _, raw = notification_id.rpartition("_")
    if prefix != "notification" or not raw.isdigit():
        raise NotFoundError(f"无法识别的通知 id: {notification_id}")
    return int(raw)


class GeoNudgeService:
    def __init__(
        self,
        bus: Bus | None = None,
        clock: Clock | None = None,
        adapters: dict[Platform, PushAdapter] | None = None,
        poi_provider: POIProvider | None = None,
        focus_provider: FocusModeProvider | None = None,
        metrics: RuntimeMetrics = runtime_metrics,
        ceiling: int | None = None,
    ) -> None:
        self.bus = bus or default_bus
        self.clock = clock or SystemClock()
        self.metrics = metrics
        self.locks = UserLocks()
        # 通知组装按用户串行，保证同一 bundle 的最后一次渲染包含全部成员
        self.notify_locks = UserLocks()

        allocator_kwargs = {"ceiling": ceiling} if ceiling is not None else {}
        self.allocator = GeofenceAllocator(self.bus, self.locks, self.clock, poi_provider, **allocator_kwargs)
        self.bundler = BundlingEngine()
        self.processor = EventProcessor(self.bus, self.locks, self.clock, self.bundler, metrics)
        self.composer = NotificationComposer()
        self.gateway = DeliveryGateway(adapters if adapters is not None else build_adapters(), self.bus, self.clock)
        self.scheduler = NotificationScheduler(self.gateway, self.bus, self.clock, focus_provider, metrics)
        self.queue = IngestionQueue(self._handle_event, self.clock, metrics)

        self._dispatch_tasks: set[asyncio.Task] = set()
        self.bus.on(E.NOTIFICATION_READY)(self._on_notification_ready)

    # ---------------- 事件摄取 ----------------
    async def _handle_event(self, payload: EventPayload) -> ProcessingResult:
        result = await self.processor.process(payload)
        if result.notification_id is not None and (result.notify or result.bundled_with):
            self.bus.emit(E.NOTIFICATION_READY, user_id=payload.user_id, notification_id=result.notification_id)
        return result

    async def ingest_event(self, payload: EventPayload | dict) -> ProcessingResult:
        """处理单个事件；ValidationError 直接抛出，暂时性故障转入重试队列"""
        event_payload = parse_payload(payload)
        try:
            return await self._handle_event(event_payload)
        except TransientInfraError as e:
            item = await self.queue.enqueue(event_payload, str(e))
            return ProcessingResult(
                event_id=None, accepted=True, notify=False, status=None, reason="queued", queued_item_id=item.item_id
            )

    async def ingest_batch(self, payloads: list[EventPayload | dict]) -> list[ProcessingResult | Exception]:
        """按观测时间顺序处理；返回值与输入一一对应，校验失败的位置是 ValidationError"""
        outcomes = await self.processor.process_batch(payloads)
        results: list[ProcessingResult | Exception] = []
        for raw, outcome in zip(payloads, outcomes):
            if isinstance(outcome, TransientInfraError):
                item = await self.queue.enqueue(parse_payload(raw), str(outcome))
                outcome = ProcessingResult(
                    event_id=None, accepted=True, notify=False, status=None, reason="queued",
                    queued_item_id=item.item_id,
                )
            elif isinstance(outcome, ProcessingResult) and outcome.notification_id is not None and \
                    (outcome.notify or outcome.bundled_with):
                self.bus.emit(
                    E.NOTIFICATION_READY, user_id=parse_payload(raw).user_id, notification_id=outcome.notification_id
                )
            results.append(outcome)
        return results

    async def sync_offline(self, user_id: int, payloads: list[EventPayload | dict]) -> dict:
        return await self.queue.sync_offline(user_id, payloads)

    # ---------------- 通知组装 ----------------
    def _on_notification_ready(self, user_id: int, notification_id: str) -> None:
        task = asyncio.create_task(
            self._dispatch_logged(user_id, notification_id), name=f"dispatch-{notification_id}"
        )
        self._dispatch_tasks.add(task)
        task.add_done_callback(self._dispatch_tasks.discard)

    async def _dispatch_logged(self, user_id: int, notification_id: str) -> None:
        try:
            await self.dispatch_notification(user_id, notification_id)
        except ValidationError as e:
            logger.info(f"通知未能组装 (引用已失效): notification_id={notification_id}, {e}")
        except sqlite3.Error as e:
            logger.opt(exception=e).error(
                f"通知组装失败，等待补发扫描重试: notification_id={notification_id}, error={e}"
            )

    async def redispatch_pending(self, limit: int = 100) -> int:
        """为 notify=1 但没有投递记录的事件重新组装并安排通知，返回成功安排的条数"""
        since = self.clock.now() - timedelta(hours=DISPATCH_RECOVERY_HOURS)
        dispatched = 0
        for event in await event_store.list_undispatched(since, limit):
            try:
                if await self.dispatch_notification(event.user_id, event.notification_id) is not None:
                    dispatched += 1
            except ValidationError as e:
                logger.info(f"补发跳过 (引用已失效): notification_id={event.notification_id}, {e}")
            except sqlite3.Error as e:
                logger.opt(exception=e).error(f"补发通知失败: notification_id={event.notification_id}, error={e}")
        if dispatched:
            logger.warning(f"补发了 {dispatched} 条中断的通知")
        return dispatched

    async def dispatch_main_loop(self, shutdown_event: asyncio.Event,
                                 interval: float = SCHEDULER_SWEEP_SECONDS) -> None:
        logger.info("通知补发循环已启动")
        while not shutdown_event.is_set():
            try:
                await self.redispatch_pending()
            except sqlite3.Error as e:
                logger.opt(exception=e).error(f"通知补发循环出错: {e}")
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        logger.info("通知补发循环已关闭")

    async def dispatch_notification(self, user_id: int, notification_id: str) -> str | None:
        """为主事件（及其 bundle 成员）组装通知并安排投递，返回 scheduled_id"""
        async with self.notify_locks(user_id):
            primary = await event_store.get_event_by_id(event_id_from_notification_id(notification_id))
            if primary is None or not primary.notify:
                logger.debug(f"主事件不存在或无需通知: notification_id={notification_id}")
                return None

            notification = await self.composer.compose(await self.bundler.load(primary))
            scheduled_id = scheduled_id_for(notification_id)
            existing = await self.scheduler.get(scheduled_id)
            if existing is None:
                return await self.scheduler.schedule(notification)
            if not await self.scheduler.refresh(notification):
                logger.info(
                    f"通知已在投递中或已结束，bundle 新成员不再重新渲染: scheduled_id={scheduled_id}, "
                    f"status={existing.status.value}"
                )
            return scheduled_id

    async def drain(self) -> None:
        """等待所有已发出的通知组装任务完成"""
        while self._dispatch_tasks:
            await asyncio.gather(*list(self._dispatch_tasks))

    # ---------------- 地理围栏生命周期 ----------------
    async def _require_task(self, task_id: int) -> Task:
        task = await task_store.get_task_by_id(task_id)
        if task is None:
            raise NotFoundError(f"任务不存在: task_id={task_id}")
        return task

    async def create_geofences_for_task(self, task_id: int) -> list[Geofence]:
        return await self.allocator.allocate(await self._require_task(task_id))

    async def update_geofences_for_task(self, task_id: int) -> list[Geofence]:
        return await self.allocator.update(await self._require_task(task_id))

    async def mute_geofences_for_task(self, task_id: int) -> int:
        task = await self._require_task(task_id)
        if task.status == TaskStatus.COMPLETED:
            raise ValidationError(f"任务已完成，无需静音: task_id={task_id}")
        await task_store.set_task_status(task_id, TaskStatus.MUTED, self.clock.now())
        await self.scheduler.cancel_for_task(task_id, "muted")
        return await self.allocator.mute(task)

    async def unmute_geofences_for_task(self, task_id: int) -> list[Geofence]:
        task = await self._require_task(task_id)
        await suppression_store.cancel_mutes(task_id)
        if task.status == TaskStatus.MUTED:
            await task_store.set_task_status(task_id, TaskStatus.ACTIVE, self.clock.now())
            task = await self._require_task(task_id)
        if task.status != TaskStatus.ACTIVE:
            raise ValidationError(f"只能恢复活跃任务的围栏: task_id={task_id}, status={task.status.value}")
        if not await geofence_store.list_for_task(task_id):
            # 静音期间修改过位置时围栏已被删除，按当前配置重新创建
            return await self.allocator.allocate(task)
        return await self.allocator.unmute(task)

    async def delete_geofences_for_task(self, task_id: int) -> int:
        task = await self._require_task(task_id)
        await self.scheduler.cancel_for_task(task_id, "deleted")
        return await self.allocator.delete(task)

    async def refresh_poi_bindings(self, task_id: int, user_location: Coordinate) -> list[Geofence]:
        return await self.allocator.refresh_poi_bindings(await self._require_task(task_id), user_location)

    # ---------------- 通知安排 ----------------
    async def schedule_notification(self, notification: Notification) -> str:
        return await self.scheduler.schedule(notification)

    async def cancel_notification(self, scheduled_id: str) -> bool:
        return await self.scheduler.cancel(scheduled_id)

    # ---------------- 通知动作 ----------------
    async def _notification_for_action(self, user_id: int, notification_id: str) -> Notification | None:
        record = await scheduled_store.get_by_notification_id(notification_id)
        if record is not None:
            if record.user_id != user_id:
                raise NotFoundError(f"通知不存在: notification_id={notification_id}")
            return record.notification
        event = await event_store.get_event_by_id(event_id_from_notification_id(notification_id))
        if event is None or event.user_id != user_id:
            raise NotFoundError(f"通知不存在: notification_id={notification_id}")
        return None

    async def handle_action(
        self,
        user_id: int,
        notification_id: str,
        action: ActionType,
        task_id: int | None = None,
        mute_duration: MuteDuration = MuteDuration.PERMANENT,
    ) -> dict:
        """处理用户在通知上的操作；task_id 缺省为通知的主任务（bundle 可指定成员任务）"""
        action = ActionType(action)
        notification = await self._notification_for_action(user_id, notification_id)
        if task_id is None:
            if notification is not None:
                task_id = notification.task_id
            else:
                event = await event_store.get_event_by_id(event_id_from_notification_id(notification_id))
                task_id = event.task_id
        task = await self._require_task(task_id)
        if task.user_id != user_id:
            raise NotFoundError(f"任务不存在: task_id={task_id}")

        now = self.clock.now()
        user = await user_store.get_user_by_id(user_id)
        user_tz = user.timezone if user else None
        logger.info(f"通知动作: user_id={user_id}, notification_id={notification_id}, action={action.value}")

        if action == ActionType.COMPLETE:
            await task_store.set_task_status(task_id, TaskStatus.COMPLETED, now)
            cancelled = await self.scheduler.cancel_for_task(task_id, "completed")
            # 围栏保留到维护循环按保留期删除，这里只停用
            deactivated = await self.allocator.mute(task)
            return {"action": action.value, "task_id": task_id, "cancelled": cancelled, "deactivated": deactivated}

        if action in SNOOZE_ACTIONS:
            duration = SNOOZE_ACTIONS[action]
            until = snooze_until(duration, now, user_tz)
            snooze = await suppression_store.create_snooze(user_id, task_id, duration, until, now, notification_id)
            reminder = None
            record = await scheduled_store.get_by_notification_id(notification_id)
            if notification is not None and record is not None and record.status == DeliveryStatus.DELIVERED:
                reminder = await self.scheduler.remind_later(notification, until, f"snooze{snooze.snooze_count}")
            return {
                "action": action.value, "task_id": task_id, "snooze_until": until.isoformat(),
                "snooze_count": snooze.snooze_count, "reminder_scheduled_id": reminder,
            }

        if action == ActionType.OPEN_MAP:
            location = notification.location if notification is not None else None
            return {
                "action": action.value,
                "task_id": task_id,
                "latitude": location.latitude if location else None,
                "longitude": location.longitude if location else None,
                "location_name": notification.metadata.get("location_name") if notification else None,
            }

        until = mute_until(mute_duration, now, user_tz)
        await suppression_store.create_mute(user_id, task_id, mute_duration, until, now, reason="notification_action")
        muted = await self.mute_geofences_for_task(task_id)
        return {
            "action": action.value, "task_id": task_id,
            "mute_until": until.isoformat() if until else None, "deactivated": muted,
        }

    async def expire_mutes(self) -> int:
        """到期的静音：恢复任务与围栏；单个任务恢复失败只记录日志，任务保持静音"""
        restored = 0
        for mute in await suppression_store.list_expired_mutes(self.clock.now()):
            task = await task_store.get_task_by_id(mute.task_id)
            if task is None or task.status != TaskStatus.MUTED:
                continue
            try:
                await self.unmute_geofences_for_task(task.task_id)
            except GeoNudgeError as e:
                logger.warning(f"静音到期但无法恢复围栏: task_id={task.task_id}, error={e}")
                await task_store.set_task_status(task.task_id, TaskStatus.MUTED, self.clock.now())
                continue
            restored += 1
        await suppression_store.expire_records(self.clock.now())
        return restored

    # ---------------- 推送 token / 统计 ----------------
    async def register_push_token(
        self,
        user_id: int,
        platform: Platform,
        device_token: str,
        device_id: str | None = None,
        app_version: str | None = None,
    ) -> PushToken:
        if await user_store.get_user_by_id(user_id) is None:
            raise NotFoundError(f"用户不存在: user_id={user_id}")
        return await self.gateway.register_token(user_id, platform, device_token, device_id, app_version)

    async def update_preferences(
        self,
        user_id: int,
        timezone: str | None = None,
        notification_style: NotificationStyle | None = None,
        quiet_hours: QuietHours | None = None,
        clear_quiet_hours: bool = False,
    ) -> UserInfo:
        """修改时区/通知样式/免打扰时段；已安排的通知在下次扫描时按新设置复查"""
        if await user_store.get_user_by_id(user_id) is None:
            raise NotFoundError(f"用户不存在: user_id={user_id}")
        if timezone is not None:
            try:
                ZoneInfo(timezone)
            except (ZoneInfoNotFoundError, ValueError):
                raise ValidationError(f"未知的时区: {timezone}")
        await user_store.update_user_preferences(
            user_id, timezone=timezone, notification_style=notification_style,
            quiet_hours=quiet_hours, clear_quiet_hours=clear_quiet_hours,
        )
        return await user_store.get_user_by_id(user_id)

    async def set_focus_mode(self, user_id: int, focus_until: datetime | None) -> None:
        if await user_store.get_user_by_id(user_id) is None:
            raise NotFoundError(f"用户不存在: user_id={user_id}")
        if focus_until is not None and focus_until.tzinfo is None:
            focus_until = focus_until.replace(tzinfo=dt_timezone.utc)
        await user_store.set_focus_until(user_id, focus_until)
        logger.info(f"专注模式更新: user_id={user_id}, focus_until={focus_until}")

    async def get_user_stats(self, user_id: int, days: int = 7) -> dict:
        if await user_store.get_user_by_id(user_id) is None:
            raise NotFoundError(f"用户不存在: user_id={user_id}")
        return {
            "user_id": user_id,
            "geofences": await self.allocator.get_stats(user_id),
            "events": await event_store.get_processing_stats(user_id, self.clock.now() - timedelta(days=days)),
            "deliveries": await self.scheduler.get_user_delivery_stats(user_id),
        }

    async def get_overview(self) -> dict:
        return {
            "metrics": self.metrics.snapshot(),
            "ingestion_queue": await self.queue.get_stats(),
            "scheduler": await self.scheduler.get_stats(),
            "push_tokens": await self.gateway.get_token_stats(),
        }

    # ---------------- 启动 / 关闭 ----------------
    async def startup_recovery(self) -> dict:
        """释放上次崩溃遗留的认领，并立即处理已到期的工作"""
        recovered = {
            "scheduled_released": await self.scheduler.recover(),
            "queue_released": await self.queue.recover(),
            "notifications_redispatched": await self.redispatch_pending(),
        }
        recovered["scheduled_processed"] = await self.scheduler.sweep()
        recovered["queue_processed"] = await self.queue.sweep()
        logger.info(f"启动恢复完成: {recovered}")
        return recovered

    async def aclose(self) -> None:
        await self.drain()
        self.bus.remove_listener(E.NOTIFICATION_READY, self._on_notification_ready)
        await self.gateway.aclose()

