"""通知调度器

状态机: pending -> delivered | cancelled | failed，pending 可以改期（仍为 pending）。

- 安排时若处于用户的免打扰时段，投递时间 = 免打扰结束 + 5 分钟；否则立即尝试投递
- 每次投递前复查: 任务是否仍活跃/被静音 -> cancelled；是否被 snooze -> 改期到 snooze 结束；
  免打扰 -> 改期到结束；专注模式 -> 30 分钟后再试。这些都不计入失败次数
- 投递失败: 次数 < 3 则 5 分钟后重试，否则 failed（保留记录，不再自动重试）
- 记录先被认领 (in_flight) 再投递；已认领的记录无法取消，投递结果照常记录
- 认领后的读写遇到存储故障时按一次失败的投递处理（改期重试或 failed），认领随之释放；
  连改期也失败时，认领超过租期后由下一次扫描释放
"""

import asyncio
import sqlite3
import time
from datetime import datetime, timedelta
from typing import Protocol

import geonudge.storage.geofence_event as event_store
import geonudge.storage.scheduled as scheduled_store
import geonudge.storage.suppression as suppression_store
import geonudge.storage.task as task_store
import geonudge.storage.user as user_store
from geonudge.channels.gateway import DeliveryGateway
from geonudge.config.settings import (
    CLAIM_LEASE_MINUTES, DELIVERY_MAX_ATTEMPTS, DELIVERY_RETRY_DELAY_MINUTES, FOCUS_MODE_RETRY_MINUTES,
    QUIET_HOURS_TOLERANCE_MINUTES, RESPECT_FOCUS_MODE, SCHEDULER_SWEEP_SECONDS,
)
from geonudge.datamodel import (
    BulkDeliveryResult, DeliveryStatus, Notification, QuietHours, ScheduledNotification, TaskStatus, UserInfo,
)
from geonudge.events import E, Bus
from geonudge.logger import logger
from geonudge.metrics import RuntimeMetrics, runtime_metrics
from geonudge.utils import Clock, SystemClock, to_user_local


# ----------------- 免打扰时段 ----------------
def _minutes_of_day(hhmm: str) -> int:
    hour, minute = hhmm.split(":")
    return int(hour) * 60 + int(minute)


def in_quiet_hours(now: datetime, quiet_hours: QuietHours | None, user_tz: str | None) -> bool:
    """端点包含在内；start > end 表示跨夜"""
    if quiet_hours is None:
        return False
    local = to_user_local(now, user_tz)
    current = local.hour * 60 + local.minute
    start = _minutes_of_day(quiet_hours.start)
    end = _minutes_of_day(quiet_hours.end)
    if start <= end:
        return start <= current <= end
    return current >= start or current <= end


def next_quiet_end(
    now: datetime,
    quiet_hours: QuietHours,
    user_tz: str | None,
    tolerance_minutes: int = QUIET_HOURS_TOLERANCE_MINUTES,
) -> datetime:
    """下一个 (免打扰结束 + tolerance) 的时刻，返回 UTC"""
    local = to_user_local(now, user_tz)
    end = _minutes_of_day(quiet_hours.end)
    candidate = local.replace(hour=end // 60, minute=end % 60, second=0, microsecond=0)
    candidate += timedelta(minutes=tolerance_minutes)
    if candidate <= local:
        candidate += timedelta(days=1)
    return candidate.astimezone(now.tzinfo)


def scheduled_id_for(notification_id: str) -> str:
    return f"scheduled_{notification_id}"


# ----------------- 专注模式 ----------------
class FocusModeProvider(Protocol):
    async def is_focused(self, user: UserInfo, now: datetime) -> bool: ...


class UserFocusProvider:
    """读取客户端上报的 users.focus_until"""

    async def is_focused(self, user: UserInfo, now: datetime) -> bool:
        return user.focus_until is not None and now < user.focus_until


class NotificationScheduler:
    def __init__(
        self,
        gateway: DeliveryGateway,
        bus: Bus,
        clock: Clock | None = None,
        focus_provider: FocusModeProvider | None = None,
        metrics: RuntimeMetrics = runtime_metrics,
        max_attempts: int = DELIVERY_MAX_ATTEMPTS,
        retry_delay_minutes: int = DELIVERY_RETRY_DELAY_MINUTES,
        focus_retry_minutes: int = FOCUS_MODE_RETRY_MINUTES,
        quiet_tolerance_minutes: int = QUIET_HOURS_TOLERANCE_MINUTES,
        respect_focus_mode: bool = RESPECT_FOCUS_MODE,
        claim_lease_minutes: int = CLAIM_LEASE_MINUTES,
    ) -> None:
        self.gateway = gateway
        self.bus = bus
        self.clock = clock or SystemClock()
        self.focus_provider = focus_provider or UserFocusProvider()
        self.metrics = metrics
        self.max_attempts = max_attempts
        self.retry_delay = timedelta(minutes=retry_delay_minutes)
        self.focus_retry = timedelta(minutes=focus_retry_minutes)
        self.quiet_tolerance_minutes = quiet_tolerance_minutes
        self.respect_focus_mode = respect_focus_mode
        self.claim_lease = timedelta(minutes=claim_lease_minutes)
        self.last_sweep_at: float | None = None

    # ---------------- 安排 / 取消 ----------------
    async def schedule(self, notification: Notification, deliver_now: bool = True) -> str:
        """安排通知，返回 scheduled_id；同一通知重复安排时只刷新尚未投递的内容"""
        now = self.clock.now()
        scheduled_id = scheduled_id_for(notification.notification_id)
        user = await user_store.get_user_by_id(notification.user_id)

        scheduled_at, reason = now, None
        if user is not None and in_quiet_hours(now, user.quiet_hours, user.timezone):
            scheduled_at = next_quiet_end(now, user.quiet_hours, user.timezone, self.quiet_tolerance_minutes)
            reason = "quiet_hours"
            self.metrics.record_deferral(reason)
            logger.info(f"免打扰时段，通知推迟到 {scheduled_at}: scheduled_id={scheduled_id}")

        record = ScheduledNotification(
            scheduled_id=scheduled_id,
            notification=notification,
            user_id=notification.user_id,
            scheduled_at=scheduled_at,
            reason=reason,
        )
        inserted = await scheduled_store.insert_scheduled(record, now)
        if not inserted:
            updated = await scheduled_store.update_payload_if_idle(scheduled_id, notification, now)
            logger.debug(f"通知已存在，刷新内容: scheduled_id={scheduled_id}, updated={updated}")
            return scheduled_id

        logger.info(f"通知已安排: scheduled_id={scheduled_id}, at={scheduled_at}")
        if deliver_now and scheduled_at <= now:
            await self.attempt(scheduled_id)
        return scheduled_id

    async def remind_later(self, notification: Notification, at: datetime, tag: str) -> str | None:
        """已送达的通知在 at 时刻再提醒一次（稍后提醒）；同一 tag 只会安排一次"""
        now = self.clock.now()
        scheduled_id = f"{scheduled_id_for(notification.notification_id)}_{tag}"
        record = ScheduledNotification(
            scheduled_id=scheduled_id,
            notification=notification,
            user_id=notification.user_id,
            scheduled_at=at,
            reason="snoozed",
        )
        if not await scheduled_store.insert_scheduled(record, now):
            return None
        logger.info(f"稍后提醒已安排: scheduled_id={scheduled_id}, at={at}")
        return scheduled_id

    async def refresh(self, notification: Notification) -> bool:
        """bundle 成员变化后刷新待投递通知的内容；已在投递中或已结束的返回 False"""
        return await scheduled_store.update_payload_if_idle(
            scheduled_id_for(notification.notification_id), notification, self.clock.now()
        )

    async def cancel(self, scheduled_id: str, reason: str = "cancelled") -> bool:
        cancelled = await scheduled_store.cancel_if_idle(scheduled_id, self.clock.now(), reason)
        if cancelled:
            logger.info(f"通知已取消: scheduled_id={scheduled_id}, reason={reason}")
        else:
            logger.debug(f"通知无法取消 (不存在/投递中/已结束): scheduled_id={scheduled_id}")
        return cancelled

    async def cancel_for_task(self, task_id: int, reason: str) -> int:
        cancelled = 0
        for record in await scheduled_store.list_pending_for_task(task_id):
            if await self.cancel(record.scheduled_id, reason):
                cancelled += 1
        return cancelled

    async def get(self, scheduled_id: str) -> ScheduledNotification | None:
        return await scheduled_store.get_scheduled(scheduled_id)

    # ---------------- 投递 ----------------
    async def attempt(self, scheduled_id: str) -> DeliveryStatus | None:
        """认领并处理一条到期记录，返回处理后的状态；未能认领时返回 None"""
        if not await scheduled_store.claim(scheduled_id, self.clock.now()):
            return None
        record = None
        try:
            record = await scheduled_store.get_scheduled(scheduled_id)
            return await self._run_claimed(record)
        except sqlite3.Error as e:
            logger.opt(exception=e).warning(f"投递过程中存储故障: scheduled_id={scheduled_id}, error={e}")
            if record is None:
                # 读不到记录就不知道已尝试次数，只释放认领
                await scheduled_store.reschedule(
                    scheduled_id, self.clock.now() + self.retry_delay, self.clock.now(),
                    last_error=f"storage error: {e}", reason="retry",
                )
                return DeliveryStatus.PENDING
            return await self._record_failure(record, record.attempts + 1, f"storage error: {e}", transient=True)

    async def _policy_check(self, record: ScheduledNotification, user: UserInfo | None,
                            now: datetime) -> tuple[str, str, datetime | None] | None:
        """返回 ('cancel' | 'defer', 原因, 改期时间)；允许投递时返回 None"""
        task = await task_store.get_task_by_id(record.notification.task_id)
        if user is None or task is None:
            return "cancel", "task_missing", None
        if task.status == TaskStatus.MUTED:
            return "cancel", "muted", None
        if task.status != TaskStatus.ACTIVE:
            return "cancel", "task_inactive", None
        if await suppression_store.get_active_mute(task.task_id, now) is not None:
            return "cancel", "muted", None

        snooze = await suppression_store.get_active_snooze(task.task_id, record.notification.notification_id, now)
        if snooze is not None:
            return "defer", "snoozed", snooze.snooze_until

        if in_quiet_hours(now, user.quiet_hours, user.timezone):
            return "defer", "quiet_hours", next_quiet_end(
                now, user.quiet_hours, user.timezone, self.quiet_tolerance_minutes
            )

        if self.respect_focus_mode and await self.focus_provider.is_focused(user, now):
            return "defer", "focus_mode", now + self.focus_retry
        return None

    async def _run_claimed(self, record: ScheduledNotification) -> DeliveryStatus:
        now = self.clock.now()
        notification = record.notification
        user = await user_store.get_user_by_id(record.user_id)

        decision = await self._policy_check(record, user, now)
        if decision is not None:
            action, reason, when = decision
            self.metrics.record_deferral(reason)
            if action == "cancel":
                await scheduled_store.finish(record.scheduled_id, DeliveryStatus.CANCELLED, now, reason=reason)
                logger.info(f"通知被抑制: scheduled_id={record.scheduled_id}, reason={reason}")
                return DeliveryStatus.CANCELLED
            await scheduled_store.reschedule(record.scheduled_id, when, now, reason=reason)
            logger.info(f"通知改期: scheduled_id={record.scheduled_id}, reason={reason}, at={when}")
            return DeliveryStatus.PENDING

        started = time.monotonic()
        try:
            result = await self.gateway.deliver(record.user_id, notification)
        except (sqlite3.Error, OSError) as e:
            logger.warning(f"推送网关异常: scheduled_id={record.scheduled_id}, error={e}")
            result = BulkDeliveryResult(errors=[f"gateway error: {e}"])
            result_is_transient = True
        else:
            result_is_transient = result.retryable or any(not r.permanent for r in result.results)
        latency_ms = (time.monotonic() - started) * 1000
        attempts = record.attempts + 1
        now = self.clock.now()

        if result.delivered:
            await scheduled_store.finish(record.scheduled_id, DeliveryStatus.DELIVERED, now, attempts=attempts)
            await event_store.mark_notification_sent(notification.event_ids)
            self.metrics.record_delivery(latency_ms, ok=True)
            logger.info(
                f"通知已送达: scheduled_id={record.scheduled_id}, tokens_ok={result.success_count}, "
                f"tokens_failed={result.failure_count}"
            )
            self.bus.emit(E.NOTIFICATION_DELIVERED, scheduled_id=record.scheduled_id, notification=notification)
            return DeliveryStatus.DELIVERED

        self.metrics.record_delivery(latency_ms, ok=False)
        last_error = "; ".join(result.errors) or "delivery failed"
        return await self._record_failure(record, attempts, last_error, transient=result_is_transient)

    async def _record_failure(self, record: ScheduledNotification, attempts: int, last_error: str,
                              transient: bool) -> DeliveryStatus:
        """失败的一次尝试: 可重试且未用尽次数时改期，否则 failed；两种情况都会释放认领"""
        now = self.clock.now()
        if transient and attempts < self.max_attempts:
            retry_at = now + self.retry_delay
            await scheduled_store.reschedule(
                record.scheduled_id, retry_at, now, attempts=attempts, last_error=last_error, reason="retry"
            )
            logger.warning(
                f"通知投递失败，{retry_at} 重试 ({attempts}/{self.max_attempts}): "
                f"scheduled_id={record.scheduled_id}, error={last_error}"
            )
            return DeliveryStatus.PENDING

        reason = "retries_exhausted" if transient else "permanent_failure"
        await scheduled_store.finish(
            record.scheduled_id, DeliveryStatus.FAILED, now, attempts=attempts, last_error=last_error, reason=reason
        )
        logger.error(f"通知投递失败 (终态): scheduled_id={record.scheduled_id}, reason={reason}, error={last_error}")
        self.bus.emit(
            E.NOTIFICATION_FAILED, scheduled_id=record.scheduled_id, notification=record.notification,
            error=last_error,
        )
        return DeliveryStatus.FAILED

    # ---------------- 后台轮询 ----------------
    async def sweep(self, limit: int = 100) -> int:
        """处理所有到期记录；重复执行是幂等的"""
        self.last_sweep_at = time.time()
        released = await scheduled_store.release_expired_claims(self.clock.now() - self.claim_lease)
        if released:
            logger.warning(f"释放超过租期的投递认领: {released} 条")
        processed = 0
        for record in await scheduled_store.list_due(self.clock.now(), limit):
            try:
                if await self.attempt(record.scheduled_id) is not None:
                    processed += 1
            except sqlite3.Error as e:
                logger.opt(exception=e).error(f"处理待投递通知出错: scheduled_id={record.scheduled_id}, error={e}")
        return processed

    async def recover(self) -> int:
        released = await scheduled_store.release_stale_in_flight()
        if released:
            logger.warning(f"释放上次未完成的投递认领: {released} 条")
        return released

    async def main_loop(self, shutdown_event: asyncio.Event, interval: float = SCHEDULER_SWEEP_SECONDS) -> None:
        logger.info("通知调度循环已启动")
        while not shutdown_event.is_set():
            try:
                processed = await self.sweep()
                if processed:
                    logger.debug(f"调度循环处理了 {processed} 条通知")
            except sqlite3.Error as e:
                logger.opt(exception=e).error(f"调度循环出错: {e}")
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        logger.info("通知调度循环已关闭")

    # ---------------- 统计 / 清理 ----------------
    async def get_stats(self) -> dict:
        stats = await scheduled_store.count_by_status()
        stats["last_sweep_at_epoch"] = self.last_sweep_at
        return stats

    async def get_user_delivery_stats(self, user_id: int) -> dict:
        now = self.clock.now()
        stats = {}
        for label, window in (("last_24h", timedelta(hours=24)), ("last_7d", timedelta(days=7))):
            counts = await scheduled_store.user_delivery_counts(user_id, now - window)
            total = sum(counts.values())
            counts["delivery_rate"] = round(counts["delivered"] / total * 100, 1) if total else 0.0
            stats[label] = counts
        return stats

    async def cleanup(self, older_than_hours: int = 24) -> int:
        """删除已送达/已取消的旧记录；failed 记录保留，需运维显式清理"""
        return await scheduled_store.delete_terminal_before(self.clock.now() - timedelta(hours=older_than_hours))

    async def purge_failed(self, older_than_hours: int = 24 * 7) -> int:
        return await scheduled_store.delete_terminal_before(
            self.clock.now() - timedelta(hours=older_than_hours), statuses=("failed",)
        )


__all__ = [
    "NotificationScheduler", "FocusModeProvider", "UserFocusProvider",
    "in_quiet_hours", "next_quiet_end", "scheduled_id_for",
]
