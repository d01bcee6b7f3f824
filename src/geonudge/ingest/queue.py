"""事件处理重试队列

与通知投递的重试相互独立：这里只负责"事件处理"阶段的暂时性故障。
- 入队后 1 分钟首次重试，之后按 5 / 15 分钟退避，最多 3 次
- 用尽后条目停留在 failed 状态供人工检查，不会被丢弃
- 离线补报在处理前先做 60 分钟 / 100 m 的重复检查，避免客户端重放的事件进入队列
"""

import asyncio
import sqlite3
import time
from datetime import timedelta
from typing import Awaitable, Callable

import geonudge.storage.event_queue as queue_store
import geonudge.storage.geofence_event as event_store
from geonudge.config.settings import (
    DEDUP_DISTANCE_METERS, INGEST_MAX_ATTEMPTS, INGEST_RETRY_DELAYS_MINUTES, INGEST_SWEEP_SECONDS,
    OFFLINE_SYNC_DEDUP_WINDOW_MINUTES,
)
from geonudge.datamodel import EventStatus, ProcessingResult, QueueStatus, QueuedEvent
from geonudge.errors import TransientInfraError, ValidationError
from geonudge.logger import logger
from geonudge.metrics import RuntimeMetrics, runtime_metrics
from geonudge.pipeline.processor import parse_payload
from geonudge.schemas import EventPayload
from geonudge.utils import Clock, SystemClock, haversine_m

EventHandler = Callable[[EventPayload], Awaitable[ProcessingResult]]


class IngestionQueue:
    def __init__(
        self,
        handler: EventHandler,
        clock: Clock | None = None,
        metrics: RuntimeMetrics = runtime_metrics,
        max_attempts: int = INGEST_MAX_ATTEMPTS,
        retry_delays_minutes: list[int] | None = None,
        sync_window_minutes: int = OFFLINE_SYNC_DEDUP_WINDOW_MINUTES,
        sync_distance_m: float = DEDUP_DISTANCE_METERS,
    ) -> None:
        self.handler = handler
        self.clock = clock or SystemClock()
        self.metrics = metrics
        self.max_attempts = max_attempts
        self.retry_delays = [timedelta(minutes=m) for m in (retry_delays_minutes or INGEST_RETRY_DELAYS_MINUTES)]
        self.sync_window = timedelta(minutes=sync_window_minutes)
        self.sync_distance_m = sync_distance_m
        self.last_sweep_at: float | None = None

    def _delay_for(self, attempts: int) -> timedelta:
        return self.retry_delays[min(attempts, len(self.retry_delays) - 1)]

    async def enqueue(self, payload: EventPayload, error: str | None = None) -> QueuedEvent:
        now = self.clock.now()
        item = await queue_store.enqueue(
            payload.user_id, payload.model_dump(mode="json"), now + self._delay_for(0), now, error
        )
        self.metrics.record_queued()
        logger.warning(f"事件处理失败，已加入重试队列: item_id={item.item_id}, error={error}")
        return item

    # ---------------- 处理 ----------------
    async def process_item(self, item_id: int) -> QueuedEvent | None:
        """认领并处理一个条目；未能认领时返回 None"""
        now = self.clock.now()
        if not await queue_store.claim(item_id, now):
            return None
        item = await queue_store.get_item(item_id)
        attempts = item.attempts + 1
        payload: EventPayload | None = None

        try:
            payload = parse_payload(item.payload)
            result = await self.handler(payload)
        except ValidationError as e:
            await queue_store.update_item(item_id, QueueStatus.FAILED, self.clock.now(),
                                          attempts=attempts, last_error=str(e))
            logger.error(f"队列事件校验失败，不再重试: item_id={item_id}, error={e}")
            await self._mark_event_failed(payload, str(e))
        except TransientInfraError as e:
            await self._handle_transient(item, attempts, str(e), payload)
        else:
            await queue_store.update_item(item_id, QueueStatus.COMPLETED, self.clock.now(), attempts=attempts)
            logger.info(f"队列事件处理完成: item_id={item_id}, event_id={result.event_id}, reason={result.reason}")
        return await queue_store.get_item(item_id)

    async def _handle_transient(self, item: QueuedEvent, attempts: int, error: str,
                                payload: EventPayload | None) -> None:
        now = self.clock.now()
        if attempts >= self.max_attempts:
            await queue_store.update_item(item.item_id, QueueStatus.FAILED, now, attempts=attempts, last_error=error)
            logger.error(f"队列事件重试次数用尽: item_id={item.item_id}, attempts={attempts}, error={error}")
            await self._mark_event_failed(payload, error)
            return
        next_retry_at = now + self._delay_for(attempts)
        await queue_store.update_item(
            item.item_id, QueueStatus.PENDING, now, attempts=attempts, next_retry_at=next_retry_at, last_error=error
        )
        logger.warning(
            f"队列事件处理失败，{next_retry_at} 重试 ({attempts}/{self.max_attempts}): "
            f"item_id={item.item_id}, error={error}"
        )

    async def _mark_event_failed(self, payload: EventPayload | None, error: str) -> None:
        """处理中途失败可能留下 pending 事件记录，按 client_event_id 找到后标记为 failed"""
        if payload is None or not payload.client_event_id:
            return
        event = await event_store.get_event_by_client_id(payload.user_id, payload.client_event_id)
        if event is not None and event.status == EventStatus.PENDING:
            await event_store.update_event_outcome(event.event_id, EventStatus.FAILED, error[:200], self.clock.now())

    async def sweep(self, limit: int = 100) -> int:
        self.last_sweep_at = time.time()
        handled = 0
        for item in await queue_store.list_due(self.clock.now(), limit):
            try:
                if await self.process_item(item.item_id) is not None:
                    handled += 1
            except sqlite3.Error as e:
                logger.opt(exception=e).error(f"处理队列条目出错: item_id={item.item_id}, error={e}")
        return handled

    async def main_loop(self, shutdown_event: asyncio.Event, interval: float = INGEST_SWEEP_SECONDS) -> None:
        logger.info("事件重试队列循环已启动")
        while not shutdown_event.is_set():
            try:
                handled = await self.sweep()
                if handled:
                    logger.debug(f"重试队列处理了 {handled} 个条目")
            except sqlite3.Error as e:
                logger.opt(exception=e).error(f"重试队列循环出错: {e}")
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        logger.info("事件重试队列循环已关闭")

    # ---------------- 运维操作 ----------------
    async def retry(self, item_id: int) -> QueuedEvent | None:
        """人工重试：failed 条目重置为 pending 并立即处理"""
        item = await queue_store.get_item(item_id)
        if item is None:
            return None
        if item.status == QueueStatus.FAILED:
            now = self.clock.now()
            await queue_store.update_item(item_id, QueueStatus.PENDING, now, attempts=0, next_retry_at=now)
        return await self.process_item(item_id) or await queue_store.get_item(item_id)

    async def remove(self, item_id: int) -> bool:
        return await queue_store.delete_item(item_id)

    async def list_for_user(self, user_id: int) -> list[QueuedEvent]:
        return await queue_store.list_for_user(user_id)

    async def get_stats(self) -> dict:
        stats = await queue_store.get_stats()
        stats["last_sweep_at_epoch"] = self.last_sweep_at
        return stats

    async def clear_failed(self, older_than_hours: int = 24) -> int:
        deleted = await queue_store.delete_with_status_before(
            QueueStatus.FAILED, self.clock.now() - timedelta(hours=older_than_hours)
        )
        logger.info(f"已清理失败的队列条目: {deleted} 个")
        return deleted

    async def clear_completed(self, older_than_hours: int = 24) -> int:
        return await queue_store.delete_with_status_before(
            QueueStatus.COMPLETED, self.clock.now() - timedelta(hours=older_than_hours)
        )

    async def recover(self) -> int:
        released = await queue_store.release_stale_processing(self.clock.now())
        if released:
            logger.warning(f"放回上次未完成的队列条目: {released} 个")
        return released

    # ---------------- 离线补报 ----------------
    async def _is_replayed(self, payload: EventPayload, observed_at) -> bool:
        stored = await event_store.find_user_events_between(
            payload.user_id, observed_at - self.sync_window, observed_at + self.sync_window
        )
        for event in stored:
            if event.task_id == payload.task_id and event.kind == payload.kind and \
                    haversine_m(event.coordinate, payload.coordinate) <= self.sync_distance_m:
                return True

        for item in await queue_store.list_for_user(payload.user_id, statuses=("pending", "processing")):
            try:
                queued = parse_payload(item.payload)
            except ValidationError:
                continue
            queued_at = queued.occurred_at or item.created_at
            if queued.task_id == payload.task_id and queued.kind == payload.kind and \
                    queued_at is not None and abs(queued_at - observed_at) <= self.sync_window and \
                    haversine_m(queued.coordinate, payload.coordinate) <= self.sync_distance_m:
                return True
        return False

    async def sync_offline(self, user_id: int, payloads: list[EventPayload | dict]) -> dict:
        """离线期间缓存的事件批量补报，返回各类结果的计数"""
        now = self.clock.now()
        counts = {"processed": 0, "queued": 0, "duplicates": 0, "failed": 0}

        valid: list[EventPayload] = []
        for raw in payloads:
            try:
                payload = parse_payload(raw)
            except ValidationError as e:
                counts["failed"] += 1
                logger.info(f"离线事件格式错误: user_id={user_id}, {e}")
                continue
            if payload.user_id != user_id:
                counts["failed"] += 1
                logger.info(f"离线事件用户不匹配: user_id={user_id}, payload.user_id={payload.user_id}")
                continue
            valid.append(payload)

        for payload in sorted(valid, key=lambda p: p.observed_at(now)):
            if await self._is_replayed(payload, payload.observed_at(now)):
                counts["duplicates"] += 1
                continue
            try:
                await self.handler(payload)
            except ValidationError as e:
                counts["failed"] += 1
                logger.info(f"离线事件被拒绝: user_id={user_id}, {e}")
            except TransientInfraError as e:
                await self.enqueue(payload, str(e))
                counts["queued"] += 1
            else:
                counts["processed"] += 1

        logger.info(f"离线补报完成: user_id={user_id}, {counts}")
        return counts


__all__ = ["IngestionQueue", "EventHandler"]
