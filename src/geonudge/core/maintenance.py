"""维护循环: 数据保留、到期静音、已完成任务的围栏、终态通知与失效 token 的清理"""

import asyncio
import sqlite3
import time
from datetime import timedelta

import geonudge.storage.geofence_event as event_store
from geonudge.config.settings import EVENT_RETENTION_DAYS, MAINTENANCE_SWEEP_SECONDS
from geonudge.core.service import GeoNudgeService
from geonudge.logger import logger

__shutdown_event: asyncio.Event | None = None
__last_run_at_epoch: float | None = None
__last_result: dict | None = None


def get_status() -> dict[str, object]:
    running = __shutdown_event is not None and not __shutdown_event.is_set()
    return {
        "running": running,
        "last_run_at_epoch": __last_run_at_epoch,
        "last_result": __last_result,
    }


async def run_once(service: GeoNudgeService, event_retention_days: int = EVENT_RETENTION_DAYS) -> dict:
    now = service.clock.now()
    result = {
        "mutes_expired": await service.expire_mutes(),
        "events_purged": await event_store.purge_older_than(now - timedelta(days=event_retention_days)),
        "geofences_cleaned": await service.allocator.cleanup_completed(),
        "notifications_cleaned": await service.scheduler.cleanup(),
        "queue_completed_cleaned": await service.queue.clear_completed(),
        "tokens_cleaned": await service.gateway.cleanup_tokens(),
    }
    logger.debug(f"维护任务完成: {result}")
    return result


async def main_loop(shutdown_event: asyncio.Event, service: GeoNudgeService,
                    interval: float = MAINTENANCE_SWEEP_SECONDS) -> None:
    global __shutdown_event, __last_run_at_epoch, __last_result
    __shutdown_event = shutdown_event
    logger.info("维护主循环已启动")

    while not shutdown_event.is_set():
        __last_run_at_epoch = time.time()
        try:
            __last_result = await run_once(service)
        except sqlite3.Error as e:
            logger.opt(exception=e).error(f"维护任务出错: {e}")
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass

    logger.info("维护主循环已关闭")


__all__ = ["main_loop", "run_once", "get_status"]
