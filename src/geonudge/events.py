"""事件总线模块，定义了事件总线类 Bus 及事件名集合 E

协程处理器由 pyee 为每次 emit 创建独立的 task，emit 方不会等待其完成；
同步处理器在 emit 内直接调用，适合只做登记或再派发 task 的场景。
"""

from __future__ import annotations

from typing import Awaitable, Callable

from pyee.asyncio import AsyncIOEventEmitter

from geonudge.logger import logger

AsyncHandler = Callable[..., Awaitable[None]]


# 事件名集中定义
class E:
    EVENT_PROCESSED = "event.processed"
    NOTIFICATION_READY = "notification.ready"
    NOTIFICATION_DELIVERED = "notification.delivered"
    NOTIFICATION_FAILED = "notification.failed"
    GEOFENCES_CHANGED = "geofences.changed"
    TOKEN_DEACTIVATED = "push_token.deactivated"


class Bus(AsyncIOEventEmitter):
    def on(self, event: str) -> Callable[[AsyncHandler], AsyncHandler]:
        """注册事件处理器装饰器"""
        def decorator(handler: AsyncHandler) -> AsyncHandler:
            logger.debug(f"注册事件处理器: {event} -> {handler.__name__}")
            super(Bus, self).on(event, handler)
            return handler

        return decorator


bus = Bus()

__all__ = ["Bus", "bus", "E"]
