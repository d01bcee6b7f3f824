"""错误分类

- ValidationError: 引用实体缺失/失效、事件格式错误；立即拒绝，不重试
- CapacityError: 地理围栏上限无法满足；调用方需缩小范围
- TransientInfraError: 存储/网络抖动；交给 IngestionQueue 或 NotificationScheduler 重试
- PermanentDeliveryError: 设备 token 无效/已注销；不重试，停用 token

免打扰、专注模式、静音、稍后提醒、冷却、重复都不是错误，而是正常的"不通知"结果。
"""

from __future__ import annotations

__all__ = [
    "GeoNudgeError",
    "ValidationError",
    "NotFoundError",
    "CapacityError",
    "TransientInfraError",
    "PermanentDeliveryError",
]


class GeoNudgeError(Exception):
    pass


class ValidationError(GeoNudgeError):
    def __init__(self, message: str, details: list[str] | None = None) -> None:
        super().__init__(message)
        self.details = details or []


class NotFoundError(ValidationError):
    """引用的任务/通知/队列条目不存在"""


class CapacityError(GeoNudgeError):
    def __init__(self, message: str, requested: int = 0, ceiling: int = 0) -> None:
        super().__init__(message)
        self.requested = requested
        self.ceiling = ceiling


class TransientInfraError(GeoNudgeError):
    pass


class PermanentDeliveryError(GeoNudgeError):
    def __init__(self, message: str, token: str | None = None) -> None:
        super().__init__(message)
        self.token = token
