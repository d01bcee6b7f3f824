import asyncio
import re
from abc import ABC, abstractmethod

from geonudge.datamodel import Notification, Platform, SendResult
from geonudge.logger import logger

APNS_TOKEN_RE = re.compile(r"^[0-9a-fA-F]{64}$")
FCM_TOKEN_RE = re.compile(r"^[A-Za-z0-9_-]+$")
FCM_TOKEN_MIN_LENGTH = 140

RETRYABLE_MARKERS = (
    "timeout", "network", "server error", "rate limit", "service unavailable",
    "500", "502", "503", "504", "429",
)
INVALID_TOKEN_MARKERS = (
    "invalid token", "unregistered", "not found", "invalid registration", "mismatched sender",
    "baddevicetoken", "400", "404", "410",
)

PERMANENT_STATUS_CODES = {400, 404, 410}


def is_valid_token(platform: Platform, token: str) -> bool:
    if not token:
        return False
    if Platform(platform) == Platform.IOS:
        return bool(APNS_TOKEN_RE.match(token))
    return len(token) >= FCM_TOKEN_MIN_LENGTH and bool(FCM_TOKEN_RE.match(token))


def classify_error(error: str, status_code: int | None = None) -> str:
    """把推送失败分为 'permanent'（token 无效，停用且不重试）、'transient'（可重试）或 'unknown'"""
    if status_code is not None:
        if status_code in PERMANENT_STATUS_CODES:
            return "permanent"
        if status_code == 429 or status_code >= 500:
            return "transient"
    lowered = (error or "").lower()
    if any(marker in lowered for marker in INVALID_TOKEN_MARKERS):
        return "permanent"
    if any(marker in lowered for marker in RETRYABLE_MARKERS):
        return "transient"
    return "unknown"


def failure(platform: Platform, device_token: str, error: str, status_code: int | None = None) -> SendResult:
    kind = classify_error(error, status_code)
    return SendResult(
        success=False,
        platform=platform,
        device_token=device_token,
        error=error,
        retryable=kind == "transient",
        permanent=kind == "permanent",
    )


class PushAdapter(ABC):
    """单个推送平台的适配器"""

    platform: Platform

    @abstractmethod
    async def send(self, device_token: str, notification: Notification) -> SendResult:
        raise NotImplementedError

    async def send_bulk(self, device_tokens: list[str], notification: Notification) -> list[SendResult]:
        """并发发送；单个 token 的异常不影响其他 token，结果与输入顺序一致"""
        results = await asyncio.gather(
            *(self.send(token, notification) for token in device_tokens),
            return_exceptions=True,
        )
        normalized: list[SendResult] = []
        for token, result in zip(device_tokens, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                logger.warning(f"推送发送异常: platform={self.platform.value}, error={result!r}")
                normalized.append(failure(self.platform, token, f"network error: {result}"))
            else:
                normalized.append(result)
        return normalized

    def validate_token(self, device_token: str) -> bool:
        return is_valid_token(self.platform, device_token)

    async def aclose(self) -> None:
        return None


__all__ = [
    "PushAdapter", "is_valid_token", "classify_error", "failure",
    "APNS_TOKEN_RE", "FCM_TOKEN_RE", "FCM_TOKEN_MIN_LENGTH",
]
