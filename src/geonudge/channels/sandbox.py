"""沙盒推送适配器：只记录日志，不访问外部服务（PUSH_MODE=sandbox）"""

import uuid

from geonudge.channels.base import PushAdapter, failure
from geonudge.datamodel import Notification, Platform, SendResult
from geonudge.logger import logger


class SandboxAdapter(PushAdapter):
    def __init__(self, platform: Platform) -> None:
        self.platform = Platform(platform)

    async def send(self, device_token: str, notification: Notification) -> SendResult:
        if not self.validate_token(device_token):
            return failure(self.platform, device_token, "invalid token format")
        logger.info(
            f"[sandbox:{self.platform.value}] {notification.title} | {notification.body} "
            f"(notification_id={notification.notification_id}, token=...{device_token[-6:]})"
        )
        return SendResult(
            success=True,
            platform=self.platform,
            device_token=device_token,
            message_id=f"sandbox-{uuid.uuid4().hex}",
        )


__all__ = ["SandboxAdapter"]
