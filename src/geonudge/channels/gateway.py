"""推送投递网关

按平台把同一条通知并发发送到用户的全部有效 token：
- 成功: 更新 last_used_at
- 永久失败 (token 无效/已注销): 停用 token，发出 TOKEN_DEACTIVATED
- 暂时失败: failure_count + 1，通知可由调度器重试
"""

import asyncio
from datetime import timedelta

import geonudge.storage.push_token as token_store
from geonudge.channels.base import PushAdapter, is_valid_token
from geonudge.config import settings
from geonudge.datamodel import BulkDeliveryResult, Notification, Platform, PushToken, SendResult
from geonudge.errors import PermanentDeliveryError, ValidationError
from geonudge.events import E, Bus
from geonudge.logger import logger
from geonudge.utils import Clock, SystemClock

TOKEN_RETENTION_DAYS = 30


def build_adapters(mode: str | None = None) -> dict[Platform, PushAdapter]:
    """按 PUSH_MODE 选择适配器: sandbox 只记录日志，live 走 APNs / FCM"""
    mode = (mode or settings.PUSH_MODE).lower()
    if mode == "live":
        from geonudge.channels.apns import APNsAdapter
        from geonudge.channels.fcm import FCMAdapter

        return {
            Platform.IOS: APNsAdapter.from_key_file(
                settings.APNS_TEAM_ID, settings.APNS_KEY_ID, settings.APNS_BUNDLE_ID, settings.APNS_PRIVATE_KEY_PATH,
                use_sandbox=settings.APNS_USE_SANDBOX, timeout=settings.PUSH_SEND_TIMEOUT_SECONDS,
            ),
            Platform.ANDROID: FCMAdapter.from_key_file(
                settings.FCM_PROJECT_ID, settings.FCM_CLIENT_EMAIL, settings.FCM_PRIVATE_KEY_PATH,
                timeout=settings.PUSH_SEND_TIMEOUT_SECONDS,
            ),
        }
    if mode != "sandbox":
        raise ValueError(f"未知的 PUSH_MODE: {mode}")

    from geonudge.channels.sandbox import SandboxAdapter

    return {Platform.IOS: SandboxAdapter(Platform.IOS), Platform.ANDROID: SandboxAdapter(Platform.ANDROID)}


class DeliveryGateway:
    def __init__(self, adapters: dict[Platform, PushAdapter], bus: Bus, clock: Clock | None = None) -> None:
        self.adapters = adapters
        self.bus = bus
        self.clock = clock or SystemClock()

    async def register_token(
        self,
        user_id: int,
        platform: Platform,
        device_token: str,
        device_id: str | None = None,
        app_version: str | None = None,
    ) -> PushToken:
        platform = Platform(platform)
        if not is_valid_token(platform, device_token):
            raise ValidationError(f"{platform.value} 推送 token 格式不正确")
        token = await token_store.upsert_token(user_id, platform, device_token, self.clock.now(), device_id, app_version)
        logger.info(f"推送 token 已注册: user_id={user_id}, platform={platform.value}, token_id={token.token_id}")
        return token

    async def _send_platform(self, platform: Platform, tokens: list[PushToken],
                             notification: Notification) -> list[SendResult]:
        adapter = self.adapters.get(platform)
        if adapter is None:
            return [
                SendResult(False, platform, t.device_token, error=f"no adapter for {platform.value}")
                for t in tokens
            ]
        return await adapter.send_bulk([t.device_token for t in tokens], notification)

    async def deliver(self, user_id: int, notification: Notification) -> BulkDeliveryResult:
        """发送到用户全部有效 token；各 token 结果相互独立，单个失败不影响其他 token"""
        tokens = await token_store.list_active_for_user(user_id)
        if not tokens:
            logger.info(f"用户没有可用的推送 token: user_id={user_id}")
            return BulkDeliveryResult(errors=["no active push tokens"])

        by_platform: dict[Platform, list[PushToken]] = {}
        for token in tokens:
            by_platform.setdefault(token.platform, []).append(token)

        platforms = list(by_platform)
        grouped = await asyncio.gather(
            *(self._send_platform(p, by_platform[p], notification) for p in platforms)
        )

        result = BulkDeliveryResult()
        for platform, results in zip(platforms, grouped):
            for token, send_result in zip(by_platform[platform], results):
                result.results.append(send_result)
                await self._update_token_health(token, send_result)
                if not send_result.success:
                    result.errors.append(f"{platform.value}: {send_result.error}")

        logger.debug(
            f"推送结果: user_id={user_id}, notification_id={notification.notification_id}, "
            f"success={result.success_count}, failed={result.failure_count}"
        )
        return result

    async def _update_token_health(self, token: PushToken, send_result: SendResult) -> None:
        now = self.clock.now()
        if send_result.success:
            await token_store.mark_used(token.token_id, now)
        elif send_result.permanent:
            await token_store.deactivate(token.token_id, send_result.error or "permanent failure", now)
            logger.warning(f"推送 token 已停用: token_id={token.token_id}, error={send_result.error}")
            self.bus.emit(
                E.TOKEN_DEACTIVATED,
                user_id=token.user_id,
                token_id=token.token_id,
                error=PermanentDeliveryError(send_result.error or "permanent failure", token=token.device_token),
            )
        else:
            await token_store.record_failure(token.token_id, send_result.error or "unknown error", now)

    async def get_token_stats(self) -> dict:
        return await token_store.get_stats()

    async def cleanup_tokens(self, retention_days: int = TOKEN_RETENTION_DAYS) -> int:
        deleted = await token_store.delete_inactive_before(self.clock.now() - timedelta(days=retention_days))
        if deleted:
            logger.info(f"已清理失效推送 token: {deleted} 个")
        return deleted

    async def aclose(self) -> None:
        for adapter in self.adapters.values():
            await adapter.aclose()


__all__ = ["DeliveryGateway", "build_adapters"]
