"""APNs 推送适配器 (HTTP/2 + ES256 provider token)"""

import time
from pathlib import Path

import httpx
import jwt

from geonudge.channels.base import PushAdapter, failure
from geonudge.datamodel import Notification, Platform, SendResult
from geonudge.logger import logger

APNS_PRODUCTION_URL = "https://api.push.apple.com"
APNS_SANDBOX_URL = "https://api.sandbox.push.apple.com"
PROVIDER_TOKEN_TTL_SECONDS = 50 * 60


def build_apns_payload(notification: Notification) -> dict:
    return {
        "aps": {
            "alert": {"title": notification.title, "body": notification.body},
            "sound": "default",
            "category": "LOCATION_REMINDER",
        },
        "task_id": notification.task_id,
        "notification_id": notification.notification_id,
        "action_type": notification.type.value,
    }


class APNsAdapter(PushAdapter):
    platform = Platform.IOS

    def __init__(
        self,
        team_id: str,
        key_id: str,
        bundle_id: str,
        private_key: str,
        use_sandbox: bool = True,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.team_id = team_id
        self.key_id = key_id
        self.bundle_id = bundle_id
        self._private_key = private_key
        self.base_url = APNS_SANDBOX_URL if use_sandbox else APNS_PRODUCTION_URL
        self._client = client or httpx.AsyncClient(http2=True, timeout=timeout)
        self._provider_token: str | None = None
        self._provider_token_expires_at = 0.0

    @classmethod
    def from_key_file(cls, team_id: str, key_id: str, bundle_id: str, key_path: str, **kwargs) -> "APNsAdapter":
        return cls(team_id, key_id, bundle_id, Path(key_path).read_text(encoding="utf-8"), **kwargs)

    def _get_provider_token(self) -> str:
        now = time.time()
        if self._provider_token and now < self._provider_token_expires_at:
            return self._provider_token
        self._provider_token = jwt.encode(
            {"iss": self.team_id, "iat": int(now)},
            self._private_key,
            algorithm="ES256",
            headers={"kid": self.key_id},
        )
        self._provider_token_expires_at = now + PROVIDER_TOKEN_TTL_SECONDS
        logger.debug("APNs provider token 已刷新")
        return self._provider_token

    async def send(self, device_token: str, notification: Notification) -> SendResult:
        if not self.validate_token(device_token):
            return failure(self.platform, device_token, "invalid token format")

        try:
            provider_token = self._get_provider_token()
        except (ValueError, jwt.PyJWTError) as e:
            logger.error(f"APNs provider token 生成失败: {e}")
            return failure(self.platform, device_token, f"provider token error: {e}")

        headers = {
            "authorization": f"bearer {provider_token}",
            "apns-push-type": "alert",
            "apns-expiration": "0",
            "apns-priority": "10",
            "apns-topic": self.bundle_id,
        }
        try:
            response = await self._client.post(
                f"{self.base_url}/3/device/{device_token}",
                json=build_apns_payload(notification),
                headers=headers,
            )
        except httpx.TimeoutException as e:
            return failure(self.platform, device_token, f"timeout: {e}")
        except httpx.HTTPError as e:
            return failure(self.platform, device_token, f"network error: {e}")

        if response.status_code == 200:
            return SendResult(
                success=True,
                platform=self.platform,
                device_token=device_token,
                message_id=response.headers.get("apns-id"),
            )

        reason = response.text
        if response.headers.get("content-type", "").startswith("application/json"):
            reason = response.json().get("reason", reason)
        return failure(
            self.platform, device_token, f"APNs error: {response.status_code} - {reason}", response.status_code
        )

    async def aclose(self) -> None:
        await self._client.aclose()


__all__ = ["APNsAdapter", "build_apns_payload", "APNS_PRODUCTION_URL", "APNS_SANDBOX_URL"]
