"""FCM HTTP v1 推送适配器 (服务账号 JWT 换取 OAuth access token)"""

import time
from pathlib import Path

import httpx
import jwt

from geonudge.channels.base import PushAdapter, failure
from geonudge.datamodel import Notification, Platform, SendResult
from geonudge.logger import logger

FCM_SEND_URL = "https://fcm.googleapis.com/v1/projects/{project_id}/messages:send"
OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
FCM_SCOPE = "https://www.googleapis.com/auth/firebase.messaging"


def build_fcm_payload(notification: Notification, device_token: str) -> dict:
    # data 字段只允许字符串值
    return {
        "message": {
            "token": device_token,
            "notification": {"title": notification.title, "body": notification.body},
            "data": {
                "task_id": str(notification.task_id),
                "notification_id": notification.notification_id,
                "action_type": notification.type.value,
            },
            "android": {
                "priority": "high",
                "notification": {
                    "icon": "ic_notification",
                    "color": "#2196F3",
                    "sound": "default",
                    "tag": f"task_{notification.task_id}",
                },
            },
        }
    }


class FCMAdapter(PushAdapter):
    platform = Platform.ANDROID

    def __init__(
        self,
        project_id: str,
        client_email: str,
        private_key: str,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.project_id = project_id
        self.client_email = client_email
        self._private_key = private_key
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._access_token: str | None = None
        self._access_token_expires_at = 0.0

    @classmethod
    def from_key_file(cls, project_id: str, client_email: str, key_path: str, **kwargs) -> "FCMAdapter":
        return cls(project_id, client_email, Path(key_path).read_text(encoding="utf-8"), **kwargs)

    async def _get_access_token(self) -> str:
        now = time.time()
        if self._access_token and now < self._access_token_expires_at:
            return self._access_token

        assertion = jwt.encode(
            {
                "iss": self.client_email,
                "scope": FCM_SCOPE,
                "aud": OAUTH_TOKEN_URL,
                "iat": int(now),
                "exp": int(now) + 3600,
            },
            self._private_key,
            algorithm="RS256",
        )
        response = await self._client.post(
            OAUTH_TOKEN_URL,
            data={"grant_type": "urn:ietf:params:oauth:grant-type:jwt-bearer", "assertion": assertion},
        )
        response.raise_for_status()
        body = response.json()
        self._access_token = body["access_token"]
        self._access_token_expires_at = now + int(body.get("expires_in", 3600)) - 60
        logger.debug("FCM access token 已刷新")
        return self._access_token

    async def send(self, device_token: str, notification: Notification) -> SendResult:
        if not self.validate_token(device_token):
            return failure(self.platform, device_token, "invalid token format")

        try:
            access_token = await self._get_access_token()
        except httpx.TimeoutException as e:
            return failure(self.platform, device_token, f"timeout while fetching access token: {e}")
        except httpx.HTTPStatusError as e:
            # 授权失败与设备 token 无关，按服务端错误处理
            return failure(self.platform, device_token, f"server error: oauth {e.response.status_code}")
        except (httpx.HTTPError, KeyError, ValueError, jwt.PyJWTError) as e:
            return failure(self.platform, device_token, f"network error while fetching access token: {e}")

        try:
            response = await self._client.post(
                FCM_SEND_URL.format(project_id=self.project_id),
                json=build_fcm_payload(notification, device_token),
                headers={"Authorization": f"Bearer {access_token}"},
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
                message_id=response.json().get("name"),
            )
        return failure(
            self.platform, device_token, f"FCM error: {response.status_code} - {response.text}", response.status_code
        )

    async def aclose(self) -> None:
        await self._client.aclose()


__all__ = ["FCMAdapter", "build_fcm_payload", "FCM_SEND_URL", "OAUTH_TOKEN_URL"]
