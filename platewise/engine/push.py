"""Push transport - sends what it receives, nothing more."""

import logging
from dataclasses import dataclass
from typing import Protocol

import httpx

logger = logging.getLogger(__name__)

FCM_SEND_URL = "https://fcm.googleapis.com/v1/projects/{project_id}/messages:send"


@dataclass(frozen=True)
class PreparedNotification:
    """A fully rendered payload for one device."""

    push_token: str
    title: str
    body: str
    notification_id: str
    link: str | None
    # Used for logging only, not sent
    device_id: str
    user_id: str
    notification_type: str


@dataclass(frozen=True)
class SendResult:
    """Outcome of one delivery attempt."""

    success: bool
    error: str | None = None


class PushTransport(Protocol):
    async def send(self, notification: PreparedNotification) -> SendResult: ...


class FcmTransport:
    """FCM HTTP v1 transport.

    The access token is minted outside this process and handed in through
    configuration.
    """

    def __init__(
        self,
        project_id: str,
        access_token: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url = FCM_SEND_URL.format(project_id=project_id)
        self._client = httpx.AsyncClient(
            timeout=timeout,
            headers={"Authorization": f"Bearer {access_token}"},
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    def build_message(self, notification: PreparedNotification) -> dict:
        data = {"notification_id": notification.notification_id}
        if notification.link:
            data["link"] = notification.link
        return {
            "message": {
                "token": notification.push_token,
                "notification": {
                    "title": notification.title,
                    "body": notification.body,
                },
                "data": data,
                "android": {
                    "priority": "high",
                    "notification": {"channel_id": "reminders"},
                },
                "apns": {
                    "payload": {"aps": {"sound": "default", "badge": 1}},
                },
            }
        }

    async def send(self, notification: PreparedNotification) -> SendResult:
        try:
            response = await self._client.post(self.url, json=self.build_message(notification))
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            error = f"HTTP {e.response.status_code}: {e.response.text[:200]}"
            logger.warning(f"Push send failed for device {notification.device_id}: {error}")
            return SendResult(success=False, error=error)
        except httpx.HTTPError as e:
            error = f"{type(e).__name__}: {e}"
            logger.warning(f"Push send failed for device {notification.device_id}: {error}")
            return SendResult(success=False, error=error)
        return SendResult(success=True)
