"""Tests for the FCM transport."""

import json

import httpx
import pytest

from platewise.engine.push import FcmTransport, PreparedNotification

NOTIFICATION = PreparedNotification(
    push_token="token-1",
    title="Lunch time, Friend! 🥗",
    body="Capture what you're eating",
    notification_id="8d6c1f0e-5b3a-5c1e-9f2d-2a7b4c6e8f01",
    link="platewise://food/capture",
    device_id="d1",
    user_id="u1",
    notification_type="lunch",
)


def make_transport(handler):
    return FcmTransport("platewise-test", "secret", transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_send_posts_message():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"name": "projects/platewise-test/messages/1"})

    fcm = make_transport(handler)
    result = await fcm.send(NOTIFICATION)
    await fcm.aclose()

    assert result.success
    request = requests[0]
    assert request.url.path == "/v1/projects/platewise-test/messages:send"
    assert request.headers["Authorization"] == "Bearer secret"
    message = json.loads(request.content)["message"]
    assert message["token"] == "token-1"
    assert message["data"] == {
        "notification_id": NOTIFICATION.notification_id,
        "link": "platewise://food/capture",
    }


@pytest.mark.asyncio
async def test_http_error_is_a_failed_result():
    fcm = make_transport(lambda request: httpx.Response(404, text="UNREGISTERED"))
    result = await fcm.send(NOTIFICATION)
    await fcm.aclose()

    assert not result.success
    assert result.error.startswith("HTTP 404")


@pytest.mark.asyncio
async def test_network_error_is_a_failed_result():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    fcm = make_transport(handler)
    result = await fcm.send(NOTIFICATION)
    await fcm.aclose()

    assert not result.success
    assert "ConnectError" in result.error
