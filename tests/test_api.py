import asyncio
import time

import httpx
import pytest

from geonudge.admin.app import create_app
from geonudge.admin.schemas import RuntimeControl
from geonudge.config import settings
from geonudge.core.service import GeoNudgeService
from geonudge.datamodel import Platform

TOKEN = "test-token"
AUTH = {"Authorization": f"Bearer {TOKEN}"}


@pytest.fixture
def control():
    return RuntimeControl(shutdown_event=asyncio.Event(), started_at=time.time())


@pytest.fixture
def api(monkeypatch, control):
    monkeypatch.setattr(settings, "API_AUTH_TOKEN", TOKEN)

    def _client(service: GeoNudgeService) -> httpx.AsyncClient:
        app = create_app(service, control)
        return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")

    return _client


@pytest.fixture
async def client(api, service):
    async with api(service) as c:
        yield c


def _event_body(user, task, geofence: dict) -> dict:
    return {
        "user_id": user.user_id,
        "task_id": task.task_id,
        "geofence_id": geofence["geofence_id"],
        "kind": "enter",
        "latitude": geofence["center"]["latitude"],
        "longitude": geofence["center"]["longitude"],
    }


async def test_healthz_needs_no_token(client):
    response = await client.get("/healthz")

    assert response.status_code == 200
    assert response.text == "ok"


async def test_token_required(client, monkeypatch):
    assert (await client.get("/api/v1/overview")).status_code == 401
    assert (await client.get("/api/v1/overview", headers={"X-GeoNudge-Token": "wrong"})).status_code == 401
    assert (await client.get("/api/v1/overview", headers={"X-GeoNudge-Token": TOKEN})).status_code == 200

    monkeypatch.setattr(settings, "API_AUTH_TOKEN", None)
    assert (await client.get("/api/v1/overview", headers=AUTH)).status_code == 503


async def test_event_flow(db, make, client, service, ios_adapter):
    user = await make.user()
    await make.token(user)
    task = await make.place_task(user)

    response = await client.post(f"/api/v1/tasks/{task.task_id}/geofences", headers=AUTH)
    assert response.status_code == 200
    geofences = response.json()["geofences"]
    assert [g["geofence_type"] for g in geofences] == ["approach_5mi", "arrival"]

    response = await client.post("/api/v1/events", json=_event_body(user, task, geofences[1]), headers=AUTH)
    await service.drain()

    assert response.status_code == 200
    body = response.json()
    assert body["reason"] == "notify"
    assert body["notification_id"] == f"notification_{body['event_id']}"
    assert len(ios_adapter.sent) == 1

    stats = (await client.get(f"/api/v1/users/{user.user_id}/stats", headers=AUTH)).json()
    assert stats["deliveries"]["last_24h"]["delivered"] == 1
    assert stats["geofences"]["active"] == 2


async def test_event_errors_map_to_status_codes(db, make, client):
    user = await make.user()
    task = await make.place_task(user)
    body = {"user_id": user.user_id, "task_id": task.task_id, "geofence_id": 999, "kind": "enter",
            "latitude": 37.0, "longitude": -122.0}

    unknown = await client.post("/api/v1/events", json=body, headers=AUTH)
    assert unknown.status_code == 422
    assert unknown.json()["error"] == "ValidationError"

    malformed = await client.post("/api/v1/events", json={**body, "kind": "teleport"}, headers=AUTH)
    assert malformed.status_code == 422

    missing = await client.post("/api/v1/tasks/404/geofences", headers=AUTH)
    assert missing.status_code == 404
    assert missing.json()["error"] == "NotFoundError"


async def test_capacity_error_is_conflict(db, make, api, bus, clock, metrics, ios_adapter):
    small = GeoNudgeService(bus=bus, clock=clock, adapters={Platform.IOS: ios_adapter}, metrics=metrics, ceiling=1)
    user = await make.user()
    task = await make.place_task(user)

    async with api(small) as c:
        response = await c.post(f"/api/v1/tasks/{task.task_id}/geofences", headers=AUTH)
    await small.aclose()

    assert response.status_code == 409
    assert response.json()["requested"] == 2
    assert response.json()["ceiling"] == 1


async def test_batch_reports_bad_items_in_place(db, make, client, service):
    user = await make.user()
    task = await make.place_task(user)
    geofences = (await client.post(f"/api/v1/tasks/{task.task_id}/geofences", headers=AUTH)).json()["geofences"]
    good = _event_body(user, task, geofences[1])

    response = await client.post("/api/v1/events/batch", json={"events": [good, {"kind": "enter"}]}, headers=AUTH)
    await service.drain()

    results = response.json()["results"]
    assert results[0]["accepted"] is True
    assert results[1]["accepted"] is False
    assert results[1]["error"] == "ValidationError"


async def test_cancel_unknown_notification(client):
    response = await client.post("/api/v1/notifications/scheduled_notification_1/cancel", headers=AUTH)

    assert response.status_code == 404


async def test_push_token_registration(db, make, client):
    user = await make.user()

    response = await client.post("/api/v1/push-tokens", headers=AUTH, json={
        "user_id": user.user_id, "platform": "ios", "device_token": "ef" * 32,
    })
    assert response.status_code == 200
    assert response.json()["is_active"] is True

    rejected = await client.post("/api/v1/push-tokens", headers=AUTH, json={
        "user_id": user.user_id, "platform": "ios", "device_token": "not-a-token",
    })
    assert rejected.status_code == 422


async def test_queue_item_lookup(db, client):
    assert (await client.post("/api/v1/queue/12345/retry", headers=AUTH)).status_code == 404
    assert (await client.delete("/api/v1/queue/12345", headers=AUTH)).json() == {"removed": False}


async def test_admin_shutdown_sets_event(client, control):
    response = await client.post("/api/v1/admin/shutdown", json={"reason": "deploy"}, headers=AUTH)

    assert response.status_code == 200
    assert response.json()["reason"] == "deploy"
    assert control.shutdown_event.is_set()


async def test_update_preferences(db, make, client):
    user = await make.user()

    response = await client.put(f"/api/v1/users/{user.user_id}/preferences", headers=AUTH, json={
        "timezone": "America/Los_Angeles", "notification_style": "minimal",
        "quiet_hours": {"start": "22:00", "end": "07:00"},
    })
    assert response.status_code == 200
    body = response.json()
    assert body["timezone"] == "America/Los_Angeles"
    assert body["notification_style"] == "minimal"
    assert body["quiet_hours"] == {"start": "22:00", "end": "07:00"}

    bad_zone = await client.put(f"/api/v1/users/{user.user_id}/preferences", headers=AUTH,
                                json={"timezone": "Mars/Olympus"})
    assert bad_zone.status_code == 422
    bad_time = await client.put(f"/api/v1/users/{user.user_id}/preferences", headers=AUTH,
                                json={"quiet_hours": {"start": "25:00", "end": "07:00"}})
    assert bad_time.status_code == 422
    missing = await client.put("/api/v1/users/404/preferences", headers=AUTH, json={})
    assert missing.status_code == 404
