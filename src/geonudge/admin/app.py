from __future__ import annotations

import time
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, PlainTextResponse

import geonudge.storage.db_config as db_config
from geonudge import __version__
from geonudge.core import maintenance
from geonudge.core.service import GeoNudgeService
from geonudge.datamodel import Coordinate, ProcessingResult, QuietHours
from geonudge.errors import CapacityError, NotFoundError, ValidationError
from geonudge.logger import logger

from .auth import require_api_auth
from .schemas import (
    BatchEventsRequest, FocusModeRequest, NotificationActionRequest, OfflineSyncRequest, POIRefreshRequest,
    PreferencesRequest, PurgeRequest, PushTokenRequest, RuntimeControl, ShutdownRequest,
)


def _error_body(e: Exception) -> dict[str, Any]:
    body: dict[str, Any] = {"error": type(e).__name__, "detail": str(e)}
    if isinstance(e, ValidationError) and e.details:
        body["details"] = e.details
    return body


def _batch_item(outcome: ProcessingResult | Exception) -> dict[str, Any]:
    if isinstance(outcome, Exception):
        return {"accepted": False, **_error_body(outcome)}
    return jsonable_encoder(outcome)


def create_app(service: GeoNudgeService, control: RuntimeControl) -> FastAPI:
    app = FastAPI(title="GeoNudge API", version=__version__)

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, e: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content=_error_body(e))

    @app.exception_handler(ValidationError)
    async def validation_handler(request: Request, e: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=422, content=_error_body(e))

    @app.exception_handler(CapacityError)
    async def capacity_handler(request: Request, e: CapacityError) -> JSONResponse:
        body = _error_body(e)
        body.update({"requested": e.requested, "ceiling": e.ceiling})
        return JSONResponse(status_code=409, content=body)

    def health_payload() -> dict[str, Any]:
        return {
            "status": "ok",
            "now_utc": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            "uptime_seconds": max(0.0, time.time() - control.started_at),
            "db_connected": db_config.conn is not None,
            "shutdown_requested": control.shutdown_event.is_set(),
        }

    @app.get("/healthz", include_in_schema=False)
    async def healthz() -> PlainTextResponse:
        return PlainTextResponse("ok")

    @app.get("/api/v1/health")
    async def api_health() -> dict[str, Any]:
        return health_payload()

    # ---------------- 事件摄取 ----------------
    @app.post("/api/v1/events")
    async def ingest_event(payload: dict[str, Any], request: Request) -> dict[str, Any]:
        await require_api_auth(request)
        return jsonable_encoder(await service.ingest_event(payload))

    @app.post("/api/v1/events/batch")
    async def ingest_batch(payload: BatchEventsRequest, request: Request) -> dict[str, Any]:
        await require_api_auth(request)
        outcomes = await service.ingest_batch(payload.events)
        return {"results": [_batch_item(o) for o in outcomes]}

    @app.post("/api/v1/events/offline-sync")
    async def offline_sync(payload: OfflineSyncRequest, request: Request) -> dict[str, Any]:
        await require_api_auth(request)
        return await service.sync_offline(payload.user_id, payload.events)

    # ---------------- 地理围栏 ----------------
    @app.post("/api/v1/tasks/{task_id}/geofences")
    async def create_geofences(task_id: int, request: Request) -> dict[str, Any]:
        await require_api_auth(request)
        return {"geofences": jsonable_encoder(await service.create_geofences_for_task(task_id))}

    @app.put("/api/v1/tasks/{task_id}/geofences")
    async def update_geofences(task_id: int, request: Request) -> dict[str, Any]:
        await require_api_auth(request)
        return {"geofences": jsonable_encoder(await service.update_geofences_for_task(task_id))}

    @app.delete("/api/v1/tasks/{task_id}/geofences")
    async def delete_geofences(task_id: int, request: Request) -> dict[str, Any]:
        await require_api_auth(request)
        return {"deleted": await service.delete_geofences_for_task(task_id)}

    @app.post("/api/v1/tasks/{task_id}/geofences/mute")
    async def mute_geofences(task_id: int, request: Request) -> dict[str, Any]:
        await require_api_auth(request)
        return {"deactivated": await service.mute_geofences_for_task(task_id)}

    @app.post("/api/v1/tasks/{task_id}/geofences/unmute")
    async def unmute_geofences(task_id: int, request: Request) -> dict[str, Any]:
        await require_api_auth(request)
        return {"geofences": jsonable_encoder(await service.unmute_geofences_for_task(task_id))}

    @app.post("/api/v1/tasks/{task_id}/geofences/poi-bindings")
    async def refresh_poi_bindings(task_id: int, payload: POIRefreshRequest, request: Request) -> dict[str, Any]:
        await require_api_auth(request)
        geofences = await service.refresh_poi_bindings(task_id, Coordinate(payload.latitude, payload.longitude))
        return {"geofences": jsonable_encoder(geofences)}

    # ---------------- 通知 ----------------
    @app.post("/api/v1/notifications/{scheduled_id}/cancel")
    async def cancel_notification(scheduled_id: str, request: Request) -> dict[str, Any]:
        await require_api_auth(request)
        if await service.scheduler.get(scheduled_id) is None:
            raise HTTPException(status_code=404, detail=f"通知不存在: {scheduled_id}")
        return {"cancelled": await service.cancel_notification(scheduled_id)}

    @app.post("/api/v1/notifications/{notification_id}/actions")
    async def notification_action(
        notification_id: str, payload: NotificationActionRequest, request: Request
    ) -> dict[str, Any]:
        await require_api_auth(request)
        return await service.handle_action(
            payload.user_id, notification_id, payload.action, payload.task_id, payload.mute_duration
        )

    @app.post("/api/v1/notifications/purge-failed")
    async def purge_failed_notifications(payload: PurgeRequest, request: Request) -> dict[str, Any]:
        auth_info = await require_api_auth(request)
        deleted = await service.scheduler.purge_failed(payload.older_than_hours)
        logger.warning(f"清理失败通知: by={auth_info['user']}, deleted={deleted}")
        return {"deleted": deleted}

    # ---------------- 推送 token ----------------
    @app.post("/api/v1/push-tokens")
    async def register_push_token(payload: PushTokenRequest, request: Request) -> dict[str, Any]:
        await require_api_auth(request)
        token = await service.register_push_token(
            payload.user_id, payload.platform, payload.device_token, payload.device_id, payload.app_version
        )
        return {"token_id": token.token_id, "platform": token.platform.value, "is_active": token.is_active}

    # ---------------- 用户设置 ----------------
    @app.put("/api/v1/users/{user_id}/preferences")
    async def update_preferences(user_id: int, payload: PreferencesRequest, request: Request) -> dict[str, Any]:
        await require_api_auth(request)
        quiet_hours = QuietHours(payload.quiet_hours.start, payload.quiet_hours.end) if payload.quiet_hours else None
        user = await service.update_preferences(
            user_id, payload.timezone, payload.notification_style, quiet_hours, payload.clear_quiet_hours
        )
        return jsonable_encoder(user)

    @app.put("/api/v1/users/{user_id}/focus")
    async def set_focus_mode(user_id: int, payload: FocusModeRequest, request: Request) -> dict[str, Any]:
        await require_api_auth(request)
        await service.set_focus_mode(user_id, payload.focus_until)
        return {"user_id": user_id, "focus_until": payload.focus_until}

    # ---------------- 重试队列 ----------------
    @app.get("/api/v1/users/{user_id}/queue")
    async def list_queue(user_id: int, request: Request) -> dict[str, Any]:
        await require_api_auth(request)
        return {"items": jsonable_encoder(await service.queue.list_for_user(user_id))}

    @app.post("/api/v1/queue/{item_id}/retry")
    async def retry_queue_item(item_id: int, request: Request) -> dict[str, Any]:
        await require_api_auth(request)
        item = await service.queue.retry(item_id)
        if item is None:
            raise HTTPException(status_code=404, detail=f"队列条目不存在: {item_id}")
        return jsonable_encoder(item)

    @app.delete("/api/v1/queue/{item_id}")
    async def remove_queue_item(item_id: int, request: Request) -> dict[str, Any]:
        await require_api_auth(request)
        return {"removed": await service.queue.remove(item_id)}

    @app.post("/api/v1/queue/clear-failed")
    async def clear_failed_queue(payload: PurgeRequest, request: Request) -> dict[str, Any]:
        auth_info = await require_api_auth(request)
        deleted = await service.queue.clear_failed(payload.older_than_hours)
        logger.warning(f"清理失败队列条目: by={auth_info['user']}, deleted={deleted}")
        return {"deleted": deleted}

    # ---------------- 统计 / 运维 ----------------
    @app.get("/api/v1/users/{user_id}/stats")
    async def user_stats(user_id: int, request: Request, days: int = 7) -> dict[str, Any]:
        await require_api_auth(request)
        return await service.get_user_stats(user_id, days)

    @app.get("/api/v1/overview")
    async def overview(request: Request) -> dict[str, Any]:
        await require_api_auth(request)
        data = await service.get_overview()
        data["maintenance"] = maintenance.get_status()
        data["health"] = health_payload()
        return data

    @app.post("/api/v1/admin/shutdown")
    async def admin_shutdown(payload: ShutdownRequest, request: Request) -> dict[str, Any]:
        auth_info = await require_api_auth(request)
        logger.warning(f"收到远程关闭请求: by={auth_info['user']}, reason={payload.reason}")
        control.shutdown_event.set()
        return {"ok": True, "action": "shutdown", "reason": payload.reason}

    return app
