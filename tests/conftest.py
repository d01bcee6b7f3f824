from datetime import datetime, timedelta, timezone

import pytest

import geonudge.storage.db_config as db_config
import geonudge.storage.push_token as token_store
import geonudge.storage.task as task_store
import geonudge.storage.user as user_store
from geonudge.channels.base import PushAdapter, failure
from geonudge.core.service import GeoNudgeService
from geonudge.datamodel import (
    Coordinate, Geofence, GeofenceRadii, LocationType, NotificationStyle, Platform, PlaceKind, POICategory,
    QuietHours, SendResult,
)
from geonudge.events import Bus
from geonudge.locks import UserLocks
from geonudge.metrics import RuntimeMetrics

START = datetime(2025, 6, 2, 12, 0, 0, tzinfo=timezone.utc)
HOME = Coordinate(37.7749, -122.4194)
METERS_PER_DEGREE_LAT = 111195.0


class ManualClock:
    def __init__(self, start: datetime = START) -> None:
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current

    def set(self, when: datetime) -> None:
        self.current = when


class ScriptedAdapter(PushAdapter):
    """按脚本返回结果: "ok" 表示成功，其他字符串作为错误信息"""

    def __init__(self, platform: Platform, outcomes: list[str] | None = None) -> None:
        self.platform = platform
        self.outcomes = list(outcomes or [])
        self.sent: list[tuple[str, object]] = []

    async def send(self, device_token, notification):
        self.sent.append((device_token, notification))
        outcome = self.outcomes.pop(0) if self.outcomes else "ok"
        if outcome == "ok":
            return SendResult(True, self.platform, device_token, message_id=f"msg-{len(self.sent)}")
        return failure(self.platform, device_token, outcome)


def north_of(center: Coordinate, meters: float) -> Coordinate:
    return Coordinate(center.latitude + meters / METERS_PER_DEGREE_LAT, center.longitude)


class Factory:
    def __init__(self, clock: ManualClock) -> None:
        self.clock = clock
        self._tokens = 0

    async def user(self, timezone: str = "UTC", style: NotificationStyle = NotificationStyle.STANDARD,
                   quiet_hours: QuietHours | None = None):
        return await user_store.create_user(timezone, style, quiet_hours)

    async def place(self, user, name: str = "Home", coordinate: Coordinate = HOME,
                    kind: PlaceKind = PlaceKind.HOME, radii: GeofenceRadii | None = None):
        return await user_store.create_place(user.user_id, name, coordinate, kind, radii)

    async def place_task(self, user, place=None, title: str = "Buy milk", radii: GeofenceRadii | None = None,
                         description: str | None = None, age_days: int = 0):
        place = place or await self.place(user)
        return await task_store.create_task(
            user.user_id, title, LocationType.CUSTOM_PLACE, place_id=place.place_id, description=description,
            custom_radii=radii, created_at=self.clock.now() - timedelta(days=age_days),
        )

    async def poi_task(self, user, category: POICategory = POICategory.PHARMACY, title: str = "Pick up prescription"):
        return await task_store.create_task(
            user.user_id, title, LocationType.POI_CATEGORY, poi_category=category, created_at=self.clock.now(),
        )

    async def token(self, user, platform: Platform = Platform.IOS):
        self._tokens += 1
        if platform == Platform.IOS:
            device_token = f"{self._tokens:064x}"
        else:
            device_token = f"fcm-{self._tokens}-" + "a" * 140
        return await token_store.upsert_token(user.user_id, platform, device_token, self.clock.now())

    def event(self, geofence: Geofence, kind: str = "enter", north_m: float = 0.0, minutes_ago: float = 0,
              client_event_id: str | None = None, **overrides) -> dict:
        at = north_of(geofence.center, north_m)
        payload = {
            "user_id": geofence.user_id,
            "task_id": geofence.task_id,
            "geofence_id": geofence.geofence_id,
            "kind": kind,
            "latitude": at.latitude,
            "longitude": at.longitude,
            "occurred_at": (self.clock.now() - timedelta(minutes=minutes_ago)).isoformat(),
        }
        if client_event_id is not None:
            payload["client_event_id"] = client_event_id
        payload.update(overrides)
        return payload


@pytest.fixture
async def db():
    await db_config.init_db(":memory:")
    yield db_config.conn
    await db_config.close_db()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def bus():
    return Bus()


@pytest.fixture
def locks():
    return UserLocks()


@pytest.fixture
def metrics():
    return RuntimeMetrics()


@pytest.fixture
def make(clock):
    return Factory(clock)


@pytest.fixture
def ios_adapter():
    return ScriptedAdapter(Platform.IOS)


@pytest.fixture
def android_adapter():
    return ScriptedAdapter(Platform.ANDROID)


@pytest.fixture
async def service(db, bus, clock, metrics, ios_adapter, android_adapter):
    svc = GeoNudgeService(
        bus=bus, clock=clock, adapters={Platform.IOS: ios_adapter, Platform.ANDROID: android_adapter},
        metrics=metrics,
    )
    yield svc
    await svc.aclose()
