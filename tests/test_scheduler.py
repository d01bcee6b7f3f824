import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

import geonudge.storage.push_token as token_store
import geonudge.storage.scheduled as scheduled_store
import geonudge.storage.suppression as suppression_store
import geonudge.storage.task as task_store
import geonudge.storage.user as user_store
from geonudge.channels.gateway import DeliveryGateway
from geonudge.datamodel import (
    DeliveryStatus, MuteDuration, Notification, NotificationType, Platform, QuietHours, SnoozeDuration, TaskStatus,
)
from geonudge.events import E
from geonudge.notify.scheduler import NotificationScheduler, in_quiet_hours, next_quiet_end, scheduled_id_for

from conftest import START

OVERNIGHT = QuietHours("22:00", "07:00")


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture
def scheduler(bus, clock, metrics, ios_adapter):
    gateway = DeliveryGateway({Platform.IOS: ios_adapter}, bus, clock)
    return NotificationScheduler(gateway, bus, clock, metrics=metrics, respect_focus_mode=True)


def _notification(task, n: int = 1) -> Notification:
    return Notification(
        notification_id=f"notification_{n}",
        user_id=task.user_id,
        task_id=task.task_id,
        type=NotificationType.ARRIVAL,
        title="Arrived at Home",
        body="Arriving at Home — Buy milk now?",
    )


async def _setup(make, quiet_hours=None, tokens: int = 1):
    user = await make.user(quiet_hours=quiet_hours)
    task = await make.place_task(user)
    for _ in range(tokens):
        await make.token(user)
    return user, task


# ---------------- 免打扰时段 ----------------
@pytest.mark.parametrize("when, expected", [
    (utc(2025, 6, 2, 22, 0), True),
    (utc(2025, 6, 3, 3, 0), True),
    (utc(2025, 6, 3, 7, 0), True),
    (utc(2025, 6, 3, 7, 1), False),
    (utc(2025, 6, 2, 21, 59), False),
])
def test_overnight_quiet_hours_include_endpoints(when, expected):
    assert in_quiet_hours(when, OVERNIGHT, "UTC") is expected


def test_quiet_hours_use_user_timezone():
    # 05:30 UTC = 22:30 PDT
    now = utc(2025, 6, 3, 5, 30)
    assert in_quiet_hours(now, OVERNIGHT, "America/Los_Angeles")
    assert not in_quiet_hours(now, OVERNIGHT, "UTC")
    assert next_quiet_end(now, OVERNIGHT, "America/Los_Angeles") == utc(2025, 6, 3, 14, 5)


def test_next_quiet_end():
    assert next_quiet_end(utc(2025, 6, 2, 23, 0), OVERNIGHT, "UTC") == utc(2025, 6, 3, 7, 5)
    assert next_quiet_end(utc(2025, 6, 3, 2, 0), OVERNIGHT, "UTC") == utc(2025, 6, 3, 7, 5)
    assert next_quiet_end(utc(2025, 6, 2, 10, 0), QuietHours("09:00", "17:00"), "UTC") == utc(2025, 6, 2, 17, 5)


# ---------------- 投递 ----------------
async def test_delivers_immediately(db, make, scheduler, ios_adapter, bus):
    _, task = await _setup(make)
    delivered = []
    bus.on(E.NOTIFICATION_DELIVERED)(lambda scheduled_id, notification: delivered.append(scheduled_id))

    scheduled_id = await scheduler.schedule(_notification(task))

    record = await scheduler.get(scheduled_id)
    assert scheduled_id == scheduled_id_for("notification_1")
    assert record.status == DeliveryStatus.DELIVERED
    assert record.attempts == 1
    assert len(ios_adapter.sent) == 1
    assert delivered == [scheduled_id]


async def test_overnight_quiet_hours_defer_to_morning(db, make, scheduler, ios_adapter, clock):
    _, task = await _setup(make, OVERNIGHT)
    clock.set(utc(2025, 6, 2, 23, 0))

    scheduled_id = await scheduler.schedule(_notification(task))

    record = await scheduler.get(scheduled_id)
    assert record.status == DeliveryStatus.PENDING
    assert record.scheduled_at == utc(2025, 6, 3, 7, 5)
    assert record.reason == "quiet_hours"
    assert ios_adapter.sent == []

    clock.set(utc(2025, 6, 3, 7, 4))
    assert await scheduler.sweep() == 0
    clock.set(utc(2025, 6, 3, 7, 5))
    assert await scheduler.sweep() == 1
    assert (await scheduler.get(scheduled_id)).status == DeliveryStatus.DELIVERED


async def test_daytime_quiet_hours(db, make, scheduler, clock):
    _, task = await _setup(make, QuietHours("09:00", "17:00"))
    clock.set(utc(2025, 6, 2, 10, 0))

    scheduled_id = await scheduler.schedule(_notification(task))

    assert (await scheduler.get(scheduled_id)).scheduled_at == utc(2025, 6, 2, 17, 5)


async def test_transient_failures_retry_then_fail(db, make, scheduler, ios_adapter, clock, bus):
    _, task = await _setup(make)
    ios_adapter.outcomes = ["service unavailable"] * 3
    failed = []
    bus.on(E.NOTIFICATION_FAILED)(lambda scheduled_id, notification, error: failed.append(scheduled_id))

    scheduled_id = await scheduler.schedule(_notification(task))
    record = await scheduler.get(scheduled_id)
    assert record.status == DeliveryStatus.PENDING
    assert record.attempts == 1
    assert record.reason == "retry"
    assert record.scheduled_at == START + timedelta(minutes=5)

    clock.advance(minutes=5)
    await scheduler.sweep()
    assert (await scheduler.get(scheduled_id)).attempts == 2

    clock.advance(minutes=5)
    await scheduler.sweep()
    record = await scheduler.get(scheduled_id)
    assert record.status == DeliveryStatus.FAILED
    assert record.reason == "retries_exhausted"
    assert record.attempts == 3
    assert failed == [scheduled_id]

    clock.advance(hours=1)
    assert await scheduler.sweep() == 0
    assert len(ios_adapter.sent) == 3


async def test_permanent_failure_fails_at_once_and_disables_token(db, make, scheduler, ios_adapter):
    user, task = await _setup(make)
    ios_adapter.outcomes = ["APNs error: 410 - Unregistered"]

    scheduled_id = await scheduler.schedule(_notification(task))

    record = await scheduler.get(scheduled_id)
    assert record.status == DeliveryStatus.FAILED
    assert record.reason == "permanent_failure"
    assert await token_store.list_active_for_user(user.user_id) == []


async def test_no_tokens_fails(db, make, scheduler):
    _, task = await _setup(make, tokens=0)

    scheduled_id = await scheduler.schedule(_notification(task))

    record = await scheduler.get(scheduled_id)
    assert record.status == DeliveryStatus.FAILED
    assert "no active push tokens" in record.last_error


async def test_partial_token_failure_still_delivers(db, make, scheduler, ios_adapter):
    user, task = await _setup(make, tokens=2)
    ios_adapter.outcomes = ["ok", "unregistered"]

    scheduled_id = await scheduler.schedule(_notification(task))

    assert (await scheduler.get(scheduled_id)).status == DeliveryStatus.DELIVERED
    assert len(await token_store.list_active_for_user(user.user_id)) == 1


async def test_scheduling_twice_delivers_once(db, make, scheduler, ios_adapter):
    _, task = await _setup(make)

    first = await scheduler.schedule(_notification(task))
    second = await scheduler.schedule(_notification(task))

    assert first == second
    assert len(ios_adapter.sent) == 1


# ---------------- 取消 ----------------
async def test_cancel_pending(db, make, scheduler, clock):
    _, task = await _setup(make, OVERNIGHT)
    clock.set(utc(2025, 6, 2, 23, 0))
    scheduled_id = await scheduler.schedule(_notification(task))

    assert await scheduler.cancel(scheduled_id) is True
    assert (await scheduler.get(scheduled_id)).status == DeliveryStatus.CANCELLED
    assert await scheduler.cancel(scheduled_id) is False
    assert await scheduler.cancel("scheduled_missing") is False


async def test_cannot_cancel_in_flight(db, make, scheduler, clock):
    _, task = await _setup(make)
    scheduled_id = await scheduler.schedule(_notification(task), deliver_now=False)
    assert await scheduled_store.claim(scheduled_id, clock.now())

    assert await scheduler.cancel(scheduled_id) is False
    record = await scheduler.get(scheduled_id)
    assert record.status == DeliveryStatus.PENDING
    assert record.in_flight is True


async def test_recover_releases_stale_claims(db, make, scheduler, clock, ios_adapter):
    _, task = await _setup(make)
    scheduled_id = await scheduler.schedule(_notification(task), deliver_now=False)
    await scheduled_store.claim(scheduled_id, clock.now())
    assert await scheduler.sweep() == 0

    assert await scheduler.recover() == 1
    assert await scheduler.sweep() == 1
    assert len(ios_adapter.sent) == 1


async def test_expired_claim_is_released_by_sweep(db, make, scheduler, clock, ios_adapter):
    _, task = await _setup(make)
    scheduled_id = await scheduler.schedule(_notification(task), deliver_now=False)
    await scheduled_store.claim(scheduled_id, clock.now())

    clock.advance(minutes=9)
    assert await scheduler.sweep() == 0
    clock.advance(minutes=2)
    assert await scheduler.sweep() == 1
    assert len(ios_adapter.sent) == 1


async def test_storage_error_after_claim_retries_later(db, make, scheduler, clock, ios_adapter, monkeypatch):
    _, task = await _setup(make)
    original = task_store.get_task_by_id
    calls = []

    async def flaky(task_id):
        calls.append(task_id)
        if len(calls) == 1:
            raise sqlite3.OperationalError("database is locked")
        return await original(task_id)

    monkeypatch.setattr(task_store, "get_task_by_id", flaky)
    scheduled_id = await scheduler.schedule(_notification(task))

    record = await scheduler.get(scheduled_id)
    assert record.status == DeliveryStatus.PENDING
    assert record.in_flight is False
    assert record.attempts == 1
    assert record.reason == "retry"
    assert "database is locked" in record.last_error
    assert ios_adapter.sent == []

    clock.advance(minutes=5)
    assert await scheduler.sweep() == 1
    assert (await scheduler.get(scheduled_id)).status == DeliveryStatus.DELIVERED
    assert len(ios_adapter.sent) == 1


async def test_persistent_storage_errors_end_in_failed(db, make, scheduler, clock, monkeypatch):
    _, task = await _setup(make)

    async def broken(task_id):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(task_store, "get_task_by_id", broken)
    scheduled_id = await scheduler.schedule(_notification(task))
    for _ in range(2):
        clock.advance(minutes=5)
        await scheduler.sweep()

    record = await scheduler.get(scheduled_id)
    assert record.status == DeliveryStatus.FAILED
    assert record.reason == "retries_exhausted"
    assert record.attempts == 3
    assert record.in_flight is False


# ---------------- 投递前复查 ----------------
async def test_snooze_defers_delivery(db, make, scheduler, clock, ios_adapter):
    user, task = await _setup(make)
    until = clock.now() + timedelta(minutes=15)
    await suppression_store.create_snooze(user.user_id, task.task_id, SnoozeDuration.MINUTES_15, until, clock.now())

    scheduled_id = await scheduler.schedule(_notification(task))

    record = await scheduler.get(scheduled_id)
    assert record.status == DeliveryStatus.PENDING
    assert record.reason == "snoozed"
    assert record.scheduled_at == until
    assert record.attempts == 0

    clock.advance(minutes=15)
    await scheduler.sweep()
    assert (await scheduler.get(scheduled_id)).status == DeliveryStatus.DELIVERED
    assert len(ios_adapter.sent) == 1


async def test_muted_task_is_cancelled(db, make, scheduler, clock, ios_adapter):
    _, task = await _setup(make)
    await task_store.set_task_status(task.task_id, TaskStatus.MUTED, clock.now())

    scheduled_id = await scheduler.schedule(_notification(task))

    record = await scheduler.get(scheduled_id)
    assert record.status == DeliveryStatus.CANCELLED
    assert record.reason == "muted"
    assert ios_adapter.sent == []


async def test_active_mute_record_cancels(db, make, scheduler, clock):
    user, task = await _setup(make)
    await suppression_store.create_mute(
        user.user_id, task.task_id, MuteDuration.HOUR_1, clock.now() + timedelta(hours=1), clock.now()
    )

    scheduled_id = await scheduler.schedule(_notification(task))

    assert (await scheduler.get(scheduled_id)).reason == "muted"


async def test_completed_task_is_cancelled(db, make, scheduler, clock):
    _, task = await _setup(make)
    await task_store.set_task_status(task.task_id, TaskStatus.COMPLETED, clock.now())

    scheduled_id = await scheduler.schedule(_notification(task))

    record = await scheduler.get(scheduled_id)
    assert record.status == DeliveryStatus.CANCELLED
    assert record.reason == "task_inactive"


async def test_focus_mode_defers_thirty_minutes(db, make, scheduler, clock, metrics):
    user, task = await _setup(make)
    await user_store.set_focus_until(user.user_id, clock.now() + timedelta(hours=1))

    scheduled_id = await scheduler.schedule(_notification(task))

    record = await scheduler.get(scheduled_id)
    assert record.status == DeliveryStatus.PENDING
    assert record.reason == "focus_mode"
    assert record.scheduled_at == START + timedelta(minutes=30)
    assert metrics.policy_deferrals["focus_mode"] == 1


# ---------------- 统计 / 清理 ----------------
async def test_delivery_stats_and_cleanup(db, make, scheduler, clock):
    user, task = await _setup(make)
    await scheduler.schedule(_notification(task, 1))
    await task_store.set_task_status(task.task_id, TaskStatus.COMPLETED, clock.now())
    await scheduler.schedule(_notification(task, 2))

    stats = await scheduler.get_user_delivery_stats(user.user_id)
    assert stats["last_24h"]["delivered"] == 1
    assert stats["last_24h"]["cancelled"] == 1
    assert stats["last_24h"]["delivery_rate"] == 50.0

    clock.advance(hours=25)
    assert await scheduler.cleanup() == 2
    assert (await scheduler.get_stats())["delivered"] == 0
