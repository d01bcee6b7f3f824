from datetime import timedelta

import pytest

import geonudge.storage.geofence_event as event_store
from geonudge.datamodel import EventStatus, GeofenceType, ProcessingResult, QueueStatus
from geonudge.errors import TransientInfraError, ValidationError
from geonudge.ingest.queue import IngestionQueue
from geonudge.pipeline.processor import parse_payload

from conftest import START

PAYLOAD = {
    "user_id": 1,
    "task_id": 2,
    "geofence_id": 3,
    "kind": "enter",
    "latitude": 37.7749,
    "longitude": -122.4194,
    "occurred_at": START.isoformat(),
}


class StubHandler:
    def __init__(self, *outcomes) -> None:
        self.outcomes = list(outcomes)
        self.calls = 0

    async def __call__(self, payload):
        self.calls += 1
        outcome = self.outcomes.pop(0) if self.outcomes else "ok"
        if isinstance(outcome, Exception):
            raise outcome
        return ProcessingResult(event_id=1, accepted=True, notify=True, status=EventStatus.PROCESSED, reason="notify")


def _queue(handler, clock, metrics) -> IngestionQueue:
    return IngestionQueue(handler, clock, metrics)


async def test_backoff_then_failed(db, clock, metrics):
    handler = StubHandler(*[TransientInfraError("database is locked")] * 3)
    queue = _queue(handler, clock, metrics)

    item = await queue.enqueue(parse_payload(PAYLOAD), "database is locked")
    assert item.status == QueueStatus.PENDING
    assert item.next_retry_at == START + timedelta(minutes=1)
    assert await queue.sweep() == 0

    clock.advance(minutes=1)
    assert await queue.sweep() == 1
    item = (await queue.list_for_user(1))[0]
    assert item.attempts == 1
    assert item.next_retry_at == clock.now() + timedelta(minutes=5)

    clock.advance(minutes=5)
    await queue.sweep()
    item = (await queue.list_for_user(1))[0]
    assert item.attempts == 2
    assert item.next_retry_at == clock.now() + timedelta(minutes=15)

    clock.advance(minutes=15)
    await queue.sweep()
    item = (await queue.list_for_user(1))[0]
    assert item.status == QueueStatus.FAILED
    assert item.attempts == 3
    assert item.last_error == "database is locked"

    clock.advance(hours=1)
    assert await queue.sweep() == 0
    assert handler.calls == 3
    assert metrics.events_queued == 1


async def test_validation_error_fails_without_retry(db, clock, metrics):
    queue = _queue(StubHandler(ValidationError("围栏不存在")), clock, metrics)
    item = await queue.enqueue(parse_payload(PAYLOAD))

    clock.advance(minutes=1)
    processed = await queue.process_item(item.item_id)

    assert processed.status == QueueStatus.FAILED
    assert processed.attempts == 1


async def test_success_completes_item(db, clock, metrics):
    queue = _queue(StubHandler("ok"), clock, metrics)
    item = await queue.enqueue(parse_payload(PAYLOAD))

    processed = await queue.process_item(item.item_id)

    assert processed.status == QueueStatus.COMPLETED
    assert await queue.list_for_user(1) == []
    clock.advance(hours=25)
    assert await queue.clear_completed() == 1


async def test_manual_retry_of_failed_item(db, clock, metrics):
    handler = StubHandler(ValidationError("task inactive"), "ok")
    queue = _queue(handler, clock, metrics)
    item = await queue.enqueue(parse_payload(PAYLOAD))
    await queue.process_item(item.item_id)

    retried = await queue.retry(item.item_id)

    assert retried.status == QueueStatus.COMPLETED
    assert retried.attempts == 1
    assert await queue.retry(9999) is None


async def test_remove_and_clear_failed(db, clock, metrics):
    queue = _queue(StubHandler(ValidationError("bad"), ValidationError("bad")), clock, metrics)
    first = await queue.enqueue(parse_payload(PAYLOAD))
    second = await queue.enqueue(parse_payload(PAYLOAD))
    await queue.process_item(first.item_id)
    await queue.process_item(second.item_id)

    assert await queue.remove(first.item_id) is True
    assert await queue.remove(first.item_id) is False
    clock.advance(hours=25)
    assert await queue.clear_failed() == 1
    assert (await queue.get_stats())["failed"] == 0


async def test_exhausted_item_marks_orphan_event_failed(db, make, service, clock):
    user = await make.user()
    task = await make.place_task(user)
    arrival = (await service.create_geofences_for_task(task.task_id))[1]
    payload = parse_payload(make.event(arrival, client_event_id="offline-1"))
    orphan = await event_store.create_event(
        user.user_id, task.task_id, arrival.geofence_id, payload.kind, payload.coordinate,
        payload.observed_at(clock.now()), clock.now(), client_event_id="offline-1",
    )
    queue = IngestionQueue(StubHandler(*[TransientInfraError("disk I/O error")] * 3), clock, max_attempts=1)
    item = await queue.enqueue(payload)

    await queue.process_item(item.item_id)

    assert (await event_store.get_event_by_id(orphan.event_id)).status == EventStatus.FAILED


# ---------------- 离线补报 ----------------
async def test_offline_sync_counts(db, make, service):
    user = await make.user()
    other = await make.user()
    task = await make.place_task(user)
    arrival = (await service.create_geofences_for_task(task.task_id))[1]

    counts = await service.sync_offline(user.user_id, [
        make.event(arrival, minutes_ago=30),
        make.event(arrival, north_m=40, minutes_ago=20),
        make.event(arrival, user_id=other.user_id),
        {"user_id": user.user_id, "kind": "enter"},
    ])

    assert counts == {"processed": 1, "queued": 0, "duplicates": 1, "failed": 2}


async def test_offline_sync_skips_events_already_queued(db, make, service, clock):
    user = await make.user()
    task = await make.place_task(user)
    arrival = (await service.create_geofences_for_task(task.task_id))[1]
    await service.queue.enqueue(parse_payload(make.event(arrival, minutes_ago=10)), "database is locked")

    counts = await service.sync_offline(user.user_id, [make.event(arrival, north_m=10, minutes_ago=5)])

    assert counts["duplicates"] == 1


async def test_offline_sync_queues_on_transient_failure(db, make, service, monkeypatch):
    user = await make.user()
    task = await make.place_task(user)
    arrival = (await service.create_geofences_for_task(task.task_id))[1]

    async def broken(payload):
        raise TransientInfraError("database is locked")

    monkeypatch.setattr(service.queue, "handler", broken)
    counts = await service.sync_offline(user.user_id, [make.event(arrival)])

    assert counts["queued"] == 1
    assert len(await service.queue.list_for_user(user.user_id)) == 1


@pytest.mark.parametrize("attempts, minutes", [(0, 1), (1, 5), (2, 15), (7, 15)])
def test_delay_schedule(clock, metrics, attempts, minutes):
    queue = _queue(StubHandler(), clock, metrics)
    assert queue._delay_for(attempts) == timedelta(minutes=minutes)
