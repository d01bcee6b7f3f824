import asyncio

import pytest

from geonudge.datamodel import EventKind, EventStatus, GeofenceType
from geonudge.errors import ValidationError
from geonudge.events import E
from geonudge.geofence.allocator import GeofenceAllocator
from geonudge.pipeline.bundling import BundlingEngine
from geonudge.pipeline.processor import EventProcessor, is_plausible

from conftest import HOME, north_of


@pytest.fixture
def processor(bus, locks, clock, metrics):
    return EventProcessor(bus, locks, clock, BundlingEngine(), metrics)


@pytest.fixture
def allocator(bus, locks, clock):
    return GeofenceAllocator(bus, locks, clock)


async def _geofences(make, allocator, user, offset_m: float = 0, title: str = "Buy milk"):
    place = await make.place(user, f"Place {offset_m:g}", north_of(HOME, offset_m))
    task = await make.place_task(user, place, title=title)
    created = await allocator.allocate(task)
    return {g.geofence_type: g for g in created}


async def test_first_entry_notifies_and_starts_cooldown(db, make, allocator, processor):
    user = await make.user()
    arrival = (await _geofences(make, allocator, user))[GeofenceType.ARRIVAL]

    result = await processor.process(make.event(arrival))

    assert result.notify is True
    assert result.reason == "notify"
    assert result.status == EventStatus.PROCESSED
    assert result.cooldown_minutes == 15
    assert result.notification_id == f"notification_{result.event_id}"


@pytest.mark.parametrize("first_ago, second_ago", [(0, 2), (2, 0)])
async def test_second_nearby_event_is_duplicate_in_either_order(db, make, allocator, processor, first_ago, second_ago):
    user = await make.user()
    arrival = (await _geofences(make, allocator, user))[GeofenceType.ARRIVAL]

    first = await processor.process(make.event(arrival, minutes_ago=first_ago))
    second = await processor.process(make.event(arrival, north_m=30, minutes_ago=second_ago))

    assert first.notify is True
    assert second.reason == "duplicate"
    assert second.status == EventStatus.DUPLICATE
    assert second.notify is False


async def test_far_event_is_not_duplicate_but_hits_cooldown(db, make, allocator, processor):
    user = await make.user()
    arrival = (await _geofences(make, allocator, user))[GeofenceType.ARRIVAL]

    await processor.process(make.event(arrival, minutes_ago=2))
    result = await processor.process(make.event(arrival, north_m=150))

    assert result.reason == "cooldown"
    assert result.status == EventStatus.COOLDOWN


async def test_exit_during_cooldown_is_suppressed(db, make, allocator, processor):
    user = await make.user()
    arrival = (await _geofences(make, allocator, user))[GeofenceType.ARRIVAL]

    await processor.process(make.event(arrival, minutes_ago=1))
    result = await processor.process(make.event(arrival, kind="exit", north_m=150))

    assert result.reason == "cooldown"


async def test_entry_after_cooldown_notifies_again(db, make, allocator, processor):
    user = await make.user()
    arrival = (await _geofences(make, allocator, user))[GeofenceType.ARRIVAL]

    await processor.process(make.event(arrival, minutes_ago=20))
    result = await processor.process(make.event(arrival))

    assert result.reason == "notify"


def test_plausibility_rules():
    assert is_plausible(EventKind.ENTER, 100, 100)
    assert not is_plausible(EventKind.ENTER, 100.5, 100)
    assert is_plausible(EventKind.DWELL, 10, 100)
    assert not is_plausible(EventKind.EXIT, 80, 100)
    assert is_plausible(EventKind.EXIT, 81, 100)


async def test_server_side_distance_check(db, make, allocator, processor):
    user = await make.user()
    near = (await _geofences(make, allocator, user, 0, "Near"))[GeofenceType.ARRIVAL]
    noisy = (await _geofences(make, allocator, user, 3000, "Noisy"))[GeofenceType.ARRIVAL]
    early_exit = (await _geofences(make, allocator, user, 6000, "Early exit"))[GeofenceType.ARRIVAL]
    real_exit = (await _geofences(make, allocator, user, 9000, "Real exit"))[GeofenceType.ARRIVAL]

    assert (await processor.process(make.event(near, north_m=50))).reason == "notify"

    implausible = await processor.process(make.event(noisy, north_m=150))
    assert implausible.reason == "implausible"
    assert implausible.status == EventStatus.PROCESSED
    assert implausible.notify is False

    assert (await processor.process(make.event(early_exit, kind="exit", north_m=50))).reason == "implausible"
    assert (await processor.process(make.event(real_exit, kind="exit", north_m=150))).reason == "notify"


async def test_invalid_references_are_rejected(db, make, allocator, processor, metrics, clock):
    user = await make.user()
    arrival = (await _geofences(make, allocator, user))[GeofenceType.ARRIVAL]
    template = (await allocator.allocate(await make.poi_task(user)))[0]

    with pytest.raises(ValidationError):
        await processor.process(make.event(arrival, geofence_id=9999))
    with pytest.raises(ValidationError):
        await processor.process(make.event(template))
    with pytest.raises(ValidationError):
        await processor.process(make.event(arrival, task_id=template.task_id))
    with pytest.raises(ValidationError) as excinfo:
        await processor.process(make.event(arrival, latitude=200))

    assert any("latitude" in detail for detail in excinfo.value.details)
    assert metrics.events_rejected == 4


async def test_client_event_id_replay_returns_stored_result(db, make, allocator, processor):
    user = await make.user()
    arrival = (await _geofences(make, allocator, user))[GeofenceType.ARRIVAL]
    payload = make.event(arrival, client_event_id="device-42")

    first = await processor.process(payload)
    replay = await processor.process(payload)

    assert replay.event_id == first.event_id
    assert replay.reason == "notify"
    assert replay.notify is True
    assert replay.cooldown_minutes == 15


async def test_nearby_arrivals_are_bundled(db, make, allocator, processor):
    user = await make.user()
    arrivals = [
        (await _geofences(make, allocator, user, 50 * i, f"Task {i}"))[GeofenceType.ARRIVAL] for i in range(3)
    ]

    results = [await processor.process(make.event(g)) for g in arrivals]

    primary = results[0]
    assert primary.notify is True
    for member in results[1:]:
        assert member.reason == "bundled"
        assert member.notify is False
        assert member.bundled_with == primary.notification_id
        assert member.notification_id == primary.notification_id


async def test_full_bundle_starts_new_primary(db, make, allocator, processor):
    user = await make.user()
    arrivals = [
        (await _geofences(make, allocator, user, 50 * i, f"Task {i}"))[GeofenceType.ARRIVAL] for i in range(6)
    ]

    results = [await processor.process(make.event(g)) for g in arrivals]

    assert [r.reason for r in results] == ["notify", "bundled", "bundled", "bundled", "bundled", "notify"]


async def test_approach_is_not_bundled_with_arrival(db, make, allocator, processor):
    user = await make.user()
    arrival = (await _geofences(make, allocator, user, 0, "Arrive"))[GeofenceType.ARRIVAL]
    approach = (await _geofences(make, allocator, user, 100, "Approach"))[GeofenceType.APPROACH_5MI]

    await processor.process(make.event(arrival))
    result = await processor.process(make.event(approach))

    assert result.reason == "notify"


async def test_batch_processes_in_observed_order(db, make, allocator, processor):
    user = await make.user()
    arrival = (await _geofences(make, allocator, user))[GeofenceType.ARRIVAL]

    outcomes = await processor.process_batch([
        make.event(arrival),
        make.event(arrival, north_m=20, minutes_ago=3),
        {"user_id": user.user_id, "kind": "teleport"},
    ])

    assert outcomes[0].reason == "duplicate"
    assert outcomes[1].reason == "notify"
    assert isinstance(outcomes[2], ValidationError)


async def test_processed_event_is_published(db, make, allocator, processor, bus):
    user = await make.user()
    arrival = (await _geofences(make, allocator, user))[GeofenceType.ARRIVAL]
    seen = []

    @bus.on(E.EVENT_PROCESSED)
    def record(result, user_id):
        seen.append((user_id, result.reason))

    await processor.process(make.event(arrival))

    assert seen == [(user.user_id, "notify")]


async def test_concurrent_events_for_one_geofence_notify_once(db, make, allocator, processor):
    user = await make.user()
    arrival = (await _geofences(make, allocator, user))[GeofenceType.ARRIVAL]

    results = await asyncio.gather(
        processor.process(make.event(arrival)),
        processor.process(make.event(arrival, north_m=30)),
    )

    assert sorted(r.reason for r in results) == ["duplicate", "notify"]
    assert [r.notify for r in results].count(True) == 1
