import asyncio
from datetime import timedelta

import pytest

import geonudge.storage.geofence as geofence_store
import geonudge.storage.task as task_store
from geonudge.datamodel import (
    POI, Coordinate, Geofence, GeofenceRadii, GeofenceSpec, GeofenceType, PlaceKind, POICategory, TaskStatus,
)
from geonudge.errors import CapacityError, ValidationError
from geonudge.events import E
from geonudge.geofence.allocator import GeofenceAllocator, priority_score, rank_for_retention, validate_radii
from geonudge.geofence.poi import StaticPOIProvider

from conftest import HOME, START, north_of

PHARMACIES = [
    POI("rx-1", "Corner Pharmacy", POICategory.PHARMACY, north_of(HOME, 300)),
    POI("rx-2", "Main St Pharmacy", POICategory.PHARMACY, north_of(HOME, 900)),
    POI("rx-3", "Uptown Pharmacy", POICategory.PHARMACY, north_of(HOME, 2500)),
]


class FailingPOIProvider:
    async def find_nearby(self, category, location, radius_m=0, limit=0):
        raise ConnectionError("poi service down")


@pytest.fixture
def allocator(bus, locks, clock):
    return GeofenceAllocator(bus, locks, clock, StaticPOIProvider(PHARMACIES), ceiling=20)


async def _fill(task, count: int, geofence_type: GeofenceType, created_at) -> list[Geofence]:
    specs = [
        GeofenceSpec(task.task_id, task.user_id, north_of(HOME, 50 * (i + 1)), 100, geofence_type)
        for i in range(count)
    ]
    return await geofence_store.create_geofences(specs, created_at)


async def test_home_place_gets_approach_and_arrival(db, make, allocator):
    user = await make.user()
    task = await make.place_task(user)

    created = await allocator.allocate(task)

    assert [(g.geofence_type, g.radius_m) for g in created] == [
        (GeofenceType.APPROACH_5MI, 3219),
        (GeofenceType.ARRIVAL, 100),
    ]
    assert all(g.is_active and g.center == HOME for g in created)


async def test_custom_radii_and_post_arrival(db, make, allocator):
    user = await make.user()
    place = await make.place(user, "Gym", kind=PlaceKind.CUSTOM)
    task = await make.place_task(
        user, place, radii=GeofenceRadii(approach_miles=2.0, arrival_meters=150, post_arrival=True)
    )

    created = await allocator.allocate(task)

    assert [(g.geofence_type, g.radius_m) for g in created] == [
        (GeofenceType.APPROACH_5MI, 3219),
        (GeofenceType.ARRIVAL, 150),
        (GeofenceType.POST_ARRIVAL, 150),
    ]


async def test_custom_place_default_approach_is_five_miles(db, make, allocator):
    user = await make.user()
    place = await make.place(user, "Library", kind=PlaceKind.CUSTOM)
    task = await make.place_task(user, place)

    created = await allocator.allocate(task)

    assert created[0].radius_m == 8047


async def test_invalid_radii_rejected_before_any_write(db, make, allocator):
    user = await make.user()
    task = await make.place_task(user, radii=GeofenceRadii(approach_miles=60))

    with pytest.raises(ValidationError):
        await allocator.allocate(task)

    assert await geofence_store.list_for_task(task.task_id) == []


def test_validate_radii_reports_each_problem():
    with pytest.raises(ValidationError) as excinfo:
        validate_radii(GeofenceRadii(approach_miles=0.05, arrival_meters=5))
    assert len(excinfo.value.details) == 2

    validate_radii(GeofenceRadii(approach_miles=0.1, arrival_meters=1000))
    validate_radii(None)


async def test_poi_task_creates_inactive_templates(db, make, allocator):
    user = await make.user()
    task = await make.poi_task(user)

    created = await allocator.allocate(task)

    assert len(created) == 4
    assert all(g.is_template and not g.is_active for g in created)
    assert {g.geofence_type: g.radius_m for g in created} == {
        GeofenceType.APPROACH_5MI: 8047,
        GeofenceType.APPROACH_3MI: 4828,
        GeofenceType.APPROACH_1MI: 1609,
        GeofenceType.ARRIVAL: 100,
    }
    assert await geofence_store.count_active_for_user(user.user_id) == 0


async def test_binding_three_pois_evicts_down_to_ceiling(db, make, allocator, clock):
    user = await make.user()
    filler_task = await make.place_task(user, title="Filler")
    filler = await _fill(filler_task, 15, GeofenceType.ARRIVAL, clock.now())
    poi_task = await make.poi_task(user)
    await allocator.allocate(poi_task)

    bound = await allocator.refresh_poi_bindings(poi_task, HOME)

    assert len(bound) == 12
    assert all(g.is_active for g in bound)
    assert await geofence_store.count_active_for_user(user.user_id) == 20
    still_active = await geofence_store.list_for_task(filler_task.task_id, active_only=True)
    # 同分时按 id 保留较早创建的
    assert [g.geofence_id for g in still_active] == [g.geofence_id for g in filler[:8]]


async def test_eviction_prefers_dropping_approach_geofences(db, make, allocator, clock):
    user = await make.user()
    filler_task = await make.place_task(user, title="Filler")
    await _fill(filler_task, 10, GeofenceType.ARRIVAL, clock.now())
    approaches = await _fill(filler_task, 10, GeofenceType.APPROACH_5MI, clock.now())

    new_task = await make.place_task(user, title="New")
    await allocator.allocate(new_task)

    evicted = [g for g in await geofence_store.list_for_task(filler_task.task_id) if not g.is_active]
    assert [g.geofence_id for g in evicted] == [g.geofence_id for g in approaches[-2:]]
    assert await geofence_store.count_active_for_user(user.user_id) == 20


def test_priority_ages_weekly():
    arrival = Geofence(1, 1, 1, HOME, 100, GeofenceType.ARRIVAL, created_at=START)
    assert priority_score(arrival, START, START) == 1
    assert priority_score(arrival, START - timedelta(days=13), START) == 2
    assert priority_score(arrival, START - timedelta(days=14), START) == 3


def test_rank_is_deterministic_and_age_aware():
    fresh_approach = Geofence(1, 1, 1, HOME, 8047, GeofenceType.APPROACH_5MI, created_at=START)
    old_arrival = Geofence(2, 2, 1, HOME, 100, GeofenceType.ARRIVAL, created_at=START)
    fresh_arrival = Geofence(3, 3, 1, HOME, 100, GeofenceType.ARRIVAL, created_at=START)
    entries = [
        (fresh_approach, START),
        (old_arrival, START - timedelta(days=35)),
        (fresh_arrival, START),
    ]

    ranked = rank_for_retention(entries, START)

    assert [g.geofence_id for g in ranked] == [3, 1, 2]
    assert rank_for_retention(list(reversed(entries)), START) == ranked


async def test_task_larger_than_ceiling_raises_capacity_error(db, make, bus, locks, clock):
    allocator = GeofenceAllocator(bus, locks, clock, StaticPOIProvider(PHARMACIES), ceiling=3)
    user = await make.user()
    home_task = await make.place_task(user)
    await allocator.allocate(home_task)
    poi_task = await make.poi_task(user)
    await allocator.allocate(poi_task)

    with pytest.raises(CapacityError) as excinfo:
        await allocator.bind_to_pois(poi_task, PHARMACIES[:1])

    assert excinfo.value.requested == 4
    assert excinfo.value.ceiling == 3
    assert len(await geofence_store.list_for_task(home_task.task_id, active_only=True)) == 2


async def test_mute_releases_room_to_evicted_geofences(db, make, bus, locks, clock):
    allocator = GeofenceAllocator(bus, locks, clock, ceiling=4)
    user = await make.user()
    first = await make.place_task(user, title="First")
    second = await make.place_task(user, title="Second")
    third = await make.place_task(user, title="Third")
    await allocator.allocate(first)
    await allocator.allocate(second)
    await allocator.allocate(third)
    assert len(await geofence_store.list_for_task(first.task_id, active_only=True)) == 1

    deactivated = await allocator.mute(third)

    assert deactivated == 2
    assert len(await geofence_store.list_for_task(first.task_id, active_only=True)) == 2
    assert len(await geofence_store.list_for_task(second.task_id, active_only=True)) == 2
    assert await geofence_store.list_for_task(third.task_id, active_only=True) == []


async def test_delete_rebalances(db, make, bus, locks, clock):
    allocator = GeofenceAllocator(bus, locks, clock, ceiling=2)
    user = await make.user()
    first = await make.place_task(user, title="First")
    second = await make.place_task(user, title="Second")
    await allocator.allocate(first)
    await allocator.allocate(second)
    assert await geofence_store.list_for_task(first.task_id, active_only=True) == []

    assert await allocator.delete(second) == 2

    assert len(await geofence_store.list_for_task(first.task_id, active_only=True)) == 2


async def test_update_rebuilds_geofences_at_new_place(db, make, allocator):
    user = await make.user()
    task = await make.place_task(user)
    await allocator.allocate(task)
    office = await make.place(user, "Office", north_of(HOME, 5000), kind=PlaceKind.WORK)

    task = await task_store.update_task_location(task.task_id, place_id=office.place_id)
    rebuilt = await allocator.update(task)

    assert {g.center for g in rebuilt} == {office.coordinate}
    assert len(await geofence_store.list_for_task(task.task_id)) == 2


async def test_poi_lookup_failure_keeps_existing_geofences(db, make, bus, locks, clock):
    allocator = GeofenceAllocator(bus, locks, clock, FailingPOIProvider())
    user = await make.user()
    task = await make.poi_task(user)
    templates = await allocator.allocate(task)

    assert await allocator.refresh_poi_bindings(task, HOME) == []
    assert len(await geofence_store.list_for_task(task.task_id)) == len(templates)


async def test_rebinding_replaces_previous_pois(db, make, allocator):
    user = await make.user()
    task = await make.poi_task(user)
    await allocator.allocate(task)
    await allocator.bind_to_pois(task, PHARMACIES)

    rebound = await allocator.bind_to_pois(task, PHARMACIES[:1])

    assert len(rebound) == 4
    concrete = [g for g in await geofence_store.list_for_task(task.task_id) if not g.is_template]
    assert {g.center for g in concrete} == {PHARMACIES[0].coordinate}
    assert len(await geofence_store.list_templates_for_task(task.task_id)) == 4


async def test_allocate_rejects_inactive_task(db, make, allocator, clock):
    user = await make.user()
    task = await make.place_task(user)
    await task_store.set_task_status(task.task_id, TaskStatus.COMPLETED, clock.now())

    with pytest.raises(ValidationError):
        await allocator.allocate(await task_store.get_task_by_id(task.task_id))


async def test_cleanup_completed_after_retention(db, make, allocator, clock):
    user = await make.user()
    task = await make.place_task(user)
    await allocator.allocate(task)
    await task_store.set_task_status(task.task_id, TaskStatus.COMPLETED, clock.now())

    assert await allocator.cleanup_completed() == 0
    clock.advance(days=31)
    assert await allocator.cleanup_completed() == 2


# ---------------- 并发 ----------------
async def test_concurrent_allocations_keep_one_task_whole(db, make, bus, locks, clock):
    allocator = GeofenceAllocator(bus, locks, clock, ceiling=2)
    user = await make.user()
    tasks = [await make.place_task(user, title=f"Errand {i}") for i in range(3)]
    order = []
    bus.on(E.GEOFENCES_CHANGED)(lambda user_id, task_id, action: order.append(task_id))

    await asyncio.gather(*(allocator.allocate(task) for task in tasks))

    assert sorted(order) == sorted(t.task_id for t in tasks)
    assert await geofence_store.count_active_for_user(user.user_id) == 2
    active_per_task = {
        t.task_id: len(await geofence_store.list_for_task(t.task_id, active_only=True)) for t in tasks
    }
    # 最后拿到锁的任务完整保留，其余被整体淘汰
    assert active_per_task == {t.task_id: (2 if t.task_id == order[-1] else 0) for t in tasks}


async def test_concurrent_allocation_and_binding_respect_ceiling(db, make, bus, locks, clock):
    allocator = GeofenceAllocator(bus, locks, clock, StaticPOIProvider(PHARMACIES), ceiling=4)
    user = await make.user()
    first = await make.place_task(user, title="First")
    second = await make.place_task(user, title="Second")
    poi_task = await make.poi_task(user)
    await allocator.allocate(poi_task)
    order = []
    bus.on(E.GEOFENCES_CHANGED)(lambda user_id, task_id, action: order.append(task_id))

    await asyncio.gather(
        allocator.allocate(first),
        allocator.allocate(second),
        allocator.bind_to_pois(poi_task, PHARMACIES[:1]),
    )

    assert await geofence_store.count_active_for_user(user.user_id) == 4
    last = [g for g in await geofence_store.list_for_task(order[-1]) if not g.is_template]
    assert last and all(g.is_active for g in last)
    concrete = [
        g for t in (first, second, poi_task) for g in await geofence_store.list_for_task(t.task_id)
        if not g.is_template
    ]
    assert len(concrete) == 2 + 2 + 4
