import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from fleetgate.errors import PersistenceError, TrackingDisabledError, UnresolvedDeviceError
from fleetgate.schemas import LocationFix
from fleetgate.services.registry import Resolution
from fleetgate.store import memory

T0 = datetime(2025, 1, 22, 6, 0, tzinfo=timezone.utc)


def make_fix(minutes=0, lat=11.4452, lon=77.7307, speed=42.0, device="GPS001"):
    return LocationFix(
        device_identifier=device,
        latitude=lat,
        longitude=lon,
        speed=speed,
        heading=180,
        timestamp=T0 + timedelta(minutes=minutes),
        source_protocol="json",
    )


async def test_apply_writes_snapshot_history_and_heartbeat(store, registry, applier):
    resolution = await registry.resolve("GPS001")
    outcome = await applier.apply(resolution, make_fix())

    assert outcome.snapshot_updated
    snapshot = store.snapshots[1]
    assert (snapshot.latitude, snapshot.longitude, snapshot.speed, snapshot.heading) == (11.4452, 77.7307, 42, 180)
    assert len(store.history) == 1
    assert store.history[0].gps_device_id == resolution.device.id
    device = store.devices[resolution.device.id]
    assert device.last_heartbeat is not None
    assert device.status == "active"


async def test_older_fix_goes_to_history_only(store, registry, applier):
    resolution = await registry.resolve("GPS001")
    await applier.apply(resolution, make_fix(minutes=10, lat=12.0))
    outcome = await applier.apply(resolution, make_fix(minutes=5, lat=13.0))

    assert outcome.stale
    assert store.snapshots[1].latitude == 12.0
    assert [e.latitude for e in store.history] == [12.0, 13.0]


async def test_later_fix_wins_regardless_of_arrival_order(store, registry, applier):
    resolution = await registry.resolve("GPS001")
    await applier.apply(resolution, make_fix(minutes=5, lat=13.0))
    await applier.apply(resolution, make_fix(minutes=10, lat=12.0))
    assert store.snapshots[1].latitude == 12.0
    assert len(store.history) == 2


async def test_concurrent_fixes_for_one_vehicle(store, registry, applier):
    resolution = await registry.resolve("GPS001")
    minutes = [7, 3, 19, 0, 11, 5, 17, 2, 13, 1]
    fixes = [make_fix(minutes=m, lat=10 + m / 100) for m in minutes]

    await asyncio.gather(*(applier.apply(resolution, fix) for fix in fixes))

    assert len(store.history) == len(fixes)
    assert store.snapshots[1].timestamp == T0 + timedelta(minutes=19)
    assert store.snapshots[1].latitude == pytest.approx(10.19)
    # locks are dropped once nobody is waiting
    assert len(applier.locks) == 0


async def test_tracking_disabled_after_resolution(store, registry, applier):
    resolution = await registry.resolve("GPS001")
    store.vehicles[1] = store.vehicles[1].model_copy(update={"live_tracking_enabled": False})

    with pytest.raises(TrackingDisabledError):
        await applier.apply(resolution, make_fix())
    assert store.history == []
    assert store.snapshots == {}


async def test_history_failure_leaves_snapshot_untouched(store, registry, applier, monkeypatch):
    resolution = await registry.resolve("GPS001")
    await applier.apply(resolution, make_fix(minutes=0, lat=12.0))

    async def broken_append(self, *args, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(memory._MemoryTransaction, "append_history", broken_append)
    with pytest.raises(PersistenceError):
        await applier.apply(resolution, make_fix(minutes=5, lat=13.0))

    assert store.snapshots[1].latitude == 12.0
    assert len(store.history) == 1


async def test_listener_failure_does_not_undo_write(store, registry, applier):
    seen = []

    async def failing_listener(outcome):
        raise ConnectionError("redis down")

    async def recording_listener(outcome):
        seen.append(outcome.vehicle_id)

    applier.add_listener(failing_listener)
    applier.add_listener(recording_listener)
    outcome = await applier.apply(await registry.resolve("GPS001"), make_fix())
    await applier.drain()

    assert outcome.snapshot_updated
    assert seen == [1]
    assert len(store.history) == 1


async def test_unresolved_vehicle_removed_between_steps(store, applier):
    device = store.devices[1]
    vehicle = store.vehicles.pop(1)

    with pytest.raises(UnresolvedDeviceError):
        await applier.apply(Resolution(device=device, vehicle=vehicle), make_fix())
    assert store.history == []


async def test_slow_listener_does_not_delay_apply(store, registry, applier):
    release = asyncio.Event()
    seen = []

    async def slow_listener(outcome):
        await release.wait()
        seen.append(outcome.vehicle_id)

    applier.add_listener(slow_listener)
    outcome = await asyncio.wait_for(applier.apply(await registry.resolve("GPS001"), make_fix()), 1)

    assert outcome.snapshot_updated
    assert seen == []
    release.set()
    await applier.drain()
    assert seen == [1]
