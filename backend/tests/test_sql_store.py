from datetime import datetime, timezone

import pytest
from sqlalchemy.future import select

from fleetgate.models import GPSAlert, GPSDevice, SyncLog, Vehicle
from fleetgate.services.applier import FixApplier
from fleetgate.services.decoders import Dispatcher
from fleetgate.services.health import DeviceHealthTracker
from fleetgate.services.ingest import IngestPipeline
from fleetgate.services.registry import DeviceRegistry
from fleetgate.store import SqlStore


@pytest.fixture
async def sql_store(tmp_path):
    store = SqlStore(f"sqlite+aiosqlite:///{tmp_path}/gateway.db")
    await store.init_models()
    async with store.session_factory() as db:
        gps1 = GPSDevice(device_id="GPS001", device_name="Bus 12", imei="358899051234567",
                         sim_number="+91 98765 43210", notes="Mercyda unit", status="active")
        gps2 = GPSDevice(device_id="GPS002", device_name="Bus 14", status="active")
        db.add_all([gps1, gps2])
        await db.flush()
        db.add_all([
            Vehicle(registration_number="TN-01-AB-1234", gps_device_id=gps1.id, live_tracking_enabled=True),
            Vehicle(registration_number="TN-01-AB-5678", gps_device_id=gps2.id, live_tracking_enabled=False),
        ])
        await db.commit()
    yield store
    await store.close()


@pytest.fixture
def sql_pipeline(sql_store):
    health = DeviceHealthTracker(heartbeat_timeout=600)
    return IngestPipeline(
        Dispatcher(),
        DeviceRegistry(sql_store, cache_ttl=0),
        FixApplier(sql_store, health),
        health,
    )


async def test_lookups(sql_store):
    assert (await sql_store.get_device_by_imei("358899051234567")).device_id == "GPS001"
    assert (await sql_store.get_device_by_sim("+91 98765 43210")).device_id == "GPS001"
    assert await sql_store.get_device_by_device_id("NOPE") is None

    device = await sql_store.get_device_by_device_id("GPS002")
    vehicle = await sql_store.get_vehicle_by_device_id(device.id)
    assert vehicle.registration_number == "TN-01-AB-5678"
    assert not vehicle.live_tracking_enabled


async def test_list_devices_filters(sql_store):
    assert [d.device_id for d in await sql_store.list_devices(status="active")] == ["GPS001", "GPS002"]
    assert [d.device_id for d in await sql_store.list_devices(notes_contains="mercyda")] == ["GPS001"]


async def test_apply_then_stale_fix(sql_store, sql_pipeline):
    first = await sql_pipeline.ingest_frame(
        b'{"device_id":"GPS001","lat":11.4452,"lon":77.7307,"speed":42,"timestamp":"2025-01-22T10:00:00Z"}'
    )
    second = await sql_pipeline.ingest_frame(
        b'{"device_id":"GPS001","lat":12.0,"lon":78.0,"timestamp":"2025-01-22T09:00:00Z"}'
    )

    assert first.outcome == "applied"
    assert second.outcome == "stale"
    assert first.applied.history_entry.id is not None

    device = await sql_store.get_device_by_device_id("GPS001")
    vehicle = await sql_store.get_vehicle_by_device_id(device.id)
    snapshot = await sql_store.get_snapshot(vehicle.id)
    assert (snapshot.latitude, snapshot.longitude, snapshot.speed) == (11.4452, 77.7307, 42)
    assert snapshot.timestamp == datetime(2025, 1, 22, 10, 0, tzinfo=timezone.utc)
    assert snapshot.source_protocol == "json"
    assert device.last_heartbeat is not None

    history = await sql_store.list_history(vehicle.id)
    assert [h.latitude for h in history] == [11.4452, 12.0]
    assert len(await sql_store.list_history(vehicle.id, limit=1)) == 1


async def test_tracking_disabled_writes_nothing(sql_store, sql_pipeline):
    result = await sql_pipeline.ingest_frame(b'{"device_id":"GPS002","lat":11.0,"lon":77.0}')
    assert result.outcome == "tracking_disabled"
    device = await sql_store.get_device_by_device_id("GPS002")
    vehicle = await sql_store.get_vehicle_by_device_id(device.id)
    assert await sql_store.get_snapshot(vehicle.id) is None
    assert await sql_store.list_history(vehicle.id) == []


async def test_set_device_status(sql_store):
    device = await sql_store.set_device_status("GPS002", "faulty")
    assert device.status == "faulty"
    assert await sql_store.set_device_status("NOPE", "faulty") is None


async def test_alerts_and_sync_logs(sql_store):
    await sql_store.record_alert("upstream_timeout", "Tracking console sync failing", severity="high",
                                 alert_data={"consecutive_failures": 3})
    await sql_store.record_sync_log("mercyda", "failed", 0, ["timed out"])

    async with sql_store.session_factory() as db:
        alert = (await db.execute(select(GPSAlert))).scalars().one()
        log = (await db.execute(select(SyncLog))).scalars().one()
    assert alert.severity == "high"
    assert alert.alert_data == {"consecutive_failures": 3}
    assert (log.service, log.status, log.error_count, log.errors) == ("mercyda", "failed", 1, ["timed out"])
