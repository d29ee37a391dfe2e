from contextlib import asynccontextmanager

import pytest

from fleetgate.schemas import LocationFix


async def test_unknown_gt06_device_is_counted_not_applied(store, pipeline, health):
    result = await pipeline.ingest_frame(b"GT06,8988,V,0000.0000,N,00000.0000,E,000.00,000,000000*")

    assert result.decoded
    assert result.outcome == "unresolved"
    assert store.snapshots == {}
    assert store.history == []
    assert health.counters["unresolved"] == 1
    assert health.unresolved_identifiers["8988"] == 1


async def test_json_frame_for_known_device(store, pipeline, health):
    result = await pipeline.ingest_frame(
        b'{"device_id":"GPS001","lat":11.4452,"lon":77.7307,"speed":42,"heading":180}', source="udp"
    )

    assert result.outcome == "applied"
    snapshot = store.snapshots[1]
    assert (snapshot.latitude, snapshot.longitude, snapshot.speed, snapshot.heading) == (11.4452, 77.7307, 42, 180)
    assert len(store.history) == 1
    assert store.devices[1].last_heartbeat is not None
    assert health.by_source["udp:applied"] == 1


async def test_knots_sentence_stored_in_kmh(store, pipeline):
    result = await pipeline.ingest_frame(
        "358899051234567,$GPRMC,123519,A,4807.038,N,01131.000,E,022.4,084.4,230394,003.1,W*6A"
    )
    assert result.outcome == "applied"
    assert store.snapshots[1].speed == pytest.approx(41.5, abs=0.05)


async def test_decode_failure(pipeline, health):
    result = await pipeline.ingest_frame(b"garbage")
    assert not result.decoded
    assert result.outcome == "decode_failed"
    assert health.counters["decode_failed"] == 1


async def test_tracking_disabled_reported_separately(store, pipeline, health):
    result = await pipeline.ingest_frame(b'{"device_id":"GPS002","lat":11.0,"lon":77.0}')
    assert result.outcome == "tracking_disabled"
    assert health.counters["tracking_disabled"] == 1
    assert health.counters["unresolved"] == 0
    assert store.history == []


async def test_stale_fix_outcome(pipeline):
    await pipeline.ingest_frame(b'{"device_id":"GPS001","lat":11.0,"lon":77.0,"timestamp":"2025-01-22T10:00:00Z"}')
    result = await pipeline.ingest_frame(
        b'{"device_id":"GPS001","lat":12.0,"lon":78.0,"timestamp":"2025-01-22T09:00:00Z"}'
    )
    assert result.outcome == "stale"
    assert result.ok


async def test_persistence_failure_is_reported(store, pipeline, health, monkeypatch):
    @asynccontextmanager
    async def broken_transaction():
        raise RuntimeError("connection reset")
        yield

    monkeypatch.setattr(store, "transaction", broken_transaction)
    fix = LocationFix(device_identifier="GPS001", latitude=11.0, longitude=77.0, source_protocol="http")
    result = await pipeline.ingest_fix(fix)

    assert result.outcome == "persistence_failed"
    assert not result.ok
    assert health.counters["persistence_failed"] == 1


async def test_result_as_dict(pipeline):
    result = await pipeline.ingest_frame(b'{"device_id":"GPS001","lat":11.0,"lon":77.0}')
    body = result.as_dict()
    assert body["status"] == "applied"
    assert body["vehicle_id"] == 1
    assert body["protocol"] == "json"
    assert body["history_id"] == 1
