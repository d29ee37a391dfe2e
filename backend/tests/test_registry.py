import pytest

from fleetgate.errors import TrackingDisabledError, UnresolvedDeviceError
from fleetgate.services.registry import DeviceRegistry


async def test_resolve_by_device_id(registry):
    resolution = await registry.resolve("GPS001")
    assert resolution.device.device_id == "GPS001"
    assert resolution.vehicle.registration_number == "TN-01-AB-1234"


async def test_resolve_falls_back_to_imei(registry):
    resolution = await registry.resolve("358899051234567")
    assert resolution.device.device_id == "GPS001"


async def test_unknown_identifier(registry):
    with pytest.raises(UnresolvedDeviceError) as exc:
        await registry.resolve("8988")
    assert exc.value.identifier == "8988"


async def test_unbound_device_is_unresolved(registry):
    with pytest.raises(UnresolvedDeviceError) as exc:
        await registry.resolve("GPS003")
    assert "not bound" in exc.value.reason


async def test_tracking_disabled_is_distinct(registry):
    with pytest.raises(TrackingDisabledError) as exc:
        await registry.resolve("GPS002")
    assert not isinstance(exc.value, UnresolvedDeviceError)
    assert exc.value.vehicle_id == 2


async def test_empty_identifier(registry):
    with pytest.raises(UnresolvedDeviceError):
        await registry.resolve("  ")


async def test_hits_are_cached_misses_are_not(store):
    registry = DeviceRegistry(store, cache_ttl=60)
    await registry.resolve("GPS001")
    store.devices.clear()
    assert (await registry.resolve("GPS001")).device.device_id == "GPS001"

    with pytest.raises(UnresolvedDeviceError):
        await registry.resolve("NEW1")
    device = store.add_device("NEW1")
    store.add_vehicle(gps_device_id=device.id, live_tracking_enabled=True)
    assert (await registry.resolve("NEW1")).device.device_id == "NEW1"

    registry.invalidate("GPS001")
    with pytest.raises(UnresolvedDeviceError):
        await registry.resolve("GPS001")


async def test_tracking_disabled_is_not_cached(store):
    registry = DeviceRegistry(store, cache_ttl=60)
    with pytest.raises(TrackingDisabledError):
        await registry.resolve("GPS002")

    store.vehicles[2] = store.vehicles[2].model_copy(update={"live_tracking_enabled": True})
    assert (await registry.resolve("GPS002")).vehicle.id == 2
