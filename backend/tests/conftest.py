import pytest

from fleetgate.services.applier import FixApplier
from fleetgate.services.decoders import Dispatcher
from fleetgate.services.health import DeviceHealthTracker
from fleetgate.services.ingest import IngestPipeline
from fleetgate.services.registry import DeviceRegistry
from fleetgate.store import MemoryStore


@pytest.fixture
def store():
    """GPS001 on an enabled vehicle, GPS002 on a vehicle with tracking off, GPS003 unbound."""
    store = MemoryStore()
    gps1 = store.add_device(
        "GPS001",
        device_name="Bus 12",
        imei="358899051234567",
        sim_number="+91 98765 43210",
        device_model="GT06N",
        notes="mercyda unit",
        status="active",
    )
    gps2 = store.add_device("GPS002", device_name="Bus 14", imei="358899057654321", status="active")
    store.add_device("GPS003", device_name="Spare", status="inactive")
    store.add_vehicle(registration_number="TN-01-AB-1234", gps_device_id=gps1.id, live_tracking_enabled=True)
    store.add_vehicle(registration_number="TN-01-AB-5678", gps_device_id=gps2.id, live_tracking_enabled=False)
    return store


@pytest.fixture
def health():
    return DeviceHealthTracker(heartbeat_timeout=600)


@pytest.fixture
def registry(store):
    return DeviceRegistry(store, cache_ttl=0)


@pytest.fixture
def applier(store, health):
    return FixApplier(store, health)


@pytest.fixture
def pipeline(registry, applier, health):
    return IngestPipeline(Dispatcher(), registry, applier, health)
