import logging
import time
from dataclasses import dataclass
from typing import Optional

from fleetgate.errors import TrackingDisabledError, UnresolvedDeviceError
from fleetgate.schemas import DeviceRecord, VehicleRecord
from fleetgate.store.base import LocationStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Resolution:
    device: DeviceRecord
    vehicle: VehicleRecord


class DeviceRegistry:
    """
    Maps protocol-level device tokens to a registered device and its vehicle.

    Lookup order is device_id, then IMEI. Lookups that resolve to a vehicle with
    live tracking on are cached for cache_ttl seconds; misses, unbound devices and
    tracking-disabled vehicles always go back to the store. The applier re-reads
    the vehicle inside its transaction, so a vehicle switched off is caught there.
    Devices are never created implicitly.
    """

    def __init__(self, store: LocationStore, cache_ttl: float = 30.0):
        self.store = store
        self.cache_ttl = cache_ttl
        self._cache: dict[str, tuple[float, DeviceRecord, Optional[VehicleRecord]]] = {}

    def invalidate(self, identifier: Optional[str] = None):
        if identifier is None:
            self._cache.clear()
        else:
            self._cache.pop(identifier, None)

    async def lookup(self, identifier: str) -> tuple[Optional[DeviceRecord], Optional[VehicleRecord]]:
        cached = self._cache.get(identifier)
        if cached and cached[0] > time.monotonic():
            return cached[1], cached[2]

        device = await self.store.get_device_by_identifier(identifier)
        if device is None:
            return None, None
        vehicle = await self.store.get_vehicle_by_device_id(device.id)
        # only trackable pairs are cached; a vehicle switched back on is seen at once
        if self.cache_ttl > 0 and vehicle is not None and vehicle.live_tracking_enabled:
            self._cache[identifier] = (time.monotonic() + self.cache_ttl, device, vehicle)
        return device, vehicle

    async def resolve(self, identifier: str) -> Resolution:
        identifier = (identifier or "").strip()
        if not identifier:
            raise UnresolvedDeviceError(identifier, "empty device identifier")

        device, vehicle = await self.lookup(identifier)
        if device is None:
            raise UnresolvedDeviceError(identifier)
        if vehicle is None:
            raise UnresolvedDeviceError(identifier, f"device {device.device_id} is not bound to a vehicle")
        if not vehicle.live_tracking_enabled:
            raise TrackingDisabledError(identifier, vehicle.id, vehicle.registration_number)
        return Resolution(device=device, vehicle=vehicle)
