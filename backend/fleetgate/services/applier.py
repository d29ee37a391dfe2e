import asyncio
import logging
from collections import Counter
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from fleetgate.errors import (
    GatewayError,
    InvalidCoordinateError,
    PersistenceError,
    TrackingDisabledError,
    UnresolvedDeviceError,
)
from fleetgate.schemas import HistoryEntry, LocationFix, utcnow
from fleetgate.services.decoders.base import in_range
from fleetgate.services.health import DeviceHealthTracker
from fleetgate.services.registry import Resolution
from fleetgate.store.base import LocationStore

logger = logging.getLogger(__name__)


@dataclass
class ApplyOutcome:
    vehicle_id: int
    gps_device_id: int
    fix: LocationFix
    snapshot_updated: bool
    history_entry: Optional[HistoryEntry] = None

    @property
    def stale(self) -> bool:
        return not self.snapshot_updated


AppliedListener = Callable[[ApplyOutcome], Awaitable[None]]


class VehicleLocks:
    """One asyncio.Lock per vehicle, created on demand and dropped when idle."""

    def __init__(self):
        self._locks: dict[int, asyncio.Lock] = {}
        self._holders: Counter = Counter()

    def __len__(self):
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, vehicle_id: int):
        lock = self._locks.setdefault(vehicle_id, asyncio.Lock())
        self._holders[vehicle_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._holders[vehicle_id] -= 1
            if self._holders[vehicle_id] <= 0:
                del self._holders[vehicle_id]
                self._locks.pop(vehicle_id, None)


class FixApplier:
    """
    Writes one resolved fix: history append, snapshot update (only when the fix
    is not older than the current snapshot) and device heartbeat, all in one
    store transaction and serialized per vehicle.
    """

    def __init__(self, store: LocationStore, health: DeviceHealthTracker):
        self.store = store
        self.health = health
        self.locks = VehicleLocks()
        self.listeners: list[AppliedListener] = []
        self._notifications: set[asyncio.Task] = set()

    def add_listener(self, listener: AppliedListener):
        self.listeners.append(listener)

    async def apply(self, resolution: Resolution, fix: LocationFix) -> ApplyOutcome:
        if not in_range(fix.latitude, fix.longitude):
            raise InvalidCoordinateError(fix.latitude, fix.longitude)

        vehicle_id = resolution.vehicle.id
        gps_device_id = resolution.device.id

        async with self.locks.hold(vehicle_id):
            try:
                async with self.store.transaction() as tx:
                    vehicle = await tx.get_vehicle(vehicle_id)
                    if vehicle is None:
                        raise UnresolvedDeviceError(fix.device_identifier, f"vehicle {vehicle_id} no longer exists")
                    if not vehicle.live_tracking_enabled:
                        raise TrackingDisabledError(fix.device_identifier, vehicle.id, vehicle.registration_number)

                    now = utcnow()
                    current = await tx.get_snapshot(vehicle_id)
                    entry = await tx.append_history(vehicle_id, gps_device_id, fix, now)

                    snapshot_updated = current is None or fix.timestamp >= current.timestamp
                    if snapshot_updated:
                        await tx.update_vehicle_snapshot(vehicle_id, fix, now)
                    else:
                        logger.info(
                            f"Late fix for vehicle {vehicle_id} ({fix.timestamp.isoformat()} < "
                            f"{current.timestamp.isoformat()}): history only"
                        )
                    await self.health.heartbeat(tx, gps_device_id, now)
            except GatewayError:
                raise
            except Exception as e:
                raise PersistenceError(f"Failed to apply fix for vehicle {vehicle_id}: {e}") from e

        outcome = ApplyOutcome(
            vehicle_id=vehicle_id,
            gps_device_id=gps_device_id,
            fix=fix,
            snapshot_updated=snapshot_updated,
            history_entry=entry,
        )
        self._notify(outcome)
        return outcome

    def _notify(self, outcome: ApplyOutcome):
        # listeners run as tasks so a slow subscriber never delays the device ack
        for listener in self.listeners:
            task = asyncio.create_task(listener(outcome))
            self._notifications.add(task)
            task.add_done_callback(self._notification_done)

    def _notification_done(self, task: asyncio.Task):
        self._notifications.discard(task)
        if task.cancelled():
            return
        e = task.exception()
        if e is not None:
            # the write is committed; a listener cannot undo it
            logger.error(f"Applied-fix listener failed: {e}")

    async def drain(self):
        """Wait for listener notifications still in flight."""
        if self._notifications:
            await asyncio.gather(*list(self._notifications), return_exceptions=True)
