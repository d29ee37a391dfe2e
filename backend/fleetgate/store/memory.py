from contextlib import asynccontextmanager
from datetime import datetime
from itertools import count
from typing import Optional

from fleetgate.schemas import (
    DeviceRecord,
    VehicleRecord,
    PositionSnapshot,
    HistoryEntry,
    LocationFix,
    utcnow,
)
from fleetgate.store.base import LocationStore, StoreTransaction


class _MemoryTransaction(StoreTransaction):
    def __init__(self, store: "MemoryStore"):
        self.store = store
        self.snapshots: dict[int, PositionSnapshot] = {}
        self.history: list[HistoryEntry] = []
        self.heartbeats: dict[int, datetime] = {}

    async def get_vehicle(self, vehicle_id: int) -> Optional[VehicleRecord]:
        return self.store.vehicles.get(vehicle_id)

    async def get_snapshot(self, vehicle_id: int) -> Optional[PositionSnapshot]:
        if vehicle_id in self.snapshots:
            return self.snapshots[vehicle_id]
        return self.store.snapshots.get(vehicle_id)

    async def append_history(self, vehicle_id, gps_device_id, fix: LocationFix, created_at):
        entry = HistoryEntry(
            id=next(self.store._history_ids),
            vehicle_id=vehicle_id,
            gps_device_id=gps_device_id,
            latitude=fix.latitude,
            longitude=fix.longitude,
            speed=fix.speed,
            heading=fix.heading,
            altitude=fix.altitude,
            accuracy=fix.accuracy,
            timestamp=fix.timestamp,
            source_protocol=fix.source_protocol,
            created_at=created_at,
        )
        self.history.append(entry)
        return entry

    async def update_vehicle_snapshot(self, vehicle_id, fix: LocationFix, updated_at):
        self.snapshots[vehicle_id] = PositionSnapshot(
            vehicle_id=vehicle_id,
            latitude=fix.latitude,
            longitude=fix.longitude,
            speed=fix.speed,
            heading=fix.heading,
            altitude=fix.altitude,
            accuracy=fix.accuracy,
            timestamp=fix.timestamp,
            source_protocol=fix.source_protocol,
            last_updated_at=updated_at,
        )

    async def update_device_heartbeat(self, gps_device_id, ts):
        self.heartbeats[gps_device_id] = ts

    def commit(self):
        # No awaits in here, so the whole unit lands in one event-loop step
        self.store.history.extend(self.history)
        self.store.snapshots.update(self.snapshots)
        for device_pk, ts in self.heartbeats.items():
            device = self.store.devices.get(device_pk)
            if device is not None:
                self.store.devices[device_pk] = device.model_copy(
                    update={"last_heartbeat": ts, "status": "active"}
                )


class MemoryStore(LocationStore):
    """In-process store, used for development runs and tests."""

    def __init__(self):
        self.devices: dict[int, DeviceRecord] = {}
        self.vehicles: dict[int, VehicleRecord] = {}
        self.snapshots: dict[int, PositionSnapshot] = {}
        self.history: list[HistoryEntry] = []
        self.alerts: list[dict] = []
        self.sync_logs: list[dict] = []
        self._device_ids = count(1)
        self._vehicle_ids = count(1)
        self._history_ids = count(1)

    # ---------- seeding ----------

    def add_device(self, device_id: str, **fields) -> DeviceRecord:
        device = DeviceRecord(id=next(self._device_ids), device_id=device_id, **fields)
        self.devices[device.id] = device
        return device

    def add_vehicle(self, **fields) -> VehicleRecord:
        vehicle = VehicleRecord(id=next(self._vehicle_ids), **fields)
        self.vehicles[vehicle.id] = vehicle
        return vehicle

    # ---------- reads ----------

    async def get_device_by_device_id(self, device_id):
        for device in self.devices.values():
            if device.device_id == device_id:
                return device
        return None

    async def get_device_by_imei(self, imei):
        for device in self.devices.values():
            if device.imei and device.imei == imei:
                return device
        return None

    async def get_device_by_sim(self, sim_number):
        for device in self.devices.values():
            if device.sim_number and device.sim_number == sim_number:
                return device
        return None

    async def get_vehicle_by_device_id(self, gps_device_id):
        for vehicle in self.vehicles.values():
            if vehicle.gps_device_id == gps_device_id:
                return vehicle
        return None

    async def list_devices(self, status=None, notes_contains=None):
        devices = list(self.devices.values())
        if status:
            devices = [d for d in devices if d.status == status]
        if notes_contains:
            needle = notes_contains.lower()
            devices = [d for d in devices if d.notes and needle in d.notes.lower()]
        return devices

    async def get_snapshot(self, vehicle_id):
        return self.snapshots.get(vehicle_id)

    async def list_history(self, vehicle_id, limit=100):
        entries = [e for e in self.history if e.vehicle_id == vehicle_id]
        entries.sort(key=lambda e: e.timestamp, reverse=True)
        return entries[:limit]

    # ---------- writes ----------

    async def set_device_status(self, device_id, status):
        device = await self.get_device_by_device_id(device_id)
        if device is None:
            return None
        device = device.model_copy(update={"status": status})
        self.devices[device.id] = device
        return device

    @asynccontextmanager
    async def transaction(self):
        tx = _MemoryTransaction(self)
        yield tx
        tx.commit()

    async def record_alert(self, alert_type, title, severity="medium", description=None,
                           alert_data=None, gps_device_id=None):
        self.alerts.append({
            "alert_type": alert_type,
            "title": title,
            "severity": severity,
            "description": description,
            "alert_data": alert_data,
            "gps_device_id": gps_device_id,
            "created_at": utcnow(),
        })

    async def record_sync_log(self, service, status, devices_updated, errors):
        self.sync_logs.append({
            "service": service,
            "status": status,
            "devices_updated": devices_updated,
            "error_count": len(errors),
            "errors": list(errors),
            "sync_time": utcnow(),
        })
