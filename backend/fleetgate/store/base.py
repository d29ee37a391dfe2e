from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Optional

from fleetgate.schemas import (
    DeviceRecord,
    VehicleRecord,
    PositionSnapshot,
    HistoryEntry,
    LocationFix,
)


class StoreTransaction(ABC):
    """Writes staged inside one unit of work. Nothing is visible until commit."""

    @abstractmethod
    async def get_vehicle(self, vehicle_id: int) -> Optional[VehicleRecord]:
        ...

    @abstractmethod
    async def get_snapshot(self, vehicle_id: int) -> Optional[PositionSnapshot]:
        ...

    @abstractmethod
    async def append_history(
        self, vehicle_id: int, gps_device_id: int, fix: LocationFix, created_at: datetime
    ) -> HistoryEntry:
        ...

    @abstractmethod
    async def update_vehicle_snapshot(self, vehicle_id: int, fix: LocationFix, updated_at: datetime):
        ...

    @abstractmethod
    async def update_device_heartbeat(self, gps_device_id: int, ts: datetime):
        ...


class LocationStore(ABC):
    """Read/write interface the ingestion core needs from the datastore."""

    @abstractmethod
    async def get_device_by_device_id(self, device_id: str) -> Optional[DeviceRecord]:
        ...

    @abstractmethod
    async def get_device_by_imei(self, imei: str) -> Optional[DeviceRecord]:
        ...

    @abstractmethod
    async def get_device_by_sim(self, sim_number: str) -> Optional[DeviceRecord]:
        ...

    @abstractmethod
    async def get_vehicle_by_device_id(self, gps_device_id: int) -> Optional[VehicleRecord]:
        ...

    @abstractmethod
    async def list_devices(
        self, status: Optional[str] = None, notes_contains: Optional[str] = None
    ) -> list[DeviceRecord]:
        ...

    @abstractmethod
    async def set_device_status(self, device_id: str, status: str) -> Optional[DeviceRecord]:
        ...

    @abstractmethod
    def transaction(self) -> AbstractAsyncContextManager[StoreTransaction]:
        ...

    @abstractmethod
    async def get_snapshot(self, vehicle_id: int) -> Optional[PositionSnapshot]:
        ...

    @abstractmethod
    async def list_history(self, vehicle_id: int, limit: int = 100) -> list[HistoryEntry]:
        ...

    @abstractmethod
    async def record_alert(
        self,
        alert_type: str,
        title: str,
        severity: str = "medium",
        description: Optional[str] = None,
        alert_data: Optional[dict] = None,
        gps_device_id: Optional[int] = None,
    ):
        ...

    @abstractmethod
    async def record_sync_log(
        self, service: str, status: str, devices_updated: int, errors: list[str]
    ):
        ...

    async def get_device_by_identifier(self, identifier: str) -> Optional[DeviceRecord]:
        """Exact device_id match first, then IMEI."""
        device = await self.get_device_by_device_id(identifier)
        if device is None:
            device = await self.get_device_by_imei(identifier)
        return device

    async def init_models(self):
        pass

    async def close(self):
        pass
