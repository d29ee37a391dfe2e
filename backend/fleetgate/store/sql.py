import logging
from contextlib import asynccontextmanager
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.future import select

from fleetgate.db import create_engine, create_session_factory, create_tables
from fleetgate.errors import PersistenceError
from fleetgate.models import GPSDevice, Vehicle, LocationHistory, GPSAlert, SyncLog
from fleetgate.schemas import (
    DeviceRecord,
    VehicleRecord,
    PositionSnapshot,
    HistoryEntry,
    LocationFix,
    as_utc,
)
from fleetgate.store.base import LocationStore, StoreTransaction

logger = logging.getLogger(__name__)


def _snapshot_from_row(vehicle: Vehicle) -> Optional[PositionSnapshot]:
    if vehicle.current_latitude is None or vehicle.current_longitude is None:
        return None
    fix_at = vehicle.last_gps_fix_at or vehicle.last_gps_update
    return PositionSnapshot(
        vehicle_id=vehicle.id,
        latitude=vehicle.current_latitude,
        longitude=vehicle.current_longitude,
        speed=vehicle.gps_speed or 0.0,
        heading=vehicle.gps_heading or 0.0,
        altitude=vehicle.gps_altitude,
        accuracy=vehicle.gps_accuracy,
        timestamp=as_utc(fix_at),
        source_protocol=vehicle.gps_source,
        last_updated_at=as_utc(vehicle.last_gps_update or fix_at),
    )


def _device(row) -> Optional[DeviceRecord]:
    if row is None:
        return None
    device = DeviceRecord.model_validate(row)
    if device.last_heartbeat is not None:
        device = device.model_copy(update={"last_heartbeat": as_utc(device.last_heartbeat)})
    return device


class _SqlTransaction(StoreTransaction):
    def __init__(self, session):
        self.session = session

    async def get_vehicle(self, vehicle_id):
        # Row lock keeps other gateway processes out of this vehicle until commit
        q = await self.session.execute(
            select(Vehicle).where(Vehicle.id == vehicle_id).with_for_update()
        )
        vehicle = q.scalars().first()
        return VehicleRecord.model_validate(vehicle) if vehicle else None

    async def get_snapshot(self, vehicle_id):
        vehicle = await self.session.get(Vehicle, vehicle_id)
        return _snapshot_from_row(vehicle) if vehicle else None

    async def append_history(self, vehicle_id, gps_device_id, fix: LocationFix, created_at):
        row = LocationHistory(
            vehicle_id=vehicle_id,
            gps_device_id=gps_device_id,
            latitude=fix.latitude,
            longitude=fix.longitude,
            speed=fix.speed,
            heading=fix.heading,
            altitude=fix.altitude,
            accuracy=fix.accuracy,
            source_protocol=fix.source_protocol,
            timestamp=fix.timestamp,
            created_at=created_at,
        )
        self.session.add(row)
        await self.session.flush()
        return HistoryEntry.model_validate(row)

    async def update_vehicle_snapshot(self, vehicle_id, fix: LocationFix, updated_at):
        await self.session.execute(
            update(Vehicle)
            .where(Vehicle.id == vehicle_id)
            .values(
                current_latitude=fix.latitude,
                current_longitude=fix.longitude,
                gps_speed=fix.speed,
                gps_heading=fix.heading,
                gps_altitude=fix.altitude,
                gps_accuracy=fix.accuracy,
                gps_source=fix.source_protocol,
                last_gps_fix_at=fix.timestamp,
                last_gps_update=updated_at,
            )
        )

    async def update_device_heartbeat(self, gps_device_id, ts):
        await self.session.execute(
            update(GPSDevice)
            .where(GPSDevice.id == gps_device_id)
            .values(last_heartbeat=ts, status="active")
        )


class SqlStore(LocationStore):
    """LocationStore backed by async SQLAlchemy (asyncpg in production)."""

    def __init__(self, database_url: str, echo: bool = False):
        self.engine = create_engine(database_url, echo=echo)
        self.session_factory = create_session_factory(self.engine)

    async def init_models(self):
        await create_tables(self.engine)

    async def close(self):
        await self.engine.dispose()

    async def _scalar(self, stmt):
        try:
            async with self.session_factory() as db:
                q = await db.execute(stmt)
                return q.scalars().first()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Database read failed: {e}") from e

    async def get_device_by_device_id(self, device_id):
        return _device(await self._scalar(select(GPSDevice).where(GPSDevice.device_id == device_id)))

    async def get_device_by_imei(self, imei):
        return _device(await self._scalar(select(GPSDevice).where(GPSDevice.imei == imei)))

    async def get_device_by_sim(self, sim_number):
        return _device(await self._scalar(select(GPSDevice).where(GPSDevice.sim_number == sim_number)))

    async def get_vehicle_by_device_id(self, gps_device_id):
        vehicle = await self._scalar(select(Vehicle).where(Vehicle.gps_device_id == gps_device_id))
        return VehicleRecord.model_validate(vehicle) if vehicle else None

    async def list_devices(self, status=None, notes_contains=None):
        stmt = select(GPSDevice)
        if status:
            stmt = stmt.where(GPSDevice.status == status)
        if notes_contains:
            stmt = stmt.where(GPSDevice.notes.ilike(f"%{notes_contains}%"))
        try:
            async with self.session_factory() as db:
                result = await db.execute(stmt.order_by(GPSDevice.id))
                return [_device(d) for d in result.scalars().all()]
        except SQLAlchemyError as e:
            raise PersistenceError(f"Database read failed: {e}") from e

    async def set_device_status(self, device_id, status):
        try:
            async with self.session_factory() as db:
                q = await db.execute(select(GPSDevice).where(GPSDevice.device_id == device_id))
                device = q.scalars().first()
                if not device:
                    return None
                device.status = status
                await db.commit()
                await db.refresh(device)
                return _device(device)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to update device status: {e}") from e

    @asynccontextmanager
    async def transaction(self):
        try:
            async with self.session_factory() as db:
                async with db.begin():
                    yield _SqlTransaction(db)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Transaction rolled back: {e}") from e

    async def get_snapshot(self, vehicle_id):
        vehicle = await self._scalar(select(Vehicle).where(Vehicle.id == vehicle_id))
        return _snapshot_from_row(vehicle) if vehicle else None

    async def list_history(self, vehicle_id, limit=100):
        stmt = (
            select(LocationHistory)
            .where(LocationHistory.vehicle_id == vehicle_id)
            .order_by(LocationHistory.timestamp.desc())
            .limit(limit)
        )
        try:
            async with self.session_factory() as db:
                result = await db.execute(stmt)
                entries = [HistoryEntry.model_validate(h) for h in result.scalars().all()]
        except SQLAlchemyError as e:
            raise PersistenceError(f"Database read failed: {e}") from e
        return [e.model_copy(update={"timestamp": as_utc(e.timestamp), "created_at": as_utc(e.created_at)})
                for e in entries]

    async def record_alert(self, alert_type, title, severity="medium", description=None,
                           alert_data=None, gps_device_id=None):
        try:
            async with self.session_factory() as db:
                db.add(GPSAlert(
                    gps_device_id=gps_device_id,
                    alert_type=alert_type,
                    severity=severity,
                    title=title,
                    description=description,
                    alert_data=alert_data,
                ))
                await db.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to record alert: {e}") from e

    async def record_sync_log(self, service, status, devices_updated, errors):
        try:
            async with self.session_factory() as db:
                db.add(SyncLog(
                    service=service,
                    status=status,
                    devices_updated=devices_updated,
                    error_count=len(errors),
                    errors=list(errors),
                ))
                await db.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to record sync log: {e}") from e
