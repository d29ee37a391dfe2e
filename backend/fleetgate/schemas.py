from pydantic import BaseModel, Field, field_validator
from typing import Optional, Literal
from datetime import datetime, timezone


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so fixes from every source compare cleanly."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


DeviceStatus = Literal["active", "inactive", "faulty"]


class LocationFix(BaseModel):
    """One normalized GPS report, as produced by a decoder."""

    device_identifier: str
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    speed: float = Field(default=0.0, ge=0)
    heading: float = 0.0
    altitude: Optional[float] = None
    accuracy: Optional[float] = None
    timestamp: datetime = Field(default_factory=utcnow)
    source_protocol: str

    class Config:
        frozen = True

    @field_validator("heading")
    @classmethod
    def normalize_heading(cls, v: float) -> float:
        return v % 360

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, v: datetime) -> datetime:
        return as_utc(v)


class DeviceRecord(BaseModel):
    id: int
    device_id: str
    device_name: Optional[str] = None
    imei: Optional[str] = None
    sim_number: Optional[str] = None
    device_model: Optional[str] = None
    notes: Optional[str] = None
    status: DeviceStatus = "inactive"
    last_heartbeat: Optional[datetime] = None

    class Config:
        from_attributes = True


class VehicleRecord(BaseModel):
    id: int
    registration_number: Optional[str] = None
    gps_device_id: Optional[int] = None
    live_tracking_enabled: bool = False

    class Config:
        from_attributes = True


class PositionSnapshot(BaseModel):
    vehicle_id: int
    latitude: float
    longitude: float
    speed: float
    heading: float
    altitude: Optional[float] = None
    accuracy: Optional[float] = None
    timestamp: datetime
    source_protocol: Optional[str] = None
    last_updated_at: datetime


class HistoryEntry(BaseModel):
    id: Optional[int] = None
    vehicle_id: int
    gps_device_id: int
    latitude: float
    longitude: float
    speed: Optional[float] = None
    heading: Optional[float] = None
    altitude: Optional[float] = None
    accuracy: Optional[float] = None
    timestamp: datetime
    source_protocol: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


# ---------- API payloads ----------

class RawFrameIn(BaseModel):
    raw: Optional[str] = None
    raw_hex: Optional[str] = None
    source_ip: Optional[str] = None


class LocationUpdateIn(BaseModel):
    device_id: str
    latitude: float
    longitude: float
    speed: Optional[float] = None
    heading: Optional[float] = None
    accuracy: Optional[float] = None
    altitude: Optional[float] = None
    timestamp: Optional[datetime] = None


class DeviceStatusIn(BaseModel):
    status: DeviceStatus


class ConfigureDeviceIn(BaseModel):
    server_host: str
    server_port: Optional[int] = None


class RealtimeTrackingIn(BaseModel):
    interval_seconds: int = 30


class SmsInboundIn(BaseModel):
    sender: str
    message: str
