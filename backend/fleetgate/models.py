from sqlalchemy import Column, Integer, String, Float, DateTime, Boolean, ForeignKey, JSON, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

# IMPORTANT: use Base from db.py
from fleetgate.db import Base


class GPSDevice(Base):
    __tablename__ = "gps_devices"

    id = Column(Integer, primary_key=True, index=True)
    device_id = Column(String, unique=True, index=True, nullable=False)
    device_name = Column(String)
    imei = Column(String(15), index=True, nullable=True)
    sim_number = Column(String, nullable=True)
    device_model = Column(String, nullable=True)
    notes = Column(Text, nullable=True)
    status = Column(String, default="inactive")  # active, inactive, faulty
    last_heartbeat = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


class Vehicle(Base):
    __tablename__ = "vehicles"

    id = Column(Integer, primary_key=True, index=True)
    registration_number = Column(String, unique=True)
    gps_device_id = Column(Integer, ForeignKey("gps_devices.id"), nullable=True, unique=True)
    live_tracking_enabled = Column(Boolean, default=False)

    # Current position snapshot, overwritten in place
    current_latitude = Column(Float, nullable=True)
    current_longitude = Column(Float, nullable=True)
    gps_speed = Column(Float, nullable=True)
    gps_heading = Column(Float, nullable=True)
    gps_altitude = Column(Float, nullable=True)
    gps_accuracy = Column(Float, nullable=True)
    gps_source = Column(String, nullable=True)
    last_gps_fix_at = Column(DateTime(timezone=True), nullable=True)
    last_gps_update = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    gps_device = relationship("GPSDevice")


class LocationHistory(Base):
    __tablename__ = "gps_location_history"

    id = Column(Integer, primary_key=True, index=True)
    vehicle_id = Column(Integer, ForeignKey("vehicles.id"), index=True, nullable=False)
    gps_device_id = Column(Integer, ForeignKey("gps_devices.id"), nullable=False)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    speed = Column(Float, nullable=True)
    heading = Column(Float, nullable=True)
    altitude = Column(Float, nullable=True)
    accuracy = Column(Float, nullable=True)
    source_protocol = Column(String, nullable=True)
    timestamp = Column(DateTime(timezone=True), index=True)
    created_at = Column(DateTime(timezone=True), nullable=False)


class GPSAlert(Base):
    __tablename__ = "gps_alerts"

    id = Column(Integer, primary_key=True, index=True)
    gps_device_id = Column(Integer, ForeignKey("gps_devices.id"), nullable=True)
    alert_type = Column(String, nullable=False)
    severity = Column(String, default="medium")
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    alert_data = Column(JSON, nullable=True)
    resolved = Column(Boolean, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class SyncLog(Base):
    __tablename__ = "gps_sync_logs"

    id = Column(Integer, primary_key=True, index=True)
    service = Column(String, nullable=False)
    status = Column(String, nullable=False)
    devices_updated = Column(Integer, default=0)
    error_count = Column(Integer, default=0)
    errors = Column(JSON, default=list)
    sync_time = Column(DateTime(timezone=True), server_default=func.now())
