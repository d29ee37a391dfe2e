import math
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Sequence

from fleetgate.errors import FrameDecodeError
from fleetgate.schemas import LocationFix, as_utc, utcnow

KNOTS_TO_KMH = 1.852


def frame_text(raw: bytes | str) -> str:
    if isinstance(raw, (bytes, bytearray)):
        raw = bytes(raw).decode(errors="ignore")
    return raw.strip().strip("\x00").strip()


def to_float(value: Any) -> Optional[float]:
    """Lenient float parse; None for blanks, garbage, NaN and infinities."""
    if value is None or isinstance(value, bool):
        return None
    try:
        result = float(str(value).strip())
    except ValueError:
        return None
    if not math.isfinite(result):
        return None
    return result


def in_range(latitude: Optional[float], longitude: Optional[float]) -> bool:
    return (
        latitude is not None
        and longitude is not None
        and -90 <= latitude <= 90
        and -180 <= longitude <= 180
    )


def parse_ddmm(value: str, hemisphere: str) -> float:
    """DDMM.MMMM (or DDDMM.MMMM) plus hemisphere letter to decimal degrees."""
    number = to_float(value)
    hemisphere = (hemisphere or "").strip().upper()
    if number is None or number < 0 or hemisphere not in ("N", "S", "E", "W"):
        raise FrameDecodeError(f"Bad coordinate field {value!r} {hemisphere!r}")
    degrees = int(number // 100)
    minutes = number - degrees * 100
    if minutes >= 60:
        raise FrameDecodeError(f"Minutes out of range in {value!r}")
    decimal = degrees + minutes / 60
    return -decimal if hemisphere in ("S", "W") else decimal


def knots_to_kmh(knots: float) -> float:
    return knots * KNOTS_TO_KMH


def parse_hhmmss_ddmmyy(time_field: str, date_field: str) -> Optional[datetime]:
    """NMEA-style time + date; None when either part is missing or invalid."""
    time_field = (time_field or "").strip()
    date_field = (date_field or "").strip()
    if len(time_field) < 6 or len(date_field) != 6:
        return None
    try:
        hh, mi, ss = int(time_field[0:2]), int(time_field[2:4]), int(time_field[4:6])
        dd, mm, yy = int(date_field[0:2]), int(date_field[2:4]), int(date_field[4:6])
        year = 2000 + yy if yy < 80 else 1900 + yy
        return datetime(year, mm, dd, hh, mi, ss, tzinfo=timezone.utc)
    except ValueError:
        return None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """ISO-8601 strings or unix epoch (seconds or milliseconds)."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    number = to_float(value)
    if number is not None:
        if number > 1e12:
            number /= 1000.0
        try:
            return datetime.fromtimestamp(number, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    try:
        return as_utc(datetime.fromisoformat(str(value).strip().replace("Z", "+00:00")))
    except ValueError:
        return None


def lookup(data: Dict[str, Any], path: str) -> Any:
    """Dotted-path lookup into nested dicts ("location.latitude")."""
    current: Any = data
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return None
        current = current[part]
    return current


def pick(data: Dict[str, Any], candidates: Sequence[str]) -> Any:
    """First candidate key present with a non-empty value."""
    for key in candidates:
        value = lookup(data, key)
        if value is not None and value != "":
            return value
    return None


def build_fix(
    source: str,
    device_identifier: str,
    latitude: Optional[float],
    longitude: Optional[float],
    speed: Optional[float] = None,
    heading: Optional[float] = None,
    altitude: Optional[float] = None,
    accuracy: Optional[float] = None,
    timestamp: Optional[datetime] = None,
    received_at: Optional[datetime] = None,
) -> LocationFix:
    if not in_range(latitude, longitude):
        raise FrameDecodeError(f"{source}: coordinates out of range ({latitude}, {longitude})")
    return LocationFix(
        device_identifier=device_identifier,
        latitude=latitude,
        longitude=longitude,
        speed=max(speed or 0.0, 0.0),
        heading=heading or 0.0,
        altitude=altitude,
        accuracy=accuracy,
        timestamp=timestamp or received_at or utcnow(),
        source_protocol=source,
    )


class BaseDecoder:
    name = "base"

    def decode(self, raw: bytes | str, received_at: Optional[datetime] = None) -> LocationFix:
        raise NotImplementedError("Decoder must implement decode")
