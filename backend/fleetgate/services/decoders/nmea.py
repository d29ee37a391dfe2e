import re
from datetime import datetime
from typing import Optional

from fleetgate.errors import FrameDecodeError
from fleetgate.schemas import LocationFix
from fleetgate.services.decoders.base import (
    BaseDecoder,
    build_fix,
    frame_text,
    knots_to_kmh,
    parse_ddmm,
    parse_hhmmss_ddmmyy,
    to_float,
)

RMC_TOKEN = re.compile(r"^\$?[A-Z]{2}RMC$")
DEFAULT_DEVICE = "gprmc-device"


def _rmc_index(parts) -> int:
    for i, part in enumerate(parts):
        if RMC_TOKEN.match(part.strip()):
            return i
    return -1


def is_nmea_rmc(text: str) -> bool:
    return "RMC," in text and _rmc_index(text.split(",")) >= 0


class NMEADecoder(BaseDecoder):
    """
    RMC sentence, optionally prefixed by a device id:
        $GPRMC,123519,A,4807.038,N,01131.000,E,022.4,084.4,230394,003.1,W*6A
        358899051234567,$GPRMC,123519,A,...
    Speed is reported in knots.
    """

    name = "nmea"

    def decode(self, raw, received_at: Optional[datetime] = None) -> LocationFix:
        text = frame_text(raw)
        parts = [p.strip() for p in text.split(",")]
        i = _rmc_index(parts)
        if i < 0:
            raise FrameDecodeError("nmea: no RMC record", raw)
        fields = parts[i:]
        if len(fields) < 10:
            raise FrameDecodeError(f"nmea: truncated sentence ({len(fields)} fields)", raw)
        # Checksum may be glued onto whichever field comes last
        fields = [f.split("*", 1)[0] for f in fields]

        if fields[2].upper() != "A":
            raise FrameDecodeError("nmea: fix flagged invalid", raw)

        latitude = parse_ddmm(fields[3], fields[4])
        longitude = parse_ddmm(fields[5], fields[6])
        knots = to_float(fields[7])
        device_id = ",".join(parts[:i]).strip() or DEFAULT_DEVICE

        return build_fix(
            self.name,
            device_id,
            latitude,
            longitude,
            speed=knots_to_kmh(knots) if knots is not None else 0.0,
            heading=to_float(fields[8]),
            timestamp=parse_hhmmss_ddmmyy(fields[1], fields[9]),
            received_at=received_at,
        )
