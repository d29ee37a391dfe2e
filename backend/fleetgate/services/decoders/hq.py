from datetime import datetime
from typing import Optional

from fleetgate.errors import FrameDecodeError
from fleetgate.schemas import LocationFix
from fleetgate.services.decoders.base import BaseDecoder, build_fix, frame_text, parse_ddmm, to_float

MARKERS = ("GT06", "*HQ")


def is_hq_frame(text: str) -> bool:
    return "GT06" in text or text.startswith("*HQ")


class HQDecoder(BaseDecoder):
    """
    Vendor comma frame, e.g.
        GT06,8988,V,0000.0000,N,00000.0000,E,000.00,000,000000*
        *HQ,8988,V,2934.0133,N,10627.2544,E,012.50,090,230394#
    Fields: marker, id, status flag, lat, N/S, lon, E/W, speed (km/h), heading, date.
    """

    name = "hq"

    def decode(self, raw, received_at: Optional[datetime] = None) -> LocationFix:
        text = frame_text(raw).rstrip("#*")
        parts = [p.strip() for p in text.split(",")]
        if len(parts) < 10:
            raise FrameDecodeError(f"hq: expected 10 fields, got {len(parts)}", raw)

        device_id = parts[1]
        if not device_id:
            raise FrameDecodeError("hq: missing device id", raw)
        latitude = parse_ddmm(parts[3], parts[4])
        longitude = parse_ddmm(parts[5], parts[6])

        # The date field carries no time of day, so receipt time orders these fixes
        return build_fix(
            self.name,
            device_id,
            latitude,
            longitude,
            speed=to_float(parts[7]),
            heading=to_float(parts[8]),
            received_at=received_at,
        )
