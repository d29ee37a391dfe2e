from datetime import datetime
from typing import Optional

from fleetgate.errors import FrameDecodeError
from fleetgate.schemas import LocationFix
from fleetgate.services.decoders.base import BaseDecoder, build_fix, frame_text, in_range, to_float

DEFAULT_DEVICE = "generic-device"


def is_csv(text: str) -> bool:
    return "," in text


class GenericCSVDecoder(BaseDecoder):
    """
    Last-resort decoder: the first adjacent pair of fields that parse as an
    in-range latitude/longitude wins. The two fields after the pair are read as
    speed and heading when numeric; the first field is the device id.

    Any frame with two adjacent in-range numbers matches, so unrelated numeric
    fields can be mistaken for coordinates.
    """

    name = "generic"

    def decode(self, raw, received_at: Optional[datetime] = None) -> LocationFix:
        text = frame_text(raw)
        parts = [p.strip() for p in text.split(",")]
        for i in range(len(parts) - 1):
            latitude = to_float(parts[i])
            longitude = to_float(parts[i + 1])
            if not in_range(latitude, longitude):
                continue
            speed = to_float(parts[i + 2]) if i + 2 < len(parts) else None
            heading = to_float(parts[i + 3]) if i + 3 < len(parts) else None
            return build_fix(
                self.name,
                parts[0] or DEFAULT_DEVICE,
                latitude,
                longitude,
                speed=speed,
                heading=heading,
                received_at=received_at,
            )
        raise FrameDecodeError("generic: no coordinate pair found", raw)
