import re
from datetime import datetime
from typing import Optional

from fleetgate.errors import FrameDecodeError
from fleetgate.schemas import LocationFix
from fleetgate.services.decoders.base import BaseDecoder, build_fix, frame_text, to_float

NUMBER = r"([+-]?\d+(?:\.\d+)?)"

LAT_LON_RE = re.compile(rf"Lat\s*:\s*{NUMBER}.*?Lon\s*:\s*{NUMBER}", re.IGNORECASE | re.DOTALL)
SPEED_RE = re.compile(rf"Speed\s*:\s*{NUMBER}", re.IGNORECASE)
MAPS_RE = re.compile(rf"[?&](?:q|ll)={NUMBER},{NUMBER}")
HEMISPHERE_RE = re.compile(r"(\d+(?:\.\d+)?)\s*([NS])\s*,\s*(\d+(?:\.\d+)?)\s*([EW])", re.IGNORECASE)
PLAIN_RE = re.compile(rf"^\s*{NUMBER}\s*,\s*{NUMBER}")


class SMSReplyDecoder(BaseDecoder):
    """
    Location replies sent back by devices over SMS:
        Lat:13.0827,Lon:80.2707,Speed:0km/h,T:2025-01-22 12:00:00
        http://maps.google.com/maps?q=13.0827,80.2707
        Location: 13.0827N,80.2707E Speed:15km/h
        13.0827,80.2707
    A 0,0 reply means the device has no GPS lock and is rejected.
    """

    name = "sms"

    def decode(self, raw, received_at: Optional[datetime] = None,
               device_identifier: str = "sms-device") -> LocationFix:
        text = frame_text(raw)
        latitude = longitude = None

        match = LAT_LON_RE.search(text)
        if match:
            latitude, longitude = to_float(match.group(1)), to_float(match.group(2))
        elif MAPS_RE.search(text):
            match = MAPS_RE.search(text)
            latitude, longitude = to_float(match.group(1)), to_float(match.group(2))
        elif HEMISPHERE_RE.search(text):
            match = HEMISPHERE_RE.search(text)
            latitude, longitude = to_float(match.group(1)), to_float(match.group(3))
            if match.group(2).upper() == "S":
                latitude = -latitude
            if match.group(4).upper() == "W":
                longitude = -longitude
        elif PLAIN_RE.search(text):
            match = PLAIN_RE.search(text)
            latitude, longitude = to_float(match.group(1)), to_float(match.group(2))

        if latitude is None or longitude is None:
            raise FrameDecodeError("sms: no location in reply", raw)
        if latitude == 0 and longitude == 0:
            raise FrameDecodeError("sms: device reported no GPS lock", raw)

        speed_match = SPEED_RE.search(text)
        return build_fix(
            self.name,
            device_identifier,
            latitude,
            longitude,
            speed=to_float(speed_match.group(1)) if speed_match else None,
            received_at=received_at,
        )
