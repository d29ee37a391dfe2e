import json
from datetime import datetime
from typing import Optional

from fleetgate.errors import FrameDecodeError
from fleetgate.schemas import LocationFix
from fleetgate.services.decoders.base import BaseDecoder, build_fix, frame_text, parse_timestamp, pick, to_float

DEFAULT_DEVICE = "json-device"

# Candidate keys per canonical field, tried in order
FIELD_KEYS = {
    "device_identifier": ("device_id", "deviceId", "imei", "id"),
    "latitude": ("lat", "latitude", "location.lat", "location.latitude"),
    "longitude": ("lon", "lng", "longitude", "location.lon", "location.lng", "location.longitude"),
    "speed": ("speed", "velocity"),
    "heading": ("heading", "course", "direction"),
    "altitude": ("altitude", "alt"),
    "accuracy": ("accuracy",),
    "timestamp": ("timestamp", "time", "ts"),
}


def is_json_object(text: str) -> bool:
    return text.startswith("{") and text.endswith("}")


class JSONDecoder(BaseDecoder):
    name = "json"

    def decode(self, raw, received_at: Optional[datetime] = None) -> LocationFix:
        text = frame_text(raw)
        try:
            data = json.loads(text)
        except (ValueError, RecursionError) as e:
            # RecursionError: nesting deeper than the parser allows
            raise FrameDecodeError(f"json: {e}", raw) from e
        if not isinstance(data, dict):
            raise FrameDecodeError("json: payload is not an object", raw)

        latitude = to_float(pick(data, FIELD_KEYS["latitude"]))
        longitude = to_float(pick(data, FIELD_KEYS["longitude"]))
        if latitude is None or longitude is None:
            raise FrameDecodeError("json: no latitude/longitude keys", raw)

        device_id = pick(data, FIELD_KEYS["device_identifier"])
        return build_fix(
            self.name,
            str(device_id) if device_id is not None else DEFAULT_DEVICE,
            latitude,
            longitude,
            speed=to_float(pick(data, FIELD_KEYS["speed"])),
            heading=to_float(pick(data, FIELD_KEYS["heading"])),
            altitude=to_float(pick(data, FIELD_KEYS["altitude"])),
            accuracy=to_float(pick(data, FIELD_KEYS["accuracy"])),
            timestamp=parse_timestamp(pick(data, FIELD_KEYS["timestamp"])),
            received_at=received_at,
        )
