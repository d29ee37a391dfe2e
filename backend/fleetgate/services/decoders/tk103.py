import re
from datetime import datetime, timezone
from typing import Optional

from fleetgate.errors import FrameDecodeError
from fleetgate.schemas import LocationFix
from fleetgate.services.decoders.base import BaseDecoder, build_fix, frame_text, parse_ddmm, to_float

# (<serial>BR00<tail>...A<lat 4.4><N|S><lon 5.4><E|W><speed 3.1><hhmmss><heading 3.2>...)
TK103_RE = re.compile(
    r"\((?P<serial>\d*)BR00(?P<tail>\d*).*?A"
    r"(?P<lat>\d{4}\.\d{4})(?P<ns>[NS])"
    r"(?P<lon>\d{5}\.\d{4})(?P<ew>[EW])"
    r"(?P<speed>\d{3}\.\d)"
    r"(?P<time>\d{6})"
    r"(?P<heading>\d{3}\.\d{2})?"
)


def is_tk103_frame(text: str) -> bool:
    return text.startswith("(") and "BR00" in text


def _device_time(date_field: str, time_field: str) -> Optional[datetime]:
    # date is yymmdd right after BR00 when the serial leads the frame
    if len(date_field) != 6:
        return None
    try:
        return datetime(
            2000 + int(date_field[0:2]), int(date_field[2:4]), int(date_field[4:6]),
            int(time_field[0:2]), int(time_field[2:4]), int(time_field[4:6]),
            tzinfo=timezone.utc,
        )
    except ValueError:
        return None


class TK103Decoder(BaseDecoder):
    """
    Parenthesized TK103 frames with fixed-width numeric fields:
        (BR00123456BP05000123456A2934.0133N10627.2544E000.0040331160000.0000000000L000146BB)
        (013612345678BR00080612A2232.9806N11404.9355E000.1101241323.8700000000L00000000)
    """

    name = "tk103"

    def decode(self, raw, received_at: Optional[datetime] = None) -> LocationFix:
        text = frame_text(raw)
        match = TK103_RE.search(text)
        if not match:
            raise FrameDecodeError("tk103: frame layout not recognised", raw)

        serial, tail = match.group("serial"), match.group("tail")
        if serial:
            device_id = serial
            timestamp = _device_time(tail, match.group("time"))
        else:
            device_id = tail
            timestamp = None
        if not device_id:
            raise FrameDecodeError("tk103: missing device id", raw)

        return build_fix(
            self.name,
            device_id,
            parse_ddmm(match.group("lat"), match.group("ns")),
            parse_ddmm(match.group("lon"), match.group("ew")),
            speed=to_float(match.group("speed")),
            heading=to_float(match.group("heading")),
            timestamp=timestamp,
            received_at=received_at,
        )
