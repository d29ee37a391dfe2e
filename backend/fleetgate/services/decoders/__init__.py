import logging
from datetime import datetime
from typing import Callable, Optional, Sequence

from fleetgate.errors import FrameDecodeError
from fleetgate.schemas import LocationFix
from fleetgate.services.decoders.base import BaseDecoder, frame_text
from fleetgate.services.decoders.generic import GenericCSVDecoder, is_csv
from fleetgate.services.decoders.hq import HQDecoder, is_hq_frame
from fleetgate.services.decoders.json_frame import JSONDecoder, is_json_object
from fleetgate.services.decoders.nmea import NMEADecoder, is_nmea_rmc
from fleetgate.services.decoders.sms import SMSReplyDecoder
from fleetgate.services.decoders.tk103 import TK103Decoder, is_tk103_frame

logger = logging.getLogger(__name__)

Predicate = Callable[[str], bool]

# name -> (predicate, decoder)
DECODERS: dict[str, tuple[Predicate, BaseDecoder]] = {
    "hq": (is_hq_frame, HQDecoder()),
    "nmea": (is_nmea_rmc, NMEADecoder()),
    "tk103": (is_tk103_frame, TK103Decoder()),
    "json": (is_json_object, JSONDecoder()),
    "generic": (is_csv, GenericCSVDecoder()),
}

DEFAULT_PRIORITY = ("hq", "nmea", "tk103", "json", "generic")


class Dispatcher:
    """
    Runs a frame through the (predicate, decoder) chain. The first predicate that
    claims the frame picks the decoder; if that decoder rejects the frame it is
    not handed on, so a void NMEA sentence never reaches the generic fallback.
    """

    def __init__(self, priority: Optional[Sequence[str]] = None):
        names = list(priority or DEFAULT_PRIORITY)
        unknown = [n for n in names if n not in DECODERS]
        if unknown:
            raise ValueError(f"Unknown decoder(s) in priority list: {', '.join(unknown)}")
        self.chain = [(name, *DECODERS[name]) for name in names]

    @property
    def names(self) -> list[str]:
        return [name for name, _, _ in self.chain]

    def decode_or_raise(self, raw: bytes | str, received_at: Optional[datetime] = None) -> LocationFix:
        text = frame_text(raw)
        if not text:
            raise FrameDecodeError("Empty frame", raw)

        for name, predicate, decoder in self.chain:
            if not predicate(text):
                continue
            try:
                return decoder.decode(text, received_at=received_at)
            except FrameDecodeError as e:
                raise FrameDecodeError(f"{name} rejected frame ({e})", raw) from e
            except (ValueError, IndexError, KeyError, TypeError, RecursionError) as e:
                logger.warning(f"{name} decoder failed on {text[:80]!r}: {e}")
                raise FrameDecodeError(f"{name}: malformed frame ({e})", raw) from e

        raise FrameDecodeError(f"No decoder recognises frame {text[:40]!r}", raw)

    def decode(self, raw: bytes | str, received_at: Optional[datetime] = None) -> Optional[LocationFix]:
        try:
            return self.decode_or_raise(raw, received_at=received_at)
        except FrameDecodeError:
            return None


__all__ = [
    "DECODERS",
    "DEFAULT_PRIORITY",
    "Dispatcher",
    "SMSReplyDecoder",
]
