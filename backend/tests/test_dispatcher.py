import pytest

from fleetgate.errors import FrameDecodeError
from fleetgate.services.decoders import DEFAULT_PRIORITY, Dispatcher
from fleetgate.services.decoders.hq import is_hq_frame
from fleetgate.services.decoders.json_frame import is_json_object
from fleetgate.services.decoders.nmea import is_nmea_rmc
from fleetgate.services.decoders.tk103 import is_tk103_frame


def test_predicates_are_specific():
    assert is_hq_frame("GT06,1,V")
    assert not is_hq_frame("$GPRMC,1,A")
    assert is_nmea_rmc("$GNRMC,123519,A,4807.038,N")
    assert not is_nmea_rmc("$GPGGA,123519,4807.038,N")
    assert is_tk103_frame("(0136BR00)")
    assert not is_tk103_frame("BR00 without parens")
    assert is_json_object('{"a": 1}')
    assert not is_json_object('{"a": 1')


@pytest.mark.parametrize(
    "frame,protocol",
    [
        ("GT06,8988,V,0000.0000,N,00000.0000,E,000.00,000,000000*", "hq"),
        ("$GPRMC,123519,A,4807.038,N,01131.000,E,022.4,084.4,230394,003.1,W*6A", "nmea"),
        ("(013612345678BR00080612A2232.9806N11404.9355E000.1101241323.8700000000L00000000)", "tk103"),
        ('{"device_id":"GPS001","lat":11.4452,"lon":77.7307}', "json"),
        ("TRK9,11.4452,77.7307", "generic"),
    ],
)
def test_first_matching_decoder_wins(frame, protocol):
    fix = Dispatcher().decode(frame.encode())
    assert fix is not None
    assert fix.source_protocol == protocol


def test_invalid_nmea_does_not_fall_back_to_generic_coordinates():
    # a void RMC still has numeric fields; generic must not read 123519 as latitude
    frame = "$GPRMC,123519,V,4807.038,N,01131.000,E,022.4,084.4,230394,003.1,W*6A"
    assert Dispatcher().decode(frame) is None


@pytest.mark.parametrize("frame", [b"", b"\x00\x00", b"hello", b"\xff\xfe\x01", b"(BR00 junk)", b"{,,,}"])
def test_undecodable_frames_return_none(frame):
    assert Dispatcher().decode(frame) is None


def test_decode_or_raise_lists_attempts():
    with pytest.raises(FrameDecodeError) as exc:
        Dispatcher().decode_or_raise("GT06,short")
    assert "hq" in str(exc.value)


def test_priority_order_is_configurable():
    frame = "TRK9,11.4452,77.7307"
    assert Dispatcher(["json"]).decode(frame) is None
    assert Dispatcher(["generic"]).decode(frame).source_protocol == "generic"


def test_unknown_decoder_name_rejected():
    with pytest.raises(ValueError):
        Dispatcher(["hq", "teltonika"])


def test_default_priority():
    assert Dispatcher().names == list(DEFAULT_PRIORITY)


def test_deeply_nested_json_is_a_decode_failure():
    frame = '{"a":' + "[" * 100000 + "]" * 100000 + "}"
    assert Dispatcher().decode(frame) is None
    with pytest.raises(FrameDecodeError):
        Dispatcher().decode_or_raise(frame)
