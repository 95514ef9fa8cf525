import pytest

from scalelink.codecs.ascii import AsciiCodec, parse_line
from scalelink.codecs.base import FrameKind


def test_w_line():
    c = parse_line("W 123.5 kg S").candidate
    assert c.weight == 123.5
    assert c.stable is True

    unsettled = parse_line("W 98.0 kg").candidate
    assert unsettled.stable is False


def test_w_line_in_pounds_converts_to_kg():
    c = parse_line("W 100 lb").candidate
    assert c.weight == pytest.approx(45.359, abs=1e-3)


def test_key_value_line():
    c = parse_line("Weight:450,ID:BR1234,Stable:1").candidate
    assert c.weight == 450
    assert c.visual_id == "BR1234"
    assert c.stable is True


def test_bare_number():
    c = parse_line("450.5").candidate
    assert c.weight == 450.5


@pytest.mark.parametrize("line", ["10000", "12000", "0", "-5"])
def test_bare_number_outside_plausible_range_is_rejected(line):
    assert parse_line(line).kind == FrameKind.UNRECOGNIZED


def test_eid_merged_into_same_line():
    c = parse_line("W 455.0 kg S EID:982000123456789").candidate
    assert c.weight == 455.0
    assert c.electronic_id == "982000123456789"

    bare = parse_line("450 EID=982000123456789").candidate
    assert bare.weight == 450
    assert bare.electronic_id == "982000123456789"


def test_eid_only_line_gives_id_candidate():
    frame = parse_line("EID:982000123456789")
    assert frame.kind == FrameKind.READING
    assert frame.candidate.weight is None
    assert frame.candidate.electronic_id == "982000123456789"


def test_codec_has_no_poll_command():
    codec = AsciiCodec()
    assert codec.poll_command() is None
    assert codec.decode("hello there").kind == FrameKind.UNRECOGNIZED
