from __future__ import annotations

import pytest

from conftest import FRAME_LINE, FRAME_VALUES
from frame_decoder import FRAME_WIDTH, MAX_VALUE, MalformedFrame, decode_line


def test_decode_valid_line():
    assert decode_line(FRAME_LINE) == tuple(FRAME_VALUES)


def test_decode_accepts_range_bounds_and_extra_whitespace():
    line = "  0\t1023 " + " ".join(["5"] * 14) + "  "
    frame = decode_line(line)
    assert len(frame) == FRAME_WIDTH
    assert frame[0] == 0
    assert frame[1] == MAX_VALUE


def test_frame_is_immutable():
    frame = decode_line(FRAME_LINE)
    with pytest.raises(TypeError):
        frame[0] = 99


@pytest.mark.parametrize("line", [
    "1 2 3",
    "",
    " ".join(["1"] * 15),
    " ".join(["1"] * 17),
])
def test_wrong_arity_rejected(line):
    with pytest.raises(MalformedFrame) as ei:
        decode_line(line)
    assert "expected 16 values" in ei.value.reason


@pytest.mark.parametrize("bad", ["1024", "-1", "abc", "NaN", "1.5", "12abc", "+5", "1_0", "0x10", "²"])
def test_bad_token_rejected(bad):
    tokens = ["1"] * 15 + [bad]
    with pytest.raises(MalformedFrame):
        decode_line(" ".join(tokens))


def test_malformed_frame_is_value_error_and_keeps_line():
    with pytest.raises(ValueError) as ei:
        decode_line("1 2 3")
    assert ei.value.line == "1 2 3"


def test_custom_width_and_ceiling():
    assert decode_line("1 2 255", width=3, max_value=255) == (1, 2, 255)
    with pytest.raises(MalformedFrame):
        decode_line("1 2 256", width=3, max_value=255)
