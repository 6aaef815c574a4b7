"""
Serial Sensor Bridge - Frame Decoder

Turns one text line from the sensor into a validated frame.

Line format: N whitespace-separated base-10 integers, each in [0, MAX].
    "10 20 30 40 50 60 70 80 90 100 110 120 130 140 150 160"
"""

from typing import Tuple

FRAME_WIDTH = 16     # channels per frame
MAX_VALUE   = 1023   # 10-bit ADC ceiling

SensorFrame = Tuple[int, ...]


class MalformedFrame(ValueError):
    """A line that does not satisfy the frame arity / range rules."""

    def __init__(self, line: str, reason: str):
        super().__init__(f"{reason}: {line!r}")
        self.line = line
        self.reason = reason


def decode_line(line: str, width: int = FRAME_WIDTH, max_value: int = MAX_VALUE) -> SensorFrame:
    """Decode one line into a SensorFrame or raise MalformedFrame."""
    tokens = line.split()
    if len(tokens) != width:
        raise MalformedFrame(line, f"expected {width} values, got {len(tokens)}")

    values = []
    for tok in tokens:
        # ASCII digits only: '+5', '1_0', '1.5' and '²' are all rejected
        if not (tok.isascii() and tok.isdigit()):
            raise MalformedFrame(line, f"not an integer {tok!r}")
        v = int(tok)
        if v > max_value:
            raise MalformedFrame(line, f"value {v} out of range 0..{max_value}")
        values.append(v)
    return tuple(values)
