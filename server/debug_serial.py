"""Quick debug script to check frame decoding straight off the sensor port.

Usage:
    python debug_serial.py /dev/ttyUSB0 [baud] [seconds]
"""
import sys
import time

import serial

from frame_decoder import MalformedFrame, decode_line

sys.stdout.reconfigure(errors='replace')


def main(argv):
    port = argv[1] if len(argv) > 1 else '/dev/ttyUSB0'
    baud = int(argv[2]) if len(argv) > 2 else 115200
    duration = float(argv[3]) if len(argv) > 3 else 25.0

    frames_rx = 0
    rejected = 0

    print(f'Opening {port} @ {baud}...', flush=True)
    with serial.Serial(port, baud, timeout=0.5) as s:
        s.reset_input_buffer()
        print(f'Connected. Listening for {duration:g}s...', flush=True)
        start = time.time()

        while time.time() - start < duration:
            raw = s.readline()
            if not raw:
                continue
            line = raw.rstrip(b'\r\n').decode('utf-8', errors='replace')
            elapsed = time.time() - start
            try:
                frame = decode_line(line)
            except MalformedFrame as e:
                rejected += 1
                print(f'[t={elapsed:.1f}s] rejected: {e.reason}', flush=True)
                continue
            frames_rx += 1
            print(f'[Frame #{frames_rx} t={elapsed:.1f}s] min={min(frame)} max={max(frame)} {list(frame)}',
                  flush=True)

    print(f'Done. frames_rx={frames_rx} rejected={rejected}', flush=True)


if __name__ == '__main__':
    main(sys.argv)
