"""
Serial Sensor Bridge - Serial Link

Owns the physical connection to the sensor: open, read CRLF-delimited lines,
detect close/failure, and retry on a fixed interval.

The link is an explicit state machine driven by LinkEvent values. pyserial-asyncio
transport callbacks are translated into events by SerialLineProtocol, so every
transition can also be driven by hand (tests, diagnostics) without a device.

    CLOSED --CONNECT--> OPENING --OPENED--> OPEN
       ^                   |                  |
       +------CLOSED-------+------CLOSED------+      (arms reconnect timer)
    any --SHUTDOWN--> CLOSING                        (terminal, never re-arms)

Usage:
    link = SerialLink('/dev/ttyUSB0', baud=115200, reconnect_delay=5.0)
    link.on_frame(lambda frame: ...)
    link.on_state(lambda state: ...)
    link.start()      # must be called from inside the running event loop
    ...
    link.stop()
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

import serial
import serial_asyncio

from frame_decoder import FRAME_WIDTH, MAX_VALUE, MalformedFrame, decode_line

logger = logging.getLogger(__name__)

LINE_DELIMITER = b'\r\n'
MAX_LINE_BYTES = 4096


class LinkState(Enum):
    """Process-wide connectivity as seen by viewers."""
    DISCONNECTED = 'disconnected'
    CONNECTING   = 'connecting'
    CONNECTED    = 'connected'


class LinkEvent(Enum):
    CONNECT  = 'connect'    # startup or reconnect timer fired
    OPENED   = 'opened'     # transport confirmed open
    CLOSED   = 'closed'     # transport closed, open failed, or I/O error
    SHUTDOWN = 'shutdown'   # graceful stop requested


# Internal phases of the handle (finer grained than LinkState)
PHASE_CLOSED  = 'CLOSED'
PHASE_OPENING = 'OPENING'
PHASE_OPEN    = 'OPEN'
PHASE_CLOSING = 'CLOSING'


@dataclass
class LinkStats:
    frames_received: int = 0
    frames_dropped: int = 0
    connect_attempts: int = 0
    last_frame_at: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "frames_received": self.frames_received,
            "frames_dropped": self.frames_dropped,
            "connect_attempts": self.connect_attempts,
            "last_frame_at": self.last_frame_at,
        }


class SerialLineProtocol(asyncio.Protocol):
    """Adapts pyserial-asyncio transport callbacks to SerialLink events."""

    def __init__(self, link: 'SerialLink'):
        self._link = link

    def connection_made(self, transport):
        self._link.handle(LinkEvent.OPENED, transport=transport)

    def data_received(self, data: bytes):
        self._link.feed(data)

    def connection_lost(self, exc):
        self._link.handle(LinkEvent.CLOSED, error=exc)


class SerialLink:
    """
    Serial Link Manager. One instance per process.

    Invariants:
      - at most one reconnect timer is armed at any time
      - a CONNECT while a handle is opening or open is a no-op
      - after SHUTDOWN no event has any effect
    """

    def __init__(self, port: str, baud: int = 115200, reconnect_delay: float = 5.0,
                 loop: Optional[asyncio.AbstractEventLoop] = None,
                 opener: Optional[Callable] = None,
                 width: int = FRAME_WIDTH, max_value: int = MAX_VALUE,
                 max_line_bytes: int = MAX_LINE_BYTES):
        self.port = port
        self.baud = baud
        self.reconnect_delay = reconnect_delay
        self.width = width
        self.max_value = max_value
        self.max_line_bytes = max_line_bytes
        self.stats = LinkStats()

        self._loop = loop
        self._opener = opener or serial_asyncio.create_serial_connection
        self._phase = PHASE_CLOSED
        self._state = LinkState.DISCONNECTED
        self._transport = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._open_task = None
        self._buf = bytearray()
        self._skipping = False    # dropping the tail of an overlong line

        self._frame_callbacks: List[Callable] = []
        self._state_callbacks: List[Callable] = []

        self._transitions = {
            LinkEvent.CONNECT:  self._on_connect,
            LinkEvent.OPENED:   self._on_opened,
            LinkEvent.CLOSED:   self._on_closed,
            LinkEvent.SHUTDOWN: self._on_shutdown,
        }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def on_frame(self, callback: Callable):
        """Register callback: fn(frame: SensorFrame)"""
        self._frame_callbacks.append(callback)

    def on_state(self, callback: Callable):
        """Register callback: fn(state: LinkState)"""
        self._state_callbacks.append(callback)

    @property
    def state(self) -> LinkState:
        return self._state

    @property
    def phase(self) -> str:
        return self._phase

    @property
    def is_open(self) -> bool:
        return self._phase == PHASE_OPEN

    @property
    def timer_armed(self) -> bool:
        return self._timer is not None

    def start(self):
        """First connect attempt. Resolves the running loop if none was injected."""
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        self.handle(LinkEvent.CONNECT)

    def stop(self):
        self.handle(LinkEvent.SHUTDOWN)

    def cancel_reconnect(self):
        """Cancel the pending reconnect attempt, if any. No-op otherwise."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def handle(self, event: LinkEvent, transport=None, error: Optional[BaseException] = None):
        """Apply one event to the state machine."""
        if self._phase == PHASE_CLOSING:
            logger.debug(f"[Link] Ignoring {event.value} after shutdown")
            return
        self._transitions[event](transport=transport, error=error)

    def feed(self, data: bytes):
        """Accumulate raw bytes and decode every complete CRLF-terminated line."""
        if self._phase != PHASE_OPEN:
            return
        self._buf += data
        while True:
            idx = self._buf.find(LINE_DELIMITER)
            if idx < 0:
                break
            line = bytes(self._buf[:idx])
            del self._buf[:idx + len(LINE_DELIMITER)]
            if self._skipping:
                self._skipping = False
                continue
            self._process_line(line)

        if len(self._buf) > self.max_line_bytes:
            if not self._skipping:
                logger.warning(f"[Link] Discarding overlong undelimited line from {self.port}")
                self.stats.frames_dropped += 1
                self._skipping = True
            self._buf.clear()

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _on_connect(self, transport=None, error=None):
        if self._phase != PHASE_CLOSED:
            logger.info(f"[Link] Serial port {self.port} is already {self._phase.lower()}")
            return

        # An attempt that did not come from the timer supersedes it
        self.cancel_reconnect()
        self._phase = PHASE_OPENING
        self.stats.connect_attempts += 1
        logger.info(f"[Link] Attempting to open serial port {self.port} at {self.baud} baud")
        self._set_state(LinkState.CONNECTING)
        self._open_task = self._loop.create_task(self._open())

    def _on_opened(self, transport=None, error=None):
        if self._phase != PHASE_OPENING:
            return
        if transport is not None:
            self._transport = transport
        self.cancel_reconnect()
        self._phase = PHASE_OPEN
        self._buf.clear()
        self._skipping = False
        logger.info(f"[Link] Serial port {self.port} opened")
        self._set_state(LinkState.CONNECTED)

    def _on_closed(self, transport=None, error=None):
        if self._phase not in (PHASE_OPENING, PHASE_OPEN):
            return

        if error is not None:
            logger.warning(f"[Link] Serial port {self.port} closed due to error: {error}")
        else:
            logger.info(f"[Link] Serial port {self.port} closed")

        self._phase = PHASE_CLOSED
        self._transport = None
        self._buf.clear()
        self._skipping = False
        self._set_state(LinkState.DISCONNECTED)

        if self._timer is None:
            logger.info(f"[Link] Will retry {self.port} in {self.reconnect_delay:g}s")
            self._timer = self._loop.call_later(self.reconnect_delay, self._on_timer)

    def _on_shutdown(self, transport=None, error=None):
        self.cancel_reconnect()
        self._phase = PHASE_CLOSING
        handle, self._transport = self._transport, None
        self._buf.clear()
        if handle is not None:
            try:
                handle.close()
                logger.info(f"[Link] Serial port {self.port} closed during shutdown")
            except Exception as e:
                logger.error(f"[Link] Error closing serial port during shutdown: {e}")

    def _on_timer(self):
        self._timer = None
        self.handle(LinkEvent.CONNECT)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _open(self):
        try:
            transport, _ = await self._opener(
                self._loop, lambda: SerialLineProtocol(self), self.port, baudrate=self.baud)
        except (serial.SerialException, OSError, ValueError) as e:
            logger.warning(f"[Link] Failed to open serial port {self.port}: {e}")
            self.handle(LinkEvent.CLOSED, error=e)
            return
        except Exception as e:
            logger.error(f"[Link] Unexpected error opening serial port {self.port}: {e!r}")
            self.handle(LinkEvent.CLOSED, error=e)
            return

        if self._phase == PHASE_CLOSING:
            # Shutdown raced the open
            transport.close()
        elif self._phase in (PHASE_OPENING, PHASE_OPEN):
            self._transport = transport

    def _process_line(self, raw: bytes):
        line = raw.decode('utf-8', errors='replace')
        logger.debug(f"[Link] Data: {line}")
        try:
            frame = decode_line(line, self.width, self.max_value)
        except MalformedFrame as e:
            self.stats.frames_dropped += 1
            logger.warning(f"[Link] Received malformed data: {e}")
            return

        self.stats.frames_received += 1
        self.stats.last_frame_at = time.time()
        self._emit(self._frame_callbacks, frame)

    def _set_state(self, state: LinkState):
        if state == self._state:
            return
        self._state = state
        self._emit(self._state_callbacks, state)

    def _emit(self, callbacks: List[Callable], value):
        for cb in callbacks:
            try:
                cb(value)
            except Exception as e:
                logger.error(f"[Link] Callback error: {e}")
