"""
Serial Sensor Bridge - Status Tracker

Keeps the current link snapshot and announces wire-visible transitions.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Callable, List

from serial_link import LinkState

logger = logging.getLogger(__name__)

STATUS_TYPE = 'serial_status'


@dataclass(frozen=True)
class StatusSnapshot:
    state: LinkState
    port_name: str

    @property
    def status(self) -> str:
        # The wire only knows connected / disconnected
        return 'connected' if self.state == LinkState.CONNECTED else 'disconnected'

    def to_message(self) -> dict:
        return {
            "type": STATUS_TYPE,
            "status": self.status,
            "portName": self.port_name,
        }


class StatusTracker:
    """
    Derives the status snapshot from link state transitions.

    Subscribers registered with on_change() receive the status message dict
    whenever the wire-visible status changes (entering CONNECTED or
    DISCONNECTED). Entering CONNECTING only updates the snapshot.
    """

    def __init__(self, port_name: str):
        self._lock = threading.Lock()
        self._snapshot = StatusSnapshot(LinkState.DISCONNECTED, port_name)
        self._callbacks: List[Callable] = []

    def on_change(self, callback: Callable):
        """Register callback: fn(message: dict)"""
        self._callbacks.append(callback)

    @property
    def snapshot(self) -> StatusSnapshot:
        with self._lock:
            return self._snapshot

    def status_message(self) -> dict:
        return self.snapshot.to_message()

    def update(self, state: LinkState):
        """Link state callback."""
        with self._lock:
            self._snapshot = StatusSnapshot(state, self._snapshot.port_name)
            snapshot = self._snapshot

        if state == LinkState.CONNECTING:
            return

        logger.info(f"[Status] Broadcasting serial status: {snapshot.status} for port {snapshot.port_name}")
        message = snapshot.to_message()
        for cb in self._callbacks:
            cb(message)
