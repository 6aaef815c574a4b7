from __future__ import annotations

from serial_link import LinkState
from status_tracker import StatusSnapshot, StatusTracker


def test_initial_snapshot_is_disconnected():
    tracker = StatusTracker('/dev/ttyUSB0')
    assert tracker.snapshot == StatusSnapshot(LinkState.DISCONNECTED, '/dev/ttyUSB0')
    assert tracker.status_message() == {
        "type": "serial_status", "status": "disconnected", "portName": "/dev/ttyUSB0",
    }


def test_transition_updates_snapshot_and_notifies():
    tracker = StatusTracker('/dev/ttyUSB0')
    seen = []
    tracker.on_change(seen.append)

    tracker.update(LinkState.CONNECTED)
    assert tracker.snapshot.state == LinkState.CONNECTED
    assert seen == [{"type": "serial_status", "status": "connected", "portName": "/dev/ttyUSB0"}]

    tracker.update(LinkState.DISCONNECTED)
    assert seen[-1]["status"] == "disconnected"


def test_connecting_updates_snapshot_silently():
    tracker = StatusTracker('COM3')
    seen = []
    tracker.on_change(seen.append)

    tracker.update(LinkState.CONNECTING)
    assert tracker.snapshot.state == LinkState.CONNECTING
    assert tracker.status_message()["status"] == "disconnected"
    assert seen == []


def test_port_name_is_static_configuration():
    tracker = StatusTracker('/dev/ttyACM0')
    for state in (LinkState.CONNECTING, LinkState.CONNECTED, LinkState.DISCONNECTED):
        tracker.update(state)
        assert tracker.status_message()["portName"] == '/dev/ttyACM0'
