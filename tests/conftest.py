"""Shared fakes: event loop timers, serial opener/transport, viewer sessions."""

from __future__ import annotations

import json

import pytest

from viewer_registry import ViewerSendFailure


class FakeTimer:
    def __init__(self, when, callback, args):
        self.when = when
        self.callback = callback
        self.args = args
        self.cancelled = False
        self.fired = False

    def cancel(self):
        self.cancelled = True


class FakeLoop:
    """Just enough of an event loop for SerialLink: call_later + create_task."""

    def __init__(self):
        self.now = 0.0
        self.timers = []

    def call_later(self, delay, callback, *args):
        t = FakeTimer(self.now + delay, callback, args)
        self.timers.append(t)
        return t

    def create_task(self, coro):
        # Fake openers never suspend, so the coroutine finishes in one step
        try:
            coro.send(None)
        except StopIteration:
            return None
        coro.close()
        raise AssertionError("coroutine suspended inside FakeLoop")

    def pending(self):
        return [t for t in self.timers if not t.cancelled and not t.fired]

    def advance(self, seconds):
        self.now += seconds
        for t in list(self.timers):
            if t.when <= self.now and not t.cancelled and not t.fired:
                t.fired = True
                t.callback(*t.args)


class FakeTransport:
    def __init__(self, close_error=None):
        self.closed = False
        self.close_error = close_error

    def close(self):
        if self.close_error is not None:
            raise self.close_error
        self.closed = True


class FakeOpener:
    """Stands in for serial_asyncio.create_serial_connection."""

    def __init__(self, fail=None):
        self.fail = fail
        self.calls = []
        self.transport = None
        self.protocol = None

    async def __call__(self, loop, protocol_factory, url, baudrate):
        self.calls.append((url, baudrate))
        if self.fail is not None:
            raise self.fail
        self.transport = FakeTransport()
        self.protocol = protocol_factory()
        return self.transport, self.protocol

    def confirm_open(self):
        """What the real transport does on the next loop iteration."""
        self.protocol.connection_made(self.transport)


class FakeSession:
    def __init__(self, name="viewer", writable=True, broken=False):
        self.name = name
        self.writable = writable
        self.broken = broken
        self.closed = False
        self.messages = []

    def __repr__(self):
        return f"<FakeSession {self.name}>"

    def send(self, text):
        if self.broken:
            raise ViewerSendFailure(f"{self.name}: broken pipe")
        self.messages.append(json.loads(text))

    def close(self):
        self.closed = True


FRAME_LINE = "10 20 30 40 50 60 70 80 90 100 110 120 130 140 150 160"
FRAME_VALUES = [10, 20, 30, 40, 50, 60, 70, 80, 90, 100, 110, 120, 130, 140, 150, 160]


@pytest.fixture
def loop():
    return FakeLoop()


@pytest.fixture
def opener():
    return FakeOpener()
