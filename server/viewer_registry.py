"""
Serial Sensor Bridge - Viewer Registry

Tracks connected viewer sessions and fans out messages to all of them.

Two message shapes go out on the wire:
    {"type":"serial_status","status":"connected","portName":"/dev/ttyUSB0"}
    [10,20,30,...]          (a bare frame, exactly FRAME_WIDTH integers)
"""

import asyncio
import json
import logging
from typing import Callable, Dict, List, Union

from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

logger = logging.getLogger(__name__)

Message = Union[dict, tuple, list]


class ViewerSendFailure(RuntimeError):
    """Raised by a session that cannot accept an outbound message."""


def encode_message(message: Message) -> str:
    if isinstance(message, tuple):
        message = list(message)
    return json.dumps(message, separators=(',', ':'))


class ViewerSession:
    """
    One connected viewer.

    send() never blocks: messages go into a bounded queue that pump() drains
    onto the WebSocket connection, one message at a time, in order. A viewer
    that falls queue_size messages behind is treated as broken.
    """

    def __init__(self, connection, queue_size: int = 256):
        self.connection = connection
        self.remote = getattr(connection, 'remote_address', None)
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._closed = False

    def __repr__(self):
        return f"<ViewerSession {self.remote}>"

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def writable(self) -> bool:
        return not self._closed and self.connection.state is State.OPEN

    def send(self, text: str):
        if self._closed:
            raise ViewerSendFailure(f"session {self.remote} is closed")
        try:
            self._queue.put_nowait(text)
        except asyncio.QueueFull:
            raise ViewerSendFailure(
                f"viewer {self.remote} is {self._queue.maxsize} messages behind") from None

    def close(self):
        """Stop accepting messages and let pump() close the connection."""
        if self._closed:
            return
        self._closed = True
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(None)

    async def pump(self):
        """Writer loop: runs for the lifetime of the connection."""
        try:
            while True:
                text = await self._queue.get()
                if text is None:
                    break
                await self.connection.send(text)
            await self.connection.close()
        except ConnectionClosed as e:
            logger.debug(f"[Viewers] {self!r} went away while sending: {e}")
            self._closed = True


class ViewerRegistry:
    """
    Registered sessions in registration order.

    snapshot_fn returns the current status message; it is sent to each
    session as its first message on register().
    """

    def __init__(self, snapshot_fn: Callable[[], dict]):
        self._snapshot_fn = snapshot_fn
        self._sessions: Dict[object, None] = {}

    def __len__(self):
        return len(self._sessions)

    def __contains__(self, session):
        return session in self._sessions

    @property
    def sessions(self) -> List:
        return list(self._sessions)

    def register(self, session):
        self._sessions[session] = None
        logger.info(f"[Viewers] Viewer connected: {session!r} (total {len(self._sessions)})")
        try:
            session.send(encode_message(self._snapshot_fn()))
        except ViewerSendFailure as e:
            logger.warning(f"[Viewers] Could not send status to new viewer: {e}")
            self._drop(session)

    def unregister(self, session) -> bool:
        """Remove a session. Returns False if it was not registered."""
        if session not in self._sessions:
            return False
        del self._sessions[session]
        logger.info(f"[Viewers] Viewer disconnected: {session!r} (total {len(self._sessions)})")
        return True

    def broadcast(self, message: Message) -> int:
        """Deliver one message to every writable session. Returns the delivery count."""
        text = encode_message(message)
        delivered = 0
        for session in list(self._sessions):
            if not session.writable:
                continue
            try:
                session.send(text)
            except Exception as e:
                logger.warning(f"[Viewers] Send to {session!r} failed: {e}")
                self._drop(session)
                continue
            delivered += 1
        return delivered

    def close_all(self):
        for session in list(self._sessions):
            self._drop(session)

    def _drop(self, session):
        self.unregister(session)
        session.close()
