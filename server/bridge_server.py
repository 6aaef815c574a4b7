"""
Serial Sensor Bridge - Server
Reads sensor frames from a serial device via SerialLink and pushes them,
together with link status, to every connected WebSocket viewer.

Viewers connect to ws://<host>:<ws-port>/ and receive:
    {"type":"serial_status","status":"connected","portName":"/dev/ttyUSB0"}   (first, then on change)
    [10,20,30,...,160]                                                         (one per frame)

A read-only HTTP status page is served on --http-port (0 disables it).

Usage:
    python bridge_server.py --port /dev/ttyUSB0
    python bridge_server.py --port COM3 --baud 115200 --ws-port 8080
    python bridge_server.py --list-ports
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
import threading
from dataclasses import dataclass
from typing import Callable, Optional

import serial.tools.list_ports
from flask import Flask, jsonify
from websockets.asyncio.server import serve
from websockets.exceptions import ConnectionClosed
from werkzeug.serving import make_server

from frame_decoder import FRAME_WIDTH, MAX_VALUE
from serial_link import SerialLink
from status_tracker import StatusTracker
from viewer_registry import ViewerRegistry, ViewerSession

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BridgeConfig:
    serial_port: str = '/dev/ttyUSB0'
    baud: int = 115200
    host: str = '0.0.0.0'
    ws_port: int = 8080
    http_port: int = 8081
    reconnect_delay: float = 5.0      # seconds
    frame_width: int = FRAME_WIDTH
    max_value: int = MAX_VALUE
    viewer_queue_size: int = 256


# ---------------------------------------------------------------------------
# HTTP status app
# ---------------------------------------------------------------------------

def create_app(bridge: 'Bridge') -> Flask:
    app = Flask(__name__)

    @app.route('/api/status')
    def api_status():
        """Link status, viewer count and frame counters."""
        return jsonify(bridge.status())

    @app.route('/health')
    def health():
        return jsonify({'ok': True})

    return app


# ---------------------------------------------------------------------------
# Bridge
# ---------------------------------------------------------------------------

class Bridge:
    """
    Wires SerialLink -> StatusTracker -> ViewerRegistry and owns the
    WebSocket endpoint lifecycle.

    Usage:
        bridge = Bridge(BridgeConfig(serial_port='/dev/ttyUSB0'))
        exit_code = asyncio.run(bridge.run())
    """

    def __init__(self, config: BridgeConfig, opener: Optional[Callable] = None, loop=None):
        self.config = config
        self.tracker = StatusTracker(config.serial_port)
        self.registry = ViewerRegistry(self.tracker.status_message)
        self.link = SerialLink(
            config.serial_port,
            baud=config.baud,
            reconnect_delay=config.reconnect_delay,
            loop=loop,
            opener=opener,
            width=config.frame_width,
            max_value=config.max_value,
        )

        self.link.on_state(self.tracker.update)
        self.link.on_frame(self.registry.broadcast)
        self.tracker.on_change(self.registry.broadcast)

        self.server = None
        self._stop_event: Optional[asyncio.Event] = None
        self._http = None
        self._http_thread: Optional[threading.Thread] = None

    def status(self) -> dict:
        """Snapshot for the HTTP status endpoint. Safe to call from any thread."""
        out = self.tracker.status_message()
        out['state'] = self.tracker.snapshot.state.value
        out['viewers'] = len(self.registry)
        out['stats'] = self.link.stats.to_dict()
        return out

    async def handle_viewer(self, connection):
        """One WebSocket connection, from accept to close."""
        session = ViewerSession(connection, self.config.viewer_queue_size)
        writer = asyncio.create_task(session.pump())
        self.registry.register(session)
        try:
            # Inbound messages are reserved; log and ignore
            async for message in connection:
                logger.debug(f"[Server] Received viewer message: {message!r}")
        except ConnectionClosed as e:
            logger.debug(f"[Server] Viewer {session.remote} closed with error: {e}")
        finally:
            self.registry.unregister(session)
            session.close()
            await writer

    def request_stop(self):
        if self._stop_event is not None:
            self._stop_event.set()

    async def run(self) -> int:
        """Serve until SIGINT/SIGTERM. Returns the process exit status."""
        loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()

        try:
            server = await serve(self.handle_viewer, self.config.host, self.config.ws_port)
        except OSError as e:
            logger.error(f"[Server] Cannot listen on {self.config.host}:{self.config.ws_port}: {e}")
            return 1
        self.server = server
        logger.info(f"[Server] WebSocket server started on port {self.config.ws_port}")

        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except NotImplementedError:
                # Windows event loops have no add_signal_handler
                signal.signal(sig, lambda *_: loop.call_soon_threadsafe(self.request_stop))

        self._start_http()

        # Only start reading once viewers can register
        self.link.start()

        await self._stop_event.wait()
        await self.shutdown(server)
        return 0

    async def shutdown(self, server):
        logger.info('[Server] Shutting down...')
        self.link.cancel_reconnect()
        self.registry.close_all()
        self.link.stop()

        server.close()
        await server.wait_closed()
        logger.info('[Server] WebSocket server closed')

        if self._http is not None:
            await asyncio.get_running_loop().run_in_executor(None, self._http.shutdown)
            self._http = None
            logger.info('[Server] HTTP server closed')

    def _start_http(self):
        if not self.config.http_port:
            return
        try:
            self._http = make_server(self.config.host, self.config.http_port,
                                     create_app(self), threaded=True)
        except (OSError, SystemExit) as e:
            # werkzeug exits instead of raising when the port is taken
            logger.warning(f"[Server] HTTP status page disabled, cannot bind port {self.config.http_port}: {e!r}")
            return
        self._http_thread = threading.Thread(target=self._http.serve_forever,
                                             daemon=True, name="StatusHTTP")
        self._http_thread.start()
        logger.info(f"[Server] Status page at http://localhost:{self.config.http_port}/api/status")


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description='Serial sensor to WebSocket bridge')
    parser.add_argument('--port', default=os.environ.get('SERIAL_PORT', '/dev/ttyUSB0'),
                        help='Sensor serial port (or set SERIAL_PORT env var, default: /dev/ttyUSB0)')
    parser.add_argument('--baud', type=int, default=int(os.environ.get('SERIAL_BAUD', 115200)),
                        help='Serial baud rate (or set SERIAL_BAUD env var, default: 115200)')
    parser.add_argument('--host', default=os.environ.get('BRIDGE_HOST', '0.0.0.0'),
                        help='Listen address (or set BRIDGE_HOST env var, default: 0.0.0.0)')
    parser.add_argument('--ws-port', type=int, default=int(os.environ.get('BRIDGE_WS_PORT', 8080)),
                        help='WebSocket port (or set BRIDGE_WS_PORT env var, default: 8080)')
    parser.add_argument('--http-port', type=int, default=int(os.environ.get('BRIDGE_HTTP_PORT', 8081)),
                        help='HTTP status port, 0 to disable (or set BRIDGE_HTTP_PORT env var, default: 8081)')
    parser.add_argument('--reconnect-ms', type=int, default=int(os.environ.get('RECONNECT_MS', 5000)),
                        help='Delay between reconnect attempts in ms (or set RECONNECT_MS env var, default: 5000)')
    parser.add_argument('--debug', action='store_true', default=bool(os.environ.get('BRIDGE_DEBUG')),
                        help='Verbose logging, including every raw serial line')
    parser.add_argument('--list-ports', action='store_true',
                        help='List available serial ports and exit')
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format='%(asctime)s %(levelname)s %(name)s %(message)s',
        datefmt='%H:%M:%S',
    )
    if not args.debug:
        logging.getLogger('websockets').setLevel(logging.WARNING)
        logging.getLogger('werkzeug').setLevel(logging.WARNING)

    if args.list_ports:
        for p in serial.tools.list_ports.comports():
            print(f"{p.device}  {p.description}")
        return 0

    config = BridgeConfig(
        serial_port=args.port,
        baud=args.baud,
        host=args.host,
        ws_port=args.ws_port,
        http_port=args.http_port,
        reconnect_delay=args.reconnect_ms / 1000.0,
    )
    logger.info(f"[Server] Bridging {config.serial_port} @ {config.baud} baud to ws://{config.host}:{config.ws_port}/")

    try:
        return asyncio.run(Bridge(config).run())
    except KeyboardInterrupt:
        return 0


if __name__ == '__main__':
    sys.exit(main())
