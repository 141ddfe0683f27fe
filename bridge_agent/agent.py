#!/usr/bin/env python3
"""
Host Bridge Agent (Listener)
Runs on the trusted host; executes work on behalf of one controller.

Responsibilities:
- Bind the first free port from the candidate list
- Gate every connection behind the shared-token handshake
- Dispatch typed messages to the executor, file and telemetry handlers
- Tag every reply with the originating requestId
- Survive malformed input without affecting other connections
"""

import argparse
import asyncio
import errno
import http
import logging
import sys
from datetime import datetime
from enum import Enum
from typing import Dict, Optional, Set

from websockets.asyncio.server import serve
from websockets.exceptions import ConnectionClosed

# Local modules
from . import __version__, crypto, files, protocol, telemetry
from .config import AgentConfig, setup_logging
from .errors import NoPortAvailable, ProtocolError
from .executor import ProcessExecutor

log = logging.getLogger(__name__)

MAX_MESSAGE_SIZE = 16 * 1024 * 1024
ADDR_IN_USE = {errno.EADDRINUSE, getattr(errno, "WSAEADDRINUSE", errno.EADDRINUSE)}


class ConnectionState(Enum):
    CONNECTING = "connecting"
    UNAUTHENTICATED = "unauthenticated"
    AUTHORIZED = "authorized"
    CLOSED = "closed"


class Connection:
    """One accepted socket. Owns its own working directory."""

    def __init__(self, websocket, working_directory: str):
        self.websocket = websocket
        addr = websocket.remote_address or ("?", 0)
        self.id = f"{addr[0]}:{addr[1]}"
        self.state = ConnectionState.CONNECTING
        self.working_directory = working_directory
        self.connected_at = datetime.now()
        self.executor = ProcessExecutor(self)
        self._tasks: Set[asyncio.Task] = set()
        self._send_lock = asyncio.Lock()

    @property
    def authorized(self) -> bool:
        return self.state is ConnectionState.AUTHORIZED

    async def send(self, msg: dict) -> bool:
        """Send one frame. Returns False once the socket is gone."""
        if self.state is ConnectionState.CLOSED:
            return False
        try:
            async with self._send_lock:
                await self.websocket.send(protocol.encode(msg))
            return True
        except ConnectionClosed:
            return False

    def spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def close(self):
        self.state = ConnectionState.CLOSED
        self.executor.kill_all()
        for task in list(self._tasks):
            task.cancel()


class HostAgent:
    def __init__(self, config: AgentConfig, collect_telemetry=telemetry.collect):
        self.config = config
        self.verifier = crypto.TokenVerifier(config.token)
        self.collect_telemetry = collect_telemetry
        self.connections: Dict[str, Connection] = {}
        self.server = None
        self.port: Optional[int] = None

        self._handlers = {
            protocol.AuthRequest: self._handle_auth,
            protocol.CommandRequest: self._handle_command,
            protocol.ReadRequest: self._handle_read,
            protocol.WriteRequest: self._handle_write,
            protocol.OpenRequest: self._handle_open,
            protocol.ConfigRequest: self._handle_get_config,
        }
        missing = set(protocol.INBOUND_KINDS) - set(self._handlers)
        if missing:
            raise TypeError(f"No handler for: {', '.join(k.kind for k in missing)}")

    # --- Lifecycle ---

    async def bind(self) -> int:
        """Bind the first candidate port that is not already in use."""
        for port in self.config.ports:
            try:
                self.server = await serve(
                    self.handle_connection,
                    self.config.host,
                    port,
                    process_request=self._health_check,
                    max_size=MAX_MESSAGE_SIZE,
                )
            except OSError as e:
                if e.errno in ADDR_IN_USE:
                    log.warning("Port %d in use, trying next", port)
                    continue
                raise
            self.port = port
            log.info("Listening on ws://%s:%d", self.config.host, port)
            return port
        raise NoPortAvailable(self.config.ports)

    async def serve_forever(self):
        if self.server is None:
            await self.bind()
        await self.server.serve_forever()

    async def close(self):
        if self.server is not None:
            self.server.close()
            await self.server.wait_closed()
            self.server = None

    def _health_check(self, connection, request):
        if request.path == "/health":
            return connection.respond(http.HTTPStatus.OK, "OK\n")
        return None

    # --- Connection handling ---

    async def handle_connection(self, websocket):
        conn = Connection(websocket, self.config.start_dir)
        self.connections[conn.id] = conn
        log.info("Bridge request detected from %s", conn.id)

        try:
            if self.verifier.required:
                conn.state = ConnectionState.UNAUTHENTICATED
            else:
                await self._authorize(conn)

            async for raw in websocket:
                try:
                    msg = protocol.decode_message(raw)
                except ProtocolError as e:
                    log.warning("[%s] Dropped frame: %s", conn.id, e)
                    continue

                if isinstance(msg, protocol.AuthRequest):
                    # Handshake steps run inline, never concurrently
                    await self._handle_auth(conn, msg)
                    continue
                if not conn.authorized:
                    log.warning("[%s] Ignored '%s' before auth", conn.id, msg.kind)
                    continue
                conn.spawn(self._dispatch(conn, msg))
        except ConnectionClosed:
            pass
        finally:
            conn.close()
            self.connections.pop(conn.id, None)
            log.info("Connection %s closed (connected at %s)", conn.id,
                     conn.connected_at.strftime("%Y-%m-%d %H:%M:%S"))

    async def _dispatch(self, conn: Connection, msg):
        handler = self._handlers[type(msg)]
        try:
            await handler(conn, msg)
        except asyncio.CancelledError:
            raise
        except Exception:
            log.exception("[%s] Handler fault on '%s'", conn.id, msg.kind)

    async def _authorize(self, conn: Connection, request_id=None):
        conn.state = ConnectionState.AUTHORIZED
        await conn.send(protocol.reply(protocol.AUTH_SUCCESS, request_id))
        await self._push_status(conn, request_id)

    async def _push_status(self, conn: Connection, request_id=None):
        snapshot = await asyncio.to_thread(self.collect_telemetry)
        await conn.send(protocol.reply(protocol.CONFIG, request_id, **snapshot.to_fields()))
        await conn.send(protocol.reply(protocol.CWD, request_id, content=conn.working_directory))

    # --- Message handlers ---

    async def _handle_auth(self, conn: Connection, msg: protocol.AuthRequest):
        if self.verifier.verify(msg.token):
            log.info("[%s] Auth successful", conn.id)
            await self._authorize(conn, msg.request_id)
            return
        log.warning("[%s] Auth rejected", conn.id)
        await conn.send(protocol.reply(protocol.AUTH_FAIL, msg.request_id))
        conn.state = ConnectionState.CLOSED
        await conn.websocket.close(protocol.AUTH_FAIL_CLOSE_CODE, "auth failed")

    async def _handle_command(self, conn: Connection, msg: protocol.CommandRequest):
        await conn.executor.execute(msg.content, msg.request_id)

    async def _handle_read(self, conn: Connection, msg: protocol.ReadRequest):
        await files.read_file(conn, msg.path, msg.request_id)

    async def _handle_write(self, conn: Connection, msg: protocol.WriteRequest):
        await files.write_file(conn, msg.filename, msg.content, msg.request_id)

    async def _handle_open(self, conn: Connection, msg: protocol.OpenRequest):
        await files.open_target(conn, msg.target)

    async def _handle_get_config(self, conn: Connection, msg: protocol.ConfigRequest):
        await self._push_status(conn, msg.request_id)


def main():
    parser = argparse.ArgumentParser(description="Host Bridge Agent")
    parser.add_argument("--host", "-H", default=None,
                        help="Address to bind (default: 127.0.0.1)")
    parser.add_argument("--ports", "-p", default=None,
                        help="Comma-separated candidate ports (default: 8080,8081,8082,8083)")
    parser.add_argument("--token", "-k", default=None,
                        help="Shared token (default: $BRIDGE_TOKEN, none = open handshake)")
    parser.add_argument("--start-dir", "-d", default=None,
                        help="Initial working directory for new connections (default: home)")
    parser.add_argument("--generate-token", action="store_true",
                        help="Print a fresh random token and exit")
    parser.add_argument("--log-file", default=None, help="Also log to this file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")

    args = parser.parse_args()

    if args.generate_token:
        print(crypto.generate_token())
        return

    try:
        config = AgentConfig.from_args(args)
    except ValueError as e:
        print(f"[!] Invalid configuration: {e}", file=sys.stderr)
        sys.exit(2)

    setup_logging(verbose=args.verbose, log_file=args.log_file)
    agent = HostAgent(config)

    async def run():
        await agent.bind()
        print(f"[i] Host Bridge Agent v{__version__}")
        print(f"[+] LINK: ws://{config.host}:{agent.port}")
        print(f"[i] AUTH: {'ACTIVE' if config.token else 'OPEN'}")
        print(f"[i] CWD:  {config.start_dir}\n")
        await agent.serve_forever()

    try:
        asyncio.run(run())
    except NoPortAvailable as e:
        log.critical("%s", e)
        sys.exit(1)
    except KeyboardInterrupt:
        print("\n[i] Shutting down agent...")


if __name__ == "__main__":
    main()
