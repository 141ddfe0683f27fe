"""
Connection Manager
Owns the controller's single link to a host agent.

State machine:
    DISCONNECTED -> CONNECTING(port_i) -> AUTHORIZING -> AUTHORIZED
                                       -> CONNECTING(port_i+1) ... -> BACKOFF -> CONNECTING(port_0)
    AUTHORIZED --close--> DISCONNECTED -> CONNECTING(port_0)
    auth_fail / retries exhausted / stop() -> CLOSED

Ports are tried one at a time. At most one retry timer exists at once.
"""

import asyncio
import logging
from enum import Enum
from typing import Callable, List, Optional, Sequence

from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from bridge_agent import protocol
from bridge_agent.errors import (
    AuthenticationError, BridgeUnavailable, ConnectionLost, ProtocolError,
)

from .correlator import RequestCorrelator

log = logging.getLogger(__name__)

MAX_MESSAGE_SIZE = 16 * 1024 * 1024


class LinkState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHORIZING = "authorizing"
    AUTHORIZED = "authorized"
    BACKOFF = "backoff"
    CLOSED = "closed"


class ConnectionManager:
    def __init__(self, host: str, ports: Sequence[int], token: Optional[str] = None,
                 correlator: Optional[RequestCorrelator] = None,
                 backoff_base: float = 1.0, backoff_max: float = 30.0,
                 max_retries: Optional[int] = None,
                 connect_timeout: float = 5.0, handshake_timeout: float = 10.0):
        if not ports:
            raise ValueError("At least one candidate port is required")
        self.host = host
        self.ports = list(ports)
        self.token = token
        self.correlator = correlator or RequestCorrelator()
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.max_retries = max_retries
        self.connect_timeout = connect_timeout
        self.handshake_timeout = handshake_timeout

        self.state = LinkState.DISCONNECTED
        self.port: Optional[int] = None
        self.websocket = None
        self.last_error: Optional[BaseException] = None

        self._attempt = 0
        self._timer: Optional[asyncio.TimerHandle] = None
        self._task: Optional[asyncio.Task] = None
        self._changed = asyncio.Event()
        self._listeners: List[Callable[[dict], None]] = []
        self._state_listeners: List[Callable[[LinkState], None]] = []

    # --- Listeners ---

    def add_listener(self, callback: Callable[[dict], None]):
        """Called with every message the agent sends, after correlation."""
        self._listeners.append(callback)

    def add_state_listener(self, callback: Callable[[LinkState], None]):
        self._state_listeners.append(callback)

    def _notify(self, msg: dict):
        for callback in self._listeners:
            try:
                callback(msg)
            except Exception:
                log.exception("Message listener failed")

    def _set_state(self, state: LinkState):
        if state is self.state:
            return
        log.debug("Link %s -> %s", self.state.value, state.value)
        self.state = state
        changed, self._changed = self._changed, asyncio.Event()
        changed.set()
        for callback in self._state_listeners:
            try:
                callback(state)
            except Exception:
                log.exception("State listener failed")

    # --- Lifecycle ---

    def start(self):
        """Begin discovery. No-op while a cycle or retry is already live."""
        if self.state is LinkState.CLOSED:
            self.last_error = None
            self._attempt = 0
            self._set_state(LinkState.DISCONNECTED)
        if self._task is not None and not self._task.done():
            return
        if self._timer is not None:
            return
        self._schedule(0)

    async def stop(self):
        self._cancel_timer()
        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        ws, self.websocket = self.websocket, None
        if ws is not None:
            await ws.close()
        self.correlator.fail_all(ConnectionLost("Controller stopped"))
        self._set_state(LinkState.CLOSED)

    async def wait_authorized(self, timeout: Optional[float] = None):
        """Block until the link is authorized; raise BridgeUnavailable otherwise."""
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while self.state is not LinkState.AUTHORIZED:
            if self.state is LinkState.CLOSED:
                raise BridgeUnavailable(f"Bridge unavailable: {self.last_error}") from self.last_error
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                raise BridgeUnavailable(f"Bridge not authorized within {timeout:g}s")
            try:
                await asyncio.wait_for(self._changed.wait(), remaining)
            except asyncio.TimeoutError:
                raise BridgeUnavailable(f"Bridge not authorized within {timeout:g}s") from None

    async def send(self, msg: dict):
        ws = self.websocket
        if self.state is not LinkState.AUTHORIZED or ws is None:
            raise BridgeUnavailable(f"Bridge is {self.state.value}")
        try:
            await ws.send(protocol.encode(msg))
        except ConnectionClosed as e:
            raise ConnectionLost(f"Link closed while sending: {e}") from e

    # --- Timer ---

    def _cancel_timer(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _schedule(self, delay: float):
        self._cancel_timer()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(delay, self._start_cycle)

    def _start_cycle(self):
        self._timer = None
        self._task = asyncio.get_running_loop().create_task(self._run_cycle())

    def backoff_delay(self, attempt: int) -> float:
        return min(self.backoff_base * (2 ** attempt), self.backoff_max)

    # --- Discovery cycle ---

    async def _run_cycle(self):
        index = 0
        while index < len(self.ports):
            port = self.ports[index]
            index += 1
            self._set_state(LinkState.CONNECTING)
            uri = f"ws://{self.host}:{port}"
            try:
                ws = await connect(uri, open_timeout=self.connect_timeout, max_size=MAX_MESSAGE_SIZE)
            except (OSError, asyncio.TimeoutError, InvalidHandshake, InvalidURI) as e:
                log.debug("Connect to %s failed: %s", uri, e)
                continue

            # Any successful open resets the backoff
            self._attempt = 0
            self._cancel_timer()

            try:
                await self._handshake(ws)
            except AuthenticationError as e:
                log.error("Agent on %s rejected the token", uri)
                self.last_error = e
                await ws.close()
                self._set_state(LinkState.CLOSED)
                return
            except (ConnectionClosed, asyncio.TimeoutError) as e:
                log.warning("Handshake with %s failed: %s", uri, e or "timed out")
                await ws.close()
                continue

            self.websocket = ws
            self.port = port
            log.info("Bridge authorized on %s", uri)
            self._set_state(LinkState.AUTHORIZED)

            await self._read_loop(ws)

            self.websocket = None
            self.correlator.fail_all(ConnectionLost(f"Link to {uri} closed"))
            log.warning("Bridge link to %s closed", uri)
            self._set_state(LinkState.DISCONNECTED)
            self._schedule(0)
            return

        self._enter_backoff()

    def _enter_backoff(self):
        if self.max_retries is not None and self._attempt >= self.max_retries:
            ports = ", ".join(map(str, self.ports))
            self.last_error = BridgeUnavailable(f"No agent reachable on {self.host} ports {ports}")
            log.error("%s after %d retries", self.last_error, self._attempt)
            self._set_state(LinkState.CLOSED)
            return
        delay = self.backoff_delay(self._attempt)
        self._attempt += 1
        log.info("No agent found, retrying in %gs", delay)
        self._set_state(LinkState.BACKOFF)
        self._schedule(delay)

    async def _handshake(self, ws):
        self._set_state(LinkState.AUTHORIZING)
        if self.token:
            await ws.send(protocol.encode({"type": protocol.AUTH, "token": self.token}))
        await asyncio.wait_for(self._await_verdict(ws), self.handshake_timeout)

    async def _await_verdict(self, ws):
        while True:
            try:
                msg = protocol.parse_reply(await ws.recv())
            except ProtocolError as e:
                log.warning("Dropped frame during handshake: %s", e)
                continue
            if msg["type"] == protocol.AUTH_SUCCESS:
                return
            if msg["type"] == protocol.AUTH_FAIL:
                raise AuthenticationError("Shared token rejected by agent")
            self._notify(msg)

    async def _read_loop(self, ws):
        try:
            async for raw in ws:
                try:
                    msg = protocol.parse_reply(raw)
                except ProtocolError as e:
                    log.warning("Dropped frame: %s", e)
                    continue
                self.correlator.feed(msg)
                self._notify(msg)
        except ConnectionClosed:
            pass
