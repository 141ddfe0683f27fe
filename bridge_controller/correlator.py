"""
Request Correlator
Matches streamed agent replies back to the caller that issued the request.

- Ids are unique among pending requests
- Non-terminal replies are buffered in arrival order
- The first terminal reply resolves the caller exactly once
- Timeouts and connection loss fail the caller instead of leaking it
"""

import asyncio
import itertools
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Optional

from bridge_agent import crypto, protocol
from bridge_agent.errors import RequestTimeout

log = logging.getLogger(__name__)


@dataclass
class BridgeResult:
    """Aggregated outcome of one request."""
    request_id: str
    kind: str
    terminal: Dict[str, Any]
    chunks: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def output(self) -> str:
        """All streamed chunks, stdout and stderr, in arrival order."""
        return "".join(c.get("content", "") for c in self.chunks)

    @property
    def stdout(self) -> str:
        return "".join(c.get("content", "") for c in self.chunks if c["type"] == protocol.OUTPUT)

    @property
    def stderr(self) -> str:
        return "".join(c.get("content", "") for c in self.chunks if c["type"] == protocol.ERROR)

    @property
    def exit_code(self) -> Optional[int]:
        if self.terminal["type"] == protocol.EXIT:
            return self.terminal.get("code")
        return None

    @property
    def content(self):
        return self.terminal.get("content")

    @property
    def ok(self) -> bool:
        if self.terminal["type"] == protocol.EXIT:
            return self.exit_code == 0
        return self.terminal["type"] != protocol.ERROR

    def as_tool_result(self) -> str:
        """Plain text handed to the conversational layer as a tool result."""
        ttype = self.terminal["type"]
        if ttype == protocol.EXIT:
            text = self.output
            if self.exit_code != 0:
                text += f"\n[exit code {self.exit_code}]"
            return text.strip() or f"[exit code {self.exit_code}]"
        if ttype == protocol.CONFIG:
            fields = {k: v for k, v in self.terminal.items() if k not in ("type", "requestId")}
            return json.dumps(fields, sort_keys=True)
        if ttype == protocol.ERROR:
            return f"Error: {self.content}"
        if ttype == protocol.CWD:
            return f"Working directory: {self.content}"
        return self.content or ""


@dataclass
class PendingRequest:
    id: str
    kind: str
    terminal_types: FrozenSet[str]
    future: asyncio.Future
    created_at: float = field(default_factory=time.monotonic)
    chunks: List[Dict[str, Any]] = field(default_factory=list)
    timer: Optional[asyncio.TimerHandle] = None


class RequestCorrelator:
    def __init__(self, prefix: Optional[str] = None):
        self.prefix = prefix or crypto.random_prefix()
        self._counter = itertools.count(1)
        self._pending: Dict[str, PendingRequest] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, request_id) -> bool:
        return request_id in self._pending

    def next_id(self) -> str:
        while True:
            rid = f"{self.prefix}-{next(self._counter)}"
            if rid not in self._pending:
                return rid

    def register(self, request_id: str, kind: str, terminal_types: FrozenSet[str],
                 timeout: Optional[float] = None) -> asyncio.Future:
        """Store a resolver for `request_id`. Must happen before the request is sent."""
        if request_id in self._pending:
            raise ValueError(f"Request id already pending: {request_id}")
        loop = asyncio.get_running_loop()
        entry = PendingRequest(
            id=request_id,
            kind=kind,
            terminal_types=frozenset(terminal_types),
            future=loop.create_future(),
        )
        if timeout is not None:
            entry.timer = loop.call_later(timeout, self._expire, request_id, timeout)
        self._pending[request_id] = entry
        return entry.future

    def feed(self, msg: Dict[str, Any]) -> bool:
        """
        Route one agent message. Returns True if it belonged to a pending request.
        """
        rid = msg.get("requestId")
        entry = self._pending.get(rid) if rid is not None else None
        if entry is None:
            return False

        if msg["type"] not in entry.terminal_types:
            entry.chunks.append(msg)
            return True

        self._finish(rid)
        if not entry.future.done():
            entry.future.set_result(BridgeResult(
                request_id=rid, kind=entry.kind, terminal=msg, chunks=entry.chunks))
        return True

    def cancel(self, request_id: str) -> bool:
        entry = self._finish(request_id)
        if entry is None:
            return False
        entry.future.cancel()
        return True

    def fail_all(self, exc: BaseException) -> int:
        """Fail every open request, e.g. when the link closes."""
        count = 0
        for rid in list(self._pending):
            entry = self._finish(rid)
            if entry is not None and not entry.future.done():
                entry.future.set_exception(exc)
                count += 1
        if count:
            log.warning("Aborted %d pending request(s): %s", count, exc)
        return count

    def _finish(self, request_id: str) -> Optional[PendingRequest]:
        entry = self._pending.pop(request_id, None)
        if entry is not None and entry.timer is not None:
            entry.timer.cancel()
        return entry

    def _expire(self, request_id: str, timeout: float):
        entry = self._finish(request_id)
        if entry is not None and not entry.future.done():
            log.warning("Request %s timed out after %gs", request_id, timeout)
            entry.future.set_exception(RequestTimeout(request_id, timeout))
