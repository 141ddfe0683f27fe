"""Shared helpers for bridge tests."""

import contextlib
import json
import socket

from bridge_agent.agent import HostAgent
from bridge_agent.config import AgentConfig
from bridge_agent.telemetry import TelemetrySnapshot


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def occupy_port() -> socket.socket:
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(("127.0.0.1", 0))
    s.listen(1)
    return s


def fake_telemetry() -> TelemetrySnapshot:
    return TelemetrySnapshot(
        platform="linux", is_admin=False, hostname="testhost", arch="x86_64",
        memory="1.00GB", version="0.1.0", cpu="test-cpu", uptime=42,
    )


class FakeConnection:
    """Stands in for an agent connection: records every sent frame."""

    def __init__(self, working_directory: str):
        self.working_directory = working_directory
        self.sent = []

    async def send(self, msg: dict) -> bool:
        self.sent.append(msg)
        return True

    def types(self):
        return [m["type"] for m in self.sent]


@contextlib.asynccontextmanager
async def running_agent(start_dir, token=None, ports=None):
    config = AgentConfig(
        token=token,
        host="127.0.0.1",
        ports=ports or [free_port()],
        start_dir=str(start_dir),
    )
    agent = HostAgent(config, collect_telemetry=fake_telemetry)
    await agent.bind()
    try:
        yield agent
    finally:
        await agent.close()


async def recv_json(ws) -> dict:
    return json.loads(await ws.recv())
