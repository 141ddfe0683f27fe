import asyncio
from pathlib import Path

import pytest

from bridge_agent.errors import BridgeUnavailable
from bridge_controller.connection import ConnectionManager, LinkState

from support import free_port, running_agent


def test_backoff_delay_doubles_up_to_ceiling() -> None:
    link = ConnectionManager("127.0.0.1", [1], backoff_base=1.0, backoff_max=30.0)
    assert [link.backoff_delay(n) for n in range(7)] == [1, 2, 4, 8, 16, 30, 30]


def test_requires_candidate_ports() -> None:
    with pytest.raises(ValueError):
        ConnectionManager("127.0.0.1", [])


def test_exhausted_candidates_back_off_then_give_up() -> None:
    ports = [free_port(), free_port()]

    async def scenario():
        states = []
        link = ConnectionManager("127.0.0.1", ports, backoff_base=0.01, backoff_max=0.02, max_retries=2)
        link.add_state_listener(states.append)
        link.start()
        with pytest.raises(BridgeUnavailable):
            await link.wait_authorized(5)
        return states, link

    states, link = asyncio.run(scenario())
    assert states == [
        LinkState.CONNECTING, LinkState.BACKOFF,
        LinkState.CONNECTING, LinkState.BACKOFF,
        LinkState.CONNECTING, LinkState.CLOSED,
    ]
    assert isinstance(link.last_error, BridgeUnavailable)


def test_send_while_not_authorized_is_unavailable() -> None:
    async def scenario():
        link = ConnectionManager("127.0.0.1", [free_port()])
        with pytest.raises(BridgeUnavailable):
            await link.send({"type": "get_config"})

    asyncio.run(scenario())


def test_wait_authorized_times_out() -> None:
    async def scenario():
        link = ConnectionManager("127.0.0.1", [free_port()], backoff_base=10)
        link.start()
        try:
            with pytest.raises(BridgeUnavailable):
                await link.wait_authorized(0.2)
            return link.state
        finally:
            await link.stop()

    assert asyncio.run(scenario()) is LinkState.BACKOFF


def test_finds_agent_on_later_candidate_port(tmp_path: Path) -> None:
    dead = free_port()

    async def scenario():
        async with running_agent(tmp_path) as agent:
            messages = []
            link = ConnectionManager("127.0.0.1", [dead, agent.port])
            link.add_listener(messages.append)
            link.start()
            link.start()
            await link.wait_authorized(5)
            port = link.port
            for _ in range(100):
                if len(messages) >= 2:
                    break
                await asyncio.sleep(0.01)
            await link.stop()
            return port, agent.port, messages

    port, expected, messages = asyncio.run(scenario())
    assert port == expected
    assert [m["type"] for m in messages[:2]] == ["config", "cwd"]


def test_agent_started_late_is_found_after_backoff(tmp_path: Path) -> None:
    port = free_port()

    async def scenario():
        link = ConnectionManager("127.0.0.1", [port], backoff_base=0.05, backoff_max=0.05)
        link.start()
        await asyncio.sleep(0.15)
        assert link.state in (LinkState.BACKOFF, LinkState.CONNECTING)
        async with running_agent(tmp_path, ports=[port]):
            await link.wait_authorized(5)
            state = link.state
            await link.stop()
        return state

    assert asyncio.run(scenario()) is LinkState.AUTHORIZED
