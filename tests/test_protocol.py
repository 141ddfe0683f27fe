import json

import pytest

from bridge_agent import protocol
from bridge_agent.errors import ProtocolError


def test_decode_command_keeps_request_id_unchanged() -> None:
    msg = protocol.decode_message('{"type":"command","content":"ls","requestId":"r1"}')
    assert isinstance(msg, protocol.CommandRequest)
    assert msg.content == "ls"
    assert msg.request_id == "r1"


def test_decode_accepts_bytes_and_integer_ids() -> None:
    msg = protocol.decode_message(b'{"type":"read","path":"a.txt","requestId":7}')
    assert isinstance(msg, protocol.ReadRequest)
    assert msg.request_id == 7


def test_decode_every_inbound_kind() -> None:
    frames = {
        protocol.AuthRequest: {"type": "auth", "token": "t"},
        protocol.CommandRequest: {"type": "command", "content": "pwd"},
        protocol.ReadRequest: {"type": "read", "path": "x"},
        protocol.WriteRequest: {"type": "write", "filename": "x", "content": ""},
        protocol.OpenRequest: {"type": "open", "target": "https://example.com"},
        protocol.ConfigRequest: {"type": "get_config"},
    }
    assert set(frames) == set(protocol.INBOUND_KINDS)
    for cls, frame in frames.items():
        assert isinstance(protocol.decode_message(json.dumps(frame)), cls)


def test_auth_without_token_decodes_to_none() -> None:
    msg = protocol.decode_message('{"type":"auth"}')
    assert msg.token is None


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        "[1, 2]",
        '{"content": "ls"}',
        '{"type": "launch_missiles"}',
        '{"type": "command"}',
        '{"type": "command", "content": 5}',
        '{"type": "write", "filename": "a"}',
        '{"type": "command", "content": "ls", "requestId": true}',
        '{"type": "command", "content": "ls", "requestId": {"a": 1}}',
        b"\xff\xfe",
    ],
)
def test_decode_rejects_malformed(raw) -> None:
    with pytest.raises(ProtocolError):
        protocol.decode_message(raw)


def test_reply_omits_request_id_when_unsolicited() -> None:
    assert protocol.reply(protocol.CWD, content="/tmp") == {"type": "cwd", "content": "/tmp"}
    tagged = protocol.reply(protocol.EXIT, "r9", code=0)
    assert tagged == {"type": "exit", "code": 0, "requestId": "r9"}


def test_parse_reply_rejects_unknown_types() -> None:
    assert protocol.parse_reply('{"type":"output","content":"x","requestId":"a"}')["content"] == "x"
    with pytest.raises(ProtocolError):
        protocol.parse_reply('{"type":"command","content":"ls"}')


@pytest.mark.parametrize(
    "command, target",
    [
        ("cd /tmp", "/tmp"),
        ("  cd   src  ", "src"),
        ("cd", "~"),
        ("cd ", "~"),
        ("cdrom", None),
        ("echo cd /tmp", None),
        ("ls", None),
    ],
)
def test_cd_target(command, target) -> None:
    assert protocol.cd_target(command) == target


def test_terminal_types_per_operation() -> None:
    assert protocol.terminal_types("command", "ls -la") == {"exit"}
    assert protocol.terminal_types("command", "cd /tmp") == {"cwd", "error"}
    assert protocol.terminal_types("read") == {"file_content", "error"}
    assert protocol.terminal_types("write") == {"system", "error"}
    assert protocol.terminal_types("get_config") == {"config"}
    with pytest.raises(ProtocolError):
        protocol.terminal_types("open")
