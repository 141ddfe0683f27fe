"""
Bridge Protocol Definitions (Shared)
Message schemas for controller-agent communication.

All messages are UTF-8 JSON objects, one per WebSocket text frame, with a
"type" field. Replies to a request echo its "requestId" unchanged; unsolicited
pushes carry none.

Inbound messages are decoded into one frozen dataclass per kind, so the agent
dispatches on classes rather than on raw strings.
"""

# Example messages:

# Controller → Agent (Auth)
# {"type": "auth", "token": "4f0c..."}

# Controller → Agent (Command)
# {"type": "command", "content": "ls -la", "requestId": "a1b2c3d4-7"}

# Agent → Controller (stdout chunk / stderr chunk / terminal exit)
# {"type": "output", "content": "total 8\n", "requestId": "a1b2c3d4-7"}
# {"type": "error", "content": "ls: x: No such file\n", "requestId": "a1b2c3d4-7"}
# {"type": "exit", "code": 0, "requestId": "a1b2c3d4-7"}

# Agent → Controller (unsolicited working directory push)
# {"type": "cwd", "content": "/home/student"}

import json
from dataclasses import dataclass
from typing import Any, ClassVar, Dict, FrozenSet, Optional, Tuple, Type, Union

from .errors import ProtocolError

# Controller → Agent
AUTH = "auth"
COMMAND = "command"
READ = "read"
WRITE = "write"
OPEN = "open"
GET_CONFIG = "get_config"

# Agent → Controller
AUTH_SUCCESS = "auth_success"
AUTH_FAIL = "auth_fail"
CONFIG = "config"
CWD = "cwd"
OUTPUT = "output"
ERROR = "error"
EXIT = "exit"
FILE_CONTENT = "file_content"
SYSTEM = "system"

OUTBOUND_TYPES = frozenset({
    AUTH_SUCCESS, AUTH_FAIL, CONFIG, CWD, OUTPUT, ERROR, EXIT, FILE_CONTENT, SYSTEM,
})

# Close code sent by the agent after a rejected handshake
AUTH_FAIL_CLOSE_CODE = 4001

RequestId = Union[str, int]


@dataclass(frozen=True)
class AuthRequest:
    kind: ClassVar[str] = AUTH
    token: Optional[str]
    request_id: Optional[RequestId] = None


@dataclass(frozen=True)
class CommandRequest:
    kind: ClassVar[str] = COMMAND
    content: str
    request_id: Optional[RequestId] = None


@dataclass(frozen=True)
class ReadRequest:
    kind: ClassVar[str] = READ
    path: str
    request_id: Optional[RequestId] = None


@dataclass(frozen=True)
class WriteRequest:
    kind: ClassVar[str] = WRITE
    filename: str
    content: str
    request_id: Optional[RequestId] = None


@dataclass(frozen=True)
class OpenRequest:
    kind: ClassVar[str] = OPEN
    target: str
    request_id: Optional[RequestId] = None


@dataclass(frozen=True)
class ConfigRequest:
    kind: ClassVar[str] = GET_CONFIG
    request_id: Optional[RequestId] = None


InboundMessage = Union[
    AuthRequest, CommandRequest, ReadRequest, WriteRequest, OpenRequest, ConfigRequest,
]

INBOUND_KINDS: Tuple[Type, ...] = (
    AuthRequest, CommandRequest, ReadRequest, WriteRequest, OpenRequest, ConfigRequest,
)


def _request_id(msg: Dict[str, Any]) -> Optional[RequestId]:
    rid = msg.get("requestId")
    if rid is None:
        return None
    # bool is an int subclass but never a valid id
    if isinstance(rid, bool) or not isinstance(rid, (str, int)):
        raise ProtocolError(f"Invalid requestId: {rid!r}")
    return rid


def _text(msg: Dict[str, Any], name: str, required: bool = True) -> Optional[str]:
    value = msg.get(name)
    if value is None:
        if required:
            raise ProtocolError(f"'{msg.get('type')}' message missing '{name}'")
        return None
    if not isinstance(value, str):
        raise ProtocolError(f"'{name}' must be a string")
    return value


def _load_object(raw: Union[str, bytes]) -> Dict[str, Any]:
    try:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        msg = json.loads(raw)
    except (UnicodeDecodeError, ValueError) as e:
        raise ProtocolError(f"Invalid JSON: {e}") from e
    if not isinstance(msg, dict):
        raise ProtocolError("Message must be a JSON object")
    if not isinstance(msg.get("type"), str):
        raise ProtocolError("Message has no 'type'")
    return msg


def decode_message(raw: Union[str, bytes]) -> InboundMessage:
    """
    Decode one controller frame into its typed message.

    Raises ProtocolError for anything the agent cannot act on.
    """
    msg = _load_object(raw)
    msg_type = msg["type"]
    rid = _request_id(msg)

    if msg_type == AUTH:
        return AuthRequest(token=_text(msg, "token", required=False), request_id=rid)
    if msg_type == COMMAND:
        return CommandRequest(content=_text(msg, "content"), request_id=rid)
    if msg_type == READ:
        return ReadRequest(path=_text(msg, "path"), request_id=rid)
    if msg_type == WRITE:
        return WriteRequest(
            filename=_text(msg, "filename"),
            content=_text(msg, "content"),
            request_id=rid,
        )
    if msg_type == OPEN:
        return OpenRequest(target=_text(msg, "target"), request_id=rid)
    if msg_type == GET_CONFIG:
        return ConfigRequest(request_id=rid)
    raise ProtocolError(f"Unknown message type: {msg_type}")


def parse_reply(raw: Union[str, bytes]) -> Dict[str, Any]:
    """Decode one agent frame. Unknown types are rejected."""
    msg = _load_object(raw)
    if msg["type"] not in OUTBOUND_TYPES:
        raise ProtocolError(f"Unknown message type: {msg['type']}")
    _request_id(msg)
    return msg


def reply(msg_type: str, request_id: Optional[RequestId] = None, **fields) -> Dict[str, Any]:
    """Build an agent message, tagging it only when it answers a request."""
    msg = {"type": msg_type}
    msg.update(fields)
    if request_id is not None:
        msg["requestId"] = request_id
    return msg


def encode(msg: Dict[str, Any]) -> str:
    return json.dumps(msg, separators=(',', ':'))


def cd_target(command: str) -> Optional[str]:
    """
    Return the directory argument when `command` is the builtin cd.

    A bare "cd" means the home directory. Anything else returns None.
    """
    text = command.strip()
    if text == "cd":
        return "~"
    if text.startswith("cd ") or text.startswith("cd\t"):
        return text[3:].strip() or "~"
    return None


def terminal_types(msg_type: str, content: Optional[str] = None) -> FrozenSet[str]:
    """Reply types that end a request of the given kind."""
    if msg_type == COMMAND:
        if content is not None and cd_target(content) is not None:
            return frozenset({CWD, ERROR})
        return frozenset({EXIT})
    if msg_type == READ:
        return frozenset({FILE_CONTENT, ERROR})
    if msg_type == WRITE:
        return frozenset({SYSTEM, ERROR})
    if msg_type == GET_CONFIG:
        return frozenset({CONFIG})
    raise ProtocolError(f"'{msg_type}' requests get no reply")
