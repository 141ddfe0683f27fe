"""
Bridge Error Taxonomy
Shared by the host agent and the controller.

- Transport faults are absorbed by the controller's reconnect loop.
- Execution faults never raise: they travel as error/exit messages.
"""


class BridgeError(Exception):
    """Base class for every bridge failure."""


class ProtocolError(BridgeError):
    """Malformed frame, bad field, or unknown message type."""


class AuthenticationError(BridgeError):
    """Shared token was rejected. Fatal to the current socket."""


class NoPortAvailable(BridgeError):
    """Every candidate port is already in use."""

    def __init__(self, ports):
        self.ports = list(ports)
        super().__init__(f"No ports available (tried {', '.join(map(str, self.ports))})")


class BridgeUnavailable(BridgeError):
    """The controller has no authorized link to a host agent."""


class ConnectionLost(BridgeError):
    """The link closed while a request was still pending."""


class RequestTimeout(BridgeError):
    """A pending request outlived its deadline."""

    def __init__(self, request_id: str, timeout: float):
        self.request_id = request_id
        self.timeout = timeout
        super().__init__(f"Request {request_id} timed out after {timeout:g}s")
