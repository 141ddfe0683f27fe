"""Client side of the command bridge: connection manager and request correlator."""

__version__ = "0.1.0"
