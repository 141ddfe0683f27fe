"""Host side of the command bridge: listener, executor, file and telemetry handlers."""

__version__ = "0.1.0"
