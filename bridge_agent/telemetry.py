"""
Telemetry Collector
Point-in-time host facts sent to the controller as a `config` message.
Collected fresh on every request, never cached.
"""

import ctypes
import os
import platform
import socket
import sys
import time
from dataclasses import dataclass
from typing import Any, Dict

import psutil

from . import __version__


@dataclass(frozen=True)
class TelemetrySnapshot:
    platform: str
    is_admin: bool
    hostname: str
    arch: str
    memory: str
    version: str
    cpu: str
    uptime: int

    def to_fields(self) -> Dict[str, Any]:
        """Wire field names for the `config` message."""
        return {
            "platform": self.platform,
            "isAdmin": self.is_admin,
            "hostname": self.hostname,
            "arch": self.arch,
            "memory": self.memory,
            "version": self.version,
            "cpu": self.cpu,
            "uptime": self.uptime,
        }


def is_admin() -> bool:
    if sys.platform == "win32":
        try:
            return bool(ctypes.windll.shell32.IsUserAnAdmin())
        except (AttributeError, OSError):
            return False
    return os.geteuid() == 0


def _format_memory(total: int) -> str:
    return f"{total / 1024 / 1024 / 1024:.2f}GB"


def collect() -> TelemetrySnapshot:
    return TelemetrySnapshot(
        platform=sys.platform,
        is_admin=is_admin(),
        hostname=socket.gethostname(),
        arch=platform.machine(),
        memory=_format_memory(psutil.virtual_memory().total),
        version=__version__,
        cpu=platform.processor() or platform.machine(),
        uptime=int(time.time() - psutil.boot_time()),
    )
