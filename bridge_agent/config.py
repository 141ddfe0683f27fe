"""
Configuration and logging setup shared by both CLIs.

Values come from command-line flags first, then BRIDGE_* environment
variables, then defaults.
"""

import logging
import os
from dataclasses import dataclass, field
from logging.handlers import RotatingFileHandler
from typing import List, Optional

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORTS = (8080, 8081, 8082, 8083)

ENV_TOKEN = "BRIDGE_TOKEN"
ENV_HOST = "BRIDGE_HOST"
ENV_PORTS = "BRIDGE_PORTS"
ENV_START_DIR = "BRIDGE_START_DIR"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def parse_ports(text: str) -> List[int]:
    """Parse "8080,8081" into an ordered port list."""
    ports = []
    for part in text.split(","):
        part = part.strip()
        if not part:
            continue
        port = int(part)
        if not 0 < port < 65536:
            raise ValueError(f"Port out of range: {port}")
        ports.append(port)
    if not ports:
        raise ValueError("At least one port is required")
    return ports


def _env_ports() -> List[int]:
    raw = os.environ.get(ENV_PORTS)
    return parse_ports(raw) if raw else list(DEFAULT_PORTS)


@dataclass
class AgentConfig:
    token: Optional[str] = None
    host: str = DEFAULT_HOST
    ports: List[int] = field(default_factory=lambda: list(DEFAULT_PORTS))
    start_dir: str = field(default_factory=lambda: os.path.expanduser("~"))

    @classmethod
    def from_args(cls, args) -> "AgentConfig":
        ports = parse_ports(args.ports) if args.ports else _env_ports()
        start_dir = args.start_dir or os.environ.get(ENV_START_DIR) or os.path.expanduser("~")
        start_dir = os.path.abspath(os.path.expanduser(start_dir))
        if not os.path.isdir(start_dir):
            raise ValueError(f"Start directory does not exist: {start_dir}")
        return cls(
            token=args.token or os.environ.get(ENV_TOKEN) or None,
            host=args.host or os.environ.get(ENV_HOST) or DEFAULT_HOST,
            ports=ports,
            start_dir=start_dir,
        )


def setup_logging(verbose: bool = False, log_file: Optional[str] = None) -> logging.Logger:
    formatter = logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    root.addHandler(console_handler)

    if log_file:
        # 10MB, keep 5
        file_handler = RotatingFileHandler(log_file, maxBytes=10 * 1024 * 1024, backupCount=5)
        file_handler.setFormatter(formatter)
        file_handler.setLevel(logging.DEBUG)
        root.addHandler(file_handler)

    return logging.getLogger("bridge")
