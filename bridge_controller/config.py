"""Controller-side configuration."""

import os
from dataclasses import dataclass, field
from typing import List, Optional

from bridge_agent.config import DEFAULT_HOST, DEFAULT_PORTS, ENV_HOST, ENV_PORTS, ENV_TOKEN, parse_ports

DEFAULT_REQUEST_TIMEOUT = 120.0


@dataclass
class ControllerConfig:
    host: str = DEFAULT_HOST
    ports: List[int] = field(default_factory=lambda: list(DEFAULT_PORTS))
    token: Optional[str] = None
    # None disables the per-request deadline
    request_timeout: Optional[float] = DEFAULT_REQUEST_TIMEOUT
    connect_timeout: float = 10.0
    backoff_base: float = 1.0
    backoff_max: float = 30.0
    max_retries: Optional[int] = None

    @classmethod
    def from_args(cls, args) -> "ControllerConfig":
        ports = args.ports or os.environ.get(ENV_PORTS)
        timeout = args.request_timeout
        return cls(
            host=args.host or os.environ.get(ENV_HOST) or DEFAULT_HOST,
            ports=parse_ports(ports) if ports else list(DEFAULT_PORTS),
            token=args.token or os.environ.get(ENV_TOKEN) or None,
            request_timeout=timeout if timeout and timeout > 0 else None,
            backoff_base=args.backoff_base,
            backoff_max=args.backoff_max,
            max_retries=args.max_retries,
        )
