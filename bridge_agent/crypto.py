"""
Bridge Crypto Module
Shared-token handling for the host agent handshake.

HMAC-SHA256 ensures:
- The configured token is never held in clear after startup
- Presented tokens are checked with a constant-time verify
- Digests are keyed per process, so they mean nothing outside it

Note: the token travels in clear over the loopback link; this guards the agent's
memory, not the wire.
"""

from typing import Optional

from Crypto.Hash import HMAC, SHA256
from Crypto.Random import get_random_bytes

TOKEN_BYTES = 32


def generate_token() -> str:
    """Random shared token, 64 hex chars."""
    return get_random_bytes(TOKEN_BYTES).hex()


def random_prefix(nbytes: int = 4) -> str:
    return get_random_bytes(nbytes).hex()


class TokenVerifier:
    """Holds a keyed digest of the configured token, never the token itself."""

    def __init__(self, token: Optional[str]):
        self._key = get_random_bytes(32)
        self._digest = self._mac(token) if token else None

    def _mac(self, token: str) -> bytes:
        return HMAC.new(self._key, token.encode('utf-8'), digestmod=SHA256).digest()

    @property
    def required(self) -> bool:
        return self._digest is not None

    def verify(self, presented: Optional[str]) -> bool:
        """
        Check a presented token.

        Always true when no token is configured.
        """
        if self._digest is None:
            return True
        if not isinstance(presented, str):
            return False
        h = HMAC.new(self._key, presented.encode('utf-8'), digestmod=SHA256)
        try:
            h.verify(self._digest)
        except ValueError:
            return False
        return True
