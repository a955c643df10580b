"""Time-windowed handshake tokens."""

from __future__ import annotations

import hashlib
import hmac
import math
import struct
import time

_DEFAULT_PERIOD = 30


class Hasher:
    """Produces an HMAC-SHA512 token that changes every ``period`` seconds."""

    def __init__(self, secret: str, period: int = _DEFAULT_PERIOD) -> None:
        if period < 0:
            raise ValueError("period must not be negative")
        self.period = period or _DEFAULT_PERIOD
        self._key = secret.encode("utf-8")

    def hash(self, now: float | None = None) -> bytes:
        """Return the token for the time window containing ``now`` (default: current time)."""
        if now is None:
            now = time.time()
        window = (math.floor(now) // self.period) % (1 << 64)
        return hmac.new(self._key, struct.pack(">Q", window), hashlib.sha512).digest()