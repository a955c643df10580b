"""Gzip compression of message payloads."""

from __future__ import annotations

import gzip
import zlib

_BEST_COMPRESSION = 9
_DEFAULT_LEVEL = 6


def _check_level(level: int) -> int:
    if level < 0 or level > _BEST_COMPRESSION:
        raise ValueError(f"invalid gzip compress level: {level}")
    return level


class GzipCompressor:
    """Compresses and decompresses byte strings with gzip."""

    def __init__(self, level: int = _DEFAULT_LEVEL) -> None:
        self._level = _check_level(level)

    @property
    def level(self) -> int:
        return self._level

    def compress(self, data: bytes) -> bytes:
        return gzip.compress(data, compresslevel=self._level, mtime=0)

    def decompress(self, data: bytes) -> bytes:
        try:
            return gzip.decompress(data)
        except (OSError, EOFError, zlib.error) as exc:
            raise ValueError(f"invalid gzip data: {exc}") from exc

    def set_level(self, level: int) -> None:
        self._level = _check_level(level)