"""Small helpers shared by the client and the server."""

from __future__ import annotations

import contextlib
import logging
import os
from pathlib import Path
from typing import Iterator

log = logging.getLogger(__name__)

_KB = 1000
_KIB = 1024

_SIZE_TABLE = {
    "": 1,
    "b": 1,
    "k": _KB,
    "kb": _KB,
    "ki": _KIB,
    "kib": _KIB,
    "m": _KB**2,
    "mb": _KB**2,
    "mi": _KIB**2,
    "mib": _KIB**2,
    "g": _KB**3,
    "gb": _KB**3,
    "gi": _KIB**3,
    "gib": _KIB**3,
    "t": _KB**4,
    "tb": _KB**4,
    "ti": _KIB**4,
    "tib": _KIB**4,
    "p": _KB**5,
    "pb": _KB**5,
    "pi": _KIB**5,
    "pib": _KIB**5,
    "e": _KB**6,
    "eb": _KB**6,
    "ei": _KIB**6,
    "eib": _KIB**6,
}

_MAX_UINT64 = (1 << 64) - 1


def parse_bytes(text: str) -> int:
    """Parse a human readable size such as ``"42 MB"`` or ``"1KiB"`` into bytes."""
    digits = 0
    for char in text:
        if not (char.isdigit() or char in ".,"):
            break
        digits += 1
    number = text[:digits].replace(",", "")
    try:
        value = float(number)
    except ValueError:
        raise ValueError(f"invalid size number: {number!r}") from None
    unit = text[digits:].strip().lower()
    try:
        multiplier = _SIZE_TABLE[unit]
    except KeyError:
        raise ValueError(f"unhandled size name: {unit}") from None
    value *= multiplier
    if value >= _MAX_UINT64:
        raise ValueError(f"too large: {text}")
    return int(value)


def build_dir(path: str | os.PathLike[str], user: str = "") -> None:
    """Create ``path`` (and parents) and, if ``user`` is given, hand it to that user."""
    path = Path(path)
    path.mkdir(mode=0o755, parents=True, exist_ok=True)
    if not user:
        return
    import pwd

    try:
        entry = pwd.getpwnam(user)
    except KeyError:
        raise LookupError(f"unknown user: {user}") from None
    os.chown(path, entry.pw_uid, entry.pw_gid)


@contextlib.contextmanager
def recover(name: str) -> Iterator[None]:
    """Log and swallow any exception raised inside the block."""
    try:
        yield
    except Exception as exc:  # noqa: BLE001 - a worker must not take the process down
        log.error("%s: %s", name, exc)