"""Length-prefixed, checksummed message framing over a stream socket."""

from __future__ import annotations

import logging
import queue
import select
import socket
import struct
import threading
import time
import zlib
from typing import Any, Protocol

from natrelay.message import Msg, MsgpackCodec

log = logging.getLogger(__name__)

_HEADER = struct.Struct(">HI")
_MAX_FRAME = 0xFFFF
_QUEUE_SIZE = 1024
_POLL_INTERVAL = 0.1


class TransportError(Exception):
    """Base class for framing errors."""


class TooLongError(TransportError):
    """The encoded message does not fit in one frame."""


class ChecksumError(TransportError):
    """A received frame failed its CRC-32 check."""


class WriteTimeoutError(TransportError):
    """The write queue stayed full for longer than the timeout."""


class _Codec(Protocol):
    def marshal(self, msg: Msg) -> bytes: ...

    def unmarshal(self, data: bytes) -> Msg: ...


class _Compressor(Protocol):
    def compress(self, data: bytes) -> bytes: ...

    def decompress(self, data: bytes) -> bytes: ...


def encode_frame(payload: bytes) -> bytes:
    """Prefix ``payload`` with its big-endian 16-bit size and CRC-32."""
    if len(payload) > _MAX_FRAME:
        raise TooLongError("transport: too long")
    return _HEADER.pack(len(payload), zlib.crc32(payload)) + payload


class FramedConnection:
    """Reads and writes :class:`Msg` frames; writes go through a background queue."""

    def __init__(
        self,
        sock: socket.socket,
        codec: _Codec | None = None,
        compressor: _Compressor | None = None,
    ) -> None:
        self._sock = sock
        self.codec: _Codec = codec if codec is not None else MsgpackCodec()
        self.compressor = compressor
        self._read_lock = threading.Lock()
        self._close_lock = threading.Lock()
        self._closed = threading.Event()
        self._queue: queue.Queue[bytes] = queue.Queue(maxsize=_QUEUE_SIZE)
        self._writer = threading.Thread(target=self._write_loop, name="frame-writer", daemon=True)
        self._writer.start()

    def __enter__(self) -> FramedConnection:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def _wait_readable(self, deadline: float | None) -> None:
        pending = getattr(self._sock, "pending", None)
        if pending is not None and pending():
            return
        remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
        try:
            ready, _, _ = select.select([self._sock], [], [], remaining)
        except (ValueError, OSError) as exc:
            raise ConnectionError("connection closed") from exc
        if not ready:
            raise TimeoutError("transport: read timeout")

    def _recv_exact(self, size: int, deadline: float | None) -> bytes:
        buffer = bytearray()
        while len(buffer) < size:
            self._wait_readable(deadline)
            chunk = self._sock.recv(size - len(buffer))
            if not chunk:
                raise ConnectionError("connection closed by peer")
            buffer += chunk
        return bytes(buffer)

    def read_message(self, timeout: float | None) -> tuple[Msg, int]:
        """Read one message; return it with the size of its frame payload."""
        if self.closed:
            raise ConnectionError("connection closed")
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._read_lock:
            size, checksum = _HEADER.unpack(self._recv_exact(_HEADER.size, deadline))
            payload = self._recv_exact(size, deadline)
        if zlib.crc32(payload) != checksum:
            raise ChecksumError("transport: invalid checksum")
        data = self.compressor.decompress(payload) if self.compressor is not None else payload
        return self.codec.unmarshal(data), size

    def write_message(self, msg: Msg, timeout: float | None) -> None:
        """Queue ``msg`` for sending, waiting at most ``timeout`` seconds for room."""
        data = self.codec.marshal(msg)
        if self.compressor is not None:
            data = self.compressor.compress(data)
        frame = encode_frame(data)
        try:
            self._queue.put(frame, timeout=timeout)
        except queue.Full:
            raise WriteTimeoutError("transport: timeout") from None

    def _write_loop(self) -> None:
        while not self._closed.is_set():
            try:
                frame = self._queue.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                continue
            try:
                self._sock.sendall(frame)
            except OSError as exc:
                if not self._closed.is_set():
                    log.error("write data: %s", exc)
                self.close()
                return

    def close(self) -> None:
        with self._close_lock:
            if self._closed.is_set():
                return
            self._closed.set()
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self._sock.close()

    def remote_address(self) -> Any:
        return self._sock.getpeername()

    def local_address(self) -> Any:
        return self._sock.getsockname()