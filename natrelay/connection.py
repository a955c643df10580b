"""Client side of the relay: one connection multiplexing many links."""

from __future__ import annotations

import logging
import queue
import socket
import ssl
import threading
import time
from typing import Protocol

from natrelay.hashing import Hasher
from natrelay.message import HandshakePayload, Msg, MsgpackCodec, MsgType
from natrelay.transport import FramedConnection, TransportError
from natrelay.utils import recover

log = logging.getLogger(__name__)

SERVER_ID = "server"
DROP_BLOCK_TIMEOUT = 600.0
KEEPALIVE_INTERVAL = 10.0
HANDSHAKE_TIMEOUT = 5.0
_MAX_READ_TIMEOUTS = 60
_LINK_QUEUE_SIZE = 1024
_WRITE_QUEUE_SIZE = 10 * 1024 * 1024
_DROP_CHECK_INTERVAL = 1.0
_POLL_INTERVAL = 0.1


class _Transport(Protocol):
    def read_message(self, timeout: float | None) -> tuple[Msg, int]: ...

    def write_message(self, msg: Msg, timeout: float | None) -> None: ...

    def close(self) -> None: ...


def _close_queue(target: queue.Queue) -> None:
    """Put the end-of-link marker (``None``) into ``target``, making room if needed."""
    while True:
        try:
            target.put_nowait(None)
            return
        except queue.Full:
            try:
                target.get_nowait()
            except queue.Empty:
                pass


class ClientConnection:
    """Routes incoming messages to per-link queues and sends outgoing ones.

    A link queue yields ``None`` once the link has been closed.
    """

    def __init__(
        self,
        client_id: str,
        transport: _Transport,
        read_timeout: float,
        write_timeout: float,
    ) -> None:
        self.client_id = client_id
        self.read_timeout = read_timeout
        self.write_timeout = write_timeout
        self._transport = transport
        self._codec = MsgpackCodec()
        self._lock = threading.Lock()
        self._read: dict[str, queue.Queue] = {}
        self._unknown: queue.Queue = queue.Queue(maxsize=_LINK_QUEUE_SIZE)
        self._disconnects: queue.Queue = queue.Queue(maxsize=_LINK_QUEUE_SIZE)
        self._write: queue.Queue = queue.Queue(maxsize=_WRITE_QUEUE_SIZE)
        self._drop_lock = threading.Lock()
        self._drop: dict[str, float] = {}
        self._close_lock = threading.Lock()
        self._closed = threading.Event()
        self._threads: list[threading.Thread] = []

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def start(self) -> None:
        """Start the reader, writer, keepalive and drop-expiry threads."""
        if self._threads:
            return
        for name, target in (
            ("read", self._read_loop),
            ("write", self._write_loop),
            ("keepalive", self._keepalive_loop),
            ("drops", self._drop_loop),
        ):
            thread = threading.Thread(target=target, name=f"conn-{name}", daemon=True)
            self._threads.append(thread)
            thread.start()

    def add_link(self, link_id: str) -> None:
        """Create the read queue of ``link_id`` if it does not exist yet."""
        log.info("add link %s", link_id)
        with self._lock:
            self._read.setdefault(link_id, queue.Queue(maxsize=_LINK_QUEUE_SIZE))

    def requeue(self, link_id: str, msg: Msg) -> None:
        """Put ``msg`` back into the read queue of ``link_id``."""
        with self._lock:
            target = self._read.get(link_id)
        if target is None:
            raise KeyError(f"unknown link {link_id}")
        target.put(msg)

    def chan_read(self, link_id: str) -> queue.Queue | None:
        """Return the read queue of ``link_id``, or ``None`` if there is none."""
        with self._lock:
            return self._read.get(link_id)

    def unknown(self) -> queue.Queue:
        """Queue of messages whose link is not known locally."""
        return self._unknown

    def disconnects(self) -> queue.Queue:
        """Queue of disconnect notifications."""
        return self._disconnects

    def chan_close(self, link_id: str) -> None:
        """Close and forget the read queue of ``link_id`` and drop its late messages."""
        with self._lock:
            target = self._read.pop(link_id, None)
        if target is not None:
            _close_queue(target)
        self._add_drop(link_id)

    def is_dropped(self, link_id: str) -> bool:
        with self._drop_lock:
            return link_id in self._drop

    def _add_drop(self, link_id: str) -> None:
        with self._drop_lock:
            self._drop[link_id] = time.monotonic() + DROP_BLOCK_TIMEOUT

    def expire_drops(self, now: float | None = None) -> list[str]:
        """Forget drop entries older than the block timeout; return their ids."""
        if now is None:
            now = time.monotonic()
        with self._drop_lock:
            expired = [link_id for link_id, until in self._drop.items() if now > until]
            for link_id in expired:
                del self._drop[link_id]
        return expired

    def _get_queue(self, link_id: str) -> queue.Queue:
        with self._lock:
            target = self._read.get(link_id)
        return self._unknown if target is None else target

    def dispatch(self, msg: Msg) -> bool:
        """Route one incoming message; ``False`` means the read loop should stop."""
        if msg.type == MsgType.KEEPALIVE:
            return True
        log.debug("read message %s(%s) from %s", msg.type, msg.link_id, msg.from_)
        if msg.link_id:
            return self._handle_linked(msg)
        return True

    def _handle_linked(self, msg: Msg) -> bool:
        link_id = msg.link_id
        if self.is_dropped(link_id):
            return True
        if msg.type == MsgType.DISCONNECT:
            self._add_drop(link_id)
            log.info("connection %s disconnected", link_id)
            return True
        target = self._get_queue(link_id)
        deadline = time.monotonic() + self.write_timeout
        while True:
            remaining = deadline - time.monotonic()
            try:
                target.put(msg, timeout=max(0.0, min(remaining, _POLL_INTERVAL)))
                return True
            except queue.Full:
                if self._closed.is_set():
                    return False
                if time.monotonic() >= deadline:
                    log.error("drop message: %s", msg.type)
                    self._add_drop(link_id)
                    return True

    def send(self, msg: Msg) -> int:
        """Queue ``msg`` for sending; return its encoded size, or 0 if it was dropped."""
        size = len(self._codec.marshal(msg))
        try:
            self._write.put(msg, timeout=self.write_timeout)
        except queue.Full:
            log.info("send: droped %s", msg.type)
            return 0
        return size

    def send_keepalive(self) -> None:
        self.send(Msg(type=MsgType.KEEPALIVE, to=SERVER_ID))

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the connection is closed; ``False`` if ``timeout`` ran out first."""
        return self._closed.wait(timeout)

    def close(self) -> None:
        with self._close_lock:
            if self._closed.is_set():
                return
            self._closed.set()
        self._transport.close()

    def _read_loop(self) -> None:
        with recover("loopRead"):
            try:
                timeouts = 0
                while not self._closed.is_set():
                    try:
                        msg, _ = self._transport.read_message(self.read_timeout)
                    except TimeoutError:
                        timeouts += 1
                        if timeouts >= _MAX_READ_TIMEOUTS:
                            log.error("too many timeout times")
                            return
                        continue
                    except (OSError, TransportError, ValueError) as exc:
                        log.error("read message: %s", exc)
                        return
                    timeouts = 0
                    if not self.dispatch(msg):
                        return
            finally:
                self.close()

    def _write_loop(self) -> None:
        with recover("loopWrite"):
            try:
                while not self._closed.is_set():
                    try:
                        msg = self._write.get(timeout=_POLL_INTERVAL)
                    except queue.Empty:
                        continue
                    msg.from_ = self.client_id
                    try:
                        self._transport.write_message(msg, self.write_timeout)
                    except (TransportError, OSError, ValueError, TypeError) as exc:
                        log.error("write message error on %s: %s", self.client_id, exc)
            finally:
                self.close()

    def _keepalive_loop(self) -> None:
        with recover("keepalive"):
            try:
                while not self._closed.wait(KEEPALIVE_INTERVAL):
                    self.send_keepalive()
            finally:
                self.close()

    def _drop_loop(self) -> None:
        while not self._closed.wait(_DROP_CHECK_INTERVAL):
            self.expire_drops()


def write_handshake(transport: _Transport, client_id: str, hasher: Hasher) -> None:
    """Send the handshake message announcing ``client_id``."""
    msg = Msg(
        type=MsgType.HANDSHAKE,
        from_=client_id,
        to=SERVER_ID,
        payload=HandshakePayload(enc=hasher.hash()),
    )
    transport.write_message(msg, HANDSHAKE_TIMEOUT)


def _split_address(server: str) -> tuple[str, int]:
    host, sep, port = server.rpartition(":")
    if not sep or not host or not port.isdigit():
        raise ValueError(f"invalid server address: {server}")
    return host.strip("[]"), int(port)


def connect(
    server: str,
    client_id: str,
    hasher: Hasher,
    use_ssl: bool,
    ssl_insecure: bool,
    read_timeout: float,
    write_timeout: float,
) -> ClientConnection:
    """Dial ``server`` ("host:port"), hand-shake and return a started connection."""
    host, port = _split_address(server)
    sock = socket.create_connection((host, port))
    try:
        if use_ssl:
            if ssl_insecure:
                context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
                context.check_hostname = False
                context.verify_mode = ssl.CERT_NONE
                sock = context.wrap_socket(sock)
            else:
                context = ssl.create_default_context()
                sock = context.wrap_socket(sock, server_hostname=host)
    except Exception:
        sock.close()
        raise
    transport = FramedConnection(sock)
    try:
        write_handshake(transport, client_id, hasher)
    except Exception:
        transport.close()
        raise
    log.info("%s connected", server)
    conn = ClientConnection(client_id, transport, read_timeout, write_timeout)
    conn.start()
    return conn