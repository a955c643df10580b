"""Relay server: accepts clients, authenticates them and forwards messages between them."""

from __future__ import annotations

import hmac
import logging
import socket
import ssl
import threading
import time
from dataclasses import dataclass
from typing import Any, Protocol

from natrelay.hashing import Hasher
from natrelay.message import (
    ConnectRequest,
    ConnectRequestType,
    ConnectResponse,
    ForwardData,
    HandshakePayload,
    Msg,
    MsgType,
    ShellData,
    ShellResize,
)
from natrelay.transport import FramedConnection, TransportError

log = logging.getLogger(__name__)

SERVER_ID = "server"
_HANDSHAKE_ATTEMPTS = 10
_HANDSHAKE_TIMEOUT = 5.0
_IDLE_LIMIT = 600.0
_KEEPALIVE_INTERVAL = 10.0


class NotHandshakeError(Exception):
    """The first message from a client was not a handshake."""

    def __init__(self, message: str = "not handshake") -> None:
        super().__init__(message)


class InvalidHandshakeError(Exception):
    """The handshake token did not match the shared secret."""

    def __init__(self, message: str = "invalid handshake") -> None:
        super().__init__(message)


class _Conn(Protocol):
    def read_message(self, timeout: float | None) -> tuple[Msg, int]: ...

    def write_message(self, msg: Msg, timeout: float | None) -> None: ...

    def close(self) -> None: ...


def _client_name(session: ClientSession | None) -> str:
    return session.id if session is not None else ""


@dataclass
class RelayLink:
    """A virtual link between two clients, known by its id."""

    id: str
    type: ConnectRequestType = ConnectRequestType.SHELL
    endpoints: tuple[ClientSession | None, ClientSession | None] = (None, None)

    def close(self) -> None:
        """Tell both endpoints that the link is gone."""
        for session in self.endpoints:
            if session is not None:
                session.send_close(self.id)


class ClientSession:
    """One authenticated client connected to the relay."""

    def __init__(self, client_id: str, handler: Handler, conn: _Conn) -> None:
        self.id = client_id
        self.conn = conn
        self.updated = time.monotonic()
        self._handler = handler
        self._lock = threading.Lock()
        self._links: set[str] = set()
        self._stopped = threading.Event()
        self._closing = False

    def __repr__(self) -> str:
        return f"ClientSession({self.id!r})"

    def add_link(self, link_id: str) -> None:
        with self._lock:
            self._links.add(link_id)

    def remove_link(self, link_id: str) -> None:
        with self._lock:
            self._links.discard(link_id)

    def links(self) -> list[str]:
        """Ids of the links this client takes part in, sorted."""
        with self._lock:
            return sorted(self._links)

    def write_message(self, msg: Msg) -> None:
        self.conn.write_message(msg, self._handler.write_timeout)

    def send_close(self, link_id: str) -> None:
        """Send a disconnect for ``link_id`` to this client and forget the link."""
        msg = Msg(type=MsgType.DISCONNECT, from_=SERVER_ID, to=self.id, link_id=link_id)
        try:
            self.write_message(msg)
        except (TransportError, OSError) as exc:
            log.error("send close of %s to %s: %s", link_id, self.id, exc)
        self.remove_link(link_id)

    def close(self) -> None:
        """Close every link of this client, then its connection."""
        with self._lock:
            if self._closing:
                return
            self._closing = True
        self._stopped.set()
        for link_id in self.links():
            self._handler.close_link(link_id)
            self.remove_link(link_id)
        self.conn.close()
        log.info("client %s connection closed", self.id)

    def run(self) -> None:
        """Read and dispatch messages until the connection fails or goes idle."""
        try:
            while not self._stopped.is_set():
                if time.monotonic() - self.updated > _IDLE_LIMIT:
                    log.info("%s is not keepalived, links: %s", self.id, self.links())
                    return
                try:
                    msg, size = self.conn.read_message(self._handler.read_timeout)
                except TimeoutError:
                    continue
                except (OSError, TransportError, ValueError) as exc:
                    log.error("read message from %s: %s", self.id, exc)
                    return
                self.updated = time.monotonic()
                self._handler.on_message(self, msg, size)
        finally:
            self._handler._drop(self)

    def keepalive(self) -> None:
        """Send a keepalive every few seconds until the session stops."""
        msg = Msg(type=MsgType.KEEPALIVE, from_=SERVER_ID, to=self.id)
        while not self._stopped.wait(_KEEPALIVE_INTERVAL):
            try:
                self.write_message(msg)
            except (TransportError, OSError) as exc:
                log.error("send keepalive: %s", exc)
                return


def _peer(conn: Any) -> str:
    try:
        return str(conn.remote_address())
    except (OSError, AttributeError):
        return "unknown"


class Handler:
    """Keeps track of clients and links and routes messages between clients."""

    def __init__(self, hasher: Hasher, read_timeout: float, write_timeout: float) -> None:
        self.hasher = hasher
        self.read_timeout = read_timeout
        self.write_timeout = write_timeout
        self._clients_lock = threading.Lock()
        self._clients: dict[str, ClientSession] = {}
        self._links_lock = threading.Lock()
        self._links: dict[str, RelayLink] = {}

    def handle(self, sock: socket.socket) -> None:
        """Serve one accepted socket: handshake, register, relay until it ends."""
        conn = FramedConnection(sock)
        client_id = ""
        try:
            for attempt in range(1, _HANDSHAKE_ATTEMPTS + 1):
                try:
                    client_id = self.read_handshake(conn)
                    break
                except InvalidHandshakeError:
                    log.error("invalid handshake from %s", _peer(conn))
                    return
                except (OSError, TransportError, ValueError, NotHandshakeError) as exc:
                    log.error(
                        "read handshake from %s %d times, err=%s", _peer(conn), attempt, exc
                    )
            else:
                return
            log.info("%s connected", client_id)
            session = self.register(client_id, conn)
            threading.Thread(
                target=session.keepalive, name=f"keepalive-{client_id}", daemon=True
            ).start()
            session.run()
        finally:
            if client_id:
                log.info("%s disconnected", client_id)
            conn.close()

    def read_handshake(self, conn: _Conn) -> str:
        """Read a handshake message and return the client id it announces."""
        msg, _ = conn.read_message(_HANDSHAKE_TIMEOUT)
        if msg.type != MsgType.HANDSHAKE:
            raise NotHandshakeError()
        enc = msg.payload.enc if isinstance(msg.payload, HandshakePayload) else b""
        if not hmac.compare_digest(bytes(enc), self.hasher.hash()):
            raise InvalidHandshakeError()
        return msg.from_

    def register(self, client_id: str, conn: _Conn) -> ClientSession:
        """Create a session for ``client_id``, replacing and closing any older one."""
        session = ClientSession(client_id, self, conn)
        with self._clients_lock:
            old = self._clients.get(client_id)
            self._clients[client_id] = session
        if old is not None:
            old.close()
        return session

    def lookup(self, client_id: str) -> ClientSession | None:
        with self._clients_lock:
            return self._clients.get(client_id)

    def unregister(self, client_id: str) -> None:
        """Remove and close the session registered under ``client_id``."""
        with self._clients_lock:
            session = self._clients.pop(client_id, None)
        if session is not None:
            session.close()

    def _drop(self, session: ClientSession) -> None:
        with self._clients_lock:
            if self._clients.get(session.id) is session:
                del self._clients[session.id]
        session.close()

    def _get_client(self, link_id: str, to: str) -> ClientSession | None:
        with self._links_lock:
            link = self._links.get(link_id)
        if link is not None:
            for endpoint in link.endpoints:
                if endpoint is not None and endpoint.id == to:
                    return endpoint
        return self.lookup(to)

    def on_message(self, sender: ClientSession, msg: Msg, size: int) -> None:
        """Route ``msg`` from ``sender`` to the client it is addressed to."""
        if msg.type == MsgType.KEEPALIVE:
            return
        target = self._get_client(msg.link_id, msg.to)
        if target is None:
            log.error("client %s not found", msg.to)
            return
        self._msg_hook(msg, sender, target, size)
        try:
            target.write_message(msg)
        except (TransportError, OSError) as exc:
            log.error(
                "write message %s from %s to %s: %s", msg.type, msg.from_, msg.to, exc
            )

    def _add_link(
        self,
        name: str,
        link_id: str,
        link_type: ConnectRequestType,
        sender: ClientSession | None,
        target: ClientSession | None,
    ) -> None:
        for endpoint in (sender, target):
            if endpoint is not None:
                endpoint.add_link(link_id)
        link = RelayLink(link_id, link_type, (sender, target))
        with self._links_lock:
            self._links[link_id] = link
        log.info(
            "add link %s name %s from %s to %s",
            link_id, name, _client_name(sender), _client_name(target),
        )

    def _remove_link(
        self, link_id: str, sender: ClientSession | None, target: ClientSession | None
    ) -> None:
        for endpoint in (sender, target):
            if endpoint is not None:
                endpoint.remove_link(link_id)
        with self._links_lock:
            self._links.pop(link_id, None)
        log.info(
            "remove link %s from %s to %s",
            link_id, _client_name(sender), _client_name(target),
        )

    def _response_link(
        self, link_id: str, ok: bool, message: str, sender: ClientSession, target: ClientSession
    ) -> None:
        if ok:
            log.info("link %s from %s to %s connect successed", link_id, sender.id, target.id)
        else:
            log.info(
                "link %s from %s to %s connect failed, %s",
                link_id, sender.id, target.id, message,
            )

    def _msg_hook(
        self, msg: Msg, sender: ClientSession, target: ClientSession, size: int
    ) -> None:
        payload = msg.payload
        if msg.type == MsgType.CONNECT_REQ:
            request = payload if isinstance(payload, ConnectRequest) else ConnectRequest()
            self._add_link(request.name, msg.link_id, request.type, sender, target)
        elif msg.type == MsgType.DISCONNECT:
            self._remove_link(msg.link_id, sender, target)
        elif msg.type == MsgType.CONNECT_REP:
            response = payload if isinstance(payload, ConnectResponse) else ConnectResponse()
            self._response_link(msg.link_id, response.ok, response.message, sender, target)
        elif msg.type == MsgType.FORWARD:
            data = payload.data if isinstance(payload, ForwardData) else b""
            log.debug(
                "link %s forward %d bytes from %s to %s",
                msg.link_id, len(data), sender.id, target.id,
            )
        elif msg.type == MsgType.SHELL_DATA:
            data = payload.data if isinstance(payload, ShellData) else b""
            log.debug(
                "shell %s forward %d bytes from %s to %s",
                msg.link_id, len(data), sender.id, target.id,
            )
        elif msg.type == MsgType.SHELL_RESIZE:
            resize = payload if isinstance(payload, ShellResize) else ShellResize()
            log.info(
                "shell %s from %s to %s resize to (%d,%d)",
                msg.link_id, sender.id, target.id, resize.rows, resize.cols,
            )
        msg.from_ = sender.id
        msg.to = target.id
        log.debug(
            "forward %d bytes on link %s from %s to %s",
            size, msg.link_id, sender.id, target.id,
        )

    def close_link(self, link_id: str) -> None:
        """Forget ``link_id`` and send a disconnect to both of its endpoints."""
        with self._links_lock:
            link = self._links.pop(link_id, None)
        if link is not None:
            link.close()


def serve(handler: Handler, port: int, tls_cert: str = "", tls_key: str = "") -> None:
    """Listen on ``port`` (with TLS when both files are given) and handle each client."""
    listener = socket.create_server(("", port))
    if tls_cert and tls_key:
        context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
        context.load_cert_chain(tls_cert, tls_key)
        listener = context.wrap_socket(listener, server_side=True)
    log.info("listen on %d", port)
    with listener:
        while listener.fileno() != -1:
            try:
                sock, _ = listener.accept()
            except (OSError, ssl.SSLError):
                continue
            threading.Thread(target=handler.handle, args=(sock,), daemon=True).start()