"""Shell rule: remote terminals running under a pseudo-terminal."""

from __future__ import annotations

import logging
import os
import shutil
import struct
import subprocess
import threading
from typing import Any, Iterable

from natrelay import builders
from natrelay.message import Msg, MsgpackCodec, ShellData, ShellResize
from natrelay.utils import recover

log = logging.getLogger(__name__)

_READ_SIZE = 16 * 1024
_DEFAULT_TIMEOUT = 10.0
_CODEC = MsgpackCodec()


def _lead_ones(byte: int) -> int:
    count = 0
    mask = 0x80
    while mask and byte & mask:
        count += 1
        mask >>= 1
    return count


def is_gbk(data: bytes) -> bool:
    """Whether ``data`` looks like GBK: ASCII or lead 0x81-0xfe with trail 0x40-0xfe (not 0xf7)."""
    position = 0
    size = len(data)
    while position < size:
        lead = data[position]
        if lead <= 0x7F:
            position += 1
            continue
        if not 0x81 <= lead <= 0xFE or position + 1 >= size:
            return False
        trail = data[position + 1]
        if not 0x40 <= trail <= 0xFE or trail == 0xF7:
            return False
        position += 2
    return True


def is_utf8(data: bytes) -> bool:
    """Whether ``data`` is ASCII plus multi-byte sequences of three or more bytes.

    Two-byte sequences are rejected, so such text is tried as GBK instead.
    """
    position = 0
    size = len(data)
    while position < size:
        lead = data[position]
        if lead & 0x80 == 0:
            position += 1
            continue
        length = _lead_ones(lead)
        if length <= 2:
            return False
        continuation = data[position + 1 : position + length]
        if len(continuation) != length - 1:
            return False
        if any(byte & 0xC0 != 0x80 for byte in continuation):
            return False
        position += length
    return True


def decode_output(data: bytes) -> bytes:
    """Turn terminal output into UTF-8; output that is neither UTF-8 nor GBK becomes empty."""
    if is_utf8(data):
        return bytes(data)
    if is_gbk(data):
        return bytes(data).decode("gbk", errors="replace").encode("utf-8")
    return b""


def find_shell(exec_: str = "") -> str:
    """Return the configured shell, else bash, else sh, from PATH."""
    if exec_:
        return exec_
    for candidate in ("bash", "sh"):
        path = shutil.which(candidate)
        if path:
            return path
    raise FileNotFoundError("no shell command supported")


def _build_env(extra: Iterable[str]) -> dict[str, str]:
    env = dict(os.environ)
    for item in extra:
        key, sep, value = item.partition("=")
        if sep:
            env[key] = value
    return env


class ShellLink:
    """One terminal session between a browser and a remote shell."""

    def __init__(self, parent: Shell, link_id: str, target: str, remote: Any) -> None:
        self.id = link_id
        self.target = target
        self.remote = remote
        self.pid: int | None = None
        self.fd: int | None = None
        self.send_bytes = 0
        self.recv_bytes = 0
        self.send_packet = 0
        self.recv_packet = 0
        self._parent = parent
        self._process: subprocess.Popen | None = None
        self._lock = threading.Lock()
        self._closed = False

    def bytes(self) -> tuple[int, int]:
        """Received and sent byte counts."""
        return self.recv_bytes, self.send_bytes

    def packets(self) -> tuple[int, int]:
        """Received and sent packet counts."""
        return self.recv_packet, self.send_packet

    def exec(self) -> None:
        """Start the shell on a new pseudo-terminal."""
        import fcntl
        import pty
        import termios

        path = find_shell(self._parent.exec_)
        env = _build_env(self._parent.env)
        master, slave = pty.openpty()

        def take_terminal() -> None:
            fcntl.ioctl(0, termios.TIOCSCTTY, 0)

        try:
            process = subprocess.Popen(
                [path],
                stdin=slave,
                stdout=slave,
                stderr=slave,
                env=env,
                start_new_session=True,
                preexec_fn=take_terminal,
            )
        except OSError:
            os.close(master)
            raise
        finally:
            os.close(slave)
        threading.Thread(target=process.wait, name=f"shell-wait-{self.id}", daemon=True).start()
        self._process = process
        self.pid = process.pid
        self.fd = master

    def close(self, send: bool) -> None:
        """Stop the shell, optionally tell the peer, and forget the link."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        fd, self.fd = self.fd, None
        if fd is not None:
            try:
                os.close(fd)
            except OSError:
                pass
        if self._process is not None:
            try:
                self._process.kill()
            except ProcessLookupError:
                pass
        if send:
            self.remote.send(builders.disconnect(self.target, self.id))
        self._parent.remove(self.id)
        self.remote.chan_close(self.id)

    def forward(self) -> list[threading.Thread]:
        """Start copying data both ways; return the started threads."""
        threads = [
            threading.Thread(target=self._remote_read, name=f"shell-remote-{self.id}", daemon=True),
            threading.Thread(target=self._local_read, name=f"shell-local-{self.id}", daemon=True),
        ]
        for thread in threads:
            thread.start()
        return threads

    def _remote_read(self) -> None:
        try:
            with recover("remoteRead"):
                incoming = self.remote.chan_read(self.id)
                if incoming is None:
                    return
                while True:
                    msg: Msg | None = incoming.get()
                    if msg is None:
                        return
                    self.recv_bytes += len(_CODEC.marshal(msg))
                    self.recv_packet += 1
                    payload = msg.payload
                    if isinstance(payload, ShellResize):
                        self.resize(payload.rows, payload.cols)
                    elif isinstance(payload, ShellData):
                        fd = self.fd
                        try:
                            if fd is None:
                                raise OSError("terminal closed")
                            os.write(fd, payload.data)
                        except OSError as exc:
                            log.error(
                                "write data on shell %s link %s failed, err=%s",
                                self._parent.name, self.id, exc,
                            )
                            return
        finally:
            self.close(True)

    def _local_read(self) -> None:
        try:
            with recover("localRead"):
                fd = self.fd
                if fd is None:
                    return
                while True:
                    try:
                        chunk = os.read(fd, _READ_SIZE)
                    except OSError as exc:
                        log.error(
                            "read data on shell %s link %s failed, err=%s",
                            self._parent.name, self.id, exc,
                        )
                        return
                    if not chunk:
                        return
                    log.debug(
                        "link %s on shell %s read from local %d bytes",
                        self.id, self._parent.name, len(chunk),
                    )
                    self.send_data(decode_output(chunk))
        finally:
            self.close(True)

    def send_data(self, data: bytes) -> None:
        """Send terminal data to the peer and count it."""
        self.send_bytes += self.remote.send(builders.shell_data(self.target, self.id, data))
        self.send_packet += 1

    def send_resize(self, rows: int, cols: int) -> None:
        """Ask the peer to resize its terminal."""
        self.remote.send(builders.shell_resize(self.target, self.id, rows, cols))

    def resize(self, rows: int, cols: int) -> None:
        """Resize the local pseudo-terminal."""
        fd = self.fd
        if fd is None:
            return
        import fcntl
        import termios

        size = struct.pack("HHHH", rows & 0xFFFF, cols & 0xFFFF, 0, 0)
        fcntl.ioctl(fd, termios.TIOCSWINSZ, size)


class Shell:
    """A shell rule with its open links."""

    type_name = "shell"

    def __init__(
        self,
        name: str,
        target: str,
        exec_: str = "",
        env: Iterable[str] = (),
        local_port: int = 0,
        read_timeout: float = _DEFAULT_TIMEOUT,
        write_timeout: float = _DEFAULT_TIMEOUT,
    ) -> None:
        self.name = name
        self.target = target
        self.exec_ = exec_
        self.env = list(env)
        self.port = local_port
        self.read_timeout = read_timeout
        self.write_timeout = write_timeout
        self._lock = threading.Lock()
        self._links: dict[str, ShellLink] = {}

    @property
    def remote(self) -> str:
        return self.target

    def new_link(self, link_id: str, remote: str, remote_conn: Any) -> ShellLink:
        """Register ``link_id`` on the connection and create its link."""
        remote_conn.add_link(link_id)
        link = ShellLink(self, link_id, remote, remote_conn)
        with self._lock:
            self._links[link_id] = link
        return link

    def links(self) -> list[ShellLink]:
        with self._lock:
            return list(self._links.values())

    def get(self, link_id: str) -> ShellLink | None:
        with self._lock:
            return self._links.get(link_id)

    def on_disconnect(self, link_id: str) -> None:
        """Close the link ``link_id`` without notifying the peer."""
        link = self.get(link_id)
        if link is not None:
            link.close(False)

    def remove(self, link_id: str) -> None:
        with self._lock:
            self._links.pop(link_id, None)