import queue
import socket
import threading
import time

import pytest

from natrelay.connection import ClientConnection, connect, write_handshake
from natrelay.hashing import Hasher
from natrelay.message import Msg, MsgpackCodec, MsgType, ShellData
from natrelay.transport import FramedConnection


class FakeTransport:
    def __init__(self, incoming=()):
        self.incoming = list(incoming)
        self.written = queue.Queue()
        self.closed = threading.Event()

    def read_message(self, timeout):
        if self.incoming:
            item = self.incoming.pop(0)
            if isinstance(item, BaseException):
                raise item
            return item, 0
        self.closed.wait()
        raise ConnectionError("closed")

    def write_message(self, msg, timeout):
        self.written.put(msg)

    def close(self):
        self.closed.set()


def make_conn(transport=None, write_timeout=1.0):
    return ClientConnection("node-a", transport or FakeTransport(), 1.0, write_timeout)


def data_msg(link_id, payload=b"x"):
    return Msg(type=MsgType.SHELL_DATA, from_="node-b", link_id=link_id, payload=ShellData(payload))


def test_dispatch_routes_to_link_queue():
    conn = make_conn()
    conn.add_link("l1")
    msg = data_msg("l1")
    assert conn.dispatch(msg) is True
    assert conn.chan_read("l1").get_nowait() is msg
    assert conn.unknown().empty()


def test_dispatch_unknown_link_goes_to_unknown_queue():
    conn = make_conn()
    msg = data_msg("missing")
    assert conn.dispatch(msg) is True
    assert conn.unknown().get_nowait() is msg


def test_keepalive_is_not_dispatched():
    conn = make_conn()
    assert conn.dispatch(Msg(type=MsgType.KEEPALIVE, link_id="l1")) is True
    assert conn.unknown().empty()


def test_disconnect_marks_link_dropped():
    conn = make_conn()
    conn.add_link("l1")
    assert conn.dispatch(Msg(type=MsgType.DISCONNECT, link_id="l1")) is True
    assert conn.is_dropped("l1")
    conn.dispatch(data_msg("l1"))
    assert conn.chan_read("l1").empty()


def test_chan_close_ends_queue_and_drops_link():
    conn = make_conn()
    conn.add_link("l1")
    reader = conn.chan_read("l1")
    conn.chan_close("l1")
    assert reader.get_nowait() is None
    assert conn.chan_read("l1") is None
    assert conn.is_dropped("l1")


def test_requeue_puts_message_back():
    conn = make_conn()
    conn.add_link("l1")
    msg = data_msg("l1")
    conn.requeue("l1", msg)
    assert conn.chan_read("l1").get_nowait() is msg


def test_requeue_unknown_link_raises():
    conn = make_conn()
    with pytest.raises(KeyError):
        conn.requeue("nope", data_msg("nope"))


def test_expire_drops_forgets_old_entries():
    conn = make_conn()
    conn.chan_close("l1")
    assert conn.expire_drops() == []
    assert conn.is_dropped("l1")
    assert conn.expire_drops(time.monotonic() + 601) == ["l1"]
    assert not conn.is_dropped("l1")


def test_full_link_queue_drops_after_timeout():
    conn = make_conn(write_timeout=0.05)
    conn.add_link("l1")
    while not conn.chan_read("l1").full():
        assert conn.dispatch(data_msg("l1")) is True
    assert conn.dispatch(data_msg("l1")) is True
    assert conn.is_dropped("l1")


def test_blocked_dispatch_on_closed_connection_stops_reading():
    transport = FakeTransport()
    conn = make_conn(transport, write_timeout=0.5)
    conn.add_link("l1")
    while not conn.chan_read("l1").full():
        conn.dispatch(data_msg("l1"))
    conn.close()
    assert transport.closed.is_set()
    assert conn.dispatch(data_msg("l1")) is False


def test_send_returns_encoded_size():
    conn = make_conn()
    msg = data_msg("l1", b"hello")
    expected = len(MsgpackCodec().marshal(msg))
    assert conn.send(msg) == expected


def test_writer_stamps_sender_id():
    transport = FakeTransport()
    conn = make_conn(transport)
    conn.start()
    try:
        conn.send(Msg(type=MsgType.DISCONNECT, to="node-b", link_id="l1"))
        written = transport.written.get(timeout=2)
        assert written.from_ == "node-a"
        assert written.link_id == "l1"
    finally:
        conn.close()


def test_send_keepalive_goes_to_server():
    transport = FakeTransport()
    conn = make_conn(transport)
    conn.start()
    try:
        conn.send_keepalive()
        written = transport.written.get(timeout=2)
        assert written.type == MsgType.KEEPALIVE
        assert written.to == "server"
    finally:
        conn.close()


def test_read_error_closes_connection():
    transport = FakeTransport([ConnectionError("boom")])
    conn = make_conn(transport)
    conn.start()
    assert conn.wait(2) is True
    assert transport.closed.is_set()


def test_too_many_read_timeouts_close_connection():
    transport = FakeTransport([TimeoutError() for _ in range(60)] + [data_msg("late")])
    conn = make_conn(transport)
    conn.start()
    assert conn.wait(2) is True
    assert conn.unknown().empty()


def test_wait_times_out_while_open():
    conn = make_conn()
    assert conn.wait(0.01) is False


def test_read_loop_dispatches_messages():
    msg = data_msg("unknown-link")
    transport = FakeTransport([msg, ConnectionError("done")])
    conn = make_conn(transport)
    conn.start()
    assert conn.unknown().get(timeout=2) is msg
    assert conn.wait(2) is True


def test_write_handshake_sends_token():
    hasher = Hasher("secret")
    transport = FakeTransport()
    before = hasher.hash()
    write_handshake(transport, "node-a", hasher)
    after = hasher.hash()
    msg = transport.written.get_nowait()
    assert msg.type == MsgType.HANDSHAKE
    assert msg.from_ == "node-a"
    assert msg.to == "server"
    assert msg.payload.enc in (before, after)


def test_connect_sends_handshake_over_socket():
    hasher = Hasher("secret")
    listener = socket.create_server(("127.0.0.1", 0))
    port = listener.getsockname()[1]
    received = {}

    def accept():
        sock, _ = listener.accept()
        with FramedConnection(sock) as server_side:
            received["msg"], _ = server_side.read_message(5)

    thread = threading.Thread(target=accept)
    thread.start()
    conn = connect(
        f"127.0.0.1:{port}",
        "node-a",
        hasher,
        use_ssl=False,
        ssl_insecure=False,
        read_timeout=1.0,
        write_timeout=1.0,
    )
    thread.join(5)
    probe = data_msg("l1", b"probe")
    sent_size = conn.send(probe)
    conn.close()
    listener.close()
    assert sent_size == len(MsgpackCodec().marshal(probe))
    msg = received["msg"]
    assert msg.type == MsgType.HANDSHAKE
    assert msg.from_ == "node-a"
    assert len(msg.payload.enc) == 64


def test_connect_rejects_bad_address():
    with pytest.raises(ValueError):
        connect("no-port", "node-a", Hasher("secret"), False, False, 1.0, 1.0)