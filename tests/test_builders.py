import pytest

from natrelay import builders
from natrelay.builders import Rect
from natrelay.message import (
    ClipboardType,
    ConnectRequestType,
    MsgpackCodec,
    MsgType,
    VncButton,
    VncImageEncoding,
    VncStatus,
)


def roundtrip(msg):
    codec = MsgpackCodec()
    return codec.unmarshal(codec.marshal(msg))


@pytest.mark.parametrize("fps,expected", [(0, 10), (60, 50), (50, 50), (30, 30)])
def test_clamp_fps(fps, expected):
    assert builders.clamp_fps(fps) == expected


def test_rect_size():
    rect = Rect(2, 3, 10, 7)
    assert rect.dx() == 8
    assert rect.dy() == 4


def test_connect_request_shell():
    msg = builders.connect_request("id1", "shell", "sh", "peer", "/bin/zsh", ["A=1"], 0)
    assert msg.type == MsgType.CONNECT_REQ
    assert msg.to == "peer"
    assert msg.link_id == "id1"
    assert msg.payload.type == ConnectRequestType.SHELL
    assert msg.payload.exec_ == "/bin/zsh"
    assert msg.payload.env == ["A=1"]
    assert roundtrip(msg) == msg


def test_connect_request_vnc_clamps_fps():
    msg = builders.connect_request("id", "vnc", "desk", "peer", fps=100)
    assert msg.payload.type == ConnectRequestType.VNC
    assert msg.payload.fps == 50
    assert builders.connect_request("id", "vnc", "desk", "peer").payload.fps == 10


@pytest.mark.parametrize(
    "rule_type,kind",
    [("bench", ConnectRequestType.BENCH), ("code-server", ConnectRequestType.CODE)],
)
def test_connect_request_other_types(rule_type, kind):
    msg = builders.connect_request("id", rule_type, "n", "peer")
    assert msg.payload.type == kind
    assert msg.payload.name == "n"


def test_connect_request_unknown_type_has_no_payload():
    msg = builders.connect_request("id", "nope", "n", "peer")
    assert msg.payload is None
    assert msg.type == MsgType.CONNECT_REQ


def test_connect_vnc():
    msg = builders.connect_vnc("id", "desk", "peer", 0, 80, True)
    assert msg.payload.fps == 10
    assert msg.payload.quality == 80
    assert msg.payload.cursor is True
    assert roundtrip(msg) == msg


def test_disconnect_and_responses():
    assert builders.disconnect("peer", "id").type == MsgType.DISCONNECT
    err = builders.connect_error("peer", "id", "boom")
    assert err.type == MsgType.CONNECT_REP
    assert err.payload.ok is False
    assert err.payload.message == "boom"
    ok = builders.connect_ok("peer", "id")
    assert ok.payload.ok is True
    assert roundtrip(err) == err


def test_shell_data_copies():
    source = bytearray(b"ls\n")
    msg = builders.shell_data("peer", "id", source)
    source[0] = ord("x")
    assert msg.payload.data == b"ls\n"
    assert roundtrip(msg) == msg


def test_shell_resize():
    msg = builders.shell_resize("peer", "id", 24, 80)
    assert msg.type == MsgType.SHELL_RESIZE
    assert (msg.payload.rows, msg.payload.cols) == (24, 80)


def test_vnc_image_info():
    screen = Rect(0, 0, 1920, 1080)
    rect = Rect(64, 128, 128, 192)
    msg = builders.vnc_image("peer", "id", screen, rect, VncImageEncoding.JPEG, b"\xff\xd8")
    info = msg.payload.info
    assert (info.screen_width, info.screen_height) == (1920, 1080)
    assert (info.rect_x, info.rect_y) == (64, 128)
    assert info.rect_width == rect.dx()
    assert info.rect_height == rect.dy()
    assert msg.payload.encoding == VncImageEncoding.JPEG
    assert roundtrip(msg) == msg


def test_vnc_ctrl():
    msg = builders.vnc_ctrl("peer", "id", 50, False)
    assert msg.type == MsgType.VNC_CTRL
    assert msg.payload.quality == 50
    assert msg.payload.cursor is False


@pytest.mark.parametrize(
    "button,status,btn,st",
    [
        ("left", "down", VncButton.LEFT, VncStatus.DOWN),
        ("middle", "up", VncButton.MIDDLE, VncStatus.UP),
        ("right", "down", VncButton.RIGHT, VncStatus.DOWN),
        ("wheel", "hover", VncButton.UNSET, VncStatus.UNSET),
    ],
)
def test_vnc_mouse_mapping(button, status, btn, st):
    msg = builders.vnc_mouse("peer", "id", button, status, 5, 6)
    assert msg.payload.button == btn
    assert msg.payload.status == st
    assert (msg.payload.x, msg.payload.y) == (5, 6)


def test_vnc_mouse_negative_wraps_to_uint32():
    msg = builders.vnc_mouse("peer", "id", "left", "down", -1, 0)
    assert msg.payload.x == 0xFFFFFFFF


def test_vnc_keyboard():
    msg = builders.vnc_keyboard("peer", "id", "up", "a")
    assert msg.payload.status == VncStatus.UP
    assert msg.payload.key == "a"
    assert builders.vnc_keyboard("peer", "id", "x", "a").payload.status == VncStatus.UNSET


def test_vnc_cad_and_scroll():
    cad = builders.vnc_cad("peer", "id")
    assert cad.type == MsgType.VNC_CAD
    assert cad.payload is None
    scroll = builders.vnc_scroll("peer", "id", -3, 4)
    assert (scroll.payload.x, scroll.payload.y) == (-3, 4)
    assert roundtrip(scroll) == scroll


def test_vnc_clipboard():
    msg = builders.vnc_clipboard("peer", "id", True, "hello")
    assert msg.payload.set is True
    assert msg.payload.type == ClipboardType.TEXT
    assert msg.payload.data == "hello"
    assert roundtrip(msg) == msg


def test_code_request_copies_header():
    header = {"Accept": ["text/html", "*/*"]}
    msg = builders.code_request("peer", "id", 7, "GET", "/x?y=1", b"", header)
    header["Accept"].append("more")
    assert msg.payload.header == {"Accept": ["text/html", "*/*"]}
    assert msg.payload.request_id == 7
    assert msg.payload.method == "GET"
    assert roundtrip(msg) == msg


def test_code_connect_none_header():
    msg = builders.code_connect("peer", "id", 1, "/ws", None)
    assert msg.type == MsgType.CODE_CONNECT
    assert msg.payload.header == {}


def test_code_response_header():
    msg = builders.code_response_header("peer", "id", 3, 404, {"X": ["1"]})
    assert msg.payload.code == 404
    assert msg.payload.header == {"X": ["1"]}


def test_code_response_body_mask():
    ok_only = builders.code_response_body("p", "id", 1, 0, True, False, b"a")
    done_only = builders.code_response_body("p", "id", 1, 0, False, True, b"a")
    both = builders.code_response_body("p", "id", 1, 2, True, True, b"a")
    assert ok_only.payload.mask == 1
    assert done_only.payload.mask == 2
    assert both.payload.mask & 1 and both.payload.mask & 2
    assert both.payload.index == 2
    assert roundtrip(both) == both


def test_code_connect_response_and_data():
    rep = builders.code_connect_response("p", "id", 9, False, "refused", None)
    assert rep.type == MsgType.CODE_CONNECT_RESPONSE
    assert rep.payload.ok is False
    assert rep.payload.message == "refused"
    data = builders.code_data("p", "id", 9, True, 2, b"\x00\x01")
    assert data.payload.type == 2
    assert data.payload.data == b"\x00\x01"
    assert roundtrip(data) == data