"""Constructors for the messages a client sends through the relay."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Mapping, Optional

from natrelay.message import (
    ClipboardType,
    CodeConnect,
    CodeConnectResponse,
    CodeData,
    CodeRequest,
    CodeResponseBody,
    CodeResponseHeader,
    ConnectRequest,
    ConnectRequestType,
    ConnectResponse,
    Msg,
    MsgType,
    ShellData,
    ShellResize,
    VncButton,
    VncClipboard,
    VncControl,
    VncImage,
    VncImageEncoding,
    VncImageInfo,
    VncKeyboard,
    VncMouse,
    VncScroll,
    VncStatus,
)

_MAX_FPS = 50
_DEFAULT_FPS = 10
_UINT32 = 0xFFFFFFFF

_RULE_TYPES = {
    "shell": ConnectRequestType.SHELL,
    "vnc": ConnectRequestType.VNC,
    "bench": ConnectRequestType.BENCH,
    "code-server": ConnectRequestType.CODE,
}

_STATUSES = {"down": VncStatus.DOWN, "up": VncStatus.UP}

_BUTTONS = {
    "left": VncButton.LEFT,
    "middle": VncButton.MIDDLE,
    "right": VncButton.RIGHT,
}

Header = Optional[Mapping[str, Iterable[str]]]


@dataclass(frozen=True)
class Rect:
    """An axis-aligned rectangle; ``max`` bounds are exclusive."""

    min_x: int = 0
    min_y: int = 0
    max_x: int = 0
    max_y: int = 0

    def dx(self) -> int:
        return self.max_x - self.min_x

    def dy(self) -> int:
        return self.max_y - self.min_y


def _u32(value: int) -> int:
    return int(value) & _UINT32


def _copy_header(header: Header) -> dict[str, list[str]]:
    if not header:
        return {}
    return {key: list(values) for key, values in header.items()}


def clamp_fps(fps: int) -> int:
    """Cap the frame rate at 50 and use 10 when none is given."""
    if fps > _MAX_FPS:
        return _MAX_FPS
    if fps == 0:
        return _DEFAULT_FPS
    return fps


def connect_request(
    link_id: str,
    rule_type: str,
    name: str,
    target: str,
    exec_: str = "",
    env: Iterable[str] = (),
    fps: int = 0,
) -> Msg:
    """Build a connect request for a rule of type shell, vnc, bench or code-server.

    An unknown rule type yields a request without payload.
    """
    msg = Msg(type=MsgType.CONNECT_REQ, to=target, link_id=link_id)
    kind = _RULE_TYPES.get(rule_type)
    if kind is ConnectRequestType.SHELL:
        msg.payload = ConnectRequest(name=name, type=kind, exec_=exec_, env=list(env))
    elif kind is ConnectRequestType.VNC:
        msg.payload = ConnectRequest(name=name, type=kind, fps=clamp_fps(fps))
    elif kind is not None:
        msg.payload = ConnectRequest(name=name, type=kind)
    return msg


def connect_vnc(
    link_id: str, name: str, target: str, fps: int, quality: int, show_cursor: bool
) -> Msg:
    """Build a vnc connect request carrying quality and cursor settings."""
    return Msg(
        type=MsgType.CONNECT_REQ,
        to=target,
        link_id=link_id,
        payload=ConnectRequest(
            name=name,
            type=ConnectRequestType.VNC,
            fps=clamp_fps(fps),
            quality=_u32(quality),
            cursor=bool(show_cursor),
        ),
    )


def disconnect(to: str, link_id: str) -> Msg:
    return Msg(type=MsgType.DISCONNECT, to=to, link_id=link_id)


def connect_error(to: str, link_id: str, info: str) -> Msg:
    return Msg(
        type=MsgType.CONNECT_REP,
        to=to,
        link_id=link_id,
        payload=ConnectResponse(ok=False, message=info),
    )


def connect_ok(to: str, link_id: str) -> Msg:
    return Msg(
        type=MsgType.CONNECT_REP,
        to=to,
        link_id=link_id,
        payload=ConnectResponse(ok=True),
    )


def shell_data(to: str, link_id: str, data: bytes) -> Msg:
    return Msg(
        type=MsgType.SHELL_DATA, to=to, link_id=link_id, payload=ShellData(data=bytes(data))
    )


def shell_resize(to: str, link_id: str, rows: int, cols: int) -> Msg:
    return Msg(
        type=MsgType.SHELL_RESIZE,
        to=to,
        link_id=link_id,
        payload=ShellResize(rows=_u32(rows), cols=_u32(cols)),
    )


def vnc_image(
    to: str,
    link_id: str,
    screen: Rect,
    rect: Rect,
    encoding: VncImageEncoding,
    data: bytes,
) -> Msg:
    """Build an image tile message for ``rect`` within a screen of ``screen``'s size."""
    info = VncImageInfo(
        screen_width=_u32(screen.dx()),
        screen_height=_u32(screen.dy()),
        rect_x=_u32(rect.min_x),
        rect_y=_u32(rect.min_y),
        rect_width=_u32(rect.dx()),
        rect_height=_u32(rect.dy()),
    )
    return Msg(
        type=MsgType.VNC_IMAGE,
        to=to,
        link_id=link_id,
        payload=VncImage(info=info, encoding=VncImageEncoding(encoding), data=bytes(data)),
    )


def vnc_ctrl(to: str, link_id: str, quality: int, show_cursor: bool) -> Msg:
    return Msg(
        type=MsgType.VNC_CTRL,
        to=to,
        link_id=link_id,
        payload=VncControl(quality=_u32(quality), cursor=bool(show_cursor)),
    )


def vnc_mouse(to: str, link_id: str, button: str, status: str, x: int, y: int) -> Msg:
    """Build a mouse event; unknown button or status names map to unset."""
    return Msg(
        type=MsgType.VNC_MOUSE,
        to=to,
        link_id=link_id,
        payload=VncMouse(
            status=_STATUSES.get(status, VncStatus.UNSET),
            button=_BUTTONS.get(button, VncButton.UNSET),
            x=_u32(x),
            y=_u32(y),
        ),
    )


def vnc_keyboard(to: str, link_id: str, status: str, key: str) -> Msg:
    return Msg(
        type=MsgType.VNC_KEYBOARD,
        to=to,
        link_id=link_id,
        payload=VncKeyboard(status=_STATUSES.get(status, VncStatus.UNSET), key=key),
    )


def vnc_cad(to: str, link_id: str) -> Msg:
    return Msg(type=MsgType.VNC_CAD, to=to, link_id=link_id)


def vnc_scroll(to: str, link_id: str, x: int, y: int) -> Msg:
    return Msg(
        type=MsgType.VNC_SCROLL,
        to=to,
        link_id=link_id,
        payload=VncScroll(x=int(x), y=int(y)),
    )


def vnc_clipboard(to: str, link_id: str, set_: bool, data: str) -> Msg:
    return Msg(
        type=MsgType.VNC_CLIPBOARD,
        to=to,
        link_id=link_id,
        payload=VncClipboard(set=bool(set_), type=ClipboardType.TEXT, data=data),
    )


def code_request(
    to: str,
    link_id: str,
    request_id: int,
    method: str,
    uri: str,
    body: bytes,
    header: Header,
) -> Msg:
    return Msg(
        type=MsgType.CODE_REQUEST,
        to=to,
        link_id=link_id,
        payload=CodeRequest(
            request_id=request_id,
            method=method,
            uri=uri,
            body=bytes(body),
            header=_copy_header(header),
        ),
    )


def code_connect(to: str, link_id: str, request_id: int, uri: str, header: Header) -> Msg:
    return Msg(
        type=MsgType.CODE_CONNECT,
        to=to,
        link_id=link_id,
        payload=CodeConnect(request_id=request_id, uri=uri, header=_copy_header(header)),
    )


def code_response_header(
    to: str, link_id: str, request_id: int, code: int, header: Header
) -> Msg:
    return Msg(
        type=MsgType.CODE_RESPONSE_HDR,
        to=to,
        link_id=link_id,
        payload=CodeResponseHeader(
            request_id=request_id, code=_u32(code), header=_copy_header(header)
        ),
    )


def code_response_body(
    to: str,
    link_id: str,
    request_id: int,
    index: int,
    ok: bool,
    done: bool,
    data: bytes,
) -> Msg:
    """Build one body chunk; mask bit 1 marks success, bit 2 the last chunk."""
    mask = (1 if ok else 0) | (2 if done else 0)
    return Msg(
        type=MsgType.CODE_RESPONSE_BODY,
        to=to,
        link_id=link_id,
        payload=CodeResponseBody(
            request_id=request_id, index=_u32(index), mask=mask, body=bytes(data)
        ),
    )


def code_connect_response(
    to: str,
    link_id: str,
    request_id: int,
    ok: bool,
    message: str,
    header: Header,
) -> Msg:
    return Msg(
        type=MsgType.CODE_CONNECT_RESPONSE,
        to=to,
        link_id=link_id,
        payload=CodeConnectResponse(
            request_id=request_id, ok=bool(ok), message=message, header=_copy_header(header)
        ),
    )


def code_data(
    to: str, link_id: str, request_id: int, ok: bool, data_type: int, body: bytes
) -> Msg:
    return Msg(
        type=MsgType.CODE_DATA,
        to=to,
        link_id=link_id,
        payload=CodeData(request_id=request_id, ok=bool(ok), type=_u32(data_type), data=bytes(body)),
    )