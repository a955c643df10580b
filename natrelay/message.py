"""Relay messages and their msgpack wire encoding."""

from __future__ import annotations

from dataclasses import dataclass, field, fields, is_dataclass
from enum import Enum, IntEnum
from typing import Any, Union

import msgpack


class _NamedEnum(IntEnum):
    def __str__(self) -> str:
        return self.name.lower()

    def __format__(self, spec: str) -> str:
        return format(str(self), spec)


class MsgType(_NamedEnum):
    HANDSHAKE = 0
    CONNECT_REQ = 1
    CONNECT_REP = 2
    DISCONNECT = 3
    FORWARD = 4
    KEEPALIVE = 5
    SHELL_DATA = 6
    SHELL_RESIZE = 7
    VNC_IMAGE = 8
    VNC_CTRL = 9
    VNC_MOUSE = 10
    VNC_KEYBOARD = 11
    VNC_CAD = 12
    VNC_SCROLL = 13
    VNC_CLIPBOARD = 14
    CODE_REQUEST = 15
    CODE_CONNECT = 16
    CODE_RESPONSE_HDR = 17
    CODE_RESPONSE_BODY = 18
    CODE_CONNECT_RESPONSE = 19
    CODE_DATA = 20


class ConnectRequestType(_NamedEnum):
    SHELL = 0
    VNC = 1
    BENCH = 2
    CODE = 3


class VncImageEncoding(_NamedEnum):
    RAW = 0
    JPEG = 1
    PNG = 2


class VncStatus(_NamedEnum):
    UNSET = 0
    DOWN = 1
    UP = 2


class VncButton(_NamedEnum):
    UNSET = 0
    LEFT = 1
    MIDDLE = 2
    RIGHT = 3


class ClipboardType(_NamedEnum):
    UNSET = 0
    TEXT = 1
    IMAGE = 2
    FILE = 3


@dataclass
class HandshakePayload:
    enc: bytes = b""


@dataclass
class ConnectRequest:
    """Request to open a link; shell and vnc options travel alongside."""

    name: str = ""
    type: ConnectRequestType = ConnectRequestType.SHELL
    exec_: str = ""
    env: list[str] = field(default_factory=list)
    fps: int = 0
    quality: int = 0
    cursor: bool = False


@dataclass
class ConnectResponse:
    ok: bool = False
    message: str = ""


@dataclass
class ForwardData:
    data: bytes = b""


@dataclass
class ShellData:
    data: bytes = b""


@dataclass
class ShellResize:
    rows: int = 0
    cols: int = 0


@dataclass
class VncImageInfo:
    screen_width: int = 0
    screen_height: int = 0
    rect_x: int = 0
    rect_y: int = 0
    rect_width: int = 0
    rect_height: int = 0


@dataclass
class VncImage:
    info: VncImageInfo = field(default_factory=VncImageInfo)
    encoding: VncImageEncoding = VncImageEncoding.RAW
    data: bytes = b""


@dataclass
class VncControl:
    quality: int = 0
    cursor: bool = False


@dataclass
class VncMouse:
    status: VncStatus = VncStatus.UNSET
    button: VncButton = VncButton.UNSET
    x: int = 0
    y: int = 0


@dataclass
class VncKeyboard:
    status: VncStatus = VncStatus.UNSET
    key: str = ""


@dataclass
class VncScroll:
    x: int = 0
    y: int = 0


@dataclass
class VncClipboard:
    set: bool = False
    type: ClipboardType = ClipboardType.UNSET
    data: str = ""


@dataclass
class CodeRequest:
    request_id: int = 0
    method: str = ""
    uri: str = ""
    body: bytes = b""
    header: dict[str, list[str]] = field(default_factory=dict)


@dataclass
class CodeConnect:
    request_id: int = 0
    uri: str = ""
    header: dict[str, list[str]] = field(default_factory=dict)


@dataclass
class CodeResponseHeader:
    request_id: int = 0
    code: int = 0
    header: dict[str, list[str]] = field(default_factory=dict)


@dataclass
class CodeResponseBody:
    request_id: int = 0
    index: int = 0
    mask: int = 0
    body: bytes = b""


@dataclass
class CodeConnectResponse:
    request_id: int = 0
    ok: bool = False
    message: str = ""
    header: dict[str, list[str]] = field(default_factory=dict)


@dataclass
class CodeData:
    request_id: int = 0
    ok: bool = False
    type: int = 0
    data: bytes = b""


Payload = Union[
    HandshakePayload,
    ConnectRequest,
    ConnectResponse,
    ForwardData,
    ShellData,
    ShellResize,
    VncImage,
    VncControl,
    VncMouse,
    VncKeyboard,
    VncScroll,
    VncClipboard,
    CodeRequest,
    CodeConnect,
    CodeResponseHeader,
    CodeResponseBody,
    CodeConnectResponse,
    CodeData,
]


@dataclass
class Msg:
    """One relayed message: routing fields plus an optional payload."""

    type: MsgType = MsgType.HANDSHAKE
    from_: str = ""
    to: str = ""
    link_id: str = ""
    payload: Payload | None = None


_PAYLOAD_CLASSES: dict[str, type] = {
    cls.__name__: cls
    for cls in (
        HandshakePayload,
        ConnectRequest,
        ConnectResponse,
        ForwardData,
        ShellData,
        ShellResize,
        VncImage,
        VncControl,
        VncMouse,
        VncKeyboard,
        VncScroll,
        VncClipboard,
        CodeRequest,
        CodeConnect,
        CodeResponseHeader,
        CodeResponseBody,
        CodeConnectResponse,
        CodeData,
    )
}

_FIELD_CONVERTERS: dict[type, dict[str, Any]] = {
    ConnectRequest: {"type": ConnectRequestType},
    VncImage: {
        "encoding": VncImageEncoding,
        "info": lambda value: _from_wire(VncImageInfo, value),
    },
    VncMouse: {"status": VncStatus, "button": VncButton},
    VncKeyboard: {"status": VncStatus},
    VncClipboard: {"type": ClipboardType},
}


def _to_wire(value: Any) -> Any:
    if is_dataclass(value) and not isinstance(value, type):
        return {f.name: _to_wire(getattr(value, f.name)) for f in fields(value)}
    if isinstance(value, Enum):
        return int(value)
    if isinstance(value, (list, tuple)):
        return [_to_wire(item) for item in value]
    if isinstance(value, dict):
        return {key: _to_wire(item) for key, item in value.items()}
    return value


def _from_wire(cls: type, data: Any) -> Any:
    if not isinstance(data, dict):
        raise ValueError(f"invalid {cls.__name__} payload")
    known = {f.name for f in fields(cls)}
    converters = _FIELD_CONVERTERS.get(cls, {})
    kwargs = {}
    for name, value in data.items():
        if name not in known:
            raise ValueError(f"unknown field {name!r} for {cls.__name__}")
        convert = converters.get(name)
        kwargs[name] = convert(value) if convert is not None else value
    return cls(**kwargs)


class MsgpackCodec:
    """Encodes :class:`Msg` values to bytes and back."""

    def marshal(self, msg: Msg) -> bytes:
        if not isinstance(msg, Msg):
            raise TypeError(f"invalid value type, want Msg, got {type(msg).__name__}")
        payload = None
        if msg.payload is not None:
            kind = type(msg.payload).__name__
            if kind not in _PAYLOAD_CLASSES:
                raise TypeError(f"unsupported payload type {kind}")
            payload = [kind, _to_wire(msg.payload)]
        wire = {
            "type": int(msg.type),
            "from": msg.from_,
            "to": msg.to,
            "link_id": msg.link_id,
            "payload": payload,
        }
        return msgpack.packb(wire, use_bin_type=True)

    def unmarshal(self, data: bytes) -> Msg:
        try:
            wire = msgpack.unpackb(data, raw=False)
        except (ValueError, TypeError, msgpack.UnpackException) as exc:
            raise ValueError(f"invalid message: {exc}") from exc
        if not isinstance(wire, dict):
            raise ValueError("invalid message: not a map")
        try:
            payload = None
            raw_payload = wire.get("payload")
            if raw_payload is not None:
                kind, body = raw_payload
                cls = _PAYLOAD_CLASSES.get(kind)
                if cls is None:
                    raise ValueError(f"unknown payload kind {kind!r}")
                payload = _from_wire(cls, body)
            return Msg(
                type=MsgType(wire.get("type", 0)),
                from_=wire.get("from", ""),
                to=wire.get("to", ""),
                link_id=wire.get("link_id", ""),
                payload=payload,
            )
        except (TypeError, KeyError) as exc:
            raise ValueError(f"invalid message: {exc}") from exc