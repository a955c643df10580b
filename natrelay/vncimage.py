"""Screen images: tiling, change detection, tile encoding and browser replies."""

from __future__ import annotations

import io
import struct
from dataclasses import dataclass, field
from typing import Iterator

from PIL import Image

from natrelay.builders import Rect
from natrelay.message import VncImageEncoding, VncImageInfo

TILE_WIDTH = 64
TILE_HEIGHT = 64
_UINT32 = 0xFFFFFFFF
_REPLY_HEADER = struct.Struct(">7I")


@dataclass
class RgbaImage:
    """An RGBA image stored row by row, four bytes per pixel."""

    width: int
    height: int
    pix: bytearray = field(default_factory=bytearray)

    def __post_init__(self) -> None:
        if self.width < 0 or self.height < 0:
            raise ValueError("image size must not be negative")
        expected = self.width * self.height * 4
        if not self.pix:
            self.pix = bytearray(expected)
        else:
            self.pix = bytearray(self.pix)
        if len(self.pix) != expected:
            raise ValueError(
                f"pixel data has {len(self.pix)} bytes, want {expected}"
            )

    @property
    def bounds(self) -> Rect:
        return Rect(0, 0, self.width, self.height)

    def _span(self, y: int, x0: int, x1: int) -> memoryview:
        row = y * self.width
        return memoryview(self.pix)[(row + x0) * 4 : (row + x1) * 4]


def tiles(width: int, height: int) -> Iterator[Rect]:
    """Split a ``width`` x ``height`` screen into 64x64 tiles, row by row."""
    for y in range(0, height, TILE_HEIGHT):
        for x in range(0, width, TILE_WIDTH):
            yield Rect(x, y, min(x + TILE_WIDTH, width), min(y + TILE_HEIGHT, height))


def _differs(src: RgbaImage, dst: RgbaImage, rect: Rect) -> bool:
    return any(
        src._span(y, rect.min_x, rect.max_x) != dst._span(y, rect.min_x, rect.max_x)
        for y in range(rect.min_y, rect.max_y)
    )


def calc_diff(src: RgbaImage, dst: RgbaImage) -> list[Rect]:
    """Return the tiles of ``dst`` whose pixels differ from ``src``."""
    if (src.width, src.height) != (dst.width, dst.height):
        raise ValueError("images differ in size")
    return [rect for rect in tiles(dst.width, dst.height) if _differs(src, dst, rect)]


def cut(image: RgbaImage, rect: Rect) -> RgbaImage:
    """Copy the pixels inside ``rect`` into a new image."""
    if (
        rect.min_x < 0
        or rect.min_y < 0
        or rect.max_x > image.width
        or rect.max_y > image.height
        or rect.dx() < 0
        or rect.dy() < 0
    ):
        raise ValueError("rectangle outside the image")
    data = b"".join(
        image._span(y, rect.min_x, rect.max_x) for y in range(rect.min_y, rect.max_y)
    )
    return RgbaImage(rect.dx(), rect.dy(), bytearray(data))


def encode_tile(image: RgbaImage, quality: int) -> tuple[VncImageEncoding, bytes]:
    """Encode a tile as raw pixels at quality 100, else as JPEG (raw if that fails)."""
    raw = bytes(image.pix)
    if quality == 100:
        return VncImageEncoding.RAW, raw
    try:
        picture = Image.frombytes("RGBA", (image.width, image.height), raw).convert("RGB")
        buffer = io.BytesIO()
        picture.save(buffer, format="JPEG", quality=max(1, min(100, quality)))
    except (OSError, ValueError, SystemError):
        return VncImageEncoding.RAW, raw
    return VncImageEncoding.JPEG, buffer.getvalue()


def decode_image(encoding: VncImageEncoding, data: bytes) -> bytes:
    """Turn a received tile back into RGBA pixel bytes."""
    if encoding == VncImageEncoding.RAW:
        return bytes(data)
    if encoding == VncImageEncoding.JPEG:
        try:
            with Image.open(io.BytesIO(data)) as picture:
                return picture.convert("RGBA").tobytes()
        except (OSError, ValueError) as exc:
            raise ValueError(f"invalid jpeg data: {exc}") from exc
    raise ValueError("unsupported")


def encode_reply(info: VncImageInfo, data: bytes, src_size: int) -> bytes:
    """Build the binary frame sent to the browser: seven big-endian uint32 then pixels."""
    header = _REPLY_HEADER.pack(
        info.screen_width & _UINT32,
        info.screen_height & _UINT32,
        info.rect_x & _UINT32,
        info.rect_y & _UINT32,
        info.rect_width & _UINT32,
        info.rect_height & _UINT32,
        src_size & _UINT32,
    )
    return header + bytes(data)