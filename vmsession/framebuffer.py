"""Pixel buffer, cursor overlay and frame handoff for the RFB client."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Optional, Tuple

Pixel = Tuple[int, int, int]

# 11x16 arrow drawn when the server never sent a cursor shape.
# "#" outline (black), "." fill (white), " " transparent.
_DEFAULT_ARROW = (
    "#          ",
    "##         ",
    "#.#        ",
    "#..#       ",
    "#...#      ",
    "#....#     ",
    "#.....#    ",
    "#......#   ",
    "#.......#  ",
    "#........# ",
    "#.....#####",
    "#..#..#    ",
    "#.# #..#   ",
    "##  #..#   ",
    "#    #..#  ",
    "     ####  ",
)


@dataclass(frozen=True)
class Frame:
    """Immutable RGB snapshot handed to consumers."""

    width: int
    height: int
    pixels: bytes

    def pixel(self, x: int, y: int) -> Pixel:
        offset = (y * self.width + x) * 3
        return self.pixels[offset], self.pixels[offset + 1], self.pixels[offset + 2]

    def to_ppm(self) -> bytes:
        header = f"P6\n{self.width} {self.height}\n255\n".encode("ascii")
        return header + self.pixels


@dataclass(frozen=True)
class CursorImage:
    width: int
    height: int
    hot_x: int
    hot_y: int
    rgba: bytes

    @classmethod
    def from_bgrx(cls, hot_x: int, hot_y: int, width: int, height: int, pixels: bytes, mask: bytes) -> "CursorImage":
        """Rich cursor: BGRX pixels in the negotiated format plus a 1-bit opacity mask."""
        row_bytes = (width + 7) // 8
        rgba = bytearray(width * height * 4)
        for y in range(height):
            for x in range(width):
                src = (y * width + x) * 4
                dst = src
                rgba[dst] = pixels[src + 2]
                rgba[dst + 1] = pixels[src + 1]
                rgba[dst + 2] = pixels[src]
                if (mask[y * row_bytes + x // 8] >> (7 - x % 8)) & 1:
                    rgba[dst + 3] = 255
        return cls(width, height, hot_x, hot_y, bytes(rgba))

    @classmethod
    def from_xcursor(
        cls,
        hot_x: int,
        hot_y: int,
        width: int,
        height: int,
        fg: Pixel,
        bg: Pixel,
        bitmap: bytes,
        mask: bytes,
    ) -> "CursorImage":
        """Two-colour cursor: bitmap selects fg/bg, mask selects opacity."""
        row_bytes = (width + 7) // 8
        rgba = bytearray(width * height * 4)
        for y in range(height):
            for x in range(width):
                byte_idx = y * row_bytes + x // 8
                bit = 7 - x % 8
                if not (mask[byte_idx] >> bit) & 1:
                    continue
                colour = fg if (bitmap[byte_idx] >> bit) & 1 else bg
                dst = (y * width + x) * 4
                rgba[dst : dst + 4] = bytes((colour[0], colour[1], colour[2], 255))
        return cls(width, height, hot_x, hot_y, bytes(rgba))


def default_cursor() -> CursorImage:
    height = len(_DEFAULT_ARROW)
    width = len(_DEFAULT_ARROW[0])
    rgba = bytearray(width * height * 4)
    for y, row in enumerate(_DEFAULT_ARROW):
        for x, cell in enumerate(row):
            if cell == " ":
                continue
            value = 0 if cell == "#" else 255
            dst = (y * width + x) * 4
            rgba[dst : dst + 4] = bytes((value, value, value, 255))
    return CursorImage(width, height, 0, 0, bytes(rgba))


class Framebuffer:
    """Mutable 24-bit RGB pixel grid, row-major, owned by one session."""

    def __init__(self, width: int, height: int) -> None:
        self.width = 0
        self.height = 0
        self.pixels = bytearray()
        self.resize(width, height)

    def resize(self, width: int, height: int) -> None:
        self.width = width
        self.height = height
        self.pixels = bytearray(width * height * 3)

    def pixel(self, x: int, y: int) -> Pixel:
        offset = (y * self.width + x) * 3
        return self.pixels[offset], self.pixels[offset + 1], self.pixels[offset + 2]

    def blit_bgrx(self, x: int, y: int, width: int, height: int, data: bytes) -> None:
        """Copy a rectangle of 32-bit B,G,R,X pixels into the buffer, clipped to bounds."""
        visible_w = min(width, self.width - x)
        visible_h = min(height, self.height - y)
        if visible_w <= 0 or visible_h <= 0:
            return
        stride = width * 4
        row = bytearray(visible_w * 3)
        for line in range(visible_h):
            src = data[line * stride : line * stride + visible_w * 4]
            row[0::3] = src[2::4]
            row[1::3] = src[1::4]
            row[2::3] = src[0::4]
            dst = ((y + line) * self.width + x) * 3
            self.pixels[dst : dst + visible_w * 3] = row

    def copy_rect(self, src_x: int, src_y: int, x: int, y: int, width: int, height: int) -> None:
        width = min(width, self.width - x, self.width - src_x)
        height = min(height, self.height - y, self.height - src_y)
        if width <= 0 or height <= 0:
            return
        rows = []
        for line in range(height):
            src = ((src_y + line) * self.width + src_x) * 3
            rows.append(bytes(self.pixels[src : src + width * 3]))
        for line, data in enumerate(rows):
            dst = ((y + line) * self.width + x) * 3
            self.pixels[dst : dst + width * 3] = data

    def snapshot(self) -> Frame:
        return Frame(self.width, self.height, bytes(self.pixels))

    def composite(self, cursor: Optional[CursorImage], pointer: Tuple[int, int]) -> Frame:
        """Return a copy of the buffer with the cursor drawn at pointer minus hotspot."""
        if cursor is None or self.width == 0 or self.height == 0:
            return self.snapshot()
        out = bytearray(self.pixels)
        origin_x = min(max(pointer[0] - cursor.hot_x, 0), self.width - 1)
        origin_y = min(max(pointer[1] - cursor.hot_y, 0), self.height - 1)
        for cy in range(cursor.height):
            ty = origin_y + cy
            if ty >= self.height:
                break
            for cx in range(cursor.width):
                tx = origin_x + cx
                if tx >= self.width:
                    break
                src = (cy * cursor.width + cx) * 4
                if cursor.rgba[src + 3] == 0:
                    continue
                dst = (ty * self.width + tx) * 3
                out[dst : dst + 3] = cursor.rgba[src : src + 3]
        return Frame(self.width, self.height, bytes(out))


class LatestFrame:
    """Single-slot handoff: a new frame replaces any frame not yet taken."""

    def __init__(self) -> None:
        self._frame: Optional[Frame] = None
        self._cond = threading.Condition()
        self.published = 0
        self.dropped = 0

    def put(self, frame: Frame) -> None:
        with self._cond:
            if self._frame is not None:
                self.dropped += 1
            self._frame = frame
            self.published += 1
            self._cond.notify_all()

    def take(self, timeout: Optional[float] = None) -> Optional[Frame]:
        """Wait for and remove the pending frame; None on timeout."""
        with self._cond:
            if self._frame is None:
                self._cond.wait_for(lambda: self._frame is not None, timeout=timeout)
            frame, self._frame = self._frame, None
            return frame

    def peek(self) -> Optional[Frame]:
        with self._cond:
            return self._frame
