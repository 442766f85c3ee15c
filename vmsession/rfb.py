"""RFB 3.8 client for the emulator's VNC display.

One ``RfbSession`` per socket. ``connect`` performs the handshake and
negotiates a fixed 32-bit BGRX pixel format; ``run`` is the blocking update
loop (request, decode, publish, request again); ``send_key`` and
``send_pointer`` may be called from any thread while the loop runs.
"""

from __future__ import annotations

import re
import socket
import struct
import threading
from dataclasses import dataclass
from typing import Iterable, Optional, Union

from vmsession.constants import (
    CLIENT_ENCODINGS,
    ENC_COPYRECT,
    ENC_CURSOR,
    ENC_DESKTOP_SIZE,
    ENC_RAW,
    ENC_X_CURSOR,
    MSG_BELL,
    MSG_FB_UPDATE,
    MSG_FB_UPDATE_REQUEST,
    MSG_KEY_EVENT,
    MSG_POINTER_EVENT,
    MSG_SERVER_CUT_TEXT,
    MSG_SET_COLOUR_MAP,
    MSG_SET_ENCODINGS,
    MSG_SET_PIXEL_FORMAT,
    RFB_CLIENT_VERSION,
    RFB_CONNECT_TIMEOUT,
    RFB_VERSION_LEN,
    SECURITY_NONE,
)
from vmsession.exceptions import RfbError
from vmsession.framebuffer import CursorImage, Framebuffer, LatestFrame, default_cursor
from vmsession.keysyms import text_to_keysyms
from vmsession.models import ConnectionState, Result
from vmsession.utils import log

_VERSION_RE = re.compile(rb"^RFB (\d{3})\.(\d{3})\n$")
_DEFAULT_CURSOR = default_cursor()


@dataclass(frozen=True)
class Idle:
    pass


@dataclass(frozen=True)
class Connecting:
    sock: Optional[socket.socket]


@dataclass(frozen=True)
class Connected:
    sock: socket.socket


@dataclass(frozen=True)
class Failed:
    reason: str


@dataclass(frozen=True)
class Closed:
    pass


SessionState = Union[Idle, Connecting, Connected, Failed, Closed]

_STATE_KINDS = {
    Idle: ConnectionState.IDLE,
    Connecting: ConnectionState.CONNECTING,
    Connected: ConnectionState.CONNECTED,
    Failed: ConnectionState.FAILED,
    Closed: ConnectionState.CLOSED,
}


def _recv_exact(sock: socket.socket, n: int) -> bytes:
    """Receive exactly n bytes from socket, raising on short read."""
    buf = bytearray()
    while len(buf) < n:
        chunk = sock.recv(n - len(buf))
        if not chunk:
            raise ConnectionError("Connection closed")
        buf.extend(chunk)
    return bytes(buf)


def _close_socket(sock: Optional[socket.socket]) -> None:
    if sock is None:
        return
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass
    try:
        sock.close()
    except OSError:
        pass


def set_pixel_format_message() -> bytes:
    # 32 bpp, depth 24, little-endian, true colour, 8-bit channels: R<<16 | G<<8 | B,
    # i.e. bytes on the wire are B, G, R, X
    return struct.pack("!B3xBBBBHHHBBB3x", MSG_SET_PIXEL_FORMAT, 32, 24, 0, 1, 255, 255, 255, 16, 8, 0)


def set_encodings_message(encodings: Iterable[int] = CLIENT_ENCODINGS) -> bytes:
    encodings = list(encodings)
    return struct.pack("!BxH", MSG_SET_ENCODINGS, len(encodings)) + struct.pack(f"!{len(encodings)}i", *encodings)


def update_request_message(incremental: bool, width: int, height: int) -> bytes:
    return struct.pack("!BBHHHH", MSG_FB_UPDATE_REQUEST, 1 if incremental else 0, 0, 0, width, height)


def key_event_message(keysym: int, down: bool) -> bytes:
    return struct.pack("!BBxxI", MSG_KEY_EVENT, 1 if down else 0, keysym & 0xFFFFFFFF)


def pointer_event_message(x: int, y: int, button_mask: int) -> bytes:
    x = min(max(x, 0), 0xFFFF)
    y = min(max(y, 0), 0xFFFF)
    return struct.pack("!BBHH", MSG_POINTER_EVENT, button_mask & 0xFF, x, y)


class RfbSession:
    def __init__(self, connect_timeout: float = RFB_CONNECT_TIMEOUT) -> None:
        self.connect_timeout = connect_timeout
        self.frames = LatestFrame()
        self.framebuffer: Optional[Framebuffer] = None
        self.cursor: Optional[CursorImage] = None
        self.pointer = (0, 0)
        self.server_version = ""
        self.bell_count = 0
        self._state: SessionState = Idle()
        self._state_lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

    def __enter__(self) -> "RfbSession":
        return self

    def __exit__(self, *exc_info) -> None:
        self.disconnect()

    # -- state -------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return _STATE_KINDS[type(self._state)]

    @property
    def failure_reason(self) -> Optional[str]:
        state = self._state
        return state.reason if isinstance(state, Failed) else None

    @property
    def width(self) -> int:
        return self.framebuffer.width if self.framebuffer else 0

    @property
    def height(self) -> int:
        return self.framebuffer.height if self.framebuffer else 0

    def _connected_socket(self) -> Optional[socket.socket]:
        state = self._state
        return state.sock if isinstance(state, Connected) else None

    def _fail(self, reason: str) -> None:
        """Move to Failed unless the session was already closed or failed."""
        with self._state_lock:
            state = self._state
            if not isinstance(state, (Connecting, Connected)):
                return
            self._state = Failed(reason)
        _close_socket(state.sock)
        log("ERROR", f"VNC session failed: {reason}")

    # -- connection --------------------------------------------------------------

    def connect(self, host: str, port: int) -> Result[None]:
        with self._state_lock:
            if not isinstance(self._state, Idle):
                return Result.failure(f"Session is {self.state.value}; create a new session to reconnect")
            self._state = Connecting(None)

        log("INFO", f"Connecting to VNC {host}:{port}")
        try:
            sock = socket.create_connection((host, port), timeout=self.connect_timeout)
        except OSError as exc:
            reason = f"Could not connect to {host}:{port}: {exc}"
            self._fail(reason)
            return Result.failure(reason)

        with self._state_lock:
            if not isinstance(self._state, Connecting):
                _close_socket(sock)
                return Result.failure("Session closed while connecting")
            self._state = Connecting(sock)

        try:
            self._handshake(sock)
            self._initialise(sock)
            sock.settimeout(None)
        except (RfbError, OSError) as exc:
            reason = str(exc) or type(exc).__name__
            self._fail(reason)
            return Result.failure(reason)

        with self._state_lock:
            if not isinstance(self._state, Connecting):
                return Result.failure("Session closed during handshake")
            self._state = Connected(sock)
        log("SUCCESS", f"VNC connected: {self.width}x{self.height} ({self.server_version})")
        return Result.success(None)

    def _handshake(self, sock: socket.socket) -> None:
        banner = _recv_exact(sock, RFB_VERSION_LEN)
        match = _VERSION_RE.match(banner)
        if not match:
            raise RfbError(f"Unexpected server version banner {banner!r}")
        major, minor = int(match.group(1)), int(match.group(2))
        if major < 3 or (major == 3 and minor < 7):
            raise RfbError(f"Unsupported RFB version {major}.{minor}; 3.7 or later required")
        # anything newer than 3.x still accepts a 3.8 client
        negotiated = 8 if major > 3 else min(minor, 8)
        self.server_version = banner.decode("ascii").strip()
        log("DEBUG", f"Server version: {self.server_version}")

        self._write(sock, RFB_CLIENT_VERSION)

        count = _recv_exact(sock, 1)[0]
        if count == 0:
            (length,) = struct.unpack("!I", _recv_exact(sock, 4))
            reason = _recv_exact(sock, length).decode("utf-8", errors="replace")
            raise RfbError(reason)
        offered = _recv_exact(sock, count)
        if SECURITY_NONE not in offered:
            raise RfbError(f"No supported security type (server offered {list(offered)})")
        self._write(sock, bytes([SECURITY_NONE]))

        # 3.7 servers skip the SecurityResult for the None type
        if negotiated >= 8:
            (result,) = struct.unpack("!I", _recv_exact(sock, 4))
            if result != 0:
                reason = "Security handshake failed"
                try:
                    (length,) = struct.unpack("!I", _recv_exact(sock, 4))
                    reason = _recv_exact(sock, length).decode("utf-8", errors="replace") or reason
                except OSError:
                    pass
                raise RfbError(reason)

    def _initialise(self, sock: socket.socket) -> None:
        self._write(sock, b"\x01")  # shared session
        header = _recv_exact(sock, 24)
        width, height = struct.unpack("!HH", header[:4])
        # header[4:20] is the server's pixel format; it is replaced below
        (name_length,) = struct.unpack("!I", header[20:24])
        _recv_exact(sock, name_length)
        self.framebuffer = Framebuffer(width, height)
        self._write(sock, set_pixel_format_message())
        self._write(sock, set_encodings_message())

    def disconnect(self) -> None:
        with self._state_lock:
            state = self._state
            if isinstance(state, (Failed, Closed)):
                return
            self._state = Closed()
        _close_socket(getattr(state, "sock", None))
        log("INFO", "VNC session closed")

    # -- update loop -------------------------------------------------------------

    def start(self) -> threading.Thread:
        """Run the update loop on a daemon thread."""
        if self._thread is None or not self._thread.is_alive():
            self._thread = threading.Thread(target=self.run, name="rfb-update-loop", daemon=True)
            self._thread.start()
        return self._thread

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def run(self) -> None:
        incremental = False
        while True:
            sock = self._connected_socket()
            if sock is None:
                return
            try:
                self._write(sock, update_request_message(incremental, self.width, self.height))
                incremental = True
                self._read_until_update(sock)
            except (RfbError, OSError) as exc:
                self._fail(str(exc) or type(exc).__name__)
                return

    def _read_until_update(self, sock: socket.socket) -> None:
        while True:
            msg_type = _recv_exact(sock, 1)[0]
            if msg_type == MSG_FB_UPDATE:
                self._handle_update(sock)
                return
            if msg_type == MSG_SET_COLOUR_MAP:
                _, _, count = struct.unpack("!xHH", _recv_exact(sock, 5))
                _recv_exact(sock, count * 6)
            elif msg_type == MSG_BELL:
                self.bell_count += 1
            elif msg_type == MSG_SERVER_CUT_TEXT:
                (length,) = struct.unpack("!3xI", _recv_exact(sock, 7))
                _recv_exact(sock, length)
            else:
                log("WARN", f"Unknown server message type {msg_type}; skipped")

    def _handle_update(self, sock: socket.socket) -> None:
        (count,) = struct.unpack("!xH", _recv_exact(sock, 3))
        fb = self.framebuffer
        assert fb is not None
        for _ in range(count):
            x, y, w, h, encoding = struct.unpack("!HHHHi", _recv_exact(sock, 12))
            if encoding == ENC_RAW:
                fb.blit_bgrx(x, y, w, h, _recv_exact(sock, w * h * 4))
            elif encoding == ENC_COPYRECT:
                src_x, src_y = struct.unpack("!HH", _recv_exact(sock, 4))
                fb.copy_rect(src_x, src_y, x, y, w, h)
            elif encoding == ENC_DESKTOP_SIZE:
                log("INFO", f"Desktop resized to {w}x{h}")
                fb.resize(w, h)
            elif encoding == ENC_CURSOR:
                self.cursor = self._read_rich_cursor(sock, x, y, w, h)
            elif encoding == ENC_X_CURSOR:
                self.cursor = self._read_x_cursor(sock, x, y, w, h)
            else:
                log("WARN", f"Unsupported encoding {encoding} for {w}x{h} rectangle; skipped")
        self.frames.put(fb.composite(self.cursor or _DEFAULT_CURSOR, self.pointer))

    @staticmethod
    def _read_rich_cursor(sock: socket.socket, hot_x: int, hot_y: int, w: int, h: int) -> Optional[CursorImage]:
        if w == 0 or h == 0:
            return None
        pixels = _recv_exact(sock, w * h * 4)
        mask = _recv_exact(sock, ((w + 7) // 8) * h)
        return CursorImage.from_bgrx(hot_x, hot_y, w, h, pixels, mask)

    @staticmethod
    def _read_x_cursor(sock: socket.socket, hot_x: int, hot_y: int, w: int, h: int) -> Optional[CursorImage]:
        if w == 0 or h == 0:
            return None
        colours = _recv_exact(sock, 6)
        row_bytes = (w + 7) // 8
        bitmap = _recv_exact(sock, row_bytes * h)
        mask = _recv_exact(sock, row_bytes * h)
        fg = (colours[0], colours[1], colours[2])
        bg = (colours[3], colours[4], colours[5])
        return CursorImage.from_xcursor(hot_x, hot_y, w, h, fg, bg, bitmap, mask)

    # -- input -------------------------------------------------------------------

    def _write(self, sock: socket.socket, data: bytes) -> None:
        with self._write_lock:
            sock.sendall(data)

    def _send(self, data: bytes, what: str) -> bool:
        sock = self._connected_socket()
        if sock is None:
            log("DEBUG", f"Dropping {what}: session is {self.state.value}")
            return False
        try:
            self._write(sock, data)
        except OSError as exc:
            log("ERROR", f"Failed to send {what}: {exc}")
            return False
        return True

    def send_key(self, keysym: int, down: bool) -> bool:
        return self._send(key_event_message(keysym, down), "key event")

    def send_pointer(self, x: int, y: int, button_mask: int = 0) -> bool:
        self.pointer = (x, y)
        return self._send(pointer_event_message(x, y, button_mask), "pointer event")

    def tap_key(self, keysym: int) -> bool:
        return self.send_key(keysym, True) and self.send_key(keysym, False)

    def send_key_combo(self, keysyms: Iterable[int]) -> bool:
        """Press keys in order and release them in reverse (e.g. Ctrl+Alt+Delete)."""
        keysyms = list(keysyms)
        ok = all([self.send_key(k, True) for k in keysyms])
        return all([self.send_key(k, False) for k in reversed(keysyms)]) and ok

    def type_text(self, text: str) -> bool:
        return all([self.tap_key(k) for k in text_to_keysyms(text)])
