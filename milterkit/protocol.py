"""Wire-level definitions of the milter protocol: codes, option masks and packets."""

from __future__ import annotations

import socket
import struct
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from enum import IntEnum, IntFlag

MAX_BODY_CHUNK = 65535

_LENGTH = struct.Struct(">I")


class MilterError(Exception):
    """Raised when a milter conversation fails or carries malformed data."""


@dataclass
class Message:
    """A single milter packet: a one-byte command code and its payload."""

    code: int
    data: bytes = b""


class OptAction(IntFlag):
    """Actions a milter may perform on a message."""

    ADD_HEADER = 1 << 0
    CHANGE_BODY = 1 << 1
    ADD_RCPT = 1 << 2
    REMOVE_RCPT = 1 << 3
    CHANGE_HEADER = 1 << 4
    QUARANTINE = 1 << 5
    CHANGE_FROM = 1 << 6
    ADD_RCPT_WITH_ARGS = 1 << 7
    SET_SYM_LIST = 1 << 8


class OptProtocol(IntFlag):
    """Parts of the SMTP transaction that are masked out or left unanswered."""

    NO_CONNECT = 1 << 0
    NO_HELO = 1 << 1
    NO_MAIL_FROM = 1 << 2
    NO_RCPT_TO = 1 << 3
    NO_BODY = 1 << 4
    NO_HEADERS = 1 << 5
    NO_EOH = 1 << 6
    NO_HEADER_REPLY = 1 << 7
    NO_UNKNOWN = 1 << 8
    NO_DATA = 1 << 9
    SKIP = 1 << 10
    RCPT_REJ = 1 << 11
    NO_CONN_REPLY = 1 << 12
    NO_HELO_REPLY = 1 << 13
    NO_MAIL_REPLY = 1 << 14
    NO_RCPT_REPLY = 1 << 15
    NO_DATA_REPLY = 1 << 16
    NO_UNKNOWN_REPLY = 1 << 17
    NO_EOH_REPLY = 1 << 18
    NO_BODY_REPLY = 1 << 19
    HEADER_LEADING_SPACE = 1 << 20


class ActionCode(IntEnum):
    """Replies a milter sends to the MTA."""

    ACCEPT = ord("a")
    CONTINUE = ord("c")
    DISCARD = ord("d")
    REJECT = ord("r")
    TEMPFAIL = ord("t")
    REPLYCODE = ord("y")
    SKIP = ord("s")


class ModifyActCode(IntEnum):
    """Message modifications a milter requests at end of body."""

    ADD_RCPT = ord("+")
    DEL_RCPT = ord("-")
    REPL_BODY = ord("b")
    ADD_HEADER = ord("h")
    CHANGE_HEADER = ord("m")
    INSERT_HEADER = ord("i")
    QUARANTINE = ord("q")
    CHANGE_FROM = ord("e")


class Code(IntEnum):
    """Commands the MTA sends to the milter."""

    OPTNEG = ord("O")
    MACRO = ord("D")
    CONN = ord("C")
    QUIT = ord("Q")
    HELO = ord("H")
    MAIL = ord("M")
    RCPT = ord("R")
    HEADER = ord("L")
    EOH = ord("N")
    BODY = ord("B")
    EOB = ord("E")
    ABORT = ord("A")
    DATA = ord("T")
    QUIT_NEW_CONN = ord("K")


class ProtoFamily(IntEnum):
    """Protocol family of the SMTP client connection."""

    UNKNOWN = ord("U")
    UNIX = ord("L")
    INET = ord("4")
    INET6 = ord("6")


def decode_cstrings(data: bytes) -> list[str]:
    """Split a run of NUL-terminated strings, ignoring NULs at either end."""
    if not data:
        return []
    return data.decode("utf-8", "surrogateescape").strip("\x00").split("\x00")


def read_cstring(data: bytes) -> str:
    """Return the text before the first NUL, or all of it if there is none."""
    text, _, _ = data.partition(b"\x00")
    return text.decode("utf-8", "surrogateescape")


def encode_cstring(text: str) -> bytes:
    """Encode text as a NUL-terminated string."""
    return text.encode("utf-8", "surrogateescape") + b"\x00"


@contextmanager
def _deadline(sock: socket.socket, timeout: float | None) -> Iterator[None]:
    if not timeout:
        yield
        return
    previous = sock.gettimeout()
    sock.settimeout(timeout)
    try:
        yield
    finally:
        sock.settimeout(previous)


def _recv_exact(sock: socket.socket, size: int, *, eof_ok: bool) -> bytes:
    buffer = bytearray()
    while len(buffer) < size:
        chunk = sock.recv(size - len(buffer))
        if not chunk:
            if eof_ok and not buffer:
                raise EOFError("connection closed")
            raise MilterError("unexpected EOF")
        buffer += chunk
    return bytes(buffer)


def read_packet(sock: socket.socket, timeout: float | None = None) -> Message:
    """Read one length-prefixed packet; a zero or None timeout waits forever.

    Raises EOFError if the peer closed the connection between packets.
    """
    with _deadline(sock, timeout):
        (length,) = _LENGTH.unpack(_recv_exact(sock, _LENGTH.size, eof_ok=True))
        if length == 0:
            raise MilterError("empty packet")
        data = _recv_exact(sock, length, eof_ok=False)
    return Message(code=data[0], data=data[1:])


def write_packet(sock: socket.socket, msg: Message, timeout: float | None = None) -> None:
    """Send one packet with its length prefix."""
    payload = bytes(msg.data)
    frame = _LENGTH.pack(len(payload) + 1) + bytes([int(msg.code)]) + payload
    with _deadline(sock, timeout):
        sock.sendall(frame)