"""Milter server: accepts MTA connections and hands their commands to callbacks."""

from __future__ import annotations

import ipaddress
import logging
import selectors
import socket
import struct
import threading
from collections.abc import Callable
from typing import Optional

from milterkit.modifier import HeaderMap, Modifier
from milterkit.protocol import (
    Code,
    Message,
    MilterError,
    OptAction,
    OptProtocol,
    decode_cstrings,
    read_cstring,
    read_packet,
    write_packet,
)
from milterkit.response import CustomResponse, Response, SimpleResponse

SERVER_PROTOCOL_VERSION = 2

_FAMILIES = {
    ord("U"): "unknown",
    ord("L"): "unix",
    ord("4"): "tcp4",
    ord("6"): "tcp6",
}

log = logging.getLogger(__name__)

IPAddress = Optional["ipaddress.IPv4Address | ipaddress.IPv6Address"]


class ServerClosed(MilterError):
    """Raised by Server.serve once the server has been closed."""


class _CloseSession(Exception):
    """Ends processing of the current connection."""


def _parse_ip(text: str) -> ipaddress.IPv4Address | ipaddress.IPv6Address | None:
    if "%" in text:
        return None
    try:
        return ipaddress.ip_address(text)
    except ValueError:
        return None


class Milter:
    """Callbacks for one message; the defaults let every message through."""

    def connect(self, host: str, family: str, port: int, addr, modifier: Modifier) -> Response | None:
        """Called with the SMTP connection data. Suppressed by NO_CONNECT."""
        return SimpleResponse.CONTINUE

    def helo(self, name: str, modifier: Modifier) -> Response | None:
        """Called with the HELO/EHLO name. Suppressed by NO_HELO."""
        return SimpleResponse.CONTINUE

    def mail_from(self, sender: str, modifier: Modifier) -> Response | None:
        """Called with the envelope sender. Suppressed by NO_MAIL_FROM."""
        return SimpleResponse.CONTINUE

    def rcpt_to(self, rcpt: str, modifier: Modifier) -> Response | None:
        """Called with each envelope recipient. Suppressed by NO_RCPT_TO."""
        return SimpleResponse.CONTINUE

    def header(self, name: str, value: str, modifier: Modifier) -> Response | None:
        """Called once per header field. Suppressed by NO_HEADERS."""
        return SimpleResponse.CONTINUE

    def headers(self, headers: HeaderMap | None, modifier: Modifier) -> Response | None:
        """Called after the last header field. Suppressed by NO_EOH."""
        return SimpleResponse.CONTINUE

    def body_chunk(self, chunk: bytes, modifier: Modifier) -> Response | None:
        """Called with each body chunk of up to 64 KiB. Suppressed by NO_BODY."""
        return SimpleResponse.CONTINUE

    def body(self, modifier: Modifier) -> Response | None:
        """Called at end of message; all modifications must be made here."""
        return SimpleResponse.ACCEPT

    def abort(self, modifier: Modifier) -> None:
        """Called when the current message is aborted; forgets its macros."""
        modifier.macros.clear()


class NoOpMilter(Milter):
    """A milter that does nothing and accepts every message."""


class MilterSession:
    """State of one MTA connection."""

    def __init__(self, server: Server, conn: socket.socket, backend: Milter) -> None:
        self.server = server
        self.actions = server.actions
        self.protocol = server.protocol
        self.conn = conn
        self.backend = backend
        self.headers: HeaderMap | None = None
        self.macros: dict[str, str] = {}
        self._handlers: dict[Code, Callable[[bytes], Response | None]] = {
            Code.ABORT: self._abort,
            Code.BODY: self._body_chunk,
            Code.CONN: self._connect,
            Code.MACRO: self._macro,
            Code.EOB: self._end_of_body,
            Code.HELO: self._helo,
            Code.HEADER: self._header,
            Code.MAIL: self._mail,
            Code.EOH: self._end_of_headers,
            Code.OPTNEG: self._negotiate,
            Code.RCPT: self._rcpt,
            Code.DATA: self._data,
        }

    def write_packet(self, msg: Message) -> None:
        """Send a packet to the MTA."""
        write_packet(self.conn, msg)

    def _modifier(self) -> Modifier:
        return Modifier(send=self.write_packet, macros=self.macros, headers=self.headers)

    def process(self, msg: Message) -> Response | None:
        """Handle one command; None means no reply is sent."""
        try:
            code = Code(msg.code)
        except ValueError:
            code = None
        if code is Code.QUIT:
            raise _CloseSession
        handler = self._handlers.get(code) if code is not None else None
        if handler is None:
            log.warning("unrecognized command code: %r", chr(msg.code))
            raise _CloseSession
        return handler(bytes(msg.data))

    def _abort(self, data: bytes) -> None:
        try:
            self.backend.abort(self._modifier())
        finally:
            self.headers = None
            self.macros = {}
        return None

    def _body_chunk(self, data: bytes) -> Response | None:
        return self.backend.body_chunk(data, self._modifier())

    def _connect(self, data: bytes) -> Response | None:
        raw_host, sep, rest = data.partition(b"\x00")
        if not sep or not rest:
            raise MilterError("malformed connect data")
        hostname = read_cstring(raw_host)
        family_code, rest = rest[0], rest[1:]
        port = 0
        if family_code in (ord("4"), ord("6")):
            if len(rest) < 2:
                return SimpleResponse.TEMPFAIL
            (port,) = struct.unpack_from(">H", rest)
            rest = rest[2:]
        address = read_cstring(rest)
        return self.backend.connect(
            hostname,
            _FAMILIES.get(family_code, ""),
            port,
            _parse_ip(address),
            self._modifier(),
        )

    def _macro(self, data: bytes) -> None:
        values = decode_cstrings(data[1:])
        if len(values) % 2:
            values.append("")
        self.macros = dict(zip(values[::2], values[1::2]))
        return None

    def _end_of_body(self, data: bytes) -> Response | None:
        return self.backend.body(self._modifier())

    def _helo(self, data: bytes) -> Response | None:
        name = data.decode("utf-8", "surrogateescape").removesuffix("\x00")
        return self.backend.helo(name, self._modifier())

    def _header(self, data: bytes) -> Response | None:
        if self.headers is None:
            self.headers = HeaderMap()
        fields = decode_cstrings(data)
        # A field with an empty value arrives as "name\0\0".
        if len(fields) == 1:
            fields.append("")
        if len(fields) == 2:
            name, value = fields
            self.headers.add(name, value)
            return self.backend.header(name, value, self._modifier())
        return SimpleResponse.CONTINUE

    def _mail(self, data: bytes) -> Response | None:
        sender = read_cstring(data).strip("<>")
        return self.backend.mail_from(sender, self._modifier())

    def _end_of_headers(self, data: bytes) -> Response | None:
        return self.backend.headers(self.headers, self._modifier())

    def _negotiate(self, data: bytes) -> Response:
        payload = struct.pack(
            ">III", SERVER_PROTOCOL_VERSION, int(self.actions), int(self.protocol)
        )
        return CustomResponse(Code.OPTNEG, payload)

    def _rcpt(self, data: bytes) -> Response | None:
        rcpt = read_cstring(data).strip("<>")
        return self.backend.rcpt_to(rcpt, self._modifier())

    def _data(self, data: bytes) -> Response:
        return SimpleResponse.CONTINUE

    def handle_commands(self) -> None:
        """Process commands until the MTA quits or the connection fails; then close it."""
        with self.conn:
            while True:
                try:
                    msg = read_packet(self.conn)
                except EOFError:
                    return
                except (OSError, MilterError) as exc:
                    log.error("error reading milter command: %s", exc)
                    return

                try:
                    resp = self.process(msg)
                except _CloseSession:
                    return
                except Exception:
                    log.exception("error performing milter command")
                    return

                if resp is None:
                    continue
                try:
                    self.write_packet(resp.to_message())
                except OSError as exc:
                    log.error("error writing packet: %s", exc)
                    return
                if not resp.continues():
                    self.backend = self.server.new_milter()


class Server:
    """Accepts MTA connections and runs a session for each in its own thread."""

    def __init__(
        self,
        new_milter: Callable[[], Milter],
        actions: OptAction = OptAction(0),
        protocol: OptProtocol = OptProtocol(0),
    ) -> None:
        self.new_milter = new_milter
        self.actions = actions
        self.protocol = protocol
        self._closed = False
        self._lock = threading.Lock()
        self._wakers: list[socket.socket] = []

    def serve(self, listener: socket.socket) -> None:
        """Accept connections until close() is called, then raise ServerClosed.

        The listener is closed on return.
        """
        wake_r, wake_w = socket.socketpair()
        with self._lock:
            self._wakers.append(wake_w)
        try:
            with selectors.DefaultSelector() as selector:
                selector.register(listener, selectors.EVENT_READ)
                selector.register(wake_r, selectors.EVENT_READ)
                while True:
                    if self._closed:
                        raise ServerClosed("milter: server closed")
                    ready = selector.select()
                    if self._closed or any(key.fileobj is wake_r for key, _ in ready):
                        raise ServerClosed("milter: server closed")
                    try:
                        conn, _ = listener.accept()
                    except (BlockingIOError, InterruptedError):
                        continue
                    except OSError:
                        if self._closed:
                            raise ServerClosed("milter: server closed") from None
                        raise
                    conn.setblocking(True)
                    session = MilterSession(self, conn, self.new_milter())
                    threading.Thread(target=session.handle_commands, daemon=True).start()
        finally:
            with self._lock:
                self._wakers.remove(wake_w)
            listener.close()
            wake_r.close()
            wake_w.close()

    def close(self) -> None:
        """Stop every running serve() call."""
        with self._lock:
            self._closed = True
            wakers = list(self._wakers)
        for waker in wakers:
            try:
                waker.send(b"\x00")
            except OSError:
                pass