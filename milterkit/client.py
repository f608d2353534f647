"""Milter client: the MTA side of the protocol, talking to a remote milter."""

from __future__ import annotations

import re
import socket
import struct
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import BinaryIO, Optional

from milterkit.protocol import (
    MAX_BODY_CHUNK,
    ActionCode,
    Code,
    Message,
    MilterError,
    ModifyActCode,
    OptAction,
    OptProtocol,
    ProtoFamily,
    encode_cstring,
    read_cstring,
    read_packet,
    write_packet,
)

CLIENT_PROTOCOL_VERSION = 6

_PROGRESS = ord("p")
_SMTP_CODE = re.compile(r"[+-]?[0-9]+")
_SIMPLE_ACTIONS = frozenset(
    {
        ActionCode.ACCEPT,
        ActionCode.CONTINUE,
        ActionCode.DISCARD,
        ActionCode.REJECT,
        ActionCode.TEMPFAIL,
    }
)
_MODIFY_CODES = frozenset(int(code) for code in ModifyActCode)

Dialer = Callable[[str, str], socket.socket]


class UnsupportedMilterVersion(MilterError):
    """Raised when the milter speaks an older protocol the requested options need."""

    def __init__(self, message: str = "milter: negotiate: unsupported milter version") -> None:
        super().__init__(message)


@dataclass(frozen=True)
class ClientOptions:
    """Connection settings; timeouts are in seconds, None meaning no limit.

    When dialer is None a built-in dialer is used with dial_timeout.
    """

    dialer: Optional[Dialer] = None
    dial_timeout: Optional[float] = None
    read_timeout: Optional[float] = None
    write_timeout: Optional[float] = None
    action_mask: OptAction = OptAction(0)
    protocol_mask: OptProtocol = OptProtocol(0)


DEFAULT_OPTIONS = ClientOptions(
    dial_timeout=10.0,
    read_timeout=10.0,
    write_timeout=10.0,
    action_mask=(
        OptAction.ADD_HEADER
        | OptAction.ADD_RCPT
        | OptAction.CHANGE_BODY
        | OptAction.CHANGE_FROM
        | OptAction.CHANGE_HEADER
    ),
)


@dataclass
class Action:
    """A verdict from the milter; SMTP code and text are set for REPLYCODE."""

    code: ActionCode
    smtp_code: int = 0
    smtp_text: str = ""


@dataclass
class ModifyAction:
    """A change to the message requested by the milter at end of body.

    header_index is 1-based and counted per header name.
    An empty header_value asks for the field to be removed.
    """

    code: ModifyActCode
    rcpt: str = ""
    from_addr: str = ""
    from_args: list[str] = field(default_factory=list)
    body: bytes = b""
    header_index: int = 0
    header_name: str = ""
    header_value: str = ""
    reason: str = ""


@contextmanager
def _context(prefix: str) -> Iterator[None]:
    try:
        yield
    except UnsupportedMilterVersion:
        raise
    except (OSError, EOFError, MilterError, struct.error) as exc:
        raise MilterError(f"{prefix}: {exc}") from exc


def parse_action(msg: Message) -> Action:
    """Decode a verdict packet."""
    try:
        code = ActionCode(msg.code)
    except ValueError:
        raise MilterError(f"action read: unexpected code: {msg.code}") from None
    if code in _SIMPLE_ACTIONS:
        return Action(code)
    if code is not ActionCode.REPLYCODE:
        raise MilterError(f"action read: unexpected code: {msg.code}")
    data = bytes(msg.data)
    if len(data) <= 4:
        raise MilterError(f"action read: unexpected data length: {len(data)}")
    raw_code = data[:3].decode("ascii", "replace")
    if not _SMTP_CODE.fullmatch(raw_code):
        raise MilterError(f"action read: malformed SMTP code: {list(data[:3])}")
    # A space separates the code from the text.
    return Action(code, smtp_code=int(raw_code), smtp_text=read_cstring(data[4:]))


def parse_modify_action(msg: Message) -> ModifyAction:
    """Decode a modification packet."""
    try:
        code = ModifyActCode(msg.code)
    except ValueError:
        raise MilterError(
            f"read modify action: unexpected message code: {msg.code}"
        ) from None
    data = bytes(msg.data)
    act = ModifyAction(code)

    if code in (ModifyActCode.ADD_RCPT, ModifyActCode.DEL_RCPT):
        act.rcpt = read_cstring(data)
    elif code is ModifyActCode.QUARANTINE:
        act.reason = read_cstring(data)
    elif code is ModifyActCode.REPL_BODY:
        act.body = data
    elif code is ModifyActCode.CHANGE_FROM:
        first, *rest = data.split(b"\x00")
        act.from_addr = first.decode("utf-8", "surrogateescape")
        act.from_args = [arg.decode("utf-8", "surrogateescape") for arg in rest]
    else:
        if code in (ModifyActCode.CHANGE_HEADER, ModifyActCode.INSERT_HEADER):
            if len(data) < 4:
                raise MilterError("read modify action: missing header index")
            (act.header_index,) = struct.unpack_from(">I", data)
            data = data[4:]
        act.header_name = read_cstring(data)
        nul = data.find(b"\x00")
        if nul == -1:
            raise MilterError("read modify action: missing NUL delimiter")
        act.header_value = read_cstring(data[nul + 1 :])
    return act


def _split_host_port(address: str) -> tuple[str, int]:
    if address.startswith("["):
        host, _, rest = address[1:].partition("]")
        if not rest.startswith(":"):
            raise MilterError(f"missing port in address {address!r}")
        port_text = rest[1:]
    else:
        host, sep, port_text = address.rpartition(":")
        if not sep:
            raise MilterError(f"missing port in address {address!r}")
    try:
        port = int(port_text)
    except ValueError:
        raise MilterError(f"invalid port in address {address!r}") from None
    return host or "localhost", port


def _dial(network: str, address: str, *, timeout: Optional[float] = None) -> socket.socket:
    if network == "unix":
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        target: object = address
    elif network in ("tcp", "tcp4", "tcp6"):
        host, port = _split_host_port(address)
        if network == "tcp":
            sock = socket.create_connection((host, port), timeout=timeout)
            sock.settimeout(None)
            return sock
        family = socket.AF_INET if network == "tcp4" else socket.AF_INET6
        sock = socket.socket(family, socket.SOCK_STREAM)
        target = (host, port)
    else:
        raise MilterError(f"unknown network {network!r}")
    try:
        sock.settimeout(timeout)
        sock.connect(target)
        sock.settimeout(None)
    except BaseException:
        sock.close()
        raise
    return sock


class ClientSession:
    """One negotiated conversation with a milter."""

    def __init__(
        self,
        sock: socket.socket,
        read_timeout: Optional[float] = None,
        write_timeout: Optional[float] = None,
    ) -> None:
        self._sock = sock
        self.read_timeout = read_timeout
        self.write_timeout = write_timeout
        self.action_opts = OptAction(0)
        self.protocol_opts = OptProtocol(0)
        self.version = CLIENT_PROTOCOL_VERSION
        self._need_abort = False

    def __enter__(self) -> ClientSession:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _write(self, code: int, data: bytes = b"") -> None:
        write_packet(self._sock, Message(code, data), self.write_timeout)

    def _read(self) -> Message:
        return read_packet(self._sock, self.read_timeout)

    def _negotiate(self, action_mask: OptAction, protocol_mask: OptProtocol) -> None:
        action_mask = int(action_mask)
        protocol_mask = int(protocol_mask)
        payload = struct.pack(">III", self.version, action_mask, protocol_mask)
        with _context("milter: negotiate: optneg write"):
            self._write(Code.OPTNEG, payload)
        with _context("milter: negotiate: optneg read"):
            msg = self._read()
        if msg.code != Code.OPTNEG:
            raise MilterError(f"milter: negotiate: unexpected code: {msg.code}")
        if len(msg.data) < 12:
            raise MilterError(f"milter: negotiate: unexpected data size: {len(msg.data)}")

        version, actions, protocol = struct.unpack_from(">III", msg.data)
        self.action_opts = OptAction(actions)
        self.protocol_opts = OptProtocol(protocol)

        if version < self.version:
            # Only v2-compatible options survive a downgrade.
            if (
                version >= 2
                and action_mask & 0x3F == action_mask
                and protocol_mask & 0x7F == protocol_mask
            ):
                self.version = version
            else:
                raise UnsupportedMilterVersion()

        self._need_abort = True

    def protocol_option(self, opt: OptProtocol) -> bool:
        """True if the protocol option was negotiated."""
        return bool(self.protocol_opts & opt)

    def action_option(self, opt: OptAction) -> bool:
        """True if the action option was negotiated."""
        return bool(self.action_opts & opt)

    def macros(self, code: Code, *args: str) -> None:
        """Send macro name/value strings for the given command."""
        data = bytes([int(code)]) + b"".join(encode_cstring(arg) for arg in args)
        with _context("milter: macros"):
            self._write(Code.MACRO, data)

    def _read_action(self) -> Action:
        while True:
            with _context("action read"):
                msg = self._read()
            if msg.code == _PROGRESS:
                continue
            if msg.code != ActionCode.CONTINUE:
                self._need_abort = False
            return parse_action(msg)

    def _exchange(
        self, context: str, code: Code, data: bytes, no_reply: OptProtocol
    ) -> Action:
        with _context(context):
            self._write(code, data)
            if self.protocol_option(no_reply):
                return Action(ActionCode.CONTINUE)
            return self._read_action()

    def conn(self, hostname: str, family: ProtoFamily, port: int, addr: str) -> Action:
        """Send the SMTP connection data; once per session."""
        if self.protocol_opts & OptProtocol.NO_CONNECT:
            return Action(ActionCode.CONTINUE)
        if not 0 <= port <= 0xFFFF:
            raise ValueError(f"port out of range: {port}")
        family = int(family)
        data = encode_cstring(hostname) + bytes([family])
        if family != ProtoFamily.UNKNOWN:
            if family in (ProtoFamily.INET, ProtoFamily.INET6):
                data += struct.pack(">H", port)
            data += encode_cstring(addr)
        return self._exchange("milter: conn", Code.CONN, data, OptProtocol.NO_CONN_REPLY)

    def helo(self, helo: str) -> Action:
        """Send the HELO name; once per session."""
        if self.protocol_opts & OptProtocol.NO_HELO:
            return Action(ActionCode.CONTINUE)
        return self._exchange(
            "milter: helo", Code.HELO, encode_cstring(helo), OptProtocol.NO_HELO_REPLY
        )

    def mail(self, sender: str, esmtp_args: Iterable[str] | None = None) -> Action:
        """Send the envelope sender with its ESMTP arguments."""
        if self.protocol_opts & OptProtocol.NO_MAIL_FROM:
            return Action(ActionCode.CONTINUE)
        data = encode_cstring(f"<{sender}>") + b"".join(
            encode_cstring(arg) for arg in esmtp_args or ()
        )
        return self._exchange("milter: mail", Code.MAIL, data, OptProtocol.NO_MAIL_REPLY)

    def rcpt(self, rcpt: str, esmtp_args: Iterable[str] | None = None) -> Action:
        """Send one envelope recipient with its ESMTP arguments."""
        if self.protocol_opts & OptProtocol.NO_RCPT_TO:
            return Action(ActionCode.CONTINUE)
        data = encode_cstring(f"<{rcpt}>") + b"".join(
            encode_cstring(arg) for arg in esmtp_args or ()
        )
        return self._exchange("milter: rcpt", Code.RCPT, data, OptProtocol.NO_RCPT_REPLY)

    def header_field(self, key: str, value: str) -> Action:
        """Send one header field; the value is sent as received, not unfolded."""
        if self.protocol_opts & OptProtocol.NO_HEADERS:
            return Action(ActionCode.CONTINUE)
        data = encode_cstring(key) + encode_cstring(value)
        return self._exchange(
            "milter: header field", Code.HEADER, data, OptProtocol.NO_HEADER_REPLY
        )

    def header_end(self) -> Action:
        """Send end-of-headers; no header fields may follow."""
        if self.protocol_opts & OptProtocol.NO_EOH:
            return Action(ActionCode.CONTINUE)
        return self._exchange("milter: header end", Code.EOH, b"", OptProtocol.NO_EOH_REPLY)

    def header(self, fields: Iterable[tuple[str, str]]) -> Action:
        """Send (name, value) pairs in order, then end-of-headers.

        Stops at the first verdict other than CONTINUE and returns it.
        """
        for key, value in fields:
            act = self.header_field(key, value)
            if act.code != ActionCode.CONTINUE:
                return act
        return self.header_end()

    def body_chunk(self, chunk: bytes) -> Action:
        """Send one body chunk of at most MAX_BODY_CHUNK bytes.

        With SKIP negotiated the caller must stop on an ActionCode.SKIP verdict.
        """
        if self.protocol_opts & OptProtocol.NO_BODY:
            return Action(ActionCode.CONTINUE)
        if len(chunk) > MAX_BODY_CHUNK:
            raise ValueError(f"milter: body chunk: too big body chunk: {len(chunk)}")
        return self._exchange(
            "milter: body chunk", Code.BODY, bytes(chunk), OptProtocol.NO_BODY_REPLY
        )

    def body_read_from(self, reader: BinaryIO) -> tuple[list[ModifyAction], Action]:
        """Send the whole body from a binary stream in chunks, then end the message."""
        while True:
            chunk = reader.read(MAX_BODY_CHUNK)
            if not chunk:
                break
            act = self.body_chunk(chunk)
            if act.code == ActionCode.SKIP:
                break
            if act.code != ActionCode.CONTINUE:
                return [], act
        return self.end()

    def _read_modify_actions(self) -> tuple[list[ModifyAction], Action]:
        modify_actions: list[ModifyAction] = []
        while True:
            with _context("action read"):
                msg = self._read()
            if msg.code == _PROGRESS:
                continue
            if msg.code in _MODIFY_CODES:
                modify_actions.append(parse_modify_action(msg))
            else:
                return modify_actions, parse_action(msg)

    def end(self) -> tuple[list[ModifyAction], Action]:
        """Send end-of-body and collect the modifications and the final verdict.

        The session may then carry another message of the same connection.
        """
        with _context("milter: end"):
            self._write(Code.EOB)
            return self._read_modify_actions()

    def abort(self) -> None:
        """Tell the milter that the current message ended unexpectedly."""
        with _context("milter: abort"):
            self._write(Code.ABORT)

    def close(self) -> None:
        """Abort a message in progress, say goodbye and close the connection."""
        try:
            if self._need_abort:
                try:
                    self.abort()
                except MilterError:
                    pass
            with _context("milter: close"):
                self._write(Code.QUIT)
        finally:
            self._sock.close()


class Client:
    """Opens milter sessions to one address."""

    def __init__(self, network: str, address: str, options: ClientOptions | None = None) -> None:
        self.network = network
        self.address = address
        self.options = DEFAULT_OPTIONS if options is None else options
        self.closed = False

    def __enter__(self) -> Client:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def session(self) -> ClientSession:
        """Connect and negotiate a new session."""
        if self.closed:
            raise MilterError("milter: session create: client closed")
        opts = self.options
        try:
            if opts.dialer is not None:
                sock = opts.dialer(self.network, self.address)
            else:
                sock = _dial(self.network, self.address, timeout=opts.dial_timeout)
        except (OSError, MilterError) as exc:
            raise MilterError(f"milter: session create: {exc}") from exc

        session = ClientSession(sock, opts.read_timeout, opts.write_timeout)
        try:
            session._negotiate(opts.action_mask, opts.protocol_mask)
        except BaseException:
            sock.close()
            raise
        return session

    def close(self) -> None:
        """Stop the client from opening new sessions; open ones close on their own."""
        self.closed = True