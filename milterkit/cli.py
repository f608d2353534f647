"""Command that runs one message through a milter and reports its verdicts."""

from __future__ import annotations

import argparse
import contextlib
import sys
from collections.abc import Callable
from typing import BinaryIO

from milterkit.client import Action, Client, ClientOptions, ClientSession, ModifyAction
from milterkit.protocol import (
    ActionCode,
    MilterError,
    ModifyActCode,
    OptAction,
    OptProtocol,
    ProtoFamily,
)

_ACTION_WORDS = {
    ActionCode.ACCEPT: "accept",
    ActionCode.REJECT: "reject",
    ActionCode.DISCARD: "discard",
    ActionCode.TEMPFAIL: "temp. fail",
    ActionCode.CONTINUE: "continue",
}

_DEFAULT_ACTIONS = (
    OptAction.CHANGE_BODY
    | OptAction.CHANGE_FROM
    | OptAction.CHANGE_HEADER
    | OptAction.ADD_HEADER
    | OptAction.ADD_RCPT
)

_TIMEOUT = 10.0


def format_action(prefix: str, act: Action) -> str | None:
    """Describe a verdict; None for codes that are not reported."""
    if act.code == ActionCode.REPLYCODE:
        return f"{prefix} reply code: {act.smtp_code} {act.smtp_text}"
    word = _ACTION_WORDS.get(act.code)
    return None if word is None else f"{prefix} {word}"


def format_modify_action(act: ModifyAction) -> str | None:
    """Describe a modification requested by the milter."""
    code = act.code
    if code == ModifyActCode.ADD_HEADER:
        return f"add header: name {act.header_name}, value {act.header_value}"
    if code == ModifyActCode.INSERT_HEADER:
        return (
            f"insert header: at {act.header_index}, "
            f"name {act.header_name}, value {act.header_value}"
        )
    if code == ModifyActCode.CHANGE_FROM:
        return f"change from: {act.from_addr} [{' '.join(act.from_args)}]"
    if code == ModifyActCode.CHANGE_HEADER:
        return (
            f"change header: at {act.header_index}, "
            f"name {act.header_name}, value {act.header_value}"
        )
    if code == ModifyActCode.REPL_BODY:
        return f"replace body: {bytes(act.body).decode('utf-8', 'replace')}"
    if code == ModifyActCode.ADD_RCPT:
        return f"add rcpt: {act.rcpt}"
    if code == ModifyActCode.DEL_RCPT:
        return f"del rcpt: {act.rcpt}"
    if code == ModifyActCode.QUARANTINE:
        return f"quarantine: {act.reason}"
    return None


def _make_field(raw: bytes) -> tuple[str, str]:
    if raw.endswith(b"\r\n"):
        raw = raw[:-2]
    elif raw.endswith(b"\n"):
        raw = raw[:-1]
    key, sep, value = raw.partition(b":")
    if not sep:
        shown = raw.decode("utf-8", "replace")
        raise MilterError(f"malformed MIME header line: {shown}")
    return (
        key.strip(b" \t").decode("utf-8", "surrogateescape"),
        value.strip(b" \t\r\n").decode("utf-8", "surrogateescape"),
    )


def parse_header(stream: BinaryIO) -> list[tuple[str, str]]:
    """Read header fields up to the blank line that ends them.

    Folded values keep their line breaks. The stream is left at the body.
    """
    fields: list[tuple[str, str]] = []
    pending: list[bytes] = []
    while True:
        line = stream.readline()
        if not line or not line.endswith(b"\n"):
            raise MilterError("unexpected EOF")
        if line in (b"\r\n", b"\n"):
            if pending:
                fields.append(_make_field(b"".join(pending)))
            return fields
        if line[:1] in (b" ", b"\t"):
            if not pending:
                raise MilterError("malformed MIME header initial line")
            pending.append(line)
            continue
        if pending:
            fields.append(_make_field(b"".join(pending)))
        pending = [line]


def _uint(text: str) -> int:
    try:
        value = int(text, 0)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid value {text!r}") from None
    if value < 0:
        raise argparse.ArgumentTypeError(f"invalid value {text!r}")
    return value


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="milter-check",
        description="Send one message from standard input through a milter.",
        allow_abbrev=False,
    )
    parser.add_argument(
        "-transport", "--transport", dest="transport", default="unix",
        help="Transport to use for milter connection, one of 'tcp', 'unix', 'tcp4' or 'tcp6'",
    )
    parser.add_argument(
        "-address", "--address", dest="address", default="",
        help="Transport address, path for 'unix', address:port for 'tcp'",
    )
    parser.add_argument(
        "-hostname", "--hostname", dest="hostname", default="localhost",
        help="Value to send in CONNECT message",
    )
    parser.add_argument(
        "-family", "--family", dest="family", default=chr(ProtoFamily.INET),
        help="Protocol family to send in CONNECT message",
    )
    parser.add_argument(
        "-port", "--port", dest="port", type=_uint, default=2525,
        help="Port to send in CONNECT message",
    )
    parser.add_argument(
        "-conn-addr", "--conn-addr", dest="conn_addr", default="127.0.0.1",
        help="Connection address to send in CONNECT message",
    )
    parser.add_argument(
        "-helo", "--helo", dest="helo", default="localhost",
        help="Value to send in HELO message",
    )
    parser.add_argument(
        "-from", "--from", dest="mail_from", default="sender@example.com",
        help="Value to send in MAIL message",
    )
    parser.add_argument(
        "-rcpt", "--rcpt", dest="rcpt", default="rcpt@example.com",
        help="Comma-separated list of values for RCPT messages",
    )
    parser.add_argument(
        "-actions", "--actions", dest="actions", type=_uint, default=int(_DEFAULT_ACTIONS),
        help="Bitmask value of actions we allow",
    )
    parser.add_argument(
        "-disabled-msgs", "--disabled-msgs", dest="disabled_msgs", type=_uint, default=0,
        help="Bitmask of disabled protocol messages",
    )
    return parser


def _log(*parts: object) -> None:
    print(*parts, file=sys.stderr)


def _report(prefix: str, call: Callable[[], Action]) -> bool:
    """Run one step; report it and tell whether the conversation goes on."""
    try:
        act = call()
    except (MilterError, OSError) as exc:
        _log(exc)
        return False
    line = format_action(prefix, act)
    if line is not None:
        _log(line)
    return act.code == ActionCode.CONTINUE


def _run(session: ClientSession, args: argparse.Namespace, stdin: BinaryIO) -> None:
    family = ord(args.family[0])
    port = args.port & 0xFFFF
    if not _report(
        "CONNECT:", lambda: session.conn(args.hostname, family, port, args.conn_addr)
    ):
        return
    if not _report("HELO:", lambda: session.helo(args.helo)):
        return
    if not _report("MAIL:", lambda: session.mail(args.mail_from, None)):
        return
    for rcpt in args.rcpt.split(","):
        if not _report("RCPT:", lambda rcpt=rcpt: session.rcpt(rcpt, None)):
            return

    try:
        fields = parse_header(stdin)
    except MilterError as exc:
        _log("header parse:", exc)
        return
    if not _report("HEADER:", lambda: session.header(fields)):
        return

    try:
        modify_actions, act = session.body_read_from(stdin)
    except (MilterError, OSError) as exc:
        _log(exc)
        return
    for modify_action in modify_actions:
        line = format_modify_action(modify_action)
        if line is not None:
            _log(line)
    line = format_action("EOB:", act)
    if line is not None:
        _log(line)


def main(argv: list[str] | None = None) -> int:
    """Run the check; progress and verdicts go to standard error."""
    parser = _parser()
    args = parser.parse_args(argv)
    if not args.family:
        parser.error("-family must not be empty")

    options = ClientOptions(
        action_mask=OptAction(args.actions),
        protocol_mask=OptProtocol(args.disabled_msgs),
        read_timeout=_TIMEOUT,
        write_timeout=_TIMEOUT,
    )
    with Client(args.transport, args.address, options) as client:
        try:
            session = client.session()
        except (MilterError, OSError) as exc:
            _log(exc)
            return 0
        try:
            _run(session, args, sys.stdin.buffer)
        finally:
            with contextlib.suppress(MilterError, OSError):
                session.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())