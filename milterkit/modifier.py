"""Header storage and the modification interface handed to milter callbacks."""

from __future__ import annotations

import string
import struct
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field

from milterkit.protocol import Message, ModifyActCode, encode_cstring

_TOKEN_CHARS = frozenset("!#$%&'*+-.^_`|~" + string.ascii_letters + string.digits)


def _canonical_key(key: str) -> str:
    if not key or any(ch not in _TOKEN_CHARS for ch in key):
        return key
    return "-".join(part[:1].upper() + part[1:].lower() for part in key.split("-"))


def _crlf_to_lf(data: bytes) -> bytes:
    return data.replace(b"\r\n", b"\n")


class HeaderMap:
    """Multi-valued header fields keyed by canonical MIME name."""

    def __init__(self) -> None:
        self._fields: dict[str, list[str]] = {}

    def add(self, key: str, value: str) -> None:
        """Append a value to the field named key."""
        self._fields.setdefault(_canonical_key(key), []).append(value)

    def get(self, key: str) -> str:
        """Return the first value of the field, or an empty string."""
        values = self._fields.get(_canonical_key(key))
        return values[0] if values else ""

    def get_all(self, key: str) -> list[str]:
        """Return every value of the field in the order added."""
        return list(self._fields.get(_canonical_key(key), ()))

    def items(self) -> Iterator[tuple[str, list[str]]]:
        for key, values in self._fields.items():
            yield key, list(values)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and _canonical_key(key) in self._fields

    def __iter__(self) -> Iterator[str]:
        return iter(self._fields)

    def __len__(self) -> int:
        return len(self._fields)

    def __repr__(self) -> str:
        return f"HeaderMap({self._fields!r})"


@dataclass
class Modifier:
    """Gives callbacks the macros and headers seen so far and sends modifications."""

    send: Callable[[Message], None]
    macros: dict[str, str] = field(default_factory=dict)
    headers: HeaderMap | None = None

    def _send(self, code: ModifyActCode, data: bytes) -> None:
        self.send(Message(code, data))

    def _header_payload(self, name: str, value: str) -> bytes:
        return encode_cstring(name) + _crlf_to_lf(value.encode("utf-8")) + b"\x00"

    def add_recipient(self, rcpt: str) -> None:
        """Add an envelope recipient to the current message."""
        self._send(ModifyActCode.ADD_RCPT, encode_cstring(f"<{rcpt}>"))

    def delete_recipient(self, rcpt: str) -> None:
        """Remove an envelope recipient from the current message."""
        self._send(ModifyActCode.DEL_RCPT, encode_cstring(f"<{rcpt}>"))

    def replace_body(self, body: bytes) -> None:
        """Replace the message body; CRLF line endings become LF."""
        self._send(ModifyActCode.REPL_BODY, _crlf_to_lf(bytes(body)))

    def add_header(self, name: str, value: str) -> None:
        """Append a header field to the message."""
        self._send(ModifyActCode.ADD_HEADER, self._header_payload(name, value))

    def change_header(self, index: int, name: str, value: str) -> None:
        """Replace the index-th (1-based, per name) field; an empty value removes it."""
        payload = struct.pack(">I", index & 0xFFFFFFFF) + self._header_payload(name, value)
        self._send(ModifyActCode.CHANGE_HEADER, payload)

    def insert_header(self, index: int, name: str, value: str) -> None:
        """Insert a header field at the given position."""
        payload = struct.pack(">I", index & 0xFFFFFFFF) + self._header_payload(name, value)
        self._send(ModifyActCode.INSERT_HEADER, payload)

    def quarantine(self, reason: str) -> None:
        """Quarantine the message, giving a reason."""
        self._send(ModifyActCode.QUARANTINE, encode_cstring(reason))

    def change_from(self, value: str) -> None:
        """Replace the envelope sender."""
        self._send(ModifyActCode.CHANGE_FROM, encode_cstring(value))