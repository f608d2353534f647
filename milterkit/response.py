"""Responses returned by milter callbacks to steer the MTA."""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import Protocol

from milterkit.protocol import ActionCode, Message, encode_cstring

_STOPPING = frozenset(
    {ActionCode.ACCEPT, ActionCode.DISCARD, ActionCode.REJECT, ActionCode.TEMPFAIL}
)


class Response(Protocol):
    """Anything a callback may return to the MTA."""

    def to_message(self) -> Message: ...

    def continues(self) -> bool: ...


class SimpleResponse(IntEnum):
    """Standard responses that carry no data."""

    ACCEPT = ActionCode.ACCEPT
    CONTINUE = ActionCode.CONTINUE
    DISCARD = ActionCode.DISCARD
    REJECT = ActionCode.REJECT
    TEMPFAIL = ActionCode.TEMPFAIL

    def to_message(self) -> Message:
        """Build the packet for this response."""
        return Message(int(self), b"")

    def continues(self) -> bool:
        """True only for CONTINUE: further commands for this message follow."""
        return self is SimpleResponse.CONTINUE


@dataclass(frozen=True)
class CustomResponse:
    """A response with an arbitrary code and payload."""

    code: int
    data: bytes = b""

    def to_message(self) -> Message:
        """Build the packet for this response."""
        return Message(self.code, self.data)

    def continues(self) -> bool:
        """False if the code ends processing of the current message."""
        return self.code not in _STOPPING


def response_from_string(code: int, text: str) -> CustomResponse:
    """Build a response whose payload is a NUL-terminated string."""
    return CustomResponse(code, encode_cstring(text))