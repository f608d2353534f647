import struct

import pytest

from milterkit.modifier import HeaderMap, Modifier
from milterkit.protocol import ModifyActCode, decode_cstrings, read_cstring


@pytest.fixture
def sent():
    return []


@pytest.fixture
def modifier(sent):
    return Modifier(send=sent.append)


def test_header_map_canonical_keys():
    headers = HeaderMap()
    headers.add("x-empty-header", "")
    headers.add("From", "from@example.com")
    assert list(headers) == ["X-Empty-Header", "From"]
    assert "X-EMPTY-HEADER" in headers
    assert headers.get("x-empty-header") == ""
    assert len(headers) == 2


def test_header_map_multiple_values():
    headers = HeaderMap()
    headers.add("Received", "first")
    headers.add("received", "second")
    assert headers.get("RECEIVED") == "first"
    assert headers.get_all("Received") == ["first", "second"]
    assert len(headers) == 1


def test_header_map_missing_key():
    headers = HeaderMap()
    assert headers.get("To") == ""
    assert headers.get_all("To") == []
    assert "To" not in headers


def test_header_map_invalid_key_kept_verbatim():
    headers = HeaderMap()
    headers.add("bad key", "value")
    assert list(headers) == ["bad key"]
    assert headers.get("bad key") == "value"


def test_modifier_defaults():
    mod = Modifier(send=lambda msg: None)
    assert mod.macros == {}
    assert mod.headers is None


def test_add_recipient(modifier, sent):
    modifier.add_recipient("to@example.com")
    assert sent[0].code == ModifyActCode.ADD_RCPT
    assert read_cstring(sent[0].data) == "<to@example.com>"
    assert sent[0].data.endswith(b"\x00")


def test_delete_recipient(modifier, sent):
    modifier.delete_recipient("to@example.com")
    assert sent[0].code == ModifyActCode.DEL_RCPT
    assert read_cstring(sent[0].data) == "<to@example.com>"


def test_replace_body_converts_line_endings(modifier, sent):
    modifier.replace_body(b"line one\r\nline two\r\n")
    assert len(sent) == 1
    assert sent[0].code == ModifyActCode.REPL_BODY
    assert read_cstring(sent[0].data) == "line one\nline two\n"
    assert sent[0].data == b"line one\nline two\n"


def test_add_header(modifier, sent):
    modifier.add_header("X-Bad", "very")
    assert sent[0].code == ModifyActCode.ADD_HEADER
    assert decode_cstrings(sent[0].data) == ["X-Bad", "very"]


def test_add_header_value_line_endings(modifier, sent):
    modifier.add_header("X-Folded", "a\r\n\tb")
    assert b"\r" not in sent[0].data
    assert decode_cstrings(sent[0].data) == ["X-Folded", "a\n\tb"]


@pytest.mark.parametrize(
    "method, code",
    [("change_header", ModifyActCode.CHANGE_HEADER), ("insert_header", ModifyActCode.INSERT_HEADER)],
)
def test_indexed_header(modifier, sent, method, code):
    getattr(modifier, method)(1, "Subject", "***SPAM***")
    msg = sent[0]
    assert msg.code == code
    assert struct.unpack(">I", msg.data[:4]) == (1,)
    assert decode_cstrings(msg.data[4:]) == ["Subject", "***SPAM***"]


def test_change_header_empty_value(modifier, sent):
    modifier.change_header(3, "DKIM-Signature", "")
    assert len(sent) == 1
    assert sent[0].code == ModifyActCode.CHANGE_HEADER
    assert struct.unpack(">I", sent[0].data[:4]) == (3,)
    assert read_cstring(sent[0].data[4:]) == "DKIM-Signature"
    assert sent[0].data[4:] == b"DKIM-Signature\x00\x00"


def test_messages_sent_in_order(modifier, sent):
    modifier.add_header("X-Bad", "very")
    modifier.change_header(1, "Subject", "***SPAM***")
    modifier.quarantine("very bad message")
    assert [m.code for m in sent] == [
        ModifyActCode.ADD_HEADER,
        ModifyActCode.CHANGE_HEADER,
        ModifyActCode.QUARANTINE,
    ]
    assert decode_cstrings(sent[0].data) == ["X-Bad", "very"]
    assert decode_cstrings(sent[1].data[4:]) == ["Subject", "***SPAM***"]
    assert read_cstring(sent[2].data) == "very bad message"