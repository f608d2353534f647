import ipaddress
import socket
import struct
import threading

import pytest

from milterkit.modifier import HeaderMap
from milterkit.protocol import (
    ActionCode,
    Code,
    Message,
    MilterError,
    ModifyActCode,
    OptAction,
    OptProtocol,
    read_packet,
    write_packet,
)
from milterkit.response import SimpleResponse
from milterkit.server import MilterSession, NoOpMilter, Server, ServerClosed


class Recorder(NoOpMilter):
    def __init__(self, on_body=None, body_response=SimpleResponse.ACCEPT):
        self.calls = []
        self.on_body = on_body
        self.body_response = body_response
        self.seen_headers = None
        self.abort_macros = None
        self.helo_macros = None

    def connect(self, host, family, port, addr, modifier):
        self.calls.append(("connect", host, family, port, addr))
        return SimpleResponse.CONTINUE

    def helo(self, name, modifier):
        self.calls.append(("helo", name))
        self.helo_macros = dict(modifier.macros)
        return SimpleResponse.CONTINUE

    def mail_from(self, sender, modifier):
        self.calls.append(("mail", sender))
        return SimpleResponse.CONTINUE

    def rcpt_to(self, rcpt, modifier):
        self.calls.append(("rcpt", rcpt))
        return SimpleResponse.CONTINUE

    def header(self, name, value, modifier):
        self.calls.append(("header", name, value))
        return SimpleResponse.CONTINUE

    def headers(self, headers, modifier):
        self.seen_headers = headers
        return SimpleResponse.CONTINUE

    def body_chunk(self, chunk, modifier):
        self.calls.append(("chunk", chunk))
        return SimpleResponse.CONTINUE

    def body(self, modifier):
        if self.on_body is not None:
            self.on_body(modifier)
        return self.body_response

    def abort(self, modifier):
        self.abort_macros = dict(modifier.macros)


@pytest.fixture
def pair():
    left, right = socket.socketpair()
    left.settimeout(5)
    right.settimeout(5)
    yield left, right
    left.close()
    right.close()


def make_session(conn, backend=None, **server_args):
    server = Server(new_milter=NoOpMilter, **server_args)
    return MilterSession(server, conn, backend if backend is not None else Recorder())


def run(session):
    thread = threading.Thread(target=session.handle_commands, daemon=True)
    thread.start()
    return thread


def test_optneg_reports_version_and_masks(pair):
    actions = OptAction.ADD_HEADER | OptAction.CHANGE_HEADER
    protocol = OptProtocol.NO_HELO
    session = make_session(pair[0], actions=actions, protocol=protocol)
    resp = session.process(Message(Code.OPTNEG, bytes(12)))
    msg = resp.to_message()
    assert msg.code == ord("O")
    assert msg.data == struct.pack(">III", 2, int(actions), int(protocol))
    assert resp.continues()


def test_macros_are_stored_without_reply(pair):
    session = make_session(pair[0])
    assert session.process(Message(Code.MACRO, b"H" + b"tls_version\x00very old\x00")) is None
    assert session.macros == {"tls_version": "very old"}


def test_macros_with_odd_count_get_empty_value(pair):
    session = make_session(pair[0])
    session.process(Message(Code.MACRO, b"H" + b"a\x00b\x00c\x00"))
    assert session.macros == {"a": "b", "c": ""}


def test_connect_inet(pair):
    backend = Recorder()
    session = make_session(pair[0], backend)
    data = b"host\x00" + b"4" + struct.pack(">H", 25565) + b"172.0.0.1\x00"
    assert session.process(Message(Code.CONN, data)) is SimpleResponse.CONTINUE
    assert backend.calls == [
        ("connect", "host", "tcp4", 25565, ipaddress.ip_address("172.0.0.1"))
    ]


def test_connect_unix_has_no_port_or_ip(pair):
    backend = Recorder()
    session = make_session(pair[0], backend)
    session.process(Message(Code.CONN, b"host\x00L/var/run/sock\x00"))
    assert backend.calls == [("connect", "host", "unix", 0, None)]


def test_connect_without_port_is_tempfail(pair):
    backend = Recorder()
    session = make_session(pair[0], backend)
    resp = session.process(Message(Code.CONN, b"host\x004\x01"))
    assert resp is SimpleResponse.TEMPFAIL
    assert backend.calls == []


def test_connect_malformed_raises(pair):
    session = make_session(pair[0])
    with pytest.raises(MilterError):
        session.process(Message(Code.CONN, b"host"))


def test_helo_mail_rcpt(pair):
    backend = Recorder()
    session = make_session(pair[0], backend)
    session.process(Message(Code.HELO, b"helo_host\x00"))
    session.process(Message(Code.MAIL, b"<from@example.com>\x00A=B\x00"))
    session.process(Message(Code.RCPT, b"<to@example.com>\x00"))
    assert backend.calls == [
        ("helo", "helo_host"),
        ("mail", "from@example.com"),
        ("rcpt", "to@example.com"),
    ]


def test_headers_collected_and_passed_at_eoh(pair):
    backend = Recorder()
    session = make_session(pair[0], backend)
    session.process(Message(Code.HEADER, b"From\x00from@example.com\x00"))
    session.process(Message(Code.HEADER, b"x-empty-header\x00\x00"))
    assert session.process(Message(Code.EOH)) is SimpleResponse.CONTINUE
    assert backend.calls == [
        ("header", "From", "from@example.com"),
        ("header", "x-empty-header", ""),
    ]
    assert len(backend.seen_headers) == 2
    assert backend.seen_headers.get("from") == "from@example.com"
    assert "X-Empty-Header" in backend.seen_headers


def test_header_with_extra_fields_is_ignored(pair):
    backend = Recorder()
    session = make_session(pair[0], backend)
    resp = session.process(Message(Code.HEADER, b"a\x00b\x00c\x00"))
    assert resp is SimpleResponse.CONTINUE
    assert backend.calls == []
    assert len(session.headers) == 0


def test_data_and_body_chunk(pair):
    backend = Recorder()
    session = make_session(pair[0], backend)
    assert session.process(Message(Code.DATA)) is SimpleResponse.CONTINUE
    session.process(Message(Code.BODY, b"AAAA"))
    assert backend.calls == [("chunk", b"AAAA")]


def test_abort_sees_macros_then_resets(pair):
    backend = Recorder()
    session = make_session(pair[0], backend)
    session.process(Message(Code.MACRO, b"H" + b"tls_version\x00very old\x00"))
    session.process(Message(Code.HEADER, b"From\x00from@example.com\x00"))
    assert session.process(Message(Code.ABORT)) is None
    assert backend.abort_macros == {"tls_version": "very old"}
    assert session.macros == {}
    assert session.headers is None
    session.process(Message(Code.HELO, b"repeated_helo_host\x00"))
    assert backend.helo_macros == {}


def test_quit_ends_session_and_closes_connection(pair):
    conn, peer = pair
    thread = run(make_session(conn))
    write_packet(peer, Message(Code.QUIT))
    thread.join(5)
    assert not thread.is_alive()
    assert peer.recv(1) == b""


@pytest.mark.parametrize("code", [ord("Z"), Code.QUIT_NEW_CONN])
def test_unrecognized_code_ends_session(pair, code):
    conn, peer = pair
    thread = run(make_session(conn))
    write_packet(peer, Message(code))
    thread.join(5)
    assert not thread.is_alive()
    assert peer.recv(1) == b""


def test_peer_close_ends_session(pair):
    conn, peer = pair
    thread = run(make_session(conn))
    peer.close()
    thread.join(5)
    assert not thread.is_alive()
    assert conn.fileno() == -1


def test_body_modifications_sent_before_final_reply(pair):
    conn, peer = pair
    created = []

    def factory():
        created.append(NoOpMilter())
        return created[-1]

    def on_body(modifier):
        modifier.add_header("X-Bad", "very")
        modifier.quarantine("very bad message")

    server = Server(new_milter=factory)
    session = MilterSession(server, conn, Recorder(on_body=on_body))
    thread = run(session)

    write_packet(peer, Message(Code.EOB))
    first = read_packet(peer)
    second = read_packet(peer)
    final = read_packet(peer)
    assert (first.code, first.data) == (ModifyActCode.ADD_HEADER, b"X-Bad\x00very\x00")
    assert (second.code, second.data) == (ModifyActCode.QUARANTINE, b"very bad message\x00")
    assert final.code == ActionCode.ACCEPT

    write_packet(peer, Message(Code.QUIT))
    thread.join(5)
    assert len(created) == 1
    assert session.backend is created[0]


def test_continue_reply_keeps_backend(pair):
    conn, peer = pair
    backend = Recorder()
    server = Server(new_milter=NoOpMilter)
    session = MilterSession(server, conn, backend)
    thread = run(session)
    write_packet(peer, Message(Code.HELO, b"helo_host\x00"))
    reply = read_packet(peer)
    write_packet(peer, Message(Code.QUIT))
    thread.join(5)
    assert reply.code == ActionCode.CONTINUE
    assert session.backend is backend


def test_serve_handles_connection_and_stops_on_close():
    listener = socket.create_server(("127.0.0.1", 0))
    actions = OptAction.ADD_HEADER | OptAction.CHANGE_HEADER
    server = Server(new_milter=NoOpMilter, actions=actions)
    errors = []

    def target():
        try:
            server.serve(listener)
        except Exception as exc:
            errors.append(exc)

    thread = threading.Thread(target=target, daemon=True)
    thread.start()

    with socket.create_connection(listener.getsockname(), timeout=5) as client:
        write_packet(client, Message(Code.OPTNEG, bytes(12)))
        reply = read_packet(client)
        assert reply.code == Code.OPTNEG
        assert reply.data == struct.pack(">III", 2, int(actions), 0)

        data = b"host\x00" + b"4" + struct.pack(">H", 25565) + b"172.0.0.1\x00"
        write_packet(client, Message(Code.CONN, data))
        assert read_packet(client).code == ActionCode.CONTINUE
        write_packet(client, Message(Code.QUIT))

    server.close()
    thread.join(5)
    assert not thread.is_alive()
    assert len(errors) == 1 and isinstance(errors[0], ServerClosed)
    assert listener.fileno() == -1


def test_serve_after_close_raises():
    listener = socket.create_server(("127.0.0.1", 0))
    server = Server(new_milter=NoOpMilter)
    server.close()
    with pytest.raises(ServerClosed):
        server.serve(listener)
    assert listener.fileno() == -1