# milterkit

An implementation of the milter protocol, the protocol that mail servers
such as Sendmail and Postfix use to talk to external mail filters. It has
no dependencies outside the standard library.

It provides both sides of the conversation:

- `milterkit.server`: a threaded server for writing your own filters by
  subclassing `Milter` (or `NoOpMilter`) and returning responses from its
  callbacks;
- `milterkit.client`: a client that plays the mail server's part and
  drives a filter through a whole message;
- `milter-check`: a command that sends a message read from standard input
  to a running filter and reports what the filter did.

The lower-level pieces are public too: `milterkit.protocol` (command,
action and option codes, `read_packet` / `write_packet`, C-string helpers),
`milterkit.response` (`SimpleResponse`, `CustomResponse`,
`response_from_string`) and `milterkit.modifier` (`Modifier`, `HeaderMap`).

## Installation

```
pip install milterkit
```

## Writing a filter

Subclass `NoOpMilter` and override only the callbacks you need:
`connect`, `helo`, `mail_from`, `rcpt_to`, `header`, `headers`,
`body_chunk`, `body` and `abort`. By default every callback answers
`SimpleResponse.CONTINUE`, except `body`, which answers
`SimpleResponse.ACCEPT`. A callback may also return a `CustomResponse`, or
`None` to send no reply.

Each callback gets a `Modifier`. Its `macros` dict holds the macros the
mail server last sent, and `headers` is a `HeaderMap` of the fields seen so
far (`get`, `get_all`, `add`; names are matched case-insensitively). Its
methods `add_recipient`, `delete_recipient`, `replace_body`, `add_header`,
`change_header`, `insert_header`, `quarantine` and `change_from` send
modification requests; they belong in `body`, which is called once the
whole message has been received. CRLF line endings in header values and in
a replaced body are sent as LF.

```python
import socket

from milterkit.protocol import OptAction
from milterkit.response import SimpleResponse
from milterkit.server import NoOpMilter, Server


class TagSpam(NoOpMilter):
    def body(self, modifier):
        modifier.add_header("X-Checked", "yes")
        modifier.change_header(1, "Subject", "***SPAM***")
        return SimpleResponse.ACCEPT


server = Server(
    new_milter=TagSpam,
    actions=OptAction.ADD_HEADER | OptAction.CHANGE_HEADER,
)
listener = socket.create_server(("127.0.0.1", 7357))
server.serve(listener)
```

`new_milter` is called for each connection, and again whenever a response
ends the current message (accept, discard, reject, temporary failure), so
every message starts with a fresh filter object. `serve` runs each
connection in its own daemon thread and blocks until `Server.close()` is
called; it then closes the listener and raises `ServerClosed`.

## Talking to a filter

```python
from milterkit.client import Client, ClientOptions
from milterkit.protocol import OptAction, ProtoFamily

options = ClientOptions(
    read_timeout=10.0,
    write_timeout=10.0,
    action_mask=OptAction.ADD_HEADER | OptAction.CHANGE_HEADER | OptAction.QUARANTINE,
)
with Client("tcp", "127.0.0.1:7357", options) as client:
    with client.session() as session:
        action = session.conn("mail.example.com", ProtoFamily.INET, 25, "192.0.2.1")
        action = session.helo("mail.example.com")
        action = session.mail("sender@example.com", [])
        action = session.rcpt("rcpt@example.com", [])
        action = session.header([("From", "sender@example.com"), ("Subject", "Hi")])
        with open("body.txt", "rb") as body:
            modify_actions, action = session.body_read_from(body)
        for change in modify_actions:
            print(change)
        print(action.code)
```

The network is `"unix"` (the address is a socket path) or `"tcp"`,
`"tcp4"` or `"tcp6"` (the address is `host:port`, or `[host]:port`). A
custom `dialer` callable taking `(network, address)` may be given in
`ClientOptions` instead. Without options, `Client` uses 10-second dial,
read and write timeouts and asks for the add-header, add-recipient,
change-body, change-from and change-header actions.

Each step returns an `Action` whose `code` tells you whether the filter
wants you to continue, accept, reject, discard or temporarily fail the
message; for a reply-code verdict `smtp_code` and `smtp_text` are set.
Steps masked out during negotiation are not sent and answer continue.
`body_read_from` sends the body in chunks of at most 65535 bytes and then
calls `end`, which returns the list of `ModifyAction` changes the filter
asked for together with its final verdict. `close` aborts a message still
in progress and ends the session. Failures raise `MilterError`.

The client offers protocol version 6. If the filter answers with an older
version, the session falls back to it only when the requested actions and
protocol options all exist in version 2; otherwise `session()` raises
`UnsupportedMilterVersion`.

## milter-check

```
milter-check --transport tcp --address 127.0.0.1:7357 \
    --from sender@example.com --rcpt rcpt@example.com < message.eml
```

The message headers and body are read from standard input. The command
prints the filter's answer to each step, and every change the filter
requests at the end of the message, on standard error; it stops at the
first answer other than continue. Options (each also accepted with a
single dash): `--transport`, `--address`, `--hostname`, `--family`,
`--port`, `--conn-addr`, `--helo`, `--from`, `--rcpt` (comma-separated),
`--actions` (bitmask of allowed actions) and `--disabled-msgs` (bitmask of
protocol options). Run `milter-check --help` for their defaults.

The default `--actions` includes change-from, which needs protocol
version 6. To check a filter served by `milterkit.server`, pass a smaller
mask, for example `--actions 49` (add header, change header, quarantine).

## Limitations

- The server speaks protocol version 2 only. It does not answer with
  skip, does not honour the "no reply" protocol options, ignores the DATA
  command and closes the connection on commands it does not know,
  including unknown-command and quit-with-new-connection.
- The client opens a new connection for every session; there is no
  connection pooling. `Client.close()` only stops new sessions from being
  opened.

## Running the tests

```
pip install -e ".[test]"
pytest
```