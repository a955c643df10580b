# natrelay

`natrelay` is a library that lets machines behind NAT reach each other
through a central relay server. Each node keeps one long-lived TCP
connection to the server, optionally over TLS. Messages travel over that
connection as checksummed frames. The server forwards them from one node to
another along *links*, and each link is a virtual session named by a link id.

The package contains these modules:

- `natrelay.hashing`: `Hasher`, which makes the time-based HMAC-SHA512
  handshake token.
- `natrelay.message`: the message dataclasses (`Msg` and its payloads), their
  enums, and `MsgpackCodec`, which encodes them for the wire.
- `natrelay.compress`: `GzipCompressor`, optional payload compression.
- `natrelay.transport`: `FramedConnection` and `encode_frame`, which carry
  length-prefixed, CRC-32-checked frames over a socket.
- `natrelay.server`: the relay `Handler`, with its client sessions and links,
  and `serve`, which listens for nodes.
- `natrelay.connection`: `ClientConnection`, which gives each link its own
  queue, and `connect`, which dials the server and sends the handshake.
- `natrelay.builders`: functions that build the messages a node sends
  (connect/disconnect, shell, screen tiles, mouse, keyboard, clipboard, and
  tunnelled HTTP and websocket traffic).
- `natrelay.rules`: `RuleManager`, the `Bench` rule, and the `info_summary` /
  `rules_report` summaries.
- `natrelay.shell`: the `Shell` rule. It runs a local shell on a
  pseudo-terminal (POSIX only) and converts GBK output to UTF-8.
- `natrelay.vncimage`: screen-tile helpers. They split a frame into 64×64
  tiles, find the tiles that changed, and encode them as raw RGBA or JPEG.

## Handshake

Both ends share a secret. `Hasher.hash` returns an HMAC-SHA512 digest of the
current time window, which is 30 seconds long by default:

```python
import time
from natrelay.hashing import Hasher

hasher = Hasher("secret", 30)
digest = hasher.hash(time.time())
```

## Running a relay server

```python
from natrelay.hashing import Hasher
from natrelay.server import Handler, serve

handler = Handler(Hasher("secret", 30), read_timeout=1.0, write_timeout=1.0)
serve(handler, 6154)                                 # plain TCP
# serve(handler, 6154, "server.crt", "server.key")  # TLS
```

The server makes up to ten attempts to read a valid handshake from a new
node. A node that sends a handshake with the wrong token is disconnected at
once. A node that stays silent for more than ten minutes is dropped. When a
node is dropped, both ends of each of its links are sent a disconnect.

## Connecting a node

```python
from natrelay import builders
from natrelay.connection import connect
from natrelay.hashing import Hasher

conn = connect("relay.example.com:6154", "office-pc", Hasher("secret", 30),
               use_ssl=True, ssl_insecure=False,
               read_timeout=1.0, write_timeout=1.0)

conn.add_link("0123456789abcdef")
conn.send(builders.connect_request("0123456789abcdef", "shell", "bash",
                                   "home-server", "", [], 0))
reply = conn.chan_read("0123456789abcdef").get()
```

`send` returns the encoded size of the message. It returns 0 if the write
queue stayed full past the write timeout.

Messages for links that this node has not claimed arrive on `conn.unknown()`.
After `chan_close`, the link's queue yields `None`, and any later messages
for that link are dropped. `conn.wait()` blocks until the connection ends.

## Transport

`FramedConnection` wraps a socket. Each frame holds a 16-bit big-endian
length, a CRC-32 of the payload, and the payload itself. The payload is the
message encoded by `MsgpackCodec`, and it can be gzip-compressed by
`GzipCompressor`. A payload longer than 65535 bytes raises `TooLongError`.
A corrupted frame raises `ChecksumError`.

```python
from natrelay.transport import encode_frame

frame = encode_frame(b"payload")
```

## Screen tiles

```python
from natrelay.vncimage import calc_diff, cut, encode_tile

changed = calc_diff(previous_frame, current_frame)   # list of Rect
for rect in changed:
    tile = cut(current_frame, rect)
    encoding, data = encode_tile(tile, 50)            # JPEG at quality 50
```

At quality 100, `encode_tile` returns the raw RGBA pixels. `decode_image`
turns a received tile back into RGBA bytes. `encode_reply` builds the binary
frame for a browser: seven big-endian 32-bit integers followed by the pixels.

## What the package does not do

- It has no command-line program and does not install itself as a system
  service. You build the server or client in Python as shown above.
- It serves no web pages. There is no HTTP dashboard and no browser
  terminal or desktop viewer. `info_summary` and `rules_report` only return
  the data such pages would show.
- It does not capture the screen or inject mouse and keyboard input. The
  `vncimage` helpers work on frames that you supply.
- It has no code-server rule. The builders can create the messages for
  tunnelled HTTP and websockets, but nothing here serves or proxies them.

## Running the tests

Install the `test` extra, then run `pytest`.