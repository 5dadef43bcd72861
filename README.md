# nabu

`nabu` is a library for tunnelling TCP traffic to a UDP relay. A local
SOCKS5 server accepts client connections. Each CONNECT request is then
carried to the relay as a stream of compact binary frames. Data frames are
re-sent until acknowledged, with timeouts that adapt to the measured
round-trip time.

It has no third-party runtime dependencies. All timeouts and durations are
in seconds.

## Modules

| Module            | Purpose |
|-------------------|---------|
| `nabu.frame`      | The `Frame` PDU with a 12-byte header (`encode_frame`, `decode_frame`), and the `Layer`, `RTTMeasurer`, `ReadTimeoutSetter` and `SessionKeySetter` protocols. |
| `nabu.packet`     | The CRC32-protected UDP `Packet` datagram (`encode_packet`, `decode_packet`) and `fragment_payload`, which makes MTU-safe chunks. |
| `nabu.window`     | `Reassembler`, which delivers packets in order, and `SendWindow`, which decides retransmissions from the RTO. |
| `nabu.reliable`   | `ReliableSession`, which adds ACKs, reassembly and retransmission on top of any `PacketIO`. Also `build_ack`. |
| `nabu.socks5`     | A SOCKS5 `Server` (no authentication, CONNECT only) and the `read_greeting` and `read_request` parsers. |
| `nabu.udp_client` | `UDPClient`, a frame-level and packet-level UDP transport to one relay, with RTT probing. |
| `nabu.tunnel`     | Connect handlers that join a SOCKS5 connection to a relay `Layer`, and the `run_tunnel` loop behind them. |

## Frames

```python
from nabu.frame import Frame, encode_frame, decode_frame

raw = encode_frame(Frame(flags=0x03, stream_id=42, seq=100, ack=90, payload=b"hello transport"))
frame = decode_frame(raw)
assert frame.stream_id == 42 and frame.payload == b"hello transport"
```

The errors all derive from `FrameError`:

| Error                       | Raised when |
|-----------------------------|-------------|
| `InvalidPayloadLengthError` | The payload is larger than 64 KiB. |
| `FrameTooShortError`        | The buffer is shorter than the header. |
| `InvalidFrameVersionError`  | The version byte is wrong. |

## Packets

```python
from nabu.packet import Packet, encode_packet, decode_packet, fragment_payload

raw = encode_packet(Packet(seq=7, flags=0x01, timestamp=123, payload=b"payload"))
assert decode_packet(raw).payload == b"payload"

chunks = fragment_payload(bytes(1750), 1350)   # two chunks
```

The errors all derive from `PacketError`:

| Error                    | Raised when |
|--------------------------|-------------|
| `PacketCRCMismatchError` | The datagram is corrupted. |
| `PacketTooShortError`    | The datagram is too short. |
| `PacketTooLargeError`    | The payload is over 1350 bytes. |

## Reliable delivery

`ReliableSession` works on any object that has `send_packet(packet)` and
`receive_packet()` methods. `receive_packet()` should raise `TimeoutError`
when nothing arrives in time.

- `send_data(payload, timestamp)` numbers an outgoing DATA packet, tracks it and sends it.
- `handle_incoming(packet)` clears acknowledged packets. It returns the data packets now in order, and whether an ACK matched a tracked send.
- `receive_and_handle()` receives one packet, sends an ACK for DATA, and processes it.
- `tick_retransmit()` re-sends packets whose retransmission timeout has expired. It drops a packet after `set_max_retries(n)` retries (default 3).
- `run_io(stop_event, out)` runs the retransmit loop and the receive loop until the `threading.Event` is set. Each in-order packet is put on the `queue.Queue` `out`. Errors other than timeouts go to the callback given to `set_error_handler`.

## SOCKS5 and tunnelling

```python
import threading

from nabu.socks5 import Server
from nabu.tunnel import new_relay_handler

server = Server("127.0.0.1:1080", on_connect=new_relay_handler("relay.example.com:8443"))
stop = threading.Event()
server.listen_and_serve(stop)   # returns after stop.set(), once handlers finish
```

### The server

The `Server` parses the greeting and the CONNECT request, then replies with
success. After that it calls `on_connect(conn, request)` with the socket and
the parsed `Request`. The optional `stop_event` ends the accept loop. Once
listening, `server.address` holds the bound address and `server.ready` is
set.

### Connect handlers

| Handler | What it does |
|---------|--------------|
| `new_relay_handler(relay_addr)` | Opens a fresh `UDPClient` for each request. |
| `new_relay_handler_with_layer(relay_addr, layer)` | Reuses an already connected `layer`, or dials UDP when `layer` is `None`. |
| `new_relay_handler_with_factory(layer_factory)` | Calls the factory for a connected layer per request, and closes that layer afterwards. |

### What a tunnel does

`run_tunnel` carries one session over the layer:

1. It measures the RTT when the layer supports `measure_rtt`.
2. It sends a CONNECT frame and waits for its ACK.
3. It then pumps data both ways. Each DATA frame is sent up to three times, with a backoff based on that RTT.
4. End of stream on either side sends or answers a FIN.

Failures raise `TunnelError`. `dropped_ack_count()` reports how many
acknowledgements were discarded because the local ACK queue was full.

## What this package does not do

- **No relay server.** It contains only the client side. You need a relay that speaks the frame protocol to reach anything.
- **No encryption and no key exchange.** Frames go over UDP in the clear. `SessionKeySetter` is only a protocol, and nothing in the package implements it.
- **No command-line program.** Use it from Python as shown above.