"""Client-side tunnel: carries one SOCKS5 CONNECT session over a frame transport."""

from __future__ import annotations

import collections
import itertools
import queue
import socket
import threading
import time
from typing import Callable

from .frame import (
    FLAG_ACK,
    FLAG_CONNECT,
    FLAG_DATA,
    FLAG_FIN,
    FRAME_VERSION,
    Frame,
    Layer,
    ReadTimeoutSetter,
    RTTMeasurer,
)
from .socks5 import ConnHandler, Request
from .udp_client import UDPClient

CLIENT_CHUNK_SIZE = 1300

DEFAULT_ACK_TIMEOUT = 1.2
MAX_SEND_RETRIES = 3
MIN_RTT_BACKOFF = 0.100
MAX_RTT_BACKOFF = 4.0
RTT_SLOP = 0.050  # safety margin added to the raw RTT
ACK_QUEUE_SIZE = 64

_SEQ32_MASK = 0xFFFFFFFF
_STREAM_MASK = 0xFFFF

_stream_ids = itertools.count(1)
_stream_lock = threading.Lock()

_dropped_acks = 0
_dropped_lock = threading.Lock()


class TunnelError(Exception):
    """Raised when a tunnel session cannot be set up or fails while running."""


class AckChannel:
    """Bounded, closable FIFO of acknowledged sequence numbers."""

    def __init__(self, capacity: int = ACK_QUEUE_SIZE) -> None:
        self._capacity = max(capacity, 1)
        self._items: collections.deque[int] = collections.deque()
        self._closed = False
        self._cond = threading.Condition()

    def try_put(self, ack: int) -> bool:
        """Enqueue ack without blocking; return False if the channel is full or closed."""
        with self._cond:
            if self._closed or len(self._items) >= self._capacity:
                return False
            self._items.append(ack)
            self._cond.notify()
            return True

    def get(self, timeout: float) -> int:
        """Take the next ack, waiting up to timeout seconds.

        Raises TimeoutError when nothing arrives in time and TunnelError once
        the channel is closed and drained.
        """
        with self._cond:
            self._cond.wait_for(lambda: self._items or self._closed, timeout=max(timeout, 0.0))
            if self._items:
                return self._items.popleft()
            if self._closed:
                raise TunnelError("ack channel closed")
            raise TimeoutError("no ack received in time")

    def close(self) -> None:
        """Close the channel; buffered acks can still be read."""
        with self._cond:
            self._closed = True
            self._cond.notify_all()


def dropped_ack_count() -> int:
    """How many ACKs were dropped because the local ACK queue was full."""
    with _dropped_lock:
        return _dropped_acks


def _next_stream_id() -> int:
    with _stream_lock:
        return next(_stream_ids) & _STREAM_MASK


def _join_host_port(host: str, port: int) -> str:
    return f"[{host}]:{port}" if ":" in host else f"{host}:{port}"


def new_relay_handler(relay_addr: str) -> ConnHandler:
    """Handler that opens a fresh UDP connection to the relay for every request."""
    return new_relay_handler_with_layer(relay_addr, None)


def new_relay_handler_with_layer(relay_addr: str, layer: Layer | None) -> ConnHandler:
    """Handler that reuses an already connected layer, or dials UDP when layer is None."""

    def handle(conn: socket.socket, request: Request) -> None:
        if layer is not None:
            run_tunnel(conn, request, layer)
            return
        try:
            client = UDPClient(relay_addr)
        except ValueError as exc:
            raise TunnelError(f"create udp client failed: {exc}") from exc
        with client:
            try:
                client.connect()
            except OSError as exc:
                raise TunnelError(f"connect udp client failed: {exc}") from exc
            run_tunnel(conn, request, client)

    return handle


def new_relay_handler_with_factory(layer_factory: Callable[[], Layer]) -> ConnHandler:
    """Handler that asks layer_factory for a fresh connected layer per request."""

    def handle(conn: socket.socket, request: Request) -> None:
        try:
            layer = layer_factory()
        except Exception as exc:
            raise TunnelError(f"create transport layer failed: {exc}") from exc
        try:
            run_tunnel(conn, request, layer)
        finally:
            layer.close()

    return handle


def _base_timeout(layer: Layer, stream_id: int) -> float:
    if not isinstance(layer, RTTMeasurer):
        return DEFAULT_ACK_TIMEOUT
    try:
        rtt = layer.measure_rtt(stream_id, 0)
    except Exception:  # noqa: BLE001 - an old relay may not answer pings
        return DEFAULT_ACK_TIMEOUT
    if rtt <= 0:
        return DEFAULT_ACK_TIMEOUT
    return min(max(rtt * 2 + RTT_SLOP, MIN_RTT_BACKOFF), MAX_RTT_BACKOFF)


def run_tunnel(conn: socket.socket, request: Request, layer: Layer) -> None:
    """Open a stream for request over layer and pump data both ways until it ends."""
    stream_id = _next_stream_id()
    base_timeout = _base_timeout(layer, stream_id)

    connect_seq = 1
    connect = Frame(
        version=FRAME_VERSION,
        flags=FLAG_CONNECT,
        stream_id=stream_id,
        seq=connect_seq,
        payload=_join_host_port(request.host, request.port).encode(),
    )
    try:
        layer.send_frame(connect)
    except Exception as exc:
        raise TunnelError(f"send connect frame failed: {exc}") from exc

    if isinstance(layer, ReadTimeoutSetter):
        layer.set_read_timeout(base_timeout)

    try:
        wait_for_ack(layer, stream_id, connect_seq)
    except Exception as exc:
        raise TunnelError(f"wait for connect ack failed: {exc}") from exc

    results: queue.Queue[TunnelError | None] = queue.Queue()
    ack_channel = AckChannel(ACK_QUEUE_SIZE)
    done_lock = threading.Lock()
    done = False

    def shutdown(err: TunnelError | None) -> None:
        nonlocal done
        with done_lock:
            if done:
                return
            done = True
        try:
            layer.close()
        except Exception:  # noqa: BLE001 - closing is best effort
            pass
        results.put(err)

    threading.Thread(
        target=pipe_conn_to_relay,
        args=(conn, layer, stream_id, ack_channel, base_timeout, shutdown),
        daemon=True,
    ).start()
    threading.Thread(
        target=pipe_relay_to_conn,
        args=(conn, layer, stream_id, ack_channel, shutdown),
        daemon=True,
    ).start()

    err = results.get()
    if err is not None:
        raise err


def wait_for_ack(layer: Layer, stream_id: int, seq: int) -> None:
    """Read frames until the ACK for seq on stream_id arrives."""
    while True:
        frame = layer.receive_frame()
        if frame.stream_id != stream_id:
            continue
        if frame.flags & FLAG_ACK and frame.ack == seq:
            return
        if frame.flags & FLAG_FIN:
            raise TunnelError("relay closed stream during connect")


def send_frame_with_retry(
    layer: Layer, frame: Frame, ack_channel: AckChannel, base_timeout: float
) -> None:
    """Send frame and wait for its ACK, retrying with exponential backoff."""
    backoff = max(base_timeout, MIN_RTT_BACKOFF)
    last_error: Exception | None = None
    for _ in range(MAX_SEND_RETRIES):
        try:
            layer.send_frame(frame)
        except Exception as exc:  # noqa: BLE001 - retried below
            last_error = exc
            time.sleep(backoff)
            backoff = min(backoff * 2, MAX_RTT_BACKOFF)
            continue
        try:
            wait_for_ack_seq(ack_channel, frame.seq, backoff)
        except TunnelError as exc:
            last_error = exc
            backoff = min(backoff * 2, MAX_RTT_BACKOFF)
            continue
        return
    if last_error is None:
        raise TunnelError("send frame retry exhausted")
    if isinstance(last_error, TunnelError):
        raise last_error
    raise TunnelError(str(last_error)) from last_error


def wait_for_ack_seq(ack_channel: AckChannel, expected_seq: int, timeout: float) -> None:
    """Wait until expected_seq is acknowledged, discarding other acks."""
    deadline = time.monotonic() + timeout
    while True:
        try:
            ack = ack_channel.get(deadline - time.monotonic())
        except TimeoutError as exc:
            raise TunnelError(f"ack timeout for seq={expected_seq}") from exc
        except TunnelError as exc:
            raise TunnelError(f"ack channel closed for seq={expected_seq}") from exc
        if ack == expected_seq:
            return


def pipe_conn_to_relay(
    conn: socket.socket,
    layer: Layer,
    stream_id: int,
    ack_channel: AckChannel,
    base_timeout: float,
    shutdown: Callable[[TunnelError | None], None],
) -> None:
    """Forward bytes read from conn as DATA frames; send FIN at end of stream."""
    seq = 2
    while True:
        try:
            chunk = conn.recv(CLIENT_CHUNK_SIZE)
        except OSError as exc:
            shutdown(TunnelError(f"read from socks connection failed: {exc}"))
            return
        if not chunk:
            fin = Frame(version=FRAME_VERSION, flags=FLAG_FIN, stream_id=stream_id, seq=seq)
            try:
                layer.send_frame(fin)
            except Exception as exc:  # noqa: BLE001 - reported through shutdown
                shutdown(TunnelError(f"send fin frame failed: {exc}"))
                return
            shutdown(None)
            return
        data = Frame(
            version=FRAME_VERSION,
            flags=FLAG_DATA,
            stream_id=stream_id,
            seq=seq,
            payload=chunk,
        )
        try:
            send_frame_with_retry(layer, data, ack_channel, base_timeout)
        except TunnelError as exc:
            shutdown(TunnelError(f"send data frame failed: {exc}"))
            return
        seq = (seq + 1) & _SEQ32_MASK


def pipe_relay_to_conn(
    conn: socket.socket,
    layer: Layer,
    stream_id: int,
    ack_channel: AckChannel,
    shutdown: Callable[[TunnelError | None], None],
) -> None:
    """Deliver relay frames: DATA to conn, ACKs to ack_channel, FIN ends the stream."""
    try:
        while True:
            try:
                frame = layer.receive_frame()
            except Exception as exc:  # noqa: BLE001 - reported through shutdown
                shutdown(TunnelError(f"receive relay frame failed: {exc}"))
                return
            if frame.stream_id != stream_id:
                continue
            if frame.flags & FLAG_ACK:
                try_enqueue_ack(ack_channel, frame.ack)
                continue
            if frame.flags & FLAG_FIN:
                fin_ack = Frame(
                    version=FRAME_VERSION, flags=FLAG_ACK, stream_id=stream_id, ack=frame.seq
                )
                try:
                    layer.send_frame(fin_ack)
                except Exception as exc:  # noqa: BLE001 - reported through shutdown
                    shutdown(TunnelError(f"send fin ack failed: {exc}"))
                    return
                shutdown(None)
                return
            if not frame.flags & FLAG_DATA:
                continue
            try:
                conn.sendall(frame.payload)
            except OSError as exc:
                shutdown(TunnelError(f"write to socks connection failed: {exc}"))
                return
    finally:
        ack_channel.close()


def try_enqueue_ack(ack_channel: AckChannel, ack: int) -> bool:
    """Queue ack without blocking; count it as dropped if the queue is full."""
    global _dropped_acks
    if ack_channel.try_put(ack):
        return True
    with _dropped_lock:
        _dropped_acks += 1
    return False