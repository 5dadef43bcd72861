"""UDP client transport carrying frames and packets to a relay."""

from __future__ import annotations

import socket
import threading
import time

from .frame import (
    FLAG_PING,
    FLAG_PONG,
    FRAME_VERSION,
    HEADER_SIZE,
    MAX_PAYLOAD,
    Frame,
    FrameError,
    decode_frame,
    encode_frame,
)
from .packet import (
    MAX_UDP_PAYLOAD,
    PACKET_CRC_SIZE,
    PACKET_HEADER_SIZE,
    Packet,
    decode_packet,
    encode_packet,
    fragment_payload,
)

DEFAULT_UDP_WRITE_TIMEOUT = 2.0
DEFAULT_UDP_READ_TIMEOUT = 5.0
DEFAULT_UDP_SOCKET_BUFFER = 4 * 1024 * 1024

_SEQ_MASK = 0xFFFF
_FRAME_BUFFER = HEADER_SIZE + MAX_PAYLOAD
_PACKET_BUFFER = PACKET_HEADER_SIZE + MAX_UDP_PAYLOAD + PACKET_CRC_SIZE


class NotConnectedError(ConnectionError):
    """Raised when I/O is attempted before connect() or after close()."""

    def __init__(self, message: str = "udp client not connected") -> None:
        super().__init__(message)


def _split_host_port(addr: str) -> tuple[str, int]:
    host, sep, port = addr.rpartition(":")
    if not sep:
        raise ConnectionError(f"resolve relay addr failed: missing port in {addr!r}")
    try:
        return host.strip("[]"), int(port)
    except ValueError as exc:
        raise ConnectionError(f"resolve relay addr failed: invalid port in {addr!r}") from exc


class UDPClient:
    """Frame- and packet-level UDP transport to a single relay.

    Timeouts are in seconds. The client is usable as a context manager, which
    closes the socket on exit.
    """

    def __init__(self, relay_addr: str) -> None:
        if not relay_addr:
            raise ValueError("relay address cannot be empty")
        self.relay_addr = relay_addr
        self.write_timeout = DEFAULT_UDP_WRITE_TIMEOUT
        self.read_timeout = DEFAULT_UDP_READ_TIMEOUT
        self.read_buffer = DEFAULT_UDP_SOCKET_BUFFER
        self.write_buffer = DEFAULT_UDP_SOCKET_BUFFER
        self._lock = threading.RLock()
        self._sock: socket.socket | None = None
        self._next_packet_seq = 0

    def __enter__(self) -> UDPClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def set_read_timeout(self, timeout: float) -> None:
        """Set the per-receive timeout in seconds."""
        with self._lock:
            self.read_timeout = timeout

    def connect(self) -> None:
        """Resolve the relay address and open a connected UDP socket."""
        host, port = _split_host_port(self.relay_addr)
        try:
            infos = socket.getaddrinfo(host, port, type=socket.SOCK_DGRAM)
        except OSError as exc:
            raise ConnectionError(f"resolve relay addr failed: {exc}") from exc
        family, socktype, proto, _, sockaddr = infos[0]
        sock = socket.socket(family, socktype, proto)
        try:
            sock.connect(sockaddr)
        except OSError as exc:
            sock.close()
            raise ConnectionError(f"dial udp failed: {exc}") from exc

        with self._lock:
            self._sock = sock
            read_buf = self.read_buffer
            write_buf = self.write_buffer

        if read_buf > 0:
            try:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, read_buf)
            except OSError as exc:
                raise ConnectionError(f"set read buffer failed: {exc}") from exc
        if write_buf > 0:
            try:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_SNDBUF, write_buf)
            except OSError as exc:
                raise ConnectionError(f"set write buffer failed: {exc}") from exc

    def close(self) -> None:
        """Close the socket; closing twice is harmless."""
        with self._lock:
            sock, self._sock = self._sock, None
        if sock is not None:
            sock.close()

    def _connected(self) -> socket.socket:
        with self._lock:
            sock = self._sock
        if sock is None:
            raise NotConnectedError()
        return sock

    def _write(self, sock: socket.socket, data: bytes) -> None:
        try:
            sock.settimeout(self.write_timeout)
            sock.send(data)
        except TimeoutError as exc:
            raise TimeoutError(f"udp write failed: {exc}") from exc
        except OSError as exc:
            raise ConnectionError(f"udp write failed: {exc}") from exc

    @staticmethod
    def _read(sock: socket.socket, size: int, timeout: float, what: str) -> bytes:
        try:
            sock.settimeout(timeout)
            return sock.recv(size)
        except TimeoutError as exc:
            raise TimeoutError(f"{what} failed: {exc}") from exc
        except OSError as exc:
            raise ConnectionError(f"{what} failed: {exc}") from exc

    def send_frame(self, frame: Frame) -> None:
        """Encode and transmit one frame."""
        sock = self._connected()
        self._write(sock, encode_frame(frame))

    def receive_frame(self) -> Frame:
        """Wait up to read_timeout for one frame and decode it."""
        sock = self._connected()
        with self._lock:
            timeout = self.read_timeout
        raw = self._read(sock, _FRAME_BUFFER, timeout, "udp read")
        return decode_frame(raw)

    def send_packet(self, packet: Packet) -> None:
        """Encode and transmit one packet-level datagram."""
        sock = self._connected()
        with self._lock:
            # Keep the allocator monotonic even when the caller picks the sequence.
            if packet.seq >= self._next_packet_seq:
                self._next_packet_seq = (packet.seq + 1) & _SEQ_MASK
        self._write(sock, encode_packet(packet))

    def receive_packet(self) -> Packet:
        """Wait up to read_timeout for one packet-level datagram and decode it."""
        sock = self._connected()
        with self._lock:
            timeout = self.read_timeout
        raw = self._read(sock, _PACKET_BUFFER, timeout, "udp read")
        return decode_packet(raw)

    def send_payload_fragments(self, flags: int, timestamp: int, payload: bytes) -> int:
        """Split payload into MTU-safe packets with consecutive sequences; return the count."""
        chunks = fragment_payload(payload, MAX_UDP_PAYLOAD)
        with self._lock:
            first = self._next_packet_seq
            self._next_packet_seq = (first + len(chunks)) & _SEQ_MASK
        for offset, chunk in enumerate(chunks):
            self.send_packet(
                Packet(
                    seq=(first + offset) & _SEQ_MASK,
                    flags=flags,
                    timestamp=timestamp,
                    payload=chunk,
                )
            )
        return len(chunks)

    def measure_rtt(self, stream_id: int, seq: int) -> float:
        """Send a Ping frame and return the seconds until the matching Pong arrives."""
        sock = self._connected()
        with self._lock:
            timeout = self.read_timeout

        start = time.perf_counter()
        try:
            self.send_frame(Frame(version=FRAME_VERSION, flags=FLAG_PING, stream_id=stream_id, seq=seq))
        except (OSError, FrameError) as exc:
            raise ConnectionError(f"ping send failed: {exc}") from exc

        deadline = time.monotonic() + timeout
        while (remaining := deadline - time.monotonic()) > 0:
            raw = self._read(sock, _FRAME_BUFFER, remaining, "pong read")
            try:
                frame = decode_frame(raw)
            except FrameError:
                continue  # skip malformed frame
            if frame.flags & FLAG_PONG and frame.ack == seq:
                return time.perf_counter() - start
        raise TimeoutError(f"pong timeout after {timeout}s")