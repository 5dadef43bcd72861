"""Wire-level frame format shared by client and relay, plus transport-layer protocols."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

FRAME_VERSION = 1
HEADER_SIZE = 12
MAX_PAYLOAD = 64 * 1024

FLAG_DATA = 0x01
FLAG_CONNECT = 0x02
FLAG_FIN = 0x04
FLAG_PING = 0x08  # RTT probe: sender wants a Pong reply
FLAG_PONG = 0x10  # RTT probe reply to a Ping
FLAG_HANDSHAKE = 0x40  # PSK-based session key negotiation
FLAG_ACK = 0x80

_HEADER = struct.Struct(">BBHII")


class FrameError(ValueError):
    """Base class for frame encoding and decoding errors."""


class FrameTooShortError(FrameError):
    """Raised when raw bytes are shorter than a frame header."""

    def __init__(self, message: str = "frame too short") -> None:
        super().__init__(message)


class InvalidFrameVersionError(FrameError):
    """Raised when a frame carries an unsupported version byte."""

    def __init__(self, message: str = "invalid frame version") -> None:
        super().__init__(message)


class InvalidPayloadLengthError(FrameError):
    """Raised when a frame payload exceeds the maximum size."""

    def __init__(self, message: str = "invalid payload length") -> None:
        super().__init__(message)


@dataclass
class Frame:
    """The PDU exchanged between client and relay.

    A version of 0 stands for the current protocol version when encoding.
    """

    version: int = FRAME_VERSION
    flags: int = 0
    stream_id: int = 0
    seq: int = 0
    ack: int = 0
    payload: bytes = b""


def encode_frame(frame: Frame) -> bytes:
    """Serialise a frame to its wire form."""
    version = frame.version or FRAME_VERSION
    if version != FRAME_VERSION:
        raise InvalidFrameVersionError()
    payload = bytes(frame.payload)
    if len(payload) > MAX_PAYLOAD:
        raise InvalidPayloadLengthError()
    try:
        header = _HEADER.pack(version, frame.flags, frame.stream_id, frame.seq, frame.ack)
    except struct.error as exc:
        raise FrameError(f"frame header field out of range: {exc}") from exc
    return header + payload


def decode_frame(raw: bytes) -> Frame:
    """Parse a frame from its wire form."""
    if len(raw) < HEADER_SIZE:
        raise FrameTooShortError()
    version, flags, stream_id, seq, ack = _HEADER.unpack_from(raw, 0)
    if version != FRAME_VERSION:
        raise InvalidFrameVersionError()
    payload_len = len(raw) - HEADER_SIZE
    if payload_len > MAX_PAYLOAD:
        raise InvalidPayloadLengthError(f"invalid payload length: {payload_len}")
    return Frame(
        version=version,
        flags=flags,
        stream_id=stream_id,
        seq=seq,
        ack=ack,
        payload=bytes(raw[HEADER_SIZE:]),
    )


@runtime_checkable
class Layer(Protocol):
    """Frame-level transport that tunnel logic runs over."""

    def send_frame(self, frame: Frame) -> None:
        """Encode and transmit a single frame."""
        ...

    def receive_frame(self) -> Frame:
        """Block until a frame arrives; raise on failure."""
        ...

    def close(self) -> None:
        """Release any resources held by the transport."""
        ...


@runtime_checkable
class RTTMeasurer(Protocol):
    """Optional capability: measure round-trip time with a Ping/Pong exchange."""

    def measure_rtt(self, stream_id: int, seq: int) -> float:
        """Send a Ping frame and return the round-trip time in seconds."""
        ...


@runtime_checkable
class ReadTimeoutSetter(Protocol):
    """Optional capability: adjust the per-frame receive timeout."""

    def set_read_timeout(self, timeout: float) -> None:
        """Set the receive timeout in seconds."""
        ...


@runtime_checkable
class SessionKeySetter(Protocol):
    """Optional capability: apply a post-handshake session key to later frames."""

    def set_session_key(self, key: bytes) -> None:
        """Install the session key."""
        ...