"""UDP datagram format with trailing CRC32 and MTU-safe fragmentation."""

from __future__ import annotations

import struct
import zlib
from dataclasses import dataclass

PACKET_HEADER_SIZE = 7  # 2B seq + 1B flags + 4B timestamp
PACKET_CRC_SIZE = 4
MAX_UDP_PAYLOAD = 1350

PACKET_FLAG_DATA = 0x01
PACKET_FLAG_ACK = 0x02
PACKET_FLAG_FIN = 0x04
PACKET_FLAG_KEEPALIVE = 0x08

_HEADER = struct.Struct(">HBI")
_CRC = struct.Struct(">I")


class PacketError(ValueError):
    """Base class for packet encoding and decoding errors."""


class PacketTooShortError(PacketError):
    """Raised when a datagram is shorter than header plus CRC."""

    def __init__(self, message: str = "packet too short") -> None:
        super().__init__(message)


class PacketTooLargeError(PacketError):
    """Raised when a packet payload exceeds the MTU-safe limit."""

    def __init__(self, message: str = "packet payload too large") -> None:
        super().__init__(message)


class PacketCRCMismatchError(PacketError):
    """Raised when the trailing CRC32 does not match the contents."""

    def __init__(self, message: str = "packet crc mismatch") -> None:
        super().__init__(message)


@dataclass
class Packet:
    """UDP transport datagram: [2B seq][1B flags][4B timestamp][payload][4B crc32]."""

    seq: int = 0
    flags: int = 0
    timestamp: int = 0
    payload: bytes = b""


def encode_packet(packet: Packet) -> bytes:
    """Serialise a packet and append its CRC32."""
    payload = bytes(packet.payload)
    if len(payload) > MAX_UDP_PAYLOAD:
        raise PacketTooLargeError()
    try:
        body = _HEADER.pack(packet.seq, packet.flags, packet.timestamp) + payload
    except struct.error as exc:
        raise PacketError(f"packet header field out of range: {exc}") from exc
    return body + _CRC.pack(zlib.crc32(body))


def decode_packet(raw: bytes) -> Packet:
    """Verify the CRC32 and parse a packet."""
    if len(raw) < PACKET_HEADER_SIZE + PACKET_CRC_SIZE:
        raise PacketTooShortError()
    body = raw[:-PACKET_CRC_SIZE]
    (got_crc,) = _CRC.unpack(raw[-PACKET_CRC_SIZE:])
    if got_crc != zlib.crc32(body):
        raise PacketCRCMismatchError()
    payload = bytes(body[PACKET_HEADER_SIZE:])
    if len(payload) > MAX_UDP_PAYLOAD:
        raise PacketTooLargeError()
    seq, flags, timestamp = _HEADER.unpack_from(body, 0)
    return Packet(seq=seq, flags=flags, timestamp=timestamp, payload=payload)


def fragment_payload(payload: bytes, max_chunk: int = MAX_UDP_PAYLOAD) -> list[bytes]:
    """Split payload into chunks of at most max_chunk bytes.

    A non-positive max_chunk falls back to MAX_UDP_PAYLOAD. A payload that fits
    (including an empty one) yields a single chunk.
    """
    if max_chunk <= 0:
        max_chunk = MAX_UDP_PAYLOAD
    data = bytes(payload)
    if len(data) <= max_chunk:
        return [data]
    return [data[start:start + max_chunk] for start in range(0, len(data), max_chunk)]