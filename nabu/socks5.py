"""Minimal SOCKS5 server: greeting, CONNECT request parsing and per-connection dispatch."""

from __future__ import annotations

import ipaddress
import logging
import socket
import threading
from dataclasses import dataclass
from typing import Callable, Protocol

VERSION5 = 0x05
NO_AUTH = 0x00
NO_ACCEPT = 0xFF
CMD_CONNECT = 0x01

ADDR_TYPE_IPV4 = 0x01
ADDR_TYPE_DOMAIN = 0x03
ADDR_TYPE_IPV6 = 0x04

DEFAULT_MAX_CONNS = 1024
DEFAULT_HANDSHAKE_TIMEOUT = 5.0
DEFAULT_REQUEST_TIMEOUT = 30.0
MAX_AUTH_METHODS = 16

_ACCEPT_POLL = 0.2


class Socks5Error(Exception):
    """Base class for SOCKS5 protocol and server errors."""


class InvalidVersionError(Socks5Error):
    """Raised when a message does not carry SOCKS version 5."""

    def __init__(self, message: str = "invalid socks version") -> None:
        super().__init__(message)


class NoMethodsError(Socks5Error):
    """Raised when a greeting lists no authentication methods."""

    def __init__(self, message: str = "no auth methods provided") -> None:
        super().__init__(message)


class NoSupportedMethodError(Socks5Error):
    """Raised when none of the offered authentication methods is supported."""

    def __init__(self, message: str = "no supported auth method") -> None:
        super().__init__(message)


class TooManyMethodsError(Socks5Error):
    """Raised when a greeting lists more methods than allowed."""

    def __init__(self, message: str = "too many auth methods") -> None:
        super().__init__(message)


class UnsupportedCommandError(Socks5Error):
    """Raised for any command other than CONNECT."""

    def __init__(self, message: str = "unsupported socks command") -> None:
        super().__init__(message)


class InvalidAddressTypeError(Socks5Error):
    """Raised for an unknown address type or a malformed domain name."""

    def __init__(self, message: str = "invalid address type") -> None:
        super().__init__(message)


class _Reader(Protocol):
    def read(self, size: int) -> bytes: ...


@dataclass(frozen=True)
class Request:
    """A parsed SOCKS5 CONNECT request."""

    command: int
    host: str
    port: int


ConnHandler = Callable[[socket.socket, Request], None]


def _read_exact(reader: _Reader, size: int, what: str) -> bytes:
    buf = bytearray()
    while len(buf) < size:
        try:
            chunk = reader.read(size - len(buf))
        except OSError as exc:
            raise Socks5Error(f"{what} failed: {exc}") from exc
        if not chunk:
            raise Socks5Error(f"{what} failed: unexpected EOF")
        buf += chunk
    return bytes(buf)


def read_greeting(reader: _Reader) -> int:
    """Read the client greeting and return the selected method (NO_AUTH or NO_ACCEPT)."""
    version, n_methods = _read_exact(reader, 2, "read greeting header")
    if version != VERSION5:
        raise InvalidVersionError()
    if n_methods == 0:
        raise NoMethodsError()
    if n_methods > MAX_AUTH_METHODS:
        raise TooManyMethodsError()
    methods = _read_exact(reader, n_methods, "read methods")
    return NO_AUTH if NO_AUTH in methods else NO_ACCEPT


def read_request(reader: _Reader) -> Request:
    """Read and validate a CONNECT request."""
    version, command, reserved, addr_type = _read_exact(reader, 4, "read request header")
    if version != VERSION5:
        raise InvalidVersionError()
    if reserved != 0x00:
        raise Socks5Error(f"invalid reserved field: expected 0x00, got 0x{reserved:02x}")
    if command != CMD_CONNECT:
        raise UnsupportedCommandError()
    host = _read_address(reader, addr_type)
    port = int.from_bytes(_read_exact(reader, 2, "read request port"), "big")
    return Request(command=CMD_CONNECT, host=host, port=port)


def _read_address(reader: _Reader, addr_type: int) -> str:
    if addr_type == ADDR_TYPE_IPV4:
        return str(ipaddress.IPv4Address(_read_exact(reader, 4, "read ipv4 address")))
    if addr_type == ADDR_TYPE_IPV6:
        addr = ipaddress.IPv6Address(_read_exact(reader, 16, "read ipv6 address"))
        return str(addr.ipv4_mapped or addr)
    if addr_type == ADDR_TYPE_DOMAIN:
        (length,) = _read_exact(reader, 1, "read domain length")
        if length == 0:
            raise InvalidAddressTypeError()
        domain = _read_exact(reader, length, "read domain")
        if any(b < 0x21 or b > 0x7E for b in domain):
            raise InvalidAddressTypeError()
        return domain.decode("ascii")
    raise InvalidAddressTypeError()


def _split_host_port(addr: str) -> tuple[str, int]:
    host, sep, port = addr.rpartition(":")
    if not sep:
        raise Socks5Error(f"listen failed: missing port in address {addr!r}")
    try:
        return host.strip("[]"), int(port)
    except ValueError as exc:
        raise Socks5Error(f"listen failed: invalid port in address {addr!r}") from exc


def _peer_name(conn: socket.socket) -> str:
    try:
        return str(conn.getpeername())
    except OSError:
        return "unknown"


class Server:
    """SOCKS5 server accepting CONNECT requests and handing them to on_connect."""

    def __init__(
        self,
        listen_addr: str,
        max_conns: int = DEFAULT_MAX_CONNS,
        handshake_timeout: float = DEFAULT_HANDSHAKE_TIMEOUT,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        logger: logging.Logger | None = None,
        on_connect: ConnHandler | None = None,
    ) -> None:
        self.listen_addr = listen_addr
        self.max_conns = max_conns
        self.handshake_timeout = handshake_timeout
        self.request_timeout = request_timeout
        self.logger = logger or logging.getLogger(__name__)
        self.on_connect = on_connect
        self.address: tuple[str, int] | None = None
        self.ready = threading.Event()

    def _apply_defaults(self) -> None:
        if self.max_conns <= 0:
            self.max_conns = DEFAULT_MAX_CONNS
        if self.handshake_timeout <= 0:
            self.handshake_timeout = DEFAULT_HANDSHAKE_TIMEOUT
        if self.request_timeout <= 0:
            self.request_timeout = DEFAULT_REQUEST_TIMEOUT
        if self.logger is None:
            self.logger = logging.getLogger(__name__)

    def listen_and_serve(self, stop_event: threading.Event | None = None) -> None:
        """Accept connections until stop_event is set, then wait for handlers to finish."""
        stop = stop_event or threading.Event()
        self._apply_defaults()
        host, port = _split_host_port(self.listen_addr)
        family = socket.AF_INET6 if ":" in host else socket.AF_INET
        try:
            listener = socket.create_server((host, port), family=family)
        except OSError as exc:
            raise Socks5Error(f"listen failed: {exc}") from exc

        slots = threading.BoundedSemaphore(self.max_conns)
        workers: list[threading.Thread] = []
        with listener:
            listener.settimeout(_ACCEPT_POLL)
            self.address = listener.getsockname()[:2]
            self.ready.set()
            while not stop.is_set():
                try:
                    conn, _ = listener.accept()
                except TimeoutError:
                    continue
                except OSError as exc:
                    if stop.is_set():
                        break
                    raise Socks5Error(f"accept failed: {exc}") from exc
                slots.acquire()
                worker = threading.Thread(
                    target=self._serve_one, args=(conn, slots), daemon=True
                )
                worker.start()
                workers = [w for w in workers if w.is_alive()]
                workers.append(worker)
        for worker in workers:
            worker.join()

    def _serve_one(self, conn: socket.socket, slots: threading.BoundedSemaphore) -> None:
        peer = _peer_name(conn)
        try:
            self.handle_conn(conn)
        except Exception as exc:  # noqa: BLE001 - one failing client must not stop the server
            self.logger.warning("connection closed with error remote=%s error=%s", peer, exc)
        finally:
            conn.close()
            slots.release()

    def handle_conn(self, conn: socket.socket) -> None:
        """Run the SOCKS5 handshake on conn and dispatch the request to on_connect."""
        try:
            conn.settimeout(self.handshake_timeout)
        except OSError as exc:
            raise Socks5Error(f"set handshake deadline failed: {exc}") from exc

        with conn.makefile("rb", buffering=0) as reader:
            method = read_greeting(reader)
            self._send(conn, bytes([VERSION5, method]), "write greeting response")
            if method == NO_ACCEPT:
                raise NoSupportedMethodError()
            try:
                conn.settimeout(self.request_timeout)
            except OSError as exc:
                raise Socks5Error(f"set request deadline failed: {exc}") from exc
            request = read_request(reader)

        self.logger.info(
            "socks5 request received remote=%s host=%s port=%d",
            _peer_name(conn),
            request.host,
            request.port,
        )
        reply = bytes([VERSION5, 0x00, 0x00, ADDR_TYPE_IPV4, 0, 0, 0, 0, 0, 0])
        self._send(conn, reply, "write socks5 response")

        try:
            conn.settimeout(None)
        except OSError as exc:
            raise Socks5Error(f"clear connection deadline failed: {exc}") from exc

        if self.on_connect is not None:
            try:
                self.on_connect(conn, request)
            except Exception as exc:
                raise Socks5Error(f"connect handler failed: {exc}") from exc

    @staticmethod
    def _send(conn: socket.socket, data: bytes, what: str) -> None:
        try:
            conn.sendall(data)
        except OSError as exc:
            raise Socks5Error(f"{what} failed: {exc}") from exc