import io
import queue
import socket
import threading
from concurrent.futures import Future, ThreadPoolExecutor

import pytest

from nabu.socks5 import (
    ADDR_TYPE_DOMAIN,
    ADDR_TYPE_IPV4,
    ADDR_TYPE_IPV6,
    CMD_CONNECT,
    MAX_AUTH_METHODS,
    NO_ACCEPT,
    NO_AUTH,
    VERSION5,
    InvalidAddressTypeError,
    InvalidVersionError,
    NoMethodsError,
    NoSupportedMethodError,
    Request,
    Server,
    Socks5Error,
    TooManyMethodsError,
    UnsupportedCommandError,
    read_greeting,
    read_request,
)


def _domain_request(domain: str, port_bytes: bytes) -> bytes:
    return (
        bytes([VERSION5, CMD_CONNECT, 0x00, ADDR_TYPE_DOMAIN, len(domain)])
        + domain.encode()
        + port_bytes
    )


def _recv_exact(sock: socket.socket, size: int) -> bytes:
    buf = b""
    while len(buf) < size:
        chunk = sock.recv(size - len(buf))
        if not chunk:
            break
        buf += chunk
    return buf


@pytest.fixture
def pair():
    client, server_side = socket.socketpair()
    client.settimeout(5)
    yield client, server_side
    client.close()
    server_side.close()


def _serve(server: Server, conn: socket.socket) -> Future:
    executor = ThreadPoolExecutor(max_workers=1)
    future = executor.submit(server.handle_conn, conn)
    executor.shutdown(wait=False)
    return future


def test_read_greeting_no_auth():
    assert read_greeting(io.BytesIO(bytes([VERSION5, 1, NO_AUTH]))) == NO_AUTH


def test_read_greeting_rejects_invalid_version():
    with pytest.raises(InvalidVersionError):
        read_greeting(io.BytesIO(bytes([0x04, 1, NO_AUTH])))


def test_read_greeting_no_methods():
    with pytest.raises(NoMethodsError):
        read_greeting(io.BytesIO(bytes([VERSION5, 0])))


def test_read_greeting_no_supported_method():
    assert read_greeting(io.BytesIO(bytes([VERSION5, 2, 0x02, 0x03]))) == NO_ACCEPT


def test_read_greeting_too_many_methods():
    data = bytes([VERSION5, MAX_AUTH_METHODS + 1]) + bytes(MAX_AUTH_METHODS + 1)
    with pytest.raises(TooManyMethodsError):
        read_greeting(io.BytesIO(data))


def test_read_greeting_truncated_methods():
    with pytest.raises(Socks5Error, match="read methods failed"):
        read_greeting(io.BytesIO(bytes([VERSION5, 3, NO_AUTH])))


def test_read_request_ipv4_connect():
    data = bytes([VERSION5, CMD_CONNECT, 0x00, ADDR_TYPE_IPV4, 1, 2, 3, 4, 0x01, 0xBB])
    assert read_request(io.BytesIO(data)) == Request(CMD_CONNECT, "1.2.3.4", 443)


def test_read_request_domain_connect():
    request = read_request(io.BytesIO(_domain_request("example.com", b"\x00\x50")))
    assert request.host == "example.com"
    assert request.port == 80


def test_read_request_rejects_unsupported_command():
    data = bytes([VERSION5, 0x02, 0x00, ADDR_TYPE_IPV4, 1, 1, 1, 1, 0x00, 0x50])
    with pytest.raises(UnsupportedCommandError):
        read_request(io.BytesIO(data))


def test_read_request_ipv6_connect():
    data = (
        bytes([VERSION5, CMD_CONNECT, 0x00, ADDR_TYPE_IPV6])
        + bytes(15)
        + b"\x01"
        + b"\x00\x50"
    )
    request = read_request(io.BytesIO(data))
    assert request.host == "::1"
    assert request.port == 80


def test_read_request_ipv4_mapped_ipv6_prints_as_ipv4():
    data = (
        bytes([VERSION5, CMD_CONNECT, 0x00, ADDR_TYPE_IPV6])
        + bytes(10)
        + b"\xff\xff"
        + bytes([1, 2, 3, 4])
        + b"\x00\x50"
    )
    assert read_request(io.BytesIO(data)).host == "1.2.3.4"


def test_read_request_rejects_non_zero_reserved():
    data = bytes([VERSION5, CMD_CONNECT, 0x01, ADDR_TYPE_IPV4, 1, 1, 1, 1, 0x00, 0x50])
    with pytest.raises(Socks5Error, match="reserved"):
        read_request(io.BytesIO(data))


def test_read_request_rejects_invalid_domain_chars():
    data = bytes([VERSION5, CMD_CONNECT, 0x00, ADDR_TYPE_DOMAIN, 3, ord("a"), 0x00, ord("b"), 0x00, 0x50])
    with pytest.raises(InvalidAddressTypeError):
        read_request(io.BytesIO(data))


def test_read_request_rejects_empty_domain():
    data = bytes([VERSION5, CMD_CONNECT, 0x00, ADDR_TYPE_DOMAIN, 0, 0x00, 0x50])
    with pytest.raises(InvalidAddressTypeError):
        read_request(io.BytesIO(data))


def test_read_request_rejects_unknown_address_type():
    data = bytes([VERSION5, CMD_CONNECT, 0x00, 0x09, 1, 1, 1, 1, 0x00, 0x50])
    with pytest.raises(InvalidAddressTypeError):
        read_request(io.BytesIO(data))


def test_read_request_missing_port():
    data = bytes([VERSION5, CMD_CONNECT, 0x00, ADDR_TYPE_IPV4, 1, 2, 3, 4])
    with pytest.raises(Socks5Error, match="read request port failed"):
        read_request(io.BytesIO(data))


def test_handle_conn_writes_method_selection(pair):
    client, server_side = pair
    server = Server(":0", request_timeout=2.0)
    future = _serve(server, server_side)

    client.sendall(bytes([VERSION5, 1, NO_AUTH]))
    assert _recv_exact(client, 2) == bytes([VERSION5, NO_AUTH])

    client.sendall(_domain_request("example.com", b"\x00\x50"))
    reply = _recv_exact(client, 10)
    assert reply == bytes([VERSION5, 0x00, 0x00, ADDR_TYPE_IPV4, 0, 0, 0, 0, 0, 0])

    assert future.result(timeout=5) is None


def test_handle_conn_no_supported_method(pair):
    client, server_side = pair
    future = _serve(Server(":0"), server_side)

    client.sendall(bytes([VERSION5, 1, 0x02]))
    assert _recv_exact(client, 2) == bytes([VERSION5, NO_ACCEPT])

    with pytest.raises(NoSupportedMethodError):
        future.result(timeout=5)


def test_handle_conn_calls_on_connect(pair):
    client, server_side = pair
    called: queue.Queue = queue.Queue()

    def on_connect(conn, request):
        called.put(request)

    server = Server(":0", request_timeout=2.0, on_connect=on_connect)
    future = _serve(server, server_side)

    client.sendall(bytes([VERSION5, 1, NO_AUTH]))
    _recv_exact(client, 2)
    client.sendall(_domain_request("example.com", b"\x01\xbb"))
    _recv_exact(client, 10)

    assert called.get(timeout=1) == Request(CMD_CONNECT, "example.com", 443)
    assert future.result(timeout=5) is None


def test_handle_conn_wraps_on_connect_error(pair):
    client, server_side = pair

    def on_connect(conn, request):
        raise RuntimeError("upstream down")

    future = _serve(Server(":0", request_timeout=2.0, on_connect=on_connect), server_side)
    client.sendall(bytes([VERSION5, 1, NO_AUTH]))
    _recv_exact(client, 2)
    client.sendall(_domain_request("example.com", b"\x00\x50"))
    _recv_exact(client, 10)

    with pytest.raises(Socks5Error, match="connect handler failed: upstream down"):
        future.result(timeout=5)


def test_handle_conn_invalid_version(pair):
    client, server_side = pair
    future = _serve(Server(":0"), server_side)
    client.sendall(bytes([0x04, 1, NO_AUTH]))
    with pytest.raises(InvalidVersionError):
        future.result(timeout=5)


def test_listen_and_serve_dispatches_and_stops():
    got: queue.Queue = queue.Queue()

    def on_connect(conn, request):
        got.put(request)
        conn.sendall(b"ok")

    server = Server("127.0.0.1:0", on_connect=on_connect)
    stop = threading.Event()
    thread = threading.Thread(target=server.listen_and_serve, args=(stop,), daemon=True)
    thread.start()
    assert server.ready.wait(5)

    with socket.create_connection(server.address, timeout=5) as client:
        client.sendall(bytes([VERSION5, 1, NO_AUTH]))
        assert _recv_exact(client, 2) == bytes([VERSION5, NO_AUTH])
        client.sendall(bytes([VERSION5, CMD_CONNECT, 0x00, ADDR_TYPE_IPV4, 10, 0, 0, 1, 0x1F, 0x90]))
        assert _recv_exact(client, 10)[:2] == bytes([VERSION5, 0x00])
        assert _recv_exact(client, 2) == b"ok"

    assert got.get(timeout=5) == Request(CMD_CONNECT, "10.0.0.1", 8080)
    stop.set()
    thread.join(5)
    assert not thread.is_alive()


def test_listen_and_serve_rejects_address_without_port():
    with pytest.raises(Socks5Error, match="listen failed"):
        Server("no-port").listen_and_serve()