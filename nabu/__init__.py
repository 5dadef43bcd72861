"""SOCKS5 server and client-side UDP tunnel with framed transport, reliable delivery and RTT-adaptive retries."""

__version__ = "0.1.0"