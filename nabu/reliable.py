"""ACK tracking, in-order reassembly and timeout-based retransmission over packet I/O."""

from __future__ import annotations

import queue
import threading
import time
from dataclasses import dataclass
from typing import Callable, Protocol

from .packet import PACKET_FLAG_ACK, PACKET_FLAG_DATA, Packet
from .window import DEFAULT_WINDOW_SIZE, Reassembler, SendWindow

DEFAULT_RETRANSMIT_TICK = 0.020
DEFAULT_MAX_RETRIES = 3

_SEQ_MASK = 0xFFFF
_PUT_POLL = 0.05


class PacketIO(Protocol):
    """Minimal packet-level I/O used by ReliableSession."""

    def send_packet(self, packet: Packet) -> None:
        """Transmit one packet."""
        ...

    def receive_packet(self) -> Packet:
        """Block until a packet arrives; raise TimeoutError when none does in time."""
        ...


def build_ack(seq: int, timestamp: int) -> Packet:
    """Create a standalone ACK packet for a received sequence."""
    return Packet(seq=seq, flags=PACKET_FLAG_ACK, timestamp=timestamp)


@dataclass
class _Pending:
    packet: Packet
    retries: int = 0


class ReliableSession:
    """Reliable delivery on top of unreliable packet I/O.

    The optional clock returns seconds; it drives both RTO bookkeeping and ACK
    timestamps.
    """

    def __init__(self, io: PacketIO, now: Callable[[], float] | None = None) -> None:
        self._io = io
        self._now = now or time.monotonic
        self._wall = now or time.time
        self._reassembler = Reassembler(DEFAULT_WINDOW_SIZE)
        self._send_window = SendWindow(DEFAULT_WINDOW_SIZE, self._now)
        self._retransmit_tick = DEFAULT_RETRANSMIT_TICK
        self._max_retries = DEFAULT_MAX_RETRIES
        self._lock = threading.Lock()
        self._next_seq = 0
        self._pending: dict[int, _Pending] = {}
        self._on_error: Callable[[BaseException], None] | None = None

    @property
    def send_window(self) -> SendWindow:
        """The window that tracks unacknowledged sends."""
        return self._send_window

    def set_max_retries(self, n: int) -> None:
        """Set how many retransmissions a packet gets before it is dropped (at least 1)."""
        with self._lock:
            self._max_retries = max(n, 1)

    def set_retransmit_tick(self, tick: float) -> None:
        """Set the retransmit loop interval in seconds; non-positive restores the default."""
        with self._lock:
            self._retransmit_tick = tick if tick > 0 else DEFAULT_RETRANSMIT_TICK

    def set_error_handler(self, handler: Callable[[BaseException], None] | None) -> None:
        """Register a callback for errors raised in the background loops."""
        with self._lock:
            self._on_error = handler

    def send_data(self, payload: bytes, timestamp: int) -> int:
        """Send a DATA packet, track it until acknowledged and return its sequence."""
        with self._lock:
            seq = self._next_seq
            self._next_seq = (self._next_seq + 1) & _SEQ_MASK
            packet = Packet(seq=seq, flags=PACKET_FLAG_DATA, timestamp=timestamp, payload=bytes(payload))
            self._pending[seq] = _Pending(packet)
            self._send_window.mark_sent(seq)
        self._io.send_packet(packet)
        return seq

    def handle_incoming(self, packet: Packet) -> tuple[list[Packet], bool]:
        """Process one packet.

        Returns the packets now deliverable in order, and whether the packet
        acknowledged a tracked send.
        """
        if packet.flags & PACKET_FLAG_ACK:
            with self._lock:
                self._pending.pop(packet.seq, None)
            return [], self._send_window.ack(packet.seq)
        if not packet.flags & PACKET_FLAG_DATA:
            return [], False
        return self._reassembler.push(packet), False

    def receive_and_handle(self) -> list[Packet]:
        """Receive one packet, acknowledge it if it carries data, and process it."""
        packet = self._io.receive_packet()
        if packet.flags & PACKET_FLAG_DATA:
            timestamp = int(self._wall()) & 0xFFFFFFFF
            self._io.send_packet(build_ack(packet.seq, timestamp))
        delivered, _ = self.handle_incoming(packet)
        return delivered

    def tick_retransmit(self) -> int:
        """Retransmit timed-out packets and return how many were sent."""
        with self._lock:
            max_retries = self._max_retries

        retransmitted = 0
        for seq in self._send_window.tracked_seqs():
            if not self._send_window.should_retransmit(seq):
                continue
            with self._lock:
                pending = self._pending.get(seq)
                if pending is None:
                    continue
                if pending.retries >= max_retries:
                    del self._pending[seq]
                    self._send_window.ack(seq)
                    continue
                pending.retries += 1
                self._send_window.mark_sent(seq)
                packet = pending.packet
            self._io.send_packet(packet)
            retransmitted += 1
        return retransmitted

    def run(self, stop_event: threading.Event) -> None:
        """Run the retransmit loop until stop_event is set."""
        with self._lock:
            tick = self._retransmit_tick
        while not stop_event.wait(tick):
            try:
                self.tick_retransmit()
            except Exception as exc:  # noqa: BLE001 - reported to the error handler
                self._report_error(exc)

    def run_receiver(self, stop_event: threading.Event, out: queue.Queue) -> None:
        """Receive, acknowledge and reassemble packets, putting in-order ones on out.

        Receive timeouts are expected polling behaviour and are ignored.
        """
        while not stop_event.is_set():
            try:
                delivered = self.receive_and_handle()
            except TimeoutError:
                continue
            except Exception as exc:  # noqa: BLE001 - reported to the error handler
                self._report_error(exc)
                continue
            for packet in delivered:
                while True:
                    if stop_event.is_set():
                        return
                    try:
                        out.put(packet, timeout=_PUT_POLL)
                        break
                    except queue.Full:
                        continue

    def run_io(self, stop_event: threading.Event, out: queue.Queue) -> None:
        """Run the retransmit and receiver loops together until stop_event is set."""
        threads = [
            threading.Thread(target=self.run, args=(stop_event,), daemon=True),
            threading.Thread(target=self.run_receiver, args=(stop_event, out), daemon=True),
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

    def _report_error(self, exc: BaseException) -> None:
        with self._lock:
            handler = self._on_error
        if handler is not None:
            handler(exc)