"""In-order reassembly and RTO-based retransmission tracking."""

from __future__ import annotations

import threading
import time
from typing import Callable

from .packet import Packet

DEFAULT_WINDOW_SIZE = 256
MIN_RTO = 0.050
INITIAL_RTO = 0.200

_SEQ_MASK = 0xFFFF


class Reassembler:
    """Delivers packets in sequence order with a bounded out-of-order buffer."""

    def __init__(self, capacity: int = DEFAULT_WINDOW_SIZE) -> None:
        if capacity <= 0:
            capacity = DEFAULT_WINDOW_SIZE
        self._capacity = capacity
        self._next_seq = 0
        self._pending: dict[int, Packet] = {}
        self._lock = threading.Lock()

    def push(self, packet: Packet) -> list[Packet]:
        """Insert one packet and return any packets now deliverable in order."""
        with self._lock:
            if packet.seq < self._next_seq:
                return []  # old or duplicate
            if packet.seq == self._next_seq:
                out = [packet]
                self._next_seq = (self._next_seq + 1) & _SEQ_MASK
                while self._next_seq in self._pending:
                    out.append(self._pending.pop(self._next_seq))
                    self._next_seq = (self._next_seq + 1) & _SEQ_MASK
                return out
            if len(self._pending) >= self._capacity:
                return []  # backpressure: drop newest out-of-order packet
            self._pending.setdefault(packet.seq, packet)
            return []


class SendWindow:
    """Tracks send times and decides retransmissions with an RFC 6298-like RTO.

    Times are in seconds; the clock is injectable for testing.
    """

    def __init__(
        self,
        size: int = DEFAULT_WINDOW_SIZE,
        now: Callable[[], float] | None = None,
    ) -> None:
        self._now = now or time.monotonic
        self._size = size if size > 0 else DEFAULT_WINDOW_SIZE
        self._sent_at: dict[int, float] = {}
        self._srtt = 0.0
        self._rttvar = 0.0
        self._rto = INITIAL_RTO
        self._rtt_initialised = False
        self._lock = threading.Lock()

    @property
    def rto(self) -> float:
        """Current retransmission timeout in seconds."""
        with self._lock:
            return self._rto

    def mark_sent(self, seq: int) -> None:
        """Record the current time as the send time of seq."""
        with self._lock:
            self._sent_at[seq] = self._now()

    def update_rtt_estimator(self, sample: float) -> None:
        """Fold an RTT sample (seconds) into SRTT/RTTVAR and recompute the RTO."""
        with self._lock:
            if sample <= 0:
                return
            if not self._rtt_initialised:
                self._srtt = sample
                self._rttvar = sample / 2
                self._rtt_initialised = True
            else:
                err = abs(self._srtt - sample)
                self._rttvar = (3 * self._rttvar + err) / 4
                self._srtt = (7 * self._srtt + sample) / 8
            self._rto = max(self._srtt + 4 * self._rttvar, MIN_RTO)

    def should_retransmit(self, seq: int) -> bool:
        """Return True if seq is tracked and its elapsed time reached the RTO."""
        with self._lock:
            sent = self._sent_at.get(seq)
            if sent is None:
                return False
            return self._now() - sent >= self._rto

    def ack(self, seq: int) -> bool:
        """Stop tracking seq; return whether it was being tracked."""
        with self._lock:
            return self._sent_at.pop(seq, None) is not None

    def tracked_seqs(self) -> list[int]:
        """Snapshot of the sequences still awaiting acknowledgement."""
        with self._lock:
            return list(self._sent_at)