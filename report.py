"""
Result Report Subsystem
========================
Streams operand-store values out of the chip over a byte-wide channel
with valid/ready handshaking.

    REPORT ─▶ index FIFO   (addr, tag, slot count)  one entry per report
           └▶ wide FIFO    field-width words        one per cycle
                 │
                 ▼ narrowing stage: one wide word per cycle
              byte FIFO    word_bytes big-endian bytes per word
                 │
                 ▼ drain: index FIFO strictly in order
              channel      header (>HBB) then payload, last on final byte

Dispatch only blocks when the FIFOs lack room for a whole report; the
drain runs every cycle on its own and only stalls on channel backpressure.
"""

from __future__ import annotations
import logging
import struct
from collections import deque, namedtuple
from typing import Callable, Optional, Union

log = logging.getLogger(__name__)

HEADER_FMT = ">HBB"
HEADER_LEN = struct.calcsize(HEADER_FMT)

IndexEntry = namedtuple("IndexEntry", "addr tag count")
Report = namedtuple("Report", "addr tag words")


class ReportChannel:
    """Sink side of the outbound byte stream.

    ``ready`` may be a bool or a zero-argument callable sampled each cycle.
    Every accepted byte is recorded in ``beats`` as ``(byte, last)``;
    complete messages collect in ``messages`` and go to ``on_message``.
    """

    def __init__(self, ready: Union[bool, Callable[[], bool]] = True,
                 on_message: Optional[Callable[[bytes], None]] = None):
        self.ready = ready
        self.on_message = on_message
        self.beats: list[tuple[int, bool]] = []
        self.messages: list[bytes] = []
        self._current = bytearray()

    def is_ready(self) -> bool:
        if callable(self.ready):
            return bool(self.ready())
        return bool(self.ready)

    def send(self, byte: int, last: bool):
        self.beats.append((byte, last))
        self._current.append(byte)
        if last:
            msg = bytes(self._current)
            self._current = bytearray()
            self.messages.append(msg)
            if self.on_message:
                self.on_message(msg)

    def clear(self):
        self.beats.clear()
        self.messages.clear()
        self._current = bytearray()


def parse_report(msg: bytes, word_bytes: int) -> Report:
    """Split one framed message into address, tag and payload words."""
    if len(msg) < HEADER_LEN:
        raise ValueError(f"report too short: {len(msg)} bytes")
    addr, tag, count = struct.unpack(HEADER_FMT, msg[:HEADER_LEN])
    payload = msg[HEADER_LEN:]
    if len(payload) != count * word_bytes:
        raise ValueError(f"payload is {len(payload)} bytes, header says "
                         f"{count} x {word_bytes}")
    words = [int.from_bytes(payload[i:i + word_bytes], "big")
             for i in range(0, len(payload), word_bytes)]
    return Report(addr, tag, words)


class ReportUnit:
    """Index / wide / byte FIFOs plus the independent drain process."""

    def __init__(self, channel: ReportChannel, word_bytes: int = 48,
                 index_depth: int = 8, wide_depth: int = 32):
        self.channel = channel
        self.word_bytes = word_bytes
        self.index_depth = index_depth
        self.wide_depth = wide_depth
        self.byte_depth = wide_depth * word_bytes
        self._mask = (1 << (8 * word_bytes)) - 1
        self.cycle = 0
        self.sent = 0
        self.reset()

    def reset(self):
        self.index_fifo: deque = deque()
        self.wide_fifo: deque = deque()
        self.byte_fifo: deque = deque()
        self._entry: Optional[IndexEntry] = None
        self._header: deque = deque()
        self._payload_left = 0

    # -- producer side (REPORT executor) --

    def can_accept(self, n: int) -> bool:
        return (len(self.index_fifo) < self.index_depth
                and len(self.wide_fifo) + n <= self.wide_depth)

    def push_index(self, addr: int, tag: int, n: int):
        self.index_fifo.append(IndexEntry(addr, tag, n))

    def push_word(self, value: int):
        self.wide_fifo.append(value)

    @property
    def pending(self) -> bool:
        return bool(self.index_fifo or self.wide_fifo or self.byte_fifo
                    or self._entry is not None)

    # -- clock --

    def tick(self):
        if self.wide_fifo and len(self.byte_fifo) + self.word_bytes <= self.byte_depth:
            word = self.wide_fifo.popleft() & self._mask
            self.byte_fifo.extend(word.to_bytes(self.word_bytes, "big"))
        self._drain()
        self.cycle += 1

    def _drain(self):
        if self._entry is None:
            if not self.index_fifo:
                return
            head = self.index_fifo[0]
            if len(self.byte_fifo) < head.count * self.word_bytes:
                return
            self.index_fifo.popleft()
            self._entry = head
            self._header = deque(struct.pack(HEADER_FMT, head.addr & 0xFFFF,
                                             head.tag & 0xFF, head.count & 0xFF))
            self._payload_left = head.count * self.word_bytes
            log.debug(f"{self.cycle}: report addr={head.addr:#06x} "
                      f"tag={head.tag} words={head.count}")
        if not self.channel.is_ready():
            return
        if self._header:
            self.channel.send(self._header.popleft(), False)
            return
        self._payload_left -= 1
        last = self._payload_left == 0
        self.channel.send(self.byte_fifo.popleft(), last)
        if last:
            self._entry = None
            self.sent += 1
