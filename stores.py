"""
Operand & Program Stores
=========================
Two block-RAM style memories, each with one read port and one write port.

Reads are pipelined with a fixed latency L: an address presented during
cycle t has its data on ``rdata`` (with ``valid`` high) during cycle t + L,
and a new address may be presented every cycle.  Writes land immediately.
Addresses wrap modulo the depth.

Operand cells carry a type tag next to the value:

    tag  name           slots  layout
    0    FE             1      v
    1    FE2            2      c0, c1
    2    FP_AFFINE      2      x, y
    3    FP_JACOBIAN    3      x, y, z
    4    FP2_AFFINE     4      x0, x1, y0, y1
    5    FP2_JACOBIAN   6      x0, x1, y0, y1, z0, z1
    6    FE12           12     w^0 .. w^11

Program words encode one instruction each:

    63      56 55  48 47      32 31      16 15       0
    [ unused ][ opcd ][  addr a ][  addr b ][  addr c ]
"""

from __future__ import annotations
from collections import deque, namedtuple
from typing import Optional

from engines import PortConflictError

# ---------------------------------------------------------------------------
#  Type tags
# ---------------------------------------------------------------------------

TAG_FE           = 0
TAG_FE2          = 1
TAG_FP_AFFINE    = 2
TAG_FP_JACOBIAN  = 3
TAG_FP2_AFFINE   = 4
TAG_FP2_JACOBIAN = 5
TAG_FE12         = 6

TAG_NAMES = {
    TAG_FE:           "FE",
    TAG_FE2:          "FE2",
    TAG_FP_AFFINE:    "FP_AFFINE",
    TAG_FP_JACOBIAN:  "FP_JACOBIAN",
    TAG_FP2_AFFINE:   "FP2_AFFINE",
    TAG_FP2_JACOBIAN: "FP2_JACOBIAN",
    TAG_FE12:         "FE12",
}
TAG_BY_NAME = {v: k for k, v in TAG_NAMES.items()}

SLOT_COUNT = {
    TAG_FE:           1,
    TAG_FE2:          2,
    TAG_FP_AFFINE:    2,
    TAG_FP_JACOBIAN:  3,
    TAG_FP2_AFFINE:   4,
    TAG_FP2_JACOBIAN: 6,
    TAG_FE12:         12,
}

POINT_TAGS = (TAG_FP_AFFINE, TAG_FP_JACOBIAN, TAG_FP2_AFFINE, TAG_FP2_JACOBIAN)


def slots(tag: int) -> int:
    """Number of contiguous cells a value with *tag* occupies."""
    return SLOT_COUNT.get(tag, 1)


Cell = namedtuple("Cell", "tag value")
BLANK = Cell(TAG_FE, 0)


def _flatten(value):
    if isinstance(value, (tuple, list)):
        for item in value:
            yield from _flatten(item)
    else:
        yield value


def pack_value(tag: int, value) -> list[int]:
    """Flatten a structured value into its slot words.

    FE is an int, FE2 a pair, points are tuples of coordinates (each an
    int or, on the extension field, a pair), FE12 a 12-tuple.
    """
    words = [int(w) for w in _flatten(value)]
    if len(words) != slots(tag):
        raise ValueError(f"{TAG_NAMES.get(tag, tag)} needs {slots(tag)} "
                         f"words, got {len(words)}")
    return words


def unpack_value(tag: int, words):
    """Inverse of pack_value."""
    words = list(words)[:slots(tag)]
    if tag in (TAG_FE2, TAG_FP_AFFINE, TAG_FP_JACOBIAN, TAG_FE12):
        return tuple(words)
    if tag in (TAG_FP2_AFFINE, TAG_FP2_JACOBIAN):
        return tuple(zip(words[0::2], words[1::2]))
    return words[0]


# ---------------------------------------------------------------------------
#  Instruction encoding
# ---------------------------------------------------------------------------

OP_NOP    = 0x00
OP_COPY   = 0x01
OP_INV    = 0x02
OP_MUL    = 0x03
OP_SUB    = 0x04
OP_ADD    = 0x05
OP_REPORT = 0x06
OP_SMUL   = 0x07
OP_G1MUL  = 0x08
OP_G2MUL  = 0x09
OP_PAIR   = 0x0A

OPCODE_NAMES = {
    OP_NOP:    "nop",
    OP_COPY:   "copy",
    OP_INV:    "inv",
    OP_MUL:    "mul",
    OP_SUB:    "sub",
    OP_ADD:    "add",
    OP_REPORT: "report",
    OP_SMUL:   "smul",
    OP_G1MUL:  "g1mul",
    OP_G2MUL:  "g2mul",
    OP_PAIR:   "pair",
}
OPCODE_BY_NAME = {v: k for k, v in OPCODE_NAMES.items()}

ADDR_MASK = 0xFFFF

Instruction = namedtuple("Instruction", "opcode a b c")


def encode(opcode: int, a: int = 0, b: int = 0, c: int = 0) -> int:
    return ((opcode & 0xFF) << 48) | ((a & ADDR_MASK) << 32) \
        | ((b & ADDR_MASK) << 16) | (c & ADDR_MASK)


def decode(word: int) -> Instruction:
    return Instruction((word >> 48) & 0xFF, (word >> 32) & ADDR_MASK,
                       (word >> 16) & ADDR_MASK, word & ADDR_MASK)


# ---------------------------------------------------------------------------
#  Stores
# ---------------------------------------------------------------------------

class _Store:
    """Single-read-port, single-write-port memory with a reset sweep."""

    def __init__(self, name: str, depth: int, latency: int, blank):
        self.name = name
        self.depth = depth
        self.latency = latency
        self.blank = blank
        self.cells = [blank] * depth
        self._pipe: deque = deque([None] * (latency - 1))
        self._read_now: Optional[tuple] = None
        self._wrote_now = False
        self.rdata = None
        self.valid = False
        self.ready = True
        self._sweep = 0
        self.cycle = 0
        self.reads = 0
        self.writes = 0
        self.trace: Optional[list] = None     # [("R"|"W", cycle, addr)]

    # -- ports --

    def read(self, addr: int):
        """Present *addr* on the read port; data appears after the latency."""
        if self._read_now is not None:
            raise PortConflictError(f"{self.name}: two reads in one cycle")
        addr %= self.depth
        self._read_now = (addr, self.cells[addr])
        self.reads += 1
        if self.trace is not None:
            self.trace.append(("R", self.cycle, addr))

    def write(self, addr: int, value):
        if self._wrote_now:
            raise PortConflictError(f"{self.name}: two writes in one cycle")
        addr %= self.depth
        self._wrote_now = True
        self.cells[addr] = value
        self.writes += 1
        if self.trace is not None:
            self.trace.append(("W", self.cycle, addr))

    # -- host side (no port, no timing) --

    def peek(self, addr: int):
        return self.cells[addr % self.depth]

    def poke(self, addr: int, value):
        self.cells[addr % self.depth] = value

    # -- clock --

    def tick(self):
        if not self.ready:
            self.cells[self._sweep] = self.blank
            self._sweep += 1
            if self._sweep >= self.depth:
                self.ready = True
        self._pipe.append(self._read_now)
        out = self._pipe.popleft()
        self.valid = out is not None
        self.rdata = out[1] if out is not None else None
        self._read_now = None
        self._wrote_now = False
        self.cycle += 1

    def flush(self):
        """Drop in-flight reads; contents and readiness are untouched."""
        self._pipe = deque([None] * (self.latency - 1))
        self._read_now = None
        self._wrote_now = False
        self.rdata = None
        self.valid = False

    def reset(self):
        """Drop in-flight reads and start the initialization sweep."""
        self.flush()
        self.ready = False
        self._sweep = 0


class OperandStore(_Store):
    """Typed field-element memory; every cell is a ``Cell(tag, value)``."""

    def __init__(self, depth: int = 1024, latency: int = 2):
        super().__init__("operand", depth, latency, BLANK)

    def write_words(self, addr: int, tag: int, words):
        for i, w in enumerate(words):
            self.poke(addr + i, Cell(tag, w))

    def read_words(self, addr: int) -> tuple[int, list[int]]:
        """Host read of the whole value whose head cell is at *addr*."""
        tag = self.peek(addr).tag
        return tag, [self.peek(addr + i).value for i in range(slots(tag))]


class ProgramStore(_Store):
    """Instruction memory plus the valid program length."""

    def __init__(self, depth: int = 1024, latency: int = 2):
        super().__init__("program", depth, latency, 0)
        self.length = 0

    def load(self, words, start: int = 0):
        for i, w in enumerate(words):
            self.poke(start + i, w)
        self.length = start + len(words)

    def reset(self):
        super().reset()
        self.length = 0
