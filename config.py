"""
Coprocessor Configuration
==========================
Sizing and timing parameters for the emulated coprocessor.  Defaults match
the reference FPGA build: 1 Ki operand slots, 1 Ki program words, two-cycle
BRAM reads, a six-stage Montgomery multiplier and two-stage adders.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Optional

from fields import P

# ---------------------------------------------------------------------------
#  Defaults
# ---------------------------------------------------------------------------

OPERAND_DEPTH        = 1024
PROGRAM_DEPTH        = 1024
OPERAND_READ_LATENCY = 2
PROGRAM_READ_LATENCY = 2

MUL_LATENCY  = 6
ADD_LATENCY  = 2
SUB_LATENCY  = 2
INV_LATENCY  = 24
PAIRING_LATENCY = 64

NUM_LANES = 5

INDEX_FIFO_DEPTH = 8
WIDE_FIFO_DEPTH  = 32    # internal-width words

ARB_FIXED       = "fixed"
ARB_ROUND_ROBIN = "round_robin"

# Miller-Rabin witnesses; deterministic below 3.3e24, probabilistic above
_WITNESSES = (2, 3, 5, 7, 11, 13, 17, 19, 23, 29, 31, 37, 41)


def is_probable_prime(n: int) -> bool:
    if n < 2:
        return False
    for w in _WITNESSES:
        if n % w == 0:
            return n == w
    d, s = n - 1, 0
    while d % 2 == 0:
        d //= 2
        s += 1
    for w in _WITNESSES:
        x = pow(w, d, n)
        if x in (1, n - 1):
            continue
        for _ in range(s - 1):
            x = pow(x, 2, n)
            if x == n - 1:
                break
        else:
            return False
    return True


@dataclass
class CoprocConfig:
    """Build-time parameters of one coprocessor instance.

    ``report_word_bytes`` defaults to the byte width of the modulus (48 for
    the BLS12-381 base prime).

    Any prime modulus drives the field engines, the inverter and the point
    gadgets.  The pairing evaluator and the G1 / G2 generators are fixed to
    BLS12-381, so PAIR, G1MUL and G2MUL are only meaningful with the default
    modulus.
    """

    modulus: int = P
    operand_depth: int = OPERAND_DEPTH
    program_depth: int = PROGRAM_DEPTH
    operand_read_latency: int = OPERAND_READ_LATENCY
    program_read_latency: int = PROGRAM_READ_LATENCY
    mul_latency: int = MUL_LATENCY
    add_latency: int = ADD_LATENCY
    sub_latency: int = SUB_LATENCY
    inv_latency: int = INV_LATENCY
    pairing_latency: int = PAIRING_LATENCY
    num_lanes: int = NUM_LANES
    arbitration: str = ARB_FIXED
    index_fifo_depth: int = INDEX_FIFO_DEPTH
    wide_fifo_depth: int = WIDE_FIFO_DEPTH
    report_word_bytes: Optional[int] = None

    def __post_init__(self):
        if self.modulus < 3 or not is_probable_prime(self.modulus):
            raise ValueError("modulus must be an odd prime")
        for name in ("operand_depth", "program_depth",
                     "operand_read_latency", "program_read_latency",
                     "mul_latency", "add_latency", "sub_latency",
                     "inv_latency", "index_fifo_depth"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be at least 1")
        if self.pairing_latency < 0:
            raise ValueError("pairing_latency must be non-negative")
        if self.num_lanes < 5:
            raise ValueError("num_lanes must be at least 5")
        if self.wide_fifo_depth < 12:
            raise ValueError("wide_fifo_depth must hold a full FE12 value")
        if self.arbitration not in (ARB_FIXED, ARB_ROUND_ROBIN):
            raise ValueError(f"unknown arbitration policy {self.arbitration!r}")
        if self.report_word_bytes is None:
            self.report_word_bytes = (self.modulus.bit_length() + 7) // 8
        elif self.report_word_bytes < 1:
            raise ValueError("report_word_bytes must be at least 1")
