"""
BLS12-381 Coprocessor System Emulator
======================================
Wires together:
  - the operand and program stores (stores.py)
  - one multiply, add and subtract engine, each behind a 5-lane
    ResourceArbiter, plus the dedicated inverter (engines.py)
  - the point-add / point-double gadgets, the ladder point multiplier and
    the pairing evaluator (gadgets.py)
  - the dispatch state machine and opcode executors (coproc.py)
  - the result report unit and its outbound channel (report.py)
  - a host register window (HostInterface)

Everything advances together from ``CoprocSystem.step()``, one call per
clock cycle.
"""

from __future__ import annotations
import logging
from typing import Callable, Optional

from config import CoprocConfig
from coproc import Coprocessor, ControlRegisters, State
from engines import (
    ArithEngine, ResourceArbiter, Inverter, mod_mul, mod_add, mod_sub,
    LANE_NAMES,
)
from gadgets import (
    FieldOps, PointAddGadget, PointDoubleGadget, PointMulEngine,
    PairingEvaluator,
)
from report import ReportChannel, ReportUnit
from stores import (
    Cell, OperandStore, ProgramStore, Instruction, encode, pack_value,
    unpack_value, slots, TAG_NAMES,
)

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
#  Host register map
# ---------------------------------------------------------------------------

REG_STATUS       = 0x00
REG_PC           = 0x08
REG_CYCLES       = 0x10
REG_RESET        = 0x18
REG_JUMP_ADDR    = 0x20
REG_JUMP_STROBE  = 0x28
REG_PROG_LEN     = 0x30
REG_PROG_ADDR    = 0x38
REG_PROG_DATA    = 0x40
REG_OPND_ADDR    = 0x48
REG_OPND_TAG     = 0x50
REG_OPND_DATA    = 0x58
REG_RETIRED      = 0x60
REG_ARITH_ERRORS = 0x68

# STATUS bits
STATUS_READY          = 1 << 0
STATUS_BUSY           = 1 << 1
STATUS_ARITH_ERROR    = 1 << 2
STATUS_REPORT_PENDING = 1 << 3
STATUS_PAIRING_INVALID = 1 << 4

# RESET bits
RESET_OPERAND = 1 << 0
RESET_PROGRAM = 1 << 1


# ---------------------------------------------------------------------------
#  CoprocSystem
# ---------------------------------------------------------------------------

class CoprocSystem:
    """Top level: builds every unit from a CoprocConfig and clocks them."""

    def __init__(self, config: Optional[CoprocConfig] = None,
                 channel: Optional[ReportChannel] = None,
                 pairing_fn: Optional[Callable] = None):
        cfg = config or CoprocConfig()
        self.config = cfg
        p = cfg.modulus

        self.ostore = OperandStore(cfg.operand_depth, cfg.operand_read_latency)
        self.pstore = ProgramStore(cfg.program_depth, cfg.program_read_latency)

        self.mul = ResourceArbiter(ArithEngine("mul", mod_mul, p, cfg.mul_latency),
                                   cfg.num_lanes, cfg.arbitration)
        self.add = ResourceArbiter(ArithEngine("add", mod_add, p, cfg.add_latency),
                                   cfg.num_lanes, cfg.arbitration)
        self.sub = ResourceArbiter(ArithEngine("sub", mod_sub, p, cfg.sub_latency),
                                   cfg.num_lanes, cfg.arbitration)
        self.arbiters = (self.mul, self.add, self.sub)
        self.inverter = Inverter(p, cfg.inv_latency)

        self.add_gadget = PointAddGadget(self._lane_ops(PointAddGadget.lane))
        self.dbl_gadget = PointDoubleGadget(self._lane_ops(PointDoubleGadget.lane))
        self.pointmul = PointMulEngine(self.add_gadget, self.dbl_gadget)
        self.pairing_unit = PairingEvaluator(self._lane_ops(PairingEvaluator.lane),
                                             cfg.pairing_latency, pairing_fn)

        self.channel = channel or ReportChannel()
        self.report = ReportUnit(self.channel, cfg.report_word_bytes,
                                 cfg.index_fifo_depth, cfg.wide_fifo_depth)

        self.ctrl = ControlRegisters()
        self.coproc = Coprocessor(self.ostore, self.pstore, self.mul, self.add,
                                  self.sub, self.inverter, self.pointmul,
                                  self.pairing_unit, self.report, self.ctrl)
        self.host = HostInterface(self)
        self.cycle = 0

    def _lane_ops(self, index: int) -> FieldOps:
        return FieldOps.on_lane(self.mul, self.add, self.sub, index)

    # -----------------------------------------------------------------
    #  Clock
    # -----------------------------------------------------------------

    def step(self):
        """Advance every unit by one clock cycle."""
        self.coproc.tick()
        self.pointmul.tick()
        self.add_gadget.tick()
        self.dbl_gadget.tick()
        self.pairing_unit.tick()
        self.inverter.tick()
        for arb in self.arbiters:
            arb.tick()
        self.ostore.tick()
        self.pstore.tick()
        self.report.tick()
        self.cycle += 1

    def run(self, max_cycles: int = 1_000_000) -> int:
        """Step until the program has finished and reports have drained.

        Returns the number of cycles stepped.
        """
        n = 0
        while n < max_cycles and not self.finished:
            self.step()
            n += 1
        return n

    @property
    def ready(self) -> bool:
        return self.ostore.ready and self.pstore.ready

    @property
    def finished(self) -> bool:
        """Nothing left to fetch or execute, and no report still queued."""
        c = self.coproc
        return (self.ready and not c.busy and not self.ctrl.jump_pending
                and c.pc >= self.pstore.length and not self.report.pending)

    @property
    def arith_errors(self) -> int:
        return sum(arb.error_count for arb in self.arbiters)

    # -----------------------------------------------------------------
    #  Reset
    # -----------------------------------------------------------------

    def reset(self, operand: bool = True, program: bool = True):
        """Abort everything in flight and re-sweep the selected stores."""
        log.debug(f"{self.cycle}: reset operand={operand} program={program}")
        self.coproc.abort()
        for arb in self.arbiters:
            arb.reset()
        for unit in (self.inverter, self.pointmul, self.add_gadget,
                     self.dbl_gadget, self.pairing_unit):
            unit.reset()
        self.report.reset()
        self.ctrl.clear()
        self.ostore.flush()
        self.pstore.flush()
        if operand:
            self.ostore.reset()
        if program:
            self.pstore.reset()

    # -----------------------------------------------------------------
    #  Host-side loading
    # -----------------------------------------------------------------

    def load_program(self, program, start: int = 0):
        """Load encoded words or Instruction tuples at *start*."""
        words = []
        for item in program:
            if isinstance(item, Instruction):
                words.append(encode(*item))
            else:
                words.append(int(item))
        self.pstore.load(words, start)

    def write_value(self, addr: int, tag: int, value):
        self.ostore.write_words(addr, tag, pack_value(tag, value))

    def read_value(self, addr: int):
        """Return ``(tag, value)`` for the value whose head cell is at *addr*."""
        tag, words = self.ostore.read_words(addr)
        return tag, unpack_value(tag, words)

    # -----------------------------------------------------------------
    #  Convenience
    # -----------------------------------------------------------------

    def dump_state(self) -> str:
        c = self.coproc
        lines = ["=== Dispatch ==="]
        lines.append(f"  {c.status_line()}")
        if c.instr is not None and c.state != State.IDLE:
            lines.append(f"  instr: op={c.instr.opcode:#04x} a={c.instr.a:#x} "
                         f"b={c.instr.b:#x} c={c.instr.c:#x}")
        lines.append(f"  cycle={self.cycle} prog_len={self.pstore.length} "
                     f"jump={'pending ' if self.ctrl.jump_pending else ''}"
                     f"{self.ctrl.jump_addr:#06x}")
        lines.append("")
        lines.append("=== Stores ===")
        for st in (self.ostore, self.pstore):
            lines.append(f"  {st.name}: depth={st.depth} latency={st.latency} "
                         f"ready={'Y' if st.ready else 'N'} "
                         f"reads={st.reads} writes={st.writes}")
        lines.append("")
        lines.append("=== Engines ===")
        for arb in self.arbiters:
            busy = [LANE_NAMES[l.index] for l in arb.lanes if l.pending]
            lines.append(f"  {arb.name}: ops={arb.engine.ops} "
                         f"in_flight={arb.engine.in_flight} "
                         f"errors={arb.error_count} max_wait={arb.max_wait} "
                         f"pending={busy}")
        lines.append(f"  inverter: busy={'Y' if self.inverter.busy else 'N'}")
        lines.append(f"  point-mul: busy={'Y' if self.pointmul.busy else 'N'} "
                     f"ladder_steps={self.pointmul.ladder_steps}")
        lines.append(f"  pairing: busy={'Y' if self.pairing_unit.busy else 'N'} "
                     f"input_valid={self.pairing_unit.input_valid}")
        lines.append("")
        lines.append("=== Report ===")
        r = self.report
        lines.append(f"  index={len(r.index_fifo)} wide={len(r.wide_fifo)} "
                     f"bytes={len(r.byte_fifo)} sent={r.sent} "
                     f"channel_ready={'Y' if self.channel.is_ready() else 'N'}")
        return "\n".join(lines)

    def dump_operands(self, addr: int, count: int = 8) -> str:
        lines = []
        for i in range(count):
            cell = self.ostore.peek(addr + i)
            name = TAG_NAMES.get(cell.tag, f"?{cell.tag}")
            lines.append(f"  {(addr + i) % self.ostore.depth:04X}  "
                         f"{name:<12s} {cell.value:#x}")
        return "\n".join(lines)


# ---------------------------------------------------------------------------
#  HostInterface: register window
# ---------------------------------------------------------------------------
# Register map (offsets, one full-width value per register):
#   0x00  STATUS       (R)  bit0 ready, bit1 busy, bit2 arith error seen,
#                           bit3 report pending, bit4 pairing input invalid
#   0x08  PC           (R)
#   0x10  CYCLES       (R)  cycles since the current instruction began
#   0x18  RESET        (W)  bit0 operand store, bit1 program store
#   0x20  JUMP_ADDR    (RW)
#   0x28  JUMP_STROBE  (W)  any write latches a jump to JUMP_ADDR
#   0x30  PROG_LEN     (RW)
#   0x38  PROG_ADDR    (RW)
#   0x40  PROG_DATA    (RW) write stores at PROG_ADDR, PROG_ADDR++
#   0x48  OPND_ADDR    (RW)
#   0x50  OPND_TAG     (RW) tag for data writes, tag of the last data read
#   0x58  OPND_DATA    (RW) write stores Cell(OPND_TAG, v), OPND_ADDR++
#   0x60  RETIRED      (R)
#   0x68  ARITH_ERRORS (R)

class HostInterface:
    """Register-level host access to a CoprocSystem."""

    def __init__(self, system: CoprocSystem):
        self.sys = system
        self.prog_addr = 0
        self.opnd_addr = 0
        self.opnd_tag = 0

    def status(self) -> int:
        s = self.sys
        val = 0
        if s.ready:
            val |= STATUS_READY
        if s.coproc.busy:
            val |= STATUS_BUSY
        if s.arith_errors:
            val |= STATUS_ARITH_ERROR
        if s.report.pending:
            val |= STATUS_REPORT_PENDING
        if not s.pairing_unit.input_valid:
            val |= STATUS_PAIRING_INVALID
        return val

    def read(self, offset: int) -> int:
        s = self.sys
        if offset == REG_STATUS:
            return self.status()
        if offset == REG_PC:
            return s.coproc.pc
        if offset == REG_CYCLES:
            return s.coproc.cycles_in_instr
        if offset == REG_JUMP_ADDR:
            return s.ctrl.jump_addr
        if offset == REG_PROG_LEN:
            return s.pstore.length
        if offset == REG_PROG_ADDR:
            return self.prog_addr
        if offset == REG_PROG_DATA:
            return s.pstore.peek(self.prog_addr)
        if offset == REG_OPND_ADDR:
            return self.opnd_addr
        if offset == REG_OPND_TAG:
            return self.opnd_tag
        if offset == REG_OPND_DATA:
            cell = s.ostore.peek(self.opnd_addr)
            self.opnd_tag = cell.tag
            return cell.value
        if offset == REG_RETIRED:
            return s.coproc.retired
        if offset == REG_ARITH_ERRORS:
            return s.arith_errors
        return 0

    def write(self, offset: int, value: int):
        s = self.sys
        if offset == REG_RESET:
            if value & (RESET_OPERAND | RESET_PROGRAM):
                s.reset(operand=bool(value & RESET_OPERAND),
                        program=bool(value & RESET_PROGRAM))
        elif offset == REG_JUMP_ADDR:
            s.ctrl.jump_addr = value
        elif offset == REG_JUMP_STROBE:
            s.ctrl.request_jump()
        elif offset == REG_PROG_LEN:
            s.pstore.length = value
        elif offset == REG_PROG_ADDR:
            self.prog_addr = value
        elif offset == REG_PROG_DATA:
            s.pstore.poke(self.prog_addr, value)
            self.prog_addr += 1
        elif offset == REG_OPND_ADDR:
            self.opnd_addr = value
        elif offset == REG_OPND_TAG:
            self.opnd_tag = value
        elif offset == REG_OPND_DATA:
            s.ostore.poke(self.opnd_addr, Cell(self.opnd_tag, value))
            self.opnd_addr += 1

    # -- convenience --

    def load_program(self, words, start: int = 0):
        self.write(REG_PROG_ADDR, start)
        for w in words:
            self.write(REG_PROG_DATA, w)
        self.write(REG_PROG_LEN, start + len(words))

    def load_operand(self, addr: int, tag: int, words):
        self.write(REG_OPND_ADDR, addr)
        self.write(REG_OPND_TAG, tag)
        for w in words:
            self.write(REG_OPND_DATA, w)

    def read_operand(self, addr: int) -> tuple[int, list[int]]:
        self.write(REG_OPND_ADDR, addr)
        first = self.read(REG_OPND_DATA)
        tag = self.opnd_tag
        words = [first]
        for i in range(1, slots(tag)):
            self.write(REG_OPND_ADDR, addr + i)
            words.append(self.read(REG_OPND_DATA))
        self.opnd_tag = tag
        return tag, words

    def jump(self, addr: int):
        self.write(REG_JUMP_ADDR, addr)
        self.write(REG_JUMP_STROBE, 1)
