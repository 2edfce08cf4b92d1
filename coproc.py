"""
Coprocessor Dispatch & Opcode Executors
========================================
The instruction execution engine.  A clocked interpreter loop over a small
state machine:

    IDLE ──fetch pc──▶ (program store latency) ──decode──▶ <opcode state>
      ▲                                                        │
      └──────────── pc += 1, step = STEP_DONE ◀── executor done ┘

Each opcode state runs a micro-sequence (a generator) resumed once per
cycle; one resume is one step.  Executors read the operand store through
its pipelined read port, reach the multiply / add / subtract engines via
lane 0 of the arbiters, and write results only after every source read has
come back.

A host jump latched in ControlRegisters replaces the next fetch address
exactly once.  Several strobes before the next fetch boundary coalesce
into one jump to the latest address.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass
from enum import IntEnum
from typing import Optional

from fields import G1, G2
from gadgets import FieldOps, parallel
from stores import (
    Cell, Instruction, decode, slots, POINT_TAGS,
    TAG_FE2, TAG_FP_AFFINE, TAG_FP_JACOBIAN, TAG_FP2_AFFINE,
    TAG_FP2_JACOBIAN, TAG_FE12,
    OP_NOP, OP_COPY, OP_INV, OP_MUL, OP_SUB, OP_ADD, OP_REPORT,
    OP_SMUL, OP_G1MUL, OP_G2MUL, OP_PAIR, OPCODE_NAMES,
)

log = logging.getLogger(__name__)


class State(IntEnum):
    IDLE         = 0
    COPY         = 1
    INVERT       = 2
    MULTIPLY     = 3
    SUBTRACT     = 4
    ADD          = 5
    REPORT       = 6
    SCALAR_MUL   = 7
    FIXED_MUL_G1 = 8
    FIXED_MUL_G2 = 9
    PAIRING      = 10


STEP_DONE = 0xFF

OPCODE_STATE = {
    OP_COPY:   State.COPY,
    OP_INV:    State.INVERT,
    OP_MUL:    State.MULTIPLY,
    OP_SUB:    State.SUBTRACT,
    OP_ADD:    State.ADD,
    OP_REPORT: State.REPORT,
    OP_SMUL:   State.SCALAR_MUL,
    OP_G1MUL:  State.FIXED_MUL_G1,
    OP_G2MUL:  State.FIXED_MUL_G2,
    OP_PAIR:   State.PAIRING,
}


@dataclass
class ControlRegisters:
    """Host-writable control state shared with the dispatcher."""

    jump_addr: int = 0
    jump_pending: bool = False

    def request_jump(self, addr: Optional[int] = None):
        if addr is not None:
            self.jump_addr = addr
        self.jump_pending = True

    def take_jump(self) -> Optional[int]:
        if not self.jump_pending:
            return None
        self.jump_pending = False
        return self.jump_addr

    def clear(self):
        self.jump_addr = 0
        self.jump_pending = False


def _group(words, width: int):
    if width == 1:
        return list(words)
    return [tuple(words[i:i + width]) for i in range(0, len(words), width)]


def _flat(coords, ext: bool) -> list[int]:
    if not ext:
        return list(coords)
    return [w for pair in coords for w in pair]


class Coprocessor:
    """Fetch / decode / dispatch plus every opcode's executor."""

    def __init__(self, ostore, pstore, mul, add, sub, inverter,
                 pointmul, pairing_unit, report, ctrl: ControlRegisters):
        self.ostore = ostore
        self.pstore = pstore
        self.ops = FieldOps.on_lane(mul, add, sub, 0)
        self.inverter = inverter
        self.pointmul = pointmul
        self.pairing_unit = pairing_unit
        self.report = report
        self.ctrl = ctrl

        self._executors = {
            State.COPY:         self._exec_copy,
            State.INVERT:       self._exec_invert,
            State.MULTIPLY:     self._exec_multiply,
            State.SUBTRACT:     self._exec_subtract,
            State.ADD:          self._exec_add,
            State.REPORT:       self._exec_report,
            State.SCALAR_MUL:   self._exec_scalar_mul,
            State.FIXED_MUL_G1: self._exec_fixed_g1,
            State.FIXED_MUL_G2: self._exec_fixed_g2,
            State.PAIRING:      self._exec_pairing,
        }
        self.cycle = 0
        self.abort()

    # -----------------------------------------------------------------
    #  Control
    # -----------------------------------------------------------------

    def abort(self):
        """Drop the current instruction and return to fetch at pc 0."""
        self.state = State.IDLE
        self.step = STEP_DONE
        self.pc = 0
        self.instr: Optional[Instruction] = None
        self.cycles_in_instr = 0
        self.retired = 0
        self._task = None
        self._fetching = False

    @property
    def busy(self) -> bool:
        return self.state != State.IDLE or self._fetching

    def tick(self):
        self.cycles_in_instr += 1
        if self.state == State.IDLE:
            self._fetch()
        else:
            try:
                next(self._task)
                self.step += 1
            except StopIteration:
                self._retire()
        self.cycle += 1

    def _fetch(self):
        if not self._fetching:
            target = self.ctrl.take_jump()
            if target is not None:
                log.debug(f"{self.cycle}: jump {self.pc:#06x} -> {target:#06x}")
                self.pc = target
            if not (self.ostore.ready and self.pstore.ready):
                return
            if self.pc >= self.pstore.length:
                return
            self.pstore.read(self.pc)
            self._fetching = True
            return
        if not self.pstore.valid:
            return
        self._fetching = False
        instr = decode(self.pstore.rdata)
        state = OPCODE_STATE.get(instr.opcode)
        if state is None:
            if instr.opcode != OP_NOP:
                log.debug(f"{self.cycle}: pc={self.pc:#06x} unknown opcode "
                          f"{instr.opcode:#04x}, skipped")
            self.pc += 1
            self.retired += 1
            return
        log.debug(f"{self.cycle}: pc={self.pc:#06x} {OPCODE_NAMES[instr.opcode]} "
                  f"a={instr.a:#x} b={instr.b:#x} c={instr.c:#x}")
        self.instr = instr
        self.state = state
        self.step = 0
        self.cycles_in_instr = 0
        self._task = self._executors[state](instr)

    def _retire(self):
        log.debug(f"{self.cycle}: pc={self.pc:#06x} {self.state.name} retired "
                  f"after {self.cycles_in_instr} cycles")
        self.state = State.IDLE
        self.step = STEP_DONE
        self._task = None
        self.pc += 1
        self.retired += 1

    # -----------------------------------------------------------------
    #  Operand store access
    # -----------------------------------------------------------------

    def _load(self, addr: int, count: int):
        """Pipelined read of *count* consecutive cells starting at *addr*."""
        cells = []
        issued = 0
        while len(cells) < count:
            if issued < count:
                self.ostore.read(addr + issued)
                issued += 1
            yield
            if self.ostore.valid:
                cells.append(self.ostore.rdata)
        return cells

    def _load_values(self, addr: int, count: int):
        cells = yield from self._load(addr, count)
        return [cell.value for cell in cells]

    def _load_operand(self, addr: int):
        """Read the head cell, and the high limb too when it is FE2."""
        (head,) = yield from self._load(addr, 1)
        words = [head.value]
        if head.tag == TAG_FE2:
            (hi,) = yield from self._load(addr + 1, 1)
            words.append(hi.value)
        return head.tag, words

    def _store(self, addr: int, tag: int, words):
        for i, w in enumerate(words):
            if i:
                yield
            self.ostore.write(addr + i, Cell(tag, w))

    # -----------------------------------------------------------------
    #  Elementary executors
    # -----------------------------------------------------------------

    def _exec_copy(self, ins: Instruction):
        (head,) = yield from self._load(ins.a, 1)
        n = slots(head.tag)
        rest = []
        if n > 1:
            rest = yield from self._load(ins.a + 1, n - 1)
        words = [head.value] + [cell.value for cell in rest]
        yield from self._store(ins.b, head.tag, words)

    def _linear(self, ins: Instruction, op):
        tag, xa = yield from self._load_operand(ins.a)
        xb = yield from self._load_values(ins.b, len(xa))
        out = []
        # low limb first, high limb only after the low result is back
        for x, y in zip(xa, xb):
            out.append((yield from op(x, y)))
        yield from self._store(ins.c, tag, out)

    def _exec_add(self, ins: Instruction):
        yield from self._linear(ins, self.ops.fadd)

    def _exec_subtract(self, ins: Instruction):
        yield from self._linear(ins, self.ops.fsub)

    def _exec_multiply(self, ins: Instruction):
        tag, xa = yield from self._load_operand(ins.a)
        xb = yield from self._load_values(ins.b, len(xa))
        if tag == TAG_FE2:
            out = list((yield from self.ops.fp2_mul(tuple(xa), tuple(xb))))
        else:
            out = [(yield from self.ops.fmul(xa[0], xb[0]))]
        yield from self._store(ins.c, tag, out)

    def _invert(self, x: int):
        self.inverter.start(x)
        yield
        while not self.inverter.done:
            yield
        return self.inverter.result

    def _exec_invert(self, ins: Instruction):
        tag, xa = yield from self._load_operand(ins.a)
        if tag != TAG_FE2:
            out = [(yield from self._invert(xa[0]))]
        else:
            a0, a1 = xa
            s0, s1 = yield from parallel(self.ops.fmul(a0, a0), self.ops.fmul(a1, a1))
            norm = yield from self.ops.fadd(s0, s1)
            inv = yield from self._invert(norm)
            r0, t = yield from parallel(self.ops.fmul(a0, inv), self.ops.fmul(a1, inv))
            r1 = yield from self.ops.fsub(0, t)
            out = [r0, r1]
        yield from self._store(ins.c, tag, out)

    # -----------------------------------------------------------------
    #  Report
    # -----------------------------------------------------------------

    def _exec_report(self, ins: Instruction):
        (head,) = yield from self._load(ins.a, 1)
        n = slots(head.tag)
        while not self.report.can_accept(n):
            yield
        self.report.push_index(ins.a, head.tag, n)
        self.report.push_word(head.value)
        pushed = issued = 1
        while pushed < n:
            if issued < n:
                self.ostore.read(ins.a + issued)
                issued += 1
            yield
            if self.ostore.valid:
                self.report.push_word(self.ostore.rdata.value)
                pushed += 1

    # -----------------------------------------------------------------
    #  Point multiplication & pairing
    # -----------------------------------------------------------------

    def _point_mul(self, k: int, base, ext: bool):
        self.pointmul.start(k, base, ext)
        yield
        while not self.pointmul.done:
            yield
        return self.pointmul.result

    def _store_jacobian(self, addr: int, pt, ext: bool):
        tag = TAG_FP2_JACOBIAN if ext else TAG_FP_JACOBIAN
        yield from self._store(addr, tag, _flat(pt, ext))

    def _exec_scalar_mul(self, ins: Instruction):
        (scalar,) = yield from self._load(ins.a, 1)
        (head,) = yield from self._load(ins.b, 1)
        tag = head.tag if head.tag in POINT_TAGS else TAG_FP_AFFINE
        ext = tag in (TAG_FP2_AFFINE, TAG_FP2_JACOBIAN)
        jac = tag in (TAG_FP_JACOBIAN, TAG_FP2_JACOBIAN)
        width = 2 if ext else 1
        count = (3 if jac else 2) * width
        rest = yield from self._load(ins.b + 1, count - 1)
        coords = _group([head.value] + [cell.value for cell in rest], width)
        if not jac:
            coords.append((1, 0) if ext else 1)
        result = yield from self._point_mul(scalar.value, tuple(coords), ext)
        yield from self._store_jacobian(ins.c, result, ext)

    def _fixed_mul(self, ins: Instruction, gen, ext: bool):
        (scalar,) = yield from self._load(ins.a, 1)
        base = (gen[0], gen[1], (1, 0) if ext else 1)
        result = yield from self._point_mul(scalar.value, base, ext)
        yield from self._store_jacobian(ins.c, result, ext)

    def _exec_fixed_g1(self, ins: Instruction):
        yield from self._fixed_mul(ins, G1, False)

    def _exec_fixed_g2(self, ins: Instruction):
        yield from self._fixed_mul(ins, G2, True)

    def _exec_pairing(self, ins: Instruction):
        g1 = yield from self._load_values(ins.a, 2)
        g2 = yield from self._load_values(ins.b, 4)
        self.pairing_unit.start(tuple(g1), tuple(g2))
        yield
        while not self.pairing_unit.done:
            yield
        yield from self._store(ins.c, TAG_FE12, self.pairing_unit.result)

    # -----------------------------------------------------------------

    def status_line(self) -> str:
        name = self.state.name
        step = "DONE" if self.step == STEP_DONE else str(self.step)
        return (f"pc={self.pc:#06x} state={name} step={step} "
                f"cycles={self.cycles_in_instr} retired={self.retired}")
