"""
Field-Op Client, Point Gadgets & Pairing Evaluator
===================================================
Everything here talks to the shared multiply / add / subtract engines
through one arbitration lane.  Micro-sequences are generators: each
``yield`` ends the current cycle, and ``yield from`` composes smaller
sequences into larger ones.  A sub-sequence that returns without yielding
costs no extra cycle.

    FieldOps            issue / collect primitives for one lane, base-field
                        and Fp2 (Karatsuba) arithmetic
    PointAddGadget      Jacobian addition, add-2007-bl        (lane 1)
    PointDoubleGadget   Jacobian doubling, dbl-2009-l, a = 0  (lane 2)
    PointMulEngine      Montgomery ladder driving both gadgets
    PairingEvaluator    G1 input check plus black-box pairing (lane 3)
"""

from __future__ import annotations
import logging
from typing import Callable, Optional

from engines import Unit, LANE_POINT_ADD, LANE_POINT_DOUBLE, LANE_PAIRING
from fields import B1
from pairing import pairing as reference_pairing

log = logging.getLogger(__name__)


def parallel(*procs):
    """Run several micro-sequences side by side; return all their results."""
    procs = list(procs)
    results = [None] * len(procs)
    live = list(range(len(procs)))
    while True:
        for i in list(live):
            try:
                next(procs[i])
            except StopIteration as stop:
                results[i] = stop.value
                live.remove(i)
        if not live:
            return results
        yield


# ---------------------------------------------------------------------------
#  FieldOps
# ---------------------------------------------------------------------------

class FieldOps:
    """Arithmetic micro-ops over one lane of each engine arbiter.

    Every request gets a fresh tag so several can be in flight at once and
    each response is matched to the operation that asked for it.
    """

    def __init__(self, mul_lane, add_lane, sub_lane):
        self.mul_lane = mul_lane
        self.add_lane = add_lane
        self.sub_lane = sub_lane
        self._seq = 0

    @classmethod
    def on_lane(cls, mul_arb, add_arb, sub_arb, index: int) -> 'FieldOps':
        return cls(mul_arb.lanes[index], add_arb.lanes[index], sub_arb.lanes[index])

    # -- primitives --

    def issue(self, lane, a: int, b: int):
        while lane.pending:
            yield
        self._seq += 1
        lane.request(a, b, self._seq)
        return self._seq

    def collect(self, lane, tag):
        while True:
            resp = lane.take(tag)
            if resp is not None:
                return resp.value
            yield

    def _op(self, lane, a, b):
        tag = yield from self.issue(lane, a, b)
        return (yield from self.collect(lane, tag))

    def fmul(self, a: int, b: int):
        return (yield from self._op(self.mul_lane, a, b))

    def fadd(self, a: int, b: int):
        return (yield from self._op(self.add_lane, a, b))

    def fsub(self, a: int, b: int):
        return (yield from self._op(self.sub_lane, a, b))

    # -- Fp2 --

    def fp2_mul(self, a, b):
        """Karatsuba: three multiplies instead of four."""
        (a0, a1), (b0, b1) = a, b
        k0 = yield from self.issue(self.mul_lane, a0, b0)
        k1 = yield from self.issue(self.mul_lane, a1, b1)
        ka = yield from self.issue(self.add_lane, a0, a1)
        kb = yield from self.issue(self.add_lane, b0, b1)
        sa = yield from self.collect(self.add_lane, ka)
        sb = yield from self.collect(self.add_lane, kb)
        k2 = yield from self.issue(self.mul_lane, sa, sb)
        t0 = yield from self.collect(self.mul_lane, k0)
        t1 = yield from self.collect(self.mul_lane, k1)
        lo = yield from self.fsub(t0, t1)
        t2 = yield from self.collect(self.mul_lane, k2)
        d = yield from self.fsub(t2, t0)
        hi = yield from self.fsub(d, t1)
        return (lo, hi)

    def _fp2_linear(self, lane, a, b):
        k0 = yield from self.issue(lane, a[0], b[0])
        k1 = yield from self.issue(lane, a[1], b[1])
        lo = yield from self.collect(lane, k0)
        hi = yield from self.collect(lane, k1)
        return (lo, hi)

    # -- mode-aware (ext selects Fp2) --

    def mul(self, a, b, ext: bool):
        if ext:
            return (yield from self.fp2_mul(a, b))
        return (yield from self.fmul(a, b))

    def add(self, a, b, ext: bool):
        if ext:
            return (yield from self._fp2_linear(self.add_lane, a, b))
        return (yield from self.fadd(a, b))

    def sub(self, a, b, ext: bool):
        if ext:
            return (yield from self._fp2_linear(self.sub_lane, a, b))
        return (yield from self.fsub(a, b))

    def sqr(self, a, ext: bool):
        return (yield from self.mul(a, a, ext))

    def dbl(self, a, ext: bool):
        return (yield from self.add(a, a, ext))


def _is_zero(v, ext: bool) -> bool:
    if ext:
        return v[0] == 0 and v[1] == 0
    return v == 0


def identity(ext: bool):
    """Jacobian point at infinity."""
    if ext:
        return ((1, 0), (1, 0), (0, 0))
    return (1, 1, 0)


# ---------------------------------------------------------------------------
#  Jacobian formulas
# ---------------------------------------------------------------------------

def jacobian_double(ops: FieldOps, pt, ext: bool):
    """dbl-2009-l for curves with a = 0."""
    x, y, z = pt
    if _is_zero(z, ext):
        return identity(ext)
    a, b = yield from parallel(ops.sqr(x, ext), ops.sqr(y, ext))
    c, xb = yield from parallel(ops.sqr(b, ext), ops.add(x, b, ext))
    xb2 = yield from ops.sqr(xb, ext)
    t = yield from ops.sub(xb2, a, ext)
    t = yield from ops.sub(t, c, ext)
    d = yield from ops.dbl(t, ext)
    e = yield from ops.dbl(a, ext)
    e = yield from ops.add(e, a, ext)
    f, yz = yield from parallel(ops.sqr(e, ext), ops.mul(y, z, ext))
    d2 = yield from ops.dbl(d, ext)
    x3 = yield from ops.sub(f, d2, ext)
    dx, c2 = yield from parallel(ops.sub(d, x3, ext), ops.dbl(c, ext))
    edx = yield from ops.mul(e, dx, ext)
    c4 = yield from ops.dbl(c2, ext)
    c8 = yield from ops.dbl(c4, ext)
    y3 = yield from ops.sub(edx, c8, ext)
    z3 = yield from ops.dbl(yz, ext)
    return (x3, y3, z3)


def jacobian_add(ops: FieldOps, p1, p2, ext: bool):
    """add-2007-bl with the identity and doubling cases peeled off."""
    x1, y1, z1 = p1
    x2, y2, z2 = p2
    if _is_zero(z1, ext):
        return p2
    if _is_zero(z2, ext):
        return p1
    z1z1, z2z2 = yield from parallel(ops.sqr(z1, ext), ops.sqr(z2, ext))
    u1, u2 = yield from parallel(ops.mul(x1, z2z2, ext), ops.mul(x2, z1z1, ext))
    t1, t2 = yield from parallel(ops.mul(y1, z2, ext), ops.mul(y2, z1, ext))
    s1, s2 = yield from parallel(ops.mul(t1, z2z2, ext), ops.mul(t2, z1z1, ext))
    h, sd = yield from parallel(ops.sub(u2, u1, ext), ops.sub(s2, s1, ext))
    r = yield from ops.dbl(sd, ext)
    if _is_zero(h, ext):
        if _is_zero(r, ext):
            return (yield from jacobian_double(ops, p1, ext))
        return identity(ext)
    h2 = yield from ops.dbl(h, ext)
    i = yield from ops.sqr(h2, ext)
    j, v = yield from parallel(ops.mul(h, i, ext), ops.mul(u1, i, ext))
    rr, zs = yield from parallel(ops.sqr(r, ext), ops.add(z1, z2, ext))
    t = yield from ops.sub(rr, j, ext)
    v2 = yield from ops.dbl(v, ext)
    x3 = yield from ops.sub(t, v2, ext)
    vx, zs2 = yield from parallel(ops.sub(v, x3, ext), ops.sqr(zs, ext))
    rv, s1j = yield from parallel(ops.mul(r, vx, ext), ops.mul(s1, j, ext))
    s1j2 = yield from ops.dbl(s1j, ext)
    y3 = yield from ops.sub(rv, s1j2, ext)
    zt = yield from ops.sub(zs2, z1z1, ext)
    zt = yield from ops.sub(zt, z2z2, ext)
    z3 = yield from ops.mul(zt, h, ext)
    return (x3, y3, z3)


# ---------------------------------------------------------------------------
#  Gadgets
# ---------------------------------------------------------------------------

class PointAddGadget(Unit):
    name = "point-add"
    lane = LANE_POINT_ADD

    def __init__(self, ops: FieldOps):
        super().__init__()
        self.ops = ops

    def _run(self, p1, p2, ext: bool):
        return (yield from jacobian_add(self.ops, p1, p2, ext))


class PointDoubleGadget(Unit):
    name = "point-double"
    lane = LANE_POINT_DOUBLE

    def __init__(self, ops: FieldOps):
        super().__init__()
        self.ops = ops

    def _run(self, pt, ext: bool):
        return (yield from jacobian_double(self.ops, pt, ext))


class PointMulEngine(Unit):
    """Montgomery ladder over the scalar's significant bits.

    Each ladder step starts one addition and one doubling together and
    waits for both; the two gadgets contend for the engines through their
    own lanes.
    """

    name = "point-mul"

    def __init__(self, adder: PointAddGadget, doubler: PointDoubleGadget):
        super().__init__()
        self.adder = adder
        self.doubler = doubler
        self.ladder_steps = 0

    def _run(self, k: int, base, ext: bool):
        r0 = identity(ext)
        r1 = base
        self.ladder_steps = 0
        for i in range(k.bit_length() - 1, -1, -1):
            bit = (k >> i) & 1
            self.adder.start(r0, r1, ext)
            self.doubler.start(r1 if bit else r0, ext)
            yield
            while not (self.adder.done and self.doubler.done):
                yield
            if bit:
                r0, r1 = self.adder.result, self.doubler.result
            else:
                r0, r1 = self.doubler.result, self.adder.result
            self.ladder_steps += 1
        return r0

    def reset(self):
        super().reset()
        self.adder.reset()
        self.doubler.reset()


# ---------------------------------------------------------------------------
#  Pairing evaluator
# ---------------------------------------------------------------------------

class PairingEvaluator(Unit):
    """Checks the G1 input on its lane, then evaluates the pairing.

    ``evaluate(q, p)`` receives the G2 point and the G1 point in affine
    form (None for infinity) and returns 12 base-field limbs.  The affine
    pair (0, 0) encodes infinity on input.
    """

    name = "pairing"
    lane = LANE_PAIRING

    def __init__(self, ops: FieldOps, latency: int = 64,
                 evaluate: Optional[Callable] = None):
        super().__init__()
        self.ops = ops
        self.latency = latency
        self.evaluate = evaluate or reference_pairing
        self.input_valid = True

    def _run(self, g1, g2):
        x, y = g1
        if x == 0 and y == 0:
            pt = None
            valid = True
        else:
            pt = (x, y)
            yy, xx = yield from parallel(self.ops.fmul(y, y), self.ops.fmul(x, x))
            xxx = yield from self.ops.fmul(xx, x)
            rhs = yield from self.ops.fadd(xxx, B1)
            valid = yy == rhs
        self.input_valid = valid
        if not valid:
            log.debug("pairing: G1 operand (%#x, %#x) is not on the curve", x, y)
        for _ in range(self.latency):
            yield
        x0, x1, y0, y1 = g2
        q = None if not (x0 or x1 or y0 or y1) else ((x0, x1), (y0, y1))
        return [int(limb) for limb in self.evaluate(q, pt)]

    def reset(self):
        super().reset()
        self.input_valid = True
