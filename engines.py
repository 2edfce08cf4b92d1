"""
Arithmetic Engines & Resource Arbiter
======================================
The coprocessor has exactly one physical modular multiplier, one adder and
one subtractor.  Every consumer reaches them through a ResourceArbiter:

    lane 0  elementary opcode executors
    lane 1  point-add gadget
    lane 2  point-double gadget
    lane 3  pairing evaluator
    lane 4  reserved (top level)

A lane holds at most one request that has not been granted yet.  Each
cycle the arbiter grants one pending lane and pushes its operands into the
engine pipeline together with a control field ``(lane, tag)``.  When the
result falls out of the pipeline the control field routes it back to the
originating lane, filed under the lane's own tag.

The modular inverter is not arbitrated: it belongs to the INVERT executor.
"""

from __future__ import annotations
import logging
from collections import deque, namedtuple
from typing import Callable, Optional

log = logging.getLogger(__name__)

LANE_ELEMENTARY   = 0
LANE_POINT_ADD    = 1
LANE_POINT_DOUBLE = 2
LANE_PAIRING      = 3
LANE_RESERVED     = 4

LANE_NAMES = {
    LANE_ELEMENTARY:   "elementary",
    LANE_POINT_ADD:    "point-add",
    LANE_POINT_DOUBLE: "point-double",
    LANE_PAIRING:      "pairing",
    LANE_RESERVED:     "reserved",
}

Response = namedtuple("Response", "value err")


# ---------------------------------------------------------------------------
#  Errors
# ---------------------------------------------------------------------------

class CoprocError(Exception):
    """Base for emulator usage errors (never raised by the datapath)."""
    pass

class PortConflictError(CoprocError):
    pass

class LaneBusyError(CoprocError):
    pass


# ---------------------------------------------------------------------------
#  Datapath functions
# ---------------------------------------------------------------------------

def mod_mul(a: int, b: int, p: int) -> tuple[int, bool]:
    return (a * b) % p, False


def mod_add(a: int, b: int, p: int) -> tuple[int, bool]:
    """Add with a single conditional subtraction; err if still >= p."""
    r = a + b
    if r >= p:
        r -= p
    return r, r >= p


def mod_sub(a: int, b: int, p: int) -> tuple[int, bool]:
    """Subtract with a single conditional addition; err if out of range."""
    r = a - b
    if r < 0:
        r += p
    return r, not (0 <= r < p)


# ---------------------------------------------------------------------------
#  Pipelined engine
# ---------------------------------------------------------------------------

class ArithEngine:
    """Fully pipelined two-operand engine: one issue per cycle, fixed latency.

    An operation accepted at cycle t appears on ``out`` after the tick of
    cycle t + latency - 1, i.e. it is visible to the issuer at t + latency.
    """

    def __init__(self, name: str, fn: Callable[[int, int, int], tuple[int, bool]],
                 modulus: int, latency: int):
        self.name = name
        self.fn = fn
        self.modulus = modulus
        self.latency = latency
        self._in: Optional[tuple] = None
        self._pipe: deque = deque([None] * (latency - 1))
        self.out: Optional[tuple] = None   # (value, err, ctl)
        self.ops = 0

    def accept(self, a: int, b: int, ctl):
        if self._in is not None:
            raise PortConflictError(f"{self.name}: two issues in one cycle")
        self._in = (a, b, ctl)

    def tick(self):
        item = None
        if self._in is not None:
            a, b, ctl = self._in
            value, err = self.fn(a, b, self.modulus)
            item = (value, err, ctl)
            self._in = None
            self.ops += 1
        self._pipe.append(item)
        self.out = self._pipe.popleft()

    def flush(self):
        self._in = None
        self._pipe = deque([None] * (self.latency - 1))
        self.out = None

    @property
    def in_flight(self) -> int:
        return sum(1 for item in self._pipe if item is not None)


# ---------------------------------------------------------------------------
#  Lanes & arbiter
# ---------------------------------------------------------------------------

class Lane:
    """One logical consumer's port on an arbiter."""

    def __init__(self, arbiter: 'ResourceArbiter', index: int):
        self.arbiter = arbiter
        self.index = index
        self.slot: Optional[tuple] = None       # (a, b, tag) awaiting grant
        self.responses: dict = {}               # tag -> Response
        self.granted = 0
        self.waited = 0                          # cycles spent pending

    @property
    def pending(self) -> bool:
        return self.slot is not None

    def request(self, a: int, b: int, tag=0):
        if self.slot is not None:
            raise LaneBusyError(
                f"{self.arbiter.name} lane {self.index}: request already outstanding")
        self.slot = (a, b, tag)

    def take(self, tag=0) -> Optional[Response]:
        """Remove and return the response for *tag*, or None if not back yet."""
        return self.responses.pop(tag, None)

    def clear(self):
        self.slot = None
        self.responses.clear()
        self.waited = 0


class ResourceArbiter:
    """Multiplexes N lanes onto one ArithEngine."""

    def __init__(self, engine: ArithEngine, num_lanes: int = 5,
                 policy: str = "fixed"):
        self.engine = engine
        self.name = engine.name
        self.policy = policy
        self.lanes = [Lane(self, i) for i in range(num_lanes)]
        self._rr_next = 0
        self.error_count = 0
        self.max_wait = 0
        self.on_error: Optional[Callable[[int, int], None]] = None  # (lane, value)

    def _select(self) -> Optional[Lane]:
        n = len(self.lanes)
        if self.policy == "round_robin":
            for k in range(n):
                lane = self.lanes[(self._rr_next + k) % n]
                if lane.pending:
                    self._rr_next = (lane.index + 1) % n
                    return lane
            return None
        for lane in self.lanes:
            if lane.pending:
                return lane
        return None

    def tick(self):
        """Grant one lane, advance the engine, route what comes out."""
        winner = self._select()
        if winner is not None:
            a, b, tag = winner.slot
            self.engine.accept(a, b, (winner.index, tag))
            winner.slot = None
            winner.granted += 1
            self.max_wait = max(self.max_wait, winner.waited)
            winner.waited = 0
        for lane in self.lanes:
            if lane.pending:
                lane.waited += 1

        self.engine.tick()
        out = self.engine.out
        if out is not None:
            value, err, (index, tag) = out
            self.lanes[index].responses[tag] = Response(value, err)
            if err:
                self.error_count += 1
                log.debug("%s: error signal on lane %d", self.name, index)
                if self.on_error:
                    self.on_error(index, value)

    def reset(self):
        for lane in self.lanes:
            lane.clear()
        self.engine.flush()
        self._rr_next = 0
        self.error_count = 0
        self.max_wait = 0


# ---------------------------------------------------------------------------
#  Clocked units
# ---------------------------------------------------------------------------

class Unit:
    """A clocked sequencer whose behaviour is a generator.

    ``start`` loads a new micro-sequence; every ``tick`` resumes it by one
    step.  When the generator returns, its value lands in ``result`` and
    ``done`` goes high until the next ``start``.
    """

    name = "unit"

    def __init__(self):
        self._proc = None
        self.result = None
        self.done = False
        self.steps = 0

    @property
    def busy(self) -> bool:
        return self._proc is not None

    def start(self, *args):
        self._proc = self._run(*args)
        self.result = None
        self.done = False
        self.steps = 0

    def _run(self, *args):
        raise NotImplementedError
        yield

    def tick(self):
        if self._proc is None:
            return
        self.steps += 1
        try:
            next(self._proc)
        except StopIteration as stop:
            self._proc = None
            self.result = stop.value
            self.done = True

    def reset(self):
        self._proc = None
        self.result = None
        self.done = False
        self.steps = 0


class Inverter(Unit):
    """Dedicated modular inverter (binary extended GCD in silicon).

    Latency grows with the operand width: ``base_latency`` plus one cycle
    per 16 significant bits.  Inverse of zero is zero.
    """

    name = "inverter"

    def __init__(self, modulus: int, base_latency: int = 24):
        super().__init__()
        self.modulus = modulus
        self.base_latency = base_latency

    def _run(self, a: int):
        for _ in range(self.base_latency + a.bit_length() // 16):
            yield
        p = self.modulus
        return pow(a % p, p - 2, p)
