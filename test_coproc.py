#!/usr/bin/env python3
"""
Tests for the dispatch state machine and every opcode executor, driven
through a full CoprocSystem.
"""
import unittest

from config import CoprocConfig
from coproc import State, STEP_DONE
from fields import (
    P, G1, G2, FP, FP2, B2, affine_mul, to_affine, is_on_curve,
)
from stores import (
    Cell, BLANK, encode,
    TAG_FE, TAG_FE2, TAG_FP_AFFINE, TAG_FP_JACOBIAN, TAG_FP2_AFFINE,
    TAG_FP2_JACOBIAN, TAG_FE12,
    OP_COPY, OP_INV, OP_MUL, OP_SUB, OP_ADD, OP_SMUL, OP_G1MUL, OP_G2MUL,
    OP_PAIR,
)
from system import CoprocSystem


# ---------------------------------------------------------------------------
#  Helpers
# ---------------------------------------------------------------------------

def build(modulus: int = P, pairing_fn=None, **kw) -> CoprocSystem:
    kw.setdefault("operand_depth", 256)
    kw.setdefault("program_depth", 64)
    return CoprocSystem(CoprocConfig(modulus=modulus, **kw), pairing_fn=pairing_fn)


def run_program(test, sys_emu: CoprocSystem, program, max_cycles=500_000) -> int:
    sys_emu.load_program(program)
    n = sys_emu.run(max_cycles)
    test.assertTrue(sys_emu.finished, f"program did not finish in {n} cycles")
    return n


# ---------------------------------------------------------------------------
#  Elementary executors
# ---------------------------------------------------------------------------

class TestAddSub(unittest.TestCase):
    def test_add_small_prime(self):
        s = build(7)
        s.write_value(0, TAG_FE, 3)
        s.write_value(1, TAG_FE, 5)
        run_program(self, s, [encode(OP_ADD, 0, 1, 2)])
        self.assertEqual(s.read_value(2), (TAG_FE, 1))
        self.assertEqual(s.arith_errors, 0)

    def test_sub_fe2_keeps_tag(self):
        s = build(7)
        s.write_value(0, TAG_FE2, (1, 2))
        s.write_value(2, TAG_FE2, (3, 5))
        run_program(self, s, [encode(OP_SUB, 0, 2, 4)])
        self.assertEqual(s.read_value(4), (TAG_FE2, (5, 4)))
        self.assertEqual(s.ostore.peek(5).tag, TAG_FE2)

    def test_add_fe2_bls(self):
        s = build()
        a = (P - 1, 5)
        b = (2, P - 6)
        s.write_value(0, TAG_FE2, a)
        s.write_value(2, TAG_FE2, b)
        run_program(self, s, [encode(OP_ADD, 0, 2, 4)])
        self.assertEqual(s.read_value(4), (TAG_FE2, FP2.add(a, b)))

    def test_noncanonical_input_raises_error_flag(self):
        s = build(7)
        s.write_value(0, TAG_FE, 10)
        s.write_value(1, TAG_FE, 10)
        run_program(self, s, [encode(OP_ADD, 0, 1, 2)])
        # the uncorrected result is still stored
        self.assertEqual(s.read_value(2), (TAG_FE, 13))
        self.assertEqual(s.arith_errors, 1)

    def test_fe2_limbs_are_sequential(self):
        s = build(7, add_latency=3)
        s.write_value(0, TAG_FE2, (1, 2))
        s.write_value(2, TAG_FE2, (3, 4))
        run_program(self, s, [encode(OP_ADD, 0, 2, 4)])
        # never two add requests from lane 0 in flight together
        self.assertEqual(s.add.lanes[0].granted, 2)
        self.assertEqual(s.add.max_wait, 0)
        self.assertEqual(s.read_value(4), (TAG_FE2, (4, 6)))


class TestMultiply(unittest.TestCase):
    def test_fe(self):
        s = build(7)
        s.write_value(0, TAG_FE, 6)
        s.write_value(1, TAG_FE, 5)
        run_program(self, s, [encode(OP_MUL, 0, 1, 2)])
        self.assertEqual(s.read_value(2), (TAG_FE, 2))

    def test_fe2_karatsuba_matches_schoolbook(self):
        s = build()
        s.write_value(0, TAG_FE2, (2, 3))
        s.write_value(2, TAG_FE2, (1, 4))
        run_program(self, s, [encode(OP_MUL, 0, 2, 4)])
        self.assertEqual(s.read_value(4), (TAG_FE2, ((2 - 12) % P, 11)))

    def test_fe2_large(self):
        s = build()
        a = (0x1234567890ABCDEF << 300, P - 3)
        b = (P - 7, 0xFEDCBA0987654321 << 250)
        s.write_value(0, TAG_FE2, a)
        s.write_value(2, TAG_FE2, b)
        run_program(self, s, [encode(OP_MUL, 0, 2, 4)])
        self.assertEqual(s.read_value(4), (TAG_FE2, FP2.mul(a, b)))
        # three multiplies, not four
        self.assertEqual(s.mul.lanes[0].granted, 3)


class TestInvert(unittest.TestCase):
    def test_fe(self):
        s = build(7, inv_latency=4)
        s.write_value(0, TAG_FE, 3)
        run_program(self, s, [encode(OP_INV, 0, 0, 1)])
        self.assertEqual(s.read_value(1), (TAG_FE, 5))

    def test_zero_maps_to_zero(self):
        s = build(7, inv_latency=4)
        s.write_value(0, TAG_FE, 0)
        s.write_value(1, TAG_FE, 6)
        run_program(self, s, [encode(OP_INV, 0, 0, 1)])
        self.assertEqual(s.read_value(1), (TAG_FE, 0))

    def test_fe2(self):
        s = build()
        a = (3, 4)
        s.write_value(0, TAG_FE2, a)
        run_program(self, s, [encode(OP_INV, 0, 0, 2)])
        tag, inv = s.read_value(2)
        self.assertEqual(tag, TAG_FE2)
        self.assertEqual(FP2.mul(a, inv), (1, 0))
        self.assertEqual(inv, FP2.inv(a))

    def test_fe2_zero(self):
        s = build()
        s.write_value(0, TAG_FE2, (0, 0))
        run_program(self, s, [encode(OP_INV, 0, 0, 2)])
        self.assertEqual(s.read_value(2), (TAG_FE2, (0, 0)))


class TestCopy(unittest.TestCase):
    def _copy(self, tag, value):
        s = build()
        s.write_value(0x10, tag, value)
        run_program(self, s, [encode(OP_COPY, 0x10, 0x40, 0)])
        return s

    def test_fp_jacobian(self):
        s = self._copy(TAG_FP_JACOBIAN, (7, 8, 9))
        self.assertEqual(s.read_value(0x40), (TAG_FP_JACOBIAN, (7, 8, 9)))
        self.assertEqual([s.ostore.peek(0x40 + i).tag for i in range(3)],
                         [TAG_FP_JACOBIAN] * 3)
        self.assertEqual(s.ostore.peek(0x43), BLANK)

    def test_fp2_jacobian(self):
        pt = ((1, 2), (3, 4), (5, 6))
        s = self._copy(TAG_FP2_JACOBIAN, pt)
        self.assertEqual(s.read_value(0x40), (TAG_FP2_JACOBIAN, pt))
        self.assertEqual(s.ostore.peek(0x46), BLANK)
        self.assertEqual(s.ostore.writes, 6)

    def test_fe12(self):
        s = self._copy(TAG_FE12, tuple(range(1, 13)))
        self.assertEqual(s.read_value(0x40), (TAG_FE12, tuple(range(1, 13))))

    def test_unknown_tag_copies_one_slot(self):
        s = build()
        s.ostore.poke(0x10, Cell(9, 77))
        s.ostore.poke(0x11, Cell(9, 78))
        run_program(self, s, [encode(OP_COPY, 0x10, 0x40, 0)])
        self.assertEqual(s.ostore.peek(0x40), Cell(9, 77))
        self.assertEqual(s.ostore.peek(0x41), BLANK)


class TestOrdering(unittest.TestCase):
    def test_writes_after_all_reads(self):
        s = build()
        s.ostore.trace = []
        s.write_value(0, TAG_FE2, (2, 3))
        s.write_value(2, TAG_FE2, (1, 4))
        run_program(self, s, [encode(OP_MUL, 0, 2, 0)])   # in-place
        reads = [c for kind, c, _ in s.ostore.trace if kind == "R"]
        writes = [c for kind, c, _ in s.ostore.trace if kind == "W"]
        self.assertEqual(len(reads), 4)
        self.assertEqual(len(writes), 2)
        self.assertLess(max(reads), min(writes))
        self.assertEqual(s.read_value(0), (TAG_FE2, ((2 - 12) % P, 11)))

    def test_copy_reads_exactly_slot_count(self):
        s = build()
        s.ostore.trace = []
        s.write_value(0, TAG_FP2_AFFINE, ((1, 2), (3, 4)))
        run_program(self, s, [encode(OP_COPY, 0, 8, 0)])
        self.assertEqual([a for k, _, a in s.ostore.trace if k == "R"], [0, 1, 2, 3])
        self.assertEqual([a for k, _, a in s.ostore.trace if k == "W"], [8, 9, 10, 11])


# ---------------------------------------------------------------------------
#  Dispatch
# ---------------------------------------------------------------------------

class TestDispatch(unittest.TestCase):
    def test_unknown_opcode_is_skipped(self):
        s = build(7)
        s.write_value(0, TAG_FE, 3)
        s.write_value(1, TAG_FE, 5)
        run_program(self, s, [encode(0x3F, 0, 1, 2), encode(OP_ADD, 0, 1, 3)])
        self.assertEqual(s.coproc.pc, 2)
        self.assertEqual(s.coproc.retired, 2)
        self.assertEqual(s.ostore.peek(2), BLANK)
        self.assertEqual(s.read_value(3), (TAG_FE, 1))

    def test_step_counter_and_state(self):
        s = build(7)
        s.write_value(0, TAG_FE, 3)
        s.write_value(1, TAG_FE, 5)
        s.load_program([encode(OP_ADD, 0, 1, 2)])
        self.assertEqual(s.coproc.step, STEP_DONE)
        seen_states = set()
        steps = []
        for _ in range(100):
            s.step()
            seen_states.add(s.coproc.state)
            if s.coproc.state == State.ADD:
                steps.append(s.coproc.step)
            if s.finished:
                break
        self.assertIn(State.ADD, seen_states)
        self.assertEqual(steps[0], 0)
        self.assertEqual(steps, sorted(steps))
        self.assertEqual(s.coproc.state, State.IDLE)
        self.assertEqual(s.coproc.step, STEP_DONE)

    def test_holds_at_program_end(self):
        s = build(7)
        s.load_program([encode(OP_ADD, 0, 0, 1)])
        s.run()
        for _ in range(20):
            s.step()
        self.assertEqual(s.coproc.pc, 1)
        self.assertEqual(s.coproc.retired, 1)

    def test_program_extension_resumes(self):
        s = build(7)
        s.write_value(0, TAG_FE, 2)
        s.load_program([encode(OP_ADD, 0, 0, 1)])
        s.run()
        s.load_program([encode(OP_ADD, 1, 1, 2)], start=1)
        s.run()
        self.assertEqual(s.read_value(2), (TAG_FE, 1))

    def test_sequence(self):
        s = build(7)
        s.write_value(0, TAG_FE, 3)
        s.write_value(1, TAG_FE, 4)
        run_program(self, s, [
            encode(OP_MUL, 0, 1, 2),   # 12 = 5
            encode(OP_SUB, 2, 0, 3),   # 5 - 3 = 2
            encode(OP_INV, 3, 0, 4),   # 1/2 = 4
            encode(OP_ADD, 4, 4, 5),   # 8 = 1
        ])
        self.assertEqual(s.read_value(5), (TAG_FE, 1))
        self.assertEqual(s.coproc.retired, 4)


# ---------------------------------------------------------------------------
#  Point multiplication
# ---------------------------------------------------------------------------

class TestScalarMul(unittest.TestCase):
    def test_scalar_zero_gives_identity(self):
        s = build()
        s.write_value(0, TAG_FE, 0)
        s.write_value(1, TAG_FP_AFFINE, G1)
        run_program(self, s, [encode(OP_SMUL, 0, 1, 8)])
        self.assertEqual(s.read_value(8), (TAG_FP_JACOBIAN, (1, 1, 0)))

    def test_g1_affine(self):
        s = build()
        s.write_value(0, TAG_FE, 5)
        s.write_value(1, TAG_FP_AFFINE, G1)
        run_program(self, s, [encode(OP_SMUL, 0, 1, 8)])
        tag, jac = s.read_value(8)
        self.assertEqual(tag, TAG_FP_JACOBIAN)
        self.assertEqual(to_affine(FP, jac), affine_mul(FP, G1, 5))
        self.assertGreater(s.pointmul.ladder_steps, 0)

    def test_g1_jacobian_input(self):
        s = build()
        z = 3
        x, y = G1
        jac_in = (FP.mul(x, z * z), FP.mul(y, z ** 3), z)
        s.write_value(0, TAG_FE, 6)
        s.write_value(1, TAG_FP_JACOBIAN, jac_in)
        run_program(self, s, [encode(OP_SMUL, 0, 1, 8)])
        tag, jac = s.read_value(8)
        self.assertEqual(tag, TAG_FP_JACOBIAN)
        self.assertEqual(to_affine(FP, jac), affine_mul(FP, G1, 6))

    def test_non_point_tag_read_as_affine(self):
        s = build()
        s.write_value(0, TAG_FE, 3)
        s.write_value(1, TAG_FE, G1[0])
        s.write_value(2, TAG_FE, G1[1])
        run_program(self, s, [encode(OP_SMUL, 0, 1, 8)])
        tag, jac = s.read_value(8)
        self.assertEqual(tag, TAG_FP_JACOBIAN)
        self.assertEqual(to_affine(FP, jac), affine_mul(FP, G1, 3))

    def test_g2_affine(self):
        s = build()
        s.write_value(0, TAG_FE, 3)
        s.write_value(1, TAG_FP2_AFFINE, G2)
        run_program(self, s, [encode(OP_SMUL, 0, 1, 8)])
        tag, jac = s.read_value(8)
        self.assertEqual(tag, TAG_FP2_JACOBIAN)
        self.assertEqual(to_affine(FP2, jac), affine_mul(FP2, G2, 3))

    def test_two_bit_scalar(self):
        s = build()
        s.write_value(0, TAG_FE, 2)
        s.write_value(1, TAG_FP_AFFINE, G1)
        run_program(self, s, [encode(OP_SMUL, 0, 1, 8)])
        self.assertEqual(to_affine(FP, s.read_value(8)[1]), affine_mul(FP, G1, 2))


class TestFixedBaseMul(unittest.TestCase):
    def test_g1mul(self):
        s = build()
        s.write_value(0, TAG_FE, 7)
        run_program(self, s, [encode(OP_G1MUL, 0, 0, 4)])
        tag, jac = s.read_value(4)
        self.assertEqual(tag, TAG_FP_JACOBIAN)
        self.assertEqual(to_affine(FP, jac), affine_mul(FP, G1, 7))

    def test_g2mul(self):
        s = build()
        s.write_value(0, TAG_FE, 5)
        run_program(self, s, [encode(OP_G2MUL, 0, 0, 4)])
        tag, jac = s.read_value(4)
        self.assertEqual(tag, TAG_FP2_JACOBIAN)
        pt = to_affine(FP2, jac)
        self.assertEqual(pt, affine_mul(FP2, G2, 5))
        self.assertTrue(is_on_curve(FP2, pt, B2))

    def test_g2mul_zero(self):
        s = build()
        s.write_value(0, TAG_FE, 0)
        run_program(self, s, [encode(OP_G2MUL, 0, 0, 4)])
        self.assertEqual(s.read_value(4),
                         (TAG_FP2_JACOBIAN, ((1, 0), (1, 0), (0, 0))))


# ---------------------------------------------------------------------------
#  Pairing sequencer
# ---------------------------------------------------------------------------

class StubPairing:
    def __init__(self):
        self.calls = []

    def __call__(self, q, p):
        self.calls.append((q, p))
        return [100 + i for i in range(12)]


class TestPairingSequencer(unittest.TestCase):
    def _run(self, g1, g2=G2, latency=5):
        stub = StubPairing()
        s = build(pairing_fn=stub, pairing_latency=latency)
        s.write_value(0, TAG_FP_AFFINE, g1)
        s.write_value(2, TAG_FP2_AFFINE, g2)
        run_program(self, s, [encode(OP_PAIR, 0, 2, 0x20)])
        return s, stub

    def test_result_is_fe12(self):
        s, stub = self._run(G1)
        self.assertEqual(s.read_value(0x20), (TAG_FE12, tuple(range(100, 112))))
        self.assertEqual(stub.calls, [(G2, G1)])
        self.assertTrue(s.pairing_unit.input_valid)
        self.assertEqual([s.ostore.peek(0x20 + i).tag for i in range(12)],
                         [TAG_FE12] * 12)

    def test_off_curve_g1_is_flagged(self):
        s, stub = self._run((1, 1))
        self.assertFalse(s.pairing_unit.input_valid)
        self.assertTrue(s.host.status() & (1 << 4))
        # still evaluated, status only
        self.assertEqual(len(stub.calls), 1)

    def test_infinity_encoding(self):
        s, stub = self._run((0, 0), ((0, 0), (0, 0)))
        self.assertTrue(s.pairing_unit.input_valid)
        self.assertEqual(stub.calls, [(None, None)])

    def test_curve_check_uses_pairing_lane(self):
        s, _ = self._run(G1)
        self.assertEqual(s.mul.lanes[3].granted, 3)
        self.assertEqual(s.add.lanes[3].granted, 1)
        self.assertEqual(s.mul.lanes[0].granted, 0)

    def test_latency_is_respected(self):
        fast, _ = self._run(G1, latency=0)
        slow, _ = self._run(G1, latency=40)
        self.assertEqual(slow.cycle - fast.cycle, 40)


if __name__ == "__main__":
    unittest.main()
