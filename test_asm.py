#!/usr/bin/env python3
"""
Tests for the assembler, the disassembler and the CLI front end.
"""
import io
import os
import tempfile
import unittest
from contextlib import redirect_stdout, redirect_stderr

from asm import assemble, disassemble, AsmError, DataBlock
from cli import CoprocCLI, main
from config import CoprocConfig
from fields import G1, G2
from stores import (
    encode, TAG_FE, TAG_FE2, TAG_FP_AFFINE, TAG_FP2_AFFINE, TAG_FE12,
    OP_ADD, OP_INV, OP_COPY, OP_REPORT, OP_G1MUL, OP_PAIR, OP_NOP,
)
from system import CoprocSystem


DEMO = """
; add two constants and report the sum
        .equ    SUM, 0x10
        .data
a:      .fe     3
b:      .fe     5
        .text
start:  add     a, b, SUM
        report  SUM
"""


class TestAssembler(unittest.TestCase):
    def test_basic_program(self):
        image = assemble(DEMO)
        self.assertEqual(image.program, [encode(OP_ADD, 0, 1, 0x10),
                                         encode(OP_REPORT, 0x10)])
        self.assertEqual(image.data, [DataBlock(0, TAG_FE, [3]),
                                      DataBlock(1, TAG_FE, [5])])
        self.assertEqual(image.labels, {"a": 0, "b": 1, "start": 0})

    def test_operand_forms(self):
        image = assemble("inv 4, 9\ncopy 1, 2\ng1mul 3, 7\npair 1, 2, 3\nnop")
        self.assertEqual(image.program, [
            encode(OP_INV, 4, 0, 9),
            encode(OP_COPY, 1, 2, 0),
            encode(OP_G1MUL, 3, 0, 7),
            encode(OP_PAIR, 1, 2, 3),
            encode(OP_NOP),
        ])

    def test_forward_label(self):
        image = assemble("copy x, 0\n.data\n.org 0x20\nx: .fe2 1, 2")
        self.assertEqual(image.program, [encode(OP_COPY, 0x20, 0, 0)])
        self.assertEqual(image.data, [DataBlock(0x20, TAG_FE2, [1, 2])])

    def test_data_layout(self):
        image = assemble(".data\np: .g1\nq: .g2\nr: .res 3\nf: .fe12 "
                         + ", ".join(str(i) for i in range(12)))
        self.assertEqual(image.labels, {"p": 0, "q": 2, "r": 6, "f": 9})
        self.assertEqual(image.data[0], DataBlock(0, TAG_FP_AFFINE, list(G1)))
        self.assertEqual(image.data[1].tag, TAG_FP2_AFFINE)
        self.assertEqual(image.data[1].words, [G2[0][0], G2[0][1], G2[1][0], G2[1][1]])
        self.assertEqual(image.data[2], DataBlock(6, TAG_FE, [0, 0, 0]))
        self.assertEqual(image.data[3].tag, TAG_FE12)

    def test_res_count_from_symbol(self):
        image = assemble(".equ N, 4\n.data\nbuf: .res N\nnext: .fe 1")
        self.assertEqual(image.data[0], DataBlock(0, TAG_FE, [0, 0, 0, 0]))
        self.assertEqual(image.labels["next"], 4)

    def test_org_and_word(self):
        image = assemble(".org 2\n.word 0xABCD\nnop")
        self.assertEqual(image.program, [0, 0, 0xABCD, 0])

    def test_case_insensitive_mnemonics(self):
        self.assertEqual(assemble("ADD 1, 2, 3").program, [encode(OP_ADD, 1, 2, 3)])

    def test_errors(self):
        cases = [
            "frob 1, 2",             # unknown mnemonic
            "add 1, 2",              # wrong operand count
            "add 1, 2, nowhere",     # undefined symbol
            "add 1, 2, 0x10000",     # address range
            ".fe 3",                 # data outside .data
            ".data\nadd 1, 2, 3",    # instruction in .data
            ".data\n.fe2 1",         # wrong value count
            "x: nop\nx: nop",        # duplicate label
            ".bogus",                # unknown directive
            ".data\n.res COUNT",     # undefined .res count
            ".data\n.res -2",        # negative .res count
        ]
        for src in cases:
            with self.subTest(src=src):
                with self.assertRaises(AsmError):
                    assemble(src)

    def test_error_line_number(self):
        with self.assertRaises(AsmError) as cm:
            assemble("nop\n\n; comment\nfrob")
        self.assertEqual(cm.exception.line, 4)

    def test_listing(self):
        buf = io.StringIO()
        with redirect_stdout(buf):
            assemble(DEMO, listing=True)
        out = buf.getvalue()
        self.assertIn("start:", out)
        self.assertIn("P 0000", out)
        self.assertIn("D 0001", out)


class TestDisassembler(unittest.TestCase):
    def test_roundtrip(self):
        for word in (encode(OP_ADD, 1, 2, 3), encode(OP_INV, 5, 0, 6),
                     encode(OP_REPORT, 0x40), encode(OP_NOP)):
            with self.subTest(word=hex(word)):
                self.assertEqual(assemble(disassemble(word)).program, [word])

    def test_unknown_opcode(self):
        word = encode(0x3F, 1, 2, 3)
        self.assertTrue(disassemble(word).startswith(".word"))
        self.assertEqual(assemble(disassemble(word)).program, [word])


# ---------------------------------------------------------------------------
#  CLI
# ---------------------------------------------------------------------------

class TestCLIMain(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.src = os.path.join(self.tmp.name, "demo.asm")
        with open(self.src, "w") as f:
            f.write(DEMO)

    def tearDown(self):
        self.tmp.cleanup()

    def _main(self, argv):
        out, err = io.StringIO(), io.StringIO()
        with redirect_stdout(out), redirect_stderr(err):
            rc = main(argv)
        return rc, out.getvalue(), err.getvalue()

    def test_batch_run(self):
        rc, out, _ = self._main(["--load", self.src, "--modulus", "7",
                                 "--depth", "64", "--run", "--batch",
                                 "--dump", "0x10", "--dump", "0:2"])
        self.assertEqual(rc, 0)
        self.assertIn("Finished after", out)
        self.assertIn("2 instructions retired", out)
        self.assertIn("0x0010: FE 0x1", out)
        self.assertIn("0x5", out)

    def test_budget_exhausted(self):
        rc, _, err = self._main(["--load", self.src, "--modulus", "7",
                                 "--depth", "64", "--run", "--batch",
                                 "--max-cycles", "3"])
        self.assertEqual(rc, 2)
        self.assertIn("exhausted", err)

    def test_assemble_only(self):
        out_path = os.path.join(self.tmp.name, "demo.bin")
        rc, _, _ = self._main(["--assemble", self.src, out_path])
        self.assertEqual(rc, 0)
        with open(out_path, "rb") as f:
            blob = f.read()
        self.assertEqual(len(blob), 16)
        self.assertEqual(int.from_bytes(blob[:8], "big"), encode(OP_ADD, 0, 1, 0x10))

    def test_bad_source(self):
        bad = os.path.join(self.tmp.name, "bad.asm")
        with open(bad, "w") as f:
            f.write("frob\n")
        rc, _, err = self._main(["--load", bad, "--batch"])
        self.assertEqual(rc, 1)
        self.assertIn("Line 1", err)

    def test_bad_res_count_is_reported(self):
        bad = os.path.join(self.tmp.name, "res.asm")
        with open(bad, "w") as f:
            f.write(".data\n.res N\n")
        rc, _, err = self._main(["--load", bad, "--batch"])
        self.assertEqual(rc, 1)
        self.assertIn("Line 2", err)

    def test_bad_config(self):
        rc, _, err = self._main(["--modulus", "8", "--batch"])
        self.assertEqual(rc, 1)
        self.assertIn("Configuration error", err)


class TestMonitor(unittest.TestCase):
    def setUp(self):
        self.sys = CoprocSystem(CoprocConfig(modulus=7, operand_depth=64,
                                             program_depth=64))
        self.cli = CoprocCLI(self.sys)

    def _cmd(self, line):
        buf = io.StringIO()
        with redirect_stdout(buf):
            stop = self.cli.onecmd(line)
        return stop, buf.getvalue()

    def test_set_run_value(self):
        self._cmd("set 0 FE 3")
        self._cmd("set 1 fe 5")
        self.sys.load_program([encode(OP_ADD, 0, 1, 2), encode(OP_REPORT, 2)])
        _, out = self._cmd("run")
        self.assertIn("Finished", out)
        _, out = self._cmd("value 2")
        self.assertIn("FE 0x1", out)
        _, out = self._cmd("reports")
        self.assertIn("addr=0x0002", out)
        _, out = self._cmd("reports")
        self.assertIn("no new reports", out)

    def test_set_wrong_count(self):
        _, out = self._cmd("set 0 FE2 1")
        self.assertIn("needs 2 words", out)

    def test_mem_and_disasm(self):
        self._cmd("set 4 FE2 1 2")
        _, out = self._cmd("mem 4 2")
        self.assertIn("FE2", out)
        self.sys.load_program([encode(OP_ADD, 0, 1, 2)])
        _, out = self._cmd("disasm 0 2")
        self.assertIn("add", out)
        self.assertIn(">>>", out)

    def test_step_status_reset(self):
        self.sys.load_program([encode(OP_ADD, 0, 0, 1)])
        _, out = self._cmd("step 3")
        self.assertIn("pc=", out)
        _, out = self._cmd("status")
        self.assertIn("=== Engines ===", out)
        _, out = self._cmd("reset program")
        self.assertIn("sweep", out)
        self.assertEqual(self.sys.pstore.length, 0)

    def test_jump(self):
        self._cmd("jump 5")
        self.assertTrue(self.sys.ctrl.jump_pending)
        self.assertEqual(self.sys.ctrl.jump_addr, 5)

    def test_unknown_and_quit(self):
        _, out = self._cmd("frobnicate")
        self.assertIn("Unknown command", out)
        stop, _ = self._cmd("quit")
        self.assertTrue(stop)


if __name__ == "__main__":
    unittest.main()
