#!/usr/bin/env python3
"""
BLS12-381 Coprocessor Monitor / CLI
====================================
Command-line front end and interactive monitor for the coprocessor
emulator.

Provides:
  - Machine configuration (modulus, store depths, arbitration policy)
  - Assembly loading (program words and operand data)
  - Run / step execution with a cycle budget
  - Operand-store inspection / modification
  - Host jump and store reset
  - Report-channel inspection
  - Disassembly

Usage:
  python cli.py [--load FILE.asm] [--run] [--max-cycles N] [--dump ADDR[:N]]
                [--modulus P] [--arbitration fixed|round_robin] [--verbose]
  python cli.py --assemble SRC.asm OUT.bin [--listing]
"""

from __future__ import annotations
import argparse
import cmd
import logging
import shlex
import sys

from asm import assemble, disassemble, describe_tag, AsmError
from config import CoprocConfig, ARB_FIXED, ARB_ROUND_ROBIN
from report import parse_report
from stores import TAG_BY_NAME, slots
from system import CoprocSystem

log = logging.getLogger(__name__)


def load_image(system: CoprocSystem, image):
    """Place an assembled Image into the system's stores."""
    system.load_program(image.program)
    for block in image.data:
        system.ostore.write_words(block.addr, block.tag, block.words)


def load_source(system: CoprocSystem, path: str, listing: bool = False):
    with open(path, "r") as f:
        source = f.read()
    image = assemble(source, listing=listing)
    load_image(system, image)
    return image


def _parse_range(spec: str) -> tuple[int, int]:
    """'ADDR' or 'ADDR:N' → (addr, count)."""
    if ":" in spec:
        a, n = spec.split(":", 1)
        return int(a, 0), int(n, 0)
    return int(spec, 0), 0


def _parse_tag(tok: str) -> int:
    tok = tok.strip()
    if tok.upper() in TAG_BY_NAME:
        return TAG_BY_NAME[tok.upper()]
    return int(tok, 0)


def format_value(system: CoprocSystem, addr: int) -> str:
    tag, value = system.read_value(addr)
    if isinstance(value, tuple):
        body = ", ".join(
            f"({v[0]:#x}, {v[1]:#x})" if isinstance(v, tuple) else f"{v:#x}"
            for v in value)
        return f"{describe_tag(tag)} [{body}]"
    return f"{describe_tag(tag)} {value:#x}"


# ---------------------------------------------------------------------------
#  Interactive monitor
# ---------------------------------------------------------------------------

class CoprocCLI(cmd.Cmd):
    """Interactive monitor for the coprocessor system."""

    intro = (
        "\n"
        "BLS12-381 coprocessor monitor.  Type 'help' for commands, "
        "'quit' to exit.\n"
    )
    prompt = "COP> "

    def __init__(self, system: CoprocSystem):
        super().__init__()
        self.sys = system
        self._shown_reports = 0

    def _parse_int(self, s: str) -> int:
        return int(s.strip(), 0)

    # -- Loading --

    def do_load(self, arg):
        """Assemble and load a program: load <file.asm>"""
        parts = shlex.split(arg)
        if not parts:
            print("Usage: load <file.asm>")
            return
        try:
            image = load_source(self.sys, parts[0])
        except (OSError, AsmError) as e:
            print(f"Error: {e}")
            return
        print(f"Loaded {len(image.program)} words, {len(image.data)} data blocks")

    # -- Execution --

    def do_step(self, arg):
        """Step N clock cycles: step [count]"""
        count = self._parse_int(arg) if arg.strip() else 1
        for _ in range(count):
            self.sys.step()
        print(f"  {self.sys.coproc.status_line()}")

    def do_run(self, arg):
        """Run until the program finishes: run [max_cycles]"""
        max_cycles = self._parse_int(arg) if arg.strip() else 10_000_000
        n = self.sys.run(max_cycles)
        if self.sys.finished:
            print(f"Finished after {n} cycles, "
                  f"{self.sys.coproc.retired} instructions retired.")
        else:
            print(f"Stopped after {n} cycles.")

    def do_jump(self, arg):
        """Latch a host jump: jump <address>"""
        if not arg.strip():
            print("Usage: jump <address>")
            return
        self.sys.host.jump(self._parse_int(arg))

    def do_reset(self, arg):
        """Reset stores and abort execution: reset [operand|program|all]"""
        which = arg.strip().lower() or "all"
        if which not in ("operand", "program", "all"):
            print("Usage: reset [operand|program|all]")
            return
        self.sys.reset(operand=which in ("operand", "all"),
                       program=which in ("program", "all"))
        print(f"Reset ({which}); sweep in progress.")

    # -- Inspection --

    def do_status(self, arg):
        """Show full system status."""
        print(self.sys.dump_state())

    def do_mem(self, arg):
        """Show operand cells: mem <address> [count]"""
        parts = shlex.split(arg)
        if not parts:
            print("Usage: mem <address> [count]")
            return
        addr = self._parse_int(parts[0])
        count = self._parse_int(parts[1]) if len(parts) > 1 else 8
        print(self.sys.dump_operands(addr, count))

    def do_value(self, arg):
        """Show the typed value at an address: value <address>"""
        if not arg.strip():
            print("Usage: value <address>")
            return
        print(f"  {format_value(self.sys, self._parse_int(arg))}")

    def do_set(self, arg):
        """Write an operand value: set <address> <tag> <word> [word] ...
        Tag is a name (FE, FE2, FP_AFFINE, ...) or a number."""
        parts = shlex.split(arg)
        if len(parts) < 3:
            print("Usage: set <address> <tag> <word...>")
            return
        try:
            addr = self._parse_int(parts[0])
            tag = _parse_tag(parts[1])
            words = [self._parse_int(t) for t in parts[2:]]
        except (KeyError, ValueError) as e:
            print(f"Error: {e}")
            return
        if len(words) != slots(tag):
            print(f"  {describe_tag(tag)} needs {slots(tag)} words")
            return
        self.sys.ostore.write_words(addr, tag, words)
        print(f"  Wrote {len(words)} cells at {addr:#x}")

    def do_reports(self, arg):
        """Show messages received on the report channel: reports [all]"""
        msgs = self.sys.channel.messages
        start = 0 if arg.strip() == "all" else self._shown_reports
        wb = self.sys.config.report_word_bytes
        for i in range(start, len(msgs)):
            rep = parse_report(msgs[i], wb)
            words = " ".join(f"{w:#x}" for w in rep.words)
            print(f"  #{i} addr={rep.addr:#06x} {describe_tag(rep.tag)}: {words}")
        if start == len(msgs):
            print("  (no new reports)")
        self._shown_reports = len(msgs)

    def do_disasm(self, arg):
        """Disassemble program words: disasm [address] [count]
        Defaults to the current PC, 16 words."""
        parts = shlex.split(arg)
        addr = self._parse_int(parts[0]) if parts else self.sys.coproc.pc
        count = self._parse_int(parts[1]) if len(parts) > 1 else 16
        for a in range(addr, addr + count):
            word = self.sys.pstore.peek(a)
            marker = ">>>" if a == self.sys.coproc.pc else "   "
            past = " " if a < self.sys.pstore.length else "-"
            print(f"  {marker} {a:04X}{past} {word:016X}  {disassemble(word)}")

    def do_quit(self, arg):
        """Exit the monitor."""
        print("Goodbye.")
        return True
    do_exit = do_quit
    do_q = do_quit

    def do_EOF(self, arg):
        print()
        return self.do_quit(arg)

    def default(self, line):
        print(f"Unknown command: {line.split()[0]!r}. Type 'help' for available commands.")

    def emptyline(self):
        pass


# ---------------------------------------------------------------------------
#  Main
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="BLS12-381 Coprocessor Monitor",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="Examples:\n"
               "  python cli.py --load demo.asm --run --dump 0x10:3\n"
               "  python cli.py --load demo.asm --modulus 7 --run --batch\n"
               "  python cli.py --assemble demo.asm demo.bin --listing\n"
    )
    parser.add_argument("--load", type=str, default=None, metavar="FILE",
                        help="Assemble FILE.asm and load program + data")
    parser.add_argument("--assemble", nargs=2, metavar=("SRC", "OUT"),
                        help="Assemble SRC.asm, write program words to OUT and exit")
    parser.add_argument("--listing", "-l", action="store_true",
                        help="Print assembly listing")
    parser.add_argument("--run", action="store_true",
                        help="Run the loaded program to completion")
    parser.add_argument("--max-cycles", type=int, default=10_000_000,
                        help="Cycle budget for --run (default: 10000000)")
    parser.add_argument("--dump", type=str, action="append", default=[],
                        metavar="ADDR[:N]",
                        help="After --run, print the value at ADDR "
                             "(or N raw cells); can repeat")
    parser.add_argument("--modulus", type=lambda s: int(s, 0), default=None,
                        help="Field modulus (default: BLS12-381 base prime)")
    parser.add_argument("--arbitration", choices=(ARB_FIXED, ARB_ROUND_ROBIN),
                        default=ARB_FIXED, help="Arbiter grant policy")
    parser.add_argument("--depth", type=int, default=None,
                        help="Operand and program store depth")
    parser.add_argument("--batch", action="store_true",
                        help="Exit after --run instead of entering the monitor")
    parser.add_argument("--verbose", "-v", action="store_true",
                        help="Cycle-level debug logging")
    return parser


def make_system(args) -> CoprocSystem:
    kwargs = {"arbitration": args.arbitration}
    if args.modulus is not None:
        kwargs["modulus"] = args.modulus
    if args.depth is not None:
        kwargs["operand_depth"] = kwargs["program_depth"] = args.depth
    return CoprocSystem(CoprocConfig(**kwargs))


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s")

    # ---- Assemble-only mode -------------------------------------------
    if args.assemble:
        src_path, out_path = args.assemble
        try:
            with open(src_path, "r") as f:
                image = assemble(f.read(), listing=args.listing)
            with open(out_path, "wb") as f:
                for word in image.program:
                    f.write(word.to_bytes(8, "big"))
        except (OSError, AsmError) as e:
            print(f"Assembly error: {e}", file=sys.stderr)
            return 1
        print(f"Assembled {src_path} → {out_path} ({len(image.program)} words)")
        return 0

    try:
        sys_emu = make_system(args)
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    if args.load:
        try:
            load_source(sys_emu, args.load, listing=args.listing)
        except (OSError, AsmError) as e:
            print(f"Load error: {e}", file=sys.stderr)
            return 1

    if args.run:
        n = sys_emu.run(args.max_cycles)
        if not sys_emu.finished:
            print(f"Cycle budget exhausted after {n} cycles.", file=sys.stderr)
            if args.batch:
                return 2
        else:
            print(f"Finished after {n} cycles, "
                  f"{sys_emu.coproc.retired} instructions retired.")
        for spec in args.dump:
            addr, count = _parse_range(spec)
            if count:
                print(sys_emu.dump_operands(addr, count))
            else:
                print(f"  {addr:#06x}: {format_value(sys_emu, addr)}")
        if sys_emu.arith_errors:
            log.warning("%d add/sub error signal(s) during run", sys_emu.arith_errors)

    if args.batch:
        return 0

    cli = CoprocCLI(sys_emu)
    try:
        cli.cmdloop()
    except KeyboardInterrupt:
        print("\nInterrupted. Goodbye.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
