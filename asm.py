"""
Coprocessor Assembler
======================
Translates assembly text into program-store words and operand-store data.

Supports:
  - Labels (terminated with ':'), bound to the current section's counter
  - Constants via .equ NAME, value
  - Comments (';' to end of line)
  - Sections: .text (program words, the default) and .data (operand cells)
  - .org to move the current section's counter, .word for a raw program word
  - Data directives (operand section):
        .fe   v                     FE           1 slot
        .fe2  c0, c1                FE2          2 slots
        .g1p  x, y                  FP_AFFINE    2 slots
        .g2p  x0, x1, y0, y1        FP2_AFFINE   4 slots
        .jac  x, y, z               FP_JACOBIAN  3 slots
        .jac2 x0, x1, y0, y1, z0, z1  FP2_JACOBIAN 6 slots
        .fe12 v0, ..., v11          FE12        12 slots
        .g1 / .g2                   the BLS12-381 generators (affine)
        .res  n                     n zero FE cells

Usage:
  from asm import assemble
  image = assemble(source_text)
  system.load_program(image.program)
  for addr, tag, words in image.data: ...
"""

from __future__ import annotations
from collections import namedtuple

from fields import G1, G2
from stores import (
    encode, decode, OPCODE_BY_NAME, OPCODE_NAMES,
    TAG_FE, TAG_FE2, TAG_FP_AFFINE, TAG_FP_JACOBIAN, TAG_FP2_AFFINE,
    TAG_FP2_JACOBIAN, TAG_FE12, SLOT_COUNT, TAG_NAMES,
)

# ---------------------------------------------------------------------------
#  Operand forms: which of the a / b / c fields each mnemonic takes
# ---------------------------------------------------------------------------
OPERAND_FIELDS = {
    "nop":    (),
    "copy":   ("a", "b"),
    "inv":    ("a", "c"),
    "mul":    ("a", "b", "c"),
    "sub":    ("a", "b", "c"),
    "add":    ("a", "b", "c"),
    "report": ("a",),
    "smul":   ("a", "b", "c"),
    "g1mul":  ("a", "c"),
    "g2mul":  ("a", "c"),
    "pair":   ("a", "b", "c"),
}

DATA_TAGS = {
    ".fe":   TAG_FE,
    ".fe2":  TAG_FE2,
    ".g1p":  TAG_FP_AFFINE,
    ".g2p":  TAG_FP2_AFFINE,
    ".jac":  TAG_FP_JACOBIAN,
    ".jac2": TAG_FP2_JACOBIAN,
    ".fe12": TAG_FE12,
}

DataBlock = namedtuple("DataBlock", "addr tag words")
Image = namedtuple("Image", "program data labels")

# ---------------------------------------------------------------------------
#  Parser helpers
# ---------------------------------------------------------------------------

def _parse_imm(tok: str) -> int:
    """Parse an immediate value (decimal or 0x hex)."""
    tok = tok.strip()
    if tok.startswith("-"):
        return int(tok, 10)
    return int(tok, 0)

def _split_ops(rest: str) -> list[str]:
    """Split operand string by comma, trimming whitespace."""
    return [s.strip() for s in rest.split(",") if s.strip()]

def _split_mnemonic(text: str) -> tuple[str, str]:
    """Split 'MNEM operands' → (mnem, operands_str)."""
    parts = text.split(None, 1)
    if len(parts) == 1:
        return parts[0], ""
    return parts[0], parts[1]


class AsmError(Exception):
    def __init__(self, line: int, msg: str):
        self.line = line
        super().__init__(f"Line {line}: {msg}")


def _resolve(lineno: int, tok: str, symbols: dict) -> int:
    if tok in symbols:
        return symbols[tok]
    try:
        return _parse_imm(tok)
    except ValueError:
        raise AsmError(lineno, f"Undefined symbol or bad number: {tok}") from None


def _res_count(lineno: int, ops: list[str], symbols: dict) -> int:
    if len(ops) != 1:
        raise AsmError(lineno, ".res takes one count")
    n = _resolve(lineno, ops[0], symbols)
    if n < 0:
        raise AsmError(lineno, f".res count must not be negative: {ops[0]}")
    return n


def _data_size(lineno: int, directive: str, ops: list[str], symbols: dict) -> int:
    if directive in (".g1", ".g2"):
        return SLOT_COUNT[TAG_FP_AFFINE if directive == ".g1" else TAG_FP2_AFFINE]
    if directive == ".res":
        return _res_count(lineno, ops, symbols)
    tag = DATA_TAGS[directive]
    if len(ops) != SLOT_COUNT[tag]:
        raise AsmError(lineno, f"{directive} takes {SLOT_COUNT[tag]} values, "
                               f"got {len(ops)}")
    return SLOT_COUNT[tag]


# ---------------------------------------------------------------------------
#  Assembler
# ---------------------------------------------------------------------------

def assemble(source: str, listing: bool = False) -> Image:
    """
    Two-pass assembler.
    Pass 1: collect labels and .equ constants, size every line.
    Pass 2: encode instructions and data with symbols resolved.
    If listing=True, print an address/word/source listing to stdout.
    """
    cleaned: list[tuple[int, str]] = []
    for i, raw in enumerate(source.split("\n"), 1):
        stripped = raw.split(";", 1)[0].strip()
        if stripped:
            cleaned.append((i, stripped))

    # ---- Pass 1: symbols and layout ----
    symbols: dict[str, int] = {}
    labels: dict[str, int] = {}
    items: list[tuple[int, str, str, int]] = []   # (line, section, text, addr)
    counters = {"text": 0, "data": 0}
    section = "text"

    for lineno, text in cleaned:
        if ":" in text.split(None, 1)[0]:
            lbl, _, text = text.partition(":")
            lbl = lbl.strip()
            if lbl in symbols:
                raise AsmError(lineno, f"Duplicate label: {lbl}")
            symbols[lbl] = labels[lbl] = counters[section]
            text = text.strip()
            if not text:
                continue

        mnem, rest = _split_mnemonic(text)
        lower = mnem.lower()
        ops = _split_ops(rest)

        if lower == ".equ":
            if len(ops) != 2:
                raise AsmError(lineno, ".equ takes NAME, value")
            if ops[0] in symbols:
                raise AsmError(lineno, f"Duplicate symbol: {ops[0]}")
            symbols[ops[0]] = _resolve(lineno, ops[1], symbols)
            continue
        if lower in (".text", ".data"):
            section = lower[1:]
            continue
        if lower == ".org":
            if len(ops) != 1:
                raise AsmError(lineno, ".org takes one address")
            counters[section] = _resolve(lineno, ops[0], symbols)
            continue

        if lower in DATA_TAGS or lower in (".g1", ".g2", ".res"):
            if section != "data":
                raise AsmError(lineno, f"{lower} outside .data")
            items.append((lineno, section, text, counters[section]))
            counters[section] += _data_size(lineno, lower, ops, symbols)
            continue
        if lower == ".word":
            if section != "text" or len(ops) != 1:
                raise AsmError(lineno, ".word takes one value in .text")
            items.append((lineno, section, text, counters[section]))
            counters[section] += 1
            continue
        if lower.startswith("."):
            raise AsmError(lineno, f"Unknown directive: {mnem}")

        if section != "text":
            raise AsmError(lineno, f"Instruction in .data: {mnem}")
        if lower not in OPERAND_FIELDS:
            raise AsmError(lineno, f"Unknown mnemonic: {mnem}")
        items.append((lineno, section, text, counters[section]))
        counters[section] += 1

    # ---- Pass 2: emit ----
    program: list[int] = []
    data: list[DataBlock] = []
    listing_lines = []

    for lineno, section, text, addr in items:
        mnem, rest = _split_mnemonic(text)
        lower = mnem.lower()
        ops = _split_ops(rest)

        if section == "data":
            block = _emit_data(lineno, lower, ops, addr, symbols)
            data.append(block)
            if listing:
                first = f"{block.words[0]:X}" if block.words else ""
                if len(first) > 16:
                    first = first[:16] + "..."
                listing_lines.append(("D", addr, first, text))
            continue

        if lower == ".word":
            word = _resolve(lineno, ops[0], symbols) & ((1 << 64) - 1)
        else:
            word = _emit_instruction(lineno, lower, ops, symbols)
        if addr < len(program):
            program[addr] = word
        else:
            program.extend([0] * (addr - len(program)))
            program.append(word)
        if listing:
            listing_lines.append(("P", addr, f"{word:016X}", text))

    if listing:
        addr_labels = {}
        for lbl, a in labels.items():
            addr_labels.setdefault(a, []).append(lbl)
        for kind, addr, hexstr, src in listing_lines:
            for lbl in addr_labels.pop(addr, []):
                print(f"                           {lbl}:")
            print(f"  {kind} {addr:04X}  {hexstr:<19s}  {src}")

    return Image(program, data, labels)


def _emit_instruction(lineno: int, mnem: str, ops: list[str],
                      symbols: dict[str, int]) -> int:
    fields = OPERAND_FIELDS[mnem]
    if len(ops) != len(fields):
        raise AsmError(lineno, f"{mnem} takes {len(fields)} operand(s), "
                               f"got {len(ops)}")
    values = {"a": 0, "b": 0, "c": 0}
    for name, tok in zip(fields, ops):
        v = _resolve(lineno, tok, symbols)
        if not 0 <= v <= 0xFFFF:
            raise AsmError(lineno, f"Address out of range: {tok}")
        values[name] = v
    return encode(OPCODE_BY_NAME[mnem], values["a"], values["b"], values["c"])


def _emit_data(lineno: int, directive: str, ops: list[str], addr: int,
               symbols: dict[str, int]) -> DataBlock:
    if directive == ".g1":
        return DataBlock(addr, TAG_FP_AFFINE, list(G1))
    if directive == ".g2":
        (x0, x1), (y0, y1) = G2
        return DataBlock(addr, TAG_FP2_AFFINE, [x0, x1, y0, y1])
    if directive == ".res":
        return DataBlock(addr, TAG_FE, [0] * _res_count(lineno, ops, symbols))
    return DataBlock(addr, DATA_TAGS[directive],
                     [_resolve(lineno, tok, symbols) for tok in ops])


# ---------------------------------------------------------------------------
#  Disassembler
# ---------------------------------------------------------------------------

def disassemble(word: int) -> str:
    """One program word back to source form."""
    ins = decode(word)
    name = OPCODE_NAMES.get(ins.opcode)
    if name is None:
        return f".word {word:#018x}"
    fields = OPERAND_FIELDS[name]
    if not fields:
        return name
    vals = {"a": ins.a, "b": ins.b, "c": ins.c}
    return f"{name:<7s}" + ", ".join(f"{vals[f]:#06x}" for f in fields)


def describe_tag(tag: int) -> str:
    return TAG_NAMES.get(tag, f"tag{tag}")
