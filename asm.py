"""
Tutor80 Assembler
=================
Translates Intel 8080 assembly text into a flat binary, and writes the
``.map`` sidecar the profiler reads.

Supports:
  - Labels (``name:``, alone or in front of an instruction)
  - The full 8080 instruction set (Intel mnemonics)
  - Literals: decimal, 0x1F, $1F, 1Fh, 'c'; ``label+N`` / ``label-N``
  - Comments (';' to end of line)
  - .org, .db, .dw, .ascii, .equ directives

Usage:
  from asm import assemble
  code = assemble(source_text)

  python asm.py prog.asm prog.bin      # also writes prog.bin.map
"""

from __future__ import annotations
import argparse
import re
import sys
from typing import Optional

from i8080 import (
    ALU_IMM_NAMES, ALU_NAMES, COND_NAMES, REG_NAMES,
    ROT_NAMES,
)

# ---------------------------------------------------------------------------
#  Opcode tables
# ---------------------------------------------------------------------------

IMPLIED_OPS = {
    "NOP": 0x00, "HLT": 0x76, "RET": 0xC9, "XCHG": 0xEB, "XTHL": 0xE3,
    "SPHL": 0xF9, "PCHL": 0xE9, "EI": 0xFB, "DI": 0xF3,
}
IMPLIED_OPS.update({name: 0x07 | (i << 3) for i, name in enumerate(ROT_NAMES)})
IMPLIED_OPS.update({"R" + cc: 0xC0 | (i << 3) for i, cc in enumerate(COND_NAMES)})

ALU_REG_OPS = {name: 0x80 | (i << 3) for i, name in enumerate(ALU_NAMES)}
ALU_IMM_OPS = {name: 0xC6 | (i << 3) for i, name in enumerate(ALU_IMM_NAMES)}

ADDR_OPS = {
    "JMP": 0xC3, "CALL": 0xCD,
    "SHLD": 0x22, "LHLD": 0x2A, "STA": 0x32, "LDA": 0x3A,
}
ADDR_OPS.update({"J" + cc: 0xC2 | (i << 3) for i, cc in enumerate(COND_NAMES)})
ADDR_OPS.update({"C" + cc: 0xC4 | (i << 3) for i, cc in enumerate(COND_NAMES)})

PAIR_OPS = {"LXI": 0x01, "INX": 0x03, "DAD": 0x09, "DCX": 0x0B}
STACK_OPS = {"POP": 0xC1, "PUSH": 0xC5}

# Register pair operand names → 2-bit index
PAIR_SP  = {"B": 0, "BC": 0, "D": 1, "DE": 1, "H": 2, "HL": 2, "SP": 3}
PAIR_PSW = {"B": 0, "BC": 0, "D": 1, "DE": 1, "H": 2, "HL": 2, "PSW": 3}
PAIR_BD  = {"B": 0, "BC": 0, "D": 1, "DE": 1}

LABEL_RE = re.compile(r"^([A-Za-z_][\w]*):\s*(.*)$")


# ---------------------------------------------------------------------------
#  Parser helpers
# ---------------------------------------------------------------------------

class AsmError(Exception):
    def __init__(self, line: int, msg: str):
        self.line = line
        super().__init__(f"Line {line}: {msg}")


def _split_ops(rest: str) -> list[str]:
    """Split operand string by comma, trimming whitespace (quote aware)."""
    ops, cur, quote = [], [], None
    for ch in rest:
        if quote:
            cur.append(ch)
            if ch == quote:
                quote = None
        elif ch in "'\"":
            quote = ch
            cur.append(ch)
        elif ch == ",":
            ops.append("".join(cur).strip())
            cur = []
        else:
            cur.append(ch)
    if "".join(cur).strip():
        ops.append("".join(cur).strip())
    return ops


def _split_mnemonic(text: str) -> tuple[str, str]:
    parts = text.split(None, 1)
    if len(parts) == 1:
        return parts[0], ""
    return parts[0], parts[1]


def _strip_comment(raw: str) -> str:
    result = []
    quote = None
    for ch in raw:
        if quote:
            if ch == quote:
                quote = None
        elif ch in "'\"":
            quote = ch
        elif ch == ';':
            break
        result.append(ch)
    return "".join(result).strip()


def _parse_string(lineno: int, text: str) -> bytes:
    """Parse a double-quoted string literal with escape sequences."""
    text = text.strip()
    if not (len(text) >= 2 and text.startswith('"') and text.endswith('"')):
        raise AsmError(lineno, f"Expected quoted string, got: {text}")
    escapes = {"n": 0x0A, "r": 0x0D, "t": 0x09, "0": 0x00, "\\": 0x5C, '"': 0x22}
    s = text[1:-1]
    out = bytearray()
    i = 0
    while i < len(s):
        if s[i] == "\\" and i + 1 < len(s):
            out.append(escapes.get(s[i + 1], ord(s[i + 1]) & 0xFF))
            i += 2
        else:
            out.append(ord(s[i]) & 0xFF)
            i += 1
    return bytes(out)


def _parse_term(lineno: int, tok: str, symbols: dict[str, int]) -> int:
    tok = tok.strip()
    if not tok:
        raise AsmError(lineno, "Missing operand")
    if len(tok) == 3 and tok[0] == tok[2] == "'":
        return ord(tok[1])
    if tok in symbols:
        return symbols[tok]
    try:
        if tok.startswith("$"):
            return int(tok[1:], 16)
        if tok[0].isdigit() and tok[-1] in "hH":
            return int(tok[:-1], 16)
        return int(tok, 0)
    except ValueError:
        raise AsmError(lineno, f"Unknown symbol or bad number: {tok!r}") from None


def _parse_value(lineno: int, expr: str, symbols: dict[str, int]) -> int:
    """Evaluate ``term ((+|-) term)*``."""
    expr = expr.strip()
    if len(expr) == 3 and expr[0] == expr[2] == "'":
        return ord(expr[1])
    parts = re.split(r"([+-])", expr)
    if parts and parts[0].strip() == "":
        parts = ["0"] + parts[1:]
    value = _parse_term(lineno, parts[0], symbols)
    for sign, term in zip(parts[1::2], parts[2::2]):
        v = _parse_term(lineno, term, symbols)
        value = value + v if sign == "+" else value - v
    return value


def _parse_reg(lineno: int, tok: str) -> int:
    name = tok.strip().upper()
    if len(name) == 1 and name in REG_NAMES:
        return REG_NAMES.index(name)
    raise AsmError(lineno, f"Invalid register: {tok!r}")


def _parse_pair(lineno: int, tok: str, table: dict[str, int]) -> int:
    name = tok.strip().upper()
    if name in table:
        return table[name]
    raise AsmError(lineno, f"Invalid register pair: {tok!r}")


def _expect(lineno: int, mnem: str, ops: list[str], count: int):
    if len(ops) != count:
        raise AsmError(lineno, f"{mnem} takes {count} operand(s), got {len(ops)}")


# ---------------------------------------------------------------------------
#  Instruction size (pass 1) and emission (pass 2)
# ---------------------------------------------------------------------------

def _instruction_size(lineno: int, mnem: str) -> int:
    if (mnem in IMPLIED_OPS or mnem in ALU_REG_OPS or mnem in STACK_OPS
            or mnem in ("INR", "DCR", "MOV", "RST", "STAX", "LDAX")
            or (mnem in PAIR_OPS and mnem != "LXI")):
        return 1
    if mnem in ALU_IMM_OPS or mnem in ("MVI", "IN", "OUT"):
        return 2
    if mnem in ADDR_OPS or mnem == "LXI":
        return 3
    raise AsmError(lineno, f"Unknown mnemonic: {mnem!r}")


def _emit_instruction(lineno: int, mnem: str, ops: list[str],
                      symbols: dict[str, int]) -> bytearray:
    out = bytearray()

    def imm8(tok: str) -> int:
        return _parse_value(lineno, tok, symbols) & 0xFF

    def imm16(tok: str) -> tuple[int, int]:
        v = _parse_value(lineno, tok, symbols) & 0xFFFF
        return v & 0xFF, v >> 8

    if mnem in IMPLIED_OPS:
        _expect(lineno, mnem, ops, 0)
        out.append(IMPLIED_OPS[mnem])
    elif mnem in ALU_REG_OPS:
        _expect(lineno, mnem, ops, 1)
        out.append(ALU_REG_OPS[mnem] | _parse_reg(lineno, ops[0]))
    elif mnem in ALU_IMM_OPS:
        _expect(lineno, mnem, ops, 1)
        out += bytes((ALU_IMM_OPS[mnem], imm8(ops[0])))
    elif mnem in ADDR_OPS:
        _expect(lineno, mnem, ops, 1)
        out.append(ADDR_OPS[mnem])
        out += bytes(imm16(ops[0]))
    elif mnem in ("INR", "DCR"):
        _expect(lineno, mnem, ops, 1)
        base = 0x04 if mnem == "INR" else 0x05
        out.append(base | (_parse_reg(lineno, ops[0]) << 3))
    elif mnem == "MOV":
        _expect(lineno, mnem, ops, 2)
        dst = _parse_reg(lineno, ops[0])
        src = _parse_reg(lineno, ops[1])
        if dst == src == 6:
            raise AsmError(lineno, "MOV M,M is not an instruction")
        out.append(0x40 | (dst << 3) | src)
    elif mnem == "MVI":
        _expect(lineno, mnem, ops, 2)
        out += bytes((0x06 | (_parse_reg(lineno, ops[0]) << 3), imm8(ops[1])))
    elif mnem in ("IN", "OUT"):
        _expect(lineno, mnem, ops, 1)
        out += bytes((0xDB if mnem == "IN" else 0xD3, imm8(ops[0])))
    elif mnem == "LXI":
        _expect(lineno, mnem, ops, 2)
        out.append(0x01 | (_parse_pair(lineno, ops[0], PAIR_SP) << 4))
        out += bytes(imm16(ops[1]))
    elif mnem in PAIR_OPS:
        _expect(lineno, mnem, ops, 1)
        out.append(PAIR_OPS[mnem] | (_parse_pair(lineno, ops[0], PAIR_SP) << 4))
    elif mnem in STACK_OPS:
        _expect(lineno, mnem, ops, 1)
        out.append(STACK_OPS[mnem] | (_parse_pair(lineno, ops[0], PAIR_PSW) << 4))
    elif mnem in ("STAX", "LDAX"):
        _expect(lineno, mnem, ops, 1)
        base = 0x02 if mnem == "STAX" else 0x0A
        out.append(base | (_parse_pair(lineno, ops[0], PAIR_BD) << 4))
    elif mnem == "RST":
        _expect(lineno, mnem, ops, 1)
        n = _parse_value(lineno, ops[0], symbols)
        if not 0 <= n <= 7:
            raise AsmError(lineno, f"RST vector out of range: {n}")
        out.append(0xC7 | (n << 3))
    else:
        raise AsmError(lineno, f"Unknown mnemonic: {mnem!r}")

    return out


# ---------------------------------------------------------------------------
#  Assembler
# ---------------------------------------------------------------------------

def _directive_size(lineno: int, lower: str, text: str) -> Optional[int]:
    """Byte size of a data directive, or None for non-data lines."""
    if lower.startswith(".db"):
        size = 0
        for tok in _split_ops(text[3:]):
            size += len(_parse_string(lineno, tok)) if tok.startswith('"') else 1
        return size
    if lower.startswith(".dw"):
        return 2 * len(_split_ops(text[3:]))
    if lower.startswith(".ascii"):
        return len(_parse_string(lineno, text[6:]))
    return None


def _assemble(source: str, base_addr: int = 0, listing: bool = False
              ) -> tuple[bytearray, dict[str, int], dict[str, int]]:
    """
    Two-pass assembler.
    Pass 1: collect labels and equates, compute instruction sizes.
    Pass 2: emit bytes with resolved addresses.
    Returns (code, labels, equates); code[0] sits at base_addr.
    """
    cleaned: list[tuple[int, str]] = []
    for i, raw in enumerate(source.split("\n"), 1):
        stripped = _strip_comment(raw)
        if stripped:
            cleaned.append((i, stripped))

    # ---- Pass 1 ----
    labels: dict[str, int] = {}
    equates: dict[str, int] = {}
    items: list[tuple[int, str, int]] = []  # (line_no, text, addr)
    pc = base_addr

    for lineno, text in cleaned:
        m = LABEL_RE.match(text)
        if m:
            lbl, text = m.group(1), m.group(2).strip()
            if lbl in labels or lbl in equates:
                raise AsmError(lineno, f"Duplicate label: {lbl}")
            labels[lbl] = pc
            if not text:
                continue

        lower = text.lower()
        if lower.startswith(".equ"):
            ops = _split_ops(text[4:])
            _expect(lineno, ".equ", ops, 2)
            if ops[0] in labels or ops[0] in equates:
                raise AsmError(lineno, f"Duplicate label: {ops[0]}")
            equates[ops[0]] = _parse_value(lineno, ops[1], {**equates, **labels})
            continue
        if lower.startswith(".org"):
            target = _parse_value(lineno, text[4:], equates)
            if target < pc:
                raise AsmError(lineno, f".org {target:#x} moves backwards from {pc:#x}")
            items.append((lineno, text, pc))
            pc = target
            continue

        size = _directive_size(lineno, lower, text)
        if size is None:
            mnem, _ = _split_mnemonic(text)
            size = _instruction_size(lineno, mnem.upper())
        items.append((lineno, text, pc))
        pc += size

    # ---- Pass 2 ----
    symbols = {**equates, **labels}
    code = bytearray()
    listing_lines: list[tuple[int, bytes, str]] = []

    for lineno, text, addr in items:
        lower = text.lower()
        start = len(code)
        if lower.startswith(".org"):
            target = _parse_value(lineno, text[4:], symbols)
            code += bytes(target - addr)
            continue
        if lower.startswith(".db"):
            for tok in _split_ops(text[3:]):
                if tok.startswith('"'):
                    code += _parse_string(lineno, tok)
                else:
                    code.append(_parse_value(lineno, tok, symbols) & 0xFF)
        elif lower.startswith(".dw"):
            for tok in _split_ops(text[3:]):
                v = _parse_value(lineno, tok, symbols) & 0xFFFF
                code += bytes((v & 0xFF, v >> 8))
        elif lower.startswith(".ascii"):
            code += _parse_string(lineno, text[6:])
        else:
            mnem, rest = _split_mnemonic(text)
            code += _emit_instruction(lineno, mnem.upper(), _split_ops(rest), symbols)
        listing_lines.append((addr, bytes(code[start:]), text))

    if listing:
        addr_labels: dict[int, list[str]] = {}
        for lbl, addr in labels.items():
            addr_labels.setdefault(addr, []).append(lbl)
        for addr, emitted, src in listing_lines:
            for lbl in addr_labels.pop(addr, []):
                print(f"              {lbl}:")
            hexstr = " ".join(f"{b:02X}" for b in emitted[:4])
            if len(emitted) > 4:
                hexstr += " ..."
            print(f"  {addr:04X}  {hexstr:<16s}  {src}")

    return code, labels, equates


def assemble(source: str, base_addr: int = 0, listing: bool = False) -> bytearray:
    code, _, _ = _assemble(source, base_addr, listing)
    return code


def assemble_with_symbols(source: str, base_addr: int = 0
                          ) -> tuple[bytearray, dict[str, int]]:
    """Assemble and also return the label -> address table."""
    code, labels, _ = _assemble(source, base_addr)
    return code, labels


def symbol_map(labels: dict[str, int], equates: Optional[dict[str, int]] = None) -> str:
    """Render map-file text: labels as ``addr``, equates as ``const``.

    Labels sharing an address keep their source order, so the loader's
    first-wins rule picks the one declared first.
    """
    lines = [f"{name} = ${value & 0xFFFF:04X} ; addr"
             for name, value in sorted(labels.items(), key=lambda kv: kv[1])]
    for name, value in sorted((equates or {}).items()):
        lines.append(f"{name} = ${value & 0xFFFF:04X} ; const")
    return "\n".join(lines) + "\n"


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Tutor80 8080 assembler")
    parser.add_argument("source", help="assembly source file")
    parser.add_argument("output", help="binary output file (map goes to OUTPUT.map)")
    parser.add_argument("--listing", "-l", action="store_true",
                        help="print an address/hex/source listing")
    args = parser.parse_args(argv)

    with open(args.source, "r", encoding="utf-8") as f:
        source = f.read()
    try:
        code, labels, equates = _assemble(source, 0, listing=args.listing)
    except AsmError as e:
        print(f"Assembly error: {e}", file=sys.stderr)
        return 1
    with open(args.output, "wb") as f:
        f.write(code)
    with open(args.output + ".map", "w", encoding="utf-8") as f:
        f.write(symbol_map(labels, equates))
    print(f"Assembled {args.source} → {args.output} ({len(code)} bytes, "
          f"{len(labels)} labels)")
    return 0


if __name__ == "__main__":
    sys.exit(main())
