"""
Intel 8080 Emulator Core
========================
A cycle-counting emulator for the Intel 8080, used as the CPU of the
Tutor80 system.

Every instruction is decoded from raw bytes fetched through the address
space (so memory-mapped registers are visible to programs).  ``step()``
executes exactly one instruction and returns its T-state count; the
``call_performed`` / ``jump_performed`` / ``return_performed`` attributes
describe the control transfer the instruction just made, if any.

Undocumented opcodes behave like the silicon: 0x08/0x10/.../0x38 are NOPs,
0xCB is JMP, 0xD9 is RET and 0xDD/0xED/0xFD are CALL.
"""

from __future__ import annotations
from typing import Callable, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from devices import PortBus
    from memory import Memory

# ---------------------------------------------------------------------------
#  Constants
# ---------------------------------------------------------------------------

# Register indices as encoded in opcodes (6 = memory at HL)
REG_B = 0
REG_C = 1
REG_D = 2
REG_E = 3
REG_H = 4
REG_L = 5
REG_M = 6
REG_A = 7

REG_NAMES     = "BCDEHLMA"
RP_NAMES      = ("B", "D", "H", "SP")
RP_PUSH_NAMES = ("B", "D", "H", "PSW")
COND_NAMES    = ("NZ", "Z", "NC", "C", "PO", "PE", "P", "M")
ALU_NAMES     = ("ADD", "ADC", "SUB", "SBB", "ANA", "XRA", "ORA", "CMP")
ALU_IMM_NAMES = ("ADI", "ACI", "SUI", "SBI", "ANI", "XRI", "ORI", "CPI")
ROT_NAMES     = ("RLC", "RRC", "RAL", "RAR", "DAA", "CMA", "STC", "CMC")

# Flag bits:  S Z 0 AC 0 P 1 C
FLAG_C  = 0x01
FLAG_1  = 0x02  # always set
FLAG_P  = 0x04
FLAG_AC = 0x10
FLAG_Z  = 0x40
FLAG_S  = 0x80
FLAG_MASK = FLAG_S | FLAG_Z | FLAG_AC | FLAG_P | FLAG_C

# T-states per opcode.  Conditional CALL/RET list the not-taken count.
CYCLES = [
    4, 10,  7,  5,  5,  5,  7,  4,  4, 10,  7,  5,  5,  5,  7,  4,  # 0x00
    4, 10,  7,  5,  5,  5,  7,  4,  4, 10,  7,  5,  5,  5,  7,  4,  # 0x10
    4, 10, 16,  5,  5,  5,  7,  4,  4, 10, 16,  5,  5,  5,  7,  4,  # 0x20
    4, 10, 13,  5, 10, 10, 10,  4,  4, 10, 13,  5,  5,  5,  7,  4,  # 0x30
    5,  5,  5,  5,  5,  5,  7,  5,  5,  5,  5,  5,  5,  5,  7,  5,  # 0x40
    5,  5,  5,  5,  5,  5,  7,  5,  5,  5,  5,  5,  5,  5,  7,  5,  # 0x50
    5,  5,  5,  5,  5,  5,  7,  5,  5,  5,  5,  5,  5,  5,  7,  5,  # 0x60
    7,  7,  7,  7,  7,  7,  7,  7,  5,  5,  5,  5,  5,  5,  7,  5,  # 0x70
    4,  4,  4,  4,  4,  4,  7,  4,  4,  4,  4,  4,  4,  4,  7,  4,  # 0x80
    4,  4,  4,  4,  4,  4,  7,  4,  4,  4,  4,  4,  4,  4,  7,  4,  # 0x90
    4,  4,  4,  4,  4,  4,  7,  4,  4,  4,  4,  4,  4,  4,  7,  4,  # 0xA0
    4,  4,  4,  4,  4,  4,  7,  4,  4,  4,  4,  4,  4,  4,  7,  4,  # 0xB0
    5, 10, 10, 10, 11, 11,  7, 11,  5, 10, 10, 10, 11, 17,  7, 11,  # 0xC0
    5, 10, 10, 10, 11, 11,  7, 11,  5, 10, 10, 10, 11, 17,  7, 11,  # 0xD0
    5, 10, 10, 18, 11, 11,  7, 11,  5,  5, 10,  5, 11, 17,  7, 11,  # 0xE0
    5, 10, 10,  4, 11, 11,  7, 11,  5,  5, 10,  4, 11, 17,  7, 11,  # 0xF0
]

COND_TAKEN_CYCLES = 6   # extra T-states for a taken conditional CALL/RET


def _parity_even(value: int) -> bool:
    return bin(value & 0xFF).count("1") % 2 == 0


# ---------------------------------------------------------------------------
#  CPU
# ---------------------------------------------------------------------------

class I8080Error(Exception):
    """Base for emulator-generated errors."""
    pass


class HaltError(I8080Error):
    pass


class I8080:
    """Intel 8080 CPU attached to an address space and a port bus."""

    def __init__(self, memory: Memory, bus: Optional[PortBus] = None):
        self.mem = memory
        self.bus = bus

        # B C D E H L - A  (index 6 is M, never stored)
        self.regs: list[int] = [0] * 8
        self.flags: int = FLAG_1
        self.sp: int = 0
        self.pc: int = 0

        # State
        self.halted: bool = False
        self.inte: bool = False      # interrupt enable latch (EI/DI)
        self.cycle_count: int = 0
        self.instr_count: int = 0

        # Control transfer made by the last executed instruction
        self.call_performed: bool = False
        self.jump_performed: bool = False
        self.return_performed: bool = False

    def reset(self, pc: int = 0):
        self.regs = [0] * 8
        self.flags = FLAG_1
        self.sp = 0
        self.pc = pc & 0xFFFF
        self.halted = False
        self.inte = False
        self.cycle_count = 0
        self.instr_count = 0
        self.call_performed = False
        self.jump_performed = False
        self.return_performed = False

    # -- Register shortcuts --

    @property
    def a(self) -> int:
        return self.regs[REG_A]

    @a.setter
    def a(self, value: int):
        self.regs[REG_A] = value & 0xFF

    @property
    def bc(self) -> int:
        return (self.regs[REG_B] << 8) | self.regs[REG_C]

    @property
    def de(self) -> int:
        return (self.regs[REG_D] << 8) | self.regs[REG_E]

    @property
    def hl(self) -> int:
        return (self.regs[REG_H] << 8) | self.regs[REG_L]

    @hl.setter
    def hl(self, value: int):
        self.regs[REG_H] = (value >> 8) & 0xFF
        self.regs[REG_L] = value & 0xFF

    def get_reg(self, r: int) -> int:
        if r == REG_M:
            return self.mem.read8(self.hl)
        return self.regs[r]

    def set_reg(self, r: int, value: int):
        if r == REG_M:
            self.mem.write8(self.hl, value & 0xFF)
        else:
            self.regs[r] = value & 0xFF

    def get_rp(self, rp: int) -> int:
        """Register pair by opcode index: 0=BC 1=DE 2=HL 3=SP."""
        if rp == 3:
            return self.sp
        return (self.regs[rp * 2] << 8) | self.regs[rp * 2 + 1]

    def set_rp(self, rp: int, value: int):
        value &= 0xFFFF
        if rp == 3:
            self.sp = value
        else:
            self.regs[rp * 2] = value >> 8
            self.regs[rp * 2 + 1] = value & 0xFF

    # -- Memory / stack --

    def fetch8(self) -> int:
        value = self.mem.read8(self.pc)
        self.pc = (self.pc + 1) & 0xFFFF
        return value

    def fetch16(self) -> int:
        lo = self.fetch8()
        hi = self.fetch8()
        return (hi << 8) | lo

    def read16(self, addr: int) -> int:
        return self.mem.read8(addr & 0xFFFF) | (self.mem.read8((addr + 1) & 0xFFFF) << 8)

    def write16(self, addr: int, value: int):
        self.mem.write8(addr & 0xFFFF, value & 0xFF)
        self.mem.write8((addr + 1) & 0xFFFF, (value >> 8) & 0xFF)

    def push16(self, value: int):
        self.sp = (self.sp - 2) & 0xFFFF
        self.write16(self.sp, value)

    def pop16(self) -> int:
        value = self.read16(self.sp)
        self.sp = (self.sp + 2) & 0xFFFF
        return value

    # -- Flags --

    def _flag(self, flag: int) -> int:
        return 1 if self.flags & flag else 0

    def _set_flags(self, result: int, carry: bool, aux: bool):
        result &= 0xFF
        f = FLAG_1
        if result & 0x80:
            f |= FLAG_S
        if result == 0:
            f |= FLAG_Z
        if _parity_even(result):
            f |= FLAG_P
        if aux:
            f |= FLAG_AC
        if carry:
            f |= FLAG_C
        self.flags = f

    def _cond(self, cc: int) -> bool:
        flag = (FLAG_Z, FLAG_C, FLAG_P, FLAG_S)[cc >> 1]
        taken = bool(self.flags & flag)
        return taken if cc & 1 else not taken

    def _add(self, a: int, b: int, carry_in: int) -> int:
        result = a + b + carry_in
        aux = ((a & 0xF) + (b & 0xF) + carry_in) > 0xF
        self._set_flags(result, result > 0xFF, aux)
        return result & 0xFF

    def _sub(self, a: int, b: int, borrow_in: int) -> int:
        # Two's complement add; the 8080 carry flag holds the inverted carry.
        nb = ~b & 0xFF
        result = a + nb + (1 - borrow_in)
        aux = ((a & 0xF) + (nb & 0xF) + (1 - borrow_in)) > 0xF
        self._set_flags(result, result <= 0xFF, aux)
        return result & 0xFF

    # -- Control transfer --

    def _call(self, addr: int):
        self.push16(self.pc)
        self.pc = addr & 0xFFFF
        self.call_performed = True

    def _ret(self):
        self.pc = self.pop16()
        self.return_performed = True

    def _jump(self, addr: int):
        self.pc = addr & 0xFFFF
        self.jump_performed = True

    # =====================================================================
    #  Execution
    # =====================================================================

    def step(self) -> int:
        """Execute one instruction. Returns number of cycles consumed."""
        if self.halted:
            raise HaltError("CPU is halted")

        self.call_performed = False
        self.jump_performed = False
        self.return_performed = False

        op = self.fetch8()
        cycles = CYCLES[op]
        group = op >> 6

        if   group == 0: self._exec_misc(op)
        elif group == 1: self._exec_mov(op)
        elif group == 2: self._exec_alu((op >> 3) & 7, self.get_reg(op & 7))
        else:            cycles += self._exec_ctl(op)

        self.cycle_count += cycles
        self.instr_count += 1
        return cycles

    def run(self, max_steps: int = 1_000_000) -> int:
        """Run until HLT or max_steps. Returns total cycles."""
        total = 0
        for _ in range(max_steps):
            if self.halted:
                break
            total += self.step()
        return total

    # -- 00xxxxxx: loads, inc/dec, rotates --

    def _exec_misc(self, op: int):
        low = op & 0x07
        r = (op >> 3) & 0x07
        rp = (op >> 4) & 0x03

        if low == 0:
            return  # NOP (and undocumented aliases)

        if low == 1:
            if op & 0x08:  # DAD rp
                result = self.hl + self.get_rp(rp)
                self.flags = (self.flags & ~FLAG_C) | (FLAG_C if result > 0xFFFF else 0)
                self.hl = result & 0xFFFF
            else:          # LXI rp, d16
                self.set_rp(rp, self.fetch16())

        elif low == 2:
            if r == 0:   self.mem.write8(self.bc, self.a)            # STAX B
            elif r == 1: self.a = self.mem.read8(self.bc)            # LDAX B
            elif r == 2: self.mem.write8(self.de, self.a)            # STAX D
            elif r == 3: self.a = self.mem.read8(self.de)            # LDAX D
            elif r == 4: self.write16(self.fetch16(), self.hl)       # SHLD
            elif r == 5: self.hl = self.read16(self.fetch16())       # LHLD
            elif r == 6: self.mem.write8(self.fetch16(), self.a)     # STA
            else:        self.a = self.mem.read8(self.fetch16())     # LDA

        elif low == 3:
            delta = -1 if op & 0x08 else 1                            # DCX / INX
            self.set_rp(rp, self.get_rp(rp) + delta)

        elif low == 4:  # INR r
            result = (self.get_reg(r) + 1) & 0xFF
            carry = bool(self.flags & FLAG_C)
            self._set_flags(result, carry, (result & 0x0F) == 0)
            self.set_reg(r, result)

        elif low == 5:  # DCR r
            result = (self.get_reg(r) - 1) & 0xFF
            carry = bool(self.flags & FLAG_C)
            self._set_flags(result, carry, (result & 0x0F) != 0x0F)
            self.set_reg(r, result)

        elif low == 6:  # MVI r, d8
            self.set_reg(r, self.fetch8())

        else:
            self._exec_rot(r)

    def _exec_rot(self, r: int):
        a = self.a
        carry = self._flag(FLAG_C)
        if r == 0:    # RLC
            carry = a >> 7
            self.a = ((a << 1) | carry) & 0xFF
        elif r == 1:  # RRC
            carry = a & 1
            self.a = (a >> 1) | (carry << 7)
        elif r == 2:  # RAL
            self.a = ((a << 1) | carry) & 0xFF
            carry = a >> 7
        elif r == 3:  # RAR
            self.a = (a >> 1) | (carry << 7)
            carry = a & 1
        elif r == 4:  # DAA
            correction = 0
            lsb = a & 0x0F
            msb = a >> 4
            if self.flags & FLAG_AC or lsb > 9:
                correction |= 0x06
            if carry or msb > 9 or (msb >= 9 and lsb > 9):
                correction |= 0x60
                carry = 1
            self.a = self._add(a, correction, 0)
        elif r == 5:  # CMA
            self.a = ~a & 0xFF
            return
        elif r == 6:  # STC
            carry = 1
        else:         # CMC
            carry ^= 1
        self.flags = (self.flags & ~FLAG_C) | (FLAG_C if carry else 0)

    # -- 01xxxxxx: MOV / HLT --

    def _exec_mov(self, op: int):
        if op == 0x76:  # HLT
            self.halted = True
            return
        self.set_reg((op >> 3) & 0x07, self.get_reg(op & 0x07))

    # -- 10xxxxxx and immediate forms: ALU --

    def _exec_alu(self, sub: int, value: int):
        a = self.a
        if sub == 0:    # ADD
            self.a = self._add(a, value, 0)
        elif sub == 1:  # ADC
            self.a = self._add(a, value, self._flag(FLAG_C))
        elif sub == 2:  # SUB
            self.a = self._sub(a, value, 0)
        elif sub == 3:  # SBB
            self.a = self._sub(a, value, self._flag(FLAG_C))
        elif sub == 4:  # ANA
            self.a = a & value
            self._set_flags(self.a, False, bool((a | value) & 0x08))
        elif sub == 5:  # XRA
            self.a = a ^ value
            self._set_flags(self.a, False, False)
        elif sub == 6:  # ORA
            self.a = a | value
            self._set_flags(self.a, False, False)
        else:           # CMP
            self._sub(a, value, 0)

    # -- 11xxxxxx: control, stack, I/O --

    def _exec_ctl(self, op: int) -> int:
        """Returns extra cycles for taken conditional CALL/RET."""
        low = op & 0x07
        cc = (op >> 3) & 0x07
        rp = (op >> 4) & 0x03

        if low == 0:    # Rcc
            if self._cond(cc):
                self._ret()
                return COND_TAKEN_CYCLES

        elif low == 1:
            if not op & 0x08:           # POP rp
                value = self.pop16()
                if rp == 3:
                    self.a = value >> 8
                    self.flags = (value & FLAG_MASK) | FLAG_1
                else:
                    self.set_rp(rp, value)
            elif op in (0xC9, 0xD9):    # RET
                self._ret()
            elif op == 0xE9:            # PCHL
                self._jump(self.hl)
            else:                       # SPHL
                self.sp = self.hl

        elif low == 2:  # Jcc
            addr = self.fetch16()
            if self._cond(cc):
                self._jump(addr)

        elif low == 3:
            if op in (0xC3, 0xCB):      # JMP
                self._jump(self.fetch16())
            elif op == 0xD3:            # OUT d8
                port = self.fetch8()
                if self.bus is not None:
                    self.bus.write(port, self.a)
            elif op == 0xDB:            # IN d8
                port = self.fetch8()
                self.a = self.bus.read(port) if self.bus is not None else 0xFF
            elif op == 0xE3:            # XTHL
                value = self.read16(self.sp)
                self.write16(self.sp, self.hl)
                self.hl = value
            elif op == 0xEB:            # XCHG
                de = self.de
                self.set_rp(1, self.hl)
                self.hl = de
            elif op == 0xF3:            # DI
                self.inte = False
            else:                       # EI
                self.inte = True

        elif low == 4:  # Ccc
            addr = self.fetch16()
            if self._cond(cc):
                self._call(addr)
                return COND_TAKEN_CYCLES

        elif low == 5:
            if not op & 0x08:           # PUSH rp
                if rp == 3:
                    self.push16((self.a << 8) | (self.flags & FLAG_MASK) | FLAG_1)
                else:
                    self.push16(self.get_rp(rp))
            else:                       # CALL (and aliases)
                self._call(self.fetch16())

        elif low == 6:  # ALU d8
            self._exec_alu(cc, self.fetch8())

        else:           # RST n
            self._call(cc * 8)

        return 0

    # -- Debug / introspection --

    def registers(self) -> dict[str, int]:
        return {
            "A": self.regs[REG_A], "F": self.flags,
            "B": self.regs[REG_B], "C": self.regs[REG_C],
            "D": self.regs[REG_D], "E": self.regs[REG_E],
            "H": self.regs[REG_H], "L": self.regs[REG_L],
        }

    def str_flags(self) -> str:
        return "".join(
            name if self.flags & bit else "-"
            for name, bit in (("S", FLAG_S), ("Z", FLAG_Z), ("A", FLAG_AC),
                              ("P", FLAG_P), ("C", FLAG_C)))

    def dump_regs(self) -> str:
        lines = [
            f"  A  = {self.a:02x}    FLAGS = {self.str_flags()}",
            f"  BC = {self.bc:04x}  DE = {self.de:04x}  HL = {self.hl:04x}",
            f"  SP = {self.sp:04x}  PC = {self.pc:04x}",
        ]
        return "\n".join(lines)


# ---------------------------------------------------------------------------
#  Disassembler
# ---------------------------------------------------------------------------

def _decode_mnemonic(op: int) -> tuple[str, int]:
    """Format template and byte size for one opcode.

    ``{b}`` stands for an 8-bit immediate, ``{w}`` for a 16-bit one.
    """
    group = op >> 6
    r = (op >> 3) & 0x07
    s = op & 0x07
    rp = (op >> 4) & 0x03

    if group == 1:
        if op == 0x76:
            return "HLT", 1
        return f"MOV {REG_NAMES[r]},{REG_NAMES[s]}", 1

    if group == 2:
        return f"{ALU_NAMES[r]} {REG_NAMES[s]}", 1

    if group == 0:
        if s == 0:
            return "NOP", 1
        if s == 1:
            if op & 0x08:
                return f"DAD {RP_NAMES[rp]}", 1
            return f"LXI {RP_NAMES[rp]},{{w}}", 3
        if s == 2:
            return (("STAX B", 1), ("LDAX B", 1), ("STAX D", 1), ("LDAX D", 1),
                    ("SHLD {w}", 3), ("LHLD {w}", 3), ("STA {w}", 3),
                    ("LDA {w}", 3))[r]
        if s == 3:
            return f"{'DCX' if op & 0x08 else 'INX'} {RP_NAMES[rp]}", 1
        if s == 4:
            return f"INR {REG_NAMES[r]}", 1
        if s == 5:
            return f"DCR {REG_NAMES[r]}", 1
        if s == 6:
            return f"MVI {REG_NAMES[r]},{{b}}", 2
        return ROT_NAMES[r], 1

    # group 3
    if s == 0:
        return f"R{COND_NAMES[r]}", 1
    if s == 1:
        if not op & 0x08:
            return f"POP {RP_PUSH_NAMES[rp]}", 1
        return {0xC9: "RET", 0xD9: "RET", 0xE9: "PCHL", 0xF9: "SPHL"}[op], 1
    if s == 2:
        return f"J{COND_NAMES[r]} {{w}}", 3
    if s == 3:
        return {
            0xC3: ("JMP {w}", 3), 0xCB: ("JMP {w}", 3),
            0xD3: ("OUT {b}", 2), 0xDB: ("IN {b}", 2),
            0xE3: ("XTHL", 1),    0xEB: ("XCHG", 1),
            0xF3: ("DI", 1),      0xFB: ("EI", 1),
        }[op]
    if s == 4:
        return f"C{COND_NAMES[r]} {{w}}", 3
    if s == 5:
        if not op & 0x08:
            return f"PUSH {RP_PUSH_NAMES[rp]}", 1
        return "CALL {w}", 3
    if s == 6:
        return f"{ALU_IMM_NAMES[r]} {{b}}", 2
    return f"RST {r}", 1


DISASM_TABLE = [_decode_mnemonic(op) for op in range(256)]
INSTRUCTION_SIZES = [size for _, size in DISASM_TABLE]


def disasm_one(read8: Callable[[int], int], addr: int) -> tuple[str, int]:
    """Disassemble one instruction at `addr`. Returns (text, byte_count)."""
    template, size = DISASM_TABLE[read8(addr & 0xFFFF)]
    if size == 1:
        return template, 1
    lo = read8((addr + 1) & 0xFFFF)
    if size == 2:
        return template.format(b=f"${lo:02X}"), 2
    hi = read8((addr + 2) & 0xFFFF)
    return template.format(w=f"${(hi << 8) | lo:04X}"), 3
