"""
Tutor80 System Emulator
=======================
Wires together:
  - the Intel 8080 core (i8080.py)
  - the 64 KiB address space with its cycle-counter MMIO (memory.py)
  - the port bus and the console on port 1 (devices.py)

``TutorSystem.step()`` executes one instruction and returns an
``ExecutionRecord`` describing it; the profiler and the debugger both
consume that stream.
"""

from __future__ import annotations
from dataclasses import dataclass, field

from i8080 import I8080, HaltError, disasm_one
from memory import Memory
from devices import CONSOLE_PORT, ConsoleDevice, PortBus

# Programs are loaded and started at the reset vector.
LOAD_ADDRESS = 0x0000


@dataclass(frozen=True)
class ExecutionRecord:
    """Result of one CPU step.  ``pc``/``sp``/``cycles`` are post-step."""

    pc: int
    sp: int
    cycles: int
    halted: bool
    address: int
    disassembly: str
    size: int
    call_performed: bool = False
    jump_performed: bool = False
    return_performed: bool = False
    registers: dict[str, int] = field(default_factory=dict)

    @property
    def next_address(self) -> int:
        """Address of the instruction following this one in memory."""
        return (self.address + self.size) & 0xFFFF


class TutorSystem:
    """8080 machine with a console on port 1."""

    def __init__(self, prefix_output: bool = False):
        self.memory = Memory()
        self.bus = PortBus()
        self.cpu = I8080(self.memory, self.bus)
        self.memory.connect_clock(lambda: self.cpu.cycle_count)

        self.console = ConsoleDevice(prefix_output=prefix_output,
                                     clock=lambda: self.cpu.cycle_count)
        self.bus.connect_write_port(CONSOLE_PORT, self.console)

    # -----------------------------------------------------------------
    #  Loading
    # -----------------------------------------------------------------

    def load_program(self, data: bytes | bytearray, addr: int = LOAD_ADDRESS):
        """Load raw bytes into memory and point the CPU at them."""
        self.memory.load(addr, data)
        self.cpu.pc = addr

    def load_program_file(self, path: str, addr: int = LOAD_ADDRESS):
        with open(path, "rb") as f:
            data = f.read()
        self.load_program(data, addr)

    def reset(self):
        """Clear memory and CPU state."""
        self.memory.reset()
        self.cpu.reset()

    # -----------------------------------------------------------------
    #  Execution
    # -----------------------------------------------------------------

    @property
    def halted(self) -> bool:
        return self.cpu.halted

    @property
    def ticks(self) -> int:
        return self.cpu.cycle_count

    def step(self) -> ExecutionRecord:
        """Execute one instruction and describe it."""
        cpu = self.cpu
        if cpu.halted:
            raise HaltError("CPU is halted")
        address = cpu.pc
        text, size = disasm_one(self.memory.peek8, address)
        cpu.step()
        return ExecutionRecord(
            pc=cpu.pc,
            sp=cpu.sp,
            cycles=cpu.cycle_count,
            halted=cpu.halted,
            address=address,
            disassembly=text,
            size=size,
            call_performed=cpu.call_performed,
            jump_performed=cpu.jump_performed,
            return_performed=cpu.return_performed,
            registers=cpu.registers(),
        )

    def run(self) -> int:
        """Run until HLT. Returns the final tick count."""
        while not self.cpu.halted:
            self.cpu.step()
        return self.cpu.cycle_count

    def stack_word(self) -> int:
        """16-bit little-endian word at the top of the CPU stack."""
        return self.memory.peek16(self.cpu.sp)

    def dump_regs(self) -> str:
        return self.cpu.dump_regs()
