"""
Tutor80 Address Space
=====================
64 KiB byte-addressable store for the 8080 system emulator.

Cells start out unset.  An unset cell reads as 0 but does not count toward
``bytes_used``; the first write to a cell counts it, later rewrites do not.

Memory map overlay (read side only):

  0xF880 .. 0xF884  : live 40-bit cycle counter, least significant byte
                      at the lowest address

Writes to the overlay addresses are stored like any other write, but
``read8`` never returns them.
"""

from __future__ import annotations
from typing import Callable, Optional

# ---------------------------------------------------------------------------
#  Memory map constants
# ---------------------------------------------------------------------------

MEM_SIZE = 0x10000

CLOCK_MMIO_BASE = 0xF880
CLOCK_MMIO_SIZE = 5          # 40 bits
CLOCK_MMIO_END  = CLOCK_MMIO_BASE + CLOCK_MMIO_SIZE  # exclusive


class AddressError(ValueError):
    """Address outside the 16-bit address space."""

    def __init__(self, addr: int):
        self.addr = addr
        super().__init__(f"Address out of range: {addr!r}")


class Memory:
    """Address space with a memory-mapped cycle counter."""

    def __init__(self, clock: Optional[Callable[[], int]] = None):
        self._cells: list[Optional[int]] = [None] * MEM_SIZE
        self._bytes_used = 0
        self._clock = clock

    def connect_clock(self, clock: Callable[[], int]):
        """Attach the live cycle counter used by the MMIO overlay."""
        self._clock = clock

    @property
    def bytes_used(self) -> int:
        return self._bytes_used

    @property
    def total(self) -> int:
        return MEM_SIZE

    def reset(self):
        self._cells = [None] * MEM_SIZE
        self._bytes_used = 0

    def _check_addr(self, addr: int):
        if not isinstance(addr, int) or not 0 <= addr < MEM_SIZE:
            raise AddressError(addr)

    # -- CPU-visible access --

    def write8(self, addr: int, value: int):
        self._check_addr(addr)
        if self._cells[addr] is None:
            self._bytes_used += 1
        self._cells[addr] = value & 0xFF

    def read8(self, addr: int) -> int:
        self._check_addr(addr)
        if CLOCK_MMIO_BASE <= addr < CLOCK_MMIO_END:
            ticks = self._clock() if self._clock else 0
            return (ticks >> (8 * (addr - CLOCK_MMIO_BASE))) & 0xFF
        value = self._cells[addr]
        return 0 if value is None else value

    def read16(self, addr: int) -> int:
        """Little-endian word; the high byte wraps around at 0xFFFF."""
        return self.read8(addr) | (self.read8((addr + 1) & 0xFFFF) << 8)

    # -- Raw access (no MMIO overlay) --

    def peek8(self, addr: int) -> int:
        self._check_addr(addr)
        value = self._cells[addr]
        return 0 if value is None else value

    def peek16(self, addr: int) -> int:
        return self.peek8(addr) | (self.peek8((addr + 1) & 0xFFFF) << 8)

    def is_set(self, addr: int) -> bool:
        self._check_addr(addr)
        return self._cells[addr] is not None

    def load(self, addr: int, data: bytes | bytearray):
        """Write raw bytes starting at ``addr``."""
        for i, b in enumerate(data):
            self.write8(addr + i, b)
