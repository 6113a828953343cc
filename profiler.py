"""
Tutor80 Call-Graph Profiler
===========================
Rebuilds a logical call stack from the instruction stream and attributes
cycles to call paths.

The CPU only reports coarse control-flow facts per instruction (call /
jump / return performed), and compiled code does not always use CALL and
RET for calls and returns.  Detection therefore works on patterns:

  call    CALL/RST performed, or a jump that left the address of the next
          instruction on top of the stack (a call made with PUSH + JMP)
  return  RET performed, or a jump landing on the return address recorded
          by the innermost open frame

A ``PUSH x`` immediately followed by ``RET`` is a computed jump, not a
function return; such a step never closes a frame.

For every completed call the profiler adds the function's *self* cycles
(total cycles minus the cycles of the calls it made) to its call path,
the ``;``-joined names of all open frames from outermost to innermost.
"""

from __future__ import annotations
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Mapping, Union

from symbols import SymbolTable

if TYPE_CHECKING:
    from system import ExecutionRecord, TutorSystem

logger = logging.getLogger(__name__)

TICKS_PER_SECOND = 3_125_000
TRACE_WINDOW = 5
PATH_SEPARATOR = ";"


@dataclass
class Frame:
    """One open call on the reconstructed stack."""

    name: str
    entrance_cycle: int
    return_address: int
    nested_cycles: int = 0


@dataclass
class ProfileReport:
    ticks: int
    seconds: int
    calls: list[tuple[str, int]] = field(default_factory=list)
    paths: list[tuple[str, int]] = field(default_factory=list)

    def format(self) -> str:
        lines = [
            "",
            f"Ticks = {self.ticks}, seconds = {self.seconds}",
            "Calls:",
        ]
        lines += [f"  {name} {count}" for name, count in self.calls]
        lines += ["", "Stacktraces:"]
        lines += [f"{path} {cycles}" for path, cycles in self.paths]
        return "\n".join(lines)


def ticks_to_seconds(ticks: int) -> int:
    """Whole seconds at the nominal clock rate, rounded half up."""
    return (ticks + TICKS_PER_SECOND // 2) // TICKS_PER_SECOND


class Profiler:
    """Call-graph profiler for one run."""

    def __init__(self, symbols: Union[SymbolTable, Mapping[int, str], None] = None):
        if symbols is None:
            symbols = SymbolTable()
        elif not isinstance(symbols, SymbolTable):
            symbols = SymbolTable(dict(symbols))
        self.symbols = symbols

        self.stack: list[Frame] = []
        self.calls: dict[str, int] = {}
        self.paths: dict[str, int] = {}
        self.trace: deque[str] = deque(maxlen=TRACE_WINDOW)

    # -- Detection --

    def is_call(self, record: ExecutionRecord, stack_top: int) -> bool:
        if record.call_performed:
            return True
        return record.jump_performed and stack_top == record.next_address

    def is_return(self, record: ExecutionRecord) -> bool:
        if record.return_performed:
            return True
        return (record.jump_performed and bool(self.stack)
                and self.stack[-1].return_address == record.pc)

    def is_push_ret_trampoline(self) -> bool:
        """Last two instructions were ``PUSH ...`` then ``RET``."""
        if len(self.trace) < 2:
            return False
        return self.trace[-1] == "RET" and self.trace[-2].startswith("PUSH")

    # -- Accounting --

    def observe(self, record: ExecutionRecord, stack_top: int):
        """Account for one executed instruction.

        ``stack_top`` is the word on top of the CPU stack after the step.
        """
        self.trace.append(record.disassembly)

        if self.is_call(record, stack_top):
            self._enter(record, stack_top)
        elif self.is_return(record):
            if self.is_push_ret_trampoline():
                return
            self._leave(record)

    def _enter(self, record: ExecutionRecord, return_address: int):
        name = self.symbols.resolve(record.pc)
        self.calls[name] = self.calls.get(name, 0) + 1
        self.stack.append(Frame(name, record.cycles, return_address))

    def _leave(self, record: ExecutionRecord):
        if not self.stack:
            logger.debug("return at %#06x with no open frame", record.address)
            return
        path = PATH_SEPARATOR.join(frame.name for frame in self.stack)
        frame = self.stack.pop()
        total = record.cycles - frame.entrance_cycle
        self.paths[path] = self.paths.get(path, 0) + (total - frame.nested_cycles)
        if self.stack:
            self.stack[-1].nested_cycles += total

    # -- Driving --

    def run(self, system: TutorSystem) -> ProfileReport:
        """Step ``system`` until it halts and return the profile."""
        while not system.halted:
            record = system.step()
            self.observe(record, system.stack_word())
        if self.stack:
            logger.debug("%d frame(s) still open at halt: %s", len(self.stack),
                         PATH_SEPARATOR.join(f.name for f in self.stack))
        return self.report(system.ticks)

    def report(self, ticks: int) -> ProfileReport:
        calls = sorted(self.calls.items(), key=lambda item: -item[1])
        return ProfileReport(
            ticks=ticks,
            seconds=ticks_to_seconds(ticks),
            calls=calls,
            paths=list(self.paths.items()),
        )
