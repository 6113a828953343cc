#!/usr/bin/env python3
"""
Tutor80 Monitor / CLI
=====================
Command-line front end for the Tutor80 8080 system.

Modes:
  - run (default)  execute until HLT, then print ticks and seconds
  - --profile      call-graph profile using PROGRAM.map for names
  - --debug        interactive debugger (breakpoints, memory/register
                   inspection, single-stepping, run-to-breakpoint)

Usage:
  python cli.py PROGRAM [--profile | --debug]
"""

from __future__ import annotations
import argparse
import cmd
import logging
import os
import sys
import readline  # noqa: F401  (line editing at the debugger prompt)
from typing import Optional

from i8080 import HaltError
from system import ExecutionRecord, TutorSystem
from symbols import SymbolMapMissingError, load_symbols
from profiler import Profiler, ticks_to_seconds

logger = logging.getLogger(__name__)

LOG_ENV_VAR = "TUTOR80_LOG"


class CommandError(ValueError):
    """Bad or missing debugger command argument."""


def _parse_hex(arg: Optional[str], what: str = "address") -> int:
    if arg is None:
        raise CommandError(f"missing {what}")
    try:
        value = int(arg, 16)
    except ValueError:
        raise CommandError(f"invalid {what}: {arg!r}") from None
    if not 0 <= value <= 0xFFFF:
        raise CommandError(f"{what} out of range: {arg}")
    return value


# ---------------------------------------------------------------------------
#  Debugger
# ---------------------------------------------------------------------------

class DebuggerCLI(cmd.Cmd):
    """Interactive debugger for a loaded TutorSystem."""

    prompt = "> "

    def __init__(self, system: TutorSystem, stdin=None, stdout=None):
        super().__init__(stdin=stdin, stdout=stdout)
        if stdin is not None:
            self.use_rawinput = False
        self.sys = system
        self.breakpoints: set[int] = set()

    def _args(self, arg: str, count: int) -> list[Optional[str]]:
        parts = arg.split()
        return parts + [None] * (count - len(parts))

    def _print_step(self, record: ExecutionRecord):
        print(f"  <{record.address:x}> {record.disassembly}")

    def onecmd(self, line):
        try:
            return super().onecmd(line)
        except CommandError as e:
            print(f"  error: {e}")
            return False

    # -- Breakpoints --

    def do_bp(self, arg):
        """Set breakpoint: bp <addr>"""
        self.breakpoints.add(_parse_hex(self._args(arg, 1)[0]))

    # -- Inspection --

    def do_mrb(self, arg):
        """Read memory byte: mrb <addr>"""
        addr = _parse_hex(self._args(arg, 1)[0])
        value = self.sys.memory.peek8(addr)
        print(f"  memory byte at address {addr:x} = {value:x}")

    def do_mrw(self, arg):
        """Read little-endian memory word: mrw <addr>"""
        addr = _parse_hex(self._args(arg, 1)[0])
        value = self.sys.memory.peek16(addr)
        print(f"  memory word at address {addr:x} = {value:x}")

    def do_mr(self, arg):
        """Read memory range: mr <addr> <len>"""
        addr_s, len_s = self._args(arg, 2)[:2]
        addr = _parse_hex(addr_s)
        length = _parse_hex(len_s, "length")
        mem = self.sys.memory
        values = " ".join(f"{mem.peek8((addr + i) & 0xFFFF):x}" for i in range(length))
        print(f"  memory at address {addr:x} = {values}")

    def do_regs(self, arg):
        """Show SP, H, L, A, D, B."""
        cpu = self.sys.cpu
        r = cpu.registers()
        print(f"    SP = {cpu.sp:x} H = {r['H']:x} L = {r['L']:x}")
        print(f"    A = {r['A']:x} D = {r['D']:x} B = {r['B']:x}")

    # -- Execution --

    def do_n(self, arg):
        """Execute one instruction."""
        if self.sys.halted:
            print("  CPU is halted.")
            return
        self._print_step(self.sys.step())

    def do_run(self, arg):
        """Run until HLT or until the next pc is a breakpoint."""
        if self.sys.halted:
            print("  CPU is halted.")
            return
        while not self.sys.halted:
            try:
                record = self.sys.step()
            except HaltError:
                break
            if record.pc in self.breakpoints:
                self._print_step(record)
                print(f"  breakpoint hit at {record.pc:x}")
                break

    def do_EOF(self, arg):
        print()
        return True

    def do_help(self, arg):
        """Not a debugger command; ignored like any unknown token."""
        pass

    def default(self, line):
        pass

    def emptyline(self):
        pass


# ---------------------------------------------------------------------------
#  Modes
# ---------------------------------------------------------------------------

def run_program(system: TutorSystem) -> int:
    ticks = system.run()
    print(f"Ticks = {ticks}, seconds = {ticks_to_seconds(ticks)}")
    return ticks


def profile_program(path: str, system: TutorSystem):
    """Profile ``system`` (already loaded from ``path``) and print the report."""
    symbols = load_symbols(path)
    report = Profiler(symbols).run(system)
    print(report.format())
    return report


def debug_program(system: TutorSystem):
    DebuggerCLI(system).cmdloop()


def _configure_logging():
    level = os.environ.get(LOG_ENV_VAR, "WARNING").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.WARNING),
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="tutor80",
        description="Tutor80 8080 system: run, profile or debug a program",
    )
    parser.add_argument("program", help="raw 8080 binary, loaded at address 0")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--profile", action="store_true",
                      help="call-graph profile (needs PROGRAM.map)")
    mode.add_argument("--debug", action="store_true",
                      help="interactive debugger")
    args = parser.parse_args(argv)

    _configure_logging()

    system = TutorSystem(prefix_output=args.debug)
    path = os.path.abspath(args.program)
    try:
        system.load_program_file(path)
    except OSError as e:
        print(f"Error: cannot read program '{args.program}': {e.strerror or e}",
              file=sys.stderr)
        return 1
    logger.info("loaded %d bytes from %s", system.memory.bytes_used, path)

    if args.profile:
        try:
            profile_program(path, system)
        except SymbolMapMissingError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
    elif args.debug:
        debug_program(system)
    else:
        run_program(system)
    return 0


if __name__ == "__main__":
    sys.exit(main())
