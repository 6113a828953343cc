"""
Call-graph profiler tests.

Synthetic ExecutionRecord streams pin down call/return detection and
cycle attribution; assembled programs check the same thing end to end.
"""

import io
import unittest
from contextlib import redirect_stdout

from asm import assemble_with_symbols
from profiler import (
    TICKS_PER_SECOND, TRACE_WINDOW, Frame, Profiler, ProfileReport,
    ticks_to_seconds,
)
from system import ExecutionRecord, TutorSystem


def rec(address, disasm, pc, cycles, size=1, call=False, jump=False, ret=False):
    return ExecutionRecord(
        pc=pc, sp=0xF000, cycles=cycles, halted=False, address=address,
        disassembly=disasm, size=size, call_performed=call,
        jump_performed=jump, return_performed=ret,
    )


def call(prof, address, target, cycles, size=3):
    """Feed a CALL at ``address`` to ``target``."""
    prof.observe(rec(address, f"CALL ${target:04X}", target, cycles, size=size,
                     call=True), address + size)


def ret(prof, address, to, cycles, stack_top=0):
    prof.observe(rec(address, "RET", to, cycles, ret=True), stack_top)


def step(prof, address, disasm, cycles, stack_top=0):
    prof.observe(rec(address, disasm, address + 1, cycles), stack_top)


SYMS = {0x100: "F", 0x200: "G", 0x300: "H"}


class TestDetection(unittest.TestCase):
    def test_single_call(self):
        prof = Profiler(SYMS)
        call(prof, 0x10, 0x100, cycles=100)
        step(prof, 0x100, "NOP", cycles=150)
        ret(prof, 0x101, 0x13, cycles=160)
        self.assertEqual(prof.calls, {"F": 1})
        self.assertEqual(prof.paths, {"F": 60})
        self.assertEqual(prof.stack, [])

    def test_nested_calls(self):
        prof = Profiler(SYMS)
        call(prof, 0x10, 0x100, cycles=17)          # F entered at 17
        call(prof, 0x100, 0x200, cycles=34)         # G entered at 34
        step(prof, 0x200, "NOP", cycles=38)
        ret(prof, 0x201, 0x103, cycles=48)          # G total 14
        step(prof, 0x103, "NOP", cycles=52)
        ret(prof, 0x104, 0x13, cycles=62)           # F total 45
        self.assertEqual(prof.paths, {"F;G": 14, "F": 45 - 14})
        self.assertEqual(list(prof.paths), ["F;G", "F"])

    def test_frame_contents(self):
        prof = Profiler(SYMS)
        call(prof, 0x10, 0x100, cycles=17)
        self.assertEqual(prof.stack, [Frame("F", 17, 0x13, 0)])

    def test_jump_that_leaves_return_address_is_call(self):
        prof = Profiler(SYMS)
        # PUSH of the continuation address then JMP: stack top == next instr
        prof.observe(rec(0x10, "JMP $0100", 0x100, 10, size=3, jump=True), 0x13)
        self.assertEqual(prof.calls, {"F": 1})
        self.assertEqual(prof.stack[-1].return_address, 0x13)

    def test_plain_jump_is_not_call(self):
        prof = Profiler(SYMS)
        prof.observe(rec(0x10, "JMP $0100", 0x100, 10, size=3, jump=True), 0x99)
        self.assertEqual(prof.calls, {})
        self.assertEqual(prof.stack, [])

    def test_jump_to_return_address_is_return(self):
        prof = Profiler(SYMS)
        call(prof, 0x10, 0x100, cycles=17)
        prof.observe(rec(0x105, "PCHL", 0x13, 40, jump=True), 0)
        self.assertEqual(prof.paths, {"F": 23})
        self.assertEqual(prof.stack, [])

    def test_jump_elsewhere_keeps_frame(self):
        prof = Profiler(SYMS)
        call(prof, 0x10, 0x100, cycles=17)
        prof.observe(rec(0x105, "JMP $0100", 0x100, 27, size=3, jump=True), 0x13)
        self.assertEqual(len(prof.stack), 1)
        self.assertEqual(prof.paths, {})

    def test_push_ret_trampoline_not_a_return(self):
        prof = Profiler(SYMS)
        call(prof, 0x10, 0x100, cycles=17)
        step(prof, 0x100, "PUSH H", cycles=28, stack_top=0x180)
        ret(prof, 0x101, 0x180, cycles=38, stack_top=0x13)
        self.assertTrue(prof.is_push_ret_trampoline())
        self.assertEqual(len(prof.stack), 1)
        self.assertEqual(prof.paths, {})
        # the real return afterwards closes the frame
        ret(prof, 0x180, 0x13, cycles=48)
        self.assertEqual(prof.paths, {"F": 31})

    def test_trampoline_needs_both_entries(self):
        prof = Profiler(SYMS)
        self.assertFalse(prof.is_push_ret_trampoline())
        prof.trace.append("RET")
        self.assertFalse(prof.is_push_ret_trampoline())
        prof.trace.clear()
        prof.trace.extend(["POP H", "RET"])
        self.assertFalse(prof.is_push_ret_trampoline())
        prof.trace.clear()
        prof.trace.extend(["PUSH PSW", "RET"])
        self.assertTrue(prof.is_push_ret_trampoline())
        prof.trace.clear()
        prof.trace.extend(["PUSH B", "RNZ"])
        self.assertFalse(prof.is_push_ret_trampoline())

    def test_trace_window(self):
        prof = Profiler(SYMS)
        for i in range(TRACE_WINDOW + 3):
            step(prof, i, f"NOP{i}", cycles=4 * (i + 1))
        self.assertEqual(len(prof.trace), TRACE_WINDOW)
        self.assertEqual(prof.trace[0], "NOP3")

    def test_return_without_frame_ignored(self):
        prof = Profiler(SYMS)
        ret(prof, 0x10, 0x20, cycles=10)
        self.assertEqual(prof.paths, {})
        self.assertEqual(prof.stack, [])

    def test_unknown_symbol(self):
        prof = Profiler(SYMS)
        call(prof, 0x10, 0x555, cycles=17)
        ret(prof, 0x555, 0x13, cycles=27)
        self.assertEqual(prof.calls, {"unknown": 1})
        self.assertEqual(prof.paths, {"unknown": 10})

    def test_recursion_paths(self):
        prof = Profiler(SYMS)
        call(prof, 0x10, 0x100, cycles=0)
        call(prof, 0x100, 0x100, cycles=10)
        ret(prof, 0x101, 0x103, cycles=20)
        ret(prof, 0x104, 0x13, cycles=40)
        self.assertEqual(prof.calls, {"F": 2})
        self.assertEqual(prof.paths, {"F;F": 10, "F": 30})


class TestReport(unittest.TestCase):
    def test_calls_sorted_descending_stable(self):
        prof = Profiler(SYMS)
        cycles = 0
        for target in (0x100, 0x300, 0x200, 0x200):
            cycles += 17
            call(prof, 0x10, target, cycles)
            cycles += 10
            ret(prof, target, 0x13, cycles)
        report = prof.report(cycles)
        self.assertEqual(report.calls, [("G", 2), ("F", 1), ("H", 1)])
        self.assertEqual([p for p, _ in report.paths], ["F", "H", "G"])
        self.assertEqual(dict(report.paths)["G"], 20)

    def test_seconds_rounding(self):
        self.assertEqual(ticks_to_seconds(0), 0)
        self.assertEqual(ticks_to_seconds(TICKS_PER_SECOND // 2 - 1), 0)
        self.assertEqual(ticks_to_seconds(TICKS_PER_SECOND // 2), 1)
        self.assertEqual(ticks_to_seconds(TICKS_PER_SECOND), 1)
        self.assertEqual(ticks_to_seconds(7 * TICKS_PER_SECOND + 1), 7)

    def test_large_tick_counts(self):
        ticks = (1 << 41) + 5
        report = Profiler().report(ticks)
        self.assertEqual(report.ticks, ticks)
        self.assertEqual(report.seconds, ticks_to_seconds(ticks))

    def test_format(self):
        report = ProfileReport(ticks=51, seconds=0,
                               calls=[("main", 2), ("f", 1)],
                               paths=[("main;f", 14), ("main", 30)])
        self.assertEqual(report.format(), "\n".join([
            "",
            "Ticks = 51, seconds = 0",
            "Calls:",
            "  main 2",
            "  f 1",
            "",
            "Stacktraces:",
            "main;f 14",
            "main 30",
        ]))


# ---------------------------------------------------------------------------
#  End to end on assembled programs
# ---------------------------------------------------------------------------

NESTED = """
        LXI SP,$F000
        CALL outer
        HLT
outer:  CALL inner
        NOP
        RET
inner:  NOP
        RET
"""


def _profile(source):
    code, labels = assemble_with_symbols(source)
    system = TutorSystem()
    system.load_program(code)
    symbols = {addr: name for name, addr in labels.items()}
    return Profiler(symbols).run(system)


class TestProgramProfile(unittest.TestCase):
    def test_single_function(self):
        report = _profile("""
                LXI SP,$F000
                CALL func
                HLT
        func:   MVI A,5
                RET
        """)
        self.assertEqual(report.ticks, 10 + 17 + 7 + 10 + 7)
        self.assertEqual(report.calls, [("func", 1)])
        self.assertEqual(report.paths, [("func", 17)])

    def test_nested_functions(self):
        report = _profile(NESTED)
        self.assertEqual(report.ticks, 79)
        self.assertEqual(report.calls, [("outer", 1), ("inner", 1)])
        self.assertEqual(report.paths, [("outer;inner", 14), ("outer", 31)])

    def test_push_jmp_call_and_pchl_return(self):
        report = _profile("""
                LXI SP,$F000
                LXI H,back
                PUSH H
                JMP func
        back:   HLT
        func:   NOP
                POP H
                PCHL
        """)
        self.assertEqual(report.calls, [("func", 1)])
        # NOP 4 + POP 10 + PCHL 5
        self.assertEqual(report.paths, [("func", 19)])

    def test_trampoline_dispatch(self):
        report = _profile("""
                LXI SP,$F000
                CALL disp
                HLT
        disp:   LXI H,target
                PUSH H
                RET
        target: RET
        """)
        self.assertEqual(report.calls, [("disp", 1)])
        # LXI 10 + PUSH 11 + RET 10 + RET 10
        self.assertEqual(report.paths, [("disp", 41)])

    def test_frames_open_at_halt_are_dropped(self):
        report = _profile("""
                LXI SP,$F000
                CALL stuck
        stuck:  HLT
        """)
        self.assertEqual(report.calls, [("stuck", 1)])
        self.assertEqual(report.paths, [])


def test_profile_with_sidecar(assembled):
    from symbols import load_symbols
    path, system = assembled(NESTED)
    report = Profiler(load_symbols(path)).run(system)
    assert report.paths == [("outer;inner", 14), ("outer", 31)]
    buf = io.StringIO()
    with redirect_stdout(buf):
        print(report.format())
    assert "Ticks = 79, seconds = 0" in buf.getvalue()
    assert "  outer 1" in buf.getvalue()
