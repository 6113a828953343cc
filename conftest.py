"""
Pytest configuration for the Tutor80 test suite.

    python -m pytest              # everything
    python -m pytest -k Profiler  # one area

Set TUTOR80_LOG=DEBUG to see diagnostics from the emulator modules.
"""

import os

import pytest

from asm import _assemble, symbol_map
from system import TutorSystem


@pytest.fixture
def assembled(tmp_path):
    """Assemble source into ``tmp_path``; returns a builder.

    ``build(source, name="prog.bin", with_map=True)`` writes the binary and
    (optionally) its ``.map`` sidecar, and returns ``(path, system)`` with
    the program already loaded into a fresh TutorSystem.
    """
    def build(source: str, name: str = "prog.bin", with_map: bool = True,
              prefix_output: bool = False):
        code, labels, equates = _assemble(source)
        path = os.path.join(str(tmp_path), name)
        with open(path, "wb") as f:
            f.write(code)
        if with_map:
            with open(path + ".map", "w", encoding="utf-8") as f:
                f.write(symbol_map(labels, equates))
        system = TutorSystem(prefix_output=prefix_output)
        system.load_program(code)
        return path, system

    return build
