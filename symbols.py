"""
Symbol map loader.

A program ``foo.bin`` may ship with a sidecar ``foo.bin.map`` written by
the assembler/linker.  Lines look like::

    main = $0100 ; addr
    BUFSZ = $0040 ; const

Only ``addr`` entries name code locations.  Lines that do not match the
pattern are skipped (map files carry comments and section headers), and
when an address is named twice the first name is kept.
"""

from __future__ import annotations
import logging
import re
from typing import Iterator, Optional

logger = logging.getLogger(__name__)

UNKNOWN_SYMBOL = "unknown"
MAP_SUFFIX = ".map"

SYMBOL_LINE_RE = re.compile(r"([\w_]+)\s*=\s*\$([0-9A-F]+)\s*;\s*(\w+)")


class SymbolMapMissingError(FileNotFoundError):
    """The ``<program>.map`` sidecar does not exist."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Symbol map not found: {path}")


class SymbolTable:
    """Read-only address -> name mapping."""

    def __init__(self, entries: Optional[dict[int, str]] = None):
        self._by_addr: dict[int, str] = dict(entries or {})

    def __len__(self) -> int:
        return len(self._by_addr)

    def __contains__(self, addr: object) -> bool:
        return addr in self._by_addr

    def __getitem__(self, addr: int) -> str:
        return self._by_addr[addr]

    def __iter__(self) -> Iterator[int]:
        return iter(self._by_addr)

    def get(self, addr: int, default: Optional[str] = None) -> Optional[str]:
        return self._by_addr.get(addr, default)

    def items(self):
        return self._by_addr.items()

    def resolve(self, addr: int) -> str:
        """Name for ``addr``, or ``"unknown"``."""
        return self._by_addr.get(addr, UNKNOWN_SYMBOL)


def symbol_map_path(program_path: str) -> str:
    return program_path + MAP_SUFFIX


def parse_symbol_map(text: str) -> SymbolTable:
    entries: dict[int, str] = {}
    for line in text.split("\n"):
        m = SYMBOL_LINE_RE.search(line)
        if not m:
            continue
        name, value, kind = m.groups()
        if kind != "addr":
            continue
        entries.setdefault(int(value, 16), name)
    return SymbolTable(entries)


def load_symbols(program_path: str) -> SymbolTable:
    """Load the sidecar map of ``program_path``."""
    path = symbol_map_path(program_path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            text = f.read()
    except FileNotFoundError:
        raise SymbolMapMissingError(path) from None
    table = parse_symbol_map(text)
    logger.info("loaded %d symbols from %s", len(table), path)
    return table
