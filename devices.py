"""
Tutor80 Port / Device Layer
===========================
Port-mapped output devices for the 8080 system emulator.

The CPU's ``OUT port`` instruction writes one byte to the port bus, which
forwards it synchronously to every device connected to that port.  Port
reads are not modeled: ``IN`` sees the open-bus value.

Port map:

  0x01  : Console
            0x05 -> print wall-clock time (ms since epoch)
            0x06 -> print the CPU cycle counter
            else -> one ASCII character
"""

from __future__ import annotations
import logging
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)

CONSOLE_PORT = 0x01

CONSOLE_SHOW_TIME  = 0x05
CONSOLE_SHOW_TICKS = 0x06

OPEN_BUS = 0xFF


# ---------------------------------------------------------------------------
#  Device base class
# ---------------------------------------------------------------------------

class Device:
    """Abstract port-mapped output device."""

    def __init__(self, name: str):
        self.name = name

    def write(self, port: int, value: int):
        """Receive one byte written by the CPU to ``port``."""
        pass


# ---------------------------------------------------------------------------
#  Console
# ---------------------------------------------------------------------------

class ConsoleDevice(Device):
    """Character console on port 1.

    In interactive mode characters go straight to stdout.  With
    ``prefix_output`` each character is printed on its own line as
    ``[output] <ch>`` so program output stays readable between debugger
    responses.
    """

    def __init__(self, prefix_output: bool = False,
                 clock: Optional[Callable[[], int]] = None,
                 now: Callable[[], float] = time.time):
        super().__init__("Console")
        self.prefix_output = prefix_output
        self._clock = clock
        self._now = now

    def write(self, port: int, value: int):
        value &= 0xFF
        if value == CONSOLE_SHOW_TIME:
            print(f"\nCurrent time: {int(self._now() * 1000)}ms\n")
            return
        if value == CONSOLE_SHOW_TICKS:
            ticks = self._clock() if self._clock else 0
            print(f"\nCurrent ticks: {ticks} ticks\n")
            return

        ch = chr(value)
        if self.prefix_output:
            print(f"[output] {ch}")
        else:
            print(ch, end='', flush=True)


# ---------------------------------------------------------------------------
#  Port bus
# ---------------------------------------------------------------------------

class PortBus:
    """Routes CPU port writes to the devices connected to each port."""

    def __init__(self):
        self._write_ports: dict[int, list[Device]] = {}

    def connect_write_port(self, port: int, device: Device):
        self._write_ports.setdefault(port & 0xFF, []).append(device)

    def devices_on(self, port: int) -> list[Device]:
        return list(self._write_ports.get(port & 0xFF, ()))

    @property
    def devices(self) -> list[Device]:
        seen: list[Device] = []
        for devs in self._write_ports.values():
            for dev in devs:
                if dev not in seen:
                    seen.append(dev)
        return seen

    def write(self, port: int, value: int):
        for dev in self._write_ports.get(port & 0xFF, ()):
            dev.write(port & 0xFF, value & 0xFF)

    def read(self, port: int) -> int:
        logger.debug("read from unmapped input port %#04x", port)
        return OPEN_BUS
