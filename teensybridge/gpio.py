"""Raspberry Pi GPIO inputs read through the raspi-gpio command."""

from __future__ import annotations

import re
import subprocess
from typing import Callable, Sequence

RASPI_GPIO = "raspi-gpio"

_LEVEL = re.compile(r"GPIO\s+(\d+):\s+level=(\d)")


def _run(args: Sequence[str]) -> subprocess.CompletedProcess:
    return subprocess.run(list(args), capture_output=True, text=True, check=False)


class RaspiGpio:
    """Input pins with pull-ups, read together once per frame.

    ``runner(args)`` runs a command and returns a CompletedProcess.
    """

    def __init__(self, runner: Callable[[Sequence[str]], subprocess.CompletedProcess] | None = None) -> None:
        self._runner = runner if runner is not None else _run
        self._levels: dict[int, int] = {}
        self.pins: list[int] = []

    def _call(self, args: list[str]) -> subprocess.CompletedProcess | None:
        try:
            result = self._runner(args)
        except OSError:
            return None
        if result.returncode != 0:
            return None
        return result

    def add(self, pin: int) -> bool:
        """Make pin an input with its pull-up enabled."""
        if pin not in self.pins:
            self.pins.append(pin)
        if self._call([RASPI_GPIO, "set", str(pin), "ip", "pu"]) is None:
            print("Failed to run raspi-gpio command")
            return False
        return True

    def read_all(self) -> bool:
        """Read the level of every pin in one call."""
        result = self._call([RASPI_GPIO, "get"])
        if result is None:
            print("Failed to get gpio values")
            return False
        for match in _LEVEL.finditer(result.stdout or ""):
            self._levels[int(match.group(1))] = int(match.group(2))
        return True

    def state(self, pin: int) -> int:
        """Last level read for pin; 1 (pulled up) before any read."""
        return self._levels.get(pin, 1)