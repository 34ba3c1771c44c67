"""Raspberry Pi variant: test values driven by Teensy boards and GPIO buttons."""

from __future__ import annotations

import math
import os
import re
import sys
import time
from dataclasses import dataclass
from typing import Iterable, Protocol

from teensybridge.gpio import RaspiGpio
from teensybridge.io import process_input, process_output, update_sim
from teensybridge.mapping import MAXINT, MappingError, MappingTable, load_mappings, resolve_mapping_path
from teensybridge.teensy import TeensyRegistry
from teensybridge.usb import UsbManager

VERSION = "v1.0.1"
MAX_BUTTONS = 9
BUTTON_FILE = "/media/sounds/Buttons.txt"
LOOP_SECONDS = 0.03

_BUTTON_PINS = {1: 2, 2: 3, 3: 4, 4: 17, 5: 27, 6: 22, 7: 10, 8: 9, 9: 11}
_INT_PREFIX = re.compile(r"\s*[+-]?\d+")
_FLOAT_PREFIX = re.compile(r"\s*[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")


class Gpio(Protocol):
    def add(self, pin: int) -> object: ...

    def read_all(self) -> object: ...

    def state(self, pin: int) -> int: ...


def _round3(value: float) -> float:
    if not math.isfinite(value):
        return value
    return math.copysign(math.floor(abs(value) * 1000.0 + 0.5), value) / 1000.0


def _atoi(text: str) -> int:
    match = _INT_PREFIX.match(text)
    return int(match.group()) if match else 0


def _atof(text: str) -> float:
    match = _FLOAT_PREFIX.match(text)
    return float(match.group()) if match else 0.0


class PiDataStore:
    """Data refs held locally as test values; there is no simulator behind them."""

    def __init__(self, table: MappingTable) -> None:
        self.table = table

    def ref_num(self, data_ref: str, item_id: int) -> int | None:
        """Return the reference number of a data ref, or None if unmapped."""
        return self.table.ref_num(data_ref, item_id)

    def ref_name(self, ref_num: int) -> str:
        """Describe what a reference number holds."""
        return self.table.ref_name(ref_num)

    def read(self, ref_num: int) -> float | None:
        """The held value, or None when the mapping has none."""
        return self.table[ref_num].test_value

    def write(self, ref_num: int, value: float, is_adjust: bool = False) -> None:
        """Set the value, or add to it when is_adjust is true."""
        mapping = self.table[ref_num]
        orig = mapping.test_value if mapping.test_value is not None else float(MAXINT)
        value = _round3(float(value))
        if is_adjust:
            value += orig
        elif orig == value:
            return
        mapping.test_value = value

    def written(self, ref_num: int) -> bool:
        """Writes take effect at once, so nothing is ever pending."""
        return False


@dataclass
class Button:
    """A hardware button that adjusts a data ref while held down."""

    button: int
    gpio_pin: int
    ref_num: int
    init_value: float | None = None
    adjust: float = 0.0
    prev_gpio_val: int = 1


def button_to_gpio_pin(button: int) -> int | None:
    """BCM pin wired to a button number, or None for an unknown button."""
    return _BUTTON_PINS.get(button)


def parse_buttons(lines: Iterable[str], store: PiDataStore, gpio: Gpio) -> list[Button]:
    """Parse button lines of the form ``N=DataRef [init][+adjust|-adjust]``."""
    buttons: list[Button] = []
    for raw in lines:
        line = raw.split("#", 1)[0].rstrip(" \t\r\n")
        if not line:
            continue
        if line.endswith(".wav"):
            print(f"Skipping sound (.wav) line: {line}")
            continue
        head, eq, rest = line.partition("=")
        if not eq:
            print(f"Ignored bad line (no =): {line}")
            continue
        number = _atoi(head)
        pin = button_to_gpio_pin(number)
        if pin is None:
            print(f"Unknown button (no pin): {number}")
            continue
        name, space, spec = rest.partition(" ")
        if not space:
            print(f"Ignored bad line (no space): {head}")
            continue
        ref = store.ref_num(name, 0)
        if ref is None:
            continue
        if len(buttons) >= MAX_BUTTONS:
            print(f"Ignored button {number}: more than {MAX_BUTTONS} buttons")
            continue

        init_value = _atof(spec) if spec[:1].isdigit() else None
        pos = spec.find("+")
        if pos < 0:
            pos = spec.find("-")
        adjust = _atof(spec[pos:]) if pos >= 0 else 0.0

        gpio.add(pin)
        button = Button(number, pin, ref, init_value, adjust)
        if init_value is None:
            print(
                f"Added hardware button {number} gpio {pin} to adjust "
                f"{store.ref_name(ref)} by {adjust:.3f}"
            )
        else:
            print(
                f"Added hardware button {number} gpio {pin} to adjust "
                f"{store.ref_name(ref)} from {init_value:.3f} by {adjust:.3f}"
            )
        buttons.append(button)
    return buttons


def load_buttons(path: str | os.PathLike[str], store: PiDataStore, gpio: Gpio) -> list[Button]:
    """Read a button file from disk; OSError if it cannot be opened."""
    try:
        handle = open(path, encoding="utf-8", errors="replace")
    except OSError:
        print(f"File not found: {os.fspath(path)}")
        raise
    print(f"Loading hardware buttons from {os.fspath(path)}")
    with handle:
        buttons = parse_buttons(handle, store, gpio)
    print(f"Loaded {len(buttons)} hardware buttons")
    return buttons


def hardware_init(buttons: Iterable[Button], store: PiDataStore) -> None:
    """Give every button's data ref its initial value."""
    for button in buttons:
        if button.init_value is not None:
            store.write(button.ref_num, button.init_value)


def poll_buttons(buttons: Iterable[Button], store: PiDataStore, gpio: Gpio) -> int:
    """Apply the adjustment of every pressed button; return how many were pressed."""
    gpio.read_all()
    pressed = 0
    for button in buttons:
        val = gpio.state(button.gpio_pin)
        button.prev_gpio_val = val
        if val == 0:
            print(f"Adjust {store.ref_name(button.ref_num)} by {button.adjust:.3f}")
            store.write(button.ref_num, button.adjust, True)
            pressed += 1
    return pressed


def main(argv: list[str] | None = None) -> int:
    """Run the Pi bridge until interrupted."""
    args = sys.argv[1:] if argv is None else list(argv)
    exe = os.path.abspath(sys.argv[0] if sys.argv and sys.argv[0] else ".")
    print(f"Teensy Pi Plugin {VERSION}")

    filename = args[0] if args else "data_mapping.txt"
    path = resolve_mapping_path(filename, exe)
    try:
        table = load_mappings(path)
    except MappingError as exc:
        print(exc)
        print(f"Failed to read data mappings from {filename}")
        return 1
    store = PiDataStore(table)

    gpio = RaspiGpio()
    try:
        buttons = load_buttons(BUTTON_FILE, store, gpio)
    except OSError:
        print(f"Failed to read hardware buttons from {BUTTON_FILE}")
        return 1

    registry = TeensyRegistry()
    usb = UsbManager(registry)
    first_time = True
    try:
        while True:
            registry.delete_offline()
            usb.find_new_devices()
            process_input(registry, store)
            update_sim(registry, store)
            process_output(registry, 0)
            if first_time:
                first_time = False
                hardware_init(buttons, store)
            poll_buttons(buttons, store, gpio)
            time.sleep(LOOP_SECONDS)
    except KeyboardInterrupt:
        pass
    finally:
        usb.close()
        registry.delete_offline()
        print("Teensy Pi Plugin stopping")
    return 0