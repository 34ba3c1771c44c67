"""Discovery of Teensy raw HID devices and the I/O threads that serve them.

Devices are found through the hidraw class directory in sysfs. A board
qualifies when its USB parent reports the Teensy vendor and product ids and a
product name containing "Teensy", and its report descriptor starts with the
Teensy controls usage page signature.
"""

from __future__ import annotations

import errno
import os
import select
import struct
import sys
import time
from dataclasses import dataclass
from typing import Callable, NamedTuple

from teensybridge.teensy import PACKET_SIZE, Teensy, TeensyRegistry, start_thread

VENDOR_ID = 0x16C0
PRODUCT_ID = 0x0488
DESCRIPTOR_SIGNATURE = bytes([0x06, 0x1C, 0xFF, 0x0A, 0x39, 0xA7])

SCAN_EVERY_FRAMES = 8
MAX_ERRORS = 8
MAX_WRITE_RETRIES = 20
SELECT_TIMEOUT = 0.05
OUTPUT_WAIT = 1.0

_HID_MAX_DESCRIPTOR_SIZE = 4096


def _ior(nr: int, size: int) -> int:
    return (2 << 30) | (size << 16) | (ord("H") << 8) | nr


_HIDIOCGRDESCSIZE = _ior(0x01, 4)
_HIDIOCGRDESC = _ior(0x02, 4 + _HID_MAX_DESCRIPTOR_SIZE)
_HIDIOCGRAWINFO = _ior(0x03, 8)


class UsbIds(NamedTuple):
    """Identity of the USB device behind a hidraw node."""

    vendor_id: int
    product_id: int
    product: str | None


@dataclass
class _Device:
    path: str
    fd: int


def is_teensy_descriptor(descriptor: bytes) -> bool:
    """True when a HID report descriptor starts with the Teensy signature."""
    return bytes(descriptor[: len(DESCRIPTOR_SIGNATURE)]) == DESCRIPTOR_SIGNATURE


def _read_attr(directory: str, name: str) -> str | None:
    try:
        with open(os.path.join(directory, name), encoding="utf-8", errors="replace") as handle:
            return handle.read().strip()
    except OSError:
        return None


def _parse_hex(text: str | None) -> int:
    if not text:
        return 0
    try:
        return int(text.split()[0], 16)
    except (ValueError, IndexError):
        return 0


def read_usb_ids(sys_path: str | os.PathLike[str]) -> UsbIds | None:
    """Find the USB device above a sysfs node and read its ids; None if there is none."""
    current = os.path.realpath(sys_path)
    while True:
        if os.path.isfile(os.path.join(current, "idVendor")):
            return UsbIds(
                _parse_hex(_read_attr(current, "idVendor")),
                _parse_hex(_read_attr(current, "idProduct")),
                _read_attr(current, "product"),
            )
        parent = os.path.dirname(current)
        if parent == current:
            return None
        current = parent


def _open_device(path: str) -> int:
    return os.open(path, os.O_RDWR)


def _read_report_descriptor(fd: int) -> bytes:
    import fcntl

    info = bytearray(8)
    fcntl.ioctl(fd, _HIDIOCGRAWINFO, info, True)
    size_buf = bytearray(4)
    fcntl.ioctl(fd, _HIDIOCGRDESCSIZE, size_buf, True)
    size = int.from_bytes(size_buf, sys.byteorder)
    if size < len(DESCRIPTOR_SIGNATURE):
        return b""
    size = min(size, _HID_MAX_DESCRIPTOR_SIZE)
    desc = bytearray(4 + _HID_MAX_DESCRIPTOR_SIZE)
    struct.pack_into("=I", desc, 0, size)
    fcntl.ioctl(fd, _HIDIOCGRDESC, desc, True)
    return bytes(desc[4 : 4 + size])


def _count_error(teensy: Teensy) -> None:
    teensy.error_count += 1
    if teensy.error_count > MAX_ERRORS:
        teensy.online = False


class UsbManager:
    """Finds Teensy boards, registers them and runs their I/O threads."""

    def __init__(
        self,
        registry: TeensyRegistry,
        *,
        sys_root: str | os.PathLike[str] = "/sys/class/hidraw",
        dev_root: str | os.PathLike[str] = "/dev",
        opener: Callable[[str], int] | None = None,
        read_descriptor: Callable[[int], bytes] | None = None,
        start_io: bool = True,
    ) -> None:
        self.registry = registry
        self.sys_root = os.fspath(sys_root)
        self.dev_root = os.fspath(dev_root)
        self._opener = opener if opener is not None else _open_device
        self._read_descriptor = read_descriptor if read_descriptor is not None else _read_report_descriptor
        self._start_io = start_io
        self._first = True
        self._frames = 0
        self._known: set[str] = set()

    def _owned(self, devname: str) -> bool:
        return any(
            isinstance(board.device, _Device) and board.device.path == devname and board.online
            for board in self.registry
        )

    def probe(self, devname: str) -> Teensy | None:
        """Open devname and register it if it is a Teensy; return the new board or None."""
        if self._owned(devname):
            return None
        ids = read_usb_ids(os.path.join(self.sys_root, os.path.basename(devname)))
        if ids is None:
            return None
        if "Teensy" not in (ids.product or ""):
            return None
        if ids.vendor_id != VENDOR_ID or ids.product_id != PRODUCT_ID:
            return None

        try:
            fd = self._opener(devname)
        except OSError as exc:
            print("unable to open")
            if exc.errno == errno.EACCES:
                print("Teensy permission denied, please install udev rules")
            else:
                print(f"Teensy unable to open, errno={exc.errno}")
            return None

        try:
            descriptor = self._read_descriptor(fd)
        except OSError:
            descriptor = b""
        if not is_teensy_descriptor(descriptor):
            try:
                os.close(fd)
            except OSError:
                pass
            return None

        teensy = self.registry.new_teensy()
        print(f"Found Teensy {devname}")
        teensy.device = _Device(devname, fd)
        teensy.error_count = 0
        if self._start_io:
            if start_thread(self._input_loop, teensy) is None:
                teensy.input_thread_quit = True
            if start_thread(self._output_loop, teensy) is None:
                teensy.output_thread_quit = True
        else:
            teensy.input_thread_quit = True
            teensy.output_thread_quit = True
        return teensy

    def _scan(self) -> set[str]:
        try:
            return set(os.listdir(self.sys_root))
        except OSError:
            return set()

    def find_new_devices(self) -> list[Teensy]:
        """Scan for boards: all present ones on the first call, then changes every 8th call."""
        found: list[Teensy] = []
        if self._first:
            self._known = self._scan()
            for name in sorted(self._known):
                board = self.probe(os.path.join(self.dev_root, name))
                if board is not None:
                    found.append(board)
            self._first = False

        self._frames += 1
        if self._frames < SCAN_EVERY_FRAMES:
            return found
        self._frames = 0

        current = self._scan()
        for name in sorted(self._known - current):
            print(f"remove device {os.path.join(self.dev_root, name)}")
        for name in sorted(current - self._known):
            devname = os.path.join(self.dev_root, name)
            print(f"add device {devname}")
            board = self.probe(devname)
            if board is not None:
                found.append(board)
        self._known = current
        return found

    def _input_loop(self, teensy: Teensy) -> None:
        fd = teensy.device.fd
        try:
            while teensy.online:
                try:
                    readable, _, failed = select.select([fd], [], [fd], SELECT_TIMEOUT)
                except (OSError, ValueError) as exc:
                    if not teensy.online:
                        break
                    print(f"input: select failed, {exc}")
                    _count_error(teensy)
                    continue
                if not readable:
                    if failed:
                        print("input: select reported an error")
                        _count_error(teensy)
                    continue
                try:
                    data = os.read(fd, PACKET_SIZE)
                except OSError as exc:
                    print(f"read error, errno = {exc.errno}, count = {teensy.error_count}")
                    if exc.errno in (errno.EAGAIN, errno.EINTR):
                        continue
                    if exc.errno == errno.ENODEV:
                        teensy.online = False
                    else:
                        _count_error(teensy)
                    continue
                if len(data) == PACKET_SIZE:
                    teensy.input.put(data)
                    teensy.error_count = 0
                else:
                    print(f"read error, n = {len(data)}, count = {teensy.error_count}")
                    _count_error(teensy)
        finally:
            teensy.input_thread_quit = True

    def _write_frame(self, teensy: Teensy, frame: bytes) -> None:
        while True:
            err = 0
            try:
                written = os.write(teensy.device.fd, frame)
            except OSError as exc:
                written = -1
                err = exc.errno
            if written == len(frame):
                teensy.error_count = 0
                return
            print(f"write error, n={written}, errno={err}")
            if err == errno.EINTR:
                time.sleep(0.005)
                teensy.error_count += 1
                if teensy.error_count < MAX_WRITE_RETRIES:
                    continue
                return
            if err == errno.ENODEV:
                teensy.online = False
                return
            _count_error(teensy)
            return

    def _output_loop(self, teensy: Teensy) -> None:
        try:
            while teensy.online:
                packet = teensy.output.get()
                if packet is not None and teensy.online:
                    self._write_frame(teensy, b"\0" + packet)
                else:
                    teensy.output.wait(OUTPUT_WAIT)
        finally:
            teensy.output_thread_quit = True

    def close(self) -> None:
        """Take every board offline, close its device and wait briefly for threads."""
        for teensy in self.registry:
            if teensy.online:
                print("attempt to end any pending USB device I/O")
                teensy.online = False
                if isinstance(teensy.device, _Device):
                    try:
                        os.close(teensy.device.fd)
                    except OSError:
                        pass
                teensy.output.wake()
        wait = 0
        while True:
            wait += 1
            if wait >= SCAN_EVERY_FRAMES or self.registry.threads_alive() == 0:
                break
            time.sleep(0.01)
            print(f"wait #{wait} for thread exit")
        self._first = True
        self._frames = 0
        self._known = set()