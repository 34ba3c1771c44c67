import errno
import os
import socket
import time

import pytest

from teensybridge.teensy import TeensyRegistry
from teensybridge.usb import (
    DESCRIPTOR_SIGNATURE,
    PRODUCT_ID,
    VENDOR_ID,
    UsbManager,
    is_teensy_descriptor,
    read_usb_ids,
)

SIGNATURE = bytes([0x06, 0x1C, 0xFF, 0x0A, 0x39, 0xA7])


def _make_device(root, name="hidraw0", vendor="16c0", product_id="0488", product="Teensyduino RawHID"):
    usb = root / "usb" / name
    hid = usb / "1-1:1.0" / "hidraw" / name
    hid.mkdir(parents=True)
    (usb / "idVendor").write_text(vendor + "\n")
    (usb / "idProduct").write_text(product_id + "\n")
    if product is not None:
        (usb / "product").write_text(product + "\n")
    class_dir = root / "class"
    class_dir.mkdir(exist_ok=True)
    (class_dir / name).symlink_to(hid)
    return class_dir


class _Opener:
    def __init__(self):
        self.peers = {}
        self.fds = {}

    def __call__(self, path):
        ours, theirs = socket.socketpair()
        self.peers[path] = theirs
        fd = ours.detach()
        self.fds[path] = fd
        return fd

    def close(self):
        for peer in self.peers.values():
            peer.close()


@pytest.fixture
def opener():
    op = _Opener()
    yield op
    op.close()


def _wait_for(predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def _fd_closed(fd):
    try:
        os.fstat(fd)
    except OSError:
        return True
    return False


def test_descriptor_signature():
    assert DESCRIPTOR_SIGNATURE == SIGNATURE
    assert is_teensy_descriptor(SIGNATURE)
    assert is_teensy_descriptor(SIGNATURE + b"\x01\x02")
    assert not is_teensy_descriptor(SIGNATURE[:5])
    assert not is_teensy_descriptor(b"\x06\x00\xff\x0a\x39\xa7")
    assert not is_teensy_descriptor(b"")


def test_read_usb_ids_walks_up_to_usb_device(tmp_path):
    class_dir = _make_device(tmp_path)
    ids = read_usb_ids(class_dir / "hidraw0")
    assert ids is not None
    assert ids.vendor_id == VENDOR_ID
    assert ids.product_id == PRODUCT_ID
    assert ids.product == "Teensyduino RawHID"


def test_read_usb_ids_bad_hex_and_missing_product(tmp_path):
    class_dir = _make_device(tmp_path, vendor="zz", product=None)
    ids = read_usb_ids(class_dir / "hidraw0")
    assert ids.vendor_id == 0
    assert ids.product_id == PRODUCT_ID
    assert ids.product is None


def test_read_usb_ids_without_usb_parent(tmp_path):
    plain = tmp_path / "a" / "b"
    plain.mkdir(parents=True)
    assert read_usb_ids(plain) is None


def test_probe_registers_teensy(tmp_path, opener):
    class_dir = _make_device(tmp_path)
    registry = TeensyRegistry()
    manager = UsbManager(
        registry,
        sys_root=class_dir,
        dev_root="/dev",
        opener=opener,
        read_descriptor=lambda fd: SIGNATURE + b"\x00",
        start_io=False,
    )
    board = manager.probe("/dev/hidraw0")
    assert board is not None
    assert list(registry) == [board]
    assert board.device.path == "/dev/hidraw0"
    assert board.device.fd == opener.fds["/dev/hidraw0"]
    assert manager.probe("/dev/hidraw0") is None
    assert len(registry) == 1


@pytest.mark.parametrize(
    "kwargs",
    [
        {"product": "Keyboard"},
        {"vendor": "1234"},
        {"product_id": "0001"},
    ],
)
def test_probe_rejects_other_devices(tmp_path, opener, kwargs):
    class_dir = _make_device(tmp_path, **kwargs)
    registry = TeensyRegistry()
    manager = UsbManager(
        registry, sys_root=class_dir, opener=opener,
        read_descriptor=lambda fd: SIGNATURE, start_io=False,
    )
    assert manager.probe("/dev/hidraw0") is None
    assert len(registry) == 0
    assert opener.fds == {}


def test_probe_bad_descriptor_closes_device(tmp_path, opener):
    class_dir = _make_device(tmp_path)
    registry = TeensyRegistry()
    manager = UsbManager(
        registry, sys_root=class_dir, opener=opener,
        read_descriptor=lambda fd: b"\x05\x01\x09\x02\xa1\x01", start_io=False,
    )
    assert manager.probe("/dev/hidraw0") is None
    assert len(registry) == 0
    assert _fd_closed(opener.fds["/dev/hidraw0"])


def test_probe_open_failure(tmp_path, capsys):
    class_dir = _make_device(tmp_path)
    registry = TeensyRegistry()

    def denied(path):
        raise PermissionError(errno.EACCES, "denied", path)

    manager = UsbManager(registry, sys_root=class_dir, opener=denied, start_io=False)
    assert manager.probe("/dev/hidraw0") is None
    assert len(registry) == 0
    assert "permission denied" in capsys.readouterr().out


def test_find_new_devices_scans_then_polls(tmp_path, opener):
    class_dir = _make_device(tmp_path, name="hidraw0")
    registry = TeensyRegistry()
    manager = UsbManager(
        registry, sys_root=class_dir, opener=opener,
        read_descriptor=lambda fd: SIGNATURE, start_io=False,
    )
    first = manager.find_new_devices()
    assert [b.device.path for b in first] == [os.path.join("/dev", "hidraw0")]

    _make_device(tmp_path, name="hidraw1")
    results = [manager.find_new_devices() for _ in range(7)]
    assert all(r == [] for r in results[:6])
    assert [b.device.path for b in results[6]] == [os.path.join("/dev", "hidraw1")]
    assert len(registry) == 2


def test_io_threads_move_packets_and_stop_on_close(tmp_path, opener):
    class_dir = _make_device(tmp_path)
    registry = TeensyRegistry()
    manager = UsbManager(
        registry, sys_root=class_dir, opener=opener,
        read_descriptor=lambda fd: SIGNATURE,
    )
    board = manager.probe("/dev/hidraw0")
    assert board is not None
    peer = opener.peers["/dev/hidraw0"]
    peer.settimeout(3.0)

    frame_in = bytes(range(64))
    peer.sendall(frame_in)
    assert _wait_for(lambda: len(board.input) == 1)
    assert board.input.get() == frame_in

    frame_out = bytes([4, 3, 1, 0]).ljust(64, b"\0")
    assert board.output.put(frame_out)
    received = b""
    while len(received) < 65:
        chunk = peer.recv(65 - len(received))
        assert chunk
        received += chunk
    assert received == b"\0" + frame_out

    manager.close()
    assert board.online is False
    assert _wait_for(lambda: registry.threads_alive() == 0)
    assert registry.delete_offline() == 1
    assert len(registry) == 0


def test_input_thread_goes_offline_when_peer_closes(tmp_path, opener):
    class_dir = _make_device(tmp_path)
    registry = TeensyRegistry()
    manager = UsbManager(
        registry, sys_root=class_dir, opener=opener,
        read_descriptor=lambda fd: SIGNATURE,
    )
    board = manager.probe("/dev/hidraw0")
    opener.peers["/dev/hidraw0"].close()
    assert _wait_for(lambda: board.online is False)
    assert _wait_for(lambda: registry.threads_alive() == 0)
    assert board.error_count > 8
    manager.close()