"""Teensy boards, the items they register, and the packet queues between threads."""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Callable, Iterator, Protocol

from teensybridge.mapping import MAXINT

PACKET_SIZE = 64
INPUT_BUFSIZE = 160
OUTPUT_BUFSIZE = 50
ID_FRAME_TIMEOUT = 5
STRING_MAX_LEN = 58
COMMAND_QUEUE_MAX = 128
MAX_NAME_LEN = 1024
INPUT_PACKET_SIZE = 256

_THREAD_START_RETRIES = 5


class ItemType(IntEnum):
    """Data types a Teensy can register."""

    COMMAND = 0
    INT = 1
    FLOAT = 2
    STRING = 4


class DataStore(Protocol):
    """What a Teensy needs to resolve the names of the data it registers."""

    def ref_num(self, data_ref: str, item_id: int) -> int | None: ...

    def ref_name(self, ref_num: int) -> str: ...


@dataclass
class Item:
    """A command or data value registered by a Teensy."""

    id: int
    type: int
    name: str
    index: int = 0
    cmdref: int = 0
    dataref: int = 0
    datatype: int = 0
    datawritable: bool = False
    command_queue: list[int] = field(default_factory=list)
    command_began: bool = False
    intval: int = MAXINT
    intval_remote: int = MAXINT
    floatval: float = float(MAXINT)
    floatval_remote: float = float(MAXINT)
    stringval: bytes = b""
    stringval_remote: bytes = b""
    changed_by_teensy: bool = False


class PacketRing:
    """Bounded FIFO of fixed-size packets shared between two threads.

    It holds at most ``slots - 1`` packets; a packet put into a full ring is
    dropped.
    """

    def __init__(self, slots: int) -> None:
        if slots < 2:
            raise ValueError("a packet ring needs at least two slots")
        self.capacity = slots - 1
        self._packets: deque[bytes] = deque()
        self._cond = threading.Condition()

    def put(self, packet: bytes) -> bool:
        """Store a copy of packet, padded or cut to 64 bytes; False if full."""
        data = bytes(packet[:PACKET_SIZE]).ljust(PACKET_SIZE, b"\0")
        with self._cond:
            stored = len(self._packets) < self.capacity
            if stored:
                self._packets.append(data)
            self._cond.notify_all()
        return stored

    def get(self) -> bytes | None:
        """Take the oldest packet, or None when the ring is empty."""
        with self._cond:
            if not self._packets:
                return None
            return self._packets.popleft()

    def wait(self, timeout: float | None) -> bool:
        """Block until a packet is queued, a wake-up, or timeout; True if not empty."""
        with self._cond:
            if not self._packets:
                self._cond.wait(timeout)
            return bool(self._packets)

    def wake(self) -> None:
        """Release any thread blocked in wait."""
        with self._cond:
            self._cond.notify_all()

    def __len__(self) -> int:
        with self._cond:
            return len(self._packets)


@dataclass(eq=False)
class Teensy:
    """One connected board: its items, queues and fragment reassembly state."""

    device: object = None
    online: bool = True
    error_count: int = 0
    items: list[Item] = field(default_factory=list)
    input: PacketRing = field(default_factory=lambda: PacketRing(INPUT_BUFSIZE))
    output: PacketRing = field(default_factory=lambda: PacketRing(OUTPUT_BUFSIZE))
    input_thread_quit: bool = False
    output_thread_quit: bool = False
    output_packet: bytearray = field(default_factory=bytearray)
    unknown_id_heard: bool = True
    input_packet: bytearray = field(default_factory=bytearray)
    expect_fragment_id: int = 0
    input_packet_bytes_missing: int = 0
    frames_without_id: int = 0

    def new_item(self, item_id: int, item_type: int, name: str | bytes, store: DataStore) -> Item | None:
        """Register an item announced by the board; return it, or None if refused."""
        if name is None:
            return None
        raw = name.encode("utf-8") if isinstance(name, str) else bytes(name)
        if len(raw) >= MAX_NAME_LEN:
            return None
        self.frames_without_id = 0
        text = raw.split(b"\0", 1)[0].decode("utf-8", errors="replace")

        dataref = 0
        if item_type == ItemType.COMMAND:
            # Commands have no simulator counterpart to bind to.
            print(f"Teensy requested command {text} does not exist")
            return None
        ref = store.ref_num(text, item_id)
        if ref is None:
            return None
        dataref = ref

        item = self.find_item(item_id)
        if item is not None:
            return item

        if item_type == ItemType.INT:
            kind = "(int)  "
        elif item_type == ItemType.FLOAT:
            kind = "(float)"
        else:
            kind = "(unknown type)"
        print(f"Data Ref {text:<65} {kind} -> {store.ref_name(dataref)}")
        item = Item(id=item_id, type=item_type, name=text, dataref=dataref)
        self.items.insert(0, item)
        return item

    def find_item(self, item_id: int) -> Item | None:
        """Return the item with this id, or None."""
        return next((item for item in self.items if item.id == item_id), None)

    def end_commands(self) -> int:
        """End every command that began without ending; return how many."""
        ended = 0
        for item in self.items:
            if item.type == ItemType.COMMAND and item.command_began:
                print("Command end")
                item.command_began = False
                ended += 1
        return ended


class TeensyRegistry:
    """All known boards, in the order they were found."""

    def __init__(self) -> None:
        self._boards: list[Teensy] = []
        self._lock = threading.Lock()

    def new_teensy(self) -> Teensy:
        """Create a board, append it and return it."""
        board = Teensy()
        with self._lock:
            self._boards.append(board)
        return board

    def delete_offline(self) -> int:
        """Remove boards that are offline with both I/O threads finished."""
        with self._lock:
            gone = [
                b for b in self._boards
                if not b.online and b.input_thread_quit and b.output_thread_quit
            ]
            self._boards = [b for b in self._boards if b not in gone]
        for board in gone:
            print("Teensy Removed")
            board.end_commands()
            board.items.clear()
        return len(gone)

    def threads_alive(self) -> int:
        """Count the I/O threads that have not yet finished."""
        with self._lock:
            return sum(
                (not b.input_thread_quit) + (not b.output_thread_quit)
                for b in self._boards
            )

    def __iter__(self) -> Iterator[Teensy]:
        with self._lock:
            return iter(list(self._boards))

    def __len__(self) -> int:
        with self._lock:
            return len(self._boards)


def start_thread(function: Callable[..., object], *args: object) -> threading.Thread | None:
    """Run function(*args) on a daemon thread; None if no thread could start."""
    for _ in range(_THREAD_START_RETRIES):
        thread = threading.Thread(target=function, args=args, daemon=True)
        try:
            thread.start()
        except RuntimeError:
            time.sleep(0.001)
            continue
        return thread
    return None