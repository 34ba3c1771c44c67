"""Packet traffic between the boards and the simulator data store.

Boards send 64-byte frames that hold one or more length-prefixed
sub-packets. A sub-packet longer than the rest of its frame is continued in
later frames as numbered fragments (command byte 0xFF).
"""

from __future__ import annotations

import math
import struct
from typing import Protocol

from teensybridge.mapping import MAXINT
from teensybridge.teensy import (
    COMMAND_QUEUE_MAX,
    ID_FRAME_TIMEOUT,
    PACKET_SIZE,
    STRING_MAX_LEN,
    ItemType,
    Teensy,
    TeensyRegistry,
)

CMD_REGISTER = 0x01
CMD_WRITE_DATA = 0x02
CMD_ENABLE = 0x03
CMD_BEGIN = 0x04
CMD_END = 0x05
CMD_ONCE = 0x06
CMD_FRAGMENT = 0xFF

FLAG_ENABLE = 1
FLAG_DISABLE = 2

_F32 = struct.Struct("<f")


class SimStore(Protocol):
    """The simulator-side data a board's items are bound to."""

    def ref_num(self, data_ref: str, item_id: int) -> int | None: ...

    def ref_name(self, ref_num: int) -> str: ...

    def read(self, ref_num: int) -> float | None: ...

    def write(self, ref_num: int, value: float, is_adjust: bool = False) -> None: ...

    def written(self, ref_num: int) -> bool: ...


def _to_float32(value: float) -> float:
    try:
        return _F32.unpack(_F32.pack(value))[0]
    except OverflowError:
        return math.copysign(math.inf, value)


def _float32_bytes(value: float) -> bytes:
    try:
        return _F32.pack(value)
    except OverflowError:
        return _F32.pack(math.copysign(math.inf, value))


def _int32_bytes(value: int) -> bytes:
    return (int(value) & 0xFFFFFFFF).to_bytes(4, "little")


def _item_id(packet: bytes) -> int:
    return packet[2] | (packet[3] << 8)


def _write_header(item_id: int, item_type: int) -> bytes:
    return bytes([CMD_WRITE_DATA, item_id & 0xFF, (item_id >> 8) & 0xFF, item_type, 0])


_COMMAND_NAMES = {CMD_BEGIN: "Begin", CMD_END: "End", CMD_ONCE: "Once"}


def decode_packet(teensy: Teensy, packet: bytes, store: SimStore) -> None:
    """Act on one complete sub-packet; its length is the length of packet."""
    length = len(packet)
    if length < 2:
        return
    cmd = packet[1]

    if cmd == CMD_REGISTER:
        if length < 7:
            return
        teensy.new_item(_item_id(packet), packet[4], bytes(packet[6:length]), store)

    elif cmd == CMD_WRITE_DATA:
        if length < 10:
            return
        item_id = _item_id(packet)
        value_type = packet[4]
        item = teensy.find_item(item_id)
        if item is None:
            print(f"Cannot write data due to unmapped Data Ref #{item_id}")
            return
        raw = bytes(packet[6:10])
        if value_type == ItemType.INT:
            intval = int.from_bytes(raw, "little", signed=True)
            item.intval = intval
            item.intval_remote = intval
            item.changed_by_teensy = True
        elif value_type == ItemType.FLOAT:
            floatval = _F32.unpack(raw)[0]
            if math.isfinite(floatval):
                floatval = _to_float32(math.trunc(floatval * 1000.0) / 1000.0)
            item.floatval = floatval
            item.floatval_remote = floatval
            item.changed_by_teensy = True

    elif cmd in _COMMAND_NAMES:
        if length < 4:
            return
        label = _COMMAND_NAMES[cmd]
        item_id = _item_id(packet)
        item = teensy.find_item(item_id)
        if item is None:
            teensy.unknown_id_heard = True
            print(f"Command{label} id: {item_id}  Unknown item")
            return
        print(f"Command{label} id: {item_id}  type: {item.type}  name: {item.name}")
        if item.type != ItemType.COMMAND or len(item.command_queue) >= COMMAND_QUEUE_MAX:
            return
        item.command_queue.append(cmd)
        print(f"Command {label}: id={item_id}, name={item.name}")


def input_packet(teensy: Teensy, packet: bytes, store: SimStore) -> None:
    """Split one 64-byte frame into sub-packets, reassembling fragments."""
    i = 0
    while i < PACKET_SIZE:
        length = packet[i]
        if length < 2:
            return
        room = PACKET_SIZE - i
        if length > room:
            if i + 1 < len(packet) and packet[i + 1] == CMD_FRAGMENT:
                print(
                    "Long Teensy command fragment with len>buffer space, not allowed "
                    f"(len={length}, bufspace={room}, cmd={packet[i + 1]:02x})"
                )
                return
            teensy.input_packet_bytes_missing = length - room
            teensy.input_packet = bytearray(packet[i:PACKET_SIZE])
            teensy.expect_fragment_id = 1
            return

        cmd = packet[i + 1]
        if cmd != CMD_FRAGMENT:
            if teensy.expect_fragment_id != 0:
                print(
                    f"Expected Teensy command fragment {teensy.expect_fragment_id} "
                    f"not received (cmd={cmd})"
                )
                teensy.expect_fragment_id = 0
            decode_packet(teensy, bytes(packet[i:i + length]), store)
        else:
            if length < 3:
                teensy.expect_fragment_id = 0
                return
            fragment_id = packet[i + 2]
            if fragment_id != teensy.expect_fragment_id:
                print(
                    f"Unexpected Teensy command fragment {fragment_id} received, "
                    f"expected: {teensy.expect_fragment_id}"
                )
                teensy.expect_fragment_id = 0
                return
            teensy.input_packet.extend(packet[i + 3:i + length])
            teensy.input_packet_bytes_missing -= length - 3
            if teensy.input_packet_bytes_missing == 0:
                teensy.expect_fragment_id = 0
                whole = bytes(teensy.input_packet)
                decode_packet(teensy, whole[:whole[0]], store)
            elif teensy.input_packet_bytes_missing < 0:
                print("Mismatch in frame length, packet fragments invalid")
                teensy.expect_fragment_id = 0
                return
            else:
                teensy.expect_fragment_id = (teensy.expect_fragment_id + 1) & 0xFF
        i += length


def process_input(registry: TeensyRegistry, store: SimStore) -> int:
    """Handle every frame queued by the boards; return how many were handled."""
    handled = 0
    for teensy in registry:
        while (packet := teensy.input.get()) is not None:
            input_packet(teensy, packet, store)
            handled += 1
    return handled


def _is_missing(value: float | None) -> bool:
    return value is None or value == MAXINT


def update_sim(registry: TeensyRegistry, store: SimStore) -> None:
    """Run queued commands, push board changes to the sim, then read sim values."""
    boards = list(registry)

    for teensy in boards:
        for item in teensy.items:
            if item.type != ItemType.COMMAND:
                continue
            for cmd in item.command_queue:
                if cmd == CMD_BEGIN:
                    print(f"Command {item.name} Begin")
                    item.command_began = True
                elif cmd == CMD_END:
                    print(f"Command {item.name} End")
                    item.command_began = False
                elif cmd == CMD_ONCE:
                    print(f"Command {item.name} Once")
            item.command_queue.clear()

    for teensy in boards:
        for item in teensy.items:
            if not item.changed_by_teensy:
                continue
            if item.type == ItemType.INT:
                store.write(item.dataref, item.intval, False)
                item.changed_by_teensy = False
            elif item.type == ItemType.FLOAT:
                store.write(item.dataref, item.floatval, False)
                item.changed_by_teensy = False

    for teensy in boards:
        for item in teensy.items:
            if store.written(item.dataref):
                continue
            if item.type == ItemType.INT:
                value = store.read(item.dataref)
                if _is_missing(value):
                    item.intval = MAXINT
                    item.intval_remote = MAXINT
                else:
                    item.intval = int(value)
            elif item.type == ItemType.FLOAT:
                value = store.read(item.dataref)
                if _is_missing(value):
                    item.floatval_remote = float(MAXINT)
                else:
                    item.floatval = value
            elif item.type == ItemType.STRING:
                print(f"Reading string {item.name} from the simulator is not supported")


def _send_packet(teensy: Teensy) -> None:
    data = bytes(teensy.output_packet).ljust(PACKET_SIZE, b"\0")
    teensy.output.put(data)
    teensy.output_packet.clear()


def _output_data(teensy: Teensy, data: bytes) -> bool:
    if not data or len(data) > PACKET_SIZE:
        return False
    if len(teensy.output_packet) + len(data) > PACKET_SIZE:
        _send_packet(teensy)
    teensy.output_packet.extend(data)
    return True


def _output_flush(teensy: Teensy) -> None:
    if teensy.output_packet:
        _send_packet(teensy)


def process_output(registry: TeensyRegistry, flags: int = 0) -> None:
    """Queue for each board its enable state and every value it does not have yet.

    flags is 1 on an enable event and 2 on a disable event.
    """
    enable_state = 2
    if flags == FLAG_ENABLE:
        enable_state = 1
    elif flags == FLAG_DISABLE:
        enable_state = 3

    for teensy in registry:
        state = enable_state
        if state == 2 and teensy.unknown_id_heard:
            state = 1
            teensy.unknown_id_heard = False

        if not _output_data(teensy, bytes([4, CMD_ENABLE, state, 0])):
            break
        frames = teensy.frames_without_id
        teensy.frames_without_id += 1
        # No data goes out until a few frames after the last registration.
        if frames <= ID_FRAME_TIMEOUT:
            break

        for item in teensy.items:
            if item.type == ItemType.INT and item.intval != item.intval_remote:
                data = bytes([10]) + _write_header(item.id, ItemType.INT) + _int32_bytes(item.intval)
                if not _output_data(teensy, data):
                    print("Failed to output data")
                    break
                item.intval_remote = item.intval
            elif item.type == ItemType.FLOAT and item.floatval != item.floatval_remote:
                data = (
                    bytes([10])
                    + _write_header(item.id, ItemType.FLOAT)
                    + _float32_bytes(item.floatval)
                )
                if not _output_data(teensy, data):
                    print("Failed to output data")
                    break
                item.floatval_remote = item.floatval
            elif item.type == ItemType.STRING:
                text = bytes(item.stringval[:STRING_MAX_LEN])
                if text == bytes(item.stringval_remote[:STRING_MAX_LEN]):
                    continue
                print(f"String to Teensy: {item.name} = {text.decode('utf-8', errors='replace')}")
                data = bytes([len(text) + 6]) + _write_header(item.id, ItemType.STRING) + text
                if not _output_data(teensy, data.ljust(PACKET_SIZE, b"\0")):
                    print("Failed to output data")
                    break
                item.stringval_remote = text
        _output_flush(teensy)


def plugin_enable(registry: TeensyRegistry) -> bool:
    """Tell every board the plugin is enabled and ask for its ids."""
    print("Plugin Enable")
    process_output(registry, FLAG_ENABLE)
    return True


def plugin_disable(registry: TeensyRegistry) -> None:
    """Tell every board the plugin is disabled."""
    print("Plugin Disable")
    process_output(registry, FLAG_DISABLE)