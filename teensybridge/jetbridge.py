"""Client side of the jetbridge protocol used to write simulator variables."""

from __future__ import annotations

import random
import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Callable

PACKET_DATA_SIZE = 128
PUBLIC_DOWNLINK_CHANNEL = "theomessin.jetbridge.downlink"
PUBLIC_UPLINK_CHANNEL = "theomessin.jetbridge.uplink"
RAND_MAX = 0x7FFFFFFF

_PACKET_FORMAT = f"<i{PACKET_DATA_SIZE}s"


class ClientDataDefinition(IntEnum):
    PACKET = 5321


class ClientDataArea(IntEnum):
    PUBLIC_DOWNLINK = 5321
    PUBLIC_UPLINK = 5322


class DataRequest(IntEnum):
    UPLINK = 5321
    DOWNLINK = 5322


def _as_bytes(data: str | bytes) -> bytes:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return data[:PACKET_DATA_SIZE].ljust(PACKET_DATA_SIZE, b"\0")


@dataclass
class Packet:
    """A request packet: a random id and a fixed-size data field."""

    data: bytes
    id: int = field(default_factory=lambda: random.randint(0, RAND_MAX))

    def __post_init__(self) -> None:
        self.data = _as_bytes(self.data)

    def to_bytes(self) -> bytes:
        """Encode the packet in its wire layout."""
        return struct.pack(_PACKET_FORMAT, self.id, self.data)

    @classmethod
    def from_bytes(cls, raw: bytes) -> "Packet":
        """Decode a packet from its wire layout."""
        packet_id, data = struct.unpack(_PACKET_FORMAT, raw)
        return cls(data, packet_id)

    @property
    def text(self) -> str:
        """The data field up to its first NUL byte."""
        return self.data.split(b"\0", 1)[0].decode("utf-8", errors="replace")


def rpn_code(var: str, units: str, value: float) -> str:
    """Build the RPN that sets a variable; plain names are taken as A: vars."""
    if ":" in var:
        return f"{value:f} (>{var},{units})"
    return f"{value:f} (>A:{var},{units})"


class Client:
    """Sends request packets through the uplink channel.

    ``send`` receives each encoded packet; it stands for the write to the
    uplink client data area.
    """

    uplink_channel = PUBLIC_UPLINK_CHANNEL
    downlink_channel = PUBLIC_DOWNLINK_CHANNEL

    def __init__(self, send: Callable[[bytes], object], rng: random.Random | None = None) -> None:
        self._send = send
        self._rng = rng if rng is not None else random.Random()

    def request(self, data: str | bytes) -> Packet:
        """Send data as a new packet and return that packet."""
        packet = Packet(data, self._rng.randint(0, RAND_MAX))
        self._send(packet.to_bytes())
        return packet

    def write_var(self, var: str, units: str, value: float) -> Packet:
        """Ask the simulator to set a variable to value."""
        return self.request(rpn_code(var, units, value))