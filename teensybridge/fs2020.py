"""Simulator data store that reads variables in bulk and writes them via jetbridge."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Callable, Sequence

from teensybridge.mapping import MAXINT, MappingTable

WRITE_SETTLE_FRAMES = 3
DATATYPE_FLOAT64 = "FLOAT64"
DATATYPE_STRING32 = "STRING32"


@dataclass(frozen=True)
class DataDefinition:
    """One variable in the simulator read definition."""

    var: str
    units: str | None
    datatype: str = DATATYPE_FLOAT64


def _round3(value: float) -> float:
    """Round to three decimals, halves away from zero."""
    if not math.isfinite(value):
        return value
    return math.copysign(math.floor(abs(value) * 1000.0 + 0.5), value) / 1000.0


def _is_10khz(units: str) -> bool:
    return units.lower() == "10khz"


def data_definition(var: str, units: str) -> DataDefinition:
    """Describe how a variable is requested from the simulator."""
    if units == "string":
        return DataDefinition(var, None, DATATYPE_STRING32)
    if _is_10khz(units):
        return DataDefinition(var, "khz")
    return DataDefinition(var, units)


class Fs2020DataStore:
    """Values read from the simulator each frame, bound to a mapping table.

    ``writer(var, units, value)`` sends a variable write to the simulator.
    A written value is held for a few frames until the simulator reports it,
    so a stale read does not undo the write.
    """

    def __init__(self, table: MappingTable, writer: Callable[[str, str, float], object]) -> None:
        self.table = table
        self._writer = writer
        self.connected = False
        self.data: list[float] | None = None
        self.read_count = 0
        self.read_layout()

    def ref_num(self, data_ref: str, item_id: int) -> int | None:
        """Return the reference number of a data ref, or None if unmapped."""
        return self.table.ref_num(data_ref, item_id)

    def ref_name(self, ref_num: int) -> str:
        """Describe what a reference number reads from."""
        return self.table.ref_name(ref_num)

    def read_layout(self) -> list[DataDefinition]:
        """Assign read offsets and return the read definition in order."""
        layout: list[DataDefinition] = []
        for mapping in self.table:
            if mapping.read_var:
                mapping.read_offset = len(layout)
                layout.append(data_definition(mapping.read_var, mapping.read_var_units))
        self.read_count = len(layout)
        return layout

    def receive_data(self, values: Sequence[float]) -> list[float]:
        """Accept one frame of read values, holding back recently written ones."""
        if len(values) != self.read_count:
            raise ValueError(
                f"SimConnect data expected {self.read_count * 8} bytes "
                f"but received {len(values) * 8} bytes"
            )
        data = [float(v) for v in values]
        for mapping in self.table:
            if mapping.set_delay <= 0:
                continue
            readable = bool(mapping.read_var) and mapping.read_offset < len(data)
            if readable and data[mapping.read_offset] == mapping.set_value:
                mapping.set_delay = 0
                continue
            mapping.set_delay -= 1
            if mapping.set_delay > 0 and readable:
                data[mapping.read_offset] = mapping.set_value
        self.data = data
        return data

    def read(self, ref_num: int) -> float:
        """Current value of a reference; MAXINT when nothing has been received."""
        mapping = self.table[ref_num]
        if mapping.test_value is not None:
            mapping.test_value += mapping.test_adjust
            return mapping.test_value
        if self.data is None or mapping.read_offset >= len(self.data):
            return float(MAXINT)
        value = self.data[mapping.read_offset]
        if _is_10khz(mapping.read_var_units):
            value /= 10
        return _round3(value)

    def write(self, ref_num: int, value: float, is_adjust: bool = False) -> None:
        """Send a new value to the simulator if it differs from the current one."""
        if not self.connected or not self.data:
            return
        mapping = self.table[ref_num]
        orig = -1.0
        if mapping.read_var and mapping.read_offset < len(self.data):
            orig = _round3(self.data[mapping.read_offset])

        units = mapping.write_var_units
        if _is_10khz(units):
            value *= 10
            units = "khz"
        value = _round3(float(value))
        if orig == value:
            return

        self._writer(mapping.write_var, units, value)
        mapping.set_value = value
        mapping.set_delay = WRITE_SETTLE_FRAMES

    def written(self, ref_num: int) -> bool:
        """True while a write to this reference is still settling."""
        return self.table[ref_num].set_delay > 0