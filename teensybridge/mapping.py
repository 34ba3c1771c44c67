"""Data mapping files that link Teensy data refs to simulator variables.

Each non-blank line of a mapping file has the form::

    DataRef; ReadVar, units; WriteVar, units

The write part is optional and defaults to the read part. A read part that
starts with a digit declares a test value instead of a simulator variable,
optionally followed by an adjustment applied on every read, e.g.
``5+0.5``. Everything after ``#`` is a comment.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from typing import Iterable, Iterator

MAXINT = 2147483647
MAX_DATA_MAPPINGS = 256

_BLANKS = " \t"
_LINE_END = " \t\r\n"
_FLOAT_PREFIX = re.compile(r"\s*[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")


class MappingError(ValueError):
    """A mapping file could not be read or is malformed."""

    def __init__(self, message: str, line_num: int | None = None) -> None:
        super().__init__(message)
        self.line_num = line_num


@dataclass
class DataMapping:
    """One Teensy data ref and the simulator variables behind it."""

    data_ref: str
    read_var: str = ""
    read_var_units: str = ""
    write_var: str = ""
    write_var_units: str = ""
    read_offset: int = 0
    test_value: float | None = None
    test_adjust: float = 0.0
    set_value: float = 0.0
    set_delay: int = 0

    @property
    def is_test(self) -> bool:
        """True when the mapping holds a test value rather than a sim variable."""
        return self.test_value is not None


class MappingTable:
    """Ordered collection of mappings, looked up by data ref name or number."""

    def __init__(self, mappings: Iterable[DataMapping] = ()) -> None:
        self._mappings: list[DataMapping] = []
        self._index: dict[str, int] = {}
        for mapping in mappings:
            self.add(mapping)

    def add(self, mapping: DataMapping) -> int:
        """Append a mapping and return its reference number."""
        if mapping.data_ref in self._index:
            raise ValueError(f"duplicate Data Ref: {mapping.data_ref}")
        ref = len(self._mappings)
        self._mappings.append(mapping)
        self._index[mapping.data_ref] = ref
        return ref

    def __len__(self) -> int:
        return len(self._mappings)

    def __iter__(self) -> Iterator[DataMapping]:
        return iter(self._mappings)

    def __getitem__(self, ref_num: int) -> DataMapping:
        return self._mappings[ref_num]

    def __contains__(self, data_ref: object) -> bool:
        return data_ref in self._index

    def ref_num(self, data_ref: str, item_id: int) -> int | None:
        """Return the reference number of a data ref, or None if it is unmapped."""
        ref = self._index.get(data_ref)
        if ref is None:
            print(f"Teensy requested an unmapped Data Ref #{item_id}: {data_ref}")
        return ref

    def ref_name(self, ref_num: int) -> str:
        """Describe what a reference number reads from."""
        mapping = self._mappings[ref_num]
        if mapping.read_var:
            return mapping.read_var
        if mapping.test_value is None:
            return "Not mapped yet!"
        return f"Test value {mapping.test_value:.3f} ({mapping.test_adjust:+.3f})"


def strip_blanks(text: str) -> str:
    """Remove leading and trailing spaces and tabs."""
    return text.strip(_BLANKS)


def _scan_float(text: str, default: float) -> float:
    match = _FLOAT_PREFIX.match(text)
    return float(match.group()) if match else default


def _error(line_num: int, message: str) -> MappingError:
    return MappingError(f"Error in data mapping file: Line {line_num} {message}", line_num)


def _parse_line(line: str, line_num: int) -> DataMapping:
    data_part, sep, rest = line.partition(";")
    if not sep:
        raise _error(line_num, "does not contain a semi-colon")
    data_ref = strip_blanks(data_part)
    if not data_ref:
        raise _error(line_num, "has a missing Data Ref")
    mapping = DataMapping(data_ref)

    read_part, sep, write_part = rest.partition(";")
    if sep:
        write_var = strip_blanks(write_part)
        if write_var:
            if ";" in write_var:
                raise _error(line_num, "contains more than two semi-colons")
            name, comma, units = write_var.partition(",")
            if not comma:
                raise _error(line_num, "Write Var does not contain a comma")
            mapping.write_var = name
            mapping.write_var_units = strip_blanks(units)

    read_var = strip_blanks(read_part)
    if read_var:
        if read_var[0].isdigit():
            adjust_pos = read_var.find("+")
            if adjust_pos < 0:
                adjust_pos = read_var.find("-")
            if adjust_pos >= 0:
                mapping.test_adjust = _scan_float(read_var[adjust_pos:], 0.0)
                read_var = read_var[:adjust_pos]
            mapping.test_value = _scan_float(read_var, 0.0)
            read_var = ""
        else:
            name, comma, units = read_var.partition(",")
            if not comma:
                raise _error(line_num, "Read Var does not contain a comma")
            read_var = name
            mapping.read_var_units = strip_blanks(units)
            if not mapping.read_var_units:
                raise _error(line_num, "Read Var has missing Units")
    mapping.read_var = read_var

    if not mapping.write_var:
        mapping.write_var = mapping.read_var
    if not mapping.write_var_units:
        mapping.write_var_units = mapping.read_var_units
    return mapping


def parse_mappings(lines: Iterable[str]) -> MappingTable:
    """Parse the lines of a mapping file into a table."""
    table = MappingTable()
    for line_num, raw in enumerate(lines, 1):
        line = raw.split("#", 1)[0].rstrip(_LINE_END)
        if not line:
            continue
        mapping = _parse_line(line, line_num)
        if mapping.data_ref in table:
            raise _error(line_num, "has duplicate Data Ref")
        if len(table) >= MAX_DATA_MAPPINGS:
            raise _error(line_num, f"exceeds the limit of {MAX_DATA_MAPPINGS} data mappings")
        table.add(mapping)
    return table


def load_mappings(path: str | os.PathLike[str]) -> MappingTable:
    """Read a mapping file from disk."""
    try:
        handle = open(path, encoding="utf-8", errors="replace")
    except OSError as exc:
        raise MappingError(f"File not found: {os.fspath(path)}") from exc
    print(f"Loading data mappings from {os.fspath(path)}")
    with handle:
        table = parse_mappings(handle)
    print(f"Loaded {len(table)} data mappings")
    return table


def resolve_mapping_path(filename: str, base: str) -> str:
    """Return filename as is when it names a path, else place it beside base."""
    if "/" in filename or "\\" in filename or filename[1:2] == ":" or os.path.isabs(filename):
        return filename
    return os.path.join(os.path.dirname(base), filename)