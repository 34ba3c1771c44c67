import os

import pytest

from teensybridge.mapping import (
    DataMapping,
    MappingError,
    MappingTable,
    load_mappings,
    parse_mappings,
    resolve_mapping_path,
    strip_blanks,
)


def test_strip_blanks_only_spaces_and_tabs():
    assert strip_blanks(" \t abc \t") == "abc"
    assert strip_blanks("\nabc\n") == "\nabc\n"
    assert strip_blanks("   ") == ""


def test_read_and_default_write():
    table = parse_mappings(["sim/alt; INDICATED ALTITUDE,feet\n"])
    assert len(table) == 1
    mapping = table[0]
    assert mapping.data_ref == "sim/alt"
    assert mapping.read_var == "INDICATED ALTITUDE"
    assert mapping.read_var_units == "feet"
    assert mapping.write_var == mapping.read_var
    assert mapping.write_var_units == mapping.read_var_units
    assert mapping.test_value is None
    assert mapping.set_delay == 0


def test_separate_write_var():
    table = parse_mappings(["hdg;HEADING INDICATOR,degrees;L:HDG_SET,number"])
    mapping = table[0]
    assert mapping.read_var == "HEADING INDICATOR"
    assert mapping.write_var == "L:HDG_SET"
    assert mapping.write_var_units == "number"


def test_comments_and_blank_lines_skipped():
    lines = ["# header\n", "\n", "   \t\r\n", "a;X,bool # trailing\n", "b;Y,feet\r\n"]
    table = parse_mappings(lines)
    assert [m.data_ref for m in table] == ["a", "b"]
    assert table[0].read_var_units == "bool"
    assert table[1].read_var_units == "feet"


def test_test_value_with_adjust():
    mapping = parse_mappings(["t;5+0.5"])[0]
    assert mapping.test_value == 5.0
    assert mapping.test_adjust == 0.5
    assert mapping.read_var == ""
    assert mapping.is_test


def test_test_value_with_negative_adjust():
    mapping = parse_mappings(["t;10-2"])[0]
    assert mapping.test_value == 10.0
    assert mapping.test_adjust == -2.0


def test_test_value_without_adjust():
    mapping = parse_mappings(["t;7"])[0]
    assert mapping.test_value == 7.0
    assert mapping.test_adjust == 0.0


def test_empty_read_var_is_unmapped():
    table = parse_mappings(["t;"])
    assert table[0].test_value is None
    assert table.ref_name(0) == "Not mapped yet!"


def test_ref_name_variants():
    table = parse_mappings(["a;X,bool", "b;3+1", "c;"])
    assert table.ref_name(0) == "X"
    assert table.ref_name(1) == "Test value 3.000 (+1.000)"
    assert table.ref_name(2) == "Not mapped yet!"


def test_ref_num_lookup(capsys):
    table = parse_mappings(["a;X,bool", "b;Y,bool"])
    assert table.ref_num("b", 4) == 1
    assert table.ref_num("zzz", 9) is None
    out = capsys.readouterr().out
    assert "#9: zzz" in out


@pytest.mark.parametrize(
    "line, fragment",
    [
        ("no semicolon here", "does not contain a semi-colon"),
        ("  ;X,bool", "has a missing Data Ref"),
        ("a;X,bool;Y,bool;Z", "contains more than two semi-colons"),
        ("a;X,bool;Y", "Write Var does not contain a comma"),
        ("a;X", "Read Var does not contain a comma"),
        ("a;X,  ", "Read Var has missing Units"),
    ],
)
def test_parse_errors(line, fragment):
    with pytest.raises(MappingError) as info:
        parse_mappings(["# first\n", line])
    assert fragment in str(info.value)
    assert info.value.line_num == 2


def test_duplicate_data_ref():
    with pytest.raises(MappingError) as info:
        parse_mappings(["a;X,bool", "a;Y,bool"])
    assert "duplicate" in str(info.value)
    assert info.value.line_num == 2


def test_table_rejects_duplicate_add():
    table = MappingTable([DataMapping("a")])
    with pytest.raises(ValueError):
        table.add(DataMapping("a"))
    assert "a" in table
    assert len(table) == 1


def test_load_mappings_from_file(tmp_path):
    path = tmp_path / "data_mapping.txt"
    path.write_text("a;X,bool\nb;2+1\n")
    table = load_mappings(path)
    assert [m.data_ref for m in table] == ["a", "b"]
    assert table[1].test_value == 2.0


def test_load_mappings_missing_file(tmp_path):
    with pytest.raises(MappingError) as info:
        load_mappings(tmp_path / "missing.txt")
    assert "File not found" in str(info.value)


def test_resolve_relative_path():
    base = os.path.join("opt", "plugin", "plugin.exe")
    assert resolve_mapping_path("data_mapping.txt", base) == os.path.join(
        "opt", "plugin", "data_mapping.txt"
    )


def test_resolve_absolute_paths_unchanged():
    assert resolve_mapping_path("/etc/map.txt", "/opt/x/app") == "/etc/map.txt"
    assert resolve_mapping_path("C:\\maps\\m.txt", "/opt/x/app") == "C:\\maps\\m.txt"