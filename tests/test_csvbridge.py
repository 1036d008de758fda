import pytest

from mithril import csvbridge, wdbc
from mithril.common import BadInput
from mithril.schema import Column, get_schema


@pytest.mark.parametrize(
    "value,text",
    [
        (0.0, "0"),
        (1.0, "1"),
        (24.5, "24.5"),
        (0.1, "0.1"),
        (-3.25, "-3.25"),
        (1e-05, "0.00001"),
        (float("nan"), "0"),
        (float("inf"), "0"),
        (None, "0"),
    ],
)
def test_format_float(value, text):
    assert csvbridge.format_float(value) == text


def test_format_float_round_trips_float32():
    import struct

    v = struct.unpack("<f", struct.pack("<f", 0.3))[0]
    text = csvbridge.format_float(v)
    assert text == "0.3"
    assert struct.pack("<f", float(text)) == struct.pack("<f", v)


def test_parse_cell_numeric():
    col = Column("x", "uint32", "x")
    assert csvbridge.parse_cell(" 42 ", col) == 42
    assert csvbridge.parse_cell("", col) == 0
    assert csvbridge.parse_cell("7.0", col) == 7
    with pytest.raises(BadInput):
        csvbridge.parse_cell("-1", col)
    with pytest.raises(BadInput):
        csvbridge.parse_cell("abc", col)
    with pytest.raises(BadInput):
        csvbridge.parse_cell("1.5", col)


@pytest.mark.parametrize(
    "typ,ok,bad",
    [("int8", "-128", "128"), ("uint8", "255", "256"), ("int32", "-2147483648", "2147483648")],
)
def test_parse_cell_ranges(typ, ok, bad):
    col = Column("x", typ, "x")
    assert csvbridge.parse_cell(ok, col) == int(ok)
    with pytest.raises(BadInput):
        csvbridge.parse_cell(bad, col)


def test_float_overflow():
    with pytest.raises(BadInput):
        csvbridge.parse_cell("1e39", Column("f", "float", "f"))


def test_export_then_import(tmp_path, make_table):
    schema = get_schema("Spell")
    raw = make_table(
        "Spell",
        [
            {"id": 133, "spell_name_enUS": "Fireball", "description_enUS": 'Hurls a "fiery" ball,\nburning.', "speed": "24"},
            {"id": 116, "spell_name_enUS": "  padded  ", "spell_name_flags": 16712190},
        ],
    )
    dbc = wdbc.decode(raw, schema)
    path = str(tmp_path / "Spell.dbc.csv")
    csvbridge.export_csv(dbc, schema, path)
    with open(path, "rb") as f:
        head = f.read(3)
    assert head == b"\xef\xbb\xbf"

    again = csvbridge.import_csv(path, schema)
    assert wdbc.encode(again, schema) == raw
    names = [again.get_string(r["spell_name"][0]) for r in again.records]
    assert names == ["Fireball", "  padded  "]


def test_header_match_falls_back_to_case_insensitive(tmp_path):
    schema = get_schema("SpellIcon")
    dbc = csvbridge.rows_to_dbc(["ID", "Texture_Filename"], [["5", "x"]], schema)
    assert dbc.records[0]["id"] == 5
    assert dbc.get_string(dbc.records[0]["texture_filename"]) == "x"


def test_bad_cell_reports_line():
    schema = get_schema("SpellIcon")
    with pytest.raises(BadInput, match="line 3"):
        csvbridge.rows_to_dbc(["id", "texture_filename"], [["1", "a"], ["oops", "b"]], schema)


def test_empty_csv(tmp_path):
    path = tmp_path / "empty.csv"
    path.write_bytes(b"")
    with pytest.raises(BadInput):
        csvbridge.read_rows(str(path))
