import pytest

from mithril.common import BadInput, UnknownFieldType
from mithril.schema import (
    LOC_LANGS,
    get_schema,
    list_schemas,
    require_schema,
    schema_from_dict,
)


@pytest.mark.parametrize("name", ["Spell", "spell", "Spell.dbc", "Spell.dbc.csv", "SPELL.DBC"])
def test_lookup_is_case_insensitive(name):
    schema = get_schema(name)
    assert schema is not None
    assert schema.file == "Spell.dbc"


def test_unknown_table():
    assert get_schema("NoSuchTable") is None
    with pytest.raises(BadInput):
        require_schema("NoSuchTable")


def test_registry_is_consistent():
    schemas = list_schemas()
    assert len(schemas) >= 10
    for s in schemas:
        assert s.record_size() % 4 == 0 or any(f.type in ("int8", "uint8") for f in s.fields)
        names = s.column_names()
        assert len(names) == len(set(n.lower() for n in names)), s.file
        for pk in s.primary_keys:
            assert pk.lower() in {n.lower() for n in names}


def test_spell_layout():
    s = get_schema("Spell")
    assert s.record_size() == 936
    assert s.table_name == "spell"
    assert "spell_name_enUS" in s.column_names()
    assert "spell_name_flags" in s.column_names()


def test_loc_columns():
    s = schema_from_dict(
        {"file": "Thing.dbc", "fields": [{"name": "id", "type": "uint32"}, {"name": "title", "type": "Loc"}]}
    )
    cols = s.columns()
    assert len(cols) == 1 + len(LOC_LANGS)
    assert cols[1].name == "title_enUS" and cols[1].is_text
    assert cols[-1].name == "title_flags" and cols[-1].type == "uint32"
    assert s.record_size() == 4 + 68


def test_array_fields_expand():
    s = schema_from_dict(
        {"file": "Arr.dbc", "fields": [{"name": "v", "type": "int32", "count": 3}]}
    )
    assert s.column_names() == ["v_1", "v_2", "v_3"]
    assert s.record_size() == 12


def test_unknown_type():
    s = schema_from_dict({"file": "Bad.dbc", "fields": [{"name": "x", "type": "double"}]})
    with pytest.raises(UnknownFieldType):
        s.record_size()


def test_invalid_descriptor():
    with pytest.raises(BadInput):
        schema_from_dict({"fields": []})
