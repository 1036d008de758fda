import os
from dataclasses import replace
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.dialects import mysql
from sqlalchemy.schema import CreateTable

from mithril import sqlbridge, wdbc
from mithril.config import Config
from mithril.schema import SortKey, get_schema, schema_from_dict
from mithril.wdbc import StringHeap


def _ddl(schema):
    ddl = str(CreateTable(sqlbridge.build_table(schema)).compile(dialect=mysql.dialect()))
    return ddl.replace("`", "")


def test_spell_ddl():
    ddl = _ddl(get_schema("Spell"))
    assert "CREATE TABLE spell" in ddl
    assert "PRIMARY KEY (id)" in ddl
    assert "spell_name_enus TEXT NOT NULL" in ddl
    assert "spell_name_flags INTEGER UNSIGNED NOT NULL" in ddl
    assert "speed DECIMAL(38, 16) NOT NULL" in ddl
    assert "power_type INTEGER NOT NULL" in ddl


def test_composite_key_and_small_ints():
    ddl = _ddl(get_schema("CharBaseInfo"))
    assert "PRIMARY KEY (race, class)" in ddl
    assert "race TINYINT UNSIGNED NOT NULL" in ddl


def test_table_without_key_gets_surrogate():
    schema = schema_from_dict(
        {"file": "Loose.dbc", "fields": [{"name": "a", "type": "int8"}, {"name": "b", "type": "string"}]}
    )
    ddl = _ddl(schema)
    assert "auto_id BIGINT UNSIGNED NOT NULL AUTO_INCREMENT" in ddl
    assert "PRIMARY KEY (auto_id)" in ddl
    assert "a TINYINT NOT NULL" in ddl


def test_unique_keys():
    schema = schema_from_dict(
        {
            "file": "U.dbc",
            "primaryKeys": ["id"],
            "uniqueKeys": [["code", "kind"]],
            "fields": [
                {"name": "id", "type": "uint32"},
                {"name": "code", "type": "uint32"},
                {"name": "kind", "type": "uint32"},
            ],
        }
    )
    assert "CONSTRAINT uk_0 UNIQUE (code, kind)" in _ddl(schema)


@pytest.mark.parametrize("cols,expected", [(1, 2000), (30, 2000), (234, 256), (60000, 1), (100000, 1)])
def test_batch_size(cols, expected):
    assert sqlbridge.batch_size(cols) == expected


def test_row_conversion_rebuilds_string_block(make_table):
    schema = get_schema("Spell")
    dbc = wdbc.decode(
        make_table("Spell", [{"id": 133, "spell_name_enUS": "Fireball", "speed": "24.5"}]), schema
    )
    cols = schema.columns()
    row = sqlbridge.record_to_row(dbc.records[0], cols, dbc.string_block)
    assert row["spell_name_enus"] == "Fireball"
    assert row["speed"] == 24.5
    # MySQL hands DECIMAL columns back as Decimal
    row["speed"] = Decimal("24.5000000000000000")
    heap = StringHeap()
    rec = sqlbridge.row_to_record(row, cols, heap)
    assert rec == dbc.records[0]
    assert heap.to_bytes() == dbc.string_block


def test_clean_float():
    assert sqlbridge.clean_float(float("nan")) == 0.0
    assert sqlbridge.clean_float(None) == 0.0
    assert sqlbridge.clean_float(Decimal("1.5")) == 1.5


def test_duplicate_keys(make_table):
    schema = schema_from_dict(
        {
            "file": "SpellIcon.dbc",
            "primaryKeys": ["id"],
            "uniqueKeys": [["texture_filename"]],
            "fields": [{"name": "id", "type": "uint32"}, {"name": "texture_filename", "type": "string"}],
        }
    )
    dbc = wdbc.decode(
        make_table("SpellIcon", [{"id": 1, "texture_filename": "a"}, {"id": 2, "texture_filename": "a"}]),
        schema,
    )
    assert sqlbridge.duplicate_keys(schema, dbc) == {("texture_filename",): 1}


def test_database_url(tmp_path):
    cfg = Config(root=tmp_path)
    url = sqlbridge.database_url(cfg)
    assert url.drivername == "mysql+pymysql"
    assert url.database == "dbc"
    assert url.query["charset"] == "utf8mb4"
    root = sqlbridge.database_url(cfg, root=True)
    assert root.username == "root" and root.database is None
    cfg.database_url = "mysql+pymysql://u:p@db/x"
    assert sqlbridge.database_url(cfg) == "mysql+pymysql://u:p@db/x"


def test_modified_tables_compares_checksums(monkeypatch):
    spell, icon, area = get_schema("Spell"), get_schema("SpellIcon"), get_schema("AreaTable")

    class FakeInspector:
        def get_table_names(self):
            return ["spell", "spellicon"]

    monkeypatch.setattr(sqlbridge, "inspect", lambda conn: FakeInspector())
    monkeypatch.setattr(sqlbridge, "stored_checksums", lambda conn: {"spell": 10, "spellicon": 20, "areatable": 5})
    monkeypatch.setattr(sqlbridge, "live_checksum", lambda conn, name: {"spell": 11, "spellicon": 20}[name])
    assert sqlbridge.modified_tables(object(), [spell, icon, area]) == [spell]


class CaptureConnection:
    def __init__(self, rows=()):
        self.rows = list(rows)
        self.statements = []

    def execute(self, stmt):
        self.statements.append(stmt)
        return self

    def mappings(self):
        return self

    def all(self):
        return self.rows


def _sql(stmt):
    return str(stmt.compile(dialect=mysql.dialect())).replace("`", "")


def test_export_orders_rows_by_sort_order():
    conn = CaptureConnection([{"race": 2, "class": 1}, {"race": 1, "class": 4}])
    dbc = sqlbridge.export_table(conn, get_schema("CharBaseInfo"))
    assert "ORDER BY charbaseinfo.race ASC, charbaseinfo.class ASC" in _sql(conn.statements[0])
    assert [(r["race"], r["class"]) for r in dbc.records] == [(2, 1), (1, 4)]
    assert dbc.header.field_count == 0
    assert dbc.header.record_size == 2


def test_export_descending_sort_and_unknown_keys():
    schema = replace(
        get_schema("CharBaseInfo"),
        sort_order=(SortKey("class", "desc"), SortKey("missing"), SortKey("race")),
    )
    conn = CaptureConnection()
    sqlbridge.export_table(conn, schema)
    sql = _sql(conn.statements[0])
    assert "ORDER BY charbaseinfo.class DESC, charbaseinfo.race ASC" in sql
    assert "missing" not in sql

    conn = CaptureConnection()
    sqlbridge.export_table(conn, replace(schema, sort_order=()))
    assert "ORDER BY" not in _sql(conn.statements[0])


def test_format_cell():
    assert sqlbridge.format_cell(None) == "NULL"
    assert sqlbridge.format_cell(5) == "5"


LIVE_URL = os.environ.get("MITHRIL_TEST_DATABASE_URL")


@pytest.mark.skipif(not LIVE_URL, reason="MITHRIL_TEST_DATABASE_URL not set")
def test_live_import_change_export(make_table, tmp_path):
    schema = get_schema("SpellIcon")
    dbc = wdbc.decode(
        make_table("SpellIcon", [{"id": 1, "texture_filename": "a"}, {"id": 2, "texture_filename": "b"}]),
        schema,
    )
    engine = create_engine(LIVE_URL)
    try:
        with sqlbridge.connect(engine) as conn:
            assert sqlbridge.import_table(conn, schema, dbc, force=True)
            assert sqlbridge.modified_tables(conn, [schema]) == []
            with conn.begin():
                conn.execute(text("UPDATE spellicon SET texture_filename = 'c' WHERE id = 2"))
            assert sqlbridge.modified_tables(conn, [schema]) == [schema]
            out = sqlbridge.export_table(conn, schema)
        assert [out.get_string(r["texture_filename"]) for r in out.records] == ["a", "c"]
    finally:
        engine.dispose()
