import io

import pytest

from mithril import csvbridge, wdbc
from mithril.archive import ArchiveWriter
from mithril.baseline import extract_baseline
from mithril.config import Config
from mithril.schema import get_schema

FIREBALL = {"id": 133, "spell_name_enUS": "Fireball", "casting_time_index": 14}
FROSTBOLT = {"id": 116, "spell_name_enUS": "Frostbolt", "casting_time_index": 15}


def build_table(name, rows):
    """Encode dict rows (column name -> value) into a DBC for the named schema."""
    schema = get_schema(name)
    header = schema.column_names()
    cells = [[str(r.get(h, "")) for h in header] for r in rows]
    return wdbc.encode(csvbridge.rows_to_dbc(header, cells, schema), schema)


@pytest.fixture
def make_table():
    return build_table


@pytest.fixture
def cfg(tmp_path, monkeypatch):
    monkeypatch.delenv("MITHRIL_DIR", raising=False)
    return Config(root=tmp_path / "mithril-data")


@pytest.fixture
def make_client(cfg):
    def _make(tables=None, addons=None, locale="enUS", exe=b"MZ" + b"\0" * 0x200):
        data = cfg.client_data_dir
        (data / locale).mkdir(parents=True, exist_ok=True)
        with ArchiveWriter(str(data / "common.MPQ")) as w:
            for name, raw in (tables or {}).items():
                w.add_bytes(raw, "DBFilesClient\\" + name)
        with ArchiveWriter(str(data / locale / ("locale-%s.MPQ" % locale))) as w:
            for rel, raw in (addons or {}).items():
                w.add_bytes(raw, rel.replace("/", "\\"))
        cfg.exe_path.write_bytes(exe)
        return data

    return _make


@pytest.fixture
def baseline_cfg(cfg, make_client):
    make_client(
        tables={
            "Spell.dbc": build_table("Spell", [FROSTBOLT, FIREBALL]),
            "SpellIcon.dbc": build_table(
                "SpellIcon", [{"id": 1, "texture_filename": "Interface\\Icons\\Temp"}]
            ),
        },
        addons={
            "Interface/FrameXML/SpellBookFrame.lua": b"-- spellbook\nlocal x = 1\n",
            "Interface/AddOns/Blizzard_AuctionUI/Blizzard_AuctionUI.toc": b"## Title: Auction\n",
        },
    )
    extract_baseline(cfg, out=io.StringIO())
    return cfg


def read_spell(raw, spell_id):
    schema = get_schema("Spell")
    dbc = wdbc.decode(raw, schema)
    for rec in dbc.records:
        if rec["id"] == spell_id:
            return dbc, rec
    raise AssertionError("spell %d not found" % spell_id)


@pytest.fixture
def spell_reader():
    return read_spell
