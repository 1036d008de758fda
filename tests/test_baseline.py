import io
import json

import pytest

from mithril.archive import ArchiveWriter
from mithril.baseline import (
    NoArchives,
    archive_chain,
    detect_locale,
    extract_baseline,
    load_manifest,
    normalize_dbc_name,
    resolve_effective,
)
from mithril.workspace import create_mod


def test_archive_chain_order(tmp_path):
    data = tmp_path / "Data"
    (data / "deDE").mkdir(parents=True)
    for rel in ("patch-2.MPQ", "common.MPQ", "deDE/locale-deDE.MPQ", "deDE/patch-deDE.MPQ", "patch.MPQ"):
        (data / rel).write_bytes(b"")
    assert detect_locale(data) == "deDE"
    chain = [p.replace(str(data), "").lstrip("/\\").replace("\\", "/") for p in archive_chain(data, "deDE")]
    assert chain == [
        "deDE/locale-deDE.MPQ",
        "common.MPQ",
        "deDE/patch-deDE.MPQ",
        "patch.MPQ",
        "patch-2.MPQ",
    ]


def test_later_archives_win():
    listings = [
        ["DBFilesClient\\Spell.dbc", "DBFilesClient\\Map.dbc"],
        ["DBFILESCLIENT\\SPELL.DBC", "Interface\\FrameXML\\a.lua"],
    ]
    dbc, addons = resolve_effective(listings)
    assert dbc["Spell.dbc"].archive_index == 1
    assert dbc["Map.dbc"].archive_index == 0
    assert addons["interface/framexml/a.lua"].archive_index == 1


def test_normalize_name():
    assert normalize_dbc_name("DBFilesClient\\SPELLICON.dbc") == "Spellicon.dbc"
    assert normalize_dbc_name("DBFilesClient/Spell.dbc") == "Spell.dbc"


def test_extraction_writes_tables_and_csv(baseline_cfg):
    cfg = baseline_cfg
    m = load_manifest(cfg)
    assert m.locale == "enUS"
    assert set(m.files) == {"Spell.dbc", "Spellicon.dbc"}
    assert m.files["Spell.dbc"].has_meta
    assert m.files["Spell.dbc"].record_count == 2
    assert m.files["Spell.dbc"].source_mpq == "common.MPQ"
    assert (cfg.baseline_csv_dir / "Spell.dbc.csv").is_file()
    assert (cfg.baseline_addons_dir / "Interface/FrameXML/SpellBookFrame.lua").is_file()
    assert "Interface/FrameXML/SpellBookFrame.lua" in m.addons


def test_patch_archive_overrides_table(cfg, make_client, make_table):
    make_client(tables={"Spell.dbc": make_table("Spell", [{"id": 1}])})
    newer = make_table("Spell", [{"id": 1}, {"id": 2}])
    with ArchiveWriter(str(cfg.client_data_dir / "patch.MPQ")) as w:
        w.add_bytes(newer, "DBFilesClient\\Spell.dbc")
    m = extract_baseline(cfg, out=io.StringIO())
    assert m.files["Spell.dbc"].source_mpq == "patch.MPQ"
    assert (cfg.baseline_dbc_dir / "Spell.dbc").read_bytes() == newer


def test_table_without_schema_is_kept_raw(cfg, make_client):
    raw = b"WDBC" + (1).to_bytes(4, "little") + (1).to_bytes(4, "little") + (4).to_bytes(4, "little") + (1).to_bytes(4, "little") + b"\x05\0\0\0" + b"\0"
    make_client(tables={"Unknownthing.dbc": raw})
    m = extract_baseline(cfg, out=io.StringIO())
    f = m.files["Unknownthing.dbc"]
    assert not f.has_meta
    assert f.record_count == 1
    assert not (cfg.baseline_csv_dir / "Unknownthing.dbc.csv").exists()


def test_reextraction_keeps_build_order(baseline_cfg):
    cfg = baseline_cfg
    create_mod(cfg, "red-bolt")
    create_mod(cfg, "blue-bolt")
    before = load_manifest(cfg)
    extract_baseline(cfg, out=io.StringIO())
    after = load_manifest(cfg)
    assert after.build_order == ["red-bolt", "blue-bolt"]
    assert after.mpq_chain == before.mpq_chain
    assert json.loads((cfg.mod_dir("red-bolt") / "mod.json").read_text())["name"] == "red-bolt"


def test_no_archives(cfg):
    cfg.client_data_dir.mkdir(parents=True)
    with pytest.raises(NoArchives):
        extract_baseline(cfg, out=io.StringIO())
