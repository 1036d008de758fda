import io

import pytest

from mithril import addons, csvbridge, dbctool, workspace
from mithril.common import BadInput, Conflict


@pytest.fixture
def mod_cfg(baseline_cfg):
    workspace.create_mod(baseline_cfg, "m")
    return baseline_cfg


@pytest.mark.parametrize("raw,expected", [("Interface\\FrameXML\\A.lua", "Interface/FrameXML/A.lua"), ("/x/y.xml", "x/y.xml")])
def test_normalize_path(raw, expected):
    assert addons.normalize_path(raw) == expected


@pytest.mark.parametrize("raw", ["", "../etc/passwd", "Interface/../../x"])
def test_normalize_path_rejects(raw):
    with pytest.raises(BadInput):
        addons.normalize_path(raw)


def test_group_files():
    groups = addons.group_files(["Interface/AddOns/Foo/a.lua", "Interface/AddOns/Foo/b.xml", "Interface/FrameXML/c.lua"])
    assert list(groups) == ["Interface/AddOns/Foo", "Interface/FrameXML/c.lua"]
    assert len(groups["Interface/AddOns/Foo"]) == 2


def test_addon_search_mod_shadows_baseline(mod_cfg):
    rel = "Interface/FrameXML/SpellBookFrame.lua"
    path = addons.copy_to_mod(mod_cfg, "m", rel)
    with open(path, "w") as f:
        f.write("local x = 99\n")
    hits = list(addons.search(mod_cfg, r"local x", "m"))
    assert hits == [(rel, "m", [(1, "local x = 99")])]
    hits = list(addons.search(mod_cfg, r"LOCAL X"))
    assert hits == [(rel, "baseline", [(2, "local x = 1")])]
    with pytest.raises(BadInput):
        list(addons.search(mod_cfg, "("))


def test_addon_copy_and_remove(mod_cfg):
    rel = "Interface/AddOns/Blizzard_AuctionUI/Blizzard_AuctionUI.toc"
    addons.copy_to_mod(mod_cfg, "m", rel)
    with pytest.raises(Conflict):
        addons.copy_to_mod(mod_cfg, "m", rel)
    addons.remove_from_mod(mod_cfg, "m", rel)
    assert not (mod_cfg.mod_dir("m") / "addons" / "Interface").exists()
    assert (mod_cfg.mod_dir("m") / "addons").is_dir()
    with pytest.raises(BadInput):
        addons.copy_to_mod(mod_cfg, "m", "Interface/Nope.lua")


def test_addon_edit_uses_editor(mod_cfg, monkeypatch):
    opened = []
    monkeypatch.setattr(addons, "open_in_editor", opened.append)
    path = addons.edit(mod_cfg, "m", "Interface/FrameXML/SpellBookFrame.lua", io.StringIO())
    assert opened == [path]


def test_resolve_table(baseline_cfg):
    assert dbctool.resolve_table(baseline_cfg, "spell") == "Spell.dbc"
    assert dbctool.resolve_table(baseline_cfg, "SPELL.DBC") == "Spell.dbc"
    assert dbctool.resolve_table(baseline_cfg, "spellicon.csv") == "Spellicon.dbc"
    with pytest.raises(BadInput):
        dbctool.resolve_table(baseline_cfg, "Nope")


def test_set_copies_then_edits(mod_cfg):
    path, copied = dbctool.ensure_mod_copy(mod_cfg, "m", "Spell.dbc")
    assert copied
    assert dbctool.set_values(path, ("id", "133"), {"casting_time_index": "1"}) == 1
    header, rows = csvbridge.read_rows(path)
    row = next(r for r in rows if r[0] == "133")
    assert row[header.index("casting_time_index")] == "1"
    assert dbctool.ensure_mod_copy(mod_cfg, "m", "Spell.dbc") == (path, False)


def test_set_errors(mod_cfg):
    path, _ = dbctool.ensure_mod_copy(mod_cfg, "m", "Spell.dbc")
    with pytest.raises(BadInput, match="not found"):
        dbctool.set_values(path, ("id", "133"), {"nope": "1"})
    with pytest.raises(BadInput, match="no row"):
        dbctool.set_values(path, ("id", "999999"), {"casting_time_index": "1"})


def test_dbc_search(mod_cfg):
    hits = list(dbctool.search(mod_cfg, "Frostbolt"))
    assert [(t, s) for t, s, _ in hits] == [("Spell.dbc", "baseline")]


def test_inspect_output(baseline_cfg, capsys):
    assert dbctool.main(["inspect", "spell"], cfg=baseline_cfg) == 0
    out = capsys.readouterr().out
    assert "records: 2" in out
    assert "record size: 936 bytes" in out
    assert "spell_name" in out
