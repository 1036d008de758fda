import pytest

from mithril import workspace
from mithril.baseline import load_manifest
from mithril.common import BadInput, Conflict, NotInitialized
from mithril.workspace import ModMeta


def test_create_requires_baseline(cfg):
    with pytest.raises(NotInitialized):
        workspace.create_mod(cfg, "fire-tweaks")


def test_create_list_remove(baseline_cfg):
    cfg = baseline_cfg
    workspace.create_mod(cfg, "fire-tweaks", "faster fireball")
    workspace.create_mod(cfg, "blue-bolt")
    for sub in workspace.MOD_SUBDIRS:
        assert (cfg.mod_dir("fire-tweaks") / sub).is_dir()
    assert workspace.all_mods(cfg) == ["fire-tweaks", "blue-bolt"]
    assert load_manifest(cfg).build_order == ["fire-tweaks", "blue-bolt"]
    assert workspace.load_mod_meta(cfg, "fire-tweaks").description == "faster fireball"

    workspace.remove_mod(cfg, "fire-tweaks")
    assert not cfg.mod_dir("fire-tweaks").exists()
    assert workspace.all_mods(cfg) == ["blue-bolt"]
    assert load_manifest(cfg).build_order == ["blue-bolt"]


def test_create_twice_conflicts(baseline_cfg):
    workspace.create_mod(baseline_cfg, "a")
    with pytest.raises(Conflict):
        workspace.create_mod(baseline_cfg, "a")


@pytest.mark.parametrize("name", ["", "baseline", "Build", "a/b", "a.b", "has space", "..\\x"])
def test_invalid_names(baseline_cfg, name):
    with pytest.raises(BadInput):
        workspace.create_mod(baseline_cfg, name)


def test_remove_missing(baseline_cfg):
    with pytest.raises(BadInput):
        workspace.remove_mod(baseline_cfg, "ghost")


def test_mods_on_disk_but_not_in_order_come_last(baseline_cfg):
    cfg = baseline_cfg
    workspace.create_mod(cfg, "first")
    stray = cfg.mod_dir("stray")
    stray.mkdir()
    workspace.save_mod_meta(cfg, ModMeta(name="stray"))
    (cfg.modules_dir / "not-a-mod").mkdir()
    assert workspace.all_mods(cfg) == ["first", "stray"]


def test_slot_sequence():
    seq = workspace.slot_sequence("M")
    assert seq[:12] == list("ABCDEFGHIJKL")
    assert seq[12:14] == ["AA", "AB"]
    assert seq[-1] == "LL"
    assert len(seq) == 12 + 144
    assert "A" not in workspace.slot_sequence("A")


def test_assign_slots_is_persistent(baseline_cfg):
    cfg = baseline_cfg
    for name in ("one", "two", "three"):
        workspace.create_mod(cfg, name)
    assert workspace.assign_slots(cfg, ["two"]) == {"two": "A"}
    slots = workspace.assign_slots(cfg, ["one", "two", "three"])
    assert slots == {"one": "B", "two": "A", "three": "C"}
    assert workspace.load_mod_meta(cfg, "three").patch_slot == "C"
    workspace.remove_mod(cfg, "one")
    workspace.create_mod(cfg, "four")
    assert workspace.assign_slots(cfg, ["four"]) == {"four": "B"}


def test_duplicate_slots_conflict(baseline_cfg):
    cfg = baseline_cfg
    for name in ("one", "two"):
        workspace.create_mod(cfg, name)
        meta = workspace.load_mod_meta(cfg, name)
        meta.patch_slot = "C"
        workspace.save_mod_meta(cfg, meta)
    with pytest.raises(Conflict):
        workspace.assign_slots(cfg, ["one"])


def test_slots_exhausted(baseline_cfg, monkeypatch):
    cfg = baseline_cfg
    monkeypatch.setattr(workspace, "slot_sequence", lambda reserved="M": ["A"])
    workspace.create_mod(cfg, "one")
    workspace.create_mod(cfg, "two")
    with pytest.raises(Conflict):
        workspace.assign_slots(cfg, ["one", "two"])


def test_cli_list(baseline_cfg, capsys):
    workspace.create_mod(baseline_cfg, "fire-tweaks", "faster fireball")
    assert workspace.main(["list"], cfg=baseline_cfg) == 0
    out = capsys.readouterr().out
    assert "fire-tweaks" in out
    assert "faster fireball" in out


def test_cli_errors(baseline_cfg, capsys):
    assert workspace.main(["remove", "ghost"], cfg=baseline_cfg) == 1
    assert "mod not found: ghost" in capsys.readouterr().err
    assert workspace.main(["create"], cfg=baseline_cfg) == 2
