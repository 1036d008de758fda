import io
import os
import subprocess

import pytest

from mithril import composer, migrations, sqlbridge, workspace
from mithril.common import BadInput, ExternalFailure, Inconsistent


class FakeRunner:
    def __init__(self, fail_on=()):
        self.fail_on = set(fail_on)
        self.calls = []
        self.closed = False

    def run(self, database, script, label=""):
        self.calls.append((database, label))
        if any(label.endswith(f) for f in self.fail_on):
            raise ExternalFailure("syntax error near 'SELEC'")

    def close(self):
        self.closed = True


@pytest.fixture
def mod_cfg(baseline_cfg):
    workspace.create_mod(baseline_cfg, "m")
    return baseline_cfg


def _write(cfg, rel, text="SELECT 1;\n"):
    path = cfg.mod_dir("m") / "sql" / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)
    return path


def test_discover_orders_by_database_then_name(mod_cfg):
    _write(mod_cfg, "world/002_b.sql")
    _write(mod_cfg, "world/001_a.sql")
    _write(mod_cfg, "world/001_a.rollback.sql")
    _write(mod_cfg, "auth/001_x.sql")
    _write(mod_cfg, "loose.sql")
    got = [(m.database, m.file) for m in migrations.discover(mod_cfg, "m")]
    assert got == [("auth", "001_x.sql"), ("world", "001_a.sql"), ("world", "002_b.sql"), ("world", "loose.sql")]


def test_failure_keeps_earlier_entries_and_skips_later(mod_cfg):
    _write(mod_cfg, "world/001_fix.sql")
    _write(mod_cfg, "world/002_more.sql")
    runner = FakeRunner(fail_on=["001_fix.sql"])
    with pytest.raises(ExternalFailure, match="001_fix.sql"):
        migrations.apply_migrations(mod_cfg, ["m"], runner=runner, out=io.StringIO())
    assert migrations.load_tracker(mod_cfg) == []
    assert runner.calls == [("world", "m/001_fix.sql")]

    runner = FakeRunner()
    n = migrations.apply_migrations(mod_cfg, ["m"], runner=runner, out=io.StringIO())
    assert n == 2
    assert migrations.applied_keys(mod_cfg) == {("m", "001_fix.sql"), ("m", "002_more.sql")}
    # nothing pending the second time
    assert migrations.apply_migrations(mod_cfg, ["m"], runner=FakeRunner(), out=io.StringIO()) == 0


def test_database_filter(mod_cfg):
    _write(mod_cfg, "world/001_a.sql")
    _write(mod_cfg, "dbc/001_spell.sql")
    runner = FakeRunner()
    migrations.apply_migrations(mod_cfg, ["m"], database="dbc", runner=runner, out=io.StringIO())
    assert runner.calls == [("dbc", "m/001_spell.sql")]


def test_create_numbers_sequentially(mod_cfg):
    first = migrations.create_migration(mod_cfg, "m", "Add NPC")
    second = migrations.create_migration(mod_cfg, "m", "add vendor!")
    assert first.file == "001_add_npc.sql"
    assert second.file == "002_add_vendor.sql"
    assert os.path.isfile(first.rollback_path)
    assert "-- Migration: Add NPC" in open(first.path).read()
    other = migrations.create_migration(mod_cfg, "m", "x", database="auth")
    assert other.file == "001_x.sql"


def test_rollback_and_reapply(mod_cfg):
    m = migrations.create_migration(mod_cfg, "m", "npc")
    migrations.apply_migrations(mod_cfg, ["m"], runner=FakeRunner(), out=io.StringIO())
    runner = FakeRunner()
    migrations.rollback_migration(mod_cfg, "m", reapply=True, runner=runner, out=io.StringIO())
    assert runner.calls == [("world", "m/001_npc.rollback.sql"), ("world", "m/001_npc.sql")]
    assert migrations.applied_keys(mod_cfg) == {m.key}
    migrations.rollback_migration(mod_cfg, "m", "001_npc", runner=FakeRunner(), out=io.StringIO())
    assert migrations.applied_keys(mod_cfg) == set()
    with pytest.raises(BadInput):
        migrations.rollback_migration(mod_cfg, "m", runner=FakeRunner(), out=io.StringIO())


def test_rollback_without_script(mod_cfg):
    _write(mod_cfg, "world/001_a.sql")
    migrations.apply_migrations(mod_cfg, ["m"], runner=FakeRunner(), out=io.StringIO())
    with pytest.raises(BadInput, match="no rollback script"):
        migrations.rollback_migration(mod_cfg, "m", runner=FakeRunner(), out=io.StringIO())


def test_rollback_of_deleted_file_is_inconsistent(mod_cfg):
    path = _write(mod_cfg, "world/001_a.sql")
    migrations.apply_migrations(mod_cfg, ["m"], runner=FakeRunner(), out=io.StringIO())
    path.unlink()
    with pytest.raises(Inconsistent):
        migrations.rollback_migration(mod_cfg, "m", runner=FakeRunner(), out=io.StringIO())
    assert migrations.prune_tracker(mod_cfg) == 1
    assert migrations.load_tracker(mod_cfg) == []


def test_remove_applied_without_rollback_forgets_it(mod_cfg):
    m = migrations.create_migration(mod_cfg, "m", "npc")
    migrations.apply_migrations(mod_cfg, ["m"], runner=FakeRunner(), out=io.StringIO())
    migrations.remove_migration(mod_cfg, "m", "001_npc")
    assert not os.path.exists(m.path)
    assert not os.path.exists(m.rollback_path)
    assert migrations.load_tracker(mod_cfg) == []


def test_remove_with_rollback_runs_it(mod_cfg):
    migrations.create_migration(mod_cfg, "m", "npc")
    migrations.apply_migrations(mod_cfg, ["m"], runner=FakeRunner(), out=io.StringIO())
    runner = FakeRunner()
    migrations.remove_migration(mod_cfg, "m", "001_npc.sql", rollback=True, runner=runner, out=io.StringIO())
    assert runner.calls == [("world", "m/001_npc.rollback.sql")]


def test_cli_apply_reports_failure(mod_cfg, capsys):
    _write(mod_cfg, "world/001_fix.sql")
    rc = migrations.main(["apply"], cfg=mod_cfg, runner=FakeRunner(fail_on=["001_fix.sql"]))
    assert rc == 1
    assert "001_fix.sql" in capsys.readouterr().err


def test_dbc_migrations_go_through_bridge_whatever_the_database_name(mod_cfg, monkeypatch):
    mod_cfg.mysql.database = "dbc_335"
    calls = []
    monkeypatch.setattr(sqlbridge, "run_script", lambda engine, script: calls.append(("bridge", script)))

    def fake_run(argv, **kwargs):
        calls.append(("external", argv[-1]))
        return subprocess.CompletedProcess(argv, 0, "", "")

    monkeypatch.setattr(migrations.subprocess, "run", fake_run)
    runner = migrations.Runner(mod_cfg, engine=object())
    runner.run(migrations.DBC_DATABASE, "UPDATE spell SET speed = 1;")
    runner.run("world", "SELECT 1;")
    assert calls == [("bridge", "UPDATE spell SET speed = 1;"), ("external", "world")]


def test_database_build_applies_dbc_migrations_only(mod_cfg, monkeypatch):
    mod_cfg.mysql.database = "dbc_335"
    _write(mod_cfg, "dbc/001_speed.sql")
    _write(mod_cfg, "world/001_npc.sql")
    monkeypatch.setattr(sqlbridge, "export_modified", lambda engine, out_dir, out=None: [])
    runner = FakeRunner()
    assert composer.export_from_database(mod_cfg, ["m"], engine=object(), runner=runner, out=io.StringIO()) == {}
    assert runner.calls == [("dbc", "m/001_speed.sql")]
