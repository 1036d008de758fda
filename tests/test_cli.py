from mithril import __version__, workspace
from mithril.__main__ import main


def test_version(capsys):
    assert main(["--version"]) == 0
    assert capsys.readouterr().out.strip().endswith(__version__)


def test_help(capsys):
    assert main(["--help"]) == 0
    assert "mod build" in capsys.readouterr().err


def test_unknown_command(capsys):
    assert main(["frobnicate"]) == 2
    assert "unknown command: frobnicate" in capsys.readouterr().err


def test_unknown_mod_command(capsys):
    assert main(["mod", "frobnicate"]) == 2
    assert "unknown mod command" in capsys.readouterr().err


def test_mod_list_uses_workspace_env(baseline_cfg, monkeypatch, capsys):
    workspace.create_mod(baseline_cfg, "fire-tweaks")
    monkeypatch.setenv("MITHRIL_DIR", str(baseline_cfg.root))
    assert main(["mod", "list"]) == 0
    assert "fire-tweaks" in capsys.readouterr().out


def test_operation_failure_exits_one(cfg, monkeypatch, capsys):
    monkeypatch.setenv("MITHRIL_DIR", str(cfg.root))
    assert main(["mod", "create", "x"]) == 1
    assert "mod init" in capsys.readouterr().err


def test_dbc_list(baseline_cfg, monkeypatch, capsys):
    monkeypatch.setenv("MITHRIL_DIR", str(baseline_cfg.root))
    assert main(["mod", "dbc", "list"]) == 0
    out = capsys.readouterr().out
    assert "Spell.dbc" in out
    assert "Total: 2 tables" in out


def test_usage_error_in_subcommand(baseline_cfg, monkeypatch, capsys):
    monkeypatch.setenv("MITHRIL_DIR", str(baseline_cfg.root))
    assert main(["mod", "dbc", "set", "Spell"]) == 2
    assert "usage:" in capsys.readouterr().err


def test_sharing_commands_are_routed(capsys):
    assert main(["mod", "registry", "--help"]) == 0
    assert "mithril mod registry install <name>" in capsys.readouterr().out
    assert main(["mod", "publish", "--help"]) == 0
    assert "mithril mod publish export --mod M" in capsys.readouterr().out
