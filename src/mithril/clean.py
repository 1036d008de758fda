from __future__ import annotations

import os
import shutil
import sys
import tempfile
from typing import List, Optional

from .common import MithrilError, eprint, pop_flag
from .config import CONFIG_NAME, Config, load_config
from .workspace import disk_mods

MANIFEST_BACKUP = "manifest.json"


def _confirm(question: str) -> bool:
    try:
        answer = input(question + " [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


def backup_workspace(cfg: Config, mods: List[str]) -> str:
    backup = tempfile.mkdtemp(prefix="mithril-mod-backup-")
    for mod in mods:
        shutil.copytree(cfg.mod_dir(mod), os.path.join(backup, "modules", mod))
    if cfg.manifest_path.is_file():
        shutil.copyfile(cfg.manifest_path, os.path.join(backup, MANIFEST_BACKUP))
    config_path = cfg.root / CONFIG_NAME
    if config_path.is_file():
        shutil.copyfile(config_path, os.path.join(backup, CONFIG_NAME))
    return backup


def restore_workspace(cfg: Config, backup: str) -> None:
    mods_dir = os.path.join(backup, "modules")
    cfg.modules_dir.mkdir(parents=True, exist_ok=True)
    if os.path.isdir(mods_dir):
        for name in sorted(os.listdir(mods_dir)):
            shutil.copytree(os.path.join(mods_dir, name), cfg.mod_dir(name))
    manifest = os.path.join(backup, MANIFEST_BACKUP)
    if os.path.isfile(manifest):
        cfg.baseline_dir.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(manifest, cfg.manifest_path)
    config_path = os.path.join(backup, CONFIG_NAME)
    if os.path.isfile(config_path):
        shutil.copyfile(config_path, cfg.root / CONFIG_NAME)


def clean(cfg: Config, keep_mods: bool = True, out=None) -> int:
    """Remove the workspace, keeping mods unless keep_mods is False; returns mods kept."""
    if out is None:
        out = sys.stdout
    mods = disk_mods(cfg) if keep_mods else []
    backup = backup_workspace(cfg, mods) if keep_mods else None
    try:
        shutil.rmtree(cfg.root)
        out.write("Removed: %s\n" % cfg.root)
        if backup is not None:
            restore_workspace(cfg, backup)
    except OSError as e:
        if backup is not None:
            raise MithrilError(f"{e} (backup kept at {backup})") from e
        raise
    if backup is not None:
        shutil.rmtree(backup, ignore_errors=True)
    return len(mods)


def prune_trackers(cfg: Config, out=None) -> int:
    from . import corepatch, migrations, patcher, scripts

    if out is None:
        out = sys.stdout
    total = 0
    for label, mod in (
        ("sql migrations", migrations),
        ("core patches", corepatch),
        ("binary patches", patcher),
        ("scripts", scripts),
    ):
        n = mod.prune_tracker(cfg)
        if n:
            out.write("Pruned %d stale %s entr%s\n" % (n, label, "y" if n == 1 else "ies"))
        total += n
    if not total:
        out.write("Trackers are consistent.\n")
    return total


def _usage(out=None):
    if out is None:
        out = sys.stderr
    out.write("usage: mithril clean [--all] [--yes]\n")
    out.write("       mithril clean --trackers\n")
    out.write("  --all       also remove mods (by default they are preserved)\n")
    out.write("  --yes, -y   do not ask for confirmation\n")
    out.write("  --trackers  only drop tracker entries whose files no longer exist\n")


def main(argv=None, cfg: Optional[Config] = None) -> int:
    args = list(argv or [])
    if args and args[0] in ("-h", "--help", "help"):
        _usage(sys.stdout)
        return 0
    remove_all = pop_flag(args, "--all")
    assume_yes = pop_flag(args, "--yes", "-y")
    trackers = pop_flag(args, "--trackers")
    if args or (trackers and remove_all):
        _usage()
        return 2
    out = sys.stdout
    try:
        cfg = cfg or load_config()
        if trackers:
            prune_trackers(cfg, out)
            return 0
        if not cfg.root.exists():
            out.write("Nothing to clean; %s does not exist.\n" % cfg.root)
            return 0
        if remove_all:
            question = "Remove ALL of %s, including every mod?" % cfg.root
        else:
            question = "Remove %s (mods are preserved)?" % cfg.root
        if not assume_yes and not _confirm(question):
            out.write("Aborted.\n")
            return 1
        kept = clean(cfg, keep_mods=not remove_all, out=out)
        if kept:
            out.write("Preserved %d mod(s) in %s\n" % (kept, cfg.modules_dir))
        out.write("Run 'mithril mod init' to extract a fresh baseline.\n")
        return 0
    except (MithrilError, OSError) as e:
        eprint("clean: %s" % e)
        return 1
