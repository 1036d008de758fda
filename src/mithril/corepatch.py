from __future__ import annotations

import os
import subprocess
import sys
from dataclasses import dataclass
from typing import List, Optional, Set, Tuple

from .common import (
    BadInput,
    Conflict,
    ExternalFailure,
    MithrilError,
    NotInitialized,
    eprint,
    now_iso,
    pop_option,
    read_json,
    write_json,
    write_text,
)
from .config import Config, load_config
from .migrations import slugify
from .workspace import all_mods, require_mod

TRACKER = "core_patches_applied.json"
PATCH_EXTENSIONS = (".patch", ".diff")

_TEMPLATE = """# Core patch: {name}
# Mod: {mod}
#
# Replace this file with a git diff against the server source tree, e.g.
#   git diff > {fname}
#   git format-patch -1 HEAD --stdout > {fname}
"""


@dataclass(frozen=True)
class CorePatch:
    mod: str
    name: str
    path: str

    @property
    def key(self) -> Tuple[str, str]:
        return (self.mod, self.name)


def discover(cfg: Config, mod: str) -> List[CorePatch]:
    d = cfg.mod_dir(mod) / "core-patches"
    if not d.is_dir():
        return []
    return [
        CorePatch(mod, p.name, str(p))
        for p in sorted(d.iterdir())
        if p.is_file() and p.name.lower().endswith(PATCH_EXTENSIONS)
    ]


def load_tracker(cfg: Config) -> List[dict]:
    data = read_json(str(cfg.tracker_path(TRACKER)), {}) or {}
    return list(data.get("applied") or [])


def save_tracker(cfg: Config, entries: List[dict]) -> None:
    write_json(str(cfg.tracker_path(TRACKER)), {"applied": entries})


def applied_keys(cfg: Config) -> Set[Tuple[str, str]]:
    return {(str(e.get("mod")), str(e.get("file"))) for e in load_tracker(cfg)}


def _patch_name(name: str) -> str:
    if name.lower().endswith(PATCH_EXTENSIONS):
        return name
    return slugify(name) + ".patch"


def create_patch(cfg: Config, mod: str, name: str) -> str:
    require_mod(cfg, mod)
    fname = _patch_name(name)
    path = cfg.mod_dir(mod) / "core-patches" / fname
    if path.exists():
        raise Conflict(f"core patch already exists: {path}")
    write_text(str(path), _TEMPLATE.format(name=name, mod=mod, fname=fname))
    return str(path)


def remove_patch(cfg: Config, mod: str, name: str) -> str:
    require_mod(cfg, mod)
    for p in discover(cfg, mod):
        if p.name == name or p.name == _patch_name(name):
            os.remove(p.path)
            if p.key in applied_keys(cfg):
                save_tracker(
                    cfg, [e for e in load_tracker(cfg) if (e.get("mod"), e.get("file")) != p.key]
                )
            return p.path
    raise BadInput(f"core patch not found in {mod}: {name}")


def _git(source_dir: str, *args) -> subprocess.CompletedProcess:
    try:
        return subprocess.run(
            ["git", *args], cwd=source_dir, capture_output=True, text=True
        )
    except FileNotFoundError as e:
        raise ExternalFailure("git not found on PATH") from e


def _detail(proc: subprocess.CompletedProcess) -> str:
    return (proc.stderr or proc.stdout or "").strip()


def require_source(cfg: Config) -> str:
    src = str(cfg.source_dir)
    if not os.path.isdir(src):
        raise NotInitialized(f"server source not found at {src}")
    if not os.path.exists(os.path.join(src, ".git")):
        raise NotInitialized(f"server source at {src} is not a git repository")
    return src


def apply_patch(source_dir: str, patch: CorePatch, out=None) -> bool:
    """Apply one patch; returns True when a 3-way merge was needed."""
    if out is None:
        out = sys.stdout
    path = os.path.abspath(patch.path)
    check = _git(source_dir, "apply", "--check", path)
    three_way = False
    if check.returncode != 0:
        out.write("  does not apply cleanly, trying 3-way: %s\n" % _detail(check))
        check = _git(source_dir, "apply", "--check", "--3way", path)
        if check.returncode != 0:
            raise ExternalFailure(
                f"{patch.mod}/{patch.name} cannot be applied: {_detail(check)}; stopping"
            )
        three_way = True
    proc = _git(source_dir, "apply", *(["--3way"] if three_way else []), path)
    if proc.returncode != 0:
        raise ExternalFailure(f"{patch.mod}/{patch.name} failed: {_detail(proc)}; stopping")
    return three_way


def apply_patches(cfg: Config, mods: List[str], out=None) -> int:
    if out is None:
        out = sys.stdout
    pending = []
    done = applied_keys(cfg)
    for mod in mods:
        pending += [p for p in discover(cfg, mod) if p.key not in done]
    if not pending:
        out.write("No pending core patches.\n")
        return 0
    src = require_source(cfg)
    entries = load_tracker(cfg)
    count = 0
    for p in pending:
        out.write("Applying %s/%s...\n" % (p.mod, p.name))
        apply_patch(src, p, out)
        entries.append({"mod": p.mod, "file": p.name, "applied_at": now_iso()})
        save_tracker(cfg, entries)
        count += 1
    out.write("Applied %d core patch(es)\n" % count)
    return count


def prune_tracker(cfg: Config) -> int:
    entries = load_tracker(cfg)
    keep = [
        e for e in entries
        if any(p.name == e.get("file") for p in discover(cfg, str(e.get("mod", ""))))
    ]
    if len(keep) != len(entries):
        save_tracker(cfg, keep)
    return len(entries) - len(keep)


def _print_list(cfg: Config, mods: List[str], out) -> None:
    applied = applied_keys(cfg)
    found = False
    for mod in mods:
        patches = discover(cfg, mod)
        if not patches:
            continue
        found = True
        out.write("%s:\n" % mod)
        for p in patches:
            mark = "[✓ applied]" if p.key in applied else "[pending]"
            out.write("  %-11s %s\n" % (mark, p.name))
    if not found:
        out.write("No core patches.\n")


def _usage(out=None):
    if out is None:
        out = sys.stderr
    out.write("usage: mithril mod core create <name> --mod M\n")
    out.write("       mithril mod core remove <name> --mod M\n")
    out.write("       mithril mod core list [--mod M]\n")
    out.write("       mithril mod core status [--mod M]\n")
    out.write("       mithril mod core apply [--mod M]\n")


def main(argv=None, cfg: Optional[Config] = None) -> int:
    args = list(argv or [])
    if not args or args[0] in ("-h", "--help", "help"):
        _usage(sys.stdout if args else None)
        return 0 if args else 2
    cmd = args.pop(0)
    out = sys.stdout
    try:
        mod = pop_option(args, "--mod")
        cfg = cfg or load_config()
        if cmd in ("create", "remove"):
            if len(args) != 1 or not mod:
                _usage()
                return 2
            if cmd == "create":
                out.write("Created: %s\n" % create_patch(cfg, mod, args[0]))
                out.write("  Apply: mithril mod core apply --mod %s\n" % mod)
            else:
                out.write("Removed: %s\n" % remove_patch(cfg, mod, args[0]))
            return 0
        if cmd in ("list", "status", "apply"):
            if args:
                _usage()
                return 2
            if mod:
                require_mod(cfg, mod)
            mods = [mod] if mod else all_mods(cfg)
            if cmd == "apply":
                apply_patches(cfg, mods, out)
            else:
                _print_list(cfg, mods, out)
            return 0
    except (MithrilError, OSError) as e:
        eprint("mod core %s: %s" % (cmd, e))
        return 1
    eprint("mod core: unknown command: %s" % cmd)
    return 2
