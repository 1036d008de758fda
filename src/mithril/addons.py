from __future__ import annotations

import os
import re
import shutil
import sys
from collections import OrderedDict
from typing import Dict, List, Optional, Tuple

from .common import (
    BadInput,
    Conflict,
    MithrilError,
    eprint,
    iter_files_by_ext,
    open_in_editor,
    pop_option,
    relpath_slash,
    remove_empty_dirs,
)
from .composer import ADDON_EXTENSIONS
from .config import Config, load_config
from .workspace import require_mod

MAX_MATCHES_PER_FILE = 10
MAX_LINE_WIDTH = 150


def normalize_path(rel: str) -> str:
    rel = rel.replace("\\", "/").strip("/")
    if not rel or ".." in rel.split("/"):
        raise BadInput(f"invalid interface path: {rel!r}")
    return rel


def baseline_files(cfg: Config) -> List[str]:
    root = str(cfg.baseline_addons_dir)
    return [relpath_slash(p, root) for p in iter_files_by_ext(root, ADDON_EXTENSIONS)]


def mod_files(cfg: Config, mod: str) -> List[str]:
    root = str(cfg.mod_dir(mod) / "addons")
    return [relpath_slash(p, root) for p in iter_files_by_ext(root, ADDON_EXTENSIONS)]


def group_files(paths: List[str]) -> Dict[str, List[str]]:
    groups: Dict[str, List[str]] = {}
    for rel in paths:
        parts = rel.split("/")
        key = "/".join(parts[:3]) if len(parts) >= 3 else "/".join(parts[:2])
        groups.setdefault(key, []).append(rel)
    return OrderedDict(sorted(groups.items()))


def search_file(path: str, pattern) -> List[Tuple[int, str]]:
    hits = []
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        for lineno, line in enumerate(f, start=1):
            line = line.rstrip("\r\n")
            if pattern.search(line):
                hits.append((lineno, line))
                if len(hits) >= MAX_MATCHES_PER_FILE:
                    break
    return hits


def search(cfg: Config, expr: str, mod: Optional[str] = None):
    """Yield (rel, source, hits); a mod's copy shadows the baseline file."""
    try:
        pattern = re.compile(expr, re.IGNORECASE)
    except re.error as e:
        raise BadInput(f"invalid regex {expr!r}: {e}") from e
    shadowed = set()
    if mod:
        require_mod(cfg, mod)
        root = cfg.mod_dir(mod) / "addons"
        for rel in mod_files(cfg, mod):
            shadowed.add(rel.lower())
            hits = search_file(str(root / rel), pattern)
            if hits:
                yield rel, mod, hits
    for rel in baseline_files(cfg):
        if rel.lower() in shadowed:
            continue
        hits = search_file(str(cfg.baseline_addons_dir / rel), pattern)
        if hits:
            yield rel, "baseline", hits


def copy_to_mod(cfg: Config, mod: str, rel: str) -> str:
    require_mod(cfg, mod)
    rel = normalize_path(rel)
    dst = cfg.mod_dir(mod) / "addons" / rel
    if dst.exists():
        raise Conflict(f"interface file already in mod: {dst}")
    src = cfg.baseline_addons_dir / rel
    if not src.is_file():
        raise BadInput(f"{rel} not found in baseline (run 'mithril mod init' first)")
    dst.parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(src, dst)
    return str(dst)


def remove_from_mod(cfg: Config, mod: str, rel: str) -> str:
    require_mod(cfg, mod)
    rel = normalize_path(rel)
    path = cfg.mod_dir(mod) / "addons" / rel
    if not path.is_file():
        raise BadInput(f"interface file not in mod {mod}: {rel}")
    os.remove(path)
    remove_empty_dirs(str(path.parent), str(cfg.mod_dir(mod) / "addons"))
    return str(path)


def edit(cfg: Config, mod: str, rel: str, out) -> str:
    require_mod(cfg, mod)
    rel = normalize_path(rel)
    path = cfg.mod_dir(mod) / "addons" / rel
    if not path.is_file():
        copy_to_mod(cfg, mod, rel)
        out.write("Copied %s from baseline into %s\n" % (rel, mod))
    open_in_editor(str(path))
    return str(path)


def _usage(out=None):
    if out is None:
        out = sys.stderr
    out.write("usage: mithril mod addon list\n")
    out.write("       mithril mod addon search <regex> [--mod M]\n")
    out.write("       mithril mod addon create <path> --mod M\n")
    out.write("       mithril mod addon remove <path> --mod M\n")
    out.write("       mithril mod addon edit <path> --mod M\n")


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
        if cmd == "list":
            cfg.require_baseline()
            groups = group_files(baseline_files(cfg))
            out.write("%-55s %s\n" % ("Directory", "Files"))
            out.write("-" * 65 + "\n")
            total = 0
            for key, files in groups.items():
                out.write("%-55s %d\n" % (key, len(files)))
                total += len(files)
            out.write("Total: %d directories, %d files\n" % (len(groups), total))
            return 0
        if cmd == "search":
            if len(args) != 1:
                _usage()
                return 2
            cfg.require_baseline()
            files = matches = 0
            for rel, source, hits in search(cfg, args[0], mod):
                label = "%s [%s]" % (rel, source) if mod else rel
                out.write("=== %s (%d matches) ===\n" % (label, len(hits)))
                for lineno, line in hits:
                    if len(line) > MAX_LINE_WIDTH:
                        line = line[:MAX_LINE_WIDTH] + "..."
                    out.write("  line %d: %s\n" % (lineno, line))
                files += 1
                matches += len(hits)
            if not files:
                out.write("No matches for: %s\n" % args[0])
            else:
                out.write("Total: %d matches across %d files\n" % (matches, files))
            return 0
        if cmd in ("create", "remove", "edit"):
            if len(args) != 1 or not mod:
                _usage()
                return 2
            if cmd == "create":
                out.write("Copied: %s\n" % copy_to_mod(cfg, mod, args[0]))
            elif cmd == "remove":
                out.write("Removed: %s (the baseline version is used again)\n" % remove_from_mod(cfg, mod, args[0]))
            else:
                edit(cfg, mod, args[0], out)
                out.write("Run 'mithril mod build --mod %s' to package it.\n" % mod)
            return 0
    except (MithrilError, OSError) as e:
        eprint("mod addon %s: %s" % (cmd, e))
        return 1
    eprint("mod addon: unknown command: %s" % cmd)
    return 2
