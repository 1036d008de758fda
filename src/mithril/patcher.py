"""Byte patches for the client executable.

Every apply rebuilds the executable from ``<exe>.clean``: tracked patches are
re-applied in insertion order, then the new ones, and only then is the
tracker updated.  Native overlays (``.dll`` files shipped next to a mod's
descriptor) are copied beside the executable and tracked under the same
``<mod>/binary-patches/<file>`` naming.
"""

from __future__ import annotations

import json
import os
import shutil
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

from .common import (
    BadInput,
    Inconsistent,
    MithrilError,
    NotInitialized,
    OutOfBounds,
    eprint,
    file_md5,
    now_iso,
    pop_option,
    read_bytes,
    read_json,
    relpath_slash,
    warn,
    write_bytes,
    write_json,
)
from .config import Config, load_config
from .workspace import all_mods, require_mod

CLEAN_CLIENT_MD5 = "45892bdedd0ad70aed4ccd22d9fb5984"
TRACKER = "binary_patches_applied.json"
BACKUP_SUFFIX = ".clean"
NATIVE_EXTENSIONS = (".dll",)

BUILTIN_PATCHES = {
    "allow-custom-gluexml": {
        "name": "allow-custom-gluexml",
        "description": "Disable the GlueXML/FrameXML integrity check so modified interface files load.",
        "patches": [
            {"address": "0x126", "bytes": ["0x23"]},
            {"address": "0x1f41bf", "bytes": ["0xeb"]},
            {"address": "0x415a25", "bytes": ["0xeb"]},
            {"address": "0x415a3f", "bytes": ["0x3"]},
            {"address": "0x415a95", "bytes": ["0x3"]},
            {"address": "0x415b46", "bytes": ["0xeb"]},
            {"address": "0x415b5f", "bytes": ["0xb8", "0x03"]},
            {"address": "0x415b61", "bytes": ["0x0", "0x0", "0x0", "0xeb", "0xed"]},
        ],
    },
    "large-address-aware": {
        "name": "large-address-aware",
        "description": "Set the Large Address Aware flag so the client can use more than 2GB of RAM.",
        "patches": [{"address": "0x000126", "bytes": ["0x23"]}],
    },
}


@dataclass
class PatchEntry:
    address: int
    data: bytes


@dataclass
class PatchFile:
    name: str = ""
    description: str = ""
    patches: List[PatchEntry] = field(default_factory=list)
    path: Optional[str] = None


def _strip_hex(s) -> str:
    s = str(s).strip()
    if s[:2] in ("0x", "0X"):
        s = s[2:]
    return s


def parse_address(s) -> int:
    text = _strip_hex(s)
    try:
        v = int(text, 16)
    except ValueError as e:
        raise BadInput(f"invalid address {s!r}") from e
    if v < 0 or v > 0xFFFFFFFFFFFFFFFF:
        raise BadInput(f"address out of range: {s!r}")
    return v


def parse_byte(s) -> int:
    text = _strip_hex(s)
    try:
        v = int(text, 16)
    except ValueError as e:
        raise BadInput(f"invalid byte {s!r}") from e
    if v < 0 or v > 0xFF:
        raise BadInput(f"byte out of range: {s!r}")
    return v


def parse_patch_file(d, name: str = "", path: Optional[str] = None) -> PatchFile:
    if not isinstance(d, dict) or not isinstance(d.get("patches"), list):
        raise BadInput(f"{path or name}: expected an object with a 'patches' list")
    entries = []
    for i, p in enumerate(d["patches"]):
        if not isinstance(p, dict) or "address" not in p or not isinstance(p.get("bytes"), list):
            raise BadInput(f"{path or name}: patch {i}: needs 'address' and a 'bytes' list")
        try:
            entries.append(
                PatchEntry(parse_address(p["address"]), bytes(parse_byte(b) for b in p["bytes"]))
            )
        except BadInput as e:
            raise BadInput(f"{path or name}: patch {i}: {e}") from e
    return PatchFile(
        name=str(d.get("name") or name),
        description=str(d.get("description") or ""),
        patches=entries,
        path=path,
    )


def load_patch_file(path: str) -> PatchFile:
    try:
        with open(path, "r", encoding="utf-8") as f:
            d = json.load(f)
    except json.JSONDecodeError as e:
        raise BadInput(f"{path}: {e}") from e
    return parse_patch_file(d, os.path.splitext(os.path.basename(path))[0], path)


def apply_to_buffer(buf: bytearray, pf: PatchFile) -> None:
    for i, p in enumerate(pf.patches):
        end = p.address + len(p.data)
        if end > len(buf):
            raise OutOfBounds(
                f"{pf.name}: patch {i}: 0x{p.address:x} + {len(p.data)} bytes exceeds file size ({len(buf)})"
            )
        buf[p.address : end] = p.data


def ensure_backup(exe_path: str) -> Tuple[str, bool]:
    backup = exe_path + BACKUP_SUFFIX
    if os.path.isfile(backup):
        return backup, False
    shutil.copyfile(exe_path, backup)
    return backup, True


def verify_clean(path: str) -> Tuple[bool, str]:
    actual = file_md5(path)
    return actual == CLEAN_CLIENT_MD5, actual


def load_tracker(cfg: Config) -> List[dict]:
    data = read_json(str(cfg.tracker_path(TRACKER)), {}) or {}
    return list(data.get("applied") or [])


def save_tracker(cfg: Config, entries: List[dict]) -> None:
    write_json(str(cfg.tracker_path(TRACKER)), {"applied": entries})


def applied_names(cfg: Config) -> List[str]:
    return [str(e.get("name")) for e in load_tracker(cfg)]


def is_overlay(name: str) -> bool:
    return name.lower().endswith(NATIVE_EXTENSIONS)


def mod_descriptors(cfg: Config, mod: str) -> List[str]:
    d = cfg.mod_dir(mod) / "binary-patches"
    if not d.is_dir():
        return []
    return sorted(str(p) for p in d.iterdir() if p.is_file() and p.name.lower().endswith(".json"))


def _tracker_name(cfg: Config, path: str) -> str:
    p = os.path.abspath(path)
    root = os.path.abspath(cfg.modules_dir)
    if p.startswith(root + os.sep):
        return relpath_slash(p, root)
    return p


def resolve_patch(cfg: Config, ref: str) -> Tuple[str, PatchFile]:
    """Resolve a built-in name, a modules-relative name or a descriptor path."""
    if ref in BUILTIN_PATCHES:
        return ref, parse_patch_file(BUILTIN_PATCHES[ref], ref)
    candidates = [Path(ref), cfg.modules_dir / ref]
    if not ref.lower().endswith(".json"):
        candidates.append(cfg.modules_dir / (ref + ".json"))
    for c in candidates:
        if c.is_file():
            return _tracker_name(cfg, str(c)), load_patch_file(str(c))
    raise BadInput(f"unknown patch: {ref} (not a built-in and no such descriptor)")


def _overlays_for(path: Optional[str]) -> List[str]:
    if not path:
        return []
    d = os.path.dirname(os.path.abspath(path))
    return sorted(
        os.path.join(d, n) for n in os.listdir(d) if n.lower().endswith(NATIVE_EXTENSIONS)
    )


def deploy_overlay(src: str, dest_dir: str, out=None) -> bool:
    """Copy a native overlay next to the executable unless already identical."""
    if out is None:
        out = sys.stdout
    dst = os.path.join(dest_dir, os.path.basename(src))
    if os.path.isfile(dst) and file_md5(dst) == file_md5(src):
        out.write("Up to date: %s\n" % os.path.basename(dst))
        return False
    shutil.copyfile(src, dst)
    out.write("Deployed: %s\n" % os.path.basename(dst))
    return True


def apply_patches(cfg: Config, refs: List[str], out=None) -> List[str]:
    if out is None:
        out = sys.stdout
    exe = str(cfg.exe_path)
    if not os.path.isfile(exe):
        raise NotInitialized(f"client executable not found: {exe}")
    resolved = [resolve_patch(cfg, r) for r in refs]

    backup, created = ensure_backup(exe)
    if created:
        out.write("Backup: %s\n" % backup)
        ok, actual = verify_clean(backup)
        if not ok:
            warn(
                f"{os.path.basename(exe)} md5 {actual} does not match the clean 3.3.5a (12340) client; patch offsets may not fit"
            )

    entries = load_tracker(cfg)
    tracked = [str(e.get("name")) for e in entries]
    buf = bytearray(read_bytes(backup))
    for name in tracked:
        if is_overlay(name):
            continue
        try:
            _, pf = resolve_patch(cfg, name)
        except BadInput as e:
            raise Inconsistent(
                f"tracked patch {name} can no longer be found; run 'mithril mod patch restore' and re-apply"
            ) from e
        apply_to_buffer(buf, pf)

    new = []
    for name, pf in resolved:
        if name in tracked or name in [n for n, _ in new]:
            out.write("Already applied: %s\n" % name)
            continue
        apply_to_buffer(buf, pf)
        new.append((name, pf))

    write_bytes(exe, bytes(buf))
    exe_dir = os.path.dirname(exe)
    for name, pf in new:
        entries.append({"name": name, "applied_at": now_iso()})
        out.write("Applied: %s (%d patches)\n" % (name, len(pf.patches)))
        for dll in _overlays_for(pf.path):
            deploy_overlay(dll, exe_dir, out=out)
            oname = _tracker_name(cfg, dll)
            if oname not in tracked and oname not in [e["name"] for e in entries]:
                entries.append({"name": oname, "applied_at": now_iso()})
    save_tracker(cfg, entries)
    return [n for n, _ in new]


def restore(cfg: Config, out=None) -> None:
    if out is None:
        out = sys.stdout
    exe = str(cfg.exe_path)
    backup = exe + BACKUP_SUFFIX
    if not os.path.isfile(backup):
        raise BadInput(f"no backup found ({backup}); nothing to restore")
    shutil.copyfile(backup, exe)
    out.write("Restored: %s\n" % exe)
    exe_dir = os.path.dirname(exe)
    for name in applied_names(cfg):
        if not is_overlay(name):
            continue
        dst = os.path.join(exe_dir, os.path.basename(name))
        if os.path.isfile(dst):
            os.remove(dst)
            out.write("Removed: %s\n" % os.path.basename(dst))
    save_tracker(cfg, [])


def prune_tracker(cfg: Config) -> int:
    entries = load_tracker(cfg)
    keep = []
    for e in entries:
        name = str(e.get("name"))
        if name in BUILTIN_PATCHES or (cfg.modules_dir / name).is_file() or os.path.isfile(name):
            keep.append(e)
    if len(keep) != len(entries):
        save_tracker(cfg, keep)
    return len(entries) - len(keep)


def _print_list(cfg: Config, out) -> None:
    applied = set(applied_names(cfg))
    out.write("Built-in patches:\n")
    for name, d in BUILTIN_PATCHES.items():
        mark = "[✓ applied]" if name in applied else "[available]"
        out.write("  %-11s %-24s %s\n" % (mark, name, d["description"]))
    for mod in all_mods(cfg):
        paths = mod_descriptors(cfg, mod)
        if not paths:
            continue
        out.write("%s:\n" % mod)
        for p in paths:
            name = _tracker_name(cfg, p)
            mark = "[✓ applied]" if name in applied else "[available]"
            out.write("  %-11s %s\n" % (mark, name))


def _print_status(cfg: Config, out) -> None:
    exe = str(cfg.exe_path)
    if not os.path.isfile(exe):
        out.write("Executable: missing (%s)\n" % exe)
    else:
        out.write("Executable: %s (md5 %s)\n" % (exe, file_md5(exe)))
    backup = exe + BACKUP_SUFFIX
    if os.path.isfile(backup):
        ok, actual = verify_clean(backup)
        out.write("Backup: %s (%s)\n" % (backup, "clean 3.3.5a" if ok else "md5 " + actual))
    else:
        out.write("Backup: none\n")
    entries = load_tracker(cfg)
    if not entries:
        out.write("Applied: none\n")
    for e in entries:
        out.write("  %s  %s\n" % (e.get("applied_at", ""), e.get("name")))


def _usage(out=None):
    if out is None:
        out = sys.stderr
    out.write("usage: mithril mod patch list\n")
    out.write("       mithril mod patch apply <name|path.json> [...] [--mod M]\n")
    out.write("       mithril mod patch status\n")
    out.write("       mithril mod patch restore\n")


def main(argv=None, cfg: Optional[Config] = None) -> int:
    args = list(argv or [])
    if not args or args[0] in ("-h", "--help", "help"):
        _usage(sys.stdout if args else None)
        return 0 if args else 2
    cmd = args.pop(0)
    out = sys.stdout
    try:
        cfg = cfg or load_config()
        if cmd == "list":
            _print_list(cfg, out)
            return 0
        if cmd == "status":
            _print_status(cfg, out)
            return 0
        if cmd == "restore":
            restore(cfg, out)
            return 0
        if cmd == "apply":
            mod = pop_option(args, "--mod")
            refs = list(args)
            if mod:
                require_mod(cfg, mod)
                refs += [_tracker_name(cfg, p) for p in mod_descriptors(cfg, mod)]
            if not refs:
                _usage()
                return 2
            apply_patches(cfg, refs, out)
            return 0
    except (MithrilError, OSError) as e:
        eprint("mod patch %s: %s" % (cmd, e))
        return 1
    eprint("mod patch: unknown command: %s" % cmd)
    return 2
