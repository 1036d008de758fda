from __future__ import annotations

import shutil
import sys
from dataclasses import dataclass
from itertools import product
from typing import Dict, List, Optional

from .baseline import load_manifest, save_manifest
from .common import (
    RESERVED_MOD_NAMES,
    BadInput,
    Conflict,
    MithrilError,
    eprint,
    now_iso,
    pop_option,
    read_json,
    write_json,
)
from .config import Config, load_config

MOD_META = "mod.json"
MOD_SUBDIRS = ("dbc", "addons", "sql", "binary-patches", "core-patches", "scripts")
SLOT_LETTERS = "ABCDEFGHIJKL"
_INVALID_NAME_CHARS = "/\\."


@dataclass
class ModMeta:
    name: str
    description: str = ""
    created_at: str = ""
    patch_slot: Optional[str] = None

    def to_dict(self) -> dict:
        d = {"name": self.name, "description": self.description, "created_at": self.created_at}
        if self.patch_slot:
            d["patch_slot"] = self.patch_slot
        return d

    @classmethod
    def from_dict(cls, d: dict, fallback_name: str = "") -> "ModMeta":
        return cls(
            name=str(d.get("name") or fallback_name),
            description=str(d.get("description") or ""),
            created_at=str(d.get("created_at") or ""),
            patch_slot=(str(d["patch_slot"]).upper() if d.get("patch_slot") else None),
        )


def validate_mod_name(name: str) -> None:
    if not name:
        raise BadInput("mod name must not be empty")
    if any(ch in _INVALID_NAME_CHARS or ch.isspace() for ch in name):
        raise BadInput(
            f"invalid mod name {name!r}: no path separators, dots or whitespace"
        )
    if name.lower() in RESERVED_MOD_NAMES:
        raise BadInput(f"mod name {name!r} is reserved")


def mod_exists(cfg: Config, name: str) -> bool:
    return (cfg.mod_dir(name) / MOD_META).is_file()


def require_mod(cfg: Config, name: str) -> None:
    if not name:
        raise BadInput("missing --mod NAME")
    if not mod_exists(cfg, name):
        raise BadInput(f"mod not found: {name}")


def load_mod_meta(cfg: Config, name: str) -> ModMeta:
    require_mod(cfg, name)
    return ModMeta.from_dict(read_json(str(cfg.mod_dir(name) / MOD_META), {}), name)


def save_mod_meta(cfg: Config, meta: ModMeta) -> None:
    write_json(str(cfg.mod_dir(meta.name) / MOD_META), meta.to_dict())


def disk_mods(cfg: Config) -> List[str]:
    if not cfg.modules_dir.is_dir():
        return []
    out = []
    for p in sorted(cfg.modules_dir.iterdir()):
        if p.name.lower() in RESERVED_MOD_NAMES or not p.is_dir():
            continue
        if (p / MOD_META).is_file():
            out.append(p.name)
    return out


def all_mods(cfg: Config) -> List[str]:
    """Mods in build order: listed ones present on disk, then the rest."""
    on_disk = disk_mods(cfg)
    present = set(on_disk)
    order = []
    if cfg.manifest_path.is_file():
        for name in load_manifest(cfg).build_order:
            if name in present and name not in order:
                order.append(name)
    for name in on_disk:
        if name not in order:
            order.append(name)
    return order


def create_mod(cfg: Config, name: str, description: str = "") -> ModMeta:
    validate_mod_name(name)
    cfg.require_baseline()
    d = cfg.mod_dir(name)
    if d.exists():
        raise Conflict(f"mod already exists: {name}")
    for sub in MOD_SUBDIRS:
        (d / sub).mkdir(parents=True, exist_ok=True)
    meta = ModMeta(name=name, description=description, created_at=now_iso())
    save_mod_meta(cfg, meta)
    manifest = load_manifest(cfg)
    if name not in manifest.build_order:
        manifest.build_order.append(name)
        save_manifest(cfg, manifest)
    return meta


def remove_mod(cfg: Config, name: str) -> None:
    require_mod(cfg, name)
    shutil.rmtree(cfg.mod_dir(name))
    if cfg.manifest_path.is_file():
        manifest = load_manifest(cfg)
        if name in manifest.build_order:
            manifest.build_order = [m for m in manifest.build_order if m != name]
            save_manifest(cfg, manifest)


def slot_sequence(reserved: str = "M") -> List[str]:
    singles = list(SLOT_LETTERS)
    pairs = [a + b for a, b in product(SLOT_LETTERS, repeat=2)]
    return [s for s in singles + pairs if s != reserved]


def assign_slots(cfg: Config, names: List[str]) -> Dict[str, str]:
    """Give every named mod a slot, persisting new ones in mod.json."""
    metas = {n: load_mod_meta(cfg, n) for n in disk_mods(cfg)}
    owners: Dict[str, str] = {}
    for n, meta in metas.items():
        if not meta.patch_slot:
            continue
        other = owners.get(meta.patch_slot)
        if other is not None:
            raise Conflict(
                f"slot {meta.patch_slot} is assigned to both {other} and {n}; edit one mod.json"
            )
        owners[meta.patch_slot] = n
    free = [s for s in slot_sequence(cfg.patch_letter) if s not in owners]
    out = {}
    for n in names:
        meta = metas.get(n) or load_mod_meta(cfg, n)
        if not meta.patch_slot:
            if not free:
                raise Conflict("no free patch slots left (A-L, AA-LL all taken)")
            meta.patch_slot = free.pop(0)
            save_mod_meta(cfg, meta)
        out[n] = meta.patch_slot
    return out


def _print_status(cfg: Config, name: str, out) -> None:
    from . import composer, corepatch, migrations

    meta = load_mod_meta(cfg, name)
    out.write("%s%s\n" % (name, " [slot %s]" % meta.patch_slot if meta.patch_slot else ""))
    if meta.description:
        out.write("  %s\n" % meta.description)
    tables = composer.changed_tables(cfg, name)
    addons = composer.changed_addons(cfg, name)
    out.write("  modified DBCs: %s\n" % (", ".join(tables) if tables else "none"))
    out.write("  modified addons: %d\n" % len(addons))
    for rel in addons:
        out.write("    %s\n" % rel)
    applied = migrations.applied_keys(cfg)
    for m in migrations.discover(cfg, name):
        mark = "applied" if (name, m.file) in applied else "pending"
        out.write("  sql %s/%s [%s]\n" % (m.database, m.file, mark))
    core_applied = corepatch.applied_keys(cfg)
    for p in corepatch.discover(cfg, name):
        mark = "applied" if (name, p.name) in core_applied else "pending"
        out.write("  core %s [%s]\n" % (p.name, mark))


def _usage(out=None):
    if out is None:
        out = sys.stderr
    out.write("usage: mithril mod create <name> [--description TEXT]\n")
    out.write("       mithril mod remove <name>\n")
    out.write("       mithril mod list\n")
    out.write("       mithril mod status [--mod NAME]\n")


def main(argv=None, cfg: Optional[Config] = None) -> int:
    args = list(argv or [])
    if not args or args[0] in ("-h", "--help", "help"):
        _usage(sys.stdout if args else None)
        return 0 if args else 2
    cmd = args.pop(0)
    out = sys.stdout
    try:
        cfg = cfg or load_config()
        if cmd == "create":
            description = pop_option(args, "--description", "-d") or ""
            if len(args) != 1:
                _usage()
                return 2
            meta = create_mod(cfg, args[0], description)
            out.write("Created mod: %s\n" % meta.name)
            out.write("  %s\n" % cfg.mod_dir(meta.name))
            return 0
        if cmd == "remove":
            if len(args) != 1:
                _usage()
                return 2
            remove_mod(cfg, args[0])
            out.write("Removed mod: %s\n" % args[0])
            return 0
        if cmd == "list":
            mods = all_mods(cfg)
            if not mods:
                out.write("No mods. Create one with 'mithril mod create <name>'.\n")
                return 0
            for i, name in enumerate(mods, start=1):
                meta = load_mod_meta(cfg, name)
                slot = meta.patch_slot or "-"
                desc = ("  " + meta.description) if meta.description else ""
                out.write("%2d. %-24s %-3s%s\n" % (i, name, slot, desc))
            return 0
        if cmd == "status":
            only = pop_option(args, "--mod")
            if args:
                _usage()
                return 2
            cfg.require_baseline()
            from .packager import list_system_patches

            mods = [only] if only else all_mods(cfg)
            for name in mods:
                _print_status(cfg, name, out)
            patches = list_system_patches(cfg)
            out.write("Deployed system patches: %s\n" % (", ".join(patches) if patches else "none"))
            return 0
    except (MithrilError, OSError) as e:
        eprint("mod %s: %s" % (cmd, e))
        return 1
    eprint("mod: unknown command: %s" % cmd)
    return 2
