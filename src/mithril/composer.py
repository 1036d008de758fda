"""Diff mods against the baseline and assemble their build artifacts."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from . import csvbridge, wdbc
from .common import (
    BadInput,
    MithrilError,
    eprint,
    file_md5,
    iter_files_by_ext,
    relpath_slash,
)
from .config import Config
from .schema import get_schema

CSV_SUFFIX = ".dbc.csv"
DBC_PREFIX = "DBFilesClient\\"
ADDON_EXTENSIONS = (".lua", ".xml", ".toc")


@dataclass
class ModArtifacts:
    name: str
    # logical table name (Spell.dbc) -> built DBC on disk
    dbc_files: Dict[str, str] = field(default_factory=dict)
    # relative script path (Interface/...) -> mod file on disk
    addon_files: Dict[str, str] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)


def output_name(table: str) -> str:
    schema = get_schema(table)
    if schema is not None:
        return os.path.basename(schema.file)
    return table


def mod_csv_files(cfg: Config, mod: str) -> List[str]:
    d = cfg.mod_dir(mod) / "dbc"
    if not d.is_dir():
        return []
    return sorted(str(p) for p in d.iterdir() if p.name.lower().endswith(CSV_SUFFIX))


def changed_tables(cfg: Config, mod: str) -> List[str]:
    """Table names whose mod CSV differs from the baseline CSV."""
    out = []
    for path in mod_csv_files(cfg, mod):
        table = os.path.basename(path)[: -len(".csv")]
        base = cfg.baseline_csv_dir / (table + ".csv")
        if base.is_file() and file_md5(str(base)) == file_md5(path):
            continue
        out.append(table)
    return out


def changed_addons(cfg: Config, mod: str) -> List[str]:
    root = str(cfg.mod_dir(mod) / "addons")
    out = []
    for path in iter_files_by_ext(root, ADDON_EXTENSIONS):
        rel = relpath_slash(path, root)
        base = cfg.baseline_addons_dir / rel
        if base.is_file() and file_md5(str(base)) == file_md5(path):
            continue
        out.append(rel)
    return out


def build_table(cfg: Config, mod: str, table: str) -> str:
    schema = get_schema(table)
    if schema is None:
        raise BadInput(f"{mod}: no schema for {table}; cannot rebuild it")
    src = cfg.mod_dir(mod) / "dbc" / (table + ".csv")
    dbc = csvbridge.import_csv(str(src), schema)
    dst = cfg.build_dir / mod / "DBFilesClient" / output_name(table)
    dst.parent.mkdir(parents=True, exist_ok=True)
    dst.write_bytes(wdbc.encode(dbc, schema))
    return str(dst)


def collect_mod(cfg: Config, mod: str, out=None) -> ModArtifacts:
    if out is None:
        out = sys.stdout
    art = ModArtifacts(mod)
    for table in changed_tables(cfg, mod):
        try:
            art.dbc_files[output_name(table)] = build_table(cfg, mod, table)
            out.write("  %s: built %s\n" % (mod, output_name(table)))
        except (MithrilError, OSError) as e:
            art.errors.append(str(e))
            eprint("  %s: failed to build %s: %s" % (mod, table, e))
    root = cfg.mod_dir(mod) / "addons"
    for rel in changed_addons(cfg, mod):
        art.addon_files[rel] = str(root / rel)
    if art.addon_files:
        out.write("  %s: %d modified addon files\n" % (mod, len(art.addon_files)))
    return art


def dbc_internal(name: str) -> str:
    return DBC_PREFIX + name


def addon_internal(rel: str) -> str:
    return rel.replace("/", "\\")


def compose(
    artifacts: List[ModArtifacts], exported: Optional[Dict[str, str]] = None
) -> Tuple[List[Tuple[str, str]], List[Tuple[str, str]]]:
    """Merge per-mod artifacts (given in build order) into archive file lists.

    Walks the mods from last to first and keeps the first path seen, so a
    later mod overrides an earlier one.  Tables exported from the database
    already reflect the whole build order and take precedence over CSV builds.
    Returns (dbc_files, addon_files) as sorted (internal_path, disk_path).
    """
    dbc: Dict[str, Tuple[str, str]] = {}
    addons: Dict[str, Tuple[str, str]] = {}
    for name, path in (exported or {}).items():
        internal = dbc_internal(name)
        dbc.setdefault(internal.lower(), (internal, path))
    for art in reversed(artifacts):
        for name, path in art.dbc_files.items():
            internal = dbc_internal(name)
            dbc.setdefault(internal.lower(), (internal, path))
        for rel, path in art.addon_files.items():
            internal = addon_internal(rel)
            addons.setdefault(internal.lower(), (internal, path))
    return (
        [dbc[k] for k in sorted(dbc)],
        [addons[k] for k in sorted(addons)],
    )


def export_from_database(cfg: Config, mods: List[str], engine=None, runner=None, out=None) -> Dict[str, str]:
    """Apply pending dbc migrations in build order, then export modified tables."""
    from . import migrations, sqlbridge

    if out is None:
        out = sys.stdout
    own_engine = engine is None
    if own_engine:
        engine = sqlbridge.create_db_engine(cfg)
    try:
        migrations.apply_migrations(
            cfg,
            mods,
            database=migrations.DBC_DATABASE,
            runner=runner or migrations.Runner(cfg, engine=engine),
            out=out,
        )
        out_dir = cfg.dbc_export_dir
        out_dir.mkdir(parents=True, exist_ok=True)
        paths = sqlbridge.export_modified(engine, str(out_dir), out=out)
    finally:
        if own_engine:
            engine.dispose()
    return {os.path.basename(p): p for p in paths}
