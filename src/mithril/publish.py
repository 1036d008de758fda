"""Release artifacts and registry entries for sharing a single mod."""

from __future__ import annotations

import io
import os
import shutil
import sys
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from . import composer, corepatch, migrations, scripts
from .baseline import load_manifest
from .common import (
    BadInput,
    ExternalFailure,
    MithrilError,
    eprint,
    pop_flag,
    pop_option,
    relpath_slash,
    warn,
    write_json,
)
from .config import Config, load_config
from .packager import write_archive
from .registry import RegistryEntry
from .workspace import all_mods, load_mod_meta, require_mod


@dataclass
class Release:
    directory: str
    client_zip: Optional[str] = None
    server_zip: Optional[str] = None


def release_dir(cfg: Config, mod: str) -> Path:
    return cfg.build_dir / "release" / mod


def _copy(src: str, dst: Path) -> None:
    dst.parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(src, dst)


def zip_dir(src_dir: str, zip_path: str) -> None:
    """Zip src_dir so that every entry starts with its base name."""
    base = os.path.basename(os.path.normpath(src_dir))
    with zipfile.ZipFile(zip_path, "w", zipfile.ZIP_DEFLATED) as z:
        for dirpath, dirs, files in os.walk(src_dir):
            dirs.sort()
            for name in sorted(files):
                path = os.path.join(dirpath, name)
                z.write(path, base + "/" + relpath_slash(path, src_dir))


def _read(path: str) -> str:
    with open(path, "r", encoding="utf-8") as f:
        return f.read()


def restore_database(cfg: Config, engine, runner, out) -> None:
    """Re-import the baseline and replay every tracked dbc migration."""
    from . import sqlbridge

    out.write("  Restoring the table database...\n")
    if sqlbridge.import_baseline(cfg, engine, force=True, out=io.StringIO()):
        warn("baseline re-import reported errors; run 'mithril mod dbc import --force'")
        return
    applied = migrations.applied_keys(cfg)
    for mod in all_mods(cfg):
        for m in migrations.discover(cfg, mod):
            if m.database != migrations.DBC_DATABASE or m.key not in applied:
                continue
            try:
                runner.run(m.database, _read(m.path), "%s/%s" % (m.mod, m.file))
            except (ExternalFailure, OSError) as e:
                warn(f"failed to re-apply {m.mod}/{m.file}: {e}")


def isolated_tables(
    cfg: Config, mod: str, out_dir: Path, engine=None, runner=None, out=None
) -> Dict[str, str]:
    """Export the tables changed by one mod's dbc migrations alone.

    The table database is reset to the baseline, only this mod's dbc
    migrations run, and the database is restored to the tracked state of
    every mod afterwards.
    """
    from . import sqlbridge

    if out is None:
        out = sys.stdout
    pending = [
        m for m in migrations.discover(cfg, mod) if m.database == migrations.DBC_DATABASE
    ]
    if not pending:
        return {}
    own_engine = engine is None
    if own_engine:
        engine = sqlbridge.create_db_engine(cfg)
    own_runner = runner is None
    if own_runner:
        runner = migrations.Runner(cfg, engine=engine)
    try:
        out.write("  Resetting the table database to the baseline...\n")
        if sqlbridge.import_baseline(cfg, engine, force=True, out=io.StringIO()):
            raise ExternalFailure("baseline import failed")
        try:
            for m in pending:
                runner.run(m.database, _read(m.path), "%s/%s" % (m.mod, m.file))
                out.write("  Applied %s/%s\n" % (m.database, m.file))
            out_dir.mkdir(parents=True, exist_ok=True)
            paths = sqlbridge.export_modified(engine, str(out_dir), out=out)
        finally:
            restore_database(cfg, engine, runner, out)
    finally:
        if own_runner:
            runner.close()
        if own_engine:
            engine.dispose()
    return {os.path.basename(p): p for p in paths}


def export_release(
    cfg: Config, mod: str, use_sql: bool = False, engine=None, runner=None, out=None
) -> Release:
    if out is None:
        out = sys.stdout
    cfg.require_baseline()
    require_mod(cfg, mod)
    root = release_dir(cfg, mod)
    if root.exists():
        shutil.rmtree(root)
    client = root / "client"
    server = root / "server"
    locale = load_manifest(cfg).locale
    letter = cfg.patch_letter
    out.write("=== Exporting %s for release ===\n" % mod)

    art = composer.collect_mod(cfg, mod, out)
    if art.errors:
        raise BadInput(f"{mod}: {len(art.errors)} table(s) failed to build")
    exported = None
    if use_sql:
        exported = isolated_tables(cfg, mod, root / "dbc_export", engine, runner, out)
    dbc_files, addon_files = composer.compose([art], exported)

    if dbc_files:
        name = "patch-%s.MPQ" % letter
        write_archive(str(client / "Data" / name), dbc_files)
        out.write("  Client tables: Data/%s (%d files)\n" % (name, len(dbc_files)))
        for internal, disk in dbc_files:
            _copy(disk, server / "dbc" / internal[len(composer.DBC_PREFIX):])
    if addon_files:
        name = "patch-%s-%s.MPQ" % (locale, letter)
        write_archive(str(client / "Data" / locale / name), addon_files)
        out.write("  Client addons: Data/%s/%s (%d files)\n" % (locale, name, len(addon_files)))

    patches_dir = cfg.mod_dir(mod) / "binary-patches"
    if patches_dir.is_dir():
        for p in sorted(patches_dir.iterdir()):
            if p.is_file():
                _copy(str(p), client / "binary-patches" / p.name)
                out.write("  Binary patch: %s\n" % p.name)

    for m in migrations.discover(cfg, mod):
        # dbc migrations are already baked into the tables above
        if m.database == migrations.DBC_DATABASE:
            continue
        _copy(m.path, server / "sql" / m.database / m.file)
        if os.path.isfile(m.rollback_path):
            _copy(m.rollback_path, server / "sql" / m.database / os.path.basename(m.rollback_path))
        out.write("  Server SQL: %s/%s\n" % (m.database, m.file))
    for p in corepatch.discover(cfg, mod):
        _copy(p.path, server / "core-patches" / p.name)
        out.write("  Server core patch: %s\n" % p.name)
    for name in scripts.find_scripts(cfg, mod):
        _copy(str(cfg.mod_dir(mod) / "scripts" / name), server / "scripts" / name)
        out.write("  Server script: %s\n" % name)

    release = Release(str(root))
    if client.is_dir():
        release.client_zip = str(root / "client.zip")
        zip_dir(str(client), release.client_zip)
        out.write("Packed: %s\n" % release.client_zip)
    if server.is_dir():
        release.server_zip = str(root / "server.zip")
        zip_dir(str(server), release.server_zip)
        out.write("Packed: %s\n" % release.server_zip)
    if release.client_zip is None and release.server_zip is None:
        out.write("No artifacts to export.\n")
    return release


def detect_mod_types(cfg: Config, mod: str) -> List[str]:
    found = migrations.discover(cfg, mod)
    types = []
    if composer.changed_tables(cfg, mod) or any(
        m.database == migrations.DBC_DATABASE for m in found
    ):
        types.append("dbc")
    if composer.changed_addons(cfg, mod):
        types.append("addon")
    if found:
        types.append("sql")
    if corepatch.discover(cfg, mod):
        types.append("core")
    if scripts.find_scripts(cfg, mod):
        types.append("script")
    patches_dir = cfg.mod_dir(mod) / "binary-patches"
    if patches_dir.is_dir() and any(p.is_file() for p in patches_dir.iterdir()):
        types.append("binary-patch")
    return types


def registry_file(cfg: Config, mod: str) -> Path:
    return cfg.mod_dir(mod) / (mod + ".registry.json")


def register(cfg: Config, mod: str, repo: str) -> RegistryEntry:
    if not repo:
        raise BadInput(f"--repo is required, e.g. --repo https://github.com/user/{mod}")
    meta = load_mod_meta(cfg, mod)
    entry = RegistryEntry(
        name=mod,
        description=meta.description,
        repo=repo,
        mod_types=detect_mod_types(cfg, mod),
    )
    write_json(str(registry_file(cfg, mod)), entry.to_dict())
    return entry


def _usage(out=None):
    if out is None:
        out = sys.stderr
    out.write("usage: mithril mod publish register --mod M --repo URL\n")
    out.write("       mithril mod publish export --mod M [--sql]\n")


def main(argv=None, cfg: Optional[Config] = None) -> int:
    args = list(argv or [])
    if not args or args[0] in ("-h", "--help", "help"):
        _usage(sys.stdout if args else None)
        return 0 if args else 2
    cmd = args.pop(0)
    out = sys.stdout
    if cmd not in ("register", "export"):
        eprint("mod publish: unknown command: %s" % cmd)
        return 2
    try:
        mod = pop_option(args, "--mod")
        if cmd == "register":
            repo = pop_option(args, "--repo")
            if args or not mod:
                _usage()
                return 2
            cfg = cfg or load_config()
            entry = register(cfg, mod, repo or "")
            path = registry_file(cfg, mod)
            out.write("Generated registry file: %s\n" % path)
            out.write("  types: %s\n" % (", ".join(entry.mod_types) or "none"))
            out.write("Fill in 'author' and 'tags', then submit it to the registry as mods/%s.json\n" % mod)
            out.write("Others can then run 'mithril mod registry install %s'.\n" % mod)
            return 0
        use_sql = pop_flag(args, "--sql")
        if args or not mod:
            _usage()
            return 2
        cfg = cfg or load_config()
        release = export_release(cfg, mod, use_sql=use_sql or cfg.dbc_source == "sql", out=out)
        out.write("Release files: %s\n" % release.directory)
        return 0
    except (MithrilError, OSError) as e:
        eprint("mod publish %s: %s" % (cmd, e))
        return 1
