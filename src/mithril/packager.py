"""Build slot-named patch archives and deploy them to the client and server."""

from __future__ import annotations

import os
import shutil
import sys
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from . import composer
from .archive import create_archive
from .baseline import load_manifest
from .common import (
    KNOWN_LOCALES,
    ExternalFailure,
    MithrilError,
    eprint,
    pop_flag,
    pop_option,
    warn,
)
from .config import Config, load_config
from .workspace import all_mods, assign_slots, require_mod

GLUE_MARKERS = ("gluexml", "framexml")
GLUE_PATCH = "allow-custom-gluexml"


def is_system_patch(filename: str) -> bool:
    """patch-[<locale>-]<SLOTS>.MPQ with SLOTS made of uppercase letter segments."""
    lower = filename.lower()
    if not lower.startswith("patch-") or not lower.endswith(".mpq"):
        return False
    middle = filename[6:-4]
    if not middle:
        return False
    segments = middle.split("-")
    if segments[0] in KNOWN_LOCALES:
        segments = segments[1:]
        if not segments:
            return False
    for seg in segments:
        if not seg or not all("A" <= c <= "Z" for c in seg):
            return False
    return True


def _client_dirs(cfg: Config, locale: str) -> List[Path]:
    return [cfg.client_data_dir, cfg.client_data_dir / locale]


def _locale(cfg: Config) -> str:
    if cfg.manifest_path.is_file():
        return load_manifest(cfg).locale
    return "enUS"


def list_system_patches(cfg: Config, locale: Optional[str] = None) -> List[str]:
    locale = locale or _locale(cfg)
    found = []
    for d in _client_dirs(cfg, locale):
        if not d.is_dir():
            continue
        for p in sorted(d.iterdir()):
            if p.is_file() and is_system_patch(p.name):
                found.append(p.relative_to(cfg.client_data_dir).as_posix())
    return found


def clean_system_patches(cfg: Config, locale: Optional[str] = None) -> int:
    locale = locale or _locale(cfg)
    removed = 0
    for d in _client_dirs(cfg, locale):
        if not d.is_dir():
            continue
        for p in sorted(d.iterdir()):
            if p.is_file() and is_system_patch(p.name):
                p.unlink()
                removed += 1
    return removed


def combined_suffix(cfg: Config, slots: Dict[str, str], build_all: bool) -> str:
    if build_all and len(slots) > 1:
        return cfg.patch_letter
    return "-".join(sorted(slots.values()))


def write_archive(path: str, files: List[Tuple[str, str]]) -> None:
    os.makedirs(os.path.dirname(path), exist_ok=True)
    try:
        with create_archive(path, len(files)) as w:
            for internal, disk in files:
                w.add(disk, internal)
    except (OSError, MithrilError) as e:
        if os.path.isfile(path):
            os.remove(path)
        raise ExternalFailure(f"failed to create {os.path.basename(path)}: {e}") from e


def has_interface_overrides(addon_files: List[Tuple[str, str]]) -> bool:
    return any(m in internal.lower() for internal, _ in addon_files for m in GLUE_MARKERS)


def build(cfg: Config, selected: Optional[List[str]] = None, use_sql: bool = False, out=None) -> int:
    if out is None:
        out = sys.stdout
    cfg.require_baseline()
    locale = _locale(cfg)
    order = all_mods(cfg)
    build_all = not selected
    if selected:
        for name in selected:
            require_mod(cfg, name)
        mods = [m for m in order if m in selected]
    else:
        mods = order
    if not mods:
        out.write("No mods. Create one with 'mithril mod create <name>'.\n")
        return 0

    slots = assign_slots(cfg, mods)
    out.write("Building: %s\n" % ", ".join("%s [%s]" % (m, slots[m]) for m in mods))
    artifacts = [composer.collect_mod(cfg, m, out) for m in mods]
    exported = None
    if use_sql:
        exported = composer.export_from_database(cfg, mods, out=out)
    dbc_files, addon_files = composer.compose(artifacts, exported)
    rc = 1 if any(a.errors for a in artifacts) else 0

    cleaned = clean_system_patches(cfg, locale)
    if cleaned:
        out.write("Cleaned %d previous patch archive(s) from the client\n" % cleaned)
    if not dbc_files and not addon_files:
        out.write("No modified files to package.\n")
        return rc

    build_dir = cfg.build_dir
    suffix = combined_suffix(cfg, slots, build_all)
    staged: List[Tuple[str, Path]] = []
    for art in artifacts:
        m_dbc, m_addons = composer.compose([art])
        slot = slots[art.name]
        if m_dbc:
            write_archive(str(build_dir / art.name / ("patch-%s.MPQ" % slot)), m_dbc)
        if m_addons:
            write_archive(str(build_dir / art.name / ("patch-%s-%s.MPQ" % (locale, slot))), m_addons)
    if dbc_files:
        path = str(build_dir / ("patch-%s.MPQ" % suffix))
        write_archive(path, dbc_files)
        staged.append((path, cfg.client_data_dir))
        out.write("Built: %s (%d tables)\n" % (os.path.basename(path), len(dbc_files)))
    if addon_files:
        path = str(build_dir / ("patch-%s-%s.MPQ" % (locale, suffix)))
        write_archive(path, addon_files)
        staged.append((path, cfg.client_data_dir / locale))
        out.write("Built: %s (%d interface files)\n" % (os.path.basename(path), len(addon_files)))

    for path, dest in staged:
        dest.mkdir(parents=True, exist_ok=True)
        target = dest / os.path.basename(path)
        shutil.copyfile(path, target)
        out.write("Deployed: %s\n" % target)

    server_dir = cfg.server_dbc_dir
    if dbc_files and server_dir.is_dir():
        for internal, disk in dbc_files:
            name = internal[len(composer.DBC_PREFIX):]
            shutil.copyfile(disk, server_dir / name)
            out.write("Server: %s\n" % (server_dir / name))

    if addon_files and has_interface_overrides(addon_files):
        from .patcher import applied_names

        if GLUE_PATCH not in applied_names(cfg):
            warn(
                "GlueXML/FrameXML overrides are packaged; the client reports corrupt "
                f"interface files unless you run 'mithril mod patch apply {GLUE_PATCH}'"
            )
    return rc


def _usage(out=None):
    if out is None:
        out = sys.stderr
    out.write("usage: mithril mod build [--mod NAME ...] [--sql]\n")


def main(argv=None, cfg: Optional[Config] = None) -> int:
    args = list(argv or [])
    if args and args[0] in ("-h", "--help", "help"):
        _usage(sys.stdout)
        return 0
    try:
        use_sql = pop_flag(args, "--sql")
        selected = pop_option(args, "--mod", multi=True)
        if args:
            _usage()
            return 2
        cfg = cfg or load_config()
        use_sql = use_sql or cfg.dbc_source == "sql"
        rc = build(cfg, selected or None, use_sql=use_sql)
        if os.path.isdir(str(cfg.source_dir)):
            from .scripts import sync_scripts

            sync_scripts(cfg)
        return rc
    except (MithrilError, OSError) as e:
        eprint("mod build: %s" % e)
        return 1
