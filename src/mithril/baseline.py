"""Baseline extraction from the client's archive chain."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from . import archive, csvbridge, wdbc
from .common import (
    KNOWN_LOCALES,
    MithrilError,
    NotInitialized,
    eprint,
    md5_hex,
    now_iso,
    read_json,
    warn,
    write_json,
)
from .config import Config, load_config
from .schema import get_schema

ADDON_EXTENSIONS = (".lua", ".xml", ".toc")


class NoArchives(NotInitialized):
    pass


@dataclass
class ManifestFile:
    source_mpq: str
    original_md5: str
    has_meta: bool
    record_count: int = 0
    field_count: int = 0


@dataclass
class Manifest:
    extracted_at: str = ""
    client_data: str = ""
    locale: str = "enUS"
    mpq_chain: List[str] = field(default_factory=list)
    files: Dict[str, ManifestFile] = field(default_factory=dict)
    addons: Dict[str, str] = field(default_factory=dict)
    build_order: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "extracted_at": self.extracted_at,
            "client_data": self.client_data,
            "locale": self.locale,
            "mpq_chain": list(self.mpq_chain),
            "files": {
                k: {
                    "source_mpq": v.source_mpq,
                    "original_md5": v.original_md5,
                    "has_meta": v.has_meta,
                    "record_count": v.record_count,
                    "field_count": v.field_count,
                }
                for k, v in sorted(self.files.items())
            },
            "addons": {k: {"source_mpq": v} for k, v in sorted(self.addons.items())},
            "build_order": list(self.build_order),
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Manifest":
        files = {}
        for k, v in (d.get("files") or {}).items():
            files[k] = ManifestFile(
                source_mpq=str(v.get("source_mpq") or ""),
                original_md5=str(v.get("original_md5") or ""),
                has_meta=bool(v.get("has_meta")),
                record_count=int(v.get("record_count") or 0),
                field_count=int(v.get("field_count") or 0),
            )
        addons = {
            k: str((v or {}).get("source_mpq") or "")
            for k, v in (d.get("addons") or {}).items()
        }
        return cls(
            extracted_at=str(d.get("extracted_at") or ""),
            client_data=str(d.get("client_data") or ""),
            locale=str(d.get("locale") or "enUS"),
            mpq_chain=list(d.get("mpq_chain") or []),
            files=files,
            addons=addons,
            build_order=[str(x) for x in (d.get("build_order") or [])],
        )


def load_manifest(cfg: Config) -> Manifest:
    cfg.require_baseline()
    return Manifest.from_dict(read_json(str(cfg.manifest_path), {}))


def save_manifest(cfg: Config, manifest: Manifest) -> None:
    write_json(str(cfg.manifest_path), manifest.to_dict())


def detect_locale(data_dir) -> str:
    for loc in KNOWN_LOCALES:
        if os.path.isdir(os.path.join(data_dir, loc)):
            return loc
    return "enUS"


def archive_chain(data_dir, locale: str) -> List[str]:
    """Existing archives in ascending priority (later entries win)."""
    data_dir = str(data_dir)
    loc_dir = os.path.join(data_dir, locale)
    candidates = [
        (loc_dir, "expansion-locale-%s.MPQ" % locale),
        (loc_dir, "locale-%s.MPQ" % locale),
        (data_dir, "expansion.MPQ"),
        (loc_dir, "lichking-locale-%s.MPQ" % locale),
        (data_dir, "common.MPQ"),
        (data_dir, "lichking.MPQ"),
        (data_dir, "common-2.MPQ"),
        (loc_dir, "patch-%s.MPQ" % locale),
        (data_dir, "patch.MPQ"),
        (loc_dir, "patch-%s-2.MPQ" % locale),
        (data_dir, "patch-2.MPQ"),
        (loc_dir, "patch-%s-3.MPQ" % locale),
        (data_dir, "patch-3.MPQ"),
    ]
    out = []
    for d, name in candidates:
        p = os.path.join(d, name)
        if os.path.isfile(p):
            out.append(p)
    return out


def normalize_dbc_name(name: str) -> str:
    base = name.replace("\\", "/").rsplit("/", 1)[-1]
    stem = os.path.splitext(base)[0].lower()
    if not stem:
        return base
    return stem[0].upper() + stem[1:] + ".dbc"


def is_dbc_entry(name: str) -> bool:
    low = name.lower().replace("/", "\\")
    return low.startswith("dbfilesclient\\") and low.endswith(".dbc")


def is_addon_entry(name: str) -> bool:
    low = name.lower().replace("/", "\\")
    return low.startswith("interface\\") and low.endswith(ADDON_EXTENSIONS)


@dataclass
class Source:
    entry: str
    archive_index: int


def resolve_effective(listings: List[List[str]]):
    """Map logical paths to their source, given listings in load order.

    Returns (dbc, addons): dbc is keyed by normalized table file name,
    addons by the lower-cased relative path (value keeps original case).
    """
    dbc: Dict[str, Source] = {}
    addons: Dict[str, Source] = {}
    for idx in range(len(listings) - 1, -1, -1):
        for name in listings[idx]:
            if is_dbc_entry(name):
                key = normalize_dbc_name(name)
                if key not in dbc:
                    dbc[key] = Source(name, idx)
            elif is_addon_entry(name):
                key = name.replace("\\", "/").lower()
                if key not in addons:
                    addons[key] = Source(name, idx)
    return dbc, addons


def _describe_table(
    cfg: Config, name: str, raw: bytes, source_mpq: str
) -> ManifestFile:
    mf = ManifestFile(source_mpq=source_mpq, original_md5=md5_hex(raw), has_meta=False)
    schema = get_schema(name)
    if schema is not None:
        try:
            parsed = wdbc.decode(raw, schema)
            csvbridge.export_csv(
                parsed, schema, str(cfg.baseline_csv_dir / (name + ".csv"))
            )
            mf.has_meta = True
            mf.record_count = parsed.header.record_count
            mf.field_count = parsed.header.field_count
        except MithrilError as e:
            warn(f"failed to parse {name} (schema mismatch?): {e}")
        except OSError as e:
            warn(f"failed to export CSV for {name}: {e}")
    if not mf.has_meta:
        try:
            header = wdbc.parse_header(raw)
            mf.record_count = header.record_count
            mf.field_count = header.field_count
        except MithrilError as e:
            warn(f"{name}: {e}")
    return mf


def extract_baseline(cfg: Config, out=None) -> Manifest:
    if out is None:
        out = sys.stdout
    data_dir = cfg.client_data_dir
    if not data_dir.is_dir():
        raise NotInitialized(
            f"client Data directory not found: {data_dir}; place the 3.3.5a client in {cfg.client_dir}"
        )
    for d in (
        cfg.modules_dir,
        cfg.baseline_dir,
        cfg.baseline_dbc_dir,
        cfg.baseline_csv_dir,
        cfg.baseline_addons_dir,
        cfg.build_dir,
    ):
        d.mkdir(parents=True, exist_ok=True)

    previous = Manifest.from_dict(read_json(str(cfg.manifest_path), {}))

    locale = detect_locale(data_dir)
    out.write("Detected locale: %s\n" % locale)
    chain = archive_chain(data_dir, locale)
    if not chain:
        raise NoArchives(f"no MPQ archives found in {data_dir}")

    readers: List[archive.ArchiveReader] = []
    opened: List[str] = []
    listings: List[List[str]] = []
    try:
        for path in chain:
            try:
                r = archive.open_archive(path)
                names = r.list()
            except archive.ArchiveOpen as e:
                warn(f"skipping {os.path.basename(path)}: {e}")
                continue
            readers.append(r)
            opened.append(path)
            listings.append(names)
            out.write("Opened: %s\n" % os.path.basename(path))
        if not readers:
            raise NoArchives("no MPQ archives could be opened")

        dbc_sources, addon_sources = resolve_effective(listings)
        out.write("Found %d unique DBC files\n" % len(dbc_sources))

        manifest = Manifest(
            extracted_at=now_iso(),
            client_data=str(data_dir),
            locale=locale,
            mpq_chain=[str(p) for p in opened],
            build_order=list(previous.build_order),
        )

        for name in sorted(dbc_sources):
            src = dbc_sources[name]
            reader = readers[src.archive_index]
            try:
                raw = reader.read(src.entry)
                dbc_path = cfg.baseline_dbc_dir / name
                dbc_path.write_bytes(raw)
            except (archive.ExtractFailed, OSError) as e:
                warn(f"failed to extract {name}: {e}")
                continue
            manifest.files[name] = _describe_table(
                cfg, name, raw, os.path.basename(reader.path)
            )

        for key in sorted(addon_sources):
            src = addon_sources[key]
            reader = readers[src.archive_index]
            rel = src.entry.replace("\\", "/")
            try:
                reader.extract(src.entry, str(cfg.baseline_addons_dir / rel))
            except archive.ExtractFailed as e:
                warn(f"failed to extract {rel}: {e}")
                continue
            manifest.addons[rel] = os.path.basename(reader.path)
    finally:
        for r in readers:
            r.close()

    save_manifest(cfg, manifest)
    with_meta = sum(1 for f in manifest.files.values() if f.has_meta)
    out.write("Extracted %d DBC files (%d with schema)\n" % (len(manifest.files), with_meta))
    out.write("Extracted %d interface files\n" % len(manifest.addons))
    out.write("Wrote: %s\n" % cfg.manifest_path)
    return manifest


def main(argv=None, cfg: Optional[Config] = None) -> int:
    args = list(argv or [])
    if args and args[0] in ("-h", "--help", "help"):
        sys.stdout.write("usage: mithril mod init\n")
        return 0
    if args:
        eprint("mod init: unexpected arguments: %s" % " ".join(args))
        return 2
    try:
        cfg = cfg or load_config()
        extract_baseline(cfg)
    except (MithrilError, OSError) as e:
        eprint("mod init: %s" % e)
        return 1
    return 0
