"""Community mod registry: browse entries and install mods from their git repos."""

from __future__ import annotations

import json
import subprocess
import sys
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .common import (
    BadInput,
    Conflict,
    ExternalFailure,
    MithrilError,
    eprint,
    now_iso,
    warn,
)
from .config import Config, load_config
from .workspace import MOD_META, ModMeta, save_mod_meta, validate_mod_name

USER_AGENT = "mithril"
MAX_DESCRIPTION = 35

_NEXT_STEPS = {
    "dbc": "mithril mod build --mod {name}       # Build DBC patches",
    "addon": "mithril mod build --mod {name}       # Build addon patches",
    "sql": "mithril mod sql apply --mod {name}   # Apply SQL migrations",
    "core": "mithril mod core apply --mod {name}  # Apply core patches",
    "script": "mithril mod script sync             # Copy scripts into the server source",
    "binary-patch": "mithril mod patch list           # See available binary patches",
}


@dataclass
class RegistryEntry:
    name: str
    description: str = ""
    author: str = ""
    repo: str = ""
    tags: List[str] = field(default_factory=list)
    version: str = "1.0.0"
    mod_types: List[str] = field(default_factory=list)
    releases: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        d = {
            "name": self.name,
            "description": self.description,
            "author": self.author,
            "repo": self.repo,
            "tags": list(self.tags),
            "version": self.version,
            "mod_types": list(self.mod_types),
        }
        if self.releases:
            d["releases"] = dict(self.releases)
        return d

    @classmethod
    def from_dict(cls, d) -> "RegistryEntry":
        if not isinstance(d, dict) or not d.get("name"):
            raise BadInput("registry entry without a name")
        return cls(
            name=str(d["name"]),
            description=str(d.get("description") or ""),
            author=str(d.get("author") or ""),
            repo=str(d.get("repo") or ""),
            tags=[str(t) for t in (d.get("tags") or [])],
            version=str(d.get("version") or ""),
            mod_types=[str(t) for t in (d.get("mod_types") or [])],
            releases={str(k): str(v) for k, v in (d.get("releases") or {}).items()},
        )


def fetch_json(url: str):
    req = urllib.request.Request(
        url,
        headers={"Accept": "application/vnd.github+json", "User-Agent": USER_AGENT},
    )
    try:
        with urllib.request.urlopen(req, timeout=30) as r:
            body = r.read()
    except urllib.error.HTTPError as e:
        if e.code == 404:
            raise BadInput(f"not found: {url}") from e
        raise ExternalFailure(f"{url}: HTTP {e.code}") from e
    except urllib.error.URLError as e:
        raise ExternalFailure(f"{url}: {e.reason}") from e
    try:
        return json.loads(body.decode("utf-8", "replace"))
    except json.JSONDecodeError as e:
        raise ExternalFailure(f"{url}: invalid JSON: {e}") from e


def fetch_index(cfg: Config) -> List[RegistryEntry]:
    listing = fetch_json(cfg.registry_index_url)
    if not isinstance(listing, list):
        raise ExternalFailure("unexpected registry listing (expected a JSON array)")
    entries = []
    for item in listing:
        if not isinstance(item, dict):
            continue
        name = str(item.get("name") or "")
        url = item.get("download_url")
        if not name.endswith(".json") or not url:
            continue
        try:
            entries.append(RegistryEntry.from_dict(fetch_json(url)))
        except MithrilError as e:
            warn(f"skipping registry entry {name}: {e}")
    entries.sort(key=lambda e: e.name)
    return entries


def fetch_entry(cfg: Config, name: str) -> RegistryEntry:
    validate_mod_name(name)
    return RegistryEntry.from_dict(fetch_json(f"{cfg.registry_mods_url}/{name}.json"))


def matches_query(entry: RegistryEntry, query: str) -> bool:
    q = query.lower()
    fields = [entry.name, entry.description, entry.author] + entry.tags + entry.mod_types
    return any(q in f.lower() for f in fields)


def search(cfg: Config, query: str) -> List[RegistryEntry]:
    return [e for e in fetch_index(cfg) if matches_query(e, query)]


def install(cfg: Config, entry: RegistryEntry, out=None) -> str:
    """Clone the entry's repo into the modules directory."""
    if out is None:
        out = sys.stdout
    validate_mod_name(entry.name)
    dest = cfg.mod_dir(entry.name)
    if dest.exists():
        raise Conflict(f"mod '{entry.name}' already exists at {dest}; remove it first to reinstall")
    if not entry.repo:
        raise BadInput(f"no repo URL for mod {entry.name}")
    cfg.modules_dir.mkdir(parents=True, exist_ok=True)
    out.write("Cloning %s...\n" % entry.repo)
    try:
        proc = subprocess.run(
            ["git", "clone", "-q", entry.repo, str(dest)], capture_output=True, text=True
        )
    except FileNotFoundError as e:
        raise ExternalFailure("git not found on PATH") from e
    if proc.returncode != 0:
        raise ExternalFailure("git clone failed: %s" % (proc.stderr or proc.stdout or "").strip())
    if not (dest / MOD_META).is_file():
        save_mod_meta(
            cfg, ModMeta(name=entry.name, description=entry.description, created_at=now_iso())
        )
    return str(dest)


def _print_table(entries: List[RegistryEntry], out) -> None:
    out.write("%-25s %-15s %-15s %s\n" % ("Name", "Author", "Types", "Description"))
    out.write("-" * 85 + "\n")
    for e in entries:
        desc = e.description
        if len(desc) > MAX_DESCRIPTION:
            desc = desc[: MAX_DESCRIPTION - 3] + "..."
        out.write("%-25s %-15s %-15s %s\n" % (e.name, e.author, ",".join(e.mod_types), desc))
    out.write("\nTotal: %d mod(s)\n" % len(entries))


def _print_matches(query: str, entries: List[RegistryEntry], out) -> None:
    out.write("=== Search: %s (%d results) ===\n\n" % (query, len(entries)))
    for e in entries:
        out.write("  %s: %s\n" % (e.name, e.description))
        out.write(
            "    Author: %s  Tags: %s  Types: %s\n"
            % (e.author, ", ".join(e.tags), ", ".join(e.mod_types))
        )
        if e.repo:
            out.write("    Repo: %s\n" % e.repo)
        out.write("\n")


def _print_info(e: RegistryEntry, out) -> None:
    out.write("=== %s ===\n\n" % e.name)
    out.write("  Description: %s\n" % e.description)
    out.write("  Author:      %s\n" % e.author)
    out.write("  Version:     %s\n" % e.version)
    out.write("  Repo:        %s\n" % e.repo)
    out.write("  Tags:        %s\n" % ", ".join(e.tags))
    out.write("  Mod types:   %s\n" % ", ".join(e.mod_types))
    release = e.releases.get("latest")
    if release:
        out.write("  Release:     %s\n" % release)
    out.write("\nInstall with: mithril mod registry install %s\n" % e.name)


def print_next_steps(entry: RegistryEntry, out) -> None:
    steps = [_NEXT_STEPS[t].format(name=entry.name) for t in entry.mod_types if t in _NEXT_STEPS]
    if not steps:
        return
    out.write("\nNext steps:\n")
    for s in steps:
        out.write("  %s\n" % s)


def _usage(out=None):
    if out is None:
        out = sys.stderr
    out.write("usage: mithril mod registry list\n")
    out.write("       mithril mod registry search <query>\n")
    out.write("       mithril mod registry info <name>\n")
    out.write("       mithril mod registry install <name>\n")


def main(argv=None, cfg: Optional[Config] = None) -> int:
    args = list(argv or [])
    if not args or args[0] in ("-h", "--help", "help"):
        _usage(sys.stdout if args else None)
        return 0 if args else 2
    cmd = args.pop(0)
    out = sys.stdout
    if cmd not in ("list", "search", "info", "install"):
        eprint("mod registry: unknown command: %s" % cmd)
        return 2
    if len(args) != (0 if cmd == "list" else 1):
        _usage()
        return 2
    try:
        cfg = cfg or load_config()
        if cmd == "list":
            entries = fetch_index(cfg)
            if not entries:
                out.write("No mods found in the registry.\n")
                return 0
            _print_table(entries, out)
            return 0
        if cmd == "search":
            entries = search(cfg, args[0])
            if not entries:
                out.write("No mods found matching: %s\n" % args[0])
                return 0
            _print_matches(args[0], entries, out)
            return 0
        entry = fetch_entry(cfg, args[0])
        if cmd == "info":
            _print_info(entry, out)
            return 0
        out.write("=== Installing: %s ===\n" % entry.name)
        dest = install(cfg, entry, out)
        out.write("Installed %s to %s\n" % (entry.name, dest))
        print_next_steps(entry, out)
        return 0
    except (MithrilError, OSError) as e:
        eprint("mod registry %s: %s" % (cmd, e))
        return 1
