from __future__ import annotations

import os
import re
import subprocess
import sys
from dataclasses import dataclass
from typing import List, Optional, Set, Tuple

from .common import (
    BadInput,
    ExternalFailure,
    Inconsistent,
    MithrilError,
    eprint,
    now_iso,
    pop_flag,
    pop_option,
    read_json,
    remove_empty_dirs,
    warn,
    write_json,
    write_text,
)
from .config import Config, load_config
from .workspace import all_mods, require_mod

TRACKER = "sql_migrations_applied.json"
DEFAULT_DATABASE = "world"
# migrations under sql/dbc/ target the table database of the relational bridge
DBC_DATABASE = "dbc"
ROLLBACK_SUFFIX = ".rollback.sql"
_NUMBERED = re.compile(r"^(\d+)_")


@dataclass(frozen=True)
class Migration:
    mod: str
    database: str
    file: str
    path: str

    @property
    def key(self) -> Tuple[str, str]:
        return (self.mod, self.file)

    @property
    def rollback_path(self) -> str:
        return self.path[: -len(".sql")] + ROLLBACK_SUFFIX

    @property
    def stem(self) -> str:
        return self.file[: -len(".sql")]


def _is_forward(name: str) -> bool:
    low = name.lower()
    return low.endswith(".sql") and not low.endswith(ROLLBACK_SUFFIX)


def discover(cfg: Config, mod: str) -> List[Migration]:
    root = cfg.mod_dir(mod) / "sql"
    if not root.is_dir():
        return []
    out = []
    for p in root.iterdir():
        if p.is_file() and _is_forward(p.name):
            out.append(Migration(mod, DEFAULT_DATABASE, p.name, str(p)))
        elif p.is_dir():
            for q in p.iterdir():
                if q.is_file() and _is_forward(q.name):
                    out.append(Migration(mod, p.name, q.name, str(q)))
    out.sort(key=lambda m: (m.database, m.file))
    return out


def find_migration(cfg: Config, mod: str, target: str) -> Optional[Migration]:
    for m in discover(cfg, mod):
        if target in (m.file, m.stem) or target + ".sql" == m.file:
            return m
    return None


def load_tracker(cfg: Config) -> List[dict]:
    data = read_json(str(cfg.tracker_path(TRACKER)), {}) or {}
    return list(data.get("applied") or [])


def save_tracker(cfg: Config, entries: List[dict]) -> None:
    write_json(str(cfg.tracker_path(TRACKER)), {"applied": entries})


def applied_keys(cfg: Config) -> Set[Tuple[str, str]]:
    return {(e.get("mod"), e.get("file")) for e in load_tracker(cfg)}


class Runner:
    """Runs a whole script against a named database.

    The dbc migrations run through the relational bridge against the
    configured table database; every other database goes through the
    configured external command, script on stdin.
    """

    def __init__(self, cfg: Config, engine=None):
        self.cfg = cfg
        self._engine = engine
        self._own_engine = False

    def run(self, database: str, script: str, label: str = "") -> None:
        if database == DBC_DATABASE:
            from . import sqlbridge

            if self._engine is None:
                self._engine = sqlbridge.create_db_engine(self.cfg)
                self._own_engine = True
            sqlbridge.run_script(self._engine, script)
            return
        argv = self.cfg.runner_argv(database)
        try:
            proc = subprocess.run(argv, input=script, capture_output=True, text=True)
        except FileNotFoundError as e:
            raise ExternalFailure(f"SQL runner not found: {argv[0]}") from e
        if proc.returncode != 0:
            detail = (proc.stderr or proc.stdout or "").strip()
            raise ExternalFailure(f"{label or database}: exit {proc.returncode}: {detail}")

    def close(self) -> None:
        if self._own_engine and self._engine is not None:
            self._engine.dispose()
            self._engine = None


def _entry(m: Migration) -> dict:
    return {"mod": m.mod, "file": m.file, "database": m.database, "applied_at": now_iso()}


def apply_migrations(
    cfg: Config,
    mods: List[str],
    database: Optional[str] = None,
    runner=None,
    out=None,
) -> int:
    """Apply pending migrations in build order; stops at the first failure."""
    if out is None:
        out = sys.stdout
    entries = load_tracker(cfg)
    done = {(e.get("mod"), e.get("file")) for e in entries}
    own = runner is None
    if own:
        runner = Runner(cfg)
    count = 0
    try:
        for mod in mods:
            for m in discover(cfg, mod):
                if database is not None and m.database != database:
                    continue
                if m.key in done:
                    continue
                out.write("Applying %s/%s/%s\n" % (m.mod, m.database, m.file))
                with open(m.path, "r", encoding="utf-8") as f:
                    script = f.read()
                try:
                    runner.run(m.database, script, "%s/%s" % (m.mod, m.file))
                except ExternalFailure as e:
                    raise ExternalFailure(
                        f"migration {m.mod}/{m.file} failed: {e}; fix it and re-run 'mithril mod sql apply'"
                    ) from e
                entries.append(_entry(m))
                done.add(m.key)
                save_tracker(cfg, entries)
                count += 1
    finally:
        if own:
            runner.close()
    return count


def _read(path: str) -> str:
    with open(path, "r", encoding="utf-8") as f:
        return f.read()


def rollback_migration(
    cfg: Config,
    mod: str,
    target: Optional[str] = None,
    reapply: bool = False,
    runner=None,
    out=None,
) -> Migration:
    if out is None:
        out = sys.stdout
    entries = load_tracker(cfg)
    mine = [e for e in entries if e.get("mod") == mod]
    if not mine:
        raise BadInput(f"no applied migrations for mod {mod}")
    if target:
        wanted = [
            e
            for e in mine
            if target in (e.get("file"), e.get("file", "")[: -len(".sql")])
            or target + ".sql" == e.get("file")
        ]
        if not wanted:
            raise BadInput(f"migration {target} is not applied for mod {mod}")
        entry = wanted[-1]
    else:
        entry = mine[-1]
    m = find_migration(cfg, mod, entry["file"])
    if m is None:
        raise Inconsistent(
            f"tracked migration {mod}/{entry['file']} no longer exists; run 'mithril clean --trackers'"
        )
    if not os.path.isfile(m.rollback_path):
        raise BadInput(f"no rollback script: {m.rollback_path}")
    own = runner is None
    if own:
        runner = Runner(cfg)
    try:
        out.write("Rolling back %s/%s/%s\n" % (m.mod, m.database, m.file))
        runner.run(m.database, _read(m.rollback_path), "%s/%s" % (mod, os.path.basename(m.rollback_path)))
        entries.remove(entry)
        save_tracker(cfg, entries)
        if reapply:
            out.write("Re-applying %s/%s/%s\n" % (m.mod, m.database, m.file))
            runner.run(m.database, _read(m.path), "%s/%s" % (mod, m.file))
            entries.append(_entry(m))
            save_tracker(cfg, entries)
    finally:
        if own:
            runner.close()
    return m


def slugify(name: str) -> str:
    slug = re.sub(r"\s+", "_", name.strip().lower())
    slug = re.sub(r"[^a-z0-9_\-]", "", slug)
    if not slug:
        raise BadInput(f"invalid migration name: {name!r}")
    return slug


def create_migration(cfg: Config, mod: str, name: str, database: str = DEFAULT_DATABASE) -> Migration:
    require_mod(cfg, mod)
    slug = slugify(name)
    d = cfg.mod_dir(mod) / "sql" / database
    d.mkdir(parents=True, exist_ok=True)
    n = 0
    for p in d.iterdir():
        hit = _NUMBERED.match(p.name)
        if hit:
            n = max(n, int(hit.group(1)))
    fname = "%03d_%s.sql" % (n + 1, slug)
    m = Migration(mod, database, fname, str(d / fname))
    write_text(
        m.path,
        "-- Migration: %s\n-- Database: %s\n-- Mod: %s\n--\n-- Description:\n\n"
        % (name, database, mod),
    )
    write_text(
        m.rollback_path,
        "-- Rollback: %s\n-- Database: %s\n-- Mod: %s\n--\n-- Reverse the changes made by %s\n\n"
        % (name, database, mod, fname),
    )
    return m


def remove_migration(
    cfg: Config, mod: str, target: str, rollback: bool = False, runner=None, out=None
) -> Migration:
    require_mod(cfg, mod)
    m = find_migration(cfg, mod, target)
    if m is None:
        raise BadInput(f"migration not found in {mod}: {target}")
    if m.key in applied_keys(cfg):
        if rollback:
            rollback_migration(cfg, mod, m.file, runner=runner, out=out)
        else:
            entries = [e for e in load_tracker(cfg) if (e.get("mod"), e.get("file")) != m.key]
            save_tracker(cfg, entries)
            warn(f"{m.file} was applied; its changes remain in the {m.database} database")
    os.remove(m.path)
    if os.path.isfile(m.rollback_path):
        os.remove(m.rollback_path)
    remove_empty_dirs(os.path.dirname(m.path), str(cfg.mod_dir(mod) / "sql"))
    return m


def prune_tracker(cfg: Config) -> int:
    entries = load_tracker(cfg)
    keep = [e for e in entries if find_migration(cfg, e.get("mod", ""), e.get("file", "")) is not None]
    if len(keep) != len(entries):
        save_tracker(cfg, keep)
    return len(entries) - len(keep)


def _print_list(cfg: Config, mods: List[str], out, show_stale: bool = False) -> None:
    applied = applied_keys(cfg)
    any_found = False
    for mod in mods:
        ms = discover(cfg, mod)
        if not ms:
            continue
        any_found = True
        out.write("%s:\n" % mod)
        for m in ms:
            mark = "[✓ applied]" if m.key in applied else "[pending]"
            out.write("  %-11s %s/%s\n" % (mark, m.database, m.file))
    if not any_found:
        out.write("No migrations.\n")
    if show_stale:
        for mod, file in sorted(applied):
            if find_migration(cfg, mod, file) is None:
                warn(f"tracker references missing migration {mod}/{file}; run 'mithril clean --trackers'")


def _usage(out=None):
    if out is None:
        out = sys.stderr
    out.write("usage: mithril mod sql create <name> --mod M [--db DB]\n")
    out.write("       mithril mod sql remove <migration> --mod M [--rollback]\n")
    out.write("       mithril mod sql list [--mod M]\n")
    out.write("       mithril mod sql status [--mod M]\n")
    out.write("       mithril mod sql apply [--mod M]\n")
    out.write("       mithril mod sql rollback --mod M [<migration>] [--reapply]\n")


def main(argv=None, cfg: Optional[Config] = None, runner=None) -> int:
    args = list(argv or [])
    if not args or args[0] in ("-h", "--help", "help"):
        _usage(sys.stdout if args else None)
        return 0 if args else 2
    cmd = args.pop(0)
    out = sys.stdout
    try:
        mod = pop_option(args, "--mod")
        cfg = cfg or load_config()
        if cmd == "create":
            db = pop_option(args, "--db") or DEFAULT_DATABASE
            if len(args) != 1 or not mod:
                _usage()
                return 2
            m = create_migration(cfg, mod, args[0], db)
            out.write("Created: %s\n" % m.path)
            out.write("Created: %s\n" % m.rollback_path)
            return 0
        if cmd == "remove":
            rollback = pop_flag(args, "--rollback")
            if len(args) != 1 or not mod:
                _usage()
                return 2
            m = remove_migration(cfg, mod, args[0], rollback=rollback, runner=runner)
            out.write("Removed: %s\n" % m.file)
            return 0
        if cmd in ("list", "status"):
            if args:
                _usage()
                return 2
            mods = [mod] if mod else all_mods(cfg)
            if mod:
                require_mod(cfg, mod)
            _print_list(cfg, mods, out, show_stale=(cmd == "status"))
            return 0
        if cmd == "apply":
            if args:
                _usage()
                return 2
            if mod:
                require_mod(cfg, mod)
            mods = [mod] if mod else all_mods(cfg)
            n = apply_migrations(cfg, mods, runner=runner, out=out)
            out.write("Applied %d migration(s).\n" % n)
            return 0
        if cmd == "rollback":
            reapply = pop_flag(args, "--reapply")
            if not mod or len(args) > 1:
                _usage()
                return 2
            require_mod(cfg, mod)
            rollback_migration(
                cfg, mod, args[0] if args else None, reapply=reapply, runner=runner, out=out
            )
            return 0
    except (MithrilError, OSError) as e:
        eprint("mod sql %s: %s" % (cmd, e))
        return 1
    eprint("mod sql: unknown command: %s" % cmd)
    return 2
