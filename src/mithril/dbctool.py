from __future__ import annotations

import re
import shutil
import sys
from typing import Dict, List, Optional, Tuple

from . import csvbridge
from .baseline import load_manifest
from .common import (
    BadInput,
    MithrilError,
    eprint,
    open_in_editor,
    pop_flag,
    pop_option,
)
from .composer import CSV_SUFFIX
from .config import Config, load_config
from .schema import get_schema
from .workspace import require_mod

MAX_MATCHES_PER_FILE = 20
SAMPLE_ROWS = 5
MAX_CELL_WIDTH = 40


def _trunc(s: str, width: int) -> str:
    return s if len(s) <= width else s[: width - 3] + "..."


def resolve_table(cfg: Config, name: str) -> str:
    """Logical table name (as stored in the baseline) for user input like 'spell'."""
    stem = name
    for suffix in (".csv", ".dbc"):
        if stem.lower().endswith(suffix):
            stem = stem[: -len(suffix)]
    wanted = stem.lower() + ".dbc"
    for table in load_manifest(cfg).files:
        if table.lower() == wanted:
            return table
    raise BadInput(f"table not found in baseline: {name}")


def baseline_csv(cfg: Config, table: str) -> str:
    path = cfg.baseline_csv_dir / (table + ".csv")
    if not path.is_file():
        raise BadInput(f"{table} has no CSV in the baseline (no schema?)")
    return str(path)


def ensure_mod_copy(cfg: Config, mod: str, table: str) -> Tuple[str, bool]:
    require_mod(cfg, mod)
    dst = cfg.mod_dir(mod) / "dbc" / (table + ".csv")
    if dst.is_file():
        return str(dst), False
    src = baseline_csv(cfg, table)
    dst.parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(src, dst)
    return str(dst), True


def parse_assignment(text: str, flag: str) -> Tuple[str, str]:
    if "=" not in text:
        raise BadInput(f"{flag} expects key=value, got: {text}")
    k, v = text.split("=", 1)
    return k.strip(), v


def set_values(path: str, where: Tuple[str, str], sets: Dict[str, str]) -> int:
    header, rows = csvbridge.read_rows(path)
    index = {h: i for i, h in enumerate(header)}
    for col in [where[0]] + list(sets):
        if col not in index:
            raise BadInput(
                f"column {col!r} not found; available: {', '.join(header[:10])}..."
            )
    wi = index[where[0]]
    count = 0
    for row in rows:
        if wi < len(row) and row[wi] == where[1]:
            row.extend([""] * (len(header) - len(row)))
            for col, value in sets.items():
                row[index[col]] = value
            count += 1
    if not count:
        raise BadInput(f"no row with {where[0]}={where[1]}")
    csvbridge.write_rows(path, header, rows)
    return count


def search(cfg: Config, expr: str, mod: Optional[str] = None):
    """Yield (table, source, [(line, text)]) with a mod's copy shadowing the baseline."""
    try:
        pattern = re.compile(expr, re.IGNORECASE)
    except re.error as e:
        raise BadInput(f"invalid regex {expr!r}: {e}") from e
    sources: List[Tuple[str, str, str]] = []
    shadowed = set()
    if mod:
        require_mod(cfg, mod)
        d = cfg.mod_dir(mod) / "dbc"
        if d.is_dir():
            for p in sorted(d.iterdir()):
                if p.name.lower().endswith(CSV_SUFFIX):
                    shadowed.add(p.name.lower())
                    sources.append((p.name[:-4], mod, str(p)))
    if cfg.baseline_csv_dir.is_dir():
        for p in sorted(cfg.baseline_csv_dir.iterdir()):
            if p.name.lower().endswith(CSV_SUFFIX) and p.name.lower() not in shadowed:
                sources.append((p.name[:-4], "baseline", str(p)))
    for table, source, path in sources:
        hits = []
        with open(path, "r", encoding=csvbridge.CSV_ENCODING, errors="replace") as f:
            next(f, None)
            for lineno, line in enumerate(f, start=2):
                line = line.rstrip("\r\n")
                if pattern.search(line):
                    hits.append((lineno, line))
                    if len(hits) >= MAX_MATCHES_PER_FILE:
                        break
        if hits:
            yield table, source, hits


def _print_list(cfg: Config, out) -> None:
    manifest = load_manifest(cfg)
    out.write("%-40s %8s %6s  %s\n" % ("Table", "Records", "Fields", "Schema"))
    for name in sorted(manifest.files, key=str.lower):
        f = manifest.files[name]
        out.write(
            "%-40s %8d %6d  %s\n" % (name, f.record_count, f.field_count, "yes" if f.has_meta else "-")
        )
    with_meta = sum(1 for f in manifest.files.values() if f.has_meta)
    out.write("Total: %d tables (%d with schema)\n" % (len(manifest.files), with_meta))


def _print_inspect(cfg: Config, table: str, out) -> None:
    f = load_manifest(cfg).files[table]
    out.write("%s (from %s)\n" % (table, f.source_mpq))
    out.write("  records: %d  fields: %d  md5: %s\n" % (f.record_count, f.field_count, f.original_md5))
    schema = get_schema(table)
    if schema is None:
        out.write("  no schema; the table is extracted but cannot be edited\n")
        return
    out.write("  record size: %d bytes\n" % schema.record_size())
    if schema.primary_keys:
        out.write("  primary key: %s\n" % ", ".join(schema.primary_keys))
    for fd in schema.fields:
        count = " x%d" % fd.count if fd.count > 1 else ""
        out.write("    %-32s %s%s\n" % (fd.name, fd.type, count))
    header, rows = csvbridge.read_rows(baseline_csv(cfg, table))
    width = min(len(header), 8)
    out.write("  sample rows:\n")
    out.write("    " + "\t".join(header[:width]) + "\n")
    for row in rows[:SAMPLE_ROWS]:
        out.write("    " + "\t".join(_trunc(c, MAX_CELL_WIDTH) for c in row[:width]) + "\n")


def _usage(out=None):
    if out is None:
        out = sys.stderr
    out.write("usage: mithril mod dbc list\n")
    out.write("       mithril mod dbc search <regex> [--mod M]\n")
    out.write("       mithril mod dbc inspect <name>\n")
    out.write("       mithril mod dbc set <name> --mod M --where K=V --set C=V [--set C=V ...]\n")
    out.write("       mithril mod dbc edit <name> --mod M\n")
    out.write("       mithril mod dbc import [--force]\n")
    out.write("       mithril mod dbc export\n")
    out.write("       mithril mod dbc query \"<SQL>\"\n")


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
        if cmd == "search":
            mod = pop_option(args, "--mod")
            if len(args) != 1:
                _usage()
                return 2
            cfg.require_baseline()
            files = 0
            for table, source, hits in search(cfg, args[0], mod):
                out.write("=== %s [%s] (%d matches) ===\n" % (table, source, len(hits)))
                for lineno, line in hits:
                    out.write("  line %d: %s\n" % (lineno, _trunc(line, 150)))
                files += 1
            if not files:
                out.write("No matches for: %s\n" % args[0])
            return 0
        if cmd == "inspect":
            if len(args) != 1:
                _usage()
                return 2
            _print_inspect(cfg, resolve_table(cfg, args[0]), out)
            return 0
        if cmd == "set":
            mod = pop_option(args, "--mod")
            where = pop_option(args, "--where")
            sets = pop_option(args, "--set", multi=True)
            if len(args) != 1 or not mod or not where or not sets:
                _usage()
                return 2
            table = resolve_table(cfg, args[0])
            path, copied = ensure_mod_copy(cfg, mod, table)
            if copied:
                out.write("Copied %s from baseline into %s\n" % (table + ".csv", mod))
            changes = dict(parse_assignment(s, "--set") for s in sets)
            n = set_values(path, parse_assignment(where, "--where"), changes)
            out.write("Updated %d row(s) in %s\n" % (n, path))
            return 0
        if cmd == "edit":
            mod = pop_option(args, "--mod")
            if len(args) != 1 or not mod:
                _usage()
                return 2
            table = resolve_table(cfg, args[0])
            path, copied = ensure_mod_copy(cfg, mod, table)
            if copied:
                out.write("Copied %s from baseline into %s\n" % (table + ".csv", mod))
            open_in_editor(path)
            out.write("Run 'mithril mod build --mod %s' to package it.\n" % mod)
            return 0
        if cmd in ("import", "export", "query"):
            return _sql_command(cfg, cmd, args, out)
    except (MithrilError, OSError) as e:
        eprint("mod dbc %s: %s" % (cmd, e))
        return 1
    eprint("mod dbc: unknown command: %s" % cmd)
    return 2


def _sql_command(cfg: Config, cmd: str, args: List[str], out) -> int:
    from . import sqlbridge

    if cmd == "import":
        force = pop_flag(args, "--force", "-f")
        if args:
            _usage()
            return 2
        cfg.require_baseline()
        sqlbridge.ensure_database(cfg, out=out)
    elif cmd == "export" and args:
        _usage()
        return 2
    elif cmd == "query" and len(args) != 1:
        _usage()
        return 2
    engine = sqlbridge.create_db_engine(cfg)
    try:
        if cmd == "import":
            return sqlbridge.import_baseline(cfg, engine, force=force, out=out)
        if cmd == "export":
            cfg.dbc_export_dir.mkdir(parents=True, exist_ok=True)
            paths = sqlbridge.export_modified(engine, str(cfg.dbc_export_dir), out=out)
            out.write("Exported %d modified table(s)\n" % len(paths))
            return 0
        cols, rows = sqlbridge.run_query(engine, args[0])
        if cols:
            out.write("\t".join(cols) + "\n")
        for row in rows:
            out.write("\t".join(sqlbridge.format_cell(v) for v in row) + "\n")
        out.write("(%d rows)\n" % len(rows))
        return 0
    finally:
        engine.dispose()
