"""Relational round-trip of DBC tables through MySQL.

Tables are created from the embedded schemas with SQLAlchemy Core, loaded
in batches inside one transaction per table and fingerprinted with
``CHECKSUM TABLE``.  The fingerprint taken right after import is the
baseline; a table whose live checksum differs is exported back to a DBC
with a freshly built string block.
"""

from __future__ import annotations

import math
import os
import sys
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional, Tuple

from pymysql.constants import CLIENT
from sqlalchemy import (
    Column as SAColumn,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    UniqueConstraint,
    create_engine,
    inspect,
    select,
    text,
)
from sqlalchemy.dialects import mysql
from sqlalchemy.engine import URL, Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from . import wdbc
from .baseline import load_manifest
from .common import BadInput, ExternalFailure, read_bytes, warn, write_bytes
from .config import Config
from .schema import LOC_SLOTS, Column, Schema, get_schema, list_schemas
from .wdbc import DBCFile, DBCHeader, StringHeap

CHECKSUM_TABLE = "dbc_checksum"
AUTO_ID = "auto_id"
MAX_PARAMS = 60000
MAX_BATCH_ROWS = 2000


class ConnectFailed(ExternalFailure):
    pass


class DDLFailed(ExternalFailure):
    pass


class BatchInsertFailed(ExternalFailure):
    pass


class ExportQueryFailed(ExternalFailure):
    pass


def sql_type(col: Column):
    if col.type == "string":
        return mysql.TEXT()
    if col.type == "float":
        return mysql.DECIMAL(38, 16)
    if col.type == "int32":
        return mysql.INTEGER()
    if col.type == "uint8":
        return mysql.TINYINT(unsigned=True)
    if col.type == "int8":
        return mysql.TINYINT()
    return mysql.INTEGER(unsigned=True)


def build_table(schema: Schema, metadata: Optional[MetaData] = None) -> Table:
    if metadata is None:
        metadata = MetaData()
    cols = schema.columns()
    names = {c.sql_name for c in cols}
    pk = [k.lower() for k in schema.primary_keys]
    items = []
    if not pk or any(k not in names for k in pk):
        pk = [AUTO_ID]
        items.append(
            SAColumn(
                AUTO_ID,
                mysql.BIGINT(unsigned=True),
                autoincrement=True,
                nullable=False,
            )
        )
    for c in cols:
        items.append(
            SAColumn(c.sql_name, sql_type(c), nullable=False, autoincrement=False)
        )
    items.append(PrimaryKeyConstraint(*pk))
    for i, key in enumerate(schema.unique_keys):
        parts = [k.lower() for k in key]
        if all(p in names for p in parts):
            items.append(UniqueConstraint(*parts, name="uk_%d" % i))
    return Table(schema.table_name, metadata, *items)


checksum_metadata = MetaData()
checksum_table = Table(
    CHECKSUM_TABLE,
    checksum_metadata,
    SAColumn("table_name", String(255), primary_key=True),
    SAColumn(
        "checksum", mysql.BIGINT(unsigned=True), nullable=False, server_default="0"
    ),
)


def batch_size(column_count: int) -> int:
    return max(1, min(MAX_PARAMS // max(column_count, 1), MAX_BATCH_ROWS))


def clean_float(v) -> float:
    if v is None:
        return 0.0
    f = float(v)
    if math.isnan(f) or math.isinf(f):
        return 0.0
    return f


def record_to_row(rec: Dict, cols: List[Column], block: bytes) -> Dict:
    row = {}
    for c in cols:
        v = rec.get(c.key)
        if c.slot is not None:
            raw = int((v or [0] * LOC_SLOTS)[c.slot])
            row[c.sql_name] = wdbc.read_string(block, raw) if c.is_text else raw
        elif c.type == "string":
            row[c.sql_name] = wdbc.read_string(block, int(v or 0))
        elif c.type == "float":
            row[c.sql_name] = clean_float(v)
        else:
            row[c.sql_name] = int(v or 0)
    return row


def row_to_record(row, cols: List[Column], heap: StringHeap) -> Dict:
    rec = {}
    for c in cols:
        v = row.get(c.sql_name)
        if c.is_text:
            value = heap.add("" if v is None else v)
        elif c.type == "float":
            value = clean_float(v)
        else:
            value = int(v or 0)
        if c.slot is not None:
            rec.setdefault(c.key, [0] * LOC_SLOTS)[c.slot] = value
        else:
            rec[c.key] = value
    return rec


def duplicate_keys(schema: Schema, dbc: DBCFile) -> Dict[Tuple[str, ...], int]:
    """Count duplicate unique-key tuples in the source records."""
    out = {}
    for key in schema.unique_keys:
        seen = set()
        dups = 0
        for rec in dbc.records:
            t = tuple(rec.get(k) for k in key)
            if t in seen:
                dups += 1
            seen.add(t)
        if dups:
            out[tuple(key)] = dups
    return out


def database_url(cfg: Config, root: bool = False):
    if cfg.database_url and not root:
        return cfg.database_url
    my = cfg.mysql
    return URL.create(
        "mysql+pymysql",
        username=my.root_user if root else my.user,
        password=my.root_password if root else my.password,
        host=my.host,
        port=int(my.port),
        database=None if root else my.database,
        query={"charset": "utf8mb4", "client_flag": str(CLIENT.MULTI_STATEMENTS)},
    )


def create_db_engine(cfg: Config, root: bool = False) -> Engine:
    return create_engine(database_url(cfg, root=root), pool_pre_ping=True)


@contextmanager
def connect(engine: Engine) -> Iterator[Connection]:
    try:
        conn = engine.connect()
    except SQLAlchemyError as e:
        where = engine.url.render_as_string(hide_password=True)
        raise ConnectFailed(f"cannot connect to {where}: {e}") from e
    try:
        yield conn
    finally:
        conn.close()


def ensure_database(cfg: Config, out=None) -> None:
    """Create the dbc database and grant the workspace user access."""
    if out is None:
        out = sys.stdout
    if cfg.database_url:
        return
    my = cfg.mysql
    engine = create_db_engine(cfg, root=True)
    try:
        with connect(engine) as conn:
            q = conn.dialect.identifier_preparer.quote(my.database)
            for stmt in (
                f"CREATE DATABASE IF NOT EXISTS {q} CHARACTER SET utf8mb4 COLLATE utf8mb4_unicode_ci",
                f"GRANT ALL PRIVILEGES ON {q}.* TO '{my.user}'@'%'",
                "FLUSH PRIVILEGES",
            ):
                try:
                    conn.execute(text(stmt))
                except SQLAlchemyError as e:
                    warn(f"{stmt}: {e.orig or e}")
            conn.commit()
    finally:
        engine.dispose()
    out.write("Database ready: %s\n" % my.database)


def quote(conn: Connection, name: str) -> str:
    return conn.dialect.identifier_preparer.quote(name)


def live_checksum(conn: Connection, table_name: str) -> int:
    row = conn.execute(text("CHECKSUM TABLE %s" % quote(conn, table_name))).fetchone()
    if row is None or row[1] is None:
        return 0
    return int(row[1])


def stored_checksums(conn: Connection) -> Dict[str, int]:
    if not inspect(conn).has_table(CHECKSUM_TABLE):
        return {}
    rows = conn.execute(select(checksum_table.c.table_name, checksum_table.c.checksum))
    return {r[0]: int(r[1]) for r in rows}


def _store_checksum(conn: Connection, table_name: str, value: int) -> None:
    stmt = mysql.insert(checksum_table).values(table_name=table_name, checksum=value)
    stmt = stmt.on_duplicate_key_update(checksum=stmt.inserted.checksum)
    conn.execute(stmt)


def _insert_statement(table: Table, rows: List[Dict]):
    stmt = mysql.insert(table).values(rows)
    pk = {c.name for c in table.primary_key.columns}
    updates = {c.name: stmt.inserted[c.name] for c in table.columns if c.name not in pk}
    if not updates:
        first = table.primary_key.columns.values()[0].name
        updates = {first: stmt.inserted[first]}
    return stmt.on_duplicate_key_update(updates)


def import_table(
    conn: Connection, schema: Schema, dbc: DBCFile, force: bool = False
) -> bool:
    """Create and load one table; returns False when it already exists."""
    table = build_table(schema)
    exists = inspect(conn).has_table(table.name)
    if exists and not force:
        conn.rollback()
        return False
    for key, n in duplicate_keys(schema, dbc).items():
        warn(f"{schema.file}: {n} duplicate rows for unique key ({', '.join(key)})")
    try:
        checksum_table.create(conn, checkfirst=True)
        if exists:
            table.drop(conn)
        table.create(conn)
        conn.commit()
    except SQLAlchemyError as e:
        conn.rollback()
        raise DDLFailed(f"{table.name}: {e}") from e

    cols = schema.columns()
    size = batch_size(len(cols))
    rows = [record_to_row(rec, cols, dbc.string_block) for rec in dbc.records]
    try:
        with conn.begin():
            for start in range(0, len(rows), size):
                conn.execute(_insert_statement(table, rows[start : start + size]))
    except SQLAlchemyError as e:
        raise BatchInsertFailed(f"{table.name}: {e}") from e

    with conn.begin():
        _store_checksum(conn, table.name, live_checksum(conn, table.name))
    return True


def import_baseline(cfg: Config, engine: Engine, force: bool = False, out=None) -> int:
    """Load every baseline DBC with a schema; returns the error flag."""
    if out is None:
        out = sys.stdout
    manifest = load_manifest(cfg)
    err = 0
    with connect(engine) as conn:
        for name in sorted(manifest.files):
            if not manifest.files[name].has_meta:
                continue
            schema = get_schema(name)
            if schema is None:
                continue
            path = cfg.baseline_dbc_dir / name
            try:
                dbc = wdbc.decode(read_bytes(str(path)), schema)
                done = import_table(conn, schema, dbc, force=force)
            except (DDLFailed, BatchInsertFailed) as e:
                err = 1
                sys.stderr.write("dbc import failed: %s\n" % e)
                continue
            except (BadInput, OSError) as e:
                err = 1
                sys.stderr.write("dbc import failed: %s: %s\n" % (name, e))
                continue
            if done:
                out.write("Imported: %s (%d rows)\n" % (schema.table_name, len(dbc.records)))
            else:
                out.write("Skipped: %s (already imported)\n" % schema.table_name)
    return err


def modified_tables(conn: Connection, schemas: Optional[List[Schema]] = None) -> List[Schema]:
    if schemas is None:
        schemas = list_schemas()
    stored = stored_checksums(conn)
    existing = set(inspect(conn).get_table_names())
    out = []
    for schema in schemas:
        name = schema.table_name
        if name not in existing or name not in stored:
            continue
        if live_checksum(conn, name) != stored[name]:
            out.append(schema)
    return out


def export_table(conn: Connection, schema: Schema) -> DBCFile:
    table = build_table(schema)
    stmt = select(table)
    order = []
    for key in schema.sort_order:
        c = table.c.get(key.name.lower())
        if c is None:
            continue
        order.append(c.desc() if key.direction.upper() == "DESC" else c.asc())
    if order:
        stmt = stmt.order_by(*order)
    try:
        rows = conn.execute(stmt).mappings().all()
    except SQLAlchemyError as e:
        raise ExportQueryFailed(f"{table.name}: {e}") from e
    cols = schema.columns()
    heap = StringHeap()
    records = [row_to_record(r, cols, heap) for r in rows]
    rs = schema.record_size()
    block = heap.to_bytes()
    return DBCFile(DBCHeader(len(records), rs // 4, rs, len(block)), records, block)


def export_modified(engine: Engine, out_dir: str, out=None) -> List[str]:
    """Write every modified table to out_dir; returns the written DBC paths."""
    if out is None:
        out = sys.stdout
    written = []
    with connect(engine) as conn:
        for schema in modified_tables(conn):
            try:
                dbc = export_table(conn, schema)
            except ExportQueryFailed as e:
                warn(f"skipping export: {e}")
                continue
            path = os.path.join(out_dir, schema.file)
            write_bytes(path, wdbc.encode(dbc, schema))
            out.write("Exported: %s (%d rows)\n" % (schema.file, len(dbc.records)))
            written.append(path)
    return written


def run_script(engine: Engine, script: str) -> None:
    """Execute a multi-statement SQL script and commit it."""
    try:
        raw = engine.raw_connection()
    except SQLAlchemyError as e:
        raise ConnectFailed(str(e)) from e
    try:
        cur = raw.cursor()
        try:
            cur.execute(script)
            while cur.nextset():
                pass
        finally:
            cur.close()
        raw.commit()
    except engine.dialect.dbapi.Error as e:
        raw.rollback()
        raise ExternalFailure(f"SQL script failed: {e}") from e
    finally:
        raw.close()


def run_query(engine: Engine, sql: str) -> Tuple[List[str], List[tuple]]:
    try:
        raw = engine.raw_connection()
    except SQLAlchemyError as e:
        raise ConnectFailed(str(e)) from e
    try:
        cur = raw.cursor()
        try:
            cur.execute(sql)
            cols = [d[0] for d in (cur.description or ())]
            rows = list(cur.fetchall()) if cur.description else []
        finally:
            cur.close()
        raw.commit()
    except engine.dialect.dbapi.Error as e:
        raise ExternalFailure(f"query failed: {e}") from e
    finally:
        raw.close()
    return cols, rows


def format_cell(v) -> str:
    if v is None:
        return "NULL"
    if isinstance(v, (bytes, bytearray)):
        return bytes(v).decode("utf-8", "replace")
    return str(v)
