from __future__ import annotations

import csv
import math
import os
import struct
from decimal import Decimal
from typing import Dict, List, Tuple

from .common import BadInput
from .schema import LOC_SLOTS, Column, Schema
from .wdbc import DBCFile, DBCHeader, StringHeap, read_string

CSV_ENCODING = "utf-8-sig"

_F32 = struct.Struct("<f")

_INT_RANGES = {
    "int32": (-0x80000000, 0x7FFFFFFF),
    "uint32": (0, 0xFFFFFFFF),
    "int8": (-0x80, 0x7F),
    "uint8": (0, 0xFF),
}


def format_float(v) -> str:
    """Shortest plain-decimal text that reads back to the same float32."""
    if v is None:
        return "0"
    v = float(v)
    if math.isnan(v) or math.isinf(v) or v == 0:
        return "0"
    try:
        target = _F32.pack(v)
    except OverflowError:
        return "0"
    text = repr(v)
    for prec in range(1, 10):
        s = "%.*g" % (prec, v)
        if _F32.pack(float(s)) == target:
            text = s
            break
    out = format(Decimal(text), "f")
    if "." in out:
        out = out.rstrip("0").rstrip(".")
    return out or "0"


def cell_text(rec: Dict, col: Column, block: bytes) -> str:
    v = rec.get(col.key)
    if col.slot is not None:
        raw = int((v or [0] * LOC_SLOTS)[col.slot])
        if col.is_text:
            return read_string(block, raw)
        return str(raw)
    if col.type == "string":
        return read_string(block, int(v or 0))
    if col.type == "float":
        return format_float(v)
    return str(int(v or 0))


def parse_cell(text, col: Column):
    """Parse a numeric CSV cell; blank means 0."""
    s = "" if text is None else str(text).strip()
    if s == "":
        return 0.0 if col.type == "float" else 0
    if col.type == "float":
        try:
            f = float(s)
            _F32.pack(f)
        except ValueError as e:
            raise BadInput(f"column {col.name}: not a number: {s!r}") from e
        except OverflowError as e:
            raise BadInput(f"column {col.name}: {s} does not fit a float32") from e
        return f
    try:
        n = int(s, 10)
    except ValueError:
        try:
            f = float(s)
        except ValueError as e:
            raise BadInput(f"column {col.name}: not an integer: {s!r}") from e
        if not f.is_integer():
            raise BadInput(f"column {col.name}: not an integer: {s!r}")
        n = int(f)
    lo, hi = _INT_RANGES.get(col.type, _INT_RANGES["uint32"])
    if n < lo or n > hi:
        raise BadInput(f"column {col.name}: {n} out of range for {col.type}")
    return n


def read_rows(path: str) -> Tuple[List[str], List[List[str]]]:
    with open(path, "r", encoding=CSV_ENCODING, newline="") as f:
        reader = csv.reader(f)
        header = next(reader, None)
        if header is None:
            raise BadInput(f"{path}: empty CSV")
        rows = [row for row in reader if row]
    return header, rows


def write_rows(path: str, header: List[str], rows) -> None:
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(path, "w", encoding=CSV_ENCODING, newline="") as f:
        w = csv.writer(f, lineterminator="\r\n")
        w.writerow(header)
        for row in rows:
            w.writerow(row)


def records_to_rows(dbc: DBCFile, schema: Schema) -> List[List[str]]:
    cols = schema.columns()
    block = dbc.string_block
    return [[cell_text(rec, c, block) for c in cols] for rec in dbc.records]


def export_csv(dbc: DBCFile, schema: Schema, path: str) -> None:
    write_rows(path, schema.column_names(), records_to_rows(dbc, schema))


def rows_to_dbc(header: List[str], rows: List[List[str]], schema: Schema) -> DBCFile:
    cols = schema.columns()
    index = {}
    for i, name in enumerate(header):
        index.setdefault(name.strip(), i)
        index.setdefault(name.strip().lower(), i)
    where = []
    for c in cols:
        i = index.get(c.name)
        if i is None:
            i = index.get(c.name.lower())
        where.append(i)

    heap = StringHeap()
    records = []
    for line, row in enumerate(rows, start=2):
        rec = {}
        for c, i in zip(cols, where):
            text = row[i] if i is not None and i < len(row) else ""
            try:
                if c.is_text:
                    value = heap.add(text)
                else:
                    value = parse_cell(text, c)
            except BadInput as e:
                raise BadInput(f"{schema.file} line {line}: {e}") from e
            if c.slot is not None:
                rec.setdefault(c.key, [0] * LOC_SLOTS)[c.slot] = value
            else:
                rec[c.key] = value
        records.append(rec)
    rs = schema.record_size()
    block = heap.to_bytes()
    return DBCFile(DBCHeader(len(records), rs // 4, rs, len(block)), records, block)


def import_csv(path: str, schema: Schema) -> DBCFile:
    header, rows = read_rows(path)
    return rows_to_dbc(header, rows, schema)
