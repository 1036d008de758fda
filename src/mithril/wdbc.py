from __future__ import annotations

import struct
from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

from .common import BadMagic, SchemaMismatch, Truncated, UnknownFieldType
from .schema import LOC_SLOTS, Schema

MAGIC = b"WDBC"
HEADER = struct.Struct("<4s4I")
HEADER_SIZE = HEADER.size

_CODES = {
    "int32": "i",
    "uint32": "I",
    "int8": "b",
    "uint8": "B",
    "float": "f",
    "string": "I",
    "Loc": "I" * LOC_SLOTS,
}


@dataclass
class DBCHeader:
    record_count: int
    field_count: int
    record_size: int
    string_block_size: int


@dataclass
class DBCFile:
    header: DBCHeader
    records: List[Dict[str, Any]] = field(default_factory=list)
    string_block: bytes = b"\x00"

    def get_string(self, offset: int) -> str:
        return read_string(self.string_block, offset)


def parse_header(data: bytes) -> DBCHeader:
    if len(data) < HEADER_SIZE:
        raise Truncated("file shorter than the 20-byte header")
    magic, rc, fc, rs, sbs = HEADER.unpack_from(data, 0)
    if magic != MAGIC:
        raise BadMagic(f"bad magic {magic!r}, expected {MAGIC!r}")
    return DBCHeader(rc, fc, rs, sbs)


def _layout(schema: Schema) -> Tuple[struct.Struct, List[Tuple[str, str]]]:
    codes = ["<"]
    keys = []
    for f in schema.fields:
        code = _CODES.get(f.type)
        if code is None:
            raise UnknownFieldType(f"{schema.file}: unknown field type {f.type!r}")
        for key in f.keys():
            codes.append(code)
            keys.append((key, f.type))
    return struct.Struct("".join(codes)), keys


def decode(data: bytes, schema: Schema) -> DBCFile:
    header = parse_header(data)
    expected = schema.record_size()
    if expected != header.record_size:
        raise SchemaMismatch(
            f"{schema.file}: schema record size {expected} != header record size {header.record_size}"
        )
    st, keys = _layout(schema)
    body_end = HEADER_SIZE + header.record_count * header.record_size
    block_end = body_end + header.string_block_size
    if block_end > len(data):
        raise Truncated(
            f"{schema.file}: need {block_end} bytes, have {len(data)}"
        )
    records = []
    off = HEADER_SIZE
    for _ in range(header.record_count):
        values = st.unpack_from(data, off)
        off += header.record_size
        rec = {}
        i = 0
        for key, typ in keys:
            if typ == "Loc":
                rec[key] = list(values[i : i + LOC_SLOTS])
                i += LOC_SLOTS
            else:
                rec[key] = values[i]
                i += 1
        records.append(rec)
    return DBCFile(header, records, bytes(data[body_end:block_end]))


def _flatten(rec: Dict[str, Any], keys: List[Tuple[str, str]]) -> List[Any]:
    out = []
    for key, typ in keys:
        v = rec.get(key)
        if typ == "Loc":
            slots = list(v or [])
            slots += [0] * (LOC_SLOTS - len(slots))
            out.extend(int(x) for x in slots[:LOC_SLOTS])
        elif typ == "float":
            out.append(float(v or 0.0))
        else:
            out.append(int(v or 0))
    return out


def encode(dbc: DBCFile, schema: Schema) -> bytes:
    st, keys = _layout(schema)
    rs = schema.record_size()
    block = bytes(dbc.string_block or b"\x00")
    out = bytearray(HEADER.pack(MAGIC, len(dbc.records), rs // 4, rs, len(block)))
    for rec in dbc.records:
        try:
            out += st.pack(*_flatten(rec, keys))
        except struct.error as e:
            raise SchemaMismatch(f"{schema.file}: cannot pack record: {e}") from e
    out += block
    dbc.header = DBCHeader(len(dbc.records), rs // 4, rs, len(block))
    return bytes(out)


def read_string(block: bytes, offset: int) -> str:
    if offset < 0 or offset >= len(block):
        return ""
    end = block.find(b"\x00", offset)
    if end < 0:
        end = len(block)
    return block[offset:end].decode("utf-8", "replace")


class StringHeap:
    """Interning builder for a fresh string block; offset 0 is the empty string."""

    def __init__(self):
        self._buf = bytearray(b"\x00")
        self._index = {"": 0}

    def add(self, s) -> int:
        s = "" if s is None else str(s)
        off = self._index.get(s)
        if off is not None:
            return off
        off = len(self._buf)
        self._buf += s.encode("utf-8") + b"\x00"
        self._index[s] = off
        return off

    def to_bytes(self) -> bytes:
        return bytes(self._buf)

    def __len__(self):
        return len(self._buf)
