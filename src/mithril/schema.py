from __future__ import annotations

import json
import os
from dataclasses import dataclass
from functools import lru_cache
from importlib import resources
from typing import Dict, List, Optional, Tuple

from .common import BadInput, UnknownFieldType

# Order is part of the on-disk contract for Loc fields.
LOC_LANGS = (
    "enUS",
    "koKR",
    "frFR",
    "deDE",
    "enCN",
    "enTW",
    "esES",
    "esMX",
    "ruRU",
    "jaJP",
    "ptPT",
    "itIT",
    "unknown1",
    "unknown2",
    "unknown3",
    "unknown4",
    "flags",
)
LOC_SLOTS = len(LOC_LANGS)
LOC_STRINGS = LOC_SLOTS - 1

FIELD_SIZES = {
    "int32": 4,
    "uint32": 4,
    "int8": 1,
    "uint8": 1,
    "float": 4,
    "string": 4,
    "Loc": 4 * LOC_SLOTS,
}

META_SUFFIX = ".meta.json"


@dataclass(frozen=True)
class FieldDef:
    name: str
    type: str
    count: int = 1

    def keys(self) -> List[str]:
        if self.count <= 1:
            return [self.name]
        return ["%s_%d" % (self.name, i + 1) for i in range(self.count)]


@dataclass(frozen=True)
class SortKey:
    name: str
    direction: str = "ASC"


@dataclass(frozen=True)
class Column:
    """One flat cell of a record as it appears in CSV and SQL.

    `key` is the record dict key holding the value; `slot` indexes the
    17-slot vector when the column belongs to a Loc field.
    """

    name: str
    type: str
    key: str
    slot: Optional[int] = None

    @property
    def sql_name(self) -> str:
        return self.name.lower()

    @property
    def is_text(self) -> bool:
        return self.type == "string"


@dataclass(frozen=True)
class Schema:
    file: str
    fields: Tuple[FieldDef, ...]
    primary_keys: Tuple[str, ...] = ()
    unique_keys: Tuple[Tuple[str, ...], ...] = ()
    sort_order: Tuple[SortKey, ...] = ()
    table: Optional[str] = None

    @property
    def stem(self) -> str:
        base = os.path.basename(self.file)
        if base.lower().endswith(".dbc"):
            base = base[:-4]
        return base

    @property
    def table_name(self) -> str:
        if self.table:
            return self.table.lower()
        return self.stem.lower()

    def record_size(self) -> int:
        total = 0
        for f in self.fields:
            size = FIELD_SIZES.get(f.type)
            if size is None:
                raise UnknownFieldType(f"{self.file}: unknown field type {f.type!r}")
            total += size * max(f.count, 1)
        return total

    def columns(self) -> List[Column]:
        out = []
        for f in self.fields:
            if f.type not in FIELD_SIZES:
                raise UnknownFieldType(f"{self.file}: unknown field type {f.type!r}")
            for key in f.keys():
                if f.type == "Loc":
                    for slot, lang in enumerate(LOC_LANGS):
                        typ = "string" if slot < LOC_STRINGS else "uint32"
                        out.append(Column("%s_%s" % (key, lang), typ, key, slot))
                else:
                    out.append(Column(key, f.type, key))
        return out

    def column_names(self) -> List[str]:
        return [c.name for c in self.columns()]


def schema_from_dict(d: Dict) -> Schema:
    try:
        fields = tuple(
            FieldDef(str(f["name"]), str(f["type"]), int(f.get("count") or 1))
            for f in d["fields"]
        )
        file = str(d["file"])
    except (KeyError, TypeError, ValueError) as e:
        raise BadInput(f"invalid schema descriptor: {e}") from e
    return Schema(
        file=file,
        fields=fields,
        primary_keys=tuple(d.get("primaryKeys") or ()),
        unique_keys=tuple(tuple(k) for k in (d.get("uniqueKeys") or ())),
        sort_order=tuple(
            SortKey(str(s["name"]), str(s.get("direction") or "ASC"))
            for s in (d.get("sortOrder") or ())
        ),
        table=d.get("tableName") or None,
    )


@lru_cache(maxsize=1)
def _registry() -> Dict[str, Tuple[str, Schema]]:
    out = {}
    base = resources.files(__package__).joinpath("meta")
    for entry in base.iterdir():
        name = entry.name
        if not name.endswith(META_SUFFIX):
            continue
        stem = name[: -len(META_SUFFIX)]
        schema = schema_from_dict(json.loads(entry.read_text(encoding="utf-8")))
        out[stem.lower()] = (stem, schema)
    return out


def list_schemas() -> List[Schema]:
    reg = _registry()
    return [reg[k][1] for k in sorted(reg)]


def get_schema(name: str) -> Optional[Schema]:
    """Look up an embedded schema by table name, file name or stem."""
    stem = os.path.basename(str(name).replace("\\", "/"))
    low = stem.lower()
    for suffix in (".csv", ".dbc"):
        if low.endswith(suffix):
            low = low[: -len(suffix)]
    reg = _registry()
    hit = reg.get(low)
    if hit is not None:
        return hit[1]
    for meta_stem, schema in reg.values():
        if schema.stem.lower() == low or meta_stem.lower() == low:
            return schema
    return None


def require_schema(name: str) -> Schema:
    schema = get_schema(name)
    if schema is None:
        raise BadInput(f"no schema for table: {name}")
    return schema
