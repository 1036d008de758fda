from __future__ import annotations

import os
import struct
import zlib
from typing import List, Optional, Tuple

import mpyq

from .common import BadInput, ExternalFailure, read_bytes, write_bytes

MPQ_MAGIC = b"MPQ\x1a"
MPQ_HEADER = struct.Struct("<4s2I2H4I")
HASH_ENTRY = struct.Struct("<2I2HI")
BLOCK_ENTRY = struct.Struct("<4I")

SECTOR_SIZE_SHIFT = 3
SECTOR_SIZE = 512 << SECTOR_SIZE_SHIFT

FILE_EXISTS = 0x80000000
FILE_COMPRESS = 0x00000200
FILE_SINGLE_UNIT = 0x01000000

COMPRESSION_ZLIB = 0x02

HASH_TABLE_OFFSET = 0
HASH_A = 1
HASH_B = 2
HASH_TABLE = 3

HASH_ENTRY_EMPTY = 0xFFFFFFFF

LISTFILE = "(listfile)"


class ArchiveOpen(ExternalFailure):
    pass


class ExtractFailed(ExternalFailure):
    pass


def _build_crypt_table() -> List[int]:
    seed = 0x00100001
    table = [0] * 0x500
    for i in range(0x100):
        idx = i
        for _ in range(5):
            seed = (seed * 125 + 3) % 0x2AAAAB
            hi = (seed & 0xFFFF) << 0x10
            seed = (seed * 125 + 3) % 0x2AAAAB
            lo = seed & 0xFFFF
            table[idx] = hi | lo
            idx += 0x100
    return table


_CRYPT_TABLE = _build_crypt_table()


def mpq_hash(name: str, hash_type: int) -> int:
    seed1 = 0x7FED7FED
    seed2 = 0xEEEEEEEE
    try:
        raw = name.replace("/", "\\").upper().encode("latin-1")
    except UnicodeEncodeError as e:
        raise BadInput(f"archive path is not Latin-1: {name!r}") from e
    for ch in raw:
        value = _CRYPT_TABLE[(hash_type << 8) + ch]
        seed1 = (value ^ (seed1 + seed2)) & 0xFFFFFFFF
        seed2 = (ch + seed1 + seed2 + (seed2 << 5) + 3) & 0xFFFFFFFF
    return seed1


def encrypt_block(data: bytes, key: int) -> bytes:
    seed1 = key
    seed2 = 0xEEEEEEEE
    out = bytearray()
    for (value,) in struct.iter_unpack("<I", data):
        seed2 = (seed2 + _CRYPT_TABLE[0x400 + (seed1 & 0xFF)]) & 0xFFFFFFFF
        enc = (value ^ (seed1 + seed2)) & 0xFFFFFFFF
        seed1 = (((~seed1 << 0x15) + 0x11111111) | (seed1 >> 0x0B)) & 0xFFFFFFFF
        seed2 = (value + seed2 + (seed2 << 5) + 3) & 0xFFFFFFFF
        out += struct.pack("<I", enc)
    return bytes(out)


class ArchiveReader:
    """Read-only view over an MPQ archive."""

    def __init__(self, path: str):
        self.path = str(path)
        self._f = None
        try:
            self._f = open(self.path, "rb")
            self._mpq = mpyq.MPQArchive(self._f, listfile=False)
        except Exception as e:
            if self._f is not None:
                self._f.close()
            raise ArchiveOpen(f"{os.path.basename(self.path)}: {e}") from e

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def close(self) -> None:
        if self._f is not None:
            self._f.close()
            self._f = None

    def list(self) -> List[str]:
        try:
            data = self._mpq.read_file(LISTFILE)
        except Exception as e:
            raise ArchiveOpen(f"{os.path.basename(self.path)}: cannot read {LISTFILE}: {e}") from e
        if not data:
            return []
        out = []
        for line in data.decode("utf-8", "replace").splitlines():
            for name in line.split(";"):
                name = name.strip()
                if name:
                    out.append(name)
        return out

    def read(self, internal: str) -> bytes:
        try:
            data = self._mpq.read_file(internal)
        except Exception as e:
            raise ExtractFailed(f"{internal}: {e}") from e
        if data is None:
            # mpyq reports zero-length entries as missing
            if self._mpq.get_hash_table_entry(internal) is not None:
                return b""
            raise ExtractFailed(f"{internal}: not found in {os.path.basename(self.path)}")
        return data

    def extract(self, internal: str, out_path: str) -> None:
        data = self.read(internal)
        try:
            write_bytes(str(out_path), data)
        except OSError as e:
            raise ExtractFailed(f"{internal}: {e}") from e


def open_archive(path) -> ArchiveReader:
    return ArchiveReader(path)


def _compress_file(data: bytes) -> Tuple[bytes, int]:
    if not data:
        return b"", FILE_EXISTS
    sectors = []
    for pos in range(0, len(data), SECTOR_SIZE):
        raw = data[pos : pos + SECTOR_SIZE]
        packed = bytes([COMPRESSION_ZLIB]) + zlib.compress(raw, 9)
        if len(packed) >= len(raw):
            # a raw sector inside a compressed file is ambiguous to readers
            return data, FILE_EXISTS | FILE_SINGLE_UNIT
        sectors.append(packed)
    table_size = 4 * (len(sectors) + 1)
    offsets = [table_size]
    for s in sectors:
        offsets.append(offsets[-1] + len(s))
    blob = struct.pack("<%dI" % len(offsets), *offsets) + b"".join(sectors)
    return blob, FILE_EXISTS | FILE_COMPRESS


def _table_size(count: int) -> int:
    size = 16
    while size < count * 2:
        size <<= 1
    return size


class ArchiveWriter:
    """Builds a format-0 MPQ; files are staged and written on close()."""

    def __init__(self, path: str, file_count_hint: int = 0):
        self.path = str(path)
        self.hint = int(file_count_hint or 0)
        self._files: List[Tuple[str, bytes]] = []
        self._names = {}
        self._closed = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is None:
            self.close()

    def add(self, disk_path: str, internal_path: str) -> None:
        data = read_bytes(str(disk_path))
        self.add_bytes(data, internal_path)

    def add_bytes(self, data: bytes, internal_path: str) -> None:
        name = internal_path.replace("/", "\\")
        key = name.upper()
        if key in self._names:
            self._files[self._names[key]] = (name, data)
            return
        self._names[key] = len(self._files)
        self._files.append((name, data))

    def names(self) -> List[str]:
        return [n for n, _ in self._files]

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        files = list(self._files)
        listing = "".join(n + "\r\n" for n, _ in files).encode("utf-8")
        files.append((LISTFILE, listing))

        size = _table_size(max(len(files), self.hint))
        hash_table = [
            (HASH_ENTRY_EMPTY, HASH_ENTRY_EMPTY, 0xFFFF, 0xFFFF, HASH_ENTRY_EMPTY)
        ] * size
        body = bytearray()
        blocks = []
        for block_index, (name, data) in enumerate(files):
            blob, flags = _compress_file(data)
            blocks.append((MPQ_HEADER.size + len(body), len(blob), len(data), flags))
            body += blob
            slot = mpq_hash(name, HASH_TABLE_OFFSET) & (size - 1)
            while hash_table[slot][4] != HASH_ENTRY_EMPTY:
                slot = (slot + 1) & (size - 1)
            hash_table[slot] = (
                mpq_hash(name, HASH_A),
                mpq_hash(name, HASH_B),
                0,
                0,
                block_index,
            )

        hash_raw = b"".join(HASH_ENTRY.pack(*e) for e in hash_table)
        block_raw = b"".join(BLOCK_ENTRY.pack(*b) for b in blocks)
        hash_offset = MPQ_HEADER.size + len(body)
        block_offset = hash_offset + len(hash_raw)
        archive_size = block_offset + len(block_raw)
        header = MPQ_HEADER.pack(
            MPQ_MAGIC,
            MPQ_HEADER.size,
            archive_size,
            0,
            SECTOR_SIZE_SHIFT,
            hash_offset,
            block_offset,
            size,
            len(blocks),
        )
        out = bytearray(header)
        out += body
        out += encrypt_block(hash_raw, mpq_hash("(hash table)", HASH_TABLE))
        out += encrypt_block(block_raw, mpq_hash("(block table)", HASH_TABLE))
        write_bytes(self.path, bytes(out))


def create_archive(out_path, file_count_hint: int = 0) -> ArchiveWriter:
    return ArchiveWriter(out_path, file_count_hint)


def find_entry(names: List[str], wanted: str) -> Optional[str]:
    w = wanted.replace("/", "\\").lower()
    for n in names:
        if n.lower() == w:
            return n
    return None
