"""Reading entries out of .pkg archives: headers, entry and block tables."""

from __future__ import annotations

import os
import re
import struct
from dataclasses import dataclass
from os import PathLike
from pathlib import Path
from typing import BinaryIO, Callable, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .hashes import (
    ENTRIES_PER_PACKAGE,
    hex_to_uint32,
    pkg_id_from_hash,
    uint16_to_hex,
    uint32_to_hex,
)

BLOCK_SIZE = 0x40000
ENTRY_SIZE = 16
BLOCK_RECORD_SIZE = 48

FLAG_COMPRESSED = 0x1
FLAG_ENCRYPTED = 0x2
FLAG_ALT_KEY = 0x4

# The two AES-128 keys are taken from these environment variables, as hex.
KEY_ENV_VARS = ("D2TEXRIP_AES_KEY_0", "D2TEXRIP_AES_KEY_1")

_NONCE = bytes((0x84, 0xEA, 0x11, 0xC0, 0xAC, 0xAB, 0xFA, 0x20, 0x33, 0x11, 0x26, 0x99))
_PRE_BL_NONCE = bytes((0x84, 0xDF, 0x11, 0xC0, 0xAC, 0xAB, 0xFA, 0x20, 0x33, 0x11, 0x26, 0x99))

_PATCH_RE = re.compile(r"_(\d+)\.pkg")
_MASK32 = 0xFFFFFFFF

Decompressor = Callable[[bytes, int], bytes]


class PackageError(Exception):
    """Raised when a package cannot be found, read or decoded."""


@dataclass
class PkgHeader:
    """The table locations stored in a package header."""

    pkg_id: int
    patch_id: int
    entry_table_offset: int
    entry_table_size: int
    block_table_offset: int
    block_table_size: int


@dataclass
class Entry:
    """One record of the entry table."""

    reference: str
    num_type: int
    num_subtype: int
    starting_block: int
    starting_block_offset: int
    file_size: int


@dataclass
class Block:
    """One record of the block table."""

    offset: int
    size: int
    patch_id: int
    bit_flag: int
    gcm_tag: bytes


def parse_entry(raw: bytes) -> Entry:
    """Decode a 16-byte entry table record."""
    if len(raw) != ENTRY_SIZE:
        raise ValueError(f"entry record must be {ENTRY_SIZE} bytes, got {len(raw)}")
    a, b, c, d = struct.unpack("<4I", raw)
    return Entry(
        reference=uint32_to_hex(a),
        num_type=(b >> 9) & 0x7F,
        num_subtype=(b >> 6) & 0x7,
        starting_block=c & 0x3FFF,
        starting_block_offset=((c >> 14) & 0x3FFF) << 4,
        file_size=((d & 0x3FFFFFF) << 4) | ((c >> 28) & 0xF),
    )


def _parse_block(raw: bytes) -> Block:
    offset, size, patch_id, bit_flag = struct.unpack_from("<IIHH", raw)
    return Block(offset, size, patch_id, bit_flag, bytes(raw[0x20:0x30]))


def _read_exact(handle: BinaryIO, offset: int, size: int) -> bytes:
    handle.seek(offset)
    raw = handle.read(size)
    if len(raw) != size:
        raise PackageError(f"unexpected end of file reading {size} bytes at {offset:#x}")
    return raw


def _read_at(handle: BinaryIO, offset: int, fmt: str) -> tuple[int, ...]:
    return struct.unpack(fmt, _read_exact(handle, offset, struct.calcsize(fmt)))


def _load_key(index: int) -> bytes:
    variable = KEY_ENV_VARS[index]
    value = os.environ.get(variable)
    if not value:
        raise PackageError(f"AES key {index} is not configured; set {variable}")
    try:
        key = bytes.fromhex(value)
    except ValueError as exc:
        raise PackageError(f"{variable} is not valid hex") from exc
    if len(key) != 16:
        raise PackageError(f"{variable} must hold 16 bytes")
    return key


class Package:
    """A package archive, located by id at its latest patch."""

    def __init__(
        self,
        package_id: str,
        packages_path: str | PathLike[str],
        pre_bl: bool = False,
        decompressor: Optional[Decompressor] = None,
    ) -> None:
        self.packages_path = Path(packages_path)
        if not self.packages_path.exists():
            raise PackageError("Package path given is invalid!")
        self.pre_bl = pre_bl
        self.decompressor = decompressor
        self.package_name = ""
        self.header: Optional[PkgHeader] = None
        self.entries: list[Entry] = []
        self.package_path = self.latest_patch_path(package_id)

    def latest_patch_path(self, package_id: str) -> Path:
        """Return the path of the highest patch of the given package."""
        files = sorted(p for p in self.packages_path.iterdir() if p.is_file())
        largest = -1
        name = ""
        for path in files:
            if package_id not in path.name:
                continue
            match = _PATCH_RE.search(path.name)
            if match is None:
                continue
            patch = int(match.group(1)) & 0xFFFF
            if patch > largest:
                largest = patch
                name = path.name[: path.name.rfind("_")]

        if largest == -1:
            # Some packages do not carry their id in the file name.
            id_offset, patch_offset = (0x4, 0x20) if self.pre_bl else (0x10, 0x30)
            for path in files:
                try:
                    with path.open("rb") as handle:
                        (raw_id,) = _read_at(handle, id_offset, "<H")
                        if uint16_to_hex(raw_id) != package_id:
                            continue
                        (patch,) = _read_at(handle, patch_offset, "<H")
                except PackageError:
                    continue
                if patch > largest:
                    largest = patch
                    name = path.name[:-6]

        if largest == -1:
            raise PackageError(f"no package file found for id {package_id}")
        self.package_name = name
        return self.packages_path / f"{name}_{largest}.pkg"

    def _open(self) -> BinaryIO:
        try:
            return self.package_path.open("rb")
        except OSError as exc:
            raise PackageError(f"cannot open {self.package_path}") from exc

    def _header(self) -> PkgHeader:
        return self.header if self.header is not None else self.read_header()

    def read_header(self) -> PkgHeader:
        """Read the package header and remember it."""
        with self._open() as handle:
            if self.pre_bl:
                (pkg_id,) = _read_at(handle, 0x4, "<H")
                (patch_id,) = _read_at(handle, 0x20, "<H")
                (new_pkg,) = _read_at(handle, 0x1A, "<B")
                if new_pkg:
                    (offset,) = _read_at(handle, 0x110, "<I")
                    entry_offset = (offset + 96) & _MASK32
                    (entry_size,) = _read_at(handle, 0xB4, "<I")
                    (block_size,) = _read_at(handle, 0xD0, "<H")
                    block_offset = (entry_offset + entry_size * 16 + 32) & _MASK32
                else:
                    entry_size, entry_offset = _read_at(handle, 0xB4, "<II")
                    block_size, block_offset = _read_at(handle, 0xD0, "<II")
            else:
                (pkg_id,) = _read_at(handle, 0x10, "<H")
                (patch_id,) = _read_at(handle, 0x30, "<H")
                (entry_offset,) = _read_at(handle, 0x44, "<I")
                (entry_size,) = _read_at(handle, 0x60, "<I")
                block_size, block_offset = _read_at(handle, 0x68, "<II")
        self.header = PkgHeader(
            pkg_id=pkg_id,
            patch_id=patch_id,
            entry_table_offset=entry_offset,
            entry_table_size=entry_size,
            block_table_offset=block_offset,
            block_table_size=block_size,
        )
        return self.header

    def entry_table(self) -> list[Entry]:
        """Read every entry of the entry table."""
        header = self._header()
        with self._open() as handle:
            raw = _read_exact(
                handle, header.entry_table_offset, header.entry_table_size * ENTRY_SIZE
            )
        self.entries = [
            parse_entry(raw[start : start + ENTRY_SIZE])
            for start in range(0, len(raw), ENTRY_SIZE)
        ]
        return self.entries

    def block_table(self) -> list[Block]:
        """Read every record of the block table."""
        header = self._header()
        with self._open() as handle:
            raw = _read_exact(
                handle,
                header.block_table_offset,
                header.block_table_size * BLOCK_RECORD_SIZE,
            )
        return [
            _parse_block(raw[start : start + BLOCK_RECORD_SIZE])
            for start in range(0, len(raw), BLOCK_RECORD_SIZE)
        ]

    def nonce(self) -> bytes:
        """Return the AES-GCM nonce for this package."""
        pkg_id = self._header().pkg_id
        value = bytearray(_PRE_BL_NONCE if self.pre_bl else _NONCE)
        value[0] ^= (pkg_id >> 8) & 0xFF
        if self.pre_bl:
            value[1] ^= 0x26
        value[11] ^= pkg_id & 0xFF
        return bytes(value)

    def decrypt_block(self, block: Block, payload: bytes) -> bytes:
        """Decrypt and authenticate one block's bytes."""
        key = _load_key(1 if block.bit_flag & FLAG_ALT_KEY else 0)
        try:
            return AESGCM(key).decrypt(self.nonce(), bytes(payload) + block.gcm_tag, None)
        except InvalidTag as exc:
            raise PackageError("block decryption failed") from exc

    def _entry_table_offset(self, handle: BinaryIO) -> int:
        if not self.pre_bl:
            return _read_at(handle, 0x44, "<I")[0]
        (new_pkg,) = _read_at(handle, 0x1A, "<B")
        if new_pkg:
            return (_read_at(handle, 0x110, "<I")[0] + 96) & _MASK32
        return _read_at(handle, 0xB8, "<I")[0]

    def entry_reference(self, hash_value: str) -> str:
        """Return the reference stored in the entry a hash points at."""
        index = hex_to_uint32(hash_value) % ENTRIES_PER_PACKAGE
        with self._open() as handle:
            offset = self._entry_table_offset(handle)
            (raw,) = _read_at(handle, offset + index * ENTRY_SIZE, "<I")
        return uint32_to_hex(raw)

    def entry_types(self, hash_value: str) -> tuple[int, int]:
        """Return the type and subtype of the entry a hash points at."""
        index = hex_to_uint32(hash_value) % ENTRIES_PER_PACKAGE
        with self._open() as handle:
            offset = self._entry_table_offset(handle)
            (raw,) = _read_at(handle, offset + index * ENTRY_SIZE + 4, "<I")
        return (raw >> 9) & 0x7F, (raw >> 6) & 0x7

    def entry_data(self, hash_value: str) -> Optional[bytes]:
        """Return the contents of the entry a hash points at, or None if absent."""
        index = hex_to_uint32(hash_value) % ENTRIES_PER_PACKAGE
        header = self.read_header()
        if index >= header.entry_table_size:
            return None
        with self._open() as handle:
            raw = _read_exact(
                handle, header.entry_table_offset + index * ENTRY_SIZE, ENTRY_SIZE
            )
        return self.buffer_from_entry(parse_entry(raw))

    def _patch_path(self, patch_id: int) -> Path:
        name = _PATCH_RE.sub(f"_{patch_id}.pkg", self.package_path.name)
        return self.package_path.with_name(name)

    def _block_contents(self, block: Block) -> bytes:
        path = self._patch_path(block.patch_id)
        try:
            with path.open("rb") as handle:
                handle.seek(block.offset)
                payload = handle.read(block.size)
        except OSError as exc:
            raise PackageError(f"cannot open {path}") from exc
        if len(payload) != block.size:
            raise PackageError("Reading error")
        if block.bit_flag & FLAG_ENCRYPTED:
            payload = self.decrypt_block(block, payload)
        if block.bit_flag & FLAG_COMPRESSED:
            if self.decompressor is None:
                raise PackageError("block is compressed but no decompressor was given")
            payload = self.decompressor(payload, BLOCK_SIZE)
        return payload

    def buffer_from_entry(self, entry: Entry) -> bytes:
        """Assemble an entry's bytes from the blocks it spans."""
        if not entry.file_size:
            return b""
        header = self._header()
        block_count = (entry.starting_block_offset + entry.file_size - 1) // BLOCK_SIZE
        start = header.block_table_offset + entry.starting_block * BLOCK_RECORD_SIZE
        with self._open() as handle:
            raw = _read_exact(handle, start, (block_count + 1) * BLOCK_RECORD_SIZE)
        blocks = [
            _parse_block(raw[pos : pos + BLOCK_RECORD_SIZE])
            for pos in range(0, len(raw), BLOCK_RECORD_SIZE)
        ]

        pieces: list[bytes] = []
        filled = 0
        for position, block in enumerate(blocks):
            contents = self._block_contents(block)
            if position == 0:
                offset = entry.starting_block_offset
                end = entry.file_size if block_count == 0 else BLOCK_SIZE - offset
                piece = contents[offset : offset + end]
            elif position == block_count:
                piece = contents[: entry.file_size - filled]
            else:
                piece = contents[:BLOCK_SIZE]
            pieces.append(piece)
            filled += len(piece)

        data = b"".join(pieces)
        if len(data) != entry.file_size:
            raise PackageError("entry data is truncated")
        return data


def reference_from_hash(
    hash_value: str,
    packages_path: str | PathLike[str],
    pre_bl: bool = False,
    decompressor: Optional[Decompressor] = None,
) -> str:
    """Look up the reference of the entry a hash points at."""
    package = Package(pkg_id_from_hash(hash_value), packages_path, pre_bl, decompressor)
    return package.entry_reference(hash_value)