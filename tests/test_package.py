import os
import struct
import zlib

import pytest
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from d2texrip.hashes import hash_from_file
from d2texrip.package import (
    BLOCK_SIZE,
    KEY_ENV_VARS,
    Package,
    PackageError,
    parse_entry,
    reference_from_hash,
)

PKG_ID = 0x0932
PKG_HEX = "0932"


def _name(patch):
    return f"w64_test_{PKG_HEX}_{patch}.pkg"


def _hash(index):
    return hash_from_file(f"{PKG_HEX}-{index:04x}")


def _entry_bytes(ref, num_type, subtype, block, offset, size):
    a = struct.unpack("<I", ref)[0]
    b = (num_type << 9) | (subtype << 6)
    c = block | ((offset >> 4) << 14) | ((size & 0xF) << 28)
    d = size >> 4
    return struct.pack("<4I", a, b, c, d)


def _block_bytes(offset, size, patch, flag, tag):
    return struct.pack("<IIHH", offset, size, patch, flag) + bytes(20) + tag


def _pkg_bytes(pkg_id, patch_id, entries, chunks, block_patch=None):
    entry_offset = 0x100
    block_offset = entry_offset + 16 * len(entries)
    data_start = block_offset + 48 * len(chunks)
    header = bytearray(entry_offset)
    struct.pack_into("<H", header, 0x10, pkg_id)
    struct.pack_into("<H", header, 0x30, patch_id)
    struct.pack_into("<I", header, 0x44, entry_offset)
    struct.pack_into("<I", header, 0x60, len(entries))
    struct.pack_into("<II", header, 0x68, len(chunks), block_offset)
    table = bytearray()
    payload = bytearray()
    patch = patch_id if block_patch is None else block_patch
    for data, flag, tag in chunks:
        table += _block_bytes(data_start + len(payload), len(data), patch, flag, tag)
        payload += data
    return bytes(header) + b"".join(entries) + bytes(table) + bytes(payload)


def _write(tmp_path, entries, chunks, patch=0, **kwargs):
    path = tmp_path / _name(patch)
    path.write_bytes(_pkg_bytes(PKG_ID, patch, entries, chunks, **kwargs))
    return path


def test_parse_entry_round_trip():
    entry = parse_entry(_entry_bytes(b"\x01\x02\x03\x04", 32, 2, 5, 0x40, 0x12345))
    assert entry.reference == "01020304"
    assert entry.num_type == 32
    assert entry.num_subtype == 2
    assert entry.starting_block == 5
    assert entry.starting_block_offset == 0x40
    assert entry.file_size == 0x12345


def test_parse_entry_rejects_wrong_length():
    with pytest.raises(ValueError):
        parse_entry(b"\x00" * 15)


def test_missing_packages_path(tmp_path):
    with pytest.raises(PackageError):
        Package(PKG_HEX, tmp_path / "missing")


def test_latest_patch_is_selected(tmp_path):
    for patch in (0, 2, 10):
        _write(tmp_path, [], [], patch=patch)
    package = Package(PKG_HEX, tmp_path)
    assert package.package_path == tmp_path / _name(10)
    assert package.package_name == f"w64_test_{PKG_HEX}"


def test_fallback_reads_id_from_header(tmp_path):
    (tmp_path / "bootstrap_3.pkg").write_bytes(_pkg_bytes(0x1234, 3, [], []))
    package = Package("1234", tmp_path)
    assert package.package_path == tmp_path / "bootstrap_3.pkg"


def test_unknown_package_id(tmp_path):
    _write(tmp_path, [], [])
    with pytest.raises(PackageError):
        Package("beef", tmp_path)


def test_read_header(tmp_path):
    entries = [_entry_bytes(b"\0\0\0\0", 1, 0, 0, 0, 0)] * 3
    chunks = [(b"ab", 0, bytes(16)), (b"cd", 0, bytes(16))]
    _write(tmp_path, entries, chunks, patch=4)
    header = Package(PKG_HEX, tmp_path).read_header()
    assert header.pkg_id == PKG_ID
    assert header.patch_id == 4
    assert header.entry_table_offset == 0x100
    assert header.entry_table_size == 3
    assert header.block_table_size == 2
    assert header.block_table_offset == 0x100 + 3 * 16


def test_read_header_pre_bl_new_layout(tmp_path):
    raw = bytearray(0x200)
    struct.pack_into("<H", raw, 0x4, PKG_ID)
    struct.pack_into("<H", raw, 0x20, 1)
    raw[0x1A] = 1
    struct.pack_into("<I", raw, 0x110, 0x100)
    struct.pack_into("<I", raw, 0xB4, 3)
    struct.pack_into("<H", raw, 0xD0, 2)
    (tmp_path / _name(1)).write_bytes(bytes(raw))
    header = Package(PKG_HEX, tmp_path, pre_bl=True).read_header()
    assert header.pkg_id == PKG_ID
    assert header.patch_id == 1
    assert header.entry_table_offset == 0x100 + 96
    assert header.entry_table_size == 3
    assert header.block_table_size == 2
    assert header.block_table_offset == header.entry_table_offset + 3 * 16 + 32


def test_read_header_pre_bl_old_layout(tmp_path):
    raw = bytearray(0x200)
    struct.pack_into("<H", raw, 0x4, PKG_ID)
    struct.pack_into("<II", raw, 0xB4, 5, 0x120)
    struct.pack_into("<II", raw, 0xD0, 7, 0x180)
    (tmp_path / _name(0)).write_bytes(bytes(raw))
    header = Package(PKG_HEX, tmp_path, pre_bl=True).read_header()
    assert (header.entry_table_size, header.entry_table_offset) == (5, 0x120)
    assert (header.block_table_size, header.block_table_offset) == (7, 0x180)


def test_entry_table(tmp_path):
    raws = [
        _entry_bytes(b"\xaa\xbb\xcc\xdd", 32, 1, 0, 0, 10),
        _entry_bytes(b"\x10\x20\x30\x40", 32, 2, 1, 32, 99),
    ]
    _write(tmp_path, raws, [])
    entries = Package(PKG_HEX, tmp_path).entry_table()
    assert entries == [parse_entry(raw) for raw in raws]
    assert [e.reference for e in entries] == ["aabbccdd", "10203040"]


def test_block_table(tmp_path):
    _write(tmp_path, [], [(b"abc", 0x1, b"\x11" * 16), (b"defg", 0x6, b"\x22" * 16)])
    blocks = Package(PKG_HEX, tmp_path).block_table()
    assert [b.size for b in blocks] == [3, 4]
    assert [b.bit_flag for b in blocks] == [0x1, 0x6]
    assert blocks[1].offset == blocks[0].offset + 3
    assert blocks[0].gcm_tag == b"\x11" * 16


def test_entry_reference_and_types(tmp_path):
    raws = [
        _entry_bytes(b"\x00\x00\x00\x00", 1, 0, 0, 0, 0),
        _entry_bytes(b"\xde\xad\xbe\xef", 32, 2, 0, 0, 0),
    ]
    _write(tmp_path, raws, [])
    package = Package(PKG_HEX, tmp_path)
    assert package.entry_reference(_hash(1)) == "deadbeef"
    assert package.entry_types(_hash(1)) == (32, 2)


def test_entry_reference_pre_bl_old_layout(tmp_path):
    raw = bytearray(0x120)
    struct.pack_into("<I", raw, 0xB8, 0x100)
    raw[0x110:0x120] = _entry_bytes(b"\x01\x23\x45\x67", 32, 1, 0, 0, 0)
    (tmp_path / _name(0)).write_bytes(bytes(raw))
    package = Package(PKG_HEX, tmp_path, pre_bl=True)
    assert package.entry_reference(_hash(1)) == "01234567"


def test_reference_from_hash(tmp_path):
    _write(tmp_path, [_entry_bytes(b"\x0a\x0b\x0c\x0d", 32, 1, 0, 0, 0)], [])
    assert reference_from_hash(_hash(0), tmp_path) == "0a0b0c0d"


def test_entry_data_single_plain_block(tmp_path):
    content = b"texture payload!"
    chunk = b"x" * 16 + content + b"tail"
    entry = _entry_bytes(b"\0\0\0\0", 32, 1, 0, 16, len(content))
    _write(tmp_path, [entry], [(chunk, 0, bytes(16))])
    assert Package(PKG_HEX, tmp_path).entry_data(_hash(0)) == content


def test_entry_data_out_of_range(tmp_path):
    _write(tmp_path, [_entry_bytes(b"\0\0\0\0", 32, 1, 0, 0, 4)], [(b"abcd", 0, bytes(16))])
    assert Package(PKG_HEX, tmp_path).entry_data(_hash(5)) is None


def test_entry_data_empty_entry(tmp_path):
    _write(tmp_path, [_entry_bytes(b"\0\0\0\0", 32, 1, 0, 0, 0)], [])
    assert Package(PKG_HEX, tmp_path).entry_data(_hash(0)) == b""


def test_entry_data_spans_compressed_blocks(tmp_path):
    first = bytes(range(256)) * (BLOCK_SIZE // 256)
    second = b"\xaa" * 100
    chunks = [(zlib.compress(first), 0x1, bytes(16)), (zlib.compress(second), 0x1, bytes(16))]
    entry = _entry_bytes(b"\0\0\0\0", 32, 1, 0, 16, BLOCK_SIZE)
    _write(tmp_path, [entry], chunks)
    sizes = []

    def decompress(data, size):
        sizes.append(size)
        return zlib.decompress(data)

    package = Package(PKG_HEX, tmp_path, decompressor=decompress)
    result = package.entry_data(_hash(0))
    assert result == (first + second)[16 : 16 + BLOCK_SIZE]
    assert sizes == [BLOCK_SIZE, BLOCK_SIZE]


def test_compressed_block_needs_decompressor(tmp_path):
    entry = _entry_bytes(b"\0\0\0\0", 32, 1, 0, 0, 4)
    _write(tmp_path, [entry], [(zlib.compress(b"abcd"), 0x1, bytes(16))])
    with pytest.raises(PackageError):
        Package(PKG_HEX, tmp_path).entry_data(_hash(0))


def test_block_read_from_its_patch_file(tmp_path):
    entry = _entry_bytes(b"\0\0\0\0", 32, 1, 0, 0, 3)
    _write(tmp_path, [entry], [(b"old", 0, bytes(16))], patch=1)
    _write(tmp_path, [entry], [(b"new", 0, bytes(16))], patch=2, block_patch=1)
    package = Package(PKG_HEX, tmp_path)
    assert package.package_path.name == _name(2)
    assert package.entry_data(_hash(0)) == b"old"


def test_nonce_base_for_package_zero(tmp_path):
    (tmp_path / "bootstrap_0.pkg").write_bytes(_pkg_bytes(0, 0, [], []))
    package = Package("0000", tmp_path)
    assert package.nonce() == bytes(
        (0x84, 0xEA, 0x11, 0xC0, 0xAC, 0xAB, 0xFA, 0x20, 0x33, 0x11, 0x26, 0x99)
    )


def test_nonce_mixes_in_package_id(tmp_path):
    (tmp_path / "bootstrap_0.pkg").write_bytes(_pkg_bytes(0, 0, [], []))
    base = Package("0000", tmp_path).nonce()
    _write(tmp_path, [], [])
    nonce = Package(PKG_HEX, tmp_path).nonce()
    assert nonce[0] ^ base[0] == PKG_ID >> 8
    assert nonce[11] ^ base[11] == PKG_ID & 0xFF
    assert nonce[1:11] == base[1:11]


def _encrypted_package(tmp_path, flag, key, plain):
    entry = _entry_bytes(b"\0\0\0\0", 32, 1, 0, 0, len(plain))
    path = _write(tmp_path, [entry], [(bytes(len(plain)), flag, bytes(16))])
    package = Package(PKG_HEX, tmp_path)
    sealed = AESGCM(key).encrypt(package.nonce(), plain, None)
    path.write_bytes(_pkg_bytes(PKG_ID, 0, [entry], [(sealed[:-16], flag, sealed[-16:])]))
    return package


@pytest.mark.parametrize(("flag", "key_index"), [(0x2, 0), (0x6, 1)])
def test_entry_data_decrypts_with_selected_key(tmp_path, monkeypatch, flag, key_index):
    keys = [os.urandom(16), os.urandom(16)]
    for variable, key in zip(KEY_ENV_VARS, keys):
        monkeypatch.setenv(variable, key.hex())
    plain = b"encrypted texture bytes"
    package = _encrypted_package(tmp_path, flag, keys[key_index], plain)
    assert package.entry_data(_hash(0)) == plain


def test_decryption_with_wrong_key_fails(tmp_path, monkeypatch):
    keys = [os.urandom(16), os.urandom(16)]
    for variable, key in zip(KEY_ENV_VARS, keys):
        monkeypatch.setenv(variable, key.hex())
    package = _encrypted_package(tmp_path, 0x2, keys[1], b"some bytes")
    with pytest.raises(PackageError):
        package.entry_data(_hash(0))


def test_decryption_without_configured_key(tmp_path, monkeypatch):
    for variable in KEY_ENV_VARS:
        monkeypatch.delenv(variable, raising=False)
    entry = _entry_bytes(b"\0\0\0\0", 32, 1, 0, 0, 4)
    _write(tmp_path, [entry], [(b"abcd", 0x2, bytes(16))])
    with pytest.raises(PackageError):
        Package(PKG_HEX, tmp_path).entry_data(_hash(0))


def test_truncated_block_is_reported(tmp_path):
    entry = _entry_bytes(b"\0\0\0\0", 32, 1, 0, 0, 4)
    path = _write(tmp_path, [entry], [(b"abcd", 0, bytes(16))])
    path.write_bytes(path.read_bytes()[:-2])
    with pytest.raises(PackageError):
        Package(PKG_HEX, tmp_path).entry_data(_hash(0))