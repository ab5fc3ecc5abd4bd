"""Conversions between package file hashes, hex strings and package ids."""

from __future__ import annotations

HASH_BASE = 0x80800000
ENTRIES_PER_PACKAGE = 8192

_MASK16 = 0xFFFF
_MASK32 = 0xFFFFFFFF
_MASK64 = 0xFFFFFFFFFFFFFFFF


def _parse_hex(text: str, limit: int) -> int:
    try:
        value = int(text, 16)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"not a hex number: {text!r}") from exc
    if value < 0 or value > limit:
        raise ValueError(f"hex number out of range: {text!r}")
    return value


def uint16_to_hex(num: int) -> str:
    """Format a 16-bit value as four lower-case hex digits."""
    return format(num & _MASK16, "04x")


def uint32_to_hex(num: int) -> str:
    """Format a 32-bit value byte-swapped, as eight lower-case hex digits."""
    return format(swap32(num), "08x")


def swap16(x: int) -> int:
    """Reverse the byte order of a 16-bit value."""
    x &= _MASK16
    return ((x << 8) | (x >> 8)) & _MASK16


def swap32(x: int) -> int:
    """Reverse the byte order of a 32-bit value."""
    return int.from_bytes((x & _MASK32).to_bytes(4, "little"), "big")


def swap64(x: int) -> int:
    """Reverse the byte order of a 64-bit value."""
    return int.from_bytes((x & _MASK64).to_bytes(8, "little"), "big")


def hex_to_uint16(text: str) -> int:
    """Parse hex text and byte-swap it as a 16-bit value."""
    return swap16(_parse_hex(text, _MASK32))


def hex_to_uint32(text: str) -> int:
    """Parse hex text and byte-swap it as a 32-bit value."""
    return swap32(_parse_hex(text, _MASK32))


def hex_to_uint64(text: str) -> int:
    """Parse hex text and byte-swap it as a 64-bit value."""
    return swap64(_parse_hex(text, _MASK64))


def pkg_id_from_int(hash_int: int) -> int:
    """Return the package id that a numeric file hash belongs to."""
    return (((hash_int - HASH_BASE) & _MASK32) // ENTRIES_PER_PACKAGE) & _MASK16


def pkg_id_from_hash(hash_value: str) -> str:
    """Return the package id, as hex, that a hash string belongs to."""
    return uint16_to_hex(pkg_id_from_int(hex_to_uint32(hash_value)))


def hash_from_file(name: str) -> str:
    """Turn a ``PPPP-IIII`` file name into its hash string."""
    package = swap16(hex_to_uint16(name[:4]))
    index = swap16(hex_to_uint16(name[5:9]))
    value = (package * ENTRIES_PER_PACKAGE + index + HASH_BASE) & _MASK32
    return uint32_to_hex(value)


def file_from_hash(hash_value: str) -> str:
    """Turn a hash string into its ``PPPP-IIII`` file name."""
    value = hex_to_uint32(hash_value)
    package = ((value - HASH_BASE) & _MASK32) // ENTRIES_PER_PACKAGE
    index = value % ENTRIES_PER_PACKAGE
    return f"{uint16_to_hex(package)}-{uint16_to_hex(index)}"