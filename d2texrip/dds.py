"""DDS file headers with the DX10 extension, and writing DDS files."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from os import PathLike
from pathlib import Path

DDS_MAGIC = 542327876  # "DDS "
FOURCC_DX10 = 808540228  # "DX10"

DDSD_FLAGS = 0x1 | 0x2 | 0x4 | 0x1000 | 0x8
DDSCAPS_TEXTURE = 0x1000
DDSCAPS2_CUBEMAP = 0x200
DDPF_ALPHAPIXELS_FOURCC = 0x1 | 0x4
DIMENSION_TEXTURE2D = 3
MISC_TEXTURECUBE = 4

_MASK32 = 0xFFFFFFFF
_DDS_LAYOUT = struct.Struct("<32I")
_DXT10_LAYOUT = struct.Struct("<5I")


@dataclass
class DDSHeader:
    """The 128-byte DDS header, magic number included."""

    magic: int = DDS_MAGIC
    size: int = 124
    flags: int = DDSD_FLAGS
    height: int = 0
    width: int = 0
    pitch_or_linear_size: int = 0
    depth: int = 0
    mipmap_count: int = 0
    reserved1: tuple[int, ...] = field(default_factory=lambda: (0,) * 11)
    pf_size: int = 32
    pf_flags: int = 0
    pf_fourcc: int = 0
    pf_rgb_bit_count: int = 32
    pf_r_mask: int = 0xFF
    pf_g_mask: int = 0xFF00
    pf_b_mask: int = 0xFF0000
    pf_a_mask: int = 0xFF000000
    caps: int = DDSCAPS_TEXTURE
    caps2: int = 0
    caps3: int = 0
    caps4: int = 0
    reserved2: int = 0

    def pack(self) -> bytes:
        """Serialise the header as little-endian bytes."""
        if len(self.reserved1) != 11:
            raise ValueError("reserved1 must hold exactly 11 values")
        values = (
            self.magic,
            self.size,
            self.flags,
            self.height,
            self.width,
            self.pitch_or_linear_size,
            self.depth,
            self.mipmap_count,
            *self.reserved1,
            self.pf_size,
            self.pf_flags,
            self.pf_fourcc,
            self.pf_rgb_bit_count,
            self.pf_r_mask,
            self.pf_g_mask,
            self.pf_b_mask,
            self.pf_a_mask,
            self.caps,
            self.caps2,
            self.caps3,
            self.caps4,
            self.reserved2,
        )
        return _DDS_LAYOUT.pack(*(v & _MASK32 for v in values))


@dataclass
class DXT10Header:
    """The 20-byte DX10 extension header."""

    dxgi_format: int = 0
    resource_dimension: int = DIMENSION_TEXTURE2D
    misc_flag: int = 0
    array_size: int = 1
    misc_flags2: int = 0

    def pack(self) -> bytes:
        """Serialise the header as little-endian bytes."""
        values = (
            self.dxgi_format,
            self.resource_dimension,
            self.misc_flag,
            self.array_size,
            self.misc_flags2,
        )
        return _DXT10_LAYOUT.pack(*(v & _MASK32 for v in values))


def build_headers(
    texture_format: int,
    width: int,
    height: int,
    array_size: int,
    cubemap: bool,
) -> tuple[DDSHeader, DXT10Header]:
    """Build the DDS and DX10 headers for a texture.

    The DX10 extension carries the format itself, so every texture is
    described through it; an array size divisible by six marks a cube.
    """
    header = DDSHeader(
        height=height,
        width=width,
        pf_flags=DDPF_ALPHAPIXELS_FOURCC,
        pf_fourcc=FOURCC_DX10,
        caps2=DDSCAPS2_CUBEMAP if cubemap else 0,
    )
    if array_size % 6 == 0:
        dxt = DXT10Header(
            dxgi_format=texture_format,
            misc_flag=MISC_TEXTURECUBE,
            array_size=array_size // 6,
        )
    else:
        dxt = DXT10Header(dxgi_format=texture_format, misc_flag=0, array_size=1)
    return header, dxt


def write_dds(
    path: str | PathLike[str],
    header: DDSHeader,
    dxt: DXT10Header,
    data: bytes,
) -> None:
    """Write a DDS file made of both headers followed by the pixel data."""
    with Path(path).open("wb") as handle:
        handle.write(header.pack())
        handle.write(dxt.pack())
        handle.write(data)