"""Command line that extracts the textures of packages and converts them to PNG."""

from __future__ import annotations

import argparse
import struct
import subprocess
import sys
from dataclasses import dataclass
from os import PathLike
from pathlib import Path
from typing import Callable, Optional, Sequence

from .dds import build_headers, write_dds
from .dxgi import format_name
from .hashes import pkg_id_from_hash, uint16_to_hex, uint32_to_hex
from .package import Decompressor, Package, PackageError, reference_from_hash

TEXTURE_TYPE = 32
SUBTYPE_TEXTURE = 1
SUBTYPE_CUBEMAP = 2
NO_LARGE_HASH = "ffffffff"
SRGB_FORMAT = 28

USAGE = (
    "Usage: D2TextureRipper -p [packages path] -o [output path] -i [package id] -v [version]\n"
    "-i extracts a package of textures\n"
    '-v changes the selected version. Valid types are: "prebl"'
)

Runner = Callable[[list], object]

# Offsets of format, width, height, array size and large-data hash.
_PRE_BL_LAYOUT = (0x4, 0xE, 0x10, 0x14, 0x24)
_LAYOUT = (0x4, 0x22, 0x24, 0x28, 0x3C)


@dataclass(frozen=True)
class TextureHeader:
    """The fields of a texture header entry that extraction needs."""

    texture_format: int
    width: int
    height: int
    array_size: int
    large_hash: str


def parse_texture_header(data: bytes, pre_bl: bool = False) -> TextureHeader:
    """Decode a texture header entry."""
    fmt_at, width_at, height_at, array_at, large_at = _PRE_BL_LAYOUT if pre_bl else _LAYOUT
    if len(data) < large_at + 4:
        raise ValueError(
            f"texture header needs at least {large_at + 4} bytes, got {len(data)}"
        )
    (texture_format,) = struct.unpack_from("<h", data, fmt_at)
    (width,) = struct.unpack_from("<h", data, width_at)
    (height,) = struct.unpack_from("<h", data, height_at)
    (array_size,) = struct.unpack_from("<h", data, array_at)
    (large,) = struct.unpack_from("<I", data, large_at)
    return TextureHeader(texture_format, width, height, array_size, uint32_to_hex(large))


def texconv_commands(
    dds_path: str | PathLike[str],
    bmp_path: str | PathLike[str],
    out_dir: str | PathLike[str],
    cubemap_dir: str | PathLike[str],
    texture_format: int,
    cubemap: bool,
) -> list[list[str]]:
    """Return the external commands that turn a DDS file into PNG."""
    if cubemap:
        return [
            ["texassemble.exe", "h-cross", str(dds_path), "-y", "-nologo", "-o", str(bmp_path)],
            ["texconv.exe", str(bmp_path), "-y", "-nologo", "-ft", "PNG", "-o", str(cubemap_dir)],
        ]
    dxgi_format = format_name(texture_format)
    if texture_format == SRGB_FORMAT:
        dxgi_format += "_SRGB"
    return [
        [
            "texconv.exe", str(dds_path), "-y", "-nologo", "-srgb",
            "-ft", "PNG", "-f", dxgi_format, "-o", str(out_dir),
        ]
    ]


def _run(command: list) -> None:
    try:
        subprocess.run(command, check=False)
    except OSError as exc:
        print(f"could not run {command[0]}: {exc}", file=sys.stderr)


def _fetch(
    hash_value: str,
    packages_path: str | PathLike[str],
    pre_bl: bool,
    decompressor: Optional[Decompressor],
) -> bytes:
    package = Package(pkg_id_from_hash(hash_value), packages_path, pre_bl, decompressor)
    data = package.entry_data(hash_value)
    return data if data is not None else b""


def extract_package(
    package_id: str,
    packages_path: str | PathLike[str],
    output_path: str | PathLike[str],
    pre_bl: bool = False,
    decompressor: Optional[Decompressor] = None,
    runner: Optional[Runner] = None,
) -> list[Path]:
    """Extract every texture of a package; return the DDS paths that were converted."""
    run = runner if runner is not None else _run
    out = Path(output_path)
    package = Package(package_id, packages_path, pre_bl, decompressor)
    package.read_header()
    entries = package.entry_table()

    converted: list[Path] = []
    for index, entry in enumerate(entries):
        if entry.num_type != TEXTURE_TYPE or entry.num_subtype not in (
            SUBTYPE_TEXTURE,
            SUBTYPE_CUBEMAP,
        ):
            continue
        cubemap = entry.num_subtype == SUBTYPE_CUBEMAP
        header_hash = reference_from_hash(entry.reference, packages_path, pre_bl, decompressor)
        texture = parse_texture_header(
            _fetch(header_hash, packages_path, pre_bl, decompressor), pre_bl
        )
        data_hash = texture.large_hash if texture.large_hash != NO_LARGE_HASH else entry.reference
        data = _fetch(data_hash, packages_path, pre_bl, decompressor)

        dds, dxt = build_headers(
            texture.texture_format, texture.width, texture.height, texture.array_size, cubemap
        )
        out.mkdir(parents=True, exist_ok=True)
        stem = f"{pkg_id_from_hash(data_hash).upper()}-{uint16_to_hex(index).upper()}"
        dds_path = out / f"{stem}.dds"
        bmp_path = out / f"{stem}.bmp"
        cubemap_dir = out / "cubemaps"
        cubemap_dir.mkdir(parents=True, exist_ok=True)
        write_dds(dds_path, dds, dxt, data)

        for command in texconv_commands(
            dds_path, bmp_path, out, cubemap_dir, texture.texture_format, cubemap
        ):
            print(subprocess.list2cmdline(command))
            run(command)
        if cubemap:
            bmp_path.unlink(missing_ok=True)
        dds_path.unlink(missing_ok=True)
        converted.append(dds_path)
    return converted


def discover_package_ids(packages_path: str | PathLike[str]) -> list[str]:
    """Return the distinct package ids of the files in a folder, in name order."""
    ids: list[str] = []
    seen: set[str] = set()
    for path in sorted(Path(packages_path).iterdir()):
        name = path.name
        if len(name) < 10:
            continue
        package_id = name[-10:-6]
        if package_id not in seen:
            seen.add(package_id)
            ids.append(package_id)
    return ids


class _UsageError(Exception):
    pass


class _Parser(argparse.ArgumentParser):
    def error(self, message: str) -> None:  # type: ignore[override]
        raise _UsageError(message)


def _parser() -> _Parser:
    parser = _Parser(prog="d2texrip", add_help=False)
    parser.add_argument("-p", "--pkgspath", default="")
    parser.add_argument("-o", "--outputpath", default="")
    parser.add_argument("-i", "--pkgid", default="")
    parser.add_argument("-v", "--version", default="")
    parser.add_argument("-f", "--folder", action="store_true")
    return parser


def _usage_failure() -> int:
    print("Couldn't parse arguments...", file=sys.stderr)
    print(USAGE, file=sys.stderr)
    return 1


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the texture extractor; return the exit status."""
    try:
        args = _parser().parse_args(argv)
    except _UsageError:
        return _usage_failure()
    if not args.pkgspath or (not args.folder and not args.pkgid):
        return _usage_failure()

    pre_bl = args.version.lower() == "prebl"
    try:
        if args.folder:
            for package_id in discover_package_ids(args.pkgspath):
                out = Path(package_id) if not args.outputpath else Path(args.outputpath) / package_id
                extract_package(package_id, args.pkgspath, out, pre_bl)
        else:
            extract_package(args.pkgid, args.pkgspath, args.outputpath, pre_bl)
    except (PackageError, ValueError, OSError) as exc:
        print(exc, file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())