# d2texrip

d2texrip reads game `.pkg` archives, finds the texture entries in them and
writes each one out as a DDS file with a DX10 extension header. It then hands
each DDS file to the external `texconv.exe` tool (and `texassemble.exe` first,
for cubemaps) to turn it into PNG, and deletes the intermediate files.

## Requirements

- Python 3.10 or newer and the `cryptography` package
- `texconv.exe` and `texassemble.exe` on your `PATH`
- The two 16-byte AES keys for encrypted blocks, given as hex in the
  environment variables `D2TEXRIP_AES_KEY_0` and `D2TEXRIP_AES_KEY_1`.
  Reading an encrypted block without them raises `PackageError`.

## Installation

```
pip install .
```

## Command line

Extract every texture in one package:

```
d2texrip -p /path/to/packages -o /path/to/output -i 0123
```

Extract from every package in the packages folder. The package id is taken
from characters 10 to 7 from the end of each file name (`..._0123_5.pkg`
gives `0123`), and each package gets its own subfolder of the output path
(or of the current directory when `-o` is not given):

```
d2texrip -p /path/to/packages -o /path/to/output -f
```

Options:

| Option | Meaning |
| --- | --- |
| `-p`, `--pkgspath` | folder that holds the `.pkg` files (required) |
| `-o`, `--outputpath` | folder to write images into |
| `-i`, `--pkgid` | package id, four hex digits (required without `-f`) |
| `-v`, `--version` | `prebl` (any case) for archives in the older layout |
| `-f`, `--folder` | process every package in the folder |

Each external command is printed before it runs. Ordinary 2D textures are
converted to PNG in the output folder; cubemaps are assembled into a
horizontal cross and written to `cubemaps/` inside it. The command exits with
status 1 and a message on standard error when the arguments are missing or
an archive cannot be read, and 0 otherwise.

## Library use

```python
from d2texrip.hashes import file_from_hash, hash_from_file
from d2texrip.dxgi import format_name
from d2texrip.dds import build_headers, write_dds

file_from_hash("00208180")   # "0009-0000": package id and entry index
format_name(71)              # "BC1_UNORM"

header, dxt = build_headers(71, 256, 256, 1, False)
write_dds("out.dds", header, dxt, b"...")
```

- `d2texrip.hashes` converts between hash strings, `PPPP-IIII` file names and
  package ids, and byte-swaps 16, 32 and 64-bit values.
- `d2texrip.dxgi.format_name` names a DXGI format number.
- `d2texrip.dds` holds `DDSHeader` and `DXT10Header`, which pack to bytes,
  plus `build_headers` and `write_dds`.
- `d2texrip.package.Package(package_id, packages_path, pre_bl, decompressor)`
  opens the newest patch of a package. It offers `read_header`,
  `entry_table`, `block_table`, `nonce`, `decrypt_block`, `entry_reference`,
  `entry_types`, `entry_data` and `buffer_from_entry`. Errors are raised as
  `PackageError`. `reference_from_hash` looks up an entry's reference by hash.
- `d2texrip.cli` has `parse_texture_header`, `texconv_commands`,
  `discover_package_ids` and `extract_package`. `extract_package` takes a
  `runner` callable in place of running the external tools, and returns the
  DDS paths it converted.

## What it does not do

d2texrip has no decompressor of its own. Compressed blocks are passed to the
`decompressor` callable given to `Package` or `extract_package`, as
`decompressor(data, 0x40000)` returning the decompressed bytes. The
`d2texrip` command gives none, so from the command line any entry stored in
a compressed block fails with `block is compressed but no decompressor was
given`. It also does not convert DDS to PNG itself; that is left to the
external tools.