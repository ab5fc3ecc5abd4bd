"""Read texture entries from game .pkg archives and write them as DDS and PNG files."""

__version__ = "0.1.0"
__all__ = ["cli", "dds", "dxgi", "hashes", "package"]