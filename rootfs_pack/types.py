"""Shared type definitions for rootfs_pack.

This module contains enums, dataclasses and helpers shared across
subpackages to avoid circular imports.
"""

import re
from dataclasses import dataclass, field
from enum import Enum


class ImageFormat(str, Enum):
    """Filesystem format of the produced image."""

    EXT2 = "ext2"
    EXT3 = "ext3"
    EXT4 = "ext4"


class BootPartitionFs(str, Enum):
    """Filesystem of the boot partition the image file is loaded from."""

    FAT = "fat"
    EXT4 = "ext4"


class RunStatus(str, Enum):
    """Status of a packaging run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class EntryKind(str, Enum):
    """Kind of a staging tree entry."""

    FILE = "file"
    DIRECTORY = "directory"
    SYMLINK = "symlink"
    CHAR_DEVICE = "char_device"
    BLOCK_DEVICE = "block_device"
    FIFO = "fifo"
    SOCKET = "socket"


@dataclass
class TreeStats:
    """Summary of a staging directory scan.

    Attributes:
        files: Number of regular files.
        directories: Number of directories (excluding the root).
        symlinks: Number of symbolic links.
        special: Number of device nodes, FIFOs and sockets.
        total_bytes: Sum of regular file sizes plus symlink target lengths.
        file_sizes: Sizes of all regular files.
        long_symlinks: Symlinks whose target does not fit inline in the inode.
        dir_entry_bytes: Per-directory bytes needed for entries, keyed by path.
        device_nodes: Relative paths of character/block device nodes.
        owners: Distinct (uid, gid) pairs seen.
    """

    files: int = 0
    directories: int = 0
    symlinks: int = 0
    special: int = 0
    total_bytes: int = 0
    file_sizes: list[int] = field(default_factory=list)
    long_symlinks: int = 0
    dir_entry_bytes: dict[str, int] = field(default_factory=dict)
    device_nodes: list[str] = field(default_factory=list)
    owners: set[tuple[int, int]] = field(default_factory=set)

    @property
    def entries(self) -> int:
        """Total number of entries below the root."""
        return self.files + self.directories + self.symlinks + self.special


_SIZE_PATTERN = re.compile(r"^\s*(\d+)\s*([kmgt]?)(i?b)?\s*$", re.IGNORECASE)
_SIZE_UNITS = {"": 1, "k": 1024, "m": 1024**2, "g": 1024**3, "t": 1024**4}


def parse_size(value: str | int) -> int:
    """Parse a byte count with an optional binary suffix.

    Accepts plain integers and IEC style suffixes: ``104857600``,
    ``100M``, ``100MiB``, ``512k``. Suffixes are always powers of 1024.

    Args:
        value: Size as an int or string.

    Returns:
        Size in bytes.

    Raises:
        ValueError: If the value cannot be parsed or is not positive.
    """
    if isinstance(value, int):
        size = value
    else:
        match = _SIZE_PATTERN.match(value)
        if not match:
            raise ValueError(f"Invalid size: {value!r}")
        size = int(match.group(1)) * _SIZE_UNITS[match.group(2).lower()]
    if size <= 0:
        raise ValueError(f"Size must be positive, got {value!r}")
    return size


def format_size(num_bytes: int) -> str:
    """Format a byte count for humans (binary units)."""
    value = float(num_bytes)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if value < 1024 or unit == "GiB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{num_bytes} B"


__all__ = [
    "BootPartitionFs",
    "EntryKind",
    "ImageFormat",
    "RunStatus",
    "TreeStats",
    "format_size",
    "parse_size",
]
