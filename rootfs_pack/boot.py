"""RAM load window arithmetic and boot loader load command hints.

The boot loader copies the image file into a fixed RAM range. The size of
that range bounds the image size. The load command is only ever printed as
a hint; this package does not run boot loader commands.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from rootfs_pack.types import BootPartitionFs, ImageFormat

logger = logging.getLogger(__name__)

# U-Boot load command per boot partition filesystem
LOAD_COMMANDS = {
    BootPartitionFs.FAT: "fatload",
    BootPartitionFs.EXT4: "ext4load",
}


def parse_address(value: str | int) -> int:
    """Parse a memory address such as ``0x8900_0000`` or ``2298478592``.

    Args:
        value: Address as int or string (hex with 0x prefix, or decimal).

    Returns:
        Address as int.

    Raises:
        ValueError: If the value is not a valid non-negative address.
    """
    if isinstance(value, int):
        address = value
    else:
        address = int(value.strip(), 0)
    if address < 0:
        raise ValueError(f"Address must be non-negative, got {value!r}")
    return address


@dataclass(frozen=True)
class RamWindow:
    """A RAM range reserved for the loaded image, end exclusive."""

    start: int
    end: int

    def __post_init__(self) -> None:
        if self.end <= self.start:
            raise ValueError(
                f"RAM window end {self.end:#x} must be above start {self.start:#x}"
            )

    @classmethod
    def parse(cls, start: str | int, end: str | int) -> RamWindow:
        """Build a window from address strings."""
        return cls(parse_address(start), parse_address(end))

    @property
    def size(self) -> int:
        """Window size in bytes."""
        return self.end - self.start

    def fits(self, size_bytes: int) -> bool:
        """Return True if an image of ``size_bytes`` fits in the window."""
        return size_bytes <= self.size


def effective_max_size(max_size_bytes: int, window: RamWindow | None) -> int:
    """Return the size limit after applying an optional RAM window."""
    if window is None:
        return max_size_bytes
    if window.size < max_size_bytes:
        logger.info(
            "RAM window %#x-%#x (%d bytes) is smaller than max size %d, using window",
            window.start,
            window.end,
            window.size,
            max_size_bytes,
        )
        return window.size
    return max_size_bytes


def compose_load_command(
    filename: str,
    load_address: int,
    *,
    partition_fs: BootPartitionFs = BootPartitionFs.FAT,
    interface: str = "mmc",
    device_part: str = "0:1",
) -> str:
    """Compose a U-Boot command that loads the image file into RAM.

    The command is chosen by the filesystem of the partition that holds the
    image file, not by the image's own format.

    Args:
        filename: Image file name on the boot partition.
        load_address: RAM address to load to.
        partition_fs: Filesystem of the boot partition.
        interface: Boot loader storage interface.
        device_part: Device and partition, ``<dev>:<part>``.

    Returns:
        Command string, e.g. ``fatload mmc 0:1 0x89000000 rootfs.ext4``.
    """
    command = LOAD_COMMANDS[partition_fs]
    return f"{command} {interface} {device_part} {load_address:#x} {filename}"


def note_format_mismatch(
    image_format: ImageFormat,
    partition_fs: BootPartitionFs,
) -> str | None:
    """Describe a difference between the image format and the load command.

    Loading an ext image with ``fatload`` is valid when the image file sits
    on a FAT boot partition, but it is easy to misread. The difference is
    reported, never resolved.

    Returns:
        A note for the operator, or None if both name the same filesystem.
    """
    if partition_fs is BootPartitionFs.EXT4 and image_format is ImageFormat.EXT4:
        return None
    note = (
        f"Image format is {image_format.value} but it is loaded with "
        f"{LOAD_COMMANDS[partition_fs]} from a {partition_fs.value} boot partition; "
        "check the boot loader setup"
    )
    logger.info(note)
    return note


__all__ = [
    "LOAD_COMMANDS",
    "RamWindow",
    "compose_load_command",
    "effective_max_size",
    "note_format_mismatch",
    "parse_address",
]
